"""
Engine-specific exceptions.

Taxonomy:
- UsageError: malformed RunRequest or matcher options (fails one spec only)
- RemoteInvocationError: the platform rejected an invoke or a read
- NotificationError: chat/email delivery failure (always logged, never raised out)
- AggregateFailure: one or more expectations failed in a completed pass
"""

from typing import Optional


class JobTesterError(Exception):
    """Base exception for all engine errors."""
    pass


class UsageError(JobTesterError):
    """
    Raised when the test program uses the engine incorrectly.

    Examples:
    - Running a matcher against something that is not a RunResult
    - Missing a required matcher option
    """
    pass


class InvalidRequestError(UsageError):
    """Raised when a RunRequest does not reference exactly one job target."""
    pass


class RemoteInvocationError(JobTesterError):
    """Raised when a platform call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class NotificationError(JobTesterError):
    """Raised by a notification channel when delivery fails."""

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(f"{channel} notification failed: {reason}")


class AggregateFailure(JobTesterError):
    """
    Raised when a completed test pass has failing specs.

    Carries the FailureSummary so callers can report counts.
    """

    def __init__(self, summary):
        self.summary = summary
        super().__init__(
            f"{len(summary.failed_expectations)} failing expectations "
            f"in {summary.failing_spec_count} specs"
        )
