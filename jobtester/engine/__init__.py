"""
Run Deduplication & Assertion Orchestration Engine.

- fingerprint: persisted fingerprint -> RunRecord cache
- orchestrator: invoke-if-absent, poll-until-terminal
- matchers: async assertions over a RunResult
- aggregator: ResultTree -> FailureSummary
- retry_controller: finish a pass, relaunch once on failure
- recovery: abort recorded runs out of band

Only the platform-independent pieces are re-exported here; import the
rest from their modules.
"""

from .entities import (
    RunStatus,
    RunRequest,
    RunData,
    RunRecord,
    ExpectationResult,
    SpecResult,
    SuiteResult,
    ResultTree,
    FailedExpectation,
    FailureSummary,
)
from .errors import (
    JobTesterError,
    UsageError,
    InvalidRequestError,
    RemoteInvocationError,
    NotificationError,
    AggregateFailure,
)
from .aggregator import linkify, reduce_results
from .checkpoint import Checkpoint

__all__ = [
    # Entities
    "RunStatus",
    "RunRequest",
    "RunData",
    "RunRecord",
    "ExpectationResult",
    "SpecResult",
    "SuiteResult",
    "ResultTree",
    "FailedExpectation",
    "FailureSummary",
    # Errors
    "JobTesterError",
    "UsageError",
    "InvalidRequestError",
    "RemoteInvocationError",
    "NotificationError",
    "AggregateFailure",
    # Aggregation
    "linkify",
    "reduce_results",
    # Checkpoint
    "Checkpoint",
]
