"""
Chat / email notifications for finished test passes.

Slack messages go straight to chat.postMessage over httpx with
exponential-backoff retries; email is delivered by starting the
platform's send-mail job. Delivery failures are logged and never raised
to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from jobtester import __version__
from jobtester.engine.entities import FailureSummary
from jobtester.engine.errors import NotificationError, RemoteInvocationError
from jobtester.platform.client import PlatformClient

logger = logging.getLogger(__name__)

SLACK_API_URL = "https://slack.com/api/chat.postMessage"
SEND_MAIL_ACTOR = "apify/send-mail"

# Delivery configuration
NOTIFY_TIMEOUT_SECONDS = 30
NOTIFY_MAX_RETRIES = 3
NOTIFY_RETRY_BASE_DELAY = 1.0  # seconds
NOTIFY_RETRY_MAX_DELAY = 10.0  # seconds


@dataclass
class Notification:
    """Channel-specific renderings of one message."""

    subject: Optional[str] = None
    slack_message: Optional[str] = None
    email_message: Optional[str] = None


def build_failure_notification(
    test_name: str,
    summary: FailureSummary,
    run_url: Optional[str] = None,
    output_url: Optional[str] = None,
) -> Notification:
    """
    Render the failing-tests message for Slack (markdown) and email (html).

    Args:
        test_name: Display name of the test run
        summary: Aggregated failures of the pass
        run_url: Deep link to the tester's own run, if any
        output_url: Link to the OUTPUT record, if any
    """
    failing_expectations = len(summary.failed_expectations)
    counts = (
        f"has {summary.failing_spec_count} failing specs "
        f"({failing_expectations} failing expectations)"
    )

    title_md = f"<{run_url}|{test_name}>" if run_url else test_name
    details_md = f" Check the <{output_url}|OUTPUT> for full details." if output_url else ""
    slack_lines = [f"{title_md} {counts}.{details_md}"]
    slack_lines.extend(f"*{failed.name}*\n{failed.markdown}" for failed in summary.failed_expectations)

    title_html = f'<a href="{run_url}">{test_name}</a>' if run_url else test_name
    details_html = f' Check the <a href="{output_url}">OUTPUT</a> for full details.' if output_url else ""
    email_parts = [f"{title_html} {counts}.{details_html}"]
    email_parts.extend(
        f"<b>{failed.name}</b><br>\n{failed.html}" for failed in summary.failed_expectations
    )

    return Notification(
        subject=f"{test_name} has failing tests",
        slack_message="\n".join(slack_lines),
        email_message="<br>\n".join(email_parts),
    )


def build_timeout_notification(test_name: str, run_url: Optional[str] = None) -> Notification:
    """Render the one-shot message sent when the tester run itself timed out."""
    title_md = f"<{run_url}|{test_name}>" if run_url else test_name
    title_html = f'<a href="{run_url}">{test_name}</a>' if run_url else test_name

    return Notification(
        subject=f"{test_name} timed out",
        slack_message=f"{title_md} timed out before all tests finished.",
        email_message=f"{title_html} timed out before all tests finished.",
    )


class Notifier:
    """
    Delivers Notifications to the configured channels.

    A channel is active when its credentials are present:
    - Slack: token and channel
    - Email: an address containing "@" and a platform client
    """

    def __init__(
        self,
        client: Optional[PlatformClient] = None,
        slack_token: Optional[str] = None,
        slack_channel: Optional[str] = None,
        email: Optional[str] = None,
        slack_url: str = SLACK_API_URL,
        timeout: float = NOTIFY_TIMEOUT_SECONDS,
        max_retries: int = NOTIFY_MAX_RETRIES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = client
        self.slack_token = slack_token
        self.slack_channel = slack_channel
        self.email = (email or "").strip() or None
        self.slack_url = slack_url
        self.timeout = timeout
        self.max_retries = max_retries
        self._sleep = sleep
        self._transport = transport

    @property
    def slack_enabled(self) -> bool:
        return bool(self.slack_token and self.slack_channel)

    @property
    def email_enabled(self) -> bool:
        return bool(self.email and "@" in self.email)

    async def notify(self, notification: Notification) -> dict[str, bool]:
        """
        Send to every active channel that has a rendering.

        Returns:
            Mapping channel -> delivered, for the channels attempted
        """
        delivered: dict[str, bool] = {}

        if self.slack_enabled and notification.slack_message:
            logger.info(f"[Notifier] Posting to channel {self.slack_channel}")
            try:
                await self._post_slack(notification.slack_message)
                delivered["slack"] = True
            except NotificationError as e:
                logger.error(f"[Notifier] {e}")
                delivered["slack"] = False

        if self.email_enabled and notification.email_message and notification.subject:
            logger.info(f"[Notifier] Sending email to {self.email}")
            try:
                await self._send_email(notification.subject, notification.email_message)
                delivered["email"] = True
            except NotificationError as e:
                logger.error(f"[Notifier] {e}")
                delivered["email"] = False

        return delivered

    async def _post_slack(self, text: str) -> None:
        """
        POST one chat message with retry.

        Raises:
            NotificationError: after max_retries failed attempts
        """
        last_error: Optional[str] = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
                    response = await http.post(
                        self.slack_url,
                        json={"channel": self.slack_channel, "text": text},
                        headers={
                            "Authorization": f"Bearer {self.slack_token}",
                            "User-Agent": f"jobtester/{__version__}",
                        },
                    )

                if 200 <= response.status_code < 300:
                    body = response.json()
                    if body.get("ok", True):
                        logger.info(
                            f"[Notifier] Slack message sent "
                            f"(attempt {attempt + 1}/{self.max_retries})"
                        )
                        return
                    last_error = f"Slack API error: {body.get('error', 'unknown')}"
                else:
                    last_error = f"HTTP {response.status_code}: {response.text[:200]}"

                logger.warning(
                    f"[Notifier] Slack message failed "
                    f"(attempt {attempt + 1}/{self.max_retries}): {last_error}"
                )

            except httpx.TimeoutException:
                last_error = f"Timeout after {self.timeout}s"
                logger.warning(
                    f"[Notifier] Slack timeout (attempt {attempt + 1}/{self.max_retries})"
                )

            except httpx.RequestError as e:
                last_error = f"Request error: {e}"
                logger.warning(
                    f"[Notifier] Slack request error "
                    f"(attempt {attempt + 1}/{self.max_retries}): {e}"
                )

            if attempt < self.max_retries - 1:
                delay = min(NOTIFY_RETRY_BASE_DELAY * (2 ** attempt), NOTIFY_RETRY_MAX_DELAY)
                logger.debug(f"[Notifier] Retrying Slack in {delay}s...")
                await self._sleep(delay)

        raise NotificationError("slack", last_error or "unknown error")

    async def _send_email(self, subject: str, html: str) -> None:
        """Start the platform send-mail job without waiting for it."""
        if self.client is None:
            raise NotificationError("email", "no platform client configured")

        try:
            await self.client.start_actor(SEND_MAIL_ACTOR, {
                "to": self.email,
                "subject": subject,
                "text": "",
                "html": html,
            })
        except RemoteInvocationError as e:
            raise NotificationError("email", str(e)) from e
