"""
Environment settings for jobtester.

Centralized environment access for the platform connection, local state
directory, polling cadence and the control service.

Environment Variables:
- PLATFORM_API_URL: Platform REST API base (default: https://api.apify.com)
- PLATFORM_CONSOLE_URL: Console base used for deep links (default: https://console.apify.com)
- PLATFORM_TOKEN: API token
- PLATFORM_RUN_ID / PLATFORM_ACTOR_ID / PLATFORM_TASK_ID: identity of this tester run
- PLATFORM_DEFAULT_KV_ID: key/value store of this tester run (enables remote state)
- JOBTESTER_STATE_DIR: Local state directory when not on the platform (default: storage)
- JOBTESTER_POLL_INTERVAL: Seconds between run status polls (default: 1)
- DATASET_SLEEP_MS: One-shot settling delay before reading artifacts (default: 0)
- JOBTESTER_CONTROL_URL: Public URL of the control service for abort webhooks
- SLACK_TOKEN / SLACK_CHANNEL / NOTIFY_EMAIL: Notifier used by the control service
- JOBTESTER_API_AUTH_ENABLED / JOBTESTER_API_KEY: X-API-Key check of the control service
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.apify.com"
DEFAULT_CONSOLE_URL = "https://console.apify.com"
DEFAULT_STATE_DIR = "storage"
DEFAULT_POLL_INTERVAL = 1.0


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    val = os.getenv(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    elif val in ("false", "0", "no", "off"):
        return False
    return default


def _get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            logger.warning(f"[Settings] Invalid integer for {key}: {val}, using default: {default}")
    return default


def _get_env_float(key: str, default: float) -> float:
    """Get float value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return float(val)
        except ValueError:
            logger.warning(f"[Settings] Invalid number for {key}: {val}, using default: {default}")
    return default


@dataclass(frozen=True)
class Settings:
    """Resolved process settings."""

    api_url: str = DEFAULT_API_URL
    console_url: str = DEFAULT_CONSOLE_URL
    token: Optional[str] = None
    run_id: Optional[str] = None
    actor_id: Optional[str] = None
    task_id: Optional[str] = None
    default_kv_id: Optional[str] = None
    state_dir: Path = Path(DEFAULT_STATE_DIR)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    settle_delay_ms: int = 0
    control_url: Optional[str] = None
    slack_token: Optional[str] = None
    slack_channel: Optional[str] = None
    notify_email: Optional[str] = None
    api_auth_enabled: bool = False
    api_key: str = ""
    verbose: bool = False

    @property
    def is_on_platform(self) -> bool:
        """True when this process is itself a platform run."""
        return bool(self.run_id and self.default_kv_id)


def get_settings() -> Settings:
    """
    Read settings from the environment.

    Called at startup after load_dotenv(); not cached so tests can
    monkeypatch the environment.
    """
    return Settings(
        api_url=os.getenv("PLATFORM_API_URL", DEFAULT_API_URL).rstrip("/"),
        console_url=os.getenv("PLATFORM_CONSOLE_URL", DEFAULT_CONSOLE_URL).rstrip("/"),
        token=os.getenv("PLATFORM_TOKEN") or None,
        run_id=os.getenv("PLATFORM_RUN_ID") or None,
        actor_id=os.getenv("PLATFORM_ACTOR_ID") or None,
        task_id=os.getenv("PLATFORM_TASK_ID") or None,
        default_kv_id=os.getenv("PLATFORM_DEFAULT_KV_ID") or None,
        state_dir=Path(os.getenv("JOBTESTER_STATE_DIR", DEFAULT_STATE_DIR)),
        poll_interval=_get_env_float("JOBTESTER_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        settle_delay_ms=_get_env_int("DATASET_SLEEP_MS", 0),
        control_url=(os.getenv("JOBTESTER_CONTROL_URL") or "").rstrip("/") or None,
        slack_token=os.getenv("SLACK_TOKEN") or None,
        slack_channel=os.getenv("SLACK_CHANNEL") or None,
        notify_email=os.getenv("NOTIFY_EMAIL") or None,
        api_auth_enabled=_get_env_bool("JOBTESTER_API_AUTH_ENABLED", False),
        api_key=os.getenv("JOBTESTER_API_KEY", ""),
        verbose=_get_env_bool("JOBTESTER_VERBOSE", False),
    )
