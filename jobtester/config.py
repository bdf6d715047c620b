"""
Process input and CLI constants.

TesterInput is the input a test run is started with: read from a JSON
file locally, or from the INPUT record of the run's own key/value store
on the platform. camelCase keys (as sent by the platform) and
snake_case keys are both accepted.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from jobtester.engine.errors import UsageError
from jobtester.infra.storage import KeyValueStore

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_TESTS_FAILED = 1
EXIT_USAGE_ERROR = 2

DEFAULT_TIMEOUT_MS = 600000
DEFAULT_TEST_NAME = "Actor tests"
INPUT_KEY = "INPUT"


class TesterInput(BaseModel):
    """Input of one tester run."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    test_spec: Optional[str] = Field(
        default=None,
        alias="testSpec",
        description="Python source of the test program; must define define(ctx)",
    )
    test_name: Optional[str] = Field(
        default=None,
        alias="testName",
        description="Top-level suite name. Falls back to the task name, then 'Actor tests'",
    )
    default_timeout: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        alias="defaultTimeout",
        ge=1,
        description="Per-spec timeout in milliseconds",
    )
    filter: list[str] = Field(
        default=[],
        description="Spec name patterns; joined with '|' into one regular expression",
    )
    verbose_logs: bool = Field(default=True, alias="verboseLogs")
    abort_runs: bool = Field(
        default=True,
        alias="abortRuns",
        description="Abort started runs when this run is aborted or times out",
    )
    retry_failed_tests: bool = Field(
        default=False,
        alias="retryFailedTests",
        description="Relaunch once, narrowed to the failing specs",
    )
    retry_epoch: int = Field(default=0, alias="retryEpoch", ge=0)
    slack_token: Optional[str] = Field(default=None, alias="slackToken")
    slack_channel: Optional[str] = Field(default=None, alias="slackChannel")
    email: Optional[str] = Field(default=None)
    token: Optional[str] = Field(default=None, description="Platform token override")
    custom_data: dict[str, Any] = Field(default={}, alias="customData")
    is_abort_signal: bool = Field(default=False, alias="isAbortSignal")
    kv: Optional[str] = Field(
        default=None,
        description="Store id holding CALLS, used with isAbortSignal",
    )

    def to_payload(self) -> dict:
        """Serialize back to the camelCase shape the platform sends."""
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_input(data: Any) -> TesterInput:
    """
    Validate raw input.

    Raises:
        UsageError: input is not an object or fails validation
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise UsageError(f"Input must be a JSON object, got {type(data).__name__}")

    try:
        return TesterInput.model_validate(data)
    except ValidationError as e:
        raise UsageError(f"Invalid input: {e}") from e


def load_input_file(path: Path | str) -> TesterInput:
    """Read TesterInput from a JSON file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise UsageError(f"Cannot read input file {path}: {e}") from e

    return parse_input(data)


async def load_input_from_store(store: KeyValueStore) -> TesterInput:
    """Read TesterInput from the INPUT record of a key/value store."""
    data = await store.get_value(INPUT_KEY)
    if data is None:
        logger.warning(f"[Config] No {INPUT_KEY} record found, using defaults")
    return parse_input(data)
