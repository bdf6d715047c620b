"""
Engine Domain Entities.

- RunRequest: one requested job invocation (actor or task)
- RunData / RunRecord: the durable, normalized identity of an invoked run
- ExpectationResult / SpecResult / SuiteResult / ResultTree: harness output
- FailedExpectation / FailureSummary: aggregated view of a ResultTree

Status values follow the platform's run lifecycle.
"""

from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import Any, Optional

from .errors import InvalidRequestError


class RunStatus(str, Enum):
    """
    Platform run status values.

    READY, RUNNING, ABORTING and TIMING-OUT are transitional;
    everything else is terminal.
    """

    READY = "READY"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTING = "ABORTING"
    ABORTED = "ABORTED"
    TIMING_OUT = "TIMING-OUT"
    TIMED_OUT = "TIMED-OUT"


IN_PROGRESS_STATUSES = frozenset({
    RunStatus.READY.value,
    RunStatus.RUNNING.value,
    RunStatus.ABORTING.value,
    RunStatus.TIMING_OUT.value,
})


def is_in_progress(status: Optional[str]) -> bool:
    """Check whether a raw status string is still transitional."""
    return status in IN_PROGRESS_STATUSES


# camelCase keys accepted from test programs and JSON input
_REQUEST_ALIASES = {
    "taskId": "task_id",
    "actorId": "actor_id",
    "prefilledInput": "prefilled_input",
}


@dataclass
class RunRequest:
    """
    A request to run one remote job.

    Exactly one of task_id / actor_id must be set; validation happens in the
    orchestrator so a bad request only fails the calling spec.
    """

    task_id: Optional[str] = None
    actor_id: Optional[str] = None
    input: dict = field(default_factory=dict)
    options: dict = field(default_factory=dict)
    name: Optional[str] = None
    nonce: Optional[str] = None
    prefilled_input: bool = False

    @property
    def is_task(self) -> bool:
        return bool(self.task_id)

    @property
    def target_id(self) -> Optional[str]:
        return self.task_id or self.actor_id

    def to_dict(self) -> dict:
        """Convert request to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RunRequest":
        """Create request from a dictionary, accepting camelCase keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            key = _REQUEST_ALIASES.get(key, key)
            if key not in known:
                raise InvalidRequestError(f"Unknown run request field: {key}")
            kwargs[key] = value
        request = cls(**kwargs)
        request.input = request.input or {}
        request.options = request.options or {}
        return request


@dataclass
class RunData:
    """
    Normalized subset of remote run metadata.

    Only identity and artifact-store ids are kept; live status, timestamps,
    usage stats and options echo are dropped.
    """

    id: str
    actor_id: str
    actor_name: str
    default_dataset_id: Optional[str] = None
    default_key_value_store_id: Optional[str] = None
    default_request_queue_id: Optional[str] = None
    build_number: Optional[str] = None
    task_id: Optional[str] = None
    task_name: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_run(
        cls,
        run: dict,
        actor_name: str,
        task_id: Optional[str] = None,
        task_name: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "RunData":
        """Build RunData from a raw platform run object."""
        return cls(
            id=run["id"],
            actor_id=run.get("actId"),
            actor_name=actor_name,
            default_dataset_id=run.get("defaultDatasetId"),
            default_key_value_store_id=run.get("defaultKeyValueStoreId"),
            default_request_queue_id=run.get("defaultRequestQueueId"),
            build_number=run.get("buildNumber"),
            task_id=task_id,
            task_name=task_name,
            name=name,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RunData":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class RunRecord:
    """One cache entry: created once per fingerprint, never mutated."""

    fingerprint: str
    run_id: str
    data: RunData

    def to_dict(self) -> dict:
        return {
            "fingerprint": self.fingerprint,
            "run_id": self.run_id,
            "data": self.data.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunRecord":
        return cls(
            fingerprint=data["fingerprint"],
            run_id=data["run_id"],
            data=RunData.from_dict(data["data"]),
        )


# =============================================================================
# Result tree (built by the harness, read by the aggregator)
# =============================================================================


@dataclass
class ExpectationResult:
    """A single recorded expectation."""

    matcher_name: str
    passed: bool
    message: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SpecResult:
    """Outcome of one `it` block."""

    id: str
    description: str
    full_name: str
    status: str = "pending"
    passed_expectations: list[ExpectationResult] = field(default_factory=list)
    failed_expectations: list[ExpectationResult] = field(default_factory=list)
    duration_ms: int = 0

    def add_expectation(self, result: ExpectationResult) -> None:
        if result.passed:
            self.passed_expectations.append(result)
        else:
            self.failed_expectations.append(result)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "fullName": self.full_name,
            "status": self.status,
            "passedExpectations": [e.to_dict() for e in self.passed_expectations],
            "failedExpectations": [e.to_dict() for e in self.failed_expectations],
            "durationMs": self.duration_ms,
        }


@dataclass
class SuiteResult:
    """Outcome of one `describe` block; holds only its direct specs."""

    id: str
    description: str
    full_name: str
    specs: list[SpecResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "fullName": self.full_name,
            "specs": [s.to_dict() for s in self.specs],
        }


@dataclass
class ResultTree:
    """Ordered suites for a whole pass."""

    suites: list[SuiteResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {suite.id: suite.to_dict() for suite in self.suites}


# =============================================================================
# Aggregated failures
# =============================================================================


@dataclass(frozen=True)
class FailedExpectation:
    """One failed expectation, preformatted for each notification channel."""

    name: str
    markdown: str
    html: str


@dataclass
class FailureSummary:
    """Counts and messages derived from a ResultTree."""

    failed_expectations: list[FailedExpectation] = field(default_factory=list)
    passed_expectation_count: int = 0
    total_expectation_count: int = 0
    total_spec_count: int = 0
    failing_spec_count: int = 0
    passing_suite_count: int = 0
    failing_spec_names: list[str] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return self.failing_spec_count > 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
