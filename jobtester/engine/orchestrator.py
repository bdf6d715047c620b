"""
Run Orchestrator.

invoke() is the only way a test program starts remote work:
1. Validate the request
2. Fingerprint (request, retry epoch)
3. Cached -> reuse the recorded run; otherwise start it without waiting
4. Flush, poll until terminal, flush again
5. After the settling delay, read the run's resolved input
6. Return a RunResult with a failure-message formatter

At most one remote invocation happens per fingerprint per cache lifetime.
The get-then-put sequence spans suspension points, so two concurrent
invokes of an unseen fingerprint can both start a run; this is accepted.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .checkpoint import Checkpoint
from .entities import RunData, RunRecord, RunRequest, is_in_progress
from .errors import InvalidRequestError, RemoteInvocationError
from .fingerprint import FingerprintCache, compute_fingerprint
from jobtester.infra.settings import DEFAULT_CONSOLE_URL, DEFAULT_POLL_INTERVAL
from jobtester.platform.client import PlatformClient

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# Input fields commonly used to cap how much a job produces
MAX_RESULTS_FIELDS = (
    "maxItems",
    "maxResults",
    "resultsLimit",
    "maxRequestsPerCrawl",
    "maxPosts",
    "maxReviews",
    "maxPagesPerQuery",
)

FORMATTED_INPUT_MAX_CHARS = 500


def create_run_link(
    run_id: str,
    actor_id: Optional[str],
    task_id: Optional[str] = None,
    console_url: str = DEFAULT_CONSOLE_URL,
) -> str:
    """Deep link to a run in the platform console."""
    if task_id:
        return f"{console_url}/actors/tasks/{task_id.replace('/', '~')}/runs/{run_id}"
    return f"{console_url}/actors/{(actor_id or '').replace('/', '~')}/runs/{run_id}"


def find_max_results(run_input: Optional[dict]) -> Optional[Any]:
    """Return the first set max-results style field of an input, if any."""
    if not isinstance(run_input, dict):
        return None
    for name in MAX_RESULTS_FIELDS:
        value = run_input.get(name)
        if value is not None:
            return value
    return None


class SettleDelay:
    """
    One-shot delay before reading artifacts.

    Gives the platform time to propagate storage writes. Sleeps once,
    lazily, on first use; later calls return immediately.
    """

    def __init__(self, delay_ms: int = 0, sleep: Sleep = asyncio.sleep):
        self.delay_ms = delay_ms
        self._sleep = sleep
        self._done = False

    async def __call__(self) -> None:
        if self._done:
            return
        self._done = True
        if self.delay_ms > 0:
            logger.debug(f"[Orchestrator] Settling for {self.delay_ms}ms")
            await self._sleep(self.delay_ms / 1000)


@dataclass
class RunResult:
    """A finished (or no longer observed) run, as seen by matchers."""

    record: RunRecord
    input: Optional[dict] = None
    console_url: str = DEFAULT_CONSOLE_URL
    max_results: Optional[Any] = field(default=None, init=False)

    def __post_init__(self):
        self.max_results = find_max_results(self.input)

    @property
    def fingerprint(self) -> str:
        return self.record.fingerprint

    @property
    def run_id(self) -> str:
        return self.record.run_id

    @property
    def data(self) -> RunData:
        return self.record.data

    @property
    def link(self) -> str:
        return create_run_link(
            self.run_id,
            actor_id=self.data.actor_id,
            task_id=self.data.task_id,
            console_url=self.console_url,
        )

    def format(self, message: str) -> str:
        """
        Prefix a failure message with the run's identity.

        Format:
            <caller name>                       (optional)
            <task> - <actor>:<build>
            <deep link> : <message>
            Max results: <n>                    (optional)
            Input: <compact json>               (optional)
        """
        lines = []
        if self.data.name:
            lines.append(self.data.name)

        title = (
            f"{self.data.task_name} - {self.data.actor_name}"
            if self.data.task_name
            else self.data.actor_name
        )
        lines.append(f"{title}:{self.data.build_number}")
        lines.append(f"{self.link} : {message}")

        if self.max_results is not None:
            lines.append(f"Max results: {self.max_results}")

        if self.input:
            input_json = json.dumps(self.input, ensure_ascii=False, separators=(',', ':'), default=str)
            if len(input_json) > FORMATTED_INPUT_MAX_CHARS:
                input_json = input_json[:FORMATTED_INPUT_MAX_CHARS] + "..."
            lines.append(f"Input: {input_json}")

        return "\n".join(lines)


def is_run_result(value: Any) -> bool:
    """A usable RunResult has a fingerprint and resolved run data."""
    return (
        isinstance(value, RunResult)
        and isinstance(value.record.fingerprint, str)
        and bool(value.record.fingerprint)
        and value.record.data is not None
    )


async def wait_for_finish(
    client: PlatformClient,
    run_id: str,
    sleep: Sleep = asyncio.sleep,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> Optional[str]:
    """
    Poll a run until it leaves the in-progress set.

    Any polling error ends the wait immediately instead of being retried,
    so a flaky status endpoint cannot hang the suite.

    Returns:
        The last observed status, or None if polling failed
    """
    while True:
        try:
            run = await client.get_run(run_id)
        except Exception as e:
            logger.warning(f"[Orchestrator] Stopped waiting for run {run_id}: {e}")
            return None

        status = (run or {}).get("status")
        if not is_in_progress(status):
            return status

        await sleep(poll_interval)


class RunOrchestrator:
    """
    Deduplicating invoke-and-wait front end to the platform.

    Owns the FingerprintCache for the process lifetime and registers a
    flush handler on the Checkpoint until close().
    """

    def __init__(
        self,
        client: PlatformClient,
        cache: FingerprintCache,
        checkpoint: Optional[Checkpoint] = None,
        retry_epoch: int = 0,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        settle_delay: Optional[SettleDelay] = None,
        sleep: Sleep = asyncio.sleep,
        console_url: str = DEFAULT_CONSOLE_URL,
        verbose_logs: bool = False,
    ):
        self.client = client
        self.cache = cache
        self.checkpoint = checkpoint
        self.retry_epoch = retry_epoch
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay or SettleDelay(0, sleep)
        self.console_url = console_url
        self.verbose_logs = verbose_logs
        self._sleep = sleep

        if self.checkpoint is not None:
            self.checkpoint.register(self.persist_state)

    async def persist_state(self) -> None:
        await self.cache.flush()

    def close(self) -> None:
        """Deregister from the checkpoint."""
        if self.checkpoint is not None:
            self.checkpoint.unregister(self.persist_state)

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def validate(request: RunRequest) -> None:
        """
        Reject requests that do not reference exactly one target.

        Raises:
            InvalidRequestError
        """
        if not request.task_id and not request.actor_id:
            raise InvalidRequestError("You need to provide either task_id or actor_id")

        if request.task_id and request.actor_id:
            raise InvalidRequestError("You need to provide just task_id or actor_id, but not both")

        if request.prefilled_input and request.task_id:
            raise InvalidRequestError(
                "prefilled_input is only supported for actor_id, "
                "tasks already carry their own input"
            )

    # =========================================================================
    # Invocation
    # =========================================================================

    async def invoke(self, request: Optional[RunRequest | dict] = None, **fields) -> RunResult:
        """
        Run a job at most once per fingerprint and wait for it.

        Accepts a RunRequest, a dict (camelCase keys allowed) or keyword fields.

        Raises:
            InvalidRequestError: malformed request (fails the calling spec only)
            RemoteInvocationError: the platform rejected the invocation
        """
        if request is None:
            request = RunRequest.from_dict(fields)
        elif isinstance(request, dict):
            request = RunRequest.from_dict({**request, **fields})

        self.validate(request)

        fingerprint = compute_fingerprint(request, self.retry_epoch)
        record = self.cache.get(fingerprint)

        if record is None:
            record = await self._start(request, fingerprint)
            self.cache.put(fingerprint, record)

        kind = f"task {request.task_id}" if request.is_task else f"actor {request.actor_id}"
        link = create_run_link(record.run_id, record.data.actor_id, record.data.task_id, self.console_url)

        if self.verbose_logs:
            logger.info(f"[Orchestrator] Waiting {kind} to finish: {link}")

        await self.cache.flush()
        status = await wait_for_finish(self.client, record.run_id, self._sleep, self.poll_interval)

        if self.verbose_logs:
            logger.info(f"[Orchestrator] Run {kind} finished ({status}): {link}")

        await self.cache.flush()
        await self.settle_delay()

        resolved_input = await self._fetch_resolved_input(record)

        return RunResult(record=record, input=resolved_input, console_url=self.console_url)

    async def _start(self, request: RunRequest, fingerprint: str) -> RunRecord:
        """Start the remote job without waiting and capture its identity."""
        run_input = dict(request.input)

        if request.prefilled_input:
            run_input = await self._resolve_prefill(request.actor_id, run_input, request.options)

        if request.is_task:
            run = await self.client.start_task(request.task_id, run_input, request.options)
        else:
            run = await self.client.start_actor(request.actor_id, run_input, request.options)

        actor = await self.client.get_actor(run["actId"])
        if actor is None:
            raise RemoteInvocationError(f"Actor {run['actId']} of run {run['id']} not found")

        task_name = None
        if request.is_task:
            task = await self.client.get_task(request.task_id)
            task_name = (task or {}).get("name")

        data = RunData.from_run(
            run,
            actor_name=actor.get("name"),
            task_id=request.task_id,
            task_name=task_name,
            name=request.name,
        )

        logger.info(f"[Orchestrator] Started run {run['id']} for fingerprint {fingerprint}")

        return RunRecord(fingerprint=fingerprint, run_id=run["id"], data=data)

    async def _resolve_prefill(self, actor_id: str, caller_input: dict, options: dict) -> dict:
        """
        Merge the actor's declared input prefills/defaults under the caller input.

        Caller input wins on conflict.
        """
        actor = await self.client.get_actor(actor_id)
        tag = (options or {}).get("build") or "latest"
        build_id = (((actor or {}).get("taggedBuilds") or {}).get(tag) or {}).get("buildId")

        if not build_id:
            logger.warning(f"[Orchestrator] No '{tag}' build for {actor_id}, skipping prefill")
            return caller_input

        build = await self.client.get_build(build_id) or {}
        schema = build.get("inputSchema") or ((build.get("actorDefinition") or {}).get("input"))

        if isinstance(schema, str):
            try:
                schema = json.loads(schema)
            except json.JSONDecodeError:
                logger.warning(f"[Orchestrator] Invalid input schema on build {build_id}")
                return caller_input

        prefilled = {}
        for name, prop in ((schema or {}).get("properties") or {}).items():
            if "prefill" in prop:
                prefilled[name] = prop["prefill"]
            elif "default" in prop:
                prefilled[name] = prop["default"]

        return {**prefilled, **caller_input}

    async def _fetch_resolved_input(self, record: RunRecord) -> Optional[dict]:
        """Read the INPUT the run actually received, including platform defaults."""
        store_id = record.data.default_key_value_store_id
        if not store_id:
            return None

        try:
            stored = await self.client.get_record(store_id, "INPUT")
        except RemoteInvocationError as e:
            logger.warning(f"[Orchestrator] Could not read input of run {record.run_id}: {e}")
            return None

        if stored is None or not isinstance(stored.get("value"), dict):
            return None

        return stored["value"]
