"""
Pytest configuration and shared fixtures.

FakePlatformClient mirrors the async surface of PlatformClient with
in-memory runs, records and datasets, and records every write call.
"""

from typing import Any, Optional

import pytest

from jobtester.engine.errors import RemoteInvocationError
from jobtester.infra.storage import KeyValueStore


class MemoryKeyValueStore(KeyValueStore):
    """In-memory store counting writes per key."""

    def __init__(self, initial: Optional[dict] = None):
        self.values = dict(initial or {})
        self.writes: list[str] = []

    async def get_value(self, key: str) -> Optional[Any]:
        return self.values.get(key)

    async def set_value(self, key: str, value: Any) -> None:
        self.writes.append(key)
        self.values[key] = value


class FakePlatformClient:
    """
    In-memory platform.

    - status_plan: statuses returned by successive get_run calls of a new run;
      the last one sticks
    - outputs: target id -> OUTPUT value written into the run's store on start
    - final_status: target id -> status overriding the plan's end state
    """

    def __init__(self):
        self.status_plan = ["SUCCEEDED"]
        self.outputs: dict[str, Any] = {}
        self.final_status: dict[str, str] = {}
        self.runs: dict[str, dict] = {}
        self.records: dict[tuple, Any] = {}
        self.logs: dict[str, str] = {}
        self.datasets: dict[str, dict] = {}
        self.items: dict[str, list] = {}
        self.queues: dict[str, dict] = {}
        self.actors: dict[str, dict] = {}
        self.tasks: dict[str, dict] = {}
        self.builds: dict[str, dict] = {}
        self.missing_actors: set[str] = set()
        self.fail_get_run = False
        self.fail_abort: set[str] = set()

        self.started: list[dict] = []
        self.aborted: list[str] = []
        self.metamorphs: list[dict] = []
        self.webhooks: list[dict] = []
        self.get_run_calls = 0
        self._plans: dict[str, list] = {}
        self._seq = 0

    # Jobs and runs

    async def start_actor(self, actor_id: str, run_input: dict, options: Optional[dict] = None) -> dict:
        return self._start("actor", actor_id, actor_id, run_input, options)

    async def start_task(self, task_id: str, run_input: dict, options: Optional[dict] = None) -> dict:
        act_id = self.tasks.get(task_id, {}).get("actId", f"actor-of-{task_id}")
        return self._start("task", task_id, act_id, run_input, options)

    def _start(self, kind: str, target: str, act_id: str, run_input: dict, options: Optional[dict]) -> dict:
        self._seq += 1
        run_id = f"run{self._seq}"
        run = {
            "id": run_id,
            "actId": act_id,
            "status": "READY",
            "defaultDatasetId": f"ds{self._seq}",
            "defaultKeyValueStoreId": f"kv{self._seq}",
            "defaultRequestQueueId": f"rq{self._seq}",
            "buildNumber": "0.1.2",
            "startedAt": "2024-01-01T00:00:00.000Z",
            "stats": {"computeUnits": 0.1},
        }
        self.runs[run_id] = run
        self.records[(run["defaultKeyValueStoreId"], "INPUT")] = run_input

        plan = list(self.status_plan)
        if target in self.final_status:
            plan[-1] = self.final_status[target]
        self._plans[run_id] = plan

        if target in self.outputs:
            self.records[(run["defaultKeyValueStoreId"], "OUTPUT")] = self.outputs[target]

        self.started.append({
            "kind": kind,
            "target": target,
            "input": run_input,
            "options": options,
            "run_id": run_id,
        })
        return dict(run)

    async def get_run(self, run_id: str) -> Optional[dict]:
        self.get_run_calls += 1
        if self.fail_get_run:
            raise RemoteInvocationError("GET run failed", status_code=500)

        run = self.runs.get(run_id)
        if run is None:
            return None

        plan = self._plans.get(run_id) or []
        if plan:
            run["status"] = plan.pop(0) if len(plan) > 1 else plan[0]
        return dict(run)

    async def abort_run(self, run_id: str) -> dict:
        if run_id in self.fail_abort:
            raise RemoteInvocationError(f"Run {run_id} already finished", status_code=400)
        self.aborted.append(run_id)
        return {"id": run_id, "status": "ABORTING"}

    async def metamorph_run(self, run_id: str, target_actor_id: str, run_input: dict) -> dict:
        self.metamorphs.append({"run_id": run_id, "target": target_actor_id, "input": run_input})
        return {"id": run_id}

    async def get_log(self, run_id: str) -> Optional[str]:
        return self.logs.get(run_id)

    # Templates

    async def get_actor(self, actor_id: str) -> Optional[dict]:
        if actor_id in self.missing_actors:
            return None
        default_name = actor_id.replace("~", "/").split("/")[-1]
        return self.actors.get(actor_id, {"id": actor_id, "name": default_name})

    async def get_task(self, task_id: str) -> Optional[dict]:
        return self.tasks.get(task_id)

    async def get_build(self, build_id: str) -> Optional[dict]:
        return self.builds.get(build_id)

    # Storages

    async def get_record(self, store_id: str, key: str) -> Optional[dict]:
        if (store_id, key) not in self.records:
            return None
        return {
            "key": key,
            "value": self.records[(store_id, key)],
            "contentType": "application/json; charset=utf-8",
        }

    async def set_record(self, store_id: str, key: str, value: Any) -> None:
        self.records[(store_id, key)] = value

    async def get_dataset(self, dataset_id: str) -> Optional[dict]:
        return self.datasets.get(dataset_id)

    async def list_items(self, dataset_id: str, options: Optional[dict] = None) -> dict:
        items = list(self.items.get(dataset_id, []))
        options = options or {}
        offset = options.get("offset", 0)
        limit = options.get("limit")
        page = items[offset:offset + limit] if limit is not None else items[offset:]
        return {
            "items": page,
            "total": len(items),
            "offset": offset,
            "count": len(page),
            "limit": limit if limit is not None else len(page),
        }

    async def get_request_queue(self, queue_id: str) -> Optional[dict]:
        return self.queues.get(queue_id)

    # Webhooks

    async def add_webhook(
        self,
        event_types: list[str],
        request_url: str,
        idempotency_key: str,
        payload_template: dict,
        run_id: str,
    ) -> dict:
        webhook = {
            "event_types": event_types,
            "request_url": request_url,
            "idempotency_key": idempotency_key,
            "payload_template": payload_template,
            "run_id": run_id,
        }
        self.webhooks.append(webhook)
        return webhook


class SleepRecorder:
    """Awaitable stand-in for asyncio.sleep that returns immediately."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_client():
    """In-memory platform client."""
    return FakePlatformClient()


@pytest.fixture
def memory_store():
    """Empty in-memory key/value store."""
    return MemoryKeyValueStore()


@pytest.fixture
def no_sleep():
    """Sleep replacement recording requested durations."""
    return SleepRecorder()


@pytest.fixture(autouse=True)
def control_auth_disabled(monkeypatch):
    """Control API auth stays off unless a test turns it on."""
    monkeypatch.delenv("JOBTESTER_API_AUTH_ENABLED", raising=False)
    monkeypatch.delenv("JOBTESTER_API_KEY", raising=False)
