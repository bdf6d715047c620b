"""
Async REST client for the remote execution platform.

Speaks the Apify API v2 shape over httpx:
- invoke actors/tasks without waiting (waitForFinish=0)
- read run status, logs and artifact stores
- abort / metamorph runs and register ad-hoc webhooks

Every non-2xx response becomes a RemoteInvocationError; reads that allow a
missing resource return None on 404.
"""

import json
import logging
from typing import Any, Optional

import httpx

from jobtester import __version__
from jobtester.engine.errors import RemoteInvocationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


def _path_id(resource_id: str) -> str:
    """Platform ids like "user/actor" are addressed as "user~actor"."""
    return resource_id.replace("/", "~")


class PlatformClient:
    """
    Thin async wrapper over the platform REST API.

    Usage:
        async with PlatformClient(base_url, token) as client:
            run = await client.get_run(run_id)
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"User-Agent": f"jobtester/{__version__}"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "PlatformClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json_body: Any = None,
        allow_not_found: bool = False,
    ) -> Optional[httpx.Response]:
        try:
            response = await self._http.request(method, path, params=params, json=json_body)
        except httpx.HTTPError as e:
            raise RemoteInvocationError(f"{method} {path} failed: {e}") from e

        if allow_not_found and response.status_code == 404:
            return None

        if not 200 <= response.status_code < 300:
            raise RemoteInvocationError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        return response

    async def _get_data(self, path: str, allow_not_found: bool = False) -> Optional[dict]:
        response = await self._request("GET", path, allow_not_found=allow_not_found)
        if response is None:
            return None
        return response.json().get("data")

    # =========================================================================
    # Jobs and runs
    # =========================================================================

    async def start_actor(self, actor_id: str, run_input: dict, options: Optional[dict] = None) -> dict:
        """Start an actor run and return immediately with the run object."""
        return await self._start(f"/v2/acts/{_path_id(actor_id)}/runs", run_input, options)

    async def start_task(self, task_id: str, run_input: dict, options: Optional[dict] = None) -> dict:
        """Start a task run and return immediately with the run object."""
        return await self._start(f"/v2/actor-tasks/{_path_id(task_id)}/runs", run_input, options)

    async def _start(self, path: str, run_input: dict, options: Optional[dict]) -> dict:
        params = {k: v for k, v in (options or {}).items() if v is not None}
        params["waitForFinish"] = 0
        response = await self._request("POST", path, params=params, json_body=run_input)
        return response.json()["data"]

    async def get_run(self, run_id: str) -> Optional[dict]:
        return await self._get_data(f"/v2/actor-runs/{run_id}", allow_not_found=True)

    async def abort_run(self, run_id: str) -> dict:
        response = await self._request("POST", f"/v2/actor-runs/{run_id}/abort")
        return response.json()["data"]

    async def metamorph_run(self, run_id: str, target_actor_id: str, run_input: dict) -> dict:
        """Replace the running process of a run with a fresh one."""
        response = await self._request(
            "POST",
            f"/v2/actor-runs/{run_id}/metamorph",
            params={"targetActorId": _path_id(target_actor_id)},
            json_body=run_input,
        )
        return response.json()["data"]

    async def get_log(self, run_id: str) -> Optional[str]:
        response = await self._request("GET", f"/v2/logs/{run_id}", allow_not_found=True)
        return None if response is None else response.text

    # =========================================================================
    # Templates
    # =========================================================================

    async def get_actor(self, actor_id: str) -> Optional[dict]:
        return await self._get_data(f"/v2/acts/{_path_id(actor_id)}", allow_not_found=True)

    async def get_task(self, task_id: str) -> Optional[dict]:
        return await self._get_data(f"/v2/actor-tasks/{_path_id(task_id)}", allow_not_found=True)

    async def get_build(self, build_id: str) -> Optional[dict]:
        return await self._get_data(f"/v2/actor-builds/{build_id}", allow_not_found=True)

    # =========================================================================
    # Storages
    # =========================================================================

    async def get_record(self, store_id: str, key: str) -> Optional[dict]:
        """
        Read one record from a key/value store.

        Returns:
            {"key", "value", "contentType"} or None when the record is missing
        """
        response = await self._request(
            "GET",
            f"/v2/key-value-stores/{store_id}/records/{key}",
            params={"disableRedirect": "true"},
            allow_not_found=True,
        )
        if response is None:
            return None

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            value = response.json()
        elif content_type.startswith("text/"):
            value = response.text
        else:
            value = response.content

        return {"key": key, "value": value, "contentType": content_type}

    async def set_record(self, store_id: str, key: str, value: Any) -> None:
        await self._request(
            "PUT",
            f"/v2/key-value-stores/{store_id}/records/{key}",
            json_body=value,
        )

    async def get_dataset(self, dataset_id: str) -> Optional[dict]:
        return await self._get_data(f"/v2/datasets/{dataset_id}", allow_not_found=True)

    async def list_items(self, dataset_id: str, options: Optional[dict] = None) -> dict:
        """
        List dataset items.

        Returns:
            {"items", "total", "offset", "count", "limit"}
        """
        params = {"format": "json"}
        params.update({k: v for k, v in (options or {}).items() if v is not None})
        response = await self._request("GET", f"/v2/datasets/{dataset_id}/items", params=params)

        items = response.json()
        headers = response.headers

        def _header_int(name: str, default: int) -> int:
            try:
                return int(headers.get(name, default))
            except (TypeError, ValueError):
                return default

        return {
            "items": items,
            "total": _header_int("x-apify-pagination-total", len(items)),
            "offset": _header_int("x-apify-pagination-offset", 0),
            "count": len(items),
            "limit": _header_int("x-apify-pagination-limit", len(items)),
        }

    async def get_request_queue(self, queue_id: str) -> Optional[dict]:
        return await self._get_data(f"/v2/request-queues/{queue_id}", allow_not_found=True)

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def add_webhook(
        self,
        event_types: list[str],
        request_url: str,
        idempotency_key: str,
        payload_template: dict,
        run_id: str,
    ) -> dict:
        """Register an ad-hoc webhook bound to one run."""
        body = {
            "isAdHoc": True,
            "eventTypes": event_types,
            "condition": {"actorRunId": run_id},
            "requestUrl": request_url,
            "idempotencyKey": idempotency_key,
            "payloadTemplate": json.dumps(payload_template),
        }
        response = await self._request("POST", "/v2/webhooks", json_body=body)
        logger.info(f"[Platform] Registered webhook for {event_types} -> {request_url}")
        return response.json()["data"]
