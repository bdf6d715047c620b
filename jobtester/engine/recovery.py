"""
Out-of-band cancellation.

When the tester run is aborted or times out, the jobs it started keep
running on the platform. The tester registers a webhook on its own run;
the webhook delivers the store id holding CALLS to either the control
service or a fresh tester run, which then aborts every recorded run.

Aborting is idempotent: running it twice only repeats abort requests.
"""

import logging
from typing import Optional

from .errors import RemoteInvocationError
from .fingerprint import CALLS_KEY, FingerprintCache
from jobtester.infra.settings import Settings
from jobtester.infra.storage import KeyValueStore
from jobtester.platform.client import PlatformClient

logger = logging.getLogger(__name__)

ABORT_EVENT_TYPES = ["ACTOR.RUN.ABORTED", "ACTOR.RUN.TIMED_OUT"]
TIMEOUT_EVENT_TYPES = ["ACTOR.RUN.TIMED_OUT"]


async def abort_recorded_runs(
    client: PlatformClient,
    store: KeyValueStore,
    key: str = CALLS_KEY,
) -> dict:
    """
    Abort every run recorded in a persisted fingerprint cache.

    A failing abort (already finished, gone) is logged and skipped.

    Returns:
        {"aborted": [run ids], "errors": [messages]}
    """
    cache = await FingerprintCache.load(store, key)
    stats = {"aborted": [], "errors": []}

    for record in cache.records():
        logger.info(f"[Recovery] Aborting run {record.run_id}")
        try:
            await client.abort_run(record.run_id)
            stats["aborted"].append(record.run_id)
        except RemoteInvocationError as e:
            logger.warning(f"[Recovery] Could not abort run {record.run_id}: {e}")
            stats["errors"].append(f"{record.run_id}: {e}")

    logger.info(
        f"[Recovery] Abort complete: {len(stats['aborted'])} aborted, "
        f"{len(stats['errors'])} errors"
    )

    return stats


async def register_abort_webhook(
    client: PlatformClient,
    settings: Settings,
    token: Optional[str] = None,
) -> Optional[dict]:
    """
    Ask the platform to signal an abort once this run ends abnormally.

    With a control service configured the webhook targets it; otherwise it
    starts a new run of this actor with isAbortSignal set.

    Returns:
        The webhook object, or None when not running on the platform
    """
    if not settings.is_on_platform or not settings.actor_id:
        logger.debug("[Recovery] Not on the platform, skipping abort webhook")
        return None

    if settings.control_url:
        request_url = f"{settings.control_url}/control/abort"
        payload = {"kv": settings.default_kv_id}
    else:
        actor_path = settings.actor_id.replace("/", "~")
        request_url = f"{settings.api_url}/v2/acts/{actor_path}/runs?token={token or settings.token or ''}"
        payload = {"isAbortSignal": True, "kv": settings.default_kv_id}

    return await client.add_webhook(
        event_types=ABORT_EVENT_TYPES,
        request_url=request_url,
        idempotency_key=settings.run_id,
        payload_template=payload,
        run_id=settings.run_id,
    )


async def register_timeout_webhook(
    client: PlatformClient,
    settings: Settings,
    test_name: str,
    run_url: Optional[str] = None,
) -> Optional[dict]:
    """
    Ask the control service to send a timeout notification for this run.

    Only meaningful with a control service; returns None otherwise.
    """
    if not settings.is_on_platform or not settings.control_url:
        return None

    return await client.add_webhook(
        event_types=TIMEOUT_EVENT_TYPES,
        request_url=f"{settings.control_url}/control/timeout",
        idempotency_key=f"{settings.run_id}-timeout",
        payload_template={"testName": test_name, "runUrl": run_url},
        run_id=settings.run_id,
    )
