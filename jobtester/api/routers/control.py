"""
Control router for out-of-band signals.

- POST /control/abort - abort every run recorded in a store's CALLS
- POST /control/timeout - send a one-shot timeout notification

Both are targets of platform webhooks registered by a tester run.
Neither touches the fingerprint cache beyond reading it.
"""

import logging

from fastapi import APIRouter, Depends, Request

from jobtester.engine.recovery import abort_recorded_runs
from jobtester.infra.notifier import Notifier, build_timeout_notification
from jobtester.infra.storage import RemoteKeyValueStore
from jobtester.platform.client import PlatformClient
from ..schemas.control import AbortRequest, AbortResponse, TimeoutRequest, TimeoutResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def get_client(request: Request) -> PlatformClient:
    return request.app.state.client


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


@router.post("/abort", response_model=AbortResponse)
async def abort_runs(
    body: AbortRequest,
    client: PlatformClient = Depends(get_client),
) -> AbortResponse:
    """
    Abort every run recorded in the CALLS record of the given store.

    Runs that are already finished are reported under errors. An
    unreadable CALLS record aborts nothing.
    """
    logger.info(f"[Control] Abort requested for store {body.kv}")

    stats = await abort_recorded_runs(client, RemoteKeyValueStore(client, body.kv))

    return AbortResponse(kv=body.kv, aborted=stats["aborted"], errors=stats["errors"])


@router.post("/timeout", response_model=TimeoutResponse)
async def notify_timeout(
    body: TimeoutRequest,
    notifier: Notifier = Depends(get_notifier),
) -> TimeoutResponse:
    """Send the timeout notification to every configured channel."""
    logger.info(f"[Control] Timeout reported for '{body.test_name}'")

    delivered = await notifier.notify(build_timeout_notification(body.test_name, body.run_url))
    return TimeoutResponse(delivered=delivered)
