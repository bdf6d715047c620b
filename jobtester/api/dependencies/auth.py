"""
Shared-secret check for the control API.

Webhooks registered by a tester run carry the key in an X-API-Key header
(set through the webhook's headers template). The check is off unless
JOBTESTER_API_AUTH_ENABLED is set; the expected key is JOBTESTER_API_KEY.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from jobtester.infra.settings import Settings, get_settings

logger = logging.getLogger(__name__)

webhook_key_header = APIKeyHeader(
    name="X-API-Key",
    auto_error=False,
    description="Shared secret of the control service (JOBTESTER_API_KEY)",
)


def _reject(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


async def verify_api_key(
    api_key: Optional[str] = Security(webhook_key_header),
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    """
    Require the configured key on control endpoints.

    Raises:
        HTTPException: 401 when auth is enabled and the key is missing or wrong,
            or when auth is enabled without a configured key

    Returns:
        The accepted key, or None when auth is disabled
    """
    if not settings.api_auth_enabled:
        return None

    if not settings.api_key:
        logger.error("[Auth] JOBTESTER_API_AUTH_ENABLED is set but JOBTESTER_API_KEY is empty")
        raise _reject("Control API key is not configured")

    if not api_key:
        raise _reject("Missing API key. Provide X-API-Key header.")

    if not hmac.compare_digest(api_key.encode(), settings.api_key.encode()):
        logger.warning("[Auth] Rejected control request with an invalid key")
        raise _reject("Invalid API key")

    return api_key
