"""
FastAPI application entry point.

Control service receiving out-of-band signals from platform webhooks:
abort requests for a tester's recorded runs and timeout notifications.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from jobtester import __version__
from jobtester.infra.notifier import Notifier
from jobtester.infra.settings import get_settings
from jobtester.platform.client import PlatformClient
from .dependencies.auth import verify_api_key
from .routers import control


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Opens one platform client for the service lifetime and builds the
    notifier from SLACK_* / NOTIFY_EMAIL settings.
    """
    settings = get_settings()
    client = PlatformClient(settings.api_url, settings.token)

    app.state.client = client
    app.state.notifier = Notifier(
        client=client,
        slack_token=settings.slack_token,
        slack_channel=settings.slack_channel,
        email=settings.notify_email,
    )

    yield

    await client.aclose()


tags_metadata = [
    {
        "name": "control",
        "description": "Out-of-band signals - abort recorded runs, notify about timeouts",
    },
]

app = FastAPI(
    title="jobtester control API",
    lifespan=lifespan,
    description="""
## jobtester control API

Receives webhooks registered by tester runs.

### Authentication
When `JOBTESTER_API_AUTH_ENABLED=true`, all endpoints except `/health` require
an `X-API-Key` header matching the `JOBTESTER_API_KEY` environment variable.

### Usage
```bash
jobtester serve --host 0.0.0.0 --port 8000

curl -X POST http://localhost:8000/control/abort \\
  -H "Content-Type: application/json" \\
  -d '{"kv": "STORE_ID"}'
```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)


# Health check - NO authentication
@app.get("/health")
async def health_check():
    """Health check endpoint. Not authenticated."""
    return {"status": "ok", "version": __version__}


app.include_router(
    control.router,
    prefix="/control",
    tags=["control"],
    dependencies=[Depends(verify_api_key)],
)
