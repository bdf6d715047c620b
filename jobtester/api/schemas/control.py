"""
Control endpoint schemas.

Bodies arrive from platform webhooks, so camelCase keys are accepted.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AbortRequest(BaseModel):
    """Abort every run recorded in a store's CALLS record."""

    kv: str = Field(..., min_length=1, description="Key/value store id holding CALLS")


class AbortResponse(BaseModel):
    """Result of an abort request."""

    kv: str = Field(..., description="Store the runs were read from")
    aborted: List[str] = Field(default=[], description="Run ids an abort was requested for")
    errors: List[str] = Field(default=[], description="Runs that could not be aborted")


class TimeoutRequest(BaseModel):
    """Send a one-shot timeout notification."""

    model_config = ConfigDict(populate_by_name=True)

    test_name: str = Field(..., alias="testName", min_length=1, description="Display name of the test run")
    run_url: Optional[str] = Field(default=None, alias="runUrl", description="Deep link to the timed-out run")


class TimeoutResponse(BaseModel):
    """Which channels the notification went to."""

    delivered: Dict[str, bool] = Field(default={}, description="Channel -> delivered")
