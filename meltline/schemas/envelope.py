from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ResponseMeta(BaseModel):
    api_version: str = "1.0"
    timestamp: datetime


class ErrorLocation(BaseModel):
    field: str | None = None
    track_id: str | None = None
    item_id: str | None = None
    job_id: str | None = None


class SuggestedAction(BaseModel):
    action: str
    endpoint: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class ErrorInfo(BaseModel):
    code: str
    message: str
    location: ErrorLocation | None = None
    retryable: bool = False
    suggested_fix: str | None = None  # Human-readable fix suggestion
    suggested_actions: list[SuggestedAction] = Field(default_factory=list)


class ErrorEnvelope(BaseModel):
    """Body of every error response."""

    request_id: str
    error: ErrorInfo
    meta: ResponseMeta
