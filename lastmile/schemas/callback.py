from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CallbackOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    source_type: str
    source_id: str
    event_type: str
    external_id: str | None
    status: str
    attempts: int
    next_attempt_at: datetime | None
    last_attempt_at: datetime | None
    delivered_at: datetime | None
    dead_lettered_at: datetime | None
    last_error: str | None
    last_status_code: int | None
    status_detail: str | None


class CallbackAttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    callback_id: str
    attempt_number: int
    status: str
    url: str
    status_code: int | None
    error_code: str | None
    error_message: str | None
    elapsed_ms: int | None
    request: dict
    response: dict
    created_at: datetime


class CallbackSendResult(BaseModel):
    success: bool
    status_code: int | None
    message: str
    response: dict = Field(default_factory=dict)


class CallbackTestRequest(BaseModel):
    url: str = Field(min_length=1, max_length=500)
    api_key: str | None = None
