from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


class OrganizationCreate(BaseModel):
    name: str


class OrganizationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    token: str


class DestinationCreate(BaseModel):
    url: HttpUrl
    secret: Optional[str] = Field(default=None, min_length=16)
    enabled: bool = True


class DestinationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    url: str
    enabled: bool
    updated_at: datetime


class DestinationWithSecret(DestinationOut):
    secret: str


class InboundSecretUpdate(BaseModel):
    signing_secret: str = Field(..., min_length=16)


class EventCreate(BaseModel):
    event: str = Field(..., min_length=1, max_length=255)
    idempotency_key: str = Field(..., min_length=1, max_length=255)
    data: dict[str, Any] = Field(default_factory=dict)


class DeliveryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    idempotency_key: str
    event: str
    webhook_url: str
    status: str
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime]
    last_status_code: Optional[int]
    last_error: Optional[str]
    created_at: datetime
    delivered_at: Optional[datetime]


class ScheduleResponse(BaseModel):
    duplicate: bool
    delivery: DeliveryOut


class DeliveryStats(BaseModel):
    pending: int = 0
    delivered: int = 0
    failed: int = 0
    failure_rate: float = 0.0


class WebhookTestResult(BaseModel):
    outcome: str
    status_code: Optional[int]
    error: Optional[str]
    duration_ms: int
