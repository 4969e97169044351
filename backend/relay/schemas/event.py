from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventPayload(BaseModel):
    """Body of every outbound delivery, exactly as it is signed."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    event: str = Field(..., min_length=1, max_length=255, description="Event type")
    idempotency_key: str = Field(
        ..., alias="idempotencyKey", min_length=1, max_length=255
    )
    # Kept as the original string so re-signing never changes the bytes
    timestamp: str = Field(..., description="ISO-8601 construction time")
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _iso_timestamp(cls, value: str) -> str:
        parse_timestamp(value)
        return value

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    @property
    def sent_at(self) -> datetime:
        return parse_timestamp(self.timestamp)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are rejected."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        raise ValueError("timestamp must carry a UTC offset")
    return parsed
