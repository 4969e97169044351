import random

from pydantic import BaseModel, ConfigDict, Field, model_validator


class DeliveryPolicy(BaseModel):
    """Retry budget and backoff for outbound deliveries.

    The delay before attempt N+1 is ``base * 2**(N-1)``, stretched by up to
    ``jitter_ratio`` and then capped at ``max_delay_seconds``. Jitter never
    exceeds 100%, so a delay can never be shorter than the one before it.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1, le=20)
    base_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float = Field(default=300.0, gt=0)
    jitter_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _cap_not_below_base(self) -> "DeliveryPolicy":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-indexed)."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        delay = self.base_delay_seconds * (2 ** (attempt - 1))
        if self.jitter_ratio:
            delay *= 1 + (rng or random).uniform(0, self.jitter_ratio)
        return min(delay, self.max_delay_seconds)

    def max_total_delay(self) -> float:
        # Upper bound of all waits between the first and the last attempt
        total = 0.0
        for attempt in range(1, self.max_attempts):
            worst = self.base_delay_seconds * (2 ** (attempt - 1)) * (1 + self.jitter_ratio)
            total += min(worst, self.max_delay_seconds)
        return total
