from functools import lru_cache

from pydantic_settings import BaseSettings

from relay.services.backoff import DeliveryPolicy


class Settings(BaseSettings):
    database_url: str
    redis_url: str = "redis://localhost:6379/0"
    allowed_origins: str = "http://localhost:3000"
    log_level: str = "INFO"
    rate_limit_enabled: bool = True

    # Destination URL validation; relax only for local development
    allow_insecure_webhook_urls: bool = False
    allow_private_webhook_targets: bool = False

    webhook_max_attempts: int = 5
    webhook_base_delay_seconds: float = 1.0
    webhook_max_delay_seconds: float = 300.0
    webhook_jitter_ratio: float = 0.5
    webhook_timeout_seconds: float = 30.0

    replay_window_seconds: int = 300
    ledger_retention_days: int = 30
    sweep_interval_seconds: int = 30

    failure_alert_threshold: float = 0.5
    failure_alert_min_deliveries: int = 10

    model_config = {"env_file": ".env", "extra": "ignore"}

    def delivery_policy(self) -> DeliveryPolicy:
        return DeliveryPolicy(
            max_attempts=self.webhook_max_attempts,
            base_delay_seconds=self.webhook_base_delay_seconds,
            max_delay_seconds=self.webhook_max_delay_seconds,
            jitter_ratio=self.webhook_jitter_ratio,
            timeout_seconds=self.webhook_timeout_seconds,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
