"""
Delivery scheduler: owns the pending -> delivered/failed state machine.

One call to ``run_attempt`` performs at most one HTTP attempt for one
record. Waiting between attempts is the caller's job (Celery ETAs), so no
worker ever sleeps through a backoff.
"""
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
from relay.db import crud, ledger, models
from relay.schemas.event import EventPayload
from relay.services import delivery as engine
from relay.services import signing
from relay.services.backoff import DeliveryPolicy
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

TEST_EVENT = "webhook.test"
# Extra lease time beyond the HTTP timeout before another worker may take over
LEASE_GRACE_SECONDS = 30
FAILURE_RATE_WINDOW = timedelta(hours=1)


class DestinationUnavailable(Exception):
    pass


@dataclass
class ScheduleResult:
    delivery: models.Delivery
    duplicate: bool


@dataclass
class AttemptReport:
    delivery_id: int
    status: str
    attempts: int
    attempted: bool
    outcome: engine.AttemptOutcome | None = None
    retry_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "status": self.status,
            "attempts": self.attempts,
            "attempted": self.attempted,
            "outcome": self.outcome.value if self.outcome else None,
            "retry_at": self.retry_at.isoformat() if self.retry_at else None,
        }


def build_payload(
    event: str, idempotency_key: str, data: dict[str, Any], now: datetime
) -> EventPayload:
    return EventPayload(
        event=event,
        idempotency_key=idempotency_key,
        timestamp=now.isoformat(),
        data=data,
    )


class DeliveryScheduler:
    def __init__(
        self,
        db: Session,
        policy: DeliveryPolicy,
        client: httpx.Client | None = None,
        rng: random.Random | None = None,
        failure_alert_threshold: float = 0.5,
        failure_alert_min_deliveries: int = 10,
    ) -> None:
        self.db = db
        self.policy = policy
        self.client = client
        self.rng = rng or random.Random()
        self.failure_alert_threshold = failure_alert_threshold
        self.failure_alert_min_deliveries = failure_alert_min_deliveries

    # ---------- scheduling ----------
    def schedule(
        self,
        organization_id: int,
        event: str,
        idempotency_key: str,
        data: dict[str, Any],
        now: datetime | None = None,
    ) -> ScheduleResult:
        """
        Record a new delivery for (organization, idempotency key).

        A repeated key returns the existing record with ``duplicate=True``
        whatever the destination's current state. New keys need an enabled
        destination. Raises EncodingError before anything is written when
        ``data`` cannot be serialized, and PersistenceError when the ledger
        is unavailable.
        """
        now = now or models.utc_now()
        existing = ledger.find(self.db, organization_id, idempotency_key)
        if existing is not None:
            logger.info(
                f"Duplicate event {event} key={idempotency_key} for org {organization_id}: "
                f"existing status {existing.status}"
            )
            return ScheduleResult(delivery=existing, duplicate=True)

        # Only a new delivery needs somewhere to go
        destination = crud.get_destination(self.db, organization_id)
        if destination is None or not destination.enabled:
            raise DestinationUnavailable("No enabled webhook destination configured")

        payload = build_payload(event, idempotency_key, data, now).to_wire()
        signing.canonicalize(payload)

        reservation = ledger.reserve(
            self.db,
            organization_id=organization_id,
            idempotency_key=idempotency_key,
            event=event,
            payload=payload,
            webhook_url=destination.url,
            max_attempts=self.policy.max_attempts,
        )
        if reservation.already_exists:
            logger.info(
                f"Duplicate event {event} key={idempotency_key} for org {organization_id}: "
                f"existing status {reservation.existing_status}"
            )
        return ScheduleResult(
            delivery=reservation.delivery, duplicate=reservation.already_exists
        )

    # ---------- attempts ----------
    def run_attempt(self, delivery_id: int, now: datetime | None = None) -> AttemptReport:
        now = now or models.utc_now()
        delivery = self.db.query(models.Delivery).filter_by(id=delivery_id).first()
        if delivery is None:
            raise ValueError("Delivery not found")

        if delivery.is_terminal:
            return self._report(delivery, attempted=False)
        if delivery.next_attempt_at and delivery.next_attempt_at > now:
            return self._report(
                delivery, attempted=False, retry_at=delivery.next_attempt_at
            )

        destination = crud.get_destination(self.db, delivery.organization_id)
        if destination is None or not destination.enabled:
            ledger.mark_terminal(
                self.db,
                delivery.organization_id,
                delivery.idempotency_key,
                models.FAILED,
                error="Webhook destination removed or disabled",
                now=now,
            )
            self.db.refresh(delivery)
            if delivery.status == models.FAILED:
                logger.warning(
                    f"Delivery {delivery_id} failed: destination removed or disabled"
                )
                self._check_failure_rate(delivery.organization_id, now)
            return self._report(delivery, attempted=False)

        observed_attempts = delivery.attempts
        lease = self.policy.timeout_seconds + LEASE_GRACE_SECONDS
        if not ledger.claim(self.db, delivery, observed_attempts, lease, now=now):
            logger.info(f"Delivery {delivery_id} is held by another worker")
            self.db.refresh(delivery)
            return self._report(delivery, attempted=False)

        payload = delivery.payload
        signature = signing.sign(payload, destination.secret)
        result = engine.attempt(
            delivery.webhook_url,
            payload,
            signature,
            timeout=self.policy.timeout_seconds,
            client=self.client,
        )

        status, retry_at = self._transition(
            observed_attempts + 1, delivery.max_attempts, result.outcome, now
        )
        stored = ledger.record_attempt(
            self.db,
            delivery,
            observed_attempts,
            status=status,
            status_code=result.status_code,
            error=result.error,
            next_attempt_at=retry_at,
            now=now,
        )
        if not stored:
            logger.info(
                f"Discarded {result.outcome.value} for delivery {delivery_id}: "
                f"record is already {delivery.status}"
            )
            return self._report(delivery, attempted=True, outcome=result.outcome)

        if status == models.FAILED:
            logger.warning(
                f"Delivery {delivery_id} failed after {delivery.attempts} attempt(s): "
                f"{result.error}"
            )
            self._check_failure_rate(delivery.organization_id, now)
        elif status == models.DELIVERED:
            logger.info(
                f"Delivery {delivery_id} delivered on attempt {delivery.attempts}"
            )
        else:
            logger.info(
                f"Delivery {delivery_id} attempt {delivery.attempts} failed "
                f"({result.error}), retrying at {retry_at.isoformat()}"
            )
        return self._report(
            delivery, attempted=True, outcome=result.outcome, retry_at=retry_at
        )

    def _transition(
        self,
        attempts: int,
        max_attempts: int,
        outcome: engine.AttemptOutcome,
        now: datetime,
    ) -> tuple[str, datetime | None]:
        if outcome is engine.AttemptOutcome.SUCCESS:
            return models.DELIVERED, None
        if outcome is engine.AttemptOutcome.PERMANENT_FAILURE:
            return models.FAILED, None
        if attempts >= max_attempts:
            return models.FAILED, None
        delay = self.policy.delay_for(attempts, self.rng)
        return models.PENDING, now + timedelta(seconds=delay)

    def _report(self, delivery: models.Delivery, **kwargs) -> AttemptReport:
        return AttemptReport(
            delivery_id=delivery.id,
            status=delivery.status,
            attempts=delivery.attempts,
            **kwargs,
        )

    def _check_failure_rate(self, organization_id: int, now: datetime) -> None:
        stats = crud.delivery_stats(
            self.db, organization_id, since=now - FAILURE_RATE_WINDOW
        )
        finished = stats.delivered + stats.failed
        if (
            finished >= self.failure_alert_min_deliveries
            and stats.failure_rate > self.failure_alert_threshold
        ):
            logger.error(
                f"Webhook failure rate for org {organization_id} is "
                f"{stats.failure_rate:.0%} over the last hour ({stats.failed}/{finished})"
            )

    # ---------- administrative ----------
    def cancel(self, delivery: models.Delivery, now: datetime | None = None) -> bool:
        now = now or models.utc_now()
        cancelled = ledger.cancel(self.db, delivery, now=now)
        self.db.refresh(delivery)
        if cancelled and delivery.status == models.FAILED:
            self._check_failure_rate(delivery.organization_id, now)
            return True
        return False

    def redrive(self, delivery: models.Delivery, now: datetime | None = None) -> bool:
        """Start a fresh attempt cycle for a failed delivery, re-stamping its timestamp."""
        now = now or models.utc_now()
        payload = dict(delivery.payload)
        payload["timestamp"] = now.isoformat()
        return ledger.redrive(
            self.db, delivery, payload, self.policy.max_attempts, now=now
        )

    def send_test(
        self, organization_id: int, now: datetime | None = None
    ) -> engine.AttemptResult:
        """One attempt of a test event outside the retry loop; nothing is persisted."""
        now = now or models.utc_now()
        destination = crud.get_destination(self.db, organization_id)
        if destination is None:
            raise DestinationUnavailable("No webhook destination configured")

        payload = build_payload(
            TEST_EVENT,
            f"test_{uuid.uuid4().hex}",
            {"message": "This is a test webhook"},
            now,
        ).to_wire()
        signature = signing.sign(payload, destination.secret)
        return engine.attempt(
            destination.url,
            payload,
            signature,
            timeout=self.policy.timeout_seconds,
            client=self.client,
        )
