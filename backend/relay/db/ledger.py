"""
Idempotency ledger and atomic state changes for delivery records.

Every mutation of a delivery's status or attempt count goes through a
compare-and-swap ``UPDATE ... WHERE`` so concurrent workers can never
double-send or double-terminate the same record.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from relay.db import models
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    pass


@dataclass
class Reservation:
    delivery: models.Delivery
    already_exists: bool

    @property
    def existing_status(self) -> str | None:
        return self.delivery.status if self.already_exists else None


@contextmanager
def _store_errors(db: Session, operation: str):
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Ledger {operation} failed: {exc}")
        raise PersistenceError(f"{operation} failed") from exc


def find(db: Session, organization_id: int, idempotency_key: str):
    with _store_errors(db, "find"):
        return (
            db.query(models.Delivery)
            .filter_by(organization_id=organization_id, idempotency_key=idempotency_key)
            .first()
        )


def reserve(
    db: Session,
    organization_id: int,
    idempotency_key: str,
    event: str,
    payload: dict[str, Any],
    webhook_url: str,
    max_attempts: int,
) -> Reservation:
    """
    Insert the delivery for (organization, key) unless it already exists.

    The unique constraint arbitrates concurrent callers: the loser's insert
    fails, it rolls back and returns the winner's record.
    """
    with _store_errors(db, "reserve"):
        existing = find(db, organization_id, idempotency_key)
        if existing:
            return Reservation(delivery=existing, already_exists=True)

        delivery = models.Delivery(
            organization_id=organization_id,
            idempotency_key=idempotency_key,
            event=event,
            payload=payload,
            webhook_url=webhook_url,
            status=models.PENDING,
            attempts=0,
            max_attempts=max_attempts,
        )
        db.add(delivery)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = find(db, organization_id, idempotency_key)
            if existing is None:
                raise
            logger.info(
                f"Lost reservation race for org={organization_id} key={idempotency_key}"
            )
            return Reservation(delivery=existing, already_exists=True)
        db.refresh(delivery)
        return Reservation(delivery=delivery, already_exists=False)


def mark_terminal(
    db: Session,
    organization_id: int,
    idempotency_key: str,
    status: str,
    error: str | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Move a pending delivery to ``delivered`` or ``failed``.

    Returns True if the record is in ``status`` afterwards. A record already
    terminal in the other status is left untouched.
    """
    if status not in models.TERMINAL_STATUSES:
        raise ValueError(f"Not a terminal status: {status}")
    now = now or models.utc_now()
    values: dict[Any, Any] = {
        models.Delivery.status: status,
        models.Delivery.lease_expires_at: None,
        models.Delivery.next_attempt_at: None,
        models.Delivery.updated_at: now,
    }
    if status == models.DELIVERED:
        values[models.Delivery.delivered_at] = now
    if error is not None:
        values[models.Delivery.last_error] = error

    with _store_errors(db, "mark_terminal"):
        updated = (
            db.query(models.Delivery)
            .filter(
                models.Delivery.organization_id == organization_id,
                models.Delivery.idempotency_key == idempotency_key,
                models.Delivery.status == models.PENDING,
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
        if updated:
            return True
        current = find(db, organization_id, idempotency_key)
        return current is not None and current.status == status


def cancel(db: Session, delivery: models.Delivery, now: datetime | None = None) -> bool:
    return mark_terminal(
        db,
        delivery.organization_id,
        delivery.idempotency_key,
        models.FAILED,
        error="Cancelled by administrator",
        now=now,
    )


def claim(
    db: Session,
    delivery: models.Delivery,
    observed_attempts: int,
    lease_seconds: float,
    now: datetime | None = None,
) -> bool:
    """Take the exclusive right to run the next attempt of ``delivery``."""
    now = now or models.utc_now()
    with _store_errors(db, "claim"):
        updated = (
            db.query(models.Delivery)
            .filter(
                models.Delivery.id == delivery.id,
                models.Delivery.status == models.PENDING,
                models.Delivery.attempts == observed_attempts,
                or_(
                    models.Delivery.lease_expires_at.is_(None),
                    models.Delivery.lease_expires_at <= now,
                ),
            )
            .update(
                {models.Delivery.lease_expires_at: now + timedelta(seconds=lease_seconds)},
                synchronize_session=False,
            )
        )
        db.commit()
        return bool(updated)


def record_attempt(
    db: Session,
    delivery: models.Delivery,
    observed_attempts: int,
    status: str,
    status_code: int | None,
    error: str | None,
    next_attempt_at: datetime | None,
    now: datetime | None = None,
) -> bool:
    """
    Store the outcome of the attempt claimed at ``observed_attempts``.

    Returns False when the record changed underneath (cancelled or taken
    over), in which case the outcome is discarded.
    """
    now = now or models.utc_now()
    values: dict[Any, Any] = {
        models.Delivery.status: status,
        models.Delivery.attempts: observed_attempts + 1,
        models.Delivery.last_attempt_at: now,
        models.Delivery.last_status_code: status_code,
        models.Delivery.last_error: error[:500] if error else None,
        models.Delivery.next_attempt_at: next_attempt_at,
        models.Delivery.lease_expires_at: None,
        models.Delivery.updated_at: now,
    }
    if status == models.DELIVERED:
        values[models.Delivery.delivered_at] = now

    with _store_errors(db, "record_attempt"):
        updated = (
            db.query(models.Delivery)
            .filter(
                models.Delivery.id == delivery.id,
                models.Delivery.status == models.PENDING,
                models.Delivery.attempts == observed_attempts,
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
        db.refresh(delivery)
        return bool(updated)


def redrive(
    db: Session,
    delivery: models.Delivery,
    payload: dict[str, Any],
    max_attempts: int,
    now: datetime | None = None,
) -> bool:
    """Administrative reset of a failed delivery into a fresh pending cycle."""
    now = now or models.utc_now()
    with _store_errors(db, "redrive"):
        updated = (
            db.query(models.Delivery)
            .filter(
                models.Delivery.id == delivery.id,
                models.Delivery.status == models.FAILED,
            )
            .update(
                {
                    models.Delivery.status: models.PENDING,
                    models.Delivery.attempts: 0,
                    models.Delivery.max_attempts: max_attempts,
                    models.Delivery.payload: payload,
                    models.Delivery.next_attempt_at: None,
                    models.Delivery.lease_expires_at: None,
                    models.Delivery.last_status_code: None,
                    models.Delivery.last_error: None,
                    models.Delivery.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(delivery)
        return bool(updated)


def due_deliveries(db: Session, now: datetime | None = None, limit: int = 100):
    """Pending deliveries whose next attempt is due and that no worker holds."""
    now = now or models.utc_now()
    with _store_errors(db, "due_deliveries"):
        return (
            db.query(models.Delivery)
            .filter(
                models.Delivery.status == models.PENDING,
                or_(
                    models.Delivery.next_attempt_at.is_(None),
                    models.Delivery.next_attempt_at <= now,
                ),
                or_(
                    models.Delivery.lease_expires_at.is_(None),
                    models.Delivery.lease_expires_at <= now,
                ),
            )
            .order_by(models.Delivery.next_attempt_at, models.Delivery.id)
            .limit(limit)
            .all()
        )


def prune(db: Session, older_than: datetime) -> tuple[int, int]:
    """Delete terminal deliveries and received keys past the retention window."""
    with _store_errors(db, "prune"):
        deliveries = (
            db.query(models.Delivery)
            .filter(
                models.Delivery.status.in_(models.TERMINAL_STATUSES),
                models.Delivery.updated_at < older_than,
            )
            .delete(synchronize_session=False)
        )
        received = (
            db.query(models.ReceivedEvent)
            .filter(models.ReceivedEvent.received_at < older_than)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deliveries, received
