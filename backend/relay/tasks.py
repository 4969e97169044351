import logging
from datetime import timedelta

from relay.celery_app import celery
from relay.core.config import get_settings
from relay.db import ledger, models
from relay.db.session import SessionLocal
from relay.services.scheduler import DeliveryScheduler

logger = logging.getLogger(__name__)


def build_scheduler(session) -> DeliveryScheduler:
    settings = get_settings()
    return DeliveryScheduler(
        session,
        settings.delivery_policy(),
        failure_alert_threshold=settings.failure_alert_threshold,
        failure_alert_min_deliveries=settings.failure_alert_min_deliveries,
    )


@celery.task(bind=True)
def deliver_webhook(self, delivery_id: str, session=None):
    logger.info(f"Starting deliver_webhook task with delivery_id={delivery_id}")
    if session is None:
        session = SessionLocal()
        should_close = True
    else:
        should_close = False

    try:
        try:
            delivery_id = int(delivery_id)
        except (TypeError, ValueError):
            raise ValueError("Invalid delivery ID")

        report = build_scheduler(session).run_attempt(delivery_id)

        # Early or duplicate messages are dropped; the sweeper covers lost ones
        if report.attempted and report.retry_at and report.status == models.PENDING:
            deliver_webhook.apply_async(args=[delivery_id], eta=report.retry_at)
        return report.as_dict()
    finally:
        if should_close:
            session.close()


@celery.task
def sweep_due_deliveries(session=None, limit: int = 100):
    """Re-enqueue pending deliveries whose task was lost (broker loss, restarts)."""
    if session is None:
        session = SessionLocal()
        should_close = True
    else:
        should_close = False

    try:
        due = ledger.due_deliveries(session, limit=limit)
        for delivery in due:
            deliver_webhook.apply_async(args=[delivery.id])
        if due:
            logger.info(f"Sweeper re-enqueued {len(due)} due deliveries")
        return len(due)
    finally:
        if should_close:
            session.close()


@celery.task
def prune_ledger(session=None):
    settings = get_settings()
    if session is None:
        session = SessionLocal()
        should_close = True
    else:
        should_close = False

    try:
        cutoff = models.utc_now() - timedelta(days=settings.ledger_retention_days)
        deliveries, received = ledger.prune(session, cutoff)
        logger.info(
            f"Pruned {deliveries} deliveries and {received} received events older than {cutoff.isoformat()}"
        )
        return {"deliveries": deliveries, "received_events": received}
    finally:
        if should_close:
            session.close()
