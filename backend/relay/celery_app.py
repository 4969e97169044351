import logging

from celery import Celery
from relay.core.config import get_settings

settings = get_settings()
logging.basicConfig(level=settings.log_level)

celery = Celery(
    "relay",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

# Import tasks
celery.conf.imports = ["relay.tasks"]

# Set task routes
celery.conf.task_routes = {
    "relay.tasks.deliver_webhook": {"queue": "deliveries"},
    "relay.tasks.sweep_due_deliveries": {"queue": "maintenance"},
    "relay.tasks.prune_ledger": {"queue": "maintenance"},
}

# A worker lost mid-attempt must not ack; the lease lets another worker retry
celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1

celery.conf.beat_schedule = {
    "sweep-due-deliveries": {
        "task": "relay.tasks.sweep_due_deliveries",
        "schedule": float(settings.sweep_interval_seconds),
    },
    "prune-ledger": {
        "task": "relay.tasks.prune_ledger",
        "schedule": 24 * 60 * 60.0,
    },
}
