import logging
import os
import tempfile
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import pytest
from celery import Task
from fastapi.testclient import TestClient
from passlib.hash import bcrypt
from sqlalchemy.orm import Session

# Set test environment variables
test_db_url = os.getenv(
    "DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'relay_test.db'}"
)
os.environ.update(
    {
        "DATABASE_URL": test_db_url,
        "REDIS_URL": "redis://localhost:6379/2",  # Use a separate Redis DB for testing
        "RATE_LIMIT_ENABLED": "false",
        "WEBHOOK_MAX_ATTEMPTS": "3",
        "WEBHOOK_BASE_DELAY_SECONDS": "1",
        "WEBHOOK_JITTER_RATIO": "0",
        "WEBHOOK_TIMEOUT_SECONDS": "5",
    }
)

# Import app modules after setting environment variables
from relay.db import models
from relay.db.models import Base
from relay.db.session import SessionLocal, engine
from relay.services.backoff import DeliveryPolicy
from relay.services.scheduler import DeliveryScheduler

logger = logging.getLogger(__name__)

DESTINATION_URL = "https://hooks.example.com/webhook"
DESTINATION_SECRET = "whsec_test_secret_value"
API_KEY = "test_key"


@pytest.fixture(autouse=True)
def celery_task_always_eager():
    with patch.object(Task, "apply_async") as mock:

        class MockAsyncResult:
            def __init__(self):
                self.id = "mock-task-id"

        mock.return_value = MockAsyncResult()
        yield mock


@pytest.fixture(autouse=True)
def setup_database():
    # Drop all tables first to ensure clean state
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def db(setup_database) -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def policy() -> DeliveryPolicy:
    return DeliveryPolicy(
        max_attempts=3,
        base_delay_seconds=1.0,
        max_delay_seconds=10.0,
        jitter_ratio=0.0,
        timeout_seconds=5.0,
    )


@pytest.fixture
def scheduler(db, policy) -> DeliveryScheduler:
    return DeliveryScheduler(db, policy)


@pytest.fixture
def test_org(db: Session) -> models.Organization:
    organization = models.Organization(name="TestOrg", token="test_token")
    db.add(organization)
    db.commit()
    db.refresh(organization)

    db.add(models.ApiKey(organization_id=organization.id, hashed_key=bcrypt.hash(API_KEY)))
    db.add(
        models.WebhookDestination(
            organization_id=organization.id,
            url=DESTINATION_URL,
            secret=DESTINATION_SECRET,
        )
    )
    db.commit()
    db.refresh(organization)
    logger.info(f"Created test organization with ID {organization.id}")
    return organization


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {API_KEY}"}


@pytest.fixture
def public_dns(monkeypatch):
    """Resolve every webhook host to a public address."""
    monkeypatch.setattr(
        "relay.services.url_guard._resolve", lambda host: ["93.184.216.34"]
    )


@pytest.fixture
def client(db):
    from relay.main import app, db_session

    app.dependency_overrides[db_session] = lambda: db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
