from relay.db import crud, models, schemas
from relay.services.scheduler import build_payload


def test_organization_and_api_key(db):
    organization = crud.create_organization(db, schemas.OrganizationCreate(name="Acme"))
    raw = crud.issue_api_key(db, organization.id)

    assert organization.token
    assert crud.verify_api_key(db, raw).id == organization.id
    assert crud.verify_api_key(db, "wrong_key") is None
    assert crud.get_organization_by_token(db, organization.token).id == organization.id


def test_upsert_destination_generates_and_keeps_secret(db, test_org):
    organization = crud.create_organization(db, schemas.OrganizationCreate(name="Acme"))
    created = crud.upsert_destination(
        db,
        organization.id,
        schemas.DestinationCreate(url="https://hooks.acme.example/in"),
    )
    assert created.secret.startswith("whsec_")
    secret = created.secret

    updated = crud.upsert_destination(
        db,
        organization.id,
        schemas.DestinationCreate(url="https://hooks.acme.example/v2", enabled=False),
    )
    assert updated.id == created.id
    assert updated.url == "https://hooks.acme.example/v2"
    assert updated.enabled is False
    assert updated.secret == secret


def test_rotate_destination_secret(db, test_org):
    destination = crud.get_destination(db, test_org.id)
    old = destination.secret
    rotated = crud.rotate_destination_secret(db, destination)
    assert rotated.secret != old
    assert rotated.secret.startswith("whsec_")


def test_delivery_stats(db, test_org):
    statuses = {
        "a": models.DELIVERED,
        "b": models.DELIVERED,
        "c": models.FAILED,
        "d": models.PENDING,
    }
    for key, status in statuses.items():
        db.add(
            models.Delivery(
                organization_id=test_org.id,
                idempotency_key=key,
                event="order.created",
                payload={},
                webhook_url="https://hooks.example.com/webhook",
                status=status,
                max_attempts=3,
            )
        )
    db.commit()

    stats = crud.delivery_stats(db, test_org.id)
    assert stats.delivered == 2
    assert stats.failed == 1
    assert stats.pending == 1
    assert stats.failure_rate == 1 / 3


def test_delivery_stats_empty(db, test_org):
    stats = crud.delivery_stats(db, test_org.id)
    assert stats.failure_rate == 0.0


def test_record_received_event_deduplicates(db, test_org):
    payload = build_payload(
        "order.created", "evt_001", {"id": 1}, models.utc_now()
    )
    assert crud.record_received_event(db, test_org.id, payload) is True
    assert crud.record_received_event(db, test_org.id, payload) is False
    assert db.query(models.ReceivedEvent).count() == 1
