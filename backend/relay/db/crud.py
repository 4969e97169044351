import secrets
from datetime import datetime

from passlib.hash import bcrypt
from relay.db import models, schemas
from relay.schemas.event import EventPayload
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session


def generate_webhook_secret() -> str:
    return f"whsec_{secrets.token_urlsafe(32)}"


def create_organization(
    db: Session, data: schemas.OrganizationCreate
) -> models.Organization:
    token = secrets.token_urlsafe(16)
    organization = models.Organization(name=data.name, token=token)
    db.add(organization)
    db.commit()
    db.refresh(organization)
    return organization


def issue_api_key(db: Session, organization_id: int) -> str:
    raw = secrets.token_urlsafe(24)
    hashed = bcrypt.hash(raw)
    key = models.ApiKey(organization_id=organization_id, hashed_key=hashed)
    db.add(key)
    db.commit()
    return raw


def verify_api_key(db: Session, raw: str):
    for ak in db.query(models.ApiKey).all():
        if bcrypt.verify(raw, ak.hashed_key):
            return ak.organization
    return None


def get_organization_by_token(db: Session, token: str):
    return db.query(models.Organization).filter_by(token=token).first()


def get_destination(db: Session, organization_id: int):
    return (
        db.query(models.WebhookDestination)
        .filter_by(organization_id=organization_id)
        .first()
    )


def upsert_destination(
    db: Session, organization_id: int, data: schemas.DestinationCreate
) -> models.WebhookDestination:
    destination = get_destination(db, organization_id)
    if destination:
        destination.url = str(data.url)
        destination.enabled = data.enabled
        if data.secret:
            destination.secret = data.secret
    else:
        destination = models.WebhookDestination(
            organization_id=organization_id,
            url=str(data.url),
            secret=data.secret or generate_webhook_secret(),
            enabled=data.enabled,
        )
        db.add(destination)
    db.commit()
    db.refresh(destination)
    return destination


def rotate_destination_secret(
    db: Session, destination: models.WebhookDestination
) -> models.WebhookDestination:
    destination.secret = generate_webhook_secret()
    db.commit()
    db.refresh(destination)
    return destination


def set_inbound_secret(
    db: Session, organization: models.Organization, secret: str
) -> models.Organization:
    organization.inbound_signing_secret = secret
    db.commit()
    db.refresh(organization)
    return organization


def get_delivery(db: Session, organization_id: int, delivery_id: int):
    return (
        db.query(models.Delivery)
        .filter_by(id=delivery_id, organization_id=organization_id)
        .first()
    )


def list_deliveries(
    db: Session, organization_id: int, status: str | None = None, limit: int = 100
):
    query = db.query(models.Delivery).filter_by(organization_id=organization_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(models.Delivery.created_at.desc()).limit(limit).all()


def delivery_stats(
    db: Session, organization_id: int, since: datetime | None = None
) -> schemas.DeliveryStats:
    query = db.query(models.Delivery.status, func.count(models.Delivery.id)).filter(
        models.Delivery.organization_id == organization_id
    )
    if since is not None:
        query = query.filter(models.Delivery.created_at >= since)
    counts = dict(query.group_by(models.Delivery.status).all())

    delivered = counts.get(models.DELIVERED, 0)
    failed = counts.get(models.FAILED, 0)
    finished = delivered + failed
    return schemas.DeliveryStats(
        pending=counts.get(models.PENDING, 0),
        delivered=delivered,
        failed=failed,
        failure_rate=failed / finished if finished else 0.0,
    )


def record_received_event(
    db: Session, organization_id: int, payload: EventPayload
) -> bool:
    """Persist an accepted inbound delivery; False if the key was already processed."""
    exists = (
        db.query(models.ReceivedEvent)
        .filter_by(
            organization_id=organization_id, idempotency_key=payload.idempotency_key
        )
        .first()
    )
    if exists:
        return False
    db.add(
        models.ReceivedEvent(
            organization_id=organization_id,
            idempotency_key=payload.idempotency_key,
            event=payload.event,
            payload=payload.to_wire(),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True
