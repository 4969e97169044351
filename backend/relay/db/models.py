from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Delivery status values
PENDING = "pending"
DELIVERED = "delivered"
FAILED = "failed"
TERMINAL_STATUSES = (DELIVERED, FAILED)


def utc_now():
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class Organization(Base):
    __tablename__ = "organizations"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    token = Column(String, unique=True, nullable=False)
    # Shared secret for deliveries received on /in/{token}
    inbound_signing_secret = Column(String, nullable=True)
    created_at = Column(UTCDateTime, default=utc_now)

    api_keys = relationship("ApiKey", back_populates="organization")
    destination = relationship(
        "WebhookDestination", back_populates="organization", uselist=False
    )


class ApiKey(Base):
    __tablename__ = "api_keys"
    id = Column(Integer, primary_key=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE")
    )
    hashed_key = Column(String, nullable=False)
    created_at = Column(UTCDateTime, default=utc_now)

    organization = relationship("Organization", back_populates="api_keys")


class WebhookDestination(Base):
    __tablename__ = "webhook_destinations"
    id = Column(Integer, primary_key=True)
    organization_id = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    url = Column(String, nullable=False)
    secret = Column(String, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)

    organization = relationship("Organization", back_populates="destination")


class Delivery(Base):
    """Outbound delivery; doubles as the idempotency ledger entry."""

    __tablename__ = "deliveries"
    id = Column(Integer, primary_key=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    idempotency_key = Column(String(255), nullable=False)
    event = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=False)
    webhook_url = Column(String, nullable=False)
    status = Column(String(16), nullable=False, default=PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    next_attempt_at = Column(UTCDateTime, nullable=True)
    lease_expires_at = Column(UTCDateTime, nullable=True)
    last_attempt_at = Column(UTCDateTime, nullable=True)
    last_status_code = Column(Integer, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)
    delivered_at = Column(UTCDateTime, nullable=True)

    organization = relationship("Organization")

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "idempotency_key", name="uq_delivery_org_key"
        ),
        Index("ix_delivery_due", "status", "next_attempt_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Delivery id={self.id} key={self.idempotency_key!r} "
            f"status={self.status} attempts={self.attempts}>"
        )


class ReceivedEvent(Base):
    """Idempotency store for deliveries accepted by the receiver endpoint."""

    __tablename__ = "received_events"
    id = Column(Integer, primary_key=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    idempotency_key = Column(String(255), nullable=False)
    event = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=False)
    received_at = Column(UTCDateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "idempotency_key", name="uq_received_org_key"
        ),
    )
