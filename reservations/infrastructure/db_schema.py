import uuid

from sqlalchemy import (
    DECIMAL,
    JSON,
    UUID,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

from reservations.core.clock import utcnow

metadata = MetaData()

puppies_tbl = Table(
    "puppies",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("name", Text, nullable=False),
    Column("slug", Text, unique=True),
    Column("price", DECIMAL(10, 2), nullable=False),
    Column("status", Text, nullable=False),
    Column("is_archived", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
)

reservations_tbl = Table(
    "reservations",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("puppy_id", UUID(as_uuid=True), ForeignKey("puppies.id"), nullable=False, index=True),
    Column("customer_email", Text, nullable=False),
    Column("customer_name", Text),
    Column("customer_phone", Text),
    Column("channel", Text, nullable=False),
    Column("status", Text, nullable=False, index=True),
    Column("deposit_amount", DECIMAL(10, 2), nullable=False),
    Column("payment_provider", Text, nullable=False),
    Column("external_payment_id", Text, nullable=False),
    Column("expires_at", DateTime(timezone=True)),
    Column("notes", Text),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
    UniqueConstraint(
        "payment_provider",
        "external_payment_id",
        name="uq_reservations_provider_payment",
    ),
)

webhook_events_tbl = Table(
    "webhook_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", Text, nullable=False),
    Column("event_id", Text, nullable=False),
    Column("event_type", Text, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("idempotency_key", Text, index=True),
    Column("processed", Boolean, nullable=False, default=False),
    Column("processing_started_at", DateTime(timezone=True)),
    Column("processed_at", DateTime(timezone=True)),
    Column("processing_error", Text),
    Column("reservation_id", UUID(as_uuid=True), ForeignKey("reservations.id")),
    Column("created_at", DateTime(timezone=True), default=utcnow, index=True),
    UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
)

outbox_tbl = Table(
    "outbox",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("event_type", Text, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("status", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), default=utcnow),
)
