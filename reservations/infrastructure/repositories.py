import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import Row, and_, case, delete, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reservations.core.clock import as_utc, utcnow
from reservations.core.models import (
    ACTIVE_RESERVATION_STATUSES,
    EventTypeEnum,
    OutboxEvent,
    OutboxEventStatus,
    PaymentProviderEnum,
    Puppy,
    PuppyStatusEnum,
    Reservation,
    ReservationChannelEnum,
    ReservationStatusEnum,
    WebhookEvent,
)
from reservations.infrastructure.db_schema import (
    outbox_tbl,
    puppies_tbl,
    reservations_tbl,
    webhook_events_tbl,
)


class DoesNotExist(Exception):
    pass


def _uuid(value: str | uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise DoesNotExist(f"Malformed id {value!r}") from e


def _holds_puppy():
    """Correlated check: some pending or paid reservation still holds the puppy row."""
    return (
        select(reservations_tbl.c.id)
        .where(
            reservations_tbl.c.puppy_id == puppies_tbl.c.id,
            reservations_tbl.c.status.in_(ACTIVE_RESERVATION_STATUSES),
        )
        .exists()
    )


class PuppyRepository:
    class CreateDTO(BaseModel):
        name: str
        slug: str | None = None
        price: Decimal
        status: PuppyStatusEnum = PuppyStatusEnum.AVAILABLE
        is_archived: bool = False

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> Puppy:
        if row is None:
            raise DoesNotExist

        return Puppy(
            id=str(row._mapping["id"]),
            name=row._mapping["name"],
            slug=row._mapping["slug"],
            price=row._mapping["price"],
            status=row._mapping["status"],
            is_archived=row._mapping["is_archived"],
        )

    async def create(self, puppy: CreateDTO) -> Puppy:
        stmt = (
            insert(puppies_tbl)
            .values(
                {
                    "name": puppy.name,
                    "slug": puppy.slug,
                    "price": puppy.price,
                    "status": puppy.status,
                    "is_archived": puppy.is_archived,
                }
            )
            .returning(puppies_tbl)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def get_by_id(self, puppy_id: str) -> Puppy:
        stmt = select(puppies_tbl).where(puppies_tbl.c.id == _uuid(puppy_id))
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def reserve(self, puppy_id: str) -> Puppy | None:
        """Flip available -> reserved in a single conditional statement.

        Returns None when the puppy is missing, archived or already taken, so
        of any number of concurrent callers at most one gets the puppy back.
        """
        stmt = (
            update(puppies_tbl)
            .where(
                puppies_tbl.c.id == _uuid(puppy_id),
                puppies_tbl.c.status == PuppyStatusEnum.AVAILABLE,
                puppies_tbl.c.is_archived.is_(False),
            )
            .values(status=PuppyStatusEnum.RESERVED)
            .returning(puppies_tbl)
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()

        return None if row is None else self._construct(row)

    async def release(self, puppy_id: str) -> bool:
        stmt = (
            update(puppies_tbl)
            .where(
                puppies_tbl.c.id == _uuid(puppy_id),
                puppies_tbl.c.status == PuppyStatusEnum.RESERVED,
                ~_holds_puppy(),
            )
            .values(status=PuppyStatusEnum.AVAILABLE)
            .returning(puppies_tbl.c.id)
        )
        result = await self._session.execute(stmt)

        return result.fetchone() is not None

    async def is_available(self, puppy_id: str) -> bool:
        try:
            puppy = await self.get_by_id(puppy_id)
        except DoesNotExist:
            return False

        return puppy.status == PuppyStatusEnum.AVAILABLE and not puppy.is_archived

    async def get_orphaned_reserved(self) -> list[Puppy]:
        stmt = select(puppies_tbl).where(
            puppies_tbl.c.status == PuppyStatusEnum.RESERVED, ~_holds_puppy()
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]


class ReservationRepository:
    class CreateDTO(BaseModel):
        puppy_id: str
        customer_email: str
        customer_name: str | None = None
        customer_phone: str | None = None
        channel: ReservationChannelEnum = ReservationChannelEnum.SITE
        status: ReservationStatusEnum = ReservationStatusEnum.PENDING
        deposit_amount: Decimal
        payment_provider: PaymentProviderEnum
        external_payment_id: str
        expires_at: datetime | None = None
        notes: str | None = None

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> Reservation:
        if row is None:
            raise DoesNotExist

        return Reservation(
            id=str(row._mapping["id"]),
            puppy_id=str(row._mapping["puppy_id"]),
            customer_email=row._mapping["customer_email"],
            customer_name=row._mapping["customer_name"],
            customer_phone=row._mapping["customer_phone"],
            channel=row._mapping["channel"],
            status=row._mapping["status"],
            deposit_amount=row._mapping["deposit_amount"],
            payment_provider=row._mapping["payment_provider"],
            external_payment_id=row._mapping["external_payment_id"],
            expires_at=as_utc(row._mapping["expires_at"]),
            notes=row._mapping["notes"],
            created_at=as_utc(row._mapping["created_at"]),
        )

    async def create(self, reservation: CreateDTO) -> Reservation:
        stmt = (
            insert(reservations_tbl)
            .values(
                {
                    "puppy_id": _uuid(reservation.puppy_id),
                    "customer_email": reservation.customer_email,
                    "customer_name": reservation.customer_name,
                    "customer_phone": reservation.customer_phone,
                    "channel": reservation.channel,
                    "status": reservation.status,
                    "deposit_amount": reservation.deposit_amount,
                    "payment_provider": reservation.payment_provider,
                    "external_payment_id": reservation.external_payment_id,
                    "expires_at": reservation.expires_at,
                    "notes": reservation.notes,
                }
            )
            .returning(reservations_tbl)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def get_by_id(self, reservation_id: str) -> Reservation:
        stmt = select(reservations_tbl).where(
            reservations_tbl.c.id == _uuid(reservation_id)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def find_by_payment(
        self, provider: PaymentProviderEnum, external_payment_id: str
    ) -> Reservation | None:
        stmt = select(reservations_tbl).where(
            reservations_tbl.c.payment_provider == provider,
            reservations_tbl.c.external_payment_id == external_payment_id,
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()

        return None if row is None else self._construct(row)

    async def list_for_puppy(self, puppy_id: str) -> list[Reservation]:
        stmt = (
            select(reservations_tbl)
            .where(reservations_tbl.c.puppy_id == _uuid(puppy_id))
            .order_by(reservations_tbl.c.created_at)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]

    async def transition(
        self,
        reservation_id: str,
        from_statuses: tuple[ReservationStatusEnum, ...],
        to_status: ReservationStatusEnum,
        note: str | None = None,
    ) -> Reservation | None:
        """Conditionally move a reservation between statuses.

        Returns None when the reservation is no longer in one of
        `from_statuses`. A `note` is appended to the existing notes.
        """
        values = {"status": to_status}
        if note:
            values["notes"] = case(
                (reservations_tbl.c.notes.is_(None), note),
                else_=reservations_tbl.c.notes + "\n" + note,
            )

        stmt = (
            update(reservations_tbl)
            .where(
                reservations_tbl.c.id == _uuid(reservation_id),
                reservations_tbl.c.status.in_(from_statuses),
            )
            .values(values)
            .returning(reservations_tbl)
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()

        return None if row is None else self._construct(row)

    async def get_expired_pending(
        self, now: datetime, limit: int = 100
    ) -> list[Reservation]:
        stmt = (
            select(reservations_tbl)
            .where(
                reservations_tbl.c.status == ReservationStatusEnum.PENDING,
                reservations_tbl.c.expires_at.is_not(None),
                reservations_tbl.c.expires_at < now,
            )
            .order_by(reservations_tbl.c.expires_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]

    async def expire(self, reservation_id: str, now: datetime) -> Reservation | None:
        stmt = (
            update(reservations_tbl)
            .where(
                reservations_tbl.c.id == _uuid(reservation_id),
                reservations_tbl.c.status == ReservationStatusEnum.PENDING,
                reservations_tbl.c.expires_at < now,
            )
            .values(status=ReservationStatusEnum.EXPIRED)
            .returning(reservations_tbl)
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()

        return None if row is None else self._construct(row)


class WebhookEventRepository:
    class CreateDTO(BaseModel):
        provider: PaymentProviderEnum
        event_id: str
        event_type: str
        payload: dict
        idempotency_key: str | None = None

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> WebhookEvent:
        if row is None:
            raise DoesNotExist

        reservation_id = row._mapping["reservation_id"]
        return WebhookEvent(
            id=row._mapping["id"],
            provider=row._mapping["provider"],
            event_id=row._mapping["event_id"],
            event_type=row._mapping["event_type"],
            payload=row._mapping["payload"],
            idempotency_key=row._mapping["idempotency_key"],
            processed=row._mapping["processed"],
            processing_started_at=as_utc(row._mapping["processing_started_at"]),
            processed_at=as_utc(row._mapping["processed_at"]),
            processing_error=row._mapping["processing_error"],
            reservation_id=None if reservation_id is None else str(reservation_id),
            created_at=as_utc(row._mapping["created_at"]),
        )

    async def create(
        self, event: CreateDTO, processing_started_at: datetime | None = None
    ) -> WebhookEvent:
        stmt = (
            insert(webhook_events_tbl)
            .values(
                {
                    "provider": event.provider,
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "payload": event.payload,
                    "idempotency_key": event.idempotency_key,
                    "processed": False,
                    "processing_started_at": processing_started_at,
                }
            )
            .returning(webhook_events_tbl)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def get_by_id(self, webhook_event_id: int) -> WebhookEvent:
        stmt = select(webhook_events_tbl).where(
            webhook_events_tbl.c.id == webhook_event_id
        )
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def get_by_event_id(
        self, provider: PaymentProviderEnum, event_id: str
    ) -> WebhookEvent | None:
        stmt = select(webhook_events_tbl).where(
            webhook_events_tbl.c.provider == provider,
            webhook_events_tbl.c.event_id == event_id,
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()

        return None if row is None else self._construct(row)

    async def get_by_idempotency_key(
        self, provider: PaymentProviderEnum, idempotency_key: str
    ) -> WebhookEvent | None:
        stmt = (
            select(webhook_events_tbl)
            .where(
                webhook_events_tbl.c.provider == provider,
                webhook_events_tbl.c.idempotency_key == idempotency_key,
            )
            .order_by(webhook_events_tbl.c.id)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()

        return None if row is None else self._construct(row)

    async def mark_processed(
        self,
        webhook_event_id: int,
        reservation_id: str | None = None,
        error: str | None = None,
    ) -> None:
        values = {
            "processed": True,
            "processed_at": utcnow(),
            "processing_error": error,
        }
        if reservation_id is not None:
            values["reservation_id"] = _uuid(reservation_id)

        stmt = (
            update(webhook_events_tbl)
            .where(webhook_events_tbl.c.id == webhook_event_id)
            .values(values)
        )
        await self._session.execute(stmt)

    async def record_error(self, webhook_event_id: int, error: str) -> None:
        """Store the error and drop the lock, leaving the entry open for redelivery."""
        stmt = (
            update(webhook_events_tbl)
            .where(webhook_events_tbl.c.id == webhook_event_id)
            .values(
                processed=False,
                processing_started_at=None,
                processing_error=error,
            )
        )
        await self._session.execute(stmt)

    async def lock(self, webhook_event_id: int, stale_before: datetime) -> bool:
        stmt = (
            update(webhook_events_tbl)
            .where(
                webhook_events_tbl.c.id == webhook_event_id,
                webhook_events_tbl.c.processed.is_(False),
                or_(
                    webhook_events_tbl.c.processing_started_at.is_(None),
                    webhook_events_tbl.c.processing_started_at < stale_before,
                ),
            )
            .values(processing_started_at=utcnow())
            .returning(webhook_events_tbl.c.id)
        )
        result = await self._session.execute(stmt)

        return result.fetchone() is not None

    async def delete_processed_before(self, cutoff: datetime) -> int:
        stmt = (
            delete(webhook_events_tbl)
            .where(
                webhook_events_tbl.c.processed.is_(True),
                webhook_events_tbl.c.created_at < cutoff,
            )
            .returning(webhook_events_tbl.c.id)
        )
        result = await self._session.execute(stmt)

        return len(result.fetchall())

    async def get_pending(
        self, stale_before: datetime, limit: int = 10
    ) -> list[WebhookEvent]:
        stmt = (
            select(webhook_events_tbl)
            .where(
                webhook_events_tbl.c.processed.is_(False),
                or_(
                    webhook_events_tbl.c.processing_started_at.is_(None),
                    webhook_events_tbl.c.processing_started_at < stale_before,
                ),
            )
            .order_by(webhook_events_tbl.c.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]

    async def get_created_since(
        self, since: datetime, provider: PaymentProviderEnum | None = None
    ) -> list[WebhookEvent]:
        conditions = [webhook_events_tbl.c.created_at >= since]
        if provider is not None:
            conditions.append(webhook_events_tbl.c.provider == provider)

        stmt = (
            select(webhook_events_tbl)
            .where(and_(*conditions))
            .order_by(webhook_events_tbl.c.created_at)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]


class OutboxRepository:
    class CreateDTO(BaseModel):
        event_type: EventTypeEnum
        payload: dict

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> OutboxEvent:
        if row is None:
            raise DoesNotExist

        return OutboxEvent(
            id=str(row._mapping["id"]),
            event_type=row._mapping["event_type"],
            payload=row._mapping["payload"],
            status=row._mapping["status"],
            created_at=as_utc(row._mapping["created_at"]),
        )

    async def create(self, event: CreateDTO) -> OutboxEvent:
        stmt = (
            insert(outbox_tbl)
            .values(
                {
                    "event_type": event.event_type,
                    "payload": event.payload,
                    "status": OutboxEventStatus.PENDING,
                }
            )
            .returning(outbox_tbl)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def get_pending_events(self, limit: int = 100) -> list[OutboxEvent]:
        stmt = (
            select(outbox_tbl)
            .where(outbox_tbl.c.status == OutboxEventStatus.PENDING)
            .order_by(outbox_tbl.c.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]

    async def get_by_id(self, event_id: str) -> OutboxEvent:
        stmt = select(outbox_tbl).where(outbox_tbl.c.id == _uuid(event_id))
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def mark_as_sent(self, event_id: str) -> None:
        stmt = (
            update(outbox_tbl)
            .where(outbox_tbl.c.id == _uuid(event_id))
            .values(status=OutboxEventStatus.SENT)
        )
        await self._session.execute(stmt)
