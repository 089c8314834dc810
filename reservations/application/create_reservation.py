import logging
import re
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from reservations.application.ledger import WebhookEventParams, WebhookLedger
from reservations.core.clock import utcnow
from reservations.core.models import (
    ErrorCode,
    EventTypeEnum,
    PaymentProviderEnum,
    Puppy,
    Reservation,
    ReservationChannelEnum,
    ReservationResult,
    ReservationStatusEnum,
)
from reservations.infrastructure.repositories import OutboxRepository, ReservationRepository
from reservations.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-()]+$")
PAYMENT_ID_PATTERNS = {
    PaymentProviderEnum.STRIPE: re.compile(r"^pi_\w+$"),
    PaymentProviderEnum.PAYPAL: re.compile(r"^[A-Za-z0-9_-]{1,64}$"),
}
PAID_AMOUNT_TOLERANCE = Decimal("0.01")


class ReservationRequest(BaseModel):
    puppy_id: str
    customer_email: str
    customer_name: str | None = None
    customer_phone: str | None = None
    channel: str | None = None
    deposit_amount: Decimal
    payment_provider: str
    external_payment_id: str
    expires_at: datetime | None = None
    notes: str | None = None


class ReservationDraft(BaseModel):
    """A reservation request that passed validation and normalisation."""

    model_config = ConfigDict(str_strip_whitespace=True)

    puppy_id: str
    customer_email: str
    customer_name: str | None = Field(default=None, max_length=100)
    customer_phone: str | None = None
    channel: ReservationChannelEnum = ReservationChannelEnum.SITE
    deposit_amount: Decimal = Field(ge=Decimal("0.01"), le=Decimal("999999.99"))
    payment_provider: PaymentProviderEnum
    external_payment_id: str = Field(min_length=1)
    expires_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("puppy_id")
    @classmethod
    def _canonical_uuid(cls, value: str) -> str:
        try:
            return str(uuid.UUID(value))
        except ValueError as e:
            raise ValueError("puppy_id must be a valid UUID") from e

    @field_validator("customer_email")
    @classmethod
    def _email(cls, value: str) -> str:
        value = value.lower()
        if not EMAIL_RE.match(value):
            raise ValueError("invalid email address")
        return value

    @field_validator("customer_phone")
    @classmethod
    def _phone(cls, value: str | None) -> str | None:
        if not value:
            return None
        if not 10 <= len(value) <= 20 or not PHONE_RE.match(value):
            raise ValueError("invalid phone number")
        return value

    @field_validator("channel", mode="before")
    @classmethod
    def _default_channel(cls, value):
        return value or ReservationChannelEnum.SITE

    @field_validator("customer_name", "notes")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None

    @model_validator(mode="after")
    def _payment_id_matches_provider(self):
        if not PAYMENT_ID_PATTERNS[self.payment_provider].match(self.external_payment_id):
            raise ValueError(
                f"invalid {self.payment_provider} payment id {self.external_payment_id!r}"
            )
        return self


class ReservationCreationError(Exception):
    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def describe_validation_error(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'request'}: {err['msg']}"
        for err in error.errors()
    )


class CreateReservationUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        ledger: WebhookLedger,
        hold_hours: int = 24,
    ):
        self._unit_of_work = unit_of_work
        self._ledger = ledger
        self._hold = timedelta(hours=hold_hours)

    async def __call__(
        self,
        request: ReservationRequest,
        webhook_event: WebhookEventParams | None = None,
    ) -> ReservationResult:
        try:
            draft = ReservationDraft.model_validate(request.model_dump())
        except ValidationError as e:
            return self._failure(ErrorCode.VALIDATION_ERROR, describe_validation_error(e))

        try:
            check = await self._ledger.check_event(
                draft.payment_provider, draft.external_payment_id
            )
        except SQLAlchemyError as e:
            logger.error(f"Ledger lookup failed for {draft.external_payment_id}: {e}", exc_info=True)
            return self._failure(ErrorCode.DATABASE_ERROR, "Failed to check existing reservations")

        if check.exists and check.reservation is not None:
            logger.info(
                f"Reservation {check.reservation.id} already exists for payment "
                f"{draft.payment_provider}:{draft.external_payment_id}"
            )
            return ReservationResult(
                success=True, reservation=check.reservation, already_exists=True
            )

        try:
            reservation = await self._create_in_transaction(draft, webhook_event)
        except ReservationCreationError as e:
            if e.code == ErrorCode.RACE_CONDITION_LOST:
                return await self._resolve_race(draft, e.message)
            return self._failure(e.code, e.message)
        except IntegrityError:
            return await self._resolve_race(
                draft, "Reservation for this payment was created concurrently"
            )
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to create reservation for puppy {draft.puppy_id}: {e}", exc_info=True
            )
            return self._failure(ErrorCode.DATABASE_ERROR, "Failed to create reservation")

        logger.info(
            f"Created reservation {reservation.id} for puppy {reservation.puppy_id} "
            f"({reservation.payment_provider}:{reservation.external_payment_id})"
        )
        return ReservationResult(success=True, reservation=reservation)

    async def _create_in_transaction(
        self, draft: ReservationDraft, webhook_event: WebhookEventParams | None
    ) -> Reservation:
        async with self._unit_of_work() as uow:
            # The gate must be the first statement of the transaction
            puppy = await uow.puppies.reserve(draft.puppy_id)
            if puppy is None:
                raise ReservationCreationError(
                    ErrorCode.RACE_CONDITION_LOST, "Puppy is no longer available"
                )

            if draft.deposit_amount > puppy.price:
                raise ReservationCreationError(
                    ErrorCode.VALIDATION_ERROR,
                    f"Deposit amount {draft.deposit_amount} exceeds puppy price {puppy.price}",
                )

            ledger_entry = None
            if webhook_event is not None:
                created = await self._ledger.create_event(webhook_event, uow=uow)
                if not created.success:
                    raise ReservationCreationError(
                        ErrorCode.DATABASE_ERROR,
                        created.error or "Failed to record webhook event",
                    )
                if created.is_duplicate:
                    raise ReservationCreationError(
                        ErrorCode.RACE_CONDITION_LOST,
                        "Webhook event is already being processed",
                    )
                ledger_entry = created.webhook_event

            reservation = await uow.reservations.create(
                ReservationRepository.CreateDTO(
                    puppy_id=draft.puppy_id,
                    customer_email=draft.customer_email,
                    customer_name=draft.customer_name,
                    customer_phone=draft.customer_phone,
                    channel=draft.channel,
                    deposit_amount=draft.deposit_amount,
                    payment_provider=draft.payment_provider,
                    external_payment_id=draft.external_payment_id,
                    expires_at=draft.expires_at or utcnow() + self._hold,
                    notes=draft.notes,
                )
            )

            if ledger_entry is not None:
                await self._ledger.mark_processed(
                    ledger_entry.id, reservation_id=reservation.id, uow=uow
                )

            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    event_type=EventTypeEnum.RESERVATION_CREATED,
                    payload=self._event_payload(reservation, puppy),
                )
            )
            await uow.commit()
            return reservation

    async def _resolve_race(self, draft: ReservationDraft, message: str) -> ReservationResult:
        """A twin request for the same payment may have won; hand back its reservation."""
        try:
            async with self._unit_of_work() as uow:
                existing = await uow.reservations.find_by_payment(
                    draft.payment_provider, draft.external_payment_id
                )
        except SQLAlchemyError:
            logger.warning(
                f"Could not look up reservation for {draft.external_payment_id}", exc_info=True
            )
            existing = None

        if existing is not None:
            return ReservationResult(success=True, reservation=existing, already_exists=True)

        logger.info(f"Lost reservation race for puppy {draft.puppy_id}: {message}")
        return self._failure(ErrorCode.RACE_CONDITION_LOST, message)

    async def create_confirmed(
        self,
        request: ReservationRequest,
        paid_amount: Decimal,
        webhook_event: WebhookEventParams | None = None,
    ) -> ReservationResult:
        """Create the reservation and mark it paid when the captured amount covers the deposit."""
        result = await self(request, webhook_event=webhook_event)
        if not result.success or result.reservation is None:
            return result

        reservation = result.reservation
        if reservation.status != ReservationStatusEnum.PENDING:
            return result

        if abs(paid_amount - reservation.deposit_amount) > PAID_AMOUNT_TOLERANCE:
            logger.warning(
                f"Paid amount {paid_amount} does not match deposit {reservation.deposit_amount} "
                f"for reservation {reservation.id}; leaving it pending"
            )
            return result

        try:
            async with self._unit_of_work() as uow:
                paid = await uow.reservations.transition(
                    reservation.id,
                    (ReservationStatusEnum.PENDING,),
                    ReservationStatusEnum.PAID,
                )
                await uow.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark reservation {reservation.id} as paid: {e}", exc_info=True)
            return result

        if paid is None:
            return result
        return result.model_copy(update={"reservation": paid})

    @staticmethod
    def _event_payload(reservation: Reservation, puppy: Puppy) -> dict:
        return {
            **reservation.model_dump(mode="json"),
            "puppy_name": puppy.name,
            "puppy_slug": puppy.slug,
        }

    @staticmethod
    def _failure(code: ErrorCode, message: str) -> ReservationResult:
        return ReservationResult(success=False, error=message, error_code=code)
