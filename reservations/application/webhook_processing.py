"""Outcome handling shared by the Stripe and PayPal webhook handlers.

Handlers translate provider events into one of three paths:

* fulfil: create (and confirm) a reservation for a captured payment;
* refund: move the reservation paid for by a payment to `refunded`;
* audit: record the event, optionally emitting an outbox event, and do nothing else.
"""

import logging
from decimal import Decimal

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from reservations.application.create_reservation import (
    CreateReservationUseCase,
    ReservationRequest,
    describe_validation_error,
)
from reservations.application.ledger import WebhookEventParams, WebhookLedger
from reservations.core import idempotency_keys
from reservations.core.models import (
    ACTIVE_RESERVATION_STATUSES,
    ErrorCode,
    EventTypeEnum,
    PaymentProviderEnum,
    ReservationStatusEnum,
    WebhookResult,
)
from reservations.infrastructure.repositories import OutboxRepository
from reservations.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class _AlreadyRecorded(Exception):
    pass


class WebhookProcessor:
    provider: PaymentProviderEnum

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        ledger: WebhookLedger,
        create_reservation: CreateReservationUseCase,
        relist_on_refund: bool = False,
    ):
        self._unit_of_work = unit_of_work
        self._ledger = ledger
        self._create_reservation = create_reservation
        self._relist_on_refund = relist_on_refund

    def _params(
        self,
        event_id: str,
        event_type: str,
        payload: dict,
        idempotency_key: str | None = None,
    ) -> WebhookEventParams:
        return WebhookEventParams(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            idempotency_key=idempotency_key,
        )

    async def _dispatch(self, handler, event, payload: dict, event_type: str) -> WebhookResult:
        try:
            return await handler(event, payload)
        except SQLAlchemyError as e:
            logger.error(
                f"Database error while processing {self.provider} event {event_type}: {e}",
                exc_info=True,
            )
            return WebhookResult(
                success=False,
                event_type=event_type,
                error="Database error while processing webhook",
                error_code=ErrorCode.DATABASE_ERROR,
                retryable=True,
            )

    def _malformed(self, payload: dict, event_type_key: str, error: ValidationError) -> WebhookResult:
        event_type = str(payload.get(event_type_key) or "unknown")
        message = f"Malformed {event_type} event: {describe_validation_error(error)}"
        logger.error(f"[{self.provider}] {message}")
        return WebhookResult(
            success=False,
            event_type=event_type,
            error=message,
            error_code=ErrorCode.VALIDATION_ERROR,
        )

    def _ignored(self, event_id: str, event_type: str) -> WebhookResult:
        logger.info(f"[{self.provider}] Ignoring unhandled event {event_type} ({event_id})")
        return WebhookResult(success=True, event_type=event_type)

    async def _reject(
        self,
        params: WebhookEventParams,
        error: str,
        payment_id: str | None = None,
    ) -> WebhookResult:
        """Definitive failure: redelivering the same event cannot succeed."""
        logger.error(f"[{self.provider}] Rejecting event {params.event_id}: {error}")
        await self._ledger.record_outcome(params, error=error)
        return WebhookResult(
            success=False,
            event_type=params.event_type,
            error=error,
            error_code=ErrorCode.VALIDATION_ERROR,
            payment_id=payment_id,
        )

    async def _retry_later(
        self,
        params: WebhookEventParams,
        error: str,
        error_code: ErrorCode = ErrorCode.DATABASE_ERROR,
        payment_id: str | None = None,
    ) -> WebhookResult:
        logger.warning(f"[{self.provider}] Event {params.event_id} will be retried: {error}")
        await self._ledger.record_retryable_failure(params, error)
        return WebhookResult(
            success=False,
            event_type=params.event_type,
            error=error,
            error_code=error_code,
            payment_id=payment_id,
            retryable=True,
        )

    async def _fulfil(
        self,
        event_id: str,
        event_type: str,
        payload: dict,
        request: ReservationRequest,
        paid_amount: Decimal,
    ) -> WebhookResult:
        payment_id = request.external_payment_id
        params = self._params(
            event_id,
            event_type,
            payload,
            idempotency_keys.for_reservation(self.provider, payment_id, request.puppy_id),
        )

        check = await self._ledger.check_event(self.provider, event_id, params.idempotency_key)
        if check.exists:
            logger.info(f"[{self.provider}] Duplicate event {event_id} for payment {payment_id}")
            return WebhookResult(
                success=True,
                event_type=event_type,
                duplicate=True,
                payment_id=payment_id,
                reservation_id=check.reservation.id if check.reservation else None,
            )

        result = await self._create_reservation.create_confirmed(
            request, paid_amount, webhook_event=params
        )

        if result.success:
            reservation_id = result.reservation.id if result.reservation else None
            if result.already_exists:
                # Created earlier through another path; only this event is new
                await self._ledger.record_outcome(params, reservation_id=reservation_id)
            return WebhookResult(
                success=True,
                event_type=event_type,
                duplicate=result.already_exists,
                payment_id=payment_id,
                reservation_id=reservation_id,
            )

        if result.error_code == ErrorCode.RACE_CONDITION_LOST:
            # Acknowledge so the provider stops redelivering; the loss stays on record
            logger.warning(
                f"[{self.provider}] Payment {payment_id} lost the race for puppy "
                f"{request.puppy_id}: {result.error}"
            )
            await self._ledger.record_outcome(params, error=result.error)
            return WebhookResult(
                success=True,
                event_type=event_type,
                duplicate=True,
                error=result.error,
                error_code=result.error_code,
                payment_id=payment_id,
            )

        if result.error_code == ErrorCode.DATABASE_ERROR:
            return await self._retry_later(params, result.error, payment_id=payment_id)

        return await self._reject(params, result.error, payment_id=payment_id)

    async def _refund(
        self,
        event_id: str,
        event_type: str,
        payload: dict,
        payment_id: str,
        note: str,
    ) -> WebhookResult:
        params = self._params(
            event_id,
            event_type,
            payload,
            idempotency_keys.for_webhook(self.provider, payment_id, {"outcome": "refunded"}),
        )

        check = await self._ledger.check_event(self.provider, event_id)
        if check.exists:
            return WebhookResult(
                success=True, event_type=event_type, duplicate=True, payment_id=payment_id
            )

        async with self._unit_of_work() as uow:
            reservation = await uow.reservations.find_by_payment(self.provider, payment_id)

        if reservation is None:
            logger.warning(f"[{self.provider}] No reservation found for refunded payment {payment_id}")
            await self._ledger.record_outcome(params, error="Reservation not found")
            return WebhookResult(
                success=False,
                event_type=event_type,
                error="Reservation not found",
                payment_id=payment_id,
            )

        if reservation.status == ReservationStatusEnum.REFUNDED:
            await self._ledger.record_outcome(params, reservation_id=reservation.id)
            return WebhookResult(
                success=True,
                event_type=event_type,
                duplicate=True,
                payment_id=payment_id,
                reservation_id=reservation.id,
            )

        if reservation.status not in ACTIVE_RESERVATION_STATUSES:
            error = f"Cannot refund a {reservation.status} reservation"
            await self._ledger.record_outcome(
                params, error=error, reservation_id=reservation.id
            )
            return WebhookResult(
                success=False,
                event_type=event_type,
                error=error,
                payment_id=payment_id,
                reservation_id=reservation.id,
            )

        try:
            async with self._unit_of_work() as uow:
                refunded = await uow.reservations.transition(
                    reservation.id,
                    ACTIVE_RESERVATION_STATUSES,
                    ReservationStatusEnum.REFUNDED,
                    note=note,
                )
                if refunded is None:
                    raise _AlreadyRecorded

                created = await self._ledger.create_event(params, uow=uow)
                if not created.success:
                    raise SQLAlchemyError(created.error)
                if created.is_duplicate:
                    raise _AlreadyRecorded
                await self._ledger.mark_processed(
                    created.webhook_event.id, reservation_id=reservation.id, uow=uow
                )

                if self._relist_on_refund:
                    await uow.puppies.release(reservation.puppy_id)

                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        event_type=EventTypeEnum.RESERVATION_REFUNDED,
                        payload={
                            **refunded.model_dump(mode="json"),
                            "refund_note": note,
                        },
                    )
                )
                await uow.commit()
        except _AlreadyRecorded:
            logger.info(
                f"[{self.provider}] Refund of {payment_id} handled concurrently by another delivery"
            )
            return WebhookResult(
                success=True,
                event_type=event_type,
                duplicate=True,
                payment_id=payment_id,
                reservation_id=reservation.id,
            )

        logger.info(f"[{self.provider}] Reservation {reservation.id} marked as refunded")
        return WebhookResult(
            success=True,
            event_type=event_type,
            payment_id=payment_id,
            reservation_id=reservation.id,
        )

    async def _audit(
        self,
        event_id: str,
        event_type: str,
        payload: dict,
        idempotency_key: str,
        note: str | None = None,
        outbox_event: EventTypeEnum | None = None,
        outbox_payload: dict | None = None,
        payment_id: str | None = None,
    ) -> WebhookResult:
        """Record an event that changes no reservation or inventory state."""
        params = self._params(event_id, event_type, payload, idempotency_key)

        async with self._unit_of_work() as uow:
            created = await self._ledger.create_event(params, uow=uow)
            if not created.success:
                raise SQLAlchemyError(created.error)
            if created.is_duplicate:
                return WebhookResult(
                    success=True, event_type=event_type, duplicate=True, payment_id=payment_id
                )

            await uow.webhook_events.mark_processed(created.webhook_event.id)
            if outbox_event is not None:
                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        event_type=outbox_event, payload=outbox_payload or {}
                    )
                )
            await uow.commit()

        logger.info(
            f"[{self.provider}] Recorded {event_type} ({event_id}) for audit"
            + (f": {note}" if note else "")
        )
        return WebhookResult(success=True, event_type=event_type, payment_id=payment_id)
