"""Webhook idempotency ledger.

Every provider event is recorded once per (provider, event_id). An entry is a
duplicate when it has been processed or when another worker claimed it less
than `processing_lock_minutes` ago; older unprocessed claims are treated as
abandoned and may be taken over.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from reservations.core import idempotency_keys
from reservations.core.clock import utcnow
from reservations.core.models import (
    CheckEventResult,
    CreateEventResult,
    PaymentProviderEnum,
    Reservation,
    WebhookEvent,
)
from reservations.infrastructure.repositories import (
    DoesNotExist,
    WebhookEventRepository,
)
from reservations.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

WebhookEventParams = WebhookEventRepository.CreateDTO


class WebhookLedger:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        processing_lock_minutes: int = 5,
        retention_days: int = 30,
    ):
        self._unit_of_work = unit_of_work
        self._lock_window = timedelta(minutes=processing_lock_minutes)
        self._retention_days = retention_days

    @asynccontextmanager
    async def _scope(self, uow=None):
        """Enlist in the caller's unit of work, or run in (and commit) our own."""
        if uow is not None:
            yield uow
            return

        async with self._unit_of_work() as own:
            yield own
            await own.commit()

    def _stale_before(self):
        return utcnow() - self._lock_window

    def _is_claimed(self, event: WebhookEvent) -> bool:
        if event.processed:
            return True
        return (
            event.processing_started_at is not None
            and event.processing_started_at >= self._stale_before()
        )

    @staticmethod
    def _with_key(params: WebhookEventParams) -> WebhookEventParams:
        if params.idempotency_key:
            return params
        return params.model_copy(
            update={
                "idempotency_key": idempotency_keys.for_webhook(
                    params.provider, params.event_id
                )
            }
        )

    @staticmethod
    async def _linked_reservation(unit, event: WebhookEvent) -> Reservation | None:
        if event.reservation_id is None:
            return None
        try:
            return await unit.reservations.get_by_id(event.reservation_id)
        except DoesNotExist:
            return None

    async def check_event(
        self,
        provider: PaymentProviderEnum,
        event_id: str,
        idempotency_key: str | None = None,
        uow=None,
    ) -> CheckEventResult:
        async with self._scope(uow) as unit:
            event = await unit.webhook_events.get_by_event_id(provider, event_id)
            if event is not None:
                if self._is_claimed(event):
                    return CheckEventResult(
                        exists=True,
                        webhook_event=event,
                        reservation=await self._linked_reservation(unit, event),
                    )
                # Abandoned claim: not a duplicate, but the caller must reuse it
                return CheckEventResult(exists=False, webhook_event=event)

            if idempotency_key:
                event = await unit.webhook_events.get_by_idempotency_key(
                    provider, idempotency_key
                )
                if event is not None and self._is_claimed(event):
                    return CheckEventResult(
                        exists=True,
                        webhook_event=event,
                        reservation=await self._linked_reservation(unit, event),
                    )

            reservation = await unit.reservations.find_by_payment(provider, event_id)
            if reservation is not None:
                return CheckEventResult(exists=True, reservation=reservation)

            return CheckEventResult(exists=False)

    async def _create(self, unit, params: WebhookEventParams) -> CreateEventResult:
        check = await self.check_event(
            params.provider, params.event_id, params.idempotency_key, uow=unit
        )
        if check.exists:
            return CreateEventResult(
                success=True, is_duplicate=True, webhook_event=check.webhook_event
            )

        if check.webhook_event is not None:
            claimed = await unit.webhook_events.lock(
                check.webhook_event.id, self._stale_before()
            )
            if not claimed:
                return CreateEventResult(
                    success=True, is_duplicate=True, webhook_event=check.webhook_event
                )
            logger.info(
                f"Retrying abandoned webhook event {params.provider}:{params.event_id}"
            )
            return CreateEventResult(
                success=True,
                webhook_event=await unit.webhook_events.get_by_id(
                    check.webhook_event.id
                ),
            )

        event = await unit.webhook_events.create(params, processing_started_at=utcnow())
        return CreateEventResult(success=True, webhook_event=event)

    async def create_event(
        self, params: WebhookEventParams, uow=None
    ) -> CreateEventResult:
        """Record and claim an event.

        With `uow` the insert joins the caller's transaction; a duplicate
        reported from a unique violation leaves that transaction unusable, so
        the caller must roll it back.
        """
        params = self._with_key(params)
        try:
            async with self._scope(uow) as unit:
                return await self._create(unit, params)
        except IntegrityError:
            logger.info(
                f"Webhook event {params.provider}:{params.event_id} recorded concurrently"
            )
            return CreateEventResult(success=True, is_duplicate=True)
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to record webhook event {params.provider}:{params.event_id}: {e}",
                exc_info=True,
            )
            return CreateEventResult(success=False, error=str(e))

    async def mark_processed(
        self, webhook_event_id: int, reservation_id: str | None = None, uow=None
    ) -> None:
        async with self._scope(uow) as unit:
            await unit.webhook_events.mark_processed(
                webhook_event_id, reservation_id=reservation_id
            )

    async def mark_failed(self, webhook_event_id: int, error: str, uow=None) -> None:
        async with self._scope(uow) as unit:
            await unit.webhook_events.mark_processed(webhook_event_id, error=error)

    async def lock_for_processing(self, webhook_event_id: int, uow=None) -> bool:
        async with self._scope(uow) as unit:
            return await unit.webhook_events.lock(
                webhook_event_id, self._stale_before()
            )

    async def record_outcome(
        self,
        params: WebhookEventParams,
        error: str | None = None,
        reservation_id: str | None = None,
    ) -> CreateEventResult:
        """Record an event whose handling is already final, in one transaction."""
        params = self._with_key(params)
        try:
            async with self._unit_of_work() as unit:
                created = await self._create(unit, params)
                if created.webhook_event is not None and not created.is_duplicate:
                    await unit.webhook_events.mark_processed(
                        created.webhook_event.id,
                        reservation_id=reservation_id,
                        error=error,
                    )
                    await unit.commit()
                return created
        except IntegrityError:
            return CreateEventResult(success=True, is_duplicate=True)
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to record outcome of {params.provider}:{params.event_id}: {e}",
                exc_info=True,
            )
            return CreateEventResult(success=False, error=str(e))

    async def record_retryable_failure(
        self, params: WebhookEventParams, error: str
    ) -> CreateEventResult:
        """Keep the event open so the provider's redelivery is processed again."""
        params = self._with_key(params)
        try:
            async with self._unit_of_work() as unit:
                created = await self._create(unit, params)
                if created.webhook_event is not None and not created.is_duplicate:
                    await unit.webhook_events.record_error(
                        created.webhook_event.id, error
                    )
                    await unit.commit()
                return created
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to record failure of {params.provider}:{params.event_id}: {e}",
                exc_info=True,
            )
            return CreateEventResult(success=False, error=str(e))

    async def cleanup_old_events(self, days_to_keep: int | None = None) -> int:
        days = self._retention_days if days_to_keep is None else days_to_keep
        cutoff = utcnow() - timedelta(days=days)
        async with self._unit_of_work() as unit:
            deleted = await unit.webhook_events.delete_processed_before(cutoff)
            await unit.commit()

        logger.info(f"Deleted {deleted} processed webhook events older than {days} days")
        return deleted

    async def get_pending_events(self, limit: int = 10) -> list[WebhookEvent]:
        async with self._unit_of_work() as unit:
            return await unit.webhook_events.get_pending(self._stale_before(), limit)
