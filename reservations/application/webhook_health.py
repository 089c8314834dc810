from datetime import datetime, timedelta

from pydantic import BaseModel

from reservations.application.ledger import WebhookLedger
from reservations.core.clock import utcnow
from reservations.core.models import PaymentProviderEnum, WebhookEvent
from reservations.infrastructure.unit_of_work import UnitOfWork

RECENT_WINDOW_MINUTES = 60
MAX_ERROR_RATE = 0.2


class ProviderHealth(BaseModel):
    healthy: bool
    recent_events: int
    failed_events: int
    pending_events: int
    error_rate: float
    last_success_time: datetime | None = None
    last_failure_time: datetime | None = None


class WebhookHealthReport(BaseModel):
    healthy: bool
    timestamp: datetime
    checks: dict[PaymentProviderEnum, ProviderHealth]


def _provider_health(events: list[WebhookEvent], pending: int) -> ProviderHealth:
    failed = [event for event in events if event.processing_error]
    succeeded = [
        event for event in events if event.processed and not event.processing_error
    ]
    error_rate = len(failed) / len(events) if events else 0.0

    return ProviderHealth(
        healthy=error_rate <= MAX_ERROR_RATE,
        recent_events=len(events),
        failed_events=len(failed),
        pending_events=pending,
        error_rate=round(error_rate, 4),
        last_success_time=max((e.processed_at or e.created_at for e in succeeded), default=None),
        last_failure_time=max((e.processed_at or e.created_at for e in failed), default=None),
    )


class GetWebhookHealthUseCase:
    def __init__(self, unit_of_work: UnitOfWork, ledger: WebhookLedger):
        self._unit_of_work = unit_of_work
        self._ledger = ledger

    async def __call__(self) -> WebhookHealthReport:
        now = utcnow()
        since = now - timedelta(minutes=RECENT_WINDOW_MINUTES)

        async with self._unit_of_work() as uow:
            events = await uow.webhook_events.get_created_since(since)
        pending = await self._ledger.get_pending_events(limit=1000)

        checks = {
            provider: _provider_health(
                [event for event in events if event.provider == provider],
                sum(1 for event in pending if event.provider == provider),
            )
            for provider in PaymentProviderEnum
        }
        return WebhookHealthReport(
            healthy=all(check.healthy for check in checks.values()),
            timestamp=now,
            checks=checks,
        )
