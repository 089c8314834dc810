import asyncio
import logging

from reservations.application.process_outbox_events import ProcessOutboxEventsUseCase

logger = logging.getLogger(__name__)


class OutboxWorker:
    def __init__(self, use_case: ProcessOutboxEventsUseCase, interval_seconds: float = 1.0):
        self._use_case = use_case
        self._interval_seconds = interval_seconds

    async def run(self):
        while True:
            try:
                await self._use_case()
            except Exception as e:
                logger.error(f"Outbox relay failed: {e}", exc_info=True)
            await asyncio.sleep(self._interval_seconds)
