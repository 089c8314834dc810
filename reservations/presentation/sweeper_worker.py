import asyncio
import logging

from reservations.application.expire_reservations import ExpireReservationsUseCase

logger = logging.getLogger(__name__)


class SweeperWorker:
    def __init__(self, use_case: ExpireReservationsUseCase, interval_seconds: float = 300):
        self._use_case = use_case
        self._interval_seconds = interval_seconds

    async def run(self):
        while True:
            try:
                await self._use_case()
            except Exception as e:
                logger.error(f"Reservation sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self._interval_seconds)
