import logging

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from reservations.core.clock import utcnow
from reservations.core.models import EventTypeEnum
from reservations.infrastructure.repositories import OutboxRepository
from reservations.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class ExpirationReport(BaseModel):
    expired: int = 0
    released: int = 0
    orphaned_puppy_ids: list[str] = []
    failed_reservation_ids: list[str] = []


class ExpireReservationsUseCase:
    def __init__(self, unit_of_work: UnitOfWork, batch_size: int = 100):
        self._unit_of_work = unit_of_work
        self._batch_size = batch_size

    async def __call__(self) -> ExpirationReport:
        """Expire pending reservations past their hold and relist their puppies.

        Each reservation is handled in its own transaction, and the status change
        is conditional, so a reservation paid in the meantime is left alone. A
        reservation whose transaction fails is reported for manual reconciliation
        and the sweep moves on.
        """
        now = utcnow()
        report = ExpirationReport()

        async with self._unit_of_work() as uow:
            candidates = await uow.reservations.get_expired_pending(now, limit=self._batch_size)

        for candidate in candidates:
            try:
                async with self._unit_of_work() as uow:
                    expired = await uow.reservations.expire(candidate.id, now)
                    if expired is None:
                        continue

                    released = await uow.puppies.release(expired.puppy_id)
                    await uow.outbox.create(
                        OutboxRepository.CreateDTO(
                            event_type=EventTypeEnum.RESERVATION_EXPIRED,
                            payload={
                                **expired.model_dump(mode="json"),
                                "puppy_released": released,
                            },
                        )
                    )
                    await uow.commit()
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to expire reservation {candidate.id} (puppy {candidate.puppy_id}), "
                    f"needs manual reconciliation: {e}",
                    exc_info=True,
                )
                report.failed_reservation_ids.append(candidate.id)
                continue

            report.expired += 1
            report.released += int(released)
            logger.info(
                f"Expired reservation {expired.id}; puppy {expired.puppy_id} "
                f"{'released' if released else 'still held'}"
            )

        async with self._unit_of_work() as uow:
            orphaned = await uow.puppies.get_orphaned_reserved()

        for puppy in orphaned:
            logger.warning(
                f"Puppy {puppy.id} ({puppy.name}) is reserved but no active reservation holds it"
            )
        report.orphaned_puppy_ids = [puppy.id for puppy in orphaned]

        if report.expired:
            logger.info(f"Expired {report.expired} reservations, released {report.released} puppies")
        return report
