import logging

from reservations.core.clock import utcnow
from reservations.core.models import (
    ACTIVE_RESERVATION_STATUSES,
    EventTypeEnum,
    Reservation,
    ReservationStatusEnum,
)
from reservations.infrastructure.repositories import OutboxRepository
from reservations.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class CancelReservationUseCase:
    def __init__(self, unit_of_work: UnitOfWork):
        self._unit_of_work = unit_of_work

    async def __call__(self, reservation_id: str, reason: str | None = None) -> Reservation:
        """Cancel a pending or paid reservation and relist its puppy.

        Raises `DoesNotExist` for an unknown reservation and `ValueError` when
        the reservation is already in a final state.
        """
        note = f"[Cancelled {utcnow().isoformat()}] {reason or 'Cancelled by admin'}"

        async with self._unit_of_work() as uow:
            cancelled = await uow.reservations.transition(
                reservation_id,
                ACTIVE_RESERVATION_STATUSES,
                ReservationStatusEnum.CANCELLED,
                note=note,
            )
            if cancelled is None:
                current = await uow.reservations.get_by_id(reservation_id)
                raise ValueError(
                    f"Reservation {reservation_id} is {current.status} and cannot be cancelled"
                )

            released = await uow.puppies.release(cancelled.puppy_id)
            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    event_type=EventTypeEnum.RESERVATION_CANCELLED,
                    payload={**cancelled.model_dump(mode="json"), "puppy_released": released},
                )
            )
            await uow.commit()

        logger.info(f"Cancelled reservation {cancelled.id}; puppy released: {released}")
        return cancelled
