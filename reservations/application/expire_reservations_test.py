from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from reservations.application.create_reservation import CreateReservationUseCase
from reservations.application.expire_reservations import ExpireReservationsUseCase
from reservations.core.clock import utcnow
from reservations.core.models import EventTypeEnum, PuppyStatusEnum, ReservationStatusEnum
from reservations.infrastructure.repositories import PuppyRepository
from reservations.infrastructure.unit_of_work import UnitOfWork


@pytest.fixture
def expire_reservations_use_case(container) -> ExpireReservationsUseCase:
    return container.expire_reservations_use_case()


class TestExpireReservationsUseCase:
    @pytest.mark.asyncio
    async def test_expires_overdue_hold_and_relists_puppy(
        self,
        expire_reservations_use_case: ExpireReservationsUseCase,
        create_reservation_use_case: CreateReservationUseCase,
        unit_of_work: UnitOfWork,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        puppy = await puppy_factory()
        created = await create_reservation_use_case(
            reservation_request_factory(puppy.id, expires_at=utcnow() - timedelta(minutes=1))
        )

        # When
        report = await expire_reservations_use_case()

        # Then
        assert report.expired == 1
        assert report.released == 1
        assert report.orphaned_puppy_ids == []
        async with unit_of_work() as uow:
            reservation = await uow.reservations.get_by_id(created.reservation.id)
            puppy = await uow.puppies.get_by_id(puppy.id)
            events = await uow.outbox.get_pending_events()
        assert reservation.status == ReservationStatusEnum.EXPIRED
        assert puppy.status == PuppyStatusEnum.AVAILABLE
        assert events[-1].event_type == EventTypeEnum.RESERVATION_EXPIRED
        assert events[-1].payload["puppy_released"] is True

    @pytest.mark.asyncio
    async def test_paid_and_current_holds_are_untouched(
        self,
        expire_reservations_use_case: ExpireReservationsUseCase,
        create_reservation_use_case: CreateReservationUseCase,
        unit_of_work: UnitOfWork,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        paid_puppy = await puppy_factory()
        held_puppy = await puppy_factory()
        paid = await create_reservation_use_case.create_confirmed(
            reservation_request_factory(paid_puppy.id, expires_at=utcnow() - timedelta(hours=1)),
            Decimal("300.00"),
        )
        held = await create_reservation_use_case(reservation_request_factory(held_puppy.id))

        # When
        report = await expire_reservations_use_case()

        # Then
        assert report.expired == 0
        async with unit_of_work() as uow:
            assert (await uow.reservations.get_by_id(paid.reservation.id)).status == (
                ReservationStatusEnum.PAID
            )
            assert (await uow.reservations.get_by_id(held.reservation.id)).status == (
                ReservationStatusEnum.PENDING
            )
            assert await uow.puppies.is_available(paid_puppy.id) is False
            assert await uow.puppies.is_available(held_puppy.id) is False

    @pytest.mark.asyncio
    async def test_reports_orphaned_reserved_puppies(
        self,
        expire_reservations_use_case: ExpireReservationsUseCase,
        unit_of_work: UnitOfWork,
        puppy_factory,
    ):
        # Given
        orphan = await puppy_factory(status=PuppyStatusEnum.RESERVED)

        # When
        report = await expire_reservations_use_case()

        # Then
        assert report.orphaned_puppy_ids == [orphan.id]
        async with unit_of_work() as uow:
            assert (await uow.puppies.get_by_id(orphan.id)).status == PuppyStatusEnum.RESERVED

    @pytest.mark.asyncio
    async def test_failed_reservation_does_not_stop_sweep(
        self,
        expire_reservations_use_case: ExpireReservationsUseCase,
        create_reservation_use_case: CreateReservationUseCase,
        unit_of_work: UnitOfWork,
        puppy_factory,
        reservation_request_factory,
        monkeypatch,
    ):
        # Given
        stuck_puppy = await puppy_factory()
        next_puppy = await puppy_factory()
        stuck = await create_reservation_use_case(
            reservation_request_factory(stuck_puppy.id, expires_at=utcnow() - timedelta(hours=2))
        )
        following = await create_reservation_use_case(
            reservation_request_factory(next_puppy.id, expires_at=utcnow() - timedelta(hours=1))
        )

        original_release = PuppyRepository.release

        async def release(self, puppy_id: str) -> bool:
            if puppy_id == stuck_puppy.id:
                raise SQLAlchemyError("deadlock detected")
            return await original_release(self, puppy_id)

        monkeypatch.setattr(PuppyRepository, "release", release)

        # When
        report = await expire_reservations_use_case()

        # Then
        assert report.expired == 1
        assert report.released == 1
        assert report.failed_reservation_ids == [stuck.reservation.id]
        async with unit_of_work() as uow:
            assert (await uow.reservations.get_by_id(stuck.reservation.id)).status == (
                ReservationStatusEnum.PENDING
            )
            assert (await uow.reservations.get_by_id(following.reservation.id)).status == (
                ReservationStatusEnum.EXPIRED
            )
            assert await uow.puppies.is_available(next_puppy.id) is True
