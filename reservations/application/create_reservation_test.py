import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from reservations.application.create_reservation import CreateReservationUseCase
from reservations.core.clock import utcnow
from reservations.core.models import (
    ErrorCode,
    EventTypeEnum,
    PuppyStatusEnum,
    ReservationChannelEnum,
    ReservationStatusEnum,
)
from reservations.infrastructure.repositories import ReservationRepository
from reservations.infrastructure.unit_of_work import UnitOfWork


async def _puppy_status(unit_of_work: UnitOfWork, puppy_id: str) -> PuppyStatusEnum:
    async with unit_of_work() as uow:
        return (await uow.puppies.get_by_id(puppy_id)).status


class TestCreateReservationUseCase:
    @pytest.mark.asyncio
    async def test_creates_pending_reservation_and_reserves_puppy(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        unit_of_work: UnitOfWork,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        puppy = await puppy_factory(name="Bella", slug="bella")
        request = reservation_request_factory(
            puppy.id, customer_email="  Buyer@Example.COM ", channel=None
        )

        # When
        result = await create_reservation_use_case(request)

        # Then
        assert result.success is True
        assert result.already_exists is False
        reservation = result.reservation
        assert reservation.status == ReservationStatusEnum.PENDING
        assert reservation.customer_email == "buyer@example.com"
        assert reservation.channel == ReservationChannelEnum.SITE
        assert reservation.expires_at > utcnow() + timedelta(hours=23)
        assert await _puppy_status(unit_of_work, puppy.id) == PuppyStatusEnum.RESERVED

        async with unit_of_work() as uow:
            events = await uow.outbox.get_pending_events()
        assert len(events) == 1
        assert events[0].event_type == EventTypeEnum.RESERVATION_CREATED
        assert events[0].payload["id"] == reservation.id
        assert events[0].payload["puppy_slug"] == "bella"

    @pytest.mark.asyncio
    async def test_same_payment_twice_returns_existing_reservation(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        unit_of_work: UnitOfWork,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        puppy = await puppy_factory()
        request = reservation_request_factory(puppy.id)
        first = await create_reservation_use_case(request)

        # When
        second = await create_reservation_use_case(request)

        # Then
        assert second.success is True
        assert second.already_exists is True
        assert second.reservation.id == first.reservation.id
        async with unit_of_work() as uow:
            assert len(await uow.reservations.list_for_puppy(puppy.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_payments_for_one_puppy_have_single_winner(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        unit_of_work: UnitOfWork,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        puppy = await puppy_factory()
        requests = [reservation_request_factory(puppy.id) for _ in range(2)]

        # When
        results = await asyncio.gather(
            *(create_reservation_use_case(request) for request in requests)
        )

        # Then
        winners = [result for result in results if result.success]
        losers = [result for result in results if not result.success]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].error_code == ErrorCode.RACE_CONDITION_LOST
        async with unit_of_work() as uow:
            reservations = await uow.reservations.list_for_puppy(puppy.id)
        assert [reservation.id for reservation in reservations] == [winners[0].reservation.id]

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_resolve_to_same_reservation(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        puppy = await puppy_factory()
        request = reservation_request_factory(puppy.id)

        # When
        first, second = await asyncio.gather(
            create_reservation_use_case(request), create_reservation_use_case(request)
        )

        # Then
        assert first.success is True
        assert second.success is True
        assert first.reservation.id == second.reservation.id
        assert sorted([first.already_exists, second.already_exists]) == [False, True]

    @pytest.mark.asyncio
    async def test_unavailable_puppy_is_race_lost(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        puppy = await puppy_factory(status=PuppyStatusEnum.SOLD)

        # When
        result = await create_reservation_use_case(reservation_request_factory(puppy.id))

        # Then
        assert result.success is False
        assert result.error_code == ErrorCode.RACE_CONDITION_LOST

    @pytest.mark.asyncio
    async def test_deposit_above_price_rolls_back_gate(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        unit_of_work: UnitOfWork,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        puppy = await puppy_factory(price=Decimal("200.00"))

        # When
        result = await create_reservation_use_case(
            reservation_request_factory(puppy.id, deposit_amount=Decimal("300.00"))
        )

        # Then
        assert result.success is False
        assert result.error_code == ErrorCode.VALIDATION_ERROR
        assert await _puppy_status(unit_of_work, puppy.id) == PuppyStatusEnum.AVAILABLE

    @pytest.mark.asyncio
    async def test_persistence_failure_releases_puppy(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        unit_of_work: UnitOfWork,
        puppy_factory,
        reservation_request_factory,
        monkeypatch,
    ):
        # Given
        puppy = await puppy_factory()

        async def failing_create(self, reservation):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(ReservationRepository, "create", failing_create)

        # When
        result = await create_reservation_use_case(reservation_request_factory(puppy.id))

        # Then
        assert result.success is False
        assert result.error_code == ErrorCode.DATABASE_ERROR
        assert await _puppy_status(unit_of_work, puppy.id) == PuppyStatusEnum.AVAILABLE
        async with unit_of_work() as uow:
            assert await uow.outbox.get_pending_events() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"puppy_id": "not-a-uuid"},
            {"customer_email": "not-an-email"},
            {"customer_phone": "12345"},
            {"customer_name": "x" * 101},
            {"deposit_amount": Decimal("0")},
            {"external_payment_id": "cs_123"},
            {"payment_provider": "bitcoin"},
            {"channel": "carrier-pigeon"},
        ],
    )
    async def test_validation_errors(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        unit_of_work: UnitOfWork,
        puppy_factory,
        reservation_request_factory,
        overrides,
    ):
        # Given
        puppy = await puppy_factory()
        overrides = dict(overrides)
        request = reservation_request_factory(overrides.pop("puppy_id", puppy.id), **overrides)

        # When
        result = await create_reservation_use_case(request)

        # Then
        assert result.success is False
        assert result.error_code == ErrorCode.VALIDATION_ERROR
        assert await _puppy_status(unit_of_work, puppy.id) == PuppyStatusEnum.AVAILABLE

    @pytest.mark.asyncio
    async def test_paypal_payment_id_format(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        puppy = await puppy_factory()
        request = reservation_request_factory(
            puppy.id, payment_provider="paypal", external_payment_id="8MC585209K746392H"
        )

        # When
        result = await create_reservation_use_case(request)

        # Then
        assert result.success is True


class TestCreateConfirmed:
    @pytest.mark.asyncio
    async def test_matching_amount_marks_paid(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        puppy = await puppy_factory()

        # When
        result = await create_reservation_use_case.create_confirmed(
            reservation_request_factory(puppy.id), Decimal("300.00")
        )

        # Then
        assert result.success is True
        assert result.reservation.status == ReservationStatusEnum.PAID

    @pytest.mark.asyncio
    async def test_mismatched_amount_stays_pending(
        self,
        create_reservation_use_case: CreateReservationUseCase,
        puppy_factory,
        reservation_request_factory,
    ):
        # Given
        puppy = await puppy_factory()

        # When
        result = await create_reservation_use_case.create_confirmed(
            reservation_request_factory(puppy.id), Decimal("250.00")
        )

        # Then
        assert result.success is True
        assert result.reservation.status == ReservationStatusEnum.PENDING
