import logging
from decimal import Decimal

from pydantic import BaseModel

from reservations.application.create_reservation import (
    CreateReservationUseCase,
    ReservationRequest,
)
from reservations.core.deposit import DepositModeEnum, calculate_deposit_amount
from reservations.core.models import ErrorCode, PaymentProviderEnum, PuppyStatusEnum
from reservations.core.paypal_events import PayPalOrderMetadata, parse_amount, parse_custom_id
from reservations.infrastructure.paypal_client import PayPalApiError, PayPalClient
from reservations.infrastructure.repositories import DoesNotExist
from reservations.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class PayPalOrderRequest(BaseModel):
    puppy_id: str
    channel: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    return_url: str | None = None
    cancel_url: str | None = None


class CreateOrderResult(BaseModel):
    success: bool
    order_id: str | None = None
    status: str | None = None
    approve_url: str | None = None
    deposit_amount: Decimal | None = None
    error: str | None = None
    error_code: ErrorCode | None = None


class CaptureOrderResult(BaseModel):
    success: bool
    reservation_id: str | None = None
    capture_id: str | None = None
    order_status: str | None = None
    already_exists: bool = False
    error: str | None = None
    error_code: ErrorCode | None = None


class CreatePayPalOrderUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        paypal_client: PayPalClient,
        deposit_mode: DepositModeEnum = DepositModeEnum.FIXED,
        deposit_fixed_amount: Decimal | None = None,
        deposit_percent: Decimal | None = None,
        deposit_cap: Decimal | None = None,
        deposit_minimum: Decimal | None = None,
    ):
        self._unit_of_work = unit_of_work
        self._paypal_client = paypal_client
        self._deposit_mode = DepositModeEnum(deposit_mode)
        self._deposit_fixed_amount = deposit_fixed_amount
        self._deposit_percent = deposit_percent
        self._deposit_cap = deposit_cap
        self._deposit_minimum = deposit_minimum

    async def __call__(self, request: PayPalOrderRequest) -> CreateOrderResult:
        async with self._unit_of_work() as uow:
            try:
                puppy = await uow.puppies.get_by_id(request.puppy_id)
            except DoesNotExist:
                return CreateOrderResult(
                    success=False,
                    error="Puppy not found",
                    error_code=ErrorCode.PUPPY_NOT_AVAILABLE,
                )

        if puppy.status != PuppyStatusEnum.AVAILABLE or puppy.is_archived:
            return CreateOrderResult(
                success=False,
                error=f"This puppy is {puppy.status} and cannot be reserved",
                error_code=ErrorCode.PUPPY_NOT_AVAILABLE,
            )

        deposit = calculate_deposit_amount(
            puppy.price,
            mode=self._deposit_mode,
            fixed_amount=self._deposit_fixed_amount,
            percent=self._deposit_percent,
            cap=self._deposit_cap,
            minimum=self._deposit_minimum,
        )

        try:
            custom_id = PayPalOrderMetadata(
                puppy_id=puppy.id,
                puppy_slug=puppy.slug,
                puppy_name=puppy.name,
                channel=request.channel or "site",
                customer_email=request.customer_email,
                customer_name=request.customer_name,
                customer_phone=request.customer_phone,
                deposit_amount=deposit,
            ).to_custom_id()
        except ValueError as e:
            return CreateOrderResult(
                success=False, error=str(e), error_code=ErrorCode.VALIDATION_ERROR
            )

        try:
            order = await self._paypal_client.create_order(
                amount=deposit,
                custom_id=custom_id,
                reference_id=puppy.id,
                description=f"Deposit for {puppy.name}",
                return_url=request.return_url,
                cancel_url=request.cancel_url,
            )
        except PayPalApiError as e:
            logger.error(f"Failed to create PayPal order for puppy {puppy.id}: {e}")
            return CreateOrderResult(
                success=False,
                error="Failed to create PayPal order",
                error_code=ErrorCode.PAYMENT_PROVIDER_ERROR,
            )

        logger.info(f"Created PayPal order {order.id} for puppy {puppy.id} ({deposit})")
        return CreateOrderResult(
            success=True,
            order_id=order.id,
            status=order.status,
            approve_url=order.approve_url,
            deposit_amount=deposit,
        )


class CapturePayPalOrderUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        paypal_client: PayPalClient,
        create_reservation: CreateReservationUseCase,
    ):
        self._unit_of_work = unit_of_work
        self._paypal_client = paypal_client
        self._create_reservation = create_reservation

    @staticmethod
    def _failure(code: ErrorCode, error: str, **kwargs) -> CaptureOrderResult:
        return CaptureOrderResult(success=False, error=error, error_code=code, **kwargs)

    async def __call__(self, order_id: str) -> CaptureOrderResult:
        try:
            order = await self._paypal_client.get_order(order_id)
        except PayPalApiError as e:
            logger.error(f"Failed to load PayPal order {order_id}: {e}")
            return self._failure(ErrorCode.PAYMENT_PROVIDER_ERROR, "Failed to load PayPal order")

        metadata = parse_custom_id(order.custom_id)
        if metadata is None or not metadata.puppy_id:
            return self._failure(ErrorCode.VALIDATION_ERROR, "Missing puppy metadata")

        if order.status != "COMPLETED":
            # Never take money for a puppy somebody else already holds
            async with self._unit_of_work() as uow:
                available = await uow.puppies.is_available(metadata.puppy_id)
            if not available:
                return self._failure(
                    ErrorCode.PUPPY_NOT_AVAILABLE,
                    "Puppy is no longer available",
                    order_status=order.status,
                )

            try:
                # A stable request id turns a repeated capture into a replay
                order = await self._paypal_client.capture_order(
                    order_id, request_id=f"capture-{order_id}"
                )
            except PayPalApiError as e:
                logger.error(f"Failed to capture PayPal order {order_id}: {e}")
                return self._failure(
                    ErrorCode.PAYMENT_PROVIDER_ERROR, "Failed to capture PayPal order"
                )

        if order.status != "COMPLETED":
            return self._failure(
                ErrorCode.PAYMENT_PROVIDER_ERROR,
                f"Capture status is {order.status}",
                order_status=order.status,
            )

        capture = order.first_capture
        if capture is None:
            return self._failure(
                ErrorCode.PAYMENT_PROVIDER_ERROR,
                "Capture details not found in response",
                order_status=order.status,
            )

        amount = parse_amount(capture.amount.value)
        if amount is None:
            return self._failure(
                ErrorCode.VALIDATION_ERROR, "Invalid capture amount", capture_id=capture.id
            )

        payer = order.payer
        customer_email = metadata.customer_email or (payer and payer.email_address)
        if not customer_email:
            return self._failure(
                ErrorCode.VALIDATION_ERROR,
                "Missing customer email address",
                capture_id=capture.id,
            )

        result = await self._create_reservation.create_confirmed(
            ReservationRequest(
                puppy_id=metadata.puppy_id,
                customer_email=customer_email,
                customer_name=metadata.customer_name or (payer and payer.full_name),
                customer_phone=metadata.customer_phone or (payer and payer.phone_number),
                channel=metadata.channel,
                deposit_amount=amount,
                payment_provider=PaymentProviderEnum.PAYPAL,
                external_payment_id=capture.id,
                notes=f"PayPal capture {capture.id}",
            ),
            amount,
        )

        if not result.success:
            logger.error(
                f"Captured PayPal order {order_id} but reservation failed: "
                f"{result.error} ({result.error_code})"
            )
            return self._failure(
                result.error_code or ErrorCode.DATABASE_ERROR,
                result.error or "Failed to create reservation",
                capture_id=capture.id,
                order_status=order.status,
            )

        return CaptureOrderResult(
            success=True,
            reservation_id=result.reservation.id,
            capture_id=capture.id,
            order_status=order.status,
            already_exists=result.already_exists,
        )
