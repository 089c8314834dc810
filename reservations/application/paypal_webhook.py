import logging

from pydantic import ValidationError

from reservations.application.create_reservation import (
    CreateReservationUseCase,
    ReservationRequest,
)
from reservations.application.ledger import WebhookLedger
from reservations.application.webhook_processing import WebhookProcessor
from reservations.core import idempotency_keys
from reservations.core.clock import utcnow
from reservations.core.models import (
    ErrorCode,
    EventTypeEnum,
    PaymentProviderEnum,
    WebhookResult,
)
from reservations.core.paypal_events import (
    CaptureCompleted,
    CaptureDenied,
    CapturePending,
    CaptureRefunded,
    OrderApproved,
    PayPalOrderMetadata,
    decode_paypal_event,
    parse_amount,
    parse_custom_id,
)
from reservations.infrastructure.paypal_client import PayPalApiError, PayPalClient
from reservations.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class PayPalWebhookHandler(WebhookProcessor):
    provider = PaymentProviderEnum.PAYPAL

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        ledger: WebhookLedger,
        create_reservation: CreateReservationUseCase,
        paypal_client: PayPalClient,
        relist_on_refund: bool = False,
    ):
        super().__init__(unit_of_work, ledger, create_reservation, relist_on_refund)
        self._paypal_client = paypal_client

    async def process_event(self, payload: dict) -> WebhookResult:
        try:
            event = decode_paypal_event(payload)
        except ValidationError as e:
            return self._malformed(payload, "event_type", e)

        logger.info(f"Processing PayPal event {event.event_type} ({event.id})")
        handler = {
            CaptureCompleted: self._on_capture_completed,
            CaptureRefunded: self._on_capture_refunded,
            CapturePending: self._on_capture_pending,
            CaptureDenied: self._on_capture_denied,
            OrderApproved: self._on_order_approved,
        }.get(type(event))

        if handler is None:
            return self._ignored(event.id, event.event_type)
        return await self._dispatch(handler, event, payload, event.event_type)

    async def _on_capture_completed(
        self, event: CaptureCompleted, payload: dict
    ) -> WebhookResult:
        capture = event.resource
        params = self._params(event.id, event.event_type, payload)

        if capture.status and capture.status != "COMPLETED":
            return await self._reject(
                params,
                f"Capture status is {capture.status}, expected COMPLETED",
                payment_id=capture.id,
            )

        metadata = parse_custom_id(capture.custom_id)
        backfill_failed = False
        if capture.order_id and self._needs_backfill(metadata):
            try:
                metadata = await self._backfill(capture.order_id, metadata)
            except PayPalApiError as e:
                logger.error(f"Failed to fetch PayPal order {capture.order_id}: {e}")
                backfill_failed = True

        if metadata is None or not metadata.puppy_id:
            if backfill_failed:
                return await self._retry_later(
                    params,
                    "Order details unavailable",
                    error_code=ErrorCode.PAYMENT_PROVIDER_ERROR,
                    payment_id=capture.id,
                )
            return await self._reject(
                params, "Missing required metadata: puppy_id", payment_id=capture.id
            )

        amount = parse_amount(capture.amount.value)
        if amount is None:
            return await self._reject(params, "Invalid capture amount", payment_id=capture.id)

        if not metadata.customer_email:
            if backfill_failed:
                return await self._retry_later(
                    params,
                    "Order details unavailable",
                    error_code=ErrorCode.PAYMENT_PROVIDER_ERROR,
                    payment_id=capture.id,
                )
            return await self._reject(params, "Missing customer email", payment_id=capture.id)

        request = ReservationRequest(
            puppy_id=metadata.puppy_id,
            customer_email=metadata.customer_email,
            customer_name=metadata.customer_name,
            customer_phone=metadata.customer_phone,
            channel=metadata.channel,
            deposit_amount=amount,
            payment_provider=self.provider,
            # The capture id identifies the money movement; order ids are not unique per payment
            external_payment_id=capture.id,
            notes=f"PayPal Order: {capture.order_id}" if capture.order_id else None,
        )
        return await self._fulfil(event.id, event.event_type, payload, request, amount)

    @staticmethod
    def _needs_backfill(metadata: PayPalOrderMetadata | None) -> bool:
        if metadata is None:
            return True
        return not (
            metadata.puppy_id
            and metadata.customer_email
            and metadata.customer_name
            and metadata.customer_phone
        )

    async def _backfill(
        self, order_id: str, metadata: PayPalOrderMetadata | None
    ) -> PayPalOrderMetadata | None:
        """Fill gaps in the capture's metadata from the order and its payer."""
        order = await self._paypal_client.get_order(order_id)
        if metadata is None:
            metadata = parse_custom_id(order.custom_id)
            if metadata is None:
                return None

        payer = order.payer
        if payer is None:
            return metadata

        return metadata.model_copy(
            update={
                "customer_email": metadata.customer_email or payer.email_address,
                "customer_name": metadata.customer_name or payer.full_name,
                "customer_phone": metadata.customer_phone or payer.phone_number,
            }
        )

    async def _on_capture_refunded(
        self, event: CaptureRefunded, payload: dict
    ) -> WebhookResult:
        refund = event.resource
        capture_id = refund.capture_id
        amount = refund.amount.value if refund.amount else "0"
        currency = refund.amount.currency_code if refund.amount else "USD"
        note = (
            f"[PayPal Refund {utcnow().isoformat()}] Amount: ${amount} {currency}, "
            f"Capture ID: {capture_id}"
        )
        return await self._refund(event.id, event.event_type, payload, capture_id, note)

    async def _on_capture_pending(
        self, event: CapturePending, payload: dict
    ) -> WebhookResult:
        capture = event.resource
        return await self._audit(
            event.id,
            event.event_type,
            payload,
            idempotency_keys.for_webhook(self.provider, capture.id, {"outcome": "pending"}),
            note="Capture pending - waiting for PAYMENT.CAPTURE.COMPLETED",
            payment_id=capture.id,
        )

    async def _on_capture_denied(
        self, event: CaptureDenied, payload: dict
    ) -> WebhookResult:
        capture = event.resource
        metadata = parse_custom_id(capture.custom_id) or PayPalOrderMetadata()
        return await self._audit(
            event.id,
            event.event_type,
            payload,
            idempotency_keys.for_webhook(self.provider, capture.id, {"outcome": "denied"}),
            outbox_event=EventTypeEnum.PAYMENT_FAILED,
            outbox_payload={
                "provider": self.provider,
                "payment_id": capture.id,
                "order_id": capture.order_id,
                "puppy_id": metadata.puppy_id,
                "puppy_slug": metadata.puppy_slug,
                "customer_email": metadata.customer_email,
            },
            payment_id=capture.id,
        )

    async def _on_order_approved(
        self, event: OrderApproved, payload: dict
    ) -> WebhookResult:
        order_id = str(event.resource.get("id") or event.id)
        return await self._audit(
            event.id,
            event.event_type,
            payload,
            idempotency_keys.for_webhook(self.provider, order_id, {"outcome": "approved"}),
        )
