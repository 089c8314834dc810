import logging

from pydantic import ValidationError

from reservations.application.create_reservation import ReservationRequest
from reservations.application.webhook_processing import WebhookProcessor
from reservations.core import idempotency_keys
from reservations.core.clock import utcnow
from reservations.core.models import EventTypeEnum, PaymentProviderEnum, WebhookResult
from reservations.core.stripe_events import (
    ChargeRefunded,
    CheckoutSessionAsyncPaymentFailed,
    CheckoutSessionAsyncPaymentSucceeded,
    CheckoutSessionCompleted,
    CheckoutSessionExpired,
    StripeCheckoutMetadata,
    StripeCheckoutSession,
    decode_stripe_event,
)

logger = logging.getLogger(__name__)


class StripeWebhookHandler(WebhookProcessor):
    provider = PaymentProviderEnum.STRIPE

    async def process_event(self, payload: dict) -> WebhookResult:
        try:
            event = decode_stripe_event(payload)
        except ValidationError as e:
            return self._malformed(payload, "type", e)

        logger.info(f"Processing Stripe event {event.type} ({event.id})")
        handler = {
            CheckoutSessionCompleted: self._on_session_completed,
            CheckoutSessionAsyncPaymentSucceeded: self._on_async_payment_succeeded,
            CheckoutSessionAsyncPaymentFailed: self._on_async_payment_failed,
            CheckoutSessionExpired: self._on_session_expired,
            ChargeRefunded: self._on_charge_refunded,
        }.get(type(event))

        if handler is None:
            return self._ignored(event.id, event.type)
        return await self._dispatch(handler, event, payload, event.type)

    async def _on_session_completed(
        self, event: CheckoutSessionCompleted, payload: dict
    ) -> WebhookResult:
        session = event.data.object
        if session.payment_status != "paid":
            # Delayed payment methods settle later via async_payment_succeeded
            return await self._audit(
                event.id,
                event.type,
                payload,
                idempotency_keys.for_webhook(
                    self.provider,
                    session.payment_intent or session.id,
                    {"payment_status": session.payment_status or "unknown"},
                ),
                note="Payment pending - waiting for async_payment_succeeded",
                payment_id=session.payment_intent,
            )

        return await self._fulfil_session(event.id, event.type, payload, session)

    async def _on_async_payment_succeeded(
        self, event: CheckoutSessionAsyncPaymentSucceeded, payload: dict
    ) -> WebhookResult:
        return await self._fulfil_session(event.id, event.type, payload, event.data.object)

    async def _fulfil_session(
        self,
        event_id: str,
        event_type: str,
        payload: dict,
        session: StripeCheckoutSession,
    ) -> WebhookResult:
        metadata = session.metadata or StripeCheckoutMetadata()
        details = session.customer_details
        payment_id = session.payment_intent

        if not payment_id:
            return await self._reject(
                self._params(event_id, event_type, payload), "Missing payment intent"
            )
        if not metadata.puppy_id:
            return await self._reject(
                self._params(event_id, event_type, payload),
                "Missing required metadata: puppy_id",
                payment_id=payment_id,
            )
        if session.amount <= 0:
            return await self._reject(
                self._params(event_id, event_type, payload),
                "Invalid payment amount",
                payment_id=payment_id,
            )

        customer_email = (details and details.email) or metadata.customer_email
        if not customer_email:
            return await self._reject(
                self._params(event_id, event_type, payload),
                "Missing customer email",
                payment_id=payment_id,
            )

        request = ReservationRequest(
            puppy_id=metadata.puppy_id,
            customer_email=customer_email,
            customer_name=(details and details.name) or metadata.customer_name,
            customer_phone=(details and details.phone) or metadata.customer_phone,
            channel=metadata.channel,
            deposit_amount=session.amount,
            payment_provider=self.provider,
            external_payment_id=payment_id,
            notes=f"Stripe Checkout Session: {session.id}",
        )
        return await self._fulfil(event_id, event_type, payload, request, session.amount)

    async def _on_async_payment_failed(
        self, event: CheckoutSessionAsyncPaymentFailed, payload: dict
    ) -> WebhookResult:
        session = event.data.object
        metadata = session.metadata or StripeCheckoutMetadata()
        details = session.customer_details
        logger.warning(
            f"Async payment failed for session {session.id} (payment intent {session.payment_intent})"
        )
        return await self._audit(
            event.id,
            event.type,
            payload,
            idempotency_keys.for_webhook(
                self.provider, session.payment_intent or session.id, {"outcome": "failed"}
            ),
            outbox_event=EventTypeEnum.PAYMENT_FAILED,
            outbox_payload={
                "provider": self.provider,
                "payment_id": session.payment_intent,
                "session_id": session.id,
                "puppy_id": metadata.puppy_id,
                "puppy_slug": metadata.puppy_slug,
                "customer_email": (details and details.email) or metadata.customer_email,
            },
            payment_id=session.payment_intent,
        )

    async def _on_session_expired(
        self, event: CheckoutSessionExpired, payload: dict
    ) -> WebhookResult:
        session = event.data.object
        return await self._audit(
            event.id,
            event.type,
            payload,
            idempotency_keys.for_webhook(self.provider, session.id, {"outcome": "expired"}),
            note="Session expired without payment",
        )

    async def _on_charge_refunded(self, event: ChargeRefunded, payload: dict) -> WebhookResult:
        charge = event.data.object
        if not charge.payment_intent:
            return await self._reject(
                self._params(event.id, event.type, payload), "Charge has no payment intent"
            )

        currency = (charge.currency or "usd").upper()
        note = (
            f"[Stripe Refund {utcnow().isoformat()}] Amount: ${charge.refunded_amount} "
            f"{currency}, Charge ID: {charge.id}"
        )
        return await self._refund(event.id, event.type, payload, charge.payment_intent, note)
