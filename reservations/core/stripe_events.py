"""Typed variants of the Stripe webhook events the service acts on.

Only the fields the reservation flow reads are modelled; everything else in
the payload is ignored. Unknown event types decode to `UnhandledStripeEvent`.
"""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel


class StripeCustomerDetails(BaseModel):
    email: str | None = None
    name: str | None = None
    phone: str | None = None


class StripeCheckoutMetadata(BaseModel):
    puppy_id: str | None = None
    puppy_slug: str | None = None
    puppy_name: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    channel: str | None = None


class StripeCheckoutSession(BaseModel):
    id: str
    payment_intent: str | None = None
    payment_status: str | None = None
    amount_total: int | None = None
    currency: str | None = None
    customer_details: StripeCustomerDetails | None = None
    metadata: StripeCheckoutMetadata | None = None

    @property
    def amount(self) -> Decimal:
        # Stripe amounts are integer cents
        return Decimal(self.amount_total or 0) / 100


class StripeCharge(BaseModel):
    id: str
    payment_intent: str | None = None
    amount_refunded: int = 0
    currency: str | None = None

    @property
    def refunded_amount(self) -> Decimal:
        return Decimal(self.amount_refunded) / 100


class _SessionData(BaseModel):
    object: StripeCheckoutSession


class _ChargeData(BaseModel):
    object: StripeCharge


class CheckoutSessionCompleted(BaseModel):
    id: str
    type: Literal["checkout.session.completed"]
    data: _SessionData


class CheckoutSessionAsyncPaymentSucceeded(BaseModel):
    id: str
    type: Literal["checkout.session.async_payment_succeeded"]
    data: _SessionData


class CheckoutSessionAsyncPaymentFailed(BaseModel):
    id: str
    type: Literal["checkout.session.async_payment_failed"]
    data: _SessionData


class CheckoutSessionExpired(BaseModel):
    id: str
    type: Literal["checkout.session.expired"]
    data: _SessionData


class ChargeRefunded(BaseModel):
    id: str
    type: Literal["charge.refunded"]
    data: _ChargeData


class UnhandledStripeEvent(BaseModel):
    id: str
    type: str


StripeEvent = (
    CheckoutSessionCompleted
    | CheckoutSessionAsyncPaymentSucceeded
    | CheckoutSessionAsyncPaymentFailed
    | CheckoutSessionExpired
    | ChargeRefunded
    | UnhandledStripeEvent
)

_EVENT_MODELS: dict[str, type[BaseModel]] = {
    "checkout.session.completed": CheckoutSessionCompleted,
    "checkout.session.async_payment_succeeded": CheckoutSessionAsyncPaymentSucceeded,
    "checkout.session.async_payment_failed": CheckoutSessionAsyncPaymentFailed,
    "checkout.session.expired": CheckoutSessionExpired,
    "charge.refunded": ChargeRefunded,
}


def decode_stripe_event(payload: dict) -> StripeEvent:
    """Raises `pydantic.ValidationError` when a known event type is malformed."""
    model = _EVENT_MODELS.get(payload.get("type"), UnhandledStripeEvent)
    return model.model_validate(payload)
