"""PayPal Orders v2 resources and the webhook events built on them."""

import json
from decimal import Decimal, InvalidOperation
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, ValidationError

CUSTOM_ID_MAX_LENGTH = 127

# Optional custom_id keys, least useful first
_DROP_ORDER = ("name", "phone", "customer", "slug", "channel", "email")


class PayPalMoney(BaseModel):
    currency_code: str = "USD"
    value: str


class PayPalLink(BaseModel):
    href: str
    rel: str
    method: str | None = None


class PayPalRelatedIds(BaseModel):
    order_id: str | None = None


class PayPalSupplementaryData(BaseModel):
    related_ids: PayPalRelatedIds | None = None


class PayPalCapture(BaseModel):
    id: str
    status: str | None = None
    amount: PayPalMoney
    custom_id: str | None = None
    supplementary_data: PayPalSupplementaryData | None = None

    @property
    def order_id(self) -> str | None:
        if self.supplementary_data and self.supplementary_data.related_ids:
            return self.supplementary_data.related_ids.order_id
        return None


class PayPalRefund(BaseModel):
    id: str
    status: str | None = None
    amount: PayPalMoney | None = None
    links: list[PayPalLink] = []

    @property
    def capture_id(self) -> str:
        # The "up" link points at /v2/payments/captures/{capture_id}
        for link in self.links:
            if link.rel == "up" and "/captures/" in link.href:
                return link.href.rstrip("/").rsplit("/", 1)[-1]
        return self.id


class PayPalPayerName(BaseModel):
    given_name: str | None = None
    surname: str | None = None


class PayPalPhoneNumber(BaseModel):
    national_number: str | None = None


class PayPalPhone(BaseModel):
    phone_number: PayPalPhoneNumber | None = None


class PayPalPayer(BaseModel):
    email_address: str | None = None
    name: PayPalPayerName | None = None
    phone: PayPalPhone | None = None

    @property
    def full_name(self) -> str | None:
        if self.name is None:
            return None
        parts = [part for part in (self.name.given_name, self.name.surname) if part]
        return " ".join(parts).strip() or None

    @property
    def phone_number(self) -> str | None:
        if self.phone and self.phone.phone_number:
            return self.phone.phone_number.national_number
        return None


class PayPalPayments(BaseModel):
    captures: list[PayPalCapture] = []


class PayPalPurchaseUnit(BaseModel):
    reference_id: str | None = None
    custom_id: str | None = None
    amount: PayPalMoney | None = None
    payments: PayPalPayments | None = None


class PayPalOrder(BaseModel):
    id: str
    status: str
    payer: PayPalPayer | None = None
    purchase_units: list[PayPalPurchaseUnit] = []
    links: list[PayPalLink] = []

    @property
    def custom_id(self) -> str | None:
        for unit in self.purchase_units:
            if unit.custom_id:
                return unit.custom_id
        return None

    @property
    def first_capture(self) -> PayPalCapture | None:
        for unit in self.purchase_units:
            if unit.payments and unit.payments.captures:
                return unit.payments.captures[0]
        return None

    @property
    def approve_url(self) -> str | None:
        for link in self.links:
            if link.rel in ("approve", "payer-action"):
                return link.href
        return None


class PayPalOrderMetadata(BaseModel):
    """Checkout data carried in a purchase unit's `custom_id`.

    Orders are created with compact keys to fit PayPal's 127 character limit;
    both the compact and the long spelling are accepted when reading.
    """

    puppy_id: str | None = Field(
        default=None, validation_alias=AliasChoices("puppy_id", "id")
    )
    puppy_slug: str | None = Field(
        default=None, validation_alias=AliasChoices("puppy_slug", "slug")
    )
    puppy_name: str | None = Field(
        default=None, validation_alias=AliasChoices("puppy_name", "name")
    )
    channel: str | None = None
    customer_email: str | None = Field(
        default=None, validation_alias=AliasChoices("customer_email", "email")
    )
    customer_name: str | None = Field(
        default=None, validation_alias=AliasChoices("customer_name", "customer")
    )
    customer_phone: str | None = Field(
        default=None, validation_alias=AliasChoices("customer_phone", "phone")
    )
    deposit_amount: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("deposit_amount", "amt")
    )

    def to_custom_id(self) -> str:
        compact = {
            "id": self.puppy_id,
            "slug": self.puppy_slug,
            "name": self.puppy_name,
            "channel": self.channel,
            "email": self.customer_email,
            "customer": self.customer_name,
            "phone": self.customer_phone,
            "amt": str(self.deposit_amount) if self.deposit_amount is not None else None,
        }
        compact = {key: value for key, value in compact.items() if value}
        droppable = [key for key in _DROP_ORDER if key in compact]

        custom_id = json.dumps(compact, separators=(",", ":"))
        while len(custom_id) > CUSTOM_ID_MAX_LENGTH and droppable:
            # The payer's own details fill these gaps when the order is captured
            del compact[droppable.pop(0)]
            custom_id = json.dumps(compact, separators=(",", ":"))

        if len(custom_id) > CUSTOM_ID_MAX_LENGTH:
            raise ValueError(
                f"PayPal custom_id exceeds {CUSTOM_ID_MAX_LENGTH} character limit"
            )
        return custom_id


def parse_custom_id(custom_id: str | None) -> PayPalOrderMetadata | None:
    if not custom_id:
        return None
    try:
        data = json.loads(custom_id)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return PayPalOrderMetadata.model_validate(data)
    except ValidationError:
        return None


def parse_amount(value: str | None) -> Decimal | None:
    """PayPal sends amounts as decimal strings; anything not a positive finite number is rejected."""
    if value is None:
        return None
    try:
        amount = Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


class CaptureCompleted(BaseModel):
    id: str
    event_type: Literal["PAYMENT.CAPTURE.COMPLETED"]
    resource: PayPalCapture


class CapturePending(BaseModel):
    id: str
    event_type: Literal["PAYMENT.CAPTURE.PENDING"]
    resource: PayPalCapture


class CaptureDenied(BaseModel):
    id: str
    event_type: Literal["PAYMENT.CAPTURE.DENIED"]
    resource: PayPalCapture


class CaptureRefunded(BaseModel):
    id: str
    event_type: Literal["PAYMENT.CAPTURE.REFUNDED"]
    resource: PayPalRefund


class OrderApproved(BaseModel):
    id: str
    event_type: Literal["CHECKOUT.ORDER.APPROVED"]
    resource: dict


class UnhandledPayPalEvent(BaseModel):
    id: str
    event_type: str


PayPalEvent = (
    CaptureCompleted
    | CapturePending
    | CaptureDenied
    | CaptureRefunded
    | OrderApproved
    | UnhandledPayPalEvent
)

_EVENT_MODELS: dict[str, type[BaseModel]] = {
    "PAYMENT.CAPTURE.COMPLETED": CaptureCompleted,
    "PAYMENT.CAPTURE.PENDING": CapturePending,
    "PAYMENT.CAPTURE.DENIED": CaptureDenied,
    "PAYMENT.CAPTURE.REFUNDED": CaptureRefunded,
    "CHECKOUT.ORDER.APPROVED": OrderApproved,
}


def decode_paypal_event(payload: dict) -> PayPalEvent:
    """Raises `pydantic.ValidationError` when a known event type is malformed."""
    model = _EVENT_MODELS.get(payload.get("event_type"), UnhandledPayPalEvent)
    return model.model_validate(payload)
