from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel


class PuppyStatusEnum(StrEnum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    SOLD = "sold"


class Puppy(BaseModel):
    id: str
    name: str
    slug: str | None = None
    price: Decimal
    status: PuppyStatusEnum
    is_archived: bool = False


class ReservationStatusEnum(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


ACTIVE_RESERVATION_STATUSES = (ReservationStatusEnum.PENDING, ReservationStatusEnum.PAID)


class PaymentProviderEnum(StrEnum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class ReservationChannelEnum(StrEnum):
    SITE = "site"
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    PHONE = "phone"


class Reservation(BaseModel):
    id: str
    puppy_id: str
    customer_email: str
    customer_name: str | None = None
    customer_phone: str | None = None
    channel: ReservationChannelEnum
    status: ReservationStatusEnum
    deposit_amount: Decimal
    payment_provider: PaymentProviderEnum
    external_payment_id: str
    expires_at: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None


class WebhookEvent(BaseModel):
    id: int
    provider: PaymentProviderEnum
    event_id: str
    event_type: str
    payload: dict
    idempotency_key: str | None = None
    processed: bool
    processing_started_at: datetime | None = None
    processed_at: datetime | None = None
    processing_error: str | None = None
    reservation_id: str | None = None
    created_at: datetime | None = None


class ErrorCode(StrEnum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RACE_CONDITION_LOST = "RACE_CONDITION_LOST"
    DATABASE_ERROR = "DATABASE_ERROR"
    PUPPY_NOT_AVAILABLE = "PUPPY_NOT_AVAILABLE"
    PAYMENT_PROVIDER_ERROR = "PAYMENT_PROVIDER_ERROR"


class ReservationResult(BaseModel):
    success: bool
    reservation: Reservation | None = None
    already_exists: bool = False
    error: str | None = None
    error_code: ErrorCode | None = None


class CheckEventResult(BaseModel):
    exists: bool
    reservation: Reservation | None = None
    webhook_event: WebhookEvent | None = None


class CreateEventResult(BaseModel):
    success: bool
    is_duplicate: bool = False
    webhook_event: WebhookEvent | None = None
    error: str | None = None


class WebhookResult(BaseModel):
    success: bool
    event_type: str
    duplicate: bool = False
    error: str | None = None
    error_code: ErrorCode | None = None
    reservation_id: str | None = None
    payment_id: str | None = None
    retryable: bool = False


class EventTypeEnum(StrEnum):
    RESERVATION_CREATED = "RESERVATION.CREATED"
    RESERVATION_REFUNDED = "RESERVATION.REFUNDED"
    RESERVATION_EXPIRED = "RESERVATION.EXPIRED"
    RESERVATION_CANCELLED = "RESERVATION.CANCELLED"
    PAYMENT_FAILED = "PAYMENT.FAILED"


class OutboxEventStatus(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"


class OutboxEvent(BaseModel):
    id: str
    event_type: EventTypeEnum
    payload: dict
    status: OutboxEventStatus
    created_at: datetime
