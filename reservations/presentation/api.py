import hmac
import json
import logging
from http import HTTPStatus

import stripe
from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from reservations.application.cancel_reservation import CancelReservationUseCase
from reservations.application.container import ApplicationContainer
from reservations.application.expire_reservations import ExpireReservationsUseCase
from reservations.application.ledger import WebhookLedger
from reservations.application.paypal_checkout import (
    CapturePayPalOrderUseCase,
    CreatePayPalOrderUseCase,
    PayPalOrderRequest,
)
from reservations.application.paypal_webhook import PayPalWebhookHandler
from reservations.application.stripe_webhook import StripeWebhookHandler
from reservations.application.webhook_health import GetWebhookHealthUseCase
from reservations.core.models import ErrorCode, WebhookResult
from reservations.infrastructure.paypal_client import (
    SIGNATURE_HEADERS,
    PayPalApiError,
    PayPalClient,
)
from reservations.infrastructure.repositories import DoesNotExist

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_STRIPE_TOLERANCE = 300

_ERROR_STATUSES = {
    ErrorCode.VALIDATION_ERROR: HTTPStatus.BAD_REQUEST,
    ErrorCode.PUPPY_NOT_AVAILABLE: HTTPStatus.CONFLICT,
    ErrorCode.RACE_CONDITION_LOST: HTTPStatus.CONFLICT,
    ErrorCode.PAYMENT_PROVIDER_ERROR: HTTPStatus.BAD_GATEWAY,
}


class CaptureRequest(BaseModel):
    order_id: str


class CancelRequest(BaseModel):
    reason: str | None = None


def _error(message: str, status_code: HTTPStatus) -> JSONResponse:
    return JSONResponse(content={"error": message}, status_code=status_code)


def _webhook_response(result: WebhookResult) -> JSONResponse:
    """Only retryable failures are reported as errors; anything else is acknowledged."""
    status_code = (
        HTTPStatus.INTERNAL_SERVER_ERROR
        if not result.success and result.retryable
        else HTTPStatus.OK
    )
    return JSONResponse(
        content={
            "received": True,
            "processed": result.success,
            "event_type": result.event_type,
            "duplicate": result.duplicate,
            "reservation_id": result.reservation_id,
            "error": result.error,
        },
        status_code=status_code,
    )


def _authorized(authorization: str | None, secret: str | None) -> bool:
    if not secret or not authorization:
        return False
    return hmac.compare_digest(authorization, f"Bearer {secret}")


@router.post("/webhooks/stripe")
@inject
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    webhook_settings: dict = Depends(Provide[ApplicationContainer.config.webhooks]),
    handler: StripeWebhookHandler = Depends(
        Provide[ApplicationContainer.stripe_webhook_handler]
    ),
):
    if not stripe_signature:
        return _error("Missing Stripe-Signature header", HTTPStatus.BAD_REQUEST)

    body = await request.body()
    try:
        stripe.WebhookSignature.verify_header(
            body.decode("utf-8"),
            stripe_signature,
            webhook_settings["stripe_secret"],
            int(webhook_settings.get("stripe_tolerance") or DEFAULT_STRIPE_TOLERANCE),
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe signature verification failed: {e}")
        return _error("Invalid signature", HTTPStatus.BAD_REQUEST)

    try:
        payload = json.loads(body)
    except ValueError:
        return _error("Invalid JSON payload", HTTPStatus.BAD_REQUEST)

    try:
        result = await handler.process_event(payload)
    except Exception:
        logger.exception("Unexpected error while processing Stripe webhook")
        return _error("Internal server error", HTTPStatus.INTERNAL_SERVER_ERROR)
    return _webhook_response(result)


@router.post("/webhooks/paypal")
@inject
async def paypal_webhook(
    request: Request,
    webhook_settings: dict = Depends(Provide[ApplicationContainer.config.webhooks]),
    paypal_client: PayPalClient = Depends(
        Provide[ApplicationContainer.infrastructure_container.paypal_client]
    ),
    handler: PayPalWebhookHandler = Depends(
        Provide[ApplicationContainer.paypal_webhook_handler]
    ),
):
    headers = {name: request.headers.get(name) for name in SIGNATURE_HEADERS}
    missing = [name for name, value in headers.items() if not value]
    if missing:
        return _error(
            f"Missing PayPal signature headers: {', '.join(missing)}",
            HTTPStatus.BAD_REQUEST,
        )

    try:
        payload = json.loads(await request.body())
    except ValueError:
        return _error("Invalid JSON payload", HTTPStatus.BAD_REQUEST)

    try:
        verified = await paypal_client.verify_webhook_signature(
            headers, payload, webhook_settings["paypal_webhook_id"]
        )
    except PayPalApiError as e:
        logger.error(f"PayPal signature verification unavailable: {e}")
        return _error("Signature verification unavailable", HTTPStatus.INTERNAL_SERVER_ERROR)

    if not verified:
        logger.warning("PayPal signature verification failed")
        return _error("Invalid signature", HTTPStatus.BAD_REQUEST)

    try:
        result = await handler.process_event(payload)
    except Exception:
        logger.exception("Unexpected error while processing PayPal webhook")
        return _error("Internal server error", HTTPStatus.INTERNAL_SERVER_ERROR)
    return _webhook_response(result)


@router.post("/paypal/orders")
@inject
async def create_paypal_order(
    order: PayPalOrderRequest,
    use_case: CreatePayPalOrderUseCase = Depends(
        Provide[ApplicationContainer.create_paypal_order_use_case]
    ),
):
    try:
        result = await use_case(order)
    except Exception:
        logger.exception("Unexpected error while creating PayPal order")
        return _error("Internal server error", HTTPStatus.INTERNAL_SERVER_ERROR)

    if not result.success:
        return JSONResponse(
            content=result.model_dump(mode="json"),
            status_code=_ERROR_STATUSES.get(result.error_code, HTTPStatus.INTERNAL_SERVER_ERROR),
        )
    return JSONResponse(content=result.model_dump(mode="json"), status_code=HTTPStatus.CREATED)


@router.post("/paypal/capture")
@inject
async def capture_paypal_order(
    capture: CaptureRequest,
    use_case: CapturePayPalOrderUseCase = Depends(
        Provide[ApplicationContainer.capture_paypal_order_use_case]
    ),
):
    try:
        result = await use_case(capture.order_id)
    except Exception:
        logger.exception(f"Unexpected error while capturing PayPal order {capture.order_id}")
        return _error("Internal server error", HTTPStatus.INTERNAL_SERVER_ERROR)

    status_code = (
        HTTPStatus.OK
        if result.success
        else _ERROR_STATUSES.get(result.error_code, HTTPStatus.INTERNAL_SERVER_ERROR)
    )
    return JSONResponse(content=result.model_dump(mode="json"), status_code=status_code)


@router.post("/cron/expire-reservations")
@inject
async def expire_reservations(
    authorization: str | None = Header(default=None),
    cron_settings: dict = Depends(Provide[ApplicationContainer.config.cron]),
    use_case: ExpireReservationsUseCase = Depends(
        Provide[ApplicationContainer.expire_reservations_use_case]
    ),
):
    if not _authorized(authorization, cron_settings.get("secret")):
        return _error("Unauthorized", HTTPStatus.UNAUTHORIZED)

    try:
        report = await use_case()
    except Exception:
        logger.exception("Reservation expiration run failed")
        return _error("Internal server error", HTTPStatus.INTERNAL_SERVER_ERROR)
    return JSONResponse(content=report.model_dump(mode="json"), status_code=HTTPStatus.OK)


@router.post("/cron/cleanup-webhook-events")
@inject
async def cleanup_webhook_events(
    authorization: str | None = Header(default=None),
    cron_settings: dict = Depends(Provide[ApplicationContainer.config.cron]),
    ledger: WebhookLedger = Depends(Provide[ApplicationContainer.ledger]),
):
    if not _authorized(authorization, cron_settings.get("secret")):
        return _error("Unauthorized", HTTPStatus.UNAUTHORIZED)

    try:
        deleted = await ledger.cleanup_old_events()
    except Exception:
        logger.exception("Webhook event cleanup failed")
        return _error("Internal server error", HTTPStatus.INTERNAL_SERVER_ERROR)
    return JSONResponse(content={"deleted": deleted}, status_code=HTTPStatus.OK)


@router.post("/admin/reservations/{reservation_id}/cancel")
@inject
async def cancel_reservation(
    reservation_id: str,
    body: CancelRequest | None = None,
    authorization: str | None = Header(default=None),
    cron_settings: dict = Depends(Provide[ApplicationContainer.config.cron]),
    use_case: CancelReservationUseCase = Depends(
        Provide[ApplicationContainer.cancel_reservation_use_case]
    ),
):
    # Operator calls share the scheduler's bearer secret
    if not _authorized(authorization, cron_settings.get("secret")):
        return _error("Unauthorized", HTTPStatus.UNAUTHORIZED)

    try:
        reservation = await use_case(reservation_id, reason=body.reason if body else None)
    except DoesNotExist:
        return _error("Reservation not found", HTTPStatus.NOT_FOUND)
    except ValueError as e:
        return _error(str(e), HTTPStatus.CONFLICT)
    except Exception:
        logger.exception(f"Cancelling reservation {reservation_id} failed")
        return _error("Internal server error", HTTPStatus.INTERNAL_SERVER_ERROR)
    return JSONResponse(
        content=reservation.model_dump(mode="json"), status_code=HTTPStatus.OK
    )


@router.get("/health/webhooks")
@inject
async def webhook_health(
    use_case: GetWebhookHealthUseCase = Depends(
        Provide[ApplicationContainer.webhook_health_use_case]
    ),
):
    try:
        report = await use_case()
    except Exception:
        logger.exception("Webhook health check failed")
        return JSONResponse(
            content={"healthy": False, "error": "Health check failed"},
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
        )

    return JSONResponse(
        content=report.model_dump(mode="json"),
        status_code=HTTPStatus.OK if report.healthy else HTTPStatus.SERVICE_UNAVAILABLE,
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )
