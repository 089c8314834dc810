import logging
import time
from decimal import Decimal
from typing import Any

import httpx

from reservations.core.paypal_events import PayPalOrder

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
    "paypal-cert-url",
    "paypal-auth-algo",
)

# Refresh tokens a minute before PayPal expires them
_TOKEN_EXPIRY_MARGIN_SECONDS = 60


class PayPalApiError(Exception):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class PayPalClient:
    """Thin async client for the PayPal Orders v2 and Notifications APIs."""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._transport = transport
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        async with self._client() as client:
            try:
                response = await client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self._client_id, self._client_secret),
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise PayPalApiError(
                    "Failed to obtain PayPal access token",
                    status_code=e.response.status_code,
                    details=e.response.text,
                ) from e
            except httpx.HTTPError as e:
                raise PayPalApiError(f"PayPal token request failed: {e}") from e

        body = response.json()
        self._access_token = body["access_token"]
        self._token_expires_at = (
            time.monotonic()
            + int(body.get("expires_in", 0))
            - _TOKEN_EXPIRY_MARGIN_SECONDS
        )
        return self._access_token

    async def _request(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict:
        token = await self._get_access_token()
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        request_headers.update(headers or {})

        async with self._client() as client:
            try:
                response = await client.request(
                    method, path, json=json, headers=request_headers
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(
                    f"PayPal {method} {path} failed with {e.response.status_code}: "
                    f"{e.response.text}"
                )
                raise PayPalApiError(
                    f"PayPal {method} {path} failed",
                    status_code=e.response.status_code,
                    details=e.response.text,
                ) from e
            except httpx.HTTPError as e:
                raise PayPalApiError(f"PayPal {method} {path} failed: {e}") from e

        return response.json() if response.content else {}

    async def create_order(
        self,
        amount: Decimal,
        custom_id: str,
        reference_id: str,
        description: str | None = None,
        currency: str = "USD",
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> PayPalOrder:
        purchase_unit = {
            "reference_id": reference_id,
            "custom_id": custom_id,
            "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
        }
        if description:
            purchase_unit["description"] = description[:127]

        body: dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
        }
        if return_url or cancel_url:
            body["application_context"] = {
                key: value
                for key, value in (("return_url", return_url), ("cancel_url", cancel_url))
                if value
            }

        data = await self._request("POST", "/v2/checkout/orders", json=body)
        return PayPalOrder.model_validate(data)

    async def get_order(self, order_id: str) -> PayPalOrder:
        data = await self._request("GET", f"/v2/checkout/orders/{order_id}")
        return PayPalOrder.model_validate(data)

    async def capture_order(self, order_id: str, request_id: str) -> PayPalOrder:
        # PayPal-Request-Id makes a repeated capture return the first result
        data = await self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers={"PayPal-Request-Id": request_id, "Prefer": "return=representation"},
        )
        return PayPalOrder.model_validate(data)

    async def verify_webhook_signature(
        self, headers: dict[str, str], event: dict, webhook_id: str
    ) -> bool:
        body = {
            "transmission_id": headers["paypal-transmission-id"],
            "transmission_sig": headers["paypal-transmission-sig"],
            "transmission_time": headers["paypal-transmission-time"],
            "cert_url": headers["paypal-cert-url"],
            "auth_algo": headers["paypal-auth-algo"],
            "webhook_id": webhook_id,
            "webhook_event": event,
        }
        data = await self._request(
            "POST", "/v1/notifications/verify-webhook-signature", json=body
        )
        return data.get("verification_status") == "SUCCESS"
