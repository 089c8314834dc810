import json
import re
import uuid
from decimal import Decimal
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reservations.application.container import ApplicationContainer
from reservations.application.create_reservation import (
    CreateReservationUseCase,
    ReservationRequest,
)
from reservations.application.ledger import WebhookLedger
from reservations.core.models import Puppy
from reservations.infrastructure.db_schema import metadata
from reservations.infrastructure.paypal_client import PayPalClient
from reservations.infrastructure.repositories import OutboxRepository, PuppyRepository
from reservations.infrastructure.unit_of_work import UnitOfWork
from reservations.presentation import api

CONFIG_PATH = Path(__file__).parent / "reservations" / "config.yaml"


class FakePayPalApi:
    """In-memory stand-in for the PayPal REST API, served through httpx.MockTransport."""

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.verification_status = "SUCCESS"
        self.failing_paths: set[str] = set()
        self.requests: list[httpx.Request] = []

    def add_order(
        self,
        order_id: str,
        custom_id: str | None,
        amount: str = "300.00",
        status: str = "APPROVED",
        payer: dict | None = None,
    ) -> dict:
        order = {
            "id": order_id,
            "status": status,
            "purchase_units": [
                {
                    "reference_id": "default",
                    "custom_id": custom_id,
                    "amount": {"currency_code": "USD", "value": amount},
                }
            ],
            "links": [],
        }
        if payer is not None:
            order["payer"] = payer
        self.orders[order_id] = order
        return order

    def _capture(self, order: dict) -> dict:
        if order["status"] != "COMPLETED":
            unit = order["purchase_units"][0]
            order["status"] = "COMPLETED"
            unit["payments"] = {
                "captures": [
                    {
                        "id": f"CAPTURE-{order['id']}",
                        "status": "COMPLETED",
                        "amount": unit["amount"],
                        "custom_id": unit["custom_id"],
                    }
                ]
            }
        return order

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path in self.failing_paths:
            return httpx.Response(500, json={"name": "INTERNAL_SERVER_ERROR"})

        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": 3600})

        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})

        if path == "/v2/checkout/orders" and request.method == "POST":
            body = json.loads(request.content)
            unit = body["purchase_units"][0]
            order = self.add_order(
                f"ORDER-{len(self.orders) + 1}",
                unit["custom_id"],
                amount=unit["amount"]["value"],
                status="CREATED",
            )
            order["links"] = [
                {
                    "href": f"https://paypal.test/checkoutnow?token={order['id']}",
                    "rel": "approve",
                    "method": "GET",
                }
            ]
            return httpx.Response(201, json=order)

        match = re.fullmatch(r"/v2/checkout/orders/([^/]+)(/capture)?", path)
        if match:
            order = self.orders.get(match.group(1))
            if order is None:
                return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
            if match.group(2):
                return httpx.Response(201, json=self._capture(order))
            return httpx.Response(200, json=order)

        return httpx.Response(404, json={"name": "NOT_FOUND"})


@pytest.fixture()
async def container(tmp_path) -> ApplicationContainer:
    container = ApplicationContainer()
    container.config.from_yaml(CONFIG_PATH, required=True)
    container.config.from_dict(
        {
            "infrastructure": {
                "db": {
                    "dsn": f"sqlite+aiosqlite:///{tmp_path / 'reservations.db'}",
                    "pool_size": 5,
                    "pool_recycle": 3600,
                },
                "paypal": {
                    "base_url": "https://paypal.test",
                    "client_id": "client-id",
                    "client_secret": "client-secret",
                    "timeout": 5,
                },
            },
            "reservations": {"relist_on_refund": False},
            "webhooks": {
                "stripe_secret": "whsec_test",
                "stripe_tolerance": 300,
                "paypal_webhook_id": "WH-TEST",
            },
            "cron": {"secret": "cron-secret"},
        }
    )
    return container


@pytest.fixture(autouse=True)
def paypal_api(container: ApplicationContainer) -> FakePayPalApi:
    fake = FakePayPalApi()
    container.infrastructure_container.paypal_client.override(
        PayPalClient(
            base_url="https://paypal.test",
            client_id="client-id",
            client_secret="client-secret",
            transport=httpx.MockTransport(fake.handler),
        )
    )
    return fake


@pytest.fixture()
async def session_factory(
    container: ApplicationContainer,
) -> async_sessionmaker[AsyncSession]:
    return container.infrastructure_container.session_factory()


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def fast_api_app(container: ApplicationContainer):
    app = FastAPI()
    app.include_router(api.router)
    container.wire(modules=[api])
    app.container = container
    yield app
    container.unwire()


@pytest_asyncio.fixture(autouse=True)
async def setup_database(container: ApplicationContainer):
    engine = container.infrastructure_container.async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def test_async_client(fast_api_app) -> AsyncClient:
    async with AsyncClient(
        transport=ASGITransport(app=fast_api_app),
        base_url="http://test.com",
    ) as client:
        client.app = fast_api_app
        yield client


@pytest.fixture()
def unit_of_work(container: ApplicationContainer) -> UnitOfWork:
    return container.infrastructure_container.unit_of_work()


@pytest.fixture()
def ledger(container: ApplicationContainer) -> WebhookLedger:
    return container.ledger()


@pytest.fixture()
def create_reservation_use_case(container: ApplicationContainer) -> CreateReservationUseCase:
    return container.create_reservation_use_case()


@pytest.fixture
def puppy_factory(session: AsyncSession):
    async def _create_puppy(**kwargs) -> Puppy:
        defaults = {
            "name": "Bella",
            "slug": f"bella-{uuid.uuid4().hex[:8]}",
            "price": Decimal("3500.00"),
        }
        defaults.update(kwargs)
        puppy = await PuppyRepository(session).create(PuppyRepository.CreateDTO(**defaults))
        await session.commit()
        return puppy

    return _create_puppy


@pytest.fixture
def reservation_request_factory():
    def _create_request(puppy_id: str, **kwargs) -> ReservationRequest:
        defaults = {
            "puppy_id": puppy_id,
            "customer_email": "buyer@example.com",
            "customer_name": "Jane Buyer",
            "customer_phone": "+1 555 123 4567",
            "deposit_amount": Decimal("300.00"),
            "payment_provider": "stripe",
            "external_payment_id": f"pi_{uuid.uuid4().hex}",
        }
        defaults.update(kwargs)
        return ReservationRequest(**defaults)

    return _create_request


@pytest.fixture
async def outbox_repo(session: AsyncSession) -> OutboxRepository:
    return OutboxRepository(session)


@pytest.fixture
def stripe_event_factory():
    def _create_event(event_type: str = "checkout.session.completed", **session) -> dict:
        puppy_id = session.pop("puppy_id", str(uuid.uuid4()))
        obj = {
            "id": f"cs_{uuid.uuid4().hex[:12]}",
            "object": "checkout.session",
            "payment_intent": f"pi_{uuid.uuid4().hex[:16]}",
            "payment_status": "paid",
            "amount_total": 30000,
            "currency": "usd",
            "customer_details": {
                "email": "buyer@example.com",
                "name": "Jane Buyer",
                "phone": "+15551234567",
            },
            "metadata": {
                "puppy_id": puppy_id,
                "puppy_slug": "bella",
                "puppy_name": "Bella",
                "channel": "site",
            },
        }
        obj.update(session)
        return {
            "id": f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }

    return _create_event


@pytest.fixture
def paypal_event_factory():
    def _create_event(
        event_type: str = "PAYMENT.CAPTURE.COMPLETED",
        custom_id: dict | None = None,
        **resource,
    ) -> dict:
        obj = {
            "id": f"CAP{uuid.uuid4().hex[:14].upper()}",
            "status": "COMPLETED",
            "amount": {"currency_code": "USD", "value": "300.00"},
            "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
        }
        if custom_id is not None:
            obj["custom_id"] = json.dumps(custom_id, separators=(",", ":"))
        obj.update(resource)
        return {
            "id": f"WH-{uuid.uuid4().hex[:16].upper()}",
            "event_type": event_type,
            "resource_type": "capture",
            "resource": obj,
        }

    return _create_event
