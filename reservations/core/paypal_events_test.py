import json
from decimal import Decimal

import pytest

from reservations.core.paypal_events import (
    CaptureCompleted,
    CaptureRefunded,
    PayPalOrder,
    PayPalOrderMetadata,
    UnhandledPayPalEvent,
    decode_paypal_event,
    parse_amount,
    parse_custom_id,
)


class TestParseCustomId:
    def test_compact_keys(self):
        # Given
        custom_id = json.dumps(
            {"id": "p-1", "slug": "bella", "email": "a@b.co", "customer": "Ann", "amt": "300"}
        )

        # When
        metadata = parse_custom_id(custom_id)

        # Then
        assert metadata.puppy_id == "p-1"
        assert metadata.puppy_slug == "bella"
        assert metadata.customer_email == "a@b.co"
        assert metadata.customer_name == "Ann"
        assert metadata.deposit_amount == Decimal("300")

    def test_long_keys(self):
        # When
        metadata = parse_custom_id(
            json.dumps({"puppy_id": "p-1", "customer_email": "a@b.co", "channel": "site"})
        )

        # Then
        assert metadata.puppy_id == "p-1"
        assert metadata.customer_email == "a@b.co"
        assert metadata.channel == "site"

    @pytest.mark.parametrize("custom_id", [None, "", "not json", "[1, 2]"])
    def test_unusable_values(self, custom_id):
        # When/Then
        assert parse_custom_id(custom_id) is None


class TestToCustomId:
    def test_writes_compact_keys_and_drops_empty_values(self):
        # Given
        metadata = PayPalOrderMetadata(
            puppy_id="p-1", puppy_slug="bella", channel="site", deposit_amount=Decimal("300.00")
        )

        # When
        custom_id = metadata.to_custom_id()

        # Then
        assert json.loads(custom_id) == {
            "id": "p-1",
            "slug": "bella",
            "channel": "site",
            "amt": "300.00",
        }
        assert parse_custom_id(custom_id) == metadata

    def test_drops_optional_keys_to_fit_paypal_limit(self):
        # Given
        metadata = PayPalOrderMetadata(
            puppy_id="8f1c2a4e-3b7d-4c59-9e0a-6d2f1b3c4a5e",
            puppy_slug="bella",
            puppy_name="Bella",
            channel="site",
            customer_email="buyer@example.com",
            customer_phone="+15551234567",
            deposit_amount=Decimal("300.00"),
        )

        # When
        data = json.loads(metadata.to_custom_id())

        # Then
        assert "name" not in data
        assert "phone" not in data
        assert data["email"] == "buyer@example.com"
        assert data["amt"] == "300.00"

    def test_rejects_values_over_paypal_limit(self):
        # Given
        metadata = PayPalOrderMetadata(puppy_id="x" * 200)

        # When/Then
        with pytest.raises(ValueError, match="127"):
            metadata.to_custom_id()


class TestParseAmount:
    @pytest.mark.parametrize(
        "value, expected",
        [("300.00", Decimal("300.00")), (" 12.5 ", Decimal("12.5"))],
    )
    def test_valid(self, value, expected):
        assert parse_amount(value) == expected

    @pytest.mark.parametrize("value", [None, "", "abc", "0", "-1", "NaN", "Infinity"])
    def test_invalid(self, value):
        assert parse_amount(value) is None


class TestDecodePayPalEvent:
    def test_capture_completed(self, paypal_event_factory):
        # Given
        payload = paypal_event_factory(custom_id={"id": "p-1"})

        # When
        event = decode_paypal_event(payload)

        # Then
        assert isinstance(event, CaptureCompleted)
        assert event.resource.order_id == "ORDER-1"
        assert parse_custom_id(event.resource.custom_id).puppy_id == "p-1"

    def test_refund_resolves_capture_from_up_link(self):
        # Given
        payload = {
            "id": "WH-1",
            "event_type": "PAYMENT.CAPTURE.REFUNDED",
            "resource": {
                "id": "REFUND-1",
                "amount": {"currency_code": "USD", "value": "300.00"},
                "links": [
                    {"href": "https://api.paypal.com/v2/payments/refunds/REFUND-1", "rel": "self"},
                    {"href": "https://api.paypal.com/v2/payments/captures/CAPTURE-9", "rel": "up"},
                ],
            },
        }

        # When
        event = decode_paypal_event(payload)

        # Then
        assert isinstance(event, CaptureRefunded)
        assert event.resource.capture_id == "CAPTURE-9"

    def test_refund_without_links_uses_resource_id(self):
        # When
        event = decode_paypal_event(
            {"id": "WH-2", "event_type": "PAYMENT.CAPTURE.REFUNDED", "resource": {"id": "CAPTURE-3"}}
        )

        # Then
        assert event.resource.capture_id == "CAPTURE-3"

    def test_unknown_type_is_unhandled(self):
        # When
        event = decode_paypal_event({"id": "WH-3", "event_type": "BILLING.PLAN.CREATED"})

        # Then
        assert isinstance(event, UnhandledPayPalEvent)


class TestPayPalOrder:
    def test_payer_details_and_first_capture(self):
        # Given
        order = PayPalOrder.model_validate(
            {
                "id": "ORDER-1",
                "status": "COMPLETED",
                "payer": {
                    "email_address": "payer@example.com",
                    "name": {"given_name": "Ann", "surname": "Lee"},
                    "phone": {"phone_number": {"national_number": "5551234567"}},
                },
                "purchase_units": [
                    {
                        "custom_id": "{\"id\":\"p-1\"}",
                        "payments": {
                            "captures": [
                                {"id": "CAPTURE-1", "amount": {"value": "300.00"}}
                            ]
                        },
                    }
                ],
            }
        )

        # Then
        assert order.payer.full_name == "Ann Lee"
        assert order.payer.phone_number == "5551234567"
        assert order.custom_id == "{\"id\":\"p-1\"}"
        assert order.first_capture.id == "CAPTURE-1"
