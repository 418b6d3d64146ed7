"""
Stripe Payment Intents: inline form, intent creation, webhook finalization
and the management calls.
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from stripe import SignatureVerificationError, StripeError

from payment_providers.integrations.payment_gateways.base import CallbackRequest, PaymentError
from payment_providers.integrations.payment_gateways.stripe_adapter import (
    StripeAdapter,
    charge_order_reference,
    object_id,
    stripe_value,
)
from payment_providers.models.order import PaymentState
from tests.factories import query_request


def stripe_client() -> MagicMock:
    client = MagicMock()
    client.v1.payment_intents.create_async = AsyncMock()
    client.v1.payment_intents.retrieve_async = AsyncMock()
    client.v1.payment_intents.capture_async = AsyncMock()
    client.v1.payment_intents.cancel_async = AsyncMock()
    client.v1.charges.retrieve_async = AsyncMock()
    client.v1.refunds.create_async = AsyncMock()
    return client


def webhook_request(event_type: str = "payment_intent.succeeded") -> CallbackRequest:
    return CallbackRequest(
        method="POST",
        url="https://shop.example.com/payment-providers/stripe/request",
        headers={"Stripe-Signature": "t=1,v1=abc"},
        body=json.dumps({"type": event_type}).encode(),
    )


CAPTURED_CHARGE = {"id": "ch_1", "paid": True, "captured": True, "refunded": False}


class TestStripeHelpers:
    def test_stripe_value(self):
        assert stripe_value({"a": 1}, "a") == 1
        assert stripe_value(None, "a", "default") == "default"
        assert stripe_value(MagicMock(a=2), "a") == 2

    def test_object_id(self):
        assert object_id("ch_1") == "ch_1"
        assert object_id({"id": "ch_2"}) == "ch_2"
        assert object_id(None) is None

    def test_charge_order_reference(self):
        charge = {"metadata": {"orderId": "order-1", "cartNumber": "CART-1001"}}
        assert charge_order_reference(charge) == {"order_id": "order-1", "cart_number": "CART-1001"}
        assert charge_order_reference({"description": "legacy", "metadata": {}}) == {
            "order_id": "legacy",
            "cart_number": None,
        }

    @pytest.mark.parametrize(
        "charge, state",
        [
            (None, PaymentState.INITIALIZED),
            ({"paid": False}, PaymentState.INITIALIZED),
            ({"paid": True, "captured": False, "refunded": False}, PaymentState.AUTHORIZED),
            ({"paid": True, "captured": False, "refunded": True}, PaymentState.CANCELLED),
            ({"paid": True, "captured": True, "refunded": False}, PaymentState.CAPTURED),
            ({"paid": True, "captured": True, "refunded": True}, PaymentState.REFUNDED),
        ],
    )
    def test_charge_state(self, charge, state):
        assert StripeAdapter().get_charge_state(charge) is state

    @pytest.mark.parametrize(
        "intent, state",
        [
            ({"status": "canceled"}, PaymentState.CANCELLED),
            ({"status": "requires_capture"}, PaymentState.AUTHORIZED),
            ({"status": "succeeded", "latest_charge": "ch_1"}, PaymentState.CAPTURED),
            ({"status": "succeeded", "latest_charge": {**CAPTURED_CHARGE, "refunded": True}}, PaymentState.REFUNDED),
            ({"status": "requires_payment_method"}, PaymentState.INITIALIZED),
        ],
    )
    def test_payment_intent_state(self, intent, state):
        assert StripeAdapter().get_payment_intent_state(intent) is state


class TestStripeProvider:
    @pytest.fixture
    def adapter(self):
        return StripeAdapter()

    @pytest.fixture
    def settings(self, adapter):
        return adapter.merge_settings(
            {
                "form_url": "https://shop.example.com/checkout/pay",
                "continue_url": "https://shop.example.com/thanks",
                "cancel_url": "https://shop.example.com/cancel",
                "test_secret_key": "sk_test_1",
                "test_public_key": "pk_test_1",
                "test_webhook_secret": "whsec_1",
                "theme": "dark",
            }
        )

    @pytest.fixture
    def client(self, adapter):
        client = stripe_client()
        with patch.object(adapter, "_client", return_value=client):
            yield client

    @pytest.mark.asyncio
    async def test_form(self, adapter, settings, order, callback_urls):
        form = await adapter.generate_html_form(order, settings=settings, **callback_urls)

        assert form.action == "https://shop.example.com/checkout/pay"
        assert form.input_fields == {
            "theme": "dark",
            "api_key": "pk_test_1",
            "continue_url": callback_urls["continue_url"],
            "cancel_url": callback_urls["cancel_url"],
            "billing_address_line1": "Main Street 1",
            "billing_city": "Copenhagen",
            "billing_zip_code": "2100",
            "billing_country": "dk",
        }

    @pytest.mark.asyncio
    async def test_form_needs_public_key(self, adapter, settings, order, callback_urls):
        with pytest.raises(PaymentError):
            await adapter.generate_html_form(order, settings={**settings, "mode": "live"}, **callback_urls)

    @pytest.mark.asyncio
    async def test_capture_request_creates_payment_intent(self, adapter, settings, order, client):
        client.v1.payment_intents.create_async.return_value = MagicMock(id="pi_1", client_secret="pi_1_secret")

        response = await adapter.process_request(order, query_request({"action": "capture"}), settings)

        assert json.loads(response.body) == {"payment_intent_client_secret": "pi_1_secret"}
        assert order.get_property("stripePaymentIntentId") == "pi_1"
        assert order.transaction_information.payment_state is PaymentState.INITIALIZED
        params = client.v1.payment_intents.create_async.await_args.kwargs["params"]
        assert params["amount"] == 15000
        assert params["currency"] == "dkk"
        assert params["capture_method"] == "automatic"
        assert params["metadata"] == {"orderId": "order-1", "cartNumber": "CART-1001"}
        assert "receipt_email" not in params

    @pytest.mark.asyncio
    async def test_capture_request_error(self, adapter, settings, order, client):
        client.v1.payment_intents.create_async.side_effect = StripeError("Card declined")

        response = await adapter.process_request(order, query_request({"action": "capture"}), settings)

        assert "error" in json.loads(response.body)
        assert order.get_property("stripePaymentIntentId") == ""

    @pytest.mark.asyncio
    async def test_cart_number_from_payment_intent_event(self, adapter, settings):
        event = {"type": "payment_intent.succeeded", "data": {"object": {"metadata": {"cartNumber": "CART-1001"}}}}
        with patch.object(adapter, "construct_webhook_event", return_value=event):
            assert await adapter.get_cart_number(webhook_request(), settings) == "CART-1001"

    @pytest.mark.asyncio
    async def test_cart_number_from_charge_event(self, adapter, settings, client):
        event = {"type": "charge.succeeded", "data": {"object": {"payment_intent": "pi_1", "metadata": {}}}}
        client.v1.payment_intents.retrieve_async.return_value = {"metadata": {"cartNumber": "CART-1001"}}

        with patch.object(adapter, "construct_webhook_event", return_value=event):
            assert await adapter.get_cart_number(webhook_request("charge.succeeded"), settings) == "CART-1001"

    @pytest.mark.asyncio
    async def test_invalid_webhook_signature(self, adapter, settings):
        with patch(
            "stripe.Webhook.construct_event",
            side_effect=SignatureVerificationError("bad signature", "t=1,v1=abc"),
        ):
            assert await adapter.get_cart_number(webhook_request(), settings) is None

    def test_construct_webhook_event_without_secret(self, adapter):
        with pytest.raises(PaymentError) as exc_info:
            adapter.construct_webhook_event(b"{}", "sig", "")
        assert exc_info.value.error_code == "webhook_secret_missing"

    @pytest.mark.asyncio
    async def test_webhook_finalizes_authorized_order(self, adapter, settings, order):
        intent = {"amount": 15000, "status": "requires_capture", "latest_charge": "ch_1"}
        event = {"type": "payment_intent.amount_capturable_updated", "data": {"object": intent}}

        with patch.object(adapter, "construct_webhook_event", return_value=event):
            response = await adapter.process_request(order, webhook_request(event["type"]), settings)

        assert response.status_code == 200
        assert order.is_finalized
        assert order.transaction_information.amount_authorized == Decimal("150")
        assert order.transaction_information.transaction_id == "ch_1"
        assert order.transaction_information.payment_state is PaymentState.AUTHORIZED

    @pytest.mark.asyncio
    async def test_charge_webhook_updates_finalized_order(self, adapter, settings, order, client):
        order.finalize(Decimal("150"), "ch_1", PaymentState.AUTHORIZED)
        event = {"type": "charge.captured", "data": {"object": {"payment_intent": "pi_1"}}}
        client.v1.payment_intents.retrieve_async.return_value = {
            "amount": 15000,
            "status": "succeeded",
            "latest_charge": CAPTURED_CHARGE,
        }

        with patch.object(adapter, "construct_webhook_event", return_value=event):
            await adapter.process_request(order, webhook_request(event["type"]), settings)

        assert order.transaction_information.payment_state is PaymentState.CAPTURED
        assert client.v1.payment_intents.retrieve_async.await_args.kwargs["params"] == {"expand": ["latest_charge"]}

    @pytest.mark.asyncio
    async def test_callback_does_nothing(self, adapter, settings, order):
        result = await adapter.process_callback(order, webhook_request(), settings)
        assert result.callback_info is None

    @pytest.mark.asyncio
    async def test_status_from_payment_intent(self, adapter, settings, order, client):
        order.set_property("stripePaymentIntentId", "pi_1")
        client.v1.payment_intents.retrieve_async.return_value = {"status": "requires_capture", "latest_charge": "ch_1"}

        api_info = await adapter.get_status(order, settings)

        assert api_info.transaction_id == "ch_1"
        assert api_info.payment_state is PaymentState.AUTHORIZED

    @pytest.mark.asyncio
    async def test_status_from_charge(self, adapter, settings, order, client):
        order.transaction_information.transaction_id = "ch_1"
        client.v1.charges.retrieve_async.return_value = CAPTURED_CHARGE

        api_info = await adapter.get_status(order, settings)

        assert api_info.transaction_id == "ch_1"
        assert api_info.payment_state is PaymentState.CAPTURED

    @pytest.mark.asyncio
    async def test_capture(self, adapter, settings, order, client):
        order.set_property("stripePaymentIntentId", "pi_1")
        order.transaction_information.amount_authorized = Decimal("150.00")
        client.v1.payment_intents.capture_async.return_value = {
            "status": "succeeded",
            "latest_charge": CAPTURED_CHARGE,
        }

        api_info = await adapter.capture_payment(order, settings)

        assert api_info.transaction_id == "ch_1"
        assert api_info.payment_state is PaymentState.CAPTURED
        params = client.v1.payment_intents.capture_async.await_args.kwargs["params"]
        assert params["amount_to_capture"] == 15000

    @pytest.mark.asyncio
    async def test_capture_without_payment_intent(self, adapter, settings, order, client):
        assert await adapter.capture_payment(order, settings) is None
        client.v1.payment_intents.capture_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_refund(self, adapter, settings, order, client):
        order.transaction_information.transaction_id = "ch_1"
        client.v1.refunds.create_async.return_value = {"charge": {**CAPTURED_CHARGE, "refunded": True}}

        api_info = await adapter.refund_payment(order, settings)

        assert api_info.payment_state is PaymentState.REFUNDED
        assert client.v1.refunds.create_async.await_args.kwargs["params"] == {"charge": "ch_1", "expand": ["charge"]}

    @pytest.mark.asyncio
    async def test_cancel_with_charge_refunds(self, adapter, settings, order, client):
        order.transaction_information.transaction_id = "ch_1"
        client.v1.refunds.create_async.return_value = {"charge": "ch_1"}
        client.v1.charges.retrieve_async.return_value = {**CAPTURED_CHARGE, "captured": False, "refunded": True}

        api_info = await adapter.cancel_payment(order, settings)

        assert api_info.payment_state is PaymentState.CANCELLED
        client.v1.payment_intents.cancel_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_payment_intent(self, adapter, settings, order, client):
        order.set_property("stripePaymentIntentId", "pi_1")
        client.v1.payment_intents.cancel_async.return_value = {"status": "canceled", "latest_charge": None}

        api_info = await adapter.cancel_payment(order, settings)

        assert api_info.transaction_id is None
        assert api_info.payment_state is PaymentState.CANCELLED

    @pytest.mark.asyncio
    async def test_stripe_error_is_logged(self, adapter, settings, order, client):
        order.transaction_information.transaction_id = "ch_1"
        client.v1.refunds.create_async.side_effect = StripeError("No such charge")
        assert await adapter.refund_payment(order, settings) is None
