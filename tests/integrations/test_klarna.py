from decimal import Decimal
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from payment_providers.integrations.payment_gateways.base import GatewayCommunicationError, PaymentError
from payment_providers.integrations.payment_gateways.klarna_adapter import KlarnaAdapter, vat_amount
from payment_providers.models.order import PaymentState
from tests.factories import query_request

COMMUNICATION_URL = "https://shop.example.com/payment-providers/klarna/request"
SNIPPET = "<div id='klarna-checkout-container'></div>"

COMPLETED_ORDER = {
    "order_id": "KO-1",
    "status": "checkout_complete",
    "order_amount": 15000,
    "html_snippet": SNIPPET,
    "billing_address": {
        "given_name": "Jane",
        "family_name": "Doe",
        "email": "jane@example.com",
        "street_address": "Main Street 1",
        "postal_code": "2100",
        "city": "Copenhagen",
        "phone": " ",
    },
    "shipping_address": {"street_address": "Harbour Road 9", "city": "Aarhus"},
}


def checkout_request(communication_type):
    return query_request(
        {"communicationType": communication_type},
        url=f"{COMMUNICATION_URL}?communicationType={communication_type}",
        headers={"Referer": "https://shop.example.com/checkout/pay"},
    )


class TestKlarnaProvider:
    @pytest.fixture
    def adapter(self):
        return KlarnaAdapter()

    @pytest.fixture
    def settings(self, adapter):
        return adapter.merge_settings(
            {
                "merchant.id": "K123",
                "sharedSecret": "klarnasecret",
                "paymentFormUrl": "/checkout/pay",
                "merchant.confirmation_uri": "/checkout/confirmation",
                "merchant.terms_uri": "/terms",
            }
        )

    @pytest.fixture
    def started_order(self, order, callback_urls):
        order.set_property("teaCommerceContinueUrl", callback_urls["continue_url"])
        order.set_property("teaCommerceCallbackUrl", callback_urls["callback_url"])
        return order

    def test_vat_amount_of_price_including_vat(self):
        assert vat_amount(Decimal("150.00"), Decimal("0.25")) == Decimal("30")

    @pytest.mark.asyncio
    async def test_form_sends_customer_to_payment_page(self, adapter, settings, order, callback_urls):
        form = await adapter.generate_html_form(order, settings=settings, **callback_urls)

        assert form.action == "/checkout/pay"
        assert form.input_fields == {}
        assert order.get_property("teaCommerceCommunicationUrl") == callback_urls["communication_url"]
        assert order.get_property("teaCommerceContinueUrl") == callback_urls["continue_url"]
        assert order.get_property("teaCommerceCallbackUrl") == callback_urls["callback_url"]
        order.saver.assert_called_once_with(order)

    @pytest.mark.asyncio
    async def test_form_requires_payment_page(self, adapter, order, callback_urls):
        with pytest.raises(PaymentError):
            await adapter.generate_html_form(order, settings=adapter.merge_settings({}), **callback_urls)

    def test_continue_url(self, adapter, settings, order):
        assert adapter.get_continue_url(order, settings) == "/checkout/confirmation"
        assert adapter.get_cancel_url(order, settings) == ""

    def test_checkout_order(self, adapter, settings, started_order, callback_urls):
        checkout_order = adapter.build_checkout_order(started_order, checkout_request("checkout"), settings)

        assert checkout_order["purchase_country"] == "DK"
        assert checkout_order["purchase_currency"] == "DKK"
        assert checkout_order["locale"] == "sv-se"
        assert checkout_order["order_amount"] == 15000
        assert checkout_order["order_tax_amount"] == 3000
        assert checkout_order["merchant_reference1"] == "CART-1001"
        assert checkout_order["billing_address"] == {"email": "jane@example.com", "postal_code": "2100"}
        assert checkout_order["merchant_urls"] == {
            "terms": "https://shop.example.com/terms",
            "checkout": "https://shop.example.com/checkout/pay",
            "confirmation": callback_urls["continue_url"],
            "push": callback_urls["callback_url"],
        }
        (line,) = checkout_order["order_lines"]
        assert line["reference"] == "0001"
        assert line["name"] == "Totala"
        assert line["unit_price"] == line["total_amount"] == 15000
        assert line["tax_rate"] == 2500
        assert line["total_tax_amount"] == 3000

    @pytest.mark.asyncio
    async def test_checkout_creates_klarna_order(self, adapter, settings, started_order):
        created = {"order_id": "KO-1", "status": "checkout_incomplete", "html_snippet": SNIPPET}

        with patch.object(adapter, "_request_json", AsyncMock(return_value=created)) as mock_request:
            response = await adapter.process_request(started_order, checkout_request("checkout"), settings)

        assert response.content_type == "text/html"
        assert response.body == SNIPPET
        method, url, operation = mock_request.await_args.args
        assert (method, url, operation) == ("POST", "https://api.playground.klarna.com/checkout/v3/orders", "create_order")
        assert mock_request.await_args.kwargs["auth"] == aiohttp.BasicAuth("K123", "klarnasecret")
        assert mock_request.await_args.kwargs["payload"]["order_amount"] == 15000
        assert started_order.transaction_information.transaction_id == "KO-1"
        assert started_order.transaction_information.payment_state is PaymentState.INITIALIZED
        started_order.saver.assert_called_once_with(started_order)

    @pytest.mark.asyncio
    async def test_checkout_updates_existing_klarna_order(self, adapter, settings, started_order):
        started_order.transaction_information.transaction_id = "KO-1"
        updated = {"order_id": "KO-1", "status": "checkout_incomplete", "html_snippet": SNIPPET}

        with patch.object(adapter, "_request_json", AsyncMock(return_value=updated)) as mock_request:
            response = await adapter.process_request(started_order, checkout_request("checkout"), settings)

        assert response.body == SNIPPET
        assert mock_request.await_count == 1
        assert mock_request.await_args.args[1:] == (
            "https://api.playground.klarna.com/checkout/v3/orders/KO-1",
            "update_order",
        )
        started_order.saver.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_klarna_order_is_recreated(self, adapter, settings, started_order):
        started_order.transaction_information.transaction_id = "KO-OLD"
        expired = GatewayCommunicationError("Not found", error_code="NOT_FOUND", provider="klarna")
        created = {"order_id": "KO-2", "html_snippet": SNIPPET}

        with patch.object(adapter, "_request_json", AsyncMock(side_effect=[expired, created])) as mock_request:
            response = await adapter.process_request(started_order, checkout_request("checkout"), settings)

        assert response.body == SNIPPET
        assert [call.args[2] for call in mock_request.await_args_list] == ["update_order", "create_order"]
        assert started_order.transaction_information.transaction_id == "KO-2"

    @pytest.mark.asyncio
    async def test_confirmation_authorizes(self, adapter, settings, started_order):
        started_order.transaction_information.transaction_id = "KO-1"

        with patch.object(adapter, "_request_json", AsyncMock(return_value=COMPLETED_ORDER)) as mock_request:
            response = await adapter.process_request(started_order, checkout_request("confirmation"), settings)

        assert response.body == SNIPPET
        assert mock_request.await_args.args[0] == "GET"
        assert started_order.transaction_information.payment_state is PaymentState.AUTHORIZED
        assert started_order.transaction_information.amount_authorized == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_confirmation_of_unfinished_checkout(self, adapter, settings, started_order):
        started_order.transaction_information.transaction_id = "KO-1"
        unfinished = {**COMPLETED_ORDER, "status": "checkout_incomplete"}

        with patch.object(adapter, "_request_json", AsyncMock(return_value=unfinished)):
            response = await adapter.process_request(started_order, checkout_request("confirmation"), settings)

        assert response.body == ""
        assert started_order.transaction_information.payment_state is None

    @pytest.mark.asyncio
    async def test_confirmation_without_klarna_order(self, adapter, settings, started_order):
        with patch.object(adapter, "_request_json", AsyncMock()) as mock_request:
            response = await adapter.process_request(started_order, checkout_request("confirmation"), settings)

        assert response.body == ""
        mock_request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gateway_error_answers_empty_snippet(self, adapter, settings, started_order):
        with patch.object(adapter, "_request_json", AsyncMock(side_effect=aiohttp.ClientError("reset"))):
            response = await adapter.process_request(started_order, checkout_request("checkout"), settings)

        assert response.body == ""

    @pytest.mark.asyncio
    async def test_push_captures_and_copies_addresses(self, adapter, settings, started_order):
        started_order.transaction_information.transaction_id = "KO-1"

        with patch.object(adapter, "_request_json", AsyncMock(return_value=COMPLETED_ORDER)):
            result = await adapter.process_callback(started_order, query_request({}), settings)

        info = result.callback_info
        assert info.amount == Decimal("150")
        assert info.transaction_id == "KO-1"
        assert info.payment_state is PaymentState.CAPTURED
        assert started_order.get_property("billing_street_address") == "Main Street 1"
        assert started_order.get_property("billing_postal_code") == "2100"
        assert started_order.get_property("shipping_city") == "Aarhus"
        assert started_order.get_property("billing_phone") == ""
        started_order.saver.assert_called_once_with(started_order)

    @pytest.mark.asyncio
    async def test_push_for_unfinished_checkout(self, adapter, settings, started_order):
        started_order.transaction_information.transaction_id = "KO-1"
        unfinished = {**COMPLETED_ORDER, "status": "checkout_incomplete"}

        with patch.object(adapter, "_request_json", AsyncMock(return_value=unfinished)):
            assert (await adapter.process_callback(started_order, query_request({}), settings)).callback_info is None
        assert started_order.get_property("billing_street_address") == ""

    @pytest.mark.asyncio
    async def test_live_mode_host(self, adapter, settings, started_order):
        settings["testMode"] = "0"
        started_order.transaction_information.transaction_id = "KO-1"

        with patch.object(adapter, "_request_json", AsyncMock(return_value=COMPLETED_ORDER)) as mock_request:
            await adapter.process_callback(started_order, query_request({}), settings)

        assert mock_request.await_args.args[1] == "https://api.klarna.com/checkout/v3/orders/KO-1"
