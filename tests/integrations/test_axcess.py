"""
Axcess POST frontend registration, response URL callback and follow up transactions.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from payment_providers.integrations.payment_gateways.axcess_adapter import TEST_URL, AxcessAdapter
from payment_providers.integrations.payment_gateways.base import PaymentError
from payment_providers.models.order import PaymentState
from tests.factories import form_request


class TestAxcessProvider:
    @pytest.fixture
    def adapter(self):
        return AxcessAdapter()

    @pytest.fixture
    def settings(self, adapter):
        return adapter.merge_settings(
            {
                "SECURITY.SENDER": "sender",
                "USER.LOGIN": "login",
                "USER.PWD": "pwd",
                "TRANSACTION.CHANNEL": "channel",
                "FRONTEND.RESPONSE_URL": "/checkout/thanks",
                "FRONTEND.CANCEL_URL": "/checkout/cancel",
            }
        )

    @pytest.mark.asyncio
    async def test_registration(self, adapter, settings, order, callback_urls):
        answer = "POST.VALIDATION=ACK&FRONTEND.REDIRECT_URL=https%3A%2F%2Ftest.ctpe.net%2Ffrontend%2Fstart%3Fid%3D1"

        with patch.object(adapter, "_post_form", AsyncMock(return_value=answer)) as mock_post:
            form = await adapter.generate_html_form(order, settings=settings, **callback_urls)

        assert form.action == "https://test.ctpe.net/frontend/start?id=1"
        url, fields, operation = mock_post.await_args.args
        assert url == TEST_URL
        assert operation == "CC.PA"
        assert fields["IDENTIFICATION.TRANSACTIONID"] == "CART-1001"
        assert fields["PRESENTATION.AMOUNT"] == "150.00"
        assert fields["FRONTEND.RESPONSE_URL"] == callback_urls["callback_url"]
        assert fields["CONTACT.IP"] == "192.0.2.10"
        assert fields["ADDRESS.ZIP"] == "2100"
        assert "FRONTEND.CANCEL_URL" not in fields
        assert "SYSTEM" not in fields

    @pytest.mark.asyncio
    async def test_refused_registration(self, adapter, settings, order, callback_urls):
        with patch.object(adapter, "_post_form", AsyncMock(return_value="POST.VALIDATION=2010")):
            with pytest.raises(PaymentError) as exc_info:
                await adapter.generate_html_form(order, settings=settings, **callback_urls)

        assert exc_info.value.error_code == "registration_failed"
        assert exc_info.value.gateway_response == {"POST.VALIDATION": "2010"}

    @pytest.mark.asyncio
    async def test_acknowledged_callback(self, adapter, settings, order):
        request = form_request(
            {
                "PROCESSING.RESULT": "ACK",
                "PRESENTATION.AMOUNT": "150.00",
                "IDENTIFICATION.UNIQUEID": "8a829449",
                "PAYMENT.CODE": "CC.DB",
            },
            url="https://shop.example.com/payment-providers/axcess/callback?cart_number=CART-1001",
        )

        result = await adapter.process_callback(order, request, settings)

        assert result.callback_info.transaction_id == "8a829449"
        assert result.callback_info.payment_state is PaymentState.CAPTURED
        assert result.response.body == "https://shop.example.com/checkout/thanks"

    @pytest.mark.asyncio
    async def test_declined_callback_redirects_to_cancel(self, adapter, settings, order):
        request = form_request(
            {"PROCESSING.RESULT": "NOK", "PROCESSING.CODE": "CC.PA.70.40"},
            url="https://shop.example.com/payment-providers/axcess/callback",
        )

        result = await adapter.process_callback(order, request, settings)

        assert result.callback_info is None
        assert result.response.body == "https://shop.example.com/checkout/cancel"

    @pytest.mark.asyncio
    async def test_capture(self, adapter, settings, order):
        order.transaction_information.transaction_id = "8a829449"
        order.transaction_information.amount_authorized = Decimal("150.00")

        answer = "PROCESSING.RESULT=ACK&IDENTIFICATION.UNIQUEID=8a82944a"
        with patch.object(adapter, "_post_form", AsyncMock(return_value=answer)) as mock_post:
            api_info = await adapter.capture_payment(order, settings)

        assert api_info.transaction_id == "8a82944a"
        assert api_info.payment_state is PaymentState.CAPTURED
        fields = mock_post.await_args.args[1]
        assert fields["PAYMENT.CODE"] == "CC.CP"
        assert fields["IDENTIFICATION.REFERENCEID"] == "8a829449"
        assert fields["PRESENTATION.AMOUNT"] == "150.00"

    @pytest.mark.asyncio
    async def test_cancel_has_no_amount(self, adapter, settings, order):
        with patch.object(adapter, "_post_form", AsyncMock(return_value="PROCESSING.RESULT=ACK")) as mock_post:
            api_info = await adapter.cancel_payment(order, settings)

        assert api_info.payment_state is PaymentState.CANCELLED
        assert "PRESENTATION.AMOUNT" not in mock_post.await_args.args[1]

    @pytest.mark.asyncio
    async def test_refund_rejected(self, adapter, settings, order):
        with patch.object(adapter, "_post_form", AsyncMock(return_value="PROCESSING.RESULT=NOK&PROCESSING.CODE=x")):
            assert await adapter.refund_payment(order, settings) is None
