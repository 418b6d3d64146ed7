"""
Wannafind payment window, callback MD5 and the pgwapi SOAP service.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from payment_providers.integrations.payment_gateways.wannafind_adapter import WannafindAdapter
from payment_providers.models.order import PaymentState
from tests.factories import query_request


def soap_answer(operation: str, **values: str) -> str:
    elements = "".join(f"<{key}>{value}</{key}>" for key, value in values.items())
    return (
        '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/" xmlns:ns1="urn:pgwapi">'
        f"<SOAP-ENV:Body><ns1:{operation}Response>{elements}</ns1:{operation}Response></SOAP-ENV:Body>"
        "</SOAP-ENV:Envelope>"
    )


class TestWannafindProvider:
    @pytest.fixture
    def adapter(self):
        return WannafindAdapter()

    @pytest.fixture
    def settings(self, adapter):
        return adapter.merge_settings(
            {
                "shopid": "4242",
                "md5AuthSecret": "authsecret",
                "md5CallbackSecret": "cbsecret",
                "apiUser": "user",
                "apiPassword": "pass",
            }
        )

    @pytest.fixture
    def prefixed_order(self, order):
        order.store_cart_number_prefix = "CART-"
        return order

    @pytest.mark.asyncio
    async def test_form(self, adapter, settings, prefixed_order, callback_urls):
        form = await adapter.generate_html_form(prefixed_order, settings=settings, **callback_urls)

        fields = form.input_fields
        assert fields["orderid"] == "1001"
        assert fields["currency"] == "208"
        assert fields["amount"] == "15000"
        assert fields["checkmd5"] == "cc29fd75953982c533c9362c5688f3f2"
        assert "cardtype" not in fields
        assert form.attributes["target"] == "_blank"
        assert not {"md5AuthSecret", "md5CallbackSecret", "apiUser", "apiPassword", "testmode"} & set(fields)

    @pytest.mark.asyncio
    async def test_valid_callback(self, adapter, settings, prefixed_order):
        request = query_request(
            {
                "orderid": "1001",
                "currency": "208",
                "amount": "15000",
                "transacknum": "9876",
                "cardtype": "VISA",
                "cardnomask": "XXXX XXXX XXXX 4242",
                "checkmd5callback": "8001734ec823506b95fa2bbc6602178d",
            }
        )

        info = (await adapter.process_callback(prefixed_order, request, settings)).callback_info

        assert info.amount == Decimal("150")
        assert info.transaction_id == "9876"
        assert info.payment_state is PaymentState.AUTHORIZED
        assert info.payment_identifier == "XXXX XXXX XXXX 4242"

    @pytest.mark.asyncio
    async def test_invalid_callback(self, adapter, settings, prefixed_order):
        request = query_request({"orderid": "1001", "currency": "208", "amount": "1", "checkmd5callback": "x"})
        assert (await adapter.process_callback(prefixed_order, request, settings)).callback_info is None

    @pytest.mark.asyncio
    async def test_capture_takes_whole_amount(self, adapter, settings, order):
        order.transaction_information.transaction_id = "9876"
        answer = soap_answer("captureTransaction", **{"return": "0"})

        with patch.object(adapter, "_request", AsyncMock(return_value=answer)) as mock_request:
            api_info = await adapter.capture_payment(order, settings)

        assert api_info.transaction_id == "9876"
        assert api_info.payment_state is PaymentState.CAPTURED
        kwargs = mock_request.await_args.kwargs
        assert b"<amount>0</amount>" in kwargs["data"]
        assert kwargs["auth"] == aiohttp.BasicAuth("user", "pass")
        assert kwargs["headers"]["SOAPAction"] == '"urn:pgwapi#captureTransaction"'

    @pytest.mark.asyncio
    async def test_refund_failure(self, adapter, settings, order):
        answer = soap_answer("creditTransaction", **{"return": "4"})
        with patch.object(adapter, "_request", AsyncMock(return_value=answer)):
            assert await adapter.refund_payment(order, settings) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code, state",
        [("5", PaymentState.AUTHORIZED), ("6", PaymentState.CAPTURED), ("8", PaymentState.REFUNDED), ("1", PaymentState.INITIALIZED)],
    )
    async def test_status(self, adapter, settings, order, code, state):
        answer = soap_answer("checkTransaction", returncode=code)
        with patch.object(adapter, "_request", AsyncMock(return_value=answer)):
            api_info = await adapter.get_status(order, settings)
        assert api_info.payment_state is state
