"""
PayEx PxOrder: hashed SOAP calls with result documents embedded in the answer.
"""

from decimal import Decimal
from html import escape
from unittest.mock import AsyncMock, patch

import pytest

from payment_providers.integrations.payment_gateways.payex_adapter import (
    PayExAdapter,
    parse_px_result,
    vat_basis_points,
)
from payment_providers.models.order import PaymentState
from tests.factories import query_request


def px_result(**values: str) -> str:
    status_fields = {key: values.pop(key) for key in ("errorCode", "description") if key in values}
    status = "".join(f"<{key}>{value}</{key}>" for key, value in status_fields.items())
    body = "".join(f"<{key}>{value}</{key}>" for key, value in values.items())
    return f"<payex><header><id>1</id></header><status><code>OK</code>{status}</status>{body}</payex>"


def soap_answer(operation: str, result: str) -> str:
    return (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
        f'<{operation}Response xmlns="http://external.payex.com/PxOrder/">'
        f"<{operation}Result>{escape(result)}</{operation}Result>"
        f"</{operation}Response></soap:Body></soap:Envelope>"
    )


class TestPxResult:
    def test_status_fields_win(self):
        document = (
            "<payex><status><errorCode>OK</errorCode><description>OK</description></status>"
            "<order><description>Coffee</description></order><orderRef>REF-1</orderRef></payex>"
        )
        values = parse_px_result(document)
        assert values["errorCode"] == "OK"
        assert values["description"] == "OK"
        assert values["orderRef"] == "REF-1"

    def test_vat_basis_points(self):
        assert vat_basis_points(Decimal("0.25")) == 2500
        assert vat_basis_points(Decimal("0")) == 0


class TestPayExProvider:
    @pytest.fixture
    def adapter(self):
        return PayExAdapter()

    @pytest.fixture
    def settings(self, adapter):
        return adapter.merge_settings({"accountNumber": "123", "encryptionKey": "enc"})

    @pytest.fixture
    def captured_order(self, order):
        order.transaction_information.transaction_id = "TX-1"
        order.transaction_information.amount_authorized = Decimal("150.00")
        return order

    @pytest.mark.asyncio
    async def test_form_stores_order_ref(self, adapter, settings, order, callback_urls):
        result = {"errorCode": "OK", "orderRef": "REF-1", "redirectUrl": "https://test-account.payex.com/pay/REF-1"}

        with patch.object(adapter, "_call_service", AsyncMock(return_value=result)) as mock_call:
            form = await adapter.generate_html_form(order, settings=settings, **callback_urls)

        assert form.action == "https://test-account.payex.com/pay/REF-1"
        assert order.get_property("orderRef") == "REF-1"
        order.saver.assert_called_once_with(order)

        operation, params, _ = mock_call.await_args.args
        assert operation == "Initialize7"
        assert params["price"] == "15000"
        assert params["vat"] == "2500"
        assert params["productNumber"] == "SKU-1,SKU-2"
        assert params["description"] == "Coffee beans,Filter papers"
        assert params["clientIPAddress"] == "192.0.2.10"
        assert params["returnUrl"] == callback_urls["continue_url"]

    @pytest.mark.asyncio
    async def test_refused_initialization_goes_to_cancel_url(self, adapter, settings, order, callback_urls):
        result = {"errorCode": "Error_Generic", "description": "Invalid account"}
        with patch.object(adapter, "_call_service", AsyncMock(return_value=result)):
            form = await adapter.generate_html_form(order, settings=settings, **callback_urls)
        assert form.action == callback_urls["cancel_url"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, state", [("0", PaymentState.CAPTURED), ("3", PaymentState.AUTHORIZED)])
    async def test_callback_completes_order(self, adapter, settings, order, status, state):
        order.set_property("orderRef", "REF-1")
        result = {
            "errorCode": "OK",
            "transactionStatus": status,
            "amount": "15000",
            "transactionNumber": "TX-1",
            "paymentMethod": "VISA",
            "maskedNumber": "4925********0004",
        }

        with patch.object(adapter, "_call_service", AsyncMock(return_value=result)) as mock_call:
            info = (await adapter.process_callback(order, query_request({"orderRef": "REF-1"}), settings)).callback_info

        assert mock_call.await_args.args[:2] == ("Complete", {"accountNumber": "123", "orderRef": "REF-1"})
        assert info.amount == Decimal("150")
        assert info.transaction_id == "TX-1"
        assert info.payment_state is state
        assert info.payment_identifier == "4925********0004"

    @pytest.mark.asyncio
    async def test_already_completed(self, adapter, settings, order):
        result = {"errorCode": "OK", "transactionStatus": "0", "amount": "15000", "alreadyCompleted": "True"}
        with patch.object(adapter, "_call_service", AsyncMock(return_value=result)):
            assert (await adapter.process_callback(order, query_request({}), settings)).callback_info is None

    @pytest.mark.asyncio
    async def test_capture_sends_hashed_envelope(self, adapter, settings, captured_order):
        answer = soap_answer("Capture4", px_result(errorCode="OK", transactionStatus="6", transactionNumber="TX-2"))

        with patch.object(adapter, "_request", AsyncMock(return_value=answer)) as mock_request:
            api_info = await adapter.capture_payment(captured_order, settings)

        assert api_info.transaction_id == "TX-2"
        assert api_info.payment_state is PaymentState.CAPTURED
        assert mock_request.await_args.args[1] == "https://test-external.payex.com/pxorder/pxorder.asmx"
        kwargs = mock_request.await_args.kwargs
        assert kwargs["headers"]["SOAPAction"] == '"http://external.payex.com/PxOrder/Capture4"'
        assert b"8b2bc7249524ec8e8c8ca3a2b29facd3" in kwargs["data"]

    @pytest.mark.asyncio
    async def test_capture_with_unexpected_status(self, adapter, settings, captured_order):
        answer = soap_answer("Capture4", px_result(errorCode="OK", transactionStatus="5"))
        with patch.object(adapter, "_request", AsyncMock(return_value=answer)):
            assert await adapter.capture_payment(captured_order, settings) is None

    @pytest.mark.asyncio
    async def test_cancel_hash(self, adapter, settings, captured_order):
        answer = soap_answer("Cancel2", px_result(errorCode="OK", transactionStatus="4", transactionNumber="TX-3"))

        with patch.object(adapter, "_request", AsyncMock(return_value=answer)) as mock_request:
            api_info = await adapter.cancel_payment(captured_order, settings)

        assert api_info.payment_state is PaymentState.CANCELLED
        assert b"dcd6a8c614a32b099a0a7932e2c65536" in mock_request.await_args.kwargs["data"]

    @pytest.mark.asyncio
    async def test_status(self, adapter, settings, captured_order):
        result = {"errorCode": "OK", "transactionStatus": "2", "transactionNumber": "TX-4"}
        with patch.object(adapter, "_call_service", AsyncMock(return_value=result)):
            api_info = await adapter.get_status(captured_order, settings)
        assert api_info.transaction_id == "TX-4"
        assert api_info.payment_state is PaymentState.REFUNDED

    @pytest.mark.asyncio
    async def test_refund_network_error(self, adapter, settings, captured_order):
        with patch.object(adapter, "_request", AsyncMock(side_effect=TimeoutError())):
            assert await adapter.refund_payment(captured_order, settings) is None
