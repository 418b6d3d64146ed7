"""
QuickPay v10 payment window checksum, callback checksum header and REST API.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from payment_providers.integrations.payment_gateways.base import PaymentError
from payment_providers.integrations.payment_gateways.quickpay_adapter import QuickPayAdapter, quickpay_order_id
from payment_providers.models.order import PaymentState
from tests.factories import form_request

CALLBACK_BODY = (
    b'{"id": 7001, "order_id": "CART-1001", "operations": [{"type": "authorize", "amount": 15000, '
    b'"qp_status_code": "20000"}], "metadata": {"type": "card", "last4": "4242"}}'
)
CALLBACK_CHECKSUM = "3e1ac88243cf99df34af7c4a8299ef973d067668eae1601660c179c75ba364bf"


class TestQuickPayProvider:
    @pytest.fixture
    def adapter(self):
        return QuickPayAdapter()

    @pytest.fixture
    def settings(self, adapter):
        return adapter.merge_settings(
            {
                "merchant_id": "1234",
                "agreement_id": "A1",
                "windowApiKey": "winkey",
                "privateKey": "privkey",
                "apiKey": "apikey",
            }
        )

    def test_order_id_padding(self):
        assert quickpay_order_id("7") == "0007"
        assert quickpay_order_id("CART-1001") == "CART-1001"

    @pytest.mark.asyncio
    async def test_form_checksum(self, adapter, settings, order, callback_urls):
        form = await adapter.generate_html_form(order, settings=settings, **callback_urls)

        assert form.action == "https://payment.quickpay.net"
        assert form.input_fields["version"] == "v10"
        assert form.input_fields["amount"] == "15000"
        assert form.input_fields["checksum"] == "b919527fa09d02c5e84e649bb4a285486b644012c4a1bd4f20dbee225f76ca59"

    @pytest.mark.asyncio
    async def test_cart_number_limit(self, adapter, settings, order, callback_urls):
        order.cart_number = "C" * 21
        with pytest.raises(PaymentError):
            await adapter.generate_html_form(order, settings=settings, **callback_urls)

    @pytest.mark.asyncio
    async def test_valid_callback(self, adapter, settings, order):
        request = form_request({}, body=CALLBACK_BODY, headers={"QuickPay-Checksum-Sha256": CALLBACK_CHECKSUM})

        info = (await adapter.process_callback(order, request, settings)).callback_info

        assert info.amount == Decimal("150")
        assert info.transaction_id == "7001"
        assert info.payment_state is PaymentState.AUTHORIZED
        assert info.payment_type == "card"
        assert info.payment_identifier == "4242"

    @pytest.mark.asyncio
    async def test_wrong_checksum(self, adapter, settings, order):
        request = form_request({}, body=CALLBACK_BODY, headers={"QuickPay-Checksum-Sha256": "0" * 64})
        assert (await adapter.process_callback(order, request, settings)).callback_info is None

    @pytest.mark.asyncio
    async def test_signed_body_that_is_not_an_object(self, adapter, settings, order):
        checksum = "c077952955e92d2b3250966ae9d2adbc3ec1353da3ba90f048d2155c8edabdc3"
        request = form_request({}, body=b'[7001, "CART-1001"]', headers={"QuickPay-Checksum-Sha256": checksum})

        result = await adapter.process_callback(order, request, settings)

        assert result.callback_info is None
        assert result.response.status_code == 200

    @pytest.mark.asyncio
    async def test_callback_for_other_order(self, adapter, settings, order):
        order.cart_number = "CART-2002"
        request = form_request({}, body=CALLBACK_BODY, headers={"QuickPay-Checksum-Sha256": CALLBACK_CHECKSUM})
        assert (await adapter.process_callback(order, request, settings)).callback_info is None

    @pytest.mark.asyncio
    async def test_capture(self, adapter, settings, order):
        order.transaction_information.transaction_id = "7001"
        order.transaction_information.amount_authorized = Decimal("150.00")
        payment = {
            "id": 7001,
            "operations": [
                {"type": "authorize", "qp_status_code": "20000", "pending": False},
                {"type": "capture", "qp_status_code": "20000", "pending": False},
            ],
        }

        with patch.object(adapter, "_request_json", AsyncMock(return_value=payment)) as mock_request:
            api_info = await adapter.capture_payment(order, settings)

        assert api_info.transaction_id == "7001"
        assert api_info.payment_state is PaymentState.CAPTURED
        method, url, operation = mock_request.await_args.args
        assert method == "POST"
        assert url == "https://api.quickpay.net/payments/7001/capture?synchronized&amount=15000"
        assert mock_request.await_args.kwargs["headers"]["Accept-Version"] == "v10"

    @pytest.mark.asyncio
    async def test_status_request(self, adapter, settings, order):
        order.transaction_information.transaction_id = "7001"
        with patch.object(adapter, "_request_json", AsyncMock(return_value={"operations": []})) as mock_request:
            api_info = await adapter.get_status(order, settings)

        assert api_info.payment_state is PaymentState.INITIALIZED
        assert mock_request.await_args.args[:2] == ("GET", "https://api.quickpay.net/payments/7001?synchronized")

    @pytest.mark.asyncio
    async def test_api_error(self, adapter, settings, order):
        with patch.object(adapter, "_request_json", AsyncMock(side_effect=ValueError("bad json"))):
            assert await adapter.refund_payment(order, settings) is None

    def test_pending_and_failed_operations_are_skipped(self):
        payment = {
            "operations": [
                {"type": "authorize", "qp_status_code": "20000"},
                {"type": "refund", "qp_status_code": "20000", "pending": True},
                {"type": "cancel", "qp_status_code": "40000"},
            ]
        }
        assert QuickPayAdapter.map_payment(payment) is PaymentState.INITIALIZED
        payment["operations"].append({"type": "cancel", "qp_status_code": 20000})
        assert QuickPayAdapter.map_payment(payment) is PaymentState.CANCELLED
