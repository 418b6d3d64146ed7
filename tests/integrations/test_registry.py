"""
Provider registration, factory lookups and the shared provider plumbing.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from payment_providers.integrations.payment_gateways import (
    CallbackRequest,
    CallbackResponse,
    GatewayCommunicationError,
    PaymentProviderFactory,
    PaymentProviderType,
)
from payment_providers.integrations.payment_gateways.dibs_adapter import DibsAdapter
from payment_providers.integrations.payment_gateways.invoicing_adapter import InvoicingAdapter
from payment_providers.integrations.payment_gateways.registry import BUILTIN_PROVIDERS
from payment_providers.integrations.payment_gateways.worldpay_adapter import WorldPayAdapter


class TestProviderRegistry:
    def test_every_provider_type_is_registered(self):
        assert set(BUILTIN_PROVIDERS) == set(PaymentProviderType)
        assert sorted(PaymentProviderFactory.get_supported_providers()) == sorted(t.value for t in PaymentProviderType)

    @pytest.mark.parametrize("name", ["dibs", "DIBS", PaymentProviderType.DIBS])
    def test_lookup_is_case_insensitive(self, name):
        assert PaymentProviderFactory.is_registered(name)
        assert isinstance(PaymentProviderFactory.create_provider(name), DibsAdapter)

    def test_unknown_provider(self):
        assert not PaymentProviderFactory.is_registered("bitcoin")
        with pytest.raises(ValueError):
            PaymentProviderFactory.create_provider("bitcoin")

    @pytest.mark.parametrize("provider_type", list(PaymentProviderType))
    def test_providers_describe_themselves(self, provider_type):
        provider = PaymentProviderFactory.create_provider(provider_type)

        assert provider.provider_type is provider_type
        assert provider.display_name
        assert isinstance(provider.default_settings, dict)
        assert all(isinstance(value, str) for value in provider.default_settings.values())
        assert set(provider.capabilities()) == {
            "supports_retrieval_of_payment_status",
            "supports_capturing_of_payment",
            "supports_refund_of_payment",
            "supports_cancellation_of_payment",
            "finalize_at_continue_url",
            "allows_callback_without_order_id",
        }


class TestPaymentProviderBase:
    def test_merge_settings_overlays_defaults(self):
        provider = WorldPayAdapter()
        merged = provider.merge_settings({"instId": "12345", "lang": "da"})

        assert merged["instId"] == "12345"
        assert merged["lang"] == "da"
        assert merged["authMode"] == "A"
        assert provider.default_settings["lang"] == "en"

    def test_capability_flags(self):
        capabilities = InvoicingAdapter().capabilities()
        assert capabilities["finalize_at_continue_url"] is True
        assert capabilities["supports_capturing_of_payment"] is False

    @pytest.mark.asyncio
    async def test_unsupported_operations_raise(self, order):
        provider = InvoicingAdapter()
        for operation in ("get_status", "capture_payment", "refund_payment", "cancel_payment"):
            with pytest.raises(NotImplementedError):
                await getattr(provider, operation)(order, {})
        with pytest.raises(NotImplementedError):
            await provider.get_cart_number(CallbackRequest(), {})

    @pytest.mark.asyncio
    async def test_http_error_becomes_communication_error(self):
        provider = DibsAdapter()
        response = Mock(status=503)
        response.text = AsyncMock(return_value="down")

        with pytest.raises(GatewayCommunicationError) as exc_info:
            await provider._handle_api_error(response, "capture")

        assert exc_info.value.error_code == "SERVER_ERROR"
        assert exc_info.value.provider == "dibs"
        assert exc_info.value.gateway_response == {"status": 503, "body": "down"}

    @pytest.mark.asyncio
    async def test_success_status_passes(self):
        await DibsAdapter()._handle_api_error(Mock(status=201), "capture")

    @pytest.mark.asyncio
    async def test_close_without_session(self):
        async with DibsAdapter() as provider:
            assert provider._session is None


class TestCallbackPrimitives:
    def test_request_lookups(self):
        request = CallbackRequest(
            url="https://shop.example.com/payment-providers/dibs/callback?x=1",
            query={"orderid": "1"},
            form={"orderid": "2", "amount": "100"},
            headers={"Stripe-Signature": "sig"},
            body=b'{"a": 1}',
        )

        assert request.value("orderid") == "1"
        assert request.value("amount") == "100"
        assert request.value("missing", "x") == "x"
        assert request.header("stripe-signature") == "sig"
        assert request.header("other") is None
        assert request.json() == {"a": 1}
        assert request.base_url == "https://shop.example.com/"

    def test_response_builders(self):
        redirect = CallbackResponse.redirect("https://shop.example.com/thanks")
        assert redirect.status_code == 302
        assert redirect.redirect_url == "https://shop.example.com/thanks"

        body = CallbackResponse.json_body({"ok": True})
        assert body.content_type == "application/json"
        assert body.body == '{"ok": true}'

        assert CallbackResponse.html("<p/>").content_type == "text/html"
