import json
from decimal import Decimal

import pytest

from payment_providers.integrations.payment_gateways.base import PaymentError
from payment_providers.integrations.payment_gateways.cybersource_adapter import (
    CyberSourceAdapter,
    build_data_to_sign,
    sign,
)
from payment_providers.models.order import PaymentState
from tests.factories import form_request

SIGNED_FIELD_NAMES = "decision,req_transaction_uuid,auth_amount,signed_field_names,signed_date_time"


@pytest.fixture
def receipt():
    return {
        "decision": "ACCEPT",
        "req_transaction_uuid": "uuid-1",
        "auth_amount": "150.00",
        "signed_field_names": SIGNED_FIELD_NAMES,
        "signed_date_time": "2024-03-01T10:00:00Z",
        "signature": "48QBcONnKFoxDT6pEoxJ6xH2DiV8O74MM1Qjk80GiKM=",
    }


class TestSigning:
    def test_build_data_to_sign(self):
        fields = {"amount": "1.00", "signed_field_names": "amount,signed_date_time", "signed_date_time": "old"}
        assert build_data_to_sign(fields) == "amount=1.00,signed_date_time=old"
        assert build_data_to_sign(fields, "new") == "amount=1.00,signed_date_time=new"

    def test_sign_replaces_timestamp(self):
        fields = {"amount": "150.00", "signed_field_names": "amount,signed_field_names,signed_date_time"}
        assert sign(fields, "secret", "2024-03-01T10:00:00Z") == "pmRfmjn5RJvA+be6z60uKWIkNO4Zg5w9Ta6DgKyHLoM="

    def test_missing_field(self):
        with pytest.raises(KeyError):
            build_data_to_sign({"signed_field_names": "amount"})


class TestCyberSourceProvider:
    @pytest.fixture
    def adapter(self):
        return CyberSourceAdapter()

    @pytest.fixture
    def settings(self, adapter):
        return adapter.merge_settings(
            {
                "form_url": "https://shop.example.com/checkout/card",
                "continue_url": "https://shop.example.com/thanks",
                "cancel_url": "https://shop.example.com/cancel",
                "profile_id": "PROFILE",
                "access_key": "ACCESS",
                "secret_key": "secret",
            }
        )

    @pytest.mark.asyncio
    async def test_form_points_at_host_card_form(self, adapter, settings, order, callback_urls):
        form = await adapter.generate_html_form(order, settings=settings, **callback_urls)

        assert form.action == "https://shop.example.com/checkout/card"
        assert form.input_fields["form_url"] == "https://testsecureacceptance.cybersource.com/silent/pay"
        assert form.input_fields["communication_url"] == callback_urls["communication_url"]
        assert form.input_fields["amount"] == "150.00"
        assert form.input_fields["currency"] == "DKK"
        assert "secret_key" not in form.input_fields

    @pytest.mark.asyncio
    async def test_live_endpoint(self, adapter, settings, order, callback_urls):
        form = await adapter.generate_html_form(order, settings={**settings, "mode": "live"}, **callback_urls)
        assert form.input_fields["form_url"] == "https://secureacceptance.cybersource.com/silent/pay"

    @pytest.mark.asyncio
    async def test_unknown_currency(self, adapter, settings, order, callback_urls):
        order.currency_iso_code = "XXY"
        with pytest.raises(PaymentError):
            await adapter.generate_html_form(order, settings=settings, **callback_urls)

    @pytest.mark.asyncio
    async def test_sign_request(self, adapter, settings, order):
        fields = {"amount": "150.00", "signed_field_names": "amount,signed_field_names,signed_date_time"}

        response = await adapter.process_request(order, form_request(fields), settings)

        body = json.loads(response.body)
        assert response.content_type == "application/json"
        assert body["error"] is False
        assert body["signature"] == sign(fields, "secret", body["signature_timestamp"])

    @pytest.mark.asyncio
    async def test_sign_request_missing_field(self, adapter, settings, order):
        response = await adapter.process_request(order, form_request({"signed_field_names": "amount"}), settings)
        assert json.loads(response.body)["error"] is True

    @pytest.mark.asyncio
    async def test_sign_request_on_callback_url(self, adapter, settings, order):
        fields = {"amount": "1.00", "signed_field_names": "amount"}
        result = await adapter.process_callback(order, form_request(fields, query={"sign": ""}), settings)

        assert result.callback_info is None
        assert json.loads(result.response.body)["signature"] == sign(fields, "secret")

    @pytest.mark.asyncio
    async def test_accepted_receipt(self, adapter, settings, order, receipt):
        result = await adapter.process_callback(order, form_request(receipt), settings)

        assert result.callback_info.amount == Decimal("150.00")
        assert result.callback_info.transaction_id == "uuid-1"
        assert result.callback_info.payment_state is PaymentState.CAPTURED
        assert result.response.redirect_url == "https://shop.example.com/thanks"

    @pytest.mark.asyncio
    async def test_forged_receipt_posts_back_to_form(self, adapter, settings, order, receipt):
        receipt["auth_amount"] = "1.00"

        result = await adapter.process_callback(order, form_request(receipt), settings)

        assert result.callback_info is None
        assert 'action="https://shop.example.com/checkout/card"' in result.response.body
        assert 'value="Payment signature cannot be verified."' in result.response.body
        assert 'name="auth_amount" value="1.00"' in result.response.body

    @pytest.mark.asyncio
    async def test_declined_receipt(self, adapter, settings, order, receipt):
        receipt["decision"] = "DECLINE"
        receipt["message"] = "Card declined"
        receipt["signature"] = sign(receipt, "secret")

        result = await adapter.process_callback(order, form_request(receipt), settings)

        assert result.callback_info is None
        assert 'name="error_message" value="Card declined"' in result.response.body
