"""
HTTP surface for gateway callbacks, browser requests and Stripe webhooks.
"""

import json
from typing import Generator
from urllib.parse import urlencode, urlsplit
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from payment_providers.api.dependencies.redis import get_redis_client
from payment_providers.core.config import clear_settings_cache
from payment_providers.integrations.payment_gateways.stripe_adapter import StripeAdapter
from payment_providers.main import create_application
from payment_providers.models.order import PaymentState
from payment_providers.services.order_service import InMemoryOrderRepository, get_order_repository
from tests.factories import make_order

PROVIDER_SETTINGS = {
    "worldpay": {"paymentResponsePassword": "letmein"},
    "paymentsense": {"CallbackURL": "https://shop.example.com/thanks", "CancelURL": "https://shop.example.com/cancel"},
    "stripe": {"test_secret_key": "sk_test_1", "test_webhook_secret": "whsec_1"},
    "ogone": {"SHAOUTPASSPHRASE": "outpass"},
    "epay": {"md5securitykey": "secret"},
}


@pytest.fixture
def repository() -> InMemoryOrderRepository:
    repository = InMemoryOrderRepository()
    repository.add(make_order())
    return repository


@pytest.fixture
def test_client(monkeypatch, repository) -> Generator[TestClient, None, None]:
    monkeypatch.setenv("PROVIDER_SETTINGS", json.dumps(PROVIDER_SETTINGS))
    monkeypatch.delenv("REDIS_URL", raising=False)
    clear_settings_cache()

    app = create_application()
    app.dependency_overrides[get_order_repository] = lambda: repository
    app.dependency_overrides[get_redis_client] = lambda: None

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


class TestProviderListing:
    def test_lists_all_providers(self, test_client):
        response = test_client.get("/payment-providers")

        assert response.status_code == 200
        providers = {provider["name"]: provider for provider in response.json()}
        assert len(providers) == 22
        assert providers["sagepay"]["display_name"] == "Sage Pay"
        assert providers["sagepay"]["capabilities"]["supports_capturing_of_payment"] is True
        assert providers["worldpay"]["capabilities"]["allows_callback_without_order_id"] is True


class TestCallbackEndpoint:
    def test_callback_finalizes_order(self, test_client, repository):
        response = test_client.get("/payment-providers/invoicing/callback", params={"cart_number": "CART-1001"})

        assert response.status_code == 200
        assert repository._orders["CART-1001"].is_finalized

    def test_form_post_without_cart_number(self, test_client, repository):
        response = test_client.post(
            "/payment-providers/worldpay/callback",
            data={
                "callbackPW": "letmein",
                "cartId": "CART-1001",
                "transStatus": "Y",
                "authAmount": "150.00",
                "transId": "WP-1",
                "authMode": "E",
            },
        )

        order = repository._orders["CART-1001"]
        assert response.status_code == 200
        assert order.transaction_information.payment_state is PaymentState.AUTHORIZED
        assert order.transaction_information.transaction_id == "WP-1"

    def test_redirect_response(self, test_client):
        response = test_client.get(
            "/payment-providers/paymentsense/callback",
            params={"cart_number": "CART-1001"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "https://shop.example.com/cancel"

    def test_unknown_provider(self, test_client):
        response = test_client.post("/payment-providers/bitcoin/callback", params={"cart_number": "CART-1001"})
        assert response.status_code == 404
        assert response.json()["detail"] == "Payment provider not found"

    def test_unknown_order(self, test_client):
        response = test_client.get("/payment-providers/invoicing/callback", params={"cart_number": "CART-404"})
        assert response.status_code == 404
        assert response.json()["detail"] == "Order not found"


class TestRequestEndpoint:
    def test_unknown_order(self, test_client):
        response = test_client.post("/payment-providers/stripe/request", params={"cart_number": "CART-404"})
        assert response.status_code == 404


class TestStripeWebhookEndpoint:
    def test_bad_signature(self, test_client):
        response = test_client.post(
            "/payment-providers/stripe/webhook",
            content=b'{"type": "charge.refunded"}',
            headers={"Stripe-Signature": "t=1,v1=bad"},
        )
        assert response.status_code == 400

    def test_refund_event(self, test_client, repository):
        order = repository._orders["CART-1001"]
        order.finalize(order.total_price, "ch_1", PaymentState.CAPTURED)
        event = {
            "type": "charge.refunded",
            "data": {
                "object": {
                    "paid": True,
                    "captured": True,
                    "refunded": True,
                    "metadata": {"orderId": "order-1", "cartNumber": "CART-1001"},
                }
            },
        }

        with patch.object(StripeAdapter, "construct_webhook_event", return_value=event):
            response = test_client.post("/payment-providers/stripe/webhook", content=b"{}")

        assert response.status_code == 200
        assert response.json() == {"status": "updated", "event_type": "charge.refunded"}
        assert order.transaction_information.payment_state is PaymentState.REFUNDED


def provider_callback_url(callback_urls, provider_name: str, gateway_fields) -> str:
    """Callback URL as handed to the gateway, with the gateway's own query appended."""
    parts = urlsplit(callback_urls["callback_url"].replace("/test/", f"/{provider_name}/"))
    return f"{parts.path}?{parts.query}&{urlencode(gateway_fields)}"


class TestQuerySignedCallbacks:
    def test_ogone_redirect_finalizes_order(self, test_client, repository, callback_urls):
        url = provider_callback_url(
            callback_urls,
            "ogone",
            {
                "ORDERID": "CART-1001",
                "AMOUNT": "150",
                "CURRENCY": "DKK",
                "PAYID": "3014",
                "STATUS": "9",
                "BRAND": "VISA",
                "CARDNO": "XXXX4242",
                "SHASIGN": (
                    "67A3D9CC65B5D838CC6EFADB0F639F47C087D4CB7B9BDDADE3FD6603B8C00DBD"
                    "120832122A6893A8D55C53C7AC3F715ACDB4FC145698D1EE4919472879C5B974"
                ),
            },
        )

        response = test_client.get(url)

        order = repository._orders["CART-1001"]
        assert response.status_code == 200
        assert order.is_finalized
        assert order.transaction_information.transaction_id == "3014"
        assert order.transaction_information.payment_state is PaymentState.CAPTURED

    def test_epay_callback_finalizes_order(self, test_client, repository, callback_urls):
        url = provider_callback_url(
            callback_urls,
            "epay",
            {
                "txnid": "123",
                "orderid": "CART-1001",
                "amount": "15000",
                "currency": "208",
                "date": "20240101",
                "time": "1200",
                "txnfee": "0",
                "paymenttype": "3",
                "cardno": "444444XXXXXX4000",
                "hash": "d94d2d40d72b4e8b7bc1367cf3a69e0e",
            },
        )

        response = test_client.get(url)

        order = repository._orders["CART-1001"]
        assert response.status_code == 200
        assert order.is_finalized
        assert order.transaction_information.transaction_id == "123"
        assert order.transaction_information.payment_state is PaymentState.AUTHORIZED

    def test_tampered_ogone_redirect_leaves_order_open(self, test_client, repository, callback_urls):
        url = provider_callback_url(
            callback_urls,
            "ogone",
            {"ORDERID": "CART-1001", "AMOUNT": "1", "STATUS": "9", "PAYID": "3014", "SHASIGN": "ABC"},
        )

        response = test_client.get(url)

        assert response.status_code == 200
        assert not repository._orders["CART-1001"].is_finalized
