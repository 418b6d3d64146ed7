"""
Klarna Payment Provider Adapter

Provides integration with Klarna Checkout (v3 REST API). The checkout is an
inline snippet: the payment page asks the communication URL for the Klarna
checkout, the confirmation page asks for the confirmation snippet, and Klarna
pushes the completed order to the callback URL.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import aiohttp

from payment_providers.models.order import Order, PaymentState

from .base import (
    CallbackInfo,
    CallbackRequest,
    CallbackResponse,
    CallbackResult,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import absolute_url, ensure_iso_currency, must_contain_key, to_cents

logger = logging.getLogger(__name__)

LIVE_API_URL = "https://api.klarna.com"
TEST_API_URL = "https://api.playground.klarna.com"

CHECKOUT_COMPLETE = "checkout_complete"

# (Klarna address field, order property alias)
BILLING_PROPERTIES = (
    ("given_name", "firstName"),
    ("family_name", "lastName"),
    ("email", "email"),
    ("street_address", "billing_street_address"),
    ("street_address2", "billing_street_address2"),
    ("postal_code", "billing_postal_code"),
    ("city", "billing_city"),
    ("phone", "billing_phone"),
)
SHIPPING_PROPERTIES = (
    ("street_address", "shipping_street_address"),
    ("street_address2", "shipping_street_address2"),
    ("postal_code", "shipping_postal_code"),
    ("city", "shipping_city"),
    ("phone", "shipping_phone"),
)


def vat_amount(total_price: Decimal, vat_rate: Decimal) -> Decimal:
    """VAT part of a price that includes VAT."""
    return total_price - total_price / (1 + vat_rate)


class KlarnaAdapter(PaymentProvider):
    """Klarna Checkout payment provider adapter."""

    display_name = "Klarna"

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.KLARNA

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "merchant.id": "",
            "locale": "sv-se",
            "paymentFormUrl": "",
            "merchant.confirmation_uri": "",
            "merchant.terms_uri": "",
            "sharedSecret": "",
            "zipCodePropAlias": "zipCode",
            "totalSku": "0001",
            "totalName": "Totala",
            "testMode": "1",
        }

    async def generate_html_form(
        self,
        order: Order,
        continue_url: str,
        cancel_url: str,
        callback_url: str,
        communication_url: str,
        settings: Mapping[str, str],
    ) -> PaymentHtmlForm:
        """Send the customer to the shop's payment page, which loads the checkout snippet."""
        must_contain_key(settings, "paymentFormUrl", "klarna")

        order.set_property("teaCommerceCommunicationUrl", communication_url)
        order.set_property("teaCommerceContinueUrl", continue_url)
        order.set_property("teaCommerceCallbackUrl", callback_url)
        order.save()
        return PaymentHtmlForm(action=settings["paymentFormUrl"])

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "merchant.confirmation_uri", "klarna")
        return settings["merchant.confirmation_uri"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        return ""

    def build_checkout_order(
        self, order: Order, request: CallbackRequest, settings: Mapping[str, str]
    ) -> Dict[str, Any]:
        must_contain_key(settings, "merchant.terms_uri", "klarna")
        must_contain_key(settings, "locale", "klarna")
        currency = ensure_iso_currency(order.currency_iso_code, "klarna")

        order_amount = to_cents(order.total_price)
        order_tax_amount = to_cents(vat_amount(order.total_price, order.vat_rate))
        zip_code_alias = settings.get("zipCodePropAlias")

        return {
            "purchase_country": order.payment_information.country_code or "",
            "purchase_currency": currency,
            "locale": settings["locale"],
            "order_amount": order_amount,
            "order_tax_amount": order_tax_amount,
            "billing_address": {
                "email": order.payment_information.email,
                "postal_code": order.get_property(zip_code_alias) if zip_code_alias else None,
            },
            "merchant_urls": {
                "terms": absolute_url(settings["merchant.terms_uri"], request.base_url),
                "checkout": request.header("Referer", ""),
                "confirmation": order.get_property("teaCommerceContinueUrl"),
                "push": order.get_property("teaCommerceCallbackUrl"),
            },
            "order_lines": [
                {
                    "reference": settings.get("totalSku") or "0001",
                    "name": settings.get("totalName") or "Total",
                    "quantity": 1,
                    "unit_price": order_amount,
                    "tax_rate": int(order.vat_rate * 10000),
                    "total_amount": order_amount,
                    "total_tax_amount": order_tax_amount,
                }
            ],
            "merchant_reference1": order.cart_number,
        }

    async def process_request(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResponse:
        """
        Answer the payment and confirmation pages with the Klarna HTML snippet.

        ``communicationType=checkout`` updates the Klarna order of the cart, or
        creates one when there is none or its session expired.
        ``communicationType=confirmation`` authorizes the order once Klarna
        reports the checkout complete.
        """
        must_contain_key(settings, "merchant.id", "klarna")
        must_contain_key(settings, "sharedSecret", "klarna")
        self._log_request(request, settings.get("testMode") == "1")

        communication_type = request.value("communicationType")
        klarna_order: Optional[Dict[str, Any]] = None
        try:
            if communication_type == "checkout":
                klarna_order = await self._checkout(order, request, settings)
            elif communication_type == "confirmation":
                klarna_order = await self._confirmation(order, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Klarna({order.cart_number}) - ProcessRequest: {e}")
            return CallbackResponse.html("")

        return CallbackResponse.html((klarna_order or {}).get("html_snippet") or "")

    async def _checkout(self, order: Order, request: CallbackRequest, settings: Mapping[str, str]) -> Dict[str, Any]:
        checkout_order = self.build_checkout_order(order, request, settings)

        klarna_order_id = order.transaction_information.transaction_id
        if klarna_order_id:
            try:
                return await self._call_api(
                    "POST", f"/checkout/v3/orders/{klarna_order_id}", "update_order", settings, checkout_order
                )
            except self.GATEWAY_ERRORS as e:
                logger.info(f"Klarna({order.cart_number}) - Klarna order {klarna_order_id} can not be updated: {e}")

        klarna_order = await self._call_api("POST", "/checkout/v3/orders", "create_order", settings, checkout_order)
        order.transaction_information.transaction_id = klarna_order["order_id"]
        order.transaction_information.payment_state = PaymentState.INITIALIZED
        order.save()
        return klarna_order

    async def _confirmation(self, order: Order, settings: Mapping[str, str]) -> Optional[Dict[str, Any]]:
        klarna_order_id = order.transaction_information.transaction_id
        if not klarna_order_id:
            return None

        klarna_order = await self._fetch_order(klarna_order_id, settings)
        if klarna_order.get("status") != CHECKOUT_COMPLETE:
            logger.warning(f"Klarna({order.cart_number}) - Confirmation page reached with an unfinished Klarna order")
            return None

        order.transaction_information.payment_state = PaymentState.AUTHORIZED
        order.transaction_information.amount_authorized = order.total_price
        order.save()
        return klarna_order

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """Handle the push for a completed checkout and copy the addresses Klarna collected to the order."""
        must_contain_key(settings, "merchant.id", "klarna")
        must_contain_key(settings, "sharedSecret", "klarna")
        self._log_request(request, settings.get("testMode") == "1")

        try:
            klarna_order = await self._fetch_order(order.transaction_information.transaction_id or "", settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Klarna({order.cart_number}) - Process callback: {e}")
            return CallbackResult()

        if klarna_order.get("status") != CHECKOUT_COMPLETE:
            logger.warning(f"Klarna({order.cart_number}) - Push received for a Klarna order that isn't completed")
            return CallbackResult()

        self.save_order_properties(order, klarna_order)
        return CallbackResult(
            callback_info=CallbackInfo(
                Decimal(klarna_order.get("order_amount", 0)) / 100,
                klarna_order.get("order_id", ""),
                PaymentState.CAPTURED,
            )
        )

    @staticmethod
    def save_order_properties(order: Order, klarna_order: Mapping[str, Any]) -> None:
        for address_key, mapping in (("billing_address", BILLING_PROPERTIES), ("shipping_address", SHIPPING_PROPERTIES)):
            address = klarna_order.get(address_key) or {}
            for field_name, alias in mapping:
                value = (address.get(field_name) or "").strip()
                if value:
                    order.set_property(alias, value)
        order.save()

    async def _fetch_order(self, klarna_order_id: str, settings: Mapping[str, str]) -> Dict[str, Any]:
        return await self._call_api("GET", f"/checkout/v3/orders/{klarna_order_id}", "fetch_order", settings)

    async def _call_api(
        self,
        method: str,
        path: str,
        operation: str,
        settings: Mapping[str, str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        base_url = TEST_API_URL if settings.get("testMode") == "1" else LIVE_API_URL
        return await self._request_json(
            method,
            f"{base_url}{path}",
            operation,
            payload=payload,
            auth=aiohttp.BasicAuth(settings["merchant.id"], settings["sharedSecret"]),
        )
