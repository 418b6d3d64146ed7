"""
Netaxept Payment Provider Adapter

Provides integration with Nets Netaxept: the transaction is registered
server side, the customer pays on the Netaxept terminal and is redirected back
with the transaction id, after which the payment is authorized (or sold) with a
Process call. Query, capture, credit and annul go through the same REST API.
"""

import logging
import xml.etree.ElementTree as ET
from decimal import Decimal
from typing import Dict, Mapping, Optional
from urllib.parse import urlencode

from payment_providers.models.order import Order, PaymentState

from .base import (
    ApiInfo,
    CallbackInfo,
    CallbackRequest,
    CallbackResponse,
    CallbackResult,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import ensure_iso_currency, must_contain_key, to_cents, to_decimal

logger = logging.getLogger(__name__)

LIVE_BASE_URL = "https://epayment.nets.eu"
TEST_BASE_URL = "https://test.epayment.nets.eu"

SETTINGS_NOT_SENT = ("accepturl", "cancelurl", "instantcapture", "testMode")


def find_text(root: ET.Element, name: str) -> str:
    element = root.find(f".//{name}")
    return (element.text or "").strip() if element is not None else ""


class NetaxeptAdapter(PaymentProvider):
    """Netaxept payment provider adapter."""

    display_name = "Netaxept"
    documentation_link = "http://anders.burla.dk/umbraco/tea-commerce/using-netaxept-with-tea-commerce/"

    supports_retrieval_of_payment_status = True
    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.NETAXEPT

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "merchantId": "",
            "token": "",
            "language": "en_GB",
            "accepturl": "",
            "cancelurl": "",
            "instantcapture": "0",
            "paymentMethodList": "",
            "testMode": "1",
        }

    def _url(self, page: str, settings: Mapping[str, str]) -> str:
        base_url = TEST_BASE_URL if settings.get("testMode") == "1" else LIVE_BASE_URL
        return f"{base_url}/Netaxept/{page}.aspx"

    def terminal_url(self, transaction_id: str, settings: Mapping[str, str]) -> str:
        base_url = TEST_BASE_URL if settings.get("testMode") == "1" else LIVE_BASE_URL
        query = urlencode({"merchantId": settings["merchantId"], "transactionId": transaction_id})
        return f"{base_url}/Terminal/default.aspx?{query}"

    async def generate_html_form(
        self,
        order: Order,
        continue_url: str,
        cancel_url: str,
        callback_url: str,
        communication_url: str,
        settings: Mapping[str, str],
    ) -> PaymentHtmlForm:
        """
        Register the transaction and send the customer to the Netaxept terminal.

        A refused registration sends the customer to the cancel URL.
        """
        must_contain_key(settings, "merchantId", "netaxept")
        must_contain_key(settings, "token", "netaxept")
        currency = ensure_iso_currency(order.currency_iso_code, "netaxept")

        input_fields = {key: value for key, value in settings.items() if key not in SETTINGS_NOT_SENT}
        if not input_fields.get("paymentMethodList"):
            input_fields.pop("paymentMethodList", None)
        input_fields["orderNumber"] = order.cart_number
        input_fields["currencyCode"] = currency
        input_fields["amount"] = str(to_cents(order.total_price))
        input_fields["redirectUrl"] = callback_url
        input_fields["redirectOnError"] = "false"

        root = await self._call_api("Register", input_fields, settings)
        transaction_id = find_text(root, "TransactionId")

        if not transaction_id:
            logger.warning(
                f"Netaxept({order.cart_number}) - Generate html form error - {find_text(root, 'Message')}"
            )
            return PaymentHtmlForm(action=cancel_url)

        order.set_property("netaxeptTransactionId", transaction_id)
        order.set_property("teaCommerceContinueUrl", continue_url)
        order.set_property("teaCommerceCancelUrl", cancel_url)
        order.save()
        return PaymentHtmlForm(action=self.terminal_url(transaction_id, settings))

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "accepturl", "netaxept")
        return settings["accepturl"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "cancelurl", "netaxept")
        return settings["cancelurl"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Complete the terminal redirect.

        Only the transaction registered for this order is processed. ``AUTH``
        authorizes it, ``SALE`` (with ``instantcapture``) captures it. The customer
        is redirected to the continue or the cancel URL either way.
        """
        self._log_request(request, settings.get("testMode") == "1")
        cancel = CallbackResponse.redirect(order.get_property("teaCommerceCancelUrl"))

        transaction_id = request.query.get("transactionId", "")
        if not transaction_id or transaction_id != order.get_property("netaxeptTransactionId"):
            logger.warning(f"Netaxept({order.cart_number}) - Unknown transaction id: {transaction_id}")
            return CallbackResult(response=cancel)

        if request.query.get("responseCode") != "OK":
            logger.info(f"Netaxept({order.cart_number}) - Terminal response code: {request.query.get('responseCode')}")
            return CallbackResult(response=cancel)

        instant_capture = settings.get("instantcapture") == "1"
        operation = "SALE" if instant_capture else "AUTH"
        if not await self._process(order, operation, transaction_id, None, settings):
            return CallbackResult(response=cancel)

        return CallbackResult(
            callback_info=CallbackInfo(
                order.total_price,
                transaction_id,
                PaymentState.CAPTURED if instant_capture else PaymentState.AUTHORIZED,
            ),
            response=CallbackResponse.redirect(order.get_property("teaCommerceContinueUrl")),
        )

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        transaction_id = order.transaction_information.transaction_id or ""
        try:
            root = await self._call_api("Query", {"transactionId": transaction_id}, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Netaxept({order.order_number}) - Get status: {e}")
            return None

        if root.find(".//Summary") is None:
            logger.warning(f"Netaxept({order.order_number}) - Get status error - {find_text(root, 'Message')}")
            return None
        return ApiInfo(transaction_id, self.map_summary(root))

    @staticmethod
    def map_summary(root: ET.Element) -> PaymentState:
        """Payment state of a Query answer, most advanced state first."""
        if find_text(root, "Annulled").lower() == "true":
            return PaymentState.CANCELLED
        if to_decimal(find_text(root, "AmountCredited")) > 0:
            return PaymentState.REFUNDED
        if to_decimal(find_text(root, "AmountCaptured")) > 0:
            return PaymentState.CAPTURED
        if find_text(root, "Authorized").lower() == "true":
            return PaymentState.AUTHORIZED
        return PaymentState.INITIALIZED

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        return await self._maintenance(order, "CAPTURE", PaymentState.CAPTURED, settings)

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        return await self._maintenance(order, "CREDIT", PaymentState.REFUNDED, settings)

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        return await self._maintenance(order, "ANNUL", PaymentState.CANCELLED, settings)

    async def _maintenance(
        self,
        order: Order,
        operation: str,
        payment_state: PaymentState,
        settings: Mapping[str, str],
    ) -> Optional[ApiInfo]:
        transaction_id = order.transaction_information.transaction_id or ""
        amount = None
        if operation != "ANNUL":
            amount = order.transaction_information.amount_authorized or order.total_price
        if not await self._process(order, operation, transaction_id, amount, settings):
            return None
        return ApiInfo(transaction_id, payment_state)

    async def _process(
        self,
        order: Order,
        operation: str,
        transaction_id: str,
        amount: Optional[Decimal],
        settings: Mapping[str, str],
    ) -> bool:
        input_fields = {"operation": operation, "transactionId": transaction_id}
        if amount is not None:
            input_fields["transactionAmount"] = str(to_cents(amount))

        try:
            root = await self._call_api("Process", input_fields, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Netaxept({order.cart_number}) - {operation}: {e}")
            return False

        if find_text(root, "ResponseCode") != "OK":
            logger.warning(
                f"Netaxept({order.cart_number}) - {operation} error - response code: "
                f"{find_text(root, 'ResponseCode')} | message: {find_text(root, 'Message')}"
            )
            return False
        return True

    async def _call_api(self, page: str, fields: Mapping[str, str], settings: Mapping[str, str]) -> ET.Element:
        must_contain_key(settings, "merchantId", "netaxept")
        must_contain_key(settings, "token", "netaxept")
        params = {"merchantId": settings["merchantId"], "token": settings["token"]}
        params.update(fields)
        body = await self._request("GET", self._url(page, settings), page.lower(), params=params)
        return ET.fromstring(body)
