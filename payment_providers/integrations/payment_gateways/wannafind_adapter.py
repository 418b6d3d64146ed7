"""
Wannafind Payment Provider Adapter

Provides integration with the Wannafind payment window (MD5 checked form and
callback) and the pgwapi SOAP service for status, capture, credit and cancel.
"""

import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional

import aiohttp

from payment_providers.models.order import Order, PaymentState

from .base import (
    ApiInfo,
    CallbackInfo,
    CallbackRequest,
    CallbackResult,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import currency_numeric_code, must_contain_key, to_cents
from .signing import md5_hex, verify_digest
from .soap import build_envelope, parse_response, soap_headers

logger = logging.getLogger(__name__)

FORM_URL = "https://betaling.wannafind.dk/paymentwindow.php"
SERVICE_URL = "https://betaling.wannafind.dk/pgwapi.php"
SERVICE_NAMESPACE = "urn:pgwapi"

SETTINGS_NOT_SENT = ("md5AuthSecret", "md5CallbackSecret", "apiUser", "apiPassword", "testmode")

RETURN_CODE_STATES = {
    "5": PaymentState.AUTHORIZED,
    "6": PaymentState.CAPTURED,
    "7": PaymentState.CANCELLED,
    "8": PaymentState.REFUNDED,
}


class WannafindAdapter(PaymentProvider):
    """Wannafind payment provider adapter."""

    display_name = "Wannafind"
    documentation_link = "http://anders.burla.dk/umbraco/tea-commerce/using-wannafind-with-tea-commerce/"

    supports_retrieval_of_payment_status = True
    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.WANNAFIND

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "shopid": "",
            "lang": "en",
            "accepturl": "",
            "declineurl": "",
            "cardtype": "",
            "md5AuthSecret": "",
            "md5CallbackSecret": "",
            "apiUser": "",
            "apiPassword": "",
            "testmode": "1",
        }

    @staticmethod
    def wannafind_order_id(order: Order) -> str:
        """Wannafind order ids are the cart number without the store prefix."""
        if order.store_cart_number_prefix:
            return order.cart_number.replace(order.store_cart_number_prefix, "")
        return order.cart_number

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
        Build the payment window form.

        checkmd5 = MD5(currency + orderid + amount + cardtype + md5AuthSecret), only
        sent when an auth secret is configured.
        """
        must_contain_key(settings, "shopid", "wannafind")
        currency = currency_numeric_code(order.currency_iso_code, "wannafind")
        order_id = self.wannafind_order_id(order)
        amount = str(to_cents(order.total_price))

        input_fields = {key: value for key, value in settings.items() if key not in SETTINGS_NOT_SENT}
        input_fields["orderid"] = order_id
        input_fields["currency"] = currency
        input_fields["amount"] = amount
        input_fields["accepturl"] = continue_url
        input_fields["declineurl"] = cancel_url
        input_fields["callbackurl"] = callback_url
        input_fields["authtype"] = "auth"
        input_fields["paytype"] = "creditcard"

        card_type = input_fields.get("cardtype", "")
        if not card_type:
            input_fields.pop("cardtype", None)

        input_fields["uniqueorderid"] = "true"
        input_fields["cardnomask"] = "true"

        if settings.get("md5AuthSecret"):
            input_fields["checkmd5"] = md5_hex(currency + order_id + amount + card_type + settings["md5AuthSecret"])

        return PaymentHtmlForm(
            action=FORM_URL,
            input_fields=input_fields,
            attributes={"id": "wannafind", "name": "wannafind", "target": "_blank"},
        )

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "accepturl", "wannafind")
        return settings["accepturl"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "declineurl", "wannafind")
        return settings["declineurl"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Verify checkmd5callback = MD5(orderid + currency + cardtype + amount + md5CallbackSecret).

        Wannafind does not report auto capture, so a valid callback always authorizes.
        """
        must_contain_key(settings, "md5CallbackSecret", "wannafind")
        self._log_request(request, settings.get("testmode") == "1")

        query = request.query
        amount = query.get("amount", "")
        message = (
            query.get("orderid", "")
            + query.get("currency", "")
            + settings.get("cardtype", "")
            + amount
            + settings["md5CallbackSecret"]
        )
        if not verify_digest(query.get("checkmd5callback"), message):
            logger.warning(f"Wannafind({order.cart_number}) - MD5Sum security check failed")
            return CallbackResult()

        try:
            total_amount = Decimal(amount)
        except ArithmeticError:
            logger.warning(f"Wannafind({order.cart_number}) - Invalid amount: {amount}")
            return CallbackResult()

        return CallbackResult(
            callback_info=CallbackInfo(
                total_amount / 100,
                query.get("transacknum", ""),
                PaymentState.AUTHORIZED,
                query.get("cardtype"),
                query.get("cardnomask"),
            )
        )

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        auth = self._service_auth(settings)
        params = {
            "transacknum": order.transaction_information.transaction_id,
            "orderdate": "",
            "orderid": order.cart_number,
            "cardnomask": "",
            "cardtype": "",
        }
        try:
            response = await self._call_service("checkTransaction", params, auth)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Wannafind({order.order_number}) - Get status: {e}")
            return None

        return ApiInfo(
            order.transaction_information.transaction_id,
            RETURN_CODE_STATES.get(response.get("returncode", ""), PaymentState.INITIALIZED),
        )

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        """Capture the complete amount; Wannafind takes 0 as "everything authorized"."""
        auth = self._service_auth(settings)
        params = {"transacknum": order.transaction_information.transaction_id, "amount": "0"}
        return await self._call_operation(order, "captureTransaction", params, auth, PaymentState.CAPTURED, "Capture payment")

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        auth = self._service_auth(settings)
        params = {
            "transacknum": order.transaction_information.transaction_id,
            "amount": to_cents(order.transaction_information.amount_authorized or Decimal("0")),
        }
        return await self._call_operation(order, "creditTransaction", params, auth, PaymentState.REFUNDED, "Refund payment")

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        auth = self._service_auth(settings)
        params = {"transacknum": order.transaction_information.transaction_id}
        return await self._call_operation(order, "cancelTransaction", params, auth, PaymentState.CANCELLED, "Cancel payment")

    def _service_auth(self, settings: Mapping[str, str]) -> aiohttp.BasicAuth:
        must_contain_key(settings, "apiUser", "wannafind")
        must_contain_key(settings, "apiPassword", "wannafind")
        return aiohttp.BasicAuth(settings["apiUser"], settings["apiPassword"])

    async def _call_operation(
        self,
        order: Order,
        operation: str,
        params: Mapping[str, object],
        auth: aiohttp.BasicAuth,
        payment_state: PaymentState,
        description: str,
    ) -> Optional[ApiInfo]:
        try:
            response = await self._call_service(operation, params, auth)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Wannafind({order.order_number}) - {description}: {e}")
            return None

        return_code = response.get("return", response.get(f"{operation}Return", ""))
        if return_code != "0":
            logger.warning(f"Wannafind({order.order_number}) - Error making API request - Error code: {return_code}")
            return None
        return ApiInfo(order.transaction_information.transaction_id, payment_state)

    async def _call_service(
        self,
        operation: str,
        params: Mapping[str, object],
        auth: aiohttp.BasicAuth,
    ) -> Dict[str, str]:
        body = await self._request(
            "POST",
            SERVICE_URL,
            operation,
            data=build_envelope(SERVICE_NAMESPACE, operation, params, qualified_params=False),
            headers=soap_headers(f"{SERVICE_NAMESPACE}#{operation}"),
            auth=auth,
        )
        return parse_response(body, operation)
