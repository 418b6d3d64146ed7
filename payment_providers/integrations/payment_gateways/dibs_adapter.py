"""
DIBS Payment Provider Adapter

Provides integration with the DIBS FlexWin payment window and its cgi
administration API. Forms, callbacks and API calls are protected with the
DIBS two-key MD5 scheme.
"""

import logging
import re
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
from .signing import digests_equal, double_md5

logger = logging.getLogger(__name__)

FORM_URL = "https://payment.architrade.com/paymentweb/start.action"
CAPTURE_URL = "https://payment.architrade.com/cgi-bin/capture.cgi"
REFUND_URL = "https://payment.architrade.com/cgi-adm/refund.cgi"
CANCEL_URL = "https://payment.architrade.com/cgi-adm/cancel.cgi"
PAYINFO_URL = "https://payment.architrade.com/cgi-adm/payinfo.cgi"

SETTINGS_NOT_SENT = ("md5k1", "md5k2", "apiusername", "apipassword")

STATUS_MAPPING = {
    "2": PaymentState.AUTHORIZED,
    "5": PaymentState.CAPTURED,
    "6": PaymentState.CANCELLED,
    "11": PaymentState.REFUNDED,
}

RESULT_PATTERN = re.compile(r"result=(\d*)")
STATUS_PATTERN = re.compile(r"status=(\d+)")


class DibsAdapter(PaymentProvider):
    """DIBS payment provider adapter."""

    display_name = "DIBS"
    documentation_link = "http://anders.burla.dk/umbraco/tea-commerce/using-dibs-with-tea-commerce/"

    supports_retrieval_of_payment_status = True
    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.DIBS

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "merchant": "",
            "lang": "en",
            "accepturl": "",
            "cancelurl": "",
            "capturenow": "0",
            "calcfee": "0",
            "paytype": "",
            "md5k1": "",
            "md5k2": "",
            "apiusername": "",
            "apipassword": "",
            "test": "1",
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
        for key in ("merchant", "md5k1", "md5k2"):
            must_contain_key(settings, key, "dibs")
        currency = currency_numeric_code(order.currency_iso_code, "dibs")
        amount = str(to_cents(order.total_price))

        input_fields = {key: value for key, value in settings.items() if key not in SETTINGS_NOT_SENT}
        input_fields["orderid"] = order.cart_number
        input_fields["amount"] = amount
        input_fields["currency"] = currency
        input_fields["accepturl"] = continue_url
        input_fields["cancelurl"] = cancel_url
        input_fields["callbackurl"] = callback_url
        input_fields["uniqueoid"] = ""

        # Flags are only sent when switched on
        for flag in ("capturenow", "calcfee", "test"):
            if flag in input_fields and input_fields[flag] != "1":
                del input_fields[flag]

        input_fields["md5key"] = double_md5(
            f"merchant={settings['merchant']}&orderid={order.cart_number}&currency={currency}&amount={amount}",
            settings["md5k1"],
            settings["md5k2"],
        )

        return PaymentHtmlForm(action=FORM_URL, input_fields=input_fields)

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "accepturl", "dibs")
        return settings["accepturl"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "cancelurl", "dibs")
        return settings["cancelurl"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Verify the authkey of a DIBS callback.

        authkey = MD5(k2 + MD5(k1 + "transact=tt&amount=aa&currency=cc")) where the
        amount includes the card fee when DIBS calculated one.
        """
        must_contain_key(settings, "md5k1", "dibs")
        must_contain_key(settings, "md5k2", "dibs")
        self._log_request(request, settings.get("test") == "1")

        form = request.form
        transaction = form.get("transact", "")
        try:
            # fee is not always part of the callback
            total_amount = Decimal(form.get("amount", "")) + Decimal(form.get("fee") or "0")
        except ArithmeticError:
            logger.warning(f"DIBS({order.cart_number}) - Invalid amount: {form.get('amount')}")
            return CallbackResult()

        calculated = double_md5(
            f"transact={transaction}&amount={total_amount:.0f}&currency={form.get('currency', '')}",
            settings["md5k1"],
            settings["md5k2"],
        )
        if not digests_equal(calculated, form.get("authkey")):
            logger.warning(f"DIBS({order.cart_number}) - MD5Sum security check failed")
            return CallbackResult()

        return CallbackResult(
            callback_info=CallbackInfo(
                total_amount / 100,
                transaction,
                PaymentState.CAPTURED if form.get("capturenow") == "1" else PaymentState.AUTHORIZED,
                form.get("paytype"),
                form.get("cardnomask"),
            )
        )

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        auth = self._api_auth(settings)
        transaction_id = order.transaction_information.transaction_id
        try:
            response = await self._request(
                "POST",
                PAYINFO_URL,
                "payinfo",
                params={"transact": transaction_id or ""},
                auth=auth,
            )
        except self.GATEWAY_ERRORS as e:
            logger.error(f"DIBS({order.order_number}) - Get status: {e}")
            return None

        match = STATUS_PATTERN.search(response)
        status = match.group(1) if match else ""
        return ApiInfo(transaction_id, STATUS_MAPPING.get(status, PaymentState.INITIALIZED))

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        input_fields = self._api_fields(order, settings, include_amount=True)
        return await self._call_api(order, CAPTURE_URL, input_fields, None, PaymentState.CAPTURED, "Capture payment")

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        auth = self._api_auth(settings)
        input_fields = self._api_fields(order, settings, include_amount=True)
        input_fields["currency"] = currency_numeric_code(order.currency_iso_code, "dibs")
        return await self._call_api(order, REFUND_URL, input_fields, auth, PaymentState.REFUNDED, "Refund payment")

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        auth = self._api_auth(settings)
        input_fields = self._api_fields(order, settings, include_amount=False)
        return await self._call_api(order, CANCEL_URL, input_fields, auth, PaymentState.CANCELLED, "Cancel payment")

    def _api_auth(self, settings: Mapping[str, str]) -> aiohttp.BasicAuth:
        must_contain_key(settings, "apiusername", "dibs")
        must_contain_key(settings, "apipassword", "dibs")
        return aiohttp.BasicAuth(settings["apiusername"], settings["apipassword"])

    def _api_fields(self, order: Order, settings: Mapping[str, str], include_amount: bool) -> Dict[str, str]:
        """Administration call fields with md5key = MD5(k2 + MD5(k1 + "merchant=..&orderid=..&transact=..[&amount=..]"))."""
        for key in ("merchant", "md5k1", "md5k2"):
            must_contain_key(settings, key, "dibs")

        transaction_id = order.transaction_information.transaction_id or ""
        input_fields = {"merchant": settings["merchant"]}
        message = f"merchant={settings['merchant']}&orderid={order.cart_number}&transact={transaction_id}"
        if include_amount:
            amount = str(to_cents(order.transaction_information.amount_authorized or Decimal("0")))
            input_fields["amount"] = amount
            message += f"&amount={amount}"
        input_fields["orderid"] = order.cart_number
        input_fields["transact"] = transaction_id
        input_fields["textreply"] = "yes"
        input_fields["md5key"] = double_md5(message, settings["md5k1"], settings["md5k2"])
        return input_fields

    async def _call_api(
        self,
        order: Order,
        url: str,
        input_fields: Mapping[str, str],
        auth: Optional[aiohttp.BasicAuth],
        payment_state: PaymentState,
        operation: str,
    ) -> Optional[ApiInfo]:
        try:
            response = await self._post_form(url, input_fields, operation, auth=auth)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"DIBS({order.order_number}) - {operation}: {e}")
            return None

        match = RESULT_PATTERN.search(response)
        result = match.group(1) if match else ""
        if result != "0":
            logger.warning(f"DIBS({order.order_number}) - Error making API request - error message: {result}")
            return None
        return ApiInfo(order.transaction_information.transaction_id, payment_state)
