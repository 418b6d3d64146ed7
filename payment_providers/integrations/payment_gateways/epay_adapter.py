"""
ePay Payment Provider Adapter

Provides integration with the ePay (Bambora) payment window and the ePay
payment web service for status, capture, credit and delete operations.
"""

import json
import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional

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

FORM_URL = "https://ssl.ditonlinebetalingssystem.dk/integration/ewindow/Default.aspx"
SERVICE_URL = "https://ssl.ditonlinebetalingssystem.dk/remote/payment.asmx"
SERVICE_NAMESPACE = "https://ssl.ditonlinebetalingssystem.dk/remote/payment"

SETTINGS_NOT_SENT = ("iframeelement", "md5securitykey", "webservicepassword", "testMode")


class EPayAdapter(PaymentProvider):
    """ePay payment provider adapter."""

    display_name = "ePay"
    documentation_link = "http://anders.burla.dk/umbraco/tea-commerce/using-epay-with-tea-commerce/"

    supports_retrieval_of_payment_status = True
    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.EPAY

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "merchantnumber": "",
            "language": "2",
            "accepturl": "",
            "cancelurl": "",
            "instantcapture": "0",
            "paymenttype": "",
            "windowstate": "1",
            "iframeelement": "",
            "md5securitykey": "",
            "webservicepassword": "",
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
        """
        Build the payment window form and the ``PaymentWindow`` script that opens it.

        The hash is MD5 over every field value in form order followed by the MD5
        security key, and is only sent when a key is configured.
        """
        must_contain_key(settings, "merchantnumber", "epay")
        must_contain_key(settings, "language", "epay")

        input_fields = {key: value for key, value in settings.items() if key not in SETTINGS_NOT_SENT}
        input_fields["orderid"] = order.cart_number
        input_fields["currency"] = currency_numeric_code(order.currency_iso_code, "epay")
        input_fields["amount"] = str(to_cents(order.total_price))
        input_fields["accepturl"] = continue_url
        input_fields["cancelurl"] = cancel_url
        input_fields["callbackurl"] = callback_url
        input_fields["instantcallback"] = "1"

        for optional in ("instantcapture", "paymenttype", "windowstate"):
            if optional in input_fields and not input_fields[optional]:
                del input_fields[optional]

        # iframe mode needs an element to render into, otherwise fall back to the overlay
        if input_fields.get("windowstate") == "2" and not settings.get("iframeelement"):
            input_fields["windowstate"] = "1"

        input_fields["ownreceipt"] = "1"

        if settings.get("md5securitykey"):
            input_fields["hash"] = md5_hex("".join(input_fields.values()) + settings["md5securitykey"])

        return PaymentHtmlForm(
            action=FORM_URL,
            input_fields=input_fields,
            javascript_function=self.submit_javascript_function(input_fields, settings),
        )

    @staticmethod
    def submit_javascript_function(input_fields: Mapping[str, str], settings: Mapping[str, str]) -> str:
        """Script opening the ePay payment window. Fullscreen (state 3) is not scriptable."""
        window_state = input_fields.get("windowstate")
        if window_state == "3":
            return ""

        script = f"var paymentwindow = new PaymentWindow({json.dumps(dict(input_fields))});"
        if window_state == "2":
            script += f"paymentwindow.append({json.dumps(settings.get('iframeelement', ''))});"
        script += "paymentwindow.open();"
        return script

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "accepturl", "epay")
        return settings["accepturl"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "cancelurl", "epay")
        return settings["cancelurl"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """Verify the MD5 hash over every query value except ``hash``, in query order."""
        self._log_request(request, settings.get("testMode") == "1")

        query = request.query
        message = "".join(value for key, value in query.items() if key != "hash") + settings.get("md5securitykey", "")

        if order.cart_number != query.get("orderid") or not verify_digest(query.get("hash"), message):
            logger.warning(f"ePay({order.cart_number}) - MD5Sum security check failed")
            return CallbackResult()

        try:
            total_amount = Decimal(query.get("amount", "")) + Decimal(query.get("txnfee") or "0")
        except ArithmeticError:
            logger.warning(f"ePay({order.cart_number}) - Invalid amount: {query.get('amount')}")
            return CallbackResult()

        auto_captured = settings.get("instantcapture") == "1"
        return CallbackResult(
            callback_info=CallbackInfo(
                total_amount / 100,
                query.get("txnid", ""),
                PaymentState.CAPTURED if auto_captured else PaymentState.AUTHORIZED,
                query.get("paymenttype"),
                query.get("cardno"),
            )
        )

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "merchantnumber", "epay")
        params = {
            "merchantnumber": settings["merchantnumber"],
            "transactionid": order.transaction_information.transaction_id,
            "pwd": settings.get("webservicepassword", ""),
            "epayresponse": "0",
        }
        try:
            response = await self._call_service("gettransaction", params)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"ePay({order.order_number}) - Get status: {e}")
            return None

        if response.get("gettransactionResult") != "true":
            logger.warning(
                f"ePay({order.order_number}) - Error making API request - error code: {response.get('epayresponse', '')}"
            )
            return None
        return ApiInfo(
            response.get("transactionid", order.transaction_information.transaction_id),
            self.map_transaction_status(response.get("status"), response.get("creditedamount")),
        )

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "merchantnumber", "epay")
        params = {
            "merchantnumber": settings["merchantnumber"],
            "transactionid": order.transaction_information.transaction_id,
            "amount": to_cents(order.transaction_information.amount_authorized or Decimal("0")),
            "group": "",
            "pwd": settings.get("webservicepassword", ""),
            "pbsResponse": "0",
            "epayresponse": "0",
        }
        return await self._call_operation(order, "capture", params, PaymentState.CAPTURED, "Capture payment")

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "merchantnumber", "epay")
        params = {
            "merchantnumber": settings["merchantnumber"],
            "transactionid": order.transaction_information.transaction_id,
            "amount": to_cents(order.transaction_information.amount_authorized or Decimal("0")),
            "group": "",
            "pwd": settings.get("webservicepassword", ""),
            "pbsresponse": "0",
            "epayresponse": "0",
        }
        return await self._call_operation(order, "credit", params, PaymentState.REFUNDED, "Refund payment")

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "merchantnumber", "epay")
        params = {
            "merchantnumber": settings["merchantnumber"],
            "transactionid": order.transaction_information.transaction_id,
            "group": "",
            "pwd": settings.get("webservicepassword", ""),
            "epayresponse": "0",
        }
        return await self._call_operation(order, "delete", params, PaymentState.CANCELLED, "Cancel payment")

    @staticmethod
    def map_transaction_status(status: Optional[str], credited_amount: Optional[str]) -> PaymentState:
        refunded = (credited_amount or "0") not in ("", "0")
        if status == "PAYMENT_NEW":
            return PaymentState.AUTHORIZED
        if status == "PAYMENT_CAPTURED":
            return PaymentState.REFUNDED if refunded else PaymentState.CAPTURED
        if status == "PAYMENT_DELETED":
            return PaymentState.CANCELLED
        if status in ("PAYMENT_EUROLINE_WAIT_CAPTURE", "PAYMENT_EUROLINE_WAIT_CREDIT"):
            return PaymentState.PENDING_EXTERNAL_SYSTEM
        return PaymentState.INITIALIZED

    async def _call_operation(
        self,
        order: Order,
        operation: str,
        params: Mapping[str, object],
        payment_state: PaymentState,
        description: str,
    ) -> Optional[ApiInfo]:
        try:
            response = await self._call_service(operation, params)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"ePay({order.order_number}) - {description}: {e}")
            return None

        if response.get(f"{operation}Result") != "true":
            logger.warning(
                f"ePay({order.order_number}) - Error making API request - error code: "
                f"{response.get('epayresponse', '')}, pbs response: "
                f"{response.get('pbsResponse', response.get('pbsresponse', ''))}"
            )
            return None
        return ApiInfo(order.transaction_information.transaction_id, payment_state)

    async def _call_service(self, operation: str, params: Mapping[str, object]) -> Dict[str, str]:
        body = await self._request(
            "POST",
            SERVICE_URL,
            operation,
            data=build_envelope(SERVICE_NAMESPACE, operation, params),
            headers=soap_headers(f"{SERVICE_NAMESPACE}/{operation}"),
        )
        return parse_response(body, operation)
