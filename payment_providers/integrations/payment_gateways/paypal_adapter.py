"""
PayPal Payment Provider Adapter

Provides integration with PayPal Payments Standard (cart upload form and IPN
callbacks) and the PayPal NVP API for capture, refund, void and status queries.
"""

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
from .helpers import ensure_iso_currency, format_amount, must_contain_key, parse_key_value_response

logger = logging.getLogger(__name__)

NVP_VERSION = "98.0"
SUCCESS_ACKS = ("Success", "SuccessWithWarning")


class PayPalAdapter(PaymentProvider):
    """PayPal payment provider adapter."""

    display_name = "PayPal"

    supports_retrieval_of_payment_status = True
    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.PAYPAL

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "business": "",
            "lc": "US",
            "return": "",
            "cancel_return": "",
            "paymentaction": "authorization",
            "USER": "",
            "PWD": "",
            "SIGNATURE": "",
            "totalSku": "0001",
            "totalName": "Total",
            "isSandbox": "1",
        }

    def _is_sandbox(self, settings: Mapping[str, str]) -> bool:
        return settings.get("isSandbox") == "1"

    def _form_url(self, settings: Mapping[str, str]) -> str:
        if self._is_sandbox(settings):
            return "https://www.sandbox.paypal.com/cgi-bin/webscr"
        return "https://www.paypal.com/cgi-bin/webscr"

    def _api_url(self, settings: Mapping[str, str]) -> str:
        if self._is_sandbox(settings):
            return "https://api-3t.sandbox.paypal.com/nvp"
        return "https://api-3t.paypal.com/nvp"

    async def generate_html_form(
        self,
        order: Order,
        continue_url: str,
        cancel_url: str,
        callback_url: str,
        communication_url: str,
        settings: Mapping[str, str],
    ) -> PaymentHtmlForm:
        """Build a ``_cart`` upload form carrying the order total as a single item."""
        currency = ensure_iso_currency(order.currency_iso_code, "paypal")

        html_form = PaymentHtmlForm(action=self._form_url(settings))
        html_form.input_fields = {
            key: value for key, value in settings.items() if key not in ("USER", "PWD", "SIGNATURE", "isSandbox")
        }
        html_form.input_fields["cmd"] = "_cart"
        html_form.input_fields["upload"] = "1"
        html_form.input_fields["currency_code"] = currency
        html_form.input_fields["invoice"] = order.cart_number
        html_form.input_fields["return"] = continue_url
        html_form.input_fields["rm"] = "2"
        html_form.input_fields["cancel_return"] = cancel_url
        html_form.input_fields["notify_url"] = callback_url
        html_form.input_fields["item_name_1"] = settings.get("totalName", "Total")
        html_form.input_fields["item_number_1"] = settings.get("totalSku", "0001")
        html_form.input_fields["amount_1"] = format_amount(order.total_price)
        html_form.input_fields["quantity_1"] = "1"

        return html_form

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "return", "paypal")
        return settings["return"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "cancel_return", "paypal")
        return settings["cancel_return"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Validate an IPN message with PayPal and map its payment status.

        The raw IPN body is posted back with ``cmd=_notify-validate``; only a
        ``VERIFIED`` answer addressed to the configured business is accepted.
        """
        must_contain_key(settings, "business", "paypal")
        self._log_request(request, self._is_sandbox(settings))

        try:
            response = await self._request(
                "POST",
                self._form_url(settings),
                "notify_validate",
                data=request.body + b"&cmd=_notify-validate",
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except self.GATEWAY_ERRORS as e:
            logger.error(f"PayPal({order.cart_number}) - Process callback: {e}")
            return CallbackResult()

        if response != "VERIFIED":
            logger.warning(f"PayPal({order.cart_number}) - Couldn't verify response: {response}")
            return CallbackResult()

        form = request.form
        receiver_id = form.get("receiver_id", "")
        receiver_email = form.get("receiver_email", "")
        transaction_id = form.get("txn_id", "")
        business = settings["business"]

        if not transaction_id or not (
            (receiver_id and business == receiver_id) or (receiver_email and business == receiver_email)
        ):
            logger.warning(
                f"PayPal({order.cart_number}) - Business isn't identical - settings: {business} | "
                f"request-receiverId: {receiver_id} | request-receiverEmail: {receiver_email}"
            )
            return CallbackResult()

        try:
            amount = Decimal(form.get("mc_gross", ""))
        except ArithmeticError:
            logger.warning(f"PayPal({order.cart_number}) - Invalid mc_gross: {form.get('mc_gross')}")
            return CallbackResult()

        payment_status = form.get("payment_status")
        callback_info: Optional[CallbackInfo] = None
        if payment_status == "Pending":
            pending_reason = form.get("pending_reason")
            if pending_reason == "authorization":
                if form.get("transaction_entity") == "auth":
                    callback_info = CallbackInfo(amount, transaction_id, PaymentState.AUTHORIZED)
            elif pending_reason == "multi_currency":
                callback_info = CallbackInfo(amount, transaction_id, PaymentState.PENDING_EXTERNAL_SYSTEM)
        elif payment_status == "Completed":
            callback_info = CallbackInfo(amount, transaction_id, PaymentState.CAPTURED)

        return CallbackResult(callback_info=callback_info)

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        try:
            return await self._get_transaction_status(order.order_number, order.transaction_information.transaction_id, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"PayPal({order.order_number}) - Get status: {e}")
            return None

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        input_fields = self._prepare_api_request("DoCapture", settings)
        input_fields["AUTHORIZATIONID"] = order.transaction_information.transaction_id or ""
        input_fields["AMT"] = format_amount(order.transaction_information.amount_authorized)
        input_fields["CURRENCYCODE"] = ensure_iso_currency(order.currency_iso_code, "paypal")
        input_fields["COMPLETETYPE"] = "Complete"
        return await self._call_and_get_status(order, input_fields, "TRANSACTIONID", settings, "Capture payment")

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        input_fields = self._prepare_api_request("RefundTransaction", settings)
        input_fields["TRANSACTIONID"] = order.transaction_information.transaction_id or ""
        return await self._call_and_get_status(order, input_fields, "REFUNDTRANSACTIONID", settings, "Refund payment")

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        input_fields = self._prepare_api_request("DoVoid", settings)
        input_fields["AUTHORIZATIONID"] = order.transaction_information.transaction_id or ""
        return await self._call_and_get_status(order, input_fields, "AUTHORIZATIONID", settings, "Cancel payment")

    async def _call_and_get_status(
        self,
        order: Order,
        input_fields: Dict[str, str],
        transaction_key: str,
        settings: Mapping[str, str],
        operation: str,
    ) -> Optional[ApiInfo]:
        try:
            response = await self._call_api(input_fields, settings)
            if response.get("ACK") in SUCCESS_ACKS:
                return await self._get_transaction_status(order.order_number, response[transaction_key], settings)
            logger.warning(
                f"PayPal({order.order_number}) - Error making API request - error code: {response.get('L_ERRORCODE0', '')}"
            )
        except self.GATEWAY_ERRORS as e:
            logger.error(f"PayPal({order.order_number}) - {operation}: {e}")
        return None

    async def _get_transaction_status(
        self,
        order_number: Optional[str],
        transaction_id: Optional[str],
        settings: Mapping[str, str],
    ) -> Optional[ApiInfo]:
        input_fields = self._prepare_api_request("GetTransactionDetails", settings)
        input_fields["TRANSACTIONID"] = transaction_id or ""

        response = await self._call_api(input_fields, settings)
        if response.get("ACK") not in SUCCESS_ACKS:
            logger.warning(
                f"PayPal({order_number}) - Error making API request - error code: {response.get('L_ERRORCODE0', '')}"
            )
            return None

        # A refund is a "sendmoney" transaction, its parent holds the payment
        if response.get("TRANSACTIONTYPE") == "sendmoney" and "PARENTTRANSACTIONID" in response:
            return await self._get_transaction_status(order_number, response["PARENTTRANSACTIONID"], settings)

        return ApiInfo(transaction_id, self.map_payment_status(response.get("PAYMENTSTATUS"), response.get("PENDINGREASON")))

    @staticmethod
    def map_payment_status(payment_status: Optional[str], pending_reason: Optional[str] = None) -> PaymentState:
        if payment_status == "Pending":
            return PaymentState.AUTHORIZED if pending_reason == "authorization" else PaymentState.PENDING_EXTERNAL_SYSTEM
        status_mapping = {
            "Completed": PaymentState.CAPTURED,
            "Voided": PaymentState.CANCELLED,
            "Refunded": PaymentState.REFUNDED,
        }
        return status_mapping.get(payment_status, PaymentState.INITIALIZED)

    def _prepare_api_request(self, method_name: str, settings: Mapping[str, str]) -> Dict[str, str]:
        for key in ("USER", "PWD", "SIGNATURE"):
            must_contain_key(settings, key, "paypal")
        return {
            "USER": settings["USER"],
            "PWD": settings["PWD"],
            "SIGNATURE": settings["SIGNATURE"],
            "VERSION": NVP_VERSION,
            "METHOD": method_name,
        }

    async def _call_api(self, input_fields: Mapping[str, str], settings: Mapping[str, str]) -> Dict[str, str]:
        body = await self._post_form(self._api_url(settings), input_fields, input_fields["METHOD"])
        return parse_key_value_response(body, url_decode=True)
