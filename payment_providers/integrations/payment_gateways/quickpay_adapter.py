"""
QuickPay Payment Provider Adapter

Provides integration with the QuickPay v10 payment window, checksum signed
callbacks and the QuickPay REST API for capture, refund, cancel and status.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

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
from .helpers import ensure_iso_currency, ensure_max_length, must_contain_key, to_cents
from .signing import DigestAlgorithm, DigestRecipe, SecretPlacement, verify_digest

logger = logging.getLogger(__name__)

FORM_URL = "https://payment.quickpay.net"
API_URL = "https://api.quickpay.net/payments"
API_VERSION = "v10"
SUCCESS_STATUS_CODE = "20000"

# Field values sorted by key, space separated, HMAC-SHA256 hex keyed with the window API key
FORM_CHECKSUM = DigestRecipe(
    algorithm=DigestAlgorithm.HMAC_SHA256,
    separator=" ",
    secret_placement=SecretPlacement.KEY,
)

OPERATION_STATES = {
    "capture": PaymentState.CAPTURED,
    "refund": PaymentState.REFUNDED,
    "cancel": PaymentState.CANCELLED,
}


def quickpay_order_id(cart_number: str) -> str:
    """QuickPay order ids are 4 to 20 characters; short cart numbers are zero padded."""
    return cart_number.rjust(4, "0")


class QuickPayAdapter(PaymentProvider):
    """QuickPay v10 payment provider adapter."""

    display_name = "QuickPay"
    documentation_link = "https://documentation.teacommerce.net/guides/payment-providers/quickpay/"

    supports_retrieval_of_payment_status = True
    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.QUICKPAY

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "merchant_id": "",
            "apiKey": "",
            "windowApiKey": "",
            "privateKey": "",
            "agreement_id": "",
            "language": "en",
            "continueurl": "",
            "cancelurl": "",
            "autocapture": "0",
            "payment_methods": "",
            "testmode": "1",
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
        for key in ("merchant_id", "agreement_id", "autocapture", "language", "windowApiKey"):
            must_contain_key(settings, key, "quickpay")
        ensure_max_length(order.cart_number, 20, "quickpay")
        currency = ensure_iso_currency(order.currency_iso_code, "quickpay")

        input_fields = {
            "version": API_VERSION,
            "merchant_id": settings["merchant_id"],
            "agreement_id": settings["agreement_id"],
            "autocapture": settings["autocapture"],
            "payment_methods": settings.get("payment_methods", ""),
            "order_id": quickpay_order_id(order.cart_number),
            "amount": str(to_cents(order.total_price)),
            "currency": currency,
            "continueurl": continue_url,
            "cancelurl": cancel_url,
            "callbackurl": callback_url,
            "language": settings["language"],
        }
        input_fields["checksum"] = FORM_CHECKSUM.compute(input_fields, settings["windowApiKey"])

        return PaymentHtmlForm(action=FORM_URL, input_fields=input_fields)

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "continueurl", "quickpay")
        return settings["continueurl"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "cancelurl", "quickpay")
        return settings["cancelurl"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Verify the ``QuickPay-Checksum-Sha256`` header against the raw JSON body
        and authorize on the last successful ``authorize`` operation.
        """
        must_contain_key(settings, "privateKey", "quickpay")
        self._log_request(request, settings.get("testmode") == "1")

        checksum = request.header("QuickPay-Checksum-Sha256")
        if not verify_digest(checksum, request.body, DigestAlgorithm.HMAC_SHA256, settings["privateKey"]):
            logger.warning(f"QuickPay({order.cart_number}) - Checksum security check failed")
            return CallbackResult()

        try:
            payment = request.json()
        except ValueError as e:
            logger.error(f"QuickPay({order.cart_number}) - Process callback: {e}")
            return CallbackResult()

        if not isinstance(payment, dict):
            logger.warning(f"QuickPay({order.cart_number}) - Callback body is not a payment object")
            return CallbackResult()

        if payment.get("order_id") !=quickpay_order_id(order.cart_number):
            logger.warning(f"QuickPay({order.cart_number}) - Order id mismatch: {payment.get('order_id')}")
            return CallbackResult()

        authorizations = [o for o in payment.get("operations") or [] if o.get("type") == "authorize"]
        if not authorizations:
            logger.warning(f"QuickPay({order.cart_number}) - No authorize found")
            return CallbackResult()

        last_authorize = authorizations[-1]
        if str(last_authorize.get("qp_status_code")) != SUCCESS_STATUS_CODE:
            logger.warning(
                f"QuickPay({order.cart_number}) - Error making API request - error code: "
                f"{last_authorize.get('qp_status_code')} | error message: {last_authorize.get('qp_status_msg')}"
            )
            return CallbackResult()

        metadata = payment.get("metadata") or {}
        return CallbackResult(
            callback_info=CallbackInfo(
                Decimal(str(last_authorize.get("amount", 0))) / 100,
                str(payment.get("id", "")),
                PaymentState.AUTHORIZED,
                metadata.get("type"),
                metadata.get("last4"),
            )
        )

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "apiKey", "quickpay")
        return await self._call_api(order, settings, "", {}, "GET", "Get status")

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "apiKey", "quickpay")
        parameters = {"amount": str(to_cents(order.transaction_information.amount_authorized or Decimal("0")))}
        return await self._call_api(order, settings, "capture", parameters, "POST", "Capture payment")

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "apiKey", "quickpay")
        parameters = {"amount": str(to_cents(order.transaction_information.amount_authorized or Decimal("0")))}
        return await self._call_api(order, settings, "refund", parameters, "POST", "Refund payment")

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "apiKey", "quickpay")
        return await self._call_api(order, settings, "cancel", {}, "POST", "Cancel payment")

    @staticmethod
    def map_payment(payment: Mapping[str, Any]) -> PaymentState:
        """State of the last completed, successful operation of a payment."""
        completed = [
            o for o in payment.get("operations") or []
            if not o.get("pending") and str(o.get("qp_status_code")) == SUCCESS_STATUS_CODE
        ]
        if not completed:
            return PaymentState.INITIALIZED
        return OPERATION_STATES.get(completed[-1].get("type"), PaymentState.INITIALIZED)

    async def _call_api(
        self,
        order: Order,
        settings: Mapping[str, str],
        operation: str,
        parameters: Mapping[str, str],
        method: str,
        description: str,
    ) -> Optional[ApiInfo]:
        transaction_id = order.transaction_information.transaction_id or ""
        url = f"{API_URL}/{transaction_id}"
        if operation:
            url += f"/{operation}"
        url += "?synchronized"
        for key, value in parameters.items():
            url += f"&{key}={value}"

        try:
            payment = await self._request_json(
                method,
                url,
                operation or "status",
                headers={"Accept-Version": API_VERSION, "Content-Type": "application/x-www-form-urlencoded"},
                auth=aiohttp.BasicAuth("", settings["apiKey"]),
            )
        except self.GATEWAY_ERRORS as e:
            logger.error(f"QuickPay({order.order_number}) - {description}: {e}")
            return None

        return ApiInfo(transaction_id, self.map_payment(payment))
