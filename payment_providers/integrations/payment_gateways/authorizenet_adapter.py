"""
Authorize.Net Payment Provider Adapter

Provides integration with Authorize.Net Accept Hosted: the hosted payment page
token request, signed webhooks and the JSON API for transaction details,
prior auth capture, refund and void.
"""

import json
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from payment_providers.models.order import Order, PaymentState

from .base import (
    ApiInfo,
    CallbackInfo,
    CallbackRequest,
    CallbackResult,
    PaymentError,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import format_amount, must_contain_key, snake_to_camel
from .signing import DigestAlgorithm, verify_digest

logger = logging.getLogger(__name__)

SANDBOX_API_URL = "https://apitest.authorize.net/xml/v1/request.api"
LIVE_API_URL = "https://api.authorize.net/xml/v1/request.api"
SANDBOX_FORM_URL = "https://test.authorize.net/payment/payment"
LIVE_FORM_URL = "https://accept.authorize.net/payment/payment"

WEBHOOK_EVENT_ITEM = "authorizenet_event"
PAYMENT_EVENT_PREFIX = "net.authorize.payment."

# Settings prefix -> hostedPaymentSettings name
HOSTED_PAYMENT_OPTIONS = (
    ("return_options_", "hostedPaymentReturnOptions"),
    ("button_options_", "hostedPaymentButtonOptions"),
    ("order_options_", "hostedPaymentOrderOptions"),
    ("style_options_", "hostedPaymentStyleOptions"),
    ("payment_options_", "hostedPaymentPaymentOptions"),
    ("security_options_", "hostedPaymentSecurityOptions"),
    ("shipping_address_options_", "hostedPaymentShippingAddressOptions"),
    ("billing_address_options_", "hostedPaymentBillingAddressOptions"),
    ("customer_options_", "hostedPaymentCustomerOptions"),
)

TRANSACTION_STATUS_STATES = {
    "authorizedPendingCapture": PaymentState.AUTHORIZED,
    "capturedPendingSettlement": PaymentState.CAPTURED,
    "settledSuccessfully": PaymentState.CAPTURED,
    "voided": PaymentState.CANCELLED,
    "refundSettledSuccessfully": PaymentState.REFUNDED,
    "refundPendingSettlement": PaymentState.REFUNDED,
}


def options_from_settings(settings: Mapping[str, str], prefix: str) -> Dict[str, Any]:
    """Collect prefixed settings as camelCase options, turning "true"/"false" into booleans."""
    options: Dict[str, Any] = {}
    for key, value in settings.items():
        if not key.startswith(prefix):
            continue
        option = snake_to_camel(key[len(prefix):].lower())
        lowered = (value or "").lower()
        if lowered == "true":
            options[option] = True
        elif lowered == "false":
            options[option] = False
        else:
            options[option] = value
    return options


def map_webhook_event_type(event_type: str) -> PaymentState:
    event_type = event_type.lower()
    if ".authorization." in event_type:
        return PaymentState.AUTHORIZED
    if any(part in event_type for part in (".authcapture.", ".capture.", ".priorauthcapture.")):
        return PaymentState.CAPTURED
    if ".refund." in event_type:
        return PaymentState.REFUNDED
    if ".void." in event_type:
        return PaymentState.CANCELLED
    return PaymentState.INITIALIZED


class AuthorizeNetAdapter(PaymentProvider):
    """Authorize.Net Accept Hosted payment provider adapter."""

    display_name = "Authorize.Net"
    documentation_link = "https://developer.authorize.net/api/reference/features/accept_hosted.html"

    supports_retrieval_of_payment_status = True
    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True
    allows_callback_without_order_id = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.AUTHORIZENET

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "continue_url": "",
            "cancel_url": "",
            "order_options_merchant_name": "",
            "capture": "true",
            "sandbox_api_login_id": "",
            "sandbox_transaction_key": "",
            "sandbox_signature_key": "",
            "live_api_login_id": "",
            "live_transaction_key": "",
            "live_signature_key": "",
            "mode": "sandbox",
        }

    def _is_sandbox(self, settings: Mapping[str, str]) -> bool:
        return settings.get("mode") == "sandbox"

    def _merchant_authentication(self, settings: Mapping[str, str]) -> Dict[str, str]:
        must_contain_key(settings, "mode", "authorizenet")
        mode = settings["mode"]
        must_contain_key(settings, f"{mode}_api_login_id", "authorizenet")
        must_contain_key(settings, f"{mode}_transaction_key", "authorizenet")
        return {
            "name": settings[f"{mode}_api_login_id"],
            "transactionKey": settings[f"{mode}_transaction_key"],
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
        Request an Accept Hosted token and post it to the hosted payment page.

        Raises:
            PaymentError: If a setting is missing or no token could be retrieved
        """
        must_contain_key(settings, "capture", "authorizenet")
        merchant_authentication = self._merchant_authentication(settings)

        transaction_request = {
            "transactionType": "authCaptureTransaction" if settings["capture"] == "true" else "authOnlyTransaction",
            "amount": format_amount(order.total_price),
            "order": {"invoiceNumber": order.cart_number},
            "customer": {"id": order.customer_id or "", "email": order.payment_information.email},
            "billTo": {
                "firstName": order.payment_information.first_name,
                "lastName": order.payment_information.last_name,
            },
        }

        payment_settings = []
        for prefix, setting_name in HOSTED_PAYMENT_OPTIONS:
            options = options_from_settings(settings, prefix)
            if prefix == "return_options_":
                options.setdefault("url", continue_url)
                options.setdefault("cancelUrl", cancel_url)
                options.setdefault("showReceipt", False)
            elif prefix == "order_options_" and "merchantName" in options:
                options.setdefault("show", True)
            elif prefix == "billing_address_options_":
                options.setdefault("show", False)
            if options:
                payment_settings.append({"settingName": setting_name, "settingValue": json.dumps(options)})

        payload = {
            "getHostedPaymentPageRequest": {
                "merchantAuthentication": merchant_authentication,
                "transactionRequest": transaction_request,
                "hostedPaymentSettings": {"setting": payment_settings},
            }
        }

        response = await self._call_api(payload, settings, "get_hosted_payment_page")
        if not self._is_ok(response) or not response.get("token"):
            raise PaymentError(
                message="Unable to retrieve Authorize.NET token",
                error_code="registration_failed",
                provider="authorizenet",
                gateway_response=response.get("messages"),
            )

        return PaymentHtmlForm(
            action=SANDBOX_FORM_URL if self._is_sandbox(settings) else LIVE_FORM_URL,
            input_fields={"token": response["token"]},
        )

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "continue_url", "authorizenet")
        return settings["continue_url"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "cancel_url", "authorizenet")
        return settings["cancel_url"]

    def get_validated_webhook_event(self, request: CallbackRequest, signature_key: str) -> Optional[Dict[str, Any]]:
        """
        Return the webhook event when ``X-ANET-Signature`` matches the
        HMAC-SHA512 of the raw body. The event is cached on the request.
        """
        if WEBHOOK_EVENT_ITEM in request.items:
            return request.items[WEBHOOK_EVENT_ITEM]

        event = None
        signature = (request.header("X-ANET-Signature") or "").split("=")[-1]
        if verify_digest(signature, request.body, DigestAlgorithm.HMAC_SHA512, signature_key, case_sensitive=False):
            try:
                event = request.json()
            except ValueError as e:
                logger.warning(f"Authorize.net - Invalid webhook body: {e}")
        else:
            logger.warning("Authorize.net - Webhook signature check failed")

        request.items[WEBHOOK_EVENT_ITEM] = event
        return event

    def _signature_key(self, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "mode", "authorizenet")
        key = f"{settings['mode']}_signature_key"
        must_contain_key(settings, key, "authorizenet")
        return settings[key]

    async def get_cart_number(self, request: CallbackRequest, settings: Mapping[str, str]) -> Optional[str]:
        """Resolve the cart number from the invoice number of the webhook's transaction."""
        merchant_authentication = self._merchant_authentication(settings)
        signature_key = self._signature_key(settings)
        self._log_request(request, self._is_sandbox(settings))

        event = self.get_validated_webhook_event(request, signature_key)
        if not event or not str(event.get("eventType", "")).startswith(PAYMENT_EVENT_PREFIX):
            return None

        payload = event.get("payload") or {}
        if payload.get("entityName") != "transaction":
            return None

        try:
            transaction = await self._get_transaction(payload.get("id", ""), merchant_authentication, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Authorize.net - GetCartNumber: {e}")
            return None

        if transaction is None or not transaction.get("order"):
            return None
        event["transaction"] = transaction
        return transaction["order"].get("invoiceNumber")

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """Map a verified payment webhook to the order's new state."""
        signature_key = self._signature_key(settings)

        event = self.get_validated_webhook_event(request, signature_key)
        if not event or not str(event.get("eventType", "")).startswith(PAYMENT_EVENT_PREFIX):
            return CallbackResult()

        payload = event.get("payload") or {}
        if payload.get("entityName") != "transaction" or payload.get("responseCode") != 1:
            return CallbackResult()

        card_type = order.transaction_information.payment_type
        card_number = order.transaction_information.payment_identifier
        credit_card = ((event.get("transaction") or {}).get("payment") or {}).get("creditCard")
        if credit_card:
            card_type = credit_card.get("cardType", card_type)
            card_number = credit_card.get("cardNumber", card_number)

        try:
            amount = Decimal(str(payload.get("authAmount", "0")))
        except ArithmeticError:
            logger.warning(f"Authorize.net({order.cart_number}) - Invalid authAmount: {payload.get('authAmount')}")
            return CallbackResult()

        return CallbackResult(
            callback_info=CallbackInfo(
                amount,
                str(payload.get("id", "")),
                map_webhook_event_type(event["eventType"]),
                card_type,
                card_number,
            )
        )

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        merchant_authentication = self._merchant_authentication(settings)
        try:
            transaction = await self._get_transaction(
                order.transaction_information.transaction_id or "", merchant_authentication, settings
            )
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Authorize.net({order.order_number}) - GetStatus: {e}")
            return None

        if transaction is None:
            return None
        return ApiInfo(
            transaction.get("transId"),
            TRANSACTION_STATUS_STATES.get(transaction.get("transactionStatus"), PaymentState.INITIALIZED),
        )

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        merchant_authentication = self._merchant_authentication(settings)
        transaction_request = {
            "transactionType": "priorAuthCaptureTransaction",
            "amount": format_amount(order.total_price),
            "refTransId": order.transaction_information.transaction_id or "",
        }
        try:
            response = await self._create_transaction(transaction_request, merchant_authentication, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Authorize.net({order.order_number}) - CapturePayment: {e}")
            return None

        if not self._is_ok(response):
            self._log_api_error(order, response)
            return None
        return ApiInfo(order.transaction_information.transaction_id, PaymentState.CAPTURED)

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        """Refund a settled payment; an unsettled one can only be voided, so that is tried next."""
        merchant_authentication = self._merchant_authentication(settings)
        card_number = (order.transaction_information.payment_identifier or "").lstrip("X")
        transaction_request = {
            "transactionType": "refundTransaction",
            "amount": format_amount(order.transaction_information.amount_authorized or Decimal("0")),
            "payment": {"creditCard": {"cardNumber": card_number, "expirationDate": "XXXX"}},
            "refTransId": order.transaction_information.transaction_id or "",
        }
        try:
            response = await self._create_transaction(transaction_request, merchant_authentication, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Authorize.net({order.order_number}) - RefundPayment: {e}")
            return None

        if not self._is_ok(response):
            return await self.cancel_payment(order, settings)
        return ApiInfo(order.transaction_information.transaction_id, PaymentState.REFUNDED)

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        merchant_authentication = self._merchant_authentication(settings)
        transaction_request = {
            "transactionType": "voidTransaction",
            "refTransId": order.transaction_information.transaction_id or "",
        }
        try:
            response = await self._create_transaction(transaction_request, merchant_authentication, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Authorize.net({order.order_number}) - CancelPayment: {e}")
            return None

        if not self._is_ok(response):
            self._log_api_error(order, response)
            return None
        return ApiInfo(order.transaction_information.transaction_id, PaymentState.CANCELLED)

    @staticmethod
    def _is_ok(response: Mapping[str, Any]) -> bool:
        return (response.get("messages") or {}).get("resultCode") == "Ok"

    def _log_api_error(self, order: Order, response: Mapping[str, Any]) -> None:
        messages = (response.get("messages") or {}).get("message") or [{}]
        logger.warning(
            f"Authorize.net({order.order_number}) - Error making API request - "
            f"{messages[0].get('code', '')}: {messages[0].get('text', '')}"
        )

    async def _get_transaction(
        self,
        transaction_id: str,
        merchant_authentication: Dict[str, str],
        settings: Mapping[str, str],
    ) -> Optional[Dict[str, Any]]:
        payload = {
            "getTransactionDetailsRequest": {
                "merchantAuthentication": merchant_authentication,
                "transId": transaction_id,
            }
        }
        response = await self._call_api(payload, settings, "get_transaction_details")
        if not self._is_ok(response):
            return None
        return response.get("transaction")

    async def _create_transaction(
        self,
        transaction_request: Dict[str, Any],
        merchant_authentication: Dict[str, str],
        settings: Mapping[str, str],
    ) -> Dict[str, Any]:
        payload = {
            "createTransactionRequest": {
                "merchantAuthentication": merchant_authentication,
                "transactionRequest": transaction_request,
            }
        }
        return await self._call_api(payload, settings, transaction_request["transactionType"])

    async def _call_api(self, payload: Dict[str, Any], settings: Mapping[str, str], operation: str) -> Dict[str, Any]:
        url = SANDBOX_API_URL if self._is_sandbox(settings) else LIVE_API_URL
        body = await self._request(
            "POST",
            url,
            operation,
            data=json.dumps(payload),
            headers={"Content-Type": "application/json"},
        )
        # Authorize.Net prefixes its JSON answers with a byte order mark
        return json.loads(body.lstrip("\ufeff"))
