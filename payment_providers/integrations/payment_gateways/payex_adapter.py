"""
PayEx Payment Provider Adapter

Provides integration with the PayEx PxOrder SOAP service. Every call carries an
MD5 hash of its parameters, in call order, followed by the encryption key. The
service answers with an XML document embedded in the SOAP result.
"""

import logging
import xml.etree.ElementTree as ET
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
from .helpers import ensure_iso_currency, must_contain_key, to_cents
from .signing import md5_hex
from .soap import build_envelope, local_name, parse_response, soap_headers

logger = logging.getLogger(__name__)

LIVE_SERVICE_URL = "https://external.payex.com/pxorder/pxorder.asmx"
TEST_SERVICE_URL = "https://test-external.payex.com/pxorder/pxorder.asmx"
SERVICE_NAMESPACE = "http://external.payex.com/PxOrder/"

ORDER_REF_PROPERTY = "orderRef"
VIEW_CREDITCARD = "CREDITCARD"

TRANSACTION_STATUS_STATES = {
    "3": PaymentState.AUTHORIZED,
    "6": PaymentState.CAPTURED,
    "4": PaymentState.CANCELLED,
    "2": PaymentState.REFUNDED,
}


def parse_px_result(result: str) -> Dict[str, str]:
    """
    Flatten a PxOrder result document into ``name -> text``.

    ``status/errorCode`` and ``status/description`` are kept apart from other
    leaves with the same name as ``errorCode`` and ``description``.
    """
    root = ET.fromstring(result.encode("utf-8"))
    values: Dict[str, str] = {}
    for element in root.iter():
        if element is not root and len(element) == 0:
            values.setdefault(local_name(element.tag), (element.text or "").strip())
    for status in root.iter():
        if local_name(status.tag) == "status":
            for child in status:
                values[local_name(child.tag)] = (child.text or "").strip()
            break
    return values


def vat_basis_points(vat_rate: Decimal) -> int:
    """PayEx expects VAT as percent times 100 (25% -> 2500)."""
    return to_cents(vat_rate * 100)


class PayExAdapter(PaymentProvider):
    """PayEx PxOrder payment provider adapter."""

    display_name = "PayEx"
    documentation_link = "http://anders.burla.dk/umbraco/tea-commerce/using-payex-with-tea-commerce/"

    supports_retrieval_of_payment_status = True
    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True
    finalize_at_continue_url = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.PAYEX

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "accountNumber": "",
            "clientLanguage": "en-US",
            "returnURL": "",
            "cancelUrl": "",
            "purchaseOperation": "AUTHORIZATION",
            "encryptionKey": "",
            "testing": "1",
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
        Initialize the PayEx order and send the customer to its redirect URL.

        The order reference PayEx hands out is stored on the order, the callback
        completes the payment with it. A refused initialization sends the
        customer to the cancel URL.
        """
        for key in ("accountNumber", "purchaseOperation", "encryptionKey"):
            must_contain_key(settings, key, "payex")
        currency = ensure_iso_currency(order.currency_iso_code, "payex")

        params = {
            "accountNumber": settings["accountNumber"],
            "purchaseOperation": settings["purchaseOperation"],
            "price": str(to_cents(order.total_price)),
            "priceArgList": "",
            "currency": currency,
            "vat": str(vat_basis_points(order.vat_rate)),
            "orderID": order.cart_number,
            "productNumber": ",".join(line.sku for line in order.order_lines),
            "description": ",".join(line.name for line in order.order_lines),
            "clientIPAddress": order.ip_address or "",
            "clientIdentifier": "",
            "additionalValues": "",
            "externalID": "",
            "returnUrl": continue_url,
            "view": VIEW_CREDITCARD,
            "agreementRef": "",
            "cancelUrl": cancel_url,
            "clientLanguage": "",
        }
        result = await self._call_service("Initialize7", params, settings)

        if result.get("errorCode") != "OK":
            logger.warning(
                f"PayEx({order.cart_number}) - Generate html form error - error code: {result.get('description', '')}"
            )
            return PaymentHtmlForm(action=cancel_url)

        order.set_property(ORDER_REF_PROPERTY, result.get("orderRef", ""))
        order.save()
        return PaymentHtmlForm(action=result.get("redirectUrl", ""))

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "returnURL", "payex")
        return settings["returnURL"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "cancelUrl", "payex")
        return settings["cancelUrl"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Complete the PayEx order.

        Transaction status 0 (sale) captures and 3 authorizes; an order PayEx
        reports as already completed yields nothing.
        """
        must_contain_key(settings, "accountNumber", "payex")
        must_contain_key(settings, "encryptionKey", "payex")
        self._log_request(request, settings.get("testing") == "1")

        params = {"accountNumber": settings["accountNumber"], "orderRef": order.get_property(ORDER_REF_PROPERTY)}
        try:
            result = await self._call_service("Complete", params, settings)
            transaction_status = result.get("transactionStatus", "")
            already_completed = result.get("alreadyCompleted", "false").lower() == "true"
            if result.get("errorCode") != "OK" or transaction_status not in ("0", "3") or already_completed:
                logger.warning(
                    f"PayEx({order.cart_number}) - Callback failed - error code: {result.get('errorCode')} "
                    f"- Description: {result.get('description', '')}"
                )
                return CallbackResult()

            callback_info = CallbackInfo(
                Decimal(result["amount"]) / 100,
                result.get("transactionNumber", ""),
                PaymentState.AUTHORIZED if transaction_status == "3" else PaymentState.CAPTURED,
                result.get("paymentMethod"),
                result.get("maskedNumber"),
            )
        except (ArithmeticError,) + self.GATEWAY_ERRORS as e:
            logger.error(f"PayEx({order.cart_number}) - Process callback: {e}")
            return CallbackResult()

        return CallbackResult(callback_info=callback_info)

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        params = self._transaction_params(order, settings)
        try:
            result = await self._call_service("GetTransactionDetails2", params, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"PayEx({order.order_number}) - Get status: {e}")
            return None

        if result.get("errorCode") != "OK":
            self._log_api_error(order, result)
            return None
        return ApiInfo(
            result.get("transactionNumber", ""),
            TRANSACTION_STATUS_STATES.get(result.get("transactionStatus", ""), PaymentState.INITIALIZED),
        )

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        params = self._amount_params(order, settings)
        return await self._call_operation(order, "Capture4", params, settings, "6", "Capture payment")

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        params = self._amount_params(order, settings)
        return await self._call_operation(order, "Credit4", params, settings, "2", "Refund payment")

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        params = self._transaction_params(order, settings)
        return await self._call_operation(order, "Cancel2", params, settings, "4", "Cancel payment")

    def _transaction_params(self, order: Order, settings: Mapping[str, str]) -> Dict[str, str]:
        must_contain_key(settings, "accountNumber", "payex")
        return {
            "accountNumber": settings["accountNumber"],
            "transactionNumber": order.transaction_information.transaction_id or "",
        }

    def _amount_params(self, order: Order, settings: Mapping[str, str]) -> Dict[str, str]:
        params = self._transaction_params(order, settings)
        params["amount"] = str(to_cents(order.transaction_information.amount_authorized or Decimal("0")))
        params["orderId"] = order.cart_number
        params["vatAmount"] = str(vat_basis_points(order.vat_rate))
        params["additionalValues"] = ""
        return params

    async def _call_operation(
        self,
        order: Order,
        operation: str,
        params: Mapping[str, str],
        settings: Mapping[str, str],
        expected_status: str,
        description: str,
    ) -> Optional[ApiInfo]:
        try:
            result = await self._call_service(operation, params, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"PayEx({order.order_number}) - {description}: {e}")
            return None

        if result.get("errorCode") != "OK" or result.get("transactionStatus") != expected_status:
            self._log_api_error(order, result)
            return None
        return ApiInfo(result.get("transactionNumber", ""), TRANSACTION_STATUS_STATES[expected_status])

    @staticmethod
    def _log_api_error(order: Order, result: Mapping[str, str]) -> None:
        logger.warning(
            f"PayEx({order.order_number}) - Error making API request - Error code: {result.get('errorCode')} "
            f"- Description: {result.get('description', '')}"
        )

    async def _call_service(
        self,
        operation: str,
        params: Mapping[str, str],
        settings: Mapping[str, str],
    ) -> Dict[str, str]:
        """Call a PxOrder operation, adding the hash, and parse its result document."""
        must_contain_key(settings, "encryptionKey", "payex")
        signed = dict(params)
        signed["hash"] = md5_hex("".join(params.values()) + settings["encryptionKey"])

        url = TEST_SERVICE_URL if settings.get("testing") == "1" else LIVE_SERVICE_URL
        body = await self._request(
            "POST",
            url,
            operation,
            data=build_envelope(SERVICE_NAMESPACE, operation, signed),
            headers=soap_headers(f"{SERVICE_NAMESPACE}{operation}"),
        )
        response = parse_response(body, operation)
        return parse_px_result(response.get(f"{operation}Result", ""))
