"""
Paynova Payment Provider Adapter

Provides integration with the Paynova REST API: order creation and payment
initialization for the hosted Aero page, SHA-1 digested postbacks and
finalize/refund/annul of authorizations.
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
    PaymentError,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import ensure_iso_currency, format_amount, must_contain_key
from .signing import DigestAlgorithm, DigestEncoding, DigestRecipe

logger = logging.getLogger(__name__)

LIVE_API_URL = "https://api.paynova.com"
TEST_API_URL = "https://testapi.paynova.com"

INTERFACE_ID_AERO = 5
PAYMENT_CHANNEL_WEB = 1

POSTBACK_DIGEST = DigestRecipe(
    algorithm=DigestAlgorithm.SHA1,
    fields=("EVENT_TYPE", "SESSION_ID", "ORDER_ID", "ORDER_NUMBER", "CURRENCY_CODE"),
    pair_format="{value};",
    encoding=DigestEncoding.HEX_UPPER,
)

PAYMENT_STATUS_STATES = {
    "Pending": PaymentState.PENDING_EXTERNAL_SYSTEM,
    "Completed": PaymentState.CAPTURED,
    "PartiallyCompleted": PaymentState.CAPTURED,
    "Authorized": PaymentState.AUTHORIZED,
}

# (request field, settings key for the order property alias, default alias)
CUSTOMER_NAME_PROPERTIES = (
    ("companyName", "companyPropertyAlias", "company"),
    ("title", "titlePropertyAlias", "title"),
    ("middleNames", "middleNamesPropertyAlias", "middleNames"),
    ("suffix", "suffixPropertyAlias", "suffix"),
)
CUSTOMER_PHONE_PROPERTIES = (
    ("homeTelephone", "homeTelephonePropertyAlias", "phone"),
    ("workTelephone", "workTelephonePropertyAlias", "workPhone"),
    ("mobileTelephone", "mobileTelephonePropertyAlias", "mobile"),
)
BILLING_ADDRESS_PROPERTIES = (
    ("street1", "street1PropertyAlias", "streetAddress"),
    ("street2", "street2PropertyAlias", "streetAddress2"),
    ("street3", "street3PropertyAlias", "streetAddress3"),
    ("street4", "street4PropertyAlias", "streetAddress4"),
    ("city", "cityPropertyAlias", "city"),
    ("postalCode", "postalCodePropertyAlias", "zipCode"),
)
SHIPPING_NAME_PROPERTIES = (
    ("companyName", "shipping_companyPropertyAlias", "shipping_company"),
    ("title", "shipping_titlePropertyAlias", "shipping_title"),
    ("firstName", "shipping_firstNamePropertyAlias", "shipping_firstName"),
    ("middleNames", "shipping_middleNamesPropertyAlias", "shipping_middleNames"),
    ("lastName", "shipping_lastNamePropertyAlias", "shipping_lastName"),
    ("suffix", "shipping_suffixPropertyAlias", "shipping_suffix"),
)
SHIPPING_ADDRESS_PROPERTIES = (
    ("street1", "shipping_street1PropertyAlias", "shipping_streetAddress"),
    ("street2", "shipping_street2PropertyAlias", "shipping_streetAddress2"),
    ("street3", "shipping_street3PropertyAlias", "shipping_streetAddress3"),
    ("street4", "shipping_street4PropertyAlias", "shipping_streetAddress4"),
    ("city", "shipping_cityPropertyAlias", "shipping_city"),
    ("postalCode", "shipping_postalCodePropertyAlias", "shipping_zipCode"),
)


def _properties(order: Order, settings: Mapping[str, str], mapping) -> Dict[str, str]:
    return {
        field_name: order.get_property(settings.get(alias_key) or default_alias)
        for field_name, alias_key, default_alias in mapping
    }


class PaynovaAdapter(PaymentProvider):
    """Paynova payment provider adapter."""

    display_name = "Paynova"

    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True
    finalize_at_continue_url = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.PAYNOVA

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "merchantId": "",
            "customerLanguageCode": "ENG",
            "urlRedirectSuccess": "",
            "urlRedirectCancel": "",
            "paymentMethods": "",
            "secretKey": "",
            "apiPassword": "",
            "testMode": "1",
        }

    def build_create_order_request(self, order: Order, currency: str, settings: Mapping[str, str]) -> Dict[str, Any]:
        """Order creation payload with customer, billing and shipping details."""
        payment_information = order.payment_information
        shipment_information = order.shipment_information

        customer_name = _properties(order, settings, CUSTOMER_NAME_PROPERTIES)
        customer_name["firstName"] = payment_information.first_name
        customer_name["lastName"] = payment_information.last_name

        bill_to_address = _properties(order, settings, BILLING_ADDRESS_PROPERTIES)
        bill_to_address["countryCode"] = payment_information.country_code or ""
        if payment_information.country_region_code:
            bill_to_address["regionCode"] = payment_information.country_region_code

        ship_to_address = _properties(order, settings, SHIPPING_ADDRESS_PROPERTIES)
        if shipment_information.country_region_code:
            ship_to_address["regionCode"] = shipment_information.country_region_code
        if shipment_information.country_code:
            ship_to_address["countryCode"] = shipment_information.country_code

        customer = {"emailAddress": payment_information.email, "name": dict(customer_name)}
        customer.update(_properties(order, settings, CUSTOMER_PHONE_PROPERTIES))

        return {
            "orderNumber": order.cart_number,
            "currencyCode": currency,
            "totalAmount": format_amount(order.total_price),
            "customer": customer,
            "billTo": {"name": dict(customer_name), "address": bill_to_address},
            "shipTo": {
                "name": _properties(order, settings, SHIPPING_NAME_PROPERTIES),
                "address": ship_to_address,
            },
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
        Create the Paynova order, initialize a web payment and post the customer
        to the returned payment page.

        Raises:
            PaymentError: If a setting is missing, the currency is not ISO 4217 or
                Paynova refuses the order or the payment
        """
        must_contain_key(settings, "customerLanguageCode", "paynova")
        must_contain_key(settings, "testMode", "paynova")
        currency = ensure_iso_currency(order.currency_iso_code, "paynova")

        create_order_response = await self._call_api(
            "orders/create", "create_order", self.build_create_order_request(order, currency, settings), settings
        )
        self._ensure_success(create_order_response, "Create order")

        initialize_payment_request: Dict[str, Any] = {
            "totalAmount": format_amount(order.total_price),
            "paymentChannelId": PAYMENT_CHANNEL_WEB,
            "interfaceOptions": {
                "interfaceId": INTERFACE_ID_AERO,
                "customerLanguageCode": settings["customerLanguageCode"],
                "urlRedirectSuccess": continue_url,
                "urlRedirectCancel": cancel_url,
                "urlRedirectPending": continue_url,
            },
        }
        if settings.get("paymentMethods"):
            initialize_payment_request["paymentMethods"] = [
                {"id": int(method_id)} for method_id in settings["paymentMethods"].split(",")
            ]

        initialize_payment_response = await self._call_api(
            f"orders/{create_order_response['orderId']}/initializePayment",
            "initialize_payment",
            initialize_payment_request,
            settings,
        )
        self._ensure_success(initialize_payment_response, "Initialize payment")

        return PaymentHtmlForm(action=initialize_payment_response.get("url", ""))

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "urlRedirectSuccess", "paynova")
        return settings["urlRedirectSuccess"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "urlRedirectCancel", "paynova")
        return settings["urlRedirectCancel"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Verify the postback ``DIGEST`` and map ``PAYMENT_1_STATUS``.

        Statuses outside the known vocabulary produce no callback info.
        """
        must_contain_key(settings, "secretKey", "paynova")
        self._log_request(request, settings.get("testMode") == "1")

        form = request.form
        if form.get("ORDER_NUMBER") != order.cart_number or not POSTBACK_DIGEST.verify(
            form.get("DIGEST"), form, settings["secretKey"]
        ):
            logger.warning(f"Paynova({order.cart_number}) - digest check failed")
            return CallbackResult()

        payment_state = PAYMENT_STATUS_STATES.get(form.get("PAYMENT_1_STATUS", ""))
        if payment_state is None:
            logger.warning(f"Paynova({order.cart_number}) - Unknown payment status: {form.get('PAYMENT_1_STATUS')}")
            return CallbackResult()

        try:
            amount = Decimal(form.get("PAYMENT_1_AMOUNT", ""))
        except ArithmeticError:
            logger.warning(f"Paynova({order.cart_number}) - Invalid PAYMENT_1_AMOUNT: {form.get('PAYMENT_1_AMOUNT')}")
            return CallbackResult()

        return CallbackResult(
            callback_info=CallbackInfo(
                amount,
                form.get("PAYMENT_1_TRANSACTION_ID", ""),
                payment_state,
                form.get("PAYMENT_1_PAYMENT_METHOD_NAME"),
                form.get("PAYMENT_1_CARD_LAST_FOUR"),
            )
        )

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        return await self._transaction_call(order, "finalize", settings, PaymentState.CAPTURED, "Capture payment")

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        return await self._transaction_call(order, "refund", settings, PaymentState.REFUNDED, "Refund payment")

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        return await self._transaction_call(order, "annul", settings, PaymentState.CANCELLED, "Cancel payment")

    async def _transaction_call(
        self,
        order: Order,
        action: str,
        settings: Mapping[str, str],
        payment_state: PaymentState,
        description: str,
    ) -> Optional[ApiInfo]:
        transaction_id = order.transaction_information.transaction_id or ""
        amount = format_amount(order.transaction_information.amount_authorized or Decimal("0"))
        path = f"transactions/{transaction_id}/{action}/{amount}"

        try:
            payload = {"transactionId": transaction_id, "totalAmount": amount}
            response = await self._call_api(path, action, payload, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Paynova({order.order_number}) - {description}: {e}")
            return None

        status = response.get("status") or {}
        if not status.get("isSuccess"):
            logger.warning(
                f"Paynova({order.order_number}) - {description} - Error code: {status.get('statusKey')} "
                f"| Error message: {status.get('statusMessage')}"
            )
            return None
        # Annulments do not hand out a new transaction
        return ApiInfo(response.get("transactionId") or transaction_id, payment_state)

    @staticmethod
    def _ensure_success(response: Mapping[str, Any], description: str) -> None:
        status = response.get("status") or {}
        if not status.get("isSuccess"):
            raise PaymentError(
                message=f"{description} failed - {status.get('statusKey')}: {status.get('statusMessage')}",
                error_code="registration_failed",
                provider="paynova",
                gateway_response=dict(response),
            )

    async def _call_api(
        self,
        path: str,
        operation: str,
        payload: Mapping[str, Any],
        settings: Mapping[str, str],
    ) -> Dict[str, Any]:
        must_contain_key(settings, "merchantId", "paynova")
        must_contain_key(settings, "apiPassword", "paynova")
        base_url = TEST_API_URL if settings.get("testMode") == "1" else LIVE_API_URL
        return await self._request_json(
            "POST",
            f"{base_url}/{path}/",
            operation,
            payload=dict(payload),
            headers={"Accept": "application/json"},
            auth=aiohttp.BasicAuth(settings["merchantId"], settings["apiPassword"]),
        )
