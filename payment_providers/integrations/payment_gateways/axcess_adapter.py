"""
Axcess Payment Provider Adapter

Provides integration with the Axcess (ctpe.net) POST frontend: server side
transaction registration, the response URL callback and the CC.CP/CC.RF/CC.RV
follow up transactions.
"""

import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional

from payment_providers.models.order import Order, PaymentState

from .base import (
    ApiInfo,
    CallbackInfo,
    CallbackRequest,
    CallbackResponse,
    CallbackResult,
    PaymentError,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import (
    absolute_url,
    ensure_iso_currency,
    format_amount,
    must_contain_key,
    must_not_be_empty,
    parse_key_value_response,
)

logger = logging.getLogger(__name__)

LIVE_URL = "https://ctpe.net/frontend/payment.prc"
TEST_URL = "https://test.ctpe.net/frontend/payment.prc"

SETTINGS_NOT_SENT = (
    "FRONTEND.RESPONSE_URL",
    "FRONTEND.CANCEL_URL",
    "streetAddressPropertyAlias",
    "cityPropertyAlias",
    "zipCodePropertyAlias",
    "SYSTEM",
)

CREDENTIAL_SETTINGS = ("SECURITY.SENDER", "USER.LOGIN", "USER.PWD", "TRANSACTION.CHANNEL", "TRANSACTION.MODE")


class AxcessAdapter(PaymentProvider):
    """Axcess payment provider adapter."""

    display_name = "Axcess"

    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.AXCESS

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "SECURITY.SENDER": "",
            "USER.LOGIN": "",
            "USER.PWD": "",
            "TRANSACTION.CHANNEL": "",
            "FRONTEND.LANGUAGE": "en",
            "FRONTEND.RESPONSE_URL": "",
            "FRONTEND.CANCEL_URL": "",
            "PAYMENT.CODE": "CC.PA",
            "streetAddressPropertyAlias": "streetAddress",
            "cityPropertyAlias": "city",
            "zipCodePropertyAlias": "zipCode",
            "TRANSACTION.MODE": "INTEGRATOR_TEST",
            "SYSTEM": "TEST",
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
        Register the transaction and use the returned frontend URL as form action.

        Raises:
            PaymentError: If a setting or address property is missing, or Axcess
                refuses the registration
        """
        for key in CREDENTIAL_SETTINGS + (
            "PAYMENT.CODE", "streetAddressPropertyAlias", "cityPropertyAlias", "zipCodePropertyAlias", "SYSTEM",
        ):
            must_contain_key(settings, key, "axcess")
        street_address = must_not_be_empty(order.get_property(settings["streetAddressPropertyAlias"]), "street address", "axcess")
        city = must_not_be_empty(order.get_property(settings["cityPropertyAlias"]), "city", "axcess")
        zip_code = must_not_be_empty(order.get_property(settings["zipCodePropertyAlias"]), "zip code", "axcess")
        currency = ensure_iso_currency(order.currency_iso_code, "axcess")

        input_fields = {key: value for key, value in settings.items() if key not in SETTINGS_NOT_SENT}
        input_fields["REQUEST.VERSION"] = "1.0"
        input_fields["FRONTEND.ENABLED"] = "true"
        input_fields["FRONTEND.POPUP"] = "false"
        input_fields["IDENTIFICATION.TRANSACTIONID"] = order.cart_number
        input_fields["PRESENTATION.CURRENCY"] = currency
        input_fields["PRESENTATION.AMOUNT"] = format_amount(order.total_price)
        input_fields["FRONTEND.RESPONSE_URL"] = callback_url
        input_fields["NAME.GIVEN"] = order.payment_information.first_name
        input_fields["NAME.FAMILY"] = order.payment_information.last_name
        input_fields["CONTACT.EMAIL"] = order.payment_information.email
        input_fields["CONTACT.IP"] = order.ip_address or ""
        input_fields["ADDRESS.STREET"] = street_address
        input_fields["ADDRESS.CITY"] = city
        input_fields["ADDRESS.ZIP"] = zip_code
        input_fields["ADDRESS.COUNTRY"] = order.payment_information.country_code or ""
        if order.payment_information.country_region_code:
            input_fields["ADDRESS.STATE"] = order.payment_information.country_region_code

        response = await self._call_api(input_fields, settings)
        if response.get("POST.VALIDATION") != "ACK":
            raise PaymentError(
                message=f"Generate html failed - error code: {response.get('POST.VALIDATION', '')}",
                error_code="registration_failed",
                provider="axcess",
                gateway_response=response,
            )

        return PaymentHtmlForm(action=response.get("FRONTEND.REDIRECT_URL", ""))

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "FRONTEND.RESPONSE_URL", "axcess")
        return settings["FRONTEND.RESPONSE_URL"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "FRONTEND.CANCEL_URL", "axcess")
        return settings["FRONTEND.CANCEL_URL"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Handle the response URL call. Axcess redirects the customer to the
        absolute URL written in the response body.
        """
        must_contain_key(settings, "TRANSACTION.MODE", "axcess")
        self._log_request(request, settings["TRANSACTION.MODE"] != "LIVE")

        if request.value("PROCESSING.RESULT") != "ACK":
            logger.warning(
                f"Axcess({order.cart_number}) - Process callback - PROCESSING.CODE: {request.value('PROCESSING.CODE')}"
            )
            cancel_url = absolute_url(self.get_cancel_url(order, settings), request.base_url)
            return CallbackResult(response=CallbackResponse(body=cancel_url))

        continue_url = absolute_url(self.get_continue_url(order, settings), request.base_url)
        form = request.form
        try:
            amount = Decimal(form.get("PRESENTATION.AMOUNT", ""))
        except ArithmeticError:
            logger.warning(f"Axcess({order.cart_number}) - Invalid PRESENTATION.AMOUNT: {form.get('PRESENTATION.AMOUNT')}")
            return CallbackResult(response=CallbackResponse(body=continue_url))

        callback_info = CallbackInfo(
            amount,
            form.get("IDENTIFICATION.UNIQUEID", ""),
            PaymentState.CAPTURED if form.get("PAYMENT.CODE") == "CC.DB" else PaymentState.AUTHORIZED,
        )
        return CallbackResult(callback_info=callback_info, response=CallbackResponse(body=continue_url))

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        input_fields = self._follow_up_fields("CC.CP", order, settings, include_amount=True)
        return await self._follow_up(order, input_fields, settings, PaymentState.CAPTURED, "Capture payment")

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        input_fields = self._follow_up_fields("CC.RF", order, settings, include_amount=True)
        return await self._follow_up(order, input_fields, settings, PaymentState.REFUNDED, "Refund payment")

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        input_fields = self._follow_up_fields("CC.RV", order, settings, include_amount=False)
        return await self._follow_up(order, input_fields, settings, PaymentState.CANCELLED, "Cancel payment")

    def _follow_up_fields(
        self,
        payment_code: str,
        order: Order,
        settings: Mapping[str, str],
        include_amount: bool,
    ) -> Dict[str, str]:
        for key in CREDENTIAL_SETTINGS:
            must_contain_key(settings, key, "axcess")

        input_fields = {
            "REQUEST.VERSION": "1.0",
            "SECURITY.SENDER": settings["SECURITY.SENDER"],
            "USER.LOGIN": settings["USER.LOGIN"],
            "USER.PWD": settings["USER.PWD"],
            "TRANSACTION.CHANNEL": settings["TRANSACTION.CHANNEL"],
        }
        if include_amount:
            input_fields["PRESENTATION.CURRENCY"] = ensure_iso_currency(order.currency_iso_code, "axcess")
            input_fields["PRESENTATION.AMOUNT"] = format_amount(
                order.transaction_information.amount_authorized or Decimal("0")
            )
        input_fields["PAYMENT.CODE"] = payment_code
        input_fields["IDENTIFICATION.REFERENCEID"] = order.transaction_information.transaction_id or ""
        input_fields["TRANSACTION.MODE"] = settings["TRANSACTION.MODE"]
        return input_fields

    async def _follow_up(
        self,
        order: Order,
        input_fields: Mapping[str, str],
        settings: Mapping[str, str],
        payment_state: PaymentState,
        operation: str,
    ) -> Optional[ApiInfo]:
        try:
            response = await self._call_api(input_fields, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Axcess({order.order_number}) - {operation}: {e}")
            return None

        if response.get("PROCESSING.RESULT") != "ACK":
            logger.warning(
                f"Axcess({order.order_number}) - Error making API request - PROCESSING.CODE: "
                f"{response.get('PROCESSING.CODE', '')}"
            )
            return None
        return ApiInfo(response.get("IDENTIFICATION.UNIQUEID", ""), payment_state)

    async def _call_api(self, input_fields: Mapping[str, str], settings: Mapping[str, str]) -> Dict[str, str]:
        must_contain_key(settings, "SYSTEM", "axcess")
        url = LIVE_URL if settings["SYSTEM"] == "LIVE" else TEST_URL
        body = await self._post_form(url, input_fields, input_fields.get("PAYMENT.CODE", "register"))
        return parse_key_value_response(body, url_decode=True)
