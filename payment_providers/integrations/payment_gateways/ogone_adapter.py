"""
Ogone Payment Provider Adapter

Provides integration with Ogone (Ingenico ePayments) e-Commerce: SHA-512
signed payment page form, SHA-OUT verified redirects and the XML DirectLink
API for status queries and maintenance operations.
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
from .signing import DigestAlgorithm, DigestEncoding, DigestRecipe, SecretPlacement

logger = logging.getLogger(__name__)

SETTINGS_NOT_SENT = ("SHAINPASSPHRASE", "SHAOUTPASSPHRASE", "APIUSERID", "APIPASSWORD", "TESTMODE")

# KEY=VALUE<passphrase> for every parameter, sorted by key
SHA_SIGNATURE = DigestRecipe(
    algorithm=DigestAlgorithm.SHA512,
    pair_format="{key}={value}",
    secret_placement=SecretPlacement.EACH,
    encoding=DigestEncoding.HEX_UPPER,
    uppercase_keys=True,
)

STATUS_MAPPING = {
    "5": PaymentState.AUTHORIZED,
    "51": PaymentState.AUTHORIZED,
    "9": PaymentState.CAPTURED,
    "91": PaymentState.CAPTURED,
    "6": PaymentState.CANCELLED,
    "61": PaymentState.CANCELLED,
    "7": PaymentState.REFUNDED,
    "71": PaymentState.REFUNDED,
    "8": PaymentState.REFUNDED,
    "81": PaymentState.REFUNDED,
}


class OgoneAdapter(PaymentProvider):
    """Ogone payment provider adapter."""

    display_name = "Ogone"
    documentation_link = "http://anders.burla.dk/umbraco/tea-commerce/using-ogone-with-tea-commerce/"

    supports_retrieval_of_payment_status = True
    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True
    finalize_at_continue_url = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.OGONE

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "PSPID": "",
            "LANGUAGE": "en_US",
            "ACCEPTURL": "",
            "CANCELURL": "",
            "BACKURL": "",
            "PMLIST": "",
            "SHAINPASSPHRASE": "",
            "SHAOUTPASSPHRASE": "",
            "APIUSERID": "",
            "APIPASSWORD": "",
            "TESTMODE": "1",
        }

    def get_method_url(self, method: str, settings: Mapping[str, str]) -> str:
        environment = "test" if settings.get("TESTMODE") == "1" else "prod"
        pages = {
            "GENERATEFORM": "orderstandard_utf8.asp",
            "STATUS": "querydirect.asp",
            "CAPTURE": "maintenancedirect.asp",
            "CANCEL": "maintenancedirect.asp",
            "REFUND": "maintenancedirect.asp",
        }
        page = pages.get(method.upper())
        if page is None:
            return ""
        return f"https://secure.ogone.com/ncol/{environment}/{page}"

    async def generate_html_form(
        self,
        order: Order,
        continue_url: str,
        cancel_url: str,
        callback_url: str,
        communication_url: str,
        settings: Mapping[str, str],
    ) -> PaymentHtmlForm:
        """Build the signed payment page form. Ogone shows no order lines to the shopper."""
        must_contain_key(settings, "SHAINPASSPHRASE", "ogone")
        currency = ensure_iso_currency(order.currency_iso_code, "ogone")

        input_fields = {
            key.upper(): value for key, value in settings.items() if value and key not in SETTINGS_NOT_SENT
        }
        input_fields["ORDERID"] = order.cart_number
        input_fields["AMOUNT"] = str(to_cents(order.total_price))
        input_fields["CURRENCY"] = currency
        input_fields["CN"] = f"{order.payment_information.first_name} {order.payment_information.last_name}"
        input_fields["EMAIL"] = order.payment_information.email
        input_fields["ACCEPTURL"] = continue_url
        input_fields["DECLINEURL"] = cancel_url
        input_fields["EXCEPTIONURL"] = cancel_url
        input_fields["CANCELURL"] = cancel_url
        input_fields["SHASIGN"] = SHA_SIGNATURE.compute(input_fields, settings["SHAINPASSPHRASE"])

        return PaymentHtmlForm(action=self.get_method_url("GENERATEFORM", settings), input_fields=input_fields)

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "ACCEPTURL", "ogone")
        return settings["ACCEPTURL"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "CANCELURL", "ogone")
        return settings["CANCELURL"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """Verify the SHA-OUT signature of the accept redirect."""
        must_contain_key(settings, "SHAOUTPASSPHRASE", "ogone")
        self._log_request(request, settings.get("TESTMODE") == "1")

        query = request.query
        sha_sign = query.get("SHASIGN", "")
        signed_fields = {key: value for key, value in query.items() if key != "SHASIGN"}

        if order.cart_number != query.get("ORDERID") or not SHA_SIGNATURE.verify(
            sha_sign, signed_fields, settings["SHAOUTPASSPHRASE"]
        ):
            logger.warning(f"Ogone({order.cart_number}) - SHASIGN check isn't valid - Ogone SHASIGN: {sha_sign}")
            return CallbackResult()

        try:
            amount = Decimal(query.get("AMOUNT", ""))
        except ArithmeticError:
            logger.warning(f"Ogone({order.cart_number}) - Invalid AMOUNT: {query.get('AMOUNT')}")
            return CallbackResult()

        status = query.get("STATUS")
        return CallbackResult(
            callback_info=CallbackInfo(
                amount,
                query.get("PAYID", ""),
                PaymentState.AUTHORIZED if status in ("5", "51") else PaymentState.CAPTURED,
                query.get("BRAND"),
                query.get("CARDNO"),
            )
        )

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        input_fields = self._prepare_api_request("STATUS", "", order, settings)
        try:
            response = await self._call_api("STATUS", input_fields, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Ogone({order.order_number}) - Get status: {e}")
            return None

        payment_state = STATUS_MAPPING.get(response.get("STATUS", ""), PaymentState.ERROR)
        if payment_state is PaymentState.ERROR:
            self._log_api_error(order, response)
            return None
        return ApiInfo(response.get("PAYID"), payment_state)

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        input_fields = self._prepare_api_request("CAPTURE", "SAS", order, settings)
        return await self._maintenance(order, "CAPTURE", input_fields, ("9", "91"), PaymentState.CAPTURED, settings)

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        """Refund a captured payment. A capture still processing (status 91) can't be refunded yet."""
        status_fields = self._prepare_api_request("STATUS", "", order, settings)
        input_fields = self._prepare_api_request("REFUND", "RFS", order, settings)
        try:
            status_response = await self._call_api("STATUS", status_fields, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Ogone({order.order_number}) - Refund payment: {e}")
            return None

        if status_response.get("STATUS") == "91":
            logger.warning(
                f"Ogone({order.order_number}) - Can't refund a transaction with status 91 - please try again in 5 minutes"
            )
            return None

        return await self._maintenance(
            order, "REFUND", input_fields, ("7", "71", "8", "81"), PaymentState.REFUNDED, settings
        )

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        input_fields = self._prepare_api_request("CANCEL", "DES", order, settings)
        return await self._maintenance(order, "CANCEL", input_fields, ("6", "61"), PaymentState.CANCELLED, settings)

    async def _maintenance(
        self,
        order: Order,
        method: str,
        input_fields: Dict[str, str],
        success_statuses,
        payment_state: PaymentState,
        settings: Mapping[str, str],
    ) -> Optional[ApiInfo]:
        try:
            response = await self._call_api(method, input_fields, settings)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Ogone({order.order_number}) - {method.capitalize()} payment: {e}")
            return None

        if response.get("STATUS") in success_statuses:
            return ApiInfo(response.get("PAYID"), payment_state)
        self._log_api_error(order, response)
        return None

    def _log_api_error(self, order: Order, response: Mapping[str, str]) -> None:
        logger.warning(
            f"Ogone({order.order_number}) - Error making API request - error code: "
            f"{response.get('NCERROR', '')} - {response.get('NCERRORPLUS', '')}"
        )

    def _prepare_api_request(
        self,
        method: str,
        operation: str,
        order: Order,
        settings: Mapping[str, str],
    ) -> Dict[str, str]:
        for key in ("PSPID", "APIUSERID", "APIPASSWORD", "SHAINPASSPHRASE"):
            must_contain_key(settings, key, "ogone")

        input_fields = {
            "PSPID": settings["PSPID"],
            "USERID": settings["APIUSERID"],
            "PSWD": settings["APIPASSWORD"],
            "PAYID": order.transaction_information.transaction_id or "",
        }
        if method != "STATUS":
            input_fields["AMOUNT"] = str(to_cents(order.transaction_information.amount_authorized or Decimal("0")))
            input_fields["OPERATION"] = operation
        input_fields["SHASIGN"] = SHA_SIGNATURE.compute(input_fields, settings["SHAINPASSPHRASE"])
        return input_fields

    async def _call_api(self, method: str, input_fields: Mapping[str, str], settings: Mapping[str, str]) -> Dict[str, str]:
        """Post a DirectLink request and return the attributes of its ``ncresponse`` element."""
        body = await self._post_form(self.get_method_url(method, settings), input_fields, method.lower())
        root = ET.fromstring(body)
        ncresponse = root if root.tag == "ncresponse" else root.find(".//ncresponse")
        if ncresponse is None:
            raise ValueError("Response holds no ncresponse element")
        return dict(ncresponse.attrib)
