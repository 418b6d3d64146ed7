"""
WorldPay Payment Provider Adapter

Provides integration with WorldPay Business Gateway (wcc/purchase). The purchase
form carries an MD5 signature over ``amount:currency:instId:cartId``; the payment
response is authenticated with the callback password.
"""

import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional

from payment_providers.models.order import Order, PaymentState

from .base import (
    CallbackInfo,
    CallbackRequest,
    CallbackResult,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import ensure_iso_currency, format_amount, must_contain_key, must_not_be_empty
from .signing import DigestAlgorithm, DigestRecipe, SecretPlacement, digests_equal

logger = logging.getLogger(__name__)

LIVE_FORM_URL = "https://secure.worldpay.com/wcc/purchase"
TEST_FORM_URL = "https://secure-test.worldpay.com/wcc/purchase"

SIGNATURE_FIELDS = "amount:currency:instId:cartId"

# md5(secret:amount:currency:instId:cartId), the secret rides along as a field
PURCHASE_SIGNATURE = DigestRecipe(
    algorithm=DigestAlgorithm.MD5,
    fields=("md5Secret",) + tuple(SIGNATURE_FIELDS.split(":")),
    separator=":",
    secret_placement=SecretPlacement.NONE,
)

SETTINGS_NOT_SENT = (
    "md5Secret",
    "callbackPW",
    "paymentResponsePassword",
    "streetAddressPropertyAlias",
    "cityPropertyAlias",
    "zipCodePropertyAlias",
)


class WorldPayAdapter(PaymentProvider):
    """WorldPay payment provider adapter."""

    display_name = "WorldPay"
    documentation_link = "http://anders.burla.dk/umbraco/tea-commerce/using-worldpay-with-tea-commerce/"

    allows_callback_without_order_id = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.WORLDPAY

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "instId": "",
            "lang": "en",
            "successURL": "",
            "cancelURL": "",
            "authMode": "A",
            "md5Secret": "",
            "paymentResponsePassword": "",
            "streetAddressPropertyAlias": "streetAddress",
            "cityPropertyAlias": "city",
            "zipCodePropertyAlias": "zipCode",
            "testMode": "0",
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
        for key in ("md5Secret", "instId", "streetAddressPropertyAlias", "cityPropertyAlias", "zipCodePropertyAlias"):
            must_contain_key(settings, key, "worldpay")
        street_address = must_not_be_empty(
            order.get_property(settings["streetAddressPropertyAlias"]), "street address", "worldpay"
        )
        city = must_not_be_empty(order.get_property(settings["cityPropertyAlias"]), "city", "worldpay")
        zip_code = must_not_be_empty(order.get_property(settings["zipCodePropertyAlias"]), "zip code", "worldpay")
        currency = ensure_iso_currency(order.currency_iso_code, "worldpay")

        input_fields = {key: value for key, value in settings.items() if key not in SETTINGS_NOT_SENT}
        input_fields["cartId"] = order.cart_number
        input_fields["currency"] = currency
        input_fields["amount"] = format_amount(order.total_price)
        input_fields["successURL"] = continue_url
        input_fields["cancelURL"] = cancel_url
        input_fields["name"] = f"{order.payment_information.first_name} {order.payment_information.last_name}"
        input_fields["email"] = order.payment_information.email
        input_fields["country"] = order.payment_information.country_code or ""
        if order.payment_information.country_region_code:
            input_fields["region"] = order.payment_information.country_region_code
        input_fields["address1"] = street_address
        input_fields["town"] = city
        input_fields["postcode"] = zip_code
        input_fields["noLanguageMenu"] = ""
        input_fields["hideCurrency"] = ""
        input_fields["fixContact"] = ""
        input_fields["hideContact"] = ""
        input_fields["signatureFields"] = SIGNATURE_FIELDS
        input_fields["signature"] = PURCHASE_SIGNATURE.compute({"md5Secret": settings["md5Secret"], **input_fields})

        action = TEST_FORM_URL if settings.get("testMode") == "1" else LIVE_FORM_URL
        return PaymentHtmlForm(action=action, input_fields=input_fields)

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "successURL", "worldpay")
        return settings["successURL"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "cancelURL", "worldpay")
        return settings["cancelURL"]

    def _password_matches(self, request: CallbackRequest, settings: Mapping[str, str]) -> bool:
        return digests_equal(settings["paymentResponsePassword"], request.form.get("callbackPW"))

    async def get_cart_number(self, request: CallbackRequest, settings: Mapping[str, str]) -> Optional[str]:
        """The payment response names the cart in ``cartId``, trusted once the callback password matches."""
        must_contain_key(settings, "paymentResponsePassword", "worldpay")
        self._log_request(request, settings.get("testMode") == "1")

        if not self._password_matches(request, settings):
            logger.warning("WorldPay - Payment response password check failed")
            return None
        return request.form.get("cartId") or None

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Map a payment response with ``transStatus=Y``.

        ``authMode`` E (pre-authorization) authorizes, anything else captures.
        """
        must_contain_key(settings, "paymentResponsePassword", "worldpay")
        self._log_request(request, settings.get("testMode") == "1")

        if not self._password_matches(request, settings):
            logger.warning(f"WorldPay({order.cart_number}) - Payment response password check failed")
            return CallbackResult()

        form = request.form
        if form.get("transStatus") != "Y":
            logger.info(f"WorldPay({order.cart_number}) - Cancelled transaction")
            return CallbackResult()

        try:
            amount = Decimal(form.get("authAmount", ""))
        except ArithmeticError:
            logger.warning(f"WorldPay({order.cart_number}) - Invalid authAmount: {form.get('authAmount')}")
            return CallbackResult()

        return CallbackResult(
            callback_info=CallbackInfo(
                amount,
                form.get("transId", ""),
                PaymentState.AUTHORIZED if form.get("authMode") == "E" else PaymentState.CAPTURED,
                form.get("cardtype"),
            )
        )
