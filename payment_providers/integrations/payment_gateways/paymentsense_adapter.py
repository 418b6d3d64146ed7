"""
PaymentSense Payment Provider Adapter

Hosted payment form with server result delivery. Form posts and server results
are protected by a SHA-1 ``HashDigest`` over an ordered ``Key=Value`` list that
includes the pre-shared key and the gateway password.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Mapping

from payment_providers.models.order import Order, PaymentState

from .base import (
    CallbackInfo,
    CallbackRequest,
    CallbackResponse,
    CallbackResult,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import country_numeric_code, currency_numeric_code, ensure_max_length, must_contain_key, to_cents
from .signing import DigestAlgorithm, DigestRecipe, SecretPlacement, digests_equal

logger = logging.getLogger(__name__)

FORM_URL = "https://mms.paymentsensegateway.com/Pages/PublicPages/PaymentForm.aspx"
CART_NUMBER_MAX_LENGTH = 50

SETTINGS_NOT_SENT = (
    "CancelURL",
    "streetAddressPropertyAlias",
    "cityPropertyAlias",
    "zipCodePropertyAlias",
    "PreSharedKey",
    "Password",
    "Testing",
)

# (key, always hashed); optional keys are hashed only when the form carries them
FORM_HASH_KEYS = (
    ("PreSharedKey", True),
    ("MerchantID", True),
    ("Password", True),
    ("Amount", True),
    ("CurrencyCode", True),
    ("EchoAVSCheckResult", False),
    ("EchoCV2CheckResult", False),
    ("EchoThreeDSecureAuthenticationCheckResult", False),
    ("EchoCardType", False),
    ("AVSOverridePolicy", False),
    ("CV2OverridePolicy", False),
    ("ThreeDSecureOverridePolicy", False),
    ("OrderID", True),
    ("TransactionType", True),
    ("TransactionDateTime", True),
    ("CallbackURL", True),
    ("OrderDescription", True),
    ("CustomerName", True),
    ("Address1", True),
    ("Address2", True),
    ("Address3", True),
    ("Address4", True),
    ("City", True),
    ("State", True),
    ("PostCode", True),
    ("CountryCode", True),
    ("EmailAddress", False),
    ("PhoneNumber", False),
    ("EmailAddressEditable", False),
    ("PhoneNumberEditable", False),
    ("CV2Mandatory", False),
    ("Address1Mandatory", False),
    ("CityMandatory", False),
    ("PostCodeMandatory", False),
    ("StateMandatory", False),
    ("CountryMandatory", False),
    ("ResultDeliveryMethod", True),
    ("ServerResultURL", False),
    ("PaymentFormDisplaysResult", False),
    ("ServerResultURLCookieVariables", False),
    ("ServerResultURLFormVariables", False),
    ("ServerResultURLQueryStringVariables", False),
)

# Optional keys of a server result are hashed only when they hold a value
RESULT_HASH_KEYS = (
    ("PreSharedKey", True),
    ("MerchantID", True),
    ("Password", True),
    ("StatusCode", True),
    ("Message", True),
    ("PreviousStatusCode", True),
    ("PreviousMessage", True),
    ("CrossReference", True),
    ("AddressNumericCheckResult", False),
    ("PostCodeCheckResult", False),
    ("CV2CheckResult", False),
    ("ThreeDSecureCheckResult", False),
    ("CardType", False),
    ("CardClass", False),
    ("CardIssuer", False),
    ("CardIssuerCountryCode", False),
    ("Amount", True),
    ("CurrencyCode", True),
    ("OrderID", True),
    ("TransactionType", True),
    ("TransactionDateTime", True),
    ("OrderDescription", True),
    ("CustomerName", True),
    ("Address1", True),
    ("Address2", True),
    ("Address3", True),
    ("Address4", True),
    ("City", True),
    ("State", True),
    ("PostCode", True),
    ("CountryCode", True),
    ("EmailAddress", False),
    ("PhoneNumber", False),
)


def hash_digest(keys: List[str], settings: Mapping[str, str], fields: Mapping[str, str]) -> str:
    """
    SHA-1 hex of ``Key=Value`` pairs joined by "&".

    Values come from fields, then from settings, else empty.
    """
    must_contain_key(settings, "Password", "paymentsense")
    must_contain_key(settings, "PreSharedKey", "paymentsense")
    values = {key: fields[key] if key in fields else settings.get(key, "") for key in keys}
    recipe = DigestRecipe(
        algorithm=DigestAlgorithm.SHA1,
        fields=tuple(keys),
        pair_format="{key}={value}",
        separator="&",
        secret_placement=SecretPlacement.NONE,
    )
    return recipe.compute(values)


def transaction_date_time(now: datetime) -> str:
    """``2024-03-01 14:05:09 +01:00``"""
    return now.strftime("%Y-%m-%d %H:%M:%S ") + now.isoformat()[-6:]


class PaymentSenseAdapter(PaymentProvider):
    """PaymentSense hosted payment form adapter."""

    display_name = "PaymentSense"

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.PAYMENTSENSE

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "MerchantID": "",
            "CallbackURL": "",
            "CancelURL": "",
            "TransactionType": "PREAUTH",
            "streetAddressPropertyAlias": "streetAddress",
            "cityPropertyAlias": "city",
            "zipCodePropertyAlias": "zipCode",
            "PreSharedKey": "",
            "Password": "",
            "Testing": "1",
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
        must_contain_key(settings, "MerchantID", "paymentsense")
        must_contain_key(settings, "TransactionType", "paymentsense")
        ensure_max_length(order.cart_number, CART_NUMBER_MAX_LENGTH, "paymentsense")
        payment_information = order.payment_information

        input_fields = {key: value for key, value in settings.items() if key not in SETTINGS_NOT_SENT}
        input_fields["OrderID"] = order.cart_number
        input_fields["CurrencyCode"] = currency_numeric_code(order.currency_iso_code, "paymentsense")
        input_fields["Amount"] = str(to_cents(order.total_price))
        input_fields["CustomerName"] = f"{payment_information.first_name} {payment_information.last_name}"
        if "streetAddressPropertyAlias" in settings:
            input_fields["Address1"] = order.get_property(settings["streetAddressPropertyAlias"])
        if "cityPropertyAlias" in settings:
            input_fields["City"] = order.get_property(settings["cityPropertyAlias"])
        if payment_information.country_region_name:
            input_fields["State"] = payment_information.country_region_name
        if "zipCodePropertyAlias" in settings:
            input_fields["PostCode"] = order.get_property(settings["zipCodePropertyAlias"])
        input_fields["CountryCode"] = country_numeric_code(payment_information.country_code, "paymentsense")
        input_fields["EmailAddress"] = payment_information.email
        input_fields["CallbackURL"] = callback_url
        input_fields["ServerResultURL"] = callback_url
        input_fields["ResultDeliveryMethod"] = "SERVER"
        input_fields["PaymentFormDisplaysResult"] = "False"
        input_fields["TransactionDateTime"] = transaction_date_time(datetime.now().astimezone())
        input_fields["CV2Mandatory"] = "True"
        input_fields["Address1Mandatory"] = "False"
        input_fields["CityMandatory"] = "False"
        input_fields["PostCodeMandatory"] = "False"
        input_fields["StateMandatory"] = "False"
        input_fields["CountryMandatory"] = "False"

        keys = [key for key, always in FORM_HASH_KEYS if always or key in input_fields]
        input_fields["HashDigest"] = hash_digest(keys, settings, input_fields)

        return PaymentHtmlForm(action=FORM_URL, input_fields=input_fields)

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "CallbackURL", "paymentsense")
        return settings["CallbackURL"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "CancelURL", "paymentsense")
        return settings["CancelURL"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Handle both PaymentSense calls to the callback URL.

        The server result (carrying ``StatusCode``) is answered with
        ``StatusCode=...`` text. The customer's browser arrives afterwards without
        a status and is redirected to the continue URL once the order is
        finalized, otherwise to the cancel URL.
        """
        form = request.form
        if not form.get("StatusCode"):
            if order.is_finalized:
                return CallbackResult(response=CallbackResponse.redirect(self.get_continue_url(order, settings)))
            return CallbackResult(response=CallbackResponse.redirect(self.get_cancel_url(order, settings)))

        self._log_request(request, settings.get("Testing") == "1")

        keys = [key for key, always in RESULT_HASH_KEYS if always or form.get(key)]
        calculated = hash_digest(keys, settings, form)
        if form.get("OrderID") != order.cart_number or not digests_equal(calculated, form.get("HashDigest")):
            message = f"PaymentSense({order.cart_number}) - Digest check failed"
            logger.warning(message)
            return CallbackResult(response=CallbackResponse(body=f"StatusCode=30&Message={message}"))

        status_code = form["StatusCode"]
        # 20 is a duplicate of an earlier transaction, successful when that one was
        if status_code != "0" and not (status_code == "20" and form.get("PreviousStatusCode") == "0"):
            return CallbackResult(
                response=CallbackResponse(body=f"StatusCode={status_code}&Message={form.get('Message', '')}")
            )

        try:
            amount = Decimal(form.get("Amount", "")) / 100
        except ArithmeticError:
            message = f"PaymentSense({order.cart_number}) - Process callback failed"
            logger.warning(f"{message} - invalid Amount: {form.get('Amount')}")
            return CallbackResult(response=CallbackResponse(body=f"StatusCode=30&Message={message}"))

        callback_info = CallbackInfo(
            amount,
            form.get("CrossReference", ""),
            PaymentState.CAPTURED if form.get("TransactionType") == "SALE" else PaymentState.AUTHORIZED,
        )
        return CallbackResult(callback_info=callback_info, response=CallbackResponse(body="StatusCode=0"))
