"""
OnPay Payment Provider Adapter

Provides integration with the OnPay payment window (v3). Form posts and
callbacks are signed with an HMAC-SHA1 over the ``onpay_*`` fields.
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
from .helpers import currency_numeric_code, must_contain_key, to_cents
from .signing import DigestAlgorithm, DigestRecipe, SecretPlacement, digests_equal

logger = logging.getLogger(__name__)

WINDOW_URL = "https://onpay.io/window/v3/"
FIELD_PREFIX = "onpay_"
HMAC_FIELD = "onpay_hmac_sha1"

# hmac_sha1(secret, "key=value&..." over the onpay_ fields sorted by key, lower cased)
WINDOW_SIGNATURE = DigestRecipe(
    algorithm=DigestAlgorithm.HMAC_SHA1,
    pair_format="{key}={value}",
    separator="&",
    secret_placement=SecretPlacement.KEY,
)


def onpay_hmac(fields: Mapping[str, str], secret: str) -> str:
    signed = {
        key.lower(): (value or "").lower()
        for key, value in fields.items()
        if key.startswith(FIELD_PREFIX) and key != HMAC_FIELD
    }
    return WINDOW_SIGNATURE.compute(signed, secret)


class OnPayAdapter(PaymentProvider):
    """OnPay payment provider adapter."""

    display_name = "OnPay"

    allows_callback_without_order_id = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.ONPAY

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "gatewayid": "",
            "secret": "",
            "accepturl": "",
            "declineurl": "",
            "paymenttype": "payment",
            "paymentmethod": "card",
            "lang": "en",
            "design": "",
            "testmode": "",
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
        must_contain_key(settings, "gatewayid", "onpay")
        must_contain_key(settings, "secret", "onpay")

        input_fields = {
            "onpay_gatewayid": settings["gatewayid"],
            "onpay_currency": currency_numeric_code(order.currency_iso_code, "onpay"),
            "onpay_amount": str(to_cents(order.total_price)),
            "onpay_reference": order.cart_number,
            "onpay_language": settings.get("lang") or "en",
            "onpay_method": settings.get("paymentmethod") or "card",
            "onpay_type": settings.get("paymenttype") or "payment",
            "onpay_3dsecure": "forced",
            "onpay_accepturl": continue_url,
            "onpay_declineurl": cancel_url,
            "onpay_callbackurl": callback_url,
        }
        if settings.get("design"):
            input_fields["onpay_design"] = settings["design"]
        if settings.get("testmode") == "1":
            input_fields["onpay_testmode"] = "1"
        input_fields[HMAC_FIELD] = onpay_hmac(input_fields, settings["secret"])

        return PaymentHtmlForm(action=WINDOW_URL, input_fields=input_fields)

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "accepturl", "onpay")
        return settings["accepturl"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "declineurl", "onpay")
        return settings["declineurl"]

    def _signature_matches(self, request: CallbackRequest, settings: Mapping[str, str]) -> bool:
        return digests_equal(
            onpay_hmac(request.query, settings["secret"]), request.query.get(HMAC_FIELD), case_sensitive=False
        )

    async def get_cart_number(self, request: CallbackRequest, settings: Mapping[str, str]) -> Optional[str]:
        """``onpay_reference`` once the callback signature matches."""
        must_contain_key(settings, "secret", "onpay")
        if not self._signature_matches(request, settings):
            logger.warning("OnPay - Security check failed")
            return None
        return request.query.get("onpay_reference") or None

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        must_contain_key(settings, "secret", "onpay")
        self._log_request(request, settings.get("testmode") == "1")

        query = request.query
        if query.get("onpay_reference") != order.cart_number or not self._signature_matches(request, settings):
            logger.warning(f"OnPay({order.cart_number}) - Security check failed")
            return CallbackResult()

        try:
            amount = Decimal(query.get("onpay_amount", "")) / 100
        except ArithmeticError:
            logger.warning(f"OnPay({order.cart_number}) - Invalid onpay_amount: {query.get('onpay_amount')}")
            return CallbackResult()

        return CallbackResult(
            callback_info=CallbackInfo(
                amount,
                query.get("onpay_uuid", ""),
                PaymentState.CAPTURED,
                query.get("onpay_method"),
                query.get("onpay_cardmask"),
            )
        )
