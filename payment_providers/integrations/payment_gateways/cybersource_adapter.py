"""
CyberSource Payment Provider Adapter

Secure Acceptance silent order post. The host renders its own card form, asks
the communication URL (``?sign``) to sign the fields and posts them straight to
CyberSource. The receipt comes back to the callback URL.
"""

import html
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Mapping, Optional

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
from .helpers import ensure_iso_currency, format_amount, must_contain_key
from .signing import DigestAlgorithm, DigestEncoding, compute_digest, digests_equal

logger = logging.getLogger(__name__)

TEST_TRANSACTION_ENDPOINT = "https://testsecureacceptance.cybersource.com/silent/pay"
LIVE_TRANSACTION_ENDPOINT = "https://secureacceptance.cybersource.com/silent/pay"

SIGNATURE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

NEGATIVE_DECISIONS = ("ERROR", "DECLINE", "CANCEL", "REVIEW")


def build_data_to_sign(fields: Mapping[str, str], signature_timestamp: Optional[str] = None) -> str:
    """
    ``name=value`` pairs of every field listed in ``signed_field_names``, comma joined.

    ``signed_date_time`` is replaced by signature_timestamp when one is given.

    Raises:
        KeyError: If signed_field_names or a listed field is missing
    """
    parts = []
    for name in fields["signed_field_names"].split(","):
        if name == "signed_date_time" and signature_timestamp is not None:
            value = signature_timestamp
        else:
            value = fields[name]
        parts.append(f"{name}={value}")
    return ",".join(parts)


def sign(fields: Mapping[str, str], secret_key: str, signature_timestamp: Optional[str] = None) -> str:
    """Base64 HMAC-SHA256 of the signed fields."""
    return compute_digest(
        build_data_to_sign(fields, signature_timestamp),
        DigestAlgorithm.HMAC_SHA256,
        secret_key,
        DigestEncoding.BASE64,
    )


class CyberSourceAdapter(PaymentProvider):
    """CyberSource Secure Acceptance payment provider adapter."""

    display_name = "CyberSource"

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.CYBERSOURCE

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "form_url": "",
            "continue_url": "",
            "cancel_url": "",
            "profile_id": "",
            "access_key": "",
            "secret_key": "",
            "mode": "test",
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
        Send the customer to the host's own card form (``form_url``) with what
        it needs to post to CyberSource.
        """
        for key in ("form_url", "profile_id", "access_key", "mode"):
            must_contain_key(settings, key, "cybersource")
        currency = ensure_iso_currency(order.currency_iso_code, "cybersource")

        input_fields = {
            "form_url": LIVE_TRANSACTION_ENDPOINT if settings["mode"] == "live" else TEST_TRANSACTION_ENDPOINT,
            "callback_url": callback_url,
            "communication_url": communication_url,
            "continue_url": continue_url,
            "cancel_url": cancel_url,
            "profile_id": settings["profile_id"],
            "access_key": settings["access_key"],
            "cart_number": order.cart_number,
            "amount": format_amount(order.total_price),
            "currency": currency,
        }
        return PaymentHtmlForm(action=settings["form_url"], input_fields=input_fields)

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "continue_url", "cybersource")
        return settings["continue_url"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "cancel_url", "cybersource")
        return settings["cancel_url"]

    async def process_request(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResponse:
        """
        Sign the posted fields for the browser.

        Answers ``{"error": false, "signature_timestamp": ..., "signature": ...}``
        or ``{"error": true, "error_message": ...}``.
        """
        must_contain_key(settings, "secret_key", "cybersource")
        self._log_request(request, settings.get("mode") != "live")

        signature_timestamp = datetime.now(timezone.utc).strftime(SIGNATURE_TIMESTAMP_FORMAT)
        try:
            signature = sign(request.form, settings["secret_key"], signature_timestamp)
        except KeyError as e:
            logger.warning(f"CyberSource({order.cart_number}) - Sign request: missing field {e}")
            return CallbackResponse.json_body({"error": True, "error_message": f"Missing field {e}"})

        return CallbackResponse.json_body({
            "error": False,
            "signature_timestamp": signature_timestamp,
            "signature": signature,
        })

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Verify the receipt post.

        A verified, accepted receipt captures the payment and redirects to the
        continue URL. Anything else re-posts the received fields to the host form
        with an ``error_message`` so the customer can try again.
        """
        must_contain_key(settings, "secret_key", "cybersource")
        self._log_request(request, settings.get("mode") != "live")

        # Signature requests can also arrive at the callback URL
        if "sign" in request.query:
            return CallbackResult(response=await self.process_request(order, request, settings))

        form = request.form
        error_message = None
        try:
            calculated = sign(form, settings["secret_key"], form.get("signed_date_time", ""))
        except KeyError:
            calculated = ""
        if not digests_equal(calculated, form.get("signature")):
            error_message = "Payment signature cannot be verified."
            logger.warning(f"CyberSource({order.cart_number}) - Signature security check failed")
        elif form.get("decision") in NEGATIVE_DECISIONS:
            error_message = form.get("message", "")
            logger.warning(
                f"CyberSource({order.cart_number}) - Payment not accepted - decision: {form.get('decision')}"
            )

        if error_message is not None:
            return CallbackResult(response=CallbackResponse.html(self._retry_form(form, error_message, settings)))

        try:
            amount = Decimal(form.get("auth_amount", ""))
        except ArithmeticError:
            logger.warning(f"CyberSource({order.cart_number}) - Invalid auth_amount: {form.get('auth_amount')}")
            return CallbackResult()

        return CallbackResult(
            callback_info=CallbackInfo(amount, form.get("req_transaction_uuid", ""), PaymentState.CAPTURED),
            response=CallbackResponse.redirect(self.get_continue_url(order, settings)),
        )

    def _retry_form(self, fields: Mapping[str, str], error_message: str, settings: Mapping[str, str]) -> str:
        inputs = [f'<input type="hidden" name="error_message" value="{html.escape(error_message)}" />']
        for key, value in fields.items():
            inputs.append(f'<input type="hidden" name="{html.escape(key)}" value="{html.escape(value)}" />')
        return (
            f'<form method="post" action="{html.escape(settings.get("form_url", ""))}">'
            + "".join(inputs)
            + "</form>"
            + '<script type="text/javascript">document.forms[0].submit();</script>'
        )
