"""
Stripe Payment Provider Adapter

Provides integration with Stripe Payment Intents for inline card payments:
browser side confirmation through a payment intent created on request, and
webhook driven order finalization.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import stripe
from stripe import SignatureVerificationError, StripeClient, StripeError

from payment_providers.models.order import Order, PaymentState

from .base import (
    ApiInfo,
    CallbackRequest,
    CallbackResponse,
    CallbackResult,
    PaymentError,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import must_contain_key, to_cents

logger = logging.getLogger(__name__)

STRIPE_EVENT_ITEM = "stripe_event"

# Form fields filled from the order property named by "<field>_property_alias"
BILLING_FIELDS = (
    "billing_address_line1",
    "billing_address_line2",
    "billing_city",
    "billing_state",
    "billing_zip_code",
)


def stripe_value(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a Stripe object, a plain mapping or None."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def object_id(obj: Any) -> Optional[str]:
    """Id of an expandable Stripe field, which is either an id string or an object."""
    if obj is None or isinstance(obj, str):
        return obj
    return stripe_value(obj, "id")


def cents_to_amount(cents: Optional[int]) -> Decimal:
    return Decimal(cents or 0) / 100


class BaseStripeAdapter(PaymentProvider):
    """Behaviour shared by the Stripe providers: inline form, keys and webhook events."""

    documentation_link = "https://stripe.com/docs"
    finalize_at_continue_url = True
    allows_callback_without_order_id = True

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "form_url": "",
            "continue_url": "",
            "cancel_url": "",
            "billing_address_line1_property_alias": "streetAddress",
            "billing_address_line2_property_alias": "",
            "billing_city_property_alias": "city",
            "billing_state_property_alias": "",
            "billing_zip_code_property_alias": "zipCode",
            "test_secret_key": "",
            "test_public_key": "",
            "test_webhook_secret": "",
            "live_secret_key": "",
            "live_public_key": "",
            "live_webhook_secret": "",
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
        Build the inline payment form.

        Settings that are not part of the provider's own settings are passed
        through as form fields, so a shop can hand extra values to its payment page.
        """
        must_contain_key(settings, "form_url", "stripe")
        must_contain_key(settings, "mode", "stripe")
        must_contain_key(settings, self._key_name(settings, "public_key"), "stripe")

        defaults = self.default_settings
        html_form = PaymentHtmlForm(action=settings["form_url"])
        html_form.input_fields = {key: value for key, value in settings.items() if key not in defaults}
        html_form.input_fields["api_key"] = settings[self._key_name(settings, "public_key")]
        html_form.input_fields["continue_url"] = continue_url
        html_form.input_fields["cancel_url"] = cancel_url

        for field_name in BILLING_FIELDS:
            alias = (settings.get(f"{field_name}_property_alias") or "").strip()
            if alias:
                html_form.input_fields[field_name] = order.get_property(alias)

        if order.payment_information.country_code:
            html_form.input_fields["billing_country"] = order.payment_information.country_code.lower()

        return html_form

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "continue_url", "stripe")
        return settings["continue_url"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "cancel_url", "stripe")
        return settings["cancel_url"]

    def _key_name(self, settings: Mapping[str, str], suffix: str) -> str:
        return f"{settings.get('mode', '')}_{suffix}"

    def _client(self, settings: Mapping[str, str]) -> StripeClient:
        return StripeClient(settings[self._key_name(settings, "secret_key")])

    def construct_webhook_event(self, payload: bytes, signature: Optional[str], webhook_secret: str) -> Any:
        """
        Verify and parse a Stripe webhook payload.

        Raises:
            PaymentError: If the signature is invalid or the payload can not be parsed
        """
        if not webhook_secret:
            raise PaymentError(
                message="Webhook secret not configured",
                error_code="webhook_secret_missing",
                provider=self.provider_type.value,
            )

        try:
            return stripe.Webhook.construct_event(payload, signature or "", webhook_secret)
        except SignatureVerificationError as e:
            logger.error(f"Stripe webhook signature verification failed: {e}")
            raise PaymentError(
                message="Invalid webhook signature",
                error_code="webhook_signature_invalid",
                provider=self.provider_type.value,
                gateway_response={"error": str(e)},
            )
        except ValueError as e:
            logger.error(f"Stripe webhook payload could not be parsed: {e}")
            raise PaymentError(
                message="Unable to parse incoming event",
                error_code="webhook_payload_invalid",
                provider=self.provider_type.value,
            )

    def get_webhook_event(self, request: CallbackRequest, settings: Mapping[str, str]) -> Optional[Any]:
        """Return the verified webhook event of the request, parsing it once per request."""
        if STRIPE_EVENT_ITEM in request.items:
            return request.items[STRIPE_EVENT_ITEM]

        event = None
        try:
            event = self.construct_webhook_event(
                request.body,
                request.header("Stripe-Signature"),
                settings.get(self._key_name(settings, "webhook_secret"), ""),
            )
        except PaymentError as e:
            logger.warning(f"{self.display_name} - webhook event rejected: {e.error_message}")

        request.items[STRIPE_EVENT_ITEM] = event
        return event


class StripeAdapter(BaseStripeAdapter):
    """Stripe Payment Intents provider adapter."""

    display_name = "Stripe"

    supports_retrieval_of_payment_status = True
    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True
    finalize_at_continue_url = False

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.STRIPE

    @property
    def default_settings(self) -> Dict[str, str]:
        settings = super().default_settings
        settings["capture"] = "true"
        settings["send_stripe_receipt"] = "false"
        return settings

    async def get_cart_number(self, request: CallbackRequest, settings: Mapping[str, str]) -> Optional[str]:
        must_contain_key(settings, "mode", "stripe")
        must_contain_key(settings, self._key_name(settings, "secret_key"), "stripe")
        must_contain_key(settings, self._key_name(settings, "webhook_secret"), "stripe")
        self._log_request(request, settings.get("mode") == "test")

        event = self.get_webhook_event(request, settings)
        if event is None:
            return None

        event_type = stripe_value(event, "type", "")
        event_object = stripe_value(stripe_value(event, "data"), "object")
        try:
            if event_type.startswith("payment_intent."):
                return stripe_value(stripe_value(event_object, "metadata"), "cartNumber")

            if event_type.startswith("charge."):
                payment_intent = stripe_value(event_object, "payment_intent")
                if isinstance(payment_intent, str) and payment_intent:
                    payment_intent = await self._client(settings).v1.payment_intents.retrieve_async(payment_intent)

                cart_number = stripe_value(stripe_value(payment_intent, "metadata"), "cartNumber")
                return cart_number or stripe_value(stripe_value(event_object, "metadata"), "cartNumber")
        except StripeError as e:
            logger.error(f"Stripe - GetCartNumber: {e}")

        return None

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        # Finalization happens in process_request, which sees both the capture
        # request and the webhook events.
        return CallbackResult()

    async def process_request(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResponse:
        """Create a payment intent (``?action=capture``) or apply a webhook event."""
        must_contain_key(settings, "mode", "stripe")
        must_contain_key(settings, self._key_name(settings, "secret_key"), "stripe")
        self._log_request(request, settings.get("mode") == "test")

        if request.query.get("action") == "capture":
            return await self._process_capture_request(order, settings)

        try:
            await self._process_webhook_request(order, request, settings)
        except StripeError as e:
            logger.error(f"Stripe({order.cart_number}) - ProcessRequest: {e}")
        return CallbackResponse()

    async def _process_capture_request(self, order: Order, settings: Mapping[str, str]) -> CallbackResponse:
        capture = settings.get("capture", "").strip().lower() == "true"
        params: Dict[str, Any] = {
            "amount": to_cents(order.total_price),
            "currency": order.currency_iso_code.lower(),
            "description": f"{order.cart_number} - {order.payment_information.email}",
            "metadata": {
                "orderId": str(order.id),
                "cartNumber": order.cart_number,
            },
            "capture_method": "automatic" if capture else "manual",
        }
        if settings.get("send_stripe_receipt") == "true":
            params["receipt_email"] = order.payment_information.email

        try:
            intent = await self._client(settings).v1.payment_intents.create_async(params=params)
        except StripeError as e:
            logger.error(f"Stripe({order.cart_number}) - ProcessCaptureRequest: {e}")
            return CallbackResponse.json_body({"error": e.user_message or str(e)})

        order.set_property("stripePaymentIntentId", intent.id)
        order.transaction_information.payment_state = PaymentState.INITIALIZED
        order.save()

        return CallbackResponse.json_body({"payment_intent_client_secret": intent.client_secret})

    async def _process_webhook_request(self, order: Order, request: CallbackRequest, settings: Mapping[str, str]) -> None:
        event = self.get_webhook_event(request, settings)
        if event is None:
            logger.warning(f"Stripe({order.cart_number}) - webhook request without a valid event")
            return

        event_type = stripe_value(event, "type", "")
        event_object = stripe_value(stripe_value(event, "data"), "object")

        # amount_capturable_updated fires when funds are authorized for manual capture
        if event_type == "payment_intent.amount_capturable_updated":
            self.finalize_or_update_order(order, event_object)
        elif event_type.startswith("charge."):
            payment_intent_id = object_id(stripe_value(event_object, "payment_intent"))
            if payment_intent_id:
                payment_intent = await self._client(settings).v1.payment_intents.retrieve_async(
                    payment_intent_id, params={"expand": ["latest_charge"]}
                )
                self.finalize_or_update_order(order, payment_intent)

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "mode", "stripe")
        must_contain_key(settings, self._key_name(settings, "secret_key"), "stripe")

        client = self._client(settings)
        try:
            payment_intent_id = order.get_property("stripePaymentIntentId").strip()
            if payment_intent_id:
                payment_intent = await client.v1.payment_intents.retrieve_async(
                    payment_intent_id, params={"expand": ["latest_charge"]}
                )
                return ApiInfo(self.get_transaction_id(payment_intent), self.get_payment_intent_state(payment_intent))

            if order.transaction_information.transaction_id:
                charge = await client.v1.charges.retrieve_async(order.transaction_information.transaction_id)
                return ApiInfo(object_id(charge), self.get_charge_state(charge))
        except StripeError as e:
            logger.error(f"Stripe({order.order_number}) - GetStatus: {e}")

        return None

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "mode", "stripe")
        must_contain_key(settings, self._key_name(settings, "secret_key"), "stripe")

        # Only a payment intent can be captured
        payment_intent_id = order.get_property("stripePaymentIntentId").strip()
        if not payment_intent_id:
            return None

        try:
            payment_intent = await self._client(settings).v1.payment_intents.capture_async(
                payment_intent_id,
                params={
                    "amount_to_capture": to_cents(order.transaction_information.amount_authorized),
                    "expand": ["latest_charge"],
                },
            )
            return ApiInfo(self.get_transaction_id(payment_intent), self.get_payment_intent_state(payment_intent))
        except StripeError as e:
            logger.error(f"Stripe({order.order_number}) - CapturePayment: {e}")
            return None

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "mode", "stripe")
        must_contain_key(settings, self._key_name(settings, "secret_key"), "stripe")

        # Only a captured charge can be refunded
        charge_id = order.transaction_information.transaction_id
        if not charge_id:
            return None

        client = self._client(settings)
        try:
            refund = await client.v1.refunds.create_async(params={"charge": charge_id, "expand": ["charge"]})
            charge = stripe_value(refund, "charge")
            if charge is None or isinstance(charge, str):
                charge = await client.v1.charges.retrieve_async(charge_id)
            return ApiInfo(object_id(charge), self.get_charge_state(charge))
        except StripeError as e:
            logger.error(f"Stripe({order.order_number}) - RefundPayment: {e}")
            return None

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "mode", "stripe")
        must_contain_key(settings, self._key_name(settings, "secret_key"), "stripe")

        # With a charge it is too late to cancel, so it gets refunded instead
        if order.transaction_information.transaction_id:
            return await self.refund_payment(order, settings)

        payment_intent_id = order.get_property("stripePaymentIntentId").strip()
        if not payment_intent_id:
            return None

        try:
            payment_intent = await self._client(settings).v1.payment_intents.cancel_async(
                payment_intent_id, params={"expand": ["latest_charge"]}
            )
            return ApiInfo(self.get_transaction_id(payment_intent), self.get_payment_intent_state(payment_intent))
        except StripeError as e:
            logger.error(f"Stripe({order.order_number}) - CancelPayment: {e}")
            return None

    def get_transaction_id(self, payment_intent: Any) -> Optional[str]:
        return object_id(stripe_value(payment_intent, "latest_charge"))

    def get_payment_intent_state(self, payment_intent: Any) -> PaymentState:
        """Map a payment intent status to a payment state."""
        status = stripe_value(payment_intent, "status")
        if status == "canceled":
            return PaymentState.CANCELLED
        if status == "requires_capture":
            return PaymentState.AUTHORIZED
        if status == "succeeded":
            latest_charge = stripe_value(payment_intent, "latest_charge")
            if latest_charge is not None and not isinstance(latest_charge, str):
                return self.get_charge_state(latest_charge)
            return PaymentState.CAPTURED
        return PaymentState.INITIALIZED

    def get_charge_state(self, charge: Any) -> PaymentState:
        """Map a charge to a payment state."""
        if charge is None or not stripe_value(charge, "paid", False):
            return PaymentState.INITIALIZED

        refunded = stripe_value(charge, "refunded", False)
        if stripe_value(charge, "captured", False):
            return PaymentState.REFUNDED if refunded else PaymentState.CAPTURED
        return PaymentState.CANCELLED if refunded else PaymentState.AUTHORIZED

    def finalize_or_update_order(self, order: Order, payment_intent: Any) -> None:
        """Finalize the order for an authorized/captured intent, otherwise track its state."""
        amount = cents_to_amount(stripe_value(payment_intent, "amount"))
        transaction_id = self.get_transaction_id(payment_intent)
        payment_state = self.get_payment_intent_state(payment_intent)

        if not order.is_finalized and payment_state in (PaymentState.AUTHORIZED, PaymentState.CAPTURED):
            order.finalize(amount, transaction_id, payment_state)
        elif order.transaction_information.payment_state != payment_state:
            order.transaction_information.amount_authorized = amount
            order.transaction_information.transaction_id = transaction_id
            order.transaction_information.payment_state = payment_state
            order.save()


def charge_order_reference(charge: Any) -> Dict[str, Optional[str]]:
    """Order id and cart number a charge was created for."""
    metadata = stripe_value(charge, "metadata")
    return {
        "order_id": stripe_value(metadata, "orderId") or stripe_value(charge, "description"),
        "cart_number": stripe_value(metadata, "cartNumber"),
    }