"""
Stripe Subscription Payment Provider Adapter

Provides integration with Stripe Billing: the order lines become a Stripe
subscription that is either charged automatically or billed by invoice, and
invoice/subscription webhooks are forwarded to registered event handlers.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from stripe import StripeError

from payment_providers.models.order import Order, PaymentState

from .base import (
    CallbackInfo,
    CallbackRequest,
    CallbackResponse,
    CallbackResult,
    PaymentError,
    PaymentHtmlForm,
    PaymentProviderType,
)
from .helpers import must_contain_key
from .stripe_adapter import BaseStripeAdapter, cents_to_amount, object_id, stripe_value

logger = logging.getLogger(__name__)

BILLING_MODES = ("charge", "invoice")
PAID_STATES = (PaymentState.AUTHORIZED, PaymentState.CAPTURED)


class StripeSubscriptionEventType(str, Enum):
    """Subscription lifecycle events raised from webhooks."""
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_STARTED = "subscription_started"
    SUBSCRIPTION_RENEWING = "subscription_renewing"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_TRIAL_ENDING = "subscription_trial_ending"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"


@dataclass
class StripeSubscriptionEvent:
    order: Order
    type: StripeSubscriptionEventType
    subscription: Any = None
    invoice: Any = None


SubscriptionEventHandler = Callable[[StripeSubscriptionEvent], None]

SUBSCRIPTION_EVENT_TYPES = {
    "customer.subscription.trial_will_end": StripeSubscriptionEventType.SUBSCRIPTION_TRIAL_ENDING,
    "customer.subscription.created": StripeSubscriptionEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": StripeSubscriptionEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": StripeSubscriptionEventType.SUBSCRIPTION_DELETED,
}


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Subscription id of an invoice, in both the classic and the billing-parent layout."""
    subscription = stripe_value(invoice, "subscription")
    if subscription:
        return object_id(subscription)
    details = stripe_value(stripe_value(invoice, "parent"), "subscription_details")
    return object_id(stripe_value(details, "subscription"))


def invoice_is_paid(invoice: Any) -> bool:
    return bool(stripe_value(invoice, "paid", False)) or stripe_value(invoice, "status") == "paid"


class StripeSubscriptionAdapter(BaseStripeAdapter):
    """Stripe subscription provider adapter."""

    display_name = "StripeSubscription"

    _event_handlers: List[SubscriptionEventHandler] = []

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.STRIPE_SUBSCRIPTION

    @property
    def default_settings(self) -> Dict[str, str]:
        settings = super().default_settings
        settings["billing_mode"] = "charge"
        settings["invoice_days_until_due"] = "30"
        return settings

    @classmethod
    def add_event_handler(cls, handler: SubscriptionEventHandler) -> None:
        cls._event_handlers.append(handler)

    @classmethod
    def remove_event_handler(cls, handler: SubscriptionEventHandler) -> None:
        if handler in cls._event_handlers:
            cls._event_handlers.remove(handler)

    def raise_event(self, event: StripeSubscriptionEvent) -> None:
        for handler in list(self._event_handlers):
            handler(event)

    def _billing_mode(self, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "billing_mode", "stripe_subscription")
        billing_mode = settings["billing_mode"]
        if billing_mode not in BILLING_MODES:
            raise PaymentError(
                message="Argument billing_mode is invalid. Must be either 'invoice' or 'charge'.",
                error_code="invalid_setting",
                provider="stripe_subscription",
            )
        return billing_mode

    def _days_until_due(self, settings: Mapping[str, str]) -> int:
        value = (settings.get("invoice_days_until_due") or "30").strip()
        if not value.isdecimal():
            raise PaymentError(
                message="Argument invoice_days_until_due must be a whole number of days.",
                error_code="invalid_setting",
                provider="stripe_subscription",
            )
        return int(value)

    async def generate_html_form(
        self,
        order: Order,
        continue_url: str,
        cancel_url: str,
        callback_url: str,
        communication_url: str,
        settings: Mapping[str, str],
    ) -> PaymentHtmlForm:
        # Invoice billing needs no card details, the subscription is set up in the callback
        if self._billing_mode(settings) == "invoice":
            return PaymentHtmlForm(action=continue_url)

        html_form = await super().generate_html_form(
            order, continue_url, cancel_url, callback_url, communication_url, settings
        )
        html_form.input_fields["requires_initial_payment_method"] = "true"
        return html_form

    async def get_cart_number(self, request: CallbackRequest, settings: Mapping[str, str]) -> Optional[str]:
        must_contain_key(settings, "mode", "stripe_subscription")
        must_contain_key(settings, self._key_name(settings, "secret_key"), "stripe_subscription")
        self._log_request(request, settings.get("mode") == "test")

        event = self.get_webhook_event(request, settings)
        if event is None or not stripe_value(event, "type", "").startswith("invoice."):
            return None

        invoice = stripe_value(stripe_value(event, "data"), "object")
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return None

        try:
            subscription = await self._client(settings).v1.subscriptions.retrieve_async(subscription_id)
        except StripeError as e:
            logger.error(f"StripeSubscription - GetCartNumber: {e}")
            return None
        return stripe_value(stripe_value(subscription, "metadata"), "cartNumber")

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Set up an invoice billed subscription.

        With invoice billing the payment page is skipped, so the subscription
        is created here and the order is authorized for the first invoice.
        Card billing does all its work in process_request.
        """
        if self._billing_mode(settings) != "invoice":
            return CallbackResult()
        must_contain_key(settings, self._key_name(settings, "secret_key"), "stripe_subscription")

        client = self._client(settings)
        try:
            await self._create_subscription(order, request, settings)

            subscription = await client.v1.subscriptions.retrieve_async(
                order.get_property("stripeSubscriptionId"), params={"expand": ["latest_invoice"]}
            )
            invoice = stripe_value(subscription, "latest_invoice")
            if invoice is None or isinstance(invoice, str):
                invoice = await client.v1.invoices.retrieve_async(object_id(invoice))

            callback_info = CallbackInfo(
                cents_to_amount(stripe_value(invoice, "amount_due")),
                stripe_value(invoice, "id"),
                PaymentState.AUTHORIZED,
            )
            return CallbackResult(callback_info=callback_info)
        except StripeError as e:
            logger.error(f"StripeSubscription({order.cart_number}) - ProcessCallback: {e}")
            return CallbackResult()

    async def process_request(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResponse:
        must_contain_key(settings, "mode", "stripe_subscription")
        must_contain_key(settings, self._key_name(settings, "secret_key"), "stripe_subscription")
        self._log_request(request, settings.get("mode") == "test")

        try:
            if request.query.get("action") == "capture":
                return CallbackResponse.json_body(await self._create_subscription(order, request, settings))
            self._process_webhook_request(order, request, settings)
        except StripeError as e:
            logger.error(f"StripeSubscription({order.cart_number}) - ProcessRequest: {e}")
        return CallbackResponse()

    async def _create_subscription(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> Dict[str, Any]:
        """Create the Stripe customer and subscription and return the browser answer."""
        billing_mode = self._billing_mode(settings)
        days_until_due = self._days_until_due(settings) if billing_mode == "invoice" else None
        client = self._client(settings)
        payment_method_id = request.form.get("stripePaymentMethodId") if billing_mode == "charge" else None

        customer_params: Dict[str, Any] = {
            "email": order.payment_information.email,
            "metadata": {"customerId": order.customer_id or ""},
        }
        if payment_method_id:
            customer_params["payment_method"] = payment_method_id
        customer = await client.v1.customers.create_async(params=customer_params)

        metadata = {"orderId": str(order.id), "cartNumber": order.cart_number}
        metadata.update(order.properties)

        subscription_params: Dict[str, Any] = {
            "customer": customer.id,
            "items": [
                {
                    "price": (line.properties.get("planId") or "").strip() or line.sku,
                    "quantity": int(line.quantity),
                }
                for line in order.order_lines
            ],
            "metadata": metadata,
            "expand": ["latest_invoice.payment_intent"],
        }
        if billing_mode == "charge":
            subscription_params["collection_method"] = "charge_automatically"
            subscription_params["default_payment_method"] = payment_method_id
        else:
            subscription_params["collection_method"] = "send_invoice"
            subscription_params["days_until_due"] = days_until_due

        subscription = await client.v1.subscriptions.create_async(params=subscription_params)

        order.set_property("stripeCustomerId", customer.id)
        order.set_property("stripeSubscriptionId", subscription.id)
        order.save()

        if subscription.status in ("active", "trialing"):
            return {"success": True}

        payment_intent = stripe_value(stripe_value(subscription, "latest_invoice"), "payment_intent")
        if stripe_value(payment_intent, "status") == "requires_action":
            return {
                "requires_action": True,
                "payment_intent_client_secret": stripe_value(payment_intent, "client_secret"),
            }

        return {"error": "Invalid payment intent status"}

    def _process_webhook_request(self, order: Order, request: CallbackRequest, settings: Mapping[str, str]) -> None:
        event = self.get_webhook_event(request, settings)
        if event is None:
            logger.warning(f"StripeSubscription({order.cart_number}) - webhook request without a valid event")
            return

        event_type = stripe_value(event, "type", "")
        event_object = stripe_value(stripe_value(event, "data"), "object")

        # Stripe creates an invoice for every period, a paid invoice means the subscription is live
        if event_type.startswith("invoice."):
            subscription_id = invoice_subscription_id(event_object)
            if not self._belongs_to_order(order, stripe_value(event_object, "customer"), subscription_id):
                return

            event_kind: Optional[StripeSubscriptionEventType] = None
            if event_type == "invoice.payment_succeeded":
                if order.transaction_information.payment_state not in PAID_STATES:
                    self.finalize_or_update_order(order, event_object)
                    event_kind = StripeSubscriptionEventType.SUBSCRIPTION_STARTED
                else:
                    event_kind = StripeSubscriptionEventType.SUBSCRIPTION_RENEWED
            elif event_type == "invoice.payment_failed":
                if order.transaction_information.transaction_id and stripe_value(event_object, "status") == "past_due":
                    event_kind = StripeSubscriptionEventType.SUBSCRIPTION_PAST_DUE
            elif event_type == "invoice.upcoming":
                event_kind = StripeSubscriptionEventType.SUBSCRIPTION_RENEWING

            if event_kind is not None:
                self.raise_event(StripeSubscriptionEvent(
                    order=order,
                    type=event_kind,
                    subscription=stripe_value(event_object, "subscription"),
                    invoice=event_object,
                ))

        elif event_type.startswith("customer.subscription."):
            subscription_id = stripe_value(event_object, "id")
            if not self._belongs_to_order(order, stripe_value(event_object, "customer"), subscription_id):
                return

            event_kind = SUBSCRIPTION_EVENT_TYPES.get(event_type)
            if event_kind is not None:
                self.raise_event(StripeSubscriptionEvent(order=order, type=event_kind, subscription=event_object))

    def _belongs_to_order(self, order: Order, customer: Any, subscription_id: Optional[str]) -> bool:
        return (
            order.get_property("stripeCustomerId") == object_id(customer)
            and order.get_property("stripeSubscriptionId") == subscription_id
        )

    def finalize_or_update_order(self, order: Order, invoice: Any) -> None:
        amount = cents_to_amount(stripe_value(invoice, "amount_due"))
        invoice_id = stripe_value(invoice, "id")
        payment_state = PaymentState.CAPTURED if invoice_is_paid(invoice) else PaymentState.AUTHORIZED

        if not order.is_finalized:
            order.finalize(amount, invoice_id, payment_state)
        elif order.transaction_information.payment_state != payment_state:
            order.transaction_information.amount_authorized = amount
            order.transaction_information.transaction_id = invoice_id
            order.transaction_information.payment_state = payment_state
            order.save()
