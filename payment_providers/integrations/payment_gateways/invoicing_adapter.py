"""Invoice payment: no gateway, the order is authorized for its total when the customer continues."""

from typing import Dict, Mapping

from payment_providers.models.order import Order, PaymentState

from .base import (
    CallbackInfo,
    CallbackRequest,
    CallbackResult,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import must_contain_key


class InvoicingAdapter(PaymentProvider):
    """Invoicing payment provider."""

    display_name = "Invoicing"

    finalize_at_continue_url = True

    def _get_provider_type(self) -> PaymentProviderType:
        return PaymentProviderType.INVOICING

    @property
    def default_settings(self) -> Dict[str, str]:
        return {"acceptUrl": ""}

    async def generate_html_form(
        self,
        order: Order,
        continue_url: str,
        cancel_url: str,
        callback_url: str,
        communication_url: str,
        settings: Mapping[str, str],
    ) -> PaymentHtmlForm:
        return PaymentHtmlForm(action=continue_url)

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "acceptUrl", "invoicing")
        return settings["acceptUrl"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        return ""

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        return CallbackResult(callback_info=CallbackInfo(order.total_price, "", PaymentState.AUTHORIZED))
