"""
2CheckOut Payment Provider Adapter

Single page purchase form with pass-through product lines, verified on return
with the MD5 ``key`` 2CheckOut appends to the receipt link.
"""

import logging
from decimal import Decimal
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
from .helpers import format_amount, must_contain_key, truncate
from .signing import DigestEncoding, compute_digest, digests_equal

logger = logging.getLogger(__name__)

FORM_URL = "https://www.2checkout.com/checkout/spurchase"
PRODUCT_NAME_MAX_LENGTH = 128

SETTINGS_NOT_SENT = (
    "secretWord",
    "streetAddressPropertyAlias",
    "cityPropertyAlias",
    "zipCodePropertyAlias",
    "phonePropertyAlias",
    "phoneExtensionPropertyAlias",
    "shipping_firstNamePropertyAlias",
    "shipping_lastNamePropertyAlias",
    "shipping_streetAddressPropertyAlias",
    "shipping_cityPropertyAlias",
    "shipping_zipCodePropertyAlias",
)

# (form field, settings key holding the order property alias)
ADDRESS_PROPERTIES = (
    ("street_address", "streetAddressPropertyAlias"),
    ("city", "cityPropertyAlias"),
    ("zip", "zipCodePropertyAlias"),
    ("phone", "phonePropertyAlias"),
    ("phone_extension", "phoneExtensionPropertyAlias"),
    ("ship_street_address", "shipping_streetAddressPropertyAlias"),
    ("ship_city", "shipping_cityPropertyAlias"),
    ("ship_zip", "shipping_zipCodePropertyAlias"),
)


def return_key(secret_word: str, sid: str, order_number: str, total: str, demo: bool) -> str:
    """Uppercase MD5(secret word + sid + order number + total); demo sales use order number 1."""
    message = secret_word + sid + ("1" if demo else order_number) + total
    return compute_digest(message, encoding=DigestEncoding.HEX_UPPER)


class TwoCheckOutAdapter(PaymentProvider):
    """2CheckOut payment provider adapter."""

    display_name = "2CheckOut"
    documentation_link = "http://anders.burla.dk/umbraco/tea-commerce/using-2checkout-with-tea-commerce/"

    finalize_at_continue_url = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.TWOCHECKOUT

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "sid": "",
            "lang": "en",
            "x_receipt_link_url": "",
            "secretWord": "",
            "streetAddressPropertyAlias": "streetAddress",
            "cityPropertyAlias": "city",
            "zipCodePropertyAlias": "zipCode",
            "phonePropertyAlias": "phone",
            "phoneExtensionPropertyAlias": "phoneExtension",
            "demo": "N",
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
        Build the purchase form.

        Products are listed as payment method, shipping method and then the
        order lines in reverse order, each as ``c_prod_n``/``c_name_n``/
        ``c_description_n``/``c_price_n``.
        """
        payment_information = order.payment_information
        shipment_information = order.shipment_information

        input_fields = {key: value for key, value in settings.items() if key not in SETTINGS_NOT_SENT}
        input_fields["cart_order_id"] = order.cart_number
        input_fields["total"] = format_amount(order.total_price)
        input_fields["x_receipt_link_url"] = continue_url
        input_fields["card_holder_name"] = f"{payment_information.first_name} {payment_information.last_name}"

        for field_name, alias_key in ADDRESS_PROPERTIES:
            if alias_key in settings:
                input_fields[field_name] = order.get_property(settings[alias_key])
        if payment_information.country_region_name:
            input_fields["state"] = payment_information.country_region_name
        input_fields["country"] = payment_information.country_name or ""
        input_fields["email"] = payment_information.email

        if "shipping_firstNamePropertyAlias" in settings and "shipping_lastNamePropertyAlias" in settings:
            input_fields["ship_name"] = (
                order.get_property(settings["shipping_firstNamePropertyAlias"])
                + " "
                + order.get_property(settings["shipping_lastNamePropertyAlias"])
            )
        if shipment_information.country_region_name:
            input_fields["ship_state"] = shipment_information.country_region_name
        if shipment_information.country_name:
            input_fields["ship_country"] = shipment_information.country_name

        input_fields["fixed"] = "Y"
        input_fields["skip_landing"] = "1"
        if input_fields.get("demo", "Y") != "Y":
            del input_fields["demo"]
        input_fields["id_type"] = "1"

        products = []
        if payment_information.payment_method_sku:
            products.append((
                f"{payment_information.payment_method_sku},1",
                payment_information.payment_method_name or "",
                payment_information.total_price,
            ))
        if shipment_information.shipping_method_sku:
            products.append((
                f"{shipment_information.shipping_method_sku},1",
                shipment_information.shipping_method_name or "",
                shipment_information.total_price,
            ))
        for line in reversed(order.order_lines):
            products.append((f"{line.sku},{line.quantity}", line.name, line.unit_price))

        for index, (product, name, price) in enumerate(products, start=1):
            input_fields[f"c_prod_{index}"] = product
            input_fields[f"c_name_{index}"] = truncate(name, PRODUCT_NAME_MAX_LENGTH)
            input_fields[f"c_description_{index}"] = ""
            input_fields[f"c_price_{index}"] = format_amount(price)

        return PaymentHtmlForm(action=FORM_URL, input_fields=input_fields)

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "x_receipt_link_url", "twocheckout")
        return settings["x_receipt_link_url"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        return ""

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        must_contain_key(settings, "secretWord", "twocheckout")
        demo = settings.get("demo") == "Y"
        self._log_request(request, demo)

        query = request.query
        order_number = query.get("order_number", "")
        total = query.get("total", "")
        calculated = return_key(settings["secretWord"], query.get("sid", ""), order_number, total, demo)
        if not digests_equal(calculated, query.get("key")):
            logger.warning(f"2CheckOut({order.cart_number}) - MD5Sum security check failed")
            return CallbackResult()

        try:
            amount = Decimal(total)
        except ArithmeticError:
            logger.warning(f"2CheckOut({order.cart_number}) - Invalid total: {total}")
            return CallbackResult()

        return CallbackResult(callback_info=CallbackInfo(amount, order_number, PaymentState.AUTHORIZED))
