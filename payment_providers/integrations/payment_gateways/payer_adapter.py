"""
Payer Payment Provider Adapter

Provides integration with the Payer PostAPI: the order is sent as a base64
encoded ``payread_post_api_0_2`` XML document protected by a two-key MD5
checksum. Payer calls back from a fixed set of addresses with an MD5 over the
callback URL itself.
"""

import base64
import logging
import xml.etree.ElementTree as ET
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Tuple

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
from .helpers import ensure_iso_currency, must_contain_key
from .signing import DigestAlgorithm, DigestEncoding, DigestRecipe, SecretPlacement

logger = logging.getLogger(__name__)

FORM_URL = "https://secure.pay-read.se/PostAPI_V1/InitPayFlow"
XML_WRITER = "payread_php_0_2_v08"
XSI_NAMESPACE = "http://www.w3.org/2001/XMLSchema-instance"

PAYER_IP_ADDRESSES = (
    "217.151.207.84",
    "79.136.103.5",
    "79.136.103.9",
    "94.140.57.180",
    "94.140.57.181",
    "94.140.57.184",
    "192.168.100.1",
)

# md5(md5Key1 + payer_data + md5Key2)
FORM_CHECKSUM = DigestRecipe(
    algorithm=DigestAlgorithm.MD5,
    fields=("md5Key1", "payer_data", "md5Key2"),
    secret_placement=SecretPlacement.NONE,
)

# md5(md5Key1 + callback url up to "&md5sum" + md5Key2), upper case hex
CALLBACK_CHECKSUM = DigestRecipe(
    algorithm=DigestAlgorithm.MD5,
    fields=("md5Key1", "url", "md5Key2"),
    secret_placement=SecretPlacement.NONE,
    encoding=DigestEncoding.HEX_UPPER,
)

BUYER_DETAIL_ELEMENTS = (
    "address_line_1",
    "address_line_2",
    "postal_code",
    "city",
    "country_code",
    "phone_home",
    "phone_work",
    "phone_mobile",
)


def _add_elements(parent: ET.Element, values: Iterable[Tuple[str, str]]) -> None:
    for tag, text in values:
        ET.SubElement(parent, tag).text = text


def _decimal_text(value: Decimal) -> str:
    return format(value, "f")


class PayerAdapter(PaymentProvider):
    """Payer payment provider adapter."""

    display_name = "Payer"
    documentation_link = "http://anders.burla.dk/umbraco/tea-commerce/using-payer-with-tea-commerce/"

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.PAYER

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "payer_agentid": "",
            "language": "us",
            "success_redirect_url": "",
            "redirect_back_to_shop_url": "",
            "payment_methods": "auto",
            "md5Key1": "",
            "md5Key2": "",
            "test_mode": "false",
        }

    def build_payer_data(
        self,
        order: Order,
        continue_url: str,
        cancel_url: str,
        callback_url: str,
        settings: Mapping[str, str],
    ) -> bytes:
        """The ``payread_post_api_0_2`` document, ISO-8859-1 encoded with its declaration."""
        currency = ensure_iso_currency(order.currency_iso_code, "payer")
        payment = order.payment_information
        shipment = order.shipment_information

        root = ET.Element("payread_post_api_0_2")
        root.set(f"{{{XSI_NAMESPACE}}}noNamespaceSchemaLocation", "payread_post_api_0_2.xsd")

        _add_elements(ET.SubElement(root, "seller_details"), [("agent_id", settings["payer_agentid"])])

        buyer_details = ET.SubElement(root, "buyer_details")
        _add_elements(buyer_details, [("first_name", payment.first_name), ("last_name", payment.last_name)])
        _add_elements(buyer_details, [(tag, "") for tag in BUYER_DETAIL_ELEMENTS])
        _add_elements(buyer_details, [("email", payment.email), ("organisation", ""), ("orgnr", ""), ("customer_id", "")])

        vat_percentage = _decimal_text(order.vat_rate * 100)
        purchase_lines = [
            (line.name, line.sku, line.unit_price, line.quantity) for line in order.order_lines
        ]
        if shipment.shipping_method_sku and shipment.total_price:
            purchase_lines.append(
                (shipment.shipping_method_name or "", shipment.shipping_method_sku, shipment.total_price, Decimal("1"))
            )
        if payment.payment_method_sku and payment.total_price:
            purchase_lines.append(
                (payment.payment_method_name or "", payment.payment_method_sku, payment.total_price, Decimal("1"))
            )

        purchase = ET.SubElement(root, "purchase")
        _add_elements(purchase, [("currency", currency), ("reference_id", order.cart_number)])
        purchase_list = ET.SubElement(purchase, "purchase_list")
        for line_number, (description, item_number, price, quantity) in enumerate(purchase_lines, start=1):
            _add_elements(
                ET.SubElement(purchase_list, "freeform_purchase"),
                [
                    ("line_number", str(line_number)),
                    ("description", description),
                    ("item_number", item_number),
                    ("price_including_vat", _decimal_text(price)),
                    ("vat_percentage", vat_percentage),
                    ("quantity", _decimal_text(quantity)),
                ],
            )

        _add_elements(
            ET.SubElement(root, "processing_control"),
            [
                ("success_redirect_url", continue_url),
                ("authorize_notification_url", callback_url),
                ("settle_notification_url", callback_url),
                ("redirect_back_to_shop_url", cancel_url),
            ],
        )

        test_mode = settings.get("test_mode") == "true"
        overrides = ET.SubElement(root, "database_overrides")
        accepted_payment_methods = ET.SubElement(overrides, "accepted_payment_methods")
        _add_elements(
            accepted_payment_methods,
            [("payment_method", method) for method in settings["payment_methods"].split(",") if method],
        )
        _add_elements(
            overrides,
            [
                ("debug_mode", "verbose" if test_mode else "silent"),
                ("test_mode", "true" if test_mode else "false"),
                ("language", settings["language"]),
            ],
        )

        return ET.tostring(root, encoding="ISO-8859-1", xml_declaration=True)

    async def generate_html_form(
        self,
        order: Order,
        continue_url: str,
        cancel_url: str,
        callback_url: str,
        communication_url: str,
        settings: Mapping[str, str],
    ) -> PaymentHtmlForm:
        for key in ("payer_agentid", "language", "payment_methods", "md5Key1", "md5Key2"):
            must_contain_key(settings, key, "payer")

        payer_data = base64.b64encode(
            self.build_payer_data(order, continue_url, cancel_url, callback_url, settings)
        ).decode("ascii")
        input_fields = {
            "payer_agentid": settings["payer_agentid"],
            "payer_xml_writer": XML_WRITER,
            "payer_data": payer_data,
        }
        input_fields["payer_checksum"] = FORM_CHECKSUM.compute(
            {"md5Key1": settings["md5Key1"], "payer_data": payer_data, "md5Key2": settings["md5Key2"]}
        )
        return PaymentHtmlForm(action=FORM_URL, input_fields=input_fields)

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "success_redirect_url", "payer")
        return settings["success_redirect_url"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "redirect_back_to_shop_url", "payer")
        return settings["redirect_back_to_shop_url"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Verify an authorize or settle notification.

        The request must come from a Payer address and carry an ``md5sum`` over
        the URL it was sent to. Payer reads ``TRUE`` or ``FALSE`` from the body.
        """
        must_contain_key(settings, "md5Key1", "payer")
        must_contain_key(settings, "md5Key2", "payer")
        self._log_request(request, settings.get("test_mode") == "true")
        rejected = CallbackResult(response=CallbackResponse(body="FALSE"))

        if request.client_ip not in PAYER_IP_ADDRESSES:
            logger.warning(f"Payer({order.cart_number}) - IP security check failed - IP: {request.client_ip}")
            return rejected

        signed_url, separator, _ = request.url.partition("&md5sum")
        checksum_values = {"md5Key1": settings["md5Key1"], "url": signed_url, "md5Key2": settings["md5Key2"]}
        if not separator or not CALLBACK_CHECKSUM.verify(request.query.get("md5sum"), checksum_values):
            logger.warning(f"Payer({order.cart_number}) - MD5Sum security check failed")
            return rejected

        callback_type = request.query.get("payer_callback_type")
        return CallbackResult(
            callback_info=CallbackInfo(
                order.total_price,
                request.query.get("payread_payment_id", ""),
                PaymentState.AUTHORIZED if callback_type == "auth" else PaymentState.CAPTURED,
                request.query.get("payer_payment_type"),
            ),
            response=CallbackResponse(body="TRUE"),
        )
