"""
SagePay Payment Provider Adapter

Provides integration with the SagePay Server protocol (2.23): transaction
registration, signed notification callbacks and the AUTHORISE/REFUND/CANCEL
shared protocol calls.
"""

import logging
import uuid
from typing import Dict, Mapping, Optional
from urllib.parse import unquote_plus

from payment_providers.models.order import Order, PaymentState

from .base import (
    ApiInfo,
    CallbackInfo,
    CallbackRequest,
    CallbackResponse,
    CallbackResult,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderType,
)
from .helpers import (
    ensure_iso_currency,
    ensure_max_length,
    format_amount,
    must_contain_key,
    must_not_be_empty,
    parse_key_value_response,
    truncate,
)
from .signing import DigestAlgorithm, DigestEncoding, DigestRecipe, SecretPlacement

logger = logging.getLogger(__name__)

VPS_PROTOCOL = "2.23"

SERVICE_URLS = {
    "LIVE": {
        "AUTHORISE": "https://live.sagepay.com/gateway/service/authorise.vsp",
        "PURCHASE": "https://live.sagepay.com/gateway/service/vspserver-register.vsp",
        "CANCEL": "https://live.sagepay.com/gateway/service/cancel.vsp",
        "REFUND": "https://live.sagepay.com/gateway/service/refund.vsp",
    },
    "TEST": {
        "AUTHORISE": "https://test.sagepay.com/gateway/service/authorise.vsp",
        "PURCHASE": "https://test.sagepay.com/gateway/service/vspserver-register.vsp",
        "CANCEL": "https://test.sagepay.com/gateway/service/cancel.vsp",
        "REFUND": "https://test.sagepay.com/gateway/service/refund.vsp",
    },
    "SIMULATOR": {
        "AUTHORISE": "https://test.sagepay.com/simulator/vspserverGateway.asp?Service=VendorAuthoriseTx",
        "PURCHASE": "https://test.sagepay.com/simulator/VSPServerGateway.asp?Service=VendorRegisterTx",
        "CANCEL": "https://test.sagepay.com/simulator/vspserverGateway.asp?Service=VendorCancelTx",
        "REFUND": "https://test.sagepay.com/simulator/vspserverGateway.asp?Service=VendorRefundTx",
    },
}

SETTINGS_NOT_SENT = (
    "streetAddressPropertyAlias",
    "cityPropertyAlias",
    "zipCodePropertyAlias",
    "phonePropertyAlias",
    "shipping_firstNamePropertyAlias",
    "shipping_lastNamePropertyAlias",
    "shipping_streetAddressPropertyAlias",
    "shipping_cityPropertyAlias",
    "shipping_zipCodePropertyAlias",
    "shipping_phonePropertyAlias",
    "testMode",
)

# VPSSignature field order; the vendor name and the stored security key are
# spliced in by the adapter.
NOTIFICATION_SIGNATURE = DigestRecipe(
    algorithm=DigestAlgorithm.MD5,
    fields=(
        "VPSTxId", "VendorTxCode", "Status", "TxAuthNo", "VendorName", "AVSCV2",
        "SecurityKey", "AddressResult", "PostCodeResult", "CV2Result", "GiftAid",
        "3DSecureStatus", "CAVV", "AddressStatus", "PayerStatus", "CardType", "Last4Digits",
    ),
    secret_placement=SecretPlacement.NONE,
    encoding=DigestEncoding.HEX_UPPER,
)

URL_ENCODED_NOTIFICATION_FIELDS = ("AVSCV2", "AddressResult", "PostCodeResult", "CV2Result", "AddressStatus", "PayerStatus")


class SagePayAdapter(PaymentProvider):
    """SagePay Server payment provider adapter."""

    display_name = "Sage Pay"
    documentation_link = "http://anders.burla.dk/umbraco/tea-commerce/using-sage-pay-with-tea-commerce/"

    supports_capturing_of_payment = True
    supports_refund_of_payment = True
    supports_cancellation_of_payment = True

    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        return PaymentProviderType.SAGEPAY

    @property
    def default_settings(self) -> Dict[str, str]:
        return {
            "Vendor": "",
            "SuccessURL": "",
            "FailureURL": "",
            "TxType": "AUTHENTICATE",
            "streetAddressPropertyAlias": "streetAddress",
            "cityPropertyAlias": "city",
            "zipCodePropertyAlias": "zipCode",
            "Description": "A description",
            "testMode": "SIMULATOR",
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
        Register the transaction with SagePay and return the NextURL as form action.

        A declined registration sends the customer to the cancel URL.
        """
        for key in ("streetAddressPropertyAlias", "cityPropertyAlias", "zipCodePropertyAlias", "Description"):
            must_contain_key(settings, key, "sagepay")
        ensure_max_length(order.cart_number, 40, "sagepay")
        currency = ensure_iso_currency(order.currency_iso_code, "sagepay")

        street_address = must_not_be_empty(order.get_property(settings["streetAddressPropertyAlias"]), "streetAddress")
        city = must_not_be_empty(order.get_property(settings["cityPropertyAlias"]), "city")
        zip_code = must_not_be_empty(order.get_property(settings["zipCodePropertyAlias"]), "zipCode")

        payment = order.payment_information
        shipment = order.shipment_information
        shipping_first_name = order.get_property(settings.get("shipping_firstNamePropertyAlias")) or payment.first_name
        shipping_last_name = order.get_property(settings.get("shipping_lastNamePropertyAlias")) or payment.last_name
        shipping_street_address = order.get_property(settings.get("shipping_streetAddressPropertyAlias")) or street_address
        shipping_city = order.get_property(settings.get("shipping_cityPropertyAlias")) or city
        shipping_zip_code = order.get_property(settings.get("shipping_zipCodePropertyAlias")) or zip_code

        input_fields = {key: value for key, value in settings.items() if key not in SETTINGS_NOT_SENT}
        input_fields["VPSProtocol"] = VPS_PROTOCOL
        input_fields["VendorTxCode"] = order.cart_number
        input_fields["Amount"] = format_amount(order.total_price)
        input_fields["Currency"] = currency
        input_fields["Description"] = truncate(input_fields["Description"], 100)
        input_fields["SuccessURL"] = continue_url
        input_fields["FailureURL"] = cancel_url
        input_fields["NotificationURL"] = callback_url
        input_fields["BillingSurname"] = truncate(payment.last_name, 20)
        input_fields["BillingFirstnames"] = truncate(payment.first_name, 20)
        input_fields["BillingAddress1"] = truncate(street_address, 100)
        input_fields["BillingCity"] = truncate(city, 40)
        input_fields["BillingPostCode"] = truncate(zip_code, 10)

        billing_country = (payment.country_code or "").upper()
        input_fields["BillingCountry"] = payment.country_code or ""
        if billing_country == "US" and payment.country_region_code:
            input_fields["BillingState"] = truncate(payment.country_region_code, 2)
        if "phonePropertyAlias" in settings:
            input_fields["BillingPhone"] = truncate(order.get_property(settings["phonePropertyAlias"]), 20)

        input_fields["DeliverySurname"] = truncate(shipping_last_name, 20)
        input_fields["DeliveryFirstnames"] = truncate(shipping_first_name, 20)
        input_fields["DeliveryAddress1"] = truncate(shipping_street_address, 100)
        input_fields["DeliveryCity"] = truncate(shipping_city, 40)
        input_fields["DeliveryPostCode"] = truncate(shipping_zip_code, 10)

        if shipment.country_code:
            delivery_country = shipment.country_code
            delivery_region = shipment.country_region_code
        else:
            delivery_country = payment.country_code or ""
            delivery_region = payment.country_region_code
        input_fields["DeliveryCountry"] = delivery_country
        if delivery_country.upper() == "US" and delivery_region:
            input_fields["DeliveryState"] = truncate(delivery_region, 2)
        if "shipping_phonePropertyAlias" in settings:
            input_fields["DeliveryPhone"] = truncate(order.get_property(settings["shipping_phonePropertyAlias"]), 20)

        if "Apply3DSecure" not in settings:
            input_fields["Apply3DSecure"] = "2"

        response_fields = await self._call_service("PURCHASE", input_fields, settings)
        status = response_fields.get("Status", "")

        html_form = PaymentHtmlForm()
        if status in ("OK", "OK REPEATED"):
            order.set_property("securityKey", response_fields.get("SecurityKey"))
            order.set_property("teaCommerceContinueUrl", continue_url)
            order.set_property("teaCommerceCancelUrl", cancel_url)
            order.save()
            html_form.action = response_fields["NextURL"]
        else:
            html_form.action = cancel_url
            logger.warning(
                f"Sage Pay({order.cart_number}) - Generate html form error - status: {status} | "
                f"status details: {response_fields.get('StatusDetail', '')}"
            )

        return html_form

    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "SuccessURL", "sagepay")
        return settings["SuccessURL"]

    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "FailureURL", "sagepay")
        return settings["FailureURL"]

    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Verify a SagePay notification POST.

        The response body tells SagePay where to send the customer next, so a
        verified notification always gets a ``Status/RedirectURL/StatusDetail``
        answer, also when the payment itself failed.
        """
        must_contain_key(settings, "Vendor", "sagepay")
        self._log_request(request, settings.get("testMode") in ("SIMULATOR", "TEST"))

        form = request.form
        status = form.get("Status", "")
        cart_number = form.get("VendorTxCode", "")
        transaction_id = form.get("VPSTxId", "")
        card_type = form.get("CardType", "")
        last_4_digits = form.get("Last4Digits", "")

        signature_values = dict(form)
        for key in URL_ENCODED_NOTIFICATION_FIELDS:
            signature_values[key] = unquote_plus(form.get(key, ""))
        signature_values["VendorName"] = settings["Vendor"].lower()
        signature_values["SecurityKey"] = order.get_property("securityKey")

        calculated_signature = NOTIFICATION_SIGNATURE.compute(signature_values)
        vps_signature = form.get("VPSSignature", "")

        if order.cart_number != cart_number or not NOTIFICATION_SIGNATURE.verify(vps_signature, signature_values):
            logger.warning(
                f"Sage Pay({order.cart_number}) - VPSSignature check isn't valid - "
                f"Calculated signature: {calculated_signature} | SagePay VPSSignature: {vps_signature}"
            )
            return CallbackResult()

        callback_info: Optional[CallbackInfo] = None
        if status in ("OK", "AUTHENTICATED", "REGISTERED"):
            payment_state = PaymentState.AUTHORIZED if form.get("TxType") != "PAYMENT" else PaymentState.CAPTURED
            callback_info = CallbackInfo(order.total_price, transaction_id, payment_state, card_type, last_4_digits)

            if status == "OK":
                order.set_property("txAuthNo", form.get("TxAuthNo", ""))
            order.set_property("vendorTxCode", cart_number)
            order.save()

            answer = {
                "Status": "OK",
                "RedirectURL": order.get_property("teaCommerceContinueUrl"),
                "StatusDetail": "OK",
            }
        else:
            logger.warning(
                f"Sage Pay({order.cart_number}) - Error  in callback - status: {status} | "
                f"status details: {form.get('StatusDetail', '')}"
            )
            answer = {
                "Status": "INVALID" if status == "ERROR" else "OK",
                "RedirectURL": order.get_property("teaCommerceCancelUrl"),
                "StatusDetail": f"Error: {status}",
            }

        body = "\r\n".join(f"{key}={value}" for key, value in answer.items())
        return CallbackResult(callback_info=callback_info, response=CallbackResponse(body=body))

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "Vendor", "sagepay")

        vendor_tx_code = str(uuid.uuid4())
        input_fields = {
            "VPSProtocol": VPS_PROTOCOL,
            "TxType": "AUTHORISE",
            "Vendor": settings["Vendor"],
            "VendorTxCode": vendor_tx_code,
            "Amount": format_amount(order.transaction_information.amount_authorized),
            "Description": truncate(settings.get("Description", ""), 100),
            "RelatedVPSTxId": order.transaction_information.transaction_id or "",
            "RelatedVendorTxCode": order.cart_number,
            "RelatedSecurityKey": order.get_property("securityKey"),
            "ApplyAVSCV2": "0",
        }

        try:
            response_fields = await self._call_service("AUTHORISE", input_fields, settings)
            if response_fields.get("Status") != "OK":
                logger.warning(
                    f"Sage pay({order.order_number}) - Error making API request: {response_fields.get('StatusDetail', '')}"
                )
                return None

            order.set_property("vendorTxCode", vendor_tx_code)
            order.set_property("txAuthNo", response_fields.get("TxAuthNo"))
            order.set_property("securityKey", response_fields.get("SecurityKey"))
            order.save()
            return ApiInfo(response_fields["VPSTxId"], PaymentState.CAPTURED)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Sage pay({order.order_number}) - Capture payment: {e}")
            return None

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "Vendor", "sagepay")
        must_contain_key(settings, "Description", "sagepay")
        currency = ensure_iso_currency(order.currency_iso_code, "sagepay")

        vendor_tx_code = str(uuid.uuid4())
        input_fields = {
            "VPSProtocol": VPS_PROTOCOL,
            "TxType": "REFUND",
            "Vendor": settings["Vendor"],
            "VendorTxCode": vendor_tx_code,
            "Amount": format_amount(order.transaction_information.amount_authorized),
            "Currency": currency,
            "Description": truncate(settings["Description"], 100),
            "RelatedVPSTxId": order.transaction_information.transaction_id or "",
            "RelatedVendorTxCode": order.get_property("vendorTxCode"),
            "RelatedSecurityKey": order.get_property("securityKey"),
            "RelatedTxAuthNo": order.get_property("txAuthNo"),
            "ApplyAVSCV2": "0",
        }

        try:
            response_fields = await self._call_service("REFUND", input_fields, settings)
            if response_fields.get("Status") != "OK":
                logger.warning(
                    f"Sage pay({order.order_number}) - Error making API request: {response_fields.get('StatusDetail', '')}"
                )
                return None

            order.set_property("vendorTxCode", vendor_tx_code)
            order.set_property("txAuthNo", response_fields.get("TxAuthNo"))
            order.save()
            return ApiInfo(response_fields["VPSTxId"], PaymentState.REFUNDED)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Sage pay({order.order_number}) - Refund payment: {e}")
            return None

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        must_contain_key(settings, "Vendor", "sagepay")

        input_fields = {
            "VPSProtocol": VPS_PROTOCOL,
            "TxType": "CANCEL",
            "Vendor": settings["Vendor"],
            "VendorTxCode": order.cart_number,
            "VPSTxId": order.transaction_information.transaction_id or "",
            "SecurityKey": order.get_property("securityKey"),
        }

        try:
            response_fields = await self._call_service("CANCEL", input_fields, settings)
            if response_fields.get("Status") != "OK":
                logger.warning(
                    f"Sage pay({order.order_number}) - Error making API request: {response_fields.get('StatusDetail', '')}"
                )
                return None
            return ApiInfo(order.transaction_information.transaction_id, PaymentState.CANCELLED)
        except self.GATEWAY_ERRORS as e:
            logger.error(f"Sage pay({order.order_number}) - Cancel payment: {e}")
            return None

    def get_method_url(self, service: str, settings: Mapping[str, str]) -> str:
        must_contain_key(settings, "testMode", "sagepay")
        return SERVICE_URLS.get(settings["testMode"].upper(), {}).get(service.upper(), "")

    async def _call_service(self, service: str, input_fields: Mapping[str, str], settings: Mapping[str, str]) -> Dict[str, str]:
        body = await self._post_form(self.get_method_url(service, settings), input_fields, service.lower())
        return parse_key_value_response(body, separator="\n")
