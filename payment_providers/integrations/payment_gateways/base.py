"""
Payment Provider Base Classes and Interfaces

Defines the contract and shared plumbing for all payment provider adapters:
form generation, callback processing and the capture/refund/cancel/status
management calls a checkout host issues against a gateway.
"""

import asyncio
import json
import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import urlsplit

import aiohttp
from aiohttp import ClientTimeout

from payment_providers.models.order import Order, PaymentState

logger = logging.getLogger(__name__)


class PaymentProviderType(str, Enum):
    """Supported payment provider types."""
    SAGEPAY = "sagepay"
    STRIPE = "stripe"
    STRIPE_SUBSCRIPTION = "stripe_subscription"
    PAYPAL = "paypal"
    OGONE = "ogone"
    DIBS = "dibs"
    EPAY = "epay"
    QUICKPAY = "quickpay"
    AXCESS = "axcess"
    WANNAFIND = "wannafind"
    AUTHORIZENET = "authorizenet"
    CYBERSOURCE = "cybersource"
    PAYNOVA = "paynova"
    PAYEX = "payex"
    TWOCHECKOUT = "twocheckout"
    WORLDPAY = "worldpay"
    PAYMENTSENSE = "paymentsense"
    INVOICING = "invoicing"
    NETAXEPT = "netaxept"
    PAYER = "payer"
    ONPAY = "onpay"
    KLARNA = "klarna"


@dataclass
class PaymentHtmlForm:
    """Form the checkout posts to the gateway (or a pre-registered redirect)."""
    action: str = ""
    input_fields: Dict[str, str] = field(default_factory=dict)
    attributes: Dict[str, str] = field(default_factory=dict)
    javascript_function: str = ""


@dataclass
class CallbackInfo:
    """Verified outcome of a gateway callback."""
    amount: Decimal
    transaction_id: str
    payment_state: PaymentState
    payment_type: Optional[str] = None
    payment_identifier: Optional[str] = None


@dataclass
class ApiInfo:
    """Result of a management API call."""
    transaction_id: str
    payment_state: PaymentState


@dataclass
class CallbackRequest:
    """
    Transport independent view of an inbound gateway request.

    ``items`` is a per-request scratch space, adapters use it to keep a parsed
    and verified payload between ``get_cart_number`` and ``process_callback``.
    """
    method: str = "GET"
    url: str = ""
    query: Dict[str, str] = field(default_factory=dict)
    form: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    client_ip: Optional[str] = None
    items: Dict[str, Any] = field(default_factory=dict)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return default

    def value(self, key: str, default: str = "") -> str:
        """Look a field up in the query string first, then in the form body."""
        if key in self.query:
            return self.query[key]
        return self.form.get(key, default)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))

    @property
    def base_url(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}/" if parts.netloc else ""


@dataclass
class CallbackResponse:
    """HTTP response an adapter wants sent back to the gateway or the customer."""
    status_code: int = 200
    body: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    content_type: str = "text/plain"
    redirect_url: Optional[str] = None

    @classmethod
    def redirect(cls, url: str) -> "CallbackResponse":
        return cls(status_code=302, redirect_url=url)

    @classmethod
    def json_body(cls, data: Any, status_code: int = 200) -> "CallbackResponse":
        return cls(status_code=status_code, body=json.dumps(data), content_type="application/json")

    @classmethod
    def html(cls, body: str) -> "CallbackResponse":
        return cls(body=body, content_type="text/html")


@dataclass
class CallbackResult:
    """Callback outcome: verified payment info (if any) plus the response to send."""
    callback_info: Optional[CallbackInfo] = None
    response: CallbackResponse = field(default_factory=CallbackResponse)


class PaymentError(Exception):
    """Payment gateway specific errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[str] = None
    ):
        super().__init__(message)
        self.error_message = message
        self.error_code = error_code
        self.provider = provider
        self.gateway_response = gateway_response
        self.transaction_id = transaction_id


class GatewayCommunicationError(PaymentError):
    """The gateway could not be reached or answered with an HTTP error."""


class PaymentProvider(ABC):
    """Abstract base class for payment provider adapters."""

    display_name: str = ""
    documentation_link: str = ""

    supports_retrieval_of_payment_status: bool = False
    supports_capturing_of_payment: bool = False
    supports_refund_of_payment: bool = False
    supports_cancellation_of_payment: bool = False
    finalize_at_continue_url: bool = False
    allows_callback_without_order_id: bool = False

    # Errors a gateway round trip may end in; management and callback
    # operations log these and return None.
    GATEWAY_ERRORS = (
        GatewayCommunicationError,
        aiohttp.ClientError,
        asyncio.TimeoutError,
        ValueError,
        KeyError,
        ET.ParseError,
    )

    def __init__(self, http_timeout_seconds: int = 30, http_connect_timeout_seconds: int = 10, **config):
        """Initialize the payment provider with configuration."""
        self.config = config
        self.provider_type = self._get_provider_type()

        # Session will be created lazily to avoid event loop issues during initialization
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = ClientTimeout(total=http_timeout_seconds, connect=http_connect_timeout_seconds)

    @abstractmethod
    def _get_provider_type(self) -> PaymentProviderType:
        """Return the provider type identifier."""
        pass

    @property
    @abstractmethod
    def default_settings(self) -> Dict[str, str]:
        """Settings keys the provider understands, with their default values."""
        pass

    @abstractmethod
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
        Build the form that sends the customer to the gateway.

        Args:
            order: Order being paid
            continue_url: Where the customer lands after a completed payment
            cancel_url: Where the customer lands after a cancelled payment
            callback_url: Where the gateway posts its notification
            communication_url: Where browser side scripts talk to the provider
            settings: Provider settings

        Returns:
            PaymentHtmlForm with the action URL and the input fields

        Raises:
            PaymentError: If a required setting or order value is missing or invalid
        """
        pass

    @abstractmethod
    def get_continue_url(self, order: Order, settings: Mapping[str, str]) -> str:
        pass

    @abstractmethod
    def get_cancel_url(self, order: Order, settings: Mapping[str, str]) -> str:
        pass

    @abstractmethod
    async def process_callback(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResult:
        """
        Verify a gateway notification and map it to a payment state.

        Args:
            order: Order the callback belongs to
            request: Inbound gateway request
            settings: Provider settings

        Returns:
            CallbackResult, without callback_info when the request could not be verified
        """
        pass

    async def get_cart_number(self, request: CallbackRequest, settings: Mapping[str, str]) -> Optional[str]:
        """
        Extract the cart number from a callback that carries no order id.

        Only providers with ``allows_callback_without_order_id`` implement this.
        """
        raise NotImplementedError("Cart number lookup not implemented for this provider")

    async def process_request(
        self,
        order: Order,
        request: CallbackRequest,
        settings: Mapping[str, str],
    ) -> CallbackResponse:
        """Handle a browser side request sent to the communication URL."""
        raise NotImplementedError("Request processing not implemented for this provider")

    async def get_status(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        raise NotImplementedError("Status retrieval not implemented for this provider")

    async def capture_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        raise NotImplementedError("Payment capture not implemented for this provider")

    async def refund_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        raise NotImplementedError("Payment refund not implemented for this provider")

    async def cancel_payment(self, order: Order, settings: Mapping[str, str]) -> Optional[ApiInfo]:
        raise NotImplementedError("Payment cancellation not implemented for this provider")

    def merge_settings(self, overrides: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Default settings overlaid with host configured values."""
        merged = dict(self.default_settings)
        merged.update(overrides or {})
        return merged

    def capabilities(self) -> Dict[str, bool]:
        return {
            "supports_retrieval_of_payment_status": self.supports_retrieval_of_payment_status,
            "supports_capturing_of_payment": self.supports_capturing_of_payment,
            "supports_refund_of_payment": self.supports_refund_of_payment,
            "supports_cancellation_of_payment": self.supports_cancellation_of_payment,
            "finalize_at_continue_url": self.finalize_at_continue_url,
            "allows_callback_without_order_id": self.allows_callback_without_order_id,
        }

    def _log_request(self, request: CallbackRequest, test_mode: bool) -> None:
        """Log the inbound request while the provider runs against a test environment."""
        if test_mode:
            logger.debug(
                f"{self.display_name} - inbound request {request.method} {request.url} "
                f"query={request.query} form={request.form}"
            )

    # HTTP plumbing shared by all adapters

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        **kwargs,
    ) -> str:
        """
        Send a request to the gateway and return the response body.

        Raises:
            GatewayCommunicationError: If the gateway answers with an HTTP error
        """
        async with self.session.request(method, url, **kwargs) as response:
            await self._handle_api_error(response, operation)
            return await response.text()

    async def _post_form(
        self,
        url: str,
        fields: Mapping[str, str],
        operation: str,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[aiohttp.BasicAuth] = None,
    ) -> str:
        return await self._request("POST", url, operation, data=dict(fields), headers=headers, auth=auth)

    async def _request_json(
        self,
        method: str,
        url: str,
        operation: str,
        payload: Optional[Union[Dict[str, Any], List[Any]]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[aiohttp.BasicAuth] = None,
    ) -> Any:
        body = await self._request(method, url, operation, json=payload, headers=headers, auth=auth)
        return json.loads(body) if body else {}

    async def _handle_api_error(self, response: aiohttp.ClientResponse, operation: str):
        """Raise for gateway responses outside the 2xx range."""
        if 200 <= response.status < 300:
            return

        body = await response.text()
        if response.status in (401, 403):
            error_code = "AUTH_ERROR"
        elif response.status == 404:
            error_code = "NOT_FOUND"
        elif response.status >= 500:
            error_code = "SERVER_ERROR"
        else:
            error_code = "API_ERROR"

        raise GatewayCommunicationError(
            message=f"{self.display_name} API error in {operation}: HTTP {response.status}",
            error_code=error_code,
            provider=self.provider_type.value,
            gateway_response={"status": response.status, "body": body},
        )

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


ProviderName = Union[PaymentProviderType, str]


def _provider_key(provider_type: ProviderName) -> str:
    return str(getattr(provider_type, "value", provider_type)).lower()


class PaymentProviderFactory:
    """Factory for creating payment provider instances."""

    _providers: Dict[str, type] = {}

    @classmethod
    def register_provider(
        cls,
        provider_type: ProviderName,
        provider_class: type[PaymentProvider]
    ):
        """Register a payment provider implementation."""
        cls._providers[_provider_key(provider_type)] = provider_class

    @classmethod
    def create_provider(
        cls,
        provider_type: ProviderName,
        **config
    ) -> PaymentProvider:
        """Create a payment provider instance."""
        key = _provider_key(provider_type)
        if key not in cls._providers:
            raise ValueError(f"Unsupported provider type: {provider_type}")

        provider_class = cls._providers[key]
        return provider_class(**config)

    @classmethod
    def is_registered(cls, provider_type: ProviderName) -> bool:
        return _provider_key(provider_type) in cls._providers

    @classmethod
    def get_supported_providers(cls) -> List[str]:
        """Get list of registered provider names."""
        return list(cls._providers.keys())
