"""
Payment gateway integration modules

Provides adapters for the supported payment gateways with a consistent
interface, shared signing helpers and error handling.
"""

from .base import (
    ApiInfo,
    CallbackInfo,
    CallbackRequest,
    CallbackResponse,
    CallbackResult,
    GatewayCommunicationError,
    PaymentError,
    PaymentHtmlForm,
    PaymentProvider,
    PaymentProviderFactory,
    PaymentProviderType,
)
from .registry import register_builtin_providers

register_builtin_providers()

__all__ = [
    "ApiInfo",
    "CallbackInfo",
    "CallbackRequest",
    "CallbackResponse",
    "CallbackResult",
    "GatewayCommunicationError",
    "PaymentError",
    "PaymentHtmlForm",
    "PaymentProvider",
    "PaymentProviderFactory",
    "PaymentProviderType",
    "register_builtin_providers",
]
