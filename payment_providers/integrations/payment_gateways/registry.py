"""Registration of the bundled payment provider adapters with the factory."""

from .authorizenet_adapter import AuthorizeNetAdapter
from .axcess_adapter import AxcessAdapter
from .base import PaymentProviderFactory, PaymentProviderType
from .cybersource_adapter import CyberSourceAdapter
from .dibs_adapter import DibsAdapter
from .epay_adapter import EPayAdapter
from .invoicing_adapter import InvoicingAdapter
from .klarna_adapter import KlarnaAdapter
from .netaxept_adapter import NetaxeptAdapter
from .ogone_adapter import OgoneAdapter
from .onpay_adapter import OnPayAdapter
from .payer_adapter import PayerAdapter
from .payex_adapter import PayExAdapter
from .paymentsense_adapter import PaymentSenseAdapter
from .paynova_adapter import PaynovaAdapter
from .paypal_adapter import PayPalAdapter
from .quickpay_adapter import QuickPayAdapter
from .sagepay_adapter import SagePayAdapter
from .stripe_adapter import StripeAdapter
from .stripe_subscription_adapter import StripeSubscriptionAdapter
from .twocheckout_adapter import TwoCheckOutAdapter
from .wannafind_adapter import WannafindAdapter
from .worldpay_adapter import WorldPayAdapter

BUILTIN_PROVIDERS = {
    PaymentProviderType.SAGEPAY: SagePayAdapter,
    PaymentProviderType.STRIPE: StripeAdapter,
    PaymentProviderType.STRIPE_SUBSCRIPTION: StripeSubscriptionAdapter,
    PaymentProviderType.PAYPAL: PayPalAdapter,
    PaymentProviderType.OGONE: OgoneAdapter,
    PaymentProviderType.DIBS: DibsAdapter,
    PaymentProviderType.EPAY: EPayAdapter,
    PaymentProviderType.QUICKPAY: QuickPayAdapter,
    PaymentProviderType.AXCESS: AxcessAdapter,
    PaymentProviderType.WANNAFIND: WannafindAdapter,
    PaymentProviderType.AUTHORIZENET: AuthorizeNetAdapter,
    PaymentProviderType.CYBERSOURCE: CyberSourceAdapter,
    PaymentProviderType.PAYNOVA: PaynovaAdapter,
    PaymentProviderType.PAYEX: PayExAdapter,
    PaymentProviderType.TWOCHECKOUT: TwoCheckOutAdapter,
    PaymentProviderType.WORLDPAY: WorldPayAdapter,
    PaymentProviderType.PAYMENTSENSE: PaymentSenseAdapter,
    PaymentProviderType.INVOICING: InvoicingAdapter,
    PaymentProviderType.NETAXEPT: NetaxeptAdapter,
    PaymentProviderType.PAYER: PayerAdapter,
    PaymentProviderType.ONPAY: OnPayAdapter,
    PaymentProviderType.KLARNA: KlarnaAdapter,
}


def register_builtin_providers() -> None:
    for provider_type, provider_class in BUILTIN_PROVIDERS.items():
        PaymentProviderFactory.register_provider(provider_type, provider_class)
