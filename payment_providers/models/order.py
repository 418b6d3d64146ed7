"""
Order model shared with the checkout host.

The host owns orders and their persistence. Payment providers read order data
to build forms and write back the few values a gateway hands out (security
keys, payment intent ids, order references) before calling ``save()``.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional


class PaymentState(str, Enum):
    """Payment state every gateway status is mapped into."""
    INITIALIZED = "initialized"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PENDING_EXTERNAL_SYSTEM = "pending_external_system"
    ERROR = "error"


@dataclass
class OrderLine:
    sku: str
    name: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = Decimal("0")  # incl. VAT
    properties: Dict[str, str] = field(default_factory=dict)


@dataclass
class PaymentInformation:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    country_code: Optional[str] = None  # ISO 3166 alpha-2
    country_name: Optional[str] = None
    country_region_code: Optional[str] = None
    country_region_name: Optional[str] = None
    payment_method_sku: Optional[str] = None
    payment_method_name: Optional[str] = None
    total_price: Decimal = Decimal("0")


@dataclass
class ShipmentInformation:
    country_code: Optional[str] = None
    country_name: Optional[str] = None
    country_region_code: Optional[str] = None
    country_region_name: Optional[str] = None
    shipping_method_sku: Optional[str] = None
    shipping_method_name: Optional[str] = None
    total_price: Decimal = Decimal("0")


@dataclass
class TransactionInformation:
    transaction_id: Optional[str] = None
    amount_authorized: Optional[Decimal] = None
    payment_state: Optional[PaymentState] = None
    payment_type: Optional[str] = None
    payment_identifier: Optional[str] = None


@dataclass
class Order:
    """Checkout order as seen by a payment provider."""
    id: str
    cart_number: str
    currency_iso_code: str
    total_price: Decimal  # incl. VAT
    order_number: Optional[str] = None
    vat_rate: Decimal = Decimal("0")
    customer_id: Optional[str] = None
    store_cart_number_prefix: str = ""
    ip_address: Optional[str] = None  # customer IP captured at checkout
    properties: Dict[str, str] = field(default_factory=dict)
    order_lines: List[OrderLine] = field(default_factory=list)
    payment_information: PaymentInformation = field(default_factory=PaymentInformation)
    shipment_information: ShipmentInformation = field(default_factory=ShipmentInformation)
    transaction_information: TransactionInformation = field(default_factory=TransactionInformation)
    is_finalized: bool = False
    saver: Optional[Callable[["Order"], None]] = field(default=None, repr=False, compare=False)

    def get_property(self, alias: Optional[str]) -> str:
        """Return a property value, or an empty string when the alias is unset or unknown."""
        if not alias:
            return ""
        return self.properties.get(alias) or ""

    def set_property(self, alias: str, value: Optional[str]) -> None:
        self.properties[alias] = value or ""

    def finalize(
        self,
        amount: Decimal,
        transaction_id: str,
        payment_state: PaymentState,
        payment_type: Optional[str] = None,
        payment_identifier: Optional[str] = None,
    ) -> None:
        """Turn the cart into a placed order with the transaction the gateway reported."""
        self.transaction_information.amount_authorized = amount
        self.transaction_information.transaction_id = transaction_id
        self.transaction_information.payment_state = payment_state
        if payment_type:
            self.transaction_information.payment_type = payment_type
        if payment_identifier:
            self.transaction_information.payment_identifier = payment_identifier
        self.is_finalized = True
        if not self.order_number:
            self.order_number = self.cart_number
        self.save()

    def save(self) -> None:
        if self.saver is not None:
            self.saver(self)
