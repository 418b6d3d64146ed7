from payment_providers.models.order import (
    Order,
    OrderLine,
    PaymentInformation,
    PaymentState,
    ShipmentInformation,
    TransactionInformation,
)

__all__ = [
    "Order",
    "OrderLine",
    "PaymentInformation",
    "PaymentState",
    "ShipmentInformation",
    "TransactionInformation",
]
