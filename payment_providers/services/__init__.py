from payment_providers.services import (
    order_service,
    payment_service,
)

__all__ = ["order_service", "payment_service"]
