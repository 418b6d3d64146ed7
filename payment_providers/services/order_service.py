"""
Order lookup for callback processing.

The checkout host owns order persistence; callbacks only need to find an order
by cart number and hand it back for saving. Hosts plug their store in through
``OrderRepository``.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from payment_providers.core.logging import get_logger
from payment_providers.models.order import Order

logger = get_logger(__name__)


class OrderRepository(ABC):
    """Access to the host's orders."""

    @abstractmethod
    async def get_by_cart_number(self, cart_number: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def save(self, order: Order) -> None:
        pass


class InMemoryOrderRepository(OrderRepository):
    """Dictionary backed repository for development and tests."""

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}

    def add(self, order: Order) -> Order:
        order.saver = self._store
        self._orders[order.cart_number] = order
        return order

    def _store(self, order: Order) -> None:
        self._orders[order.cart_number] = order

    async def get_by_cart_number(self, cart_number: str) -> Optional[Order]:
        return self._orders.get(cart_number)

    async def save(self, order: Order) -> None:
        self._store(order)
        logger.debug("order.saved", cart_number=order.cart_number, is_finalized=order.is_finalized)


_default_repository = InMemoryOrderRepository()


def get_order_repository() -> OrderRepository:
    """FastAPI dependency returning the process wide repository, override it to plug in the host store."""
    return _default_repository
