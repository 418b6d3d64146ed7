"""
Shared test configuration and fixtures for the payment providers test suite.
"""

from typing import Dict, Generator
from unittest.mock import Mock

import pytest

from payment_providers.core.config import clear_settings_cache
from payment_providers.models.order import Order
from tests.factories import make_order


@pytest.fixture
def order() -> Order:
    order = make_order()
    order.saver = Mock()
    return order


@pytest.fixture
def callback_urls() -> Dict[str, str]:
    return {
        "continue_url": "https://shop.example.com/checkout/thanks",
        "cancel_url": "https://shop.example.com/checkout/cancel",
        "callback_url": "https://shop.example.com/payment-providers/test/callback?cart_number=CART-1001",
        "communication_url": "https://shop.example.com/payment-providers/test/request?cart_number=CART-1001",
    }


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    clear_settings_cache()
    yield
    clear_settings_cache()
