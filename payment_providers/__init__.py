"""Payment provider adapters for e-commerce checkouts."""

__version__ = "0.1.0"
