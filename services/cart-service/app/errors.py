"""Domain errors raised by the cart service.

They carry no HTTP knowledge; ``app.main`` maps them to status codes.
"""
from typing import Optional


class CartError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CartValidationError(CartError):
    """Malformed quantity or product id. Retrying without fixing input is pointless."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(CartError):
    """Missing product, cart or cart item."""


class InsufficientStockError(CartError):
    def __init__(self, available_stock: int, current_cart_quantity: int = 0):
        super().__init__("Insufficient stock")
        self.available_stock = available_stock
        self.current_cart_quantity = current_cart_quantity


class ConcurrentModificationError(CartError):
    """Another writer kept winning the race for this cart; state should be re-fetched."""
