"""Cart domain service.

Every operation takes the acting ``user_id`` explicitly. Only ``add_item``
creates a cart; every other operation raises ``NotFoundError`` for a user
without one.

Mutations for one user are serialised by an in-process lock and, across
processes, by the store's version check: a lost race re-runs the whole
read-validate-write so stock is always checked against the cart that is
actually written.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional
from weakref import WeakValueDictionary
from bson import ObjectId

from shared.utils import settings
from app.catalog import ProductCatalog
from app.errors import (
    CartValidationError, NotFoundError, InsufficientStockError,
    ConcurrentModificationError,
)
from app.models import CartDB, CartLine, CartView, ProductSnapshot, compute_totals
from app.store import CartStore, StaleCartError

logger = logging.getLogger("cart-service")


class CartLocks:
    """One asyncio.Lock per user; entries vanish once no request holds them."""

    def __init__(self):
        self._locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()

    def for_user(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock


def validate_quantity(quantity, minimum: int):
    # bool is an int subclass; True is not a quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise CartValidationError("Quantity must be an integer", field="quantity")
    if quantity < minimum:
        raise CartValidationError(f"Quantity must be at least {minimum}", field="quantity")


def validate_product_id(product_id):
    if not isinstance(product_id, str) or not ObjectId.is_valid(product_id):
        raise CartValidationError("Invalid product id", field="productId")


class CartService:
    def __init__(
        self,
        store: CartStore,
        catalog: ProductCatalog,
        locks: Optional[CartLocks] = None,
        max_attempts: int = settings.CART_WRITE_RETRIES,
    ):
        self.store = store
        self.catalog = catalog
        self.locks = locks or CartLocks()
        self.max_attempts = max(1, max_attempts)

    # --- Reads ---

    async def get_cart(self, user_id: str) -> CartView:
        cart = await self._require_cart(user_id)
        return await self.enrich(cart)

    async def enrich(self, cart: CartDB) -> CartView:
        """Join display data from the catalog. Nothing here is written back."""
        products = {}
        if cart.items:
            products = await self.catalog.get_products(item.product_id for item in cart.items)
        lines = [CartLine(item=item, product=products.get(item.product_id)) for item in cart.items]
        total_items, total_price = compute_totals(cart.items)
        return CartView(cart=cart, lines=lines, total_items=total_items, total_price=total_price)

    # --- Mutations ---

    async def add_item(self, user_id: str, product_id: str, quantity: int) -> CartView:
        validate_product_id(product_id)
        validate_quantity(quantity, minimum=1)

        async def apply() -> CartDB:
            product = await self._require_product(product_id)
            cart = await self.store.find_by_user(user_id)
            created = cart is None
            if created:
                cart = CartDB(user_id=user_id)

            existing = cart.find_item(product_id)
            existing_qty = existing.quantity if existing else 0
            if existing_qty + quantity > product.stock:
                self._log_stock_rejection(user_id, product, existing_qty + quantity)
                raise InsufficientStockError(product.stock, existing_qty)

            cart.add_item(product, quantity)
            if created:
                cart = await self.store.insert(cart)
                logger.info("Cart created", extra={"user_id": user_id})
                return cart
            return await self.store.save(cart)

        cart = await self._mutate(user_id, apply)
        logger.info(
            "Cart item added",
            extra={"user_id": user_id, "product_id": product_id, "quantity": quantity},
        )
        return await self.enrich(cart)

    async def update_item_quantity(self, user_id: str, product_id: str, quantity: int) -> CartView:
        """Set an absolute quantity. Zero removes the line, and is a no-op if it is absent."""
        validate_product_id(product_id)
        validate_quantity(quantity, minimum=0)

        async def apply() -> CartDB:
            cart = await self._require_cart(user_id)
            if quantity == 0:
                if cart.remove_item(product_id):
                    return await self.store.save(cart)
                return cart

            product = await self._require_product(product_id)
            item = cart.find_item(product_id)
            if item is None:
                raise NotFoundError("Item not found in cart")
            if quantity > product.stock:
                self._log_stock_rejection(user_id, product, quantity)
                raise InsufficientStockError(product.stock, item.quantity)

            cart.set_quantity(product, quantity)
            return await self.store.save(cart)

        cart = await self._mutate(user_id, apply)
        logger.info(
            "Cart item quantity set",
            extra={"user_id": user_id, "product_id": product_id, "quantity": quantity},
        )
        return await self.enrich(cart)

    async def remove_item(self, user_id: str, product_id: str) -> CartView:
        validate_product_id(product_id)

        async def apply() -> CartDB:
            cart = await self._require_cart(user_id)
            if cart.remove_item(product_id):
                return await self.store.save(cart)
            return cart

        cart = await self._mutate(user_id, apply)
        return await self.enrich(cart)

    async def clear_cart(self, user_id: str) -> CartView:
        async def apply() -> CartDB:
            cart = await self._require_cart(user_id)
            if not cart.items:
                return cart
            cart.clear()
            return await self.store.save(cart)

        cart = await self._mutate(user_id, apply)
        logger.info("Cart cleared", extra={"user_id": user_id})
        return await self.enrich(cart)

    # --- Helpers ---

    async def _mutate(self, user_id: str, apply: Callable[[], Awaitable[CartDB]]) -> CartDB:
        async with self.locks.for_user(user_id):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    return await apply()
                except StaleCartError:
                    logger.warning(
                        "Cart write conflict",
                        extra={"user_id": user_id, "attempt": attempt},
                    )
        raise ConcurrentModificationError("Cart was modified concurrently, re-fetch and retry")

    async def _require_cart(self, user_id: str) -> CartDB:
        cart = await self.store.find_by_user(user_id)
        if cart is None:
            raise NotFoundError("Cart not found")
        return cart

    async def _require_product(self, product_id: str) -> ProductSnapshot:
        product = await self.catalog.get_product(product_id)
        if product is None or not product.is_active:
            raise NotFoundError("Product not found")
        return product

    def _log_stock_rejection(self, user_id: str, product: ProductSnapshot, requested: int):
        logger.info(
            "Insufficient stock",
            extra={
                "user_id": user_id,
                "product_id": product.id,
                "quantity": requested,
                "available_stock": product.stock,
            },
        )
