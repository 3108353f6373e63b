"""
Fixtures for the cart-service tests.

The cart domain is exercised over in-memory stand-ins for its two
collaborators: a CartStore that keeps BSON-shaped documents (so Decimal128
conversion and version checks behave as they do against Mongo) and a
ProductCatalog holding ProductSnapshots. Both yield to the event loop on
reads so concurrent operations actually interleave.
"""
import asyncio
import copy
import os
import sys
from datetime import datetime
from decimal import Decimal

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)
sys.path.insert(0, os.path.join(ROOT, "services", "cart-service"))

from shared.security_config import limiter
from app.catalog import ProductCatalog
from app.models import CartDB, ProductSnapshot
from app.service import CartService, CartLocks
from app.store import CartStore, StaleCartError


class InMemoryCartStore(CartStore):
    def __init__(self):
        self.docs = {}
        self.saves = 0

    async def find_by_user(self, user_id):
        doc = copy.deepcopy(self.docs.get(user_id))
        # read first, then yield: a racing writer sees the same snapshot
        await asyncio.sleep(0)
        return CartDB.from_document(doc) if doc else None

    async def insert(self, cart):
        if cart.user_id in self.docs:
            raise StaleCartError(cart.user_id)
        doc = cart.to_document()
        doc["_id"] = ObjectId()
        self.docs[cart.user_id] = doc
        cart.id = str(doc["_id"])
        return cart

    async def save(self, cart):
        doc = self.docs.get(cart.user_id)
        if doc is None or doc["version"] != cart.version:
            raise StaleCartError(cart.user_id)
        now = datetime.utcnow()
        doc["items"] = cart.items_document()
        doc["updated_at"] = now
        doc["version"] += 1
        self.saves += 1
        cart.version += 1
        cart.updated_at = now
        return cart

    def stored_items(self, user_id):
        return self.docs[user_id]["items"]


class InMemoryCatalog(ProductCatalog):
    def __init__(self):
        self.products = {}

    def put(self, name="Widget", price="10.00", stock=5, is_active=True, image_url=None) -> ProductSnapshot:
        product = ProductSnapshot(
            id=str(ObjectId()),
            name=name,
            price=Decimal(price),
            stock=stock,
            is_active=is_active,
            image_url=image_url,
        )
        self.products[product.id] = product
        return product

    def set_price(self, product_id, price):
        self.products[product_id].price = Decimal(price)

    def set_stock(self, product_id, stock):
        self.products[product_id].stock = stock

    def delete(self, product_id):
        del self.products[product_id]

    async def get_products(self, product_ids):
        await asyncio.sleep(0)
        return {
            pid: self.products[pid].model_copy()
            for pid in product_ids
            if pid in self.products
        }


USER_ID = "65f000000000000000000001"


@pytest.fixture
def user_id():
    return USER_ID


@pytest.fixture
def store():
    return InMemoryCartStore()


@pytest.fixture
def catalog():
    return InMemoryCatalog()


@pytest.fixture
def service(store, catalog):
    return CartService(store, catalog, locks=CartLocks())


@pytest.fixture
def widget(catalog):
    """Stock 5, price 10.00."""
    return catalog.put(name="Widget", price="10.00", stock=5, image_url="https://img.example/widget.png")


@pytest.fixture
def client(service, user_id):
    from app.main import app, get_cart_service, get_current_user

    limiter.enabled = False
    app.dependency_overrides[get_current_user] = lambda: {"sub": user_id, "role": "user"}
    app.dependency_overrides[get_cart_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        limiter.enabled = True
