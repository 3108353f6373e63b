"""Cart persistence.

Each write is a single conditional document update keyed on the cart's
``version`` so two writers racing on the same cart cannot both succeed.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import DuplicateKeyError

from app.models import CartDB


class StaleCartError(Exception):
    """The stored cart changed between read and write."""

    def __init__(self, user_id: str):
        super().__init__(f"Cart for user {user_id} was modified concurrently")
        self.user_id = user_id


class CartStore(ABC):
    @abstractmethod
    async def find_by_user(self, user_id: str) -> Optional[CartDB]:
        ...

    @abstractmethod
    async def insert(self, cart: CartDB) -> CartDB:
        """Persist a brand new cart; StaleCartError if one already exists for the user."""

    @abstractmethod
    async def save(self, cart: CartDB) -> CartDB:
        """Write ``cart.items`` if the stored version still equals ``cart.version``."""


class MongoCartStore(CartStore):
    def __init__(self, collection: AsyncIOMotorCollection):
        self.collection = collection

    async def find_by_user(self, user_id: str) -> Optional[CartDB]:
        doc = await self.collection.find_one({"user_id": user_id})
        if not doc:
            return None
        return CartDB.from_document(doc)

    async def insert(self, cart: CartDB) -> CartDB:
        try:
            res = await self.collection.insert_one(cart.to_document())
        except DuplicateKeyError:
            # unique index on user_id: someone else created it first
            raise StaleCartError(cart.user_id)
        cart.id = str(res.inserted_id)
        return cart

    async def save(self, cart: CartDB) -> CartDB:
        now = datetime.utcnow()
        res = await self.collection.update_one(
            {"user_id": cart.user_id, "version": cart.version},
            {
                "$set": {"items": cart.items_document(), "updated_at": now},
                "$inc": {"version": 1},
            },
        )
        if res.matched_count == 0:
            raise StaleCartError(cart.user_id)
        cart.version += 1
        cart.updated_at = now
        return cart
