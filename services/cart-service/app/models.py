from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Tuple, Iterable
from pydantic import BaseModel, Field

from shared.utils import to_decimal128, from_bson_money

CENT = Decimal("0.01")


class ProductSnapshot(BaseModel):
    """Catalog data the cart reads; the cart never writes products."""
    id: str
    name: str
    price: Decimal
    stock: int
    is_active: bool = True
    image_url: Optional[str] = None


class CartItemDB(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: Decimal # Snapshot


class CartDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[CartItemDB] = []
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

    def find_item(self, product_id: str) -> Optional[CartItemDB]:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def add_item(self, product: ProductSnapshot, quantity: int) -> CartItemDB:
        """Merge into the existing line or append a new one, re-snapshotting the price."""
        item = self.find_item(product.id)
        if item:
            item.quantity += quantity
            item.price = product.price
        else:
            item = CartItemDB(product_id=product.id, quantity=quantity, price=product.price)
            self.items.append(item)
        return item

    def set_quantity(self, product: ProductSnapshot, quantity: int) -> CartItemDB:
        item = self.find_item(product.id)
        item.quantity = quantity
        item.price = product.price
        return item

    def remove_item(self, product_id: str) -> bool:
        remaining = [item for item in self.items if item.product_id != product_id]
        removed = len(remaining) != len(self.items)
        self.items = remaining
        return removed

    def clear(self):
        self.items = []

    def items_document(self) -> List[dict]:
        return [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "price": to_decimal128(item.price),
            }
            for item in self.items
        ]

    def to_document(self) -> dict:
        return {
            "user_id": self.user_id,
            "items": self.items_document(),
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: dict) -> "CartDB":
        return cls(
            id=str(doc["_id"]),
            user_id=doc["user_id"],
            items=[
                CartItemDB(
                    product_id=item["product_id"],
                    quantity=item["quantity"],
                    price=from_bson_money(item["price"]),
                )
                for item in doc.get("items", [])
            ],
            version=doc.get("version", 0),
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
        )


def compute_totals(items: Iterable[CartItemDB]) -> Tuple[int, Decimal]:
    """Totals from snapshot prices, never live catalog prices."""
    total_items = 0
    total_price = Decimal(0)
    for item in items:
        total_items += item.quantity
        total_price += item.price * item.quantity
    return total_items, total_price.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class CartLine:
    item: CartItemDB
    # None once the product has been deleted from the catalog
    product: Optional[ProductSnapshot]


@dataclass
class CartView:
    """A persisted cart joined with catalog display data at read time."""
    cart: CartDB
    lines: List[CartLine]
    total_items: int
    total_price: Decimal
