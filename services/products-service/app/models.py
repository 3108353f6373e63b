from datetime import datetime
from typing import Optional
from decimal import Decimal
from pydantic import BaseModel, Field

from shared.utils import to_decimal128, from_bson_money

class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    description: str
    price: Decimal
    category: str
    image_url: Optional[str] = None
    stock: int
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

    def to_document(self) -> dict:
        doc = self.dict(exclude={"id"})
        doc["price"] = to_decimal128(self.price)
        return doc

def product_from_document(doc: dict) -> dict:
    """Mongo document -> kwargs for the response schemas."""
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    data["price"] = from_bson_money(data["price"])
    return data
