from pydantic import BaseModel, Field, StrictInt, PlainSerializer
from typing import Annotated, Optional, List
from decimal import Decimal
from datetime import datetime

from app.models import CartView

# Cents survive as JSON numbers; arithmetic stays in Decimal
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

class CartItemAdd(BaseModel):
    product_id: str = Field(..., alias="productId")
    # Range is checked by the service so that every caller gets the same error
    quantity: StrictInt

    class Config:
        populate_by_name = True

class CartItemUpdate(BaseModel):
    quantity: StrictInt

class CartProductResponse(BaseModel):
    id: str = Field(..., alias="_id")
    name: str
    price: Money # Live catalog price, display only
    image_url: Optional[str] = Field(None, alias="imageUrl")

    class Config:
        populate_by_name = True

class CartItemResponse(BaseModel):
    product: Optional[CartProductResponse]
    quantity: int
    price: Money # Snapshot

class CartResponse(BaseModel):
    id: str = Field(..., alias="_id")
    user_id: str = Field(..., alias="user")
    items: List[CartItemResponse]
    total_price: Money = Field(..., alias="totalPrice")
    total_items: int = Field(..., alias="totalItems")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    class Config:
        populate_by_name = True

    @classmethod
    def from_view(cls, view: CartView) -> "CartResponse":
        items = []
        for line in view.lines:
            product = None
            if line.product:
                product = CartProductResponse(
                    id=line.product.id,
                    name=line.product.name,
                    price=line.product.price,
                    image_url=line.product.image_url,
                )
            items.append(CartItemResponse(
                product=product,
                quantity=line.item.quantity,
                price=line.item.price,
            ))
        return cls(
            id=view.cart.id,
            user_id=view.cart.user_id,
            items=items,
            total_price=view.total_price,
            total_items=view.total_items,
            created_at=view.cart.created_at,
            updated_at=view.cart.updated_at,
        )
