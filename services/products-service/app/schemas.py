from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from enum import Enum
from shared.security_config import sanitize_input

class ProductSort(str, Enum):
    LAST_ADDED = "last-added"
    PRICE_ASC = "price-asc"
    PRICE_DESC = "price-desc"

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    price: Decimal = Field(..., ge=0, decimal_places=2)
    category: str
    image_url: Optional[str] = None
    stock: int = Field(0, ge=0)

    @field_validator('name', 'description', 'category', 'image_url')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    category: Optional[str] = None
    image_url: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None

    @field_validator('name', 'description', 'category', 'image_url')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

# Not derived from ProductCreate: stored text is already sanitized
class ProductResponse(BaseModel):
    id: str
    name: str
    description: str
    price: Decimal
    category: str
    image_url: Optional[str] = None
    stock: int
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    total: int
    page: int
    limit: int
    pages: int

class ProductLookup(BaseModel):
    ids: List[str] = Field(..., max_length=200)
