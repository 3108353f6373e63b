from fastapi import FastAPI, Depends, HTTPException, status, Query, Header, Cookie, Request
from fastapi.middleware.cors import CORSMiddleware
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from bson import ObjectId
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
import math
import os
import re
import sys
import httpx

# Add the parent directory to sys.path to resolve shared imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../")))

from shared.utils import (
    get_db_client, settings, SuccessResponse, HealthResponse,
    NotFoundException, UnauthorizedException, ForbiddenException, AppException,
    extract_token, str_to_oid, to_decimal128
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter, DEFAULT_LIMIT

from app.schemas import (
    ProductCreate, ProductUpdate, ProductResponse, ProductListResponse,
    ProductLookup, ProductSort
)
from app.models import ProductDB, product_from_document

# Setup Logging
logger = setup_logging("products-service", settings.LOG_LEVEL)

app = FastAPI(title="Products Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="products-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SORT_OPTIONS = {
    ProductSort.LAST_ADDED: [("created_at", DESCENDING)],
    ProductSort.PRICE_ASC: [("price", ASCENDING)],
    ProductSort.PRICE_DESC: [("price", DESCENDING)],
}

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client.products_db
    # Indexes
    await app.mongodb.products.create_index([("is_active", ASCENDING), ("created_at", DESCENDING)])
    await app.mongodb.products.create_index("category")

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Dependencies ---
async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Cookie(None),
) -> dict:
    headers = {"Authorization": f"Bearer {extract_token(authorization, token)}"}
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        headers["X-Request-ID"] = request_id

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{settings.AUTH_SERVICE_URL}/verify", headers=headers)
            response.raise_for_status()
        except httpx.RequestError:
            raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Auth service unavailable")
        except httpx.HTTPStatusError:
            raise UnauthorizedException("Invalid authentication credentials")

    data = response.json()
    if not data.get("success"):
        raise UnauthorizedException("Invalid token")
    request.state.user_id = data["data"]["sub"]
    return data["data"]

async def require_admin_user(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise ForbiddenException(f"Role ({user.get('role')}) is not allowed to access this resource")
    return user

async def find_product(product_id: str) -> dict:
    product = await app.mongodb.products.find_one({"_id": str_to_oid(product_id)})
    if not product:
        raise NotFoundException("Product not found")
    return product

# --- Endpoints ---

@app.get("/products", response_model=SuccessResponse[ProductListResponse])
@limiter.limit(DEFAULT_LIMIT)
async def list_products(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: Optional[str] = None,
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    search: Optional[str] = None,
    sort: ProductSort = ProductSort.LAST_ADDED,
):
    query = {"is_active": True}
    if category:
        query["category"] = category

    price_query = {}
    if min_price is not None:
        price_query["$gte"] = to_decimal128(min_price)
    if max_price is not None:
        price_query["$lte"] = to_decimal128(max_price)
    if price_query:
        query["price"] = price_query

    if search:
        query["name"] = {"$regex": re.escape(search), "$options": "i"}

    skip = (page - 1) * limit
    total = await app.mongodb.products.count_documents(query)
    cursor = app.mongodb.products.find(query).sort(SORT_OPTIONS[sort]).skip(skip).limit(limit)
    products = [ProductResponse(**product_from_document(doc)) async for doc in cursor]

    return SuccessResponse(data=ProductListResponse(
        products=products,
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit),
    ))

@app.post("/products/lookup", response_model=SuccessResponse[List[ProductResponse]])
async def lookup_products(lookup: ProductLookup):
    # Internal: the cart needs stock and is_active for inactive products too
    oids = [ObjectId(pid) for pid in lookup.ids if ObjectId.is_valid(pid)]
    if not oids:
        return SuccessResponse(data=[])
    cursor = app.mongodb.products.find({"_id": {"$in": oids}})
    products = [ProductResponse(**product_from_document(doc)) async for doc in cursor]
    return SuccessResponse(data=products)

@app.get("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
@limiter.limit(DEFAULT_LIMIT)
async def get_product(product_id: str, request: Request):
    product = await find_product(product_id)
    if not product.get("is_active", True):
        raise NotFoundException("Product not found")
    return SuccessResponse(data=ProductResponse(**product_from_document(product)))

@app.post("/products", response_model=SuccessResponse[ProductResponse], status_code=status.HTTP_201_CREATED)
async def create_product(product: ProductCreate, user: dict = Depends(require_admin_user)):
    product_db = ProductDB(**product.dict())
    new_product = await app.mongodb.products.insert_one(product_db.to_document())
    created_product = await app.mongodb.products.find_one({"_id": new_product.inserted_id})
    logger.info("Product created", extra={"user_id": user["sub"], "product_id": str(new_product.inserted_id)})
    return SuccessResponse(
        data=ProductResponse(**product_from_document(created_product)),
        message="Product created successfully"
    )

@app.put("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(product_id: str, product_update: ProductUpdate, user: dict = Depends(require_admin_user)):
    await find_product(product_id)

    update_data = product_update.dict(exclude_unset=True, exclude_none=True)
    if "price" in update_data:
        update_data["price"] = to_decimal128(update_data["price"])

    if update_data:
        update_data["updated_at"] = datetime.utcnow()
        await app.mongodb.products.update_one(
            {"_id": str_to_oid(product_id)},
            {"$set": update_data}
        )
        logger.info("Product updated", extra={"user_id": user["sub"], "product_id": product_id})

    updated_product = await find_product(product_id)
    return SuccessResponse(
        data=ProductResponse(**product_from_document(updated_product)),
        message="Product updated successfully"
    )

@app.delete("/products/{product_id}", response_model=SuccessResponse[dict])
async def delete_product(product_id: str, user: dict = Depends(require_admin_user)):
    result = await app.mongodb.products.delete_one({"_id": str_to_oid(product_id)})
    if result.deleted_count == 0:
        raise NotFoundException("Product not found")
    logger.info("Product deleted", extra={"user_id": user["sub"], "product_id": product_id})
    return SuccessResponse(data={"id": product_id}, message="Product deleted successfully")

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"
    auth_status = "unknown"

    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except PyMongoError:
        db_status = "disconnected"

    async with httpx.AsyncClient() as client:
        try:
            resp = await client.get(f"{settings.AUTH_SERVICE_URL}/health", timeout=2.0)
            auth_status = "healthy" if resp.status_code == 200 else "unhealthy"
        except httpx.RequestError:
            auth_status = "unreachable"

    if db_status != "connected" or auth_status != "healthy":
        logger.error(f"Health Check Failed: DB={db_status}, Auth={auth_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service Unhealthy: DB={db_status}, Auth={auth_status}"
        )

    return HealthResponse(
        service="products-service",
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={
            "auth-service": auth_status
        }
    )
