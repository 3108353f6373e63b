from fastapi import FastAPI, Depends, HTTPException, status, Header, Cookie, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from datetime import datetime
from typing import Optional
import os
import sys
import httpx

# Add the parent directory to sys.path to resolve shared imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../")))

from shared.utils import (
    get_db_client, settings, ErrorResponse, HealthResponse,
    AppException, UnauthorizedException, extract_token
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter, DEFAULT_LIMIT

from app.catalog import HttpProductCatalog
from app.errors import (
    CartValidationError, NotFoundError, InsufficientStockError,
    ConcurrentModificationError,
)
from app.schemas import CartItemAdd, CartItemUpdate, CartResponse
from app.service import CartService, CartLocks
from app.store import MongoCartStore

# Setup Logging
logger = setup_logging("cart-service", settings.LOG_LEVEL)

app = FastAPI(title="Cart Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="cart-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Shared by every request this process serves
cart_locks = CartLocks()

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client.cart_db
    # One cart per user; also what makes concurrent cart creation safe
    await app.mongodb.carts.create_index("user_id", unique=True)

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Error Handling ---
def error_response(status_code: int, error: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(ErrorResponse(error=error, details=details)),
    )

@app.exception_handler(CartValidationError)
async def cart_validation_handler(request: Request, exc: CartValidationError):
    details = {"field": exc.field} if exc.field else None
    return error_response(status.HTTP_400_BAD_REQUEST, exc.message, details)

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request", jsonable_encoder(exc.errors()))

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return error_response(status.HTTP_404_NOT_FOUND, exc.message)

@app.exception_handler(InsufficientStockError)
async def insufficient_stock_handler(request: Request, exc: InsufficientStockError):
    return error_response(status.HTTP_400_BAD_REQUEST, exc.message, {
        "availableStock": exc.available_stock,
        "currentCartQuantity": exc.current_cart_quantity,
    })

@app.exception_handler(ConcurrentModificationError)
async def concurrent_modification_handler(request: Request, exc: ConcurrentModificationError):
    return error_response(status.HTTP_409_CONFLICT, exc.message)

@app.exception_handler(PyMongoError)
async def persistence_error_handler(request: Request, exc: PyMongoError):
    logger.error("Cart persistence failure", exc_info=exc, extra={
        "request_id": getattr(request.state, "request_id", None),
        "user_id": getattr(request.state, "user_id", None),
    })
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error, cart state unknown: re-fetch the cart before retrying",
    )

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

async def get_current_user_id(user: dict = Depends(get_current_user)) -> str:
    return user["sub"]

def get_cart_service(request: Request) -> CartService:
    catalog = HttpProductCatalog(
        settings.PRODUCTS_SERVICE_URL,
        request_id=getattr(request.state, "request_id", None),
    )
    return CartService(MongoCartStore(request.app.mongodb.carts), catalog, locks=cart_locks)

# --- Endpoints ---

@app.get("/cart", response_model=CartResponse)
@limiter.limit(DEFAULT_LIMIT)
async def get_cart(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: CartService = Depends(get_cart_service),
):
    return CartResponse.from_view(await service.get_cart(user_id))

@app.post("/cart/items", response_model=CartResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(DEFAULT_LIMIT)
async def add_to_cart(
    item: CartItemAdd,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: CartService = Depends(get_cart_service),
):
    view = await service.add_item(user_id, item.product_id, item.quantity)
    return CartResponse.from_view(view)

@app.put("/cart/items/{product_id}", response_model=CartResponse)
@limiter.limit(DEFAULT_LIMIT)
async def update_cart_item(
    product_id: str,
    update: CartItemUpdate,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: CartService = Depends(get_cart_service),
):
    view = await service.update_item_quantity(user_id, product_id, update.quantity)
    return CartResponse.from_view(view)

@app.delete("/cart/items/{product_id}", response_model=CartResponse)
async def remove_cart_item(
    product_id: str,
    user_id: str = Depends(get_current_user_id),
    service: CartService = Depends(get_cart_service),
):
    return CartResponse.from_view(await service.remove_item(user_id, product_id))

@app.delete("/cart/clear", response_model=CartResponse)
async def clear_cart(
    user_id: str = Depends(get_current_user_id),
    service: CartService = Depends(get_cart_service),
):
    return CartResponse.from_view(await service.clear_cart(user_id))

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"
    dependencies = {}

    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except PyMongoError:
        db_status = "disconnected"

    async with httpx.AsyncClient() as client:
        for name, url in (
            ("auth-service", settings.AUTH_SERVICE_URL),
            ("products-service", settings.PRODUCTS_SERVICE_URL),
        ):
            try:
                resp = await client.get(f"{url}/health", timeout=2.0)
                dependencies[name] = "healthy" if resp.status_code == 200 else "unhealthy"
            except httpx.RequestError:
                dependencies[name] = "unreachable"

    healthy = db_status == "connected" and all(s == "healthy" for s in dependencies.values())
    if not healthy:
        logger.error(f"Health Check Failed: DB={db_status}, Dependencies={dependencies}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="cart-service",
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies=dependencies
    )
