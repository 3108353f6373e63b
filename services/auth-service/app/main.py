from fastapi import FastAPI, Depends, HTTPException, status, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError
from datetime import timedelta, datetime
from typing import List
import os
import sys

# Add the parent directory to sys.path to resolve shared imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../")))

from shared.utils import (
    get_db_client, settings, get_password_hash, verify_password,
    create_access_token, create_refresh_token, verify_refresh_token,
    require_auth, require_admin, str_to_oid,
    SuccessResponse, HealthResponse, NotFoundException, UnauthorizedException
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter, AUTH_LIMIT

from app.schemas import (
    UserRegister, UserLogin, Token, RefreshTokenRequest, RoleUpdate,
    UserResponse, LoginResponse
)
from app.models import UserDB

# Setup Logging
logger = setup_logging("auth-service", settings.LOG_LEVEL)

app = FastAPI(title="Auth Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware, service_name="auth-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client.auth_db
    await app.mongodb.users.create_index("email", unique=True)
    await app.mongodb.users.create_index("username", unique=True)
    # Create TTL index for revoked tokens
    await app.mongodb.revoked_tokens.create_index("exp", expireAfterSeconds=0)

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Helpers ---
def user_response(doc: dict) -> UserResponse:
    return UserResponse(
        id=str(doc["_id"]),
        username=doc["username"],
        email=doc["email"],
        role=doc["role"],
        created_at=doc["created_at"],
    )

def issue_tokens(user: dict) -> Token:
    claims = {"sub": str(user["_id"]), "role": user["role"]}
    return Token(
        access_token=create_access_token(
            data=claims,
            expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        ),
        refresh_token=create_refresh_token(data=claims),
        token_type="bearer"
    )

def set_token_cookie(response: Response, access_token: str):
    response.set_cookie(
        "token",
        access_token,
        httponly=True,
        secure=True,
        samesite="strict",
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )

async def revoke(payload: dict):
    if "jti" in payload:
        await app.mongodb.revoked_tokens.insert_one({
            "jti": payload["jti"],
            "exp": datetime.utcfromtimestamp(payload["exp"])
        })

async def ensure_not_revoked(payload: dict):
    if "jti" in payload and await app.mongodb.revoked_tokens.find_one({"jti": payload["jti"]}):
        raise UnauthorizedException("Token has been revoked")

# --- Endpoints ---

@app.post("/register", response_model=SuccessResponse[UserResponse], status_code=status.HTTP_201_CREATED)
async def register(user: UserRegister):
    existing_user = await app.mongodb.users.find_one(
        {"$or": [{"email": user.email}, {"username": user.username}]}
    )
    if existing_user:
        raise HTTPException(status_code=400, detail="User with this email or username already exists")

    user_db = UserDB(
        username=user.username,
        email=user.email,
        password_hash=get_password_hash(user.password),
    )
    new_user = await app.mongodb.users.insert_one(user_db.dict(by_alias=True, exclude={"id"}))
    created_user = await app.mongodb.users.find_one({"_id": new_user.inserted_id})
    logger.info("User registered", extra={"user_id": str(new_user.inserted_id)})

    return SuccessResponse(data=user_response(created_user), message="User registered successfully")

@app.post("/login", response_model=SuccessResponse[LoginResponse])
@limiter.limit(AUTH_LIMIT)
async def login(user_credentials: UserLogin, request: Request, response: Response):
    user = await app.mongodb.users.find_one({"email": user_credentials.email})
    if not user or not verify_password(user_credentials.password, user["password_hash"]):
        raise UnauthorizedException("Incorrect email or password")

    token = issue_tokens(user)
    set_token_cookie(response, token.access_token)
    return SuccessResponse(data=LoginResponse(user=user_response(user), token=token), message="Login successful")

@app.get("/verify", response_model=SuccessResponse[dict])
async def verify(payload: dict = Depends(require_auth)):
    await ensure_not_revoked(payload)
    return SuccessResponse(data=payload, message="Token is valid")

@app.post("/refresh", response_model=SuccessResponse[Token])
async def refresh_token(request: RefreshTokenRequest, response: Response):
    payload = verify_refresh_token(request.refresh_token)
    await ensure_not_revoked(payload)

    # Rotate: the presented refresh token cannot be used again
    await revoke(payload)
    user = {"_id": payload["sub"], "role": payload["role"]}
    token = issue_tokens(user)
    set_token_cookie(response, token.access_token)
    return SuccessResponse(data=token)

@app.post("/logout", response_model=SuccessResponse[dict])
async def logout(request: RefreshTokenRequest, response: Response, payload: dict = Depends(require_auth)):
    await revoke(payload)
    await revoke(verify_refresh_token(request.refresh_token))
    response.delete_cookie("token")
    return SuccessResponse(message="Logged out successfully")

@app.get("/me", response_model=SuccessResponse[UserResponse])
async def get_current_user(payload: dict = Depends(require_auth)):
    await ensure_not_revoked(payload)
    user = await app.mongodb.users.find_one({"_id": str_to_oid(payload["sub"])})
    if not user:
        raise NotFoundException("User not found")
    return SuccessResponse(data=user_response(user))

# Admin
@app.get("/users", response_model=SuccessResponse[List[UserResponse]])
async def list_users(payload: dict = Depends(require_admin)):
    users = [user_response(doc) async for doc in app.mongodb.users.find({}).sort("created_at", -1)]
    return SuccessResponse(data=users)

@app.get("/users/{user_id}", response_model=SuccessResponse[UserResponse])
async def get_user(user_id: str, payload: dict = Depends(require_admin)):
    user = await app.mongodb.users.find_one({"_id": str_to_oid(user_id)})
    if not user:
        raise NotFoundException("User not found")
    return SuccessResponse(data=user_response(user))

@app.patch("/users/{user_id}/role", response_model=SuccessResponse[UserResponse])
async def update_user_role(user_id: str, update: RoleUpdate, payload: dict = Depends(require_admin)):
    result = await app.mongodb.users.update_one(
        {"_id": str_to_oid(user_id)},
        {"$set": {"role": update.role, "updated_at": datetime.utcnow()}}
    )
    if result.matched_count == 0:
        raise NotFoundException("User not found")
    logger.info("User role updated", extra={"user_id": user_id})

    user = await app.mongodb.users.find_one({"_id": str_to_oid(user_id)})
    return SuccessResponse(data=user_response(user), message="User role updated successfully")

@app.get("/health", response_model=HealthResponse)
async def health_check():
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except PyMongoError:
        db_status = "disconnected"

    if db_status != "connected":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="auth-service",
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status
    )
