"""
Authentication routes and dependencies
"""

import logging
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from auth_utils import create_jwt, decode_jwt, hash_password, verify_password
from crud.user import UserRepository
from database import get_db
from database_models import User
from models.user import LoginRequest, SignupRequest, UserOut, UserRole
from utils.errors import AuthError, ConflictError, ForbiddenError, ValidationError
from utils.responses import success_response
from utils.security_utils import validate_email, validate_password_strength

logger = logging.getLogger(__name__)

# JWT expiration is 7 days = 604800 seconds
AUTH_COOKIE_MAX_AGE = 604800

# Create auth router
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


def _user_out(user: User) -> dict:
    return UserOut(
        user_id=str(user.id),
        email=user.email,
        name=user.name,
        role=user.role,
        subscription_tier=user.subscription_tier,
        is_active=user.is_active,
        created_at=user.created_at,
    ).model_dump(mode="json")


def _token_response(user: User, message: str) -> JSONResponse:
    """Build the auth response and set the httpOnly token cookie"""
    token = create_jwt(str(user.id))
    response = success_response(
        data={"user": _user_out(user), "token": token},
        message=message,
    )
    response.set_cookie(
        key="auth_token",
        value=token,
        httponly=True,
        secure=True,
        samesite="Lax",
        max_age=AUTH_COOKIE_MAX_AGE,
    )
    return response


@auth_router.post("/signup")
async def signup(request: SignupRequest, db: AsyncSession = Depends(get_db)):
    """Create a new account on the FREE tier"""
    if not validate_email(request.email):
        raise ValidationError("Invalid email format")

    try:
        validate_password_strength(request.password)
    except ValueError as e:
        raise ValidationError(str(e))

    user_repo = UserRepository(db)
    if await user_repo.get_user_by_email(request.email):
        raise ConflictError("Email already registered")

    user = await user_repo.create_user({
        "email": request.email,
        "hashed_password": hash_password(request.password),
        "name": request.name,
    })
    logger.info(f"User registered: {user.id}")
    return _token_response(user, "Account created successfully")


@auth_router.post("/login")
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Login and get JWT token"""
    user = await UserRepository(db).get_user_by_email(request.email)
    if not user or not verify_password(request.password, user.hashed_password):
        raise AuthError("Invalid email or password")

    if not user.is_active:
        raise AuthError("User account is inactive")

    return _token_response(user, "Login successful")


@auth_router.post("/logout")
async def logout():
    """Logout and clear auth token cookie"""
    response = success_response(message="Logged out successfully")
    response.set_cookie(
        key="auth_token",
        value="",
        httponly=True,
        secure=True,
        samesite="Lax",
        max_age=0,
    )
    return response


# Dependency for protected routes
async def get_current_user(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Dependency function to get current authenticated user.

    Authentication priority:
    1. Check auth_token cookie first (httpOnly cookie set by login/signup)
    2. Fallback to Authorization header (Bearer token) for API consumers
    3. Raise AuthError (401) if neither is found
    """
    token = None
    if auth_token:
        token = auth_token
    elif authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()

    if not token:
        raise AuthError("Access token required")

    payload = decode_jwt(token)
    if not payload:
        raise AuthError("Invalid or expired token")

    # JWT stores the user id as a string
    try:
        user_id = int(payload.get("sub"))
    except (ValueError, TypeError):
        raise AuthError("Invalid token payload")

    user = await UserRepository(db).get_user_by_id(user_id)
    if user is None:
        raise AuthError("User not found")

    if not user.is_active:
        raise AuthError("User account is inactive")

    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.ADMIN:
        raise ForbiddenError("Insufficient permissions")
    return current_user


@auth_router.get("/me")
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current user information from JWT token"""
    return success_response(data={"user": _user_out(current_user)})
