import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Cookie, Depends, Header
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import settings
from database import get_db, serialize_doc, to_object_id
from errors import AppError, BadRequest, Forbidden, Unauthorized

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

PRIVATE_USER_FIELDS = (
    "password_hash",
    "refresh_token",
    "password_reset_token",
    "password_reset_expires",
    "email_verification_token",
)


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_refresh_token(user: Dict[str, Any]) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.REFRESH_TOKEN_EXPIRE_MINUTES)
    to_encode = {
        "sub": str(user["_id"]),
        "type": "refresh",
        "exp": expire,
        # two refreshes within the same second must still yield distinct tokens
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(to_encode, settings.JWT_REFRESH_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise Unauthorized("Token expired", code="TOKEN_EXPIRED")
    except JWTError:
        raise Unauthorized("Invalid token", code="INVALID_TOKEN")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def public_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # Never send password hash or tokens
    if not user:
        return user
    out = serialize_doc(user)
    for field in PRIVATE_USER_FIELDS:
        out.pop(field, None)
    return out


def _extract_token(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1]
    return cookie_token


# Dependencies

def get_current_user(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Cookie(default=None),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    raw = _extract_token(authorization, token)
    if not raw:
        raise Unauthorized("Not authorized to access this route", code="NO_TOKEN")
    payload = decode_token(raw)
    user_id = payload.get("sub")
    if payload.get("type") == "refresh" or not isinstance(user_id, str) or not ObjectId.is_valid(user_id):
        raise Unauthorized("Invalid token", code="INVALID_TOKEN")
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise Unauthorized("User no longer exists", code="USER_NOT_FOUND")
    if not user.get("is_active", True):
        raise Unauthorized("User account is deactivated", code="ACCOUNT_DEACTIVATED")
    return user


def get_optional_user(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Cookie(default=None),
    db: Database = Depends(get_db),
) -> Optional[Dict[str, Any]]:
    raw = _extract_token(authorization, token)
    if not raw:
        return None
    try:
        return get_current_user(authorization=f"Bearer {raw}", token=None, db=db)
    except AppError:
        return None


def require_admin(current_user: dict = Depends(get_current_user)) -> Dict[str, Any]:
    if current_user.get("role") != "admin":
        raise Forbidden("Admin access required", code="ADMIN_ACCESS_REQUIRED")
    return current_user


def verify_refresh_token(db: Database, refresh_token: Optional[str]) -> Dict[str, Any]:
    if not refresh_token:
        raise BadRequest("Refresh token is required", code="MISSING_REFRESH_TOKEN")
    try:
        payload = jwt.decode(refresh_token, settings.JWT_REFRESH_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise Unauthorized("Invalid refresh token", code="INVALID_REFRESH_TOKEN")
    user_id = payload.get("sub")
    if payload.get("type") != "refresh" or not isinstance(user_id, str) or not ObjectId.is_valid(user_id):
        raise Unauthorized("Invalid refresh token", code="INVALID_REFRESH_TOKEN")
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise Unauthorized("Invalid refresh token", code="INVALID_REFRESH_TOKEN")
    if not user.get("is_active", True):
        raise Unauthorized("User account is deactivated", code="ACCOUNT_DEACTIVATED")
    if user.get("refresh_token") != refresh_token:
        raise Unauthorized("Invalid refresh token", code="INVALID_REFRESH_TOKEN")
    return user
