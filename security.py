"""
Authentication and role-based access.

Bearer tokens carry the user id in ``sub``. Route handlers ask for a
capability through ``require(action)``; which roles hold which capability is
decided in one place, the POLICY table below.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header
from jose import JWTError, jwt
from passlib.context import CryptContext

import config
import database
from errors import AuthenticationError, AuthorizationError

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# action -> roles allowed to perform it
POLICY = {
    "manage_orders": {"admin"},
    "manage_catalog": {"admin"},
    "manage_customers": {"admin"},
    "manage_settings": {"admin"},
    "review_delivery_applications": {"admin"},
    "view_reports": {"admin"},
    "deliver_orders": {"delivery"},
}


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=config.JWT_EXPIRE_DAYS))
    return jwt.encode({"sub": user_id, "exp": expire}, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise AuthenticationError("Not authorized, token failed")


def public_user(user: dict) -> dict:
    user = dict(user)
    user.pop("password_hash", None)
    return user


def is_allowed(role: Optional[str], action: str) -> bool:
    return role in POLICY.get(action, set())


# Dependency to get current user

def get_current_user(authorization: Optional[str] = Header(default=None)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Not authorized, no token")
    payload = decode_token(authorization.split(" ", 1)[1])
    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Not authorized, token failed")
    user = database.get_document_by_id("user", user_id)
    if not user:
        raise AuthenticationError("Not authorized, user not found")
    return public_user(user)


def get_optional_user(authorization: Optional[str] = Header(default=None)) -> Optional[dict]:
    if not authorization:
        return None
    return get_current_user(authorization)


def require(action: str):
    """Dependency factory: the current user, provided their role may do ``action``."""

    def dependency(user: dict = Depends(get_current_user)) -> dict:
        if not is_allowed(user.get("role"), action):
            raise AuthorizationError(f"Not authorized to {action.replace('_', ' ')}")
        return user

    return dependency
