"""
Accounts: registration, login, profile, phone OTP and saved addresses.
"""

import logging
import secrets
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field

import config
import database
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from schemas import Address, Otp, User
from security import create_access_token, get_current_user, get_optional_user, hash_password, public_user, verify_password

logger = logging.getLogger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])
address_router = APIRouter(prefix="/user/addresses", tags=["addresses"])


# ============ Auth models ==========

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(None, min_length=10, max_length=15)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class OtpSendRequest(BaseModel):
    phone: str = Field(..., min_length=10, max_length=15)


class OtpVerifyRequest(BaseModel):
    phone: str = Field(..., min_length=10, max_length=15)
    code: str = Field(..., min_length=6, max_length=6)


def _session(user: dict) -> dict:
    return {"token": create_access_token(user["_id"]), "user": public_user(user)}


def register(payload: RegisterRequest) -> dict:
    email = payload.email.lower()
    clauses = [{"email": email}, {"username": payload.username}]
    if payload.phone:
        clauses.append({"phone": payload.phone})
    existing = database.find_document("user", {"$or": clauses})
    if existing:
        if existing.get("email") == email:
            raise ConflictError("Email already registered")
        if existing.get("username") == payload.username:
            raise ConflictError("Username already taken")
        raise ConflictError("Phone number already registered")

    user = User(
        username=payload.username,
        email=email,
        phone=payload.phone,
        password_hash=hash_password(payload.password),
    )
    user_id = database.create_document("user", user)
    logger.info("user %s registered", user_id)
    return _session(database.get_document_by_id("user", user_id))


def login(payload: LoginRequest) -> dict:
    user = database.find_document("user", {"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user["password_hash"]):
        raise AuthenticationError("Invalid email or password")
    return _session(user)


# ===================== OTP =====================

def issue_otp(phone: str) -> None:
    """Replace any live code for ``phone`` with a fresh one."""
    code = f"{secrets.randbelow(10 ** 6):06d}"
    expires_at = database.utcnow() + timedelta(minutes=config.OTP_TTL_MINUTES)
    database.collection("otp").replace_one(
        {"phone": phone},
        Otp(phone=phone, code=code, expires_at=expires_at).model_dump(),
        upsert=True,
    )
    # No SMS gateway; the code only goes to the log.
    logger.info("OTP for %s: %s", phone, code)


def consume_otp(phone: str, code: str) -> None:
    found = database.collection("otp").find_one_and_delete(
        {"phone": phone, "code": code, "expires_at": {"$gt": database.utcnow()}}
    )
    if found is None:
        raise ValidationError("Invalid or expired OTP")


def verify_phone(user: dict, phone: str) -> dict:
    other = database.find_document("user", {"phone": phone})
    if other and other["_id"] != user["_id"]:
        raise ConflictError("Phone number already registered")
    database.update_document("user", user["_id"], {"phone": phone, "phone_verified": True})
    return public_user(database.get_document_by_id("user", user["_id"]))


@auth_router.post("/register", status_code=201)
def post_register(payload: RegisterRequest):
    return register(payload)


@auth_router.post("/login")
def post_login(payload: LoginRequest):
    return login(payload)


@auth_router.get("/profile")
def get_profile(user: dict = Depends(get_current_user)):
    return user


@auth_router.post("/otp/send")
def post_otp_send(payload: OtpSendRequest):
    issue_otp(payload.phone)
    return {"message": "OTP sent"}


@auth_router.post("/otp/verify")
def post_otp_verify(payload: OtpVerifyRequest, user: Optional[dict] = Depends(get_optional_user)):
    consume_otp(payload.phone, payload.code)
    if user is None:
        return {"verified": True}
    return {"verified": True, "user": verify_phone(user, payload.phone)}


# ===================== Addresses =====================

class AddressIn(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=10, max_length=15)
    address_line1: str = Field(..., min_length=1)
    address_line2: str = ""
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = "India"
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    location_name: str = ""
    is_default: bool = False


def _with_default(addresses: List[dict], default_id: Optional[str]) -> List[dict]:
    """Copy of ``addresses`` where only ``default_id`` is flagged default."""
    return [dict(a, is_default=a["_id"] == default_id) for a in addresses]


def _find_address(user: dict, address_id: str) -> dict:
    for address in user.get("addresses") or []:
        if address["_id"] == address_id:
            return address
    raise NotFoundError("Address not found")


def add_address(user_id: str, payload: AddressIn) -> List[dict]:
    address = Address(_id=database.new_id(), **payload.model_dump()).model_dump(by_alias=True)

    def mutate(user: dict):
        addresses = list(user.get("addresses") or []) + [address]
        if address["is_default"] or len(addresses) == 1:
            addresses = _with_default(addresses, address["_id"])
        return {"addresses": addresses}

    return database.modify_document("user", user_id, "User", mutate)["addresses"]


def update_address(user_id: str, address_id: str, payload: AddressIn) -> List[dict]:
    def mutate(user: dict):
        current = _find_address(user, address_id)
        replacement = Address(_id=address_id, **payload.model_dump()).model_dump(by_alias=True)
        addresses = [replacement if a["_id"] == address_id else a for a in user["addresses"]]
        # A default stays default until another address is chosen.
        if replacement["is_default"] or current.get("is_default"):
            addresses = _with_default(addresses, address_id)
        return {"addresses": addresses}

    return database.modify_document("user", user_id, "User", mutate)["addresses"]


def delete_address(user_id: str, address_id: str) -> List[dict]:
    def mutate(user: dict):
        removed = _find_address(user, address_id)
        addresses = [a for a in user["addresses"] if a["_id"] != address_id]
        if removed.get("is_default") and addresses:
            addresses = _with_default(addresses, addresses[0]["_id"])
        return {"addresses": addresses}

    return database.modify_document("user", user_id, "User", mutate)["addresses"]


def set_default_address(user_id: str, address_id: str) -> List[dict]:
    def mutate(user: dict):
        _find_address(user, address_id)
        return {"addresses": _with_default(user["addresses"], address_id)}

    return database.modify_document("user", user_id, "User", mutate)["addresses"]


@address_router.get("")
def get_addresses(user: dict = Depends(get_current_user)):
    return user.get("addresses") or []


@address_router.post("", status_code=201)
def post_address(payload: AddressIn, user: dict = Depends(get_current_user)):
    return add_address(user["_id"], payload)


@address_router.put("/{address_id}")
def put_address(address_id: str, payload: AddressIn, user: dict = Depends(get_current_user)):
    return update_address(user["_id"], address_id, payload)


@address_router.delete("/{address_id}")
def remove_address(address_id: str, user: dict = Depends(get_current_user)):
    return delete_address(user["_id"], address_id)


@address_router.put("/{address_id}/default")
def put_default_address(address_id: str, user: dict = Depends(get_current_user)):
    return set_default_address(user["_id"], address_id)
