"""
Delivery partner onboarding.

    user --apply--> delivery-pending --approve--> delivery
                          \\--reject--> user

Only users whose role is exactly ``delivery`` can be assigned to orders.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

import database
from errors import ConflictError
from schemas import DeliveryProfile
from security import get_current_user, public_user, require

logger = logging.getLogger(__name__)

router = APIRouter(tags=["delivery"])

NO_PENDING = "No pending delivery application for this user"


class DeliveryApplication(BaseModel):
    vehicle_type: str = Field(..., min_length=1)
    license_number: str = Field(..., min_length=1)
    areas: List[str] = []
    aadhar_card_image_url: str = Field(..., min_length=1)
    pan_card_image_url: str = Field(..., min_length=1)
    driving_license_image_url: str = Field(..., min_length=1)


def apply(user: dict, application: DeliveryApplication) -> dict:
    profile = DeliveryProfile(**application.model_dump(), status="pending")

    def mutate(current: dict):
        if current.get("role") == "delivery":
            raise ConflictError("User is already a delivery partner")
        return {"role": "delivery-pending", "delivery_profile": profile.model_dump()}

    updated = database.modify_document("user", user["_id"], "User", mutate)
    logger.info("user %s applied as delivery partner", user["_id"])
    return public_user(updated)


def list_pending() -> List[dict]:
    users = database.get_documents(
        "user",
        {"role": "delivery-pending", "delivery_profile": {"$ne": None}},
        sort=[("updated_at", 1)],
    )
    return [public_user(u) for u in users]


def _review(user_id: str, outcome: str, role: str) -> dict:
    def mutate(user: dict):
        profile = user.get("delivery_profile") or {}
        if user.get("role") != "delivery-pending" or profile.get("status") != "pending":
            raise ConflictError(NO_PENDING)
        return {"role": role, "delivery_profile": dict(profile, status=outcome)}

    updated = database.modify_document("user", user_id, "User", mutate)
    logger.info("delivery application of user %s %s", user_id, outcome)
    return public_user(updated)


def approve(user_id: str) -> dict:
    return _review(user_id, "approved", "delivery")


def reject(user_id: str) -> dict:
    return _review(user_id, "rejected", "user")


def list_delivery_persons() -> List[dict]:
    return database.get_documents(
        "user",
        {"role": "delivery"},
        sort=[("username", 1)],
        projection={"username": 1, "email": 1, "phone": 1, "delivery_profile": 1},
    )


# ===================== Routes =====================

@router.post("/delivery/apply")
def post_apply(payload: DeliveryApplication, user: dict = Depends(get_current_user)):
    return {"message": "Application submitted", "user": apply(user, payload)}


@router.get("/delivery/applications")
def get_applications(user: dict = Depends(require("review_delivery_applications"))):
    return list_pending()


@router.put("/delivery/{user_id}/approve")
def put_approve(user_id: str, user: dict = Depends(require("review_delivery_applications"))):
    return {"message": "Delivery partner approved", "user": approve(user_id)}


@router.put("/delivery/{user_id}/reject")
def put_reject(user_id: str, user: dict = Depends(require("review_delivery_applications"))):
    return {"message": "Delivery application rejected", "user": reject(user_id)}


@router.get("/admin/delivery-persons")
def get_delivery_persons(user: dict = Depends(require("manage_orders"))):
    return list_delivery_persons()
