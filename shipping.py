"""
Delivery settings singleton and delivery-charge quotes.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

import courier
import database
from errors import NotFoundError, ValidationError
from schemas import DeliverySettings, StoreLocation
from security import get_current_user, require

logger = logging.getLogger(__name__)

COLLECTION = "deliverysettings"
EARTH_RADIUS_KM = 6371.0

router = APIRouter(tags=["shipping"])


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def get_settings() -> Optional[dict]:
    return database.find_document(COLLECTION, {})


def require_settings() -> dict:
    settings = get_settings()
    if not settings:
        raise NotFoundError("Delivery settings not found")
    return settings


def active_stores(settings: dict) -> List[dict]:
    return [s for s in settings.get("store_locations") or [] if s.get("is_active")]


def quote(latitude: float, longitude: float, items_price: float = 0) -> Dict[str, Any]:
    settings = require_settings()
    stores = active_stores(settings)
    if not stores:
        raise ValidationError("No active store location")
    distance, store = min(
        ((haversine_km(latitude, longitude, s["latitude"], s["longitude"]), s) for s in stores),
        key=lambda pair: pair[0],
    )
    threshold = settings.get("free_delivery_threshold", 0)
    if threshold > 0 and items_price >= threshold:
        charge = 0.0
    else:
        charge = settings.get("base_charge", 0) + settings.get("price_per_km", 0) * distance
    return {
        "store_id": store.get("store_id"),
        "nearest_store": store["name"],
        "distance": round(distance, 2),
        "delivery_charge": round(charge, 2),
        "free_delivery_threshold": threshold,
    }


def save_settings(payload: DeliverySettings) -> dict:
    """Create or replace the singleton. At least one active store is required."""
    if not any(store.is_active for store in payload.store_locations):
        raise ValidationError("At least one store must be active")
    data = payload.model_dump()
    for store in data["store_locations"]:
        store["name"] = store["name"].strip()
        store["store_id"] = store.get("store_id") or database.new_id()

    current = get_settings()
    if current:
        database.update_document(COLLECTION, current["_id"], data)
        settings_id = current["_id"]
    else:
        settings_id = database.create_document(COLLECTION, data)
    logger.info("delivery settings saved with %d store(s)", len(data["store_locations"]))
    return database.get_document_by_id(COLLECTION, settings_id)


# ===================== Routes =====================

class QuoteRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    items_price: float = Field(0, ge=0)


class AvailabilityRequest(BaseModel):
    pickup: Dict[str, Any]
    drop: Dict[str, Any]


@router.get("/admin/delivery-settings")
def get_delivery_settings(user: dict = Depends(require("manage_settings"))):
    settings = get_settings()
    if not settings:
        return {
            **DeliverySettings.model_construct(store_locations=[]).model_dump(),
            "message": "Store locations not configured yet",
        }
    return settings


@router.put("/admin/delivery-settings")
def put_delivery_settings(payload: DeliverySettings, user: dict = Depends(require("manage_settings"))):
    return save_settings(payload)


@router.get("/admin/delivery-locations")
def get_delivery_locations(user: dict = Depends(require("manage_settings"))):
    settings = require_settings()
    return [
        {"store_id": s.get("store_id"), "name": s["name"], "city": s.get("city")}
        for s in active_stores(settings)
    ]


@router.get("/user/delivery-settings")
def get_public_delivery_settings():
    settings = require_settings()
    return {
        "price_per_km": settings.get("price_per_km"),
        "base_charge": settings.get("base_charge"),
        "free_delivery_threshold": settings.get("free_delivery_threshold"),
        "store_locations": [StoreLocation(**s).model_dump() for s in active_stores(settings)],
    }


@router.post("/user/delivery-quote")
def post_delivery_quote(payload: QuoteRequest):
    return quote(payload.latitude, payload.longitude, payload.items_price)


@router.post("/user/check-availability")
def post_check_availability(payload: AvailabilityRequest, user: dict = Depends(get_current_user)):
    return courier.check_serviceability(payload.pickup, payload.drop)
