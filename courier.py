"""
uEngage courier integration (outbound side).

The inbound webhook is reconciled by orders.apply_courier_event; this module
holds the courier's status vocabulary and the fire-once HTTP calls we make to
the courier. No retries: a failed call surfaces as ExternalServiceError.
"""

import logging
from typing import Any, Dict

import httpx

import config
from errors import ExternalServiceError

logger = logging.getLogger(__name__)

# courier status code -> internal order status
STATUS_MAP = {
    "ACCEPTED": "confirmed",
    "SEARCHING_FOR_NEW_RIDER": "confirmed",
    "ALLOTTED": "out_for_delivery",
    "ARRIVED": "out_for_delivery",
    "DISPATCHED": "out_for_delivery",
    "ARRIVED_AT_DOORSTEP": "out_for_delivery",
    "ARRIVED_CUSTOMER_DOORSTEP": "out_for_delivery",
    "RTO_INIT": "out_for_delivery",
    "DELIVERED": "delivered",
    "RTO_COMPLETE": "delivered",
    "CANCELLED": "cancelled",
}


def is_configured() -> bool:
    return bool(config.UENGAGE_BASE and config.UENGAGE_TOKEN)


def _post(path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if not is_configured():
        raise ExternalServiceError("Courier integration is not configured")
    url = f"{config.UENGAGE_BASE.rstrip('/')}/{path}"
    try:
        response = httpx.post(
            url,
            json=payload,
            headers={"access-token": config.UENGAGE_TOKEN},
            timeout=config.COURIER_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("courier call %s failed: %s", path, exc)
        raise ExternalServiceError(f"Courier request failed: {path}") from exc


def track_task(task_id: str) -> Dict[str, Any]:
    return _post("trackTaskStatus", {"storeId": config.STORE_ID, "taskId": task_id})


def cancel_task(task_id: str) -> Dict[str, Any]:
    return _post("cancelTask", {"storeId": config.STORE_ID, "taskId": task_id})


def check_serviceability(pickup: Dict[str, Any], drop: Dict[str, Any]) -> Dict[str, Any]:
    return _post("getServiceability", {"store_id": config.STORE_ID, "pickupDetails": pickup, "dropDetails": drop})
