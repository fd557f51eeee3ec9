"""
Order lifecycle engine.

    placed -> confirmed -> out_for_delivery -> delivered
       \\___________\\______________\\________-> cancelled

``status`` is the only stored lifecycle field. ``is_delivered`` and
``is_paid`` are projected from it (and from ``paid_at``) whenever an order is
read, so the flags can never disagree with the status.

Every transition is a compare-and-set on the order's (status, version): the
guard is evaluated against the order as read, and the write only lands if
nobody changed the order in between. On a lost race the guard is evaluated
again against the fresh order.

Actors:
- customers place and cancel their own orders,
- admins move orders between statuses and assign delivery partners,
- delivery partners mark their assigned orders delivered,
- the uEngage courier reports progress through an unauthenticated webhook
  that may deliver events more than once and out of order.
"""

import logging
from typing import Callable, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

import catalog
import courier
import database
import shipping
from errors import (
    AuthorizationError,
    ConflictError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from schemas import Order, OrderItem, OrderStatus, ShippingAddress
from security import get_current_user, require

logger = logging.getLogger(__name__)

STATUSES = ("placed", "confirmed", "out_for_delivery", "delivered", "cancelled")
TERMINAL = {"delivered", "cancelled"}
CUSTOMER_CANCELLABLE = {"placed", "confirmed"}

# Courier events only ever move an order forward along this ranking.
STATUS_RANK = {
    "placed": 0,
    "confirmed": 1,
    "out_for_delivery": 2,
    "cancelled": 3,
    "delivered": 4,
}

MAX_ATTEMPTS = 3
ADMIN_CANCEL_REASON = "Cancelled by admin"
COURIER_CANCEL_REASON = "Cancelled by delivery partner"


# ===================== Projection =====================

def project_order(order: dict) -> dict:
    order = dict(order)
    order["is_delivered"] = order.get("status") == "delivered"
    order["is_paid"] = order.get("paid_at") is not None
    return order


# ===================== Transition machinery =====================

def status_changes(order: dict, target: str, reason: Optional[str] = None, release_assignment: bool = False) -> Dict:
    """Fields that change when ``order`` moves into ``target``."""
    now = database.utcnow()
    changes = {"status": target}
    if target == "delivered" and order.get("status") != "delivered":
        changes["delivered_at"] = now
        changes["cancel_reason"] = None
        changes["cancelled_at"] = None
    if target == "cancelled":
        changes["cancel_reason"] = reason
        changes["cancelled_at"] = now
        if release_assignment:
            changes["delivery_person"] = None
            changes["eta"] = None
    return changes


def _ensure_not_terminal(order: dict) -> None:
    if order["status"] in TERMINAL:
        raise InvalidTransitionError(f"Order is already {order['status']} and cannot be modified")


def _transition(order_id: str, decide: Callable[[dict], Optional[Dict]], action: str) -> dict:
    """Apply ``decide(order)`` to the order as a compare-and-set update.

    ``decide`` raises to reject, returns None for a no-op, or returns the
    fields to set.
    """
    for _ in range(MAX_ATTEMPTS):
        order = database.require_document("order", order_id, "Order")
        changes = decide(order)
        if changes is None:
            return order
        updated = database.update_versioned("order", order, changes, extra_filter={"status": order["status"]})
        if updated is not None:
            if updated["status"] != order["status"]:
                logger.info("order %s %s -> %s (%s)", order_id, order["status"], updated["status"], action)
            return updated
        logger.info("order %s changed during %s, re-checking", order_id, action)
    raise ConflictError("Order was modified concurrently, please retry")


# ===================== Checkout =====================

class CheckoutItem(BaseModel):
    product_id: str
    qty: int = Field(..., ge=1)
    variant_index: Optional[int] = Field(None, ge=0)


class CheckoutRequest(BaseModel):
    order_items: Optional[List[CheckoutItem]] = None
    shipping_address: ShippingAddress
    payment_method: str = Field(..., min_length=1)
    delivery_mode: Literal["delivery", "pickup"] = "delivery"
    tax_price: float = Field(0, ge=0)
    shipping_price: float = Field(0, ge=0)
    total_price: float = Field(..., ge=0)
    distance: Optional[float] = Field(None, ge=0)
    nearest_store: Optional[str] = None


def _snapshot(item: CheckoutItem) -> OrderItem:
    product = database.get_document_by_id("product", item.product_id)
    if not product or not product.get("is_active", True):
        raise ValidationError(f"Product not found: {item.product_id}")
    variant_index, name, price = catalog.resolve_variant(product, item.variant_index)
    images = product.get("images") or []
    return OrderItem(
        product_id=product["_id"],
        name=name,
        price=price,
        image=images[0] if images else "",
        qty=item.qty,
        variant_index=variant_index,
    )


def _routing(request: CheckoutRequest, items_price: float) -> Dict:
    if request.distance is not None or request.nearest_store:
        return {"distance": request.distance, "nearest_store": request.nearest_store}
    address = request.shipping_address
    if address.latitude is None or address.longitude is None:
        return {}
    try:
        quote = shipping.quote(address.latitude, address.longitude, items_price)
    except (NotFoundError, ValidationError) as exc:
        logger.info("no delivery routing for checkout: %s", exc.message)
        return {}
    return {"distance": quote["distance"], "nearest_store": quote["nearest_store"]}


def create_order(user: dict, request: CheckoutRequest) -> dict:
    """Place an order from the request items, or from the user's cart.

    Item name/price/image are copied from live product data. The totals are
    stored as supplied by the client. When the order is routed to a store,
    the items are taken out of that store's stock before the order is saved.
    """
    lines = request.order_items
    if lines is None:
        lines = [CheckoutItem(**line) for line in user.get("cart") or []]
    if not lines:
        raise ValidationError("No order items")

    items = [_snapshot(line) for line in lines]
    items_price = round(sum(i.price * i.qty for i in items), 2)
    expected_total = round(items_price + request.tax_price + request.shipping_price, 2)
    if abs(expected_total - request.total_price) > 0.01:
        logger.warning(
            "checkout for user %s: supplied total %.2f differs from computed %.2f",
            user["_id"], request.total_price, expected_total,
        )

    routing = _routing(request, items_price)
    stock_location = (routing.get("nearest_store") or "").strip().lower() or None
    if stock_location:
        catalog.reserve_stock([i.model_dump() for i in items], stock_location)
    else:
        logger.info("checkout for user %s has no store, stock left untouched", user["_id"])

    order = Order(
        user_id=user["_id"],
        order_items=items,
        shipping_address=request.shipping_address,
        payment_method=request.payment_method,
        items_price=items_price,
        tax_price=request.tax_price,
        shipping_price=request.shipping_price,
        total_price=request.total_price,
        delivery_mode=request.delivery_mode,
        stock_location=stock_location,
        **routing,
    )
    order_id = database.create_document("order", order)
    database.update_document("user", user["_id"], {"cart": []})
    logger.info("order %s placed by user %s", order_id, user["_id"])
    return project_order(database.get_document_by_id("order", order_id))


def restore_stock(order: dict) -> None:
    """Return a cancelled order's items to the store they were taken from."""
    if order.get("stock_location"):
        catalog.release_stock(order["order_items"], order["stock_location"])
        logger.info("stock for order %s returned to %s", order["_id"], order["stock_location"])


# ===================== Customer =====================

def get_customer_order(order_id: str, user: dict) -> dict:
    order = database.require_document("order", order_id, "Order")
    if order["user_id"] != user["_id"]:
        raise AuthorizationError("Not authorized to view this order")
    return order


def cancel_by_customer(order_id: str, user: dict, reason: Optional[str]) -> dict:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Cancellation reason is required")

    def decide(order: dict) -> Dict:
        if order["user_id"] != user["_id"]:
            raise AuthorizationError("Not authorized")
        if order["status"] not in CUSTOMER_CANCELLABLE:
            raise InvalidTransitionError("Order cannot be cancelled")
        return status_changes(order, "cancelled", reason)

    order = _transition(order_id, decide, "customer cancel")
    restore_stock(order)
    return project_order(order)


# ===================== Admin =====================

def _cancel_courier_task(order: dict) -> dict:
    task_id = (order.get("uengage") or {}).get("task_id")
    if not task_id or order.get("delivery_mode") == "pickup":
        return order
    try:
        courier.cancel_task(task_id)
        outcome = {"uengage.status_code": "CANCELLED", "uengage.message": ADMIN_CANCEL_REASON}
    except ExternalServiceError:
        outcome = {"uengage.status_code": "CANCEL_FAILED", "uengage.message": "Failed to cancel delivery task"}
    database.update_document("order", order["_id"], outcome)
    return database.get_document_by_id("order", order["_id"])


def admin_update_status(order_id: str, status: str, reason: Optional[str] = None) -> dict:
    if status not in STATUSES:
        raise ValidationError(f"status must be one of {', '.join(STATUSES)}")

    def decide(order: dict) -> Optional[Dict]:
        _ensure_not_terminal(order)
        if order["status"] == status:
            return None
        changes = status_changes(order, status, (reason or "").strip() or ADMIN_CANCEL_REASON, release_assignment=True)
        if status == "confirmed" and order.get("paid_at") is None:
            changes["paid_at"] = database.utcnow()
        return changes

    order = _transition(order_id, decide, "admin update")
    if status == "cancelled":
        restore_stock(order)
        order = _cancel_courier_task(order)
    return project_order(order)


def admin_set_delivered(order_id: str, is_delivered: bool) -> dict:
    """Legacy flag endpoint, expressed through the status machine."""
    if is_delivered:
        return admin_update_status(order_id, "delivered")
    order = database.require_document("order", order_id, "Order")
    if order["status"] == "delivered":
        raise InvalidTransitionError("Delivered order cannot be modified")
    return project_order(order)


def assign_delivery_person(order_id: str, delivery_person_id: str, eta: str) -> dict:
    person = database.get_document_by_id("user", delivery_person_id)
    if not person or person.get("role") != "delivery":
        raise ValidationError("Invalid delivery person ID or not a delivery role")

    def decide(order: dict) -> Dict:
        _ensure_not_terminal(order)
        changes = {"delivery_person": person["_id"], "eta": eta}
        if STATUS_RANK[order["status"]] < STATUS_RANK["confirmed"]:
            changes["status"] = "confirmed"
        return changes

    order = _transition(order_id, decide, "assign delivery")
    logger.info("order %s assigned to delivery partner %s", order_id, person["_id"])
    return project_order(order)


def list_orders(status: Optional[str] = None) -> List[dict]:
    filter_dict = {"status": status} if status else {}
    orders = database.get_documents("order", filter_dict, sort=[("created_at", -1)])
    return [project_order(o) for o in attach_people(orders)]


def attach_people(orders: List[dict]) -> List[dict]:
    """Attach {username, email, phone} for the customer and delivery partner."""
    ids = {o["user_id"] for o in orders} | {o["delivery_person"] for o in orders if o.get("delivery_person")}
    oids = [oid for oid in (database.to_object_id(i) for i in ids) if oid is not None]
    people = {
        u["_id"]: u
        for u in database.get_documents("user", {"_id": {"$in": oids}}, projection={"username": 1, "email": 1, "phone": 1})
    }
    for order in orders:
        order["customer"] = people.get(order["user_id"])
        if order.get("delivery_person"):
            order["delivery_partner"] = people.get(order["delivery_person"])
    return orders


# ===================== Delivery partner =====================

def list_assigned_orders(partner: dict) -> List[dict]:
    orders = database.get_documents("order", {"delivery_person": partner["_id"]}, sort=[("created_at", -1)])
    return [project_order(o) for o in attach_people(orders)]


def mark_delivered(order_id: str, partner: dict) -> dict:
    def decide(order: dict) -> Dict:
        if order.get("delivery_person") != partner["_id"]:
            raise AuthorizationError("Not authorized to deliver this order")
        _ensure_not_terminal(order)
        return status_changes(order, "delivered")

    return project_order(_transition(order_id, decide, "partner delivered"))


# ===================== Courier =====================

def _resolve_courier_order(reference: str) -> Optional[dict]:
    order = database.get_document_by_id("order", reference)
    if order:
        return order
    return database.find_document("order", {"uengage.vendor_order_id": reference})


def apply_courier_event(payload: dict) -> Optional[dict]:
    """Reconcile one courier status event into the order.

    Returns the order after the event, or None when the event names no known
    order. Events that would move the order backwards are ignored; an event
    repeating the current status only refreshes the courier metadata.
    """
    status_code = payload.get("status_code")
    message = payload.get("message") or ""
    data = payload.get("data") or {}
    reference = data.get("vendor_order_id") or data.get("orderId")
    if not reference:
        logger.warning("courier event without vendor_order_id: %s", status_code)
        return None
    order = _resolve_courier_order(str(reference))
    if not order:
        logger.warning("courier event for unknown order %s", reference)
        return None

    def decide(order: dict) -> Optional[Dict]:
        current = order["status"]
        target = courier.STATUS_MAP.get(status_code)
        if target is not None and STATUS_RANK[target] < STATUS_RANK[current]:
            logger.warning("order %s: ignoring stale courier status %s while %s", order["_id"], status_code, current)
            return None

        state = dict(order.get("uengage") or {})
        state.update(
            task_id=data.get("taskId") or state.get("task_id"),
            vendor_order_id=str(reference),
            status_code=status_code,
            message=message,
        )
        changes = {"uengage": state}
        if target is not None and target != current:
            reason = order.get("cancel_reason") or message or COURIER_CANCEL_REASON
            changes.update(status_changes(order, target, reason))
        return changes

    return _transition(order["_id"], decide, f"courier {status_code}")


def track_order(order_id: str, user: dict) -> dict:
    order = get_customer_order(order_id, user)
    task_id = (order.get("uengage") or {}).get("task_id")
    if not task_id:
        raise ValidationError("Tracking not available for this order")

    data = courier.track_task(task_id)
    order = apply_courier_event({
        "status_code": data.get("status_code"),
        "message": data.get("message"),
        "data": {"vendor_order_id": order["_id"], "taskId": task_id},
    })
    order = project_order(order)
    return {
        "status": data.get("status_code"),
        "status_label": data.get("message") or data.get("status_code"),
        "tracking": data.get("data"),
        "order": {
            "status": order["status"],
            "is_delivered": order["is_delivered"],
            "delivered_at": order.get("delivered_at"),
        },
    }


# ===================== Routes =====================

class CancelRequest(BaseModel):
    reason: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None


class DeliveryFlagRequest(BaseModel):
    is_delivered: bool


class AssignDeliveryRequest(BaseModel):
    delivery_person_id: str = Field(..., min_length=1)
    eta: str = Field(..., min_length=1)


router = APIRouter(tags=["orders"])


@router.post("/user/checkout", status_code=201)
def checkout(payload: CheckoutRequest, user: dict = Depends(get_current_user)):
    return {"message": "Order placed successfully", "order": create_order(user, payload)}


@router.get("/user/orders")
def get_my_orders(user: dict = Depends(get_current_user)):
    orders = database.get_documents("order", {"user_id": user["_id"]}, sort=[("created_at", -1)])
    return [project_order(o) for o in orders]


@router.get("/user/orders/{order_id}")
def get_my_order(order_id: str, user: dict = Depends(get_current_user)):
    return project_order(get_customer_order(order_id, user))


@router.put("/user/orders/{order_id}/cancel")
def cancel_my_order(order_id: str, payload: CancelRequest, user: dict = Depends(get_current_user)):
    return {"message": "Order cancelled successfully", "order": cancel_by_customer(order_id, user, payload.reason)}


@router.get("/user/orders/{order_id}/track")
def track_my_order(order_id: str, user: dict = Depends(get_current_user)):
    return track_order(order_id, user)


@router.get("/admin/orders")
def get_all_orders(status: Optional[str] = None, user: dict = Depends(require("manage_orders"))):
    return list_orders(status)


@router.put("/admin/orders/{order_id}/status")
def put_order_status(order_id: str, payload: StatusUpdateRequest, user: dict = Depends(require("manage_orders"))):
    return admin_update_status(order_id, payload.status, payload.reason)


@router.put("/admin/orders/{order_id}/delivery")
def put_order_delivery(order_id: str, payload: DeliveryFlagRequest, user: dict = Depends(require("manage_orders"))):
    return admin_set_delivered(order_id, payload.is_delivered)


@router.put("/admin/orders/{order_id}/assign-delivery")
def put_assign_delivery(order_id: str, payload: AssignDeliveryRequest, user: dict = Depends(require("manage_orders"))):
    return assign_delivery_person(order_id, payload.delivery_person_id, payload.eta)


@router.get("/delivery/orders")
def get_assigned_orders(user: dict = Depends(require("deliver_orders"))):
    return list_assigned_orders(user)


@router.put("/delivery/orders/{order_id}/deliver")
def put_delivered(order_id: str, user: dict = Depends(require("deliver_orders"))):
    return mark_delivered(order_id, user)


@router.post("/uEngage/callback")
async def courier_callback(request: Request):
    # Always 200: the courier retries anything else.
    try:
        payload = await request.json()
        logger.info("uEngage webhook received: %s", payload)
        if isinstance(payload, dict):
            await run_in_threadpool(apply_courier_event, payload)
        else:
            logger.warning("uEngage webhook with non-object body ignored")
    except Exception:
        logger.exception("uEngage webhook failed")
    return {"status": True}
