"""
Admin reporting: counters, revenue, customer views and JSON exports, plus
order invoices for their owner and for admins.

Everything here is read-only. Sales figures only count paid orders.
"""

import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Response
from fastapi.encoders import jsonable_encoder

import database
from errors import AuthorizationError, NotFoundError, ValidationError
from orders import attach_people, project_order
from security import get_current_user, public_user, require

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["reports"])
invoice_router = APIRouter(tags=["invoices"])

PAID = {"paid_at": {"$ne": None}}
PERIOD_KEYS = {"daily": "%Y-%m-%d", "weekly": "%G-W%V", "monthly": "%Y-%m"}
CUSTOMER_FIELDS = ("_id", "username", "email", "phone", "addresses", "created_at", "updated_at")


def attachment(data, filename: str) -> Response:
    body = json.dumps(jsonable_encoder(data), indent=2)
    return Response(
        content=body,
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


def _to_naive_utc(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def start_of_local_day(now: Optional[datetime] = None) -> datetime:
    """Local midnight of ``now``, as naive UTC like the stored timestamps."""
    now = (now or datetime.now(timezone.utc)).astimezone()
    return _to_naive_utc(now.replace(hour=0, minute=0, second=0, microsecond=0))


def period_range(period: str, day: Optional[str], week: Optional[str], month: Optional[str]) -> Tuple[datetime, datetime, str]:
    """[start, end) of a daily/weekly/monthly window, plus the label used in filenames."""
    try:
        if period == "daily" and day:
            start = datetime.strptime(day, "%Y-%m-%d")
            return start, start + timedelta(days=1), day
        if period == "weekly" and week:
            year, number = week.split("-W")
            start = datetime.combine(date.fromisocalendar(int(year), int(number), 1), datetime.min.time())
            return start, start + timedelta(days=7), week
        if period == "monthly" and month:
            start = datetime.strptime(month, "%Y-%m")
            end = start.replace(year=start.year + 1, month=1) if start.month == 12 else start.replace(month=start.month + 1)
            return start, end, month
    except ValueError:
        pass
    raise ValidationError("Invalid period or missing date parameter")


# ===================== Queries =====================

def order_counts_by_user() -> Dict[str, int]:
    rows = database.aggregate("order", [{"$group": {"_id": "$user_id", "count": {"$sum": 1}}}])
    return {row["_id"]: row["count"] for row in rows}


def list_customers() -> List[dict]:
    counts = order_counts_by_user()
    customers = database.get_documents("user", {"role": "user"}, sort=[("created_at", -1)])
    return [dict(public_user(c), total_orders=counts.get(c["_id"], 0)) for c in customers]


def get_customer(customer_id: str) -> dict:
    customer = database.get_document_by_id("user", customer_id)
    if not customer:
        raise NotFoundError("Customer not found")
    history = database.get_documents("order", {"user_id": customer["_id"]}, sort=[("created_at", -1)])
    return dict(public_user(customer), order_history=[project_order(o) for o in history])


def revenue_since(start: datetime) -> float:
    rows = database.aggregate("order", [
        {"$match": {**PAID, "created_at": {"$gte": start}}},
        {"$group": {"_id": None, "total": {"$sum": "$total_price"}}},
    ])
    return rows[0]["total"] if rows else 0


def monthly_sales() -> dict:
    rows = database.aggregate("order", [
        {"$match": PAID},
        {"$group": {
            "_id": {"year": {"$year": "$created_at"}, "month": {"$month": "$created_at"}},
            "total_sales": {"$sum": "$total_price"},
            "count": {"$sum": 1},
        }},
    ])
    rows.sort(key=lambda r: (r["_id"]["year"], r["_id"]["month"]))
    return {"monthly_sales": rows, "total_revenue": sum(r["total_sales"] for r in rows)}


def _orders_between(start: datetime, end: datetime, paid_only: bool = False) -> List[dict]:
    query = {"created_at": {"$gte": start, "$lt": end}}
    if paid_only:
        query.update(PAID)
    return database.get_documents("order", query, sort=[("created_at", 1)])


def sales_for_period(period: str, start: datetime, end: datetime) -> dict:
    orders = _orders_between(start, end, paid_only=True)
    buckets: Dict[str, dict] = {}
    for order in orders:
        key = order["created_at"].strftime(PERIOD_KEYS[period])
        bucket = buckets.setdefault(key, {"_id": key, "total_sales": 0, "order_count": 0, "orders": []})
        bucket["total_sales"] += order["total_price"]
        bucket["order_count"] += 1
        bucket["orders"].append(project_order(order))

    total = sum(o["total_price"] for o in orders)
    return {
        "period": period,
        "date_range": {"start": start, "end": end},
        "summary": {
            "total_revenue": total,
            "total_orders": len(orders),
            "average_order_value": total / len(orders) if orders else 0,
        },
        "data": [buckets[k] for k in sorted(buckets)],
    }


def _export_orders(orders: List[dict]) -> List[dict]:
    return [project_order(o) for o in attach_people(orders)]


def build_invoice(order: dict) -> dict:
    """Invoice view of an order, built from its purchase-time snapshot."""
    customer = database.get_document_by_id("user", order["user_id"]) or {}
    return {
        "invoice_number": f"INV-{order['_id']}",
        "order_id": order["_id"],
        "order_date": order.get("created_at"),
        "customer": {"username": customer.get("username"), "email": customer.get("email")},
        "shipping_address": order["shipping_address"],
        "payment_method": order["payment_method"],
        "status": order["status"],
        "items": [
            {"name": i["name"], "qty": i["qty"], "price": i["price"], "total": round(i["qty"] * i["price"], 2)}
            for i in order["order_items"]
        ],
        "subtotal": round(order["total_price"] - order["shipping_price"] - order["tax_price"], 2),
        "shipping_price": order["shipping_price"],
        "tax_price": order["tax_price"],
        "total_price": order["total_price"],
    }


# ===================== Routes: stats =====================

@router.get("/stats/orders-count")
def get_orders_count(user: dict = Depends(require("view_reports"))):
    return {"count": database.count_documents("order")}


@router.get("/stats/customers-count")
def get_customers_count(user: dict = Depends(require("view_reports"))):
    return {"count": database.count_documents("user", {"role": "user"})}


@router.get("/stats/delivery-persons-count")
def get_delivery_persons_count(user: dict = Depends(require("view_reports"))):
    return {"count": database.count_documents("user", {"role": "delivery"})}


@router.get("/stats/revenue-today")
def get_revenue_today(user: dict = Depends(require("view_reports"))):
    return {"total_revenue": revenue_since(start_of_local_day())}


# ===================== Routes: customers =====================

@router.get("/customers")
def get_customers(user: dict = Depends(require("manage_customers"))):
    return list_customers()


@router.get("/customers/{customer_id}")
def get_customer_detail(customer_id: str, user: dict = Depends(require("manage_customers"))):
    return get_customer(customer_id)


# ===================== Routes: exports =====================

@router.get("/export/orders")
def export_orders(user: dict = Depends(require("view_reports"))):
    orders = database.get_documents("order", sort=[("created_at", 1)])
    return attachment(_export_orders(orders), "orders.json")


@router.get("/export/orders/{period}")
def export_orders_by_period(period: str, day: Optional[str] = Query(None, alias="date"), week: Optional[str] = None, month: Optional[str] = None, user: dict = Depends(require("view_reports"))):
    start, end, label = period_range(period, day, week, month)
    return attachment(_export_orders(_orders_between(start, end)), f"orders_{period}_{label}.json")


@router.get("/export/customers")
def export_customers(user: dict = Depends(require("view_reports"))):
    customers = [
        dict({k: c.get(k) for k in CUSTOMER_FIELDS}, total_orders=c["total_orders"])
        for c in list_customers()
    ]
    return attachment(customers, "customers.json")


@router.get("/export/products")
def export_products(user: dict = Depends(require("view_reports"))):
    names = {c["_id"]: c["name"] for c in database.get_documents("category", projection={"name": 1})}
    products = database.get_documents("product", sort=[("created_at", 1)])
    for product in products:
        product["category"] = {"_id": product.get("category_id"), "name": names.get(product.get("category_id"))}
    return attachment(products, "products.json")


@router.get("/export/sales")
def export_sales(user: dict = Depends(require("view_reports"))):
    return attachment(monthly_sales(), "sales.json")


@router.get("/export/sales/{period}")
def export_sales_by_period(period: str, day: Optional[str] = Query(None, alias="date"), week: Optional[str] = None, month: Optional[str] = None, user: dict = Depends(require("view_reports"))):
    start, end, label = period_range(period, day, week, month)
    return attachment(sales_for_period(period, start, end), f"sales_{period}_{label}.json")


# ===================== Routes: invoices =====================

@invoice_router.get("/user/orders/{order_id}/invoice")
def get_user_invoice(order_id: str, user: dict = Depends(get_current_user)):
    order = database.require_document("order", order_id, "Order")
    if order["user_id"] != user["_id"]:
        raise AuthorizationError("Not authorized to view this invoice")
    return attachment(build_invoice(order), f"invoice-{order['_id']}.json")


@invoice_router.get("/admin/orders/{order_id}/invoice")
def get_admin_invoice(order_id: str, user: dict = Depends(require("manage_orders"))):
    order = database.require_document("order", order_id, "Order")
    return attachment(build_invoice(order), f"invoice-{order['_id']}.json")
