"""
Catalog: products and categories.

Public read paths (paged listing, discovery feeds, product detail with
similar products, category menus), per-location stock bookkeeping for
checkout and cancellation, and the admin maintenance endpoints.
"""

import logging
import math
import re
from datetime import datetime
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

import database
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Category, InventoryLocation, Product, Subcategory, Variant
from security import require

logger = logging.getLogger(__name__)

PAGE_SIZE = 10
FEED_PAGE_SIZE = 12
SIMILAR_LIMIT = 3
DEAL_WINDOW_DAYS = 2
PRODUCT_FLAGS = ("is_gi_tagged", "is_new_arrival", "is_most_sold")
SORTS = {
    "price-low": [("effective_price", 1)],
    "price-high": [("effective_price", -1)],
    "name": [("name", 1)],
    "featured": [("created_at", -1)],
}

router = APIRouter(prefix="/products", tags=["catalog"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


# ===================== Pricing helpers =====================

def _payable(entry: dict) -> Optional[float]:
    if entry.get("offer_price") is not None:
        return entry["offer_price"]
    return entry.get("original_price")


def effective_price(product: dict) -> Optional[float]:
    variants = product.get("variants") or []
    if variants:
        return min(_payable(v) for v in variants)
    return _payable(product)


def resolve_variant(product: dict, variant_index: Optional[int]) -> Tuple[Optional[int], str, float]:
    """Return (variant index, display name, unit price) for a product line."""
    variants = product.get("variants") or []
    if variants:
        if variant_index is None and len(variants) == 1:
            variant_index = 0
        if variant_index is None or not 0 <= variant_index < len(variants):
            raise ValidationError(f"Invalid variant selected for {product['name']}")
        variant = variants[variant_index]
        return variant_index, f"{product['name']} ({variant['value']})", _payable(variant)

    if variant_index not in (None, 0):
        raise ValidationError(f"Invalid variant selected for {product['name']}")
    price = _payable(product)
    if price is None:
        raise ValidationError(f"Price information missing for product: {product['name']}")
    return None, product["name"], price


def project_product(product: dict) -> dict:
    product = dict(product)
    product["count_in_stock"] = sum(
        level.get("quantity", 0)
        for location in product.get("inventory") or []
        for level in location.get("stock") or []
    )
    return product


def get_active_product(product_id: str) -> dict:
    product = database.get_document_by_id("product", product_id)
    if not product or not product.get("is_active", True):
        raise NotFoundError("Product not found")
    return product


def _exact_name(name: str) -> dict:
    return {"$regex": f"^{re.escape(name)}$", "$options": "i"}


# ===================== Public reads =====================

def list_products(
    search: Optional[str] = None,
    category: Optional[str] = None,
    sort_by: Optional[str] = None,
    page: int = 1,
    subcategories: Optional[str] = None,
    extra: Optional[dict] = None,
    page_size: int = PAGE_SIZE,
) -> dict:
    """One page of active products.

    ``subcategories`` is a comma-separated list of names; ``extra`` adds
    filters on top of the public ones (the discovery feeds use it).
    """
    page = max(page, 1)
    query = {"is_active": True, **(extra or {})}
    if search:
        query["name"] = {"$regex": re.escape(search), "$options": "i"}
    if category and category.lower() != "all":
        found = database.find_document("category", {"name": _exact_name(category)})
        if not found:
            return {"products": [], "page": page, "pages": 0}
        query["category_id"] = found["_id"]
    names = [s.strip() for s in (subcategories or "").split(",") if s.strip()]
    if names:
        query["subcategory"] = {"$in": names}

    count = database.count_documents("product", query)
    products = database.get_documents(
        "product",
        query,
        sort=SORTS.get(sort_by or "featured", SORTS["featured"]),
        skip=page_size * (page - 1),
        limit=page_size,
    )
    return {
        "products": [project_product(p) for p in products],
        "page": page,
        "pages": math.ceil(count / page_size),
    }


def remaining_shelf_days(product: dict, now: datetime) -> Optional[int]:
    if not product.get("shelf_life") or not product.get("created_at"):
        return None
    return product["shelf_life"] - (now - product["created_at"]).days


def list_deals(sort_by: Optional[str] = None, page: int = 1, page_size: int = PAGE_SIZE) -> dict:
    """Products within ``DEAL_WINDOW_DAYS`` of the end of their shelf life.

    Most urgent first unless a price or name sort is asked for.
    """
    page = max(page, 1)
    page_size = max(page_size, 1)
    now = database.utcnow()
    deals = []
    for product in database.get_documents("product", {"is_active": True, "shelf_life": {"$gt": 0}}):
        remaining = remaining_shelf_days(product, now)
        if remaining is not None and 0 <= remaining <= DEAL_WINDOW_DAYS:
            deals.append((remaining, product))

    if sort_by in ("price-low", "price-high"):
        deals.sort(key=lambda d: d[1].get("effective_price") or 0, reverse=sort_by == "price-high")
    elif sort_by == "name":
        deals.sort(key=lambda d: d[1]["name"].lower())
    else:
        deals.sort(key=lambda d: d[0])

    start = page_size * (page - 1)
    return {
        "products": [project_product(p) for _, p in deals[start:start + page_size]],
        "page": page,
        "pages": math.ceil(len(deals) / page_size),
        "total": len(deals),
    }


def get_product_detail(product_id: str) -> dict:
    product = get_active_product(product_id)
    similar = database.get_documents(
        "product",
        {
            "category_id": product["category_id"],
            "_id": {"$ne": database.to_object_id(product["_id"])},
            "is_active": True,
        },
        limit=SIMILAR_LIMIT,
    )
    return {
        "product": project_product(product),
        "similar_products": [project_product(p) for p in similar],
    }


def list_public_categories() -> List[dict]:
    categories = database.get_documents("category", {"is_active": True}, sort=[("name", 1)])
    for category in categories:
        products = database.get_documents(
            "product",
            {"category_id": category["_id"], "is_active": True},
            projection={"images": 1},
        )
        images = next((p["images"] for p in products if p.get("images")), None)
        category["image_url"] = images[0] if images else "/images/placeholder.png"
    return categories


def list_subcategories(category_name: str) -> List[dict]:
    category = database.find_document("category", {"name": _exact_name(category_name), "is_active": True})
    if not category:
        return []
    return [s for s in category.get("subcategories") or [] if s.get("is_active", True)]


def list_all_subcategories() -> List[dict]:
    rows = []
    for category in database.get_documents("category", {"is_active": True}, sort=[("name", 1)]):
        for sub in category.get("subcategories") or []:
            if sub.get("is_active", True):
                rows.append({**sub, "category_name": category["name"], "category_id": category["_id"]})
    return rows


# ===================== Stock bookkeeping =====================

def _adjust_stock(product_id: str, location_name: str, variant_index: int, delta: int, label: str) -> None:
    """Add ``delta`` units at (location, variant).

    Products without any inventory are not stock-tracked and are left alone.
    A negative ``delta`` must be covered by the stock on hand.
    """
    def mutate(product: dict):
        if not product.get("inventory"):
            return None
        inventory = [dict(loc, stock=[dict(s) for s in loc.get("stock") or []]) for loc in product["inventory"]]
        location = next((loc for loc in inventory if loc["location"] == location_name), None)
        if location is None:
            if delta < 0:
                raise ValidationError(f"Inventory not found for {label}")
            logger.warning("no %s inventory left for product %s, stock not restored", location_name, product_id)
            return None
        level = next((s for s in location["stock"] if s["variant_index"] == variant_index), None)
        if level is None:
            if delta < 0:
                raise ValidationError(f"Insufficient stock for {label}")
            location["stock"].append({"variant_index": variant_index, "quantity": delta, "low_stock_threshold": 5})
        elif level["quantity"] + delta < 0:
            raise ValidationError(f"Insufficient stock for {label}")
        else:
            level["quantity"] += delta
        return {"inventory": inventory}

    database.modify_document("product", product_id, "Product", mutate)


def reserve_stock(items: List[dict], location: str) -> None:
    """Take every order line out of ``location``, or none of them."""
    taken = []
    try:
        for item in items:
            _adjust_stock(item["product_id"], location, item.get("variant_index") or 0, -item["qty"], item["name"])
            taken.append(item)
    except (ValidationError, ConflictError):
        release_stock(taken, location)
        raise


def release_stock(items: List[dict], location: str) -> None:
    """Put order lines back into ``location``."""
    for item in items:
        try:
            _adjust_stock(item["product_id"], location, item.get("variant_index") or 0, item["qty"], item["name"])
        except NotFoundError:
            logger.warning("product %s is gone, stock not restored", item["product_id"])
        except ConflictError:
            logger.error("stock for product %s at %s not restored after repeated conflicts", item["product_id"], location)


@router.get("")
def get_products(search: Optional[str] = None, keyword: Optional[str] = None, category: Optional[str] = None, sort_by: Optional[str] = None, page: int = 1, subcategories: Optional[str] = None):
    return list_products(search or keyword, category, sort_by, page, subcategories)


@router.get("/gi-tagged")
def get_gi_tagged(search: Optional[str] = None, keyword: Optional[str] = None, sort_by: Optional[str] = None, page: int = 1, subcategories: Optional[str] = None):
    return list_products(search or keyword, None, sort_by, page, subcategories, {"is_gi_tagged": True}, FEED_PAGE_SIZE)


@router.get("/new-arrivals")
def get_new_arrivals(search: Optional[str] = None, keyword: Optional[str] = None, sort_by: Optional[str] = None, page: int = 1, subcategories: Optional[str] = None):
    return list_products(search or keyword, None, sort_by, page, subcategories, {"is_new_arrival": True}, FEED_PAGE_SIZE)


@router.get("/most-saled")
def get_most_sold(search: Optional[str] = None, keyword: Optional[str] = None, sort_by: Optional[str] = None, page: int = 1, subcategories: Optional[str] = None):
    return list_products(search or keyword, None, sort_by, page, subcategories, {"is_most_sold": True}, FEED_PAGE_SIZE)


@router.get("/deal-of-the-day")
def get_deal_of_the_day(sort_by: Optional[str] = None, page: int = 1, page_size: int = PAGE_SIZE):
    return list_deals(sort_by, page, page_size)


@router.get("/all-subcategories")
def get_all_subcategories():
    return list_all_subcategories()


@router.get("/categories")
def get_public_categories():
    return list_public_categories()


@router.get("/subcategories/{category_name}")
def get_subcategories(category_name: str):
    return list_subcategories(category_name)


@router.get("/{product_id}")
def get_product(product_id: str):
    return get_product_detail(product_id)


# ===================== Admin: categories =====================

class SubcategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    is_active: bool = True


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=50)
    is_active: bool = True
    subcategories: List[SubcategoryIn] = []


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=50)
    is_active: Optional[bool] = None
    subcategories: Optional[List[SubcategoryIn]] = None


def _subcategory_docs(subcategories: List[SubcategoryIn]) -> List[dict]:
    return [Subcategory(_id=database.new_id(), **s.model_dump()).model_dump(by_alias=True) for s in subcategories]


def _ensure_unique_category_name(name: str, exclude_id: Optional[str] = None) -> None:
    existing = database.find_document("category", {"name": _exact_name(name)})
    if existing and existing["_id"] != exclude_id:
        raise ConflictError("Category already exists")


def create_category(payload: CategoryCreate) -> dict:
    name = payload.name.strip()
    _ensure_unique_category_name(name)
    category = Category(name=name, is_active=payload.is_active, subcategories=_subcategory_docs(payload.subcategories))
    category_id = database.create_document("category", category)
    return database.get_document_by_id("category", category_id)


def update_category(category_id: str, payload: CategoryUpdate) -> dict:
    database.require_document("category", category_id, "Category")
    changes = payload.model_dump(exclude_unset=True, exclude={"subcategories"})
    if payload.name is not None:
        changes["name"] = payload.name.strip()
        _ensure_unique_category_name(changes["name"], exclude_id=category_id)
    if payload.subcategories is not None:
        changes["subcategories"] = _subcategory_docs(payload.subcategories)
    if changes:
        database.update_document("category", category_id, changes)
    return database.get_document_by_id("category", category_id)


@admin_router.get("/categories")
def get_categories(user: dict = Depends(require("manage_catalog"))):
    return database.get_documents("category", sort=[("name", 1)])


@admin_router.post("/categories", status_code=201)
def post_category(payload: CategoryCreate, user: dict = Depends(require("manage_catalog"))):
    return create_category(payload)


@admin_router.put("/categories/{category_id}")
def put_category(category_id: str, payload: CategoryUpdate, user: dict = Depends(require("manage_catalog"))):
    return update_category(category_id, payload)


@admin_router.delete("/categories/{category_id}")
def remove_category(category_id: str, user: dict = Depends(require("manage_catalog"))):
    if not database.delete_document("category", category_id):
        raise NotFoundError("Category not found")
    return {"message": "Category removed"}


# ===================== Admin: products =====================

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    images: List[str] = []
    original_price: Optional[float] = Field(None, ge=0)
    offer_price: Optional[float] = Field(None, ge=0)
    variants: List[Variant] = []
    inventory: List[InventoryLocation] = []
    category_id: str
    subcategory: Optional[str] = None
    is_active: bool = True
    is_gi_tagged: bool = False
    is_new_arrival: bool = False
    is_most_sold: bool = False
    shelf_life: Optional[int] = Field(None, ge=0)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    images: Optional[List[str]] = None
    original_price: Optional[float] = Field(None, ge=0)
    offer_price: Optional[float] = Field(None, ge=0)
    variants: Optional[List[Variant]] = None
    inventory: Optional[List[InventoryLocation]] = None
    category_id: Optional[str] = None
    subcategory: Optional[str] = None
    is_active: Optional[bool] = None
    is_gi_tagged: Optional[bool] = None
    is_new_arrival: Optional[bool] = None
    is_most_sold: Optional[bool] = None
    shelf_life: Optional[int] = Field(None, ge=0)


class StockUpdate(BaseModel):
    location: str = Field(..., min_length=1)
    variant_index: int = Field(..., ge=0)
    quantity: int = Field(..., ge=0)


class FlagUpdate(BaseModel):
    flag: str
    value: bool


def _validated_product(data: dict) -> Product:
    database.require_document("category", data["category_id"], "Category")
    product = Product(**data)
    if not product.variants and product.original_price is None:
        raise ValidationError("original_price is required for products without variants")
    max_index = max(len(product.variants) - 1, 0)
    for location in product.inventory:
        location.location = location.location.strip().lower()
        for level in location.stock:
            if level.variant_index > max_index:
                raise ValidationError(f"Invalid variant_index {level.variant_index}")
    product.effective_price = effective_price(product.model_dump())
    return product


def create_product(payload: ProductCreate) -> dict:
    product = _validated_product(payload.model_dump())
    product_id = database.create_document("product", product)
    logger.info("product %s created", product_id)
    return project_product(database.get_document_by_id("product", product_id))


def update_product(product_id: str, payload: ProductUpdate) -> dict:
    current = database.require_document("product", product_id, "Product")
    merged = {k: v for k, v in current.items() if k in Product.model_fields}
    merged.update(payload.model_dump(exclude_unset=True))
    product = _validated_product(merged)
    database.update_document("product", product_id, product.model_dump())
    return project_product(database.get_document_by_id("product", product_id))


def update_stock(product_id: str, payload: StockUpdate) -> dict:
    location_name = payload.location.strip().lower()

    def mutate(product: dict):
        if payload.variant_index > max(len(product.get("variants") or []) - 1, 0):
            raise ValidationError(f"Invalid variant_index {payload.variant_index}")
        inventory = [dict(loc, stock=[dict(s) for s in loc.get("stock") or []]) for loc in product.get("inventory") or []]
        location = next((loc for loc in inventory if loc["location"] == location_name), None)
        if location is None:
            location = {"location": location_name, "stock": []}
            inventory.append(location)
        level = next((s for s in location["stock"] if s["variant_index"] == payload.variant_index), None)
        if level is None:
            location["stock"].append({"variant_index": payload.variant_index, "quantity": payload.quantity, "low_stock_threshold": 5})
        else:
            level["quantity"] = payload.quantity
        return {"inventory": inventory}

    return project_product(database.modify_document("product", product_id, "Product", mutate))


def set_product_flag(product_id: str, flag: str, value: bool) -> None:
    if flag not in PRODUCT_FLAGS:
        raise ValidationError("Invalid flag type")
    if not database.update_document("product", product_id, {flag: value}):
        raise NotFoundError("Product not found")


def list_inventory_at(location: str) -> List[dict]:
    products = database.get_documents(
        "product",
        {"inventory.location": location.strip().lower(), "is_active": True},
        sort=[("name", 1)],
    )
    return [project_product(p) for p in products]


@admin_router.get("/products")
def get_all_products(user: dict = Depends(require("manage_catalog"))):
    return [project_product(p) for p in database.get_documents("product", sort=[("created_at", -1)])]


@admin_router.post("/products", status_code=201)
def post_product(payload: ProductCreate, user: dict = Depends(require("manage_catalog"))):
    return create_product(payload)


@admin_router.put("/products/{product_id}")
def put_product(product_id: str, payload: ProductUpdate, user: dict = Depends(require("manage_catalog"))):
    return update_product(product_id, payload)


@admin_router.put("/products/{product_id}/stock")
def put_stock(product_id: str, payload: StockUpdate, user: dict = Depends(require("manage_catalog"))):
    return update_stock(product_id, payload)


@admin_router.put("/products/{product_id}/flag")
def put_flag(product_id: str, payload: FlagUpdate, user: dict = Depends(require("manage_catalog"))):
    set_product_flag(product_id, payload.flag, payload.value)
    return {"success": True}


@admin_router.get("/inventory/{location}")
def get_inventory(location: str, user: dict = Depends(require("manage_catalog"))):
    return list_inventory_at(location)


@admin_router.delete("/products/{product_id}")
def deactivate_product(product_id: str, user: dict = Depends(require("manage_catalog"))):
    if not database.update_document("product", product_id, {"is_active": False}):
        raise NotFoundError("Product not found")
    return {"success": True}
