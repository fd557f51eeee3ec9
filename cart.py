"""
Cart and wishlist, both embedded in the user document.

A cart holds at most one line per (product, variant). Products are looked up
again on every mutation; nothing the client sends about a product is trusted
except its id.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

import catalog
import database
from errors import ValidationError
from schemas import CartLine
from security import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/user", tags=["cart"])


class CartUpdate(BaseModel):
    product_id: str = Field(..., min_length=1)
    qty: int
    variant_index: int = Field(0, ge=0)


class CartMerge(BaseModel):
    items: List[CartUpdate] = []


class WishlistToggle(BaseModel):
    product_id: str = Field(..., min_length=1)


def _check_variant(product: dict, variant_index: int) -> None:
    variants = product.get("variants") or []
    limit = len(variants) if variants else 1
    if not 0 <= variant_index < limit:
        raise ValidationError(f"Invalid variant selected for {product['name']}")


def apply_cart_update(cart: List[dict], product_id: str, qty: int, variant_index: int) -> Optional[List[dict]]:
    """New cart lines after setting (product, variant) to ``qty``.

    Returns None when nothing changes (removing a line that is not there).
    """
    index = next(
        (i for i, line in enumerate(cart) if line["product_id"] == product_id and line.get("variant_index", 0) == variant_index),
        None,
    )
    lines = [dict(line) for line in cart]
    if qty > 0:
        if index is None:
            lines.append(CartLine(product_id=product_id, qty=qty, variant_index=variant_index).model_dump())
        else:
            lines[index]["qty"] = qty
        return lines
    if index is None:
        return None
    del lines[index]
    return lines


def update_cart(user_id: str, payload: CartUpdate) -> List[dict]:
    """Set a line's quantity; qty <= 0 removes it.

    Only adding or changing a line needs a live product. Removal works for
    products that have since been deactivated or deleted.
    """
    product_id = payload.product_id
    if payload.qty > 0:
        product = catalog.get_active_product(product_id)
        _check_variant(product, payload.variant_index)
        product_id = product["_id"]

    def mutate(user: dict):
        cart = apply_cart_update(user.get("cart") or [], product_id, payload.qty, payload.variant_index)
        return None if cart is None else {"cart": cart}

    user = database.modify_document("user", user_id, "User", mutate)
    return user.get("cart") or []


def merge_cart(user_id: str, items: List[CartUpdate]) -> List[dict]:
    """Fold a guest cart into the stored one; quantities add up per line."""
    valid = []
    for item in items:
        if item.qty <= 0:
            continue
        product = catalog.get_active_product(item.product_id)
        _check_variant(product, item.variant_index)
        valid.append((product["_id"], item.variant_index, item.qty))

    def mutate(user: dict):
        cart = [dict(line) for line in user.get("cart") or []]
        for product_id, variant_index, qty in valid:
            line = next(
                (line for line in cart if line["product_id"] == product_id and line.get("variant_index", 0) == variant_index),
                None,
            )
            if line is None:
                cart.append(CartLine(product_id=product_id, qty=qty, variant_index=variant_index).model_dump())
            else:
                line["qty"] += qty
        return {"cart": cart} if valid else None

    user = database.modify_document("user", user_id, "User", mutate)
    return user.get("cart") or []


def describe_cart(cart: List[dict]) -> List[dict]:
    """Cart lines joined with current product data; vanished products drop out."""
    lines = []
    for line in cart:
        product = database.get_document_by_id("product", line["product_id"])
        if not product or not product.get("is_active", True):
            continue
        try:
            _, name, price = catalog.resolve_variant(product, line.get("variant_index"))
        except ValidationError:
            logger.info("cart line for %s no longer matches the product", line["product_id"])
            continue
        images = product.get("images") or []
        lines.append({**line, "name": name, "price": price, "image": images[0] if images else ""})
    return lines


def toggle_wishlist(user_id: str, product_id: str) -> List[str]:
    """Remove ``product_id`` if listed, otherwise add it (live products only)."""
    def mutate(user: dict):
        wishlist = list(user.get("wishlist") or [])
        if product_id in wishlist:
            wishlist.remove(product_id)
        else:
            wishlist.append(catalog.get_active_product(product_id)["_id"])
        return {"wishlist": wishlist}

    user = database.modify_document("user", user_id, "User", mutate)
    return user.get("wishlist") or []


# ===================== Routes =====================

@router.get("/cart")
def get_cart(user: dict = Depends(get_current_user)):
    return describe_cart(user.get("cart") or [])


@router.post("/cart")
def post_cart(payload: CartUpdate, user: dict = Depends(get_current_user)):
    return describe_cart(update_cart(user["_id"], payload))


@router.post("/cart/merge")
def post_cart_merge(payload: CartMerge, user: dict = Depends(get_current_user)):
    return describe_cart(merge_cart(user["_id"], payload.items))


@router.delete("/cart")
def clear_cart(user: dict = Depends(get_current_user)):
    database.update_document("user", user["_id"], {"cart": []})
    return []


@router.get("/wishlist")
def get_wishlist(user: dict = Depends(get_current_user)):
    ids = [oid for oid in (database.to_object_id(i) for i in user.get("wishlist") or []) if oid is not None]
    return database.get_documents("product", {"_id": {"$in": ids}, "is_active": True})


@router.post("/wishlist")
def post_wishlist(payload: WishlistToggle, user: dict = Depends(get_current_user)):
    return {"wishlist": toggle_wishlist(user["_id"], payload.product_id)}
