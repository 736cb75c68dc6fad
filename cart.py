"""
Shopping cart

One cart document per user. The service functions below take the database
handle and the authenticated user document; the routes at the bottom are a
thin HTTP layer over them.

Every write is read-modify-write on the whole cart document with no lock,
transaction or version check, so two concurrent writers for the same user
can overwrite each other. ``subtotal`` and ``total_items`` are recomputed
from ``items`` on every save, never patched.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from bson import ObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.database import Database

import settings
from database import create_document, get_db, serialize_doc, to_object_id, utcnow
from errors import BadRequest, NotFound
from products import get_active_product, product_summary
from schemas import Cart as CartSchema, CartItem, SavedItem
from security import get_current_user

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])

MAX_QUANTITY = settings.MAX_ITEM_QUANTITY


# Totals and documents

def calculate_totals(items: List[Dict[str, Any]]) -> Tuple[float, int]:
    subtotal = sum(item["price"] * item["quantity"] for item in items)
    total_items = sum(item["quantity"] for item in items)
    return round(subtotal, 2), total_items


def _empty_cart(user_id: ObjectId) -> Dict[str, Any]:
    return CartSchema(user_id=user_id, last_activity=utcnow()).model_dump()


def _find_cart(db: Database, user_id: ObjectId, create: bool = False) -> Optional[Dict[str, Any]]:
    cart = db["cart"].find_one({"user_id": user_id})
    if cart is None and create:
        cart = create_document(db, "cart", _empty_cart(user_id))
        logger.info("cart_created", user_id=str(user_id))
    return cart


def _save_cart(db: Database, cart: Dict[str, Any]) -> Dict[str, Any]:
    cart["subtotal"], cart["total_items"] = calculate_totals(cart["items"])
    now = utcnow()
    cart["last_activity"] = now
    cart["updated_at"] = now
    if "_id" not in cart:
        cart["_id"] = create_document(db, "cart", cart)["_id"]
        return cart
    fields = ("items", "saved_items", "subtotal", "total_items", "last_activity", "updated_at")
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {k: cart[k] for k in fields}})
    return cart


def _find_line(entries: List[Dict[str, Any]], product_id: ObjectId) -> Optional[Dict[str, Any]]:
    return next((e for e in entries if e["product_id"] == product_id), None)


def _snapshot(product: Dict[str, Any]) -> Dict[str, Any]:
    images = product.get("images") or []
    return {
        "name": product.get("name"),
        "image": product.get("thumbnail") or (images[0]["url"] if images else None),
        "sku": product.get("sku"),
        "stock": product.get("stock", 0),
    }


def _new_line(product: Dict[str, Any], quantity: int) -> Dict[str, Any]:
    return CartItem(
        product_id=product["_id"],
        quantity=quantity,
        price=product["price"],
        product_snapshot=_snapshot(product),
        added_at=utcnow(),
    ).model_dump()


def _check_quantity(product: Dict[str, Any], quantity: int):
    if quantity > product.get("stock", 0):
        raise BadRequest(f"Only {product.get('stock', 0)} items available in stock", code="INSUFFICIENT_STOCK")
    if quantity > MAX_QUANTITY:
        raise BadRequest(f"Maximum quantity per item is {MAX_QUANTITY}", code="QUANTITY_LIMIT_EXCEEDED")


def _require_cart(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    cart = _find_cart(db, user["_id"])
    if cart is None:
        raise NotFound("Cart not found", code="CART_NOT_FOUND")
    return cart


def cart_view(db: Database, cart: Dict[str, Any]) -> Dict[str, Any]:
    """Cart as returned to clients: lines populated with a product summary."""
    items = cart.get("items", [])
    saved = cart.get("saved_items", [])
    ids = [e["product_id"] for e in items + saved]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}})} if ids else {}
    subtotal, total_items = calculate_totals(items)
    return {
        "id": str(cart["_id"]) if cart.get("_id") else None,
        "user_id": str(cart["user_id"]),
        "items": [
            {
                **serialize_doc(item),
                "product": product_summary(products.get(item["product_id"])),
            }
            for item in items
        ],
        "saved_items": [
            {
                "product_id": str(entry["product_id"]),
                "product": product_summary(products.get(entry["product_id"])),
                "saved_at": entry.get("saved_at"),
            }
            for entry in saved
        ],
        "subtotal": subtotal,
        "total_items": total_items,
        "updated_at": cart.get("updated_at"),
    }


# Cart operations

def get_cart(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    cart = _find_cart(db, user["_id"], create=True)
    items = cart.get("items", [])
    if items:
        ids = [i["product_id"] for i in items]
        available = {
            p["_id"]
            for p in db["product"].find({"_id": {"$in": ids}, "is_active": True, "stock": {"$gt": 0}}, {"_id": 1})
        }
        valid = [i for i in items if i["product_id"] in available]
        if len(valid) != len(items):
            cart["items"] = valid
            _save_cart(db, cart)
            logger.info("cart_pruned", user_id=str(user["_id"]), removed=len(items) - len(valid))
    return cart


def add_item(db: Database, user: Dict[str, Any], product_id, quantity: int = 1) -> Dict[str, Any]:
    if quantity <= 0:
        raise BadRequest("Quantity must be greater than 0", code="INVALID_QUANTITY")
    product = get_active_product(db, product_id)
    _check_quantity(product, quantity)

    cart = _find_cart(db, user["_id"]) or _empty_cart(user["_id"])
    line = _find_line(cart["items"], product["_id"])
    if line is not None:
        new_quantity = line["quantity"] + quantity
        if new_quantity > product.get("stock", 0):
            available = max(0, product.get("stock", 0) - line["quantity"])
            raise BadRequest(
                f"Cannot add {quantity} more items. Only {available} items available",
                code="INSUFFICIENT_STOCK",
            )
        if new_quantity > MAX_QUANTITY:
            raise BadRequest(f"Maximum quantity per item is {MAX_QUANTITY}", code="QUANTITY_LIMIT_EXCEEDED")
        line["quantity"] = new_quantity
        line["price"] = product["price"]
        line["product_snapshot"] = _snapshot(product)
    else:
        cart["items"].append(_new_line(product, quantity))

    _save_cart(db, cart)
    logger.info("cart_item_added", user_id=str(user["_id"]), product_id=str(product["_id"]), quantity=quantity)
    return cart


def remove_item(db: Database, user: Dict[str, Any], product_id) -> Dict[str, Any]:
    obj_id = to_object_id(product_id, "Item not found in cart")
    cart = _require_cart(db, user)
    if _find_line(cart["items"], obj_id) is None:
        raise NotFound("Item not found in cart", code="ITEM_NOT_FOUND")
    cart["items"] = [i for i in cart["items"] if i["product_id"] != obj_id]
    _save_cart(db, cart)
    logger.info("cart_item_removed", user_id=str(user["_id"]), product_id=str(obj_id))
    return cart


def update_quantity(db: Database, user: Dict[str, Any], product_id, quantity: int) -> Dict[str, Any]:
    if quantity < 0:
        raise BadRequest("Quantity cannot be negative", code="INVALID_QUANTITY")
    if quantity == 0:
        return remove_item(db, user, product_id)

    product = get_active_product(db, product_id)
    _check_quantity(product, quantity)
    cart = _require_cart(db, user)
    line = _find_line(cart["items"], product["_id"])
    if line is None:
        raise NotFound("Item not found in cart", code="ITEM_NOT_FOUND")
    line["quantity"] = quantity
    line["price"] = product["price"]
    line["product_snapshot"] = _snapshot(product)
    _save_cart(db, cart)
    return cart


def clear_cart(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    cart = _find_cart(db, user["_id"], create=True)
    cart["items"] = []
    _save_cart(db, cart)
    logger.info("cart_cleared", user_id=str(user["_id"]))
    return cart


# Saved for later

def save_for_later(db: Database, user: Dict[str, Any], product_id) -> Dict[str, Any]:
    obj_id = to_object_id(product_id, "Item not found in cart")
    cart = _require_cart(db, user)
    if _find_line(cart["items"], obj_id) is None:
        raise NotFound("Item not found in cart", code="ITEM_NOT_FOUND")
    if _find_line(cart["saved_items"], obj_id) is None:
        cart["saved_items"].append(SavedItem(product_id=obj_id, saved_at=utcnow()).model_dump())
    cart["items"] = [i for i in cart["items"] if i["product_id"] != obj_id]
    _save_cart(db, cart)
    return cart


def move_to_cart(db: Database, user: Dict[str, Any], product_id, quantity: int = 1) -> Dict[str, Any]:
    obj_id = to_object_id(product_id, "Item not found in saved items")
    cart = _require_cart(db, user)
    if _find_line(cart["saved_items"], obj_id) is None:
        raise NotFound("Item not found in saved items", code="ITEM_NOT_FOUND")

    cart = add_item(db, user, obj_id, quantity)
    cart["saved_items"] = [s for s in cart["saved_items"] if s["product_id"] != obj_id]
    _save_cart(db, cart)
    return cart


def remove_saved_item(db: Database, user: Dict[str, Any], product_id) -> Dict[str, Any]:
    obj_id = to_object_id(product_id, "Item not found in saved items")
    cart = _require_cart(db, user)
    if _find_line(cart["saved_items"], obj_id) is None:
        raise NotFound("Item not found in saved items", code="ITEM_NOT_FOUND")
    cart["saved_items"] = [s for s in cart["saved_items"] if s["product_id"] != obj_id]
    _save_cart(db, cart)
    return cart


def clear_saved_items(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    cart = _require_cart(db, user)
    cart["saved_items"] = []
    _save_cart(db, cart)
    return cart


def get_saved_items(db: Database, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    cart = _find_cart(db, user["_id"])
    if cart is None:
        return []
    return cart_view(db, cart)["saved_items"]


# Merge, count, validation, maintenance

def merge_cart(db: Database, user: Dict[str, Any], guest_items: List[Dict[str, Any]]) -> Tuple[Dict[str, Any], int, int]:
    """
    Fold a guest (anonymous) cart into the user's cart.

    Unknown, inactive or out-of-stock products are skipped. Quantities are
    capped at the product's stock and the per-line maximum. Each merged line
    is written as it is processed, so a failure partway through leaves the
    earlier lines merged.
    """
    if not guest_items:
        raise BadRequest("Invalid guest cart items", code="INVALID_GUEST_CART")

    cart = _find_cart(db, user["_id"]) or _empty_cart(user["_id"])
    merged, skipped = 0, 0
    for guest in guest_items:
        product_id, quantity = guest.get("product_id"), guest.get("quantity", 1)
        product = db["product"].find_one({"_id": ObjectId(product_id)}) if ObjectId.is_valid(product_id or "") else None
        if not product or not product.get("is_active", True) or product.get("stock", 0) <= 0:
            skipped += 1
            continue

        line = _find_line(cart["items"], product["_id"])
        if line is not None:
            line["quantity"] = min(line["quantity"] + quantity, product["stock"], MAX_QUANTITY)
            line["price"] = product["price"]
            line["product_snapshot"] = _snapshot(product)
        else:
            cart["items"].append(_new_line(product, min(quantity, product["stock"], MAX_QUANTITY)))
        _save_cart(db, cart)
        merged += 1

    logger.info("cart_merged", user_id=str(user["_id"]), merged=merged, skipped=skipped)
    return cart, merged, skipped


def get_item_count(db: Database, user: Dict[str, Any]) -> int:
    cart = _find_cart(db, user["_id"])
    if cart is None:
        return 0
    return calculate_totals(cart.get("items", []))[1]


def validate_cart(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    """Report lines that need attention before checkout; the cart itself is not modified."""
    cart = _find_cart(db, user["_id"])
    issues: List[Dict[str, Any]] = []
    items = cart.get("items", []) if cart else []
    ids = [i["product_id"] for i in items]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}})} if ids else {}

    for item in items:
        pid = str(item["product_id"])
        product = products.get(item["product_id"])
        if not product:
            issues.append({"product_id": pid, "issue": "Product no longer exists", "action": "remove"})
        elif not product.get("is_active", True):
            issues.append({"product_id": pid, "issue": "Product is no longer available", "action": "remove"})
        else:
            if product.get("stock", 0) < item["quantity"]:
                issues.append(
                    {
                        "product_id": pid,
                        "issue": f"Only {product.get('stock', 0)} items available",
                        "action": "update_quantity",
                        "available_stock": product.get("stock", 0),
                    }
                )
            if product["price"] != item["price"]:
                issues.append(
                    {
                        "product_id": pid,
                        "issue": "Price has changed",
                        "action": "update_price",
                        "old_price": item["price"],
                        "new_price": product["price"],
                    }
                )

    return {"is_valid": not issues, "issues": issues}


def cleanup_old_carts(db: Database, days_old: int = 30) -> int:
    cutoff = utcnow() - timedelta(days=days_old)
    result = db["cart"].delete_many({"items": {"$size": 0}, "last_activity": {"$lt": cutoff}})
    logger.info("carts_cleaned_up", deleted=result.deleted_count, days_old=days_old)
    return result.deleted_count


# Request models

class AddItemIn(BaseModel):
    product_id: str
    quantity: int = 1


class UpdateQuantityIn(BaseModel):
    quantity: int


class MoveToCartIn(BaseModel):
    quantity: int = 1


class GuestItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class MergeIn(BaseModel):
    guest_cart_items: List[GuestItem] = []


# Routes

@router.get("")
def read_cart(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = get_cart(db, current_user)
    return {"success": True, "data": cart_view(db, cart)}


@router.get("/count")
def read_item_count(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"success": True, "data": {"count": get_item_count(db, current_user)}}


@router.get("/validate")
def read_validation(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"success": True, "data": validate_cart(db, current_user)}


@router.post("/add", status_code=201)
def add_to_cart(data: AddItemIn, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = add_item(db, current_user, data.product_id, data.quantity)
    return {"success": True, "message": "Item added to cart successfully", "data": cart_view(db, cart)}


@router.put("/update/{product_id}")
def update_cart_item(
    product_id: str,
    data: UpdateQuantityIn,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    cart = update_quantity(db, current_user, product_id, data.quantity)
    message = "Item removed from cart successfully" if data.quantity == 0 else "Cart updated successfully"
    return {"success": True, "message": message, "data": cart_view(db, cart)}


@router.delete("/remove/{product_id}")
def remove_from_cart(product_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = remove_item(db, current_user, product_id)
    return {"success": True, "message": "Item removed from cart successfully", "data": cart_view(db, cart)}


@router.delete("/clear")
def clear(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = clear_cart(db, current_user)
    return {"success": True, "message": "Cart cleared successfully", "data": cart_view(db, cart)}


@router.post("/merge")
def merge(data: MergeIn, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart, merged, skipped = merge_cart(db, current_user, [g.model_dump() for g in data.guest_cart_items])
    return {
        "success": True,
        "message": "Cart merged successfully",
        "data": cart_view(db, cart),
        "merged": merged,
        "skipped": skipped,
    }


@router.put("/save-later/{product_id}")
def save_later(product_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = save_for_later(db, current_user, product_id)
    return {"success": True, "message": "Item saved for later", "data": cart_view(db, cart)}


@router.put("/move-to-cart/{product_id}")
def move_saved_to_cart(
    product_id: str,
    data: Optional[MoveToCartIn] = None,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    quantity = data.quantity if data else 1
    cart = move_to_cart(db, current_user, product_id, quantity)
    return {"success": True, "message": "Item moved to cart", "data": cart_view(db, cart)}


@router.get("/saved")
def read_saved(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    saved = get_saved_items(db, current_user)
    return {"success": True, "data": saved, "count": len(saved)}


@router.delete("/saved/clear")
def clear_saved(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = clear_saved_items(db, current_user)
    return {"success": True, "message": "Saved items cleared", "data": cart_view(db, cart)}


@router.delete("/saved/{product_id}")
def remove_saved(product_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = remove_saved_item(db, current_user, product_id)
    return {"success": True, "message": "Item removed from saved items", "data": cart_view(db, cart)}
