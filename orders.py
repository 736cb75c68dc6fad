import random
import string
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING
from pymongo.database import Database

import settings
from cart import clear_cart
from database import create_document, get_db, paginate, serialize_doc, to_object_id, utcnow
from errors import BadRequest, Forbidden, NotFound
from mailer import send_in_background, send_order_confirmation_email
from products import adjust_stock
from schemas import (
    Order as OrderSchema,
    OrderItem,
    OrderSource,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ShippingAddress,
    StatusEntry,
)
from security import get_current_user

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])

RETURN_WINDOW_DAYS = 30
CANCELLABLE_STATUSES = ("pending", "confirmed")


# Numbering

def generate_order_number(db: Database, now: Optional[datetime] = None) -> str:
    """
    ORD-YYYYMMDD-NNNNN where NNNNN is one more than the number of orders
    created so far today (UTC).

    The count and the insert that follows are not atomic: two orders placed
    at the same moment can draw the same number, and the second insert then
    fails on the unique order_number index.
    """
    now = now or utcnow()
    start_of_day = datetime(now.year, now.month, now.day)
    end_of_day = start_of_day + timedelta(days=1) - timedelta(milliseconds=1)
    today = db["order"].count_documents({"created_at": {"$gte": start_of_day, "$lte": end_of_day}})
    return f"ORD-{now:%Y%m%d}-{today + 1:05d}"


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"INV-{now:%Y%m}-{suffix}"


# Order rules

def shipping_cost_for(subtotal: float) -> float:
    if settings.FREE_SHIPPING_THRESHOLD and subtotal >= settings.FREE_SHIPPING_THRESHOLD:
        return 0.0
    return settings.SHIPPING_COST


def calculate_order_totals(items: List[Dict[str, Any]], tax_rate: float, shipping_cost: float, discount: float = 0) -> Dict[str, float]:
    subtotal = round(sum(i["price"] * i["quantity"] for i in items), 2)
    tax = round(subtotal * tax_rate, 2)
    return {
        "subtotal": subtotal,
        "tax": tax,
        "tax_rate": tax_rate,
        "shipping_cost": shipping_cost,
        "discount": discount,
        "total": round(max(0, subtotal + tax + shipping_cost - discount), 2),
    }


def can_be_cancelled(order: Dict[str, Any]) -> bool:
    return order.get("status") in CANCELLABLE_STATUSES


def can_be_returned(order: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    if order.get("status") != "delivered":
        return False
    delivered = order.get("delivered_at") or order.get("updated_at")
    if delivered is None:
        return False
    return (now or utcnow()) - delivered <= timedelta(days=RETURN_WINDOW_DAYS)


def order_view(order: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(order)
    out["can_be_cancelled"] = can_be_cancelled(order)
    out["can_be_returned"] = can_be_returned(order)
    return out


def _order_item(product: Dict[str, Any], quantity: int) -> Dict[str, Any]:
    images = product.get("images") or []
    return OrderItem(
        product_id=product["_id"],
        name=product["name"],
        price=product["price"],
        quantity=quantity,
        image=product.get("thumbnail") or (images[0]["url"] if images else ""),
        sku=product.get("sku"),
    ).model_dump()


# Service functions

def create_order(db: Database, user: Dict[str, Any], payload: "OrderIn") -> Dict[str, Any]:
    """
    Turn the user's cart into an order.

    Item name, price, image and sku are copied from the product at this
    moment and never re-read. Stock is decremented and the cart cleared after
    the order is written, each as its own write.
    """
    cart = db["cart"].find_one({"user_id": user["_id"]})
    if not cart or not cart.get("items"):
        raise BadRequest("Cart is empty", code="EMPTY_CART")

    items = []
    for line in cart["items"]:
        product = db["product"].find_one({"_id": line["product_id"]})
        if not product or not product.get("is_active", True):
            name = (line.get("product_snapshot") or {}).get("name") or "A product in your cart"
            raise BadRequest(f"{name} is no longer available", code="PRODUCT_UNAVAILABLE")
        if product.get("stock", 0) < line["quantity"]:
            raise BadRequest(
                f"Only {product.get('stock', 0)} units of {product['name']} available",
                code="INSUFFICIENT_STOCK",
            )
        items.append(_order_item(product, line["quantity"]))

    subtotal = round(sum(i["price"] * i["quantity"] for i in items), 2)
    totals = calculate_order_totals(items, settings.TAX_RATE, shipping_cost_for(subtotal))
    address = payload.shipping_address.model_dump()
    address["email"] = address["email"].lower()

    now = utcnow()
    order = OrderSchema(
        order_number=generate_order_number(db, now),
        user_id=user["_id"],
        items=items,
        shipping_address=address,
        payment_method=payload.payment_method,
        customer_notes=payload.customer_notes,
        source=payload.source,
        status_history=[StatusEntry(status="pending", timestamp=now, note="Order placed")],
        **totals,
    ).model_dump()
    order.update(created_at=now, updated_at=now)
    order = create_document(db, "order", order)

    for item in items:
        adjust_stock(db, item["product_id"], item["quantity"], "subtract")
    clear_cart(db, user)

    logger.info(
        "order_created",
        order_id=str(order["_id"]),
        order_number=order["order_number"],
        user_id=str(user["_id"]),
        total=order["total"],
    )
    return order


def update_status(
    db: Database,
    order: Dict[str, Any],
    status: str,
    note: Optional[str] = None,
    updated_by=None,
) -> Dict[str, Any]:
    """Set a new status and append it to the history. Any status may follow any other."""
    now = utcnow()
    entry = StatusEntry(status=status, timestamp=now, note=note or None, updated_by=updated_by).model_dump()
    update: Dict[str, Any] = {"status": status, "updated_at": now}
    if status == "delivered":
        update["delivered_at"] = now
    elif status == "cancelled" and note:
        update["cancellation_reason"] = note
    elif status == "returned" and note:
        update["return_reason"] = note
    db["order"].update_one({"_id": order["_id"]}, {"$set": update, "$push": {"status_history": entry}})
    logger.info("order_status_updated", order_id=str(order["_id"]), status=status, previous=order.get("status"))
    return db["order"].find_one({"_id": order["_id"]})


def update_payment_status(db: Database, order: Dict[str, Any], payment_status: str) -> Dict[str, Any]:
    update: Dict[str, Any] = {"payment_status": payment_status, "updated_at": utcnow()}
    if payment_status == "paid" and not order.get("invoice_number"):
        update["invoice_number"] = generate_invoice_number()
        update["invoice_date"] = update["updated_at"]
    db["order"].update_one({"_id": order["_id"]}, {"$set": update})
    return db["order"].find_one({"_id": order["_id"]})


def get_order(db: Database, order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order not found")})
    if not order:
        raise NotFound("Order not found", code="ORDER_NOT_FOUND")
    return order


def _own_order(db: Database, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = get_order(db, order_id)
    if order["user_id"] != user["_id"] and user.get("role") != "admin":
        raise Forbidden("Not authorized to access this order", code="RESOURCE_ACCESS_DENIED")
    return order


# Request models

class OrderIn(BaseModel):
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "credit_card"
    customer_notes: Optional[str] = Field(None, max_length=500)
    source: OrderSource = "web"


class ReasonIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class TrackIn(BaseModel):
    order_number: str
    email: EmailStr


class OrderAdminUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    notes: Optional[str] = None
    note: Optional[str] = Field(None, description="Recorded on the status history entry")


# Routes

@router.post("", status_code=201)
def place_order(
    data: OrderIn,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    order = create_order(db, current_user, data)
    background_tasks.add_task(send_in_background, send_order_confirmation_email, order, current_user)
    return {"success": True, "message": "Order placed successfully", "data": order_view(order)}


@router.get("")
def my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    status: Optional[OrderStatus] = None,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"user_id": current_user["_id"]}
    if status:
        query["status"] = status
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": {
            "orders": [order_view(o) for o in cursor],
            "pagination": paginate(page, limit, total, total_key="total_orders"),
        },
    }


@router.post("/track")
def track_order(data: TrackIn, db: Database = Depends(get_db)):
    order = db["order"].find_one({"order_number": data.order_number.strip().upper()})
    if not order or order["shipping_address"].get("email", "").lower() != data.email.lower():
        raise NotFound("No order found with that number and email", code="ORDER_NOT_FOUND")
    history = [
        {"status": h["status"], "timestamp": h["timestamp"], "note": h.get("note")}
        for h in order.get("status_history", [])
    ]
    return {
        "success": True,
        "data": {
            "order_number": order["order_number"],
            "status": order["status"],
            "status_history": history,
            "tracking_number": order.get("tracking_number"),
            "carrier": order.get("carrier"),
            "estimated_delivery": order.get("estimated_delivery"),
            "delivered_at": order.get("delivered_at"),
            "created_at": order.get("created_at"),
            "total_items": sum(i["quantity"] for i in order.get("items", [])),
        },
    }


@router.get("/{order_id}")
def read_order(order_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = _own_order(db, order_id, current_user)
    return {"success": True, "data": order_view(order)}


@router.put("/{order_id}/cancel")
def cancel_order(
    order_id: str,
    data: Optional[ReasonIn] = None,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    order = _own_order(db, order_id, current_user)
    if not can_be_cancelled(order):
        raise BadRequest(f"Order cannot be cancelled once {order['status']}", code="ORDER_NOT_CANCELLABLE")
    reason = (data.reason if data else None) or "Cancelled by customer"
    order = update_status(db, order, "cancelled", reason, current_user["_id"])
    for item in order["items"]:
        adjust_stock(db, item["product_id"], item["quantity"], "add")
    return {"success": True, "message": "Order cancelled successfully", "data": order_view(order)}


@router.put("/{order_id}/return")
def return_order(
    order_id: str,
    data: Optional[ReasonIn] = None,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    order = _own_order(db, order_id, current_user)
    if not can_be_returned(order):
        raise BadRequest(
            f"Only delivered orders can be returned, within {RETURN_WINDOW_DAYS} days",
            code="ORDER_NOT_RETURNABLE",
        )
    reason = (data.reason if data else None) or "Returned by customer"
    order = update_status(db, order, "returned", reason, current_user["_id"])
    return {"success": True, "message": "Return requested successfully", "data": order_view(order)}
