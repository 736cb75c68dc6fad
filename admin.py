import re
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field
from pymongo import DESCENDING
from pymongo.database import Database

from cart import cleanup_old_carts
from database import as_naive_utc, get_db, paginate, to_object_id, utcnow
from errors import BadRequest, NotFound
from mailer import send_in_background, send_order_status_email
from orders import OrderAdminUpdate, get_order, order_view, update_payment_status, update_status
from schemas import OrderStatus, PaymentStatus, Role
from security import public_user, require_admin

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class UserAdminUpdate(BaseModel):
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class CleanupIn(BaseModel):
    days_old: int = Field(30, ge=1)


# Users

@router.get("/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    role: Optional[Role] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    if is_active is not None:
        query["is_active"] = is_active
    if search:
        rx = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": rx}, {"email": rx}]

    total = db["user"].count_documents(query)
    cursor = db["user"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": {
            "users": [public_user(u) for u in cursor],
            "pagination": paginate(page, limit, total, total_key="total_users"),
        },
    }


@router.put("/users/{user_id}")
def update_user(
    user_id: str,
    data: UserAdminUpdate,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    obj_id = to_object_id(user_id, "User not found")
    update_dict = data.model_dump(exclude_none=True)
    if not update_dict:
        raise BadRequest("No fields to update", code="NO_UPDATE_FIELDS")
    if obj_id == admin["_id"] and (update_dict.get("role") == "user" or update_dict.get("is_active") is False):
        raise BadRequest("Admins cannot demote or deactivate themselves", code="SELF_UPDATE_FORBIDDEN")
    if update_dict.get("is_active") is False:
        update_dict["refresh_token"] = None
    update_dict["updated_at"] = utcnow()

    res = db["user"].update_one({"_id": obj_id}, {"$set": update_dict})
    if res.matched_count == 0:
        raise NotFound("User not found", code="USER_NOT_FOUND")
    user = db["user"].find_one({"_id": obj_id})
    logger.info("user_updated_by_admin", user_id=user_id, admin=str(admin["_id"]), fields=sorted(update_dict))
    return {"success": True, "message": "User updated successfully", "data": public_user(user)}


# Carts

@router.post("/carts/cleanup")
def cleanup_carts(data: Optional[CleanupIn] = None, db: Database = Depends(get_db)):
    days_old = data.days_old if data else 30
    deleted = cleanup_old_carts(db, days_old)
    return {"success": True, "message": f"Removed {deleted} abandoned carts", "data": {"deleted": deleted}}


# Orders

@router.get("/orders")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    user_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if payment_status:
        query["payment_status"] = payment_status
    if user_id:
        query["user_id"] = to_object_id(user_id, "User not found")
    created: Dict[str, Any] = {}
    if date_from:
        created["$gte"] = as_naive_utc(date_from)
    if date_to:
        created["$lte"] = as_naive_utc(date_to)
    if created:
        query["created_at"] = created

    total = db["order"].count_documents(query)
    orders = list(db["order"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit))
    user_ids = list({o["user_id"] for o in orders})
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": user_ids}})} if user_ids else {}
    data = []
    for order in orders:
        item = order_view(order)
        customer = users.get(order["user_id"])
        item["user"] = {"id": str(customer["_id"]), "name": customer.get("name"), "email": customer.get("email")} if customer else None
        data.append(item)
    return {
        "success": True,
        "data": {"orders": data, "pagination": paginate(page, limit, total, total_key="total_orders")},
    }


@router.put("/orders/{order_id}")
def update_order(
    order_id: str,
    data: OrderAdminUpdate,
    background_tasks: BackgroundTasks,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    order = get_order(db, order_id)
    fields = data.model_dump(exclude_unset=True)
    if not fields:
        raise BadRequest("No fields to update", code="NO_UPDATE_FIELDS")

    details = {k: fields[k] for k in ("tracking_number", "carrier", "estimated_delivery", "notes") if k in fields}
    if details.get("estimated_delivery") is not None:
        details["estimated_delivery"] = as_naive_utc(details["estimated_delivery"])
    if details:
        details["updated_at"] = utcnow()
        db["order"].update_one({"_id": order["_id"]}, {"$set": details})
        order = get_order(db, order_id)
    if fields.get("payment_status"):
        order = update_payment_status(db, order, fields["payment_status"])
    if fields.get("status"):
        order = update_status(db, order, fields["status"], fields.get("note"), admin["_id"])
        customer = db["user"].find_one({"_id": order["user_id"]})
        if customer:
            background_tasks.add_task(send_in_background, send_order_status_email, order, customer, fields["status"])

    logger.info("order_updated_by_admin", order_id=order_id, admin=str(admin["_id"]), fields=sorted(fields))
    return {"success": True, "message": "Order updated successfully", "data": order_view(order)}
