from typing import Any, Dict, List

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pymongo.database import Database

import settings
from database import get_db, to_object_id, utcnow
from errors import BadRequest
from products import get_active_product, product_view
from security import get_current_user

logger = structlog.get_logger(__name__)

# Mounted ahead of the products router so "/wishlist" is not read as a product id
router = APIRouter(prefix="/api/products/wishlist", tags=["wishlist"])


class WishlistIn(BaseModel):
    product_id: str


def _active_wishlist(db: Database, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Load the user's wishlisted products, dropping ids that no longer resolve to an active product."""
    ids = user.get("wishlist", [])
    if not ids:
        return []
    found = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}, "is_active": True})}
    products = [found[i] for i in ids if i in found]
    if len(products) != len(ids):
        db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"wishlist": [p["_id"] for p in products], "updated_at": utcnow()}},
        )
        logger.info("wishlist_pruned", user_id=str(user["_id"]), removed=len(ids) - len(products))
    return products


@router.get("")
def get_wishlist(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    products = _active_wishlist(db, current_user)
    return {"success": True, "data": [product_view(p) for p in products], "count": len(products)}


@router.post("")
def add_to_wishlist(data: WishlistIn, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    product = get_active_product(db, data.product_id)
    wishlist = current_user.get("wishlist", [])
    if product["_id"] in wishlist:
        raise BadRequest("Product already in wishlist", code="ALREADY_IN_WISHLIST")
    db["user"].update_one(
        {"_id": current_user["_id"]},
        {"$set": {"wishlist": wishlist + [product["_id"]], "updated_at": utcnow()}},
    )
    return {"success": True, "message": "Product added to wishlist", "data": product_view(product)}


@router.delete("/{product_id}")
def remove_from_wishlist(product_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    obj_id = to_object_id(product_id, "Product not found")
    wishlist = current_user.get("wishlist", [])
    if obj_id not in wishlist:
        raise BadRequest("Product not in wishlist", code="NOT_IN_WISHLIST")
    db["user"].update_one(
        {"_id": current_user["_id"]},
        {"$set": {"wishlist": [i for i in wishlist if i != obj_id], "updated_at": utcnow()}},
    )
    return {"success": True, "message": "Product removed from wishlist"}


@router.get("/check/{product_id}")
def check_wishlist(product_id: str, current_user: dict = Depends(get_current_user)):
    obj_id = to_object_id(product_id, "Product not found")
    return {"success": True, "data": {"in_wishlist": obj_id in current_user.get("wishlist", [])}}


@router.post("/share")
def share_wishlist(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    products = _active_wishlist(db, current_user)
    return {
        "success": True,
        "data": {
            "share_url": f"{settings.FRONTEND_URL}/wishlist/shared/{current_user['_id']}",
            "count": len(products),
        },
    }


@router.delete("")
def clear_wishlist(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": {"wishlist": [], "updated_at": utcnow()}})
    return {"success": True, "message": "Wishlist cleared"}
