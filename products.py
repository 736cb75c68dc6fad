import random
import re
import string
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from database import create_document, get_db, get_documents, paginate, serialize_doc, to_object_id, utcnow
from errors import BadRequest, NotFound
from reviews import review_view, with_reviewers
from schemas import Category, Product as ProductSchema, ProductFeature, ProductImage
from security import require_admin

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])

SortField = Literal["created_at", "price", "name", "average_rating", "total_sold", "views", "stock"]
SortOrder = Literal["asc", "desc"]


# Helpers

def generate_sku(category: str, now: Optional[datetime] = None) -> str:
    # CATEGORY-TIMESTAMP-RANDOM, e.g. ELE-482913-K2Q
    now = now or utcnow()
    prefix = re.sub(r"\s+", "", category)[:3].upper()
    stamp = str(int(now.timestamp() * 1000))[-6:]
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=3))
    return f"{prefix}-{stamp}-{suffix}"


def stock_status(stock: int) -> str:
    if stock <= 0:
        return "Out of Stock"
    if stock <= 5:
        return "Low Stock"
    if stock <= 20:
        return "Limited Stock"
    return "In Stock"


def discount_percentage(price: float, original_price: Optional[float]) -> int:
    if not original_price or original_price <= price:
        return 0
    return round((original_price - price) / original_price * 100)


def product_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(doc)
    stock = doc.get("stock", 0)
    out["in_stock"] = stock > 0
    out["stock_status"] = stock_status(stock)
    out["discount_percentage"] = discount_percentage(doc.get("price", 0), doc.get("original_price"))
    return out


def product_summary(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "price": doc.get("price"),
        "images": doc.get("images", []),
        "thumbnail": doc.get("thumbnail", ""),
        "stock": doc.get("stock", 0),
        "is_active": doc.get("is_active", True),
        "category": doc.get("category"),
    }


def get_active_product(db: Database, product_id, message: str = "Product not found or unavailable") -> Dict[str, Any]:
    product = db["product"].find_one({"_id": to_object_id(product_id, message)})
    if not product or not product.get("is_active", True):
        raise NotFound(message, code="PRODUCT_NOT_FOUND")
    return product


def adjust_stock(db: Database, product_id, quantity: int, operation: str = "subtract") -> Optional[Dict[str, Any]]:
    """Read-modify-write stock update; no locking, concurrent writers can clobber each other."""
    product = db["product"].find_one({"_id": to_object_id(product_id)})
    if not product:
        return None
    update: Dict[str, Any] = {"updated_at": utcnow()}
    if operation == "subtract":
        update["stock"] = max(0, product.get("stock", 0) - quantity)
        update["total_sold"] = product.get("total_sold", 0) + quantity
    elif operation == "add":
        update["stock"] = product.get("stock", 0) + quantity
    else:
        raise ValueError(f"unknown stock operation: {operation}")
    db["product"].update_one({"_id": product["_id"]}, {"$set": update})
    product.update(update)
    return product


def _regex(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


def _search_clause(text: str) -> Dict[str, Any]:
    rx = _regex(text)
    return {
        "$or": [
            {"name": rx},
            {"description": rx},
            {"category": rx},
            {"brand": rx},
            {"tags": rx},
        ]
    }


def _listing(db: Database, query: Dict[str, Any], sort_by: str, sort_order: str, page: int, limit: int):
    direction = DESCENDING if sort_order == "desc" else ASCENDING
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort(sort_by, direction).skip((page - 1) * limit).limit(limit)
    return {
        "products": [product_view(p) for p in cursor],
        "pagination": paginate(page, limit, total, total_key="total_products"),
    }


# Request models

class ProductIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=2000)
    price: float = Field(..., gt=0)
    original_price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    category: Category
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    stock: int = Field(..., ge=0)
    images: List[ProductImage] = []
    tags: List[str] = []
    features: List[ProductFeature] = []
    specifications: Dict[str, str] = {}
    is_featured: bool = False
    is_active: bool = True

    @field_validator("sku")
    @classmethod
    def blank_sku(cls, v):
        if v is None:
            return None
        return v.strip() or None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    price: Optional[float] = Field(None, gt=0)
    original_price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    category: Optional[Category] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[ProductImage]] = None
    tags: Optional[List[str]] = None
    features: Optional[List[ProductFeature]] = None
    specifications: Optional[Dict[str, str]] = None
    is_featured: Optional[bool] = None
    is_active: Optional[bool] = None


# Public catalogue

@router.get("")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    search: Optional[str] = None,
    sort_by: SortField = "created_at",
    sort_order: SortOrder = "desc",
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"is_active": True}
    if category:
        query["category"] = _regex(category)
    price_filter: Dict[str, Any] = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["price"] = price_filter
    if search:
        query.update(_search_clause(search))

    data = _listing(db, query, sort_by, sort_order, page, limit)
    logger.debug("products_listed", count=len(data["products"]), total=data["pagination"]["total_products"])
    return {"success": True, "data": data}


@router.get("/search")
def search_products(q: Optional[str] = None, limit: int = Query(10, ge=1, le=50), db: Database = Depends(get_db)):
    if not q or len(q.strip()) < 2:
        raise BadRequest("Search query must be at least 2 characters long", code="INVALID_SEARCH")
    query = {"is_active": True, **_search_clause(q.strip())}
    products = [product_view(p) for p in db["product"].find(query).limit(limit)]
    return {"success": True, "data": products, "count": len(products)}


@router.get("/categories")
def get_categories(db: Database = Depends(get_db)):
    categories = [c for c in db["product"].distinct("category", {"is_active": True}) if c and c.strip()]
    return {"success": True, "data": sorted(categories)}


@router.get("/featured")
def featured_products(limit: int = Query(8, ge=1, le=50), db: Database = Depends(get_db)):
    products = get_documents(db, "product", {"is_active": True, "is_featured": True}, [("created_at", DESCENDING)], limit)
    return {"success": True, "data": [product_view(p) for p in products]}


@router.get("/new-arrivals")
def new_arrivals(limit: int = Query(8, ge=1, le=50), db: Database = Depends(get_db)):
    products = get_documents(db, "product", {"is_active": True}, [("created_at", DESCENDING)], limit)
    return {"success": True, "data": [product_view(p) for p in products]}


@router.get("/best-sellers")
def best_sellers(limit: int = Query(8, ge=1, le=50), db: Database = Depends(get_db)):
    products = get_documents(db, "product", {"is_active": True}, [("total_sold", DESCENDING)], limit)
    return {"success": True, "data": [product_view(p) for p in products]}


@router.get("/category/{category}")
def products_by_category(
    category: str,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    sort_by: SortField = "created_at",
    sort_order: SortOrder = "desc",
    db: Database = Depends(get_db),
):
    query = {"is_active": True, "category": _regex(category)}
    return {"success": True, "data": _listing(db, query, sort_by, sort_order, page, limit)}


@router.get("/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    obj_id = to_object_id(product_id, "Product not found")
    product = db["product"].find_one({"_id": obj_id})
    if not product:
        raise NotFound("Product not found", code="PRODUCT_NOT_FOUND")
    if not product.get("is_active", True):
        raise NotFound("Product is not available", code="PRODUCT_NOT_FOUND")

    db["product"].update_one({"_id": obj_id}, {"$inc": {"views": 1}})
    product["views"] = product.get("views", 0) + 1

    reviews = list(
        db["review"].find({"product_id": obj_id, "is_approved": True}).sort("created_at", DESCENDING).limit(10)
    )
    data = product_view(product)
    data["reviews"] = [review_view(r) for r in with_reviewers(db, reviews)]
    return {"success": True, "data": data}


@router.get("/{product_id}/related")
def related_products(product_id: str, limit: int = Query(4, ge=1, le=20), db: Database = Depends(get_db)):
    obj_id = to_object_id(product_id, "Product not found")
    current = db["product"].find_one({"_id": obj_id})
    if not current:
        raise NotFound("Product not found", code="PRODUCT_NOT_FOUND")
    query = {"_id": {"$ne": obj_id}, "category": current["category"], "is_active": True}
    products = get_documents(db, "product", query, [("average_rating", DESCENDING)], limit)
    return {"success": True, "data": [product_view(p) for p in products]}


# Admin

@router.post("", status_code=201)
def create_product(data: ProductIn, current_user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    fields = data.model_dump()
    product = ProductSchema(
        **fields,
        thumbnail=fields["images"][0]["url"] if fields["images"] else "",
        created_by=current_user["_id"],
    )
    doc = product.model_dump()
    if not doc["sku"]:
        doc["sku"] = generate_sku(doc["category"])
    created = create_document(db, "product", doc)
    logger.info("product_created", product_id=str(created["_id"]), sku=doc["sku"], admin=str(current_user["_id"]))
    return {"success": True, "message": "Product created successfully", "data": product_view(created)}


@router.put("/{product_id}")
def update_product(
    product_id: str,
    data: ProductUpdate,
    current_user: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    obj_id = to_object_id(product_id, "Product not found")
    update_dict = data.model_dump(exclude_unset=True, exclude_none=True)
    if not update_dict:
        raise BadRequest("No fields to update", code="NO_UPDATE_FIELDS")
    for key in ("price", "original_price", "sale_price"):
        if update_dict.get(key) is not None:
            update_dict[key] = round(update_dict[key], 2)
    if "images" in update_dict:
        images = update_dict["images"] or []
        update_dict["thumbnail"] = images[0]["url"] if images else ""
    update_dict["updated_by"] = current_user["_id"]
    update_dict["updated_at"] = utcnow()

    res = db["product"].update_one({"_id": obj_id}, {"$set": update_dict})
    if res.matched_count == 0:
        raise NotFound("Product not found", code="PRODUCT_NOT_FOUND")
    product = db["product"].find_one({"_id": obj_id})
    logger.info("product_updated", product_id=product_id, fields=sorted(update_dict))
    return {"success": True, "message": "Product updated successfully", "data": product_view(product)}


@router.delete("/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    obj_id = to_object_id(product_id, "Product not found")
    res = db["product"].delete_one({"_id": obj_id})
    if res.deleted_count == 0:
        raise NotFound("Product not found", code="PRODUCT_NOT_FOUND")
    removed = db["review"].delete_many({"product_id": obj_id}).deleted_count
    logger.info("product_deleted", product_id=product_id, reviews_removed=removed)
    return {"success": True, "message": "Product deleted successfully"}


@router.patch("/{product_id}/status")
def toggle_product_status(product_id: str, current_user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    obj_id = to_object_id(product_id, "Product not found")
    product = db["product"].find_one({"_id": obj_id})
    if not product:
        raise NotFound("Product not found", code="PRODUCT_NOT_FOUND")
    is_active = not product.get("is_active", True)
    db["product"].update_one(
        {"_id": obj_id},
        {"$set": {"is_active": is_active, "updated_by": current_user["_id"], "updated_at": utcnow()}},
    )
    product = db["product"].find_one({"_id": obj_id})
    state = "activated" if is_active else "deactivated"
    return {"success": True, "message": f"Product {state} successfully", "data": product_view(product)}
