from typing import Any, Dict, List, Literal, Optional

import structlog
from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from database import create_document, get_db, serialize_doc, to_object_id, utcnow
from errors import BadRequest, Conflict, Forbidden, NotFound
from schemas import FlagReason, Review as ReviewSchema
from security import get_current_user, get_optional_user, require_admin

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/reviews", tags=["reviews"])

AUTO_HIDE_FLAGS = 5
MODERATION_FLAGS = 3
SUB_RATINGS = ("product_quality", "value_for_money", "delivery_speed", "customer_service")
PRIVATE_REVIEW_FIELDS = ("flagged_reasons", "admin_notes", "helpful_votes")


# Helpers

def helpful_percentage(review: Dict[str, Any]) -> int:
    total = review.get("helpful_count", 0) + review.get("not_helpful_count", 0)
    if total == 0:
        return 0
    return round(review.get("helpful_count", 0) / total * 100)


def overall_score(review: Dict[str, Any]) -> float:
    ratings = [review[k] for k in SUB_RATINGS if review.get(k) is not None]
    if not ratings:
        return review.get("rating", 0)
    return round(sum(ratings) / len(ratings), 1)


def review_view(
    review: Dict[str, Any],
    admin: bool = False,
    viewer: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    out = serialize_doc(review)
    if not admin:
        for field in PRIVATE_REVIEW_FIELDS:
            out.pop(field, None)
    out["helpful_percentage"] = helpful_percentage(review)
    out["overall_score"] = overall_score(review)
    if viewer is not None:
        # signed-in readers see which review is theirs and how they voted
        vote = next((v for v in review.get("helpful_votes", []) if v["user_id"] == viewer["_id"]), None)
        out["is_own"] = review.get("user_id") == viewer["_id"]
        out["my_vote"] = vote["is_helpful"] if vote else None
    return out


def with_reviewers(db: Database, reviews: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    user_ids = list({r["user_id"] for r in reviews if r.get("user_id")})
    users = {
        u["_id"]: {"id": str(u["_id"]), "name": u.get("name"), "profile_picture": u.get("profile_picture", "")}
        for u in db["user"].find({"_id": {"$in": user_ids}})
    } if user_ids else {}
    for review in reviews:
        review["user"] = users.get(review.get("user_id"))
    return reviews


def update_product_rating(db: Database, product_id: ObjectId):
    """Recompute average_rating/num_reviews from every review of the product."""
    stats = list(
        db["review"].aggregate(
            [
                {"$match": {"product_id": product_id}},
                {"$group": {"_id": None, "avg_rating": {"$avg": "$rating"}, "num_reviews": {"$sum": 1}}},
            ]
        )
    )
    if stats:
        average, count = round(stats[0]["avg_rating"] or 0, 1), stats[0]["num_reviews"]
    else:
        average, count = 0, 0
    db["product"].update_one({"_id": product_id}, {"$set": {"average_rating": average, "num_reviews": count}})
    logger.debug("product_rating_updated", product_id=str(product_id), average=average, num_reviews=count)
    return average, count


def is_verified_purchase(db: Database, user_id: ObjectId, product_id: ObjectId, order_id: Optional[ObjectId] = None) -> bool:
    query: Dict[str, Any] = {"user_id": user_id, "items.product_id": product_id, "status": "delivered"}
    if order_id is not None:
        query["_id"] = order_id
    return db["order"].find_one(query) is not None


def review_stats(db: Database, product_id: ObjectId) -> Dict[str, Any]:
    match = {"product_id": product_id, "is_approved": True}
    distribution = {str(star): 0 for star in range(1, 6)}
    for row in db["review"].aggregate([{"$match": match}, {"$group": {"_id": "$rating", "count": {"$sum": 1}}}]):
        distribution[str(row["_id"])] = row["count"]
    total = sum(distribution.values())
    verified = db["review"].count_documents({**match, "is_verified_purchase": True})
    average = sum(int(star) * n for star, n in distribution.items()) / total if total else 0
    return {
        "total_reviews": total,
        "average_rating": round(average, 1),
        "verified_reviews": verified,
        "verified_percentage": round(verified / total * 100, 1) if total else 0,
        "rating_distribution": distribution,
    }


def _get_review(db: Database, review_id: str) -> Dict[str, Any]:
    review = db["review"].find_one({"_id": to_object_id(review_id, "Review not found")})
    if not review:
        raise NotFound("Review not found", code="REVIEW_NOT_FOUND")
    return review


# Request models

class ReviewIn(BaseModel):
    product_id: str
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    comment: str = Field(..., min_length=1, max_length=1000)
    pros: List[str] = []
    cons: List[str] = []
    product_quality: Optional[int] = Field(None, ge=1, le=5)
    value_for_money: Optional[int] = Field(None, ge=1, le=5)
    delivery_speed: Optional[int] = Field(None, ge=1, le=5)
    customer_service: Optional[int] = Field(None, ge=1, le=5)


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    comment: Optional[str] = Field(None, min_length=1, max_length=1000)
    pros: Optional[List[str]] = None
    cons: Optional[List[str]] = None
    product_quality: Optional[int] = Field(None, ge=1, le=5)
    value_for_money: Optional[int] = Field(None, ge=1, le=5)
    delivery_speed: Optional[int] = Field(None, ge=1, le=5)
    customer_service: Optional[int] = Field(None, ge=1, le=5)


class VoteIn(BaseModel):
    is_helpful: bool


class ReportIn(BaseModel):
    reason: FlagReason


class ModerateIn(BaseModel):
    action: Literal["approve", "reject"]
    notes: str = ""


# Routes

@router.get("/product/{product_id}")
def product_reviews(
    product_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    rating: Optional[int] = Query(None, ge=1, le=5),
    verified_only: bool = False,
    sort_by: Literal["created_at", "rating", "helpful_count"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    viewer: Optional[dict] = Depends(get_optional_user),
    db: Database = Depends(get_db),
):
    obj_id = to_object_id(product_id, "Product not found")
    query: Dict[str, Any] = {"product_id": obj_id, "is_approved": True}
    if rating:
        query["rating"] = rating
    if verified_only:
        query["is_verified_purchase"] = True

    total = db["review"].count_documents(query)
    direction = DESCENDING if sort_order == "desc" else ASCENDING
    reviews = list(db["review"].find(query).sort(sort_by, direction).skip((page - 1) * limit).limit(limit))
    return {
        "success": True,
        "data": {
            "reviews": [review_view(r, viewer=viewer) for r in with_reviewers(db, reviews)],
            "stats": review_stats(db, obj_id),
            "pagination": {
                "current_page": page,
                "total_pages": (total + limit - 1) // limit,
                "total_reviews": total,
                "limit": limit,
            },
        },
    }


@router.get("/user")
def my_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query = {"user_id": current_user["_id"]}
    reviews = list(db["review"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit))
    product_ids = [r["product_id"] for r in reviews]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": product_ids}})} if product_ids else {}
    data = []
    for review in reviews:
        item = review_view(review)
        product = products.get(review["product_id"])
        item["product"] = {"id": str(product["_id"]), "name": product.get("name"), "images": product.get("images", [])} if product else None
        data.append(item)
    return {"success": True, "data": data, "count": db["review"].count_documents(query)}


@router.get("/moderation")
def reviews_for_moderation(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    query = {"$or": [{"flagged_count": {"$gte": MODERATION_FLAGS}}, {"is_approved": False}]}
    cursor = (
        db["review"]
        .find(query)
        .sort([("flagged_count", DESCENDING), ("created_at", DESCENDING)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    reviews = with_reviewers(db, list(cursor))
    return {"success": True, "data": [review_view(r, admin=True) for r in reviews]}


@router.post("", status_code=201)
def create_review(data: ReviewIn, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    product_id = to_object_id(data.product_id, "Product not found")
    product = db["product"].find_one({"_id": product_id})
    if not product or not product.get("is_active", True):
        raise NotFound("Product not found or unavailable", code="PRODUCT_NOT_FOUND")
    if db["review"].find_one({"product_id": product_id, "user_id": current_user["_id"]}):
        raise Conflict("You have already reviewed this product", code="DUPLICATE_REVIEW")

    order_id = to_object_id(data.order_id, "Order not found") if data.order_id else None
    fields = data.model_dump(exclude={"product_id", "order_id"})
    review = ReviewSchema(
        **fields,
        user_id=current_user["_id"],
        product_id=product_id,
        order_id=order_id,
        is_verified_purchase=is_verified_purchase(db, current_user["_id"], product_id, order_id),
    )
    created = create_document(db, "review", review)
    update_product_rating(db, product_id)

    logger.info("review_created", review_id=str(created["_id"]), product_id=str(product_id), rating=data.rating)
    return {"success": True, "message": "Review submitted successfully", "data": review_view(created)}


@router.put("/{review_id}")
def update_review(
    review_id: str,
    data: ReviewUpdate,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    review = _get_review(db, review_id)
    if review["user_id"] != current_user["_id"]:
        raise Forbidden("Not authorized to update this review", code="RESOURCE_ACCESS_DENIED")
    update_dict = data.model_dump(exclude_unset=True, exclude_none=True)
    if not update_dict:
        raise BadRequest("No fields to update", code="NO_UPDATE_FIELDS")
    update_dict["updated_at"] = utcnow()
    db["review"].update_one({"_id": review["_id"]}, {"$set": update_dict})
    if "rating" in update_dict:
        update_product_rating(db, review["product_id"])
    review = db["review"].find_one({"_id": review["_id"]})
    return {"success": True, "message": "Review updated successfully", "data": review_view(review)}


@router.delete("/{review_id}")
def delete_review(review_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    review = _get_review(db, review_id)
    if review["user_id"] != current_user["_id"] and current_user.get("role") != "admin":
        raise Forbidden("Not authorized to delete this review", code="RESOURCE_ACCESS_DENIED")
    db["review"].delete_one({"_id": review["_id"]})
    update_product_rating(db, review["product_id"])
    logger.info("review_deleted", review_id=review_id, by=str(current_user["_id"]))
    return {"success": True, "message": "Review deleted successfully"}


@router.post("/{review_id}/vote")
def vote_review(review_id: str, data: VoteIn, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    review = _get_review(db, review_id)
    votes = review.get("helpful_votes", [])
    helpful, not_helpful = review.get("helpful_count", 0), review.get("not_helpful_count", 0)

    existing = next((v for v in votes if v["user_id"] == current_user["_id"]), None)
    if existing is not None:
        if existing["is_helpful"] and not data.is_helpful:
            helpful, not_helpful = max(0, helpful - 1), not_helpful + 1
        elif not existing["is_helpful"] and data.is_helpful:
            helpful, not_helpful = helpful + 1, max(0, not_helpful - 1)
        existing["is_helpful"] = data.is_helpful
        existing["voted_at"] = utcnow()
    else:
        votes.append({"user_id": current_user["_id"], "is_helpful": data.is_helpful, "voted_at": utcnow()})
        if data.is_helpful:
            helpful += 1
        else:
            not_helpful += 1

    db["review"].update_one(
        {"_id": review["_id"]},
        {"$set": {"helpful_votes": votes, "helpful_count": helpful, "not_helpful_count": not_helpful}},
    )
    review = db["review"].find_one({"_id": review["_id"]})
    return {"success": True, "message": "Vote recorded", "data": review_view(review)}


@router.post("/{review_id}/report")
def report_review(review_id: str, data: ReportIn, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    review = _get_review(db, review_id)
    flags = review.get("flagged_reasons", [])
    if any(f["reported_by"] == current_user["_id"] for f in flags):
        raise BadRequest("You have already flagged this review", code="ALREADY_FLAGGED")

    flags.append({"reason": data.reason, "reported_by": current_user["_id"], "reported_at": utcnow()})
    update: Dict[str, Any] = {"flagged_reasons": flags, "flagged_count": review.get("flagged_count", 0) + 1}
    if update["flagged_count"] >= AUTO_HIDE_FLAGS:
        update["is_approved"] = False
    db["review"].update_one({"_id": review["_id"]}, {"$set": update})
    logger.info("review_flagged", review_id=review_id, reason=data.reason, flagged_count=update["flagged_count"])
    return {"success": True, "message": "Review reported"}


@router.put("/{review_id}/moderate")
def moderate_review(review_id: str, data: ModerateIn, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    review = _get_review(db, review_id)
    db["review"].update_one(
        {"_id": review["_id"]},
        {
            "$set": {
                "is_approved": data.action == "approve",
                "admin_notes": data.notes,
                "moderated_by": admin["_id"],
                "moderated_at": utcnow(),
            }
        },
    )
    review = db["review"].find_one({"_id": review["_id"]})
    logger.info("review_moderated", review_id=review_id, action=data.action, admin=str(admin["_id"]))
    state = "approved" if data.action == "approve" else "rejected"
    return {"success": True, "message": f"Review {state}", "data": review_view(review, admin=True)}
