import pytest

from conftest import auth_headers
from database import utcnow
from reviews import is_verified_purchase, update_product_rating


def review_payload(product, rating=5, **extra):
    payload = {
        "product_id": str(product["_id"]),
        "rating": rating,
        "title": "Solid purchase",
        "comment": "Does exactly what it says.",
    }
    payload.update(extra)
    return payload


def product_rating(mongo, product):
    doc = mongo["product"].find_one({"_id": product["_id"]})
    return doc["average_rating"], doc["num_reviews"]


def test_rating_aggregate_follows_create_update_delete(client, mongo, make_user, make_product):
    product = make_product()
    first, second = auth_headers(make_user()), auth_headers(make_user())

    response = client.post("/api/reviews", json=review_payload(product, 5), headers=first)
    assert response.status_code == 201
    review_id = response.json()["data"]["id"]
    assert product_rating(mongo, product) == (5, 1)

    client.post("/api/reviews", json=review_payload(product, 2), headers=second)
    assert product_rating(mongo, product) == (3.5, 2)

    client.put(f"/api/reviews/{review_id}", json={"rating": 3}, headers=first)
    assert product_rating(mongo, product) == (2.5, 2)

    client.delete(f"/api/reviews/{review_id}", headers=first)
    assert product_rating(mongo, product) == (2, 1)


def test_recompute_with_no_reviews_resets_to_zero(mongo, make_product):
    product = make_product(average_rating=4.2, num_reviews=7)
    assert update_product_rating(mongo, product["_id"]) == (0, 0)
    assert product_rating(mongo, product) == (0, 0)


def test_average_is_rounded_to_one_decimal(mongo, make_user, make_product):
    product = make_product()
    for rating in (5, 4, 4):
        mongo["review"].insert_one({"product_id": product["_id"], "user_id": make_user()["_id"], "rating": rating})
    assert update_product_rating(mongo, product["_id"]) == (4.3, 3)


def test_second_review_for_same_product_conflicts(client, make_product, user_headers):
    product = make_product()
    client.post("/api/reviews", json=review_payload(product), headers=user_headers)
    response = client.post("/api/reviews", json=review_payload(product, 1), headers=user_headers)
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "DUPLICATE_REVIEW"


def test_review_validation_aggregates_fields(client, make_product, user_headers):
    product = make_product()
    response = client.post(
        "/api/reviews",
        json={"product_id": str(product["_id"]), "rating": 9, "title": "", "comment": "ok"},
        headers=user_headers,
    )
    assert response.status_code == 400
    assert set(response.json()["error"]["fields"]) == {"rating", "title"}


def test_review_of_inactive_product_is_not_found(client, make_product, user_headers):
    product = make_product(is_active=False)
    response = client.post("/api/reviews", json=review_payload(product), headers=user_headers)
    assert response.status_code == 404


def test_verified_purchase_requires_delivered_order(mongo, user, make_product):
    product = make_product()
    order = {"user_id": user["_id"], "items": [{"product_id": product["_id"], "quantity": 1}], "status": "shipped"}
    order_id = mongo["order"].insert_one(order).inserted_id
    assert not is_verified_purchase(mongo, user["_id"], product["_id"])

    mongo["order"].update_one({"_id": order_id}, {"$set": {"status": "delivered"}})
    assert is_verified_purchase(mongo, user["_id"], product["_id"])
    assert is_verified_purchase(mongo, user["_id"], product["_id"], order_id)


def test_only_owner_or_admin_may_change_review(client, make_user, make_product, user_headers, admin_headers):
    product = make_product()
    review_id = client.post("/api/reviews", json=review_payload(product), headers=user_headers).json()["data"]["id"]
    stranger = auth_headers(make_user())

    assert client.put(f"/api/reviews/{review_id}", json={"rating": 1}, headers=stranger).status_code == 403
    assert client.delete(f"/api/reviews/{review_id}", headers=stranger).status_code == 403
    assert client.delete(f"/api/reviews/{review_id}", headers=admin_headers).status_code == 200


def test_votes_flip_counters(client, make_user, make_product, user_headers):
    product = make_product()
    review_id = client.post("/api/reviews", json=review_payload(product), headers=user_headers).json()["data"]["id"]
    voter = auth_headers(make_user())
    url = f"/api/reviews/{review_id}/vote"

    data = client.post(url, json={"is_helpful": True}, headers=voter).json()["data"]
    assert (data["helpful_count"], data["not_helpful_count"]) == (1, 0)
    assert data["helpful_percentage"] == 100
    assert "helpful_votes" not in data

    data = client.post(url, json={"is_helpful": False}, headers=voter).json()["data"]
    assert (data["helpful_count"], data["not_helpful_count"]) == (0, 1)


def test_reports_hide_review_after_five_flags(client, mongo, make_user, make_product, user_headers):
    product = make_product()
    review_id = client.post("/api/reviews", json=review_payload(product), headers=user_headers).json()["data"]["id"]
    url = f"/api/reviews/{review_id}/report"

    reporters = [auth_headers(make_user()) for _ in range(5)]
    for headers in reporters[:4]:
        assert client.post(url, json={"reason": "spam"}, headers=headers).status_code == 200
    again = client.post(url, json={"reason": "fake"}, headers=reporters[0])
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "ALREADY_FLAGGED"

    listing = client.get(f"/api/reviews/product/{product['_id']}").json()["data"]
    assert len(listing["reviews"]) == 1

    client.post(url, json={"reason": "offensive"}, headers=reporters[4])
    listing = client.get(f"/api/reviews/product/{product['_id']}").json()["data"]
    assert listing["reviews"] == []
    assert mongo["review"].find_one()["flagged_count"] == 5


def test_report_reason_must_be_known(client, make_product, user_headers):
    product = make_product()
    review_id = client.post("/api/reviews", json=review_payload(product), headers=user_headers).json()["data"]["id"]
    response = client.post(f"/api/reviews/{review_id}/report", json={"reason": "boring"}, headers=user_headers)
    assert response.status_code == 400


def test_moderation_queue_and_decision(client, mongo, make_product, user_headers, admin_headers):
    product = make_product()
    review_id = client.post("/api/reviews", json=review_payload(product), headers=user_headers).json()["data"]["id"]
    mongo["review"].update_many({}, {"$set": {"flagged_count": 3}})

    assert client.get("/api/reviews/moderation", headers=user_headers).status_code == 403
    queue = client.get("/api/reviews/moderation", headers=admin_headers).json()["data"]
    assert [r["id"] for r in queue] == [review_id]

    response = client.put(
        f"/api/reviews/{review_id}/moderate",
        json={"action": "reject", "notes": "Off topic"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Review rejected"
    assert response.json()["data"]["admin_notes"] == "Off topic"
    assert client.get(f"/api/reviews/product/{product['_id']}").json()["data"]["reviews"] == []


def test_product_reviews_include_stats_and_reviewer(client, mongo, make_user, make_product):
    product = make_product()
    author = make_user(name="Riley Reviewer")
    client.post("/api/reviews", json=review_payload(product, 4), headers=auth_headers(author))
    mongo["review"].insert_one(
        {
            "product_id": product["_id"],
            "user_id": make_user()["_id"],
            "rating": 2,
            "is_approved": True,
            "is_verified_purchase": True,
            "created_at": utcnow(),
        }
    )

    data = client.get(f"/api/reviews/product/{product['_id']}", params={"sort_by": "rating"}).json()["data"]

    assert [r["rating"] for r in data["reviews"]] == [4, 2]
    assert data["reviews"][0]["user"]["name"] == "Riley Reviewer"
    stats = data["stats"]
    assert stats["total_reviews"] == 2
    assert stats["average_rating"] == pytest.approx(3.0)
    assert stats["verified_percentage"] == 50.0
    assert stats["rating_distribution"] == {"1": 0, "2": 1, "3": 0, "4": 1, "5": 0}

    verified = client.get(f"/api/reviews/product/{product['_id']}", params={"verified_only": True}).json()["data"]
    assert [r["rating"] for r in verified["reviews"]] == [2]


def test_my_reviews(client, make_product, user_headers):
    product = make_product(name="Kettle")
    client.post("/api/reviews", json=review_payload(product), headers=user_headers)
    body = client.get("/api/reviews/user", headers=user_headers).json()
    assert body["count"] == 1
    assert body["data"][0]["product"]["name"] == "Kettle"


def test_update_ignores_nulls(client, mongo, make_product, user_headers):
    product = make_product()
    review_id = client.post("/api/reviews", json=review_payload(product, 4), headers=user_headers).json()["data"]["id"]
    url = f"/api/reviews/{review_id}"

    response = client.put(url, json={"rating": None, "title": None}, headers=user_headers)
    assert response.status_code == 400

    payload = {"rating": None, "comment": "Still works a month later."}
    data = client.put(url, json=payload, headers=user_headers).json()["data"]
    assert data["rating"] == 4
    assert data["title"] == "Solid purchase"
    assert data["comment"] == "Still works a month later."
    assert product_rating(mongo, product) == (4, 1)


def test_signed_in_reader_sees_own_review_and_vote(client, make_user, make_product, user_headers):
    product = make_product()
    client.post("/api/reviews", json=review_payload(product), headers=user_headers)
    other_author = auth_headers(make_user())
    other_id = client.post("/api/reviews", json=review_payload(product, 3), headers=other_author).json()["data"]["id"]
    client.post(f"/api/reviews/{other_id}/vote", json={"is_helpful": False}, headers=user_headers)
    url = f"/api/reviews/product/{product['_id']}"

    reviews = client.get(url, params={"sort_by": "rating"}, headers=user_headers).json()["data"]["reviews"]
    assert [(r["rating"], r["is_own"], r["my_vote"]) for r in reviews] == [(5, True, None), (3, False, False)]

    anonymous = client.get(url).json()["data"]["reviews"]
    assert all("is_own" not in r and "my_vote" not in r for r in anonymous)
    bad_token = client.get(url, headers={"Authorization": "Bearer garbage"})
    assert bad_token.status_code == 200
