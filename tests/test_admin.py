from datetime import timedelta

from bson import ObjectId

from conftest import PASSWORD
from database import utcnow


def test_admin_routes_reject_shoppers(client, user_headers):
    assert client.get("/api/admin/users", headers=user_headers).status_code == 403
    assert client.get("/api/admin/users").status_code == 401


def test_list_users_filters_and_hides_secrets(client, make_user, admin_headers):
    make_user(email="jo@example.com", name="Jo Buyer")
    make_user(email="max@example.com", name="Max Idle", is_active=False)

    body = client.get("/api/admin/users", params={"search": "jo"}, headers=admin_headers).json()
    users = body["data"]["users"]
    assert [u["email"] for u in users] == ["jo@example.com"]
    assert "password_hash" not in users[0]

    body = client.get("/api/admin/users", params={"is_active": False}, headers=admin_headers).json()
    assert [u["email"] for u in body["data"]["users"]] == ["max@example.com"]

    body = client.get("/api/admin/users", params={"role": "admin"}, headers=admin_headers).json()
    assert body["data"]["pagination"]["total_users"] == 1


def test_promote_and_deactivate_user(client, mongo, user, admin_headers):
    url = f"/api/admin/users/{user['_id']}"

    data = client.put(url, json={"role": "admin"}, headers=admin_headers).json()["data"]
    assert data["role"] == "admin"

    mongo["user"].update_one({"_id": user["_id"]}, {"$set": {"refresh_token": "stale"}})
    data = client.put(url, json={"is_active": False}, headers=admin_headers).json()["data"]
    assert data["is_active"] is False
    assert mongo["user"].find_one({"_id": user["_id"]})["refresh_token"] is None

    response = client.post("/api/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert response.json()["error"]["code"] == "ACCOUNT_DEACTIVATED"


def test_user_update_guards(client, admin, admin_headers):
    own = f"/api/admin/users/{admin['_id']}"

    response = client.put(own, json={"role": "user"}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "SELF_UPDATE_FORBIDDEN"
    assert client.put(own, json={"is_active": False}, headers=admin_headers).status_code == 400

    assert client.put(own, json={}, headers=admin_headers).json()["error"]["code"] == "NO_UPDATE_FIELDS"

    response = client.put(f"/api/admin/users/{ObjectId()}", json={"role": "admin"}, headers=admin_headers)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "USER_NOT_FOUND"


def test_cart_cleanup_removes_only_old_empty_carts(client, mongo, make_user, admin_headers):
    old = utcnow() - timedelta(days=45)
    mongo["cart"].insert_many(
        [
            {"user_id": make_user()["_id"], "items": [], "last_activity": old},
            {"user_id": make_user()["_id"], "items": [], "last_activity": utcnow()},
            {"user_id": make_user()["_id"], "items": [{"quantity": 1}], "last_activity": old},
        ]
    )

    response = client.post("/api/admin/carts/cleanup", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["data"]["deleted"] == 1
    assert mongo["cart"].count_documents({}) == 2

    response = client.post("/api/admin/carts/cleanup", json={"days_old": 0}, headers=admin_headers)
    assert response.status_code == 400


def test_order_listing_includes_customer(client, mongo, user, admin_headers):
    mongo["order"].insert_many(
        [
            {"order_number": "ORD-20240101-00001", "user_id": user["_id"], "status": "pending",
             "payment_status": "pending", "created_at": utcnow()},
            {"order_number": "ORD-20240101-00002", "user_id": user["_id"], "status": "delivered",
             "payment_status": "paid", "created_at": utcnow()},
        ]
    )

    body = client.get("/api/admin/orders", params={"status": "delivered"}, headers=admin_headers).json()

    orders = body["data"]["orders"]
    assert [o["order_number"] for o in orders] == ["ORD-20240101-00002"]
    assert orders[0]["user"] == {"id": str(user["_id"]), "name": user["name"], "email": user["email"]}
    assert body["data"]["pagination"]["total_orders"] == 1
