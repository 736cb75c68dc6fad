import re
from datetime import datetime, timedelta

import cart
import orders
import settings
from conftest import auth_headers
from database import utcnow


def place_order(client, headers, address):
    return client.post("/api/orders", json={"shipping_address": address}, headers=headers)


def test_order_snapshots_products_and_consumes_cart(
    client, mongo, user, user_headers, admin_headers, make_product, shipping_address, outbox
):
    lamp = make_product(price=25.0, stock=5, images=[{"url": "https://img.example.com/lamp.png"}])
    cart.add_item(mongo, user, lamp["_id"], 2)

    response = place_order(client, user_headers, shipping_address)

    assert response.status_code == 201
    order = response.json()["data"]
    assert order["status"] == "pending"
    assert order["subtotal"] == 50.0
    assert order["items"] == [
        {
            "product_id": str(lamp["_id"]),
            "name": "Desk Lamp",
            "price": 25.0,
            "quantity": 2,
            "image": "https://img.example.com/lamp.png",
            "sku": lamp["sku"],
        }
    ]
    assert [h["status"] for h in order["status_history"]] == ["pending"]

    stored = mongo["product"].find_one({"_id": lamp["_id"]})
    assert stored["stock"] == 3
    assert stored["total_sold"] == 2
    assert mongo["cart"].find_one({"user_id": user["_id"]})["items"] == []
    assert any(m["subject"] == f"Order Confirmation - {order['order_number']}" for m in outbox)

    client.put(
        f"/api/products/{lamp['_id']}",
        json={"name": "Renamed Lamp", "price": 99.0, "images": [{"url": "https://img.example.com/new.png"}]},
        headers=admin_headers,
    )
    again = client.get(f"/api/orders/{order['id']}", headers=user_headers).json()["data"]
    assert again["items"] == order["items"]
    assert again["total"] == order["total"]


def test_order_numbers_count_orders_created_today(mongo):
    now = datetime(2024, 3, 9, 15, 30)
    assert orders.generate_order_number(mongo, now) == "ORD-20240309-00001"

    mongo["order"].insert_many(
        [
            {"order_number": "ORD-20240308-00001", "created_at": now - timedelta(days=1)},
            {"order_number": "ORD-20240309-00001", "created_at": datetime(2024, 3, 9, 0, 0)},
            {"order_number": "ORD-20240309-00002", "created_at": datetime(2024, 3, 9, 23, 59, 59)},
        ]
    )
    assert orders.generate_order_number(mongo, now) == "ORD-20240309-00003"


def test_consecutive_orders_get_sequential_numbers(client, mongo, user, user_headers, make_product, shipping_address):
    product = make_product(stock=10)
    numbers = []
    for _ in range(2):
        cart.add_item(mongo, user, product["_id"], 1)
        numbers.append(place_order(client, user_headers, shipping_address).json()["data"]["order_number"])

    assert all(re.fullmatch(r"ORD-\d{8}-\d{5}", n) for n in numbers)
    assert numbers[0][-5:] == "00001"
    assert numbers[1][-5:] == "00002"


def test_checkout_with_empty_cart_fails(client, user_headers, shipping_address):
    response = place_order(client, user_headers, shipping_address)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "EMPTY_CART"


def test_checkout_rechecks_stock(client, mongo, user, user_headers, make_product, shipping_address):
    product = make_product(stock=3)
    cart.add_item(mongo, user, product["_id"], 3)
    mongo["product"].update_one({"_id": product["_id"]}, {"$set": {"stock": 1}})

    response = place_order(client, user_headers, shipping_address)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INSUFFICIENT_STOCK"
    assert mongo["order"].count_documents({}) == 0
    assert len(mongo["cart"].find_one({"user_id": user["_id"]})["items"]) == 1


def test_checkout_rejects_retired_product(client, mongo, user, user_headers, make_product, shipping_address):
    product = make_product()
    cart.add_item(mongo, user, product["_id"], 1)
    mongo["product"].update_one({"_id": product["_id"]}, {"$set": {"is_active": False}})

    response = place_order(client, user_headers, shipping_address)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PRODUCT_UNAVAILABLE"


def test_tax_and_shipping(client, mongo, user, user_headers, make_product, shipping_address, monkeypatch):
    monkeypatch.setattr(settings, "TAX_RATE", 0.1)
    monkeypatch.setattr(settings, "SHIPPING_COST", 5.0)
    monkeypatch.setattr(settings, "FREE_SHIPPING_THRESHOLD", 100.0)
    cheap = make_product(price=20.0)
    cart.add_item(mongo, user, cheap["_id"], 1)

    order = place_order(client, user_headers, shipping_address).json()["data"]
    assert order["tax"] == 2.0
    assert order["shipping_cost"] == 5.0
    assert order["total"] == 27.0

    pricey = make_product(price=60.0)
    cart.add_item(mongo, user, pricey["_id"], 2)
    order = place_order(client, user_headers, shipping_address).json()["data"]
    assert order["shipping_cost"] == 0
    assert order["total"] == 132.0


def test_shipping_address_is_validated(client, mongo, user, user_headers, make_product, shipping_address):
    cart.add_item(mongo, user, make_product()["_id"], 1)
    del shipping_address["city"]
    shipping_address["email"] = "not-an-email"

    response = place_order(client, user_headers, shipping_address)

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert set(error["fields"]) == {"shipping_address.city", "shipping_address.email"}


def test_list_own_orders(client, mongo, user, user_headers, make_user, make_product, shipping_address):
    product = make_product(stock=10)
    cart.add_item(mongo, user, product["_id"], 1)
    place_order(client, user_headers, shipping_address)
    mongo["order"].insert_one({"order_number": "ORD-OTHER", "user_id": make_user()["_id"], "created_at": utcnow()})

    data = client.get("/api/orders", headers=user_headers).json()["data"]
    assert len(data["orders"]) == 1
    assert data["pagination"]["total_orders"] == 1


def test_other_users_order_is_forbidden(client, mongo, user, user_headers, make_user, make_product, shipping_address):
    cart.add_item(mongo, user, make_product()["_id"], 1)
    order = place_order(client, user_headers, shipping_address).json()["data"]
    stranger = auth_headers(make_user())
    response = client.get(f"/api/orders/{order['id']}", headers=stranger)
    assert response.status_code == 403


def test_cancel_restores_stock_once(client, mongo, user, user_headers, make_product, shipping_address):
    product = make_product(stock=4)
    cart.add_item(mongo, user, product["_id"], 3)
    order = place_order(client, user_headers, shipping_address).json()["data"]
    assert mongo["product"].find_one({"_id": product["_id"]})["stock"] == 1

    response = client.put(f"/api/orders/{order['id']}/cancel", json={"reason": "Changed my mind"}, headers=user_headers)
    assert response.status_code == 200
    cancelled = response.json()["data"]
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancellation_reason"] == "Changed my mind"
    assert [h["status"] for h in cancelled["status_history"]] == ["pending", "cancelled"]
    assert mongo["product"].find_one({"_id": product["_id"]})["stock"] == 4

    response = client.put(f"/api/orders/{order['id']}/cancel", headers=user_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "ORDER_NOT_CANCELLABLE"


def test_return_window(client, mongo, user, user_headers, make_product, shipping_address):
    cart.add_item(mongo, user, make_product()["_id"], 1)
    order = place_order(client, user_headers, shipping_address).json()["data"]
    url = f"/api/orders/{order['id']}/return"

    assert client.put(url, headers=user_headers).json()["error"]["code"] == "ORDER_NOT_RETURNABLE"

    stored = orders.get_order(mongo, order["id"])
    orders.update_status(mongo, stored, "delivered")
    response = client.put(url, json={"reason": "Too small"}, headers=user_headers)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "returned"
    assert response.json()["data"]["return_reason"] == "Too small"


def test_can_be_returned_expires_after_thirty_days():
    delivered = utcnow() - timedelta(days=31)
    assert not orders.can_be_returned({"status": "delivered", "delivered_at": delivered})
    assert orders.can_be_returned({"status": "delivered", "delivered_at": utcnow() - timedelta(days=2)})
    assert not orders.can_be_returned({"status": "shipped", "delivered_at": utcnow()})


def test_track_order_by_number_and_email(client, mongo, user, user_headers, make_product, shipping_address):
    cart.add_item(mongo, user, make_product()["_id"], 2)
    order = place_order(client, user_headers, shipping_address).json()["data"]

    response = client.post(
        "/api/orders/track",
        json={"order_number": order["order_number"].lower(), "email": "Shopper@Example.com"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["total_items"] == 2

    response = client.post("/api/orders/track", json={"order_number": order["order_number"], "email": "x@example.com"})
    assert response.status_code == 404


def test_admin_updates_status_payment_and_tracking(
    client, mongo, user, user_headers, admin, admin_headers, make_product, shipping_address, outbox
):
    cart.add_item(mongo, user, make_product()["_id"], 1)
    order = place_order(client, user_headers, shipping_address).json()["data"]

    response = client.put(
        f"/api/admin/orders/{order['id']}",
        json={
            "status": "shipped",
            "payment_status": "paid",
            "tracking_number": "1Z999",
            "carrier": "UPS",
            "note": "Left the warehouse",
        },
        headers=admin_headers,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "shipped"
    assert data["tracking_number"] == "1Z999"
    assert re.fullmatch(r"INV-\d{6}-[A-Z0-9]{6}", data["invoice_number"])
    last = data["status_history"][-1]
    assert last["note"] == "Left the warehouse"
    assert last["updated_by"] == str(admin["_id"])
    assert any("is now shipped" in m["text"] for m in outbox)

    # back to an earlier status is allowed
    response = client.put(f"/api/admin/orders/{order['id']}", json={"status": "pending"}, headers=admin_headers)
    assert [h["status"] for h in response.json()["data"]["status_history"]] == ["pending", "shipped", "pending"]


def test_invoice_number_is_kept_once_paid(mongo):
    order_id = mongo["order"].insert_one({"payment_status": "pending"}).inserted_id
    paid = orders.update_payment_status(mongo, {"_id": order_id}, "paid")
    again = orders.update_payment_status(mongo, paid, "paid")
    assert again["invoice_number"] == paid["invoice_number"]


def test_admin_order_routes_require_admin(client, user_headers):
    assert client.get("/api/admin/orders", headers=user_headers).status_code == 403
