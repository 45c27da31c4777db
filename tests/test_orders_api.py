from datetime import datetime

from conftest import (
    auth_headers,
    create_order,
    make_design_file,
    make_product,
    make_promo,
    make_user,
)


def test_create_order_prices_from_catalog(client, db, customer_headers):
    product = make_product(db, price=20.0, discount_amount=5.0)
    response = create_order(client, customer_headers, [{"productId": str(product["_id"]), "quantity": 2}])

    assert response.status_code == 201
    body = response.get_json()
    order = body["order"]
    assert order["orderNumber"] == f"PD-{datetime.utcnow().year}-001"
    assert order["totalPrice"] == 30.0
    assert order["items"][0]["unitPrice"] == 15.0
    assert order["paymentStatus"] == "pending"
    assert order["orderHistory"][0]["status"] == "pending"
    assert body["isFreeOrder"] is False


def test_create_order_rejects_unknown_product(client, customer_headers):
    response = create_order(client, customer_headers, [{"productId": "000000000000000000000000"}])
    assert response.status_code == 400


def test_create_order_requires_items(client, customer_headers):
    response = client.post("/api/orders/create", json={"items": []}, headers=customer_headers)
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid request data"


def test_recent_pending_order_is_reused(client, db, customer_headers):
    product = make_product(db)
    items = [{"productId": str(product["_id"])}]
    first = create_order(client, customer_headers, items).get_json()["order"]
    second = create_order(client, customer_headers, items)

    assert second.status_code == 200
    reused = second.get_json()["order"]
    assert reused["id"] == first["id"]
    assert [entry["status"] for entry in reused["orderHistory"]] == ["pending", "updated"]
    assert db.orders.count_documents({}) == 1


def test_promo_code_discount_is_applied_and_counted(client, db, customer_headers):
    product = make_product(db, price=50.0, final_price=50.0)
    promo = make_promo(db, code="SAVE10", discount_value=10)

    response = create_order(
        client, customer_headers, [{"productId": str(product["_id"])}], promo_codes=["save10"]
    )

    order = response.get_json()["order"]
    assert order["totalPrice"] == 45.0
    assert order["totalPromoDiscount"] == 5.0
    assert order["appliedPromoCodes"] == ["SAVE10"]
    assert db.promo_codes.find_one({"_id": promo["_id"]})["usage_count"] == 1
    assert db.promo_code_usages.count_documents({"promo_code_id": promo["_id"]}) == 1


def test_reusing_order_does_not_double_count_promo(client, db, customer_headers):
    product = make_product(db)
    promo = make_promo(db, code="ONCE", usage_limit=1)
    items = [{"productId": str(product["_id"])}]

    create_order(client, customer_headers, items, promo_codes=["ONCE"])
    response = create_order(client, customer_headers, items, promo_codes=["ONCE"])

    assert response.status_code == 200
    assert db.promo_codes.find_one({"_id": promo["_id"]})["usage_count"] == 1


def test_exhausted_promo_is_rejected(client, db, customer_headers):
    product = make_product(db)
    make_promo(db, code="GONE", usage_limit=1, usage_count=1)
    response = create_order(
        client, customer_headers, [{"productId": str(product["_id"])}], promo_codes=["GONE"]
    )
    assert response.status_code == 400
    assert db.orders.count_documents({}) == 0


def test_customer_cannot_read_someone_elses_order(app, client, db, customer_headers):
    product = make_product(db)
    order = create_order(client, customer_headers, [{"productId": str(product["_id"])}]).get_json()["order"]

    make_user(db, "other@example.com")
    response = client.get(f"/api/orders/{order['id']}", headers=auth_headers(app, "other@example.com"))
    assert response.status_code == 403

    own = client.get(f"/api/orders/{order['orderNumber']}", headers=customer_headers)
    assert own.status_code == 200
    assert "adminNotes" not in own.get_json()["order"]


def test_free_order_is_delivered_immediately(client, db, mailer, customer_headers):
    product = make_product(db, price=0.0, final_price=0.0)
    make_design_file(db, product)
    created = create_order(client, customer_headers, [{"productId": str(product["_id"])}]).get_json()
    assert created["isFreeOrder"] is True

    response = client.post(
        "/api/orders/complete-free-order",
        json={"orderId": created["order"]["id"]},
        headers=customer_headers,
    )

    assert response.status_code == 200
    order = response.get_json()["order"]
    assert order["paymentStatus"] == "free"
    assert order["orderStatus"] == "completed"
    assert mailer.send_order_completed.call_args.kwargs["is_free"] is True


def test_paid_order_cannot_use_free_completion(client, db, customer_headers):
    product = make_product(db)
    order = create_order(client, customer_headers, [{"productId": str(product["_id"])}]).get_json()["order"]
    response = client.post(
        "/api/orders/complete-free-order", json={"orderId": order["id"]}, headers=customer_headers
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Order is not a free order"


def test_customer_order_list_is_paginated(client, db, customer_headers):
    first = make_product(db, name="One")
    second = make_product(db, name="Two")
    create_order(client, customer_headers, [{"productId": str(first["_id"])}])
    create_order(client, customer_headers, [{"productId": str(second["_id"])}])

    response = client.get("/api/orders/customer?limit=1", headers=customer_headers)
    body = response.get_json()
    assert len(body["orders"]) == 1
    assert body["pagination"]["total"] == 2
    assert body["pagination"]["pages"] == 2


def test_customer_can_remove_promo_from_unpaid_order(client, db, customer_headers):
    product = make_product(db, price=50.0, final_price=50.0)
    promo = make_promo(db, code="SAVE10", discount_value=10)
    order = create_order(
        client, customer_headers, [{"productId": str(product["_id"])}], promo_codes=["SAVE10"]
    ).get_json()["order"]
    assert order["orderHistory"][-1]["status"] == "promo_applied"

    response = client.delete(f"/api/orders/{order['id']}/promo-codes/save10", headers=customer_headers)

    assert response.status_code == 200
    updated = response.get_json()["order"]
    assert updated["totalPrice"] == 50.0
    assert updated["appliedPromoCodes"] == []
    assert updated["orderHistory"][-1]["status"] == "promo_removed"
    assert db.promo_codes.find_one({"_id": promo["_id"]})["usage_count"] == 0
    assert db.promo_code_usages.find_one({"promo_code_id": promo["_id"]})["is_active"] is False
