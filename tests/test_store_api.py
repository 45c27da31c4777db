from datetime import datetime, timedelta

from conftest import make_product, make_promo


def test_register_and_login(client):
    response = client.post(
        "/api/register",
        json={"email": "New@Example.com", "name": "New", "password": "password123"},
    )
    assert response.status_code == 201
    assert response.get_json()["user"]["email"] == "new@example.com"

    duplicate = client.post(
        "/api/register",
        json={"email": "new@example.com", "name": "New", "password": "password123"},
    )
    assert duplicate.status_code == 400

    login = client.post("/api/login", json={"email": "new@example.com", "password": "password123"})
    assert login.status_code == 200
    token = login.get_json()["access_token"]

    account = client.get("/api/account", headers={"Authorization": f"Bearer {token}"})
    assert account.get_json()["user"]["role"] == "customer"

    wrong = client.post("/api/login", json={"email": "new@example.com", "password": "nope"})
    assert wrong.status_code == 401


def test_admin_creates_product_and_category(client, db, admin_headers):
    category = client.post(
        "/api/admin/categories", json={"name": "بطاقات", "nameEn": "Cards"}, headers=admin_headers
    )
    assert category.status_code == 201
    category_id = category.get_json()["category"]["id"]

    response = client.post(
        "/api/admin/products",
        json={
            "name": "Wedding Invite",
            "price": 30,
            "discountPercentage": 10,
            "categoryId": category_id,
            "EnableCustomizations": True,
        },
        headers=admin_headers,
    )

    assert response.status_code == 201
    product = response.get_json()["product"]
    assert product["slug"] == "wedding-invite"
    assert product["finalPrice"] == 27.0
    assert product["EnableCustomizations"] is True
    assert product["category"]["slug"] == "cards"
    assert db.audit_logs.count_documents({"action": "Created product"}) == 1

    listing = client.get("/api/products?category=cards")
    assert [item["name"] for item in listing.get_json()["products"]] == ["Wedding Invite"]

    blocked = client.delete(f"/api/admin/categories/{category_id}", headers=admin_headers)
    assert blocked.status_code == 400


def test_deactivated_product_is_hidden(client, db, admin_headers):
    product = make_product(db)
    client.delete(f"/api/admin/products/{product['_id']}", headers=admin_headers)
    assert client.get(f"/api/products/{product['slug']}").status_code == 404


def test_validate_promo_endpoint(client, db, customer_headers):
    product = make_product(db)
    make_promo(
        db,
        code="FIXED10",
        discount_type="fixed_amount",
        discount_value=10,
        max_discount_amount=15,
        apply_to_all_products=False,
        product_ids=[str(product["_id"])],
    )

    response = client.post(
        "/api/promo-codes/validate",
        json={
            "code": "fixed10",
            "orderValue": 40,
            "cartItems": [{"productId": str(product["_id"]), "quantity": 2, "price": 20}],
        },
        headers=customer_headers,
    )

    body = response.get_json()
    assert body["valid"] is True
    assert body["discountAmount"] == 15.0
    assert body["totalQualifyingItems"] == 2
    assert body["finalAmount"] == 25.0


def test_validate_promo_endpoint_reports_expiry(client, db, customer_headers):
    make_promo(db, code="OLD", end_date=datetime.utcnow() - timedelta(days=1))
    response = client.post(
        "/api/promo-codes/validate", json={"code": "OLD", "orderValue": 10}, headers=customer_headers
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "انتهت صلاحية كود الخصم"


def test_admin_promo_lifecycle(client, db, admin_headers):
    payload = {
        "code": "summer25",
        "discountType": "percentage",
        "discountValue": 25,
        "startDate": "2025-01-01T00:00:00Z",
        "endDate": "2099-01-01T00:00:00Z",
        "applyToAllProducts": True,
    }
    created = client.post("/api/admin/promo-codes", json=payload, headers=admin_headers)
    assert created.status_code == 201
    promo = created.get_json()["promoCode"]
    assert promo["code"] == "SUMMER25"

    duplicate = client.post("/api/admin/promo-codes", json=payload, headers=admin_headers)
    assert duplicate.status_code == 400
    assert duplicate.get_json()["error"] == "Promo code already exists"

    check = client.post(
        "/api/admin/promo-codes/validate", json={"code": "SUMMER25", "orderAmount": 100}, headers=admin_headers
    )
    assert check.get_json()["data"]["discountAmount"] == 25.0

    db.promo_codes.update_one({"code": "SUMMER25"}, {"$set": {"usage_count": 1}})
    removed = client.delete(f"/api/admin/promo-codes/{promo['id']}", headers=admin_headers)
    assert removed.status_code == 200
    assert db.promo_codes.find_one({"code": "SUMMER25"})["is_active"] is False


def test_invalid_promo_payload(client, admin_headers):
    response = client.post(
        "/api/admin/promo-codes",
        json={
            "code": "BAD",
            "discountType": "percentage",
            "discountValue": 150,
            "startDate": "2025-01-01T00:00:00Z",
            "endDate": "2099-01-01T00:00:00Z",
            "applyToAllProducts": True,
        },
        headers=admin_headers,
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid request data"


def test_audit_log_listing(client, db, admin_headers):
    make_product(db)
    client.post("/api/admin/categories", json={"name": "Logos"}, headers=admin_headers)
    response = client.get("/api/admin/logs?search=category", headers=admin_headers)
    logs = response.get_json()["logs"]
    assert logs[0]["action"] == "Created category"
    assert logs[0]["userEmail"] == "admin@example.com"


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok"}
