from datetime import datetime, timedelta
from unittest.mock import MagicMock

import bcrypt
import mongomock
import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from emails import Mailer
from paypal_client import PayPalClient

ADMIN_EMAIL = "admin@example.com"
CUSTOMER_EMAIL = "customer@example.com"


@pytest.fixture
def db():
    return mongomock.MongoClient().prestige_test


@pytest.fixture
def mailer():
    mock = MagicMock(spec=Mailer)
    for method in (
        "send_order_completed",
        "send_customization_processing",
        "send_free_order_under_review",
        "send_order_cancelled",
        "send_custom_message",
        "send_admin_new_order",
    ):
        getattr(mock, method).return_value = (True, None)
    return mock


@pytest.fixture
def paypal():
    mock = MagicMock(spec=PayPalClient)
    mock.verify_webhook_signature.return_value = True
    mock.create_order.return_value = {
        "id": "PAYPAL-ORDER-1",
        "status": "CREATED",
        "approvalUrl": "https://www.sandbox.paypal.com/checkoutnow?token=PAYPAL-ORDER-1",
    }
    mock.capture_order.return_value = {
        "id": "PAYPAL-ORDER-1",
        "status": "COMPLETED",
        "captureId": "CAPTURE-1",
        "captureStatus": "COMPLETED",
        "amount": "10.00",
        "payer": {"payerId": "PAYER-1", "email": "payer@example.com", "name": "Pay Er", "address": {}},
    }
    mock.refund_capture.return_value = {
        "success": True,
        "refundId": "REFUND-1",
        "status": "COMPLETED",
        "error": None,
    }
    return mock


@pytest.fixture
def app(db, paypal, mailer, tmp_path):
    application = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length-for-hs256",
            "DEFAULT_ADMIN_EMAIL": ADMIN_EMAIL,
            "UPLOAD_FOLDER": str(tmp_path),
            "DESIGN_UPLOAD_FOLDER": str(tmp_path / "designs"),
            "SITE_URL": "https://shop.example.com",
            "API_BASE_URL": "https://api.example.com",
            "TRUSTED_PROXY_HOPS": 0,
        },
        database=db,
        paypal=paypal,
        mailer=mailer,
    )
    return application


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(db, email, name="Test User", role="customer"):
    user = {
        "email": email,
        "name": name,
        "phone": "",
        "password": bcrypt.hashpw(b"password123", bcrypt.gensalt()),
        "role": role,
        "created_at": datetime.utcnow(),
    }
    user["_id"] = db.users.insert_one(user).inserted_id
    return user


def auth_headers(app, email):
    with app.app_context():
        token = create_access_token(identity=email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer(db):
    return make_user(db, CUSTOMER_EMAIL, name="Sara")


@pytest.fixture
def admin(db):
    return make_user(db, ADMIN_EMAIL, name="Admin", role="admin")


@pytest.fixture
def customer_headers(app, customer):
    return auth_headers(app, CUSTOMER_EMAIL)


@pytest.fixture
def admin_headers(app, admin):
    return auth_headers(app, ADMIN_EMAIL)


def make_product(db, **overrides):
    product = {
        "name": "Business Card",
        "slug": f"business-card-{db.products.count_documents({}) + 1}",
        "description": "",
        "price": 10.0,
        "discount_amount": 0,
        "discount_percentage": 0,
        "final_price": 10.0,
        "enable_customizations": False,
        "colors": [],
        "tags": [],
        "is_active": True,
        "purchase_count": 0,
        "created_at": datetime.utcnow(),
    }
    product.update(overrides)
    product["_id"] = db.products.insert_one(product).inserted_id
    return product


def make_design_file(db, product, **overrides):
    design_file = {
        "product_id": str(product["_id"]),
        "file_name": "design.zip",
        "file_url": "https://files.example.com/design.zip",
        "file_type": "zip",
        "file_size": 1024,
        "is_active": True,
        "is_color_variant": False,
        "color_variant_hex": None,
        "is_for_order": False,
        "download_count": 0,
        "max_downloads": None,
        "expires_at": None,
        "created_at": datetime.utcnow(),
    }
    design_file.update(overrides)
    design_file["_id"] = db.design_files.insert_one(design_file).inserted_id
    return design_file


def make_promo(db, **overrides):
    now = datetime.utcnow()
    promo = {
        "code": "SAVE10",
        "discount_type": "percentage",
        "discount_value": 10,
        "max_discount_amount": None,
        "usage_limit": None,
        "usage_count": 0,
        "user_usage_limit": None,
        "minimum_order_amount": None,
        "start_date": now - timedelta(days=1),
        "end_date": now + timedelta(days=30),
        "is_active": True,
        "apply_to_all_products": True,
        "product_ids": [],
        "product_id": None,
        "created_at": now,
    }
    promo.update(overrides)
    promo["_id"] = db.promo_codes.insert_one(promo).inserted_id
    return promo


def create_order(client, headers, items, promo_codes=None):
    payload = {"items": items}
    if promo_codes:
        payload["promoCodes"] = promo_codes
    return client.post("/api/orders/create", json=payload, headers=headers)
