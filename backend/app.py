import logging
import math
import os
import re
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

import bcrypt
from flask import Flask, jsonify, redirect, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from config import Config
from delivery import (
    LOCAL_DESIGN_URL_PREFIX,
    DeliveryError,
    can_download,
    generate_download_url,
    has_real_customizations,
    local_design_path,
    lookup_design_file,
    mime_type_for,
    register_download,
    serialize_design_file,
    verify_download_token,
)
from emails import Mailer
from fulfillment import (
    admin_complete_order,
    attach_order_file,
    cancel_order,
    complete_paypal_payment,
    record_email_result,
    start_free_order,
)
from order_history import (
    ORDER_STATUSES,
    PAYMENT_STATUSES,
    TERMINAL_ORDER_STATUSES,
    OrderStateError,
    append_history,
    build_history_entry,
    ensure_not_terminal,
    ensure_status_change_allowed,
    is_terminal,
    status_label,
)
from orders import (
    add_admin_note,
    allocate_promo_discount,
    build_order_item,
    calculate_order_totals,
    customer_owns_order,
    find_order,
    find_reusable_order,
    generate_order_number,
    is_free_order,
    isoformat,
    product_final_price,
    remove_promo_from_item,
    safe_float,
    serialize_order,
    to_object_id,
)
from paypal_client import PayPalClient, PayPalError
from promo import (
    CartLine,
    PromoCodeError,
    claim_promo_usage,
    count_user_usages,
    find_promo_by_code,
    normalize_code,
    record_promo_usage,
    release_promo_usage,
    usage_percentage,
    validate_promo_code,
)
from schemas import (
    AdminNoteRequest,
    AdminPromoValidateRequest,
    CancelOrderRequest,
    CategoryIn,
    CompleteFreeOrderRequest,
    CompleteOrderRequest,
    CreateOrderRequest,
    CustomEmailRequest,
    DesignFileIn,
    LoginRequest,
    OrderFileIn,
    OrderUpdateRequest,
    PayPalCaptureRequest,
    PayPalCreateOrderRequest,
    ProductIn,
    PromoCodeIn,
    PromoValidateRequest,
    RegisterRequest,
    parse_payload,
)

ALLOWED_USER_ROLES = {"customer", "admin"}


def create_app(
    config_overrides: Optional[Dict] = None,
    database=None,
    paypal: Optional[PayPalClient] = None,
    mailer: Optional[Mailer] = None,
) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Honor proxy headers so generated download links keep the public HTTPS origin.
    trusted_proxy_hops = max(0, int(app.config.get("TRUSTED_PROXY_HOPS") or 0))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    log_level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")), logging.INFO)
    logging.basicConfig(
        level=log_level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )
    app.logger.setLevel(log_level)

    design_upload_directory = app.config["DESIGN_UPLOAD_FOLDER"]
    os.makedirs(design_upload_directory, exist_ok=True)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        app.config.get("SITE_URL", ""),
    ]
    for origin in str(app.config.get("CORS_ALLOWED_ORIGINS") or "").split(","):
        trimmed = origin.strip()
        if trimmed:
            allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    db = database
    paypal = paypal or PayPalClient.from_config(app.config)
    mailer = mailer or Mailer.from_config(app.config)

    default_admin_email = str(app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower()
    api_base_url = app.config["API_BASE_URL"]
    site_url = app.config["SITE_URL"]

    index_specs = [
        (db.users, [("email", 1)], {"unique": True}),
        (db.orders, [("order_number", 1)], {"unique": True}),
        (db.orders, [("customer_id", 1), ("created_at", -1)], {}),
        (db.orders, [("paypal_order_id", 1)], {"sparse": True}),
        (db.products, [("slug", 1)], {"unique": True}),
        (db.categories, [("slug", 1)], {"unique": True}),
        (db.promo_codes, [("code", 1)], {"unique": True}),
        (db.promo_code_usages, [("order_id", 1), ("promo_code_id", 1)], {"unique": True}),
        (db.promo_code_usages, [("promo_code_id", 1), ("user_id", 1)], {}),
        (db.design_files, [("product_id", 1), ("is_active", 1)], {}),
        (db.order_design_files, [("order_id", 1), ("design_file_id", 1)], {"unique": True}),
        (db.audit_logs, [("created_at", -1)], {}),
    ]
    for collection, keys, options in index_specs:
        try:
            collection.create_index(keys, **options)
        except Exception as exc:
            app.logger.warning("Unable to ensure index %s on %s: %s", keys, collection.name, exc)

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def get_user_role(user_document) -> str:
        if not user_document:
            return "customer"
        if normalize_email(user_document.get("email")) == default_admin_email:
            return "admin"
        role = str(user_document.get("role") or "").strip().lower()
        return role if role in ALLOWED_USER_ROLES else "customer"

    def current_user_document():
        current_email = normalize_email(get_jwt_identity())
        if not current_email:
            return None
        return db.users.find_one({"email": current_email})

    def require_role(*roles: str):
        allowed = {role for role in roles if role}
        current_user = current_user_document()
        if not current_user:
            return None, (jsonify({"error": "Unauthorized"}), 401)

        user_role = get_user_role(current_user)
        if user_role == "admin" or not allowed or user_role in allowed:
            return current_user, None

        return (
            None,
            (
                jsonify({"error": "You need additional permissions to perform this action."}),
                403,
            ),
        )

    def require_admin_user():
        return require_role("admin")

    def validation_error(details: List[Dict[str, str]]):
        return jsonify({"error": "Invalid request data", "details": details}), 400

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        return {str(key): str(value) for key, value in metadata.items() if value is not None}

    def record_audit_log(actor_email: Optional[str], action: str, metadata: Optional[Dict] = None):
        if not action:
            return
        try:
            db.audit_logs.insert_one(
                {
                    "user_email": normalize_email(actor_email) or None,
                    "action": action,
                    "metadata": sanitize_metadata(metadata),
                    "created_at": datetime.utcnow(),
                }
            )
        except Exception as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def serialize_audit_log(document):
        metadata = document.get("metadata")
        return {
            "id": str(document.get("_id")),
            "userEmail": document.get("user_email") or "",
            "action": document.get("action") or "",
            "metadata": metadata if isinstance(metadata, dict) else {},
            "createdAt": isoformat(document.get("created_at")),
        }

    def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
        if not value:
            return None
        candidate = str(value).strip()
        if not candidate:
            return None
        normalized = candidate.replace("Z", "+00:00")
        if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            normalized = f"{candidate}T00:00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
        if end_of_day and re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            return parsed.replace(hour=23, minute=59, second=59)
        return parsed

    def pagination_args(default_limit: int = 20):
        try:
            page = max(int(request.args.get("page", 1)), 1)
        except (TypeError, ValueError):
            page = 1
        try:
            limit = min(max(int(request.args.get("limit", default_limit)), 1), 100)
        except (TypeError, ValueError):
            limit = default_limit
        return page, limit

    def pagination_payload(page: int, limit: int, total: int) -> Dict[str, int]:
        return {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        }

    def slugify(value: Optional[str]) -> str:
        condensed = " ".join(str(value or "").split()).lower()
        slug = re.sub(r"[^\w]+", "-", condensed).strip("-_")
        return slug or uuid4().hex[:12]

    def unique_slug(collection, base_slug: str, exclude_id=None) -> str:
        candidate = base_slug
        suffix = 2
        while True:
            query: Dict[str, object] = {"slug": candidate}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            if not collection.find_one(query, {"_id": 1}):
                return candidate
            candidate = f"{base_slug}-{suffix}"
            suffix += 1

    def load_order_or_404(order_identifier: str):
        order_document = find_order(db, order_identifier)
        if not order_document:
            return None, (jsonify({"error": "Order not found"}), 404)
        return order_document, None

    def discard_upload(stored_path: Optional[str]) -> None:
        if stored_path and os.path.exists(stored_path):
            os.remove(stored_path)
            app.logger.info("Removed unattached upload %s", stored_path)

    # --- Serializers ---

    def serialize_user(user_document) -> Dict[str, object]:
        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name") or "",
            "email": user_document.get("email") or "",
            "phone": user_document.get("phone") or "",
            "role": get_user_role(user_document),
            "createdAt": isoformat(user_document.get("created_at")),
        }

    def serialize_category(category_document, product_counts=None):
        category_id = str(category_document.get("_id"))
        return {
            "id": category_id,
            "name": category_document.get("name") or "",
            "nameEn": category_document.get("name_en") or "",
            "slug": category_document.get("slug") or "",
            "description": category_document.get("description") or "",
            "isActive": bool(category_document.get("is_active", True)),
            "sortOrder": category_document.get("sort_order") or 0,
            "productCount": (product_counts or {}).get(category_id, 0),
        }

    def serialize_product(product_document, category_map=None):
        category_id = product_document.get("category_id")
        category = (category_map or {}).get(category_id) if category_id else None
        return {
            "id": str(product_document.get("_id")),
            "name": product_document.get("name") or "",
            "slug": product_document.get("slug") or "",
            "description": product_document.get("description") or "",
            "images": [
                {
                    "url": image.get("url"),
                    "alt": image.get("alt") or "",
                    "isPrimary": bool(image.get("is_primary")),
                    "order": image.get("order") or 0,
                }
                for image in product_document.get("images") or []
            ],
            "price": product_document.get("price") or 0,
            "discountAmount": product_document.get("discount_amount") or 0,
            "discountPercentage": product_document.get("discount_percentage") or 0,
            "finalPrice": product_document.get("final_price", product_final_price(product_document)),
            "categoryId": category_id,
            "category": serialize_category(category) if category else None,
            "EnableCustomizations": bool(product_document.get("enable_customizations")),
            "allowColorChanges": bool(product_document.get("allow_color_changes")),
            "allowTextEditing": bool(product_document.get("allow_text_editing")),
            "allowImageReplacement": bool(product_document.get("allow_image_replacement")),
            "allowLogoUpload": bool(product_document.get("allow_logo_upload")),
            "colors": product_document.get("colors") or [],
            "tags": product_document.get("tags") or [],
            "isActive": bool(product_document.get("is_active", True)),
            "isFeatured": bool(product_document.get("is_featured")),
            "purchaseCount": product_document.get("purchase_count") or 0,
            "createdAt": isoformat(product_document.get("created_at")),
            "updatedAt": isoformat(product_document.get("updated_at")),
        }

    def build_category_map(product_documents) -> Dict[str, Dict]:
        category_ids = {
            to_object_id(document.get("category_id"))
            for document in product_documents
            if document.get("category_id")
        }
        category_ids.discard(None)
        if not category_ids:
            return {}
        return {
            str(category["_id"]): category
            for category in db.categories.find({"_id": {"$in": list(category_ids)}})
        }

    def serialize_promo(promo_document):
        return {
            "id": str(promo_document.get("_id")),
            "code": promo_document.get("code") or "",
            "description": promo_document.get("description") or "",
            "discountType": promo_document.get("discount_type"),
            "discountValue": promo_document.get("discount_value") or 0,
            "maxDiscountAmount": promo_document.get("max_discount_amount"),
            "usageLimit": promo_document.get("usage_limit"),
            "usageCount": promo_document.get("usage_count") or 0,
            "userUsageLimit": promo_document.get("user_usage_limit"),
            "usagePercentage": usage_percentage(promo_document),
            "minimumOrderAmount": promo_document.get("minimum_order_amount"),
            "startDate": isoformat(promo_document.get("start_date")),
            "endDate": isoformat(promo_document.get("end_date")),
            "isActive": bool(promo_document.get("is_active", True)),
            "applyToAllProducts": bool(promo_document.get("apply_to_all_products")),
            "productIds": promo_document.get("product_ids") or [],
            "productId": promo_document.get("product_id"),
            "createdBy": promo_document.get("created_by"),
            "createdAt": isoformat(promo_document.get("created_at")),
        }

    def existing_fields(document, model) -> Dict[str, object]:
        return {name: document.get(name) for name in model.model_fields if name in document}

    def missing_product_ids(product_ids: List[str]) -> List[str]:
        missing = []
        for product_id in product_ids:
            object_id = to_object_id(product_id)
            if not object_id or not db.products.find_one({"_id": object_id}, {"_id": 1}):
                missing.append(product_id)
        return missing

    # --- Error handlers ---

    @app.errorhandler(OrderStateError)
    def handle_order_state_error(exc: OrderStateError):
        return jsonify({"error": exc.message}), exc.status_code

    @app.errorhandler(DeliveryError)
    def handle_delivery_error(exc: DeliveryError):
        return jsonify({"error": exc.message}), exc.status_code

    @app.errorhandler(PayPalError)
    def handle_paypal_error(exc: PayPalError):
        app.logger.error("PayPal error: %s (%s)", exc.message, exc.status_code)
        status_code = exc.status_code if 400 <= exc.status_code < 600 else 502
        return jsonify({"error": exc.message}), status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.description}), exc.code
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    # --- Auth ---

    @app.route("/api/register", methods=["POST"])
    def register():
        data, errors = parse_payload(RegisterRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        email = normalize_email(data.email)
        if db.users.find_one({"email": email}):
            return jsonify({"error": "An account with this email already exists."}), 400

        user_document = {
            "email": email,
            "name": data.name,
            "phone": data.phone or "",
            "password": bcrypt.hashpw(data.password.encode("utf-8"), bcrypt.gensalt()),
            "role": "admin" if email == default_admin_email else "customer",
            "created_at": datetime.utcnow(),
        }
        user_document["_id"] = db.users.insert_one(user_document).inserted_id
        record_audit_log(email, "Registered new account")

        return (
            jsonify(
                {
                    "message": "Account created.",
                    "access_token": create_access_token(identity=email),
                    "user": serialize_user(user_document),
                }
            ),
            201,
        )

    @app.route("/api/login", methods=["POST"])
    def login():
        data, errors = parse_payload(LoginRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        email = normalize_email(data.email)
        user = db.users.find_one({"email": email})
        if not user or not bcrypt.checkpw(data.password.encode("utf-8"), user["password"]):
            return jsonify({"error": "Invalid credentials"}), 401

        db.users.update_one({"_id": user["_id"]}, {"$set": {"last_login_at": datetime.utcnow()}})
        return jsonify(
            {"access_token": create_access_token(identity=email), "user": serialize_user(user)}
        )

    @app.route("/api/account", methods=["GET"])
    @jwt_required()
    def get_account():
        user = current_user_document()
        if not user:
            return jsonify({"error": "User not found"}), 404
        return jsonify({"user": serialize_user(user)})

    # --- Catalog ---

    @app.route("/api/products", methods=["GET"])
    def list_products():
        query: Dict[str, object] = {"is_active": True}
        category_slug = (request.args.get("category") or "").strip()
        if category_slug:
            category = db.categories.find_one({"slug": category_slug})
            if not category:
                return jsonify({"products": []})
            query["category_id"] = str(category["_id"])
        if request.args.get("featured") in ("1", "true"):
            query["is_featured"] = True
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [{"name": regex}, {"description": regex}, {"tags": regex}]

        documents = list(db.products.find(query).sort("created_at", -1))
        category_map = build_category_map(documents)
        return jsonify({"products": [serialize_product(document, category_map) for document in documents]})

    @app.route("/api/products/<product_ref>", methods=["GET"])
    def get_product(product_ref: str):
        product = db.products.find_one({"slug": product_ref, "is_active": True})
        if not product:
            object_id = to_object_id(product_ref)
            product = (
                db.products.find_one({"_id": object_id, "is_active": True}) if object_id else None
            )
        if not product:
            return jsonify({"error": "Product not found"}), 404
        return jsonify({"product": serialize_product(product, build_category_map([product]))})

    @app.route("/api/categories", methods=["GET"])
    def list_categories():
        counts: Dict[str, int] = {}
        for product in db.products.find({"is_active": True}, {"category_id": 1}):
            if product.get("category_id"):
                counts[product["category_id"]] = counts.get(product["category_id"], 0) + 1
        categories = db.categories.find({"is_active": True}).sort([("sort_order", 1), ("name", 1)])
        return jsonify({"categories": [serialize_category(category, counts) for category in categories]})

    @app.route("/api/admin/products", methods=["GET"])
    @jwt_required()
    def admin_list_products():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        documents = list(db.products.find({}).sort("created_at", -1))
        category_map = build_category_map(documents)
        return jsonify({"products": [serialize_product(document, category_map) for document in documents]})

    @app.route("/api/admin/products", methods=["POST"])
    @jwt_required()
    def create_product():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        data, errors = parse_payload(ProductIn, request.get_json(silent=True))
        if errors:
            return validation_error(errors)
        if data.category_id and not db.categories.find_one({"_id": to_object_id(data.category_id)}):
            return jsonify({"error": "Category not found"}), 400

        now = datetime.utcnow()
        product_document = data.model_dump()
        product_document.update(
            {
                "slug": unique_slug(db.products, slugify(data.slug or data.name)),
                "purchase_count": 0,
                "created_at": now,
                "updated_at": now,
            }
        )
        product_document["final_price"] = product_final_price(product_document)
        product_document["_id"] = db.products.insert_one(product_document).inserted_id

        record_audit_log(
            admin_user.get("email"),
            "Created product",
            {"product_id": str(product_document["_id"]), "name": data.name},
        )
        return (
            jsonify(
                {
                    "message": "Product created successfully",
                    "product": serialize_product(product_document, build_category_map([product_document])),
                }
            ),
            201,
        )

    @app.route("/api/admin/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id = to_object_id(product_id)
        product = db.products.find_one({"_id": object_id}) if object_id else None
        if not product:
            return jsonify({"error": "Product not found"}), 404

        payload = {**existing_fields(product, ProductIn), **(request.get_json(silent=True) or {})}
        data, errors = parse_payload(ProductIn, payload)
        if errors:
            return validation_error(errors)
        if data.category_id and not db.categories.find_one({"_id": to_object_id(data.category_id)}):
            return jsonify({"error": "Category not found"}), 400

        updates = data.model_dump()
        if data.slug != product.get("slug") or data.name != product.get("name"):
            updates["slug"] = unique_slug(
                db.products, slugify(data.slug or data.name), exclude_id=object_id
            )
        updates["final_price"] = product_final_price(updates)
        updates["updated_at"] = datetime.utcnow()
        db.products.update_one({"_id": object_id}, {"$set": updates})

        record_audit_log(admin_user.get("email"), "Updated product", {"product_id": product_id})
        updated = db.products.find_one({"_id": object_id})
        return jsonify(
            {
                "message": "Product updated successfully",
                "product": serialize_product(updated, build_category_map([updated])),
            }
        )

    @app.route("/api/admin/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id = to_object_id(product_id)
        result = db.products.update_one(
            {"_id": object_id}, {"$set": {"is_active": False, "updated_at": datetime.utcnow()}}
        )
        if not object_id or result.matched_count == 0:
            return jsonify({"error": "Product not found"}), 404

        record_audit_log(admin_user.get("email"), "Deactivated product", {"product_id": product_id})
        return jsonify({"message": "Product deactivated successfully"})

    @app.route("/api/admin/categories", methods=["POST"])
    @jwt_required()
    def create_category():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        data, errors = parse_payload(CategoryIn, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        slug = slugify(data.slug or data.name_en or data.name)
        if db.categories.find_one({"slug": slug}):
            return jsonify({"error": "A category with this slug already exists"}), 400

        category_document = data.model_dump()
        category_document.update({"slug": slug, "created_at": datetime.utcnow()})
        category_document["_id"] = db.categories.insert_one(category_document).inserted_id
        record_audit_log(admin_user.get("email"), "Created category", {"slug": slug})
        return jsonify({"category": serialize_category(category_document)}), 201

    @app.route("/api/admin/categories/<category_id>", methods=["PUT"])
    @jwt_required()
    def update_category(category_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id = to_object_id(category_id)
        category = db.categories.find_one({"_id": object_id}) if object_id else None
        if not category:
            return jsonify({"error": "Category not found"}), 404

        payload = {**existing_fields(category, CategoryIn), **(request.get_json(silent=True) or {})}
        data, errors = parse_payload(CategoryIn, payload)
        if errors:
            return validation_error(errors)

        updates = data.model_dump()
        updates["slug"] = slugify(data.slug or data.name_en or data.name)
        if db.categories.find_one({"slug": updates["slug"], "_id": {"$ne": object_id}}):
            return jsonify({"error": "A category with this slug already exists"}), 400
        db.categories.update_one({"_id": object_id}, {"$set": updates})
        record_audit_log(admin_user.get("email"), "Updated category", {"category_id": category_id})
        return jsonify({"category": serialize_category(db.categories.find_one({"_id": object_id}))})

    @app.route("/api/admin/categories/<category_id>", methods=["DELETE"])
    @jwt_required()
    def delete_category(category_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id = to_object_id(category_id)
        if not object_id or not db.categories.find_one({"_id": object_id}):
            return jsonify({"error": "Category not found"}), 404
        if db.products.count_documents({"category_id": category_id, "is_active": True}):
            return jsonify({"error": "Category still has active products"}), 400

        db.categories.delete_one({"_id": object_id})
        record_audit_log(admin_user.get("email"), "Deleted category", {"category_id": category_id})
        return jsonify({"message": "Category deleted successfully"})

    # --- Orders ---

    def claim_promos(evaluated: List[Dict]):
        claimed = []
        for entry in evaluated:
            if claim_promo_usage(db.promo_codes, entry["promo"]["_id"]):
                claimed.append(entry)
                continue
            for previous in claimed:
                release_promo_usage(db.promo_codes, previous["promo"]["_id"])
            raise PromoCodeError("usage_limit")
        return claimed

    @app.route("/api/orders/create", methods=["POST"])
    @jwt_required()
    def create_order():
        user = current_user_document()
        if not user:
            return jsonify({"error": "Unauthorized"}), 401

        data, errors = parse_payload(CreateOrderRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        items = []
        for entry in data.items:
            object_id = to_object_id(entry.product_id)
            product = db.products.find_one({"_id": object_id, "is_active": True}) if object_id else None
            if not product:
                return jsonify({"error": f"Product {entry.product_id} is not available"}), 400
            items.append(build_order_item(entry.model_dump(), product))

        customer_id = str(user["_id"])
        existing_order = find_reusable_order(db, customer_id, [item["product_id"] for item in items])
        already_applied = set(existing_order.get("applied_promo_codes") or []) if existing_order else set()

        evaluated = []
        for code in data.promo_codes:
            promo = find_promo_by_code(db.promo_codes, code)
            if promo and code in already_applied:
                # this order already holds one of the counted usages
                promo = {**promo, "usage_count": max(0, int(promo.get("usage_count") or 0) - 1)}
            open_items = [item for item in items if not item.get("promo_code")]
            lines = [
                CartLine(item["product_id"], item["quantity"], item["total_price"])
                for item in open_items
            ]
            order_amount = sum(item["total_price"] for item in items)
            try:
                evaluation = validate_promo_code(
                    promo,
                    lines,
                    order_amount,
                    user_usage_count=None
                    if code in already_applied
                    else count_user_usages(db, promo["_id"] if promo else None, customer_id),
                )
            except PromoCodeError as exc:
                return jsonify({"error": exc.message, "code": code}), 400
            allocated = allocate_promo_discount(
                items, evaluation.matched_product_ids, evaluation.code, evaluation.discount_amount
            )
            evaluated.append({"promo": promo, "discount": allocated})

        try:
            claimed = claim_promos(
                [entry for entry in evaluated if entry["promo"]["code"] not in already_applied]
            )
        except PromoCodeError as exc:
            return jsonify({"error": exc.message}), 400

        totals = calculate_order_totals(items)
        now = datetime.utcnow()
        order_fields = {
            "items": items,
            "subtotal": totals["subtotal"],
            "total_promo_discount": totals["total_promo_discount"],
            "total_price": totals["total_price"],
            "applied_promo_codes": [entry["promo"]["code"] for entry in evaluated],
            "has_customizable_products": any(
                item["enable_customizations"] and has_real_customizations(item) for item in items
            ),
            "customer_name": data.customer_name or user.get("name") or "",
            "customer_phone": data.customer_phone or user.get("phone") or "",
            "customer_notes": data.customer_notes,
        }
        order_fields["customization_status"] = (
            "pending" if order_fields["has_customizable_products"] else "none"
        )

        if existing_order:
            for dropped_code in already_applied - set(data.promo_codes):
                dropped_promo = find_promo_by_code(db.promo_codes, dropped_code)
                if not dropped_promo:
                    continue
                released = db.promo_code_usages.update_one(
                    {"order_id": existing_order["_id"], "promo_code_id": dropped_promo["_id"], "is_active": True},
                    {"$set": {"is_active": False, "deactivated_at": now}},
                )
                if released.modified_count:
                    release_promo_usage(db.promo_codes, dropped_promo["_id"])
            append_history(
                db.orders,
                existing_order["_id"],
                [build_history_entry("updated", "تم تحديث الطلب بمحتويات السلة الحالية", user["email"], now)],
                set_fields=order_fields,
                unset_fields=("paypal_order_id",),
            )
            order_document = db.orders.find_one({"_id": existing_order["_id"]})
            status_code = 200
        else:
            order_document = {
                **order_fields,
                "order_number": generate_order_number(db, now),
                "customer_id": customer_id,
                "customer_email": user["email"],
                "payment_method": "paypal",
                "payment_status": "pending",
                "order_status": "pending",
                "delivery_method": "digital_download",
                "email_sent": False,
                "webhook_events": [],
                "order_history": [
                    build_history_entry(
                        "pending", "تم إنشاء الطلب وهو في انتظار الدفع", user["email"], now
                    )
                ],
                "created_at": now,
                "updated_at": now,
            }
            order_document["_id"] = db.orders.insert_one(order_document).inserted_id
            status_code = 201

        for entry in claimed:
            record_promo_usage(db, entry["promo"], customer_id, order_document, entry["discount"])
        if claimed:
            append_history(
                db.orders,
                order_document["_id"],
                [
                    build_history_entry(
                        "promo_applied",
                        f"تم تطبيق كود الخصم {entry['promo']['code']} بقيمة ${entry['discount']:.2f}",
                        user["email"],
                        now,
                    )
                    for entry in claimed
                ],
            )
            order_document = db.orders.find_one({"_id": order_document["_id"]})

        app.logger.info(
            "Order %s saved for %s (total %.2f)",
            order_document["order_number"],
            user["email"],
            order_document["total_price"],
        )
        return (
            jsonify(
                {
                    "success": True,
                    "message": "Order updated" if existing_order else "Order created",
                    "order": serialize_order(order_document),
                    "isFreeOrder": is_free_order(order_document),
                }
            ),
            status_code,
        )

    @app.route("/api/orders/<order_identifier>/promo-codes/<code>", methods=["DELETE"])
    @jwt_required()
    def remove_order_promo(order_identifier: str, code: str):
        user = current_user_document()
        if not user:
            return jsonify({"error": "Unauthorized"}), 401
        order_document, error = load_order_or_404(order_identifier)
        if error:
            return error
        if not customer_owns_order(order_document, user):
            return jsonify({"error": "Access denied"}), 403
        if order_document.get("payment_status") != "pending" or order_document.get("order_status") != "pending":
            return jsonify({"error": "Promo codes can only be changed on unpaid orders"}), 400

        normalized = normalize_code(code)
        if normalized not in (order_document.get("applied_promo_codes") or []):
            return jsonify({"error": "Promo code is not applied to this order"}), 404

        items = [
            remove_promo_from_item(dict(item)) if item.get("promo_code") == normalized else item
            for item in order_document.get("items") or []
        ]
        totals = calculate_order_totals(items)
        now = datetime.utcnow()
        promo = find_promo_by_code(db.promo_codes, normalized)
        if promo:
            released = db.promo_code_usages.update_one(
                {"order_id": order_document["_id"], "promo_code_id": promo["_id"], "is_active": True},
                {"$set": {"is_active": False, "deactivated_at": now}},
            )
            if released.modified_count:
                release_promo_usage(db.promo_codes, promo["_id"])

        append_history(
            db.orders,
            order_document["_id"],
            [build_history_entry("promo_removed", f"تم إزالة كود الخصم {normalized}", user["email"], now)],
            set_fields={
                "items": items,
                "subtotal": totals["subtotal"],
                "total_promo_discount": totals["total_promo_discount"],
                "total_price": totals["total_price"],
                "applied_promo_codes": [
                    value for value in order_document.get("applied_promo_codes") or [] if value != normalized
                ],
            },
        )
        updated = db.orders.find_one({"_id": order_document["_id"]})
        return jsonify(
            {"success": True, "order": serialize_order(updated), "isFreeOrder": is_free_order(updated)}
        )

    @app.route("/api/orders/customer", methods=["GET"])
    @jwt_required()
    def list_customer_orders():
        user = current_user_document()
        if not user:
            return jsonify({"error": "Unauthorized"}), 401
        page, limit = pagination_args()
        query = {"customer_id": str(user["_id"])}
        total = db.orders.count_documents(query)
        cursor = db.orders.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        return jsonify(
            {
                "orders": [serialize_order(document) for document in cursor],
                "pagination": pagination_payload(page, limit, total),
            }
        )

    @app.route("/api/orders/<order_identifier>", methods=["GET"])
    @jwt_required()
    def get_order_detail(order_identifier: str):
        user = current_user_document()
        order_document, error = load_order_or_404(order_identifier)
        if error:
            return error
        is_admin = get_user_role(user) == "admin" if user else False
        if not is_admin and not customer_owns_order(order_document, user):
            return jsonify({"error": "Access denied"}), 403
        return jsonify({"order": serialize_order(order_document, include_admin_fields=is_admin)})

    @app.route("/api/orders/complete-free-order", methods=["POST"])
    @jwt_required()
    def complete_free_order():
        user = current_user_document()
        if not user:
            return jsonify({"error": "Unauthorized"}), 401
        data, errors = parse_payload(CompleteFreeOrderRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        order_document, error = load_order_or_404(data.order_id)
        if error:
            return error
        if not customer_owns_order(order_document, user):
            return jsonify({"error": "Access denied"}), 403
        if order_document.get("payment_status") in ("free", "paid"):
            return jsonify({"error": "Order has already been processed"}), 400

        result = start_free_order(db, mailer, order_document, api_base_url, user["email"])
        return jsonify(
            {
                "success": True,
                "message": "Free order processed successfully",
                "delivery": result.to_dict(),
                "order": serialize_order(db.orders.find_one({"_id": order_document["_id"]})),
            }
        )

    # --- Promo codes ---

    @app.route("/api/promo-codes/validate", methods=["POST"])
    @jwt_required()
    def validate_promo():
        user = current_user_document()
        if not user:
            return jsonify({"success": False, "error": "Unauthorized"}), 401
        data, errors = parse_payload(PromoValidateRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        promo = find_promo_by_code(db.promo_codes, data.code)
        order_amount = data.current_total if data.current_total is not None else data.order_value
        lines = [CartLine(item.product_id, item.quantity, item.line_total) for item in data.cart_items]
        try:
            evaluation = validate_promo_code(
                promo,
                lines,
                order_amount,
                user_usage_count=count_user_usages(db, promo["_id"], str(user["_id"]))
                if promo
                else None,
            )
        except PromoCodeError as exc:
            return jsonify({"success": False, "valid": False, "error": exc.message}), 400

        return jsonify(
            {
                "success": True,
                "valid": True,
                "code": evaluation.code,
                "type": evaluation.discount_type,
                "discount": evaluation.discount_value,
                "discountAmount": evaluation.discount_amount,
                "totalQualifyingItems": evaluation.qualifying_items,
                "finalAmount": evaluation.final_amount,
                "message": f"تم تطبيق كود الخصم بنجاح! وفرت ${evaluation.discount_amount:.2f}",
            }
        )

    @app.route("/api/admin/promo-codes", methods=["GET"])
    @jwt_required()
    def admin_list_promo_codes():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page, limit = pagination_args()
        query: Dict[str, object] = {}
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [{"code": regex}, {"description": regex}]
        status_filter = (request.args.get("status") or "").strip().lower()
        now = datetime.utcnow()
        if status_filter == "active":
            query.update({"is_active": True, "end_date": {"$gte": now}})
        elif status_filter == "inactive":
            query["is_active"] = False
        elif status_filter == "expired":
            query["end_date"] = {"$lt": now}

        total = db.promo_codes.count_documents(query)
        cursor = db.promo_codes.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        return jsonify(
            {
                "promoCodes": [serialize_promo(document) for document in cursor],
                "pagination": pagination_payload(page, limit, total),
            }
        )

    @app.route("/api/admin/promo-codes", methods=["POST"])
    @jwt_required()
    def admin_create_promo_code():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        data, errors = parse_payload(PromoCodeIn, request.get_json(silent=True))
        if errors:
            return validation_error(errors)
        missing = missing_product_ids(data.product_ids + ([data.product_id] if data.product_id else []))
        if missing:
            return jsonify({"error": "Some products were not found", "productIds": missing}), 400

        now = datetime.utcnow()
        promo_document = data.model_dump()
        promo_document.update(
            {"usage_count": 0, "created_by": admin_user.get("email"), "created_at": now, "updated_at": now}
        )
        try:
            promo_document["_id"] = db.promo_codes.insert_one(promo_document).inserted_id
        except DuplicateKeyError:
            return jsonify({"error": "Promo code already exists"}), 400

        record_audit_log(admin_user.get("email"), "Created promo code", {"code": data.code})
        return jsonify({"success": True, "promoCode": serialize_promo(promo_document)}), 201

    @app.route("/api/admin/promo-codes/stats", methods=["GET"])
    @jwt_required()
    def admin_promo_code_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        now = datetime.utcnow()
        usage_totals = list(
            db.promo_code_usages.aggregate(
                [
                    {"$match": {"is_active": True}},
                    {
                        "$group": {
                            "_id": None,
                            "uses": {"$sum": 1},
                            "discount": {"$sum": "$discount_amount"},
                        }
                    },
                ]
            )
        )
        totals = usage_totals[0] if usage_totals else {"uses": 0, "discount": 0}
        return jsonify(
            {
                "totalCodes": db.promo_codes.count_documents({}),
                "activeCodes": db.promo_codes.count_documents(
                    {"is_active": True, "start_date": {"$lte": now}, "end_date": {"$gte": now}}
                ),
                "expiredCodes": db.promo_codes.count_documents({"end_date": {"$lt": now}}),
                "totalUses": totals.get("uses", 0),
                "totalDiscountGiven": round(safe_float(totals.get("discount")), 2),
            }
        )

    @app.route("/api/admin/promo-codes/validate", methods=["POST"])
    @jwt_required()
    def admin_validate_promo_code():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        data, errors = parse_payload(AdminPromoValidateRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        lines = [CartLine(item.product_id, item.quantity, item.line_total) for item in data.cart_items]
        if not lines and data.product_id:
            lines = [CartLine(data.product_id, 1, data.order_amount)]
        promo = find_promo_by_code(db.promo_codes, data.code)
        try:
            evaluation = validate_promo_code(promo, lines, data.order_amount)
        except PromoCodeError as exc:
            return jsonify({"valid": False, "error": exc.admin_message})

        return jsonify(
            {
                "valid": True,
                "data": {
                    "code": evaluation.code,
                    "discountType": evaluation.discount_type,
                    "discountValue": evaluation.discount_value,
                    "discountAmount": evaluation.discount_amount,
                    "finalAmount": evaluation.final_amount,
                    "totalQualifyingItems": evaluation.qualifying_items,
                    "applicableProductIds": evaluation.matched_product_ids,
                    "usageCount": promo.get("usage_count") or 0,
                    "usageLimit": promo.get("usage_limit"),
                    "usagePercentage": usage_percentage(promo),
                },
            }
        )

    @app.route("/api/admin/promo-codes/<promo_id>", methods=["GET"])
    @jwt_required()
    def admin_get_promo_code(promo_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        object_id = to_object_id(promo_id)
        promo = db.promo_codes.find_one({"_id": object_id}) if object_id else None
        if not promo:
            return jsonify({"error": "Promo code not found"}), 404
        recent_usages = db.promo_code_usages.find({"promo_code_id": object_id}).sort("used_at", -1).limit(20)
        return jsonify(
            {
                "promoCode": serialize_promo(promo),
                "recentUsages": [
                    {
                        "orderNumber": usage.get("order_number"),
                        "userId": usage.get("user_id"),
                        "discountAmount": usage.get("discount_amount") or 0,
                        "orderTotal": usage.get("order_total") or 0,
                        "usedAt": isoformat(usage.get("used_at")),
                        "isActive": bool(usage.get("is_active")),
                    }
                    for usage in recent_usages
                ],
            }
        )

    @app.route("/api/admin/promo-codes/<promo_id>", methods=["PUT"])
    @jwt_required()
    def admin_update_promo_code(promo_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        object_id = to_object_id(promo_id)
        promo = db.promo_codes.find_one({"_id": object_id}) if object_id else None
        if not promo:
            return jsonify({"error": "Promo code not found"}), 404

        payload = {**existing_fields(promo, PromoCodeIn), **(request.get_json(silent=True) or {})}
        data, errors = parse_payload(PromoCodeIn, payload)
        if errors:
            return validation_error(errors)
        missing = missing_product_ids(data.product_ids + ([data.product_id] if data.product_id else []))
        if missing:
            return jsonify({"error": "Some products were not found", "productIds": missing}), 400
        if data.usage_limit is not None and data.usage_limit < int(promo.get("usage_count") or 0):
            return jsonify({"error": "Usage limit cannot be lower than the current usage count"}), 400

        updates = data.model_dump()
        updates["updated_at"] = datetime.utcnow()
        try:
            db.promo_codes.update_one({"_id": object_id}, {"$set": updates})
        except DuplicateKeyError:
            return jsonify({"error": "Promo code already exists"}), 400

        record_audit_log(admin_user.get("email"), "Updated promo code", {"code": data.code})
        return jsonify({"success": True, "promoCode": serialize_promo(db.promo_codes.find_one({"_id": object_id}))})

    @app.route("/api/admin/promo-codes/<promo_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_promo_code(promo_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        object_id = to_object_id(promo_id)
        promo = db.promo_codes.find_one({"_id": object_id}) if object_id else None
        if not promo:
            return jsonify({"error": "Promo code not found"}), 404

        if int(promo.get("usage_count") or 0) > 0:
            db.promo_codes.update_one(
                {"_id": object_id}, {"$set": {"is_active": False, "updated_at": datetime.utcnow()}}
            )
            message = "Promo code has been used and was deactivated instead of deleted"
        else:
            db.promo_codes.delete_one({"_id": object_id})
            message = "Promo code deleted successfully"

        record_audit_log(admin_user.get("email"), "Removed promo code", {"code": promo.get("code")})
        return jsonify({"success": True, "message": message})

    # --- PayPal ---

    @app.route("/api/paypal/create-order", methods=["POST"])
    @jwt_required()
    def paypal_create_order():
        user = current_user_document()
        if not user:
            return jsonify({"error": "Unauthorized"}), 401
        data, errors = parse_payload(PayPalCreateOrderRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        order_document, error = load_order_or_404(data.order_id)
        if error:
            return error
        if not customer_owns_order(order_document, user):
            return jsonify({"error": "Access denied"}), 403
        if order_document.get("payment_status") == "paid":
            return jsonify({"error": "Order is already paid"}), 400
        ensure_not_terminal(order_document, "pay for")
        if is_free_order(order_document):
            return jsonify({"error": "Free orders do not require payment"}), 400

        order_id = str(order_document["_id"])
        paypal_order = paypal.create_order(
            order_document,
            return_url=f"{site_url}/checkout/success?orderId={order_id}",
            cancel_url=f"{site_url}/checkout/cancel?orderId={order_id}",
        )
        db.orders.update_one(
            {"_id": order_document["_id"]},
            {"$set": {"paypal_order_id": paypal_order["id"], "updated_at": datetime.utcnow()}},
        )
        return jsonify(
            {
                "success": True,
                "paypalOrderId": paypal_order["id"],
                "status": paypal_order["status"],
                "approvalUrl": paypal_order["approvalUrl"],
            }
        )

    @app.route("/api/paypal/capture-payment", methods=["POST"])
    @jwt_required()
    def paypal_capture_payment():
        user = current_user_document()
        if not user:
            return jsonify({"error": "Unauthorized"}), 401
        data, errors = parse_payload(PayPalCaptureRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        order_document, error = load_order_or_404(data.order_id)
        if error:
            return error
        if not customer_owns_order(order_document, user):
            return jsonify({"error": "Access denied"}), 403
        if order_document.get("paypal_order_id") != data.paypal_order_id:
            return jsonify({"error": "PayPal Order ID mismatch"}), 400
        if order_document.get("payment_status") == "paid":
            return jsonify(
                {"success": True, "message": "Order is already paid", "order": serialize_order(order_document)}
            )
        ensure_not_terminal(order_document, "pay for")

        capture = paypal.capture_order(data.paypal_order_id)
        if capture.get("status") != "COMPLETED":
            append_history(
                db.orders,
                order_document["_id"],
                [build_history_entry("payment_failed", f"فشل تحصيل الدفع عبر PayPal ({capture.get('status')})", user["email"])],
                set_fields={"payment_status": "failed"},
            )
            return jsonify({"error": "Payment capture failed", "status": capture.get("status")}), 400

        outcome = complete_paypal_payment(db, mailer, order_document, capture, api_base_url, user["email"])
        return jsonify(
            {
                "success": True,
                "message": "Payment completed successfully",
                "transactionId": capture.get("captureId"),
                "delivery": outcome["delivery"],
                "order": serialize_order(db.orders.find_one({"_id": order_document["_id"]})),
            }
        )

    @app.route("/api/paypal/webhook", methods=["POST"])
    def paypal_webhook():
        event = request.get_json(silent=True) or {}
        if not paypal.verify_webhook_signature(request.headers, event):
            return jsonify({"error": "Invalid webhook signature"}), 400

        event_id = event.get("id")
        event_type = event.get("event_type") or ""
        resource = event.get("resource") or {}
        related_ids = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        paypal_order_id = related_ids.get("order_id")

        order_document = (
            db.orders.find_one({"paypal_order_id": paypal_order_id}) if paypal_order_id else None
        )
        if not order_document and resource.get("custom_id"):
            order_document = find_order(db, resource["custom_id"])
        if not order_document:
            app.logger.warning("PayPal webhook %s (%s) has no matching order", event_id, event_type)
            return jsonify({"received": True, "processed": False})

        if event_id:
            marked = db.orders.update_one(
                {"_id": order_document["_id"], "webhook_events": {"$ne": event_id}},
                {"$push": {"webhook_events": event_id}},
            )
            if marked.modified_count == 0:
                return jsonify({"received": True, "duplicate": True})

        actor = "paypal-webhook"
        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            if not is_terminal(order_document):
                capture = {
                    "captureId": resource.get("id"),
                    "amount": (resource.get("amount") or {}).get("value"),
                    "payer": {},
                }
                try:
                    complete_paypal_payment(db, mailer, order_document, capture, api_base_url, actor)
                except OrderStateError as exc:
                    app.logger.warning(
                        "PayPal webhook %s for order %s not applied: %s",
                        event_id,
                        order_document.get("order_number"),
                        exc.message,
                    )
                    return jsonify({"received": True, "processed": False})
        elif event_type == "PAYMENT.CAPTURE.PENDING":
            append_history(
                db.orders,
                order_document["_id"],
                [build_history_entry("payment_pending", "الدفع قيد المراجعة من قبل PayPal", actor)],
            )
        elif event_type == "PAYMENT.CAPTURE.DENIED":
            append_history(
                db.orders,
                order_document["_id"],
                [build_history_entry("payment_failed", "تم رفض الدفع من قبل PayPal", actor)],
                set_fields={"payment_status": "failed"},
                extra_filter={"payment_status": {"$ne": "paid"}},
            )
        elif event_type == "PAYMENT.CAPTURE.REFUNDED":
            if order_document.get("payment_status") != "refunded":
                append_history(
                    db.orders,
                    order_document["_id"],
                    [build_history_entry("refunded", "تم استرداد المبلغ عبر PayPal", actor)],
                    set_fields={"payment_status": "refunded", "order_status": "refunded"},
                )
        else:
            app.logger.info("Ignoring PayPal webhook event %s", event_type)
            return jsonify({"received": True, "processed": False})

        app.logger.info("Processed PayPal webhook %s for order %s", event_type, order_document.get("order_number"))
        return jsonify({"received": True, "processed": True})

    # --- Admin orders ---

    @app.route("/api/admin/orders", methods=["GET"])
    @jwt_required()
    def admin_list_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page, limit = pagination_args()
        query: Dict[str, object] = {}
        order_status = (request.args.get("status") or "").strip()
        if order_status in ORDER_STATUSES:
            query["order_status"] = order_status
        payment_status = (request.args.get("paymentStatus") or "").strip()
        if payment_status in PAYMENT_STATUSES:
            query["payment_status"] = payment_status
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [
                {"order_number": regex},
                {"customer_email": regex},
                {"customer_name": regex},
            ]
        start_date = parse_iso_date(request.args.get("from"))
        end_date = parse_iso_date(request.args.get("to"), end_of_day=True)
        if start_date or end_date:
            created_filter: Dict[str, datetime] = {}
            if start_date:
                created_filter["$gte"] = start_date
            if end_date:
                created_filter["$lte"] = end_date
            query["created_at"] = created_filter

        total = db.orders.count_documents(query)
        cursor = db.orders.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        return jsonify(
            {
                "orders": [serialize_order(document, include_admin_fields=True) for document in cursor],
                "pagination": pagination_payload(page, limit, total),
            }
        )

    @app.route("/api/admin/orders/stats", methods=["GET"])
    @jwt_required()
    def admin_order_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        by_status = {status: 0 for status in ORDER_STATUSES}
        for row in db.orders.aggregate([{"$group": {"_id": "$order_status", "count": {"$sum": 1}}}]):
            if row["_id"]:
                by_status[row["_id"]] = row["count"]
        revenue_rows = list(
            db.orders.aggregate(
                [
                    {"$match": {"payment_status": "paid"}},
                    {"$group": {"_id": None, "revenue": {"$sum": "$total_price"}, "count": {"$sum": 1}}},
                ]
            )
        )
        revenue = revenue_rows[0] if revenue_rows else {"revenue": 0, "count": 0}
        return jsonify(
            {
                "totalOrders": sum(by_status.values()),
                "ordersByStatus": by_status,
                "paidOrders": revenue.get("count", 0),
                "freeOrders": db.orders.count_documents({"payment_status": "free"}),
                "totalRevenue": round(safe_float(revenue.get("revenue")), 2),
                "awaitingCustomization": by_status["awaiting_customization"],
            }
        )

    @app.route("/api/admin/orders/<order_identifier>", methods=["GET"])
    @jwt_required()
    def admin_get_order(order_identifier: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        order_document, error = load_order_or_404(order_identifier)
        if error:
            return error
        return jsonify({"order": serialize_order(order_document, include_admin_fields=True)})

    @app.route("/api/admin/orders/<order_identifier>", methods=["PUT"])
    @jwt_required()
    def admin_update_order(order_identifier: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        order_document, error = load_order_or_404(order_identifier)
        if error:
            return error
        data, errors = parse_payload(OrderUpdateRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        admin_email = admin_user.get("email")
        now = datetime.utcnow()
        entries = []
        set_fields: Dict[str, object] = {}

        current_status = order_document.get("order_status")
        if data.order_status and data.order_status != current_status:
            if data.order_status in TERMINAL_ORDER_STATUSES:
                return (
                    jsonify({"error": "Use DELETE /api/admin/orders/<id> to cancel or refund an order"}),
                    400,
                )
            ensure_status_change_allowed(order_document, data.order_status)
            set_fields["order_status"] = data.order_status
            if data.order_status == "completed":
                set_fields.update({"processed_at": now, "processed_by": admin_email})
            entries.append(
                build_history_entry(
                    data.order_status,
                    f"تم تغيير حالة الطلب من {status_label(current_status)} إلى {status_label(data.order_status)}",
                    admin_email,
                    now,
                )
            )
        if data.admin_notes is not None and data.admin_notes != (order_document.get("admin_notes") or ""):
            set_fields["admin_notes"] = data.admin_notes
            entries.append(build_history_entry("note_updated", "تم تحديث ملاحظات المدير", admin_email, now))
        if data.estimated_delivery is not None:
            set_fields["estimated_delivery"] = data.estimated_delivery
            entries.append(
                build_history_entry(
                    "delivery_updated",
                    f"تم تحديث موعد التسليم المتوقع إلى {data.estimated_delivery.strftime('%Y-%m-%d')}",
                    admin_email,
                    now,
                )
            )
        if data.customer_notes is not None and data.customer_notes != (order_document.get("customer_notes") or ""):
            set_fields["customer_notes"] = data.customer_notes
            entries.append(
                build_history_entry("customer_note_updated", "تم تحديث ملاحظات العميل", admin_email, now)
            )

        if not entries:
            return jsonify({"error": "No changes provided"}), 400

        append_history(db.orders, order_document["_id"], entries, set_fields=set_fields)
        return jsonify(
            {
                "message": "Order updated successfully",
                "order": serialize_order(db.orders.find_one({"_id": order_document["_id"]}), include_admin_fields=True),
            }
        )

    @app.route("/api/admin/orders/<order_identifier>", methods=["DELETE"])
    @jwt_required()
    def admin_cancel_order(order_identifier: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        order_document, error = load_order_or_404(order_identifier)
        if error:
            return error
        data, errors = parse_payload(CancelOrderRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        outcome = cancel_order(db, mailer, paypal, order_document, data.reason, admin_user.get("email"))
        app.logger.info("Order %s cancelled by %s", order_document.get("order_number"), admin_user.get("email"))
        return jsonify({"success": True, **outcome})

    @app.route("/api/admin/orders/<order_identifier>/complete", methods=["POST"])
    @jwt_required()
    def admin_complete(order_identifier: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        order_document, error = load_order_or_404(order_identifier)
        if error:
            return error
        data, errors = parse_payload(CompleteOrderRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        if data.payment_id and not order_document.get("paypal_transaction_id") and not data.is_free_order:
            db.orders.update_one(
                {"_id": order_document["_id"]},
                {"$set": {"paypal_transaction_id": data.payment_id, "paypal_payer_id": data.payer_id}},
            )
            order_document = db.orders.find_one({"_id": order_document["_id"]})

        outcome = admin_complete_order(
            db, mailer, order_document, data.is_free_order, admin_user.get("email"), api_base_url
        )
        return jsonify({"success": True, **outcome})

    @app.route("/api/admin/orders/<order_identifier>/notes", methods=["POST"])
    @jwt_required()
    def admin_add_order_note(order_identifier: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        order_document, error = load_order_or_404(order_identifier)
        if error:
            return error
        data, errors = parse_payload(AdminNoteRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        add_admin_note(db.orders, order_document, data.note, admin_user.get("email"))
        return jsonify({"message": "Note added successfully"}), 201

    @app.route("/api/admin/orders/<order_identifier>/upload-files", methods=["GET"])
    @jwt_required()
    def admin_list_order_files(order_identifier: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        order_document, error = load_order_or_404(order_identifier)
        if error:
            return error

        files = []
        for access in db.order_design_files.find({"order_id": order_document["_id"]}):
            design_file = db.design_files.find_one({"_id": access["design_file_id"]})
            if not design_file:
                continue
            files.append(
                {
                    **serialize_design_file(design_file),
                    "orderDownloadCount": access.get("download_count") or 0,
                    "accessExpiresAt": isoformat(access.get("expires_at")),
                    "accessActive": bool(access.get("is_active")),
                }
            )
        return jsonify({"files": files})

    @app.route("/api/admin/orders/<order_identifier>/upload-files", methods=["POST"])
    @jwt_required()
    def admin_upload_order_file(order_identifier: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        order_document, error = load_order_or_404(order_identifier)
        if error:
            return error

        stored_path = None
        upload = request.files.get("file")
        if upload is not None:
            original_name = secure_filename(upload.filename or "")
            extension = original_name.rsplit(".", 1)[-1].lower() if "." in original_name else ""
            if not original_name or extension not in ("psd", "ai", "eps", "pdf", "svg", "zip", "rar", "png", "jpg", "jpeg", "gif", "webp", "mp4", "mov", "avi", "mkv", "webm"):
                return jsonify({"error": "Unsupported file type"}), 400
            order_folder = os.path.join(design_upload_directory, str(order_document["_id"]))
            os.makedirs(order_folder, exist_ok=True)
            stored_name = f"{uuid4().hex[:8]}_{original_name}"
            stored_path = os.path.join(order_folder, stored_name)
            upload.save(stored_path)
            payload = {
                "productId": request.form.get("productId"),
                "fileName": original_name,
                "fileUrl": f"{LOCAL_DESIGN_URL_PREFIX}{order_document['_id']}/{stored_name}",
                "fileType": extension,
                "fileSize": os.path.getsize(stored_path),
                "description": request.form.get("description") or "",
            }
        else:
            payload = request.get_json(silent=True) or {}

        data, errors = parse_payload(OrderFileIn, payload)
        if errors:
            discard_upload(stored_path)
            return validation_error(errors)

        try:
            design_file = attach_order_file(db, order_document, data.model_dump(), admin_user.get("email"))
        except (OrderStateError, DeliveryError):
            discard_upload(stored_path)
            raise

        app.logger.info(
            "Uploaded %s for order %s", design_file["file_name"], order_document.get("order_number")
        )
        return (
            jsonify(
                {
                    "success": True,
                    "message": "File uploaded successfully",
                    "designFile": serialize_design_file(design_file),
                    "orderStatus": "under_customization",
                    "customizationStatus": "processing",
                }
            ),
            201,
        )

    @app.route("/api/admin/orders/<order_identifier>/send-email", methods=["POST"])
    @jwt_required()
    def admin_send_order_email(order_identifier: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        order_document, error = load_order_or_404(order_identifier)
        if error:
            return error
        data, errors = parse_payload(CustomEmailRequest, request.get_json(silent=True))
        if errors:
            return validation_error(errors)

        sent, send_error = mailer.send_custom_message(order_document, data.subject, data.message)
        if not sent:
            return jsonify({"error": "Failed to send email", "details": send_error}), 502
        record_email_result(
            db, order_document, True, f"تم إرسال رسالة إلى العميل: {data.subject}", admin_user.get("email")
        )
        return jsonify({"success": True, "message": "Email sent successfully"})

    # --- Design files ---

    @app.route("/api/admin/design-files", methods=["GET"])
    @jwt_required()
    def admin_list_design_files():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        query: Dict[str, object] = {}
        product_id = (request.args.get("productId") or "").strip()
        if product_id:
            query["product_id"] = product_id
        if request.args.get("includeInactive") not in ("1", "true"):
            query["is_active"] = True
        documents = db.design_files.find(query).sort("created_at", -1)
        return jsonify({"designFiles": [serialize_design_file(document) for document in documents]})

    @app.route("/api/admin/design-files", methods=["POST"])
    @jwt_required()
    def admin_create_design_file():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        data, errors = parse_payload(DesignFileIn, request.get_json(silent=True))
        if errors:
            return validation_error(errors)
        if missing_product_ids([data.product_id]):
            return jsonify({"error": "Product not found"}), 404

        design_file = data.model_dump()
        design_file.update(
            {
                "mime_type": mime_type_for(data.file_type),
                "is_active": True,
                "is_for_order": False,
                "download_count": 0,
                "created_by": admin_user.get("email"),
                "created_at": datetime.utcnow(),
            }
        )
        design_file["_id"] = db.design_files.insert_one(design_file).inserted_id
        record_audit_log(
            admin_user.get("email"),
            "Added design file",
            {"product_id": data.product_id, "file_name": data.file_name},
        )
        return jsonify({"success": True, "designFile": serialize_design_file(design_file)}), 201

    @app.route("/api/admin/design-files/<design_file_id>", methods=["DELETE"])
    @jwt_required()
    def admin_deactivate_design_file(design_file_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        design_file = lookup_design_file(db, design_file_id)
        if not design_file:
            return jsonify({"error": "Design file not found"}), 404
        db.design_files.update_one({"_id": design_file["_id"]}, {"$set": {"is_active": False}})
        record_audit_log(admin_user.get("email"), "Deactivated design file", {"design_file_id": design_file_id})
        return jsonify({"success": True, "message": "Design file deactivated"})

    @app.route("/api/design-files/<design_file_id>/download", methods=["GET"])
    @jwt_required()
    def download_design_file(design_file_id: str):
        user = current_user_document()
        if not user:
            return jsonify({"error": "Unauthorized"}), 401

        design_file = lookup_design_file(db, design_file_id)
        if not design_file or not design_file.get("is_active", True):
            return jsonify({"error": "Design file not found"}), 404
        allowed, reason = can_download(design_file)
        if reason == "expired":
            return jsonify({"error": "Design file has expired"}), 410
        if reason == "limit_reached":
            return jsonify({"error": "Download limit reached"}), 429
        if not allowed:
            return jsonify({"error": "Design file not found"}), 404

        now = datetime.utcnow()
        if get_user_role(user) == "admin":
            db.design_files.update_one({"_id": design_file["_id"]}, {"$inc": {"download_count": 1}})
        else:
            access_document = None
            for access in db.order_design_files.find({"design_file_id": design_file["_id"], "is_active": True}):
                order_document = db.orders.find_one({"_id": access["order_id"]})
                if (
                    order_document
                    and customer_owns_order(order_document, user)
                    and not is_terminal(order_document)
                    and (
                        order_document.get("payment_status") in ("paid", "free")
                        or order_document.get("order_status") == "completed"
                    )
                ):
                    access_document = access
                    break
            if not access_document:
                return jsonify({"error": "You do not have access to this file"}), 403
            access_expiry = access_document.get("expires_at")
            if isinstance(access_expiry, datetime) and access_expiry < now:
                return jsonify({"error": "Download access has expired"}), 410
            if not register_download(db, access_document, design_file.get("max_downloads"), now):
                return jsonify({"error": "Download limit reached for this order"}), 429

        download_url, expires_at = generate_download_url(
            design_file, app.config["JWT_SECRET_KEY"], api_base_url, now
        )
        return jsonify(
            {
                "success": True,
                "downloadUrl": download_url,
                "expiresAt": isoformat(expires_at),
                "fileName": design_file.get("file_name"),
                "fileType": design_file.get("file_type"),
                "fileSize": design_file.get("file_size") or 0,
            }
        )

    @app.route("/api/design-files/<design_file_id>/file", methods=["GET"])
    def serve_design_file(design_file_id: str):
        design_file = lookup_design_file(db, design_file_id)
        if not design_file or not design_file.get("is_active", True):
            return jsonify({"error": "Design file not found"}), 404
        verify_download_token(app.config["JWT_SECRET_KEY"], request.args.get("token"), design_file["_id"])
        _, reason = can_download(design_file)
        if reason == "expired":
            return jsonify({"error": "Design file has expired"}), 410

        file_url = design_file.get("file_url") or ""
        relative_path = local_design_path(file_url)
        if relative_path is None:
            return redirect(file_url)
        return send_from_directory(
            design_upload_directory,
            relative_path,
            as_attachment=True,
            download_name=design_file.get("file_name") or os.path.basename(relative_path),
        )

    # --- Admin logs ---

    @app.route("/api/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page, limit = pagination_args(50)
        query: Dict[str, object] = {}
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [{"user_email": regex}, {"action": regex}]

        start_date = parse_iso_date(request.args.get("from"))
        end_date = parse_iso_date(request.args.get("to"), end_of_day=True)
        if start_date or end_date:
            created_filter: Dict[str, datetime] = {}
            if start_date:
                created_filter["$gte"] = start_date
            if end_date:
                created_filter["$lte"] = end_date
            query["created_at"] = created_filter

        total = db.audit_logs.count_documents(query)
        cursor = db.audit_logs.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        return jsonify(
            {
                "logs": [serialize_audit_log(document) for document in cursor],
                "pagination": pagination_payload(page, limit, total),
            }
        )

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
