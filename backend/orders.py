"""Order document helpers: numbering, pricing, promo allocation and serialization."""

import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from order_history import (
    append_history,
    build_history_entry,
    serialize_history_entry,
    status_label,
)

ORDER_NUMBER_PREFIX = "PD"
ORDER_REUSE_WINDOW = timedelta(minutes=30)
DOWNLOAD_ACCESS_PERIOD = timedelta(days=30)


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def generate_order_number(db, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    counter = db.counters.find_one_and_update(
        {"_id": f"orders-{now.year}"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"{ORDER_NUMBER_PREFIX}-{now.year}-{int(counter['seq']):03d}"


def find_order(db, identifier) -> Optional[Dict]:
    object_id = to_object_id(identifier)
    if object_id:
        order_document = db.orders.find_one({"_id": object_id})
        if order_document:
            return order_document
    return db.orders.find_one({"order_number": str(identifier or "").strip()})


def customer_owns_order(order_document: Dict, user_document: Optional[Dict]) -> bool:
    if not order_document or not user_document:
        return False
    if str(order_document.get("customer_id") or "") == str(user_document.get("_id")):
        return True
    customer_email = str(order_document.get("customer_email") or "").lower()
    return bool(customer_email) and customer_email == str(
        user_document.get("email") or ""
    ).lower()


def product_final_price(product: Dict) -> float:
    price = safe_float(product.get("price"), 0.0)
    discount_amount = safe_float(product.get("discount_amount"), 0.0)
    discount_percentage = safe_float(product.get("discount_percentage"), 0.0)
    if discount_amount > 0:
        final_price = price - discount_amount
    elif discount_percentage > 0:
        final_price = price * (1 - discount_percentage / 100)
    else:
        final_price = price
    return round(max(0.0, final_price), 2)


def build_order_item(item_payload: Dict, product: Dict) -> Dict[str, object]:
    """Price a cart line from the catalog and normalize its customizations."""
    quantity = max(1, int(item_payload.get("quantity") or 1))
    original_price = round(safe_float(product.get("price"), 0.0), 2)
    unit_price = product_final_price(product)
    customizations = item_payload.get("customizations") or {}
    enable_customizations = bool(product.get("enable_customizations"))
    return {
        "product_id": str(product["_id"]),
        "product_name": product.get("name") or "",
        "product_slug": product.get("slug") or "",
        "quantity": quantity,
        "original_price": original_price,
        "discount_amount": round(original_price - unit_price, 2),
        "unit_price": unit_price,
        "total_price": round(unit_price * quantity, 2),
        "promo_code": None,
        "promo_discount": 0.0,
        "has_customizations": bool(item_payload.get("has_customizations"))
        and enable_customizations,
        "enable_customizations": enable_customizations,
        "customizations": customizations,
        "delivery_status": "pending",
        "delivered_at": None,
        "delivery_note": "",
    }


def apply_promo_to_item(item: Dict, code: str, discount: float) -> Dict:
    line_total = round(item["unit_price"] * item["quantity"], 2)
    discount = round(min(max(0.0, discount), line_total), 2)
    item["promo_code"] = code
    item["promo_discount"] = discount
    item["total_price"] = round(line_total - discount, 2)
    return item


def remove_promo_from_item(item: Dict) -> Dict:
    item["promo_code"] = None
    item["promo_discount"] = 0.0
    item["total_price"] = round(item["unit_price"] * item["quantity"], 2)
    return item


def allocate_promo_discount(
    items: List[Dict], product_ids: List[str], code: str, discount: float
) -> float:
    """Spread a promo discount over matching items, proportionally to their totals."""
    targets = [
        item
        for item in items
        if not item.get("promo_code") and (not product_ids or item["product_id"] in product_ids)
    ]
    base_total = sum(item["unit_price"] * item["quantity"] for item in targets)
    if not targets or base_total <= 0:
        return 0.0

    remaining = round(discount, 2)
    applied = 0.0
    for index, item in enumerate(targets):
        line_total = item["unit_price"] * item["quantity"]
        if index == len(targets) - 1:
            share = remaining
        else:
            share = round(discount * line_total / base_total, 2)
        share = min(share, round(line_total, 2))
        apply_promo_to_item(item, code, share)
        remaining = round(remaining - item["promo_discount"], 2)
        applied += item["promo_discount"]
    return round(applied, 2)


def calculate_order_totals(items: List[Dict]) -> Dict[str, float]:
    subtotal = 0.0
    product_discount = 0.0
    promo_discount = 0.0
    total_price = 0.0
    for item in items:
        quantity = item.get("quantity") or 1
        subtotal += safe_float(item.get("original_price")) * quantity
        product_discount += safe_float(item.get("discount_amount")) * quantity
        promo_discount += safe_float(item.get("promo_discount"))
        total_price += safe_float(item.get("total_price"))
    return {
        "subtotal": round(subtotal, 2),
        "total_product_discount": round(product_discount, 2),
        "total_promo_discount": round(promo_discount, 2),
        "total_price": round(max(0.0, total_price), 2),
    }


def is_free_order(order_document: Dict) -> bool:
    return (
        order_document.get("payment_status") == "free"
        or safe_float(order_document.get("total_price"), 0.0) <= 0
    )


def find_reusable_order(
    db, customer_id: str, product_ids: List[str], now: Optional[datetime] = None
) -> Optional[Dict]:
    """A recent pending order of the same customer covering the same products."""
    now = now or datetime.utcnow()
    candidates = db.orders.find(
        {
            "customer_id": customer_id,
            "order_status": "pending",
            "payment_status": "pending",
            "created_at": {"$gte": now - ORDER_REUSE_WINDOW},
            "items.product_id": {"$all": list(product_ids)},
        }
    ).sort("created_at", -1)
    for candidate in candidates:
        return candidate
    return None


def mark_as_paid(
    orders_collection,
    order_document: Dict,
    transaction_id: str,
    payer_address: Optional[Dict] = None,
    changed_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Flip the order to paid once. Returns False if another request already did."""
    now = now or datetime.utcnow()
    result = append_history(
        orders_collection,
        order_document["_id"],
        [
            build_history_entry(
                "paid",
                f"تم إكمال الدفع عبر PayPal: {transaction_id}",
                changed_by,
                now,
            )
        ],
        set_fields={
            "payment_status": "paid",
            "paypal_transaction_id": transaction_id,
            "paid_at": now,
            "order_status": "processing",
            "paypal_address": payer_address or order_document.get("paypal_address"),
        },
        extra_filter={"payment_status": {"$nin": ["paid", "refunded"]}},
    )
    return result.modified_count == 1


def add_admin_note(orders_collection, order_document: Dict, note: str, changed_by: str):
    return append_history(
        orders_collection,
        order_document["_id"],
        [build_history_entry("note_added", note, changed_by)],
        set_fields={"admin_notes": note},
    )


def promo_summary(order_document: Dict) -> Dict[str, object]:
    per_code: Dict[str, Dict[str, object]] = {}
    for item in order_document.get("items") or []:
        code = item.get("promo_code")
        if not code:
            continue
        entry = per_code.setdefault(code, {"code": code, "discount": 0.0, "items": 0})
        entry["discount"] = round(entry["discount"] + safe_float(item.get("promo_discount")), 2)
        entry["items"] += item.get("quantity") or 1
    return {
        "appliedCodes": list(order_document.get("applied_promo_codes") or per_code.keys()),
        "totalDiscount": round(safe_float(order_document.get("total_promo_discount")), 2),
        "codes": list(per_code.values()),
    }


def serialize_order_item(item: Dict) -> Dict[str, object]:
    customizations = item.get("customizations") or {}
    logo = customizations.get("uploaded_logo") or {}
    return {
        "productId": item.get("product_id"),
        "productName": item.get("product_name") or "",
        "productSlug": item.get("product_slug") or "",
        "quantity": item.get("quantity") or 1,
        "originalPrice": item.get("original_price") or 0,
        "discountAmount": item.get("discount_amount") or 0,
        "unitPrice": item.get("unit_price") or 0,
        "totalPrice": item.get("total_price") or 0,
        "promoCode": item.get("promo_code"),
        "promoDiscount": item.get("promo_discount") or 0,
        "hasCustomizations": bool(item.get("has_customizations")),
        "enableCustomizations": bool(item.get("enable_customizations")),
        "customizations": {
            "colors": customizations.get("colors") or [],
            "textChanges": customizations.get("text_changes") or [],
            "uploadedImages": [
                {"url": image.get("url"), "publicId": image.get("public_id")}
                for image in customizations.get("uploaded_images") or []
            ],
            "uploadedLogo": {"url": logo.get("url"), "publicId": logo.get("public_id")}
            if logo.get("url")
            else None,
            "customizationNotes": customizations.get("customization_notes") or "",
        },
        "deliveryStatus": item.get("delivery_status") or "pending",
        "deliveredAt": isoformat(item.get("delivered_at")),
        "deliveryNote": item.get("delivery_note") or "",
    }


def serialize_order(order_document: Optional[Dict], include_admin_fields: bool = False):
    if not order_document:
        return None

    serialized = {
        "id": str(order_document.get("_id")),
        "orderNumber": order_document.get("order_number"),
        "customerId": order_document.get("customer_id"),
        "customerEmail": order_document.get("customer_email") or "",
        "customerName": order_document.get("customer_name") or "",
        "customerPhone": order_document.get("customer_phone") or "",
        "items": [serialize_order_item(item) for item in order_document.get("items") or []],
        "subtotal": order_document.get("subtotal") or 0,
        "totalPromoDiscount": order_document.get("total_promo_discount") or 0,
        "totalPrice": order_document.get("total_price") or 0,
        "appliedPromoCodes": order_document.get("applied_promo_codes") or [],
        "promoSummary": promo_summary(order_document),
        "paymentMethod": order_document.get("payment_method") or "paypal",
        "paymentStatus": order_document.get("payment_status") or "pending",
        "paidAt": isoformat(order_document.get("paid_at")),
        "orderStatus": order_document.get("order_status") or "pending",
        "orderStatusLabel": status_label(order_document.get("order_status")),
        "customizationStatus": order_document.get("customization_status") or "none",
        "hasCustomizableProducts": bool(order_document.get("has_customizable_products")),
        "deliveryMethod": order_document.get("delivery_method") or "digital_download",
        "downloadExpiry": isoformat(order_document.get("download_expiry")),
        "emailSent": bool(order_document.get("email_sent")),
        "customerNotes": order_document.get("customer_notes") or "",
        "estimatedDelivery": isoformat(order_document.get("estimated_delivery")),
        "actualDelivery": isoformat(order_document.get("actual_delivery")),
        "isFreeOrder": is_free_order(order_document),
        "orderHistory": [
            serialize_history_entry(entry)
            for entry in order_document.get("order_history") or []
        ],
        "createdAt": isoformat(order_document.get("created_at")),
        "updatedAt": isoformat(order_document.get("updated_at")),
    }
    if include_admin_fields:
        serialized.update(
            {
                "adminNotes": order_document.get("admin_notes") or "",
                "paypalOrderId": order_document.get("paypal_order_id"),
                "paypalTransactionId": order_document.get("paypal_transaction_id"),
                "paypalAddress": order_document.get("paypal_address"),
                "processedAt": isoformat(order_document.get("processed_at")),
                "processedBy": order_document.get("processed_by"),
                "emailSentAt": isoformat(order_document.get("email_sent_at")),
            }
        )
    return serialized
