"""Promo code rules: eligibility, discount calculation and usage counters."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)

PROMO_CODE_PATTERN = re.compile(r"^[A-Z0-9]{1,20}$")

# reason -> (customer message, admin message)
PROMO_ERROR_MESSAGES = {
    "not_found": (
        "كود الخصم غير صحيح أو منتهي الصلاحية",
        "Promo code not found",
    ),
    "inactive": (
        "كود الخصم غير صحيح أو منتهي الصلاحية",
        "Promo code is inactive",
    ),
    "not_started": (
        "كود الخصم لم يصبح ساري المفعول بعد",
        "Promo code is not yet active",
    ),
    "expired": (
        "انتهت صلاحية كود الخصم",
        "Promo code has expired",
    ),
    "usage_limit": (
        "تم استنفاد عدد مرات الاستخدام لهذا الكود",
        "Promo code usage limit reached",
    ),
    "user_usage_limit": (
        "لقد استخدمت هذا الكود الحد الأقصى من المرات المسموح بها",
        "User usage limit reached for this promo code",
    ),
    "not_applicable": (
        "كود الخصم لا ينطبق على المنتجات الموجودة في السلة",
        "Promo code does not apply to products in cart",
    ),
}


class PromoCodeError(Exception):
    def __init__(self, reason: str, message: str = "", admin_message: str = ""):
        default_message, default_admin_message = PROMO_ERROR_MESSAGES.get(
            reason, ("كود الخصم غير صالح", "Invalid promo code")
        )
        self.reason = reason
        self.message = message or default_message
        self.admin_message = admin_message or default_admin_message
        super().__init__(self.admin_message)


@dataclass
class CartLine:
    product_id: str
    quantity: int = 1
    total_price: Optional[float] = None


@dataclass
class PromoEvaluation:
    code: str
    discount_type: str
    discount_value: float
    discount_amount: float
    qualifying_items: int
    qualifying_amount: float
    order_amount: float
    matched_product_ids: List[str] = field(default_factory=list)

    @property
    def final_amount(self) -> float:
        return round(max(0.0, self.order_amount - self.discount_amount), 2)


def normalize_code(value: Optional[str]) -> str:
    return re.sub(r"\s+", "", str(value or "")).upper()


def is_valid_code_format(value: Optional[str]) -> bool:
    return bool(PROMO_CODE_PATTERN.match(normalize_code(value)))


def promo_product_ids(promo: Dict) -> List[str]:
    return [str(value) for value in promo.get("product_ids") or [] if value]


def _sum_line_totals(lines: Iterable[CartLine]) -> Optional[float]:
    totals = [line.total_price for line in lines if line.total_price is not None]
    if not totals:
        return None
    return round(sum(totals), 2)


def resolve_eligibility(
    promo: Dict, lines: List[CartLine], order_amount: float
) -> Tuple[int, float, List[str]]:
    """Return (qualifying item count, qualifying amount, matched product ids).

    Precedence: apply-to-all flag, explicit product list, legacy single product.
    A promo with none of these applies to every item.
    """
    restricted_ids: List[str] = []
    if not promo.get("apply_to_all_products"):
        restricted_ids = promo_product_ids(promo)
        if not restricted_ids and promo.get("product_id"):
            restricted_ids = [str(promo["product_id"])]

    if not restricted_ids:
        if not lines:
            return 1, order_amount, []
        count = sum(max(1, line.quantity) for line in lines)
        return count, order_amount, sorted({line.product_id for line in lines})

    allowed = set(restricted_ids)
    matched = [line for line in lines if line.product_id in allowed]
    if not matched:
        raise PromoCodeError("not_applicable")

    count = sum(max(1, line.quantity) for line in matched)
    amount = _sum_line_totals(matched)
    if amount is None:
        amount = order_amount
    return count, min(amount, order_amount), sorted({line.product_id for line in matched})


def calculate_discount(
    promo: Dict, qualifying_items: int, qualifying_amount: float, order_amount: float
) -> float:
    discount_value = float(promo.get("discount_value") or 0)
    if promo.get("discount_type") == "percentage":
        discount = qualifying_amount * discount_value / 100
    else:
        discount = discount_value * max(1, qualifying_items)

    max_discount = promo.get("max_discount_amount")
    if max_discount:
        discount = min(discount, float(max_discount))

    discount = min(discount, qualifying_amount, order_amount)
    return round(max(0.0, discount), 2)


def validate_promo_code(
    promo: Optional[Dict],
    lines: List[CartLine],
    order_amount: float,
    now: Optional[datetime] = None,
    user_usage_count: Optional[int] = None,
) -> PromoEvaluation:
    """Check a promo code against a cart and compute its discount.

    Raises PromoCodeError with the first failing rule.
    """
    if not promo:
        raise PromoCodeError("not_found")
    if not promo.get("is_active", True):
        raise PromoCodeError("inactive")

    now = now or datetime.utcnow()
    start_date = promo.get("start_date")
    end_date = promo.get("end_date")
    if isinstance(start_date, datetime) and start_date > now:
        raise PromoCodeError("not_started")
    if isinstance(end_date, datetime) and end_date < now:
        raise PromoCodeError("expired")

    usage_limit = promo.get("usage_limit")
    if usage_limit is not None and int(promo.get("usage_count") or 0) >= int(usage_limit):
        raise PromoCodeError("usage_limit")

    user_limit = promo.get("user_usage_limit")
    if (
        user_usage_count is not None
        and user_limit is not None
        and user_usage_count >= int(user_limit)
    ):
        raise PromoCodeError("user_usage_limit")

    order_amount = round(max(0.0, float(order_amount or 0)), 2)
    qualifying_items, qualifying_amount, matched_ids = resolve_eligibility(
        promo, lines, order_amount
    )

    minimum = promo.get("minimum_order_amount")
    if minimum is not None and order_amount < float(minimum):
        raise PromoCodeError(
            "minimum_order",
            message=f"الحد الأدنى لقيمة الطلب لاستخدام هذا الكود هو ${float(minimum):.2f}",
            admin_message=f"Minimum order amount of ${float(minimum):.2f} required",
        )

    discount_amount = calculate_discount(
        promo, qualifying_items, qualifying_amount, order_amount
    )
    return PromoEvaluation(
        code=promo.get("code") or "",
        discount_type=promo.get("discount_type") or "percentage",
        discount_value=float(promo.get("discount_value") or 0),
        discount_amount=discount_amount,
        qualifying_items=qualifying_items,
        qualifying_amount=qualifying_amount,
        order_amount=order_amount,
        matched_product_ids=matched_ids,
    )


def find_promo_by_code(promo_codes_collection, code: str) -> Optional[Dict]:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return promo_codes_collection.find_one({"code": normalized})


def count_user_usages(db, promo_id, user_id: Optional[str]) -> int:
    if not user_id:
        return 0
    return db.promo_code_usages.count_documents(
        {"promo_code_id": promo_id, "user_id": str(user_id), "is_active": True}
    )


def claim_promo_usage(promo_codes_collection, promo_id) -> bool:
    """Atomically increment usage_count unless usage_limit is reached."""
    promo = promo_codes_collection.find_one(
        {"_id": promo_id}, {"usage_limit": 1, "usage_count": 1}
    )
    if not promo:
        return False

    usage_limit = promo.get("usage_limit")
    query: Dict[str, object] = {"_id": promo_id, "usage_limit": usage_limit}
    if usage_limit is not None:
        query["usage_count"] = {"$lt": int(usage_limit)}

    result = promo_codes_collection.update_one(
        query,
        {"$inc": {"usage_count": 1}, "$set": {"updated_at": datetime.utcnow()}},
    )
    return result.modified_count == 1


def record_promo_usage(
    db,
    promo: Dict,
    user_id: Optional[str],
    order_document: Dict,
    discount_amount: float,
) -> bool:
    """Insert the usage row for an order. Returns False if it already existed."""
    usage = {
        "user_id": str(user_id) if user_id else None,
        "promo_code_id": promo["_id"],
        "promo_code": promo.get("code"),
        "order_id": order_document["_id"],
        "order_number": order_document.get("order_number"),
        "discount_amount": round(float(discount_amount or 0), 2),
        "order_total": round(float(order_document.get("total_price") or 0), 2),
        "used_at": datetime.utcnow(),
        "is_active": True,
    }
    try:
        db.promo_code_usages.insert_one(usage)
    except DuplicateKeyError:
        # reactivate a row released when the code was dropped from a reused order
        usage.pop("_id", None)
        db.promo_code_usages.update_one(
            {"order_id": order_document["_id"], "promo_code_id": promo["_id"]},
            {"$set": usage},
        )
        return False
    return True


def deactivate_promo_usage(db, order_id: ObjectId) -> int:
    result = db.promo_code_usages.update_many(
        {"order_id": order_id, "is_active": True},
        {"$set": {"is_active": False, "deactivated_at": datetime.utcnow()}},
    )
    if result.modified_count:
        logger.info(
            "Deactivated %s promo usage record(s) for order %s",
            result.modified_count,
            order_id,
        )
    return result.modified_count


def usage_percentage(promo: Dict) -> Optional[float]:
    usage_limit = promo.get("usage_limit")
    if not usage_limit:
        return None
    return round(int(promo.get("usage_count") or 0) / int(usage_limit) * 100, 2)


def release_promo_usage(promo_codes_collection, promo_id) -> None:
    promo_codes_collection.update_one(
        {"_id": promo_id, "usage_count": {"$gt": 0}},
        {"$inc": {"usage_count": -1}, "$set": {"updated_at": datetime.utcnow()}},
    )
