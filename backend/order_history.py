"""Order status vocabulary and the append-only order history log."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

ORDER_STATUSES = (
    "pending",
    "processing",
    "completed",
    "cancelled",
    "refunded",
    "awaiting_customization",
    "under_customization",
)
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "free")
TERMINAL_ORDER_STATUSES = frozenset({"cancelled", "refunded"})

STATUS_LABELS = {
    "pending": "في الانتظار",
    "processing": "قيد المعالجة",
    "completed": "مكتمل",
    "cancelled": "ملغي",
    "refunded": "مسترد",
    "awaiting_customization": "في انتظار التخصيص",
    "under_customization": "قيد التخصيص",
}

SYSTEM_ACTOR = "system"


class OrderStateError(Exception):
    """Raised when an order's current state does not allow an operation."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def status_label(status: Optional[str]) -> str:
    return STATUS_LABELS.get(str(status or ""), str(status or ""))


def is_terminal(order_document: Optional[Dict]) -> bool:
    if not order_document:
        return False
    return order_document.get("order_status") in TERMINAL_ORDER_STATUSES


def ensure_not_terminal(order_document: Dict, action: str = "modify") -> None:
    if is_terminal(order_document):
        raise OrderStateError(f"Cannot {action} cancelled or refunded order")


def ensure_can_complete(order_document: Dict) -> None:
    if order_document.get("order_status") == "completed":
        raise OrderStateError("Order is already completed")
    ensure_not_terminal(order_document, "complete")


def ensure_status_change_allowed(order_document: Dict, new_status: str) -> None:
    if new_status not in ORDER_STATUSES:
        raise OrderStateError(f"Invalid order status: {new_status}")
    current_status = order_document.get("order_status")
    if current_status == new_status:
        return
    if current_status == "cancelled" and new_status == "refunded":
        return
    if current_status in TERMINAL_ORDER_STATUSES:
        raise OrderStateError(
            f"Cannot change status of a {current_status} order to {new_status}"
        )


def build_history_entry(
    status: str,
    note: str = "",
    changed_by: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Dict[str, object]:
    return {
        "status": status,
        "timestamp": timestamp or datetime.utcnow(),
        "note": note or "",
        "changed_by": changed_by or SYSTEM_ACTOR,
    }


def append_history(
    orders_collection,
    order_id,
    entries: Iterable[Dict[str, object]],
    set_fields: Optional[Dict[str, object]] = None,
    extra_filter: Optional[Dict[str, object]] = None,
    unset_fields: Iterable[str] = (),
):
    """Push history entries (and optional field updates) in a single write.

    Entries are only ever appended. Returns the pymongo UpdateResult so callers
    using ``extra_filter`` as a guard can check ``matched_count``.
    """
    history: List[Dict[str, object]] = [entry for entry in entries if entry]
    update: Dict[str, object] = {}
    fields = dict(set_fields or {})
    fields.setdefault("updated_at", datetime.utcnow())
    update["$set"] = fields
    unset = {name: "" for name in unset_fields}
    if unset:
        update["$unset"] = unset
    if history:
        update["$push"] = {"order_history": {"$each": history}}

    query: Dict[str, object] = {"_id": order_id}
    if extra_filter:
        query.update(extra_filter)
    return orders_collection.update_one(query, update)


def serialize_history_entry(entry: Dict) -> Dict[str, object]:
    timestamp = entry.get("timestamp")
    return {
        "status": entry.get("status") or "",
        "statusLabel": status_label(entry.get("status")),
        "timestamp": f"{timestamp.isoformat()}Z"
        if isinstance(timestamp, datetime)
        else None,
        "note": entry.get("note") or "",
        "changedBy": entry.get("changed_by") or SYSTEM_ACTOR,
    }
