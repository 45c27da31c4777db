"""Order workflows that span payment, delivery and customer notification."""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from delivery import (
    DeliveryError,
    DeliveryResult,
    grant_free_order_files,
    grant_order_files,
    mime_type_for,
    order_download_links,
    process_order_delivery,
)
from order_history import (
    TERMINAL_ORDER_STATUSES,
    OrderStateError,
    append_history,
    build_history_entry,
    ensure_can_complete,
    ensure_not_terminal,
)
from orders import DOWNLOAD_ACCESS_PERIOD, is_free_order, mark_as_paid, safe_float, to_object_id
from promo import deactivate_promo_usage

logger = logging.getLogger(__name__)

ORDER_FILE_MAX_DOWNLOADS = 10
ORDER_FILE_LIFETIME = timedelta(days=365)


def record_email_result(db, order_document: Dict, sent: bool, note: str, changed_by=None):
    if not sent:
        return
    now = datetime.utcnow()
    append_history(
        db.orders,
        order_document["_id"],
        [build_history_entry("email_sent", note, changed_by, now)],
        set_fields={"email_sent": True, "email_sent_at": now},
    )


def send_delivery_notification(
    db, mailer, order_document: Dict, result: DeliveryResult, api_base_url: str
) -> bool:
    """Email the customer about the delivery outcome. Failures are logged only."""
    order_document = db.orders.find_one({"_id": order_document["_id"]}) or order_document
    free = is_free_order(order_document)
    try:
        if result.order_completed:
            links = order_download_links(db, order_document["_id"], api_base_url)
            sent, error = mailer.send_order_completed(order_document, links, is_free=free)
            note = "تم إرسال روابط التحميل إلى العميل"
        elif free:
            sent, error = mailer.send_free_order_under_review(order_document)
            note = "تم إرسال إشعار مراجعة الطلب المجاني إلى العميل"
        else:
            sent, error = mailer.send_customization_processing(order_document)
            note = "تم إرسال إشعار بدء التخصيص إلى العميل"
    except Exception as exc:
        logger.error(
            "Delivery email for order %s failed: %s", order_document.get("order_number"), exc
        )
        return False

    if not sent:
        logger.warning(
            "Delivery email for order %s was not sent: %s",
            order_document.get("order_number"),
            error,
        )
        return False
    record_email_result(db, order_document, True, note)
    return True


def increment_purchase_counts(db, order_document: Dict) -> None:
    for item in order_document.get("items") or []:
        product_id = to_object_id(item.get("product_id"))
        if product_id is None:
            continue
        db.products.update_one(
            {"_id": product_id},
            {"$inc": {"purchase_count": int(item.get("quantity") or 1)}},
        )


def run_delivery(db, mailer, order_id, api_base_url: str, changed_by=None) -> DeliveryResult:
    order_document = db.orders.find_one({"_id": order_id})
    result = process_order_delivery(db, order_document, changed_by)
    send_delivery_notification(db, mailer, order_document, result, api_base_url)
    return result


def captured_amount_matches(order_document: Dict, capture: Dict) -> bool:
    """A capture without an amount (webhook resources may omit it) is not compared."""
    amount = capture.get("amount")
    if amount in (None, ""):
        return True
    expected = round(safe_float(order_document.get("total_price"), 0.0), 2)
    return abs(safe_float(amount, -1.0) - expected) < 0.005


def complete_paypal_payment(
    db,
    mailer,
    order_document: Dict,
    capture: Dict,
    api_base_url: str,
    changed_by: Optional[str] = None,
) -> Dict[str, object]:
    """Record a captured PayPal payment and start fulfillment. Safe to repeat."""
    if order_document.get("payment_status") == "paid":
        return {"alreadyPaid": True, "delivery": None}
    ensure_not_terminal(order_document, "pay for")

    transaction_id = capture.get("captureId") or capture.get("id") or ""
    if not captured_amount_matches(order_document, capture):
        total = safe_float(order_document.get("total_price"), 0.0)
        append_history(
            db.orders,
            order_document["_id"],
            [
                build_history_entry(
                    "payment_failed",
                    f"المبلغ المحصّل {capture.get('amount')} لا يطابق إجمالي الطلب {total:.2f}",
                    changed_by,
                )
            ],
            set_fields={"payment_status": "failed", "paypal_transaction_id": transaction_id},
            extra_filter={"payment_status": {"$nin": ["paid", "refunded"]}},
        )
        logger.error(
            "Captured amount %s does not match total %.2f for order %s",
            capture.get("amount"),
            total,
            order_document.get("order_number"),
        )
        raise OrderStateError("Captured amount does not match order total")

    payer = capture.get("payer") or {}
    payer_address = dict(payer.get("address") or {})
    if payer.get("email"):
        payer_address["email"] = payer["email"]
    if payer.get("name"):
        payer_address["name"] = payer["name"]

    if not mark_as_paid(db.orders, order_document, transaction_id, payer_address, changed_by):
        return {"alreadyPaid": True, "delivery": None}

    increment_purchase_counts(db, order_document)
    result = run_delivery(db, mailer, order_document["_id"], api_base_url, changed_by)

    paid_order = db.orders.find_one({"_id": order_document["_id"]})
    try:
        mailer.send_admin_new_order(paid_order)
    except Exception as exc:
        logger.error("Admin order notification failed: %s", exc)
    return {"alreadyPaid": False, "delivery": result.to_dict()}


def start_free_order(
    db, mailer, order_document: Dict, api_base_url: str, changed_by: Optional[str] = None
) -> DeliveryResult:
    if safe_float(order_document.get("total_price"), 0.0) > 0:
        raise OrderStateError("Order is not a free order")
    ensure_not_terminal(order_document, "process")

    now = datetime.utcnow()
    append_history(
        db.orders,
        order_document["_id"],
        [
            build_history_entry(
                "processing", "تم بدء معالجة الطلب المجاني تلقائياً", changed_by, now
            )
        ],
        set_fields={
            "payment_status": "free",
            "paid_at": now,
            "order_status": "processing",
            "total_price": 0.0,
        },
    )
    return run_delivery(db, mailer, order_document["_id"], api_base_url, changed_by)


def admin_complete_order(
    db,
    mailer,
    order_document: Dict,
    is_free_order_request: bool,
    admin_email: str,
    api_base_url: str,
) -> Dict[str, object]:
    ensure_can_complete(order_document)

    order_id = order_document["_id"]
    free = is_free_order_request or is_free_order(order_document)
    now = datetime.utcnow()

    if db.order_design_files.count_documents({"order_id": order_id}) == 0:
        if not free:
            raise DeliveryError("No design files found for this order")
        created = grant_free_order_files(db, order_document, now)
        logger.info(
            "Granted %s design file(s) to free order %s",
            created,
            order_document.get("order_number"),
        )

    items = []
    for item in order_document.get("items") or []:
        item = dict(item)
        if item.get("delivery_status") not in ("auto_delivered", "custom_delivered"):
            item["delivery_status"] = "custom_delivered"
            item["delivered_at"] = now
            item["delivery_note"] = "تم التسليم من قبل المدير"
        items.append(item)

    set_fields: Dict[str, object] = {
        "items": items,
        "order_status": "completed",
        "customization_status": "completed"
        if order_document.get("has_customizable_products")
        else order_document.get("customization_status") or "none",
        "processed_at": now,
        "processed_by": admin_email,
        "actual_delivery": now,
        "download_expiry": now + DOWNLOAD_ACCESS_PERIOD,
    }
    number = order_document.get("order_number")
    if free:
        set_fields.update(
            {
                "payment_status": "free",
                "paid_at": order_document.get("paid_at") or now,
                "total_price": max(0.0, safe_float(order_document.get("total_price"), 0.0)),
            }
        )
        note = f"تم قبول الطلب المجاني {number} بنجاح"
    else:
        note = f"تم تحديد الطلب {number} كمكتمل من قبل المدير"

    update = append_history(
        db.orders,
        order_id,
        [build_history_entry("completed", note, admin_email, now)],
        set_fields=set_fields,
        extra_filter={"order_status": {"$nin": ["completed", "cancelled", "refunded"]}},
    )
    if update.matched_count == 0:
        raise OrderStateError("Order was modified by another request", 409)

    completed_order = db.orders.find_one({"_id": order_id})
    links = order_download_links(db, order_id, api_base_url)
    try:
        sent, error = mailer.send_order_completed(completed_order, links, is_free=free)
    except Exception as exc:
        sent, error = False, str(exc)
    if sent:
        record_email_result(
            db, completed_order, True, "تم إرسال روابط التحميل إلى العميل", admin_email
        )
    else:
        logger.warning("Completion email for order %s failed: %s", number, error)

    return {
        "message": "Order completed successfully",
        "orderStatus": "completed",
        "customizationStatus": set_fields["customization_status"],
        "downloadLinks": links,
        "downloadExpiry": f"{set_fields['download_expiry'].isoformat()}Z",
        "emailSent": bool(sent),
    }


def cancel_order(
    db, mailer, paypal, order_document: Dict, reason: str, admin_email: str
) -> Dict[str, object]:
    if order_document.get("order_status") in TERMINAL_ORDER_STATUSES:
        raise OrderStateError("Order is already cancelled")

    order_id = order_document["_id"]
    total_price = round(safe_float(order_document.get("total_price"), 0.0), 2)
    free = order_document.get("payment_status") == "free" or total_price <= 0
    transaction_id = order_document.get("paypal_transaction_id")
    now = datetime.utcnow()

    # Claim the cancellation before any refund so concurrent cancels refund once.
    claimed = append_history(
        db.orders,
        order_id,
        [],
        set_fields={"order_status": "cancelled", "processed_by": admin_email, "processed_at": now},
        extra_filter={"order_status": {"$nin": sorted(TERMINAL_ORDER_STATUSES)}},
    )
    if claimed.matched_count == 0:
        raise OrderStateError("Order is already cancelled")

    refund_attempted = False
    refund_succeeded = False
    if not free and order_document.get("payment_status") == "paid" and transaction_id:
        refund_attempted = True
        refund = paypal.refund_capture(
            transaction_id,
            total_price,
            f"Refund for cancelled order {order_document.get('order_number')}",
            request_id=f"refund-{order_id}",
        )
        refund_succeeded = bool(refund.get("success"))
        if refund_succeeded:
            append_history(
                db.orders,
                order_id,
                [
                    build_history_entry(
                        "refund_processed",
                        f"تم استرداد مبلغ ${total_price:.2f} عبر PayPal (رقم الاسترداد: {refund.get('refundId')})",
                        admin_email,
                        now,
                    )
                ],
                set_fields={"payment_status": "refunded", "refund_id": refund.get("refundId")},
            )
        else:
            logger.error(
                "Refund for order %s failed: %s",
                order_document.get("order_number"),
                refund.get("error"),
            )

    if refund_succeeded:
        note = "تم إلغاء الطلب واسترداد المبلغ"
    elif refund_attempted:
        note = "تم إلغاء الطلب - فشل الاسترداد التلقائي ويجب معالجته يدوياً"
    else:
        note = "تم إلغاء الطلب"
    if reason:
        note = f"{note}: {reason}"

    append_history(
        db.orders,
        order_id,
        [build_history_entry("cancelled", note, admin_email, now)],
    )
    deactivate_promo_usage(db, order_id)
    db.order_design_files.update_many({"order_id": order_id}, {"$set": {"is_active": False}})

    cancelled_order = db.orders.find_one({"_id": order_id})
    try:
        sent, error = mailer.send_order_cancelled(
            cancelled_order, reason, total_price if refund_succeeded else None
        )
    except Exception as exc:
        sent, error = False, str(exc)
    if sent:
        record_email_result(db, cancelled_order, True, "تم إرسال إشعار الإلغاء إلى العميل", admin_email)
    else:
        logger.warning(
            "Cancellation email for order %s failed: %s", order_document.get("order_number"), error
        )

    message = "Order cancelled successfully"
    if refund_succeeded:
        message += f" and refund of ${total_price:.2f} processed"
    elif refund_attempted:
        message += " (refund processing failed - please handle manually)"
    return {
        "message": message,
        "refundAttempted": refund_attempted,
        "refundProcessed": refund_succeeded,
        "emailSent": bool(sent),
    }


def attach_order_file(db, order_document: Dict, file_data: Dict, admin_email: str) -> Dict:
    """Store an admin-produced file for one product of a customizable order."""
    ensure_not_terminal(order_document, "upload files to")
    if not order_document.get("has_customizable_products"):
        raise DeliveryError("Order does not contain customizable products")

    product_id = str(file_data["product_id"])
    product_ids: List[str] = [str(item.get("product_id")) for item in order_document.get("items") or []]
    if product_id not in product_ids:
        raise DeliveryError("Product is not part of this order")

    now = datetime.utcnow()
    design_file = {
        "product_id": product_id,
        "file_name": file_data["file_name"],
        "file_url": file_data["file_url"],
        "file_type": file_data["file_type"],
        "file_size": int(file_data.get("file_size") or 0),
        "mime_type": mime_type_for(file_data["file_type"]),
        "description": file_data.get("description") or "",
        "is_active": True,
        "is_public": False,
        "download_count": 0,
        "max_downloads": ORDER_FILE_MAX_DOWNLOADS,
        "expires_at": now + ORDER_FILE_LIFETIME,
        "is_color_variant": False,
        "color_variant_hex": None,
        "is_for_order": True,
        "created_by": admin_email,
        "created_at": now,
    }
    design_file["_id"] = db.design_files.insert_one(design_file).inserted_id
    grant_order_files(db, order_document["_id"], [design_file["_id"]], now)

    items = []
    for item in order_document.get("items") or []:
        item = dict(item)
        if str(item.get("product_id")) == product_id:
            item["delivery_status"] = "custom_delivered"
            item["delivered_at"] = now
            item["delivery_note"] = f"تم رفع الملف المخصص: {design_file['file_name']}"
        items.append(item)

    append_history(
        db.orders,
        order_document["_id"],
        [
            build_history_entry(
                "files_uploaded",
                f"تم رفع ملف التصميم {design_file['file_name']} للمنتج",
                admin_email,
                now,
            )
        ],
        set_fields={
            "items": items,
            "customization_status": "processing",
            "order_status": "under_customization",
        },
    )
    return design_file
