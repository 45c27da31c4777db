"""Item-level delivery classification and design-file access grants."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

from bson import ObjectId
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from order_history import append_history, build_history_entry, ensure_not_terminal
from orders import DOWNLOAD_ACCESS_PERIOD, isoformat, to_object_id

logger = logging.getLogger(__name__)

DOWNLOAD_URL_LIFETIME = timedelta(hours=24)
DOWNLOAD_TOKEN_SALT = "design-file-download"
LOCAL_DESIGN_URL_PREFIX = "/uploads/designs/"
MAX_DESIGN_FILE_SIZE = 100 * 1024 * 1024

FILE_MIME_TYPES = {
    "psd": "image/vnd.adobe.photoshop",
    "ai": "application/postscript",
    "eps": "application/postscript",
    "pdf": "application/pdf",
    "svg": "image/svg+xml",
    "zip": "application/zip",
    "rar": "application/vnd.rar",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
    "webm": "video/webm",
}

AUTO_DELIVERED_NOTE = "تم التسليم التلقائي - الملفات متاحة للتحميل"
AWAITING_CUSTOMIZATION_NOTE = "في انتظار تنفيذ التخصيصات المطلوبة"
MISSING_FILES_NOTE = "لا توجد ملفات تصميم جاهزة لهذا المنتج - في انتظار رفع الملفات"


class DeliveryError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class DeliveryResult:
    auto_delivered_items: int = 0
    awaiting_customization_items: int = 0
    total_items: int = 0
    granted_file_ids: List[ObjectId] = field(default_factory=list)

    @property
    def order_completed(self) -> bool:
        return self.total_items > 0 and self.auto_delivered_items == self.total_items

    def to_dict(self) -> Dict[str, object]:
        return {
            "autoDeliveredItems": self.auto_delivered_items,
            "awaitingCustomizationItems": self.awaiting_customization_items,
            "totalItems": self.total_items,
            "orderCompleted": self.order_completed,
        }


def mime_type_for(file_type: Optional[str]) -> str:
    return FILE_MIME_TYPES.get(str(file_type or "").lower(), "application/octet-stream")


def _non_blank(value) -> bool:
    return bool(str(value or "").strip())


def has_real_customizations(item: Dict) -> bool:
    if item.get("has_customizations"):
        return True
    customizations = item.get("customizations") or {}
    logo = customizations.get("uploaded_logo") or {}
    return bool(
        customizations.get("text_changes")
        or customizations.get("uploaded_images")
        or _non_blank(logo.get("url"))
        or _non_blank(customizations.get("customization_notes"))
    )


def normalize_hex(value: Optional[str]) -> str:
    cleaned = str(value or "").strip().lower().lstrip("#")
    return f"#{cleaned}" if cleaned else ""


def selected_color_hexes(item: Dict) -> List[str]:
    colors = (item.get("customizations") or {}).get("colors") or []
    hexes = []
    for color in colors:
        value = normalize_hex((color or {}).get("hex"))
        if value and value not in hexes:
            hexes.append(value)
    return hexes


def find_deliverable_files(db, item: Dict) -> List[Dict]:
    """Ready-made files for an item: one per chosen color, or the general set."""
    product_id = str(item.get("product_id") or "")
    hexes = selected_color_hexes(item)
    if hexes:
        files = list(
            db.design_files.find(
                {
                    "product_id": product_id,
                    "is_active": True,
                    "is_color_variant": True,
                    "color_variant_hex": {"$in": hexes},
                }
            )
        )
        covered = {normalize_hex(document.get("color_variant_hex")) for document in files}
        if not all(value in covered for value in hexes):
            return []
        return files

    return list(
        db.design_files.find(
            {
                "product_id": product_id,
                "is_active": True,
                "is_color_variant": {"$ne": True},
                "is_for_order": {"$ne": True},
            }
        )
    )


def classify_item(db, item: Dict) -> Tuple[str, List[Dict]]:
    """Decide whether an item ships now. Returns (delivery status, files to grant)."""
    if item.get("enable_customizations") and has_real_customizations(item):
        return "awaiting_customization", []

    files = find_deliverable_files(db, item)
    if files:
        return "auto_delivered", files
    return "awaiting_customization", []


def grant_order_files(
    db,
    order_id: ObjectId,
    design_file_ids: Iterable[ObjectId],
    now: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
) -> int:
    """Create OrderDesignFile rows; existing grants are left untouched."""
    now = now or datetime.utcnow()
    expires_at = expires_at or now + DOWNLOAD_ACCESS_PERIOD
    created = 0
    for design_file_id in design_file_ids:
        result = db.order_design_files.update_one(
            {"order_id": order_id, "design_file_id": design_file_id},
            {
                "$setOnInsert": {
                    "order_id": order_id,
                    "design_file_id": design_file_id,
                    "download_count": 0,
                    "first_downloaded_at": None,
                    "last_downloaded_at": None,
                    "is_active": True,
                    "expires_at": expires_at,
                    "created_at": now,
                }
            },
            upsert=True,
        )
        if result.upserted_id is not None:
            created += 1
    return created


def grant_free_order_files(db, order_document: Dict, now: Optional[datetime] = None) -> int:
    product_ids = sorted(
        {str(item.get("product_id")) for item in order_document.get("items") or []}
    )
    files = db.design_files.find(
        {"product_id": {"$in": product_ids}, "is_active": True, "is_for_order": {"$ne": True}},
        {"_id": 1},
    )
    return grant_order_files(
        db, order_document["_id"], [document["_id"] for document in files], now
    )


def process_order_delivery(
    db,
    order_document: Dict,
    changed_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DeliveryResult:
    """Classify every item, grant ready files and roll the result up to the order."""
    ensure_not_terminal(order_document, "deliver")
    now = now or datetime.utcnow()
    result = DeliveryResult(total_items=len(order_document.get("items") or []))
    updated_items = []
    granted: List[ObjectId] = []

    for item in order_document.get("items") or []:
        item = dict(item)
        if item.get("delivery_status") in ("auto_delivered", "custom_delivered"):
            result.auto_delivered_items += 1
            updated_items.append(item)
            continue

        status, files = classify_item(db, item)
        item["delivery_status"] = status
        if status == "auto_delivered":
            item["delivered_at"] = now
            item["delivery_note"] = AUTO_DELIVERED_NOTE
            granted.extend(document["_id"] for document in files)
            result.auto_delivered_items += 1
        else:
            item["delivery_note"] = (
                AWAITING_CUSTOMIZATION_NOTE
                if item.get("enable_customizations") and has_real_customizations(item)
                else MISSING_FILES_NOTE
            )
            result.awaiting_customization_items += 1
        updated_items.append(item)

    if granted:
        grant_order_files(db, order_document["_id"], granted, now)
    result.granted_file_ids = granted

    set_fields: Dict[str, object] = {"items": updated_items}
    if result.order_completed:
        set_fields.update(
            {
                "order_status": "completed",
                "customization_status": "completed",
                "actual_delivery": now,
                "download_expiry": now + DOWNLOAD_ACCESS_PERIOD,
            }
        )
        entry = build_history_entry(
            "completed", "تم تسليم جميع المنتجات تلقائياً", changed_by, now
        )
    else:
        set_fields.update(
            {
                "order_status": "awaiting_customization",
                "customization_status": "pending",
            }
        )
        entry = build_history_entry(
            "awaiting_customization",
            f"تم تسليم {result.auto_delivered_items} من {result.total_items} منتجات تلقائياً، "
            f"و{result.awaiting_customization_items} بانتظار التخصيص",
            changed_by,
            now,
        )

    append_history(db.orders, order_document["_id"], [entry], set_fields=set_fields)
    logger.info(
        "Delivery processed for order %s: %s/%s auto delivered",
        order_document.get("order_number"),
        result.auto_delivered_items,
        result.total_items,
    )
    return result


def can_download(design_file: Optional[Dict], now: Optional[datetime] = None) -> Tuple[bool, str]:
    if not design_file or not design_file.get("is_active", True):
        return False, "inactive"
    now = now or datetime.utcnow()
    expires_at = design_file.get("expires_at")
    if isinstance(expires_at, datetime) and expires_at < now:
        return False, "expired"
    max_downloads = design_file.get("max_downloads")
    if max_downloads is not None and int(design_file.get("download_count") or 0) >= int(
        max_downloads
    ):
        return False, "limit_reached"
    return True, ""


def download_serializer(secret_key: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key, salt=DOWNLOAD_TOKEN_SALT)


def generate_download_url(
    design_file: Dict, secret_key: str, api_base_url: str, now: Optional[datetime] = None
) -> Tuple[str, datetime]:
    """Build a signed link to the file route that stays valid for DOWNLOAD_URL_LIFETIME."""
    now = now or datetime.utcnow()
    expires_at = now + DOWNLOAD_URL_LIFETIME
    design_file_id = str(design_file["_id"])
    token = download_serializer(secret_key).dumps({"file": design_file_id})
    base = (api_base_url or "").rstrip("/")
    return f"{base}/api/design-files/{design_file_id}/file?{urlencode({'token': token})}", expires_at


def verify_download_token(secret_key: str, token: Optional[str], design_file_id) -> None:
    try:
        payload = download_serializer(secret_key).loads(
            token or "", max_age=int(DOWNLOAD_URL_LIFETIME.total_seconds())
        )
    except SignatureExpired:
        raise DeliveryError("Download link has expired", 410)
    except BadSignature:
        raise DeliveryError("Invalid download link", 403)
    if not isinstance(payload, dict) or payload.get("file") != str(design_file_id):
        raise DeliveryError("Invalid download link", 403)


def local_design_path(file_url: str) -> Optional[str]:
    """Path under the design upload folder for files stored by this server."""
    if not file_url.startswith(LOCAL_DESIGN_URL_PREFIX):
        return None
    return file_url[len(LOCAL_DESIGN_URL_PREFIX):]


def register_download(db, access_document: Dict, max_downloads: Optional[int], now=None) -> bool:
    """Count a download on an access row unless its cap is already reached."""
    now = now or datetime.utcnow()
    query: Dict[str, object] = {"_id": access_document["_id"]}
    if max_downloads is not None:
        query["download_count"] = {"$lt": int(max_downloads)}
    update: Dict[str, object] = {
        "$inc": {"download_count": 1},
        "$set": {"last_downloaded_at": now},
    }
    if not access_document.get("first_downloaded_at"):
        update["$set"]["first_downloaded_at"] = now
    result = db.order_design_files.update_one(query, update)
    if result.modified_count != 1:
        return False
    db.design_files.update_one(
        {"_id": access_document["design_file_id"]}, {"$inc": {"download_count": 1}}
    )
    return True


def order_download_links(db, order_id: ObjectId, api_base_url: str) -> List[Dict[str, str]]:
    links = []
    for access in db.order_design_files.find({"order_id": order_id, "is_active": True}):
        design_file = db.design_files.find_one({"_id": access["design_file_id"]})
        if not design_file:
            continue
        links.append(
            {
                "designFileId": str(design_file["_id"]),
                "fileName": design_file.get("file_name") or "",
                "productId": design_file.get("product_id"),
                "url": f"{api_base_url}/api/design-files/{design_file['_id']}/download",
            }
        )
    return links


def serialize_design_file(design_file: Optional[Dict]):
    if not design_file:
        return None
    expires_at = design_file.get("expires_at")
    created_at = design_file.get("created_at")
    return {
        "id": str(design_file.get("_id")),
        "productId": design_file.get("product_id"),
        "fileName": design_file.get("file_name") or "",
        "fileUrl": design_file.get("file_url") or "",
        "fileType": design_file.get("file_type") or "",
        "fileSize": design_file.get("file_size") or 0,
        "mimeType": design_file.get("mime_type") or mime_type_for(design_file.get("file_type")),
        "description": design_file.get("description") or "",
        "isActive": bool(design_file.get("is_active", True)),
        "isPublic": bool(design_file.get("is_public")),
        "downloadCount": design_file.get("download_count") or 0,
        "maxDownloads": design_file.get("max_downloads"),
        "isColorVariant": bool(design_file.get("is_color_variant")),
        "colorVariantHex": design_file.get("color_variant_hex"),
        "isForOrder": bool(design_file.get("is_for_order")),
        "expiresAt": isoformat(expires_at),
        "createdAt": isoformat(created_at),
    }


def lookup_design_file(db, design_file_id) -> Optional[Dict]:
    object_id = to_object_id(design_file_id)
    if not object_id:
        return None
    return db.design_files.find_one({"_id": object_id})
