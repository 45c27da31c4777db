"""
Request schemas

Pydantic models for every JSON body the API accepts. Field aliases match the
camelCase keys sent by the storefront; documents are stored with the snake_case
field names.
"""

from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Type, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from delivery import FILE_MIME_TYPES, MAX_DESIGN_FILE_SIZE, normalize_hex
from order_history import ORDER_STATUSES
from promo import is_valid_code_format, normalize_code

ModelT = TypeVar("ModelT", bound=BaseModel)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


NaiveDatetime = Annotated[datetime, AfterValidator(to_naive_utc)]


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")


def parse_payload(
    model: Type[ModelT], payload: Optional[Dict]
) -> Tuple[Optional[ModelT], Optional[List[Dict[str, str]]]]:
    """Validate a request body. Returns (parsed, None) or (None, error details)."""
    try:
        return model.model_validate(payload or {}), None
    except ValidationError as exc:
        details = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ())),
                "message": error.get("msg", "Invalid value"),
            }
            for error in exc.errors()
        ]
        return None, details


# Auth

class RegisterRequest(RequestModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    name: str = Field(..., min_length=1, max_length=120)
    password: str = Field(..., min_length=8, max_length=128)
    phone: Optional[str] = Field(None, max_length=40)


class LoginRequest(RequestModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


# Checkout

class ColorChoice(RequestModel):
    name: str = ""
    hex: str = Field(..., pattern=r"^#?[0-9A-Fa-f]{3,8}$")


class TextChange(RequestModel):
    field: str
    value: str = ""


class UploadedAsset(RequestModel):
    url: str = ""
    public_id: Optional[str] = Field(None, alias="publicId")


class Customizations(RequestModel):
    colors: List[ColorChoice] = Field(default_factory=list)
    text_changes: List[TextChange] = Field(default_factory=list, alias="textChanges")
    uploaded_images: List[UploadedAsset] = Field(default_factory=list, alias="uploadedImages")
    uploaded_logo: Optional[UploadedAsset] = Field(None, alias="uploadedLogo")
    customization_notes: str = Field("", alias="customizationNotes", max_length=2000)


class OrderItemIn(RequestModel):
    product_id: str = Field(..., alias="productId", min_length=1)
    quantity: int = Field(1, ge=1, le=100)
    has_customizations: bool = Field(False, alias="hasCustomizations")
    customizations: Optional[Customizations] = None


class CreateOrderRequest(RequestModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    customer_name: Optional[str] = Field(None, alias="customerName", max_length=120)
    customer_phone: Optional[str] = Field(None, alias="customerPhone", max_length=40)
    customer_notes: str = Field("", alias="customerNotes", max_length=2000)
    promo_codes: List[str] = Field(default_factory=list, alias="promoCodes", max_length=5)

    @field_validator("promo_codes")
    @classmethod
    def normalize_promo_codes(cls, values: List[str]) -> List[str]:
        normalized = []
        for value in values:
            code = normalize_code(value)
            if code and code not in normalized:
                normalized.append(code)
        return normalized


class CompleteFreeOrderRequest(RequestModel):
    order_id: str = Field(..., alias="orderId", min_length=1)


# Promo codes

class CartItemIn(RequestModel):
    product_id: str = Field(..., alias="productId", min_length=1)
    quantity: int = Field(1, ge=1)
    total_price: Optional[float] = Field(None, alias="totalPrice", ge=0)
    price: Optional[float] = Field(None, ge=0)

    @property
    def line_total(self) -> Optional[float]:
        if self.total_price is not None:
            return self.total_price
        if self.price is not None:
            return round(self.price * self.quantity, 2)
        return None


class PromoValidateRequest(RequestModel):
    code: str = Field(..., min_length=1)
    order_value: float = Field(..., alias="orderValue", ge=0)
    current_total: Optional[float] = Field(None, alias="currentTotal", ge=0)
    cart_items: List[CartItemIn] = Field(default_factory=list, alias="cartItems")


class AdminPromoValidateRequest(RequestModel):
    code: str = Field(..., min_length=1)
    product_id: Optional[str] = Field(None, alias="productId")
    order_amount: float = Field(0, alias="orderAmount", ge=0)
    cart_items: List[CartItemIn] = Field(default_factory=list, alias="cartItems")


class PromoCodeIn(RequestModel):
    code: str
    description: str = Field("", max_length=500)
    discount_type: Literal["percentage", "fixed_amount"] = Field(..., alias="discountType")
    discount_value: float = Field(..., alias="discountValue", gt=0)
    max_discount_amount: Optional[float] = Field(None, alias="maxDiscountAmount", ge=0)
    usage_limit: Optional[int] = Field(None, alias="usageLimit", ge=1)
    user_usage_limit: Optional[int] = Field(None, alias="userUsageLimit", ge=1)
    minimum_order_amount: Optional[float] = Field(None, alias="minimumOrderAmount", ge=0)
    start_date: NaiveDatetime = Field(..., alias="startDate")
    end_date: NaiveDatetime = Field(..., alias="endDate")
    is_active: bool = Field(True, alias="isActive")
    apply_to_all_products: bool = Field(False, alias="applyToAllProducts")
    product_ids: List[str] = Field(default_factory=list, alias="productIds")
    product_id: Optional[str] = Field(None, alias="productId")

    @field_validator("code")
    @classmethod
    def normalize_promo_code(cls, value: str) -> str:
        if not is_valid_code_format(value):
            raise ValueError("Promo code must be 1-20 letters or digits")
        return normalize_code(value)

    @model_validator(mode="after")
    def check_rules(self) -> "PromoCodeIn":
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        if self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        if self.apply_to_all_products:
            self.product_ids = []
            self.product_id = None
        else:
            self.product_ids = [value for value in dict.fromkeys(self.product_ids) if value]
            if not self.product_ids and not self.product_id:
                raise ValueError("Select at least one product or apply to all products")
        return self


# Catalog

class ProductImage(RequestModel):
    url: str
    alt: str = ""
    is_primary: bool = Field(False, alias="isPrimary")
    order: int = 0


class ProductColor(RequestModel):
    name: str
    hex: str = Field(..., pattern=r"^#?[0-9A-Fa-f]{3,8}$")
    description: str = ""


class ProductIn(RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: Optional[str] = Field(None, max_length=200)
    description: str = ""
    images: List[ProductImage] = Field(default_factory=list)
    price: float = Field(..., ge=0)
    discount_amount: float = Field(0, alias="discountAmount", ge=0)
    discount_percentage: float = Field(0, alias="discountPercentage", ge=0, le=100)
    category_id: Optional[str] = Field(None, alias="categoryId")
    enable_customizations: bool = Field(False, alias="EnableCustomizations")
    allow_color_changes: bool = Field(False, alias="allowColorChanges")
    allow_text_editing: bool = Field(False, alias="allowTextEditing")
    allow_image_replacement: bool = Field(False, alias="allowImageReplacement")
    allow_logo_upload: bool = Field(False, alias="allowLogoUpload")
    colors: List[ProductColor] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_active: bool = Field(True, alias="isActive")
    is_featured: bool = Field(False, alias="isFeatured")

    @model_validator(mode="after")
    def check_discount(self) -> "ProductIn":
        if self.discount_amount > self.price:
            raise ValueError("Discount amount cannot exceed the price")
        return self


class CategoryIn(RequestModel):
    name: str = Field(..., min_length=1, max_length=120)
    name_en: str = Field("", alias="nameEn", max_length=120)
    slug: Optional[str] = Field(None, max_length=120)
    description: str = ""
    is_active: bool = Field(True, alias="isActive")
    sort_order: int = Field(0, alias="sortOrder")


# Design files

class OrderFileIn(RequestModel):
    product_id: str = Field(..., alias="productId", min_length=1)
    file_name: str = Field(..., alias="fileName", min_length=1, max_length=255)
    file_url: str = Field(..., alias="fileUrl", min_length=1)
    file_type: str = Field(..., alias="fileType")
    file_size: int = Field(0, alias="fileSize", ge=0, le=MAX_DESIGN_FILE_SIZE)
    description: str = ""

    @field_validator("file_type")
    @classmethod
    def check_file_type(cls, value: str) -> str:
        normalized = value.lower().lstrip(".")
        if normalized not in FILE_MIME_TYPES:
            raise ValueError(f"Unsupported file type: {value}")
        return normalized

    @field_validator("file_url")
    @classmethod
    def check_file_url(cls, value: str) -> str:
        if not (value.startswith("/uploads/designs/") or value.startswith(("http://", "https://"))):
            raise ValueError("File URL must be an uploaded design path or an http(s) URL")
        return value


class DesignFileIn(OrderFileIn):
    is_public: bool = Field(False, alias="isPublic")
    max_downloads: Optional[int] = Field(None, alias="maxDownloads", ge=1)
    expires_at: Optional[NaiveDatetime] = Field(None, alias="expiresAt")
    is_color_variant: bool = Field(False, alias="isColorVariant")
    color_variant_hex: Optional[str] = Field(None, alias="colorVariantHex")

    @model_validator(mode="after")
    def check_color_variant(self) -> "DesignFileIn":
        if self.is_color_variant:
            if not self.color_variant_hex:
                raise ValueError("Color variant files need a color hex")
            self.color_variant_hex = normalize_hex(self.color_variant_hex)
        else:
            self.color_variant_hex = None
        return self


# Admin orders

class OrderUpdateRequest(RequestModel):
    order_status: Optional[str] = Field(None, alias="orderStatus")
    admin_notes: Optional[str] = Field(None, alias="adminNotes", max_length=5000)
    estimated_delivery: Optional[NaiveDatetime] = Field(None, alias="estimatedDelivery")
    customer_notes: Optional[str] = Field(None, alias="customerNotes", max_length=2000)

    @field_validator("order_status")
    @classmethod
    def check_status(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ORDER_STATUSES:
            raise ValueError(f"Invalid order status: {value}")
        return value


class CompleteOrderRequest(RequestModel):
    is_free_order: bool = Field(False, alias="isFreeOrder")
    payment_id: Optional[str] = Field(None, alias="paymentId")
    payer_id: Optional[str] = Field(None, alias="payerId")


class CancelOrderRequest(RequestModel):
    reason: str = Field("", max_length=1000)


class CustomEmailRequest(RequestModel):
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=10000)


# PayPal

class PayPalCreateOrderRequest(RequestModel):
    order_id: str = Field(..., alias="orderId", min_length=1)


class PayPalCaptureRequest(RequestModel):
    order_id: str = Field(..., alias="orderId", min_length=1)
    paypal_order_id: str = Field(..., alias="paypalOrderId", min_length=1)


class AdminNoteRequest(RequestModel):
    note: str = Field(..., min_length=1, max_length=5000)
