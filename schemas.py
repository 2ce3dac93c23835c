"""
Database Schemas

Each Pydantic model represents a MongoDB collection. The collection name is
the lowercased class name:
- User -> "user", Product -> "product", Course -> "course",
  Workshop -> "workshop", Order -> "order", PromoCode -> "promocode",
  TaxRate -> "taxrate", CommissionConfig -> "settings" (versioned),
  Payout -> "payout", PayoutAdjustment -> "payoutadjustment"

All monetary amounts are integers in minor currency units (paise/cents).
Percentages are plain numbers (12 means 12%).
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

ItemType = Literal["product", "course", "workshop"]
PayoutStatus = Literal["pending", "included", "paid", "refunded"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_refunded"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]
PaymentMethod = Literal["razorpay", "stripe", "paypal", "cod"]

# -----------------------------------------------------------------------------
# Users
# -----------------------------------------------------------------------------

class Kyc(BaseModel):
    status: Literal["not_submitted", "pending", "approved", "rejected"] = "not_submitted"
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class User(BaseModel):
    """Buyers, studios and admins (collection name: user)"""
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Unique email address")
    role: Literal["user", "studio", "admin"] = Field("user", description="Account kind")
    admin_role: Optional[Literal["super", "operations", "content", "seo", "finance", "support"]] = Field(
        None, description="Finer grained role for admins"
    )
    permissions: List[str] = Field(default_factory=list, description="Explicit admin permissions")
    kyc: Kyc = Field(default_factory=Kyc, description="Identity verification for studios")
    is_active: bool = Field(True, description="Whether user is active")

# -----------------------------------------------------------------------------
# Catalog
# -----------------------------------------------------------------------------

class VariantAttribute(BaseModel):
    name: str = Field(..., description="e.g. Size, Color")
    value: str = Field(..., description="e.g. A4, Oak")


class Variant(BaseModel):
    id: str
    attributes: List[VariantAttribute] = Field(default_factory=list)
    price: int = Field(..., ge=0, description="Replaces the base price when selected")
    stock: int = Field(0, ge=0)
    sku: Optional[str] = None


class Customization(BaseModel):
    id: str
    label: str = Field(..., description="e.g. Enter Name, Upload Photo")
    type: Literal["text", "image", "color", "select"]
    required: bool = False
    price_modifier: int = Field(0, description="Added to the unit price, may be negative")
    options: List[str] = Field(default_factory=list, description="Choices for select/color types")
    max_length: Optional[int] = Field(None, ge=1)


class AddOn(BaseModel):
    id: str
    title: str = Field(..., description="e.g. Gift Wrap, Rush Order")
    price: int = Field(..., ge=0)
    description: Optional[str] = None
    active: bool = True


class Product(BaseModel):
    """Products collection schema (collection name: product)"""
    name: str = Field(..., description="Product title")
    description: Optional[str] = Field(None, description="Product description")
    product_type: Literal["physical", "digital", "service"] = "physical"
    seller_id: str = Field(..., description="Owning studio user id")
    seller_name: str = Field(..., description="Studio display name")
    price: int = Field(..., ge=0, description="Base price")
    quantity: int = Field(0, ge=0, description="Global stock when there are no variants")
    has_variants: bool = False
    variants: List[Variant] = Field(default_factory=list)
    customizations: List[Customization] = Field(default_factory=list)
    add_ons: List[AddOn] = Field(default_factory=list)
    status: Literal["draft", "pending", "active", "rejected", "sold", "archived"] = "draft"
    rejection_reason: Optional[str] = Field(None, description="Shown to the seller on rejection")


class LessonBase(BaseModel):
    title: str
    description: Optional[str] = None
    order: int = Field(0, ge=0)
    is_free: bool = False
    is_published: bool = False


class VideoLesson(LessonBase):
    type: Literal["video"] = "video"
    video_url: str
    duration: int = Field(0, ge=0, description="Length in seconds")


class ArticleLesson(LessonBase):
    type: Literal["article"] = "article"
    article_content: str


class ResourceFile(BaseModel):
    url: str
    name: str
    file_type: Optional[str] = Field(None, description="pdf, png, ...")
    size: Optional[int] = Field(None, ge=0)


class ResourceLesson(LessonBase):
    type: Literal["resource"] = "resource"
    resources: List[ResourceFile] = Field(default_factory=list)


class ProjectLesson(LessonBase):
    type: Literal["project"] = "project"
    instructions: str
    expected_outcome: Optional[str] = None
    reference_images: List[str] = Field(default_factory=list)


Lesson = Annotated[
    Union[VideoLesson, ArticleLesson, ResourceLesson, ProjectLesson],
    Field(discriminator="type"),
]


class Section(BaseModel):
    title: str
    description: Optional[str] = None
    order: int = Field(0, ge=0)
    lessons: List[Lesson] = Field(default_factory=list)


class Course(BaseModel):
    """Courses collection schema (collection name: course)"""
    title: str = Field(..., description="Course title")
    subtitle: Optional[str] = None
    description: Optional[str] = None
    instructor_id: str = Field(..., description="Owning studio user id")
    instructor_name: str
    price: int = Field(..., ge=0)
    sections: List[Section] = Field(default_factory=list)
    total_lectures: int = Field(0, ge=0, description="Derived from sections")
    total_duration: int = Field(0, ge=0, description="Derived from video lessons, seconds")
    status: Literal["draft", "pending", "published", "rejected", "archived", "blocked"] = "draft"
    rejection_reason: Optional[str] = None


class Location(BaseModel):
    venue: str
    address: str
    city: str
    country: Optional[str] = None


class Workshop(BaseModel):
    """Workshops collection schema (collection name: workshop)"""
    title: str
    description: Optional[str] = None
    host_id: str = Field(..., description="Owning studio user id")
    host_name: str
    price: int = Field(..., ge=0)
    starts_at: datetime
    workshop_type: Literal["online", "offline"] = "online"
    location: Optional[Location] = None
    meeting_url: Optional[str] = None
    capacity: int = Field(..., ge=1)
    enrolled_count: int = Field(0, ge=0)
    status: Literal["draft", "pending", "upcoming", "rejected", "completed", "cancelled", "blocked"] = "draft"
    rejection_reason: Optional[str] = None

    @model_validator(mode="after")
    def check_venue_and_capacity(self):
        if self.workshop_type == "online":
            if not self.meeting_url or self.location is not None:
                raise ValueError("online workshops need a meeting_url and no location")
        elif self.location is None or self.meeting_url:
            raise ValueError("offline workshops need a location and no meeting_url")
        if self.enrolled_count > self.capacity:
            raise ValueError("enrolled_count cannot exceed capacity")
        return self

# -----------------------------------------------------------------------------
# Promotions, taxes and platform settings
# -----------------------------------------------------------------------------

class PromoCode(BaseModel):
    """Promo codes collection schema (collection name: promocode)"""
    code: str = Field(..., description="Stored upper-cased")
    name: str
    discount_type: Literal["percentage", "fixed"]
    discount_value: float = Field(..., ge=0, description="Percent for percentage, minor units for fixed")
    max_discount: Optional[int] = Field(None, ge=0, description="Cap for percentage discounts")
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    usage_limit: Optional[int] = Field(None, ge=1)
    used_count: int = Field(0, ge=0)
    min_purchase_amount: Optional[int] = Field(None, ge=0)
    applicable_to: Literal["all", "courses", "products", "workshops"] = "all"


class TaxRate(BaseModel):
    """Tax rates collection schema (collection name: taxrate)"""
    name: str = Field(..., description="e.g. GST Standard")
    rate: float = Field(..., ge=0, le=100, description="Percent")
    country: str = Field(..., description="ISO country code, upper-cased")
    region: Optional[str] = Field(None, description="State/province code")
    is_active: bool = True
    apply_to: Literal["all", "shipping", "digital"] = "all"
    is_compound: bool = False
    priority: int = 0


class CommissionConfig(BaseModel):
    """One version of the commission settings (collection name: settings)"""
    platform_commission_pct: float = Field(12, description="Platform fee percent")
    payment_processing_fee_pct: float = Field(2.9, description="Gateway fee percent")
    minimum_payout_amount: int = Field(50000, ge=0, description="Smallest batch that may be issued")
    payout_hold_days: int = Field(7, ge=0)


class CommissionSnapshot(BaseModel):
    """Commission percentages pinned onto an order when it is paid"""
    version: int
    platform_commission_pct: float
    payment_processing_fee_pct: float

# -----------------------------------------------------------------------------
# Orders
# -----------------------------------------------------------------------------

class OrderItem(BaseModel):
    """Embedded model used inside orders.items"""
    item_type: ItemType
    item_id: str = Field(..., description="Purchased product/course/workshop id")
    seller_id: str = Field(..., description="Seller captured at order time")
    seller_name: str = Field(..., description="Seller name captured at order time")
    name: str = Field(..., description="Name/description of the item")
    unit_price: int = Field(..., ge=0, description="Unit price")
    quantity: int = Field(..., ge=1, description="Quantity ordered")
    line_total: int = Field(0, ge=0, description="Computed: unit_price * quantity")
    payout_status: PayoutStatus = "pending"
    seats_reserved: bool = Field(False, description="Workshop lines: seats taken from capacity")
    payout_id: Optional[str] = None


class TrackingEvent(BaseModel):
    status: str
    timestamp: datetime
    message: str


class PaymentDetails(BaseModel):
    gateway_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    method: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class RefundDetails(BaseModel):
    amount: int
    status: str
    processed_at: datetime


class ShippingAddress(BaseModel):
    full_name: str
    phone: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str


class Order(BaseModel):
    """Orders collection schema (collection name: order)"""
    order_number: str = Field(..., description="Unique ORD-000001 style number")
    user_id: str = Field(..., description="Buyer user id")
    items: List[OrderItem] = Field(..., description="Line items")
    subtotal: int = Field(..., ge=0, description="Sum of line totals")
    shipping: int = Field(0, ge=0)
    discount: int = Field(0, ge=0)
    tax: int = Field(0, ge=0)
    total: int = Field(..., ge=0, description="subtotal - discount + shipping + tax")
    currency: str = Field("INR")
    promo_code: Optional[str] = None
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    status: OrderStatus = "pending"
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    refund_details: Optional[RefundDetails] = None
    commission: Optional[CommissionSnapshot] = Field(None, description="Pinned when the order is paid")
    processed_payment_events: List[str] = Field(default_factory=list, description="Webhook idempotency keys")
    shipping_address: Optional[ShippingAddress] = None
    tracking_history: List[TrackingEvent] = Field(default_factory=list)
    seating_failed: bool = Field(False, description="Paid workshop seats that could not be reserved")

    @model_validator(mode="after")
    def check_total(self):
        if self.total != self.subtotal - self.discount + self.shipping + self.tax:
            raise ValueError("total must equal subtotal - discount + shipping + tax")
        return self

# -----------------------------------------------------------------------------
# Payouts
# -----------------------------------------------------------------------------

class PayoutLine(BaseModel):
    seller_id: str
    seller_name: str
    order_number: str
    line_index: int = Field(..., ge=0)
    gross: int
    platform_fee: int
    processing_fee: int
    seller_net: int


class Payout(BaseModel):
    """Payout batches collection schema (collection name: payout)"""
    seller_id: str
    seller_name: str
    currency: str = "INR"
    lines: List[PayoutLine] = Field(default_factory=list)
    gross_earnings: int = 0
    platform_fees: int = 0
    processing_fees: int = 0
    adjustments: int = Field(0, le=0, description="Clawbacks deducted from this batch")
    adjustment_ids: List[str] = Field(default_factory=list)
    net_earnings: int = 0
    status: Literal["pending", "processing", "completed", "failed", "cancelled"] = "pending"
    payment_method: Literal["bank_transfer", "paypal", "razorpay_payout", "manual"] = "bank_transfer"
    applied: bool = Field(False, description="Whether the lines have been marked included")
    transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = Field(None, description="Admin who last changed the status")
    period_start: Optional[datetime] = Field(None, description="Earliest payment among the batch orders")
    period_end: Optional[datetime] = Field(None, description="Latest payment among the batch orders")
    failure_reason: Optional[str] = None


class PayoutAdjustment(BaseModel):
    """Clawback for a refund of a line that was already paid out"""
    seller_id: str
    order_number: str
    line_index: int
    amount: int = Field(..., le=0)
    status: Literal["pending", "applied"] = "pending"
    payout_id: Optional[str] = None
