import re
from datetime import datetime
from typing import Annotated, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from .models import (
    AddressType,
    ConversationStatus,
    OrderStatus,
    ProductCondition,
    ProductStatus,
    ReportStatus,
    ReportType,
    UserRole,
)

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T
    message: Optional[str] = None


class Pagination(BaseModel):
    total: int
    skip: int
    limit: int


class Page(BaseModel, Generic[T]):
    items: List[T]
    pagination: Pagination


class RequestModel(BaseModel):
    """Request bodies reject unknown fields."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# -----------------------------
# Users
# -----------------------------


class UserOut(BaseModel):
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None
    average_rating: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class MeOut(UserOut):
    email: Optional[str] = None
    role: UserRole
    stripe_account_id: Optional[str] = None


class ProfileOut(UserOut):
    followers: int = 0
    following: int = 0
    active_listings: int = 0
    total_sales: int = 0


# -----------------------------
# Products
# -----------------------------

_FORBIDDEN_CHARS = set("<>\"'&")


def _reject_markup(value: Optional[str]) -> Optional[str]:
    if value and any(ch in _FORBIDDEN_CHARS for ch in value):
        raise ValueError("contains invalid characters")
    return value


PlainText = Annotated[str, AfterValidator(_reject_markup)]


class ProductCreate(RequestModel):
    title: PlainText = Field(..., min_length=3, max_length=100)
    description: str = Field(..., min_length=10, max_length=2000)
    price: int = Field(..., ge=1, le=99999999, description="Price in minor currency units")
    category: Optional[str] = Field(None, max_length=50)
    condition: ProductCondition
    brand: Optional[PlainText] = Field(None, max_length=50)
    size: Optional[str] = Field(None, max_length=20)
    color: Optional[str] = Field(None, max_length=30)


class ProductUpdate(RequestModel):
    title: Optional[PlainText] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = Field(None, min_length=10, max_length=2000)
    price: Optional[int] = Field(None, ge=1, le=99999999)
    category: Optional[str] = Field(None, max_length=50)
    condition: Optional[ProductCondition] = None
    brand: Optional[PlainText] = Field(None, max_length=50)
    size: Optional[str] = Field(None, max_length=20)
    color: Optional[str] = Field(None, max_length=30)


class ProductOut(BaseModel):
    id: int
    title: str
    description: str
    price: int
    category: Optional[str] = None
    condition: ProductCondition
    brand: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    status: ProductStatus
    seller_id: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProductDetailOut(ProductOut):
    favorites: int = 0


# -----------------------------
# Addresses
# -----------------------------


class AddressCreate(RequestModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    company: Optional[str] = Field(None, max_length=100)
    street_line1: str = Field(..., min_length=1, max_length=200)
    street_line2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    zip_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field("US", min_length=2, max_length=2)
    phone: Optional[str] = Field(None, max_length=30)
    is_default: bool = False
    type: AddressType = AddressType.SHIPPING


class AddressUpdate(RequestModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    company: Optional[str] = Field(None, max_length=100)
    street_line1: Optional[str] = Field(None, min_length=1, max_length=200)
    street_line2: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, min_length=1, max_length=100)
    state: Optional[str] = Field(None, min_length=1, max_length=100)
    zip_code: Optional[str] = Field(None, min_length=1, max_length=20)
    country: Optional[str] = Field(None, min_length=2, max_length=2)
    phone: Optional[str] = Field(None, max_length=30)
    is_default: Optional[bool] = None
    type: Optional[AddressType] = None

    @model_validator(mode="before")
    @classmethod
    def reject_null_required(cls, data):
        # omit a field to keep it; only the optional columns can be cleared
        if isinstance(data, dict):
            nulled = sorted(k for k in _REQUIRED_ADDRESS_FIELDS if k in data and data[k] is None)
            if nulled:
                raise ValueError(f"cannot be null: {', '.join(nulled)}")
        return data


_REQUIRED_ADDRESS_FIELDS = (
    "first_name",
    "last_name",
    "street_line1",
    "city",
    "state",
    "zip_code",
    "country",
    "is_default",
    "type",
)


class AddressOut(BaseModel):
    id: int
    first_name: str
    last_name: str
    company: Optional[str] = None
    street_line1: str
    street_line2: Optional[str] = None
    city: str
    state: str
    zip_code: str
    country: str
    phone: Optional[str] = None
    is_default: bool
    type: AddressType

    model_config = ConfigDict(from_attributes=True)


# -----------------------------
# Orders
# -----------------------------


class CheckoutRequest(RequestModel):
    product_id: int = Field(..., gt=0)
    shipping_address_id: Optional[int] = Field(None, gt=0)


class ShipRequest(RequestModel):
    tracking_number: Optional[str] = Field(None, min_length=1, max_length=100)
    carrier: Optional[str] = Field(None, max_length=50)


class CancelRequest(RequestModel):
    reason: Optional[str] = Field(None, max_length=255)


class SweepRequest(RequestModel):
    max_age_minutes: Optional[int] = Field(None, ge=1, le=7 * 24 * 60)


class PaymentOut(BaseModel):
    stripe_payment_id: str
    amount: int
    status: str

    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: int
    buyer_id: int
    seller_id: int
    product_id: int
    amount: int
    status: OrderStatus
    shipping_address_id: Optional[int] = None
    payment_intent_id: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    payment: Optional[PaymentOut] = None

    model_config = ConfigDict(from_attributes=True)


class CheckoutOut(BaseModel):
    order: OrderOut
    product: ProductOut
    client_secret: str
    payment_intent_id: str


class SweepOut(BaseModel):
    cancelled_order_ids: List[int]


# -----------------------------
# Reviews
# -----------------------------


class ReviewCreate(RequestModel):
    order_id: int = Field(..., gt=0)
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewOut(BaseModel):
    id: int
    order_id: int
    reviewer_id: int
    reviewed_id: int
    rating: int
    comment: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReviewListOut(Page[ReviewOut]):
    average_rating: Optional[float] = None


# -----------------------------
# Favorites / follows
# -----------------------------


class FavoriteToggle(RequestModel):
    product_id: int = Field(..., gt=0)


class FavoriteStateOut(BaseModel):
    product_id: int
    favorited: bool
    favorites: int


class FollowStateOut(BaseModel):
    user_id: int
    following: bool
    followers: int


class FollowUserOut(UserOut):
    followed_at: datetime


# -----------------------------
# Conversations / messages
# -----------------------------

_HTML_TAG = re.compile(r"<[^>]*>")


def _reject_html(value: str) -> str:
    if _HTML_TAG.search(value):
        raise ValueError("HTML tags are not allowed")
    return value


MessageText = Annotated[str, Field(min_length=1, max_length=1000), AfterValidator(_reject_html)]


class ConversationCreate(RequestModel):
    product_id: int = Field(..., gt=0)
    message: MessageText


class ConversationStatusUpdate(RequestModel):
    status: ConversationStatus


class MessageCreate(RequestModel):
    conversation_id: int = Field(..., gt=0)
    content: MessageText


class MessageReadUpdate(RequestModel):
    read: bool


class MessageOut(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    content: str
    read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConversationOut(BaseModel):
    id: int
    buyer_id: int
    seller_id: int
    product_id: int
    status: ConversationStatus
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConversationSummaryOut(BaseModel):
    conversation: ConversationOut
    is_buyer: bool
    last_message: Optional[MessageOut] = None
    unread_count: int = 0


class ConversationStartOut(BaseModel):
    conversation: ConversationOut
    message: MessageOut


# -----------------------------
# Reports
# -----------------------------


class ReportCreate(RequestModel):
    type: ReportType
    target_id: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)


class ReportResolve(RequestModel):
    resolution: Literal["APPROVED", "DISMISSED"]


class ReportOut(BaseModel):
    id: int
    reporter_id: int
    type: ReportType
    product_id: Optional[int] = None
    reported_user_id: Optional[int] = None
    reason: str
    description: Optional[str] = None
    status: ReportStatus
    resolution: Optional[str] = None
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# -----------------------------
# Stripe Connect
# -----------------------------


class OnboardingOut(BaseModel):
    account_id: str
    url: str


class ConnectStatusOut(BaseModel):
    account_id: Optional[str] = None
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


# -----------------------------
# Payment webhooks
# -----------------------------


class IntentMetadata(BaseModel):
    order_id: Optional[int] = None
    buyer_id: Optional[int] = None
    product_id: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


class PaymentError(BaseModel):
    message: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class PaymentIntentObject(BaseModel):
    id: str
    amount: int = 0
    amount_received: Optional[int] = None
    metadata: IntentMetadata = Field(default_factory=IntentMetadata)
    last_payment_error: Optional[PaymentError] = None

    model_config = ConfigDict(extra="ignore")


class _IntentData(BaseModel):
    object: PaymentIntentObject

    model_config = ConfigDict(extra="ignore")


class PaymentSucceededEvent(BaseModel):
    id: str
    type: Literal["payment_intent.succeeded"]
    data: _IntentData

    model_config = ConfigDict(extra="ignore")


class PaymentFailedEvent(BaseModel):
    id: str
    type: Literal["payment_intent.payment_failed", "payment_intent.canceled"]
    data: _IntentData

    model_config = ConfigDict(extra="ignore")


PaymentEvent = Annotated[Union[PaymentSucceededEvent, PaymentFailedEvent], Field(discriminator="type")]
payment_event_adapter: TypeAdapter = TypeAdapter(PaymentEvent)

HANDLED_PAYMENT_EVENTS = {"payment_intent.succeeded", "payment_intent.payment_failed", "payment_intent.canceled"}


class WebhookAck(BaseModel):
    received: bool = True
    handled: bool
    event_id: Optional[str] = None
    detail: Optional[str] = None

