import datetime as dt
import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class ProductStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    SOLD = "SOLD"
    REMOVED = "REMOVED"


class ProductCondition(str, enum.Enum):
    NEW_WITH_TAGS = "NEW_WITH_TAGS"
    NEW_WITHOUT_TAGS = "NEW_WITHOUT_TAGS"
    VERY_GOOD = "VERY_GOOD"
    GOOD = "GOOD"
    SATISFACTORY = "SATISFACTORY"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


TERMINAL_ORDER_STATUSES = (OrderStatus.DELIVERED, OrderStatus.CANCELLED)
LIVE_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.SHIPPED)


class AddressType(str, enum.Enum):
    SHIPPING = "SHIPPING"
    BILLING = "BILLING"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    clerk_id = Column(String(191), nullable=False, unique=True, index=True)
    email = Column(String(255))
    first_name = Column(String(100))
    last_name = Column(String(100))
    image_url = Column(String(500))
    role = Column(Enum(UserRole, name="user_role", native_enum=False, length=10), nullable=False, default=UserRole.USER)
    average_rating = Column(Numeric(2, 1))
    stripe_account_id = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=False)
    # minor currency units (cents)
    price = Column(Integer, nullable=False)
    category = Column(String(50), index=True)
    condition = Column(Enum(ProductCondition, name="product_condition", native_enum=False, length=20), nullable=False)
    brand = Column(String(50))
    size = Column(String(20))
    color = Column(String(30))
    status = Column(
        Enum(ProductStatus, name="product_status", native_enum=False, length=10),
        nullable=False,
        default=ProductStatus.AVAILABLE,
        index=True,
    )
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    seller = relationship("User")

    __table_args__ = (CheckConstraint("price > 0", name="ck_products_price_positive"),)


class Address(Base):
    __tablename__ = "addresses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    company = Column(String(100))
    street_line1 = Column(String(200), nullable=False)
    street_line2 = Column(String(200))
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=False)
    zip_code = Column(String(20), nullable=False)
    country = Column(String(2), nullable=False, default="US")
    phone = Column(String(30))
    is_default = Column(Boolean, nullable=False, default=False)
    type = Column(
        Enum(AddressType, name="address_type", native_enum=False, length=10),
        nullable=False,
        default=AddressType.SHIPPING,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    # price snapshot taken at reservation time
    amount = Column(Integer, nullable=False)
    status = Column(
        Enum(OrderStatus, name="order_status", native_enum=False, length=10),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )
    shipping_address_id = Column(Integer, ForeignKey("addresses.id"))
    payment_intent_id = Column(String(100), index=True)
    tracking_number = Column(String(100))
    carrier = Column(String(50))
    cancellation_reason = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime(timezone=True))
    shipped_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))

    product = relationship("Product")
    buyer = relationship("User", foreign_keys=[buyer_id])
    seller = relationship("User", foreign_keys=[seller_id])
    shipping_address = relationship("Address")
    payment = relationship("Payment", back_populates="order", uselist=False)
    review = relationship("Review", back_populates="order", uselist=False)

    __table_args__ = (
        # at most one live order per product
        Index(
            "uq_orders_live_product",
            "product_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'PAID', 'SHIPPED')"),
            sqlite_where=text("status IN ('PENDING', 'PAID', 'SHIPPED')"),
        ),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    stripe_payment_id = Column(String(100), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="completed")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("Order", back_populates="payment")


class ProcessedPaymentEvent(Base):
    """Ledger of gateway callbacks already applied, keyed by (order_id, event_id)."""

    __tablename__ = "processed_payment_events"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, nullable=False, index=True)
    event_id = Column(String(100), nullable=False)
    event_type = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("order_id", "event_id", name="uq_processed_payment_event"),)


class InconsistencyEvent(Base):
    """Data-integrity problems that need manual or automated reconciliation."""

    __tablename__ = "inconsistency_events"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(50), nullable=False, index=True)
    order_id = Column(Integer, index=True)
    product_id = Column(Integer, index=True)
    detail = Column(Text)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    reviewer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reviewed_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    comment = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("Order", back_populates="review")
    reviewer = relationship("User", foreign_keys=[reviewer_id])

    __table_args__ = (CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),)


class Favorite(Base):
    __tablename__ = "favorites"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    product = relationship("Product")

    __table_args__ = (UniqueConstraint("user_id", "product_id", name="uq_favorites_user_product"),)


class Follow(Base):
    __tablename__ = "follows"

    id = Column(Integer, primary_key=True, index=True)
    follower_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    following_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("follower_id", "following_id", name="uq_follows_pair"),)


class ConversationStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class Conversation(Base):
    """One thread per (buyer, seller, product)."""

    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    status = Column(
        Enum(ConversationStatus, name="conversation_status", native_enum=False, length=10),
        nullable=False,
        default=ConversationStatus.ACTIVE,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    # bumped on every message so listings sort by latest activity
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    product = relationship("Product")
    buyer = relationship("User", foreign_keys=[buyer_id])
    seller = relationship("User", foreign_keys=[seller_id])

    __table_args__ = (
        UniqueConstraint("buyer_id", "seller_id", "product_id", name="uq_conversations_participants_product"),
    )

    def other_party(self, user_id: int) -> int:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ReportType(str, enum.Enum):
    PRODUCT = "PRODUCT"
    USER = "USER"


class ReportStatus(str, enum.Enum):
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


OPEN_REPORT_STATUSES = (ReportStatus.PENDING, ReportStatus.UNDER_REVIEW)


class Report(Base):
    __tablename__ = "reports"

    id = Column(Integer, primary_key=True, index=True)
    reporter_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(Enum(ReportType, name="report_type", native_enum=False, length=10), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), index=True)
    reported_user_id = Column(Integer, ForeignKey("users.id"), index=True)
    reason = Column(String(100), nullable=False)
    description = Column(Text)
    status = Column(
        Enum(ReportStatus, name="report_status", native_enum=False, length=15),
        nullable=False,
        default=ReportStatus.PENDING,
        index=True,
    )
    resolution = Column(String(20))
    resolved_by = Column(Integer, ForeignKey("users.id"))
    resolved_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    product = relationship("Product")

    @property
    def target_id(self) -> int:
        return self.product_id if self.type == ReportType.PRODUCT else self.reported_user_id
