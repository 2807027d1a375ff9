from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)

from .database import Base  # Import the Base class from our database setup
from .statuses import ItemType, PaymentStatus, StorageStatus


def utcnow():
    return datetime.now(timezone.utc)


def _in_clause(column, values):
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


# Catalog product. Owned by the catalog; this service reads price and moves inventory.
class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Float, nullable=False, default=0.0)  # Current unit price.
    inventory = Column(Integer, nullable=False, default=0)  # Units available for sale.

    __table_args__ = (CheckConstraint("inventory >= 0", name="ck_products_inventory_non_negative"),)


# One row per product line, from cart through fulfillment.
class OrderRecord(Base):
    __tablename__ = "order_records"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False, index=True)
    checkout_id = Column(String, ForeignKey("checkouts.id"), nullable=True, index=True)  # Null for cart rows.

    item_type = Column(String, nullable=False, default=ItemType.CART.value)
    status = Column(String, nullable=False, default=StorageStatus.ACTIVE.value)  # Storage vocabulary.
    order_status = Column(String, nullable=True)  # Customer-facing stage.
    order_progress = Column(String, nullable=True)  # Display label derived from the stage.

    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Float, nullable=False, default=0.0)  # Unit price captured when the line was added.
    total_amount = Column(Float, nullable=False, default=0.0)  # Line total after add-ons and discount share.

    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    payment_id = Column(String, nullable=True)  # Provider transaction id.
    inventory_reserved = Column(Boolean, nullable=False, default=False)  # Guard for the single decrement.

    meta = Column(JSON, nullable=False, default=dict)
    progress_history = Column(JSON, nullable=False, default=list)
    admin_notes = Column(Text, nullable=True)
    estimated_delivery_date = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(_in_clause("status", StorageStatus), name="ck_order_records_status"),
        CheckConstraint(_in_clause("item_type", ItemType), name="ck_order_records_item_type"),
        CheckConstraint(_in_clause("payment_status", PaymentStatus), name="ck_order_records_payment_status"),
        CheckConstraint("quantity > 0", name="ck_order_records_quantity_positive"),
        # At most one cart row per (user, product); concurrent adds merge into it.
        Index(
            "uq_order_records_cart_line",
            "user_id",
            "product_id",
            unique=True,
            sqlite_where=text("item_type = 'cart'"),
            postgresql_where=text("item_type = 'cart'"),
        ),
    )


# Groups the order records paid with one payment session.
class Checkout(Base):
    __tablename__ = "checkouts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    idempotency_key = Column(String, unique=True, nullable=True)  # Client key to prevent duplicate checkouts.
    subtotal = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)
    currency = Column(String, nullable=False, default="PHP")
    voucher_code = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    payment_session_id = Column(String, nullable=True)
    checkout_url = Column(String, nullable=True)
    status = Column(String, nullable=False, default="awaiting_payment")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, nullable=False)  # Stored upper-case.
    type = Column(String, nullable=False)  # "percent" or "amount".
    value = Column(Float, nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    min_subtotal = Column(Float, nullable=False, default=0.0)
    max_uses = Column(Integer, nullable=True)  # Null = unlimited.
    used_count = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (CheckConstraint("type IN ('percent', 'amount')", name="ck_discount_codes_type"),)


# One row per checkout that consumed a code; the unique key makes consumption replay-safe.
class VoucherRedemption(Base):
    __tablename__ = "voucher_redemptions"

    id = Column(Integer, primary_key=True, index=True)
    discount_code_id = Column(Integer, ForeignKey("discount_codes.id"), nullable=False)
    checkout_id = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    user_id = Column(String, primary_key=True)
    order_status_notifications = Column(Boolean, nullable=True)  # Null = on.
    email_notifications = Column(Boolean, nullable=True)  # Null = on.
