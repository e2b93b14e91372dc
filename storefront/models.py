"""
SQLAlchemy ORM models for the storefront order service.

Defines the database schema for catalogue stock, carts, addresses, orders and
the append-only logs (stock movements, status history, tracking events,
delivery attempts, payment events) that hang off them.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    DELIVERY_FAILED = "delivery_failed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    COD = "cod"
    CARD = "card"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"


class MovementType(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"
    RETURN = "return"
    DAMAGE = "damage"
    ADJUSTMENT = "adjustment"


class DeliveryOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    RESCHEDULED = "rescheduled"


class Product(Base):
    """
    Catalogue product with its live stock record.

    Attributes:
        id (int): Primary key
        name (str): Display name, snapshotted into order items at checkout
        price (Decimal): Current unit price
        stock_quantity (int): Units on hand; written only by the inventory ledger
        minimum_stock_level (int): Low-stock alert threshold
    """
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    minimum_stock_level = Column(Integer, nullable=False, default=10)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class CartItem(Base):
    """One (user, product) line in a shopping cart."""
    __tablename__ = "cart"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_user_product"),
        CheckConstraint("quantity >= 1", name="ck_cart_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)

    product = relationship("Product")


class AddressMixin:
    """Columns shared by shipping and billing addresses."""
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address_line1 = Column(String, nullable=False)
    address_line2 = Column(String, nullable=False, default="")
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    zip_code = Column(String, nullable=False)
    country = Column(String, nullable=False, default="USA")
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class ShippingAddress(AddressMixin, Base):
    __tablename__ = "shipping_addresses"


class BillingAddress(AddressMixin, Base):
    __tablename__ = "billing_addresses"


class Order(Base):
    """
    Order model created exactly once per successful checkout.

    Monetary columns are frozen at checkout. Status, tracking and refund
    fields are mutated afterwards only through the order state machine.
    ``billing_address_id`` is empty when the shipping address doubles as the
    billing address.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    payment_method = Column(String, nullable=False)
    payment_status = Column(String, nullable=False, default=PaymentStatus.UNPAID.value)
    payment_session_id = Column(String, unique=True, nullable=True)
    payment_intent_id = Column(String, nullable=True)
    subtotal = Column(Numeric(10, 2), nullable=False)
    shipping_fee = Column(Numeric(10, 2), nullable=False)
    tax_amount = Column(Numeric(10, 2), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    shipping_address_id = Column(Integer, ForeignKey("shipping_addresses.id"), nullable=False)
    billing_address_id = Column(Integer, ForeignKey("billing_addresses.id"), nullable=True)
    billing_same_as_shipping = Column(Boolean, nullable=False, default=False)
    tracking_number = Column(String, unique=True, nullable=True, index=True)
    carrier = Column(String, nullable=True)
    estimated_delivery = Column(DateTime, nullable=True)
    actual_delivery = Column(DateTime, nullable=True)
    delivery_notes = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    stock_restored = Column(Boolean, nullable=False, default=False)
    refund_status = Column(String, nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    shipping_address = relationship("ShippingAddress")
    billing_address = relationship("BillingAddress")


class OrderItem(Base):
    """Immutable price/name snapshot of one cart line at checkout time."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    product_name = Column(String, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    line_total = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class StockMovement(Base):
    """
    Write-once stock change record.

    ``quantity`` is the signed delta; current stock equals the initial stock
    plus the sum of all deltas for the product.
    """
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    movement_type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    previous_stock = Column(Integer, nullable=False)
    new_stock = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class StockAlert(Base):
    """Low-stock alert; at most one unresolved alert per (product, alert_type)."""
    __tablename__ = "stock_alerts"
    __table_args__ = (
        Index(
            "uq_stock_alerts_open",
            "product_id",
            "alert_type",
            unique=True,
            postgresql_where=text("NOT is_resolved"),
            sqlite_where=text("NOT is_resolved"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    alert_type = Column(String, nullable=False, default="low_stock")
    current_stock = Column(Integer, nullable=False)
    threshold = Column(Integer, nullable=False)
    is_resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)


class OrderStatusHistory(Base):
    """Append-only record of every status transition."""
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    from_status = Column(String, nullable=True)
    status = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class OrderTrackingEvent(Base):
    """
    Append-only carrier/tracking event, ordered by ``event_time``.

    ``source`` records who appended it: system, admin or carrier.
    """
    __tablename__ = "order_tracking_history"
    __table_args__ = (
        Index("ix_tracking_order_time", "order_id", "event_time"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    status = Column(String, nullable=False)
    location = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    source = Column(String, nullable=False, default="system")
    event_time = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class DeliveryAttempt(Base):
    """Append-only record of one physical delivery attempt."""
    __tablename__ = "delivery_attempts"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    status = Column(String, nullable=False)
    notes = Column(Text, nullable=True)
    delivery_person_contact = Column(String, nullable=True)
    attempted_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PaymentEvent(Base):
    """Processed payment-authority callbacks, keyed by their natural tuple."""
    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("session_id", "payment_status", name="uq_payment_events_session_status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, nullable=False)
    payment_status = Column(String, nullable=False)
    payment_intent_id = Column(String, nullable=True)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
