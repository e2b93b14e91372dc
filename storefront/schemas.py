"""
Pydantic schemas for request/response validation in the storefront service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .models import DeliveryOutcome, MovementType, OrderStatus, PaymentMethod


class AddressFields(BaseModel):
    """Inline address payload used to create a new address during checkout."""
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address_line1: str
    address_line2: str = ""
    city: str
    state: str
    zip_code: str
    country: str = "USA"


class AddressSelection(BaseModel):
    """
    Either a reference to an existing address or an inline one.

    Exactly one of ``address_id`` and ``address`` must be set. ``is_default``
    only applies to inline addresses.
    """
    address_id: Optional[int] = None
    address: Optional[AddressFields] = None
    is_default: bool = False

    @model_validator(mode="after")
    def check_one_variant(self):
        if (self.address_id is None) == (self.address is None):
            raise ValueError("Provide exactly one of address_id or address")
        return self


class AddressSnapshot(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address_line1: str
    address_line2: str = ""
    city: str
    state: str
    zip_code: str
    country: str
    is_default: bool

    class Config:
        from_attributes = True


class CartItemCreate(BaseModel):
    product_id: int
    quantity: int = Field(1, ge=1)


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=1)


class CartLine(BaseModel):
    id: int
    product_id: int
    name: str
    price: Decimal
    quantity: int
    stock_quantity: int
    line_total: Decimal


class CheckoutTotals(BaseModel):
    subtotal: Decimal
    shipping_fee: Decimal
    tax: Decimal
    total: Decimal
    item_count: int


class CheckoutSummary(BaseModel):
    items: List[CartLine]
    summary: CheckoutTotals
    shipping_address: Optional[AddressSnapshot] = None


class CheckoutRequest(BaseModel):
    """Schema for converting the current cart into an order."""
    shipping: AddressSelection
    billing: Optional[AddressSelection] = None
    use_shipping_for_billing: bool = False
    payment_method: PaymentMethod = PaymentMethod.COD


class CheckoutResponse(BaseModel):
    order_id: int
    order_number: str
    status: str
    payment_status: str
    payment_session_id: Optional[str] = None
    total_amount: Decimal


class OrderItem(BaseModel):
    id: int
    product_id: int
    product_name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal

    class Config:
        from_attributes = True


class Order(BaseModel):
    """
    Schema for order responses.

    Attributes:
        id (int): Internal identifier
        order_number (str): Human-facing identifier, ORD-YYYYMMDD-NNNN
        status (str): Fulfilment status
        payment_status (str): unpaid, paid or failed
        total_amount (Decimal): subtotal + shipping_fee + tax_amount
        items (List[OrderItem]): Snapshotted order lines
    """
    id: int
    order_number: str
    user_id: int
    status: str
    payment_method: str
    payment_status: str
    subtotal: Decimal
    shipping_fee: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    shipping_address_id: int
    billing_address_id: Optional[int] = None
    billing_same_as_shipping: bool
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    refund_status: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItem] = Field(default_factory=list)

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    refund_amount: Decimal = Field(..., gt=0)
    reason: Optional[str] = None


class BulkUpdateRequest(BaseModel):
    order_ids: List[int] = Field(..., min_length=1)
    action: Literal["update_status", "cancel_orders"]
    data: Dict[str, Any] = Field(default_factory=dict)


class BulkResult(BaseModel):
    order_id: int
    success: bool
    status: Optional[str] = None
    error: Optional[str] = None


class DeliveryAttemptCreate(BaseModel):
    attempt_number: int = Field(..., ge=1)
    outcome: DeliveryOutcome
    notes: Optional[str] = None
    delivery_person_contact: Optional[str] = None


class DeliveryAttempt(BaseModel):
    id: int
    attempt_number: int
    status: str
    notes: Optional[str] = None
    delivery_person_contact: Optional[str] = None
    attempted_at: datetime

    class Config:
        from_attributes = True


class TrackingEventCreate(BaseModel):
    status: str
    location: Optional[str] = None
    description: Optional[str] = None


class TrackingEvent(BaseModel):
    id: int
    status: str
    location: Optional[str] = None
    description: Optional[str] = None
    source: str
    event_time: datetime

    class Config:
        from_attributes = True


class StatusHistoryEntry(BaseModel):
    id: int
    from_status: Optional[str] = None
    status: str
    note: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TrackingInfoUpdate(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivery_notes: Optional[str] = None


class TimelineStage(BaseModel):
    id: int
    key: str
    title: str
    description: str
    date: Optional[datetime] = None
    completed: bool
    active: bool


class DeliveryEstimate(BaseModel):
    estimated_delivery: datetime
    window_from: datetime
    window_to: datetime
    is_delayed: bool
    days_remaining: int


class OrderTracking(BaseModel):
    order: Order
    tracking_url: Optional[str] = None
    shipping_address: Optional[AddressSnapshot] = None
    tracking_history: List[TrackingEvent]
    status_history: List[StatusHistoryEntry]
    delivery_attempts: List[DeliveryAttempt]
    timeline: List[TimelineStage]
    items: List[OrderItem]


class CarrierEvent(BaseModel):
    """Payload posted by a carrier's tracking webhook."""
    tracking_number: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    location: Optional[str] = None
    timestamp: datetime
    carrier: Optional[str] = None


class CarrierWebhookResult(BaseModel):
    success: bool
    message: str
    duplicate: bool = False
    order_number: Optional[str] = None
    order_id: Optional[int] = None


class PaymentEventPayload(BaseModel):
    """Payload posted by the payment authority."""
    session_id: str
    payment_status: Literal["paid", "failed"]
    payment_intent_id: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    session_id: str


class StockAdjustmentRequest(BaseModel):
    adjustment: int
    reason: str
    movement_type: MovementType = MovementType.ADJUSTMENT


class StockAdjustmentResult(BaseModel):
    product_id: int
    previous_stock: int
    new_stock: int
    stock_status: str


class StockMovement(BaseModel):
    id: int
    product_id: int
    movement_type: str
    quantity: int
    previous_stock: int
    new_stock: int
    reason: Optional[str] = None
    order_id: Optional[int] = None
    created_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StockAlert(BaseModel):
    id: int
    product_id: int
    alert_type: str
    current_stock: int
    threshold: int
    created_at: datetime

    class Config:
        from_attributes = True


class InventoryItem(BaseModel):
    """Stock level of one product as shown in the back office."""
    product_id: int
    name: str
    price: Decimal
    stock_quantity: int
    minimum_stock_level: int
    stock_status: str
    updated_at: Optional[datetime] = None


class StockSettingsUpdate(BaseModel):
    minimum_stock_level: int = Field(..., ge=0)
