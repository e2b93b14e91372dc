"""
Error taxonomy for the storefront order core.

Every user-visible failure carries a stable ``code``, an HTTP status and a
human message. The API layer renders them uniformly; anything that is not a
StorefrontError is treated as an internal failure.
"""
from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """Base class for failures that are safe to show to the caller."""

    code = "storefront_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.message, **self.details}


class EmptyCartError(StorefrontError):
    code = "empty_cart"

    def __init__(self):
        super().__init__("Cart is empty")


class InsufficientStockError(StorefrontError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, product: str, available: int, requested: Optional[int] = None):
        super().__init__(
            f"Insufficient stock for {product}. Available: {available}",
            {"product": product, "available": available, "requested": requested},
        )
        self.product = product
        self.available = available
        self.requested = requested


class InvalidAddressError(StorefrontError):
    code = "invalid_address"


class InvalidTransitionError(StorefrontError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, from_status: str, to_status: str, message: Optional[str] = None):
        super().__init__(
            message or f"Invalid status transition: {from_status} -> {to_status}",
            {"from": from_status, "to": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class RefundExceedsTotalError(StorefrontError):
    code = "refund_exceeds_total"

    def __init__(self, amount, total):
        super().__init__(
            "Refund amount cannot exceed order total",
            {"refund_amount": str(amount), "total_amount": str(total)},
        )


class OrderNotFoundError(StorefrontError):
    code = "order_not_found"
    status_code = 404

    def __init__(self, reference):
        super().__init__("Order not found", {"order": str(reference)})


class ProductNotFoundError(StorefrontError):
    code = "product_not_found"
    status_code = 404

    def __init__(self, product_id):
        super().__init__("Product not found", {"product_id": product_id})


class CartItemNotFoundError(StorefrontError):
    code = "cart_item_not_found"
    status_code = 404

    def __init__(self, item_id):
        super().__init__("Cart item not found", {"item_id": item_id})


class CartQuantityError(StorefrontError):
    code = "cart_quantity_exceeded"

    def __init__(self, limit: int):
        super().__init__(f"Quantity per product must be between 1 and {limit}", {"limit": limit})


class NotAuthorizedError(StorefrontError):
    code = "not_authorized"
    status_code = 403

    def __init__(self, message: str = "Not authorized to access this order"):
        super().__init__(message)


class PaymentNotCompletedError(StorefrontError):
    code = "payment_not_completed"
    status_code = 402

    def __init__(self, session_id: str, payment_status: Optional[str]):
        super().__init__("Payment not completed", {"session_id": session_id, "payment_status": payment_status})


class PaymentAuthorityError(StorefrontError):
    code = "payment_authority_unavailable"
    status_code = 503

    def __init__(self):
        super().__init__("Payment service unavailable, please try again")


class DuplicateOrderNumberError(Exception):
    """Internal: a generated order number is already taken. Retried by checkout."""

    def __init__(self, order_number: str):
        super().__init__(f"Order number {order_number} already exists")
        self.order_number = order_number
