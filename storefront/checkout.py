"""
Checkout: converts a user's cart into exactly one durable order.

The whole conversion (stock check, address resolution, pricing, order and
item inserts, stock decrements, cart clear) runs in one transaction. Any
failure rolls all of it back, so there is never a partial order or a stock
change without an order.

Money is handled as Decimal. Line totals and the subtotal are exact; tax is
the only derived amount that needs rounding and is rounded half-up to the
cent. The stored total is always subtotal + shipping_fee + tax_amount.
"""
import logging
import random
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, NamedTuple, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import addresses, cart, config, inventory, models, schemas
from .database import transaction
from .errors import DuplicateOrderNumberError, EmptyCartError, InsufficientStockError
from .models import MovementType, OrderStatus, PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class Totals(NamedTuple):
    subtotal: Decimal
    shipping_fee: Decimal
    tax: Decimal
    total: Decimal


def to_money(value) -> Decimal:
    """Quantize a price-like value to cents, rounding half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_totals(lines: Iterable[Tuple[Decimal, int]]) -> Totals:
    """
    Price a set of (unit_price, quantity) lines.

    Shipping is free strictly above FREE_SHIPPING_THRESHOLD, otherwise the
    flat fee applies. Tax is TAX_RATE of the subtotal.
    """
    subtotal = sum((to_money(price) * quantity for price, quantity in lines), ZERO)
    shipping_fee = ZERO if subtotal > config.FREE_SHIPPING_THRESHOLD else to_money(config.FLAT_SHIPPING_FEE)
    tax = to_money(subtotal * config.TAX_RATE)
    return Totals(subtotal, shipping_fee, tax, subtotal + shipping_fee + tax)


def generate_order_number(now: datetime) -> str:
    """Human-facing order number: ORD-YYYYMMDD-NNNN."""
    return f"ORD-{now:%Y%m%d}-{random.randint(0, 9999):04d}"


def _claim_order_number(db: Session, now: datetime) -> str:
    candidate = generate_order_number(now)
    taken = db.query(models.Order.id).filter(models.Order.order_number == candidate).first()
    if taken is not None:
        raise DuplicateOrderNumberError(candidate)
    return candidate


def allocate_order_number(db: Session, now: datetime) -> str:
    """Generate an unused order number, retrying on collisions."""
    for attempt in range(1, config.ORDER_NUMBER_ATTEMPTS + 1):
        try:
            return _claim_order_number(db, now)
        except DuplicateOrderNumberError as e:
            logger.warning(f"{e} (attempt {attempt}), generating another")
    raise DuplicateOrderNumberError(f"ORD-{now:%Y%m%d}-????")


def checkout_summary(db: Session, user_id: int) -> schemas.CheckoutSummary:
    """Preview of what checkout would charge for the current cart."""
    items = cart.get_cart_items(db, user_id)
    if not items:
        raise EmptyCartError()

    lines = [cart.to_cart_line(item) for item in items]
    totals = compute_totals((line.price, line.quantity) for line in lines)
    default_address = addresses.get_default_address(db, user_id, addresses.SHIPPING)

    return schemas.CheckoutSummary(
        items=lines,
        summary=schemas.CheckoutTotals(
            subtotal=totals.subtotal,
            shipping_fee=totals.shipping_fee,
            tax=totals.tax,
            total=totals.total,
            item_count=sum(line.quantity for line in lines),
        ),
        shipping_address=addresses.snapshot(default_address),
    )


def _is_order_number_conflict(error: IntegrityError) -> bool:
    return "order_number" in str(error.orig)


def checkout(
    db: Session,
    user_id: int,
    request: schemas.CheckoutRequest,
    now: Optional[datetime] = None,
) -> models.Order:
    """
    Convert the user's cart into an order.

    The existence check in ``allocate_order_number`` cannot see a concurrent
    checkout that commits the same number before this one inserts. That
    surfaces as a unique-constraint violation on the order insert; the
    transaction has already been rolled back by then, so the whole conversion
    is run again with a fresh number.

    Args:
        db: Database session
        user_id: Authenticated user placing the order
        request: Address selections and payment method
        now: Clock override (tests)

    Returns:
        The committed Order

    Raises:
        EmptyCartError: if the cart has no lines
        InsufficientStockError: if any line asks for more than is in stock
        InvalidAddressError: if a referenced address is not the user's
        DuplicateOrderNumberError: if no unused order number could be found
    """
    now = now or datetime.utcnow()
    for attempt in range(1, config.ORDER_NUMBER_ATTEMPTS + 1):
        try:
            return _place_order(db, user_id, request, now)
        except IntegrityError as e:
            if not _is_order_number_conflict(e):
                raise
            logger.warning(f"Order number taken by a concurrent checkout (attempt {attempt}), retrying")
    raise DuplicateOrderNumberError(f"ORD-{now:%Y%m%d}-????")


def _place_order(db: Session, user_id: int, request: schemas.CheckoutRequest, now: datetime) -> models.Order:
    payment_method = PaymentMethod(request.payment_method)

    with transaction(db):
        # Locking the cart lines makes a second concurrent checkout of the
        # same cart wait, then find it empty.
        items = cart.get_cart_items(db, user_id, lock=True)
        if not items:
            raise EmptyCartError()

        for item in items:
            if item.quantity > item.product.stock_quantity:
                raise InsufficientStockError(item.product.name, item.product.stock_quantity, item.quantity)

        shipping_address = addresses.resolve(db, user_id, request.shipping, addresses.SHIPPING)
        billing_same_as_shipping = request.use_shipping_for_billing or request.billing is None
        billing_address = None
        if not billing_same_as_shipping:
            billing_address = addresses.resolve(db, user_id, request.billing, addresses.BILLING)

        snapshot = [
            (item.product_id, item.product.name, to_money(item.product.price), item.quantity)
            for item in items
        ]
        totals = compute_totals((price, quantity) for _, _, price, quantity in snapshot)

        if payment_method == PaymentMethod.COD:
            status = OrderStatus.CONFIRMED
            payment_session_id = None
        else:
            status = OrderStatus.PENDING
            payment_session_id = f"ps_{uuid.uuid4().hex}"

        order = models.Order(
            order_number=allocate_order_number(db, now),
            user_id=user_id,
            status=status.value,
            payment_method=payment_method.value,
            payment_status=PaymentStatus.UNPAID.value,
            payment_session_id=payment_session_id,
            subtotal=totals.subtotal,
            shipping_fee=totals.shipping_fee,
            tax_amount=totals.tax,
            total_amount=totals.total,
            shipping_address_id=shipping_address.id,
            billing_address_id=billing_address.id if billing_address is not None else None,
            billing_same_as_shipping=billing_same_as_shipping,
            created_at=now,
            updated_at=now,
        )
        db.add(order)
        db.flush()

        for product_id, name, price, quantity in snapshot:
            db.add(models.OrderItem(
                order_id=order.id,
                product_id=product_id,
                product_name=name,
                unit_price=price,
                quantity=quantity,
                line_total=price * quantity,
            ))
        db.add(models.OrderStatusHistory(
            order_id=order.id,
            from_status=None,
            status=status.value,
            note=f"Order placed ({payment_method.value})",
            created_by=user_id,
            created_at=now,
        ))
        db.flush()

        for product_id, _, _, quantity in snapshot:
            inventory.adjust_stock(
                db,
                product_id,
                -quantity,
                reason="order",
                movement_type=MovementType.SALE,
                actor=user_id,
                order_id=order.id,
            )

        cart.clear_cart(db, user_id)

    logger.info(
        f"Order {order.order_number} placed by user {user_id}: {len(snapshot)} lines, total {totals.total}"
    )
    return order
