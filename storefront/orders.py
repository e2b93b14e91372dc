"""
Order status state machine.

Every write locks the order row first, so admin updates, customer
cancellations and carrier webhooks on the same order are serialized. Each
transition is checked against the transition table in ``validators`` and
always writes a status-history row; transitions into the carrier stages
(shipped, out_for_delivery, delivered) also write a tracking event in the same
transaction.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, selectinload

from . import config, inventory, models, schemas
from .database import transaction
from .errors import (
    InvalidTransitionError,
    NotAuthorizedError,
    OrderNotFoundError,
    RefundExceedsTotalError,
    StorefrontError,
)
from .models import DeliveryOutcome, OrderStatus
from .validators import (
    CANCELLABLE_STATUSES,
    IN_TRANSIT_STATUSES,
    TERMINAL_STATUSES,
    ensure_transition,
    parse_status,
)

logger = logging.getLogger(__name__)

MAJOR_STAGES = frozenset({OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED})

STAGE_DESCRIPTIONS = {
    OrderStatus.SHIPPED: "Package has been shipped",
    OrderStatus.OUT_FOR_DELIVERY: "Package is out for delivery",
    OrderStatus.DELIVERED: "Package has been delivered",
}


def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    return (
        db.query(models.Order)
        .options(selectinload(models.Order.items))
        .filter(models.Order.id == order_id)
        .first()
    )


def list_orders(
    db: Session,
    user,
    status=None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Order]:
    """
    List orders, newest first.

    Customers only ever see their own orders; admins see everyone's.

    Args:
        db: Database session
        user: Authenticated user
        status: Only orders currently in this status
        search: Case-insensitive fragment of the order number
        skip: Number of orders to skip (pagination)
        limit: Maximum number of orders to return
    """
    query = db.query(models.Order).options(selectinload(models.Order.items))
    if not is_admin(user):
        query = query.filter(models.Order.user_id == user.id)
    if status is not None:
        query = query.filter(models.Order.status == parse_status(status).value)
    if search:
        query = query.filter(models.Order.order_number.ilike(f"%{search}%"))
    return (
        query.order_by(models.Order.created_at.desc(), models.Order.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def lock_order(db: Session, order_id: int) -> models.Order:
    """
    Load the order with a row lock held until the transaction ends.

    Raises:
        OrderNotFoundError: if the order does not exist
    """
    order = (
        db.query(models.Order)
        .filter(models.Order.id == order_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if order is None:
        raise OrderNotFoundError(order_id)
    return order


def is_admin(user) -> bool:
    return getattr(user, "role", None) == config.ADMIN_ROLE


def ensure_can_access(order: models.Order, user) -> None:
    """Only the owner or an admin may see or act on an order."""
    if not is_admin(user) and order.user_id != user.id:
        raise NotAuthorizedError()


def latest_status_change(db: Session, order_id: int) -> Optional[models.OrderStatusHistory]:
    return (
        db.query(models.OrderStatusHistory)
        .filter(models.OrderStatusHistory.order_id == order_id)
        .order_by(models.OrderStatusHistory.id.desc())
        .first()
    )


def apply_transition(
    db: Session,
    order: models.Order,
    new_status,
    actor_id: Optional[int],
    note: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    event_time: Optional[datetime] = None,
    location: Optional[str] = None,
    description: Optional[str] = None,
    source: str = "system",
    record_tracking: bool = True,
) -> OrderStatus:
    """
    Move a locked order to ``new_status``.

    Writes the status-history row, stamps ``actual_delivery`` the first time
    the order is delivered, and writes the matching tracking event for the
    carrier stages unless ``record_tracking`` is False (the caller is writing
    its own event). Flushes only.

    Returns:
        The previous status

    Raises:
        InvalidTransitionError: if the edge is not in the transition table
    """
    new_status = ensure_transition(order.status, new_status)
    now = now or datetime.utcnow()
    when = event_time or now
    previous = parse_status(order.status)

    order.status = new_status.value
    order.updated_at = now
    if new_status == OrderStatus.DELIVERED and order.actual_delivery is None:
        order.actual_delivery = when

    db.add(models.OrderStatusHistory(
        order_id=order.id,
        from_status=previous.value,
        status=new_status.value,
        note=note,
        created_by=actor_id,
        created_at=now,
    ))
    if record_tracking and new_status in MAJOR_STAGES:
        db.add(models.OrderTrackingEvent(
            order_id=order.id,
            status=new_status.value,
            location=location,
            description=description or STAGE_DESCRIPTIONS[new_status],
            source=source,
            event_time=when,
            created_at=now,
        ))
    db.flush()

    logger.info(f"Order {order.order_number}: {previous.value} -> {new_status.value}")
    return previous


def _cancel_locked(db: Session, order: models.Order, actor_id: Optional[int], reason: Optional[str], now: datetime) -> None:
    current = parse_status(order.status)
    if current not in CANCELLABLE_STATUSES:
        raise InvalidTransitionError(
            current.value,
            OrderStatus.CANCELLED.value,
            f"Order cannot be cancelled once {current.value}",
        )

    inventory.restore_stock(db, order, actor=actor_id)
    apply_transition(db, order, OrderStatus.CANCELLED, actor_id, note=reason or "Order cancelled", now=now)
    order.cancelled_at = now
    order.cancellation_reason = reason
    db.flush()


def cancel_order(
    db: Session,
    order_id: int,
    actor,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.Order:
    """
    Cancel an order and put its items back in stock.

    Args:
        db: Database session
        order_id: Order to cancel
        actor: Authenticated user (owner or admin)
        reason: Cancellation reason stored on the order

    Raises:
        OrderNotFoundError: if the order does not exist
        NotAuthorizedError: if ``actor`` is neither the owner nor an admin
        InvalidTransitionError: if the order is not pending, confirmed or processing
    """
    now = now or datetime.utcnow()
    with transaction(db):
        order = lock_order(db, order_id)
        ensure_can_access(order, actor)
        _cancel_locked(db, order, actor.id, reason, now)
    return order


def set_status(
    db: Session,
    order_id: int,
    new_status,
    actor_id: Optional[int],
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.Order:
    """
    Generic admin transition.

    Cancelling or failing an order through this path puts its stock back the
    same way ``cancel_order`` and a failed payment do.
    """
    now = now or datetime.utcnow()
    new_status = parse_status(new_status)
    with transaction(db):
        order = lock_order(db, order_id)
        if new_status == OrderStatus.CANCELLED:
            _cancel_locked(db, order, actor_id, note, now)
        elif new_status == OrderStatus.FAILED:
            ensure_transition(order.status, new_status)
            inventory.restore_stock(db, order, actor=actor_id)
            apply_transition(db, order, new_status, actor_id, note or "Order failed", now=now, source="admin")
        else:
            apply_transition(db, order, new_status, actor_id, note, now=now, source="admin")
    return order


def process_refund(
    db: Session,
    order_id: int,
    amount,
    reason: Optional[str] = None,
    actor_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.Order:
    """
    Record a refund. Independent of the fulfilment status, which is left as is.

    Raises:
        RefundExceedsTotalError: if ``amount`` is more than the order total
    """
    amount = Decimal(str(amount))
    now = now or datetime.utcnow()
    with transaction(db):
        order = lock_order(db, order_id)
        if amount > Decimal(order.total_amount):
            raise RefundExceedsTotalError(amount, order.total_amount)
        order.refund_status = "processed"
        order.refund_amount = amount
        order.refund_reason = reason
        order.refunded_at = now
        order.updated_at = now
    logger.info(f"Refund of {amount} processed for order {order.order_number} by user {actor_id}")
    return order


def record_delivery_attempt(
    db: Session,
    order_id: int,
    attempt: schemas.DeliveryAttemptCreate,
    actor_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.DeliveryAttempt:
    """
    Append a delivery attempt.

    A failed attempt moves the order to ``delivery_failed`` and is only
    accepted while the parcel is with the carrier (shipped, out for delivery,
    or after an earlier failed attempt). Before shipping the order is still
    cancellable and its stock must stay recoverable.

    Raises:
        InvalidTransitionError: if a failed attempt is recorded on an order the
            carrier does not hold
    """
    now = now or datetime.utcnow()
    outcome = DeliveryOutcome(attempt.outcome)
    with transaction(db):
        order = lock_order(db, order_id)
        record = models.DeliveryAttempt(
            order_id=order.id,
            attempt_number=attempt.attempt_number,
            status=outcome.value,
            notes=attempt.notes,
            delivery_person_contact=attempt.delivery_person_contact,
            attempted_at=now,
        )
        db.add(record)

        if outcome == DeliveryOutcome.FAILED:
            current = parse_status(order.status)
            if current not in IN_TRANSIT_STATUSES:
                raise InvalidTransitionError(
                    current.value,
                    OrderStatus.DELIVERY_FAILED.value,
                    f"Cannot record a failed delivery attempt for a {current.value} order",
                )
            note = f"Delivery attempt {attempt.attempt_number} failed"
            if attempt.notes:
                note = f"{note}: {attempt.notes}"
            order.status = OrderStatus.DELIVERY_FAILED.value
            order.updated_at = now
            db.add(models.OrderStatusHistory(
                order_id=order.id,
                from_status=current.value,
                status=OrderStatus.DELIVERY_FAILED.value,
                note=note,
                created_by=actor_id,
                created_at=now,
            ))
            logger.warning(f"Order {order.order_number}: {note}")
        db.flush()
    return record


def add_tracking_event(
    db: Session,
    order_id: int,
    event: schemas.TrackingEventCreate,
    actor_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.OrderTrackingEvent:
    """
    Append an admin tracking event.

    When the event's status is an order status other than the current one the
    order transitions too; free-form statuses (e.g. ``in_transit``) only add
    the event.
    """
    now = now or datetime.utcnow()
    with transaction(db):
        order = lock_order(db, order_id)
        try:
            status = parse_status(event.status)
        except ValueError:
            status = None

        if status is not None and status.value != order.status:
            apply_transition(db, order, status, actor_id, note=event.description, now=now, record_tracking=False)

        record = models.OrderTrackingEvent(
            order_id=order.id,
            status=event.status,
            location=event.location,
            description=event.description,
            source="admin",
            event_time=now,
            created_at=now,
        )
        db.add(record)
        db.flush()
    return record


def update_tracking_info(
    db: Session,
    order_id: int,
    info: schemas.TrackingInfoUpdate,
    actor_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.Order:
    """
    Set carrier tracking fields; only the fields provided are changed.

    Assigning a tracking number to an order that has not shipped yet ships it.
    """
    now = now or datetime.utcnow()
    with transaction(db):
        order = lock_order(db, order_id)
        current = parse_status(order.status)
        if current in TERMINAL_STATUSES:
            raise InvalidTransitionError(current.value, current.value, f"Order is already {current.value}")

        if info.carrier is not None:
            order.carrier = info.carrier
        if info.estimated_delivery is not None:
            order.estimated_delivery = info.estimated_delivery
        if info.delivery_notes is not None:
            order.delivery_notes = info.delivery_notes
        if info.tracking_number is not None:
            order.tracking_number = info.tracking_number
            if current in CANCELLABLE_STATUSES:
                description = f"Tracking number assigned: {info.tracking_number}"
                apply_transition(
                    db, order, OrderStatus.SHIPPED, actor_id,
                    note=description, now=now, description=description, source="admin",
                )
        order.updated_at = now
        db.flush()
    return order


def bulk_update_orders(
    db: Session,
    order_ids: List[int],
    action: str,
    data: Dict[str, Any],
    actor,
) -> List[schemas.BulkResult]:
    """
    Apply one admin action to many orders, each in its own transaction.

    A failure on one order is reported in its result and does not affect the
    others.
    """
    results = []
    for order_id in order_ids:
        try:
            if action == "update_status":
                order = set_status(db, order_id, data.get("status"), actor.id, note=data.get("note"))
            elif action == "cancel_orders":
                order = cancel_order(db, order_id, actor, reason=data.get("reason") or "Bulk cancellation")
            else:
                raise ValueError(f"Invalid action: {action}")
            results.append(schemas.BulkResult(order_id=order_id, success=True, status=order.status))
        except StorefrontError as e:
            results.append(schemas.BulkResult(order_id=order_id, success=False, error=e.message))
        except ValueError as e:
            results.append(schemas.BulkResult(order_id=order_id, success=False, error=str(e)))
    return results
