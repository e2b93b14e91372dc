"""
Carrier tracking webhook.

Carriers retry their callbacks, so the same event can arrive many times. An
event is identified by (order, status, event time) among carrier-sourced
tracking events; repeats are acknowledged without side effects. Expected
failures (unknown tracking number, an order that can no longer be delivered)
are reported in the result instead of raised so the carrier does not keep
retrying.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from . import models, schemas
from .database import transaction
from .models import OrderStatus
from .orders import apply_transition, lock_order
from .validators import validate_order_status_transition

logger = logging.getLogger(__name__)

CARRIER_SOURCE = "carrier"


def normalize_timestamp(value: datetime) -> datetime:
    """Convert an aware timestamp to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _find_order_id(db: Session, tracking_number: str) -> Optional[int]:
    row = (
        db.query(models.Order.id)
        .filter(models.Order.tracking_number == tracking_number)
        .first()
    )
    return row.id if row is not None else None


def _is_duplicate(db: Session, order_id: int, status: str, event_time: datetime) -> bool:
    existing = (
        db.query(models.OrderTrackingEvent.id)
        .filter(
            models.OrderTrackingEvent.order_id == order_id,
            models.OrderTrackingEvent.source == CARRIER_SOURCE,
            models.OrderTrackingEvent.status == status,
            models.OrderTrackingEvent.event_time == event_time,
        )
        .first()
    )
    return existing is not None


def handle_carrier_event(db: Session, event: schemas.CarrierEvent, now: Optional[datetime] = None) -> schemas.CarrierWebhookResult:
    """
    Record a carrier tracking update against the order with that tracking number.

    Only a ``delivered`` event changes the order status; every other status is
    stored as a tracking event only.

    Args:
        db: Database session
        event: Validated carrier payload
        now: Clock override (tests)

    Returns:
        CarrierWebhookResult describing what happened
    """
    now = now or datetime.utcnow()
    status = event.status.strip().lower()
    event_time = normalize_timestamp(event.timestamp)

    order_id = _find_order_id(db, event.tracking_number)
    if order_id is None:
        logger.warning(f"Carrier event for unknown tracking number {event.tracking_number}")
        return schemas.CarrierWebhookResult(success=False, message="Order not found")

    with transaction(db):
        order = lock_order(db, order_id)
        order_number = order.order_number

        if _is_duplicate(db, order.id, status, event_time):
            logger.info(f"Duplicate carrier event {status} at {event_time} for order {order_number}")
            return schemas.CarrierWebhookResult(
                success=True,
                message="Event already processed",
                duplicate=True,
                order_number=order_number,
                order_id=order_id,
            )

        delivered = status == OrderStatus.DELIVERED.value
        if delivered and order.status != OrderStatus.DELIVERED.value:
            is_valid, error = validate_order_status_transition(order.status, OrderStatus.DELIVERED)
            if not is_valid:
                logger.warning(f"Ignoring delivery for order {order_number}: {error}")
                return schemas.CarrierWebhookResult(
                    success=False, message=error, order_number=order_number, order_id=order_id
                )
            apply_transition(
                db, order, OrderStatus.DELIVERED, None,
                note=f"Delivered according to {event.carrier or order.carrier or 'carrier'}",
                now=now, event_time=event_time, record_tracking=False,
            )

        if event.carrier and not order.carrier:
            order.carrier = event.carrier

        db.add(models.OrderTrackingEvent(
            order_id=order.id,
            status=status,
            location=event.location,
            description=f"Carrier update: {status}",
            source=CARRIER_SOURCE,
            event_time=event_time,
            created_at=now,
        ))
        order.updated_at = now
        db.flush()

    logger.info(f"Carrier event {status} recorded for order {order_number}")
    return schemas.CarrierWebhookResult(
        success=True,
        message="Tracking updated",
        order_number=order_number,
        order_id=order_id,
    )
