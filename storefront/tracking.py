"""
Order tracking read model.

The delivery timeline is derived on every read from the stored order and its
tracking events; nothing about it is persisted. ``project_timeline`` is a pure
function of its inputs (including ``now``), so the same snapshot always
produces the same stages.
"""
import math
from datetime import datetime, timedelta
from typing import Iterable, List, NamedTuple, Optional

from sqlalchemy.orm import Session

from . import addresses, config, models, schemas
from .errors import OrderNotFoundError
from .models import OrderStatus
from .orders import ensure_can_access, get_order

CARRIER_TRACKING_URLS = {
    "usps": "https://tools.usps.com/go/TrackConfirmAction?tLabels={tracking_number}",
    "ups": "https://www.ups.com/track?tracknum={tracking_number}",
    "fedex": "https://www.fedex.com/fedextrack/?trknbr={tracking_number}",
    "dhl": "https://www.dhl.com/en/express/tracking.html?AWB={tracking_number}",
}


class Stage(NamedTuple):
    key: str
    title: str
    description: str
    # Time after order creation at which the stage is assumed done when no
    # event says so.
    fallback: Optional[timedelta]


STAGES = (
    Stage("placed", "Order Placed", "Your order has been received", None),
    Stage("confirmed", "Order Confirmed", "Payment confirmed and order processing", timedelta(minutes=30)),
    Stage("processing", "Processing", "Preparing your items for shipment", timedelta(hours=24)),
    Stage("shipped", "Shipped", "Package is on its way", timedelta(hours=48)),
    Stage("out_for_delivery", "Out for Delivery", "Package is with delivery carrier", None),
    Stage("delivered", "Delivered", "Awaiting delivery", None),
)

STAGE_KEYS = [stage.key for stage in STAGES]

# Orders in these states never progress, so elapsed time proves nothing
NO_FALLBACK_STATUSES = frozenset({OrderStatus.CANCELLED.value, OrderStatus.FAILED.value})


def tracking_url(carrier: Optional[str], tracking_number: Optional[str]) -> Optional[str]:
    """Carrier tracking link, or None for a missing number or unknown carrier."""
    if not carrier or not tracking_number:
        return None
    template = CARRIER_TRACKING_URLS.get(carrier.strip().lower())
    if template is None:
        return None
    return template.format(tracking_number=tracking_number)


def _stage_description(stage: Stage, order) -> str:
    if stage.key == "shipped" and order.tracking_number:
        return f"Shipped via {order.carrier or 'carrier'} ({order.tracking_number})"
    if stage.key == "delivered" and order.actual_delivery:
        return f"Delivered on {order.actual_delivery:%m/%d/%Y}"
    return stage.description


def project_timeline(order, events: Iterable, now: datetime) -> List[schemas.TimelineStage]:
    """
    Derive the six-stage delivery timeline.

    A stage is completed when a tracking event with its status exists, when
    the order's current status or a later stage's event shows it was passed,
    or (for confirmed/processing/shipped) when its fallback time since order
    creation has elapsed. The active stage is the first incomplete stage whose
    predecessor is complete; cancelled and failed orders have none.

    Args:
        order: Order row (or any object with the same attributes)
        events: The order's tracking events, in any order
        now: Reference time for the fallback thresholds

    Returns:
        Six TimelineStage entries in fixed order
    """
    first_seen = {}
    for event in sorted(events, key=lambda e: (e.event_time, e.id or 0)):
        first_seen.setdefault(event.status, event.event_time)

    reached = 0
    for index, key in enumerate(STAGE_KEYS):
        if key in first_seen or key == order.status:
            reached = index
    if order.actual_delivery is not None:
        reached = len(STAGES) - 1

    use_fallback = order.status not in NO_FALLBACK_STATUSES
    stages = []
    for index, stage in enumerate(STAGES):
        event_time = first_seen.get(stage.key)
        estimate = order.created_at + stage.fallback if stage.fallback else None

        if index == 0:
            completed, date = True, order.created_at
        elif event_time is not None:
            completed, date = True, event_time
        elif stage.key == "delivered" and order.actual_delivery is not None:
            completed, date = True, order.actual_delivery
        elif index <= reached:
            completed, date = True, None
        elif estimate is not None and use_fallback and now >= estimate:
            completed, date = True, estimate
        else:
            completed = False
            date = estimate
            if stage.key == "delivered":
                date = order.estimated_delivery

        stages.append(schemas.TimelineStage(
            id=index + 1,
            key=stage.key,
            title=stage.title,
            description=_stage_description(stage, order),
            date=date,
            completed=completed,
            active=False,
        ))

    if use_fallback:
        for index in range(1, len(stages)):
            if not stages[index].completed and stages[index - 1].completed:
                stages[index].active = True
                break

    return stages


def estimate_delivery(order, now: datetime) -> schemas.DeliveryEstimate:
    """Estimated delivery date with its window, defaulting to creation + 7 days."""
    estimated = order.estimated_delivery or order.created_at + timedelta(days=config.DEFAULT_DELIVERY_DAYS)
    window_to = estimated + timedelta(days=config.DELIVERY_WINDOW_DAYS)
    remaining = (estimated - now).total_seconds() / 86400
    return schemas.DeliveryEstimate(
        estimated_delivery=estimated,
        window_from=estimated,
        window_to=window_to,
        is_delayed=order.actual_delivery is None and now > window_to,
        days_remaining=math.ceil(remaining),
    )


def get_tracking_events(db: Session, order_id: int) -> List[models.OrderTrackingEvent]:
    return (
        db.query(models.OrderTrackingEvent)
        .filter(models.OrderTrackingEvent.order_id == order_id)
        .order_by(models.OrderTrackingEvent.event_time.asc(), models.OrderTrackingEvent.id.asc())
        .all()
    )


def get_order_tracking(db: Session, order_id: int, requester, now: Optional[datetime] = None) -> schemas.OrderTracking:
    """
    Everything a customer or admin needs to follow an order.

    Raises:
        OrderNotFoundError: if the order does not exist
        NotAuthorizedError: if ``requester`` is neither the owner nor an admin
    """
    now = now or datetime.utcnow()
    order = get_order(db, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    ensure_can_access(order, requester)

    events = get_tracking_events(db, order.id)
    status_history = (
        db.query(models.OrderStatusHistory)
        .filter(models.OrderStatusHistory.order_id == order.id)
        .order_by(models.OrderStatusHistory.id.asc())
        .all()
    )
    attempts = (
        db.query(models.DeliveryAttempt)
        .filter(models.DeliveryAttempt.order_id == order.id)
        .order_by(models.DeliveryAttempt.attempted_at.desc(), models.DeliveryAttempt.id.desc())
        .all()
    )
    order_view = schemas.Order.model_validate(order)

    return schemas.OrderTracking(
        order=order_view,
        tracking_url=tracking_url(order.carrier, order.tracking_number),
        shipping_address=addresses.snapshot(order.shipping_address),
        tracking_history=[schemas.TrackingEvent.model_validate(e) for e in events],
        status_history=[schemas.StatusHistoryEntry.model_validate(h) for h in status_history],
        delivery_attempts=[schemas.DeliveryAttempt.model_validate(a) for a in attempts],
        timeline=project_timeline(order, events, now),
        items=order_view.items,
    )
