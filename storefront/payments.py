"""
Card payment confirmation.

A card checkout leaves the order ``pending``/``unpaid`` with a payment session
id. The payment authority later tells us the outcome, either through its
webhook or when the customer comes back and we verify the session. Both paths
land here and both are idempotent: a session that is already settled is
returned as is.
"""
import logging
from datetime import datetime
from typing import NamedTuple, Optional

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import inventory, models, schemas
from .clients import payment_client
from .database import transaction
from .errors import OrderNotFoundError, PaymentAuthorityError, PaymentNotCompletedError
from .models import OrderStatus, PaymentStatus
from .orders import apply_transition, ensure_can_access, lock_order

logger = logging.getLogger(__name__)

PAYMENT_SOURCE = "payment"


class PaymentEventResult(NamedTuple):
    order: Optional[models.Order]
    duplicate: bool


def get_order_by_session(db: Session, session_id: str) -> Optional[models.Order]:
    return (
        db.query(models.Order)
        .filter(models.Order.payment_session_id == session_id)
        .first()
    )


def _lock_by_session(db: Session, session_id: str) -> models.Order:
    order = get_order_by_session(db, session_id)
    if order is None:
        raise OrderNotFoundError(session_id)
    return lock_order(db, order.id)


def _confirm_locked(db: Session, order: models.Order, payment_intent_id: Optional[str], now: datetime) -> None:
    if order.payment_status == PaymentStatus.PAID.value:
        logger.info(f"Payment for order {order.order_number} already confirmed")
        return
    order.payment_status = PaymentStatus.PAID.value
    order.payment_intent_id = payment_intent_id
    apply_transition(db, order, OrderStatus.CONFIRMED, None, note="Payment received", now=now)


def _fail_locked(db: Session, order: models.Order, now: datetime) -> None:
    if order.payment_status != PaymentStatus.UNPAID.value:
        logger.info(f"Ignoring payment failure for order {order.order_number}: already {order.payment_status}")
        return
    order.payment_status = PaymentStatus.FAILED.value
    if order.status == OrderStatus.PENDING.value:
        inventory.restore_stock(db, order)
        apply_transition(db, order, OrderStatus.FAILED, None, note="Payment failed", now=now)
    else:
        order.updated_at = now
        db.flush()


def confirm_payment(
    db: Session,
    session_id: str,
    payment_intent_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.Order:
    """
    Mark the order for ``session_id`` as paid and confirm it.

    Raises:
        OrderNotFoundError: if no order has that payment session
        InvalidTransitionError: if the order is no longer pending
    """
    now = now or datetime.utcnow()
    with transaction(db):
        order = _lock_by_session(db, session_id)
        _confirm_locked(db, order, payment_intent_id, now)
    return order


def mark_payment_failed(db: Session, session_id: str, now: Optional[datetime] = None) -> models.Order:
    """Fail the pending order for ``session_id`` and return its items to stock."""
    now = now or datetime.utcnow()
    with transaction(db):
        order = _lock_by_session(db, session_id)
        _fail_locked(db, order, now)
    return order


def handle_payment_event(
    db: Session,
    payload: schemas.PaymentEventPayload,
    now: Optional[datetime] = None,
) -> PaymentEventResult:
    """
    Apply a payment authority notification exactly once.

    Notifications are deduplicated on (session_id, payment_status); the
    event row and its effect on the order commit together.

    Raises:
        OrderNotFoundError: if no order has that payment session
    """
    now = now or datetime.utcnow()
    seen = (
        db.query(models.PaymentEvent.id)
        .filter(
            models.PaymentEvent.session_id == payload.session_id,
            models.PaymentEvent.payment_status == payload.payment_status,
        )
        .first()
    )
    if seen is not None:
        logger.info(f"Duplicate payment event {payload.payment_status} for session {payload.session_id}")
        return PaymentEventResult(get_order_by_session(db, payload.session_id), True)

    try:
        with transaction(db):
            order = _lock_by_session(db, payload.session_id)
            db.add(models.PaymentEvent(
                session_id=payload.session_id,
                payment_status=payload.payment_status,
                payment_intent_id=payload.payment_intent_id,
                received_at=now,
            ))
            db.flush()
            if payload.payment_status == PaymentStatus.PAID.value:
                _confirm_locked(db, order, payload.payment_intent_id, now)
            else:
                _fail_locked(db, order, now)
    except IntegrityError:
        # A concurrent delivery of the same notification won the insert
        logger.info(f"Payment event {payload.payment_status} for session {payload.session_id} raced, treating as duplicate")
        return PaymentEventResult(get_order_by_session(db, payload.session_id), True)

    logger.info(f"Payment {payload.payment_status} for order {order.order_number}")
    return PaymentEventResult(order, False)


async def verify_payment(db: Session, session_id: str, requester) -> models.Order:
    """
    Ask the payment authority for the session outcome and settle the order.

    Raises:
        OrderNotFoundError: if no order has that payment session
        NotAuthorizedError: if ``requester`` does not own the order
        PaymentAuthorityError: if the authority cannot be reached
        PaymentNotCompletedError: if the session is not paid
    """
    order = get_order_by_session(db, session_id)
    if order is None:
        raise OrderNotFoundError(session_id)
    ensure_can_access(order, requester)
    if order.payment_status == PaymentStatus.PAID.value:
        return order

    try:
        session = await payment_client.retrieve_session(session_id)
    except httpx.HTTPError as e:
        logger.error(f"Payment authority lookup failed for session {session_id}: {e}")
        raise PaymentAuthorityError() from e

    payment_status = session.get("payment_status")
    if payment_status == PaymentStatus.PAID.value:
        return confirm_payment(db, session_id, session.get("payment_intent_id"))
    if payment_status == PaymentStatus.FAILED.value:
        mark_payment_failed(db, session_id)
    raise PaymentNotCompletedError(session_id, payment_status)
