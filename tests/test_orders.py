"""Tests for the order status state machine and admin order actions."""
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import ADMIN_ID, FIXED_NOW
from storefront import models, orders, schemas
from storefront.errors import (
    InvalidTransitionError,
    NotAuthorizedError,
    OrderNotFoundError,
    RefundExceedsTotalError,
)

LATER = FIXED_NOW + timedelta(hours=1)


def _history(db, order_id):
    return (
        db.query(models.OrderStatusHistory)
        .filter_by(order_id=order_id)
        .order_by(models.OrderStatusHistory.id)
        .all()
    )


def _tracking(db, order_id):
    return (
        db.query(models.OrderTrackingEvent)
        .filter_by(order_id=order_id)
        .order_by(models.OrderTrackingEvent.id)
        .all()
    )


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

def test_owner_cancels_confirmed_order_and_stock_returns(db, place_order, customer):
    order, product = place_order(stock=5, quantity=2)

    cancelled = orders.cancel_order(db, order.id, customer, reason="changed my mind", now=LATER)

    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_at == LATER
    assert cancelled.cancellation_reason == "changed my mind"
    assert cancelled.stock_restored is True
    db.refresh(product)
    assert product.stock_quantity == 5
    history = _history(db, order.id)
    assert [(h.from_status, h.status) for h in history] == [(None, "confirmed"), ("confirmed", "cancelled")]


def test_second_cancel_is_rejected_without_double_restock(db, place_order, customer):
    order, product = place_order(stock=5, quantity=2)
    orders.cancel_order(db, order.id, customer)

    with pytest.raises(InvalidTransitionError):
        orders.cancel_order(db, order.id, customer)

    db.refresh(product)
    assert product.stock_quantity == 5
    assert db.query(models.StockMovement).filter_by(movement_type="return").count() == 1


def test_shipped_order_cannot_be_cancelled(db, place_order, customer):
    order, product = place_order(stock=5, quantity=2)
    orders.set_status(db, order.id, "shipped", ADMIN_ID)

    with pytest.raises(InvalidTransitionError) as excinfo:
        orders.cancel_order(db, order.id, customer)

    assert excinfo.value.from_status == "shipped"
    assert excinfo.value.to_status == "cancelled"
    db.refresh(product)
    assert product.stock_quantity == 3


def test_other_customer_cannot_cancel(db, place_order, other_customer):
    order, _ = place_order()
    with pytest.raises(NotAuthorizedError):
        orders.cancel_order(db, order.id, other_customer)
    db.refresh(order)
    assert order.status == "confirmed"


def test_admin_can_cancel_any_order(db, place_order, admin):
    order, _ = place_order()
    assert orders.cancel_order(db, order.id, admin).status == "cancelled"


def test_cancel_unknown_order(db, admin):
    with pytest.raises(OrderNotFoundError):
        orders.cancel_order(db, 404, admin)


def test_cancel_through_status_update_restores_stock(db, place_order):
    order, product = place_order(stock=5, quantity=2)

    orders.set_status(db, order.id, "cancelled", ADMIN_ID, note="fraud check")

    db.refresh(product)
    assert product.stock_quantity == 5
    db.refresh(order)
    assert order.cancellation_reason == "fraud check"



def test_failing_order_through_status_update_restores_stock(db, place_order):
    order, product = place_order(stock=5, quantity=2, payment_method="card")

    failed = orders.set_status(db, order.id, "failed", ADMIN_ID, now=LATER)

    assert failed.status == "failed"
    assert failed.stock_restored is True
    db.refresh(product)
    assert product.stock_quantity == 5
    assert db.query(models.StockMovement).filter_by(movement_type="return").count() == 1
    assert _history(db, order.id)[-1].note == "Order failed"


def test_failing_confirmed_order_is_rejected_without_restock(db, place_order):
    order, product = place_order(stock=5, quantity=2)

    with pytest.raises(InvalidTransitionError):
        orders.set_status(db, order.id, "failed", ADMIN_ID)

    db.refresh(order)
    db.refresh(product)
    assert order.status == "confirmed"
    assert order.stock_restored is False
    assert product.stock_quantity == 3

# ---------------------------------------------------------------------------
# Generic transitions
# ---------------------------------------------------------------------------

def test_shipping_writes_history_and_tracking_event(db, place_order):
    order, _ = place_order()

    orders.set_status(db, order.id, "processing", ADMIN_ID, now=LATER)
    orders.set_status(db, order.id, "shipped", ADMIN_ID, note="handed to carrier", now=LATER)

    history = _history(db, order.id)
    assert [h.status for h in history] == ["confirmed", "processing", "shipped"]
    assert history[-1].created_by == ADMIN_ID
    events = _tracking(db, order.id)
    assert [e.status for e in events] == ["shipped"]
    assert events[0].event_time == LATER


def test_backwards_transition_is_rejected(db, place_order):
    order, _ = place_order()
    orders.set_status(db, order.id, "delivered", ADMIN_ID, now=LATER)

    with pytest.raises(InvalidTransitionError):
        orders.set_status(db, order.id, "processing", ADMIN_ID)

    db.refresh(order)
    assert order.status == "delivered"
    assert order.actual_delivery == LATER
    assert len(_history(db, order.id)) == 2


def test_unknown_status_is_a_value_error(db, place_order):
    order, _ = place_order()
    with pytest.raises(ValueError):
        orders.set_status(db, order.id, "teleported", ADMIN_ID)


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

def test_refund_cannot_exceed_total(db, place_order):
    order, _ = place_order()  # total 49.19

    with pytest.raises(RefundExceedsTotalError):
        orders.process_refund(db, order.id, Decimal("60.00"), "damaged")

    db.refresh(order)
    assert order.refund_status is None
    assert order.refund_amount is None
    assert order.status == "confirmed"


def test_refund_within_total_keeps_status(db, place_order):
    order, _ = place_order()

    refunded = orders.process_refund(db, order.id, "49.19", "damaged", actor_id=ADMIN_ID, now=LATER)

    assert refunded.refund_status == "processed"
    assert refunded.refund_amount == Decimal("49.19")
    assert refunded.refunded_at == LATER
    assert refunded.status == "confirmed"


# ---------------------------------------------------------------------------
# Delivery attempts and tracking info
# ---------------------------------------------------------------------------

def test_failed_delivery_attempt_moves_order_to_delivery_failed(db, place_order):
    order, _ = place_order()
    orders.set_status(db, order.id, "out_for_delivery", ADMIN_ID)
    attempt = schemas.DeliveryAttemptCreate(attempt_number=1, outcome="failed", notes="nobody home")

    record = orders.record_delivery_attempt(db, order.id, attempt, actor_id=ADMIN_ID, now=LATER)

    assert record.status == "failed"
    db.refresh(order)
    assert order.status == "delivery_failed"
    assert _history(db, order.id)[-1].note == "Delivery attempt 1 failed: nobody home"

    orders.set_status(db, order.id, "out_for_delivery", ADMIN_ID)
    db.refresh(order)
    assert order.status == "out_for_delivery"


def test_successful_attempt_only_records(db, place_order):
    order, _ = place_order()
    attempt = schemas.DeliveryAttemptCreate(attempt_number=1, outcome="success")

    orders.record_delivery_attempt(db, order.id, attempt)

    db.refresh(order)
    assert order.status == "confirmed"
    assert db.query(models.DeliveryAttempt).count() == 1


def test_failed_attempt_on_delivered_order_is_rejected(db, place_order):
    order, _ = place_order()
    orders.set_status(db, order.id, "delivered", ADMIN_ID)
    attempt = schemas.DeliveryAttemptCreate(attempt_number=2, outcome="failed")

    with pytest.raises(InvalidTransitionError):
        orders.record_delivery_attempt(db, order.id, attempt)

    assert db.query(models.DeliveryAttempt).count() == 0


def test_failed_attempt_before_shipping_is_rejected(db, place_order, customer):
    order, product = place_order(stock=5, quantity=2)
    attempt = schemas.DeliveryAttemptCreate(attempt_number=1, outcome="failed")

    with pytest.raises(InvalidTransitionError) as excinfo:
        orders.record_delivery_attempt(db, order.id, attempt, actor_id=ADMIN_ID)

    assert (excinfo.value.from_status, excinfo.value.to_status) == ("confirmed", "delivery_failed")
    assert db.query(models.DeliveryAttempt).count() == 0
    db.refresh(order)
    assert order.status == "confirmed"

    # still cancellable, so the stock is not stranded
    orders.cancel_order(db, order.id, customer)
    db.refresh(product)
    assert product.stock_quantity == 5


def test_repeated_failed_attempts_stay_in_delivery_failed(db, place_order):
    order, _ = place_order()
    orders.set_status(db, order.id, "shipped", ADMIN_ID)

    for number in (1, 2):
        attempt = schemas.DeliveryAttemptCreate(attempt_number=number, outcome="failed")
        orders.record_delivery_attempt(db, order.id, attempt, now=LATER)

    db.refresh(order)
    assert order.status == "delivery_failed"
    assert db.query(models.DeliveryAttempt).count() == 2
    assert [h.status for h in _history(db, order.id)][-2:] == ["delivery_failed", "delivery_failed"]


def test_assigning_tracking_number_ships_the_order(db, place_order):
    order, _ = place_order()
    info = schemas.TrackingInfoUpdate(tracking_number="1Z999", carrier="UPS")

    updated = orders.update_tracking_info(db, order.id, info, actor_id=ADMIN_ID, now=LATER)

    assert updated.status == "shipped"
    assert updated.tracking_number == "1Z999"
    assert updated.carrier == "UPS"
    events = _tracking(db, order.id)
    assert len(events) == 1
    assert events[0].description == "Tracking number assigned: 1Z999"


def test_tracking_info_on_closed_order_is_rejected(db, place_order, customer):
    order, _ = place_order()
    orders.cancel_order(db, order.id, customer)

    with pytest.raises(InvalidTransitionError):
        orders.update_tracking_info(db, order.id, schemas.TrackingInfoUpdate(carrier="UPS"))


def test_free_form_tracking_event_leaves_status(db, place_order):
    order, _ = place_order()
    orders.set_status(db, order.id, "shipped", ADMIN_ID)
    event = schemas.TrackingEventCreate(status="in_transit", location="Memphis, TN")

    orders.add_tracking_event(db, order.id, event, actor_id=ADMIN_ID)

    db.refresh(order)
    assert order.status == "shipped"
    assert [e.status for e in _tracking(db, order.id)] == ["shipped", "in_transit"]


def test_status_tracking_event_applies_transition(db, place_order):
    order, _ = place_order()
    orders.set_status(db, order.id, "shipped", ADMIN_ID)
    event = schemas.TrackingEventCreate(status="out_for_delivery", description="On the truck")

    orders.add_tracking_event(db, order.id, event, actor_id=ADMIN_ID)

    db.refresh(order)
    assert order.status == "out_for_delivery"
    # the admin's event replaces the automatic one
    assert [e.status for e in _tracking(db, order.id)] == ["shipped", "out_for_delivery"]


def test_invalid_tracking_event_transition_writes_nothing(db, place_order):
    order, _ = place_order()
    orders.set_status(db, order.id, "delivered", ADMIN_ID)

    with pytest.raises(InvalidTransitionError):
        orders.add_tracking_event(db, order.id, schemas.TrackingEventCreate(status="shipped"))

    assert [e.status for e in _tracking(db, order.id)] == ["delivered"]


# ---------------------------------------------------------------------------
# Bulk actions
# ---------------------------------------------------------------------------

def test_bulk_cancel_reports_each_order(db, place_order, admin):
    open_order, _ = place_order()
    shipped_order, _ = place_order()
    orders.set_status(db, shipped_order.id, "shipped", ADMIN_ID)

    results = orders.bulk_update_orders(db, [open_order.id, shipped_order.id, 999], "cancel_orders", {}, admin)

    by_id = {r.order_id: r for r in results}
    assert by_id[open_order.id].success is True
    assert by_id[open_order.id].status == "cancelled"
    assert by_id[shipped_order.id].success is False
    assert by_id[999].error == "Order not found"
    db.refresh(shipped_order)
    assert shipped_order.status == "shipped"


def test_bulk_status_update(db, place_order, admin):
    first, _ = place_order()
    second, _ = place_order()

    results = orders.bulk_update_orders(
        db, [first.id, second.id], "update_status", {"status": "processing"}, admin
    )

    assert all(r.success for r in results)
    assert all(r.status == "processing" for r in results)


def test_bulk_update_without_status_fails_per_order(db, place_order, admin):
    order, _ = place_order()
    results = orders.bulk_update_orders(db, [order.id], "update_status", {}, admin)
    assert results[0].success is False


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

def test_customers_only_list_their_own_orders(db, place_order, customer, other_customer):
    first, _ = place_order(now=FIXED_NOW)
    second, _ = place_order(now=LATER)
    place_order(user_id=other_customer.id)

    listed = orders.list_orders(db, customer)

    assert [o.id for o in listed] == [second.id, first.id]


def test_admin_lists_everyone_with_filters(db, place_order, admin, customer):
    first, _ = place_order()
    second, _ = place_order(user_id=2)
    orders.cancel_order(db, first.id, customer)

    assert {o.id for o in orders.list_orders(db, admin)} == {first.id, second.id}
    assert [o.id for o in orders.list_orders(db, admin, status="cancelled")] == [first.id]
    assert [o.id for o in orders.list_orders(db, admin, search=second.order_number.lower())] == [second.id]


def test_list_orders_paginates(db, place_order, customer):
    placed = [place_order(now=FIXED_NOW + timedelta(minutes=i))[0] for i in range(3)]

    page = orders.list_orders(db, customer, skip=1, limit=1)

    assert [o.id for o in page] == [placed[1].id]
