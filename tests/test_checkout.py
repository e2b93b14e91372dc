"""Tests for checkout: pricing, atomicity, addresses and order numbers."""
from decimal import Decimal

import pytest

from conftest import CUSTOMER_ID, FIXED_NOW, OTHER_CUSTOMER_ID, checkout_request
from storefront import checkout, inventory, models, schemas
from storefront.errors import (
    DuplicateOrderNumberError,
    EmptyCartError,
    InsufficientStockError,
    InvalidAddressError,
)


def _count(db, model):
    return db.query(model).count()


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

def test_compute_totals_charges_flat_shipping_below_threshold():
    totals = checkout.compute_totals([(Decimal("20.00"), 2)])
    assert totals.subtotal == Decimal("40.00")
    assert totals.shipping_fee == Decimal("5.99")
    assert totals.tax == Decimal("3.20")
    assert totals.total == Decimal("49.19")


def test_free_shipping_only_strictly_above_threshold():
    assert checkout.compute_totals([(Decimal("50.00"), 1)]).shipping_fee == Decimal("5.99")
    assert checkout.compute_totals([(Decimal("50.01"), 1)]).shipping_fee == Decimal("0.00")


def test_tax_is_rounded_to_cents():
    assert checkout.compute_totals([(Decimal("10.56"), 1)]).tax == Decimal("0.84")
    assert checkout.compute_totals([(Decimal("19.99"), 1)]).tax == Decimal("1.60")
    assert checkout.compute_totals([(Decimal("0.25"), 25)]).tax == Decimal("0.50")


def test_to_money_rounds_half_up():
    assert checkout.to_money("1.005") == Decimal("1.01")
    assert checkout.to_money("1.0049") == Decimal("1.00")


def test_total_is_sum_of_components():
    totals = checkout.compute_totals([(Decimal("19.99"), 3), (Decimal("0.99"), 1)])
    assert totals.total == totals.subtotal + totals.shipping_fee + totals.tax


def test_order_number_format():
    number = checkout.generate_order_number(FIXED_NOW)
    assert number.startswith("ORD-20260302-")
    assert len(number) == len("ORD-20260302-0000")


# ---------------------------------------------------------------------------
# Happy path (COD)
# ---------------------------------------------------------------------------

def test_cod_checkout_creates_confirmed_order(db, make_product, add_cart_line, make_address):
    product = make_product(price="20.00", stock=5)
    add_cart_line(CUSTOMER_ID, product, 2)
    address = make_address()

    order = checkout.checkout(db, CUSTOMER_ID, checkout_request(address.id), now=FIXED_NOW)

    assert order.status == "confirmed"
    assert order.payment_status == "unpaid"
    assert order.subtotal == Decimal("40.00")
    assert order.shipping_fee == Decimal("5.99")
    assert order.tax_amount == Decimal("3.20")
    assert order.total_amount == Decimal("49.19")
    assert len(order.items) == 1
    assert order.items[0].product_name == "Widget"
    assert order.items[0].line_total == Decimal("40.00")

    db.refresh(product)
    assert product.stock_quantity == 3
    assert _count(db, models.CartItem) == 0

    movement = db.query(models.StockMovement).one()
    assert movement.movement_type == "sale"
    assert (movement.quantity, movement.previous_stock, movement.new_stock) == (-2, 5, 3)
    assert movement.order_id == order.id

    history = db.query(models.OrderStatusHistory).filter_by(order_id=order.id).one()
    assert history.from_status is None
    assert history.status == "confirmed"


def test_items_snapshot_price_at_checkout(db, make_product, add_cart_line, make_address):
    product = make_product(price="20.00", stock=5)
    add_cart_line(CUSTOMER_ID, product, 1)
    address = make_address()
    order = checkout.checkout(db, CUSTOMER_ID, checkout_request(address.id), now=FIXED_NOW)

    product.price = Decimal("99.00")
    db.commit()
    db.refresh(order)
    assert order.items[0].unit_price == Decimal("20.00")


def test_card_checkout_waits_for_payment(db, place_order):
    order, _ = place_order(payment_method="card")
    assert order.status == "pending"
    assert order.payment_status == "unpaid"
    assert order.payment_session_id.startswith("ps_")


# ---------------------------------------------------------------------------
# Failures roll everything back
# ---------------------------------------------------------------------------

def test_empty_cart_is_rejected(db, make_address):
    address = make_address()
    with pytest.raises(EmptyCartError):
        checkout.checkout(db, CUSTOMER_ID, checkout_request(address.id))
    assert _count(db, models.Order) == 0


def test_insufficient_stock_leaves_no_trace(db, make_product, add_cart_line, make_address):
    in_stock = make_product(name="P1", stock=1)
    sold_out = make_product(name="P2", stock=0)
    add_cart_line(CUSTOMER_ID, in_stock, 1)
    add_cart_line(CUSTOMER_ID, sold_out, 1)
    address = make_address()

    with pytest.raises(InsufficientStockError) as excinfo:
        checkout.checkout(db, CUSTOMER_ID, checkout_request(address.id))

    assert excinfo.value.product == "P2"
    assert excinfo.value.available == 0
    assert _count(db, models.Order) == 0
    assert _count(db, models.OrderItem) == 0
    assert _count(db, models.StockMovement) == 0
    assert _count(db, models.CartItem) == 2
    db.refresh(in_stock)
    assert in_stock.stock_quantity == 1


def test_quantity_above_stock_reports_available(db, make_product, add_cart_line, make_address):
    product = make_product(name="Kettle", stock=4)
    add_cart_line(CUSTOMER_ID, product, 6)
    address = make_address()

    with pytest.raises(InsufficientStockError) as excinfo:
        checkout.checkout(db, CUSTOMER_ID, checkout_request(address.id))

    assert excinfo.value.available == 4
    assert excinfo.value.requested == 6
    assert _count(db, models.Order) == 0
    db.refresh(product)
    assert product.stock_quantity == 4


def test_failure_after_first_decrement_rolls_back(db, monkeypatch, make_product, add_cart_line, make_address):
    first = make_product(name="P1", stock=5)
    second = make_product(name="P2", stock=5)
    add_cart_line(CUSTOMER_ID, first, 1)
    add_cart_line(CUSTOMER_ID, second, 1)
    address = make_address()

    original = inventory.adjust_stock
    calls = []

    def flaky_adjust(db_, product_id, delta, **kwargs):
        calls.append(product_id)
        if len(calls) == 2:
            raise RuntimeError("connection lost")
        return original(db_, product_id, delta, **kwargs)

    monkeypatch.setattr(inventory, "adjust_stock", flaky_adjust)

    with pytest.raises(RuntimeError):
        checkout.checkout(db, CUSTOMER_ID, checkout_request(address.id))

    assert _count(db, models.Order) == 0
    assert _count(db, models.StockMovement) == 0
    assert _count(db, models.CartItem) == 2
    db.refresh(first)
    assert first.stock_quantity == 5


def test_stock_sold_elsewhere_after_the_check_fails_checkout(app, db, monkeypatch, make_product, add_cart_line, make_address):
    product = make_product(name="Lamp", stock=5)
    product_id = product.id
    add_cart_line(CUSTOMER_ID, product, 2)
    address = make_address()

    original = checkout.allocate_order_number

    def sell_elsewhere_then_allocate(db_, now):
        # Runs after the cart's stock check passed: a second session sells
        # four lamps and commits before this checkout decrements.
        other = app.state.session_factory()
        try:
            inventory.admin_adjust_stock(other, product_id, -4, "walk-in sale", actor=OTHER_CUSTOMER_ID)
        finally:
            other.close()
        return original(db_, now)

    monkeypatch.setattr(checkout, "allocate_order_number", sell_elsewhere_then_allocate)

    with pytest.raises(InsufficientStockError) as excinfo:
        checkout.checkout(db, CUSTOMER_ID, checkout_request(address.id))

    assert excinfo.value.available == 1
    assert excinfo.value.requested == 2
    assert _count(db, models.Order) == 0
    assert _count(db, models.OrderItem) == 0
    assert _count(db, models.CartItem) == 1
    db.refresh(product)
    assert product.stock_quantity == 1
    movements = db.query(models.StockMovement).all()
    assert [(m.movement_type, m.quantity) for m in movements] == [("adjustment", -4)]


def test_second_checkout_of_same_cart_finds_it_empty(db, place_order, make_address):
    place_order()
    address = make_address()
    with pytest.raises(EmptyCartError):
        checkout.checkout(db, CUSTOMER_ID, checkout_request(address.id))
    assert _count(db, models.Order) == 1


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

def test_billing_falls_back_to_shipping(db, place_order):
    order, _ = place_order()
    assert order.billing_same_as_shipping is True
    assert order.billing_address_id is None


def test_inline_addresses_are_created_for_the_user(db, make_product, add_cart_line):
    product = make_product()
    add_cart_line(CUSTOMER_ID, product, 1)
    fields = schemas.AddressFields(
        first_name="Sam", last_name="Park", address_line1="9 Elm St",
        city="Portland", state="OR", zip_code="97201",
    )
    request = schemas.CheckoutRequest(
        shipping=schemas.AddressSelection(address=fields, is_default=True),
        billing=schemas.AddressSelection(address=fields),
    )

    order = checkout.checkout(db, CUSTOMER_ID, request)

    assert order.billing_same_as_shipping is False
    billing = db.query(models.BillingAddress).one()
    assert order.billing_address_id == billing.id
    shipping = db.query(models.ShippingAddress).one()
    assert shipping.user_id == CUSTOMER_ID
    assert shipping.is_default is True


def test_new_default_address_replaces_previous_default(db, make_address):
    first = make_address(is_default=True)
    second = make_address(is_default=True, city="Chicago")
    db.refresh(first)
    assert first.is_default is False
    assert second.is_default is True


def test_foreign_address_is_rejected(db, make_product, add_cart_line, make_address):
    product = make_product()
    add_cart_line(CUSTOMER_ID, product, 1)
    someone_elses = make_address(OTHER_CUSTOMER_ID)

    with pytest.raises(InvalidAddressError):
        checkout.checkout(db, CUSTOMER_ID, checkout_request(someone_elses.id))
    assert _count(db, models.Order) == 0
    assert _count(db, models.CartItem) == 1


def test_address_selection_requires_exactly_one_variant():
    with pytest.raises(ValueError):
        schemas.AddressSelection()


# ---------------------------------------------------------------------------
# Order numbers
# ---------------------------------------------------------------------------

def test_order_number_collision_is_retried(db, monkeypatch, place_order, make_product, add_cart_line, make_address):
    numbers = iter(["ORD-20260302-0001", "ORD-20260302-0001", "ORD-20260302-0002"])
    monkeypatch.setattr(checkout, "generate_order_number", lambda now: next(numbers))

    first, _ = place_order()
    second, _ = place_order()

    assert first.order_number == "ORD-20260302-0001"
    assert second.order_number == "ORD-20260302-0002"


def test_order_number_exhaustion_fails_cleanly(db, monkeypatch, place_order, make_product, add_cart_line, make_address):
    monkeypatch.setattr(checkout, "generate_order_number", lambda now: "ORD-20260302-0001")
    place_order()

    product = make_product(name="Other")
    add_cart_line(CUSTOMER_ID, product, 1)
    address = make_address()
    with pytest.raises(DuplicateOrderNumberError):
        checkout.checkout(db, CUSTOMER_ID, checkout_request(address.id))

    assert _count(db, models.Order) == 1
    db.refresh(product)
    assert product.stock_quantity == 5


def _commit_rival_order(app, order_number, shipping_address_id):
    other = app.state.session_factory()
    try:
        other.add(models.Order(
            order_number=order_number,
            user_id=OTHER_CUSTOMER_ID,
            status="confirmed",
            payment_method="cod",
            payment_status="unpaid",
            subtotal=Decimal("10.00"),
            shipping_fee=Decimal("5.99"),
            tax_amount=Decimal("0.80"),
            total_amount=Decimal("16.79"),
            shipping_address_id=shipping_address_id,
        ))
        other.commit()
    finally:
        other.close()


def test_order_number_committed_concurrently_is_retried(app, db, monkeypatch, make_product, add_cart_line, make_address):
    product = make_product(stock=5)
    add_cart_line(CUSTOMER_ID, product, 2)
    address = make_address()
    address_id = address.id

    numbers = iter(["ORD-20260302-0001", "ORD-20260302-0002"])
    monkeypatch.setattr(checkout, "generate_order_number", lambda now: next(numbers))
    original = checkout._claim_order_number
    claimed = []

    def claim_then_lose_race(db_, now):
        number = original(db_, now)
        if not claimed:
            # Another checkout commits the same number between the existence
            # check and this checkout's insert.
            _commit_rival_order(app, number, address_id)
        claimed.append(number)
        return number

    monkeypatch.setattr(checkout, "_claim_order_number", claim_then_lose_race)

    order = checkout.checkout(db, CUSTOMER_ID, checkout_request(address_id), now=FIXED_NOW)

    assert claimed == ["ORD-20260302-0001", "ORD-20260302-0002"]
    assert order.order_number == "ORD-20260302-0002"
    assert db.query(models.Order).filter_by(user_id=CUSTOMER_ID).count() == 1
    assert _count(db, models.Order) == 2
    assert _count(db, models.StockMovement) == 1
    assert _count(db, models.CartItem) == 0
    db.refresh(product)
    assert product.stock_quantity == 3


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

def test_checkout_summary_matches_checkout_pricing(db, make_product, add_cart_line, make_address):
    product = make_product(price="20.00", stock=5)
    add_cart_line(CUSTOMER_ID, product, 2)
    address = make_address()

    summary = checkout.checkout_summary(db, CUSTOMER_ID)

    assert summary.summary.total == Decimal("49.19")
    assert summary.summary.item_count == 2
    assert summary.shipping_address.id == address.id
    assert summary.items[0].line_total == Decimal("40.00")


def test_checkout_summary_of_empty_cart(db):
    with pytest.raises(EmptyCartError):
        checkout.checkout_summary(db, CUSTOMER_ID)
