"""Pytest configuration for the storefront order service tests."""
from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from storefront import addresses, auth, checkout, models, schemas
from storefront.main import create_app

CUSTOMER_ID = 1
OTHER_CUSTOMER_ID = 2
ADMIN_ID = 99

FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0)


# ---------------------------------------------------------------------------
# Application and database.  Every test gets its own in-memory SQLite
# database; the engine uses a StaticPool so the test session and the
# TestClient's request sessions see the same tables.
# ---------------------------------------------------------------------------

@pytest.fixture
def app():
    application = create_app("sqlite://")
    models.Base.metadata.create_all(bind=application.state.engine)
    return application


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    yield session
    session.close()


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@pytest.fixture
def customer():
    return auth.CurrentUser(id=CUSTOMER_ID, email="customer@example.com", role="customer", token="")


@pytest.fixture
def other_customer():
    return auth.CurrentUser(id=OTHER_CUSTOMER_ID, email="other@example.com", role="customer", token="")


@pytest.fixture
def admin():
    return auth.CurrentUser(id=ADMIN_ID, email="admin@example.com", role="admin", token="")


def bearer(user_id: int, email: str, role: str) -> dict:
    return {"Authorization": f"Bearer {auth.create_access_token(user_id, email, role)}"}


@pytest.fixture
def customer_headers():
    return bearer(CUSTOMER_ID, "customer@example.com", "customer")


@pytest.fixture
def other_headers():
    return bearer(OTHER_CUSTOMER_ID, "other@example.com", "customer")


@pytest.fixture
def admin_headers():
    return bearer(ADMIN_ID, "admin@example.com", "admin")


# ---------------------------------------------------------------------------
# Seed helpers.  All of them commit so the rows survive the request
# sessions opened by the TestClient.
# ---------------------------------------------------------------------------

@pytest.fixture
def make_product(db):
    def _make(name="Widget", price="20.00", stock=5, minimum=2):
        product = models.Product(
            name=name,
            price=Decimal(price),
            stock_quantity=stock,
            minimum_stock_level=minimum,
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product
    return _make


@pytest.fixture
def add_cart_line(db):
    def _add(user_id, product, quantity=1):
        item = models.CartItem(user_id=user_id, product_id=product.id, quantity=quantity)
        db.add(item)
        db.commit()
        return item
    return _add


@pytest.fixture
def make_address(db):
    def _make(user_id=CUSTOMER_ID, is_default=True, city="Springfield"):
        fields = schemas.AddressFields(
            first_name="Jordan",
            last_name="Lee",
            email="jordan@example.com",
            address_line1="1 Main St",
            city=city,
            state="IL",
            zip_code="62701",
        )
        address = addresses.create_address(db, user_id, fields, is_default=is_default)
        db.commit()
        return address
    return _make


def checkout_request(address_id, payment_method="cod", **kwargs) -> schemas.CheckoutRequest:
    return schemas.CheckoutRequest(
        shipping=schemas.AddressSelection(address_id=address_id),
        payment_method=payment_method,
        **kwargs,
    )


@pytest.fixture
def place_order(db, make_product, add_cart_line, make_address):
    """Check out a one-line cart for ``user_id`` and return the order."""
    def _place(user_id=CUSTOMER_ID, price="20.00", stock=5, quantity=2, payment_method="cod", now=FIXED_NOW):
        product = make_product(price=price, stock=stock)
        add_cart_line(user_id, product, quantity)
        address = make_address(user_id)
        order = checkout.checkout(db, user_id, checkout_request(address.id, payment_method), now=now)
        return order, product
    return _place
