"""
Shopping cart operations.

Thin CRUD over the ``cart`` table. Quantity per (user, product) is capped at
MAX_CART_QUANTITY.
"""
import logging
from decimal import Decimal
from typing import List

from sqlalchemy.orm import Session, joinedload

from . import config, models, schemas
from .database import transaction
from .errors import CartItemNotFoundError, CartQuantityError, ProductNotFoundError

logger = logging.getLogger(__name__)


def get_cart_items(db: Session, user_id: int, lock: bool = False) -> List[models.CartItem]:
    """
    Cart lines for ``user_id`` joined with their live product rows.

    With ``lock`` the cart rows are selected FOR UPDATE (product rows are not
    locked here; stock is protected by the ledger's conditional update).
    """
    query = (
        db.query(models.CartItem)
        .options(joinedload(models.CartItem.product))
        .filter(models.CartItem.user_id == user_id)
        .order_by(models.CartItem.id)
    )
    if lock:
        query = query.with_for_update(of=models.CartItem).populate_existing()
    return query.all()


def to_cart_line(item: models.CartItem) -> schemas.CartLine:
    price = Decimal(item.product.price)
    return schemas.CartLine(
        id=item.id,
        product_id=item.product_id,
        name=item.product.name,
        price=price,
        quantity=item.quantity,
        stock_quantity=item.product.stock_quantity,
        line_total=price * item.quantity,
    )


def get_cart(db: Session, user_id: int) -> List[schemas.CartLine]:
    return [to_cart_line(item) for item in get_cart_items(db, user_id)]


def _check_quantity(quantity: int) -> None:
    if quantity < 1 or quantity > config.MAX_CART_QUANTITY:
        raise CartQuantityError(config.MAX_CART_QUANTITY)


def add_to_cart(db: Session, user_id: int, product_id: int, quantity: int = 1) -> models.CartItem:
    """
    Add a product to the cart, incrementing the existing line if there is one.

    Raises:
        ProductNotFoundError: if the product does not exist
        CartQuantityError: if the resulting quantity exceeds the cap
    """
    with transaction(db):
        product = db.query(models.Product).filter(models.Product.id == product_id).first()
        if product is None:
            raise ProductNotFoundError(product_id)

        item = (
            db.query(models.CartItem)
            .filter(models.CartItem.user_id == user_id, models.CartItem.product_id == product_id)
            .with_for_update()
            .first()
        )
        if item is None:
            _check_quantity(quantity)
            item = models.CartItem(user_id=user_id, product_id=product_id, quantity=quantity)
            db.add(item)
        else:
            _check_quantity(item.quantity + quantity)
            item.quantity += quantity
        db.flush()

    db.refresh(item)
    return item


def update_cart_item(db: Session, user_id: int, item_id: int, quantity: int) -> models.CartItem:
    with transaction(db):
        item = _get_owned_item(db, user_id, item_id)
        _check_quantity(quantity)
        item.quantity = quantity
    db.refresh(item)
    return item


def remove_from_cart(db: Session, user_id: int, item_id: int) -> None:
    with transaction(db):
        item = _get_owned_item(db, user_id, item_id)
        db.delete(item)


def clear_cart(db: Session, user_id: int) -> int:
    """Delete every cart line of ``user_id``. Flushes only; the caller commits."""
    deleted = (
        db.query(models.CartItem)
        .filter(models.CartItem.user_id == user_id)
        .delete(synchronize_session="fetch")
    )
    db.flush()
    return deleted


def _get_owned_item(db: Session, user_id: int, item_id: int) -> models.CartItem:
    item = (
        db.query(models.CartItem)
        .filter(models.CartItem.id == item_id, models.CartItem.user_id == user_id)
        .first()
    )
    if item is None:
        raise CartItemNotFoundError(item_id)
    return item
