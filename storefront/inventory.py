"""
Inventory ledger: the only code path allowed to change product stock.

Every change is a single conditional UPDATE (stock never goes below zero even
under concurrent checkouts) followed by an immutable StockMovement row and a
low-stock alert evaluation. Functions here only flush; the caller's
transaction decides whether the whole unit commits.
"""
import logging
from datetime import datetime
from typing import List, NamedTuple, Optional

from sqlalchemy.orm import Session

from . import models, schemas
from .database import transaction
from .errors import InsufficientStockError, ProductNotFoundError
from .models import MovementType

logger = logging.getLogger(__name__)

LOW_STOCK_ALERT = "low_stock"


class StockAdjustment(NamedTuple):
    product_id: int
    previous_stock: int
    new_stock: int
    movement_id: int


class ReconciliationReport(NamedTuple):
    product_id: int
    initial_stock: int
    movement_total: int
    expected_stock: int
    current_stock: int
    chain_intact: bool

    @property
    def consistent(self) -> bool:
        return self.chain_intact and self.expected_stock == self.current_stock


def compute_stock_status(current_stock: int, minimum_stock_level: int) -> str:
    """Classify a stock level as out_of_stock, low_stock or in_stock."""
    if current_stock <= 0:
        return "out_of_stock"
    if current_stock <= minimum_stock_level:
        return "low_stock"
    return "in_stock"


def get_product(db: Session, product_id: int) -> Optional[models.Product]:
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def adjust_stock(
    db: Session,
    product_id: int,
    delta: int,
    reason: str,
    movement_type,
    actor: Optional[int] = None,
    order_id: Optional[int] = None,
) -> StockAdjustment:
    """
    Apply a signed stock change and record it as a movement.

    Args:
        db: Database session (caller owns the transaction)
        product_id: Product whose stock changes
        delta: Signed quantity; negative for sales and write-offs
        reason: Free-text reason stored on the movement
        movement_type: One of MovementType
        actor: User id responsible for the change
        order_id: Order the movement belongs to, if any

    Returns:
        StockAdjustment with the stock before and after the change

    Raises:
        ProductNotFoundError: if the product does not exist
        InsufficientStockError: if the change would make stock negative
    """
    movement_type = MovementType(movement_type)
    now = datetime.utcnow()

    # Check and decrement in one statement so concurrent writers cannot oversell
    updated = (
        db.query(models.Product)
        .filter(
            models.Product.id == product_id,
            models.Product.stock_quantity + delta >= 0,
        )
        .update(
            {
                models.Product.stock_quantity: models.Product.stock_quantity + delta,
                models.Product.updated_at: now,
            },
            synchronize_session="fetch",
        )
    )

    if updated == 0:
        row = (
            db.query(models.Product.name, models.Product.stock_quantity)
            .filter(models.Product.id == product_id)
            .first()
        )
        if row is None:
            raise ProductNotFoundError(product_id)
        logger.warning(
            f"Rejected stock change of {delta} for product {product_id}: only {row.stock_quantity} available"
        )
        raise InsufficientStockError(row.name, row.stock_quantity, requested=-delta)

    row = (
        db.query(models.Product.stock_quantity, models.Product.minimum_stock_level)
        .filter(models.Product.id == product_id)
        .one()
    )
    new_stock = row.stock_quantity
    previous_stock = new_stock - delta

    movement = models.StockMovement(
        product_id=product_id,
        movement_type=movement_type.value,
        quantity=delta,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reason=reason,
        order_id=order_id,
        created_by=actor,
        created_at=now,
    )
    db.add(movement)
    _evaluate_low_stock(db, product_id, new_stock, row.minimum_stock_level, now)
    db.flush()

    logger.info(
        f"Stock for product {product_id} {movement_type.value}: {previous_stock} -> {new_stock} ({reason})"
    )
    return StockAdjustment(product_id, previous_stock, new_stock, movement.id)


def _evaluate_low_stock(db: Session, product_id: int, new_stock: int, threshold: int, now: datetime) -> None:
    """Upsert the open low-stock alert, or resolve it once stock recovers."""
    open_alert = (
        db.query(models.StockAlert)
        .filter(
            models.StockAlert.product_id == product_id,
            models.StockAlert.alert_type == LOW_STOCK_ALERT,
            models.StockAlert.is_resolved.is_(False),
        )
        .first()
    )

    if new_stock <= threshold:
        if open_alert is None:
            db.add(models.StockAlert(
                product_id=product_id,
                alert_type=LOW_STOCK_ALERT,
                current_stock=new_stock,
                threshold=threshold,
                created_at=now,
            ))
            logger.warning(f"Low stock for product {product_id}: {new_stock} <= {threshold}")
        else:
            open_alert.current_stock = new_stock
            open_alert.threshold = threshold
            open_alert.created_at = now
    elif open_alert is not None:
        open_alert.is_resolved = True
        open_alert.resolved_at = now


def restore_stock(db: Session, order: models.Order, actor: Optional[int] = None) -> List[StockAdjustment]:
    """
    Return every item of ``order`` to stock as ``return`` movements.

    The caller must hold the order row lock. ``order.stock_restored`` guards
    against crediting the same order twice.
    """
    if order.stock_restored:
        logger.info(f"Stock for order {order.order_number} already restored, skipping")
        return []

    adjustments = [
        adjust_stock(
            db,
            item.product_id,
            item.quantity,
            reason=f"Order {order.order_number} restock",
            movement_type=MovementType.RETURN,
            actor=actor,
            order_id=order.id,
        )
        for item in order.items
    ]
    order.stock_restored = True
    db.flush()
    return adjustments


def list_movements(db: Session, product_id: int, skip: int = 0, limit: int = 100) -> List[models.StockMovement]:
    """Movements for a product, newest first."""
    return (
        db.query(models.StockMovement)
        .filter(models.StockMovement.product_id == product_id)
        .order_by(models.StockMovement.created_at.desc(), models.StockMovement.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def low_stock_alerts(db: Session) -> List[models.StockAlert]:
    """Unresolved low-stock alerts, lowest stock first."""
    return (
        db.query(models.StockAlert)
        .filter(models.StockAlert.is_resolved.is_(False))
        .order_by(models.StockAlert.current_stock.asc())
        .all()
    )


def reconcile(db: Session, product_id: int, initial_stock: Optional[int] = None) -> ReconciliationReport:
    """
    Check that current stock equals the initial stock plus all movement deltas.

    When ``initial_stock`` is not given it is taken from the first movement's
    ``previous_stock`` (or the current stock if the product never moved). The
    report also checks that each movement starts where the previous one ended.
    """
    product = get_product(db, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)
    db.refresh(product)

    movements = (
        db.query(models.StockMovement)
        .filter(models.StockMovement.product_id == product_id)
        .order_by(models.StockMovement.id.asc())
        .all()
    )
    if initial_stock is None:
        initial_stock = movements[0].previous_stock if movements else product.stock_quantity

    chain_intact = True
    running = initial_stock
    for movement in movements:
        if movement.previous_stock != running or movement.new_stock != running + movement.quantity:
            chain_intact = False
        running = movement.new_stock

    total = sum(movement.quantity for movement in movements)
    return ReconciliationReport(
        product_id=product_id,
        initial_stock=initial_stock,
        movement_total=total,
        expected_stock=initial_stock + total,
        current_stock=product.stock_quantity,
        chain_intact=chain_intact,
    )


def admin_adjust_stock(
    db: Session,
    product_id: int,
    adjustment: int,
    reason: str,
    movement_type=MovementType.ADJUSTMENT,
    actor: Optional[int] = None,
) -> schemas.StockAdjustmentResult:
    """Back-office stock correction, committed on its own."""
    with transaction(db):
        result = adjust_stock(db, product_id, adjustment, reason, movement_type, actor=actor)
        product = get_product(db, product_id)
        status = compute_stock_status(result.new_stock, product.minimum_stock_level)
    return schemas.StockAdjustmentResult(
        product_id=product_id,
        previous_stock=result.previous_stock,
        new_stock=result.new_stock,
        stock_status=status,
    )


def to_inventory_item(product: models.Product) -> schemas.InventoryItem:
    return schemas.InventoryItem(
        product_id=product.id,
        name=product.name,
        price=product.price,
        stock_quantity=product.stock_quantity,
        minimum_stock_level=product.minimum_stock_level,
        stock_status=compute_stock_status(product.stock_quantity, product.minimum_stock_level),
        updated_at=product.updated_at,
    )


def list_inventory(
    db: Session,
    status: Optional[str] = None,
    search: Optional[str] = None,
    low_stock: bool = False,
    skip: int = 0,
    limit: int = 100,
) -> List[schemas.InventoryItem]:
    """
    Stock levels for the back office, lowest stock first.

    Args:
        status: Only products whose computed status is this one
            (out_of_stock, low_stock or in_stock)
        search: Case-insensitive fragment of the product name
        low_stock: Only products at or below their minimum level, sold-out included
    """
    stock = models.Product.stock_quantity
    minimum = models.Product.minimum_stock_level
    query = db.query(models.Product)
    if status == "out_of_stock":
        query = query.filter(stock <= 0)
    elif status == "low_stock":
        query = query.filter(stock > 0, stock <= minimum)
    elif status == "in_stock":
        query = query.filter(stock > minimum)
    elif status is not None:
        raise ValueError(f"Unknown stock status: {status}")
    if search:
        query = query.filter(models.Product.name.ilike(f"%{search}%"))
    if low_stock:
        query = query.filter(stock <= minimum)

    products = query.order_by(stock.asc(), models.Product.id.asc()).offset(skip).limit(limit).all()
    return [to_inventory_item(product) for product in products]


def update_stock_settings(db: Session, product_id: int, minimum_stock_level: int) -> schemas.InventoryItem:
    """
    Change a product's low-stock threshold.

    The open alert is raised, refreshed or resolved against the current stock
    right away, as if stock had just moved.

    Raises:
        ProductNotFoundError: if the product does not exist
    """
    now = datetime.utcnow()
    with transaction(db):
        product = (
            db.query(models.Product)
            .filter(models.Product.id == product_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if product is None:
            raise ProductNotFoundError(product_id)
        product.minimum_stock_level = minimum_stock_level
        product.updated_at = now
        _evaluate_low_stock(db, product.id, product.stock_quantity, minimum_stock_level, now)
        db.flush()
    logger.info(f"Minimum stock level for product {product_id} set to {minimum_stock_level}")
    return to_inventory_item(product)
