"""
Storefront Order Service API

FastAPI application for the order core of the storefront: cart, checkout,
order lifecycle, inventory ledger and delivery tracking. Business rules live in
the core modules (``checkout``, ``orders``, ``inventory``, ``tracking``,
``carrier``, ``payments``); the handlers below only authenticate, call them
and shape responses.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    /cart: Shopping cart of the current user
    /checkout: Order summary, checkout and payment verification
    /orders: Order listing, details, tracking and lifecycle actions
    /inventory: Admin stock levels, adjustments, settings, movements and low-stock alerts
    /webhooks: Payment authority and carrier callbacks

Attributes:
    app (FastAPI): Application built from DATABASE_URL
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import BackgroundTasks, Body, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import (
    auth,
    carrier,
    cart,
    checkout,
    config,
    inventory,
    models,
    orders,
    payments,
    schemas,
    tracking,
    webhooks,
)
from .database import build_engine, build_session_factory, get_db
from .errors import OrderNotFoundError, StorefrontError

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _notify_status_change(background_tasks: BackgroundTasks, db: Session, order: models.Order) -> None:
    """Queue an order.status_changed notification from the latest history row."""
    change = orders.latest_status_change(db, order.id)
    if change is not None and change.from_status is not None:
        background_tasks.add_task(
            webhooks.notify_order_status_changed, order.order_number, change.from_status, change.status
        )


def _load_order(db: Session, order_id: int, current_user: auth.CurrentUser) -> models.Order:
    order = orders.get_order(db, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    orders.ensure_can_access(order, current_user)
    return order


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} ({exc.message})")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"code": "internal_error", "detail": "Something went wrong, please try again"},
        )


def register_routes(app: FastAPI) -> None:
    @app.get("/healthz", response_model=dict)
    def health():
        """
        Health check endpoint for orchestration systems.

        Returns:
            dict: {"status": "healthy"} when the service is operational
        """
        return {"status": "healthy"}

    # ------------------------------------------------------------------ cart

    @app.get("/cart", response_model=List[schemas.CartLine])
    def get_cart(
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        return cart.get_cart(db, current_user.id)

    @app.post("/cart", response_model=schemas.CartLine, status_code=status.HTTP_201_CREATED)
    def add_to_cart(
        item: schemas.CartItemCreate,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        """
        Add a product to the current user's cart.

        Raises:
            ProductNotFoundError: 404 if the product does not exist
            CartQuantityError: 400 if the line would exceed the per-product cap
        """
        line = cart.add_to_cart(db, current_user.id, item.product_id, item.quantity)
        return cart.to_cart_line(line)

    @app.put("/cart/{item_id}", response_model=schemas.CartLine)
    def update_cart_item(
        item_id: int,
        update: schemas.CartItemUpdate,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        line = cart.update_cart_item(db, current_user.id, item_id, update.quantity)
        return cart.to_cart_line(line)

    @app.delete("/cart/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
    def remove_from_cart(
        item_id: int,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        cart.remove_from_cart(db, current_user.id, item_id)

    @app.delete("/cart", response_model=dict)
    def clear_cart(
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        removed = cart.clear_cart(db, current_user.id)
        db.commit()
        return {"removed": removed}

    # -------------------------------------------------------------- checkout

    @app.get("/checkout/summary", response_model=schemas.CheckoutSummary)
    def checkout_summary(
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        return checkout.checkout_summary(db, current_user.id)

    @app.post("/checkout", response_model=schemas.CheckoutResponse, status_code=status.HTTP_201_CREATED)
    def place_order(
        request: schemas.CheckoutRequest,
        background_tasks: BackgroundTasks,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        """
        Convert the current user's cart into an order.

        Cash-on-delivery orders are confirmed immediately; card orders stay
        pending until the payment authority reports the session as paid.

        Raises:
            EmptyCartError: 400 if the cart is empty
            InsufficientStockError: 409 if a line exceeds available stock
            InvalidAddressError: 400 if an address id is not the user's
        """
        order = checkout.checkout(db, current_user.id, request)
        view = schemas.Order.model_validate(order)
        background_tasks.add_task(webhooks.notify_order_created, view.model_dump(mode="json"))
        return schemas.CheckoutResponse(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_status,
            payment_session_id=order.payment_session_id,
            total_amount=order.total_amount,
        )

    @app.post("/checkout/verify-payment", response_model=schemas.Order)
    async def verify_payment(
        request: schemas.VerifyPaymentRequest,
        background_tasks: BackgroundTasks,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        order = await payments.verify_payment(db, request.session_id, current_user)
        _notify_status_change(background_tasks, db, order)
        return order

    # -------------------------------------------------------------- webhooks

    @app.post("/webhooks/payment", response_model=dict)
    def payment_webhook(
        payload: schemas.PaymentEventPayload,
        background_tasks: BackgroundTasks,
        db: Session = Depends(get_db),
    ):
        """Payment authority notification; repeats are acknowledged without effect."""
        result = payments.handle_payment_event(db, payload)
        if not result.duplicate and result.order is not None:
            _notify_status_change(background_tasks, db, result.order)
        return {
            "received": True,
            "duplicate": result.duplicate,
            "order_number": result.order.order_number if result.order is not None else None,
            "status": result.order.status if result.order is not None else None,
        }

    @app.post("/webhooks/carrier", response_model=schemas.CarrierWebhookResult)
    def carrier_webhook(
        background_tasks: BackgroundTasks,
        payload: Dict[str, Any] = Body(...),
        db: Session = Depends(get_db),
    ):
        """
        Carrier tracking callback (unauthenticated).

        Malformed payloads and unknown tracking numbers get a non-fatal
        response body instead of an error.
        """
        try:
            event = schemas.CarrierEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Malformed carrier payload: {e.errors()}")
            result = schemas.CarrierWebhookResult(success=False, message="Invalid tracking payload")
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.model_dump())

        result = carrier.handle_carrier_event(db, event)
        if not result.success:
            code = status.HTTP_404_NOT_FOUND if result.order_number is None else status.HTTP_409_CONFLICT
            return JSONResponse(status_code=code, content=result.model_dump())
        if not result.duplicate and event.status.strip().lower() == models.OrderStatus.DELIVERED.value:
            order = orders.get_order(db, result.order_id)
            _notify_status_change(background_tasks, db, order)
        return result

    # ---------------------------------------------------------------- orders

    @app.get("/orders", response_model=List[schemas.Order])
    def list_orders(
        status: Optional[models.OrderStatus] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        """
        List orders, newest first.

        Customers get their own orders; admins get all of them.
        """
        return orders.list_orders(db, current_user, status=status, search=search, skip=skip, limit=limit)

    @app.get("/orders/{order_id}", response_model=schemas.Order)
    def get_order(
        order_id: int,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        """
        Get a single order by ID (owner or admin).

        Raises:
            NotAuthorizedError: 403 if not authorized
            OrderNotFoundError: 404 if order not found
        """
        return _load_order(db, order_id, current_user)

    @app.get("/orders/{order_id}/tracking", response_model=schemas.OrderTracking)
    def get_order_tracking(
        order_id: int,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        return tracking.get_order_tracking(db, order_id, current_user)

    @app.get("/orders/{order_id}/estimated-delivery", response_model=schemas.DeliveryEstimate)
    def get_estimated_delivery(
        order_id: int,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        order = _load_order(db, order_id, current_user)
        return tracking.estimate_delivery(order, datetime.utcnow())

    @app.put("/orders/{order_id}/cancel", response_model=schemas.Order)
    def cancel_order(
        order_id: int,
        background_tasks: BackgroundTasks,
        request: Optional[schemas.CancelRequest] = None,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.get_current_user),
    ):
        """
        Cancel an order (owner or admin) and return its items to stock.

        Raises:
            InvalidTransitionError: 409 once the order has shipped
        """
        reason = request.reason if request is not None else None
        order = orders.cancel_order(db, order_id, current_user, reason=reason)
        _notify_status_change(background_tasks, db, order)
        return order

    @app.put("/orders/{order_id}/status", response_model=schemas.Order)
    def update_order_status(
        order_id: int,
        update: schemas.StatusUpdate,
        background_tasks: BackgroundTasks,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        order = orders.set_status(db, order_id, update.status, current_user.id, note=update.note)
        _notify_status_change(background_tasks, db, order)
        return order

    @app.put("/orders/{order_id}/refund", response_model=schemas.Order)
    def refund_order(
        order_id: int,
        refund: schemas.RefundRequest,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        return orders.process_refund(db, order_id, refund.refund_amount, refund.reason, current_user.id)

    @app.post("/orders/bulk", response_model=List[schemas.BulkResult])
    def bulk_update_orders(
        request: schemas.BulkUpdateRequest,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        """Apply one admin action to many orders; failures are reported per order."""
        return orders.bulk_update_orders(db, request.order_ids, request.action, request.data, current_user)

    @app.post(
        "/orders/{order_id}/delivery-attempts",
        response_model=schemas.DeliveryAttempt,
        status_code=status.HTTP_201_CREATED,
    )
    def record_delivery_attempt(
        order_id: int,
        attempt: schemas.DeliveryAttemptCreate,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        return orders.record_delivery_attempt(db, order_id, attempt, current_user.id)

    @app.post(
        "/orders/{order_id}/tracking-events",
        response_model=schemas.TrackingEvent,
        status_code=status.HTTP_201_CREATED,
    )
    def add_tracking_event(
        order_id: int,
        event: schemas.TrackingEventCreate,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        return orders.add_tracking_event(db, order_id, event, current_user.id)

    @app.put("/orders/{order_id}/tracking-info", response_model=schemas.Order)
    def update_tracking_info(
        order_id: int,
        info: schemas.TrackingInfoUpdate,
        background_tasks: BackgroundTasks,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        order = orders.update_tracking_info(db, order_id, info, current_user.id)
        _notify_status_change(background_tasks, db, order)
        return order

    # ------------------------------------------------------------- inventory

    @app.get("/inventory", response_model=List[schemas.InventoryItem])
    def list_inventory(
        status: Optional[Literal["out_of_stock", "low_stock", "in_stock"]] = None,
        search: Optional[str] = None,
        low_stock: bool = False,
        skip: int = 0,
        limit: int = 100,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        """Stock levels with their computed status (admin)."""
        return inventory.list_inventory(
            db, status=status, search=search, low_stock=low_stock, skip=skip, limit=limit
        )

    @app.put("/inventory/{product_id}/settings", response_model=schemas.InventoryItem)
    def update_stock_settings(
        product_id: int,
        request: schemas.StockSettingsUpdate,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        """
        Change the low-stock threshold of a product (admin).

        Raises:
            ProductNotFoundError: 404 if the product does not exist
        """
        return inventory.update_stock_settings(db, product_id, request.minimum_stock_level)

    @app.put("/inventory/{product_id}/stock", response_model=schemas.StockAdjustmentResult)
    def adjust_stock(
        product_id: int,
        request: schemas.StockAdjustmentRequest,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        """
        Manual stock correction (admin).

        Raises:
            ProductNotFoundError: 404 if the product does not exist
            InsufficientStockError: 409 if the adjustment would make stock negative
        """
        return inventory.admin_adjust_stock(
            db, product_id, request.adjustment, request.reason, request.movement_type, actor=current_user.id
        )

    @app.get("/inventory/{product_id}/movements", response_model=List[schemas.StockMovement])
    def list_movements(
        product_id: int,
        skip: int = 0,
        limit: int = 100,
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        return inventory.list_movements(db, product_id, skip=skip, limit=limit)

    @app.get("/inventory/alerts/low-stock", response_model=List[schemas.StockAlert])
    def low_stock_alerts(
        db: Session = Depends(get_db),
        current_user: auth.CurrentUser = Depends(auth.require_admin),
    ):
        return inventory.low_stock_alerts(db)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    models.Base.metadata.create_all(bind=app.state.engine)
    yield


def create_app(database_url: Optional[str] = None) -> FastAPI:
    """
    Build the application with its own engine and session factory.

    Args:
        database_url: Database to use; defaults to DATABASE_URL

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(title="storefront-orders", lifespan=lifespan)
    engine = build_engine(database_url or config.DATABASE_URL)
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)

    register_exception_handlers(app)
    register_routes(app)
    return app


app = create_app()
