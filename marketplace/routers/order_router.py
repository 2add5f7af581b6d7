import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..auth import (
    get_current_client,
    get_current_producer,
    get_current_producer_or_admin,
    get_current_user,
)
from ..crud import orders as crud_orders
from ..crud import users as crud_users
from ..crud import wallets as crud_wallets
from ..crud.common import pagination
from ..crud.invoices import invoice_event_payload
from ..crud.notifications import notify_safely
from ..crud.reservations import sweep_expired_bookings
from ..database import get_db
from ..errors import http_error
from ..messaging import emit_event
from ..models import OrderStatus, User
from ..schemas import (
    CheckoutRequest,
    OrderCreate,
    OrderItemAdd,
    OrderItemUpdate,
    OrderListResponse,
    OrderOut,
    OrderStatusUpdate,
    PendingCount,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderOut, status_code=status.HTTP_201_CREATED)
def create_order(
    body: Optional[OrderCreate] = None,
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    """Return the caller's cart (latest DRAFT order), creating it if needed.

    Items in the body are added to the cart; each one takes its quantity
    out of stock immediately.
    """
    items = [i.model_dump() for i in body.items] if body else []
    try:
        return crud_orders.create_or_get_cart(db, current_user, items)
    except ValueError as e:
        raise http_error(e)


@router.get("/cart", response_model=OrderOut)
def get_cart(
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    order = crud_orders.get_cart(db, current_user.id)
    if order is None:
        raise http_error(ValueError("cart_not_found"))
    return order


@router.post("/items", response_model=OrderOut, status_code=status.HTTP_201_CREATED)
def add_item(
    body: OrderItemAdd,
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    try:
        return crud_orders.add_item(db, current_user, body.product_id, body.quantity, body.order_id)
    except ValueError as e:
        raise http_error(e)


@router.patch("/items/{item_id}", response_model=OrderOut)
def update_item(
    item_id: int,
    body: OrderItemUpdate,
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    try:
        return crud_orders.update_item(db, current_user, item_id, body.quantity)
    except ValueError as e:
        raise http_error(e)


@router.delete("/items/{item_id}", response_model=OrderOut)
def delete_item(
    item_id: int,
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    try:
        return crud_orders.delete_item(db, current_user, item_id)
    except ValueError as e:
        raise http_error(e)


@router.get("", response_model=OrderListResponse)
def list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    order_status = parse_order_status(status_filter)
    limit = min(limit, 50)
    orders, total = crud_orders.list_user_orders(db, current_user.id, status=order_status, page=page, limit=limit)
    return {"orders": orders, "pagination": pagination(page, limit, total)}


@router.get("/producer", response_model=OrderListResponse)
def list_producer_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    current_user: User = Depends(get_current_producer),
    db: Session = Depends(get_db),
):
    order_status = parse_order_status(status_filter)
    limit = min(limit, 50)
    try:
        producer = crud_users.get_producer_for_user(db, current_user.id)
    except ValueError as e:
        raise http_error(e)
    orders, total = crud_orders.list_producer_orders(db, producer, status=order_status, page=page, limit=limit)
    return {"orders": orders, "pagination": pagination(page, limit, total)}


@router.get("/producer/pending-count", response_model=PendingCount)
def producer_pending_count(
    current_user: User = Depends(get_current_producer),
    db: Session = Depends(get_db),
):
    try:
        producer = crud_users.get_producer_for_user(db, current_user.id)
    except ValueError as e:
        raise http_error(e)
    return {"count": crud_orders.producer_pending_count(db, producer)}


@router.get("/{order_id}", response_model=OrderOut)
def get_order(
    order_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        order = crud_orders.get_order_or_raise(db, order_id)
    except ValueError as e:
        raise http_error(e)
    if not crud_orders.can_view_order(order, current_user):
        raise http_error(ValueError("not_owner"))
    return order


@router.post("/{order_id}/checkout", response_model=OrderOut)
def checkout(
    order_id: int,
    body: CheckoutRequest,
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    # expired holds must not be confirmed
    sweep_expired_bookings(db)
    try:
        order, invoice = crud_orders.checkout(
            db,
            order_id,
            current_user,
            delivery_type=body.delivery_type.value,
            delivery_info=body.delivery_info,
            payment_method=body.payment_method.value,
        )
    except ValueError as e:
        raise http_error(e)

    # Everything below is best-effort: the order is already committed.
    notify_safely(db, crud_orders.checkout_notifications(order, invoice))
    crud_wallets.record_order_sales_safely(db, order)
    emit_event("order.created", crud_orders.order_event_payload(order))
    if invoice is not None:
        emit_event("invoice.created", invoice_event_payload(invoice))

    db.refresh(order)
    return order


@router.post("/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: int,
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    try:
        order = crud_orders.cancel_order(db, order_id, current_user)
    except ValueError as e:
        raise http_error(e)

    # a PENDING order may already carry wallet credits
    crud_wallets.settle_order_safely(db, order)
    db.refresh(order)
    return order


@router.patch("/{order_id}/status", response_model=OrderOut)
def update_order_status(
    order_id: int,
    body: OrderStatusUpdate,
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    try:
        order, old_status = crud_orders.update_status(db, order_id, current_user, body.status)
    except ValueError as e:
        raise http_error(e)

    if order.status != old_status:
        notify_safely(db, [crud_orders.status_change_notification(order, old_status)])
        crud_wallets.settle_order_safely(db, order)
        emit_event("order.status_changed", {**crud_orders.order_event_payload(order), "old_status": old_status})
        db.refresh(order)
    return order


def parse_order_status(value: Optional[str]) -> Optional[OrderStatus]:
    if value is None or value == "":
        return None
    try:
        return OrderStatus(value.upper())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid status: {value}")
