import datetime as dt
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, joinedload, selectinload

from ..config import DELIVERY_FEE, INVOICE_DUE_DAYS
from ..models import (
    Booking,
    BookingStatus,
    DeliverySlot,
    Invoice,
    InvoiceStatus,
    NotificationType,
    Order,
    OrderItem,
    OrderStatus,
    Producer,
    Product,
    User,
    UserRole,
)
from .common import dec, money, utcnow
from .products import get_product, return_stock, take_stock
from .reservations import recalc_order_total, release_order

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = {
    OrderStatus.DRAFT.value,
    OrderStatus.PENDING.value,
    OrderStatus.INVOICE_PENDING.value,
}
CHECKOUT_STATUSES = {OrderStatus.DRAFT.value, OrderStatus.PENDING.value}
CANCELLABLE_STATUSES = {OrderStatus.DRAFT.value, OrderStatus.PENDING.value}

# Transitions a producer may apply; admins are not restricted.
PRODUCER_TRANSITIONS: Dict[str, Set[str]] = {
    OrderStatus.PENDING.value: {OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value},
    OrderStatus.INVOICE_PENDING.value: {OrderStatus.INVOICE_PAID.value, OrderStatus.CANCELLED.value},
    OrderStatus.INVOICE_PAID.value: {OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value},
    OrderStatus.INVOICE_OVERDUE.value: {OrderStatus.INVOICE_PAID.value, OrderStatus.CANCELLED.value},
}


def _order_query(db: Session):
    return db.query(Order).options(
        selectinload(Order.items).joinedload(OrderItem.product).joinedload(Product.producer),
        selectinload(Order.bookings)
        .joinedload(Booking.delivery_slot)
        .joinedload(DeliverySlot.product)
        .joinedload(Product.producer),
        joinedload(Order.invoice),
    )


def get_order(db: Session, order_id: int) -> Optional[Order]:
    return _order_query(db).filter(Order.id == order_id).first()


def get_order_or_raise(db: Session, order_id: int) -> Order:
    order = get_order(db, order_id)
    if order is None:
        raise ValueError("order_not_found")
    return order


def get_owned_order(db: Session, order_id: int, user: User) -> Order:
    order = get_order_or_raise(db, order_id)
    if order.user_id != user.id:
        raise ValueError("not_owner")
    return order


def order_products(order: Order) -> List[Product]:
    products = [item.product for item in order.items if item.product is not None]
    for booking in order.bookings:
        if booking.delivery_slot is not None and booking.delivery_slot.product is not None:
            products.append(booking.delivery_slot.product)
    return products


def order_producer_ids(order: Order) -> Set[int]:
    return {p.producer_id for p in order_products(order)}


def order_producer_user_ids(order: Order) -> Set[int]:
    return {p.producer.user_id for p in order_products(order) if p.producer is not None}


def producer_in_order(order: Order, user: User) -> bool:
    return user.id in order_producer_user_ids(order)


def can_view_order(order: Order, user: User) -> bool:
    if user.role == UserRole.ADMIN.value:
        return True
    if user.role == UserRole.PRODUCER.value:
        return producer_in_order(order, user)
    return order.user_id == user.id


def get_cart(db: Session, user_id: int) -> Optional[Order]:
    return (
        _order_query(db)
        .filter(Order.user_id == user_id, Order.status == OrderStatus.DRAFT.value)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .first()
    )


def _add_line(db: Session, order: Order, product_id: int, quantity: Decimal) -> OrderItem:
    """Validate the product, take the stock and merge into the order's lines."""
    quantity = dec(quantity)
    if quantity <= 0:
        raise ValueError("invalid_quantity")

    product = get_product(db, product_id)
    if product is None:
        raise ValueError("product_not_found")
    if not product.available:
        raise ValueError("product_unavailable")

    existing = next((i for i in order.items if i.product_id == product_id), None)
    new_quantity = quantity + (dec(existing.quantity) if existing else Decimal("0"))
    if new_quantity < dec(product.min_order_quantity):
        raise ValueError(f"below_min_quantity:{product.min_order_quantity}")

    take_stock(db, product_id, quantity, order.id)

    if existing is not None:
        existing.quantity = new_quantity
        existing.price = product.price
        return existing

    item = OrderItem(product_id=product_id, quantity=quantity, price=product.price, product=product)
    order.items.append(item)
    return item


def create_or_get_cart(db: Session, user: User, items: List[dict]) -> Order:
    """Return the user's DRAFT cart, creating it, and add ``items`` to it."""
    order = get_cart(db, user.id)
    if order is None:
        order = Order(user_id=user.id, status=OrderStatus.DRAFT.value, total=Decimal("0"), delivery_fee=Decimal("0"))
        db.add(order)
        db.flush()

    try:
        # stable order avoids lock inversions between concurrent carts
        for entry in sorted(items, key=lambda i: int(i["product_id"])):
            _add_line(db, order, int(entry["product_id"]), entry["quantity"])
        recalc_order_total(order)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    return order


def add_item(db: Session, user: User, product_id: int, quantity: Decimal, order_id: Optional[int] = None) -> Order:
    if order_id is not None:
        order = get_owned_order(db, order_id, user)
        if order.status not in EDITABLE_STATUSES:
            raise ValueError("order_not_editable")
    else:
        order = get_cart(db, user.id)
        if order is None:
            order = Order(user_id=user.id, status=OrderStatus.DRAFT.value, total=Decimal("0"), delivery_fee=Decimal("0"))
            db.add(order)
            db.flush()

    try:
        _add_line(db, order, product_id, quantity)
        recalc_order_total(order)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    return order


def _get_owned_item(db: Session, item_id: int, user: User) -> OrderItem:
    item = db.query(OrderItem).filter(OrderItem.id == item_id).first()
    if item is None:
        raise ValueError("order_item_not_found")
    if item.order.user_id != user.id:
        raise ValueError("not_owner")
    if item.order.status not in EDITABLE_STATUSES:
        raise ValueError("order_not_editable")
    return item


def update_item(db: Session, user: User, item_id: int, quantity: Decimal) -> Order:
    item = _get_owned_item(db, item_id, user)
    order = item.order
    quantity = dec(quantity)
    if item.product is not None and quantity < dec(item.product.min_order_quantity):
        raise ValueError(f"below_min_quantity:{item.product.min_order_quantity}")

    diff = quantity - dec(item.quantity)
    try:
        if diff > 0:
            take_stock(db, item.product_id, diff, order.id)
        elif diff < 0:
            return_stock(db, item.product_id, -diff, order.id)
        item.quantity = quantity
        recalc_order_total(order)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    return order


def delete_item(db: Session, user: User, item_id: int) -> Order:
    item = _get_owned_item(db, item_id, user)
    order = item.order
    return_stock(db, item.product_id, item.quantity, order.id)
    order.items.remove(item)
    recalc_order_total(order)
    db.commit()
    db.refresh(order)
    return order


def list_user_orders(
    db: Session,
    user_id: int,
    *,
    status: Optional[OrderStatus] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Order], int]:
    query = _order_query(db).filter(Order.user_id == user_id)
    if status is not None:
        query = query.filter(Order.status == OrderStatus(status).value)
    else:
        query = query.filter(Order.status != OrderStatus.DRAFT.value)
    total = query.count()
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return orders, total


def _producer_order_filter(producer_id: int):
    item_orders = (
        select(OrderItem.order_id)
        .join(Product, OrderItem.product_id == Product.id)
        .where(Product.producer_id == producer_id)
    )
    booking_orders = (
        select(Booking.order_id)
        .join(DeliverySlot, Booking.slot_id == DeliverySlot.id)
        .join(Product, DeliverySlot.product_id == Product.id)
        .where(Product.producer_id == producer_id)
    )
    return or_(Order.id.in_(item_orders), Order.id.in_(booking_orders))


def list_producer_orders(
    db: Session,
    producer: Producer,
    *,
    status: Optional[OrderStatus] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Order], int]:
    query = _order_query(db).filter(_producer_order_filter(producer.id))
    if status is not None:
        query = query.filter(Order.status == OrderStatus(status).value)
    else:
        query = query.filter(Order.status != OrderStatus.DRAFT.value)
    total = query.count()
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return orders, total


def producer_pending_count(db: Session, producer: Producer) -> int:
    return (
        db.query(Order)
        .filter(
            _producer_order_filter(producer.id),
            Order.status.in_([OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value]),
        )
        .count()
    )


def list_all_orders(
    db: Session,
    *,
    status: Optional[OrderStatus] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Order], int]:
    query = _order_query(db)
    if status is not None:
        query = query.filter(Order.status == OrderStatus(status).value)
    else:
        query = query.filter(Order.status != OrderStatus.DRAFT.value)
    total = query.count()
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return orders, total


def checkout(
    db: Session,
    order_id: int,
    user: User,
    *,
    delivery_type: str,
    delivery_info: Optional[dict],
    payment_method: str,
) -> Tuple[Order, Optional[Invoice]]:
    order = get_owned_order(db, order_id, user)
    if order.status not in CHECKOUT_STATUSES:
        raise ValueError("order_not_editable")

    live_bookings = [b for b in order.bookings if b.status != BookingStatus.CANCELLED.value]
    if not order.items and not live_bookings:
        raise ValueError("order_empty")

    if payment_method == "invoice":
        for product in order_products(order):
            if not product.accept_deferred:
                raise ValueError(f"deferred_not_accepted:{product.name}")

    fee = money(DELIVERY_FEE) if delivery_type == "delivery" else Decimal("0.00")

    invoice = None
    try:
        for booking in live_bookings:
            if booking.status == BookingStatus.TEMPORARY.value:
                booking.status = BookingStatus.CONFIRMED.value
                booking.expires_at = None

        recalc_order_total(order)
        order.delivery_fee = fee
        order.delivery_type = delivery_type
        order.delivery_info = delivery_info if delivery_type == "delivery" else None
        order.payment_method = payment_method

        if payment_method == "invoice":
            order.status = OrderStatus.INVOICE_PENDING.value
            invoice = Invoice(
                order=order,
                user_id=user.id,
                amount=money(dec(order.total) + fee),
                status=InvoiceStatus.PENDING.value,
                due_date=utcnow() + dt.timedelta(days=INVOICE_DUE_DAYS),
                payment_method="invoice",
            )
            db.add(invoice)
        else:
            order.status = OrderStatus.CONFIRMED.value
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("order %s checked out (%s, %s)", order.id, payment_method, order.status)
    return order, invoice


def cancel_order(db: Session, order_id: int, user: User) -> Order:
    order = get_owned_order(db, order_id, user)
    if order.status not in CANCELLABLE_STATUSES:
        raise ValueError("order_not_cancellable")
    try:
        release_order(db, order)
        order.status = OrderStatus.CANCELLED.value
        recalc_order_total(order)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    return order


def update_status(db: Session, order_id: int, user: User, new_status: OrderStatus) -> Tuple[Order, str]:
    """Move an order to ``new_status``; returns the order and its old status."""
    order = get_order_or_raise(db, order_id)
    new_status = OrderStatus(new_status).value
    old_status = order.status

    if user.role == UserRole.PRODUCER.value:
        if not producer_in_order(order, user):
            raise ValueError("not_owner")
        if new_status not in PRODUCER_TRANSITIONS.get(old_status, set()):
            raise ValueError(f"invalid_transition:{old_status}:{new_status}")
    elif user.role != UserRole.ADMIN.value:
        raise ValueError("forbidden")

    if new_status == old_status:
        return order, old_status
    # CANCELLED is terminal, its stock and bookings were already released
    if old_status == OrderStatus.CANCELLED.value:
        raise ValueError("order_cancelled")

    try:
        if new_status == OrderStatus.CANCELLED.value:
            release_order(db, order)
            recalc_order_total(order)
            if order.invoice is not None and order.invoice.status in (
                InvoiceStatus.PENDING.value,
                InvoiceStatus.OVERDUE.value,
            ):
                order.invoice.status = InvoiceStatus.CANCELLED.value
        order.status = new_status
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    logger.info("order %s status %s -> %s by user %s", order.id, old_status, new_status, user.id)
    return order, old_status


def set_admin_notes(db: Session, order_id: int, notes: Optional[str]) -> Order:
    order = get_order_or_raise(db, order_id)
    order.admin_notes = notes
    db.commit()
    db.refresh(order)
    return order


def checkout_notifications(order: Order, invoice: Optional[Invoice]) -> List[dict]:
    notes = []
    for producer_user_id in sorted(order_producer_user_ids(order)):
        notes.append(
            {
                "user_id": producer_user_id,
                "type": NotificationType.NEW_ORDER,
                "title": "New order",
                "message": f"Order #{order.id} contains some of your products.",
                "link": f"/producer/orders?order={order.id}",
                "data": {"order_id": order.id},
            }
        )
    if invoice is not None:
        notes.append(
            {
                "user_id": order.user_id,
                "type": NotificationType.INVOICE_CREATED,
                "title": "Invoice created",
                "message": (
                    f"Invoice {invoice.invoice_number} of {invoice.amount} is due on "
                    f"{invoice.due_date:%Y-%m-%d}."
                ),
                "link": "/invoices",
                "data": {"invoice_id": invoice.id, "order_id": order.id},
            }
        )
    return notes


def status_change_notification(order: Order, old_status: str) -> dict:
    return {
        "user_id": order.user_id,
        "type": NotificationType.ORDER_STATUS_CHANGED,
        "title": "Order status updated",
        "message": f"Order #{order.id} is now {order.status}.",
        "link": f"/orders?order={order.id}",
        "data": {"order_id": order.id, "old_status": old_status, "new_status": order.status},
    }


def order_event_payload(order: Order) -> dict:
    return {
        "order_id": order.id,
        "user_id": order.user_id,
        "user_email": order.user.email if order.user is not None else None,
        "status": order.status,
        "total": str(order.total),
        "delivery_fee": str(order.delivery_fee),
        "payment_method": order.payment_method,
        "items": [{"product_id": i.product_id, "quantity": str(i.quantity)} for i in order.items],
        "bookings": [
            {"slot_id": b.slot_id, "quantity": str(b.quantity)}
            for b in order.bookings
            if b.status != BookingStatus.CANCELLED.value
        ],
    }
