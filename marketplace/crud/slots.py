import datetime as dt
import logging
import math
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session, joinedload

from ..config import BOOKING_HOLD_HOURS
from ..models import (
    Booking,
    BookingStatus,
    DeliverySlot,
    Order,
    OrderStatus,
    Producer,
    Product,
    User,
    UserRole,
)
from .admin import add_admin_log
from .common import as_utc, dec, start_of_day, utcnow
from .products import get_product, is_product_owner, take_stock
from .reservations import lock_slot, recalc_order_total

logger = logging.getLogger(__name__)

ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)
BOOKABLE_ORDER_STATUSES = (OrderStatus.DRAFT.value, OrderStatus.PENDING.value)
MAX_CAPACITY = Decimal("10000")
MIN_CAPACITY = Decimal("0.1")


def enrich_slot(slot: DeliverySlot, now: Optional[dt.datetime] = None) -> dict:
    now = now or utcnow()
    date = as_utc(slot.date)
    max_capacity = dec(slot.max_capacity)
    reserved = dec(slot.reserved)
    available_capacity = max_capacity - reserved
    is_fully_booked = reserved >= max_capacity
    is_past = date < now
    return {
        "id": slot.id,
        "product_id": slot.product_id,
        "product_name": slot.product.name if slot.product is not None else None,
        "date": date,
        "max_capacity": max_capacity,
        "reserved": reserved,
        "is_available": slot.is_available,
        "available_capacity": available_capacity,
        "capacity_percentage": round(float(reserved / max_capacity * 100)) if max_capacity else 0,
        "is_fully_booked": is_fully_booked,
        "is_past": is_past,
        "can_book": bool(slot.is_available and not is_fully_booked and not is_past),
        "days_from_now": math.ceil((date - now).total_seconds() / 86400),
    }


def _slot_query(db: Session):
    return db.query(DeliverySlot).options(joinedload(DeliverySlot.product).joinedload(Product.producer))


def _producer_for(db: Session, user: User) -> Producer:
    producer = db.query(Producer).filter(Producer.user_id == user.id).first()
    if producer is None:
        raise ValueError("producer_not_found")
    return producer


def list_slots(
    db: Session,
    viewer: User,
    *,
    page: int = 1,
    limit: int = 10,
    date: Optional[dt.datetime] = None,
    product_id: Optional[int] = None,
    available: Optional[bool] = None,
) -> Tuple[List[DeliverySlot], int]:
    query = _slot_query(db)

    if date is not None:
        day = start_of_day(date)
        query = query.filter(DeliverySlot.date >= day, DeliverySlot.date < day + dt.timedelta(days=1))

    if available is not None:
        query = query.filter(DeliverySlot.is_available.is_(available))
        if available:
            query = query.filter(DeliverySlot.reserved < DeliverySlot.max_capacity)

    if product_id is not None:
        query = query.filter(DeliverySlot.product_id == product_id)

    if viewer.role == UserRole.PRODUCER.value:
        producer = _producer_for(db, viewer)
        if product_id is not None:
            product = get_product(db, product_id)
            if product is None or product.producer_id != producer.id:
                raise ValueError("forbidden")
        else:
            query = query.join(Product, DeliverySlot.product_id == Product.id).filter(
                Product.producer_id == producer.id
            )
    elif viewer.role == UserRole.CLIENT.value:
        query = query.filter(
            DeliverySlot.is_available.is_(True),
            DeliverySlot.date >= utcnow(),
            DeliverySlot.reserved < DeliverySlot.max_capacity,
        )

    total = query.count()
    slots = query.order_by(DeliverySlot.date.asc(), DeliverySlot.id.asc()).offset((page - 1) * limit).limit(limit).all()
    return slots, total


def get_slot_or_raise(db: Session, slot_id: int) -> DeliverySlot:
    slot = _slot_query(db).filter(DeliverySlot.id == slot_id).first()
    if slot is None:
        raise ValueError("slot_not_found")
    return slot


def get_slot_for_viewer(db: Session, slot_id: int, viewer: User) -> DeliverySlot:
    slot = get_slot_or_raise(db, slot_id)
    if viewer.role == UserRole.PRODUCER.value and not is_product_owner(slot.product, viewer):
        raise ValueError("not_owner")
    return slot


def _ensure_can_manage(slot: DeliverySlot, user: User) -> None:
    if user.role == UserRole.ADMIN.value:
        return
    if not is_product_owner(slot.product, user):
        raise ValueError("not_owner")


def create_slot(db: Session, user: User, *, product_id: int, date: dt.datetime, max_capacity: Decimal) -> DeliverySlot:
    product = get_product(db, product_id)
    if product is None:
        raise ValueError("product_not_found")
    if not is_product_owner(product, user):
        raise ValueError("not_owner")
    if product.stock is None:
        raise ValueError("stock_not_configured")

    max_capacity = dec(max_capacity)
    if max_capacity < MIN_CAPACITY or max_capacity > MAX_CAPACITY:
        raise ValueError("invalid_capacity")
    if max_capacity > dec(product.stock.quantity):
        raise ValueError(f"capacity_exceeds_stock:{product.stock.quantity}")

    date = as_utc(date)
    now = utcnow()
    if start_of_day(date) < start_of_day(now):
        raise ValueError("slot_in_past")

    day = start_of_day(date)
    for existing in product.delivery_slots:
        if start_of_day(existing.date) == day:
            raise ValueError("slot_exists_for_day")

    slot = DeliverySlot(
        product_id=product.id,
        date=date,
        max_capacity=max_capacity,
        reserved=Decimal("0"),
        is_available=True,
    )
    db.add(slot)
    db.commit()
    db.refresh(slot)
    logger.info("delivery slot %s created for product %s on %s", slot.id, product.id, day.date())
    return slot


def update_slot(db: Session, slot_id: int, user: User, update_data: dict) -> DeliverySlot:
    slot = get_slot_or_raise(db, slot_id)
    _ensure_can_manage(slot, user)

    max_capacity = update_data.get("max_capacity")
    if max_capacity is not None:
        max_capacity = dec(max_capacity)
        if max_capacity < dec(slot.reserved):
            raise ValueError(f"capacity_below_reserved:{slot.reserved}")
        stock = slot.product.stock
        if stock is not None and max_capacity > dec(stock.quantity):
            raise ValueError(f"capacity_exceeds_stock:{stock.quantity}")
        slot.max_capacity = max_capacity

    if update_data.get("is_available") is not None:
        slot.is_available = bool(update_data["is_available"])

    db.commit()
    db.refresh(slot)
    return slot


def delete_slot(db: Session, slot_id: int, user: User) -> DeliverySlot:
    slot = get_slot_or_raise(db, slot_id)
    _ensure_can_manage(slot, user)
    if slot.bookings:
        raise ValueError("slot_has_bookings")
    db.delete(slot)
    db.commit()
    return slot


def book_slot(db: Session, slot_id: int, user: User, *, quantity: Decimal, order_id: int) -> Booking:
    """Hold ``quantity`` on a slot for one of the user's open orders."""
    quantity = dec(quantity)
    if quantity <= 0:
        raise ValueError("invalid_quantity")

    try:
        slot = lock_slot(db, slot_id)
        if slot is None:
            raise ValueError("slot_not_found")
        if not slot.is_available or as_utc(slot.date) < utcnow():
            raise ValueError("slot_unavailable")

        available_capacity = dec(slot.max_capacity) - dec(slot.reserved)
        if quantity > available_capacity:
            raise ValueError(f"insufficient_capacity:{available_capacity}:{quantity}")

        order = db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise ValueError("order_not_found")
        if order.user_id != user.id:
            raise ValueError("not_owner")
        if order.status not in BOOKABLE_ORDER_STATUSES:
            raise ValueError("order_not_editable")

        take_stock(db, slot.product_id, quantity, order.id)

        booking = Booking(
            slot_id=slot.id,
            quantity=quantity,
            price=slot.product.price,
            status=BookingStatus.TEMPORARY.value,
            expires_at=utcnow() + dt.timedelta(hours=BOOKING_HOLD_HOURS),
        )
        order.bookings.append(booking)
        slot.reserved = dec(slot.reserved) + quantity
        recalc_order_total(order)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(booking)
    logger.info("booking %s: %s on slot %s for order %s", booking.id, quantity, slot_id, order_id)
    return booking


def booked_slots(db: Session, user: User) -> List[Booking]:
    return (
        db.query(Booking)
        .join(Order, Booking.order_id == Order.id)
        .options(joinedload(Booking.delivery_slot).joinedload(DeliverySlot.product))
        .filter(Order.user_id == user.id, Booking.status != BookingStatus.CANCELLED.value)
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .all()
    )


def cleanup_old_slots(db: Session, user: User) -> dict:
    """Delete slots dated before the start of yesterday.

    Slots with PENDING or CONFIRMED bookings block producers; admins cancel
    those bookings and delete anyway.
    """
    cutoff = start_of_day(utcnow()) - dt.timedelta(days=1)
    query = _slot_query(db).options(joinedload(DeliverySlot.bookings)).filter(DeliverySlot.date < cutoff)
    is_admin = user.role == UserRole.ADMIN.value
    if not is_admin:
        producer = _producer_for(db, user)
        query = query.join(Product, DeliverySlot.product_id == Product.id).filter(Product.producer_id == producer.id)
    slots = query.all()

    with_active = [s for s in slots if any(b.status in ACTIVE_BOOKING_STATUSES for b in s.bookings)]
    if with_active and not is_admin:
        raise ValueError(f"active_bookings:{len(with_active)}")

    details = []
    cancelled = 0
    affected_orders = {}
    try:
        for slot in slots:
            details.append(
                {
                    "slot_id": slot.id,
                    "product_name": slot.product.name if slot.product else None,
                    "date": as_utc(slot.date).isoformat(),
                    "max_capacity": str(slot.max_capacity),
                    "reserved": str(slot.reserved),
                    "bookings_count": len(slot.bookings),
                }
            )
            for booking in slot.bookings:
                if booking.status in ACTIVE_BOOKING_STATUSES:
                    booking.status = BookingStatus.CANCELLED.value
                    cancelled += 1
                if booking.order is not None:
                    affected_orders[booking.order.id] = booking.order
            db.delete(slot)
        db.flush()

        # orders still being edited keep their total in line with live bookings
        for order in affected_orders.values():
            if order.status in BOOKABLE_ORDER_STATUSES:
                db.expire(order, ["bookings"])
                recalc_order_total(order)

        add_admin_log(
            db,
            admin_id=user.id,
            action="CLEANUP_EXPIRED_DELIVERY_SLOTS",
            entity_type="DeliverySlot",
            entity_id="batch",
            details={
                "deleted_count": len(slots),
                "cutoff_date": cutoff.isoformat(),
                "slots_with_active_bookings": len(with_active),
                "user_role": user.role,
                "slots": details,
            },
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("slot cleanup by user %s removed %d slot(s)", user.id, len(slots))
    return {
        "deleted": len(slots),
        "slot_ids": [d["slot_id"] for d in details],
        "cancelled_bookings": cancelled,
    }
