import logging
import math
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from ..models import Booking, BookingStatus, DeliverySlot, Product, User, UserRole
from .common import as_utc, dec, money, utcnow
from .products import return_stock, take_stock
from .reservations import lock_slot, recalc_order_total, release_booking, sweep_expired_bookings
from .slots import enrich_slot

logger = logging.getLogger(__name__)

OWNER_EDITABLE = (BookingStatus.TEMPORARY.value, BookingStatus.PENDING.value)


def cleanup_expired(db: Session) -> List[int]:
    return sweep_expired_bookings(db)


def get_booking(db: Session, booking_id: int) -> Optional[Booking]:
    return (
        db.query(Booking)
        .options(
            joinedload(Booking.order),
            joinedload(Booking.delivery_slot).joinedload(DeliverySlot.product).joinedload(Product.producer),
        )
        .filter(Booking.id == booking_id)
        .first()
    )


def _is_product_producer(booking: Booking, user: User) -> bool:
    slot = booking.delivery_slot
    return (
        user.role == UserRole.PRODUCER.value
        and slot is not None
        and slot.product is not None
        and slot.product.producer is not None
        and slot.product.producer.user_id == user.id
    )


def _is_order_owner(booking: Booking, user: User) -> bool:
    return booking.order is not None and booking.order.user_id == user.id


def get_booking_for_viewer(db: Session, booking_id: int, user: User) -> Booking:
    booking = get_booking(db, booking_id)
    if booking is None:
        raise ValueError("booking_not_found")
    if not (
        user.role == UserRole.ADMIN.value or _is_order_owner(booking, user) or _is_product_producer(booking, user)
    ):
        raise ValueError("forbidden")
    return booking


def enrich_booking(booking: Booking) -> dict:
    now = utcnow()
    slot = booking.delivery_slot
    price = booking.price
    if price is None and slot is not None and slot.product is not None:
        price = slot.product.price
    expires_at = as_utc(booking.expires_at)
    days_until = None
    if slot is not None:
        days_until = math.ceil((as_utc(slot.date) - now).total_seconds() / 86400)
    return {
        "id": booking.id,
        "slot_id": booking.slot_id,
        "order_id": booking.order_id,
        "quantity": dec(booking.quantity),
        "price": price,
        "status": booking.status,
        "expires_at": expires_at,
        "created_at": booking.created_at,
        "can_modify": booking.status in OWNER_EDITABLE,
        "is_expired": bool(expires_at and expires_at < now),
        "days_until_delivery": days_until,
        "total_value": money(dec(booking.quantity) * dec(price)),
        "slot": enrich_slot(slot, now) if slot is not None else None,
    }


def update_booking(
    db: Session,
    booking_id: int,
    user: User,
    *,
    quantity: Optional[Decimal] = None,
    status: Optional[BookingStatus] = None,
) -> Booking:
    booking = get_booking(db, booking_id)
    if booking is None:
        raise ValueError("booking_not_found")

    allowed = (
        user.role == UserRole.ADMIN.value
        or _is_product_producer(booking, user)
        or (_is_order_owner(booking, user) and booking.status in OWNER_EDITABLE)
    )
    if not allowed:
        raise ValueError("forbidden")
    if booking.status == BookingStatus.CANCELLED.value:
        raise ValueError("booking_cancelled")

    new_status = BookingStatus(status).value if status is not None else None

    try:
        if new_status == BookingStatus.CANCELLED.value:
            release_booking(db, booking)
        else:
            if quantity is not None and dec(quantity) != dec(booking.quantity):
                _change_quantity(db, booking, dec(quantity))
            if new_status is not None and new_status != booking.status:
                if new_status == BookingStatus.CONFIRMED.value and booking.status == BookingStatus.TEMPORARY.value:
                    booking.expires_at = None
                booking.status = new_status

        if booking.order is not None:
            recalc_order_total(booking.order)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(booking)
    return booking


def _change_quantity(db: Session, booking: Booking, quantity: Decimal) -> None:
    slot = lock_slot(db, booking.slot_id)
    if slot is None:
        raise ValueError("slot_not_found")
    diff = quantity - dec(booking.quantity)
    if diff > 0:
        available_capacity = dec(slot.max_capacity) - dec(slot.reserved)
        if diff > available_capacity:
            raise ValueError(f"insufficient_capacity:{available_capacity}:{diff}")
        take_stock(db, slot.product_id, diff, booking.order_id)
    elif diff < 0:
        return_stock(db, slot.product_id, -diff, booking.order_id)
    slot.reserved = dec(slot.reserved) + diff
    booking.quantity = quantity


def delete_booking(db: Session, booking_id: int, user: User) -> Booking:
    booking = get_booking(db, booking_id)
    if booking is None:
        raise ValueError("booking_not_found")
    if not (
        user.role == UserRole.ADMIN.value or _is_order_owner(booking, user) or _is_product_producer(booking, user)
    ):
        raise ValueError("forbidden")
    if booking.status == BookingStatus.CONFIRMED.value and user.role != UserRole.ADMIN.value:
        raise ValueError("booking_confirmed")

    order = booking.order
    try:
        release_booking(db, booking)
        if order is not None:
            order.bookings.remove(booking)
            recalc_order_total(order)
        else:
            db.delete(booking)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("booking %s deleted by user %s", booking_id, user.id)
    return booking
