"""Stock and delivery-slot bookkeeping shared by orders, slots and bookings.

Nothing here commits: callers own the transaction.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from ..models import Booking, BookingStatus, DeliverySlot, Order
from .common import dec, money, utcnow, as_utc
from .products import return_stock

logger = logging.getLogger(__name__)


def recalc_order_total(order: Order) -> Decimal:
    """Recompute ``order.total`` from its lines and live bookings."""
    total = Decimal("0")
    for item in order.items:
        total += dec(item.price) * dec(item.quantity)
    for booking in order.bookings:
        if booking.status == BookingStatus.CANCELLED.value:
            continue
        total += dec(booking.price) * dec(booking.quantity)
    order.total = money(total)
    return order.total


def lock_slot(db: Session, slot_id: int) -> Optional[DeliverySlot]:
    return db.query(DeliverySlot).filter(DeliverySlot.id == slot_id).with_for_update().first()


def release_slot_quantity(slot: DeliverySlot, quantity: Decimal) -> None:
    reserved = dec(slot.reserved) - dec(quantity)
    # never below zero, even if a slot was edited by hand
    slot.reserved = reserved if reserved > 0 else Decimal("0")


def release_booking(db: Session, booking: Booking) -> None:
    """Cancel ``booking`` and give its quantity back to the slot and the stock."""
    if booking.status == BookingStatus.CANCELLED.value:
        return
    slot = lock_slot(db, booking.slot_id)
    if slot is not None:
        release_slot_quantity(slot, booking.quantity)
        return_stock(db, slot.product_id, booking.quantity, booking.order_id)
    booking.status = BookingStatus.CANCELLED.value
    booking.expires_at = None


def release_order(db: Session, order: Order) -> None:
    """Return every item and live booking of ``order`` to stock."""
    for item in order.items:
        return_stock(db, item.product_id, item.quantity, order.id)
    for booking in order.bookings:
        release_booking(db, booking)


def sweep_expired_bookings(db: Session) -> List[int]:
    """Cancel TEMPORARY bookings whose hold has run out.

    Expiry is compared in Python on UTC-normalised values, so backends that
    drop tzinfo behave the same. Commits when something was released.
    """
    now = utcnow()
    candidates = (
        db.query(Booking)
        .options(joinedload(Booking.order))
        .filter(Booking.status == BookingStatus.TEMPORARY.value, Booking.expires_at.isnot(None))
        .order_by(Booking.id)
        .all()
    )
    expired = [b for b in candidates if as_utc(b.expires_at) < now]
    if not expired:
        return []

    touched_orders = {}
    for booking in expired:
        release_booking(db, booking)
        if booking.order is not None:
            touched_orders[booking.order.id] = booking.order
    for order in touched_orders.values():
        recalc_order_total(order)
    db.commit()

    ids = [b.id for b in expired]
    logger.info("released %d expired booking(s): %s", len(ids), ids)
    return ids
