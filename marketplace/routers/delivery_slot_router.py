import datetime as dt
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..auth import (
    get_current_client,
    get_current_producer,
    get_current_producer_or_admin,
    get_current_user,
)
from ..crud import slots as crud_slots
from ..crud.common import pagination, utcnow
from ..crud.reservations import sweep_expired_bookings
from ..database import get_db
from ..errors import http_error
from ..models import User
from ..schemas import (
    BookedSlotOut,
    BookingOut,
    DeliverySlotCreate,
    DeliverySlotListResponse,
    DeliverySlotOut,
    DeliverySlotUpdate,
    SlotBookRequest,
    SlotCleanupResult,
)

router = APIRouter(prefix="/delivery-slots", tags=["delivery-slots"])


@router.get("", response_model=DeliverySlotListResponse)
def list_slots(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    date: Optional[dt.datetime] = None,
    product_id: Optional[int] = Query(None, gt=0),
    available: Optional[bool] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    sweep_expired_bookings(db)
    try:
        slots, total = crud_slots.list_slots(
            db,
            current_user,
            page=page,
            limit=limit,
            date=date,
            product_id=product_id,
            available=available,
        )
    except ValueError as e:
        raise http_error(e)
    now = utcnow()
    return {
        "slots": [crud_slots.enrich_slot(s, now) for s in slots],
        "pagination": pagination(page, limit, total),
    }


@router.post("", response_model=DeliverySlotOut, status_code=status.HTTP_201_CREATED)
def create_slot(
    body: DeliverySlotCreate,
    current_user: User = Depends(get_current_producer),
    db: Session = Depends(get_db),
):
    try:
        slot = crud_slots.create_slot(
            db,
            current_user,
            product_id=body.product_id,
            date=body.date,
            max_capacity=body.max_capacity,
        )
    except ValueError as e:
        raise http_error(e)
    return crud_slots.enrich_slot(slot)


@router.get("/booked", response_model=List[BookedSlotOut])
def booked_slots(
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    now = utcnow()
    return [
        {"booking": b, "slot": crud_slots.enrich_slot(b.delivery_slot, now)}
        for b in crud_slots.booked_slots(db, current_user)
        if b.delivery_slot is not None
    ]


@router.post("/cleanup", response_model=SlotCleanupResult)
def cleanup_slots(
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    """Remove slots older than yesterday.

    Producers only touch their own slots and are refused while any of
    them still carries a PENDING or CONFIRMED booking.
    """
    try:
        return crud_slots.cleanup_old_slots(db, current_user)
    except ValueError as e:
        raise http_error(e)


@router.get("/{slot_id}", response_model=DeliverySlotOut)
def get_slot(
    slot_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        slot = crud_slots.get_slot_for_viewer(db, slot_id, current_user)
    except ValueError as e:
        raise http_error(e)
    return crud_slots.enrich_slot(slot)


@router.patch("/{slot_id}", response_model=DeliverySlotOut)
def update_slot(
    slot_id: int,
    body: DeliverySlotUpdate,
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    try:
        slot = crud_slots.update_slot(db, slot_id, current_user, body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise http_error(e)
    return crud_slots.enrich_slot(slot)


@router.delete("/{slot_id}")
def delete_slot(
    slot_id: int,
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    try:
        crud_slots.delete_slot(db, slot_id, current_user)
    except ValueError as e:
        raise http_error(e)
    return {"deleted": True, "id": slot_id}


@router.post("/{slot_id}/book", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def book_slot(
    slot_id: int,
    body: SlotBookRequest,
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    try:
        return crud_slots.book_slot(db, slot_id, current_user, quantity=body.quantity, order_id=body.order_id)
    except ValueError as e:
        raise http_error(e)
