from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..crud import bookings as crud_bookings
from ..database import get_db
from ..errors import http_error
from ..models import User
from ..schemas import BookingCleanupResult, BookingDetailOut, BookingUpdate

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("/cleanup", response_model=BookingCleanupResult)
def cleanup_expired(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Cancel every TEMPORARY booking whose hold has expired."""
    booking_ids = crud_bookings.cleanup_expired(db)
    return {"cleaned": len(booking_ids), "booking_ids": booking_ids}


@router.get("/{booking_id}", response_model=BookingDetailOut)
def get_booking(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = crud_bookings.get_booking_for_viewer(db, booking_id, current_user)
    except ValueError as e:
        raise http_error(e)
    return crud_bookings.enrich_booking(booking)


@router.patch("/{booking_id}", response_model=BookingDetailOut)
def update_booking(
    booking_id: int,
    body: BookingUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = crud_bookings.update_booking(
            db,
            booking_id,
            current_user,
            quantity=body.quantity,
            status=body.status,
        )
    except ValueError as e:
        raise http_error(e)
    return crud_bookings.enrich_booking(booking)


@router.delete("/{booking_id}")
def delete_booking(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        crud_bookings.delete_booking(db, booking_id, current_user)
    except ValueError as e:
        raise http_error(e)
    return {"deleted": True, "id": booking_id}
