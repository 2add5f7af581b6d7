from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_producer, get_current_user
from ..crud import users as crud_users
from ..database import get_db
from ..errors import http_error
from ..models import User
from ..schemas import ProducerOut, ProducerUpdate, UserOut, UserUpdate

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserOut)
def read_me(current_user: User = Depends(get_current_user)):
    return current_user


@router.patch("/me", response_model=UserOut)
def update_me(
    body: UserUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud_users.update_user(db, current_user, body.model_dump(exclude_unset=True))


@router.get("/producer-profile", response_model=ProducerOut)
def read_producer_profile(
    current_user: User = Depends(get_current_producer),
    db: Session = Depends(get_db),
):
    try:
        return crud_users.get_producer_for_user(db, current_user.id)
    except ValueError as e:
        raise http_error(e)


@router.patch("/producer-profile", response_model=ProducerOut)
def update_producer_profile(
    body: ProducerUpdate,
    current_user: User = Depends(get_current_producer),
    db: Session = Depends(get_db),
):
    """Update company and bank details; the IBAN is required before any withdrawal."""
    try:
        producer = crud_users.get_producer_for_user(db, current_user.id)
    except ValueError as e:
        raise http_error(e)
    return crud_users.update_producer(db, producer, body.model_dump(exclude_unset=True))
