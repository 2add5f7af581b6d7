from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..crud import producers as crud_producers
from ..crud.common import pagination
from ..database import get_db
from ..errors import http_error
from ..models import User
from ..schemas import ProducerListResponse, ProducerPublic, SortOrder

router = APIRouter(prefix="/producers", tags=["producers"])


@router.get("", response_model=ProducerListResponse, response_model_exclude_none=True)
def list_producers(
    search: Optional[str] = Query(None, max_length=100),
    sort_order: SortOrder = SortOrder.ASC,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Active producers by company name; admins also get contact, bank and product counts."""
    producers, total = crud_producers.list_producers(
        db, current_user, search=search, sort_order=sort_order.value, page=page, limit=limit
    )
    return {"producers": producers, "pagination": pagination(page, limit, total)}


@router.get("/{producer_id}", response_model=ProducerPublic, response_model_exclude_none=True)
def get_producer(
    producer_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return crud_producers.get_producer_profile(db, producer_id, current_user)
    except ValueError as e:
        raise http_error(e)
