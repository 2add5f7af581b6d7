from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_admin, get_current_user
from ..crud import categories as crud_categories
from ..database import get_db
from ..errors import http_error
from ..models import User
from ..schemas import CategoryDetail, CategoryOut, CategorySort, CategoryWrite, SortOrder

router = APIRouter(prefix="/categories", tags=["categories"])


@router.get("", response_model=List[CategoryOut])
def list_categories(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud_categories.list_categories(db)


@router.post("", response_model=CategoryOut, status_code=status.HTTP_201_CREATED)
def create_category(
    body: CategoryWrite,
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        return crud_categories.create_category(db, current_admin, body.name)
    except ValueError as e:
        raise http_error(e)


@router.get("/{category_id}", response_model=CategoryDetail)
def get_category(
    category_id: int,
    include_products: bool = True,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    sort_by: CategorySort = CategorySort.NAME,
    sort_order: SortOrder = SortOrder.ASC,
    db: Session = Depends(get_db),
):
    """Public category page: available products and their price range."""
    try:
        return crud_categories.category_detail(
            db,
            category_id,
            include_products=include_products,
            page=page,
            limit=limit,
            sort_by=sort_by.value,
            sort_order=sort_order.value,
        )
    except ValueError as e:
        raise http_error(e)


@router.patch("/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    body: CategoryWrite,
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        return crud_categories.update_category(db, category_id, current_admin, body.name)
    except ValueError as e:
        raise http_error(e)


@router.delete("/{category_id}")
def delete_category(
    category_id: int,
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        deleted_id, name = crud_categories.delete_category(db, category_id, current_admin)
    except ValueError as e:
        raise http_error(e)
    return {"deleted": True, "id": deleted_id, "name": name}
