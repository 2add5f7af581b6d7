from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_producer, get_current_producer_or_admin, get_current_user
from ..crud import products as crud_products
from ..crud import users as crud_users
from ..crud.common import pagination
from ..database import get_db
from ..errors import http_error
from ..messaging import emit_event
from ..models import ProductType, User
from ..schemas import (
    ProductCreate,
    ProductListResponse,
    ProductOut,
    ProductSort,
    ProductUpdate,
    StockAlertOut,
    StockAlertWrite,
    StockHistoryOut,
    StockUpdate,
)

router = APIRouter(prefix="/products", tags=["products"])


@router.get("", response_model=ProductListResponse)
def list_products(
    type: Optional[ProductType] = None,
    category: Optional[int] = Query(None, gt=0),
    available: Optional[bool] = None,
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    search: Optional[str] = Query(None, max_length=100),
    sort_by: Optional[ProductSort] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Catalog listing.

    Producers only see their own products. Clients only see available
    products unless ``available`` is given explicitly.
    """
    products, total = crud_products.list_products(
        db,
        viewer=current_user,
        type=type,
        category=category,
        available=available,
        min_price=min_price,
        max_price=max_price,
        search=search,
        sort_by=sort_by.value if sort_by else None,
        page=page,
        limit=limit,
    )
    return {"products": products, "pagination": pagination(page, limit, total)}


@router.get("/{product_id}", response_model=ProductOut)
def get_product(
    product_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return crud_products.get_product_or_raise(db, product_id)
    except ValueError as e:
        raise http_error(e)


@router.post("", response_model=ProductOut, status_code=status.HTTP_201_CREATED)
def create_product(
    body: ProductCreate,
    current_user: User = Depends(get_current_producer),
    db: Session = Depends(get_db),
):
    try:
        producer = crud_users.get_producer_for_user(db, current_user.id)
        return crud_products.create_product(db, producer, body.model_dump())
    except ValueError as e:
        raise http_error(e)


@router.patch("/{product_id}", response_model=ProductOut)
def update_product(
    product_id: int,
    body: ProductUpdate,
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    try:
        return crud_products.update_product(db, product_id, current_user, body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise http_error(e)


@router.delete("/{product_id}")
def delete_product(
    product_id: int,
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    try:
        crud_products.delete_product(db, product_id, current_user)
    except ValueError as e:
        raise http_error(e)
    return {"deleted": True, "id": product_id}


@router.patch("/{product_id}/stock", response_model=ProductOut)
def update_stock(
    product_id: int,
    body: StockUpdate,
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    try:
        product, low = crud_products.update_stock(db, product_id, current_user, body.quantity)
    except ValueError as e:
        raise http_error(e)
    if low and crud_products.wants_low_stock_mail(product):
        emit_event("stock.low", crud_products.low_stock_event_payload(product))
    return product


@router.get("/{product_id}/stock-history", response_model=StockHistoryOut)
def get_stock_history(
    product_id: int,
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    try:
        return crud_products.stock_history(db, product_id, current_user)
    except ValueError as e:
        raise http_error(e)


@router.get("/{product_id}/alerts", response_model=StockAlertOut)
def get_stock_alert(
    product_id: int,
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    try:
        return crud_products.get_stock_alert(db, product_id, current_user)
    except ValueError as e:
        raise http_error(e)


@router.post("/{product_id}/alerts", response_model=StockAlertOut)
def set_stock_alert(
    product_id: int,
    body: StockAlertWrite,
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    try:
        return crud_products.set_stock_alert(db, product_id, current_user, body.model_dump())
    except ValueError as e:
        raise http_error(e)
