import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_admin
from ..crud import admin as crud_admin
from ..crud import orders as crud_orders
from ..crud import users as crud_users
from ..crud import wallets as crud_wallets
from ..crud.common import pagination
from ..database import get_db
from ..errors import http_error
from ..models import User, UserRole
from ..schemas import (
    AdminLogListResponse,
    AdminNotesUpdate,
    AdminUserCreate,
    AdminUserUpdate,
    OrderListResponse,
    OrderOut,
    UserListResponse,
    UserOut,
    WithdrawalDecision,
    WithdrawalOut,
    WithdrawalProcess,
)
from .order_router import parse_order_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _log(db: Session, admin: User, action: str, entity_type: str, entity_id, details: Optional[dict] = None) -> None:
    crud_admin.add_admin_log(
        db,
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    )
    db.commit()


# ---------- users ----------


@router.get("/users", response_model=UserListResponse)
def list_users(
    role: Optional[UserRole] = None,
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    users, total = crud_users.list_users(db, role=role, search=search, page=page, limit=limit)
    return {"users": users, "pagination": pagination(page, limit, total)}


@router.post("/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user(
    body: AdminUserCreate,
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        user = crud_users.create_user(
            db,
            name=body.name,
            email=body.email,
            password=body.password,
            phone=body.phone,
            role=body.role,
            company_name=body.company_name,
        )
    except ValueError as e:
        raise http_error(e)
    _log(db, current_admin, "CREATE_USER", "User", user.id, {"email": user.email, "role": user.role})
    db.refresh(user)
    return user


@router.patch("/users/{user_id}", response_model=UserOut)
def update_user(
    user_id: int,
    body: AdminUserUpdate,
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        user, changes = crud_users.admin_update_user(db, user_id, body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise http_error(e)
    if changes:
        _log(db, current_admin, "UPDATE_USER", "User", user.id, {"changes": changes})
        db.refresh(user)
    return user


@router.delete("/users/{user_id}")
def delete_user(
    user_id: int,
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    target = crud_users.get_user(db, user_id)
    details = {"email": target.email, "role": target.role} if target is not None else None
    try:
        crud_users.delete_user(db, user_id, acting_admin_id=current_admin.id)
    except ValueError as e:
        raise http_error(e)
    _log(db, current_admin, "DELETE_USER", "User", user_id, details)
    return {"deleted": True, "id": user_id}


# ---------- orders ----------


@router.get("/orders", response_model=OrderListResponse)
def list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    orders, total = crud_orders.list_all_orders(db, status=parse_order_status(status_filter), page=page, limit=limit)
    return {"orders": orders, "pagination": pagination(page, limit, total)}


@router.patch("/orders/{order_id}/notes", response_model=OrderOut)
def update_order_notes(
    order_id: int,
    body: AdminNotesUpdate,
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        order = crud_orders.set_admin_notes(db, order_id, body.admin_notes)
    except ValueError as e:
        raise http_error(e)
    _log(db, current_admin, "UPDATE_ORDER_NOTES", "Order", order.id, {"admin_notes": body.admin_notes})
    db.refresh(order)
    return order


# ---------- stats and audit ----------


@router.get("/stats")
def stats(
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return crud_admin.get_stats(db)


@router.get("/logs", response_model=AdminLogListResponse)
def list_logs(
    entity_type: Optional[str] = Query(None, max_length=50),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    logs, total = crud_admin.list_logs(db, entity_type=entity_type, page=page, limit=limit)
    return {"logs": logs, "pagination": pagination(page, limit, total)}


# ---------- withdrawals ----------


@router.get("/withdrawals")
def list_withdrawals(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    items, total = crud_wallets.list_withdrawals(db, status=status_filter, page=page, limit=limit)
    return {
        "withdrawals": [WithdrawalOut.model_validate(w) for w in items],
        "pagination": pagination(page, limit, total),
    }


@router.post("/withdrawals/{withdrawal_id}/process", response_model=WithdrawalOut)
def process_withdrawal(
    withdrawal_id: int,
    body: WithdrawalProcess,
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        return crud_wallets.process_withdrawal(
            db,
            withdrawal_id,
            current_admin,
            status=WithdrawalDecision(body.status).value,
            note=body.note,
            reference=body.reference,
        )
    except ValueError as e:
        raise http_error(e)
