from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_admin, get_current_user
from ..crud import notifications as crud_notifications
from ..crud import users as crud_users
from ..database import get_db
from ..errors import http_error
from ..models import NotificationType, User
from ..schemas import NotificationCreate, NotificationListResponse, NotificationOut

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
def list_notifications(
    unread: Optional[bool] = None,
    type: Optional[NotificationType] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items, filtered_total, total, unread_count = crud_notifications.list_notifications(
        db,
        current_user.id,
        unread=unread,
        type=type,
        limit=limit,
        offset=offset,
    )
    return {
        "notifications": items,
        "pagination": {"limit": limit, "offset": offset, "total": filtered_total},
        "counts": {"total": total, "unread": unread_count},
    }


@router.post("", response_model=NotificationOut, status_code=status.HTTP_201_CREATED)
def create_notification(
    body: NotificationCreate,
    current_user: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    if crud_users.get_user(db, body.user_id) is None:
        raise http_error(ValueError("user_not_found"))
    return crud_notifications.create_notification(db, **body.model_dump())


@router.post("/read-all")
def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"updated": crud_notifications.mark_all_read(db, current_user.id)}


@router.patch("/{notification_id}/read", response_model=NotificationOut)
def mark_read(
    notification_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return crud_notifications.mark_read(db, notification_id, current_user.id)
    except ValueError as e:
        raise http_error(e)
