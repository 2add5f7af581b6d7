import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from ..models import Notification, NotificationType

logger = logging.getLogger(__name__)


def add_notification(
    db: Session,
    *,
    user_id: int,
    type: NotificationType,
    title: str,
    message: str,
    link: Optional[str] = None,
    data: Optional[dict] = None,
) -> Notification:
    """Stage a notification in the current transaction; the caller commits."""
    notification = Notification(
        user_id=user_id,
        type=NotificationType(type).value,
        title=title,
        message=message,
        link=link,
        data=data,
        read=False,
    )
    db.add(notification)
    return notification


def create_notification(db: Session, **kwargs) -> Notification:
    notification = add_notification(db, **kwargs)
    db.commit()
    db.refresh(notification)
    return notification


def notify_safely(db: Session, notifications: List[dict]) -> int:
    """Create several notifications in their own commit.

    Used after the main transaction has been committed: a failure here is
    logged and rolled back, never surfaced to the client.
    """
    if not notifications:
        return 0
    try:
        for item in notifications:
            add_notification(db, **item)
        db.commit()
        return len(notifications)
    except Exception:
        db.rollback()
        logger.exception("failed to create %d notification(s)", len(notifications))
        return 0


def list_notifications(
    db: Session,
    user_id: int,
    *,
    unread: Optional[bool] = None,
    type: Optional[NotificationType] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Notification], int, int, int]:
    """Return ``(notifications, filtered_total, total, unread_count)``."""
    base = db.query(Notification).filter(Notification.user_id == user_id)
    query = base
    if unread is not None:
        query = query.filter(Notification.read.is_(not unread))
    if type is not None:
        query = query.filter(Notification.type == NotificationType(type).value)

    filtered_total = query.count()
    items = (
        query.order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    total = base.count()
    unread_count = base.filter(Notification.read.is_(False)).count()
    return items, filtered_total, total, unread_count


def mark_read(db: Session, notification_id: int, user_id: int) -> Notification:
    notification = db.query(Notification).filter(Notification.id == notification_id).first()
    if notification is None:
        raise ValueError("notification_not_found")
    if notification.user_id != user_id:
        raise ValueError("not_owner")
    if not notification.read:
        notification.read = True
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_read(db: Session, user_id: int) -> int:
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.read.is_(False))
        .update({Notification.read: True}, synchronize_session=False)
    )
    db.commit()
    return int(updated or 0)
