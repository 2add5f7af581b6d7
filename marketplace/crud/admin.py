import datetime as dt
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import (
    AdminLog,
    Booking,
    BookingStatus,
    DeliverySlot,
    Invoice,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    User,
)
from .common import as_utc, dec, money, utcnow

NOT_COUNTED_STATUSES = (OrderStatus.DRAFT.value, OrderStatus.CANCELLED.value)


def add_admin_log(
    db: Session,
    *,
    admin_id: int,
    action: str,
    entity_type: str,
    entity_id,
    details: Optional[dict] = None,
) -> AdminLog:
    """Stage an audit entry; it is committed with the change it describes."""
    log = AdminLog(
        admin_id=admin_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details=details,
    )
    db.add(log)
    return log


def list_logs(
    db: Session,
    *,
    entity_type: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[AdminLog], int]:
    query = db.query(AdminLog)
    if entity_type:
        query = query.filter(AdminLog.entity_type == entity_type)
    total = query.count()
    logs = query.order_by(AdminLog.created_at.desc(), AdminLog.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return logs, total


def _month_key(value: dt.datetime) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def _last_months(now: dt.datetime, count: int) -> List[str]:
    keys = []
    year, month = now.year, now.month
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            month = 12
            year -= 1
    return list(reversed(keys))


def _ordered_quantities(db: Session) -> Dict[int, Decimal]:
    """Quantity per product across order lines and live slot bookings."""
    totals: Dict[int, Decimal] = {}
    item_rows = (
        db.query(OrderItem.product_id, func.sum(OrderItem.quantity))
        .join(Order, OrderItem.order_id == Order.id)
        .filter(Order.status.notin_(NOT_COUNTED_STATUSES))
        .group_by(OrderItem.product_id)
        .all()
    )
    booking_rows = (
        db.query(DeliverySlot.product_id, func.sum(Booking.quantity))
        .join(Booking, Booking.slot_id == DeliverySlot.id)
        .join(Order, Booking.order_id == Order.id)
        .filter(
            Order.status.notin_(NOT_COUNTED_STATUSES),
            Booking.status != BookingStatus.CANCELLED.value,
        )
        .group_by(DeliverySlot.product_id)
        .all()
    )
    for product_id, quantity in list(item_rows) + list(booking_rows):
        totals[product_id] = totals.get(product_id, Decimal("0")) + dec(quantity)
    return totals


def get_stats(db: Session) -> dict:
    now = utcnow()
    month_ago = now - dt.timedelta(days=30)

    users_by_role = dict(db.query(User.role, func.count(User.id)).group_by(User.role).all())
    new_users = db.query(User).filter(User.created_at >= month_ago).count()

    placed = db.query(Order).filter(Order.status != OrderStatus.DRAFT.value)
    orders_by_status = dict(
        db.query(Order.status, func.count(Order.id))
        .filter(Order.status != OrderStatus.DRAFT.value)
        .group_by(Order.status)
        .all()
    )
    total_value = (
        db.query(func.coalesce(func.sum(Order.total), 0))
        .filter(Order.status.notin_(NOT_COUNTED_STATUSES))
        .scalar()
    )

    products_by_type = dict(db.query(Product.type, func.count(Product.id)).group_by(Product.type).all())

    ordered = _ordered_quantities(db)
    names = dict(db.query(Product.id, Product.name).filter(Product.id.in_(list(ordered))).all()) if ordered else {}
    top_rows = sorted(ordered.items(), key=lambda row: (-row[1], row[0]))[:5]

    # grouped in Python so the month bucketing does not depend on the backend
    months = _last_months(now, 6)
    revenue = {key: Decimal("0") for key in months}
    first_month = dt.datetime.strptime(months[0], "%Y-%m").replace(tzinfo=dt.timezone.utc)
    recent = (
        db.query(Order.created_at, Order.total)
        .filter(Order.status.notin_(NOT_COUNTED_STATUSES), Order.created_at >= first_month)
        .all()
    )
    for created_at, total in recent:
        key = _month_key(as_utc(created_at))
        if key in revenue:
            revenue[key] += dec(total)

    invoices_by_status = dict(db.query(Invoice.status, func.count(Invoice.id)).group_by(Invoice.status).all())

    return {
        "users": {
            "total": sum(users_by_role.values()),
            "by_role": users_by_role,
            "new_last_30_days": new_users,
        },
        "orders": {
            "total": placed.count(),
            "by_status": orders_by_status,
            "new_last_30_days": placed.filter(Order.created_at >= month_ago).count(),
            "total_value": str(money(total_value)),
        },
        "products": {
            "total": sum(products_by_type.values()),
            "by_type": products_by_type,
        },
        "top_products": [
            {"product_id": pid, "name": names.get(pid), "quantity": str(qty)} for pid, qty in top_rows
        ],
        "monthly_revenue": [{"month": key, "revenue": str(money(value))} for key, value in revenue.items()],
        "invoices": {"by_status": invoices_by_status},
    }
