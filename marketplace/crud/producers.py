"""Producer directory: public profiles, with contact and bank details for admins and owners."""
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session, joinedload

from ..models import Producer, Product, User, UserRole
from .common import money


def _can_see_private(producer: Producer, viewer: User) -> bool:
    return viewer.role == UserRole.ADMIN.value or producer.user_id == viewer.id


def _iban_preview(iban: Optional[str]) -> Optional[str]:
    if not iban:
        return None
    return f"{iban[:4]}****"


def _product_stats(db: Session, producer_ids: List[int], with_average: bool = False) -> dict:
    if not producer_ids:
        return {}
    rows = (
        db.query(
            Product.producer_id,
            func.count(Product.id),
            func.sum(case((Product.available.is_(True), 1), else_=0)),
            func.avg(Product.price),
        )
        .filter(Product.producer_id.in_(producer_ids))
        .group_by(Product.producer_id)
        .all()
    )
    stats = {}
    for producer_id, total, active, avg_price in rows:
        entry = {"total_products": total, "active_products": int(active or 0)}
        if with_average:
            entry["average_price"] = money(avg_price)
        stats[producer_id] = entry
    return stats


def present_producer(producer: Producer, viewer: User, stats: Optional[dict] = None) -> dict:
    user = producer.user
    data = {
        "id": producer.id,
        "company_name": producer.company_name,
        "description": producer.description,
        "address": producer.address,
        "user": {"id": user.id, "name": user.name},
    }
    if not _can_see_private(producer, viewer):
        return data

    data["user"].update({"email": user.email, "phone": user.phone, "created_at": user.created_at})
    data["stats"] = stats or {"total_products": 0, "active_products": 0}
    data.update(
        {
            "bank_name": producer.bank_name,
            "bank_account_name": producer.bank_account_name,
            "bic": producer.bic,
            "iban_preview": _iban_preview(producer.iban),
        }
    )
    return data


def list_producers(
    db: Session,
    viewer: User,
    *,
    search: Optional[str] = None,
    sort_order: str = "asc",
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[dict], int]:
    query = db.query(Producer).join(User, Producer.user_id == User.id).filter(User.is_active.is_(True))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(Producer.company_name.ilike(pattern), User.name.ilike(pattern), User.email.ilike(pattern))
        )
    total = query.count()

    ordering = Producer.company_name.desc() if sort_order == "desc" else Producer.company_name.asc()
    producers = (
        query.options(joinedload(Producer.user))
        .order_by(ordering, Producer.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    stats = _product_stats(db, [p.id for p in producers if _can_see_private(p, viewer)])
    return [present_producer(p, viewer, stats.get(p.id)) for p in producers], total


def get_producer_profile(db: Session, producer_id: int, viewer: User) -> dict:
    producer = (
        db.query(Producer).options(joinedload(Producer.user)).filter(Producer.id == producer_id).first()
    )
    if producer is None or (not producer.user.is_active and viewer.role != UserRole.ADMIN.value):
        raise ValueError("producer_not_found")
    stats = None
    if _can_see_private(producer, viewer):
        stats = _product_stats(db, [producer.id], with_average=True).get(
            producer.id, {"total_products": 0, "active_products": 0, "average_price": Decimal("0.00")}
        )
    return present_producer(producer, viewer, stats)
