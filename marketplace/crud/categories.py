import logging
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Category, Product, User, product_categories
from .admin import add_admin_log
from .common import money, pagination

logger = logging.getLogger(__name__)

CATEGORY_SORT_FIELDS = {
    "name": Product.name,
    "price": Product.price,
    "created_at": Product.created_at,
}


def get_category(db: Session, category_id: int) -> Optional[Category]:
    return db.query(Category).filter(Category.id == category_id).first()


def get_category_or_raise(db: Session, category_id: int) -> Category:
    category = get_category(db, category_id)
    if category is None:
        raise ValueError("category_not_found")
    return category


def get_categories_by_ids(db: Session, category_ids: List[int]) -> List[Category]:
    wanted = set(category_ids)
    if not wanted:
        return []
    categories = db.query(Category).filter(Category.id.in_(wanted)).all()
    missing = wanted - {c.id for c in categories}
    if missing:
        raise ValueError(f"category_not_found:{min(missing)}")
    return categories


def _find_by_name(db: Session, name: str, exclude_id: Optional[int] = None) -> Optional[Category]:
    query = db.query(Category).filter(func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    return query.first()


def _product_count(db: Session, category_id: int) -> int:
    return (
        db.query(func.count(product_categories.c.product_id))
        .filter(product_categories.c.category_id == category_id)
        .scalar()
    )


def list_categories(db: Session) -> List[dict]:
    counts = dict(
        db.query(product_categories.c.category_id, func.count(product_categories.c.product_id))
        .group_by(product_categories.c.category_id)
        .all()
    )
    categories = db.query(Category).order_by(Category.name.asc()).all()
    return [
        {"id": c.id, "name": c.name, "created_at": c.created_at, "product_count": counts.get(c.id, 0)}
        for c in categories
    ]


def category_detail(
    db: Session,
    category_id: int,
    *,
    include_products: bool = True,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "name",
    sort_order: str = "asc",
) -> dict:
    """A category with its available products and price statistics."""
    category = get_category_or_raise(db, category_id)

    available = (
        db.query(Product)
        .join(product_categories, product_categories.c.product_id == Product.id)
        .filter(product_categories.c.category_id == category.id, Product.available.is_(True))
    )
    total, avg_price, min_price, max_price = (
        db.query(
            func.count(Product.id),
            func.avg(Product.price),
            func.min(Product.price),
            func.max(Product.price),
        )
        .join(product_categories, product_categories.c.product_id == Product.id)
        .filter(product_categories.c.category_id == category.id, Product.available.is_(True))
        .one()
    )

    products = []
    if include_products:
        column = CATEGORY_SORT_FIELDS.get(sort_by, Product.name)
        ordering = column.desc() if sort_order == "desc" else column.asc()
        products = available.order_by(ordering, Product.id.asc()).offset((page - 1) * limit).limit(limit).all()

    detail = {
        "id": category.id,
        "name": category.name,
        "created_at": category.created_at,
        "products": products,
        "stats": {
            "total_products": total,
            "displayed_products": len(products),
            "average_price": str(money(avg_price)),
            "price_range": {"min": str(money(min_price)), "max": str(money(max_price))},
        },
        "pagination": None,
    }
    if include_products:
        detail["pagination"] = {**pagination(page, limit, total), "has_more": page * limit < total}
    return detail


def create_category(db: Session, admin: User, name: str) -> Category:
    name = name.strip()
    if _find_by_name(db, name) is not None:
        raise ValueError("category_exists")
    category = Category(name=name)
    db.add(category)
    db.flush()
    add_admin_log(
        db,
        admin_id=admin.id,
        action="CREATE_CATEGORY",
        entity_type="Category",
        entity_id=category.id,
        details={"name": name},
    )
    db.commit()
    db.refresh(category)
    logger.info("category %s (%s) created by admin %s", category.id, name, admin.id)
    return category


def update_category(db: Session, category_id: int, admin: User, name: str) -> Category:
    category = get_category_or_raise(db, category_id)
    name = name.strip()
    previous = category.name
    if name != previous and _find_by_name(db, name, exclude_id=category.id) is not None:
        raise ValueError("category_exists")

    category.name = name
    add_admin_log(
        db,
        admin_id=admin.id,
        action="UPDATE_CATEGORY",
        entity_type="Category",
        entity_id=category.id,
        details={"previous_name": previous, "new_name": name, "products_count": _product_count(db, category.id)},
    )
    db.commit()
    db.refresh(category)
    return category


def delete_category(db: Session, category_id: int, admin: User) -> Tuple[int, str]:
    category = get_category_or_raise(db, category_id)
    in_use = _product_count(db, category.id)
    if in_use:
        raise ValueError(f"category_not_empty:{in_use}")

    name = category.name
    db.delete(category)
    add_admin_log(
        db,
        admin_id=admin.id,
        action="DELETE_CATEGORY",
        entity_type="Category",
        entity_id=category_id,
        details={"name": name},
    )
    db.commit()
    logger.info("category %s (%s) deleted by admin %s", category_id, name, admin.id)
    return category_id, name
