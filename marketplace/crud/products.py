import datetime as dt
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from ..config import LOW_STOCK_THRESHOLD
from ..models import (
    Booking,
    Category,
    DeliverySlot,
    NotificationType,
    OrderItem,
    Producer,
    Product,
    ProductType,
    Stock,
    StockAlert,
    StockHistory,
    StockMovement,
    User,
    UserRole,
)
from .categories import get_categories_by_ids
from .common import as_utc, dec, money, utcnow
from .notifications import add_notification

logger = logging.getLogger(__name__)


def get_product(db: Session, product_id: int) -> Optional[Product]:
    return (
        db.query(Product)
        .options(joinedload(Product.stock), joinedload(Product.producer), joinedload(Product.categories))
        .filter(Product.id == product_id)
        .first()
    )


def get_product_or_raise(db: Session, product_id: int) -> Product:
    product = get_product(db, product_id)
    if product is None:
        raise ValueError("product_not_found")
    return product


def is_product_owner(product: Product, user: User) -> bool:
    return product.producer is not None and product.producer.user_id == user.id


def ensure_can_manage(product: Product, user: User) -> None:
    if user.role == UserRole.ADMIN.value:
        return
    if not is_product_owner(product, user):
        raise ValueError("not_owner")


def list_products(
    db: Session,
    *,
    viewer: User,
    type: Optional[ProductType] = None,
    category: Optional[int] = None,
    available: Optional[bool] = None,
    min_price: Optional[Decimal] = None,
    max_price: Optional[Decimal] = None,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Product], int]:
    query = db.query(Product).options(joinedload(Product.stock))

    if viewer.role == UserRole.PRODUCER.value:
        query = query.join(Producer, Product.producer_id == Producer.id).filter(Producer.user_id == viewer.id)
    elif viewer.role == UserRole.CLIENT.value and available is None:
        available = True

    if type is not None:
        query = query.filter(Product.type == ProductType(type).value)
    if category is not None:
        query = query.filter(Product.categories.any(Category.id == category))
    if available is not None:
        query = query.filter(Product.available.is_(available))
    if min_price is not None:
        query = query.filter(Product.price >= min_price)
    if max_price is not None:
        query = query.filter(Product.price <= max_price)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                Product.name.ilike(pattern),
                Product.description.ilike(pattern),
                Product.categories.any(Category.name.ilike(pattern)),
            )
        )

    total = query.count()

    if sort_by == "price_asc":
        query = query.order_by(Product.price.asc(), Product.id.asc())
    elif sort_by == "price_desc":
        query = query.order_by(Product.price.desc(), Product.id.desc())
    else:
        query = query.order_by(Product.created_at.desc(), Product.id.desc())

    products = query.offset((page - 1) * limit).limit(limit).all()
    return products, total


def create_product(db: Session, producer: Producer, product_data: dict) -> Product:
    data = dict(product_data)
    initial_stock = dec(data.pop("initial_stock", 0))
    category_ids = data.pop("category_ids", None) or []
    name = (data.get("name") or "").strip()
    if not name:
        raise ValueError("name_required")
    data["name"] = name
    if data.get("type") is not None:
        data["type"] = ProductType(data["type"]).value

    product = Product(producer_id=producer.id, **data)
    product.categories = get_categories_by_ids(db, category_ids)
    product.stock = Stock(quantity=initial_stock)
    db.add(product)
    db.flush()
    record_stock_movement(db, product.id, StockMovement.INITIAL, initial_stock, initial_stock)
    db.commit()
    db.refresh(product)
    logger.info("product %s created by producer %s", product.id, producer.id)
    return product


def update_product(db: Session, product_id: int, user: User, update_data: dict) -> Product:
    product = get_product_or_raise(db, product_id)
    ensure_can_manage(product, user)

    for key, value in update_data.items():
        if value is None:
            continue
        if key == "category_ids":
            product.categories = get_categories_by_ids(db, value)
            continue
        if key == "type":
            value = ProductType(value).value
        if key == "name":
            value = value.strip()
        setattr(product, key, value)
    db.commit()
    db.refresh(product)
    return product


def delete_product(db: Session, product_id: int, user: User) -> Product:
    product = get_product_or_raise(db, product_id)
    ensure_can_manage(product, user)

    in_orders = db.query(OrderItem.id).filter(OrderItem.product_id == product.id).first()
    in_bookings = (
        db.query(Booking.id)
        .join(DeliverySlot, Booking.slot_id == DeliverySlot.id)
        .filter(DeliverySlot.product_id == product.id)
        .first()
    )
    if in_orders or in_bookings:
        raise ValueError("product_in_use")

    db.delete(product)
    db.commit()
    return product


def lock_stock(db: Session, product_id: int) -> Stock:
    stock = db.query(Stock).filter(Stock.product_id == product_id).with_for_update().first()
    if stock is None:
        raise ValueError("stock_not_configured")
    return stock


def record_stock_movement(
    db: Session,
    product_id: int,
    movement: StockMovement,
    quantity: Decimal,
    balance: Decimal,
    *,
    order_id: Optional[int] = None,
    note: Optional[str] = None,
) -> StockHistory:
    """Stage a stock history row; committed with the movement itself."""
    entry = StockHistory(
        product_id=product_id,
        type=StockMovement(movement).value,
        quantity=dec(quantity),
        balance=dec(balance),
        order_id=order_id,
        note=note,
        date=utcnow(),
    )
    db.add(entry)
    return entry


def take_stock(db: Session, product_id: int, quantity: Decimal, order_id: Optional[int] = None) -> Stock:
    """Decrement stock inside the caller's transaction (no commit)."""
    quantity = dec(quantity)
    stock = lock_stock(db, product_id)
    available = dec(stock.quantity)
    if available < quantity:
        raise ValueError(f"insufficient_stock:{available}:{quantity}")
    stock.quantity = available - quantity
    record_stock_movement(db, product_id, StockMovement.SALE, quantity, stock.quantity, order_id=order_id)
    return stock


def return_stock(
    db: Session, product_id: int, quantity: Decimal, order_id: Optional[int] = None
) -> Optional[Stock]:
    stock = db.query(Stock).filter(Stock.product_id == product_id).with_for_update().first()
    if stock is None:
        # product lost its stock row; nothing to give back to
        return None
    stock.quantity = dec(stock.quantity) + dec(quantity)
    record_stock_movement(db, product_id, StockMovement.RETURN, quantity, stock.quantity, order_id=order_id)
    return stock


def low_stock_threshold(db: Session, product: Product) -> Decimal:
    """Level at or below which ``product`` counts as low on stock.

    Without a configured alert the global ``LOW_STOCK_THRESHOLD`` applies. A
    percentage alert is relative to the highest level the producer ever set.
    """
    alert = product.stock_alert
    if alert is None:
        return LOW_STOCK_THRESHOLD
    if not alert.percentage:
        return dec(alert.threshold)
    peak = (
        db.query(func.max(StockHistory.balance))
        .filter(
            StockHistory.product_id == product.id,
            StockHistory.type.in_((StockMovement.INITIAL.value, StockMovement.ADJUSTMENT.value)),
        )
        .scalar()
    )
    return money(dec(peak) * dec(alert.threshold) / Decimal("100"))


def update_stock(db: Session, product_id: int, user: User, quantity: Decimal) -> Tuple[Product, bool]:
    """Set the stock level; returns the product and whether it is now low."""
    product = get_product_or_raise(db, product_id)
    ensure_can_manage(product, user)

    quantity = dec(quantity)
    if product.stock is None:
        previous = Decimal("0")
        product.stock = Stock(quantity=quantity)
    else:
        previous = dec(product.stock.quantity)
        product.stock.quantity = quantity
    record_stock_movement(
        db, product.id, StockMovement.ADJUSTMENT, quantity - previous, quantity, note=f"set by user {user.id}"
    )
    db.flush()

    low = quantity <= low_stock_threshold(db, product)
    if low and product.producer is not None:
        add_notification(
            db,
            user_id=product.producer.user_id,
            type=NotificationType.LOW_STOCK,
            title="Low stock",
            message=f"Stock for {product.name} is down to {quantity} {product.unit}.",
            link=f"/producer/inventory/{product.id}",
            data={"product_id": product.id, "quantity": str(quantity)},
        )
    db.commit()
    db.refresh(product)
    if low:
        logger.info("product %s is low on stock (%s)", product.id, quantity)
    return product, low


def wants_low_stock_mail(product: Product) -> bool:
    # no alert configured means the defaults, which mail
    return product.stock_alert is None or bool(product.stock_alert.email_alert)


def low_stock_event_payload(product: Product) -> dict:
    producer = product.producer
    return {
        "product_id": product.id,
        "product_name": product.name,
        "quantity": product.stock_quantity,
        "unit": product.unit,
        "user_email": producer.user.email if producer is not None and producer.user is not None else None,
    }


def get_stock_alert(db: Session, product_id: int, user: User) -> dict:
    product = get_product_or_raise(db, product_id)
    ensure_can_manage(product, user)
    alert = product.stock_alert
    if alert is None:
        return {"product_id": product.id, "threshold": Decimal("0"), "percentage": False, "email_alert": True}
    return alert


def set_stock_alert(db: Session, product_id: int, user: User, alert_data: dict) -> StockAlert:
    product = get_product_or_raise(db, product_id)
    ensure_can_manage(product, user)
    if product.stock_alert is None:
        product.stock_alert = StockAlert(**alert_data)
    else:
        for key, value in alert_data.items():
            setattr(product.stock_alert, key, value)
    db.commit()
    db.refresh(product)
    return product.stock_alert


def stock_history(db: Session, product_id: int, user: User) -> dict:
    """Movements of a product plus its sell-through over the last four weeks."""
    product = get_product_or_raise(db, product_id)
    ensure_can_manage(product, user)

    history = (
        db.query(StockHistory)
        .filter(StockHistory.product_id == product.id)
        .order_by(StockHistory.date.asc(), StockHistory.id.asc())
        .all()
    )
    since = utcnow() - dt.timedelta(days=28)
    sold = Decimal("0")
    for entry in history:
        if as_utc(entry.date) < since:
            continue
        # cart lines given back do not count as sold
        if entry.type == StockMovement.SALE.value:
            sold += dec(entry.quantity)
        elif entry.type == StockMovement.RETURN.value:
            sold -= dec(entry.quantity)
    weekly_rate = money(max(sold, Decimal("0")) / 4)

    current = dec(product.stock_quantity)
    days_until_empty = None
    if weekly_rate > 0:
        days_until_empty = int(current / (weekly_rate / 7))
    return {
        "product_id": product.id,
        "history": history,
        "current_stock": current,
        "weekly_rate": weekly_rate,
        "days_until_empty": days_until_empty,
    }
