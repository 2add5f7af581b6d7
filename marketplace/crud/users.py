import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..auth import get_password_hash, verify_password
from ..models import Producer, User, UserRole, Wallet

logger = logging.getLogger(__name__)


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    normalized = (email or "").strip().lower()
    if not normalized:
        return None
    return db.query(User).filter(func.lower(User.email) == normalized).first()


def _ensure_producer_profile(db: Session, user: User, company_name: Optional[str] = None) -> Producer:
    producer = user.producer
    if producer is None:
        producer = Producer(user=user, company_name=company_name or user.name)
        db.add(producer)
    if producer.wallet is None:
        db.add(Wallet(producer=producer))
    return producer


def create_user(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    phone: Optional[str] = None,
    role: UserRole = UserRole.CLIENT,
    company_name: Optional[str] = None,
) -> User:
    email = email.strip().lower()
    if get_user_by_email(db, email):
        raise ValueError("duplicate_email")

    user = User(
        name=name.strip(),
        email=email,
        phone=phone,
        hashed_password=get_password_hash(password),
        role=UserRole(role).value,
        is_active=True,
    )
    db.add(user)
    if user.role == UserRole.PRODUCER.value:
        _ensure_producer_profile(db, user, company_name)
    db.commit()
    db.refresh(user)
    logger.info("registered user id=%s role=%s", user.id, user.role)
    return user


def authenticate(db: Session, email: str, password: str) -> Optional[User]:
    user = get_user_by_email(db, email)
    if not user or not verify_password(password, user.hashed_password):
        return None
    return user


def update_user(db: Session, user: User, update_data: dict) -> User:
    for key, value in update_data.items():
        if value is not None:
            setattr(user, key, value)
    db.commit()
    db.refresh(user)
    return user


def get_producer_for_user(db: Session, user_id: int) -> Producer:
    producer = db.query(Producer).filter(Producer.user_id == user_id).first()
    if producer is None:
        raise ValueError("producer_not_found")
    return producer


def update_producer(db: Session, producer: Producer, update_data: dict) -> Producer:
    for key, value in update_data.items():
        if value is not None:
            setattr(producer, key, value.strip() if isinstance(value, str) else value)
    db.commit()
    db.refresh(producer)
    return producer


def list_users(
    db: Session,
    *,
    role: Optional[UserRole] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[User], int]:
    query = db.query(User)
    if role is not None:
        query = query.filter(User.role == UserRole(role).value)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))
    total = query.count()
    users = query.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return users, total


def admin_update_user(db: Session, user_id: int, update_data: dict) -> Tuple[User, dict]:
    """Apply admin changes and return the user plus the fields that changed."""
    user = get_user(db, user_id)
    if user is None:
        raise ValueError("user_not_found")

    changes = {}
    for key, value in update_data.items():
        if value is None:
            continue
        if key == "role":
            value = UserRole(value).value
        old = getattr(user, key)
        if old != value:
            changes[key] = {"from": old, "to": value}
            setattr(user, key, value)

    if user.role == UserRole.PRODUCER.value:
        _ensure_producer_profile(db, user)
    db.commit()
    db.refresh(user)
    return user, changes


def delete_user(db: Session, user_id: int, *, acting_admin_id: int) -> User:
    if user_id == acting_admin_id:
        raise ValueError("cannot_delete_self")
    user = get_user(db, user_id)
    if user is None:
        raise ValueError("user_not_found")
    if user.orders:
        raise ValueError("user_has_orders")
    db.delete(user)
    db.commit()
    return user


def ensure_admin_user(db: Session, email: str, password: str) -> Optional[User]:
    """Create the bootstrap admin account, or promote an existing one."""
    if not email or not password:
        logger.info("ADMIN_EMAIL/ADMIN_PASSWORD not set, skipping admin bootstrap")
        return None

    user = get_user_by_email(db, email)
    if user is None:
        user = User(
            name="Administrator",
            email=email.strip().lower(),
            hashed_password=get_password_hash(password),
            role=UserRole.ADMIN.value,
            is_active=True,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info("admin user %s created", user.email)
    elif user.role != UserRole.ADMIN.value or not user.is_active:
        user.role = UserRole.ADMIN.value
        user.is_active = True
        db.commit()
        logger.info("admin user %s promoted", user.email)
    return user
