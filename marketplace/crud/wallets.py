"""Producer wallets: sale credits, delivery settlement and withdrawals.

A SALE transaction is created per producer when an order is checked out.
Its net amount (gross share minus the platform fee) sits in
``pending_balance`` until the order is DELIVERED, then moves to ``balance``.
Withdrawals move money from ``balance`` back to ``pending_balance`` until an
admin completes or rejects them.
"""
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import PLATFORM_FEE_PERCENTAGE
from ..models import (
    BookingStatus,
    Order,
    OrderStatus,
    Producer,
    User,
    Wallet,
    WalletTransaction,
    Withdrawal,
)
from .admin import add_admin_log
from .common import dec, money, utcnow

logger = logging.getLogger(__name__)

PENDING = "PENDING"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"
REJECTED = "REJECTED"
SALE = "SALE"
WITHDRAWAL = "WITHDRAWAL"


def ensure_wallet(db: Session, producer: Producer) -> Wallet:
    if producer.wallet is None:
        producer.wallet = Wallet(
            balance=Decimal("0"),
            pending_balance=Decimal("0"),
            total_earned=Decimal("0"),
            total_withdrawn=Decimal("0"),
        )
        db.flush()
    return producer.wallet


def get_wallet_for_user(db: Session, user: User) -> Wallet:
    producer = db.query(Producer).filter(Producer.user_id == user.id).first()
    if producer is None:
        raise ValueError("producer_not_found")
    wallet = ensure_wallet(db, producer)
    db.commit()
    db.refresh(wallet)
    return wallet


def _producer_shares(order: Order) -> "OrderedDict[int, dict]":
    shares: "OrderedDict[int, dict]" = OrderedDict()

    def _add(product, quantity, price):
        entry = shares.setdefault(product.producer_id, {"producer": product.producer, "gross": Decimal("0"), "items": []})
        amount = dec(price) * dec(quantity)
        entry["gross"] += amount
        entry["items"].append({"product_id": product.id, "quantity": str(quantity), "price": str(price)})

    for item in order.items:
        if item.product is not None:
            _add(item.product, item.quantity, item.price)
    for booking in order.bookings:
        if booking.status == BookingStatus.CANCELLED.value:
            continue
        slot = booking.delivery_slot
        if slot is None or slot.product is None:
            continue
        price = booking.price if booking.price is not None else slot.product.price
        _add(slot.product, booking.quantity, price)
    return shares


def record_order_sales(db: Session, order: Order) -> Decimal:
    """Credit every producer of ``order``; returns the total platform fee.

    Running it twice for the same order does not credit anybody twice.
    """
    delivered = order.status == OrderStatus.DELIVERED.value
    total_fee = Decimal("0")

    for producer_id, share in _producer_shares(order).items():
        wallet = ensure_wallet(db, share["producer"])
        gross = money(share["gross"])
        fee = money(gross * PLATFORM_FEE_PERCENTAGE / 100)
        net = gross - fee
        total_fee += fee

        existing = (
            db.query(WalletTransaction)
            .filter(
                WalletTransaction.wallet_id == wallet.id,
                WalletTransaction.order_id == order.id,
                WalletTransaction.type == SALE,
            )
            .first()
        )
        if existing is not None:
            continue

        db.add(
            WalletTransaction(
                wallet_id=wallet.id,
                order_id=order.id,
                amount=net,
                status=COMPLETED if delivered else PENDING,
                type=SALE,
                description=f"Sale - order #{order.id}",
                data={
                    "items": share["items"],
                    "platform_fee_percentage": str(PLATFORM_FEE_PERCENTAGE),
                    "fee": str(fee),
                    "gross_amount": str(gross),
                    "net_amount": str(net),
                },
            )
        )
        if delivered:
            wallet.balance = dec(wallet.balance) + net
        else:
            wallet.pending_balance = dec(wallet.pending_balance) + net
        wallet.total_earned = dec(wallet.total_earned) + net

    order.platform_fee = money(total_fee)
    db.commit()
    return order.platform_fee


def _sale_transactions(db: Session, order_id: int, status: str) -> List[WalletTransaction]:
    return (
        db.query(WalletTransaction)
        .filter(
            WalletTransaction.order_id == order_id,
            WalletTransaction.type == SALE,
            WalletTransaction.status == status,
        )
        .all()
    )


def complete_order_sales(db: Session, order_id: int) -> int:
    """Move pending sale credits of a delivered order into the balance."""
    transactions = _sale_transactions(db, order_id, PENDING)
    for tx in transactions:
        wallet = tx.wallet
        wallet.pending_balance = dec(wallet.pending_balance) - dec(tx.amount)
        wallet.balance = dec(wallet.balance) + dec(tx.amount)
        tx.status = COMPLETED
    db.commit()
    return len(transactions)


def cancel_order_sales(db: Session, order_id: int) -> int:
    """Withdraw the pending credits of a cancelled order."""
    transactions = _sale_transactions(db, order_id, PENDING)
    for tx in transactions:
        wallet = tx.wallet
        wallet.pending_balance = dec(wallet.pending_balance) - dec(tx.amount)
        wallet.total_earned = dec(wallet.total_earned) - dec(tx.amount)
        tx.status = CANCELLED
    db.commit()
    return len(transactions)


def _safely(action, db: Session, *args) -> Optional[object]:
    try:
        return action(db, *args)
    except Exception:
        db.rollback()
        logger.exception("wallet bookkeeping %s failed for %s", action.__name__, args)
        return None


def record_order_sales_safely(db: Session, order: Order):
    return _safely(record_order_sales, db, order)


def settle_order_safely(db: Session, order: Order):
    if order.status == OrderStatus.DELIVERED.value:
        return _safely(complete_order_sales, db, order.id)
    if order.status == OrderStatus.CANCELLED.value:
        return _safely(cancel_order_sales, db, order.id)
    return None


def request_withdrawal(db: Session, user: User, amount: Decimal) -> Withdrawal:
    producer = db.query(Producer).filter(Producer.user_id == user.id).first()
    if producer is None:
        raise ValueError("producer_not_found")
    if not (producer.iban or "").strip():
        raise ValueError("bank_details_missing")

    amount = money(amount)
    wallet = (
        db.query(Wallet).filter(Wallet.producer_id == producer.id).with_for_update().first()
        or ensure_wallet(db, producer)
    )
    balance = dec(wallet.balance)
    if amount <= 0 or amount > balance:
        raise ValueError(f"insufficient_balance:{balance}:{amount}")

    bank_details = {
        "iban": producer.iban,
        "bic": producer.bic,
        "bank_name": producer.bank_name,
        "account_name": producer.bank_account_name or producer.company_name,
    }
    withdrawal = Withdrawal(wallet_id=wallet.id, amount=amount, status=PENDING, bank_details=bank_details)
    db.add(withdrawal)
    db.flush()
    db.add(
        WalletTransaction(
            wallet_id=wallet.id,
            amount=-amount,
            status=PENDING,
            type=WITHDRAWAL,
            description="Withdrawal request",
            data={"withdrawal_id": withdrawal.id},
        )
    )
    wallet.balance = balance - amount
    wallet.pending_balance = dec(wallet.pending_balance) + amount
    db.commit()
    db.refresh(withdrawal)
    logger.info("withdrawal %s of %s requested by producer %s", withdrawal.id, amount, producer.id)
    return withdrawal


def list_withdrawals(
    db: Session, *, status: Optional[str] = None, page: int = 1, limit: int = 20
) -> Tuple[List[Withdrawal], int]:
    query = db.query(Withdrawal)
    if status:
        query = query.filter(Withdrawal.status == status.upper())
    total = query.count()
    items = (
        query.order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def process_withdrawal(
    db: Session,
    withdrawal_id: int,
    admin: User,
    *,
    status: str,
    note: Optional[str] = None,
    reference: Optional[str] = None,
) -> Withdrawal:
    withdrawal = db.query(Withdrawal).filter(Withdrawal.id == withdrawal_id).with_for_update().first()
    if withdrawal is None:
        raise ValueError("withdrawal_not_found")
    if withdrawal.status != PENDING:
        raise ValueError("withdrawal_processed")
    if status not in (COMPLETED, REJECTED):
        raise ValueError("invalid_status")

    wallet = withdrawal.wallet
    amount = dec(withdrawal.amount)
    wallet.pending_balance = dec(wallet.pending_balance) - amount
    if status == COMPLETED:
        wallet.total_withdrawn = dec(wallet.total_withdrawn) + amount
    else:
        wallet.balance = dec(wallet.balance) + amount

    for tx in wallet.transactions:
        if tx.type == WITHDRAWAL and (tx.data or {}).get("withdrawal_id") == withdrawal.id:
            tx.status = COMPLETED if status == COMPLETED else CANCELLED

    withdrawal.status = status
    withdrawal.processor_note = note
    withdrawal.reference = reference
    withdrawal.processed_at = utcnow()
    add_admin_log(
        db,
        admin_id=admin.id,
        action=f"WITHDRAWAL_{status}",
        entity_type="Withdrawal",
        entity_id=withdrawal.id,
        details={"amount": str(amount), "wallet_id": wallet.id, "reference": reference, "note": note},
    )
    db.commit()
    db.refresh(withdrawal)
    return withdrawal
