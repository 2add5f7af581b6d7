import datetime as dt
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from .. import payments
from ..models import (
    Invoice,
    InvoiceStatus,
    NotificationType,
    OrderStatus,
    User,
    UserRole,
)
from .common import as_utc, dec, money, utcnow
from .orders import get_order, order_producer_user_ids, producer_in_order

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = (InvoiceStatus.PENDING.value, InvoiceStatus.OVERDUE.value)
MAX_INVOICE_AMOUNT = Decimal("999999")


def _invoice_query(db: Session):
    return db.query(Invoice).options(joinedload(Invoice.order), joinedload(Invoice.user))


def get_invoice_or_raise(db: Session, invoice_id: int) -> Invoice:
    invoice = _invoice_query(db).filter(Invoice.id == invoice_id).first()
    if invoice is None:
        raise ValueError("invoice_not_found")
    return invoice


def get_invoice_for_viewer(db: Session, invoice_id: int, user: User) -> Invoice:
    invoice = get_invoice_or_raise(db, invoice_id)
    if user.role != UserRole.ADMIN.value and invoice.user_id != user.id:
        raise ValueError("not_owner")
    mark_overdue(db, [invoice])
    return invoice


def mark_overdue(db: Session, invoices: List[Invoice]) -> int:
    """Flag PENDING invoices past their due date as OVERDUE.

    Their INVOICE_PENDING order follows to INVOICE_OVERDUE.
    """
    now = utcnow()
    changed = 0
    for invoice in invoices:
        if invoice.status != InvoiceStatus.PENDING.value:
            continue
        if as_utc(invoice.due_date) >= now:
            continue
        invoice.status = InvoiceStatus.OVERDUE.value
        if invoice.order is not None and invoice.order.status == OrderStatus.INVOICE_PENDING.value:
            invoice.order.status = OrderStatus.INVOICE_OVERDUE.value
        changed += 1
    if changed:
        db.commit()
        logger.info("%d invoice(s) became overdue", changed)
    return changed


def list_user_invoices(db: Session, user: User) -> List[Invoice]:
    invoices = (
        _invoice_query(db)
        .filter(Invoice.user_id == user.id)
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .all()
    )
    mark_overdue(db, invoices)
    return invoices


def pending_count(db: Session, user: User) -> int:
    return db.query(Invoice).filter(Invoice.user_id == user.id, Invoice.status.in_(PAYABLE_STATUSES)).count()


def create_invoice(
    db: Session,
    user: User,
    *,
    order_id: int,
    amount: Decimal,
    due_date: dt.datetime,
    notes: Optional[str] = None,
) -> Invoice:
    order = get_order(db, order_id)
    if order is None:
        raise ValueError("order_not_found")
    if order.user_id != user.id:
        raise ValueError("not_owner")

    amount = dec(amount)
    if amount <= 0 or amount > MAX_INVOICE_AMOUNT:
        raise ValueError("invalid_amount")
    due_date = as_utc(due_date)
    if due_date <= utcnow():
        raise ValueError("due_date_in_past")
    if order.invoice is not None:
        raise ValueError("invoice_exists")

    invoice = Invoice(
        order_id=order.id,
        user_id=user.id,
        amount=money(amount),
        status=InvoiceStatus.PENDING.value,
        due_date=due_date,
        notes=notes,
    )
    db.add(invoice)
    db.commit()
    db.refresh(invoice)
    return invoice


def _check_payable(invoice: Invoice) -> None:
    if invoice.status == InvoiceStatus.PAID.value:
        raise ValueError("invoice_already_paid")
    if invoice.status not in PAYABLE_STATUSES:
        raise ValueError("invoice_not_payable")
    if dec(invoice.amount) <= 0:
        raise ValueError("invalid_amount")


def prepare_payment_intent(db: Session, invoice_id: int, user: User) -> dict:
    invoice = _invoice_query(db).filter(
        Invoice.id == invoice_id,
        Invoice.user_id == user.id,
        Invoice.status.in_(PAYABLE_STATUSES),
    ).first()
    if invoice is None:
        raise ValueError("invoice_not_found")

    amount_minor = payments.to_minor_units(invoice.amount)
    payments.check_amount_bounds(amount_minor)

    if invoice.stripe_payment_intent_id:
        try:
            existing = payments.retrieve_payment_intent(invoice.stripe_payment_intent_id)
        except ValueError:
            logger.warning("stored intent %s for invoice %s is unusable", invoice.stripe_payment_intent_id, invoice.id)
            existing = None
        if (
            existing is not None
            and str(getattr(existing, "status", "")).startswith("requires_")
            and getattr(existing, "amount", None) == amount_minor
        ):
            return _intent_response(existing, amount_minor)

    intent = payments.create_payment_intent(
        amount_minor=amount_minor,
        metadata={
            "invoice_id": invoice.id,
            "order_id": invoice.order_id,
            "user_id": user.id,
            "type": "invoice_payment",
        },
        description=f"Invoice {invoice.invoice_number}",
    )
    invoice.stripe_payment_intent_id = intent.id
    db.commit()
    return _intent_response(intent, amount_minor)


def _intent_response(intent, amount_minor: int) -> dict:
    return {
        "payment_intent_id": intent.id,
        "client_secret": getattr(intent, "client_secret", None),
        "amount": amount_minor,
        "currency": payments.STRIPE_CURRENCY,
        "publishable_key": payments.publishable_key() or None,
    }


def _verify_intent(invoice: Invoice, intent, user_id: Optional[int]) -> None:
    status = getattr(intent, "status", None)
    if status != "succeeded":
        raise ValueError(f"payment_not_succeeded:{status}")
    if getattr(intent, "amount", None) != payments.to_minor_units(invoice.amount):
        raise ValueError("payment_amount_mismatch")
    metadata = payments.intent_metadata(intent)
    if metadata.get("invoice_id") and metadata["invoice_id"] != str(invoice.id):
        raise ValueError("payment_invoice_mismatch")
    if user_id is not None and metadata.get("user_id") and metadata["user_id"] != str(user_id):
        raise ValueError("payment_user_mismatch")


def _apply_payment(
    db: Session,
    invoice: Invoice,
    *,
    payment_method: str,
    payment_intent_id: Optional[str] = None,
    notes: Optional[str] = None,
    manual: bool = False,
) -> Invoice:
    """Mark the invoice PAID and move its order along, in one transaction.

    Online payments always put the order in INVOICE_PAID. Manual
    confirmations only move invoice-state orders there and confirm a
    PENDING one.
    """
    try:
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = utcnow()
        invoice.payment_method = payment_method
        if payment_intent_id:
            invoice.stripe_payment_intent_id = payment_intent_id
        if notes:
            invoice.notes = notes

        order = invoice.order
        if order is not None:
            if not manual:
                order.status = OrderStatus.INVOICE_PAID.value
            elif order.status == OrderStatus.PENDING.value:
                order.status = OrderStatus.CONFIRMED.value
            elif order.status in (OrderStatus.INVOICE_PENDING.value, OrderStatus.INVOICE_OVERDUE.value):
                order.status = OrderStatus.INVOICE_PAID.value
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(invoice)
    logger.info("invoice %s paid (%s)", invoice.id, payment_method)
    return invoice


def pay_invoice(
    db: Session,
    invoice_id: int,
    user: User,
    *,
    payment_method: str,
    payment_intent_id: Optional[str] = None,
) -> Invoice:
    invoice = get_invoice_or_raise(db, invoice_id)
    if invoice.user_id != user.id:
        raise ValueError("not_owner")
    _check_payable(invoice)

    if payment_method == "card":
        if not payment_intent_id:
            raise ValueError("payment_intent_required")
        intent = payments.retrieve_payment_intent(payment_intent_id)
        _verify_intent(invoice, intent, user.id)

    return _apply_payment(db, invoice, payment_method=payment_method, payment_intent_id=payment_intent_id)


def mark_paid(
    db: Session,
    invoice_id: int,
    user: User,
    *,
    payment_method: str = "manual",
    notes: Optional[str] = None,
) -> Invoice:
    invoice = get_invoice_or_raise(db, invoice_id)
    if user.role != UserRole.ADMIN.value:
        order = get_order(db, invoice.order_id)
        if order is None or not producer_in_order(order, user):
            raise ValueError("forbidden")
    _check_payable(invoice)
    return _apply_payment(db, invoice, payment_method=payment_method, notes=notes, manual=True)


def reconcile_payment_intent(db: Session, intent) -> Optional[Invoice]:
    """Settle the invoice referenced by a succeeded PaymentIntent.

    Returns the invoice when this call paid it, ``None`` when there was
    nothing to do (no invoice metadata, unknown invoice, already paid).
    """
    metadata = payments.intent_metadata(intent)
    raw_id = metadata.get("invoice_id")
    if not raw_id:
        return None
    try:
        invoice_id = int(raw_id)
    except (TypeError, ValueError):
        logger.warning("payment intent %s carries a bad invoice_id %r", getattr(intent, "id", None), raw_id)
        return None

    invoice = _invoice_query(db).filter(Invoice.id == invoice_id).first()
    if invoice is None:
        logger.warning("payment intent %s references unknown invoice %s", getattr(intent, "id", None), invoice_id)
        return None
    if invoice.status == InvoiceStatus.PAID.value:
        return None
    if invoice.status not in PAYABLE_STATUSES:
        logger.warning("invoice %s is %s, ignoring payment %s", invoice.id, invoice.status, getattr(intent, "id", None))
        return None

    _verify_intent(invoice, intent, None)
    return _apply_payment(db, invoice, payment_method="card", payment_intent_id=getattr(intent, "id", None))


def paid_notifications(invoice: Invoice) -> List[dict]:
    notes = [
        {
            "user_id": invoice.user_id,
            "type": NotificationType.INVOICE_PAID,
            "title": "Invoice paid",
            "message": f"Your payment of {invoice.amount} for invoice {invoice.invoice_number} was received.",
            "link": "/invoices",
            "data": {"invoice_id": invoice.id, "order_id": invoice.order_id},
        }
    ]
    if invoice.order is not None:
        for producer_user_id in sorted(order_producer_user_ids(invoice.order)):
            notes.append(
                {
                    "user_id": producer_user_id,
                    "type": NotificationType.PAYMENT_RECEIVED,
                    "title": "Payment received",
                    "message": f"Invoice {invoice.invoice_number} for order #{invoice.order_id} has been paid.",
                    "link": f"/producer/orders?order={invoice.order_id}",
                    "data": {"invoice_id": invoice.id, "order_id": invoice.order_id},
                }
            )
    return notes


def invoice_event_payload(invoice: Invoice) -> dict:
    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "order_id": invoice.order_id,
        "user_id": invoice.user_id,
        "user_email": invoice.user.email if invoice.user is not None else None,
        "amount": str(invoice.amount),
        "status": invoice.status,
        "due_date": as_utc(invoice.due_date).isoformat(),
        "payment_method": invoice.payment_method,
    }
