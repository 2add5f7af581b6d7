import logging
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..auth import get_current_client, get_current_producer_or_admin, get_current_user
from ..crud import invoices as crud_invoices
from ..crud.notifications import notify_safely
from ..database import get_db
from ..errors import http_error
from ..messaging import emit_event
from ..models import Invoice, User
from ..schemas import (
    InvoiceCreate,
    InvoiceOut,
    InvoicePayRequest,
    MarkPaidRequest,
    PaymentIntentOut,
    PendingCount,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])


def announce_paid(db: Session, invoice: Invoice) -> None:
    """Best-effort notifications and ``invoice.paid`` event after a payment commit."""
    notify_safely(db, crud_invoices.paid_notifications(invoice))
    emit_event("invoice.paid", crud_invoices.invoice_event_payload(invoice))


@router.get("", response_model=List[InvoiceOut])
def list_invoices(
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    return crud_invoices.list_user_invoices(db, current_user)


@router.post("", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def create_invoice(
    body: InvoiceCreate,
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    try:
        invoice = crud_invoices.create_invoice(
            db,
            current_user,
            order_id=body.order_id,
            amount=body.amount,
            due_date=body.due_date,
            notes=body.notes,
        )
    except ValueError as e:
        raise http_error(e)
    emit_event("invoice.created", crud_invoices.invoice_event_payload(invoice))
    return invoice


@router.get("/pending-count", response_model=PendingCount)
def pending_count(
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    return {"count": crud_invoices.pending_count(db, current_user)}


@router.get("/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return crud_invoices.get_invoice_for_viewer(db, invoice_id, current_user)
    except ValueError as e:
        raise http_error(e)


@router.post("/{invoice_id}/create-payment-intent", response_model=PaymentIntentOut)
def create_payment_intent(
    invoice_id: int,
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    """Create (or reuse) the Stripe PaymentIntent the frontend confirms with Stripe.js."""
    try:
        return crud_invoices.prepare_payment_intent(db, invoice_id, current_user)
    except ValueError as e:
        raise http_error(e)


@router.post("/{invoice_id}/pay", response_model=InvoiceOut)
def pay_invoice(
    invoice_id: int,
    body: InvoicePayRequest,
    current_user: User = Depends(get_current_client),
    db: Session = Depends(get_db),
):
    try:
        invoice = crud_invoices.pay_invoice(
            db,
            invoice_id,
            current_user,
            payment_method=body.payment_method.value,
            payment_intent_id=body.stripe_payment_intent_id,
        )
    except ValueError as e:
        raise http_error(e)
    announce_paid(db, invoice)
    return invoice


@router.post("/{invoice_id}/mark-paid", response_model=InvoiceOut)
def mark_paid(
    invoice_id: int,
    body: MarkPaidRequest,
    current_user: User = Depends(get_current_producer_or_admin),
    db: Session = Depends(get_db),
):
    try:
        invoice = crud_invoices.mark_paid(
            db,
            invoice_id,
            current_user,
            payment_method=body.payment_method.value,
            notes=body.notes,
        )
    except ValueError as e:
        raise http_error(e)
    announce_paid(db, invoice)
    return invoice
