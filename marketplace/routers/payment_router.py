import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from .. import payments
from ..crud import invoices as crud_invoices
from ..database import get_db
from ..errors import http_error
from .invoice_router import announce_paid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def handle_stripe_event(db: Session, event) -> None:
    """Apply a verified Stripe event. Blocking: database, SMTP and broker I/O."""
    event_type = getattr(event, "type", None)
    intent = getattr(getattr(event, "data", None), "object", None)

    if event_type == "payment_intent.succeeded" and intent is not None:
        try:
            invoice = crud_invoices.reconcile_payment_intent(db, intent)
        except ValueError as e:
            # acknowledged anyway, Stripe would only retry the same payload
            logger.warning("payment intent %s not applied: %s", getattr(intent, "id", None), e)
            return
        if invoice is not None:
            announce_paid(db, invoice)
    elif event_type == "payment_intent.payment_failed" and intent is not None:
        logger.info("payment intent %s failed", getattr(intent, "id", None))


@router.post("/stripe/webhook", include_in_schema=False)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Stripe webhook endpoint.

    Configure this URL in Stripe (or via stripe-cli) and set STRIPE_WEBHOOK_SECRET.
    Succeeded intents carrying an ``invoice_id`` settle that invoice.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    try:
        event = payments.construct_webhook_event(payload, sig_header)
    except ValueError as e:
        raise http_error(e)

    await run_in_threadpool(handle_stripe_event, db, event)
    return {"received": True}
