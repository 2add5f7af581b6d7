from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from .emailer import build_message, pick_recipient, send_message

logger = logging.getLogger(__name__)

EVENT_KEYS = ("order.created", "order.status_changed", "invoice.created", "invoice.paid", "stock.low")


def _order_created(payload: Dict[str, Any]) -> Tuple[str, List[str]]:
    order_id = payload.get("order_id")
    return (
        f"Order #{order_id} confirmed",
        [
            "Thank you for your order.",
            "",
            f"Order ID: {order_id}",
            f"Status: {payload.get('status')}",
            f"Total: {payload.get('total')}",
            f"Delivery fee: {payload.get('delivery_fee')}",
            f"Payment method: {payload.get('payment_method')}",
        ],
    )


def _order_status_changed(payload: Dict[str, Any]) -> Tuple[str, List[str]]:
    order_id = payload.get("order_id")
    return (
        f"Order #{order_id} is now {payload.get('status')}",
        [
            f"The status of order #{order_id} changed.",
            "",
            f"Previous status: {payload.get('old_status')}",
            f"New status: {payload.get('status')}",
        ],
    )


def _invoice_created(payload: Dict[str, Any]) -> Tuple[str, List[str]]:
    number = payload.get("invoice_number")
    return (
        f"Invoice {number}",
        [
            f"Invoice {number} has been issued for order #{payload.get('order_id')}.",
            "",
            f"Amount: {payload.get('amount')}",
            f"Due date: {payload.get('due_date')}",
        ],
    )


def _invoice_paid(payload: Dict[str, Any]) -> Tuple[str, List[str]]:
    number = payload.get("invoice_number")
    return (
        f"Payment received for invoice {number}",
        [
            f"We received your payment for invoice {number}.",
            "",
            f"Amount: {payload.get('amount')}",
            f"Payment method: {payload.get('payment_method')}",
        ],
    )


def _stock_low(payload: Dict[str, Any]) -> Tuple[str, List[str]]:
    name = payload.get("product_name")
    return (
        f"Low stock: {name}",
        [
            f"Stock for {name} is running low.",
            "",
            f"Remaining: {payload.get('quantity')} {payload.get('unit') or ''}".rstrip(),
            "Update the stock level or pause the product to avoid overselling.",
        ],
    )


RENDERERS = {
    "order.created": _order_created,
    "order.status_changed": _order_status_changed,
    "invoice.created": _invoice_created,
    "invoice.paid": _invoice_paid,
    "stock.low": _stock_low,
}


def handle_marketplace_event(payload: Dict[str, Any]) -> Optional[str]:
    """Turn one domain event into an e-mail; returns the recipient used."""
    event = payload.get("event") or ""
    render = RENDERERS.get(event)
    if render is None:
        # unknown events are not mailed
        logger.debug("ignoring event %r", event)
        return None

    subject, lines = render(payload)
    if payload.get("occurred_at"):
        lines = [*lines, f"Occurred at: {payload['occurred_at']}"]
    to_email = pick_recipient(payload.get("user_email"))
    send_message(build_message(to_email=to_email, subject=subject, lines=lines, event=event))
    return to_email
