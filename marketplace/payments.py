from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

import stripe

from .config import STRIPE_CURRENCY, STRIPE_PUBLISHABLE_KEY, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET

logger = logging.getLogger(__name__)

# Stripe refuses amounts outside these bounds (in minor units)
MIN_AMOUNT_MINOR = 50
MAX_AMOUNT_MINOR = 99_999_999


def stripe_required() -> None:
    if not STRIPE_SECRET_KEY:
        raise ValueError("stripe_not_configured")
    stripe.api_key = STRIPE_SECRET_KEY


def to_minor_units(amount) -> int:
    dec = Decimal(str(amount))
    minor = (dec * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


def check_amount_bounds(amount_minor: int) -> None:
    if amount_minor < MIN_AMOUNT_MINOR:
        raise ValueError("amount_too_low")
    if amount_minor > MAX_AMOUNT_MINOR:
        raise ValueError("amount_too_high")


def create_payment_intent(*, amount_minor: int, metadata: dict, description: str):
    stripe_required()
    try:
        return stripe.PaymentIntent.create(
            amount=amount_minor,
            currency=STRIPE_CURRENCY,
            automatic_payment_methods={"enabled": True},
            metadata={k: str(v) for k, v in metadata.items()},
            description=description,
        )
    except stripe.StripeError as exc:
        logger.error("stripe PaymentIntent.create failed: %s", exc)
        raise ValueError("stripe_error") from exc


def retrieve_payment_intent(payment_intent_id: str):
    stripe_required()
    try:
        return stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.InvalidRequestError as exc:
        raise ValueError("payment_intent_not_found") from exc
    except stripe.StripeError as exc:
        logger.error("stripe PaymentIntent.retrieve(%s) failed: %s", payment_intent_id, exc)
        raise ValueError("stripe_error") from exc


def construct_webhook_event(payload: bytes, sig_header: str):
    if not STRIPE_WEBHOOK_SECRET:
        raise ValueError("stripe_not_configured")
    try:
        return stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=STRIPE_WEBHOOK_SECRET)
    except ValueError as exc:
        raise ValueError("invalid_payload") from exc
    except stripe.SignatureVerificationError as exc:
        raise ValueError("invalid_signature") from exc


def intent_metadata(intent) -> dict:
    metadata = getattr(intent, "metadata", None) or {}
    try:
        return dict(metadata)
    except (TypeError, ValueError):
        return {}


def publishable_key() -> str:
    return STRIPE_PUBLISHABLE_KEY
