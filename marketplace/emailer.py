from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Iterable, Optional

from .config import (
    NOTIFY_FALLBACK_TO,
    NOTIFY_FORCE_TO,
    SMTP_FROM,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_USE_TLS,
    SMTP_USERNAME,
)

logger = logging.getLogger(__name__)

SIGNATURE = ["", "--", "Marketplace notifications", "You receive this e-mail because you have an account on the marketplace."]


def build_message(*, to_email: str, subject: str, lines: Iterable[str], event: Optional[str] = None) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=False)
    msg["Message-ID"] = make_msgid(domain=SMTP_FROM.rpartition("@")[2] or None)
    if event:
        msg["X-Marketplace-Event"] = event
    msg.set_content("\n".join([*lines, *SIGNATURE]))
    return msg


def send_message(msg: EmailMessage) -> None:
    with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=10) as server:
        if SMTP_USE_TLS:
            server.starttls()
        if SMTP_USERNAME and SMTP_PASSWORD:
            server.login(SMTP_USERNAME, SMTP_PASSWORD)
        server.send_message(msg)
    logger.info("sent e-mail %r to %s", msg["Subject"], msg["To"])


def pick_recipient(user_email: Optional[str]) -> str:
    """Resolve who actually receives a mail.

    ``NOTIFY_FORCE_TO`` wins over everything (staging); a user without an
    address falls back to ``NOTIFY_FALLBACK_TO``.
    """
    if NOTIFY_FORCE_TO:
        return NOTIFY_FORCE_TO
    if user_email and user_email.strip():
        return user_email.strip()
    return NOTIFY_FALLBACK_TO
