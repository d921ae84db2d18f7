"""Helpers for preparing a fetched message for relay."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from email import policy
from email.parser import BytesHeaderParser
from email.utils import getaddresses

from ..core.datetime_utils import ensure_utc
from ..core.models import FetchedMessage

FORWARDED_BY = "mail-forwarder"

_HEADER_PARSER = BytesHeaderParser(policy=policy.default)


@dataclass(frozen=True, slots=True)
class HeaderSummary:
    """The few original headers worth echoing in logs and notifications."""

    subject: str | None
    sender: str | None
    message_id_header: str | None


def summarize_headers(raw: bytes) -> HeaderSummary:
    """Parse only the header block of ``raw``."""
    try:
        headers = _HEADER_PARSER.parsebytes(raw)
        subject = headers.get("Subject")
        sender = _take_first_address(headers.get("From"))
        message_id = headers.get("Message-ID")
    except (ValueError, LookupError, TypeError):
        return HeaderSummary(subject=None, sender=None, message_id_header=None)
    return HeaderSummary(
        subject=str(subject) if subject is not None else None,
        sender=sender,
        message_id_header=str(message_id) if message_id is not None else None,
    )


def build_forwarded_payload(
    account_id: str, message: FetchedMessage, forwarded_at: datetime
) -> bytes:
    """Return ``message`` with trace headers prepended.

    The original header block and body are kept byte-for-byte so From, To,
    Subject and MIME structure reach the destination unchanged.
    """
    timestamp = ensure_utc(forwarded_at)
    assert timestamp is not None
    trace = (
        f"X-Forwarded-By: {FORWARDED_BY}\r\n"
        f"X-Original-Message-ID: {_header_safe(message.message_id)}\r\n"
        f"X-Forwarded-Account: {_header_safe(account_id)}\r\n"
        f"X-Forwarded-Time: {timestamp.isoformat()}\r\n"
    )
    return trace.encode("utf-8") + message.raw


def _header_safe(value: str) -> str:
    return " ".join(value.split())


def _take_first_address(header_value: object) -> str | None:
    if header_value is None:
        return None
    for _, address in getaddresses([str(header_value)]):
        if address:
            return address
    return None


__all__ = [
    "FORWARDED_BY",
    "HeaderSummary",
    "build_forwarded_payload",
    "summarize_headers",
]
