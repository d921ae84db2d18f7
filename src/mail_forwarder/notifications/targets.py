"""Rendering and delivery for each notification target kind."""

from __future__ import annotations

import logging
from datetime import datetime

import httpx

from ..core.config import (
    EmailTarget,
    FileTarget,
    NotificationTarget,
    SenderSettings,
    TelegramTarget,
)
from ..core.models import ForwardOutcome, NotificationEvent, WorkerEvent
from ..transport.smtp_client import EmailMessage, SmtpClient

LOGGER = logging.getLogger(__name__)

CRITICAL_TAG = "[CRITICAL]"


class NotificationError(RuntimeError):
    """Raised when a target fails to accept a notification."""


def describe_target(target: NotificationTarget) -> str:
    """Return a short label for logs that does not leak secrets."""
    match target:
        case TelegramTarget(chat_id=chat_id):
            return f"telegram:{chat_id}"
        case FileTarget(file_path=file_path):
            return f"file:{file_path}"
        case EmailTarget(smtp_username=username, recipient=recipient):
            return f"email:{recipient or username}"
    raise TypeError(f"Unsupported notification target: {target!r}")


def render_subject(event: NotificationEvent) -> str:
    """Return a one-line subject for ``event``."""
    if isinstance(event, WorkerEvent):
        prefix = f"{CRITICAL_TAG} " if event.critical else ""
        return f"{prefix}Mail forwarder {event.kind.value} for {event.account_id}"
    if event.success:
        return f"Notification: Email {event.message_id} forwarded"
    return f"Notification: Email {event.message_id} failed to forward"


def render_text(event: NotificationEvent, forward_to: str) -> str:
    """Return the multi-line message body used by chat and email targets."""
    if isinstance(event, WorkerEvent):
        lines = [
            render_subject(event),
            f"Account: {event.account_id}",
            f"Detail: {event.detail}",
        ]
    elif event.success:
        lines = [
            "Email forwarded successfully!",
            f"Account: {event.account_id}",
            f"ID: {event.message_id}",
            f"Target: {forward_to}",
        ]
    else:
        lines = [
            "Email forwarding failed.",
            f"Account: {event.account_id}",
            f"ID: {event.message_id}",
            f"Error: {event.error}",
        ]
    if isinstance(event, ForwardOutcome):
        if event.subject:
            lines.append(f"Subject: {event.subject}")
        if event.sender:
            lines.append(f"From: {event.sender}")
    lines.append(f"Time: {_format_time(event.timestamp)}")
    return "\n".join(lines)


def render_line(event: NotificationEvent, forward_to: str) -> str:
    """Return a single log line for file targets."""
    stamp = _format_time(event.timestamp)
    if isinstance(event, WorkerEvent):
        tag = CRITICAL_TAG if event.critical else "[INFO]"
        detail = " ".join(event.detail.split())
        return f"[{stamp}] {tag} {event.kind.value} {event.account_id}: {detail}"
    if event.success:
        return (
            f"[{stamp}] Forwarded email ID: {event.message_id} to {forward_to} "
            f"(account {event.account_id})"
        )
    error = " ".join((event.error or "").split())
    return (
        f"[{stamp}] Failed to forward email ID: {event.message_id} "
        f"(account {event.account_id}): {error}"
    )


async def send_telegram(
    client: httpx.AsyncClient, target: TelegramTarget, text: str
) -> None:
    """Post ``text`` to the configured chat via the Bot API."""
    url = f"{target.api_url.rstrip('/')}/bot{target.token}/sendMessage"
    try:
        response = await client.post(
            url, json={"chat_id": target.chat_id, "text": text}
        )
    except httpx.HTTPError as exc:
        raise NotificationError(f"Telegram request failed: {exc}") from exc
    if response.is_error:
        raise NotificationError(
            f"Telegram API error: {response.status_code} {response.text[:200]}"
        )


def append_line(target: FileTarget, line: str) -> None:
    """Append ``line`` to the target file, creating it if needed."""
    path = target.file_path
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError as exc:
        raise NotificationError(f"Unable to write to {path}: {exc}") from exc


def send_email(
    target: EmailTarget, subject: str, body: str, *, timeout: float = 30.0
) -> None:
    """Mail the notification through the target's own SMTP account."""
    settings = SenderSettings(
        host=target.smtp_host,
        port=target.smtp_port,
        username=target.smtp_username,
        password=target.smtp_password,
        use_tls=target.smtp_use_tls,
    )
    recipient = target.recipient or target.smtp_username
    with SmtpClient(settings, timeout=timeout) as client:
        client.send(EmailMessage(to=recipient, subject=subject, body=body))


def _format_time(value: datetime) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


__all__ = [
    "CRITICAL_TAG",
    "NotificationError",
    "append_line",
    "describe_target",
    "render_line",
    "render_subject",
    "render_text",
    "send_email",
    "send_telegram",
]
