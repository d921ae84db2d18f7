"""Transport adapters for external mail servers."""

from __future__ import annotations

from ..core.config import ReceiverSettings
from ..core.interfaces import MailboxProvider
from .imap_client import ImapClient, ImapError
from .pop3_client import Pop3Client, Pop3Error
from .smtp_client import EmailMessage, SmtpClient, SmtpError


def open_mailbox(receiver: ReceiverSettings, *, timeout: float = 30.0) -> MailboxProvider:
    """Return a connected session for ``receiver``'s protocol."""
    client: ImapClient | Pop3Client
    if receiver.protocol == "imap":
        client = ImapClient(receiver, timeout=timeout)
    else:
        client = Pop3Client(receiver, timeout=timeout)
    client.connect()
    return client


__all__ = [
    "EmailMessage",
    "ImapClient",
    "ImapError",
    "Pop3Client",
    "Pop3Error",
    "SmtpClient",
    "SmtpError",
    "open_mailbox",
]
