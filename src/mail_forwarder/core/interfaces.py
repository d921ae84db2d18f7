"""Protocol interfaces and error types for decoupling components."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from .config import ReceiverSettings, SenderSettings
from .models import FetchedMessage, ForwardOutcome, NotificationEvent


class TransportError(RuntimeError):
    """A protocol-level failure talking to a mail server.

    ``permanent`` marks failures that will not go away by retrying, such as
    rejected credentials or a 5xx reply.
    """

    def __init__(self, message: str, *, permanent: bool = False) -> None:
        super().__init__(message)
        self.permanent = permanent


class LedgerError(RuntimeError):
    """Raised when the seen-message ledger cannot be read or written."""


class MailboxProvider(Protocol):
    """An open session against one source mailbox."""

    def list_identifiers(self) -> Sequence[str]:
        """Return identifiers of candidate messages in server order."""
        raise NotImplementedError

    def retrieve(self, message_id: str) -> FetchedMessage:
        """Download the raw payload for ``message_id``."""
        raise NotImplementedError

    def mark_forwarded(self, message_id: str) -> None:
        """Record on the server that the message has been handled."""
        raise NotImplementedError

    def delete(self, message_id: str) -> None:
        """Remove the message from the source mailbox."""
        raise NotImplementedError

    def close(self) -> None:
        """Release network resources, committing pending deletions."""
        raise NotImplementedError


class MailboxFactory(Protocol):
    """Callable opening a connected session for a receiver."""

    def __call__(
        self, receiver: ReceiverSettings, *, timeout: float
    ) -> MailboxProvider:
        raise NotImplementedError


class SeenLedger(Protocol):
    """Durable set of (account, message) pairs already forwarded."""

    def has(self, account_id: str, message_id: str) -> bool:
        """Return whether the pair has been recorded."""
        raise NotImplementedError

    def record(self, account_id: str, message_id: str, timestamp: datetime) -> None:
        """Insert the pair; recording an existing pair is a no-op."""
        raise NotImplementedError

    def close(self) -> None:
        """Flush and release the backing store."""
        raise NotImplementedError


class Forwarder(Protocol):
    """Relays a fetched message to the destination mailbox."""

    def forward(
        self,
        account_id: str,
        message: FetchedMessage,
        sender: SenderSettings,
    ) -> ForwardOutcome:
        """Send ``message`` and report the outcome without raising."""
        raise NotImplementedError


class EventPublisher(Protocol):
    """Non-blocking sink for notification events."""

    def publish(self, event: NotificationEvent) -> None:
        """Queue ``event`` for delivery."""
        raise NotImplementedError


__all__ = [
    "EventPublisher",
    "Forwarder",
    "LedgerError",
    "MailboxFactory",
    "MailboxProvider",
    "SeenLedger",
    "TransportError",
]
