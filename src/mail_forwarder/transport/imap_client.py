"""IMAP transport adapter providing mailbox access."""

from __future__ import annotations

import imaplib
import logging
from collections.abc import Sequence
from types import TracebackType

from ..core.config import ReceiverSettings
from ..core.interfaces import MailboxProvider, TransportError
from ..core.models import FetchedMessage

LOGGER = logging.getLogger(__name__)


class ImapError(TransportError):
    """Wrap low level IMAP errors with additional context."""


class ImapClient(MailboxProvider):
    """Thin wrapper around ``imaplib`` scoped to one folder of one account."""

    def __init__(self, settings: ReceiverSettings, *, timeout: float = 30.0) -> None:
        """Initialise the client with the receiver configuration."""
        self._settings = settings
        self._timeout = timeout
        self._connection: imaplib.IMAP4 | imaplib.IMAP4_SSL | None = None
        self.mailbox = settings.imap_folder

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapClient:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.close()

    # Public API ---------------------------------------------------------------
    def connect(self) -> None:
        """Establish IMAP connection and select the configured folder."""
        if self._connection is not None:
            return

        settings = self._settings
        try:
            if settings.use_tls:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s via SSL", settings.host, settings.port
                )
                connection: imaplib.IMAP4 | imaplib.IMAP4_SSL = imaplib.IMAP4_SSL(
                    settings.host, settings.port, timeout=self._timeout
                )
            else:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s without SSL",
                    settings.host,
                    settings.port,
                )
                connection = imaplib.IMAP4(
                    settings.host, settings.port, timeout=self._timeout
                )
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(
                f"Failed to connect to IMAP server {settings.host}:{settings.port}: {exc}"
            ) from exc

        try:
            LOGGER.debug("Authenticating as %s", settings.username)
            connection.login(settings.username, settings.password)
        except imaplib.IMAP4.abort as exc:
            _safe_logout(connection)
            raise ImapError(f"IMAP connection dropped during login: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            _safe_logout(connection)
            raise ImapError(
                f"IMAP authentication rejected for {settings.username}: {exc}",
                permanent=True,
            ) from exc
        except OSError as exc:
            _safe_logout(connection)
            raise ImapError(f"Network error during IMAP login: {exc}") from exc

        try:
            status, _ = connection.select(self.mailbox)
        except (imaplib.IMAP4.error, OSError) as exc:
            _safe_logout(connection)
            raise ImapError(f"Unable to select mailbox '{self.mailbox}': {exc}") from exc
        if status != "OK":
            _safe_logout(connection)
            raise ImapError(
                f"Unable to select mailbox '{self.mailbox}'", permanent=True
            )
        self._connection = connection

    def list_identifiers(self) -> Sequence[str]:
        """Return UIDs of unseen messages in ascending order."""
        connection = self._require_connection()
        LOGGER.debug("Searching for unseen messages in %s", self.mailbox)
        try:
            status, data = connection.uid("SEARCH", None, "UNSEEN")  # type: ignore[arg-type]
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(f"IMAP search failed: {exc}") from exc
        if status != "OK":
            raise ImapError("Failed to search for message UIDs")

        raw_ids = data[0].split() if data and data[0] else []
        return [raw.decode() for raw in raw_ids]

    def retrieve(self, message_id: str) -> FetchedMessage:
        """Fetch the full payload without setting the ``\\Seen`` flag."""
        connection = self._require_connection()
        LOGGER.debug("Fetching payload for UID %s", message_id)
        try:
            status, fetch_data = connection.uid("FETCH", message_id, "(BODY.PEEK[])")
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(f"IMAP fetch failed for UID {message_id}: {exc}") from exc
        if status != "OK":
            raise ImapError(f"Failed to fetch message UID {message_id}")
        payload = _extract_rfc822(fetch_data)
        if payload is None:
            raise ImapError(f"No payload returned for UID {message_id}")
        return FetchedMessage(message_id=message_id, raw=payload)

    def mark_forwarded(self, message_id: str) -> None:
        """Flag the message as seen once it has been relayed."""
        connection = self._require_connection()
        try:
            status, _ = connection.uid(
                "STORE", message_id, "+FLAGS.SILENT", r"(\Seen)"
            )
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(f"IMAP error while flagging UID {message_id}: {exc}") from exc
        if status != "OK":
            raise ImapError(f"Failed to flag message UID {message_id} as seen")

    def delete(self, message_id: str) -> None:
        """Delete a message by UID and expunge it from the mailbox."""
        connection = self._require_connection()
        LOGGER.debug("Marking UID %s for deletion", message_id)
        try:
            status, _ = connection.uid(
                "STORE",
                message_id,
                "+FLAGS.SILENT",
                r"(\Deleted)",
            )
            if status != "OK":
                raise ImapError(f"Failed to mark message UID {message_id} for deletion")
            LOGGER.debug("Expunging deleted messages")
            status_expunge, _ = connection.expunge()
            if status_expunge != "OK":
                raise ImapError(f"Failed to expunge message UID {message_id}")
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(f"IMAP error while deleting UID {message_id}") from exc

    def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        if self._connection is None:
            return
        try:
            LOGGER.debug("Closing IMAP connection")
            self._connection.close()
        except (imaplib.IMAP4.error, OSError):  # pragma: no cover - server state
            LOGGER.debug("IMAP close raised; continuing with logout")
        finally:
            _safe_logout(self._connection)
            self._connection = None

    # Internal helpers ---------------------------------------------------------
    def _require_connection(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        if self._connection is None:
            raise ImapError("IMAP connection has not been established")
        return self._connection


def _safe_logout(connection: imaplib.IMAP4) -> None:
    try:
        connection.logout()
    except (imaplib.IMAP4.error, OSError):  # pragma: no cover
        LOGGER.debug("IMAP logout raised; suppressing during shutdown")


def _extract_rfc822(fetch_data: list[tuple[bytes, bytes] | bytes]) -> bytes | None:
    """Extract the message payload from ``imaplib`` response chunks."""
    for entry in fetch_data:
        if isinstance(entry, tuple) and len(entry) == 2:
            return entry[1]
    return None


__all__ = [
    "ImapClient",
    "ImapError",
]
