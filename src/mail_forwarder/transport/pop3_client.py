"""POP3 transport adapter providing mailbox access."""

from __future__ import annotations

import hashlib
import logging
import poplib
from collections.abc import Sequence
from email import policy
from email.parser import BytesHeaderParser
from types import TracebackType

from ..core.config import ReceiverSettings
from ..core.interfaces import MailboxProvider, TransportError
from ..core.models import FetchedMessage

LOGGER = logging.getLogger(__name__)

_HEADER_PARSER = BytesHeaderParser(policy=policy.compat32)


class Pop3Error(TransportError):
    """Wrap low level POP3 errors with additional context."""


class Pop3Client(MailboxProvider):
    """Thin wrapper around ``poplib`` addressing messages by UIDL.

    POP3 has no server-side notion of "new", so every listed message is a
    candidate and filtering happens against the ledger. Deletions are only
    committed by the server when the session ends with ``QUIT``.
    """

    def __init__(self, settings: ReceiverSettings, *, timeout: float = 30.0) -> None:
        """Initialise the client with the receiver configuration."""
        self._settings = settings
        self._timeout = timeout
        self._connection: poplib.POP3 | poplib.POP3_SSL | None = None
        self._numbers: dict[str, int] = {}

    def __enter__(self) -> Pop3Client:
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

    def connect(self) -> None:
        """Open the session and authenticate with USER/PASS."""
        if self._connection is not None:
            return

        settings = self._settings
        try:
            if settings.use_tls:
                LOGGER.debug(
                    "Connecting to POP3 host %s:%s via SSL", settings.host, settings.port
                )
                connection: poplib.POP3 | poplib.POP3_SSL = poplib.POP3_SSL(
                    settings.host, settings.port, timeout=self._timeout
                )
            else:
                LOGGER.debug(
                    "Connecting to POP3 host %s:%s without SSL",
                    settings.host,
                    settings.port,
                )
                connection = poplib.POP3(
                    settings.host, settings.port, timeout=self._timeout
                )
        except (poplib.error_proto, OSError) as exc:
            raise Pop3Error(
                f"Failed to connect to POP3 server {settings.host}:{settings.port}: {exc}"
            ) from exc

        try:
            LOGGER.debug("Authenticating as %s", settings.username)
            connection.user(settings.username)
            connection.pass_(settings.password)
        except poplib.error_proto as exc:
            _safe_quit(connection)
            raise Pop3Error(
                f"POP3 authentication rejected for {settings.username}: {exc}",
                permanent=True,
            ) from exc
        except OSError as exc:
            _safe_quit(connection)
            raise Pop3Error(f"Network error during POP3 login: {exc}") from exc

        self._connection = connection

    def list_identifiers(self) -> Sequence[str]:
        """Return a stable identifier for every message in the maildrop."""
        connection = self._require_connection()
        try:
            _, listing, _ = connection.uidl()
        except poplib.error_proto:
            LOGGER.debug("UIDL unsupported; identifying messages by header")
            return self._list_by_number(connection)
        except OSError as exc:
            raise Pop3Error(f"POP3 UIDL failed: {exc}") from exc

        self._numbers = {}
        for line in listing:
            number, _, uid = line.decode("ascii", errors="replace").partition(" ")
            if not uid:
                continue
            self._numbers[uid.strip()] = int(number)
        return list(self._numbers)

    def retrieve(self, message_id: str) -> FetchedMessage:
        """Download the full message with ``RETR``."""
        connection = self._require_connection()
        number = self._resolve(message_id)
        try:
            _, lines, _ = connection.retr(number)
        except (poplib.error_proto, OSError) as exc:
            raise Pop3Error(f"POP3 RETR failed for {message_id}: {exc}") from exc
        return FetchedMessage(message_id=message_id, raw=b"\r\n".join(lines) + b"\r\n")

    def mark_forwarded(self, message_id: str) -> None:
        """POP3 keeps no per-message flags; nothing to record server-side."""
        del message_id

    def delete(self, message_id: str) -> None:
        """Mark the message for deletion; committed when the session quits."""
        connection = self._require_connection()
        number = self._resolve(message_id)
        LOGGER.debug("Marking POP3 message %s (#%s) for deletion", message_id, number)
        try:
            connection.dele(number)
        except (poplib.error_proto, OSError) as exc:
            raise Pop3Error(f"POP3 DELE failed for {message_id}: {exc}") from exc

    def close(self) -> None:
        """End the session with ``QUIT`` so pending deletions are applied."""
        if self._connection is None:
            return
        connection = self._connection
        self._connection = None
        self._numbers = {}
        try:
            connection.quit()
            LOGGER.debug("POP3 session closed")
        except (poplib.error_proto, OSError) as exc:
            LOGGER.warning(
                "POP3 QUIT failed for %s; pending deletions may not apply: %s",
                self._settings.username,
                exc,
            )
            connection.close()

    def _list_by_number(self, connection: poplib.POP3) -> list[str]:
        """Identify messages by their headers when UIDL is unavailable.

        Message numbers are reassigned every session, so they cannot serve
        as ledger keys. The ``Message-ID`` header is used when present,
        otherwise a digest of the whole message.
        """
        try:
            _, listing, _ = connection.list()
        except (poplib.error_proto, OSError) as exc:
            raise Pop3Error(f"POP3 LIST failed: {exc}") from exc
        self._numbers = {}
        for line in listing:
            number = int(line.split()[0])
            key = self._header_key(connection, number)
            if key in self._numbers:
                LOGGER.warning(
                    "POP3 messages #%s and #%s share identifier %s; only the "
                    "first is handled",
                    self._numbers[key],
                    number,
                    key,
                )
                continue
            self._numbers[key] = number
        return list(self._numbers)

    def _header_key(self, connection: poplib.POP3, number: int) -> str:
        try:
            _, header_lines, _ = connection.top(number, 0)
        except poplib.error_proto:
            LOGGER.debug("TOP unsupported for #%s; hashing the full message", number)
            header_lines = []
        except OSError as exc:
            raise Pop3Error(f"POP3 TOP failed for #{number}: {exc}") from exc

        headers = _HEADER_PARSER.parsebytes(b"\r\n".join(header_lines))
        message_id = " ".join(str(headers.get("Message-ID") or "").split())
        if message_id:
            return f"msgid:{message_id}"

        try:
            _, lines, _ = connection.retr(number)
        except (poplib.error_proto, OSError) as exc:
            raise Pop3Error(f"POP3 RETR failed for #{number}: {exc}") from exc
        digest = hashlib.sha256(b"\r\n".join(lines)).hexdigest()
        return f"sha256:{digest}"

    def _resolve(self, message_id: str) -> int:
        try:
            return self._numbers[message_id]
        except KeyError as exc:
            raise Pop3Error(
                f"Message with ID {message_id} not found in the current listing"
            ) from exc

    def _require_connection(self) -> poplib.POP3 | poplib.POP3_SSL:
        if self._connection is None:
            raise Pop3Error("POP3 connection has not been established")
        return self._connection


def _safe_quit(connection: poplib.POP3) -> None:
    try:
        connection.quit()
    except (poplib.error_proto, OSError):  # pragma: no cover
        LOGGER.debug("POP3 quit raised; suppressing during shutdown")


__all__ = ["Pop3Client", "Pop3Error"]
