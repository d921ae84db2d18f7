"""SQLite-backed ledger of forwarded messages."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from types import TracebackType

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime
from ..core.interfaces import LedgerError, SeenLedger
from ..core.models import SeenRecord

LOGGER = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


class SqliteSeenLedger(SeenLedger):
    """Persist ``(account_id, message_id)`` pairs using SQLite.

    One connection is shared by every worker thread; a lock serialises all
    statements so concurrent commits never interleave.
    """

    def __init__(self, settings: StorageSettings) -> None:
        """Open the database and apply the schema."""
        self._settings = settings
        self._lock = threading.Lock()
        db_path = str(settings.ledger_path)
        try:
            if db_path != MEMORY_PATH:
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection: sqlite3.Connection | None = sqlite3.connect(
                db_path,
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row
            self._apply_migrations()
        except (sqlite3.Error, OSError) as exc:
            raise LedgerError(f"Unable to open ledger at {db_path}: {exc}") from exc
        LOGGER.info("Opened seen-message ledger at %s (%d records)", db_path, self.count())

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteSeenLedger:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # SeenLedger API ----------------------------------------------------------
    def has(self, account_id: str, message_id: str) -> bool:
        """Return whether the message was already forwarded for the account."""
        with self._lock:
            connection = self._require_connection()
            try:
                row = connection.execute(
                    "SELECT 1 FROM seen_messages WHERE account_id = ? AND message_id = ?",
                    (account_id, message_id),
                ).fetchone()
            except sqlite3.Error as exc:
                raise LedgerError(
                    f"Ledger lookup failed for {account_id}/{message_id}: {exc}"
                ) from exc
        return row is not None

    def record(self, account_id: str, message_id: str, timestamp: datetime) -> None:
        """Insert the pair; an existing record is left untouched."""
        if not account_id or not message_id:
            raise ValueError("account_id and message_id are required")
        with self._lock:
            connection = self._require_connection()
            try:
                with connection:
                    connection.execute(
                        """
                        INSERT INTO seen_messages (account_id, message_id, forwarded_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(account_id, message_id) DO NOTHING
                        """,
                        (account_id, message_id, serialize_datetime(timestamp)),
                    )
            except sqlite3.Error as exc:
                raise LedgerError(
                    f"Ledger write failed for {account_id}/{message_id}: {exc}"
                ) from exc
        LOGGER.debug("Recorded %s/%s in ledger", account_id, message_id)

    def fetch(self, account_id: str, message_id: str) -> SeenRecord | None:
        """Return the stored record for the pair, if any."""
        with self._lock:
            connection = self._require_connection()
            try:
                row = connection.execute(
                    """
                    SELECT account_id, message_id, forwarded_at
                    FROM seen_messages WHERE account_id = ? AND message_id = ?
                    """,
                    (account_id, message_id),
                ).fetchone()
            except sqlite3.Error as exc:
                raise LedgerError(f"Ledger lookup failed: {exc}") from exc
        if row is None:
            return None
        forwarded_at = parse_datetime(row["forwarded_at"], assume_utc=True)
        assert forwarded_at is not None
        return SeenRecord(
            account_id=row["account_id"],
            message_id=row["message_id"],
            forwarded_at=forwarded_at,
        )

    def count(self, account_id: str | None = None) -> int:
        """Return the number of stored records, optionally for one account."""
        query = "SELECT COUNT(*) FROM seen_messages"
        params: tuple[str, ...] = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        with self._lock:
            connection = self._require_connection()
            try:
                return int(connection.execute(query, params).fetchone()[0])
            except sqlite3.Error as exc:
                raise LedgerError(f"Ledger count failed: {exc}") from exc

    def prune(
        self, older_than: datetime, *, account_ids: Sequence[str] | None = None
    ) -> int:
        """Delete records forwarded before ``older_than``; return the count.

        When ``account_ids`` is given only those accounts are pruned.
        """
        query = "DELETE FROM seen_messages WHERE forwarded_at < ?"
        params: list[str | None] = [serialize_datetime(older_than)]
        if account_ids is not None:
            if not account_ids:
                return 0
            placeholders = ", ".join("?" for _ in account_ids)
            query += f" AND account_id IN ({placeholders})"
            params.extend(account_ids)
        with self._lock:
            connection = self._require_connection()
            try:
                with connection:
                    cursor = connection.execute(query, params)
            except sqlite3.Error as exc:
                raise LedgerError(f"Ledger prune failed: {exc}") from exc
        removed = cursor.rowcount
        if removed:
            LOGGER.info("Pruned %d ledger record(s) older than %s", removed, older_than)
        return removed

    def close(self) -> None:
        """Commit outstanding work and close the connection."""
        with self._lock:
            if self._connection is None:
                return
            try:
                self._connection.commit()
            finally:
                self._connection.close()
                self._connection = None
        LOGGER.debug("Closed seen-message ledger")

    # Internal helpers ---------------------------------------------------------
    def _require_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise LedgerError("Ledger has been closed")
        return self._connection

    def _apply_migrations(self) -> None:
        connection = self._require_connection()
        with connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS seen_messages (
                    account_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    forwarded_at TEXT NOT NULL,
                    PRIMARY KEY (account_id, message_id)
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_seen_messages_forwarded_at
                ON seen_messages(forwarded_at)
                """
            )


__all__ = ["MEMORY_PATH", "SqliteSeenLedger"]
