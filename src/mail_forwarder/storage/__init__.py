"""Persistence for the seen-message ledger."""

from .sqlite import MEMORY_PATH, SqliteSeenLedger

__all__ = ["MEMORY_PATH", "SqliteSeenLedger"]
