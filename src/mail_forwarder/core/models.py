"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .datetime_utils import utc_now


class ErrorKind(str, Enum):
    """How a failure should be handled by the polling loop."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class WorkerPhase(str, Enum):
    """Lifecycle phases of a poll worker."""

    IDLE = "idle"
    CONNECTING = "connecting"
    FETCHING = "fetching"
    FILTERING = "filtering"
    FORWARDING = "forwarding"
    COMMITTING = "committing"
    SLEEPING = "sleeping"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class WorkerEventKind(str, Enum):
    """Operational events published alongside forward outcomes."""

    WORKER_DISABLED = "worker_disabled"
    LEDGER_FAILURE = "ledger_failure"


@dataclass(frozen=True, slots=True)
class FetchedMessage:
    """Raw RFC822 payload paired with its protocol-native identifier."""

    message_id: str
    raw: bytes


@dataclass(frozen=True, slots=True)
class SeenRecord:
    """A message that has been forwarded and committed to the ledger."""

    account_id: str
    message_id: str
    forwarded_at: datetime


@dataclass(frozen=True, slots=True)
class ForwardOutcome:
    """Result of relaying one message to the destination."""

    account_id: str
    message_id: str
    success: bool
    error: str | None = None
    error_kind: ErrorKind | None = None
    timestamp: datetime = field(default_factory=utc_now)
    subject: str | None = None
    sender: str | None = None

    @property
    def permanent(self) -> bool:
        """Whether the failure should disable the worker."""
        return self.error_kind is ErrorKind.PERMANENT


@dataclass(frozen=True, slots=True)
class WorkerEvent:
    """Operational notification about a worker rather than a message."""

    account_id: str
    kind: WorkerEventKind
    detail: str
    critical: bool = False
    timestamp: datetime = field(default_factory=utc_now)


NotificationEvent = ForwardOutcome | WorkerEvent


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class WorkerRuntimeState:
    """Mutable state owned by exactly one poll worker."""

    phase: WorkerPhase = WorkerPhase.IDLE
    backoff_delay: float = 0.0
    consecutive_failures: int = 0
    ledger_failures: int = 0
    ledger_alerted: bool = False
    cycles: int = 0
    forwarded: int = 0
    last_error: str | None = None


@dataclass(slots=True)
class CycleReport:
    """Outcome summary for one poll cycle."""

    fetched: int = 0
    skipped: int = 0
    forwarded: int = 0
    failed: int = 0
    deferred: int = 0
    deleted: int = 0
    stopped_early: bool = False


__all__ = [
    "CycleReport",
    "ErrorKind",
    "FetchedMessage",
    "ForwardOutcome",
    "NotificationEvent",
    "SeenRecord",
    "WorkerEvent",
    "WorkerEventKind",
    "WorkerPhase",
    "WorkerRuntimeState",
]
