"""Per-mailbox polling loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from ..core.config import EngineSettings, ReceiverSettings, SenderSettings
from ..core.interfaces import (
    EventPublisher,
    Forwarder,
    LedgerError,
    MailboxFactory,
    MailboxProvider,
    SeenLedger,
    TransportError,
)
from ..core.models import (
    CycleReport,
    ForwardOutcome,
    WorkerEvent,
    WorkerEventKind,
    WorkerPhase,
    WorkerRuntimeState,
)
from ..transport import open_mailbox
from .backoff import ExponentialBackoff

LOGGER = logging.getLogger(__name__)


class PollWorker:
    """Own one receiver and forward its new messages until stopped.

    Each cycle connects, lists candidates, drops those already in the ledger,
    then handles the rest one at a time: forward, record, and only then
    delete or flag the source copy. Transient failures back off
    exponentially; permanent ones disable this worker alone.
    """

    def __init__(
        self,
        receiver: ReceiverSettings,
        sender: SenderSettings,
        *,
        ledger: SeenLedger,
        forwarder: Forwarder,
        publisher: EventPublisher,
        stop_event: asyncio.Event,
        engine: EngineSettings | None = None,
        mailbox_factory: MailboxFactory | None = None,
        notify_failures: bool = False,
    ) -> None:
        # pylint: disable=too-many-arguments
        self._receiver = receiver
        self._sender = sender
        self._ledger = ledger
        self._forwarder = forwarder
        self._publisher = publisher
        self._stop_event = stop_event
        self._engine = engine or EngineSettings()
        self._mailbox_factory: MailboxFactory = mailbox_factory or open_mailbox
        self._notify_failures = notify_failures
        self._backoff = ExponentialBackoff.from_settings(self._engine)
        self.state = WorkerRuntimeState()

    @property
    def account_id(self) -> str:
        """Ledger namespace of the receiver this worker owns."""
        return self._receiver.account_id

    @property
    def active(self) -> bool:
        """Whether the worker has not reached its terminal phase."""
        return self.state.phase is not WorkerPhase.STOPPED

    async def run(self) -> None:
        """Poll until shutdown is requested or a permanent error occurs."""
        LOGGER.info(
            "[%s] Starting %s worker for %s:%s (interval %ss)",
            self.account_id,
            self._receiver.protocol,
            self._receiver.host,
            self._receiver.port,
            self._receiver.check_interval_seconds,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    report = await self.run_cycle()
                except TransportError as exc:
                    if exc.permanent:
                        self._disable(str(exc))
                        return
                    await self._back_off(str(exc))
                    continue
                except LedgerError as exc:
                    LOGGER.error("[%s] Ledger unavailable: %s", self.account_id, exc)
                    await self._back_off(str(exc))
                    continue
                except Exception as exc:  # pylint: disable=broad-except
                    LOGGER.exception(
                        "[%s] Unexpected error during poll cycle", self.account_id
                    )
                    await self._back_off(f"{type(exc).__name__}: {exc}")
                    continue

                if report.failed:
                    await self._back_off(
                        f"{report.failed} message(s) could not be forwarded"
                    )
                    continue

                self._backoff.reset()
                self.state.consecutive_failures = 0
                self.state.backoff_delay = 0.0
                self._set_phase(WorkerPhase.SLEEPING)
                await self._wait(self._receiver.check_interval_seconds)
        finally:
            if self.state.phase is not WorkerPhase.STOPPED:
                self._set_phase(WorkerPhase.STOPPED)
                LOGGER.info("[%s] Worker stopped", self.account_id)

    async def run_cycle(self) -> CycleReport:
        """Execute one connect-fetch-filter-forward-commit pass."""
        report = CycleReport()
        self.state.cycles += 1
        self._set_phase(WorkerPhase.CONNECTING)
        mailbox = await asyncio.to_thread(
            self._mailbox_factory,
            self._receiver,
            timeout=self._engine.network_timeout_seconds,
        )
        try:
            self._set_phase(WorkerPhase.FETCHING)
            identifiers = list(await asyncio.to_thread(mailbox.list_identifiers))
            report.fetched = len(identifiers)

            self._set_phase(WorkerPhase.FILTERING)
            pending = await asyncio.to_thread(self._filter_unseen, identifiers)
            report.skipped = report.fetched - len(pending)
            if pending:
                LOGGER.info(
                    "[%s] %d new message(s) of %d listed",
                    self.account_id,
                    len(pending),
                    report.fetched,
                )

            for message_id in pending:
                if self._stop_event.is_set():
                    report.stopped_early = True
                    LOGGER.info(
                        "[%s] Shutdown requested; leaving remaining messages",
                        self.account_id,
                    )
                    break
                await self._process_message(mailbox, message_id, report)
        finally:
            await asyncio.to_thread(self._close_mailbox, mailbox)

        LOGGER.debug("[%s] Cycle finished: %s", self.account_id, report)
        return report

    # Message handling ---------------------------------------------------------
    def _filter_unseen(self, identifiers: Sequence[str]) -> list[str]:
        return [
            message_id
            for message_id in identifiers
            if not self._ledger.has(self.account_id, message_id)
        ]

    async def _process_message(
        self, mailbox: MailboxProvider, message_id: str, report: CycleReport
    ) -> None:
        self._set_phase(WorkerPhase.FORWARDING)
        try:
            message = await asyncio.to_thread(mailbox.retrieve, message_id)
        except TransportError as exc:
            if exc.permanent:
                raise
            LOGGER.warning(
                "[%s] Could not retrieve message %s: %s", self.account_id, message_id, exc
            )
            report.failed += 1
            return

        outcome = await asyncio.to_thread(
            self._forwarder.forward, self.account_id, message, self._sender
        )
        if not outcome.success:
            if self._notify_failures:
                self._publisher.publish(outcome)
            if outcome.permanent:
                raise TransportError(
                    f"Forwarding rejected permanently: {outcome.error}", permanent=True
                )
            report.failed += 1
            return

        self._publisher.publish(outcome)

        self._set_phase(WorkerPhase.COMMITTING)
        if not await self._commit(outcome):
            report.deferred += 1
            return
        self.state.forwarded += 1
        report.forwarded += 1

        if self._receiver.delete_after_forward:
            try:
                await asyncio.to_thread(mailbox.delete, message_id)
                report.deleted += 1
            except TransportError as exc:
                LOGGER.error(
                    "[%s] Failed to delete message %s from source: %s",
                    self.account_id,
                    message_id,
                    exc,
                )
        else:
            try:
                await asyncio.to_thread(mailbox.mark_forwarded, message_id)
            except TransportError as exc:
                LOGGER.warning(
                    "[%s] Failed to flag message %s as handled: %s",
                    self.account_id,
                    message_id,
                    exc,
                )

    async def _commit(self, outcome: ForwardOutcome) -> bool:
        """Record the forward, retrying before leaving it for the next cycle."""
        attempts = self._engine.ledger_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.to_thread(
                    self._ledger.record,
                    self.account_id,
                    outcome.message_id,
                    outcome.timestamp,
                )
            except LedgerError as exc:
                LOGGER.warning(
                    "[%s] Ledger write for %s failed (attempt %d/%d): %s",
                    self.account_id,
                    outcome.message_id,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    await asyncio.sleep(self._engine.ledger_retry_delay_seconds)
                continue
            self.state.ledger_failures = 0
            self.state.ledger_alerted = False
            return True

        self.state.ledger_failures += 1
        LOGGER.error(
            "[%s] Could not record message %s; it stays on the server and may be "
            "forwarded again next cycle",
            self.account_id,
            outcome.message_id,
        )
        if (
            self.state.ledger_failures >= self._engine.ledger_alert_threshold
            and not self.state.ledger_alerted
        ):
            self.state.ledger_alerted = True
            self._publisher.publish(
                WorkerEvent(
                    account_id=self.account_id,
                    kind=WorkerEventKind.LEDGER_FAILURE,
                    detail=(
                        f"{self.state.ledger_failures} consecutive ledger write "
                        "failures; forwarded messages are not being recorded"
                    ),
                    critical=True,
                )
            )
        return False

    # State transitions --------------------------------------------------------
    async def _back_off(self, reason: str) -> None:
        self.state.consecutive_failures += 1
        self.state.last_error = reason
        delay = self._backoff.next_delay()
        self.state.backoff_delay = delay
        self._set_phase(WorkerPhase.BACKOFF)
        LOGGER.warning(
            "[%s] Cycle failed (%d in a row): %s; retrying in %.1fs",
            self.account_id,
            self.state.consecutive_failures,
            reason,
            delay,
        )
        await self._wait(delay)

    def _disable(self, reason: str) -> None:
        self.state.last_error = reason
        self._set_phase(WorkerPhase.STOPPED)
        LOGGER.critical(
            "[%s] Permanent failure, disabling this mailbox: %s", self.account_id, reason
        )
        self._publisher.publish(
            WorkerEvent(
                account_id=self.account_id,
                kind=WorkerEventKind.WORKER_DISABLED,
                detail=reason,
                critical=True,
            )
        )

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless shutdown is requested first."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    def _set_phase(self, phase: WorkerPhase) -> None:
        self.state.phase = phase

    def _close_mailbox(self, mailbox: MailboxProvider) -> None:
        try:
            mailbox.close()
        except TransportError as exc:
            LOGGER.warning("[%s] Error closing mailbox: %s", self.account_id, exc)


__all__ = ["PollWorker"]
