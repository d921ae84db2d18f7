"""Start one poll worker per receiver and coordinate shutdown."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from ..core.config import AppSettings
from ..core.interfaces import Forwarder, MailboxFactory, SeenLedger
from ..notifications import NotificationDispatcher
from .pipeline import ForwardPipeline
from .worker import PollWorker

LOGGER = logging.getLogger(__name__)


class Supervisor:
    """Run every configured mailbox concurrently until shutdown.

    Workers share the ledger and the dispatcher and nothing else; a crash or
    permanent failure in one worker never touches the others.
    """

    def __init__(
        self,
        settings: AppSettings,
        *,
        ledger: SeenLedger,
        dispatcher: NotificationDispatcher,
        forwarder: Forwarder | None = None,
        mailbox_factory: MailboxFactory | None = None,
    ) -> None:
        if not settings.receivers:
            raise ValueError("At least one receiver must be configured")
        self._settings = settings
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._stop_event = asyncio.Event()
        forwarder = forwarder or ForwardPipeline(
            settings.forward_to,
            timeout=settings.engine.network_timeout_seconds,
        )
        self.workers: list[PollWorker] = [
            PollWorker(
                receiver,
                settings.sender,
                ledger=ledger,
                forwarder=forwarder,
                publisher=dispatcher,
                stop_event=self._stop_event,
                engine=settings.engine,
                mailbox_factory=mailbox_factory,
                notify_failures=settings.notification.notify_failures,
            )
            for receiver in settings.receivers
        ]
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def active_workers(self) -> Sequence[PollWorker]:
        """Workers that have not stopped."""
        return [worker for worker in self.workers if worker.active]

    def request_shutdown(self) -> None:
        """Ask every worker to finish its current message and stop."""
        if not self._stop_event.is_set():
            LOGGER.warning("Shutdown requested; notifying %d worker(s)", len(self.workers))
            self._stop_event.set()

    async def run(self) -> None:
        """Run until shutdown is requested or every worker has stopped."""
        LOGGER.info(
            "Starting %d worker(s); forwarding to %s",
            len(self.workers),
            self._settings.forward_to,
        )
        await self._dispatcher.start()
        for worker in self.workers:
            task = asyncio.create_task(worker.run(), name=f"worker:{worker.account_id}")
            task.add_done_callback(self._on_worker_done)
            self._tasks[worker.account_id] = task

        stop_waiter = asyncio.create_task(self._stop_event.wait())
        try:
            while not self._stop_event.is_set():
                pending = self._pending_tasks()
                if not pending:
                    LOGGER.error("All workers have stopped; shutting down")
                    break
                await asyncio.wait(
                    [stop_waiter, *pending], return_when=asyncio.FIRST_COMPLETED
                )
        finally:
            stop_waiter.cancel()
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop workers within the grace period, then close shared resources."""
        self._stop_event.set()
        grace = self._settings.engine.shutdown_grace_seconds
        pending = self._pending_tasks()
        if pending:
            LOGGER.info("Waiting up to %.0fs for %d worker(s)", grace, len(pending))
            _, not_drained = await asyncio.wait(pending, timeout=grace)
            if not_drained:
                names = sorted(task.get_name() for task in not_drained)
                LOGGER.error(
                    "Workers did not stop within %.0fs and will be cancelled: %s",
                    grace,
                    ", ".join(names),
                )
                for task in not_drained:
                    task.cancel()
                await asyncio.gather(*not_drained, return_exceptions=True)

        await self._dispatcher.close(timeout=grace)
        self._ledger.close()
        LOGGER.info("All workers stopped")

    def _pending_tasks(self) -> list[asyncio.Task[None]]:
        return [task for task in self._tasks.values() if not task.done()]

    def _on_worker_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            LOGGER.warning("%s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "%s crashed: %s", task.get_name(), exc, exc_info=exc
            )


__all__ = ["Supervisor"]
