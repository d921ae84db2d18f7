"""Tests for running several poll workers side by side."""

from __future__ import annotations

import asyncio
import threading

import pytest

from mail_forwarder.core.config import SenderSettings
from mail_forwarder.core.interfaces import TransportError
from mail_forwarder.core.models import (
    FetchedMessage,
    ForwardOutcome,
    WorkerEvent,
    WorkerEventKind,
    WorkerPhase,
)
from mail_forwarder.forwarding import Supervisor

from tests.fakes import (
    FAST_ENGINE,
    CallLog,
    FakeMailboxFactory,
    MemoryLedger,
    PerAccountMailboxFactory,
    RecordingForwarder,
    RecordingPublisher,
    make_receiver,
    make_settings,
)


class RecordingDispatcher(RecordingPublisher):
    """Publisher with the dispatcher lifecycle hooks."""

    def __init__(self) -> None:
        super().__init__()
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self, timeout: float | None = None) -> None:
        del timeout
        self.closed = True


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_permanent_failure_is_isolated_to_one_worker() -> None:
    log = CallLog()
    factories = {
        "alice": FakeMailboxFactory({"a1": b"x", "a2": b"y"}, log=log),
        "bob": FakeMailboxFactory(
            connect_error=TransportError("authentication rejected", permanent=True)
        ),
        "carol": FakeMailboxFactory({"c1": b"z"}, log=log),
    }
    settings = make_settings(
        make_receiver("alice"), make_receiver("bob"), make_receiver("carol")
    )
    ledger = MemoryLedger(log)
    dispatcher = RecordingDispatcher()
    supervisor = Supervisor(
        settings,
        ledger=ledger,
        dispatcher=dispatcher,  # type: ignore[arg-type]
        forwarder=RecordingForwarder(log),
        mailbox_factory=PerAccountMailboxFactory(factories),
    )
    alice, bob, carol = supervisor.workers

    async def scenario() -> None:
        task = asyncio.create_task(supervisor.run())
        await _wait_until(
            lambda: not bob.active
            and alice.state.phase is WorkerPhase.SLEEPING
            and carol.state.phase is WorkerPhase.SLEEPING
        )
        assert [worker.account_id for worker in supervisor.active_workers] == [
            "alice",
            "carol",
        ]
        supervisor.request_shutdown()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(scenario())

    assert set(ledger.records) == {("alice", "a1"), ("alice", "a2"), ("carol", "c1")}
    critical = [
        event
        for event in dispatcher.events
        if isinstance(event, WorkerEvent) and event.critical
    ]
    assert [(event.account_id, event.kind) for event in critical] == [
        ("bob", WorkerEventKind.WORKER_DISABLED)
    ]
    assert factories["bob"].connects == 1
    assert dispatcher.started and dispatcher.closed
    assert ledger.closed


def test_workers_poll_on_their_own_intervals() -> None:
    factories = {
        "fast": FakeMailboxFactory({}),
        "slow": FakeMailboxFactory({}),
    }
    settings = make_settings(
        make_receiver("fast", check_interval_seconds=1),
        make_receiver("slow", check_interval_seconds=2),
    )
    supervisor = Supervisor(
        settings,
        ledger=MemoryLedger(),
        dispatcher=RecordingDispatcher(),  # type: ignore[arg-type]
        forwarder=RecordingForwarder(),
        mailbox_factory=PerAccountMailboxFactory(factories),
    )

    async def scenario() -> None:
        task = asyncio.create_task(supervisor.run())
        await asyncio.sleep(2.5)
        supervisor.request_shutdown()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(scenario())

    assert factories["fast"].connects >= 2
    assert factories["slow"].connects >= 1
    assert factories["fast"].connects > factories["slow"].connects


def test_supervisor_stops_when_every_worker_is_disabled() -> None:
    factory = FakeMailboxFactory(
        connect_error=TransportError("authentication rejected", permanent=True)
    )
    ledger = MemoryLedger()
    dispatcher = RecordingDispatcher()
    supervisor = Supervisor(
        make_settings(make_receiver("alice")),
        ledger=ledger,
        dispatcher=dispatcher,  # type: ignore[arg-type]
        forwarder=RecordingForwarder(),
        mailbox_factory=factory,
    )

    asyncio.run(asyncio.wait_for(supervisor.run(), timeout=5))

    assert supervisor.active_workers == []
    assert ledger.closed
    assert dispatcher.closed


def test_stuck_worker_is_cancelled_after_grace_period() -> None:
    release = threading.Event()

    class BlockingForwarder:
        def forward(
            self, account_id: str, message: FetchedMessage, sender: SenderSettings
        ) -> ForwardOutcome:
            del sender
            release.wait(timeout=5)
            return ForwardOutcome(
                account_id=account_id, message_id=message.message_id, success=True
            )

    settings = make_settings(
        make_receiver("alice"),
        engine=FAST_ENGINE.model_copy(update={"shutdown_grace_seconds": 0.1}),
    )
    ledger = MemoryLedger()
    supervisor = Supervisor(
        settings,
        ledger=ledger,
        dispatcher=RecordingDispatcher(),  # type: ignore[arg-type]
        forwarder=BlockingForwarder(),
        mailbox_factory=FakeMailboxFactory({"1": b"x"}),
    )
    (worker,) = supervisor.workers

    async def scenario() -> None:
        task = asyncio.create_task(supervisor.run())
        await _wait_until(lambda: worker.state.phase is WorkerPhase.FORWARDING)
        supervisor.request_shutdown()
        try:
            await asyncio.wait_for(task, timeout=5)
        finally:
            release.set()

    asyncio.run(scenario())

    assert worker.state.phase is WorkerPhase.STOPPED
    assert ledger.records == {}
    assert ledger.closed


def test_supervisor_requires_receivers() -> None:
    with pytest.raises(ValueError):
        Supervisor(
            make_settings(),
            ledger=MemoryLedger(),
            dispatcher=RecordingDispatcher(),  # type: ignore[arg-type]
        )
