"""Asynchronous fan-out of forwarding events to notification targets."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field

import httpx

from ..core.config import EmailTarget, FileTarget, NotificationTarget, TelegramTarget
from ..core.interfaces import EventPublisher
from ..core.models import NotificationEvent
from ..transport.smtp_client import SmtpError
from .targets import (
    NotificationError,
    append_line,
    describe_target,
    render_line,
    render_subject,
    render_text,
    send_email,
    send_telegram,
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _TargetChannel:
    """Pending events and counters for one target."""

    target: NotificationTarget
    name: str
    pending: deque[NotificationEvent]
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    delivered: int = 0
    failed: int = 0
    dropped: int = 0


@dataclass(frozen=True, slots=True)
class ChannelStats:
    """Delivery counters exposed for diagnostics and tests."""

    name: str
    pending: int
    delivered: int
    failed: int
    dropped: int


class NotificationDispatcher(EventPublisher):
    """Queue events per target and deliver them from background tasks.

    ``publish`` never blocks and never raises. Each target has its own
    bounded queue; when it is full the oldest pending event for that target
    is discarded. A failing target only affects its own queue.
    """

    def __init__(
        self,
        targets: Sequence[NotificationTarget],
        *,
        forward_to: str,
        queue_size: int = 100,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")
        self._forward_to = forward_to
        self._queue_size = queue_size
        self._timeout = timeout
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._channels = [
            _TargetChannel(
                target=target,
                name=describe_target(target),
                pending=deque(maxlen=queue_size),
            )
            for target in targets
        ]
        self._tasks: list[asyncio.Task[None]] = []
        self._closing = False

    @property
    def started(self) -> bool:
        """Whether delivery tasks are running."""
        return bool(self._tasks)

    def publish(self, event: NotificationEvent) -> None:
        """Queue ``event`` for every configured target."""
        if self._closing:
            LOGGER.debug("Dispatcher closing; ignoring %s", event)
            return
        for channel in self._channels:
            if len(channel.pending) >= self._queue_size:
                channel.dropped += 1
                LOGGER.warning(
                    "Notification queue for %s is full; dropping oldest event",
                    channel.name,
                )
            channel.pending.append(event)
            channel.wakeup.set()

    async def start(self) -> None:
        """Spawn one delivery task per target."""
        if self._tasks:
            return
        needs_http = any(isinstance(ch.target, TelegramTarget) for ch in self._channels)
        if needs_http and self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        for channel in self._channels:
            task = asyncio.create_task(
                self._drain(channel), name=f"notify:{channel.name}"
            )
            self._tasks.append(task)
        LOGGER.info("Notification dispatcher started with %d target(s)", len(self._tasks))

    async def close(self, timeout: float | None = None) -> None:
        """Deliver what is pending within ``timeout`` then stop the tasks."""
        self._closing = True
        for channel in self._channels:
            channel.wakeup.set()
        if self._tasks:
            _, still_running = await asyncio.wait(self._tasks, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
            for channel in self._channels:
                if channel.pending:
                    LOGGER.warning(
                        "Discarding %d undelivered notification(s) for %s",
                        len(channel.pending),
                        channel.name,
                    )
            self._tasks.clear()
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    def stats(self) -> list[ChannelStats]:
        """Return per-target counters."""
        return [
            ChannelStats(
                name=channel.name,
                pending=len(channel.pending),
                delivered=channel.delivered,
                failed=channel.failed,
                dropped=channel.dropped,
            )
            for channel in self._channels
        ]

    async def _drain(self, channel: _TargetChannel) -> None:
        while True:
            while channel.pending:
                event = channel.pending.popleft()
                try:
                    await self._deliver(channel.target, event)
                except (NotificationError, SmtpError) as exc:
                    channel.failed += 1
                    LOGGER.warning("Notification via %s failed: %s", channel.name, exc)
                except Exception:  # pylint: disable=broad-except
                    channel.failed += 1
                    LOGGER.exception("Unexpected error notifying via %s", channel.name)
                else:
                    channel.delivered += 1
            if self._closing:
                return
            await channel.wakeup.wait()
            channel.wakeup.clear()

    async def _deliver(self, target: NotificationTarget, event: NotificationEvent) -> None:
        match target:
            case TelegramTarget():
                if self._http_client is None:
                    raise NotificationError("Dispatcher has not been started")
                await send_telegram(
                    self._http_client, target, render_text(event, self._forward_to)
                )
            case FileTarget():
                await asyncio.to_thread(
                    append_line, target, render_line(event, self._forward_to)
                )
            case EmailTarget():
                await asyncio.to_thread(
                    send_email,
                    target,
                    render_subject(event),
                    render_text(event, self._forward_to),
                    timeout=self._timeout,
                )
            case _:
                raise NotificationError(f"Unsupported notification target: {target!r}")


__all__ = ["ChannelStats", "NotificationDispatcher"]
