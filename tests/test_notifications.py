"""Tests for notification rendering and dispatch."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

import httpx

from mail_forwarder.core.config import EmailTarget, FileTarget, TelegramTarget
from mail_forwarder.core.models import ForwardOutcome, WorkerEvent, WorkerEventKind
from mail_forwarder.notifications import NotificationDispatcher
from mail_forwarder.notifications.targets import (
    CRITICAL_TAG,
    describe_target,
    render_line,
    render_subject,
    render_text,
)

STAMP = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def _success(message_id: str = "42") -> ForwardOutcome:
    return ForwardOutcome(
        account_id="alice",
        message_id=message_id,
        success=True,
        timestamp=STAMP,
        subject="Invoice",
        sender="billing@example.com",
    )


def _telegram_target() -> TelegramTarget:
    return TelegramTarget(chat_id="1001", token="t0k3n", api_url="https://bot.test")


def test_success_text_names_message_and_destination() -> None:
    text = render_text(_success(), "dest@example.com")

    assert text.splitlines()[0] == "Email forwarded successfully!"
    assert "ID: 42" in text
    assert "Target: dest@example.com" in text
    assert "Subject: Invoice" in text
    assert render_subject(_success()) == "Notification: Email 42 forwarded"


def test_file_line_is_single_line() -> None:
    line = render_line(_success(), "dest@example.com")

    assert "\n" not in line
    assert "Forwarded email ID: 42 to dest@example.com" in line


def test_critical_worker_events_are_tagged() -> None:
    event = WorkerEvent(
        account_id="alice",
        kind=WorkerEventKind.WORKER_DISABLED,
        detail="authentication\nrejected",
        critical=True,
        timestamp=STAMP,
    )

    assert render_subject(event).startswith(CRITICAL_TAG)
    line = render_line(event, "dest@example.com")
    assert CRITICAL_TAG in line
    assert "worker_disabled alice: authentication rejected" in line


def test_describe_target_hides_secrets() -> None:
    email_target = EmailTarget(
        smtp_host="smtp.test",
        smtp_port=465,
        smtp_username="ops@test",
        smtp_password="hunter2",
    )

    assert describe_target(_telegram_target()) == "telegram:1001"
    assert "hunter2" not in describe_target(email_target)
    assert "t0k3n" not in describe_target(_telegram_target())


def test_failing_target_does_not_block_others(tmp_path: Path) -> None:
    log_path = tmp_path / "notifications.log"
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(401, json={"ok": False, "description": "Unauthorized"})

    async def scenario() -> NotificationDispatcher:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = NotificationDispatcher(
                [_telegram_target(), FileTarget(file_path=log_path)],
                forward_to="dest@example.com",
                http_client=client,
            )
            await dispatcher.start()
            dispatcher.publish(_success())
            await dispatcher.close(timeout=2)
            return dispatcher

    dispatcher = asyncio.run(scenario())

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert "Forwarded email ID: 42" in lines[0]
    assert len(requests) == 1
    assert requests[0].url == "https://bot.test/bott0k3n/sendMessage"
    assert json.loads(requests[0].content)["chat_id"] == "1001"
    telegram_stats, file_stats = dispatcher.stats()
    assert (telegram_stats.failed, telegram_stats.delivered) == (1, 0)
    assert (file_stats.failed, file_stats.delivered) == (0, 1)


def test_full_queue_drops_oldest_event(tmp_path: Path) -> None:
    log_path = tmp_path / "notifications.log"

    async def scenario() -> NotificationDispatcher:
        dispatcher = NotificationDispatcher(
            [FileTarget(file_path=log_path)],
            forward_to="dest@example.com",
            queue_size=2,
        )
        for message_id in ("1", "2", "3"):
            dispatcher.publish(_success(message_id))
        await dispatcher.start()
        await dispatcher.close(timeout=2)
        return dispatcher

    dispatcher = asyncio.run(scenario())

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert "ID: 2 to" in lines[0]
    assert "ID: 3 to" in lines[1]
    (stats,) = dispatcher.stats()
    assert stats.dropped == 1
    assert stats.delivered == 2


def test_publish_after_close_is_ignored(tmp_path: Path) -> None:
    log_path = tmp_path / "notifications.log"

    async def scenario() -> None:
        dispatcher = NotificationDispatcher(
            [FileTarget(file_path=log_path)], forward_to="dest@example.com"
        )
        await dispatcher.start()
        await dispatcher.close(timeout=1)
        dispatcher.publish(_success())

    asyncio.run(scenario())

    assert not log_path.exists()


def test_dispatcher_without_targets_accepts_events() -> None:
    async def scenario() -> None:
        dispatcher = NotificationDispatcher([], forward_to="dest@example.com")
        await dispatcher.start()
        dispatcher.publish(_success())
        await dispatcher.close(timeout=1)

    asyncio.run(scenario())
