"""Tests for the POP3 transport adapter."""

# pylint: disable=protected-access

from __future__ import annotations

import poplib
from unittest.mock import MagicMock

import pytest

from mail_forwarder.core.config import ReceiverSettings
from mail_forwarder.transport import Pop3Client, Pop3Error, open_mailbox


def _settings() -> ReceiverSettings:
    return ReceiverSettings(
        host="pop.test",
        port=995,
        username="user",
        password="password",
    )


def _connected_client(mock_connection: MagicMock) -> Pop3Client:
    client = Pop3Client(_settings())
    client._connection = mock_connection  # type: ignore[attr-defined]
    return client


def _uidl_connection() -> MagicMock:
    mock_connection = MagicMock()
    mock_connection.uidl.return_value = (b"+OK", [b"1 AAA", b"2 BBB"], 12)
    return mock_connection


def test_list_identifiers_uses_uidl() -> None:
    client = _connected_client(_uidl_connection())

    assert client.list_identifiers() == ["AAA", "BBB"]


def _no_uidl_connection(headers: dict[int, list[bytes]]) -> MagicMock:
    mock_connection = MagicMock()
    mock_connection.uidl.side_effect = poplib.error_proto("-ERR UIDL not supported")
    mock_connection.list.return_value = (
        b"+OK",
        [f"{number} 120".encode() for number in headers],
        14,
    )
    mock_connection.top.side_effect = lambda number, lines: (
        b"+OK",
        headers[number],
        40,
    )
    mock_connection.retr.side_effect = lambda number: (
        b"+OK",
        [*headers[number], b"", f"body of #{number}".encode()],
        60,
    )
    return mock_connection


def test_list_identifiers_without_uidl_uses_message_id_header() -> None:
    mock_connection = _no_uidl_connection(
        {
            1: [b"Subject: first", b"Message-ID: <one@example.com>"],
            2: [b"Subject: second", b"Date: Mon, 1 Jan 2024 10:00:00 +0000"],
        }
    )
    client = _connected_client(mock_connection)

    identifiers = client.list_identifiers()

    assert identifiers[0] == "msgid:<one@example.com>"
    assert identifiers[1].startswith("sha256:")
    mock_connection.top.assert_any_call(1, 0)
    mock_connection.top.assert_any_call(2, 0)


def test_identifiers_without_uidl_survive_renumbering() -> None:
    first_session = _connected_client(
        _no_uidl_connection({1: [b"Message-ID: <a@x>"], 2: [b"Message-ID: <b@x>"]})
    )
    # <a@x> was deleted, so <b@x> is now message #1
    second_session = _connected_client(_no_uidl_connection({1: [b"Message-ID: <b@x>"]}))

    assert first_session.list_identifiers() == ["msgid:<a@x>", "msgid:<b@x>"]
    assert second_session.list_identifiers() == ["msgid:<b@x>"]


def test_retrieve_without_uidl_resolves_current_number() -> None:
    mock_connection = _no_uidl_connection(
        {1: [b"Message-ID: <a@x>"], 2: [b"Message-ID: <b@x>"]}
    )
    client = _connected_client(mock_connection)
    client.list_identifiers()

    message = client.retrieve("msgid:<b@x>")

    mock_connection.retr.assert_called_once_with(2)
    assert message.message_id == "msgid:<b@x>"


def test_missing_top_falls_back_to_full_message_digest() -> None:
    mock_connection = _no_uidl_connection({1: []})
    mock_connection.top.side_effect = poplib.error_proto("-ERR TOP not supported")
    client = _connected_client(mock_connection)

    (identifier,) = client.list_identifiers()

    assert identifier.startswith("sha256:")
    mock_connection.retr.assert_called_once_with(1)


def test_retrieve_joins_lines_by_uid() -> None:
    mock_connection = _uidl_connection()
    mock_connection.retr.return_value = (b"+OK", [b"Subject: hi", b"", b"body"], 20)
    client = _connected_client(mock_connection)
    client.list_identifiers()

    message = client.retrieve("BBB")

    mock_connection.retr.assert_called_once_with(2)
    assert message.message_id == "BBB"
    assert message.raw == b"Subject: hi\r\n\r\nbody\r\n"


def test_retrieve_unknown_uid_raises() -> None:
    client = _connected_client(_uidl_connection())
    client.list_identifiers()

    with pytest.raises(Pop3Error):
        client.retrieve("ZZZ")


def test_delete_marks_message_and_quit_commits() -> None:
    mock_connection = _uidl_connection()
    client = _connected_client(mock_connection)
    client.list_identifiers()

    client.delete("AAA")
    client.close()

    mock_connection.dele.assert_called_once_with(1)
    mock_connection.quit.assert_called_once()


def test_mark_forwarded_is_a_no_op() -> None:
    mock_connection = _uidl_connection()
    client = _connected_client(mock_connection)

    client.mark_forwarded("AAA")

    mock_connection.dele.assert_not_called()


def test_failed_quit_closes_socket() -> None:
    mock_connection = MagicMock()
    mock_connection.quit.side_effect = OSError("broken pipe")
    client = _connected_client(mock_connection)

    client.close()

    mock_connection.close.assert_called_once()


def test_rejected_login_is_permanent(monkeypatch: pytest.MonkeyPatch) -> None:
    mock_connection = MagicMock()
    mock_connection.pass_.side_effect = poplib.error_proto("-ERR invalid password")
    monkeypatch.setattr(poplib, "POP3_SSL", MagicMock(return_value=mock_connection))

    with pytest.raises(Pop3Error) as excinfo:
        Pop3Client(_settings()).connect()

    assert excinfo.value.permanent is True
    mock_connection.quit.assert_called_once()


def test_unreachable_server_is_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        poplib, "POP3_SSL", MagicMock(side_effect=OSError("connection refused"))
    )

    with pytest.raises(Pop3Error) as excinfo:
        Pop3Client(_settings()).connect()

    assert excinfo.value.permanent is False


def test_open_mailbox_picks_pop3_for_pop3_receivers(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    mock_connection = MagicMock()
    factory = MagicMock(return_value=mock_connection)
    monkeypatch.setattr(poplib, "POP3_SSL", factory)

    mailbox = open_mailbox(_settings(), timeout=7)

    assert isinstance(mailbox, Pop3Client)
    factory.assert_called_once_with("pop.test", 995, timeout=7)
    mock_connection.user.assert_called_once_with("user")
    mock_connection.pass_.assert_called_once_with("password")
