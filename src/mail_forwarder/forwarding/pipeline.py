"""Relay one fetched message to the destination over SMTP."""

from __future__ import annotations

import logging
from collections.abc import Callable

from ..core.config import SenderSettings
from ..core.datetime_utils import utc_now
from ..core.interfaces import Forwarder
from ..core.models import ErrorKind, FetchedMessage, ForwardOutcome
from ..transport.smtp_client import SmtpClient, SmtpError
from .message import build_forwarded_payload, summarize_headers

LOGGER = logging.getLogger(__name__)

SmtpClientFactory = Callable[[SenderSettings, float], SmtpClient]


def _default_client_factory(settings: SenderSettings, timeout: float) -> SmtpClient:
    return SmtpClient(settings, timeout=timeout)


class ForwardPipeline(Forwarder):
    """Submit messages to ``forward_to`` through the shared sender account.

    A fresh SMTP session is opened per message, so no worker can hold a
    connection other workers are waiting on. ``forward`` never raises; every
    failure is reported as an unsuccessful :class:`ForwardOutcome`.
    """

    def __init__(
        self,
        forward_to: str,
        *,
        timeout: float = 30.0,
        client_factory: SmtpClientFactory | None = None,
    ) -> None:
        if not forward_to:
            raise ValueError("forward_to must be set")
        self._forward_to = forward_to
        self._timeout = timeout
        self._client_factory = client_factory or _default_client_factory

    @property
    def forward_to(self) -> str:
        """Destination address for every relayed message."""
        return self._forward_to

    def forward(
        self,
        account_id: str,
        message: FetchedMessage,
        sender: SenderSettings,
    ) -> ForwardOutcome:
        """Relay ``message`` and wait for the server to accept it."""
        summary = summarize_headers(message.raw)
        forwarded_at = utc_now()
        try:
            payload = build_forwarded_payload(account_id, message, forwarded_at)
            with self._client_factory(sender, self._timeout) as client:
                client.send_raw(sender.envelope_sender, [self._forward_to], payload)
        except SmtpError as exc:
            kind = ErrorKind.PERMANENT if exc.permanent else ErrorKind.TRANSIENT
            LOGGER.warning(
                "[%s] Forwarding message %s failed (%s): %s",
                account_id,
                message.message_id,
                kind.value,
                exc,
            )
            return ForwardOutcome(
                account_id=account_id,
                message_id=message.message_id,
                success=False,
                error=str(exc),
                error_kind=kind,
                subject=summary.subject,
                sender=summary.sender,
            )
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "[%s] Unexpected error forwarding message %s: %s",
                account_id,
                message.message_id,
                exc,
                exc_info=True,
            )
            return ForwardOutcome(
                account_id=account_id,
                message_id=message.message_id,
                success=False,
                error=f"{type(exc).__name__}: {exc}",
                error_kind=ErrorKind.TRANSIENT,
                subject=summary.subject,
                sender=summary.sender,
            )

        LOGGER.info(
            "[%s] Forwarded message %s to %s (subject: %s)",
            account_id,
            message.message_id,
            self._forward_to,
            summary.subject or "(no subject)",
        )
        return ForwardOutcome(
            account_id=account_id,
            message_id=message.message_id,
            success=True,
            timestamp=forwarded_at,
            subject=summary.subject,
            sender=summary.sender,
        )


__all__ = ["ForwardPipeline", "SmtpClientFactory"]
