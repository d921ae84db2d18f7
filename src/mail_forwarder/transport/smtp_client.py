"""SMTP client for relaying raw messages and sending notification mail."""

from __future__ import annotations

import logging
import smtplib
from collections.abc import Sequence
from dataclasses import dataclass
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid

from ..core.config import SenderSettings
from ..core.interfaces import TransportError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EmailMessage:
    """Outgoing plain-text email.

    Attributes:
        to: Recipient email address
        subject: Email subject line
        body: Email body content
    """

    to: str
    subject: str
    body: str


class SmtpError(TransportError):
    """Raised when SMTP connection, authentication, or sending fails.

    ``permanent`` is set for authentication failures and 5xx replies.
    """


class SmtpClient:
    """SMTP client for submitting messages.

    Provides context manager interface for automatic connection management.
    Supports implicit TLS, STARTTLS, and plain connections.

    Example:
        >>> settings = SenderSettings(host="smtp.example.com", ...)
        >>> with SmtpClient(settings) as client:
        ...     client.send_raw("me@example.com", ["you@example.com"], payload)
    """

    def __init__(self, settings: SenderSettings, *, timeout: float = 30.0) -> None:
        """Initialize SMTP client with configuration.

        Args:
            settings: SMTP endpoint and credentials
            timeout: Socket timeout applied to every command
        """
        self._settings = settings
        self._timeout = timeout
        self._connection: smtplib.SMTP | None = None

    def __enter__(self) -> SmtpClient:
        """Enter context manager, establishing connection."""
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        """Exit context manager, closing connection."""
        self.disconnect()

    def connect(self) -> None:
        """Establish SMTP connection and authenticate.

        Raises:
            SmtpError: If connection or authentication fails
        """
        if not self._settings.host:
            raise SmtpError("SMTP host not configured", permanent=True)

        LOGGER.debug(
            "Attempting SMTP connection to %s:%d",
            self._settings.host,
            self._settings.port,
        )

        try:
            if self._settings.use_tls:
                LOGGER.debug("Using SSL for SMTP connection")
                self._connection = smtplib.SMTP_SSL(
                    self._settings.host,
                    self._settings.port,
                    timeout=self._timeout,
                )
            else:
                self._connection = smtplib.SMTP(
                    self._settings.host,
                    self._settings.port,
                    timeout=self._timeout,
                )
                if self._settings.starttls:
                    LOGGER.debug("Using STARTTLS for SMTP connection")
                    self._connection.starttls()

            if self._settings.username and self._settings.password:
                LOGGER.debug("Authenticating as %s", self._settings.username)
                self._connection.login(
                    self._settings.username,
                    self._settings.password,
                )

            LOGGER.debug("Connected to SMTP server: %s", self._settings.host)

        except smtplib.SMTPAuthenticationError as exc:
            self._abort()
            raise SmtpError(
                f"SMTP authentication failed: {exc}", permanent=True
            ) from exc
        except smtplib.SMTPNotSupportedError as exc:
            self._abort()
            raise SmtpError(f"SMTP server lacks a required extension: {exc}", permanent=True) from exc
        except smtplib.SMTPException as exc:
            self._abort()
            raise SmtpError(
                f"SMTP error: {exc}", permanent=is_permanent_smtp_error(exc)
            ) from exc
        except OSError as exc:
            self._abort()
            raise SmtpError(f"Network error: {exc}") from exc

    def disconnect(self) -> None:
        """Close SMTP connection gracefully."""
        if self._connection:
            try:
                self._connection.quit()
                LOGGER.debug("SMTP connection closed")
            except (smtplib.SMTPException, OSError) as exc:
                LOGGER.warning("Error closing SMTP connection: %s", exc)
            finally:
                self._connection = None

    def send_raw(self, from_addr: str, to_addrs: Sequence[str], payload: bytes) -> None:
        """Submit an already serialised message.

        Returns only after the server accepted the DATA for every recipient.

        Raises:
            SmtpError: If sending fails, any recipient is refused, or not connected
        """
        if not self._connection:
            raise SmtpError("Not connected to SMTP server")

        try:
            refused = self._connection.sendmail(from_addr, list(to_addrs), payload)
        except smtplib.SMTPRecipientsRefused as exc:
            raise SmtpError(
                f"All recipients refused: {exc.recipients}",
                permanent=is_permanent_smtp_error(exc),
            ) from exc
        except smtplib.SMTPSenderRefused as exc:
            raise SmtpError(
                f"Sender refused: {exc.smtp_code} {exc.smtp_error!r}",
                permanent=is_permanent_smtp_error(exc),
            ) from exc
        except smtplib.SMTPDataError as exc:
            raise SmtpError(
                f"SMTP data error: {exc.smtp_code} {exc.smtp_error!r}",
                permanent=is_permanent_smtp_error(exc),
            ) from exc
        except smtplib.SMTPException as exc:
            raise SmtpError(
                f"Failed to send email: {exc}", permanent=is_permanent_smtp_error(exc)
            ) from exc
        except OSError as exc:
            raise SmtpError(f"Network error while sending: {exc}") from exc

        if refused:
            LOGGER.warning("Some recipients were refused: %s", refused)
            permanent = all(code >= 500 for code, _ in refused.values())
            raise SmtpError(
                f"Some recipients were refused: {refused}", permanent=permanent
            )

    def send(self, message: EmailMessage) -> None:
        """Send a plain-text message from the authenticated account."""
        sender = self._settings.envelope_sender
        mime_message = MIMEText(message.body, "plain", "utf-8")
        mime_message["From"] = sender
        mime_message["To"] = message.to
        mime_message["Subject"] = message.subject
        mime_message["Date"] = formatdate(localtime=True)
        mime_message["Message-ID"] = make_msgid()

        LOGGER.debug("Sending email to %s: %s", message.to, message.subject)
        self.send_raw(sender, [message.to], mime_message.as_bytes())

    def _abort(self) -> None:
        if self._connection is None:
            return
        try:
            self._connection.close()
        finally:
            self._connection = None


def is_permanent_smtp_error(exc: smtplib.SMTPException) -> bool:
    """Classify an ``smtplib`` exception as permanent (5xx) or transient."""
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return True
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        codes = [code for code, _ in exc.recipients.values()]
        return bool(codes) and all(code >= 500 for code in codes)
    if isinstance(exc, smtplib.SMTPResponseException):
        return exc.smtp_code >= 500
    return False


__all__ = ["EmailMessage", "SmtpClient", "SmtpError", "is_permanent_smtp_error"]
