"""Relay new mail from POP3/IMAP mailboxes to a single SMTP destination."""

__version__ = "0.1.0"
