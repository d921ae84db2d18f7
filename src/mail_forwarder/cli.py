"""Command-line entry point for the mail forwarder."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timedelta
from pathlib import Path

from mail_forwarder.core import (
    AppSettings,
    ConfigError,
    LedgerError,
    configure_logging,
    load_app_settings,
)
from mail_forwarder.core.config import DEFAULT_CONFIG_PATH
from mail_forwarder.core.datetime_utils import utc_now
from mail_forwarder.forwarding import Supervisor
from mail_forwarder.notifications import NotificationDispatcher
from mail_forwarder.storage import SqliteSeenLedger

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Forward new mail from POP3/IMAP mailboxes over SMTP"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to the TOML configuration file (default: {DEFAULT_CONFIG_PATH}).",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing MAIL_FORWARDER_* overrides.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate the configuration and exit.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_app_settings(args.config, env_file=args.env_file)
    except ConfigError as exc:
        print(f"Failed to load config: {exc}", file=sys.stderr)
        if not args.config.exists():
            print(
                f"Create {args.config} or pass another file with --config.",
                file=sys.stderr,
            )
        return EXIT_CONFIG_ERROR

    configure_logging(settings.logging)

    if not settings.receivers:
        LOGGER.error("No receivers configured in %s", args.config)
        return EXIT_CONFIG_ERROR

    if args.check:
        print(
            f"Configuration OK: {len(settings.receivers)} receiver(s), "
            f"{len(settings.notifications)} notification target(s), "
            f"forwarding to {settings.forward_to}"
        )
        return EXIT_OK

    try:
        asyncio.run(_serve(settings))
    except LedgerError as exc:
        LOGGER.error("Unable to start: %s", exc)
        return EXIT_CONFIG_ERROR
    return EXIT_OK


def prune_ledger(
    settings: AppSettings, ledger: SqliteSeenLedger, *, now: datetime | None = None
) -> int:
    """Apply ``storage.retention_days`` to accounts that can no longer relist.

    A record may only be forgotten once its message cannot be listed again:
    deleted from the source, or flagged \\Seen on IMAP. POP3 receivers that
    keep their mail relist every message each cycle, so they are never
    pruned.
    """
    retention_days = settings.storage.retention_days
    if retention_days is None:
        return 0
    prunable: list[str] = []
    for receiver in settings.receivers:
        if receiver.delete_after_forward or receiver.protocol == "imap":
            prunable.append(receiver.account_id)
        else:
            LOGGER.warning(
                "[%s] Keeps mail on a POP3 server; ledger records are not pruned",
                receiver.account_id,
            )
    cutoff = (now or utc_now()) - timedelta(days=retention_days)
    return ledger.prune(cutoff, account_ids=prunable)


async def _serve(settings: AppSettings) -> None:
    """Open shared resources, run the supervisor, and wire shutdown signals."""
    LOGGER.info("Starting mail forwarder; forwarding to %s", settings.forward_to)
    ledger = SqliteSeenLedger(settings.storage)
    prune_ledger(settings, ledger)

    dispatcher = NotificationDispatcher(
        settings.notifications,
        forward_to=settings.forward_to,
        queue_size=settings.engine.notification_queue_size,
        timeout=settings.engine.network_timeout_seconds,
    )
    supervisor = Supervisor(settings, ledger=ledger, dispatcher=dispatcher)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, supervisor.request_shutdown)
        except NotImplementedError:  # pragma: no cover - Windows
            signal.signal(
                signum,
                lambda *_: loop.call_soon_threadsafe(supervisor.request_shutdown),
            )

    await supervisor.run()
    LOGGER.info("All tasks stopped. Goodbye!")


if __name__ == "__main__":
    sys.exit(main())
