"""Core utilities for configuration, logging, and shared models."""

from .config import (
    AppSettings,
    ConfigError,
    ReceiverSettings,
    SenderSettings,
    load_app_settings,
)
from .interfaces import LedgerError, TransportError
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "ConfigError",
    "LedgerError",
    "ReceiverSettings",
    "SenderSettings",
    "TransportError",
    "configure_logging",
    "load_app_settings",
]
