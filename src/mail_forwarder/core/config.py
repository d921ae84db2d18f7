"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Annotated, Any, Literal, cast

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

DEFAULT_CONFIG_PATH = Path("/etc/mail-forwarder/config.toml")
DEFAULT_CHECK_INTERVAL_SECONDS = 300


class ConfigError(RuntimeError):
    """Raised when the configuration cannot be loaded or validated."""


class ReceiverSettings(BaseModel):
    """One watched mailbox."""

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(
        default="", description="Ledger namespace; derived when left empty"
    )
    protocol: Literal["pop3", "imap"] = Field(
        default="pop3", description="Retrieval protocol"
    )
    host: str = Field(description="Mailbox server hostname")
    port: int = Field(gt=0, lt=65536, description="Mailbox server port")
    username: str = Field(description="Account username")
    password: str = Field(description="Account password")
    use_tls: bool = Field(default=True, description="Connect with implicit TLS")
    imap_folder: str = Field(default="INBOX", description="IMAP folder to watch")
    check_interval_seconds: int = Field(
        default=DEFAULT_CHECK_INTERVAL_SECONDS,
        gt=0,
        description="Seconds between poll cycles",
    )
    delete_after_forward: bool = Field(
        default=False, description="Delete the source message once recorded"
    )

    @model_validator(mode="before")
    @classmethod
    def _derive_account_id(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("account_id"):
            return data
        data = dict(data)
        protocol = data.get("protocol") or "pop3"
        data["account_id"] = (
            f"{protocol}://{data.get('username')}@{data.get('host')}:{data.get('port')}"
        )
        return data


class SenderSettings(BaseModel):
    """Shared outbound SMTP relay used for every forward."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(description="SMTP hostname")
    port: int = Field(gt=0, lt=65536, description="SMTP port")
    username: str = Field(description="SMTP username")
    password: str = Field(description="SMTP password")
    use_tls: bool = Field(default=True, description="Connect with implicit TLS")
    starttls: bool = Field(
        default=False, description="Upgrade a plain connection with STARTTLS"
    )
    from_address: str | None = Field(
        default=None, description="Envelope sender; defaults to the username"
    )

    @property
    def envelope_sender(self) -> str:
        """Return the MAIL FROM address used for forwarded messages."""
        return self.from_address or self.username


class TelegramTarget(BaseModel):
    """Send notifications through the Telegram Bot API."""

    model_config = ConfigDict(frozen=True)

    type: Literal["telegram"] = "telegram"
    chat_id: str
    token: str
    api_url: str = Field(
        default="https://api.telegram.org", description="Bot API base URL"
    )


class FileTarget(BaseModel):
    """Append one line per notification to a local file."""

    model_config = ConfigDict(frozen=True)

    type: Literal["file"] = "file"
    file_path: Path


class EmailTarget(BaseModel):
    """Mail notifications to an operator address."""

    model_config = ConfigDict(frozen=True)

    type: Literal["email"] = "email"
    smtp_host: str
    smtp_port: int = Field(gt=0, lt=65536)
    smtp_username: str
    smtp_password: str
    smtp_use_tls: bool = True
    recipient: str | None = Field(
        default=None, description="Notification recipient; defaults to the username"
    )


NotificationTarget = Annotated[
    TelegramTarget | FileTarget | EmailTarget, Field(discriminator="type")
]


class NotificationSettings(BaseModel):
    """Options shared by every notification target."""

    notify_failures: bool = Field(
        default=False, description="Also publish failed forward outcomes"
    )


class StorageSettings(BaseModel):
    """Settings for the durable seen-message ledger."""

    ledger_path: Path = Field(
        default=Path("./mail_forwarder.db"), description="SQLite ledger path"
    )
    retention_days: int | None = Field(
        default=None, gt=0, description="Prune ledger records older than this"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )
    file: Path | None = Field(default=None, description="Append logs to this file")
    quiet: bool = Field(
        default=False, description="Suppress console output"
    )


class EngineSettings(BaseModel):
    """Tuning knobs for the polling engine."""

    backoff_initial_seconds: float = Field(default=5.0, gt=0)
    backoff_max_seconds: float = Field(default=300.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    ledger_retry_attempts: int = Field(default=3, ge=1)
    ledger_retry_delay_seconds: float = Field(default=0.5, ge=0)
    ledger_alert_threshold: int = Field(default=3, ge=1)
    shutdown_grace_seconds: float = Field(default=30.0, gt=0)
    notification_queue_size: int = Field(default=100, ge=1)
    network_timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> EngineSettings:
        if self.backoff_max_seconds < self.backoff_initial_seconds:
            raise ValueError(
                "backoff_max_seconds must not be lower than backoff_initial_seconds"
            )
        return self


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    forward_to: str
    sender: SenderSettings
    receivers: list[ReceiverSettings] = Field(default_factory=list)
    notifications: list[NotificationTarget] = Field(default_factory=list)
    notification: NotificationSettings = Field(default_factory=NotificationSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)

    @model_validator(mode="before")
    @classmethod
    def _lift_top_level_logging(cls, data: Any) -> Any:
        # log_level / log_file / quiet may be given at the top level
        if not isinstance(data, dict):
            return data
        legacy = {
            "log_level": "level",
            "log_file": "file",
            "quiet": "quiet",
        }
        if not any(key in data for key in legacy):
            return data
        data = dict(data)
        section = dict(data.get("logging") or {})
        for key, target in legacy.items():
            if key in data:
                section.setdefault(target, data.pop(key))
        data["logging"] = section
        return data

    @model_validator(mode="after")
    def _check_unique_accounts(self) -> AppSettings:
        seen: set[str] = set()
        for receiver in self.receivers:
            if receiver.account_id in seen:
                raise ValueError(f"Duplicate receiver account '{receiver.account_id}'")
            seen.add(receiver.account_id)
        return self


ENV_PREFIX = "MAIL_FORWARDER_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str):
            lowercase_value = value.lower()
            if lowercase_value == "true":
                normalized_value = True
            elif lowercase_value == "false":
                normalized_value = False
        _merge_into_tree(collected, path, normalized_value)

    return collected


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _read_toml(config_path: Path) -> dict[str, Any]:
    try:
        with config_path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {config_path}") from exc
    except OSError as exc:
        raise ConfigError(f"Unable to read configuration file {config_path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc


def load_app_settings(
    config_path: Path | str | None = None,
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load settings from a TOML file, env overrides, and keyword overrides.

    Receivers and notifications are lists and can only be provided by the
    file; scalar settings such as passwords may be overridden through
    ``MAIL_FORWARDER_*`` variables.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    raw = _read_toml(path)
    collected = _deep_merge(
        raw, _collect_env_values(env_file, include_environment=include_environment)
    )
    if overrides:
        collected.update(overrides)
    try:
        return AppSettings.model_validate(collected)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}:\n{exc}") from exc


__all__ = [
    "AppSettings",
    "ConfigError",
    "DEFAULT_CHECK_INTERVAL_SECONDS",
    "DEFAULT_CONFIG_PATH",
    "EmailTarget",
    "EngineSettings",
    "FileTarget",
    "LoggingSettings",
    "NotificationSettings",
    "NotificationTarget",
    "ReceiverSettings",
    "SenderSettings",
    "StorageSettings",
    "TelegramTarget",
    "load_app_settings",
]
