"""Bot configuration loaded from environment variables and user overrides.

Uses pydantic-settings so every plain field can be overridden via env
vars.  Callables (trigger and handlers) can only be supplied in code.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings

from .errors import default_error_handler

# Options whose change requires a new connection to take effect
CONNECTION_OPTIONS = frozenset({"imap", "mailbox", "filter"})


def never_trigger(mail: Any) -> bool:
    return False


def ignore_mail(mail: Any, payload: Any) -> None:
    return None


class ImapConfig(BaseSettings):
    """IMAP server connection settings."""

    model_config = {"env_prefix": "IMAP_", "frozen": True}

    host: str = Field(default="imap.googlemail.com", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(default="", description="IMAP login username")
    password: SecretStr = Field(default=SecretStr(""), description="IMAP login password")
    keepalive: bool = Field(
        default=True,
        description="Send periodic NOOPs, which also surface new-mail notifications",
    )
    poll_interval_seconds: float = Field(
        default=30.0,
        description="Seconds between keepalive NOOPs",
    )
    verify_certificate: bool = Field(
        default=False,
        description="Verify the server TLS certificate",
    )
    connect_timeout_seconds: float = Field(
        default=30.0,
        description="Socket timeout for the initial connection",
    )


class LogConfig(BaseSettings):
    """Logging output settings."""

    model_config = {"env_prefix": "LOG_"}

    json_output: bool = Field(default=True, description="Render JSON lines instead of console output")
    level: str = Field(default="INFO", description="Root log level name")


class BotConfig(BaseSettings):
    """Root configuration for a mail bot instance.

    Instances are frozen: each one is the snapshot for a connection
    epoch.  Use :meth:`with_overrides` to derive a new snapshot.
    """

    model_config = {"env_prefix": "MAILBOT_", "frozen": True}

    imap: ImapConfig = Field(default_factory=ImapConfig)
    mailbox: str = Field(default="INBOX", description="Mailbox to watch")
    filter: list[Any] = Field(
        default_factory=lambda: ["UNSEEN"],
        description="IMAP search criteria for candidate messages",
    )
    mark_seen: bool = Field(default=True, description="Flag fetched messages as \\Seen")
    trigger_on_headers: bool = Field(
        default=False,
        description="Evaluate the trigger on headers only and skip non-matching bodies",
    )
    trigger: Callable[..., Any] = Field(default=never_trigger, exclude=True)
    mail_handler: Callable[..., Any] = Field(default=ignore_mail, exclude=True)
    error_handler: Callable[..., Any] = Field(default=default_error_handler, exclude=True)
    auto_reconnect: bool = Field(default=True, description="Reconnect after a transport failure")
    auto_reconnect_timeout: float = Field(
        default=5.0,
        description="Seconds to wait before each reconnect attempt",
    )
    auto_reconnect_max_attempts: int = Field(
        default=5,
        description="Reconnect attempts before giving up",
    )
    stream_attachments: bool = Field(
        default=True,
        description="Spool attachment payloads to temporary files instead of memory",
    )
    health_port: int = Field(default=8080, description="Port for the CLI health server")

    def with_overrides(self, **overrides: Any) -> BotConfig:
        """Return a new snapshot with *overrides* applied.

        ``imap`` may be a mapping, which is merged field by field over the
        current IMAP settings; every other option is replaced outright.
        """
        data = {name: getattr(self, name) for name in type(self).model_fields}

        imap = overrides.pop("imap", None)
        if isinstance(imap, ImapConfig):
            data["imap"] = imap
        elif isinstance(imap, Mapping):
            data["imap"] = {**self.imap.model_dump(), **imap}
        elif imap is not None:
            raise TypeError(f"imap must be a mapping or ImapConfig, got {type(imap).__name__}")

        data.update(overrides)
        return type(self).model_validate(data)
