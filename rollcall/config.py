"""Process configuration read from environment variables."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from . import messages as m
from .monitor import DEFAULT_STALE_TIMEOUT_MS, DEFAULT_SWEEP_INTERVAL_MS
from .node import DEFAULT_HEARTBEAT_INTERVAL_MS, DEFAULT_RECONNECT_DELAY_MS

MODES = ("server", "client")
DEFAULT_SERVER_URL = "ws://localhost:8080"


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{key} must be positive, got {value}")
    return value


def normalize_server_url(url: str) -> str:
    """Prefix ws:// when the URL has no WebSocket scheme."""
    url = url.strip()
    if url.startswith(("ws://", "wss://")):
        return url
    return f"ws://{url}"


def load_mode(environ: Optional[Mapping[str, str]] = None) -> str:
    environ = os.environ if environ is None else environ
    mode = (environ.get("MODE") or "server").strip().lower()
    if mode not in MODES:
        raise ValueError(f"Invalid MODE '{mode}'. Must be 'server' or 'client'.")
    return mode


def load_log_level(environ: Optional[Mapping[str, str]] = None) -> str:
    environ = os.environ if environ is None else environ
    return (environ.get("LOG_LEVEL") or "INFO").strip().upper()


@dataclass(frozen=True)
class HubConfig:
    """Settings for server mode."""

    host: str = "0.0.0.0"
    port: int = 8080
    stale_timeout_ms: int = DEFAULT_STALE_TIMEOUT_MS
    sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HubConfig":
        environ = os.environ if environ is None else environ
        port = _env_int(environ, "PORT", 8080)
        if port > 65535:
            raise ValueError(f"PORT must be at most 65535, got {port}")
        return cls(
            host=environ.get("HOST") or "0.0.0.0",
            port=port,
            stale_timeout_ms=_env_int(environ, "STALE_TIMEOUT", DEFAULT_STALE_TIMEOUT_MS),
            sweep_interval_ms=_env_int(environ, "SWEEP_INTERVAL", DEFAULT_SWEEP_INTERVAL_MS),
        )


@dataclass(frozen=True)
class AgentConfig:
    """Settings for client mode. Empty strings mean "not given"."""

    server_url: str = ""
    name: str = ""
    location: str = ""
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    reconnect_delay_ms: int = DEFAULT_RECONNECT_DELAY_MS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AgentConfig":
        environ = os.environ if environ is None else environ
        return cls(
            server_url=environ.get("SERVER_URL", ""),
            name=environ.get("CLIENT_NAME") or environ.get("NAME", ""),
            location=environ.get("CLIENT_LOCATION") or environ.get("LOCATION", ""),
            heartbeat_interval_ms=_env_int(environ, "HEARTBEAT_INTERVAL", DEFAULT_HEARTBEAT_INTERVAL_MS),
            reconnect_delay_ms=_env_int(environ, "RECONNECT_DELAY", DEFAULT_RECONNECT_DELAY_MS),
        )

    @property
    def missing(self) -> bool:
        """True when any of url/name/location still needs a value."""
        return not (self.server_url and self.name and self.location)

    def with_defaults(self) -> "AgentConfig":
        return AgentConfig(
            server_url=normalize_server_url(self.server_url or DEFAULT_SERVER_URL),
            name=self.name or m.ANONYMOUS,
            location=self.location,
            heartbeat_interval_ms=self.heartbeat_interval_ms,
            reconnect_delay_ms=self.reconnect_delay_ms,
        )
