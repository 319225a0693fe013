"""Session configuration for PlayerLink.

Configuration is plain data: a frozen dataclass that can be built in code or
loaded from a YAML file. Nothing here touches the network.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigLoadError

DEFAULT_USER_AGENT = "playerlink/0.1.0"


@dataclass(frozen=True)
class PlayerLinkConfig:
    """Connection settings for a PlayerLink session.

    Attributes:
        server_url: WebSocket URL of the game server (e.g. "wss://host/ws").
        server_protocol: WebSocket subprotocol requested during the handshake.
        friendly_server_name: Human-readable server name used in logs.
        user_agent: User-Agent upgrade header. Some hosts refuse upgrades
            without one.
        connect_timeout: Seconds to wait for the opening handshake.
        ping_interval: Seconds between keepalive pings once authenticated.
        ping_timeout: Seconds a ping may go unanswered before it is re-sent.
        flush_interval: Seconds between outbound queue flush retries.
    """

    server_url: str = ""
    server_protocol: str = "ws"
    friendly_server_name: str = ""
    user_agent: str = DEFAULT_USER_AGENT
    connect_timeout: float = 15.0
    ping_interval: float = 30.0
    ping_timeout: float = 10.0
    flush_interval: float = 1.0

    @property
    def display_name(self) -> str:
        """Name used when logging about this server."""
        return self.friendly_server_name or self.server_url

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlayerLinkConfig:
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigLoadError(f"Unknown config keys: {', '.join(unknown)}")

        values = dict(data)
        for key in ("connect_timeout", "ping_interval", "ping_timeout", "flush_interval"):
            if key in values:
                try:
                    values[key] = float(values[key])
                except (TypeError, ValueError) as err:
                    raise ConfigLoadError(f"{key} must be a number") from err
                if values[key] <= 0:
                    raise ConfigLoadError(f"{key} must be positive")

        return cls(**values)


def load_config(path: Path) -> PlayerLinkConfig:
    """Load a session config from a YAML file.

    The file may either hold the settings at top level or nest them under a
    ``playerlink`` key.

    Raises:
        ConfigLoadError: If the file is missing, malformed, or has unknown keys.
    """
    if not path.exists():
        raise ConfigLoadError(f"File not found: {path}")
    with path.open() as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as err:
            raise ConfigLoadError(f"Invalid YAML in {path}: {err}") from err

    if not isinstance(data, dict):
        raise ConfigLoadError(f"Config root must be a mapping: {path}")

    section = data.get("playerlink", data)
    if not isinstance(section, dict):
        raise ConfigLoadError("playerlink section must be a mapping")
    return PlayerLinkConfig.from_dict(section)
