"""Client error types for PlayerLink server sessions."""

from __future__ import annotations


class PlayerLinkClientError(Exception):
    """Base error for PlayerLink client failures."""


class PlayerLinkTimeout(PlayerLinkClientError):
    """Timeout while communicating with the server."""


class PlayerLinkConnectionError(PlayerLinkClientError):
    """Network connection to the server failed."""


class PlayerLinkHandshakeError(PlayerLinkClientError):
    """WebSocket handshake failed."""


class PlayerLinkSetupError(PlayerLinkClientError):
    """Session or transport could not be set up."""


class PlayerLinkDecodeError(PlayerLinkClientError):
    """Inbound payload could not be decoded for its message kind."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(f"{kind}: {message}")
        self.kind = kind


class ConfigLoadError(PlayerLinkClientError):
    """Error loading a session configuration file."""
