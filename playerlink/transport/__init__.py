"""Transport layer for PlayerLink.

This package contains all IO and network handling.

Components:
- base: abstract transport contract and its events
- ws: WebSocket connect helpers (websockets, aiohttp)
- ws_client: normalized WebSocket frame iteration
- websocket: asyncio transport built on the client
"""

from __future__ import annotations

from collections.abc import Callable

import aiohttp

from ..config import PlayerLinkConfig
from .base import Transport, TransportEvent
from .websocket import WebSocketTransport
from .ws import connect_aiohttp_websocket, connect_websocket
from .ws_client import PlayerLinkWsClient, PlayerLinkWsMessage, PlayerLinkWsMessageType


def websocket_transport_factory(
    http_session: aiohttp.ClientSession | None = None,
) -> Callable[[PlayerLinkConfig], Transport]:
    """Return a session transport factory that builds WebSocketTransports."""

    def factory(config: PlayerLinkConfig) -> Transport:
        if not config.server_url:
            raise ValueError("server_url is not configured")
        return WebSocketTransport(
            config.server_url,
            subprotocol=config.server_protocol or None,
            user_agent=config.user_agent or None,
            timeout=config.connect_timeout,
            http_session=http_session,
        )

    return factory


__all__ = [
    "PlayerLinkWsClient",
    "PlayerLinkWsMessage",
    "PlayerLinkWsMessageType",
    "Transport",
    "TransportEvent",
    "WebSocketTransport",
    "connect_aiohttp_websocket",
    "connect_websocket",
    "websocket_transport_factory",
]
