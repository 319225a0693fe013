"""WebSocket client wrapper for PlayerLink game servers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import WSMsgType
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from ..errors import PlayerLinkConnectionError
from .ws import connect_aiohttp_websocket, connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_LOGGER = logging.getLogger(__name__)


class PlayerLinkWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class PlayerLinkWsMessage:
    """Normalized WebSocket message payload."""

    type: PlayerLinkWsMessageType
    data: str | None = None


class PlayerLinkWsClient:
    """Wrapper around a websockets or aiohttp connection."""

    def __init__(self) -> None:
        self._ws: ClientConnection | aiohttp.ClientWebSocketResponse | None = None

    async def connect(
        self,
        url: str,
        *,
        subprotocol: str | None = None,
        user_agent: str | None = None,
        ping_interval: float | None = 20,
        timeout: float = 15.0,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Connect to the server websocket.

        When ``http_session`` is given the connection is opened through
        aiohttp, otherwise through the websockets library.
        """
        if http_session is not None:
            self._ws = await connect_aiohttp_websocket(
                http_session,
                url,
                subprotocol=subprotocol,
                user_agent=user_agent,
                heartbeat=ping_interval,
                timeout=timeout,
            )
            return

        self._ws = await connect_websocket(
            url,
            subprotocol=subprotocol,
            user_agent=user_agent,
            ping_interval=ping_interval,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_text(self, text: str) -> None:
        """Send a text frame."""
        if self._ws is None:
            raise PlayerLinkConnectionError("WebSocket is not connected")
        if isinstance(self._ws, aiohttp.ClientWebSocketResponse):
            await self._ws.send_str(text)
        else:
            await self._ws.send(text)

    @property
    def close_code(self) -> int | None:
        if self._ws is None:
            return None
        code = getattr(self._ws, "close_code", None)
        return code if isinstance(code, int) else None

    @property
    def close_reason(self) -> str:
        if self._ws is None:
            return ""
        reason = getattr(self._ws, "close_reason", None)
        return reason if isinstance(reason, str) else ""

    def __aiter__(self) -> AsyncIterator[PlayerLinkWsMessage]:
        if self._ws is None:
            raise PlayerLinkConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[PlayerLinkWsMessage]:
        if self._ws is None:
            raise PlayerLinkConnectionError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
                if normalized.type is not PlayerLinkWsMessageType.TEXT:
                    return
        except ConnectionClosed:
            yield PlayerLinkWsMessage(type=PlayerLinkWsMessageType.CLOSED)
        except Exception as err:
            yield PlayerLinkWsMessage(type=PlayerLinkWsMessageType.ERROR, data=str(err))
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield PlayerLinkWsMessage(type=PlayerLinkWsMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> PlayerLinkWsMessage | None:
        """Normalize backend-specific frames into PlayerLinkWsMessage."""
        if isinstance(msg, bytes):
            _LOGGER.debug("Skipping binary frame (%d bytes)", len(msg))
            return None
        if isinstance(msg, str):
            return PlayerLinkWsMessage(PlayerLinkWsMessageType.TEXT, msg)

        msg_type = getattr(msg, "type", None)
        if msg_type is not None:
            normalized_type = PlayerLinkWsClient._map_aiohttp_type(msg_type)
            if normalized_type is None:
                _LOGGER.debug("Skipping %s frame", msg_type)
                return None
            data = getattr(msg, "data", None)
            return PlayerLinkWsMessage(
                normalized_type, data if isinstance(data, str) else None
            )

        # Fallback: treat unknown objects as text via their string repr
        return PlayerLinkWsMessage(PlayerLinkWsMessageType.TEXT, str(msg))

    @staticmethod
    def _map_aiohttp_type(msg_type: Any) -> PlayerLinkWsMessageType | None:
        """Map aiohttp WSMsgType enums to internal message types."""
        if msg_type is WSMsgType.TEXT:
            return PlayerLinkWsMessageType.TEXT

        if msg_type in {WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED}:
            return PlayerLinkWsMessageType.CLOSED

        if msg_type is WSMsgType.ERROR:
            return PlayerLinkWsMessageType.ERROR

        return None
