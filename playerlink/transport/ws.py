"""WebSocket connect helpers for PlayerLink game servers."""

from __future__ import annotations

import asyncio

import aiohttp
import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from ..errors import (
    PlayerLinkConnectionError,
    PlayerLinkHandshakeError,
    PlayerLinkTimeout,
)


async def connect_websocket(
    url: str,
    *,
    subprotocol: str | None = None,
    user_agent: str | None = None,
    ping_interval: float | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Connect to a game server WebSocket endpoint.

    Uses the websockets library which properly implements RFC 6455 frame masking.
    All client-to-server frames are automatically masked per the standard.

    Args:
        url: ws:// or wss:// endpoint
        subprotocol: Subprotocol to request, if any
        user_agent: User-Agent header sent with the upgrade request
        ping_interval: Interval for protocol-level ping frames
        timeout: Connection timeout
    """
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                subprotocols=[subprotocol] if subprotocol else None,  # type: ignore[list-item]
                user_agent_header=user_agent,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise PlayerLinkTimeout("WebSocket connection timed out") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise PlayerLinkHandshakeError(f"WebSocket handshake failed: {err}") from err
    except (OSError, WebSocketException) as err:
        raise PlayerLinkConnectionError(f"WebSocket connection failed: {err}") from err


async def connect_aiohttp_websocket(
    session: aiohttp.ClientSession,
    url: str,
    *,
    subprotocol: str | None = None,
    user_agent: str | None = None,
    heartbeat: float | None = 20,
    timeout: float = 15.0,
) -> aiohttp.ClientWebSocketResponse:
    """Connect through an existing aiohttp session.

    Useful when the host application already owns an aiohttp
    ``ClientSession`` (proxies, cookies, connection limits).
    """
    headers = {"User-Agent": user_agent} if user_agent else None
    try:
        return await asyncio.wait_for(
            session.ws_connect(
                url,
                protocols=(subprotocol,) if subprotocol else (),
                headers=headers,
                heartbeat=heartbeat,
                max_msg_size=0,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise PlayerLinkTimeout("WebSocket connection timed out") from err
    except aiohttp.WSServerHandshakeError as err:
        raise PlayerLinkHandshakeError(f"WebSocket handshake failed: {err}") from err
    except (OSError, aiohttp.ClientError) as err:
        raise PlayerLinkConnectionError(f"WebSocket connection failed: {err}") from err
