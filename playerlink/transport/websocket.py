"""asyncio WebSocket implementation of the transport contract."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from ..errors import PlayerLinkClientError, PlayerLinkConnectionError
from .base import Transport
from .ws_client import PlayerLinkWsClient, PlayerLinkWsMessageType

_LOGGER = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_ABNORMAL = 1006


class WebSocketTransport(Transport):
    """Transport backed by a :class:`PlayerLinkWsClient`.

    ``connect()`` spawns a task that opens the socket and then pumps inbound
    frames into ``on_message`` until the connection ends. Outbound frames go
    through a queue drained by a single writer task, so they leave in the
    order ``send()`` was called.

    Must be used from a running event loop.
    """

    def __init__(
        self,
        url: str,
        *,
        subprotocol: str | None = None,
        user_agent: str | None = None,
        ping_interval: float | None = 20,
        timeout: float = 15.0,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__(url)
        self.url = url
        self._subprotocol = subprotocol
        self._user_agent = user_agent
        self._ping_interval = ping_interval
        self._timeout = timeout
        self._http_session = http_session

        self._client: PlayerLinkWsClient | None = None
        self._connected = False
        self._run_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._close_tasks: set[asyncio.Task[None]] = set()
        self._close_requested = False

    # -------------------------------------------------------------------------
    # Transport API
    # -------------------------------------------------------------------------

    def connect(self) -> None:
        if self._run_task is not None and not self._run_task.done():
            _LOGGER.debug("[%s] Connect already in progress", self.url)
            return
        self._close_requested = False
        self._run_task = asyncio.get_running_loop().create_task(self._run())

    def close(self) -> None:
        self._close_requested = True
        if self._client is None:
            if self._run_task is not None and not self._run_task.done():
                self._run_task.cancel()
            return
        task = asyncio.get_running_loop().create_task(self._close_client(self._client))
        self._close_tasks.add(task)
        task.add_done_callback(self._close_tasks.discard)

    def send(self, text: str) -> None:
        if not self._connected:
            raise PlayerLinkConnectionError("WebSocket is not connected")
        self._outbox.put_nowait(text)

    def is_connected(self) -> bool:
        return self._connected

    async def wait_closed(self) -> None:
        """Wait until the connection task and any pending close have finished."""
        if self._run_task is not None:
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
        for task in list(self._close_tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        client = PlayerLinkWsClient()
        try:
            _LOGGER.info("[%s] Opening WebSocket", self.url)
            await client.connect(
                self.url,
                subprotocol=self._subprotocol,
                user_agent=self._user_agent,
                ping_interval=self._ping_interval,
                timeout=self._timeout,
                http_session=self._http_session,
            )
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Connect cancelled", self.url)
            return
        except PlayerLinkClientError as err:
            _LOGGER.warning("[%s] Connection failed: %s", self.url, err)
            self._emit_connection_error(str(err))
            return

        self._client = client
        self._outbox = asyncio.Queue()
        self._connected = True
        self._writer_task = asyncio.get_running_loop().create_task(self._write_loop())
        if self._close_requested:
            await client.close()
        else:
            self._emit_connected()

        status_code = CLOSE_ABNORMAL
        reason = ""
        clean = False
        try:
            async for msg in client:
                if msg.type is PlayerLinkWsMessageType.TEXT:
                    if msg.data is not None:
                        self._emit_message(msg.data)
                elif msg.type is PlayerLinkWsMessageType.CLOSED:
                    status_code = client.close_code or CLOSE_NORMAL
                    reason = client.close_reason
                    clean = status_code in (CLOSE_NORMAL, 1001)
                    break
                else:
                    _LOGGER.warning("[%s] WebSocket error: %s", self.url, msg.data)
                    self._emit_connection_error(msg.data or "WebSocket error")
                    status_code = client.close_code or CLOSE_ABNORMAL
                    reason = msg.data or ""
                    break
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Listener cancelled", self.url)
            raise
        finally:
            self._connected = False
            self._client = None
            writer, self._writer_task = self._writer_task, None
            if writer is not None:
                writer.cancel()
                try:
                    await writer
                except asyncio.CancelledError:
                    pass
            _LOGGER.info(
                "[%s] Closed (code: %d, reason: %s)", self.url, status_code, reason
            )
            self._emit_closed(status_code, reason, clean)

    async def _write_loop(self) -> None:
        while True:
            text = await self._outbox.get()
            client = self._client
            if client is None:
                return
            try:
                await client.send_text(text)
            except PlayerLinkClientError as err:
                _LOGGER.warning("[%s] Send failed: %s", self.url, err)
                self._emit_connection_error(str(err))
                return
            except Exception as err:
                _LOGGER.warning("[%s] Send failed: %s", self.url, err)
                self._emit_connection_error(f"Send failed: {err}")
                await self._close_client(client)
                return

    async def _close_client(self, client: PlayerLinkWsClient) -> None:
        try:
            await asyncio.wait_for(client.close(), timeout=2.0)
        except TimeoutError:
            _LOGGER.warning("[%s] WebSocket close timed out", self.url)
        except Exception as err:  # Closing a broken socket can raise backend errors
            _LOGGER.warning("[%s] WebSocket close failed: %s", self.url, err)
