"""Periodic driver for a PlayerLink session.

The session never retries on its own. This driver is the external
collaborator that keeps it moving: it re-attempts the queue flush (which
also reconnects a dropped transport), pings on a fixed interval once
authenticated, and re-pings when a probe goes unanswered.
"""

from __future__ import annotations

import asyncio
import logging

from .session import PlayerLinkSession

_LOGGER = logging.getLogger(__name__)


class SessionDriver:
    """Drive flush retries and keepalive pings for one session.

    Usage:
        driver = SessionDriver(session)
        driver.start()
        ...
        await driver.stop()
    """

    def __init__(
        self,
        session: PlayerLinkSession,
        *,
        flush_interval: float | None = None,
        ping_interval: float | None = None,
        ping_timeout: float | None = None,
    ) -> None:
        config = session.config
        self._session = session
        self._flush_interval = (
            config.flush_interval if flush_interval is None else flush_interval
        )
        self._ping_interval = config.ping_interval if ping_interval is None else ping_interval
        self._ping_timeout = config.ping_timeout if ping_timeout is None else ping_timeout

        self._task: asyncio.Task[None] | None = None
        self._last_ping_at: float | None = None
        self._was_authenticated = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the driver loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Stop the driver loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def tick(self, now: float) -> None:
        """Run one driver pass. ``now`` is a monotonic timestamp in seconds."""
        session = self._session
        if session.is_shutting_down or not session.want_connected:
            return

        session.flush_outbound_queue()

        if not session.is_authenticated:
            self._was_authenticated = False
            return

        if not self._was_authenticated:
            # The session pings by itself right after authenticating.
            self._was_authenticated = True
            self._last_ping_at = now
            return

        since_ping = None if self._last_ping_at is None else now - self._last_ping_at
        if since_ping is None or since_ping >= self._ping_interval:
            session.ping_server()
            self._last_ping_at = now
        elif not session.is_live and since_ping >= self._ping_timeout:
            _LOGGER.warning(
                "[%s] Ping unanswered for %.1fs, pinging again",
                session.config.display_name,
                since_ping,
            )
            session.ping_server()
            self._last_ping_at = now

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while not self._session.is_shutting_down:
                try:
                    self.tick(loop.time())
                except Exception as err:
                    _LOGGER.exception("Session driver error: %s", err)
                await asyncio.sleep(self._flush_interval)
        except asyncio.CancelledError:
            _LOGGER.debug("Session driver cancelled")
            raise
        _LOGGER.debug("Session driver stopped: session shut down")
