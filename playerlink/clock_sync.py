"""Round-trip latency and server clock offset estimation.

Each ping/pong pair gives one sample. The round trip is assumed to be
symmetric, so the one-way latency is half of it:

    latency = (received_at - ping_time) / 2
    offset  = server_pong_time - (ping_time + latency)

``offset`` is how far the server clock runs ahead of ours. Every sample
replaces the previous estimate outright; there is no smoothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClockSample:
    """One ping/pong measurement."""

    ping_time: datetime
    received_at: datetime
    server_pong_time: datetime
    latency: timedelta
    offset: timedelta

    @property
    def round_trip(self) -> timedelta:
        return self.received_at - self.ping_time


class ClockSyncEstimator:
    """Latest latency and clock offset estimate from ping/pong probes."""

    def __init__(self) -> None:
        self._latency = timedelta(0)
        self._offset = timedelta(0)
        self._last_sample: ClockSample | None = None

    @property
    def latency(self) -> timedelta:
        """Estimated one-way latency (zero until the first pong)."""
        return self._latency

    @property
    def offset(self) -> timedelta:
        """Estimated server clock minus local clock (zero until the first pong)."""
        return self._offset

    @property
    def last_sample(self) -> ClockSample | None:
        return self._last_sample

    @property
    def has_sample(self) -> bool:
        return self._last_sample is not None

    def update(
        self,
        ping_time: datetime,
        received_at: datetime,
        server_pong_time: datetime,
    ) -> ClockSample:
        """Fold a ping/pong pair into the estimate.

        Args:
            ping_time: When the ping left, as echoed back by the server.
            received_at: Local time the pong arrived.
            server_pong_time: Server clock when it answered.
        """
        latency = (received_at - ping_time) / 2
        offset = server_pong_time - (ping_time + latency)

        if latency < timedelta(0):
            _LOGGER.warning(
                "Pong arrived before its ping was sent (round trip %s)",
                received_at - ping_time,
            )

        sample = ClockSample(
            ping_time=ping_time,
            received_at=received_at,
            server_pong_time=server_pong_time,
            latency=latency,
            offset=offset,
        )
        self._latency = latency
        self._offset = offset
        self._last_sample = sample

        _LOGGER.debug("Clock sample: latency=%s offset=%s", latency, offset)
        return sample

    def estimated_server_time(self, now: datetime) -> datetime:
        """Translate a local timestamp to the estimated server clock."""
        return now + self._offset

    def reset(self) -> None:
        self._latency = timedelta(0)
        self._offset = timedelta(0)
        self._last_sample = None
