"""Pytest configuration and fixtures for playerlink tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from playerlink.config import PlayerLinkConfig
from playerlink.errors import PlayerLinkConnectionError
from playerlink.session import PlayerLinkSession
from playerlink.transport.base import Transport

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


class FakeTransport(Transport):
    """In-memory transport that records commands and lets tests fire events."""

    def __init__(self) -> None:
        super().__init__("fake")
        self.sent: list[str] = []
        self.connect_calls = 0
        self.close_calls = 0
        self.connected = False
        self.fail_sends = False

    def connect(self) -> None:
        self.connect_calls += 1

    def close(self) -> None:
        self.close_calls += 1

    def send(self, text: str) -> None:
        if not self.connected or self.fail_sends:
            raise PlayerLinkConnectionError("WebSocket is not connected")
        self.sent.append(text)

    def is_connected(self) -> bool:
        return self.connected

    # Helpers to simulate the network side

    def fire_connected(self) -> None:
        self.connected = True
        self._emit_connected()

    def fire_closed(self, code: int = 1000, reason: str = "", clean: bool = True) -> None:
        self.connected = False
        self._emit_closed(code, reason, clean)

    def fire_error(self, message: str) -> None:
        self._emit_connection_error(message)

    def fire_message(self, text: str) -> None:
        self._emit_message(text)

    def sent_kinds(self) -> list[str]:
        return [frame.partition("\n")[0] for frame in self.sent]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transports() -> list[FakeTransport]:
    """Every transport the factory has built, oldest first."""
    return []


@pytest.fixture
def config() -> PlayerLinkConfig:
    return PlayerLinkConfig(server_url="ws://game.test/ws", friendly_server_name="test")


@pytest.fixture
def session(
    transports: list[FakeTransport], config: PlayerLinkConfig, clock: FakeClock
) -> PlayerLinkSession:
    def factory(_config: PlayerLinkConfig) -> FakeTransport:
        transport = FakeTransport()
        transports.append(transport)
        return transport

    return PlayerLinkSession(factory, config, clock=clock)


def pong_frame(ping_time: datetime, pong_time: datetime) -> str:
    """Build a Pong frame the way the server sends it."""
    from playerlink.protocol import MessageKind, PongPayload, encode_message

    return encode_message(MessageKind.PONG, PongPayload(ping_time, pong_time))


AUTHENTICATED_FRAME = 'PlayerAuthenticated\n{"playerName":"Ada","playerID":"p-1"}'
