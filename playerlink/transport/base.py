"""Transport contract consumed by the session.

A transport owns one streaming connection. Its methods never block: they
start work and the outcome arrives later as an event. Handlers are
registered explicitly and each registration returns an unsubscribe handle.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum

from ..events import EventNotifier, Subscription


class TransportEvent(Enum):
    """Events emitted by a transport."""

    CONNECTED = "connected"
    CONNECTION_ERROR = "connection_error"
    CLOSED = "closed"
    MESSAGE = "message"


class Transport(ABC):
    """Abstract bidirectional text transport."""

    def __init__(self, name: str = "") -> None:
        self._events: EventNotifier[TransportEvent] = EventNotifier(name)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    @abstractmethod
    def connect(self) -> None:
        """Start opening the connection.

        Completion is reported through ``on_connected`` or
        ``on_connection_error``. Does nothing while a connect is in flight.
        """

    @abstractmethod
    def close(self) -> None:
        """Start closing the connection. ``on_closed`` fires when done."""

    @abstractmethod
    def send(self, text: str) -> None:
        """Queue a text frame for sending.

        Raises:
            PlayerLinkConnectionError: If the transport is not connected.
        """

    @abstractmethod
    def is_connected(self) -> bool:
        """Return True while the connection is open."""

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on_connected(self, handler: Callable[[], None]) -> Subscription:
        return self._events.subscribe(TransportEvent.CONNECTED, handler)

    def on_connection_error(self, handler: Callable[[str], None]) -> Subscription:
        return self._events.subscribe(TransportEvent.CONNECTION_ERROR, handler)

    def on_closed(self, handler: Callable[[int, str, bool], None]) -> Subscription:
        return self._events.subscribe(TransportEvent.CLOSED, handler)

    def on_message(self, handler: Callable[[str], None]) -> Subscription:
        return self._events.subscribe(TransportEvent.MESSAGE, handler)

    def _emit_connected(self) -> None:
        self._events.emit(TransportEvent.CONNECTED)

    def _emit_connection_error(self, message: str) -> None:
        self._events.emit(TransportEvent.CONNECTION_ERROR, message)

    def _emit_closed(self, status_code: int, reason: str, was_clean: bool) -> None:
        self._events.emit(TransportEvent.CLOSED, status_code, reason, was_clean)

    def _emit_message(self, text: str) -> None:
        self._events.emit(TransportEvent.MESSAGE, text)
