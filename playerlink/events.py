"""Observer fan-out for session and transport events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Generic, TypeVar

_LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


class SessionEvent(Enum):
    """Events a session publishes to the host application."""

    MESSAGE_SENT = "message_sent"
    MESSAGE_RECEIVED = "message_received"
    PLAYER_AUTHENTICATED = "player_authenticated"
    WARNING = "warning"
    ERROR = "error"
    INTERNAL_ERROR = "internal_error"
    CONNECTION_STATE_CHANGED = "connection_state_changed"


class Subscription:
    """Handle returned by :meth:`EventNotifier.subscribe`.

    Calling the handle removes the observer. Calling it again does nothing.
    """

    __slots__ = ("_notifier", "_event", "_callback")

    def __init__(
        self,
        notifier: EventNotifier[Any],
        event: Enum,
        callback: Callable[..., Any],
    ) -> None:
        self._notifier: EventNotifier[Any] | None = notifier
        self._event = event
        self._callback = callback

    @property
    def active(self) -> bool:
        return self._notifier is not None

    def __call__(self) -> None:
        if self._notifier is None:
            return
        self._notifier._remove(self._event, self._callback)
        self._notifier = None


class EventNotifier(Generic[E]):
    """Fan out events to registered observers.

    Observers run synchronously in subscription order. An observer that
    raises is logged and does not stop the others.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._observers: dict[E, list[Callable[..., Any]]] = {}

    def subscribe(self, event: E, callback: Callable[..., Any]) -> Subscription:
        """Register ``callback`` for ``event``."""
        self._observers.setdefault(event, []).append(callback)
        return Subscription(self, event, callback)

    def emit(self, event: E, *args: Any) -> None:
        """Call every observer of ``event`` with ``args``."""
        for callback in list(self._observers.get(event, ())):
            try:
                callback(*args)
            except Exception as err:
                _LOGGER.exception(
                    "[%s] %s observer error: %s", self._name, event.value, err
                )

    def observer_count(self, event: E) -> int:
        return len(self._observers.get(event, ()))

    def clear(self) -> None:
        """Drop every observer."""
        self._observers.clear()

    def _remove(self, event: Enum, callback: Callable[..., Any]) -> None:
        observers = self._observers.get(event)  # type: ignore[call-overload]
        if observers and callback in observers:
            observers.remove(callback)
