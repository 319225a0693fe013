"""Session state machine for a PlayerLink game server connection.

This module provides the canonical API for game clients to talk to a
PlayerLink server. It handles:
- Connection intent and transport lifecycle
- The authentication handshake
- The outbound queue and its send gate
- Ping/pong liveness probes and clock synchronization
- Fan-out of lifecycle and message events

The session never schedules retries itself. Repeated calls to
``flush_outbound_queue()`` and ``ping_server()`` (see ``SessionDriver``)
drive reconnects and keepalive.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .clock_sync import ClockSample, ClockSyncEstimator
from .config import PlayerLinkConfig
from .errors import PlayerLinkClientError, PlayerLinkDecodeError, PlayerLinkSetupError
from .events import EventNotifier, SessionEvent, Subscription
from .outbound import OutboundQueue
from .protocol import (
    MessageKind,
    NoticePayload,
    PingPayload,
    PlayerAuthenticatedPayload,
    PongPayload,
    RequestAuthenticationPayload,
    decode_message,
    decode_payload,
    encode_message,
)
from .transport.base import Transport

_LOGGER = logging.getLogger(__name__)

TransportFactory = Callable[[PlayerLinkConfig], Transport]


class SessionState(Enum):
    """Coarse connection state derived from the session flags."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LIVE = "live"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(frozen=True)
class PlayerIdentity:
    """Who this session authenticates as."""

    name: str
    player_id: str
    version: str = ""


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class PlayerLinkSession:
    """Client session for one game server connection.

    All calls, and all transport events, must happen on the same event loop
    thread. Nothing here blocks: sends are queued, connects are started, and
    the outcome arrives later as a transport event.

    Usage:
        session = PlayerLinkSession(websocket_transport_factory(), config)
        session.on_player_authenticated(my_auth_handler)
        session.initialise("Ada", "player-1", "1.4.2")
        session.send_message(MessageKind.WARNING_MESSAGE, {"message": "hi"})
        ...
        session.shutdown()
    """

    def __init__(
        self,
        transport_factory: TransportFactory | None,
        config: PlayerLinkConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize session.

        Args:
            transport_factory: Builds a fresh transport from the config each
                time the session (re)initialises.
            config: Connection settings.
            clock: Source of "now" timestamps (defaults to UTC now). Naive
                values are treated as UTC.

        Raises:
            PlayerLinkSetupError: If no transport factory is given.
        """
        if transport_factory is None:
            raise PlayerLinkSetupError("A transport factory is required")

        self.config = config or PlayerLinkConfig()
        self._transport_factory = transport_factory
        self._clock = clock or _utcnow

        # Transport
        self._transport: Transport | None = None
        self._transport_subscriptions: list[Subscription] = []
        self._closed_subscription: Subscription | None = None
        self._link_state = "idle"

        # Session flags
        self._identity: PlayerIdentity | None = None
        self._want_connected = True
        self._authenticated = False
        self._live = False
        self._shutting_down = False
        self._flushing = False
        self._state = SessionState.IDLE

        self._queue = OutboundQueue()
        self._clock_sync = ClockSyncEstimator()
        self._events: EventNotifier[SessionEvent] = EventNotifier(
            self.config.display_name
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def identity(self) -> PlayerIdentity | None:
        return self._identity

    @property
    def server_url(self) -> str:
        return self.config.server_url

    @property
    def want_connected(self) -> bool:
        return self._want_connected

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    @property
    def is_live(self) -> bool:
        """True once a message has arrived since the last ping."""
        return self._live

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def pending_messages(self) -> int:
        """Number of frames waiting in the outbound queue."""
        return len(self._queue)

    @property
    def latency_estimate(self) -> timedelta:
        return self._clock_sync.latency

    @property
    def clock_offset_estimate(self) -> timedelta:
        return self._clock_sync.offset

    @property
    def last_clock_sample(self) -> ClockSample | None:
        return self._clock_sync.last_sample

    @property
    def _log_name(self) -> str:
        if self._identity is not None:
            return self._identity.name
        return self.config.display_name

    # -------------------------------------------------------------------------
    # Public API: Observers
    # -------------------------------------------------------------------------

    def on_message_sent(self, callback: Callable[[str, datetime], None]) -> Subscription:
        """Register callback for each queued frame sent (raw frame, timestamp)."""
        return self._events.subscribe(SessionEvent.MESSAGE_SENT, callback)

    def on_message_received(
        self, callback: Callable[[str, datetime], None]
    ) -> Subscription:
        """Register callback for every inbound frame (raw frame, timestamp)."""
        return self._events.subscribe(SessionEvent.MESSAGE_RECEIVED, callback)

    def on_player_authenticated(
        self, callback: Callable[[str, str], None]
    ) -> Subscription:
        """Register callback for authentication (player name, player id)."""
        return self._events.subscribe(SessionEvent.PLAYER_AUTHENTICATED, callback)

    def on_warning(self, callback: Callable[[str], None]) -> Subscription:
        """Register callback for server warning messages."""
        return self._events.subscribe(SessionEvent.WARNING, callback)

    def on_error(self, callback: Callable[[str], None]) -> Subscription:
        """Register callback for server error messages."""
        return self._events.subscribe(SessionEvent.ERROR, callback)

    def on_internal_error(self, callback: Callable[[str], None]) -> Subscription:
        """Register callback for client-side failures (transport, decoding, setup)."""
        return self._events.subscribe(SessionEvent.INTERNAL_ERROR, callback)

    def on_connection_state_changed(
        self, callback: Callable[[SessionState], None]
    ) -> Subscription:
        """Register callback for SessionState transitions."""
        return self._events.subscribe(SessionEvent.CONNECTION_STATE_CHANGED, callback)

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    def initialise(self, name: str, player_id: str, version: str = "") -> None:
        """Set the player identity and open a fresh transport.

        Calling this again while a transport exists replaces that transport.
        The identity cannot change once set.

        Raises:
            PlayerLinkSetupError: If a different identity was already set.
        """
        if self._shutting_down:
            _LOGGER.debug("[%s] Initialise ignored: shutting down", self._log_name)
            return

        identity = PlayerIdentity(name=name, player_id=player_id, version=version)
        if self._identity is not None and identity != self._identity:
            raise PlayerLinkSetupError(
                f"Session identity is already set to {self._identity.name!r}"
            )
        self._identity = identity
        self._want_connected = True

        if self._transport is not None:
            _LOGGER.info("[%s] Replacing existing transport", self._log_name)
            old = self._transport
            self._detach_transport()
            old.close()

        _LOGGER.debug(
            "[%s] Creating transport for %s via %s",
            self._log_name,
            self.config.server_url,
            self.config.server_protocol,
        )
        try:
            transport = self._transport_factory(self.config)
        except (PlayerLinkClientError, ValueError, OSError) as err:
            self._report_internal_error(f"Failed to create websocket object: {err}")
            return
        if transport is None:
            self._report_internal_error("Failed to create websocket object")
            return

        self._attach_transport(transport)
        self._link_state = "connecting"
        _LOGGER.info("[%s] Connecting to %s", self._log_name, self.config.display_name)
        transport.connect()
        self._publish_state()

    def request_authentication(self, payload: RequestAuthenticationPayload) -> None:
        """Queue an authentication request through the normal send path."""
        self.send_message(MessageKind.REQUEST_AUTHENTICATION, payload)

    def disconnect_from_server(self) -> None:
        """Drop the connection and stay down until ``initialise`` runs again.

        Queued frames are kept.
        """
        _LOGGER.info("[%s] Disconnecting", self._log_name)
        self._want_connected = False
        self._authenticated = False

        if self._transport is not None:
            if self._closed_subscription is not None:
                self._closed_subscription()
                self._closed_subscription = None
            if self._transport.is_connected():
                self._transport.close()
            self._link_state = "closed"

        self._publish_state()

    disconnect = disconnect_from_server

    def shutdown(self) -> None:
        """Tear the session down for good.

        After this no transport event can reopen, resend, or authenticate.
        Queued frames are discarded.
        """
        if self._shutting_down:
            return
        transport = self._transport
        was_connected = transport is not None and transport.is_connected()
        self.disconnect_from_server()
        _LOGGER.info("[%s] Shutting down session", self._log_name)
        self._shutting_down = True
        self._detach_transport()

        # Nothing listens to the transport once detached, so a pending connect is closed too.
        if transport is not None and not was_connected:
            transport.close()

        dropped = self._queue.clear()
        if dropped:
            _LOGGER.info("[%s] Dropped %d queued messages", self._log_name, dropped)
        self._publish_state()

    begin_destroy = shutdown

    # -------------------------------------------------------------------------
    # Public API: Messaging
    # -------------------------------------------------------------------------

    def send_message(
        self,
        kind: MessageKind,
        payload: Any = None,
    ) -> None:
        """Encode a message and queue it for sending."""
        self.send_raw_message(encode_message(kind, payload))

    def send_raw_message(self, raw: str) -> None:
        """Queue an already encoded frame, then try to flush.

        Sending while the session does not want a connection is treated as a
        disconnect request and the frame is dropped.
        """
        if not self._want_connected:
            _LOGGER.debug("[%s] Send while disconnected, dropping", self._log_name)
            self.disconnect_from_server()
            return
        self._queue.enqueue(raw)
        self.flush_outbound_queue()

    def flush_outbound_queue(self) -> None:
        """Send every queued frame if the outbound gate is open.

        Otherwise start whatever step is missing (transport creation or
        connect) and return; a later call retries.
        """
        if not self._want_connected:
            self.disconnect_from_server()
            return

        transport = self._ready_transport()
        if transport is None:
            return

        if not self._live:
            _LOGGER.debug(
                "[%s] Flush deferred: waiting for pong (%d queued)",
                self._log_name,
                len(self._queue),
            )
            return

        if self._flushing:
            return

        self._flushing = True
        try:
            while self._queue:
                entries = self._queue.drain_all()
                for index, entry in enumerate(entries):
                    if not self._gate_open(transport):
                        self._queue.push_front(entries[index:])
                        return
                    try:
                        transport.send(entry)
                    except PlayerLinkClientError as err:
                        self._queue.push_front(entries[index:])
                        self._report_internal_error(f"Failed to send message: {err}")
                        return
                    _LOGGER.debug("[%s] Sent: %s", self._log_name, entry)
                    self._events.emit(SessionEvent.MESSAGE_SENT, entry, self._now())
        finally:
            self._flushing = False

    def ping_server(self) -> None:
        """Probe the server. Liveness is revoked until the pong arrives."""
        if not self._want_connected:
            self.disconnect_from_server()
            return

        self._live = False
        self._publish_state()

        transport = self._ready_transport()
        if transport is None:
            return

        payload = PingPayload.create(
            self._now(),
            latency=self._clock_sync.latency,
            offset=self._clock_sync.offset,
        )
        _LOGGER.debug("[%s] Pinging server", self._log_name)
        self._send_direct(transport, MessageKind.PING, payload)

    # -------------------------------------------------------------------------
    # Public API: Server Time
    # -------------------------------------------------------------------------

    def get_estimated_server_time(self) -> datetime:
        """Estimate the server clock right now."""
        return self._clock_sync.estimated_server_time(self._now())

    def get_server_time_elapsed_so_far(self, start: datetime) -> timedelta:
        """Server-clock time elapsed since ``start`` (a server timestamp)."""
        return self.get_estimated_server_time() - start

    # -------------------------------------------------------------------------
    # Inbound messages
    # -------------------------------------------------------------------------

    def handle_inbound_message(self, raw: str) -> None:
        """Process one inbound frame from the transport."""
        if self._shutting_down:
            return
        if not self._want_connected:
            self.disconnect_from_server()
            return

        # Any message proves the round trip works.
        self._live = True
        received_at = self._now()
        message = decode_message(raw)

        if message.kind is not MessageKind.PONG:
            _LOGGER.debug(
                "[%s] Message received (%d chars): %s", self._log_name, len(raw), raw
            )

        self._events.emit(SessionEvent.MESSAGE_RECEIVED, raw, received_at)
        if self._shutting_down or not self._want_connected:
            return

        kind = message.kind
        if kind is MessageKind.PLAYER_AUTHENTICATED:
            self._handle_player_authenticated(message.payload)
        elif kind is MessageKind.PONG:
            self._handle_pong(message.payload, received_at)
            # The ping that this answers may have held back queued frames.
            self.flush_outbound_queue()
        elif kind is MessageKind.WARNING_MESSAGE:
            notice: NoticePayload = decode_payload(kind, message.payload)
            _LOGGER.warning(
                "[%s] Warning from server: %s", self._log_name, notice.message
            )
            self._events.emit(SessionEvent.WARNING, notice.message)
        elif kind is MessageKind.ERROR_MESSAGE:
            notice = decode_payload(kind, message.payload)
            _LOGGER.warning("[%s] Error from server: %s", self._log_name, notice.message)
            self._events.emit(SessionEvent.ERROR, notice.message)
        elif kind is MessageKind.PLAYER_NOT_AUTHENTICATED:
            _LOGGER.warning("[%s] Server rejected authentication", self._log_name)
        elif kind is MessageKind.INVALID:
            _LOGGER.debug("[%s] Unknown message kind, ignoring", self._log_name)

        self._publish_state()

    def _handle_player_authenticated(self, payload_text: str) -> None:
        try:
            payload: PlayerAuthenticatedPayload = decode_payload(
                MessageKind.PLAYER_AUTHENTICATED, payload_text
            )
        except PlayerLinkDecodeError as err:
            self._report_internal_error(f"Invalid message payload: {err}")
            return

        self._authenticated = True
        _LOGGER.info(
            "[%s] Player authenticated (id: %s)", payload.player_name, payload.player_id
        )
        self._publish_state()
        self._events.emit(
            SessionEvent.PLAYER_AUTHENTICATED, payload.player_name, payload.player_id
        )

        # Measure the clock offset right away, then release anything queued.
        self.ping_server()
        self.flush_outbound_queue()

    def _handle_pong(self, payload_text: str, received_at: datetime) -> None:
        try:
            pong: PongPayload = decode_payload(MessageKind.PONG, payload_text)
        except PlayerLinkDecodeError as err:
            self._report_internal_error(f"Invalid message payload: {err}")
            return

        sample = self._clock_sync.update(pong.ping_time, received_at, pong.pong_time)
        _LOGGER.debug(
            "[%s] Pong: latency=%s offset=%s",
            self._log_name,
            sample.latency,
            sample.offset,
        )

    # -------------------------------------------------------------------------
    # Transport events
    # -------------------------------------------------------------------------

    def _on_transport_connected(self) -> None:
        if self._shutting_down:
            _LOGGER.debug("[%s] Connected while shutting down, ignoring", self._log_name)
            return
        transport = self._transport
        if transport is None:
            return
        if not self._want_connected:
            _LOGGER.debug("[%s] Connected after disconnect, closing", self._log_name)
            self.disconnect_from_server()
            return

        self._link_state = "open"
        self._live = False
        self._publish_state()

        identity = self._identity
        if identity is None:
            return

        # The auth request opens the gate the queue waits on, so it skips the queue.
        _LOGGER.info("[%s] Connected, requesting authentication", self._log_name)
        self._send_direct(
            transport,
            MessageKind.REQUEST_AUTHENTICATION,
            RequestAuthenticationPayload(
                player_name=identity.name,
                player_id=identity.player_id,
                game_version=identity.version,
            ),
        )

    def _on_transport_connection_error(self, message: str) -> None:
        if self._shutting_down:
            return
        _LOGGER.warning("[%s] Connection error: %s", self._log_name, message)
        transport = self._transport
        if transport is not None and not transport.is_connected():
            self._link_state = "closed"
        self._events.emit(
            SessionEvent.INTERNAL_ERROR, f"Websocket connection error: {message}"
        )
        self._publish_state()

    def _on_transport_closed(self, status_code: int, reason: str, was_clean: bool) -> None:
        if self._shutting_down:
            return
        _LOGGER.info(
            "[%s] Closed (code: %d, reason: %s, clean: %s)",
            self._log_name,
            status_code,
            reason,
            was_clean,
        )
        self._authenticated = False
        self._live = False
        self._link_state = "closed"
        self._publish_state()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _attach_transport(self, transport: Transport) -> None:
        self._transport = transport
        self._transport_subscriptions = [
            transport.on_connected(self._on_transport_connected),
            transport.on_connection_error(self._on_transport_connection_error),
            transport.on_message(self.handle_inbound_message),
        ]
        self._closed_subscription = transport.on_closed(self._on_transport_closed)

    def _detach_transport(self) -> None:
        for unsubscribe in self._transport_subscriptions:
            unsubscribe()
        self._transport_subscriptions = []
        if self._closed_subscription is not None:
            self._closed_subscription()
            self._closed_subscription = None
        self._transport = None

    def _ready_transport(self) -> Transport | None:
        """Return the transport if it is connected, else start connecting."""
        transport = self._transport
        if transport is None:
            identity = self._identity
            if self.config.server_url and identity and identity.name and identity.player_id:
                _LOGGER.info("[%s] No transport, initialising now", self._log_name)
                self.initialise(identity.name, identity.player_id, identity.version)
            else:
                _LOGGER.warning(
                    "[%s] Cannot connect: server URL or player identity missing",
                    self._log_name,
                )
            return None

        if not transport.is_connected():
            _LOGGER.info("[%s] Transport not connected, connecting", self._log_name)
            self._link_state = "connecting"
            transport.connect()
            self._publish_state()
            return None

        return transport

    def _gate_open(self, transport: Transport) -> bool:
        return (
            self._want_connected
            and self._live
            and self._transport is transport
            and transport.is_connected()
        )

    def _send_direct(self, transport: Transport, kind: MessageKind, payload: Any) -> bool:
        """Send a frame straight to the transport, bypassing the queue."""
        try:
            transport.send(encode_message(kind, payload))
        except PlayerLinkClientError as err:
            self._report_internal_error(f"Failed to send {kind.wire_name}: {err}")
            return False
        return True

    def _now(self) -> datetime:
        """Current time from the clock as an aware UTC datetime.

        Naive values are taken to already be UTC.
        """
        now = self._clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=UTC)
        return now.astimezone(UTC)

    def _report_internal_error(self, message: str) -> None:
        _LOGGER.warning("[%s] %s", self._log_name, message)
        self._events.emit(SessionEvent.INTERNAL_ERROR, message)

    def _derive_state(self) -> SessionState:
        if self._shutting_down or self._link_state == "closed":
            return SessionState.CLOSED
        if self._link_state == "idle":
            return SessionState.IDLE
        if self._link_state == "connecting":
            return SessionState.CONNECTING
        if self._authenticated:
            return SessionState.AUTHENTICATED
        if self._live:
            return SessionState.LIVE
        return SessionState.CONNECTED

    def _publish_state(self) -> None:
        state = self._derive_state()
        if state is self._state:
            return
        _LOGGER.debug("[%s] State: %s → %s", self._log_name, self._state.value, state.value)
        self._state = state
        self._events.emit(SessionEvent.CONNECTION_STATE_CHANGED, state)
