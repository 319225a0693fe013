"""Test PlayerLinkSession state machine."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from playerlink import PlayerLinkSession
from playerlink.config import PlayerLinkConfig
from playerlink.errors import PlayerLinkSetupError
from playerlink.protocol import MessageKind, RequestAuthenticationPayload
from playerlink.session import PlayerIdentity, SessionState

from .conftest import AUTHENTICATED_FRAME, T0, FakeTransport, pong_frame


def _connect(session, transports):
    """Initialise and complete the transport connection."""
    session.initialise("Ada", "p-1", "1.4.2")
    transport = transports[-1]
    transport.fire_connected()
    return transport


def _authenticate(session, transports, clock):
    """Connect, authenticate, and answer the post-auth ping."""
    transport = _connect(session, transports)
    transport.fire_message(AUTHENTICATED_FRAME)
    transport.fire_message(pong_frame(clock(), clock()))
    transport.sent.clear()
    return transport


class TestSessionCreation:
    """Tests for construction and initial state."""

    def test_requires_transport_factory(self):
        """A missing transport factory is a constructor-time error."""
        with pytest.raises(PlayerLinkSetupError, match="transport factory"):
            PlayerLinkSession(None)

    def test_initial_state(self, session):
        """A new session is idle but wants a connection."""
        assert session.state is SessionState.IDLE
        assert session.want_connected
        assert not session.is_authenticated
        assert not session.is_live
        assert not session.is_shutting_down
        assert session.identity is None
        assert session.latency_estimate == timedelta(0)


class TestInitialise:
    """Tests for initialise()."""

    def test_creates_and_connects_transport(self, session, transports):
        """initialise() builds a transport, sets identity, and connects."""
        session.initialise("Ada", "p-1", "1.4.2")

        assert len(transports) == 1
        assert transports[0].connect_calls == 1
        assert session.identity == PlayerIdentity("Ada", "p-1", "1.4.2")
        assert session.state is SessionState.CONNECTING

    def test_connected_sends_auth_directly(self, session, transports):
        """On connect the auth request bypasses the queue."""
        session.send_message(MessageKind.WARNING_MESSAGE, {"message": "queued"})
        transport = _connect(session, transports)

        assert transport.sent_kinds() == ["RequestAuthentication"]
        body = json.loads(transport.sent[0].split("\n", 1)[1])
        assert body == {"playerName": "Ada", "playerID": "p-1", "gameVersion": "1.4.2"}
        assert session.pending_messages == 1
        assert session.state is SessionState.CONNECTED

    def test_reinitialise_replaces_transport(self, session, transports):
        """A second initialise detaches and closes the old transport."""
        old = _connect(session, transports)
        session.initialise("Ada", "p-1", "1.4.2")

        assert len(transports) == 2
        assert old.close_calls == 1
        assert session.transport is transports[1]

        # Events from the old transport no longer reach the session.
        old.fire_message(AUTHENTICATED_FRAME)
        assert not session.is_authenticated

    def test_identity_is_immutable(self, session, transports):
        """A different identity cannot replace the first one."""
        session.initialise("Ada", "p-1", "1.4.2")
        with pytest.raises(PlayerLinkSetupError, match="identity"):
            session.initialise("Bob", "p-2", "1.4.2")

    def test_factory_failure_reports_internal_error(self, config, clock):
        """A failing factory is reported, not raised."""
        factory = MagicMock(side_effect=ValueError("server_url is not configured"))
        session = PlayerLinkSession(factory, config, clock=clock)
        errors = MagicMock()
        session.on_internal_error(errors)

        session.initialise("Ada", "p-1")

        errors.assert_called_once()
        assert "Failed to create websocket object" in errors.call_args.args[0]
        assert session.transport is None

    def test_initialise_after_shutdown_ignored(self, session, transports):
        """Nothing reopens after shutdown."""
        session.shutdown()
        session.initialise("Ada", "p-1")
        assert transports == []
        assert not session.want_connected


class TestAuthentication:
    """Tests for the authentication handshake."""

    def test_player_authenticated(self, session, transports):
        """PlayerAuthenticated sets the flag and notifies observers."""
        transport = _connect(session, transports)
        observer = MagicMock()
        session.on_player_authenticated(observer)

        transport.fire_message(AUTHENTICATED_FRAME)

        assert session.is_authenticated
        observer.assert_called_once_with("Ada", "p-1")
        assert session.state is SessionState.AUTHENTICATED

    def test_authenticated_triggers_one_ping_and_one_flush(self, session, transports):
        """Authentication pings once and flushes once."""
        transport = _connect(session, transports)

        with (
            patch.object(session, "ping_server", wraps=session.ping_server) as ping,
            patch.object(
                session, "flush_outbound_queue", wraps=session.flush_outbound_queue
            ) as flush,
        ):
            session.handle_inbound_message(AUTHENTICATED_FRAME)

        ping.assert_called_once_with()
        flush.assert_called_once_with()
        assert transport.sent_kinds() == ["RequestAuthentication", "Ping"]

    def test_malformed_authenticated_payload(self, session, transports):
        """A bad payload is reported and leaves the session unauthenticated."""
        transport = _connect(session, transports)
        errors = MagicMock()
        session.on_internal_error(errors)

        transport.fire_message("PlayerAuthenticated\n{oops")

        assert not session.is_authenticated
        errors.assert_called_once()
        assert "PlayerAuthenticated" in errors.call_args.args[0]

        # Later messages are still processed.
        transport.fire_message(AUTHENTICATED_FRAME)
        assert session.is_authenticated

    def test_request_authentication_goes_through_queue(self, session, transports, clock):
        """request_authentication() uses the normal send path."""
        transport = _authenticate(session, transports, clock)

        session.request_authentication(RequestAuthenticationPayload("Ada", "p-1", "2.0"))

        assert transport.sent_kinds() == ["RequestAuthentication"]
        assert json.loads(transport.sent[0].split("\n", 1)[1])["gameVersion"] == "2.0"


class TestLiveness:
    """Tests for the liveness flag."""

    @pytest.mark.parametrize(
        "frame",
        [
            "WarningMessage\nheads up",
            'ErrorMessage\n"bad move"',
            "PlayerNotAuthenticated\n{}",
            "Teleport\n{}",
            "",
        ],
    )
    def test_any_message_sets_live(self, session, transports, frame):
        """Every inbound frame sets live, whatever its kind."""
        transport = _connect(session, transports)
        assert not session.is_live

        transport.fire_message(frame)

        assert session.is_live
        assert session.state is SessionState.LIVE

    def test_message_while_not_wanting_connection(self, session, transports):
        """With no intent, an inbound frame only triggers a disconnect."""
        transport = _connect(session, transports)
        session.disconnect_from_server()
        received = MagicMock()
        session.on_message_received(received)
        close_calls = transport.close_calls

        session.handle_inbound_message("WarningMessage\nhello")

        assert not session.is_live
        received.assert_not_called()
        assert transport.close_calls == close_calls + 1

    def test_ping_revokes_liveness(self, session, transports, clock):
        """A ping clears live until the next message."""
        transport = _authenticate(session, transports, clock)
        assert session.is_live

        session.ping_server()

        assert not session.is_live
        assert transport.sent_kinds() == ["Ping"]


class TestOutboundQueue:
    """Tests for queueing and flushing."""

    def test_flush_waits_for_liveness(self, session, transports):
        """Nothing queued is sent while not live."""
        transport = _connect(session, transports)
        transport.sent.clear()

        session.send_message(MessageKind.WARNING_MESSAGE, {"message": "one"})
        session.send_message(MessageKind.WARNING_MESSAGE, {"message": "two"})

        assert transport.sent == []
        assert session.pending_messages == 2

    def test_flush_sends_in_order_once_live(self, session, transports, clock):
        """Queued frames go out in enqueue order after the pong."""
        transport = _connect(session, transports)
        for i in range(3):
            session.send_raw_message(f"WarningMessage\n{i}")
        transport.fire_message(AUTHENTICATED_FRAME)
        assert session.pending_messages == 3

        sent_events = MagicMock()
        session.on_message_sent(sent_events)
        transport.fire_message(pong_frame(clock(), clock()))

        assert transport.sent[-3:] == [
            "WarningMessage\n0",
            "WarningMessage\n1",
            "WarningMessage\n2",
        ]
        assert session.pending_messages == 0
        assert [c.args[0] for c in sent_events.call_args_list] == transport.sent[-3:]
        assert all(c.args[1] == T0 for c in sent_events.call_args_list)

    def test_flush_connects_when_transport_down(self, session, transports, clock):
        """A flush over a dropped transport reconnects instead of sending."""
        transport = _authenticate(session, transports, clock)
        transport.fire_closed(1006, "gone", False)
        connects = transport.connect_calls

        session.send_message(MessageKind.WARNING_MESSAGE, {"message": "later"})

        assert transport.connect_calls == connects + 1
        assert session.pending_messages == 1
        assert session.state is SessionState.CONNECTING

    def test_queue_survives_reconnect(self, session, transports, clock):
        """Frames queued while down are delivered after the next handshake."""
        transport = _authenticate(session, transports, clock)
        transport.fire_closed()
        session.send_raw_message("WarningMessage\nqueued")

        transport.fire_connected()
        transport.fire_message(AUTHENTICATED_FRAME)
        transport.fire_message(pong_frame(clock(), clock()))

        assert transport.sent[-1] == "WarningMessage\nqueued"

    def test_flush_without_transport_reinitialises(self, session, transports):
        """With identity and URL set, a missing transport is rebuilt lazily."""
        session.initialise("Ada", "p-1")
        session._detach_transport()

        session.flush_outbound_queue()

        assert len(transports) == 2
        assert transports[1].connect_calls == 1

    def test_flush_without_identity_does_nothing(self, session, transports, caplog):
        """Without an identity there is nothing to connect as."""
        session.send_raw_message("WarningMessage\nearly")

        assert transports == []
        assert session.pending_messages == 1
        assert "identity missing" in caplog.text

    def test_send_failure_requeues_remaining(self, session, transports, clock):
        """A failed send keeps the failed frame and everything after it."""
        transport = _authenticate(session, transports, clock)
        transport.fail_sends = True
        errors = MagicMock()
        session.on_internal_error(errors)

        session.send_raw_message("WarningMessage\na")
        session.send_raw_message("WarningMessage\nb")

        assert session.pending_messages == 2
        assert errors.called

        transport.fail_sends = False
        session.flush_outbound_queue()
        assert transport.sent == ["WarningMessage\na", "WarningMessage\nb"]

    def test_send_from_observer_keeps_order(self, session, transports, clock):
        """A frame sent from a message-sent observer goes after the current drain."""
        transport = _connect(session, transports)
        session.send_raw_message("WarningMessage\n1")
        session.send_raw_message("WarningMessage\n2")
        transport.fire_message(AUTHENTICATED_FRAME)

        def on_sent(raw, _ts):
            if raw.endswith("\n1"):
                session.send_raw_message("WarningMessage\n3")

        session.on_message_sent(on_sent)
        transport.sent.clear()
        transport.fire_message(pong_frame(clock(), clock()))

        assert transport.sent == [
            "WarningMessage\n1",
            "WarningMessage\n2",
            "WarningMessage\n3",
        ]


class TestPingPong:
    """Tests for the clock sync protocol."""

    def test_ping_payload_carries_estimates(self, session, transports, clock):
        """Pings include the current latency and offset estimates."""
        transport = _authenticate(session, transports, clock)
        ping_time = clock()
        clock.advance(milliseconds=100)
        transport.fire_message(pong_frame(ping_time, ping_time + timedelta(milliseconds=120)))
        transport.sent.clear()

        session.ping_server()

        body = json.loads(transport.sent[0].split("\n", 1)[1])
        assert body["currentLatencyEstimate"] == "+00:00:00.050"
        assert body["currentServerTimeOffsetEstimate"] == "+00:00:00.070"

    def test_pong_updates_estimates(self, session, transports, clock):
        """Pong with T, received T+100ms, server T+120ms: 50ms and 70ms."""
        transport = _connect(session, transports)
        ping_time = clock()
        clock.advance(milliseconds=100)

        transport.fire_message(pong_frame(ping_time, ping_time + timedelta(milliseconds=120)))

        assert session.latency_estimate == timedelta(milliseconds=50)
        assert session.clock_offset_estimate == timedelta(milliseconds=70)

    def test_naive_clock_treated_as_utc(self, config, transports):
        """A clock returning naive datetimes still yields estimates."""
        naive_now = T0.replace(tzinfo=None) + timedelta(milliseconds=100)

        def factory(_config):
            transport = FakeTransport()
            transports.append(transport)
            return transport

        session = PlayerLinkSession(factory, config, clock=lambda: naive_now)
        errors = MagicMock()
        session.on_internal_error(errors)
        transport = _connect(session, transports)

        transport.fire_message(pong_frame(T0, T0 + timedelta(milliseconds=120)))

        errors.assert_not_called()
        assert session.latency_estimate == timedelta(milliseconds=50)
        assert session.clock_offset_estimate == timedelta(milliseconds=70)
        assert session.get_estimated_server_time().tzinfo is not None

    def test_malformed_pong_still_flushes(self, session, transports, clock):
        """A bad pong is reported but liveness still releases the queue."""
        transport = _connect(session, transports)
        transport.fire_message(AUTHENTICATED_FRAME)
        session.send_raw_message("WarningMessage\nwaiting")
        errors = MagicMock()
        session.on_internal_error(errors)

        transport.fire_message("Pong\n{}")

        errors.assert_called_once()
        assert transport.sent[-1] == "WarningMessage\nwaiting"
        assert session.clock_offset_estimate == timedelta(0)

    def test_ping_when_transport_down_reconnects(self, session, transports, clock):
        """A ping over a closed transport starts a connect instead."""
        transport = _authenticate(session, transports, clock)
        transport.fire_closed()
        connects = transport.connect_calls

        session.ping_server()

        assert transport.connect_calls == connects + 1
        assert transport.sent == []

    def test_estimated_server_time(self, session, transports, clock):
        """Server time helpers apply the offset."""
        transport = _connect(session, transports)
        ping_time = clock()
        clock.advance(milliseconds=100)
        transport.fire_message(pong_frame(ping_time, ping_time + timedelta(milliseconds=120)))

        assert session.get_estimated_server_time() == clock() + timedelta(milliseconds=70)
        start = T0 - timedelta(seconds=10)
        assert session.get_server_time_elapsed_so_far(start) == (
            clock() + timedelta(milliseconds=70) - start
        )


class TestServerNotices:
    """Tests for warning and error forwarding."""

    def test_warning_and_error_events(self, session, transports):
        """Warnings and errors reach their own observers."""
        transport = _connect(session, transports)
        warnings = MagicMock()
        errors = MagicMock()
        received = MagicMock()
        session.on_warning(warnings)
        session.on_error(errors)
        session.on_message_received(received)

        transport.fire_message('WarningMessage\n{"message":"Server restarting"}')
        transport.fire_message("ErrorMessage\nKicked")

        warnings.assert_called_once_with("Server restarting")
        errors.assert_called_once_with("Kicked")
        assert received.call_count == 2
        assert received.call_args_list[0].args == (
            'WarningMessage\n{"message":"Server restarting"}',
            T0,
        )

    def test_unknown_kind_only_raw_event(self, session, transports):
        """Unknown kinds are only visible through the raw event."""
        transport = _connect(session, transports)
        received = MagicMock()
        warnings = MagicMock()
        session.on_message_received(received)
        session.on_warning(warnings)

        transport.fire_message("Teleport\n{}")

        received.assert_called_once()
        warnings.assert_not_called()


class TestTransportEvents:
    """Tests for connection error and close handling."""

    def test_connection_error_reported(self, session, transports):
        """Connection errors surface as internal errors without state change."""
        session.initialise("Ada", "p-1")
        errors = MagicMock()
        session.on_internal_error(errors)

        transports[0].fire_error("refused")

        errors.assert_called_once_with("Websocket connection error: refused")
        assert session.want_connected
        assert transports[0].connect_calls == 1

    def test_close_clears_authentication(self, session, transports, clock):
        """A close drops authentication but keeps the intent."""
        transport = _authenticate(session, transports, clock)

        transport.fire_closed(1001, "going away", True)

        assert not session.is_authenticated
        assert not session.is_live
        assert session.want_connected
        assert session.state is SessionState.CLOSED

    def test_state_change_events(self, session, transports, clock):
        """State transitions are published in order."""
        states = MagicMock()
        session.on_connection_state_changed(states)

        _authenticate(session, transports, clock)

        seen = [c.args[0] for c in states.call_args_list]
        assert seen[0] is SessionState.CONNECTING
        assert seen[1] is SessionState.CONNECTED
        assert SessionState.AUTHENTICATED in seen


class TestDisconnect:
    """Tests for disconnect_from_server()."""

    def test_disconnect_clears_flags_and_closes(self, session, transports, clock):
        """Disconnect drops intent and authentication and closes the socket."""
        transport = _authenticate(session, transports, clock)

        session.disconnect()

        assert not session.want_connected
        assert not session.is_authenticated
        assert transport.close_calls == 1
        assert session.state is SessionState.CLOSED

    def test_send_after_disconnect_is_dropped(self, session, transports, clock):
        """Sends after disconnect never reach the transport."""
        transport = _authenticate(session, transports, clock)
        session.disconnect_from_server()

        with patch.object(
            session, "disconnect_from_server", wraps=session.disconnect_from_server
        ) as disconnect:
            session.send_message(MessageKind.WARNING_MESSAGE, {"message": "late"})
            session.flush_outbound_queue()
            session.ping_server()

        assert transport.sent == []
        assert session.pending_messages == 0
        assert disconnect.call_count == 3

    def test_disconnect_keeps_queue(self, session, transports):
        """Queued frames are kept for a later initialise."""
        _connect(session, transports)
        session.send_raw_message("WarningMessage\nkeep")

        session.disconnect_from_server()

        assert session.pending_messages == 1

    def test_connected_after_disconnect_closes(self, session, transports):
        """A connect that completes after disconnect is closed, not authenticated."""
        session.initialise("Ada", "p-1")
        transport = transports[0]
        session.disconnect_from_server()

        transport.fire_connected()

        assert transport.sent == []
        assert transport.close_calls == 1

    def test_reinitialise_after_disconnect(self, session, transports, clock):
        """initialise() re-arms the intent and delivers kept frames."""
        _connect(session, transports)
        session.send_raw_message("WarningMessage\nkeep")
        session.disconnect_from_server()

        transport = _connect(session, transports)
        transport.fire_message(AUTHENTICATED_FRAME)
        transport.fire_message(pong_frame(clock(), clock()))

        assert session.want_connected
        assert transport.sent[-1] == "WarningMessage\nkeep"


class TestShutdown:
    """Tests for shutdown()."""

    def test_shutdown_sets_terminal_flags(self, session, transports, clock):
        """Shutdown disconnects and is absorbing."""
        _authenticate(session, transports, clock)
        session.ping_server()
        session.send_raw_message("WarningMessage\nqueued")
        assert session.pending_messages == 1

        session.begin_destroy()

        assert session.is_shutting_down
        assert not session.want_connected
        assert session.pending_messages == 0
        assert session.state is SessionState.CLOSED

    def test_events_after_shutdown_are_ignored(self, session, transports):
        """No transport event can send, reconnect, or authenticate after shutdown."""
        session.initialise("Ada", "p-1")
        transport = transports[0]
        session.shutdown()
        connects = transport.connect_calls

        transport.fire_connected()
        transport.fire_message(AUTHENTICATED_FRAME)
        transport.fire_message(pong_frame(T0, T0))
        transport.fire_closed()
        session.handle_inbound_message(AUTHENTICATED_FRAME)
        session._on_transport_connected()

        assert transport.sent == []
        assert transport.connect_calls == connects
        assert not session.is_authenticated
        assert len(transports) == 1

    def test_shutdown_while_connecting_closes_transport(self, session, transports):
        """A connect still in progress at shutdown is closed."""
        session.initialise("Ada", "p-1")
        transport = transports[0]

        session.shutdown()
        transport.fire_connected()

        assert transport.close_calls == 1
        assert transport.sent == []

    def test_shutdown_while_connected_closes_once(self, session, transports):
        """An open transport is closed exactly once by shutdown."""
        transport = _connect(session, transports)

        session.shutdown()

        assert transport.close_calls == 1

    def test_shutdown_from_observer_stops_dispatch(self, session, transports):
        """Shutting down inside an observer stops the rest of the handler."""
        transport = _connect(session, transports)
        session.on_message_received(lambda _raw, _ts: session.shutdown())

        transport.fire_message(AUTHENTICATED_FRAME)

        assert not session.is_authenticated
        assert transport.sent_kinds() == ["RequestAuthentication"]


def test_config_url_used_by_factory(clock):
    """The factory receives the session config."""
    factory = MagicMock()
    config = PlayerLinkConfig(server_url="ws://eu.game.test/ws")
    session = PlayerLinkSession(factory, config, clock=clock)

    session.initialise("Ada", "p-1")

    factory.assert_called_once_with(config)
