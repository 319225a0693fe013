"""Resilient client session for PlayerLink game servers."""

__version__ = "0.1.0"

from .clock_sync import ClockSample, ClockSyncEstimator
from .config import PlayerLinkConfig, load_config
from .driver import SessionDriver
from .errors import (
    ConfigLoadError,
    PlayerLinkClientError,
    PlayerLinkConnectionError,
    PlayerLinkDecodeError,
    PlayerLinkHandshakeError,
    PlayerLinkSetupError,
    PlayerLinkTimeout,
)
from .events import EventNotifier, SessionEvent, Subscription
from .outbound import OutboundQueue
from .protocol import (
    MessageKind,
    NoticePayload,
    PingPayload,
    PlayerAuthenticatedPayload,
    PongPayload,
    RequestAuthenticationPayload,
    WireMessage,
    decode_message,
    decode_payload,
    encode_message,
)
from .session import PlayerIdentity, PlayerLinkSession, SessionState
from .transport import Transport, WebSocketTransport, websocket_transport_factory

__all__ = [
    "ClockSample",
    "ClockSyncEstimator",
    "ConfigLoadError",
    "EventNotifier",
    "MessageKind",
    "NoticePayload",
    "OutboundQueue",
    "PingPayload",
    "PlayerAuthenticatedPayload",
    "PlayerIdentity",
    "PlayerLinkClientError",
    "PlayerLinkConfig",
    "PlayerLinkConnectionError",
    "PlayerLinkDecodeError",
    "PlayerLinkHandshakeError",
    "PlayerLinkSession",
    "PlayerLinkSetupError",
    "PlayerLinkTimeout",
    "PongPayload",
    "RequestAuthenticationPayload",
    "SessionDriver",
    "SessionEvent",
    "SessionState",
    "Subscription",
    "Transport",
    "WebSocketTransport",
    "WireMessage",
    "__version__",
    "decode_message",
    "decode_payload",
    "encode_message",
    "load_config",
    "websocket_transport_factory",
]
