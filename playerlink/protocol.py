"""Wire protocol helpers for PlayerLink frames.

Every frame is UTF-8 text of the form ``"<MessageKind>\\n<JSONPayload>"``.
The kind line is looked up in a fixed name table; the JSON payload is passed
to a per-kind decoder. Payload keys follow the game server's camelCase
naming.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .errors import PlayerLinkDecodeError


class MessageKind(Enum):
    """Message kinds understood by the game server."""

    REQUEST_AUTHENTICATION = 0
    PLAYER_AUTHENTICATED = 1
    PLAYER_NOT_AUTHENTICATED = 2
    WARNING_MESSAGE = 3
    ERROR_MESSAGE = 4
    PING = 5
    PONG = 6

    INVALID = 255

    @property
    def wire_name(self) -> str:
        """Name written on the kind line of a frame."""
        return _NAME_BY_KIND[self]

    @classmethod
    def from_wire_name(cls, name: str) -> MessageKind:
        """Look up a kind by its wire name. Unknown names map to INVALID."""
        return _KIND_BY_NAME.get(name, cls.INVALID)


_NAME_BY_KIND: dict[MessageKind, str] = {
    MessageKind.REQUEST_AUTHENTICATION: "RequestAuthentication",
    MessageKind.PLAYER_AUTHENTICATED: "PlayerAuthenticated",
    MessageKind.PLAYER_NOT_AUTHENTICATED: "PlayerNotAuthenticated",
    MessageKind.WARNING_MESSAGE: "WarningMessage",
    MessageKind.ERROR_MESSAGE: "ErrorMessage",
    MessageKind.PING: "Ping",
    MessageKind.PONG: "Pong",
    MessageKind.INVALID: "INVALID",
}

_KIND_BY_NAME: dict[str, MessageKind] = {
    name: kind for kind, name in _NAME_BY_KIND.items()
}


# -----------------------------------------------------------------------------
# Timestamps and timespans
# -----------------------------------------------------------------------------

_TIMESPAN_RE = re.compile(
    r"^(?P<sign>[+-])?(?:(?P<days>\d+)\.)?"
    r"(?P<hours>\d{1,2}):(?P<minutes>\d{2}):(?P<seconds>\d{2})"
    r"(?:\.(?P<fraction>\d{1,7}))?$"
)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision.

    Naive datetimes are taken to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{value.microsecond // 1000:03d}Z"


def parse_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Raises:
        ValueError: If the text is not a valid timestamp.
    """
    if not isinstance(text, str):
        raise ValueError(f"timestamp must be a string, got {type(text).__name__}")
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timespan(value: timedelta) -> str:
    """Format a duration as ``[+-][d.]hh:mm:ss.fff``."""
    total_ms = round(value / timedelta(milliseconds=1))
    sign = "-" if total_ms < 0 else "+"
    total_ms = abs(total_ms)

    days, rem = divmod(total_ms, 86_400_000)
    hours, rem = divmod(rem, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)

    day_part = f"{days}." if days else ""
    return f"{sign}{day_part}{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def parse_timespan(text: str) -> timedelta:
    """Parse a ``[+-][d.]hh:mm:ss[.fffffff]`` duration.

    Raises:
        ValueError: If the text is not a valid timespan.
    """
    if not isinstance(text, str):
        raise ValueError(f"timespan must be a string, got {type(text).__name__}")
    match = _TIMESPAN_RE.match(text.strip())
    if match is None:
        raise ValueError(f"invalid timespan: {text!r}")

    fraction = (match.group("fraction") or "").ljust(6, "0")[:6]
    span = timedelta(
        days=int(match.group("days") or 0),
        hours=int(match.group("hours")),
        minutes=int(match.group("minutes")),
        seconds=int(match.group("seconds")),
        microseconds=int(fraction),
    )
    return -span if match.group("sign") == "-" else span


# -----------------------------------------------------------------------------
# Payloads
# -----------------------------------------------------------------------------


def _require(data: dict[str, Any], key: str, kind: MessageKind) -> Any:
    if key not in data:
        raise PlayerLinkDecodeError(kind.wire_name, f"missing field {key!r}")
    return data[key]


def _require_str(data: dict[str, Any], key: str, kind: MessageKind) -> str:
    value = _require(data, key, kind)
    if not isinstance(value, str):
        raise PlayerLinkDecodeError(kind.wire_name, f"field {key!r} must be a string")
    return value


def _require_timestamp(data: dict[str, Any], key: str, kind: MessageKind) -> datetime:
    try:
        return parse_timestamp(_require(data, key, kind))
    except ValueError as err:
        raise PlayerLinkDecodeError(kind.wire_name, f"field {key!r}: {err}") from err


def _require_timespan(data: dict[str, Any], key: str, kind: MessageKind) -> timedelta:
    try:
        return parse_timespan(_require(data, key, kind))
    except ValueError as err:
        raise PlayerLinkDecodeError(kind.wire_name, f"field {key!r}: {err}") from err


@dataclass(frozen=True)
class RequestAuthenticationPayload:
    """Client → server: identify the player."""

    player_name: str
    player_id: str
    game_version: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "playerName": self.player_name,
            "playerID": self.player_id,
            "gameVersion": self.game_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestAuthenticationPayload:
        kind = MessageKind.REQUEST_AUTHENTICATION
        return cls(
            player_name=_require_str(data, "playerName", kind),
            player_id=_require_str(data, "playerID", kind),
            game_version=str(data.get("gameVersion", "")),
        )


@dataclass(frozen=True)
class PlayerAuthenticatedPayload:
    """Server → client: authentication accepted."""

    player_name: str
    player_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"playerName": self.player_name, "playerID": self.player_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlayerAuthenticatedPayload:
        kind = MessageKind.PLAYER_AUTHENTICATED
        return cls(
            player_name=_require_str(data, "playerName", kind),
            player_id=_require_str(data, "playerID", kind),
        )


@dataclass(frozen=True)
class PingPayload:
    """Client → server: latency probe carrying the last known estimates.

    The estimates are only diagnostics for the server; it echoes
    ``ping_time`` back in the matching pong.
    """

    ping_time: datetime
    ping_ms: int
    current_latency_estimate: timedelta = timedelta(0)
    current_server_time_offset_estimate: timedelta = timedelta(0)

    @classmethod
    def create(
        cls,
        now: datetime,
        *,
        latency: timedelta = timedelta(0),
        offset: timedelta = timedelta(0),
    ) -> PingPayload:
        """Build a probe stamped with ``now``."""
        return cls(
            ping_time=now,
            ping_ms=now.microsecond // 1000,
            current_latency_estimate=latency,
            current_server_time_offset_estimate=offset,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pingTime": format_timestamp(self.ping_time),
            "pingMs": self.ping_ms,
            "currentLatencyEstimate": format_timespan(self.current_latency_estimate),
            "currentServerTimeOffsetEstimate": format_timespan(
                self.current_server_time_offset_estimate
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PingPayload:
        kind = MessageKind.PING
        ping_ms = data.get("pingMs", 0)
        if isinstance(ping_ms, bool) or not isinstance(ping_ms, int):
            raise PlayerLinkDecodeError(kind.wire_name, "field 'pingMs' must be an integer")
        return cls(
            ping_time=_require_timestamp(data, "pingTime", kind),
            ping_ms=ping_ms,
            current_latency_estimate=_require_timespan(
                data, "currentLatencyEstimate", kind
            ),
            current_server_time_offset_estimate=_require_timespan(
                data, "currentServerTimeOffsetEstimate", kind
            ),
        )


@dataclass(frozen=True)
class PongPayload:
    """Server → client: answer to a ping, echoing its ``ping_time``."""

    ping_time: datetime
    pong_time: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "pingTime": format_timestamp(self.ping_time),
            "pongTime": format_timestamp(self.pong_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PongPayload:
        kind = MessageKind.PONG
        return cls(
            ping_time=_require_timestamp(data, "pingTime", kind),
            pong_time=_require_timestamp(data, "pongTime", kind),
        )


@dataclass(frozen=True)
class NoticePayload:
    """Server → client: warning or error text.

    Servers send either bare text, a JSON string, or an object with a
    ``message`` field.
    """

    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message}

    @classmethod
    def from_text(cls, text: str) -> NoticePayload:
        try:
            data = json.loads(text)
        except ValueError:
            return cls(message=text)
        if isinstance(data, str):
            return cls(message=data)
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return cls(message=data["message"])
        return cls(message=text)


Payload = (
    RequestAuthenticationPayload
    | PlayerAuthenticatedPayload
    | PingPayload
    | PongPayload
    | NoticePayload
)

_PAYLOAD_TYPES: dict[MessageKind, Any] = {
    MessageKind.REQUEST_AUTHENTICATION: RequestAuthenticationPayload,
    MessageKind.PLAYER_AUTHENTICATED: PlayerAuthenticatedPayload,
    MessageKind.PING: PingPayload,
    MessageKind.PONG: PongPayload,
}


# -----------------------------------------------------------------------------
# Frames
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class WireMessage:
    """A frame split into its kind and undecoded payload text."""

    kind: MessageKind
    payload: str


def encode_payload(payload: Payload | dict[str, Any] | None) -> str:
    """Serialize a payload to compact JSON. ``None`` encodes as ``{}``."""
    if payload is None:
        return "{}"
    if isinstance(payload, dict):
        return json.dumps(payload, separators=(",", ":"))
    return json.dumps(payload.to_dict(), separators=(",", ":"))


def encode_message(
    kind: MessageKind, payload: Payload | dict[str, Any] | None = None
) -> str:
    """Build a wire frame for ``kind`` and ``payload``.

    Raises:
        ValueError: If ``kind`` is INVALID or the payload type does not match
            the kind.
    """
    if kind is MessageKind.INVALID:
        raise ValueError("INVALID messages cannot be encoded")

    expected = _PAYLOAD_TYPES.get(kind)
    if (
        expected is not None
        and payload is not None
        and not isinstance(payload, (dict, expected))
    ):
        raise ValueError(
            f"{kind.wire_name} expects {expected.__name__}, got {type(payload).__name__}"
        )

    return f"{kind.wire_name}\n{encode_payload(payload)}"


def decode_message(raw: str) -> WireMessage:
    """Split a frame at its first newline and look up the kind.

    A frame without a newline is all kind line with an empty payload.
    """
    kind_line, _, payload = raw.partition("\n")
    return WireMessage(
        kind=MessageKind.from_wire_name(kind_line.strip()),
        payload=payload,
    )


def decode_payload(kind: MessageKind, payload: str) -> Any:
    """Decode payload text for ``kind`` into its payload type.

    Warning and error notices never fail. Kinds without a payload type decode
    to a plain dict.

    Raises:
        PlayerLinkDecodeError: If the JSON is malformed or a field is missing.
    """
    if kind in (MessageKind.WARNING_MESSAGE, MessageKind.ERROR_MESSAGE):
        return NoticePayload.from_text(payload)

    if not payload.strip():
        data: Any = {}
    else:
        try:
            data = json.loads(payload)
        except ValueError as err:
            raise PlayerLinkDecodeError(kind.wire_name, f"invalid JSON: {err}") from err

    if not isinstance(data, dict):
        raise PlayerLinkDecodeError(kind.wire_name, "payload must be a JSON object")

    payload_type = _PAYLOAD_TYPES.get(kind)
    if payload_type is None:
        return data
    return payload_type.from_dict(data)
