"""Wire protocol shared between the room server and its clients.

Every message on the persistent WebSocket channel is a single JSON object
carrying a ``type`` tag. Client requests decode into a small closed set of
dataclasses so the server can dispatch them with a ``match`` statement;
server events are encoded from a :class:`ServerEvent` tag plus a payload.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

DEFAULT_HTTP_PORT = 3000
DEFAULT_MAX_USERS = 2
DEFAULT_SESSION_TIMEOUT_SECONDS = 5 * 60
DEFAULT_MAX_UPLOAD_BYTES = 500 * 1024 * 1024
SERVER_NAME = "LAN File Share"
ANONYMOUS_NAME = "Anonymous"
MAX_DISPLAY_NAME_LENGTH = 32


class ClientAction(str, Enum):
    """Requests a peer may send over the room channel."""

    JOIN = "join"
    START_SESSION = "start_session"


class ServerEvent(str, Enum):
    """Events the server pushes to peers."""

    JOINED = "joined"
    USERS_UPDATE = "users_update"
    SESSION_STARTED = "session_started"
    SESSION_EXPIRED = "session_expired"
    ERROR = "error"
    FILE_ADDED = "file_added"
    FILE_DELETED = "file_deleted"


class MalformedMessage(ValueError):
    """Raised when an inbound frame cannot be decoded into a client request."""


@dataclass(slots=True, frozen=True)
class JoinRequest:
    name: str


@dataclass(slots=True, frozen=True)
class StartSessionRequest:
    pass


ClientMessage = Union[JoinRequest, StartSessionRequest]


def normalize_display_name(raw: Any) -> str:
    """Collapse whitespace and clamp the length of a user supplied name."""

    if not isinstance(raw, str):
        return ANONYMOUS_NAME
    name = " ".join(raw.split())
    if not name:
        return ANONYMOUS_NAME
    return name[:MAX_DISPLAY_NAME_LENGTH]


def decode_client_message(raw: Union[str, bytes]) -> ClientMessage:
    """Parse one inbound frame.

    Raises :class:`MalformedMessage` for invalid JSON, non-object payloads
    and unknown or missing ``type`` tags.
    """

    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise MalformedMessage(f"undecodable frame: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedMessage("frame is not a JSON object")
    try:
        action = ClientAction(payload.get("type"))
    except ValueError as exc:
        raise MalformedMessage(f"unknown message type {payload.get('type')!r}") from exc

    if action is ClientAction.JOIN:
        return JoinRequest(name=normalize_display_name(payload.get("name")))
    return StartSessionRequest()


def encode_client_message(message: ClientMessage) -> str:
    if isinstance(message, JoinRequest):
        return json.dumps({"type": ClientAction.JOIN.value, "name": message.name})
    return json.dumps({"type": ClientAction.START_SESSION.value})


def encode_event(event: ServerEvent, data: Optional[Dict[str, Any]] = None) -> str:
    """Serialize a server event; ``type`` always comes first."""

    envelope: Dict[str, Any] = {"type": event.value}
    if data:
        envelope.update(data)
    return json.dumps(envelope, separators=(",", ":"))


def decode_event(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Parse a server event on the client side."""

    try:
        payload = json.loads(raw)
    except RecursionError as exc:
        raise MalformedMessage("event nested too deeply") from exc
    if not isinstance(payload, dict) or "type" not in payload:
        raise MalformedMessage("event without a type tag")
    return payload


def room_full_message(capacity: int) -> str:
    return f"Room is full (max {capacity} users)"


def session_expired_message(duration_seconds: float) -> str:
    minutes = duration_seconds / 60.0
    if minutes >= 1 and minutes == int(minutes):
        unit = "minute" if int(minutes) == 1 else "minutes"
        return f"Session has expired after {int(minutes)} {unit}"
    return f"Session has expired after {int(round(duration_seconds))} seconds"


def to_millis(seconds: float) -> int:
    return int(round(seconds * 1000))


def iso_timestamp(epoch_seconds: float) -> str:
    """Render a UTC timestamp the way browsers print ``Date.toISOString()``."""

    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
