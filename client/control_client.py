from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

import websockets
import websockets.exceptions

from shared.protocol import (
    JoinRequest,
    ServerEvent,
    StartSessionRequest,
    decode_event,
    encode_client_message,
)

logger = logging.getLogger(__name__)

RECONNECT_BASE_DELAY_SECONDS = 3.0
RECONNECT_MAX_DELAY_SECONDS = 30.0

EventCallback = Callable[[dict], Awaitable[None] | None]
StateCallback = Callable[["ConnectionState"], Awaitable[None] | None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RECONNECT_PENDING = "reconnect_pending"
    INTENTIONALLY_DISCONNECTED = "intentionally_disconnected"


class RoomClient:
    """Keeps one participant joined to a room, reconnecting when dropped.

    A dropped connection moves to ``RECONNECT_PENDING`` and retries with
    exponential backoff. ``close()`` and a ``session_expired`` event both
    end in ``INTENTIONALLY_DISCONNECTED``, after which no retry happens.
    A room-full error keeps retrying since a slot may free up.
    """

    def __init__(
        self,
        url: str,
        name: str,
        on_event: Optional[EventCallback] = None,
        *,
        on_state_change: Optional[StateCallback] = None,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY_SECONDS,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY_SECONDS,
    ) -> None:
        self._url = url
        self._name = name
        self._on_event = on_event
        self._on_state_change = on_state_change
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._reconnect_attempt = 0
        self._should_reconnect = True
        self._state = ConnectionState.DISCONNECTED
        self._websocket = None
        self.user_id: Optional[str] = None
        self.users: list[dict] = []
        self.session_started = False
        self.time_remaining_ms: Optional[int] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def should_reconnect(self) -> bool:
        return self._should_reconnect

    async def run(self) -> None:
        """Connect, join and stay joined until closed or the session expires."""

        self._should_reconnect = True
        while self._should_reconnect:
            try:
                async with websockets.connect(self._url) as websocket:
                    self._websocket = websocket
                    await websocket.send(encode_client_message(JoinRequest(self._name)))
                    await self._set_state(ConnectionState.CONNECTED)
                    async for raw in websocket:
                        await self._handle_raw(raw)
                logger.info("Room connection closed")
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
                logger.warning("Room connection to %s failed: %s", self._url, exc)
            finally:
                self._websocket = None
                self.user_id = None
            if not self._should_reconnect:
                break
            delay = self.next_reconnect_delay()
            await self._set_state(ConnectionState.RECONNECT_PENDING)
            logger.info("Reconnecting in %.1fs", delay)
            await asyncio.sleep(delay)
        await self._set_state(ConnectionState.INTENTIONALLY_DISCONNECTED)

    async def start_session(self) -> None:
        if self._websocket is None:
            raise RuntimeError("Client is not connected")
        await self._websocket.send(encode_client_message(StartSessionRequest()))

    async def close(self) -> None:
        self._should_reconnect = False
        websocket = self._websocket
        if websocket is not None:
            await websocket.close()
        await self._set_state(ConnectionState.INTENTIONALLY_DISCONNECTED)

    def next_reconnect_delay(self) -> float:
        delay = min(
            self._reconnect_base_delay * (2 ** self._reconnect_attempt),
            self._reconnect_max_delay,
        )
        self._reconnect_attempt += 1
        return delay

    def apply_event(self, event: dict) -> None:
        """Update local room state from one server event."""

        kind = event.get("type")
        if kind == ServerEvent.JOINED.value:
            self.user_id = event.get("userId")
            self.users = list(event.get("users") or [])
            self.session_started = bool(event.get("sessionStarted"))
            self.time_remaining_ms = event.get("timeRemaining")
            self._reconnect_attempt = 0
        elif kind == ServerEvent.USERS_UPDATE.value:
            self.users = list(event.get("users") or [])
            self.session_started = bool(event.get("sessionStarted"))
            self.time_remaining_ms = event.get("timeRemaining")
        elif kind == ServerEvent.SESSION_STARTED.value:
            self.session_started = True
            self.time_remaining_ms = event.get("timeout")
        elif kind == ServerEvent.SESSION_EXPIRED.value:
            self._should_reconnect = False
            self.session_started = False
            self.time_remaining_ms = None
        elif kind == ServerEvent.ERROR.value:
            logger.warning("Server error: %s", event.get("message"))

    async def _handle_raw(self, raw: str | bytes) -> None:
        try:
            event = decode_event(raw)
        except ValueError:
            logger.warning("Ignoring undecodable event from server")
            return
        self.apply_event(event)
        if self._on_event is None:
            return
        try:
            result = self._on_event(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling room event %s", event.get("type"))

    async def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_state_change is None:
            return
        try:
            result = self._on_state_change(state)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("State change callback failed")
