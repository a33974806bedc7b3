from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from shared.protocol import (
    DEFAULT_MAX_USERS,
    DEFAULT_SESSION_TIMEOUT_SECONDS,
    SERVER_NAME,
    ServerEvent,
    session_expired_message,
    to_millis,
)

from .broadcast import BroadcastChannel, PeerConnection, PeerTransport
from .membership import CapacityExceeded, MembershipRegistry, Peer
from .session_timer import Clock, DeadlineHandle, LoopClock, SessionTimer

logger = logging.getLogger(__name__)

EVENT_LOG_LIMIT = 1000
SHUTDOWN_CLOSE_TIMEOUT = 5.0

SessionExpiredHook = Callable[[], Awaitable[None] | None]


class RoomState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class SessionManager:
    """Single authority over room membership and the session lifecycle.

    Every transition (join, start, leave, expiry, file notification) runs
    under one ``asyncio.Lock`` so the peer list and session fields are
    always read together. Broadcasts are queued on the channel while the
    lock is held, which keeps per-peer event order identical to the order
    of transitions; the actual socket writes happen on the channel's
    writer tasks.
    """

    def __init__(
        self,
        channel: Optional[BroadcastChannel] = None,
        *,
        capacity: int = DEFAULT_MAX_USERS,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT_SECONDS,
        clock: Optional[Clock] = None,
        on_session_expired: Optional[SessionExpiredHook] = None,
        server_name: str = SERVER_NAME,
    ) -> None:
        if session_timeout <= 0:
            raise ValueError("session_timeout must be positive")
        self._clock = clock or LoopClock()
        self._channel = channel or BroadcastChannel()
        self._registry = MembershipRegistry(capacity)
        self._timer = SessionTimer(self._clock, self._on_timer_fired)
        self._lock = asyncio.Lock()
        self._session_timeout = float(session_timeout)
        self._session_handle: Optional[DeadlineHandle] = None
        self._session_started_at: Optional[float] = None
        self._on_session_expired = on_session_expired
        self._server_name = server_name
        self._event_log: list[dict] = []
        self._expiry_tasks: set[asyncio.Task[bool]] = set()

    @property
    def capacity(self) -> int:
        return self._registry.capacity

    @property
    def session_timeout(self) -> float:
        return self._session_timeout

    @property
    def channel(self) -> BroadcastChannel:
        return self._channel

    async def join(
        self,
        display_name: str,
        transport: PeerTransport,
        *,
        origin_address: Optional[str] = None,
    ) -> Peer:
        """Admit a peer, reply ``joined`` to it and ``users_update`` to all.

        Raises :class:`CapacityExceeded` when the room is full; the caller
        owns the rejected transport.
        """

        async with self._lock:
            try:
                peer = self._registry.admit(display_name, origin_address)
            except CapacityExceeded:
                logger.warning(
                    "Rejected join from %s (%s): room full (%d/%d)",
                    display_name,
                    origin_address,
                    self._registry.size(),
                    self.capacity,
                )
                self._record_event("join_rejected", {"name": display_name, "ip": origin_address})
                raise
            self._channel.attach(peer.id, transport)
            self._channel.send_to(
                peer.id,
                ServerEvent.JOINED,
                {
                    "userId": peer.id,
                    "users": self._users_payload_locked(),
                    "sessionTimeout": to_millis(self._session_timeout),
                    "timeRemaining": self._time_remaining_ms_locked(),
                    "sessionStarted": self._session_handle is not None,
                },
            )
            self._broadcast_users_update_locked()
            self._record_event("user_joined", {"id": peer.id, "name": peer.display_name, "ip": origin_address})
            logger.info("User joined: %s (%d/%d)", peer.display_name, self._registry.size(), self.capacity)
            return peer

    async def start_session(self, requested_by: Optional[str] = None) -> bool:
        """Arm the session timer if the room is idle and occupied.

        Returns ``False`` for duplicate starts and for an empty room.
        """

        async with self._lock:
            if self._session_handle is not None:
                logger.debug("Ignoring start_session from %s; session already running", requested_by)
                return False
            if self._registry.is_empty():
                logger.warning("Ignoring start_session for an empty room")
                return False
            self._session_handle = self._timer.start(self._session_timeout)
            self._session_started_at = self._clock.time()
            self._channel.broadcast(
                ServerEvent.SESSION_STARTED,
                {
                    "timeout": to_millis(self._session_timeout),
                    "startTime": to_millis(self._session_started_at),
                },
            )
            self._record_event(
                "session_started",
                {"requested_by": requested_by, "duration_seconds": self._session_timeout},
            )
            logger.info("Session started by %s; expires in %.0fs", requested_by or "unknown", self._session_timeout)
            return True

    async def leave(self, peer_id: str) -> Optional[Peer]:
        """Remove a peer whose transport closed. Unknown ids are a no-op."""

        async with self._lock:
            peer = self._registry.remove(peer_id)
            if peer is None:
                logger.debug("Leave for unknown peer %s ignored", peer_id)
                return None
            self._channel.detach(peer_id)
            if self._registry.is_empty() and self._session_handle is not None:
                self._clear_session_locked()
                self._record_event("session_cleared", {"reason": "room_empty"})
                logger.info("Last participant left; session timer cleared")
            self._broadcast_users_update_locked()
            self._record_event("user_left", {"id": peer.id, "name": peer.display_name})
            logger.info("User left: %s (%d/%d)", peer.display_name, self._registry.size(), self.capacity)
            return peer

    async def expire(self) -> bool:
        """Force the running session to expire now."""

        return await self._expire(expected=None)

    async def notify_file_added(self, filename: str, sender: str) -> None:
        async with self._lock:
            self._channel.broadcast(ServerEvent.FILE_ADDED, {"filename": filename, "sender": sender})
            self._record_event("file_added", {"filename": filename, "sender": sender})

    async def notify_file_deleted(self, filename: str) -> None:
        async with self._lock:
            self._channel.broadcast(ServerEvent.FILE_DELETED, {"filename": filename})
            self._record_event("file_deleted", {"filename": filename})

    async def disconnect_all(self, *, reason: str = "Server shutting down") -> int:
        """Notify and close every peer, then reset the room."""

        async with self._lock:
            if self._registry.is_empty():
                self._clear_session_locked()
                return 0
            self._channel.broadcast(ServerEvent.ERROR, {"message": reason})
            connections = self._channel.close_all(code=1001, reason=reason)
            disconnected = len(self._registry.clear())
            self._clear_session_locked()
            self._record_event("server_shutdown", {"reason": reason, "disconnected": disconnected})
        await self._wait_closed(connections)
        return disconnected

    async def get_state(self) -> RoomState:
        async with self._lock:
            return self._state_locked()

    async def time_remaining(self) -> Optional[float]:
        async with self._lock:
            remaining_ms = self._time_remaining_ms_locked()
            return None if remaining_ms is None else remaining_ms / 1000.0

    async def list_peers(self) -> list[Peer]:
        async with self._lock:
            return self._registry.list_peers()

    async def users_summary(self) -> dict[str, object]:
        async with self._lock:
            return {
                "users": self._users_payload_locked(),
                "maxUsers": self.capacity,
                "canJoin": not self._registry.is_full(),
            }

    async def server_info(self) -> dict[str, object]:
        async with self._lock:
            return {
                "name": self._server_name,
                "users": self._registry.size(),
                "maxUsers": self.capacity,
                "canJoin": not self._registry.is_full(),
            }

    async def snapshot(self) -> dict:
        async with self._lock:
            peers = []
            for peer in self._registry.list_peers():
                entry = peer.to_dict()
                connection = self._channel.get(peer.id)
                entry["bytes_sent"] = connection.bytes_sent if connection else 0
                peers.append(entry)
            return {
                "name": self._server_name,
                "state": self._state_locked().value,
                "session_started_at": self._session_started_at,
                "time_remaining_ms": self._time_remaining_ms_locked(),
                "session_timeout_ms": to_millis(self._session_timeout),
                "capacity": self.capacity,
                "participant_count": len(peers),
                "peers": peers,
                "events": list(self._event_log[-300:]),
            }

    async def get_recent_events(self, limit: int = 300) -> list[dict[str, object]]:
        async with self._lock:
            if limit <= 0:
                return []
            return list(self._event_log[-limit:])

    def _on_timer_fired(self, handle: DeadlineHandle) -> None:
        task = asyncio.get_running_loop().create_task(self._expire(expected=handle))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)

    async def _expire(self, *, expected: Optional[DeadlineHandle]) -> bool:
        async with self._lock:
            current = self._session_handle
            if current is None or (expected is not None and expected is not current):
                logger.debug("Stale or duplicate session expiry ignored")
                return False
            logger.info("Session expired; disconnecting all users")
            connections: list[PeerConnection] = []
            try:
                self._channel.broadcast(
                    ServerEvent.SESSION_EXPIRED,
                    {"message": session_expired_message(current.duration)},
                )
                connections = self._channel.close_all(code=1000, reason="Session expired")
            except Exception:
                logger.exception("Failed to notify peers about session expiry")
            finally:
                if len(self._channel):
                    connections.extend(self._channel.close_all(code=1011, reason="Session expired"))
                evicted = self._registry.clear()
                self._clear_session_locked()
                self._record_event("session_expired", {"evicted": len(evicted)})
        await self._run_expiry_hook()
        await self._wait_closed(connections)
        logger.info("Session ended. Ready for new connections.")
        return True

    async def _run_expiry_hook(self) -> None:
        if self._on_session_expired is None:
            return
        try:
            result = self._on_session_expired()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Session expiry hook failed")

    async def _wait_closed(self, connections: list[PeerConnection]) -> None:
        if not connections:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*(connection.wait_closed() for connection in connections), return_exceptions=True),
                SHUTDOWN_CLOSE_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for %d peer connections to close", len(connections))

    def _clear_session_locked(self) -> None:
        self._timer.cancel()
        self._session_handle = None
        self._session_started_at = None

    def _state_locked(self) -> RoomState:
        return RoomState.ACTIVE if self._session_handle is not None else RoomState.IDLE

    def _time_remaining_ms_locked(self) -> Optional[int]:
        handle = self._session_handle
        if handle is None:
            return None
        remaining = self._timer.remaining()
        if remaining is None:
            remaining = max(0.0, handle.deadline - self._clock.monotonic())
        return to_millis(remaining)

    def _users_payload_locked(self) -> list[dict[str, object]]:
        return [peer.to_dict() for peer in self._registry.list_peers()]

    def _broadcast_users_update_locked(self) -> None:
        self._channel.broadcast(
            ServerEvent.USERS_UPDATE,
            {
                "users": self._users_payload_locked(),
                "maxUsers": self.capacity,
                "timeRemaining": self._time_remaining_ms_locked(),
                "sessionStarted": self._session_handle is not None,
            },
        )

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        self._event_log.append(
            {
                "type": event_type,
                "timestamp": time.time(),
                "details": details,
            }
        )
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log.pop(0)
