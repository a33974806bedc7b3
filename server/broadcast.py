from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from shared.protocol import ServerEvent, encode_event

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 5.0
DEFAULT_MAX_PENDING = 256


class PeerTransport(Protocol):
    """Minimal duplex connection the channel writes to."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


@dataclass(slots=True, frozen=True)
class _CloseRequest:
    code: int
    reason: str


class PeerConnection:
    """Outbox for a single peer.

    ``enqueue`` never blocks; a dedicated writer task drains the queue in
    FIFO order and gives each send ``send_timeout`` seconds. A failed or
    stalled send closes this peer's transport and drops whatever is still
    queued for it.
    """

    def __init__(
        self,
        peer_id: str,
        transport: PeerTransport,
        *,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self.peer_id = peer_id
        self._transport = transport
        self._send_timeout = send_timeout
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max_pending)
        self._closing = False
        self._failed = False
        self.bytes_sent = 0
        self._close_tasks: set[asyncio.Task[None]] = set()
        self._task = asyncio.create_task(self._writer_loop(), name=f"peer-writer-{peer_id[:8]}")

    @property
    def is_open(self) -> bool:
        return not self._closing

    @property
    def failed(self) -> bool:
        return self._failed

    def enqueue(self, payload: str) -> bool:
        if self._closing:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Outbox for peer %s is full; dropping connection", self.peer_id)
            self._abort()
            return False
        return True

    def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the transport after everything already queued is sent."""

        if self._closing:
            return
        self._closing = True
        try:
            self._queue.put_nowait(_CloseRequest(code, reason))
        except asyncio.QueueFull:
            self._abort()

    async def flush(self) -> None:
        await self._queue.join()

    async def wait_closed(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        if self._close_tasks:
            await asyncio.gather(*list(self._close_tasks), return_exceptions=True)

    def _abort(self) -> None:
        self._closing = True
        self._failed = True
        self._discard_pending()
        if not self._task.done():
            self._task.cancel()
        task = asyncio.get_running_loop().create_task(self._close_transport(1011, "send queue overflow"))
        self._close_tasks.add(task)
        task.add_done_callback(self._close_tasks.discard)

    def _discard_pending(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    async def _writer_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if isinstance(item, _CloseRequest):
                    await self._close_transport(item.code, item.reason)
                    return
                assert isinstance(item, str)
                await asyncio.wait_for(self._transport.send_text(item), self._send_timeout)
                self.bytes_sent += len(item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Send to peer %s failed: %r", self.peer_id, exc)
                self._closing = True
                self._failed = True
                self._discard_pending()
                await self._close_transport(1011, "send failure")
                return
            finally:
                self._queue.task_done()

    async def _close_transport(self, code: int, reason: str) -> None:
        try:
            await asyncio.wait_for(self._transport.close(code, reason), self._send_timeout)
        except Exception:
            logger.debug("Error while closing transport for peer %s", self.peer_id, exc_info=True)


class BroadcastChannel:
    """Delivers serialized events to every attached peer.

    All methods except ``flush`` are synchronous and non-blocking so the
    session manager can call them while holding its lock; delivery happens
    on the per-peer writer tasks.
    """

    def __init__(
        self,
        *,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self._send_timeout = send_timeout
        self._max_pending = max_pending
        self._connections: Dict[str, PeerConnection] = {}

    def attach(self, peer_id: str, transport: PeerTransport) -> PeerConnection:
        if peer_id in self._connections:
            raise ValueError(f"peer {peer_id} already attached")
        connection = PeerConnection(
            peer_id,
            transport,
            send_timeout=self._send_timeout,
            max_pending=self._max_pending,
        )
        self._connections[peer_id] = connection
        return connection

    def detach(self, peer_id: str) -> Optional[PeerConnection]:
        connection = self._connections.pop(peer_id, None)
        if connection is not None:
            connection.close()
        return connection

    def get(self, peer_id: str) -> Optional[PeerConnection]:
        return self._connections.get(peer_id)

    def peer_ids(self) -> list[str]:
        return list(self._connections)

    def broadcast(self, event: ServerEvent, data: Optional[Dict[str, Any]] = None) -> int:
        payload = encode_event(event, data)
        delivered = 0
        for peer_id, connection in list(self._connections.items()):
            try:
                if connection.enqueue(payload):
                    delivered += 1
            except Exception:
                logger.exception("Failed to queue %s for peer %s", event.value, peer_id)
        return delivered

    def send_to(self, peer_id: str, event: ServerEvent, data: Optional[Dict[str, Any]] = None) -> bool:
        connection = self._connections.get(peer_id)
        if connection is None:
            logger.debug("Dropping %s for unknown peer %s", event.value, peer_id)
            return False
        return connection.enqueue(encode_event(event, data))

    def close_all(self, code: int = 1000, reason: str = "") -> list[PeerConnection]:
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            connection.close(code, reason)
        return connections

    async def flush(self) -> None:
        connections = list(self._connections.values())
        if connections:
            await asyncio.gather(*(connection.flush() for connection in connections))

    def __len__(self) -> int:
        return len(self._connections)
