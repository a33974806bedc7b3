from __future__ import annotations

import logging
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from shared.protocol import (
    ClientMessage,
    JoinRequest,
    MalformedMessage,
    ServerEvent,
    StartSessionRequest,
    decode_client_message,
    encode_event,
)

from .membership import CapacityExceeded, Peer
from .session_manager import SessionManager

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008


class WebSocketTransport:
    """Adapts a Starlette WebSocket to the broadcast channel's transport."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send_text(self, data: str) -> None:
        await self._websocket.send_text(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if (
            self._websocket.application_state == WebSocketState.DISCONNECTED
            or self._websocket.client_state == WebSocketState.DISCONNECTED
        ):
            return
        await self._websocket.close(code=code, reason=reason)


class ControlServer:
    """Speaks the room protocol on one WebSocket per connection."""

    def __init__(self, session_manager: SessionManager) -> None:
        self._session_manager = session_manager

    async def handle(self, websocket: WebSocket) -> None:
        await websocket.accept()
        origin = websocket.client.host if websocket.client else None
        transport = WebSocketTransport(websocket)
        peer: Optional[Peer] = None
        logger.info("Incoming WebSocket connection from %s", origin)
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    raw = frame.get("bytes") or b""
                try:
                    message = decode_client_message(raw)
                except MalformedMessage as exc:
                    logger.warning("Dropping malformed message from %s: %s", origin, exc)
                    continue
                peer, keep_open = await self._dispatch(message, peer, transport, origin)
                if not keep_open:
                    break
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Error while handling connection from %s", origin)
        finally:
            # Leave runs before this handler returns so no stale peer outlives its socket.
            if peer is not None:
                await self._session_manager.leave(peer.id)

    async def _dispatch(
        self,
        message: ClientMessage,
        peer: Optional[Peer],
        transport: WebSocketTransport,
        origin: Optional[str],
    ) -> tuple[Optional[Peer], bool]:
        match message:
            case JoinRequest(name=name):
                if peer is not None:
                    logger.warning("Ignoring repeated join from %s (%s)", peer.display_name, origin)
                    return peer, True
                try:
                    joined = await self._session_manager.join(name, transport, origin_address=origin)
                except CapacityExceeded as exc:
                    await self._reject(transport, str(exc))
                    return None, False
                return joined, True
            case StartSessionRequest():
                if peer is None:
                    logger.warning("Ignoring start_session from unjoined connection %s", origin)
                    return None, True
                await self._session_manager.start_session(requested_by=peer.display_name)
                return peer, True
            case _:
                logger.debug("Unhandled message %r from %s", message, origin)
                return peer, True

    async def _reject(self, transport: WebSocketTransport, reason: str) -> None:
        try:
            await transport.send_text(encode_event(ServerEvent.ERROR, {"message": reason}))
            await transport.close(POLICY_VIOLATION, reason)
        except Exception:
            logger.debug("Failed to notify rejected client", exc_info=True)
