from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from shared.resource_paths import static_root as default_static_root

from .control_server import ControlServer
from .file_server import FileStore, UploadTooLarge
from .session_manager import SessionManager

logger = logging.getLogger(__name__)


_LOG_BUFFER_LIMIT = 200
_log_buffer = deque(maxlen=_LOG_BUFFER_LIMIT)


class _InMemoryLogHandler(logging.Handler):
    """Collect recent log records for the diagnostics endpoint."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - logging side effect
        try:
            message = self.format(record)
        except Exception:
            message = record.getMessage()
        _log_buffer.append(
            {
                "message": message,
                "level": record.levelname.lower(),
                "logger": record.name,
                "timestamp": record.created,
            }
        )


def install_log_buffer() -> None:
    root_logger = logging.getLogger()
    if any(isinstance(handler, _InMemoryLogHandler) for handler in root_logger.handlers):
        return
    handler = _InMemoryLogHandler(level=logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root_logger.addHandler(handler)


def _get_log_tail(limit: int = 50) -> list[dict[str, object]]:
    if limit <= 0:
        return []
    return list(_log_buffer)[-limit:]


class WebApp:
    """FastAPI application: file API, room WebSocket and browser assets."""

    def __init__(
        self,
        session_manager: SessionManager,
        file_store: FileStore,
        *,
        static_root: Optional[Path] = None,
    ) -> None:
        self._session_manager = session_manager
        self._file_store = file_store
        self._control_server = ControlServer(session_manager)
        self._static_root = static_root or default_static_root()
        self._app = FastAPI(title="LAN File Share")
        self._app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self._app.get("/api/files")
        async def list_files() -> list[dict]:
            return [item.to_dict() for item in await self._file_store.list_files()]

        @self._app.post("/api/upload")
        async def upload(
            file: Optional[UploadFile] = File(None),
            sender_name: Optional[str] = Form(None, alias="senderName"),
        ) -> dict:
            if file is None or not file.filename:
                raise HTTPException(status_code=400, detail="No file uploaded")
            try:
                stored = await self._file_store.save_upload(file, sender_name)
            except UploadTooLarge as exc:
                raise HTTPException(status_code=413, detail=str(exc)) from exc
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            finally:
                await file.close()
            await self._session_manager.notify_file_added(stored.name, stored.uploader)
            return {
                "success": True,
                "filename": stored.name,
                "originalName": file.filename,
                "size": stored.size,
                "sender": stored.uploader,
            }

        @self._app.get("/api/download/{filename}")
        async def download(filename: str) -> FileResponse:
            try:
                path = self._file_store.resolve(filename)
            except FileNotFoundError as exc:
                raise HTTPException(status_code=404, detail="File not found") from exc
            return FileResponse(path, filename=filename)

        @self._app.delete("/api/files/{filename}")
        async def delete_file(filename: str) -> dict:
            try:
                await self._file_store.delete(filename)
            except FileNotFoundError as exc:
                raise HTTPException(status_code=404, detail="File not found") from exc
            except OSError as exc:
                logger.exception("Failed to delete %s", filename)
                raise HTTPException(status_code=500, detail="Failed to delete file") from exc
            await self._session_manager.notify_file_deleted(filename)
            return {"success": True, "message": "File deleted"}

        @self._app.get("/api/users")
        async def users() -> dict:
            return await self._session_manager.users_summary()

        @self._app.get("/api/server-info")
        async def server_info() -> dict:
            return await self._session_manager.server_info()

        @self._app.get("/api/health")
        async def health() -> dict:
            info = await self._session_manager.server_info()
            return {
                "status": "ok",
                "participant_count": info["users"],
                "timestamp": time.time(),
            }

        @self._app.get("/api/state")
        async def state() -> dict:
            snapshot = await self._session_manager.snapshot()
            snapshot["timestamp"] = time.time()
            snapshot["log_tail"] = _get_log_tail(40)
            return snapshot

        @self._app.websocket("/ws")
        async def room_socket(websocket: WebSocket) -> None:
            await self._control_server.handle(websocket)

        # Browser pages open the socket on the page origin root.
        self._app.add_api_websocket_route("/", room_socket)

        if self._static_root.exists():
            self._app.mount("/", StaticFiles(directory=self._static_root, html=True), name="static")
        else:
            logger.warning("Static assets not found at %s", self._static_root)

    @property
    def app(self) -> FastAPI:
        return self._app


class WebServer:
    """Background task helper for running the FastAPI app under uvicorn."""

    def __init__(self, web_app: WebApp, *, host: str, port: int) -> None:
        self._web_app = web_app
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(
            self._web_app.app,
            host=self._host,
            port=self._port,
            log_level="info",
            log_config=None,
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("HTTP server listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None

    @property
    def task(self) -> Optional[asyncio.Task[None]]:
        return self._task
