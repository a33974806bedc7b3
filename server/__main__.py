from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from shared.netinfo import local_ipv4_addresses
from shared.protocol import (
    DEFAULT_HTTP_PORT,
    DEFAULT_MAX_UPLOAD_BYTES,
    DEFAULT_MAX_USERS,
    DEFAULT_SESSION_TIMEOUT_SECONDS,
)
from shared.resource_paths import default_storage_dir, static_root

from server.file_server import FileStore
from server.session_manager import SessionManager
from server.web_app import WebApp, WebServer, install_log_buffer

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LAN file sharing room server")
    parser.add_argument("--host", default="0.0.0.0", help="Host/IP to bind the HTTP server")
    parser.add_argument("--port", type=int, default=DEFAULT_HTTP_PORT, help="HTTP and WebSocket port")
    parser.add_argument(
        "--max-users",
        type=_positive_int,
        default=DEFAULT_MAX_USERS,
        help="Maximum simultaneous participants",
    )
    parser.add_argument(
        "--session-timeout",
        type=_positive_float,
        default=float(DEFAULT_SESSION_TIMEOUT_SECONDS),
        help="Session duration in seconds once started",
    )
    parser.add_argument(
        "--storage-dir",
        type=Path,
        default=default_storage_dir(),
        help="Directory for shared files",
    )
    parser.add_argument(
        "--static-dir",
        type=Path,
        default=static_root(),
        help="Path to the browser UI assets",
    )
    parser.add_argument(
        "--max-upload-mb",
        type=_positive_int,
        default=DEFAULT_MAX_UPLOAD_BYTES // (1024 * 1024),
        help="Largest accepted upload in megabytes",
    )
    parser.add_argument(
        "--keep-files",
        action="store_true",
        help="Keep shared files when a session expires",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    return parser


def configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )
    install_log_buffer()


def log_banner(port: int, max_users: int, session_timeout: float) -> None:
    logger.info("LAN File Share server running")
    logger.info("  Local:   http://localhost:%s", port)
    for address in local_ipv4_addresses():
        logger.info("  Network: http://%s:%s", address, port)
    logger.info("Max users per session: %d", max_users)
    logger.info("Session duration: %.0f seconds", session_timeout)


async def main() -> None:
    args = build_parser().parse_args()
    configure_logging(args)

    file_store = FileStore(args.storage_dir, max_upload_bytes=args.max_upload_mb * 1024 * 1024)
    session_manager = SessionManager(
        capacity=args.max_users,
        session_timeout=args.session_timeout,
        on_session_expired=None if args.keep_files else file_store.clear,
    )
    web_server = WebServer(
        WebApp(session_manager, file_store, static_root=args.static_dir),
        host=args.host,
        port=args.port,
    )

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def trigger_shutdown(source: str) -> None:
        if stop_event.is_set():
            logger.debug("Shutdown already in progress (source=%s)", source)
            return
        logger.info("%s initiated shutdown", source)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, trigger_shutdown, "Shutdown signal")
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await web_server.start()
    log_banner(args.port, args.max_users, args.session_timeout)

    server_task = web_server.task
    stop_waiter = asyncio.create_task(stop_event.wait())
    waiters = {stop_waiter}
    if server_task is not None:
        waiters.add(server_task)
    await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    stop_waiter.cancel()

    logger.info("Shutdown signal processed; stopping services")

    try:
        await session_manager.disconnect_all(reason="Server shutting down")
    except Exception:
        logger.exception("Failed to disconnect participants during shutdown")

    try:
        await web_server.stop()
    except (Exception, SystemExit):
        logger.exception("Error stopping HTTP server")

    logger.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
