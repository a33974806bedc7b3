from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import requests

from shared.protocol import DEFAULT_HTTP_PORT, ServerEvent

from .control_client import ConnectionState, RoomClient
from .file_client import FileClient
from .scanner import default_targets, scan

logger = logging.getLogger(__name__)


def _base_url(host: str, port: int) -> str:
    if host.startswith(("http://", "https://")):
        return host.rstrip("/")
    return f"http://{host}:{port}"


def _ws_url(host: str, port: int) -> str:
    base = _base_url(host, port)
    return "ws" + base[len("http"):] + "/ws"


def _format_users(users: list[dict]) -> str:
    return ", ".join(str(user.get("name")) for user in users) or "(nobody)"


async def _run_join(args: argparse.Namespace) -> int:
    client: RoomClient

    async def on_event(event: dict) -> None:
        kind = event.get("type")
        if kind == ServerEvent.JOINED.value:
            print(f"Joined as {args.name} ({event.get('userId')})")
            if args.start and not event.get("sessionStarted"):
                await client.start_session()
        elif kind == ServerEvent.USERS_UPDATE.value:
            print(f"Users: {_format_users(event.get('users') or [])}")
        elif kind == ServerEvent.SESSION_STARTED.value:
            print(f"Session started; {int(event.get('timeout', 0)) // 1000}s remaining")
        elif kind == ServerEvent.SESSION_EXPIRED.value:
            print(event.get("message"))
        elif kind == ServerEvent.FILE_ADDED.value:
            print(f"New file: {event.get('filename')} from {event.get('sender')}")
        elif kind == ServerEvent.FILE_DELETED.value:
            print(f"File removed: {event.get('filename')}")
        elif kind == ServerEvent.ERROR.value:
            print(f"Error: {event.get('message')}", file=sys.stderr)

    def on_state_change(state: ConnectionState) -> None:
        logger.info("Connection state: %s", state.value)

    client = RoomClient(
        _ws_url(args.host, args.port),
        args.name,
        on_event,
        on_state_change=on_state_change,
    )
    try:
        await client.run()
    finally:
        await client.close()
    return 0


def _run_scan(args: argparse.Namespace) -> int:
    targets = args.targets or default_targets()
    if not targets:
        print("No local network found to scan", file=sys.stderr)
        return 1
    results = scan(targets, args.port, timeout=args.timeout)
    if not results:
        print("No servers found")
        return 0
    for result in results:
        status = "open" if result.can_join else "full"
        print(f"{result.url}  {result.name}  {result.users}/{result.max_users}  {status}")
    return 0


def _run_files(client: FileClient, args: argparse.Namespace) -> int:
    files = client.list_files()
    if not files:
        print("No shared files")
    for item in files:
        print(f"{item['name']}\t{item['size']}\t{item['sender']}\t{item['modified']}")
    return 0


def _run_upload(client: FileClient, args: argparse.Namespace) -> int:
    result = client.upload(args.path, args.name)
    print(f"Uploaded {result['originalName']} as {result['filename']} ({result['size']} bytes)")
    return 0


def _run_download(client: FileClient, args: argparse.Namespace) -> int:
    target = client.download(args.filename, args.output)
    print(f"Saved {target}")
    return 0


def _run_delete(client: FileClient, args: argparse.Namespace) -> int:
    client.delete(args.filename)
    print(f"Deleted {args.filename}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LAN file sharing client")
    parser.add_argument("--port", type=int, default=DEFAULT_HTTP_PORT, help="Server HTTP port")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    join = subparsers.add_parser("join", help="Join a room and follow its events")
    join.add_argument("host", help="Hostname or IP of the room server")
    join.add_argument("--name", required=True, help="Display name")
    join.add_argument("--start", action="store_true", help="Start the session timer after joining")

    scan_parser = subparsers.add_parser("scan", help="Look for room servers on the LAN")
    scan_parser.add_argument("targets", nargs="*", help="Hosts, CIDR blocks or three-octet prefixes")
    scan_parser.add_argument("--timeout", type=float, default=1.5, help="Per-host probe timeout")

    files = subparsers.add_parser("files", help="List shared files")
    files.add_argument("host")

    upload = subparsers.add_parser("upload", help="Share a file")
    upload.add_argument("host")
    upload.add_argument("path", type=Path)
    upload.add_argument("--name", default="", help="Sender name shown to others")

    download = subparsers.add_parser("download", help="Download a shared file")
    download.add_argument("host")
    download.add_argument("filename")
    download.add_argument("--output", type=Path, default=Path("."), help="Target directory or file")

    delete = subparsers.add_parser("delete", help="Delete a shared file")
    delete.add_argument("host")
    delete.add_argument("filename")
    return parser


def main() -> None:
    args = build_parser().parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "join":
        try:
            sys.exit(asyncio.run(_run_join(args)))
        except KeyboardInterrupt:
            sys.exit(0)
    if args.command == "scan":
        sys.exit(_run_scan(args))

    handlers = {
        "files": _run_files,
        "upload": _run_upload,
        "download": _run_download,
        "delete": _run_delete,
    }
    client = FileClient(_base_url(args.host, args.port))
    try:
        sys.exit(handlers[args.command](client, args))
    except requests.HTTPError as exc:
        detail = exc.response.text if exc.response is not None else str(exc)
        print(f"Request failed: {detail}", file=sys.stderr)
        sys.exit(1)
    except requests.RequestException as exc:
        print(f"Could not reach {args.host}: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
