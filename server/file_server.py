from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import aiofiles
import aiofiles.os
from fastapi import UploadFile

from shared.protocol import DEFAULT_MAX_UPLOAD_BYTES, iso_timestamp

logger = logging.getLogger(__name__)

UNKNOWN_SENDER = "Unknown"
_CHUNK_SIZE = 1024 * 1024


class UploadTooLarge(Exception):
    def __init__(self, limit: int) -> None:
        super().__init__(f"File exceeds the {limit} byte upload limit")
        self.limit = limit


@dataclass(slots=True)
class SharedFile:
    name: str
    size: int
    modified_at: float
    uploader: str

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "size": self.size,
            "modified": iso_timestamp(self.modified_at),
            "sender": self.uploader,
        }


class FileStore:
    """Flat upload directory plus in-memory uploader metadata.

    The store knows nothing about the room; the HTTP layer tells the
    session manager about additions and deletions.
    """

    def __init__(self, storage_dir: Path, *, max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES) -> None:
        self._storage_dir = storage_dir
        self._max_upload_bytes = max_upload_bytes
        self._uploaders: Dict[str, str] = {}
        self._pending: set[str] = set()
        self._lock = asyncio.Lock()
        self._storage_dir.mkdir(parents=True, exist_ok=True)

    @property
    def storage_dir(self) -> Path:
        return self._storage_dir

    async def list_files(self) -> list[SharedFile]:
        async with self._lock:
            uploaders = dict(self._uploaders)
        files: list[SharedFile] = []
        for entry in self._storage_dir.iterdir():
            if entry.name.startswith("."):
                continue
            try:
                stats = entry.stat()
            except FileNotFoundError:
                continue
            if not entry.is_file():
                continue
            files.append(
                SharedFile(
                    name=entry.name,
                    size=stats.st_size,
                    modified_at=stats.st_mtime,
                    uploader=uploaders.get(entry.name, UNKNOWN_SENDER),
                )
            )
        files.sort(key=lambda item: item.modified_at, reverse=True)
        return files

    async def save_upload(self, upload: UploadFile, sender: Optional[str] = None) -> SharedFile:
        original_name = Path(upload.filename or "").name
        if not original_name or original_name.startswith("."):
            raise ValueError("Invalid file name")
        uploader = (sender or "").strip() or UNKNOWN_SENDER

        async with self._lock:
            target = self._unique_target(original_name)
            self._pending.add(target.name)
        # Dot-prefixed so listings skip the file until it is complete.
        partial = target.with_name(f".{target.name}.part")
        written = 0
        try:
            async with aiofiles.open(partial, "wb") as file_obj:
                while True:
                    chunk = await upload.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self._max_upload_bytes:
                        raise UploadTooLarge(self._max_upload_bytes)
                    await file_obj.write(chunk)
            async with self._lock:
                self._uploaders[target.name] = uploader
            await aiofiles.os.rename(partial, target)
        except BaseException:
            self._uploaders.pop(target.name, None)
            partial.unlink(missing_ok=True)
            raise
        finally:
            self._pending.discard(target.name)

        logger.info("Stored upload %s (%d bytes) from %s", target.name, written, uploader)
        return SharedFile(name=target.name, size=written, modified_at=time.time(), uploader=uploader)

    def resolve(self, filename: str) -> Path:
        """Map a client supplied name to a stored file or raise FileNotFoundError."""

        if not filename or filename != Path(filename).name or filename in {".", ".."} or filename.startswith("."):
            raise FileNotFoundError(filename)
        path = self._storage_dir / filename
        if not path.is_file():
            raise FileNotFoundError(filename)
        return path

    async def delete(self, filename: str) -> None:
        path = self.resolve(filename)
        await aiofiles.os.remove(path)
        async with self._lock:
            self._uploaders.pop(filename, None)
        logger.info("Deleted shared file %s", filename)

    async def clear(self) -> int:
        """Remove every stored file; used when a session expires."""

        async with self._lock:
            self._uploaders.clear()
        removed = 0
        for entry in list(self._storage_dir.iterdir()):
            if entry.name.startswith(".") or not entry.is_file():
                continue
            try:
                await aiofiles.os.remove(entry)
                removed += 1
                logger.info("Deleted: %s", entry.name)
            except FileNotFoundError:
                continue
            except OSError:
                logger.exception("Failed to delete stored file %s", entry.name)
        return removed

    def _is_taken(self, path: Path) -> bool:
        return path.name in self._pending or path.exists()

    def _unique_target(self, filename: str) -> Path:
        target = self._storage_dir / filename
        if not self._is_taken(target):
            return target
        stem, suffix = target.stem, target.suffix
        stamp = int(time.time() * 1000)
        while True:
            candidate = self._storage_dir / f"{stem}_{stamp}{suffix}"
            if not self._is_taken(candidate):
                return candidate
            stamp += 1
