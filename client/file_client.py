from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

_DOWNLOAD_CHUNK = 64 * 1024


class FileClient:
    """Talks to the shared-file HTTP API of a room server."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def server_info(self) -> dict:
        response = self._session.get(self._url("/api/server-info"), timeout=self._timeout)
        response.raise_for_status()
        return response.json()

    def list_files(self) -> list[dict]:
        response = self._session.get(self._url("/api/files"), timeout=self._timeout)
        response.raise_for_status()
        return response.json()

    def upload(self, path: Path, sender: str) -> dict:
        with path.open("rb") as file_obj:
            response = self._session.post(
                self._url("/api/upload"),
                files={"file": (path.name, file_obj)},
                data={"senderName": sender},
                timeout=None,
            )
        response.raise_for_status()
        result = response.json()
        logger.info("Uploaded %s as %s", path, result.get("filename"))
        return result

    def download(self, filename: str, destination: Path) -> Path:
        target = destination / filename if destination.is_dir() else destination
        with self._session.get(
            self._url(f"/api/download/{quote(filename)}"),
            stream=True,
            timeout=self._timeout,
        ) as response:
            response.raise_for_status()
            with target.open("wb") as file_obj:
                for chunk in response.iter_content(chunk_size=_DOWNLOAD_CHUNK):
                    if chunk:
                        file_obj.write(chunk)
        logger.info("Downloaded %s to %s", filename, target)
        return target

    def delete(self, filename: str) -> dict:
        response = self._session.delete(self._url(f"/api/files/{quote(filename)}"), timeout=self._timeout)
        response.raise_for_status()
        return response.json()
