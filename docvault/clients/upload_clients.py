"""Client helpers that drive a multipart upload through the docvault API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


@dataclass
class UploadStatusClient:
    base_url: str
    token: str
    timeout: float = 5.0
    http_client: object = requests

    def _url(self, suffix: str) -> str:
        base = self.base_url.rstrip("/")
        return f"{base}{suffix}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def initiate(self, file_name: str, size_bytes: int, *, content_type: Optional[str] = None, parent_path: str = "/") -> Dict[str, object]:
        response = self.http_client.post(
            self._url("/uploads:sessions"),
            json={
                "file_name": file_name,
                "size_bytes": size_bytes,
                "content_type": content_type,
                "parent_path": parent_path,
            },
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def fetch(self, session_id: str) -> Dict[str, object]:
        response = self.http_client.get(
            self._url(f"/uploads:sessions/{session_id}"),
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def complete(self, session_id: str, parts: Dict[int, str]) -> Dict[str, object]:
        response = self.http_client.post(
            self._url(f"/uploads:complete/{session_id}"),
            json={"parts": {str(number): tag for number, tag in parts.items()}},
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def abort(self, session_id: str) -> Dict[str, object]:
        response = self.http_client.post(
            self._url(f"/uploads:abort/{session_id}"),
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()


def _put_parts(
    http_client,
    plan: Dict[str, object],
    read_part: Callable[[int, int], bytes],
    total_size: int,
    timeout: float,
) -> Dict[int, str]:
    """PUT every planned part straight to object storage and collect the returned entity tags."""
    part_size = int(plan["part_size"])
    tags: Dict[int, str] = {}
    parts: List[Dict[str, object]] = sorted(plan["parts"], key=lambda part: part["part_number"])
    for part in parts:
        number = int(part["part_number"])
        offset = (number - 1) * part_size
        length = min(part_size, total_size - offset)
        response = http_client.put(part["url"], data=read_part(offset, length), timeout=timeout)
        response.raise_for_status()
        tag = response.headers.get("ETag")
        if not tag:
            raise RuntimeError(f"Object storage returned no ETag for part {number}")
        tags[number] = tag
    return tags


def _push_and_complete(
    status_client: UploadStatusClient,
    plan: Dict[str, object],
    read_part: Callable[[int, int], bytes],
    total_size: int,
    timeout: float,
) -> Dict[str, object]:
    """Upload every part and complete the session, aborting it if a part fails."""
    session_id = str(plan["session_id"])
    try:
        tags = _put_parts(status_client.http_client, plan, read_part, total_size, timeout)
    except (requests.RequestException, OSError, RuntimeError):
        try:
            status_client.abort(session_id)
        except requests.RequestException:
            logger.warning("Could not abort upload session %s", session_id, exc_info=True)
        raise
    return status_client.complete(session_id, tags)


@dataclass
class DesktopUploader:
    base_url: str
    token: str
    file_path: Path
    parent_path: str = "/"
    content_type: Optional[str] = None
    timeout: float = 30.0
    http_client: object = requests

    def upload(self) -> Dict[str, object]:
        status_client = UploadStatusClient(self.base_url, self.token, http_client=self.http_client)
        total_size = self.file_path.stat().st_size
        plan = status_client.initiate(
            self.file_path.name,
            total_size,
            content_type=self.content_type,
            parent_path=self.parent_path,
        )
        return _push_and_complete(status_client, plan, self._read_chunk, total_size, self.timeout)

    def _read_chunk(self, offset: int, length: int) -> bytes:
        with self.file_path.open("rb") as handle:
            handle.seek(offset)
            data = handle.read(length)
        if len(data) != length:
            raise RuntimeError("Local file missing bytes for multipart upload")
        return data


@dataclass
class MobileUploader:
    base_url: str
    token: str
    file_name: str
    total_size: int
    chunk_provider: Callable[[int, int], bytes]
    parent_path: str = "/"
    timeout: float = 30.0
    http_client: object = requests

    def upload(self) -> Dict[str, object]:
        status_client = UploadStatusClient(self.base_url, self.token, http_client=self.http_client)
        plan = status_client.initiate(self.file_name, self.total_size, parent_path=self.parent_path)
        return _push_and_complete(status_client, plan, self.chunk_provider, self.total_size, self.timeout)
