"""Blob storage for uploaded files.

Files are written under settings.storage.blob_dir and served read-only by
FastAPI's StaticFiles at /files, so put() returns a public URL.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import re
import uuid
from pathlib import Path

from medcard.config import settings

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^\w.\-]+", re.UNICODE)
MAX_NAME_LENGTH = 80


class BlobStoreError(Exception):
    """Raised when a file cannot be written to or read from blob storage."""


class LocalBlobStore:
    """Content store on the local filesystem.

    Layout: <root>/<YYYY>/<MM>/<uuid>-<sanitized name>
    """

    def __init__(self, root: str | Path | None = None, public_base_url: str | None = None) -> None:
        self._root = Path(root or settings.storage.blob_dir).resolve()
        self._base_url = (public_base_url or settings.storage.public_base_url).rstrip("/")

    @property
    def root(self) -> Path:
        return self._root

    async def put(self, data: bytes, name: str, mime_type: str) -> str:
        """Store bytes and return their public URL.

        Raises:
            BlobStoreError: If the file cannot be written.
        """
        now = dt.datetime.now(dt.UTC)
        relative = Path(f"{now:%Y}", f"{now:%m}", f"{uuid.uuid4().hex[:12]}-{sanitize_name(name)}")
        target = self._root / relative
        try:
            await asyncio.to_thread(_write, target, data)
        except OSError as exc:
            raise BlobStoreError(f"Cannot write {relative}: {exc}") from exc

        logger.info("Stored blob %s (%s, %d bytes)", relative, mime_type, len(data))
        return f"{self._base_url}/{relative.as_posix()}"

    async def get(self, url: str) -> bytes:
        """Read back a file previously returned by put().

        Raises:
            BlobStoreError: If the URL is foreign or the file is missing.
        """
        path = self.path_for(url)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise BlobStoreError(f"Cannot read {url}: {exc}") from exc

    async def delete(self, url: str) -> None:
        path = self.path_for(url)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError:
            logger.warning("Failed to delete blob %s", url)

    def path_for(self, url: str) -> Path:
        prefix = f"{self._base_url}/"
        if not url.startswith(prefix):
            raise BlobStoreError(f"URL is not served by this store: {url}")
        path = (self._root / url.removeprefix(prefix)).resolve()
        if not path.is_relative_to(self._root):
            raise BlobStoreError(f"URL escapes the blob root: {url}")
        return path


def sanitize_name(name: str) -> str:
    """Filesystem-safe version of a user-supplied file name."""
    cleaned = _UNSAFE_CHARS.sub("_", name.strip()).strip("._")
    return (cleaned or "file")[-MAX_NAME_LENGTH:]


def _write(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
