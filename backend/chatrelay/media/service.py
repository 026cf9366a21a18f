"""Blob store for media attachments.

Files are stored in: <upload_dir>/<owner_id>/<uuid>.<ext> and served back
under ``public_base_url``. Messages only ever hold the resulting URL.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from chatrelay.errors import InvalidPayload

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """``store(bytes) -> URL``."""

    @abstractmethod
    def store(self, owner_id: str, filename: str, content: bytes) -> str:
        """Persist ``content`` and return its public URL."""

    @abstractmethod
    def resolve(self, owner_id: str, stored_name: str) -> Optional[Path]:
        """Local path of a stored blob, or None if it does not exist."""


class LocalBlobStore(BlobStore):
    """Blob store on the local filesystem."""

    def __init__(
        self,
        upload_dir: str = "uploads",
        public_base_url: str = "/media",
        max_size_bytes: int = 20 * 1024 * 1024,
    ) -> None:
        self._upload_dir = Path(upload_dir)
        self._public_base_url = public_base_url.rstrip("/")
        self.max_size_bytes = max_size_bytes
        self._upload_dir.mkdir(parents=True, exist_ok=True)

    def _owner_dir(self, owner_id: str) -> Path:
        return self._upload_dir / owner_id

    def store(self, owner_id: str, filename: str, content: bytes) -> str:
        """Write an upload to disk.

        Raises:
            InvalidPayload: Empty upload or size above ``max_size_bytes``.
        """
        size_bytes = len(content)
        if size_bytes == 0:
            raise InvalidPayload("Uploaded file is empty")
        if size_bytes > self.max_size_bytes:
            raise InvalidPayload(
                f"File size ({size_bytes} bytes) exceeds limit ({self.max_size_bytes} bytes)"
            )

        ext = Path(filename).suffix.lower()
        stored_name = f"{uuid.uuid4().hex}{ext}"

        owner_dir = self._owner_dir(owner_id)
        owner_dir.mkdir(parents=True, exist_ok=True)
        (owner_dir / stored_name).write_bytes(content)

        logger.info("Stored blob %s/%s (%d bytes)", owner_id, stored_name, size_bytes)
        return f"{self._public_base_url}/{owner_id}/{stored_name}"

    def resolve(self, owner_id: str, stored_name: str) -> Optional[Path]:
        path = (self._owner_dir(owner_id) / stored_name).resolve()
        if self._upload_dir.resolve() not in path.parents or not path.is_file():
            return None
        return path
