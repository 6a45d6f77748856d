"""Blob storage for uploaded sources and split fragments."""

import re
from pathlib import Path
from typing import Protocol

from src.errors import NotFoundError, PersistenceError, ValidationError
from src.utils.logger import get_logger

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def sanitize_filename(name: str) -> str:
    """Replace every character outside ``[a-zA-Z0-9.-]`` with ``_``."""
    cleaned = _UNSAFE_CHARS.sub("_", Path(name).name)
    return cleaned.lstrip(".") or "file"


class FileStore(Protocol):
    """Key-addressed blob storage."""

    def put(self, key: str, data: bytes) -> str: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def size(self, key: str) -> int: ...

    def url_for(self, key: str) -> str | None: ...


class LocalFileStore:
    """Stores blobs under a directory on the local filesystem.

    Args:
        root: Base directory; created on first write.
        public_base_url: Base URL under which ``root`` is served, used to
            build the file URLs handed to the extraction workflow.
    """

    def __init__(self, root: Path, public_base_url: str | None = None) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValidationError("Storage key escapes the store root", {"key": key})
        return path

    def put(self, key: str, data: bytes) -> str:
        """Write a blob and return its key.

        Raises:
            PersistenceError: If the file cannot be written.
        """
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise PersistenceError(f"Failed to store {key}: {exc}") from exc
        logger.debug("Stored %s (%d bytes)", key, len(data))
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError("File", key)
        return path.read_bytes()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def size(self, key: str) -> int:
        return self._path(key).stat().st_size

    def url_for(self, key: str) -> str | None:
        if not self.public_base_url:
            return None
        return f"{self.public_base_url.rstrip('/')}/{key}"
