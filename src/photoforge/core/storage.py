"""Object storage for finished archives and preview images.

The pipeline needs two operations from object storage: accept a byte buffer
and return a retrievable location, and discard an object it stored when the
job that produced it fails.  :class:`LocalObjectStore` implements both on
the local filesystem; the FastAPI app serves the directory
under ``public_base_url``.
"""

import logging
import uuid
from pathlib import Path
from typing import Protocol

from .errors import PersistenceError

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    def put(self, data: bytes, *, suffix: str) -> str: ...

    def delete(self, url: str) -> None: ...


class LocalObjectStore:
    """Write objects under random names in a served directory."""

    def __init__(self, root_dir: Path, base_url: str):
        self._root_dir = Path(root_dir)
        self._root_dir.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url.rstrip("/")

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    def put(self, data: bytes, *, suffix: str) -> str:
        """Store ``data`` and return its public URL.

        Args:
            data: Object content
            suffix: File extension including the dot, e.g. ``".zip"``

        Raises:
            PersistenceError: If the file cannot be written
        """
        name = f"{uuid.uuid4().hex}{suffix}"
        path = self._root_dir / name
        try:
            path.write_bytes(data)
        except OSError as e:
            raise PersistenceError(f"Failed to store object {name}: {e}") from e

        logger.debug("Stored %s (%d bytes)", path, len(data))
        return f"{self._base_url}/{name}"

    def delete(self, url: str) -> None:
        """Remove an object previously returned by :meth:`put`.

        Missing objects are ignored.

        Raises:
            PersistenceError: If the file exists but cannot be removed
        """
        name = url.rsplit("/", 1)[-1]
        if name in ("", ".", ".."):
            return

        path = self._root_dir / name
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to delete object {name}: {e}") from e

        logger.debug("Deleted %s", path)
