"""
Object storage boundary.

The worker only reads uploaded files (get_object); put_object exists for
the upload side and for tests.
"""

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ObjectNotFoundError(KeyError):
    """No object stored under the key."""

    pass


def file_key(user_id: str, file_id: str) -> str:
    """Storage key of an uploaded file."""
    for segment in (user_id, file_id):
        if not _SAFE_SEGMENT.match(segment or "") or ".." in segment:
            raise ValueError(f"Invalid storage key segment: {segment!r}")
    return f"{user_id}/{file_id}"


class ObjectStore(ABC):
    @abstractmethod
    def get_object(self, key: str) -> BinaryIO:
        """Open an object for reading. Caller closes the stream."""

    @abstractmethod
    def put_object(self, key: str, data: bytes) -> None:
        """Store an object, replacing any previous content."""

    def read_bytes(self, key: str) -> bytes:
        with self.get_object(key) as stream:
            return stream.read()


class FilesystemObjectStore(ObjectStore):
    """Objects as files under a root directory (key "a/b" -> root/a/b)."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Key escapes storage root: {key!r}")
        return path

    def get_object(self, key: str) -> BinaryIO:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFoundError(key)
        return path.open("rb")

    def put_object(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug(f"Stored object {key} ({len(data)} bytes)")
