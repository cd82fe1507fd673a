import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import PurePosixPath


@dataclass
class StoredFile:
    key: str
    url: str


@dataclass
class StoredObject:
    key: str
    modified_at: datetime  # UTC


@dataclass
class StorageError:
    """Returned instead of raised: callers decide whether to keep or roll back."""

    key: str
    message: str


CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(PurePosixPath(filename).suffix.lower(), "image/jpeg")


def unique_filename(original_filename: str) -> str:
    """`<unix ts>_<random>.<ext>` so concurrent uploads never collide."""
    extension = PurePosixPath(original_filename).suffix.lower()
    timestamp = int(datetime.now(UTC).timestamp())
    return f"{timestamp}_{secrets.token_hex(8)}{extension}"


class PhotoStorage(ABC):
    """Base class for photo storage backends.

    No method raises on I/O failure; errors come back as StorageError values.
    """

    backend_name: str = "base"

    @abstractmethod
    async def save(self, data: bytes, suggested_name: str, folder: str = "batch") -> StoredFile | StorageError: ...

    @abstractmethod
    async def read(self, key: str) -> bytes | StorageError: ...

    @abstractmethod
    async def delete(self, key: str) -> StorageError | None: ...

    @abstractmethod
    async def copy(self, source_key: str, dest_key: str) -> StoredFile | StorageError: ...

    @abstractmethod
    async def list_files(self, folder: str) -> list[StoredObject] | StorageError: ...

    @abstractmethod
    def url_for(self, key: str) -> str: ...
