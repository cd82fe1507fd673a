import asyncio
import logging
import shutil
from datetime import UTC, datetime
from pathlib import Path

from config.settings import settings
from services.storage.base import PhotoStorage, StorageError, StoredFile, StoredObject, unique_filename

log = logging.getLogger(__name__)


class LocalStorage(PhotoStorage):
    """Photos under a directory tree served at `public_url_prefix`."""

    backend_name = "local"

    def __init__(self, root: Path | None = None, url_prefix: str | None = None):
        self.root = Path(root or settings.upload_dir)
        self.url_prefix = (url_prefix if url_prefix is not None else settings.public_url_prefix).rstrip("/")

    def _resolve(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.url_prefix}/{key}"

    async def save(self, data: bytes, suggested_name: str, folder: str = "batch") -> StoredFile | StorageError:
        key = f"{folder}/{unique_filename(suggested_name)}"
        try:
            path = self._resolve(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_bytes, data)
        except (OSError, ValueError) as e:
            log.error(f"Failed to save {suggested_name} locally: {e}")
            return StorageError(key=key, message=str(e))

        log.info(f"Saved {suggested_name} as {key} ({len(data)} bytes)")
        return StoredFile(key=key, url=self.url_for(key))

    async def read(self, key: str) -> bytes | StorageError:
        try:
            return await asyncio.to_thread(self._resolve(key).read_bytes)
        except FileNotFoundError:
            return StorageError(key=key, message=f"File not found: {key}")
        except (OSError, ValueError) as e:
            return StorageError(key=key, message=str(e))

    async def delete(self, key: str) -> StorageError | None:
        try:
            self._resolve(key).unlink(missing_ok=True)
        except (OSError, ValueError) as e:
            log.warning(f"Failed to delete {key}: {e}")
            return StorageError(key=key, message=str(e))
        return None

    async def copy(self, source_key: str, dest_key: str) -> StoredFile | StorageError:
        try:
            source = self._resolve(source_key)
            dest = self._resolve(dest_key)
            if not source.exists():
                return StorageError(key=source_key, message=f"Source file does not exist: {source_key}")
            dest.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, source, dest)
        except (OSError, ValueError) as e:
            log.error(f"Failed to copy {source_key} to {dest_key}: {e}")
            return StorageError(key=source_key, message=str(e))

        return StoredFile(key=dest_key, url=self.url_for(dest_key))

    def _scan(self, folder: str) -> list[StoredObject]:
        base = self._resolve(folder)
        if not base.is_dir():
            return []
        root = self.root.resolve()
        return [
            StoredObject(
                key=path.relative_to(root).as_posix(),
                modified_at=datetime.fromtimestamp(path.stat().st_mtime, UTC),
            )
            for path in base.rglob("*")
            if path.is_file()
        ]

    async def list_files(self, folder: str) -> list[StoredObject] | StorageError:
        try:
            return await asyncio.to_thread(self._scan, folder)
        except (OSError, ValueError) as e:
            log.warning(f"Failed to list {folder}: {e}")
            return StorageError(key=folder, message=str(e))
