import logging
import secrets
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from config.settings import settings
from services.batch.models import BatchEntry, normalize_entry_id
from services.storage.base import PhotoStorage, StorageError

log = logging.getLogger(__name__)


class UploadRejected(ValueError):
    """Bad extension, oversized or excess file. Raised before any entry state changes."""


@dataclass
class FileUpload:
    ref: str
    client_name: str
    client_size: int
    progress: int = 0
    done: bool = False
    cancelled: bool = False
    data: bytearray = field(default_factory=bytearray, repr=False)


@dataclass
class UploadChannel:
    channel_id: str
    entry_id: int | str
    uploads: list[FileUpload] = field(default_factory=list)
    signalled: bool = False

    @property
    def active(self) -> list[FileUpload]:
        return [u for u in self.uploads if not u.cancelled]

    def all_done(self) -> bool:
        active = self.active
        return bool(active) and all(u.done for u in active)


@dataclass
class ProcessFiles:
    """Every upload in the channel has finished; time to consume them."""

    entry_id: int | str
    channel_id: str


@dataclass
class SavedFile:
    key: str
    url: str
    filename: str
    size: int


def channel_id_for(entry_id) -> str:
    return f"entry_{normalize_entry_id(entry_id)}_photos"


class UploadCoordinator:
    """Tracks per-entry photo uploads and drains finished ones into storage."""

    def __init__(
        self,
        storage: PhotoStorage,
        max_files: int | None = None,
        max_bytes: int | None = None,
        allowed_extensions: list[str] | None = None,
    ):
        self.storage = storage
        self.max_files = max_files or settings.max_photos_per_entry
        self.max_bytes = max_bytes or settings.max_upload_bytes
        self.allowed_extensions = [e.lower() for e in (allowed_extensions or settings.allowed_extensions)]
        self._channels: dict[str, UploadChannel] = {}

    def channel(self, channel_id: str) -> UploadChannel | None:
        return self._channels.get(channel_id)

    def configure_upload_slots(self, entries: list[BatchEntry]) -> list[str]:
        """One channel per entry. Safe to call after every add/remove."""
        wanted = {channel_id_for(e.id): e for e in entries}

        for channel_id in list(self._channels):
            if channel_id not in wanted:
                self._drain(self._channels.pop(channel_id))

        for channel_id, entry in wanted.items():
            if channel_id not in self._channels:
                self._channels[channel_id] = UploadChannel(channel_id=channel_id, entry_id=entry.id)

        return list(wanted)

    def _drain(self, channel: UploadChannel):
        for upload in channel.active:
            if upload.done:
                log.warning(
                    f"Discarding unconsumed upload {upload.client_name} from removed slot {channel.channel_id}"
                )
            else:
                log.info(f"Cancelling in-flight upload {upload.client_name} for {channel.channel_id}")
            upload.cancelled = True
            upload.data.clear()
        channel.uploads.clear()

    def rekey(self, old_entry_id, new_entry_id) -> str | None:
        """Move a channel when its entry switches from session token to row id."""
        old_id, new_id = channel_id_for(old_entry_id), channel_id_for(new_entry_id)
        if old_id == new_id:
            return new_id
        channel = self._channels.pop(old_id, None)
        if channel is None:
            return None
        channel.channel_id = new_id
        channel.entry_id = new_entry_id
        self._channels[new_id] = channel
        return new_id

    def register_upload(
        self, channel_id: str, client_name: str, client_size: int, stored_photos: int = 0
    ) -> FileUpload:
        channel = self._channels.get(channel_id)
        if channel is None:
            raise UploadRejected(f"Unknown upload slot: {channel_id}")

        extension = PurePosixPath(client_name).suffix.lower()
        if extension not in self.allowed_extensions:
            raise UploadRejected(
                f"Invalid file extension: {extension or '(none)'}. Allowed: {', '.join(self.allowed_extensions)}"
            )
        if client_size <= 0:
            raise UploadRejected(f"Empty file: {client_name}")
        if client_size > self.max_bytes:
            raise UploadRejected(f"File too large: {client_size} bytes (max: {self.max_bytes})")
        if stored_photos + len(channel.active) >= self.max_files:
            raise UploadRejected(f"Too many photos: at most {self.max_files} per entry")

        upload = FileUpload(ref=secrets.token_hex(8), client_name=client_name, client_size=client_size)
        channel.uploads.append(upload)
        channel.signalled = False
        return upload

    def on_progress(self, channel_id: str, ref: str, progress: int, chunk: bytes = b"") -> ProcessFiles | None:
        """Record a progress tick; returns a ProcessFiles signal once per finished batch."""
        channel = self._channels.get(channel_id)
        upload = next((u for u in channel.active if u.ref == ref), None) if channel else None
        if upload is None:
            log.debug(f"Progress for unknown upload {channel_id}/{ref}")
            return None

        if chunk:
            upload.data.extend(chunk)
            if len(upload.data) > self.max_bytes:
                upload.cancelled = True
                upload.data.clear()
                raise UploadRejected(f"File too large: {upload.client_name} exceeded {self.max_bytes} bytes")

        upload.progress = max(upload.progress, min(progress, 100))
        if upload.progress < 100:
            return None

        if not upload.done:
            upload.done = True
            log.info(f"Upload complete for {channel_id}: {upload.client_name}")
        return self._maybe_signal(channel)

    def _maybe_signal(self, channel: UploadChannel) -> ProcessFiles | None:
        if channel.signalled:
            return None
        if not channel.all_done():
            log.info(f"Waiting for other uploads to complete for {channel.channel_id}")
            return None
        channel.signalled = True
        log.info(f"All uploads complete for {channel.channel_id}, processing files")
        return ProcessFiles(entry_id=channel.entry_id, channel_id=channel.channel_id)

    def cancel_upload(self, channel_id: str, ref: str) -> ProcessFiles | None:
        channel = self._channels.get(channel_id)
        if channel is None:
            return None
        for upload in channel.uploads:
            if upload.ref == ref and not upload.cancelled:
                upload.cancelled = True
                upload.data.clear()
        channel.uploads = channel.active
        return self._maybe_signal(channel)

    async def consume_completed_files(self, channel_id: str) -> list[SavedFile | StorageError]:
        """Drain finished uploads into storage. A second call returns []."""
        channel = self._channels.get(channel_id)
        if channel is None:
            return []

        completed = [u for u in channel.active if u.done]
        channel.uploads = [u for u in channel.active if not u.done]

        results: list[SavedFile | StorageError] = []
        for upload in completed:
            stored = await self.storage.save(bytes(upload.data), upload.client_name)
            upload.data.clear()
            if isinstance(stored, StorageError):
                log.error(f"Failed to save {upload.client_name} for {channel_id}: {stored.message}")
                results.append(stored)
                continue
            results.append(
                SavedFile(key=stored.key, url=stored.url, filename=upload.client_name, size=upload.client_size)
            )
        return results
