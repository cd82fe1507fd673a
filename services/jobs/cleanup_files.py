"""Periodic removal of batch uploads that nothing refers to any more.

Photos land under `batch/` as soon as they are uploaded and normally leave
when their entry is promoted or removed. Uploads orphaned by a crash or an
abandoned browser tab are deleted once they are older than
`upload_cleanup_max_age_hours`.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from config.settings import settings
from services.batch import store
from services.storage.base import PhotoStorage, StorageError

log = logging.getLogger(__name__)

BATCH_FOLDER = "batch"


class UploadCleanupJob:
    def __init__(
        self,
        session_factory,
        storage: PhotoStorage,
        in_use=None,
        max_age_hours: int | None = None,
        interval_seconds: float | None = None,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.in_use = in_use or set  # callable returning keys held by live sessions
        self.max_age_hours = max_age_hours or settings.upload_cleanup_max_age_hours
        self.interval_seconds = interval_seconds or settings.upload_cleanup_interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="upload-cleanup")
        log.info(f"Upload cleanup scheduled every {self.interval_seconds}s (max age {self.max_age_hours}h)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                log.exception("Upload cleanup run failed")

    async def run_once(self) -> list[str]:
        """Delete stale unreferenced uploads. Returns the keys removed."""
        cutoff = datetime.now(UTC) - timedelta(hours=self.max_age_hours)
        log.info(f"Starting upload cleanup for files older than {self.max_age_hours} hours")

        listed = await self.storage.list_files(BATCH_FOLDER)
        if isinstance(listed, StorageError):
            log.error(f"Upload cleanup failed: {listed.message}")
            return []

        async with self.session_factory() as session:
            referenced = await store.referenced_image_keys(session)
        referenced |= set(self.in_use())

        removed = []
        for obj in listed:
            if obj.modified_at >= cutoff or obj.key in referenced:
                continue
            if await self.storage.delete(obj.key) is None:
                removed.append(obj.key)

        log.info(f"Upload cleanup removed {len(removed)} of {len(listed)} file(s)")
        return removed
