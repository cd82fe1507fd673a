"""Background analysis of durable batch entries.

Jobs are entry ids pushed onto an asyncio queue and processed by a small pool
of worker tasks. Progress is reported on the `batch_processing` topic so
every batch session can fold the result into its own entry list.
"""

import asyncio
import logging
from dataclasses import dataclass

from config.settings import settings
from services.batch import store
from services.batch.pubsub import BATCH_PROCESSING_TOPIC, AnalysisUpdate, PubSub
from services.database import AnalysisStatus
from services.storage.base import PhotoStorage, StorageError
from services.vision.analyzer import (
    MedicineImageAnalyzer,
    MedicineNotIdentified,
    VisionAnalysisError,
    describe_analysis_error,
)

log = logging.getLogger(__name__)

RETRY_DELAY_S = 2.0


class NoPhotos(VisionAnalysisError):
    pass


@dataclass
class AnalysisJob:
    entry_id: int
    attempts: int = 0


class AnalysisJobQueue:
    def __init__(
        self,
        session_factory,
        storage: PhotoStorage,
        analyzer: MedicineImageAnalyzer,
        pubsub: PubSub,
        workers: int | None = None,
        max_attempts: int | None = None,
        retry_delay: float = RETRY_DELAY_S,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.analyzer = analyzer
        self.pubsub = pubsub
        self.worker_count = workers or settings.analysis_workers
        self.max_attempts = max_attempts or settings.analysis_job_max_attempts
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue[AnalysisJob] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._retries: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    def start(self):
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"analysis-worker-{n}") for n in range(self.worker_count)
        ]
        log.info(f"Started {self.worker_count} analysis worker(s)")

    async def stop(self):
        tasks = [*self._workers, *self._retries]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._retries.clear()
        log.info("Analysis workers stopped")

    def enqueue(self, entry_id: int) -> AnalysisJob:
        job = AnalysisJob(entry_id=entry_id)
        self._queue.put_nowait(job)
        log.info(f"Queued analysis job for entry {entry_id}")
        return job

    async def join(self):
        """Wait until every queued job, including retries still in their delay, has been processed."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*self._retries, return_exceptions=True)

    def pending_count(self) -> int:
        return self._queue.qsize() + len(self._retries)

    async def _worker(self, n: int):
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            except Exception:
                log.exception(f"Worker {n} crashed on entry {job.entry_id}")
            finally:
                self._queue.task_done()

    async def process(self, job: AnalysisJob) -> bool:
        """Run one attempt. Returns True once the entry is complete."""
        job.attempts += 1
        log.info(f"Starting analysis for entry {job.entry_id} (attempt {job.attempts}/{self.max_attempts})")

        async with self.session_factory() as session:
            entry = await store.get_entry_with_images(session, job.entry_id)
            if entry is None:
                log.error(f"Entry {job.entry_id} not found, dropping analysis job")
                return False

            self._broadcast(job.entry_id, AnalysisStatus.PROCESSING)
            await store.mark_processing(session, entry)

            try:
                results = await self._analyze(entry.images)
            except Exception as e:
                return await self._handle_failure(session, entry, job, e)

            await store.update_analysis_results(session, entry, results)

        log.info(f"Successfully analyzed entry {job.entry_id}")
        self._broadcast(job.entry_id, AnalysisStatus.COMPLETE, results)
        return True

    async def _analyze(self, images) -> dict:
        if not images:
            raise NoPhotos("No photo uploaded")

        photos = []
        for image in images:
            data = await self.storage.read(image.s3_key)
            if isinstance(data, StorageError):
                raise VisionAnalysisError(f"File not found: {image.s3_key}")
            photos.append((image.original_filename, data))

        if len(photos) == 1:
            return await self.analyzer.analyze_medicine_photo(*photos[0])
        return await self.analyzer.analyze_medicine_photos(photos)

    async def _handle_failure(self, session, entry, job: AnalysisJob, error: Exception) -> bool:
        message = describe_analysis_error(error)
        permanent = isinstance(error, (MedicineNotIdentified, NoPhotos))

        if not permanent and job.attempts < self.max_attempts:
            log.warning(f"Analysis attempt {job.attempts} failed for entry {job.entry_id}: {message}; retrying")
            self._schedule_retry(job)
            return False

        log.error(f"Analysis failed for entry {job.entry_id}: {message}")
        await store.mark_analysis_failed(session, entry, message)
        self._broadcast(job.entry_id, AnalysisStatus.FAILED, {"error": message})
        return False

    def _schedule_retry(self, job: AnalysisJob):
        task = asyncio.create_task(self._requeue_later(job), name=f"analysis-retry-{job.entry_id}")
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _requeue_later(self, job: AnalysisJob):
        await asyncio.sleep(self.retry_delay)
        self._queue.put_nowait(job)

    def _broadcast(self, entry_id: int, status: AnalysisStatus, data: dict | None = None):
        self.pubsub.broadcast(BATCH_PROCESSING_TOPIC, AnalysisUpdate(entry_id=entry_id, status=status, data=data or {}))
