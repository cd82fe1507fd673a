"""Debounce, dispatch and result handling for batch entry analysis.

Each entry with fresh photos gets a countdown task that ticks once per
second; when it reaches zero the entry is dispatched. Durable entries go
through the background job queue and their results come back over pub/sub,
session-only entries are analysed in-process. Methods ending in `_locked`
expect the caller to hold `state.lock`.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from config.settings import settings
from services.batch import entries as em
from services.batch import store
from services.batch.models import BatchEntry, CountdownHandle, normalize_entry_id
from services.batch.pubsub import AnalysisUpdate
from services.database import AnalysisStatus
from services.storage.base import PhotoStorage, StorageError
from services.vision.analyzer import MedicineImageAnalyzer, describe_analysis_error

log = logging.getLogger(__name__)


@dataclass
class SessionState:
    entries: list[BatchEntry] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass
class NothingToAnalyze:
    message: str = "No entries with photos to analyze"


@dataclass
class AnalyzeAllResult:
    outcomes: dict = field(default_factory=dict)  # entry id -> AnalysisStatus | None

    @property
    def dispatched(self) -> int:
        return sum(1 for status in self.outcomes.values() if status is not None)

    @property
    def failed(self) -> int:
        return sum(1 for status in self.outcomes.values() if status == AnalysisStatus.FAILED)


class AnalysisCoordinator:
    def __init__(
        self,
        state: SessionState,
        analyzer: MedicineImageAnalyzer,
        storage: PhotoStorage,
        session_factory=None,
        job_queue=None,
        debounce_seconds: int | None = None,
        tick_seconds: float = 1.0,
        concurrency: int | None = None,
    ):
        self.state = state
        self.analyzer = analyzer
        self.storage = storage
        self.session_factory = session_factory
        self.job_queue = job_queue
        self.debounce_seconds = debounce_seconds or settings.analysis_debounce_seconds
        self.tick_seconds = tick_seconds
        self.concurrency = concurrency or settings.analyze_all_concurrency

    # --- Countdown ---

    async def start_debounce(self, entry_id) -> bool:
        async with self.state.lock:
            return self.start_debounce_locked(entry_id)

    def start_debounce_locked(self, entry_id) -> bool:
        """(Re)start the countdown for an entry. Any existing timer is cancelled first."""
        entry = em.find_entry(self.state.entries, entry_id)
        if entry is None:
            log.debug(f"No entry {entry_id} to start a countdown for")
            return False

        if entry.timer:
            entry.timer.cancel()
        task = asyncio.create_task(self._countdown(entry.id), name=f"countdown-{entry.id}")
        self.state.entries = em.update_countdown(
            self.state.entries, entry.id, self.debounce_seconds, CountdownHandle(task)
        )
        log.info(f"Analysis countdown started for entry {entry.id} ({self.debounce_seconds}s)")
        return True

    async def cancel_countdown(self, entry_id) -> bool:
        async with self.state.lock:
            return self.cancel_countdown_locked(entry_id)

    def cancel_countdown_locked(self, entry_id) -> bool:
        entry = em.find_entry(self.state.entries, entry_id)
        if entry is None:
            return False
        if entry.timer:
            entry.timer.cancel()
        self.state.entries = em.clear_countdown(self.state.entries, entry.id)
        return True

    async def _countdown(self, entry_id):
        me = asyncio.current_task()
        while True:
            await asyncio.sleep(self.tick_seconds)
            async with self.state.lock:
                entry = em.find_entry(self.state.entries, entry_id)
                # Superseded or removed while sleeping.
                if entry is None or entry.timer is None or entry.timer.task is not me:
                    return
                remaining = entry.countdown - 1
                if remaining > 0:
                    self.state.entries = em.update_countdown(self.state.entries, entry_id, remaining, entry.timer)
                    continue
                self.state.entries = em.clear_countdown(self.state.entries, entry_id)
            break

        log.info(f"Countdown finished for entry {entry_id}, dispatching analysis")
        await self._dispatch(entry_id)

    # --- Dispatch ---

    async def analyze_now(self, entry_id) -> bool:
        async with self.state.lock:
            entry = em.find_entry(self.state.entries, entry_id)
            if entry is None or not entry.has_photos:
                return False
            if entry.analysis_status == AnalysisStatus.PROCESSING:
                log.info(f"Entry {entry.id} is already being analyzed")
                return False
            self.cancel_countdown_locked(entry.id)
        await self._dispatch(entry_id)
        return True

    async def retry(self, entry_id) -> bool:
        """Failed entries go back through the debounce; anything else is left alone."""
        async with self.state.lock:
            entry = em.find_entry(self.state.entries, entry_id)
            if entry is None or entry.analysis_status != AnalysisStatus.FAILED:
                log.info(f"Retry ignored for entry {entry_id}: not in failed state")
                return False
            self.state.entries = em.update_analysis_status(self.state.entries, entry.id, AnalysisStatus.PENDING)
            return self.start_debounce_locked(entry.id)

    async def analyze_all(self) -> AnalyzeAllResult | NothingToAnalyze:
        async with self.state.lock:
            candidates = em.ready_for_analysis(self.state.entries)
            if not candidates:
                return NothingToAnalyze()
            for entry in candidates:
                self.cancel_countdown_locked(entry.id)

        log.info(f"Analyzing {len(candidates)} entries (at most {self.concurrency} at a time)")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(entry_id):
            async with semaphore:
                return await self._dispatch(entry_id)

        statuses = await asyncio.gather(*(bounded(e.id) for e in candidates))
        return AnalyzeAllResult(outcomes={e.id: s for e, s in zip(candidates, statuses)})

    async def _dispatch(self, entry_id) -> AnalysisStatus | None:
        """Returns the status the entry ended up in, or None if there was nothing to do."""
        async with self.state.lock:
            entry = em.find_entry(self.state.entries, entry_id)
            if entry is None or not entry.has_photos:
                log.debug(f"Nothing to dispatch for entry {entry_id}")
                return None
            if entry.analysis_status == AnalysisStatus.PROCESSING:
                log.info(f"Entry {entry.id} is already being analyzed, not dispatching again")
                return None
            self.state.entries = em.update_analysis_status(
                self.state.entries, entry.id, AnalysisStatus.PROCESSING
            )

        if entry.is_durable and self.job_queue is not None and self.session_factory is not None:
            async with self.session_factory() as session:
                if await store.submit_for_analysis(session, entry.id, self.job_queue):
                    return AnalysisStatus.PROCESSING
            log.warning(f"Entry {entry.id} could not be queued, analyzing in-process")

        return await self._analyze_in_process(entry)

    async def _analyze_in_process(self, entry: BatchEntry) -> AnalysisStatus | None:
        try:
            photos = []
            for photo in entry.photos:
                data = await self.storage.read(photo.key)
                if isinstance(data, StorageError):
                    raise FileNotFoundError(data.message)
                photos.append((photo.filename, data))

            if len(photos) == 1:
                result = await self.analyzer.analyze_medicine_photo(*photos[0])
            else:
                result = await self.analyzer.analyze_medicine_photos(photos)
        except FileNotFoundError as e:
            return await self._apply_failure(entry.id, str(e))
        except Exception as e:
            log.error(f"Analysis failed for entry {entry.id}: {e}")
            return await self._apply_failure(entry.id, describe_analysis_error(e))

        async with self.state.lock:
            current = em.find_entry(self.state.entries, entry.id)
            if current is None or current.analysis_status != AnalysisStatus.PROCESSING:
                log.debug(f"Dropping analysis result for entry {entry.id}: no longer waiting for it")
                return None
            self.state.entries = em.update_analysis_status(
                self.state.entries, entry.id, AnalysisStatus.COMPLETE, result
            )
        log.info(f"Analysis complete for entry {entry.id}")
        return AnalysisStatus.COMPLETE

    async def _apply_failure(self, entry_id, message: str) -> AnalysisStatus | None:
        async with self.state.lock:
            current = em.find_entry(self.state.entries, entry_id)
            if current is None or current.analysis_status != AnalysisStatus.PROCESSING:
                log.debug(f"Dropping analysis failure for entry {entry_id}: no longer waiting for it")
                return None
            self.fail_locked(entry_id, message)
        return AnalysisStatus.FAILED

    def fail_locked(self, entry_id, message: str | None):
        self.cancel_countdown_locked(entry_id)
        self.state.entries = em.update_analysis_status(self.state.entries, entry_id, AnalysisStatus.FAILED)
        self.state.entries = em.add_validation_error(
            self.state.entries, entry_id, f"AI analysis failed: {message or 'unknown error'}"
        )

    # --- Background results ---

    async def handle_analysis_update(self, update: AnalysisUpdate) -> bool:
        async with self.state.lock:
            return self.handle_analysis_update_locked(update)

    def handle_analysis_update_locked(self, update: AnalysisUpdate) -> bool:
        """Fold a pub/sub event into the entry list. Unknown ids are ignored."""
        entry_id = normalize_entry_id(update.entry_id)
        entry = em.find_entry(self.state.entries, entry_id)
        if entry is None:
            log.debug(f"Ignoring {update.status} update for unknown entry {entry_id}")
            return False

        if update.status in (AnalysisStatus.COMPLETE, AnalysisStatus.FAILED) and (
            entry.analysis_status != AnalysisStatus.PROCESSING
        ):
            # Stale: the entry moved on after the job was queued.
            log.debug(f"Ignoring late {update.status} update for entry {entry_id} ({entry.analysis_status})")
            return False

        match update.status:
            case AnalysisStatus.PROCESSING:
                self.cancel_countdown_locked(entry_id)
                self.state.entries = em.update_analysis_status(
                    self.state.entries, entry_id, AnalysisStatus.PROCESSING
                )
            case AnalysisStatus.COMPLETE:
                self.cancel_countdown_locked(entry_id)
                self.state.entries = em.update_analysis_status(
                    self.state.entries, entry_id, AnalysisStatus.COMPLETE, update.data
                )
                log.info(f"Applied analysis result for entry {entry_id}")
            case AnalysisStatus.FAILED:
                self.fail_locked(entry_id, (update.data or {}).get("error"))
            case _:
                log.debug(f"Unhandled analysis status {update.status} for entry {entry_id}")
                return False
        return True

