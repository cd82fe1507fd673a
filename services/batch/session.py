import asyncio
import logging
import secrets
from dataclasses import replace

from sqlalchemy.exc import SQLAlchemyError

from config.settings import settings
from services.batch import entries as em
from services.batch import promotion, store
from services.batch.analysis import AnalysisCoordinator, AnalyzeAllResult, NothingToAnalyze, SessionState
from services.batch.models import BatchEntry, PhotoRef
from services.batch.pubsub import BATCH_PROCESSING_TOPIC, PubSub
from services.batch.uploads import FileUpload, SavedFile, UploadCoordinator, UploadRejected, channel_id_for
from services.database import AnalysisStatus, ApprovalStatus
from services.storage.base import PhotoStorage, StorageError
from services.vision.analyzer import MedicineImageAnalyzer

log = logging.getLogger(__name__)


class BatchSession:
    """One user's batch of medicine entries.

    Every change to the entry list happens under `state.lock`; background
    analysis results arrive through a pub/sub listener and are folded in the
    same way.
    """

    def __init__(
        self,
        storage: PhotoStorage,
        analyzer: MedicineImageAnalyzer,
        session_factory,
        job_queue=None,
        pubsub: PubSub | None = None,
        batch_id: str | None = None,
        initial_entries: int | None = None,
        debounce_seconds: int | None = None,
        tick_seconds: float = 1.0,
    ):
        self.batch_id = batch_id or secrets.token_hex(8)
        self.storage = storage
        self.session_factory = session_factory
        self.pubsub = pubsub
        count = settings.initial_batch_entries if initial_entries is None else initial_entries
        self.state = SessionState(entries=em.create_empty_entries(count))
        self.uploads = UploadCoordinator(storage)
        self.analysis = AnalysisCoordinator(
            self.state,
            analyzer,
            storage,
            session_factory=session_factory,
            job_queue=job_queue,
            debounce_seconds=debounce_seconds,
            tick_seconds=tick_seconds,
        )
        self.uploads.configure_upload_slots(self.state.entries)
        self._subscription = None
        self._listener: asyncio.Task | None = None

    @property
    def entries(self) -> list[BatchEntry]:
        return self.state.entries

    # --- Lifecycle ---

    def start(self):
        if self.pubsub is None or self._listener is not None:
            return
        self._subscription = self.pubsub.subscribe(BATCH_PROCESSING_TOPIC)
        self._listener = asyncio.create_task(self._listen(), name=f"batch-{self.batch_id}-listener")

    async def _listen(self):
        async for update in self._subscription:
            try:
                await self.analysis.handle_analysis_update(update)
            except Exception:
                log.exception(f"Batch {self.batch_id} failed to apply update for entry {update.entry_id}")

    async def close(self):
        if self._listener:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        if self._subscription:
            self._subscription.close()
            self._subscription = None
        async with self.state.lock:
            for entry in self.state.entries:
                if entry.timer:
                    entry.timer.cancel()

    async def _db(self, op, *args):
        """Run a store operation in its own session. Database errors are logged, not raised."""
        try:
            async with self.session_factory() as db:
                return await op(db, *args)
        except SQLAlchemyError as e:
            log.error(f"Batch {self.batch_id}: {op.__name__} failed: {e}")
            return None

    # --- Entries ---

    async def add_entries(self, count: int = 1) -> list[BatchEntry]:
        async with self.state.lock:
            start = max((e.number for e in self.state.entries), default=0)
            new = em.create_empty_entries(count, start_number=start)
            self.state.entries = self.state.entries + new
            self.uploads.configure_upload_slots(self.state.entries)
        log.info(f"Batch {self.batch_id}: added {count} entr{'y' if count == 1 else 'ies'}")
        return new

    async def remove_entry(self, entry_id) -> bool:
        async with self.state.lock:
            entry = em.find_entry(self.state.entries, entry_id)
            if entry is None:
                return False
            if entry.timer:
                entry.timer.cancel()
            await self._discard_stored(entry)
            self.state.entries = em.remove_by_id(self.state.entries, entry.id)
            self.uploads.configure_upload_slots(self.state.entries)
        log.info(f"Batch {self.batch_id}: removed entry {entry.id}")
        return True

    async def _discard_stored(self, entry: BatchEntry):
        if entry.is_durable:
            await self._db(store.remove_all_entry_photos, self.storage, entry.id)
            await self._db(store.delete_entry, entry.id)
            return
        for photo in entry.photos:
            error = await self.storage.delete(photo.key)
            if error:
                log.warning(f"Could not delete {photo.key}: {error.message}")

    # --- Uploads ---

    async def register_upload(self, entry_id, client_name: str, client_size: int) -> FileUpload:
        async with self.state.lock:
            entry = em.find_entry(self.state.entries, entry_id)
            if entry is None:
                raise UploadRejected(f"Unknown entry: {entry_id}")
            return self.uploads.register_upload(
                channel_id_for(entry.id), client_name, client_size, stored_photos=len(entry.photos)
            )

    async def upload_progress(self, entry_id, ref: str, progress: int, chunk: bytes = b"") -> list[PhotoRef]:
        async with self.state.lock:
            signal = self.uploads.on_progress(channel_id_for(entry_id), ref, progress, chunk)
            if signal is None:
                return []
            return await self._process_uploaded_files_locked(signal.entry_id)

    async def upload_files(self, entry_id, files: list[tuple[str, bytes]]) -> list[PhotoRef]:
        """Whole-file uploads: register all, then complete all, so they are consumed together."""
        async with self.state.lock:
            entry = em.find_entry(self.state.entries, entry_id)
            if entry is None:
                raise UploadRejected(f"Unknown entry: {entry_id}")
            channel_id = channel_id_for(entry.id)

            registered = []
            try:
                for name, data in files:
                    registered.append(
                        self.uploads.register_upload(channel_id, name, len(data), stored_photos=len(entry.photos))
                    )
            except UploadRejected:
                for upload in registered:
                    self.uploads.cancel_upload(channel_id, upload.ref)
                raise

            signal = None
            for upload, (_, data) in zip(registered, files):
                signal = self.uploads.on_progress(channel_id, upload.ref, 100, data) or signal
            if signal is None:
                return []
            return await self._process_uploaded_files_locked(signal.entry_id)

    async def process_uploaded_files(self, entry_id) -> list[PhotoRef]:
        async with self.state.lock:
            return await self._process_uploaded_files_locked(entry_id)

    async def _process_uploaded_files_locked(self, entry_id) -> list[PhotoRef]:
        entry = em.find_entry(self.state.entries, entry_id)
        if entry is None:
            log.debug(f"Uploaded files for unknown entry {entry_id}")
            return []

        results = await self.uploads.consume_completed_files(channel_id_for(entry.id))
        saved = [r for r in results if isinstance(r, SavedFile)]
        for error in (r for r in results if isinstance(r, StorageError)):
            self.state.entries = em.add_validation_error(
                self.state.entries, entry.id, f"Failed to save photo: {error.message}"
            )
        if not saved:
            return []

        new_id = await self._persist_photos(entry, saved)
        photos = [PhotoRef(key=s.key, url=s.url, filename=s.filename, size=s.size) for s in saved]

        updated = replace(entry, id=new_id, photos=entry.photos + tuple(photos))
        self.state.entries = em.replace_by_original_id(self.state.entries, entry.id, updated)
        if new_id != entry.id:
            self.uploads.rekey(entry.id, new_id)
            log.info(f"Entry #{entry.number} is now durable entry {new_id}")
        # Photos added mid-analysis wait for the running call instead of restarting the countdown.
        if updated.analysis_status != AnalysisStatus.PROCESSING:
            self.state.entries = em.update_analysis_status(self.state.entries, new_id, AnalysisStatus.PENDING)
            self.analysis.start_debounce_locked(new_id)

        log.info(f"Entry {new_id} received {len(photos)} photo(s), now has {len(updated.photos)}")
        return photos

    async def _persist_photos(self, entry: BatchEntry, saved: list[SavedFile]):
        """Store image rows; the first photos of an entry create its durable row."""
        if entry.is_durable:
            await self._db(store.add_images, entry.id, saved)
            return entry.id
        row = await self._db(store.create_entry, entry.number, self.batch_id, saved)
        if row is None:
            # Stays session-only and is analysed in-process.
            return entry.id
        return row.id

    async def remove_photo(self, entry_id, photo_index: int) -> bool:
        async with self.state.lock:
            entry = em.find_entry(self.state.entries, entry_id)
            if entry is None or not 0 <= photo_index < len(entry.photos):
                return False
            if entry.timer:
                entry.timer.cancel()

            if entry.is_durable:
                await self._db(store.remove_entry_photo_by_index, self.storage, entry.id, photo_index)
            else:
                error = await self.storage.delete(entry.photos[photo_index].key)
                if error:
                    log.warning(f"Could not delete {error.key}: {error.message}")

            self.state.entries = em.remove_photo_at_index(self.state.entries, entry.id, photo_index)
        log.info(f"Removed photo {photo_index} from entry {entry.id}")
        return True

    async def remove_all_photos(self, entry_id) -> bool:
        async with self.state.lock:
            entry = em.find_entry(self.state.entries, entry_id)
            if entry is None:
                return False
            if entry.timer:
                entry.timer.cancel()
            if entry.is_durable:
                await self._db(store.remove_all_entry_photos, self.storage, entry.id)
            else:
                for photo in entry.photos:
                    await self.storage.delete(photo.key)
            self.state.entries = em.remove_all_photos(self.state.entries, entry.id)
        return True

    # --- Analysis ---

    async def analyze_now(self, entry_id) -> bool:
        return await self.analysis.analyze_now(entry_id)

    async def retry_analysis(self, entry_id) -> bool:
        return await self.analysis.retry(entry_id)

    async def analyze_all(self) -> AnalyzeAllResult | NothingToAnalyze:
        return await self.analysis.analyze_all()

    async def cancel_countdown(self, entry_id) -> bool:
        return await self.analysis.cancel_countdown(entry_id)

    # --- Review ---

    async def _set_approval(self, entry_id, status: ApprovalStatus) -> bool:
        async with self.state.lock:
            before = em.find_entry(self.state.entries, entry_id)
            self.state.entries = em.update_approval_status(self.state.entries, entry_id, status)
            after = em.find_entry(self.state.entries, entry_id)
            changed = before is not None and after.approval_status == status
            if changed and after.is_durable:
                await self._db(store.set_approval_status, after.id, status)
        return changed

    async def approve(self, entry_id) -> bool:
        return await self._set_approval(entry_id, ApprovalStatus.APPROVED)

    async def reject(self, entry_id) -> bool:
        return await self._set_approval(entry_id, ApprovalStatus.REJECTED)

    async def approve_all(self) -> int:
        async with self.state.lock:
            to_approve = em.pending_review(self.state.entries)
            self.state.entries = em.approve_all_complete(self.state.entries)
            for entry in to_approve:
                if entry.is_durable:
                    await self._db(store.set_approval_status, entry.id, ApprovalStatus.APPROVED)
        log.info(f"Batch {self.batch_id}: approved {len(to_approve)} entries")
        return len(to_approve)

    async def edit(self, entry_id, medicine_params: dict) -> bool:
        """Replace the extracted data with the user's edits and approve the entry."""
        async with self.state.lock:
            before = em.find_entry(self.state.entries, entry_id)
            self.state.entries = em.update_medicine_data(self.state.entries, entry_id, medicine_params)
            after = em.find_entry(self.state.entries, entry_id)
            if after is None or after == before:
                return False
            if after.is_durable:
                await self._db(self._store_edit, after.id, after.analysis_result)
        return True

    @staticmethod
    async def _store_edit(db, entry_id: int, ai_results: dict):
        entry = await store.get_entry(db, entry_id)
        if entry:
            await store.update_entry(db, entry, ai_results=ai_results, approval_status=ApprovalStatus.APPROVED)

    async def clear_rejected(self) -> int:
        async with self.state.lock:
            rejected = [e for e in self.state.entries if e.approval_status == ApprovalStatus.REJECTED]
            for entry in rejected:
                if entry.timer:
                    entry.timer.cancel()
                await self._discard_stored(entry)
            self.state.entries = em.clear_rejected(self.state.entries)
            self.uploads.configure_upload_slots(self.state.entries)
        log.info(f"Batch {self.batch_id}: cleared {len(rejected)} rejected entries")
        return len(rejected)

    # --- Saving ---

    async def save_approved(self) -> promotion.SaveReport:
        async with self.state.lock:
            return await self._save_locked(em.approved_entries(self.state.entries))

    async def save_single(self, entry_id) -> promotion.SaveReport:
        async with self.state.lock:
            entry = em.find_entry(self.state.entries, entry_id)
            if entry is None:
                return promotion.SaveReport(results=[promotion.SaveOutcome(entry_id=entry_id, error="Entry not found")])
            return await self._save_locked([entry])

    async def _save_locked(self, entries: list[BatchEntry]) -> promotion.SaveReport:
        if not entries:
            return promotion.SaveReport()
        try:
            async with self.session_factory() as db:
                report = await promotion.save_entries(db, self.storage, entries)
        except SQLAlchemyError as e:
            log.error(f"Batch {self.batch_id}: saving medicines failed: {e}")
            return promotion.SaveReport(
                results=[promotion.SaveOutcome(entry_id=entry.id, error="Failed to save medicine") for entry in entries]
            )

        for entry_id in report.saved_ids:
            entry = em.find_entry(self.state.entries, entry_id)
            if entry and entry.timer:
                entry.timer.cancel()
            self.state.entries = em.remove_by_id(self.state.entries, entry_id)
        for outcome in report.results:
            if not outcome.ok:
                self.state.entries = em.add_validation_error(
                    self.state.entries, outcome.entry_id, f"Failed to save: {outcome.error}"
                )
        self.uploads.configure_upload_slots(self.state.entries)
        return report

    # --- Views ---

    def stats(self) -> dict:
        return {**em.batch_stats(self.state.entries), "progress": em.analysis_progress(self.state.entries)}

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "entries": [e.to_dict() for e in self.state.entries],
            "stats": self.stats(),
        }
