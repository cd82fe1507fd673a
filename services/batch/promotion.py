"""Turn approved batch entries into permanent medicine records.

Order matters: photos are copied first, the medicine is only created when
every copy succeeded, copies are deleted again if the create fails, and the
batch photos are only removed once the medicine exists.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import PurePosixPath

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.batch import entries as em
from services.batch import store
from services.batch.models import BatchEntry, PhotoRef
from services.database import AnalysisStatus, ApprovalStatus, Medicine
from services.medicines import MedicineValidationError, create_medicine
from services.storage.base import PhotoStorage, StorageError

log = logging.getLogger(__name__)

MEDICINE_FOLDER = "medicines"


class PromotionError(Exception):
    pass


@dataclass
class SaveOutcome:
    entry_id: int | str
    medicine_id: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SaveReport:
    results: list[SaveOutcome] = field(default_factory=list)

    @property
    def saved(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def saved_ids(self) -> list:
        return [r.entry_id for r in self.results if r.ok]


def validate_entry_for_saving(entry: BatchEntry) -> str | None:
    if entry.approval_status != ApprovalStatus.APPROVED:
        return "Entry must be approved before saving"
    if entry.analysis_status != AnalysisStatus.COMPLETE:
        return "Entry analysis must be complete"
    if not entry.analysis_result:
        return "Entry must have AI analysis results"
    return None


def medicine_photo_key(entry_id, index: int, filename: str) -> str:
    timestamp = int(datetime.now(UTC).timestamp())
    extension = PurePosixPath(filename).suffix.lower()
    return f"{MEDICINE_FOLDER}/medicine_{entry_id}_{timestamp}_{index}{extension}"


async def copy_photos_for_medicine(
    storage: PhotoStorage, entry_id, photos: list[PhotoRef]
) -> list[str] | StorageError:
    """Copy every photo or none: partial copies are deleted before returning the error."""
    copied = []
    for index, photo in enumerate(photos):
        result = await storage.copy(photo.key, medicine_photo_key(entry_id, index, photo.filename))
        if isinstance(result, StorageError):
            log.error(f"Failed to copy {photo.key} for entry {entry_id}: {result.message}")
            await _delete_keys(storage, copied)
            return StorageError(key=photo.key, message=f"Failed to copy one or more photos: {result.message}")
        copied.append(result.key)
    return copied


async def _delete_keys(storage: PhotoStorage, keys: list[str]):
    for key in keys:
        error = await storage.delete(key)
        if error:
            log.warning(f"Could not delete {key}: {error.message}")


async def save_entry_as_medicine(session: AsyncSession, storage: PhotoStorage, entry: BatchEntry) -> Medicine:
    """Promote one entry. Raises PromotionError with nothing left behind on failure."""
    log.info(f"Saving entry {entry.id} as medicine with {len(entry.photos)} photo(s)")

    copied = await copy_photos_for_medicine(storage, entry.id, list(entry.photos))
    if isinstance(copied, StorageError):
        raise PromotionError(copied.message)

    attrs = {k: v for k, v in entry.analysis_result.items() if k != "photo_paths"}
    attrs["photo_paths"] = copied
    try:
        medicine = await create_medicine(session, attrs)
    except MedicineValidationError as e:
        log.error(f"Failed to create medicine for entry {entry.id}: {e}")
        await _delete_keys(storage, copied)
        raise PromotionError(str(e)) from e
    except SQLAlchemyError as e:
        log.error(f"Database error creating medicine for entry {entry.id}: {e}")
        await session.rollback()
        await _delete_keys(storage, copied)
        raise PromotionError("Failed to save medicine") from e

    log.info(f"Created medicine {medicine.id} from entry {entry.id}, cleaning up batch photos")
    await _delete_keys(storage, [p.key for p in entry.photos])
    if entry.is_durable:
        # Detached so a rollback below cannot expire the committed medicine.
        session.expunge(medicine)
        try:
            await store.delete_entry(session, entry.id)
        except SQLAlchemyError as e:
            # The medicine is committed; a leftover entry row is only clutter.
            log.warning(f"Saved entry {entry.id} but could not delete its batch row: {e}")
            await session.rollback()
    return medicine


async def save_entries(session: AsyncSession, storage: PhotoStorage, entries: list[BatchEntry]) -> SaveReport:
    report = SaveReport()
    for entry in entries:
        problem = validate_entry_for_saving(entry)
        if problem:
            report.results.append(SaveOutcome(entry_id=entry.id, error=problem))
            continue
        try:
            medicine = await save_entry_as_medicine(session, storage, entry)
        except PromotionError as e:
            report.results.append(SaveOutcome(entry_id=entry.id, error=str(e)))
            continue
        report.results.append(SaveOutcome(entry_id=entry.id, medicine_id=medicine.id))

    log.info(f"Saved {report.saved} medicine(s), {report.failed} failed")
    return report


async def save_approved_medicines(session: AsyncSession, storage: PhotoStorage, entries: list[BatchEntry]) -> SaveReport:
    return await save_entries(session, storage, em.approved_entries(entries))
