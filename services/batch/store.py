import logging
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from services.batch.uploads import SavedFile
from services.database import AnalysisStatus, ApprovalStatus, Entry, EntryImage
from services.storage.base import PhotoStorage, content_type_for

log = logging.getLogger(__name__)


async def create_entry(
    session: AsyncSession,
    entry_number: int,
    batch_id: str | None = None,
    files: list[SavedFile] | None = None,
) -> Entry:
    """Create the durable row for an entry, with image rows for its first photos."""
    entry = Entry(
        batch_id=batch_id,
        entry_number=entry_number,
        ai_analysis_status=AnalysisStatus.PENDING,
        approval_status=ApprovalStatus.PENDING,
    )
    session.add(entry)
    await session.flush()  # get entry.id

    for order, saved in enumerate(files or []):
        session.add(_image_row(entry.id, saved, order))

    await session.commit()
    log.info(f"Created batch entry {entry.id} (#{entry_number}) with {len(files or [])} image(s)")
    return entry


def _image_row(entry_id: int, saved: SavedFile, order: int) -> EntryImage:
    return EntryImage(
        batch_entry_id=entry_id,
        s3_key=saved.key,
        original_filename=saved.filename,
        file_size=saved.size,
        content_type=content_type_for(saved.filename),
        upload_order=order,
    )


async def add_images(session: AsyncSession, entry_id: int, files: list[SavedFile]) -> list[EntryImage]:
    count = await session.scalar(
        select(func.count()).select_from(EntryImage).where(EntryImage.batch_entry_id == entry_id)
    )
    images = [_image_row(entry_id, saved, order) for order, saved in enumerate(files, start=count or 0)]
    session.add_all(images)
    await session.commit()
    log.info(f"Added {len(images)} image(s) to entry {entry_id}")
    return images


async def get_entry(session: AsyncSession, entry_id: int) -> Entry | None:
    return await session.get(Entry, entry_id)


async def get_entry_with_images(session: AsyncSession, entry_id: int) -> Entry | None:
    result = await session.execute(
        select(Entry).where(Entry.id == entry_id).options(selectinload(Entry.images))
    )
    return result.scalar_one_or_none()


async def list_entry_images(session: AsyncSession, entry_id: int) -> list[EntryImage]:
    result = await session.execute(
        select(EntryImage).where(EntryImage.batch_entry_id == entry_id).order_by(EntryImage.upload_order)
    )
    return list(result.scalars().all())


async def referenced_image_keys(session: AsyncSession) -> set[str]:
    result = await session.execute(select(EntryImage.s3_key))
    return set(result.scalars().all())


async def list_entries_by_batch(session: AsyncSession, batch_id: str) -> list[Entry]:
    result = await session.execute(
        select(Entry)
        .where(Entry.batch_id == batch_id)
        .options(selectinload(Entry.images))
        .order_by(Entry.entry_number)
    )
    return list(result.scalars().all())


async def update_entry(session: AsyncSession, entry: Entry, **attrs) -> Entry:
    for key, value in attrs.items():
        setattr(entry, key, value)
    await session.commit()
    return entry


async def delete_entry(session: AsyncSession, entry_id: int) -> bool:
    entry = await get_entry_with_images(session, entry_id)
    if entry is None:
        return False
    await session.delete(entry)
    await session.commit()
    log.info(f"Deleted batch entry {entry_id}")
    return True


async def delete_entry_image(session: AsyncSession, image: EntryImage):
    await session.delete(image)
    await session.commit()


async def mark_processing(session: AsyncSession, entry: Entry) -> Entry:
    return await update_entry(session, entry, ai_analysis_status=AnalysisStatus.PROCESSING)


async def submit_for_analysis(session: AsyncSession, entry_id: int, queue) -> bool:
    """Mark the entry processing and hand it to the background job queue.

    Returns False when the entry is gone or has no stored photos.
    """
    entry = await get_entry_with_images(session, entry_id)
    if entry is None:
        log.debug(f"Entry {entry_id} not found, not submitting for analysis")
        return False
    if not entry.images:
        log.warning(f"Entry {entry_id} has no photos, not submitting for analysis")
        return False

    await mark_processing(session, entry)
    queue.enqueue(entry.id)
    log.info(f"Submitted entry {entry_id} for analysis ({len(entry.images)} photo(s))")
    return True


async def update_analysis_results(session: AsyncSession, entry: Entry, ai_results: dict) -> Entry:
    return await update_entry(
        session,
        entry,
        ai_analysis_status=AnalysisStatus.COMPLETE,
        ai_results=ai_results,
        error_message=None,
        analyzed_at=datetime.now(UTC),
    )


async def mark_analysis_failed(session: AsyncSession, entry: Entry, error_message: str | None = None) -> Entry:
    return await update_entry(
        session,
        entry,
        ai_analysis_status=AnalysisStatus.FAILED,
        error_message=error_message,
        analyzed_at=datetime.now(UTC),
    )


async def set_approval_status(session: AsyncSession, entry_id: int, status: ApprovalStatus) -> Entry | None:
    entry = await get_entry(session, entry_id)
    if entry is None:
        return None
    return await update_entry(session, entry, approval_status=status)


async def remove_entry_photo_by_index(
    session: AsyncSession, storage: PhotoStorage, entry_id: int, photo_index: int
) -> bool:
    """Delete one stored photo (file and row). Returns False if there was nothing at that index."""
    images = await list_entry_images(session, entry_id)
    if not 0 <= photo_index < len(images):
        return False

    image = images[photo_index]
    error = await storage.delete(image.s3_key)
    if error:
        log.warning(f"Photo file {image.s3_key} could not be deleted: {error.message}")
    await session.delete(image)

    for order, remaining in enumerate(i for i in images if i.id != image.id):
        remaining.upload_order = order

    if len(images) == 1:
        entry = await get_entry(session, entry_id)
        if entry:
            entry.ai_analysis_status = AnalysisStatus.PENDING
            entry.ai_results = None
            entry.error_message = None

    await session.commit()
    return True


async def remove_all_entry_photos(session: AsyncSession, storage: PhotoStorage, entry_id: int) -> int:
    images = await list_entry_images(session, entry_id)
    for image in images:
        error = await storage.delete(image.s3_key)
        if error:
            log.warning(f"Photo file {image.s3_key} could not be deleted: {error.message}")
        await session.delete(image)

    entry = await get_entry(session, entry_id)
    if entry:
        entry.ai_analysis_status = AnalysisStatus.PENDING
        entry.ai_results = None
        entry.error_message = None

    await session.commit()
    return len(images)


async def get_batch_summary(session: AsyncSession, batch_id: str) -> dict:
    rows = await session.execute(
        select(Entry.ai_analysis_status, Entry.approval_status, func.count())
        .where(Entry.batch_id == batch_id)
        .group_by(Entry.ai_analysis_status, Entry.approval_status)
    )

    summary = {"total": 0, **{s.value: 0 for s in AnalysisStatus}, "approved": 0, "rejected": 0}
    for analysis_status, approval_status, count in rows:
        summary["total"] += count
        summary[analysis_status.value] += count
        if approval_status == ApprovalStatus.APPROVED:
            summary["approved"] += count
        elif approval_status == ApprovalStatus.REJECTED:
            summary["rejected"] += count
    return summary
