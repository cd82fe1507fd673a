"""Pure transformations over a session's list of batch entries.

Every function returns a new list and never raises for an unknown id: UI
events and background completions race, so a missing entry is a no-op.
"""

from dataclasses import replace
from typing import Callable

from services.batch.models import BatchEntry, EntryId, PhotoRef, new_entry_token, normalize_entry_id
from services.database import AnalysisStatus, ApprovalStatus

Entries = list[BatchEntry]


def create_empty_entries(count: int, start_number: int = 0) -> Entries:
    return [BatchEntry(id=new_entry_token(), number=n) for n in range(start_number + 1, start_number + count + 1)]


def _update(entries: Entries, entry_id, fn: Callable[[BatchEntry], BatchEntry]) -> Entries:
    target = normalize_entry_id(entry_id)
    return [fn(e) if normalize_entry_id(e.id) == target else e for e in entries]


def find_entry(entries: Entries, entry_id) -> BatchEntry | None:
    target = normalize_entry_id(entry_id)
    return next((e for e in entries if normalize_entry_id(e.id) == target), None)


def find_entry_by_number(entries: Entries, number: int) -> BatchEntry | None:
    return next((e for e in entries if e.number == number), None)


def replace_by_id(entries: Entries, entry_id, updated: BatchEntry) -> Entries:
    return _update(entries, entry_id, lambda _: updated)


def replace_by_original_id(entries: Entries, original_id: EntryId, updated: BatchEntry) -> Entries:
    """Replace the entry whose id was `original_id`, e.g. a token that just became a row id."""
    return replace_by_id(entries, original_id, updated)


def remove_by_id(entries: Entries, entry_id) -> Entries:
    target = normalize_entry_id(entry_id)
    return [e for e in entries if normalize_entry_id(e.id) != target]


def update_approval_status(entries: Entries, entry_id, status: ApprovalStatus) -> Entries:
    """Approval is only granted to completed analyses; otherwise the entry is left as is."""

    def apply(entry: BatchEntry) -> BatchEntry:
        if status == ApprovalStatus.APPROVED and entry.analysis_status != AnalysisStatus.COMPLETE:
            return entry
        return replace(entry, approval_status=status)

    return _update(entries, entry_id, apply)


def update_analysis_status(
    entries: Entries, entry_id, status: AnalysisStatus, result: dict | None = None
) -> Entries:
    def apply(entry: BatchEntry) -> BatchEntry:
        effective = result if result is not None else entry.analysis_result
        if status == AnalysisStatus.COMPLETE and not effective:
            return entry
        approval = entry.approval_status
        if status != AnalysisStatus.COMPLETE and approval == ApprovalStatus.APPROVED:
            approval = ApprovalStatus.PENDING
        if result is not None:
            return replace(entry, analysis_status=status, analysis_result=result, approval_status=approval)
        return replace(entry, analysis_status=status, approval_status=approval)

    return _update(entries, entry_id, apply)


def append_photos(entries: Entries, entry_id, photos: list[PhotoRef]) -> Entries:
    return _update(entries, entry_id, lambda e: replace(e, photos=e.photos + tuple(photos)))


def _without_photo(entry: BatchEntry, index: int) -> BatchEntry:
    if not 0 <= index < len(entry.photos):
        return entry
    photos = entry.photos[:index] + entry.photos[index + 1 :]
    if photos:
        return replace(entry, photos=photos, countdown=0, timer=None)
    return replace(
        entry,
        photos=(),
        analysis_status=AnalysisStatus.PENDING,
        analysis_result={},
        approval_status=ApprovalStatus.PENDING,
        countdown=0,
        timer=None,
    )


def remove_photo_at_index(entries: Entries, entry_id, index: int) -> Entries:
    """Drop one photo; the countdown handle is cleared here, cancelling it is the caller's job."""
    return _update(entries, entry_id, lambda e: _without_photo(e, index))


def remove_all_photos(entries: Entries, entry_id) -> Entries:
    return _update(
        entries,
        entry_id,
        lambda e: replace(
            e,
            photos=(),
            analysis_status=AnalysisStatus.PENDING,
            analysis_result={},
            approval_status=ApprovalStatus.PENDING,
            countdown=0,
            timer=None,
        ),
    )


def update_countdown(entries: Entries, entry_id, seconds: int, timer=None) -> Entries:
    return _update(entries, entry_id, lambda e: replace(e, countdown=seconds, timer=timer))


def clear_countdown(entries: Entries, entry_id) -> Entries:
    return update_countdown(entries, entry_id, 0, None)


def add_validation_error(entries: Entries, entry_id, message: str) -> Entries:
    return _update(
        entries, entry_id, lambda e: replace(e, validation_errors=e.validation_errors + (message,))
    )


def update_medicine_data(entries: Entries, entry_id, medicine_params: dict) -> Entries:
    """User edited the extracted data: store it and approve in one step."""

    def apply(entry: BatchEntry) -> BatchEntry:
        if entry.analysis_status != AnalysisStatus.COMPLETE or not medicine_params:
            return entry
        return replace(entry, analysis_result=dict(medicine_params), approval_status=ApprovalStatus.APPROVED)

    return _update(entries, entry_id, apply)


def approve_all_complete(entries: Entries) -> Entries:
    return [
        replace(e, approval_status=ApprovalStatus.APPROVED)
        if e.analysis_status == AnalysisStatus.COMPLETE and e.approval_status == ApprovalStatus.PENDING
        else e
        for e in entries
    ]


def clear_rejected(entries: Entries) -> Entries:
    return [e for e in entries if e.approval_status != ApprovalStatus.REJECTED]


# --- Selectors ---


def ready_for_analysis(entries: Entries) -> Entries:
    return [e for e in entries if e.has_photos and e.analysis_status == AnalysisStatus.PENDING]


def approved_entries(entries: Entries) -> Entries:
    return [e for e in entries if e.approval_status == ApprovalStatus.APPROVED]


def pending_review(entries: Entries) -> Entries:
    return [
        e
        for e in entries
        if e.analysis_status == AnalysisStatus.COMPLETE and e.approval_status == ApprovalStatus.PENDING
    ]


def can_save(entry: BatchEntry) -> bool:
    return (
        entry.approval_status == ApprovalStatus.APPROVED
        and entry.analysis_status == AnalysisStatus.COMPLETE
        and bool(entry.analysis_result)
    )


def analysis_progress(entries: Entries) -> int:
    """Percent of entries with photos whose analysis has finished (either way)."""
    with_photos = [e for e in entries if e.has_photos]
    if not with_photos:
        return 0
    done = sum(1 for e in with_photos if e.analysis_status in (AnalysisStatus.COMPLETE, AnalysisStatus.FAILED))
    return round(done / len(with_photos) * 100)


def batch_stats(entries: Entries) -> dict:
    return {
        "total": len(entries),
        "with_photos": sum(1 for e in entries if e.has_photos),
        "processing": sum(1 for e in entries if e.analysis_status == AnalysisStatus.PROCESSING),
        "complete": sum(1 for e in entries if e.analysis_status == AnalysisStatus.COMPLETE),
        "failed": sum(1 for e in entries if e.analysis_status == AnalysisStatus.FAILED),
        "approved": sum(1 for e in entries if e.approval_status == ApprovalStatus.APPROVED),
        "rejected": sum(1 for e in entries if e.approval_status == ApprovalStatus.REJECTED),
        "pending_review": len(pending_review(entries)),
    }
