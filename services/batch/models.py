import asyncio
import itertools
from dataclasses import dataclass, field

from services.database import AnalysisStatus, ApprovalStatus

# Session tokens look like "entry_17"; durable ids are the integer row id.
EntryId = int | str

_token_counter = itertools.count(1)


def new_entry_token() -> str:
    return f"entry_{next(_token_counter)}"


def normalize_entry_id(entry_id) -> EntryId | None:
    """Canonical form used for every lookup.

    Integers and integer strings ("12") become int; anything else stays a string.
    """
    if entry_id is None:
        return None
    if isinstance(entry_id, bool):
        return str(entry_id)
    if isinstance(entry_id, int):
        return entry_id
    text = str(entry_id).strip()
    try:
        return int(text)
    except ValueError:
        return text


def same_entry_id(a, b) -> bool:
    return normalize_entry_id(a) == normalize_entry_id(b)


def is_durable_id(entry_id) -> bool:
    return isinstance(normalize_entry_id(entry_id), int)


class CountdownHandle:
    """Cancellation token for one running debounce countdown."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    @property
    def task(self) -> asyncio.Task:
        return self._task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        # Safe to call repeatedly and after the countdown has fired.
        if not self._task.done():
            self._task.cancel()


@dataclass(frozen=True)
class PhotoRef:
    key: str
    url: str
    filename: str
    size: int


@dataclass(frozen=True)
class BatchEntry:
    """One medicine candidate within a batch session.

    Never mutated in place; entries.py returns replaced copies.
    """

    id: EntryId
    number: int
    photos: tuple[PhotoRef, ...] = ()
    analysis_status: AnalysisStatus = AnalysisStatus.PENDING
    analysis_result: dict = field(default_factory=dict)
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    countdown: int = 0
    timer: CountdownHandle | None = field(default=None, compare=False, repr=False)
    validation_errors: tuple[str, ...] = ()

    @property
    def has_photos(self) -> bool:
        return len(self.photos) > 0

    @property
    def is_durable(self) -> bool:
        return is_durable_id(self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "number": self.number,
            "photos": [
                {"key": p.key, "url": p.url, "filename": p.filename, "size": p.size}
                for p in self.photos
            ],
            "analysis_status": self.analysis_status.value,
            "analysis_result": self.analysis_result,
            "approval_status": self.approval_status.value,
            "countdown": self.countdown,
            "validation_errors": list(self.validation_errors),
        }
