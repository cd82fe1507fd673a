import logging

from services.batch.session import BatchSession
from services.storage.base import PhotoStorage
from services.vision.analyzer import MedicineImageAnalyzer

log = logging.getLogger(__name__)


class SessionNotFound(KeyError):
    pass


class SessionRegistry:
    """Live batch sessions by batch id."""

    def __init__(self, storage: PhotoStorage, analyzer: MedicineImageAnalyzer, session_factory, job_queue=None, pubsub=None):
        self.storage = storage
        self.analyzer = analyzer
        self.session_factory = session_factory
        self.job_queue = job_queue
        self.pubsub = pubsub
        self._sessions: dict[str, BatchSession] = {}

    def create(self, initial_entries: int | None = None) -> BatchSession:
        session = BatchSession(
            self.storage,
            self.analyzer,
            self.session_factory,
            job_queue=self.job_queue,
            pubsub=self.pubsub,
            initial_entries=initial_entries,
        )
        session.start()
        self._sessions[session.batch_id] = session
        log.info(f"Opened batch session {session.batch_id}")
        return session

    def get(self, batch_id: str) -> BatchSession:
        try:
            return self._sessions[batch_id]
        except KeyError:
            raise SessionNotFound(batch_id) from None

    async def close(self, batch_id: str) -> bool:
        session = self._sessions.pop(batch_id, None)
        if session is None:
            return False
        await session.close()
        log.info(f"Closed batch session {batch_id}")
        return True

    def live_photo_keys(self) -> set[str]:
        """Storage keys held by open sessions, including session-only entries with no row."""
        return {
            photo.key for session in self._sessions.values() for entry in session.entries for photo in entry.photos
        }

    async def close_all(self):
        for batch_id in list(self._sessions):
            await self.close(batch_id)

    def __len__(self):
        return len(self._sessions)
