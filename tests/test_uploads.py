"""Tests for services/batch/uploads.py: upload slots, completion signal, draining."""

from unittest.mock import AsyncMock

import pytest

from services.batch import entries as em
from services.batch.models import BatchEntry
from services.batch.uploads import ProcessFiles, SavedFile, UploadCoordinator, UploadRejected, channel_id_for
from services.storage.base import StorageError
from tests.conftest import JPEG


@pytest.fixture
def coordinator(storage) -> UploadCoordinator:
    return UploadCoordinator(storage, max_files=3, max_bytes=1000, allowed_extensions=[".jpg", ".jpeg", ".png"])


@pytest.fixture
def slot(coordinator):
    entries = em.create_empty_entries(1)
    coordinator.configure_upload_slots(entries)
    return channel_id_for(entries[0].id)


class TestConfigureSlots:
    def test_one_channel_per_entry(self, coordinator):
        entries = em.create_empty_entries(3)
        channel_ids = coordinator.configure_upload_slots(entries)
        assert channel_ids == [channel_id_for(e.id) for e in entries]

    def test_idempotent(self, coordinator, slot):
        upload = coordinator.register_upload(slot, "a.jpg", 10)
        entry_id = coordinator.channel(slot).entry_id
        coordinator.configure_upload_slots([BatchEntry(id=entry_id, number=1)])
        assert coordinator.channel(slot).uploads == [upload]

    def test_removed_entry_is_drained(self, coordinator, slot):
        upload = coordinator.register_upload(slot, "a.jpg", 10)
        coordinator.configure_upload_slots([])
        assert coordinator.channel(slot) is None
        assert upload.cancelled

    def test_rekey_moves_channel(self, coordinator, slot):
        old_entry_id = coordinator.channel(slot).entry_id
        upload = coordinator.register_upload(slot, "a.jpg", 10)
        new_slot = coordinator.rekey(old_entry_id, 12)
        assert new_slot == "entry_12_photos"
        assert coordinator.channel(slot) is None
        assert coordinator.channel(new_slot).uploads == [upload]


class TestValidation:
    @pytest.mark.parametrize("name", ["notes.txt", "scan.gif", "noextension"])
    def test_bad_extension(self, coordinator, slot, name):
        with pytest.raises(UploadRejected, match="Invalid file extension"):
            coordinator.register_upload(slot, name, 10)

    def test_uppercase_extension_accepted(self, coordinator, slot):
        coordinator.register_upload(slot, "FRONT.JPG", 10)

    def test_too_large(self, coordinator, slot):
        with pytest.raises(UploadRejected, match="too large"):
            coordinator.register_upload(slot, "a.jpg", 1001)

    def test_capacity_counts_stored_photos(self, coordinator, slot):
        coordinator.register_upload(slot, "a.jpg", 10, stored_photos=2)
        with pytest.raises(UploadRejected, match="Too many photos"):
            coordinator.register_upload(slot, "b.jpg", 10, stored_photos=2)

    def test_unknown_slot(self, coordinator):
        with pytest.raises(UploadRejected):
            coordinator.register_upload("entry_nope_photos", "a.jpg", 10)

    def test_streamed_bytes_over_limit_cancel_upload(self, coordinator, slot):
        upload = coordinator.register_upload(slot, "a.jpg", 900)
        with pytest.raises(UploadRejected):
            coordinator.on_progress(slot, upload.ref, 50, b"x" * 1001)
        assert upload.cancelled


class TestProgress:
    def test_signal_once_when_all_done(self, coordinator, slot):
        a = coordinator.register_upload(slot, "a.jpg", 10)
        b = coordinator.register_upload(slot, "b.jpg", 10)

        assert coordinator.on_progress(slot, a.ref, 100, JPEG) is None
        signal = coordinator.on_progress(slot, b.ref, 100, JPEG)
        assert isinstance(signal, ProcessFiles)
        assert signal.channel_id == slot

        # Late duplicate ticks do not signal again.
        assert coordinator.on_progress(slot, b.ref, 100) is None

    def test_partial_progress_does_not_signal(self, coordinator, slot):
        a = coordinator.register_upload(slot, "a.jpg", 10)
        assert coordinator.on_progress(slot, a.ref, 40, JPEG) is None
        assert not a.done

    def test_cancelling_last_pending_upload_signals(self, coordinator, slot):
        a = coordinator.register_upload(slot, "a.jpg", 10)
        b = coordinator.register_upload(slot, "b.jpg", 10)
        coordinator.on_progress(slot, a.ref, 100, JPEG)
        assert isinstance(coordinator.cancel_upload(slot, b.ref), ProcessFiles)

    def test_unknown_ref_ignored(self, coordinator, slot):
        assert coordinator.on_progress(slot, "missing", 100) is None


class TestConsume:
    @pytest.mark.asyncio
    async def test_consume_saves_and_drains_once(self, coordinator, slot, storage):
        a = coordinator.register_upload(slot, "a.jpg", len(JPEG))
        coordinator.on_progress(slot, a.ref, 100, JPEG)

        first = await coordinator.consume_completed_files(slot)
        assert len(first) == 1
        saved = first[0]
        assert isinstance(saved, SavedFile)
        assert saved.filename == "a.jpg"
        assert saved.key.startswith("batch/")
        assert await storage.read(saved.key) == JPEG

        assert await coordinator.consume_completed_files(slot) == []

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_successes(self, coordinator, slot):
        a = coordinator.register_upload(slot, "a.jpg", 10)
        b = coordinator.register_upload(slot, "b.jpg", 10)
        coordinator.on_progress(slot, a.ref, 100, JPEG)
        coordinator.on_progress(slot, b.ref, 100, JPEG)

        real_save = coordinator.storage.save
        coordinator.storage.save = AsyncMock(
            side_effect=[await real_save(JPEG, "a.jpg"), StorageError(key="batch/b.jpg", message="disk full")]
        )

        results = await coordinator.consume_completed_files(slot)
        assert isinstance(results[0], SavedFile)
        assert isinstance(results[1], StorageError)
