"""HTTP-level tests for main.py, run in-process through httpx.ASGITransport."""

import httpx
import pytest
import pytest_asyncio

import main
from services.batch.registry import SessionRegistry
from services.database import get_session
from tests.conftest import IBUPROFEN, JPEG


@pytest_asyncio.fixture
async def client(session_factory, storage, analyzer, monkeypatch):
    async def session_override():
        async with session_factory() as session:
            yield session

    registry = SessionRegistry(storage, analyzer, session_factory)
    monkeypatch.setattr(main, "storage", storage)
    monkeypatch.setattr(main, "registry", registry)
    main.app.dependency_overrides[get_session] = session_override

    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    await registry.close_all()
    main.app.dependency_overrides.clear()


async def _new_batch(client, entries=2) -> dict:
    resp = await client.post("/batches", json={"entries": entries})
    assert resp.status_code == 200
    return resp.json()


class TestBatchApi:
    @pytest.mark.asyncio
    async def test_photo_to_medicine(self, client):
        batch = await _new_batch(client)
        batch_id = batch["batch_id"]
        token = batch["entries"][0]["id"]

        resp = await client.post(
            f"/batches/{batch_id}/entries/{token}/photos",
            files=[("files", ("front.jpg", JPEG, "image/jpeg"))],
        )
        assert resp.status_code == 200
        entry = resp.json()["batch"]["entries"][0]
        entry_id = entry["id"]
        assert isinstance(entry_id, int)
        assert entry["countdown"] > 0

        resp = await client.post(f"/batches/{batch_id}/entries/{entry_id}/analyze")
        assert resp.json()["started"] is True
        assert resp.json()["batch"]["entries"][0]["analysis_status"] == "complete"

        resp = await client.post(f"/batches/{batch_id}/entries/{entry_id}/approve")
        assert resp.status_code == 200

        resp = await client.post(f"/batches/{batch_id}/save")
        body = resp.json()
        assert body["saved"] == 1
        assert len(body["batch"]["entries"]) == 1

        medicines = (await client.get("/medicines")).json()
        assert [m["name"] for m in medicines] == [IBUPROFEN["name"]]
        assert medicines[0]["photo_urls"][0].startswith("/uploads/medicines/")

    @pytest.mark.asyncio
    async def test_bad_extension_rejected(self, client):
        batch = await _new_batch(client, entries=1)
        token = batch["entries"][0]["id"]

        resp = await client.post(
            f"/batches/{batch['batch_id']}/entries/{token}/photos",
            files=[("files", ("scan.gif", b"GIF89a", "image/gif"))],
        )

        assert resp.status_code == 400
        assert "Invalid file extension" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_approve_requires_analysis(self, client):
        batch = await _new_batch(client, entries=1)
        token = batch["entries"][0]["id"]
        resp = await client.post(f"/batches/{batch['batch_id']}/entries/{token}/approve")
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_analyze_all_with_nothing(self, client):
        batch = await _new_batch(client)
        resp = await client.post(f"/batches/{batch['batch_id']}/analyze-all")
        assert resp.json()["message"] == "No entries with photos to analyze"

    @pytest.mark.asyncio
    async def test_add_entries_bounds(self, client):
        batch = await _new_batch(client)
        resp = await client.post(f"/batches/{batch['batch_id']}/entries", json={"count": 0})
        assert resp.status_code == 400
        resp = await client.post(f"/batches/{batch['batch_id']}/entries", json={"count": 2})
        assert len(resp.json()["entries"]) == 4

    @pytest.mark.asyncio
    async def test_unknown_batch(self, client):
        assert (await client.get("/batches/nope")).status_code == 404
        assert (await client.delete("/batches/nope")).status_code == 404


class TestMedicineApi:
    @pytest.mark.asyncio
    async def test_crud(self, client):
        resp = await client.post("/medicines", json=IBUPROFEN)
        assert resp.status_code == 200
        medicine_id = resp.json()["id"]

        resp = await client.patch(f"/medicines/{medicine_id}", json={"remaining_quantity": 4})
        assert resp.json()["remaining_quantity"] == 4.0

        assert (await client.get("/medicines", params={"search": "ibu"})).json()[0]["id"] == medicine_id

        assert (await client.delete(f"/medicines/{medicine_id}")).status_code == 200
        assert (await client.get(f"/medicines/{medicine_id}")).status_code == 404

    @pytest.mark.asyncio
    async def test_validation_errors(self, client):
        resp = await client.post("/medicines", json={"name": "Aspirin", "dosage_form": "lozenge"})
        assert resp.status_code == 422
        assert "dosage_form" in resp.json()["detail"]
