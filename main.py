import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import StorageBackend, settings
from services.batch.analysis import NothingToAnalyze
from services.batch.promotion import SaveReport
from services.batch.pubsub import pubsub
from services.batch.registry import SessionNotFound, SessionRegistry
from services.batch.session import BatchSession
from services.batch.uploads import UploadRejected
from services.database import MedicineStatus, async_session, get_session, init_db
from services.jobs.analyze_photo import AnalysisJobQueue
from services.jobs.cleanup_files import UploadCleanupJob
from services.llm import llm_router
from services.medicines import (
    MedicineValidationError,
    create_medicine,
    delete_medicine,
    get_medicine,
    list_expiring_medicines,
    list_medicines,
    medicine_to_dict,
    update_medicine,
)
from services.storage import get_storage
from services.vision.analyzer import MedicineImageAnalyzer

logging.basicConfig(level=getattr(logging, settings.log_level))
log = logging.getLogger(__name__)

storage = get_storage()
analyzer = MedicineImageAnalyzer(router=llm_router)
job_queue = AnalysisJobQueue(async_session, storage, analyzer, pubsub)
registry = SessionRegistry(storage, analyzer, async_session, job_queue=job_queue, pubsub=pubsub)
upload_cleanup = UploadCleanupJob(async_session, storage, in_use=registry.live_photo_keys)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    health = await llm_router.health()
    log.info(f"Vision providers: {health} (using {settings.vision_provider})")
    job_queue.start()
    upload_cleanup.start()
    yield
    await upload_cleanup.stop()
    await registry.close_all()
    await job_queue.stop()


app = FastAPI(
    title="Medpack",
    description="Medicine inventory from photos of the packaging",
    version="0.1.0",
    lifespan=lifespan,
)

if settings.storage_backend == StorageBackend.LOCAL:
    app.mount(
        settings.public_url_prefix,
        StaticFiles(directory=settings.upload_dir, check_dir=False),
        name="uploads",
    )


# --- Health ---


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "vision_providers": await llm_router.health(),
        "storage": storage.backend_name,
        "analysis_workers": job_queue.running,
        "open_batches": len(registry),
    }


# --- Batch sessions ---


def _batch(batch_id: str) -> BatchSession:
    try:
        return registry.get(batch_id)
    except SessionNotFound:
        raise HTTPException(404, "Batch not found") from None


def _report(report: SaveReport) -> dict:
    return {
        "saved": report.saved,
        "failed": report.failed,
        "results": [
            {"entry_id": r.entry_id, "medicine_id": r.medicine_id, "error": r.error} for r in report.results
        ],
    }


class CreateBatchRequest(BaseModel):
    entries: int | None = None


@app.post("/batches")
async def create_batch(req: CreateBatchRequest):
    session = registry.create(initial_entries=req.entries)
    return session.to_dict()


@app.get("/batches/{batch_id}")
async def get_batch(batch_id: str):
    return _batch(batch_id).to_dict()


@app.delete("/batches/{batch_id}")
async def close_batch(batch_id: str):
    if not await registry.close(batch_id):
        raise HTTPException(404, "Batch not found")
    return {"closed": batch_id}


class AddEntriesRequest(BaseModel):
    count: int = 1


@app.post("/batches/{batch_id}/entries")
async def add_entries(batch_id: str, req: AddEntriesRequest):
    if not 1 <= req.count <= 50:
        raise HTTPException(400, "count must be between 1 and 50")
    session = _batch(batch_id)
    await session.add_entries(req.count)
    return session.to_dict()


@app.delete("/batches/{batch_id}/entries/{entry_id}")
async def remove_entry(batch_id: str, entry_id: str):
    session = _batch(batch_id)
    await session.remove_entry(entry_id)
    return session.to_dict()


# --- Photos ---


@app.post("/batches/{batch_id}/entries/{entry_id}/photos")
async def upload_photos(batch_id: str, entry_id: str, files: list[UploadFile] = File(...)):
    """Store photos for an entry and (re)start its analysis countdown."""
    session = _batch(batch_id)
    payload = []
    for f in files:
        data = await f.read(settings.max_upload_bytes + 1)
        payload.append((f.filename or "upload", data))

    try:
        photos = await session.upload_files(entry_id, payload)
    except UploadRejected as e:
        raise HTTPException(400, str(e)) from e

    return {
        "uploaded": [{"key": p.key, "url": p.url, "filename": p.filename, "size": p.size} for p in photos],
        "batch": session.to_dict(),
    }


@app.delete("/batches/{batch_id}/entries/{entry_id}/photos/{photo_index}")
async def remove_photo(batch_id: str, entry_id: str, photo_index: int):
    session = _batch(batch_id)
    if not await session.remove_photo(entry_id, photo_index):
        raise HTTPException(404, "Photo not found")
    return session.to_dict()


@app.delete("/batches/{batch_id}/entries/{entry_id}/photos")
async def remove_all_photos(batch_id: str, entry_id: str):
    session = _batch(batch_id)
    await session.remove_all_photos(entry_id)
    return session.to_dict()


# --- Analysis ---


@app.post("/batches/{batch_id}/entries/{entry_id}/analyze")
async def analyze_now(batch_id: str, entry_id: str):
    session = _batch(batch_id)
    started = await session.analyze_now(entry_id)
    return {"started": started, "batch": session.to_dict()}


@app.post("/batches/{batch_id}/entries/{entry_id}/retry")
async def retry_analysis(batch_id: str, entry_id: str):
    session = _batch(batch_id)
    retried = await session.retry_analysis(entry_id)
    return {"retried": retried, "batch": session.to_dict()}


@app.post("/batches/{batch_id}/entries/{entry_id}/cancel-countdown")
async def cancel_countdown(batch_id: str, entry_id: str):
    session = _batch(batch_id)
    await session.cancel_countdown(entry_id)
    return session.to_dict()


@app.post("/batches/{batch_id}/analyze-all")
async def analyze_all(batch_id: str):
    session = _batch(batch_id)
    result = await session.analyze_all()
    if isinstance(result, NothingToAnalyze):
        return {"message": result.message, "dispatched": 0, "batch": session.to_dict()}
    return {
        "dispatched": result.dispatched,
        "failed": result.failed,
        "outcomes": {str(k): v.value if v else None for k, v in result.outcomes.items()},
        "batch": session.to_dict(),
    }


# --- Review ---


@app.post("/batches/{batch_id}/entries/{entry_id}/approve")
async def approve_entry(batch_id: str, entry_id: str):
    session = _batch(batch_id)
    if not await session.approve(entry_id):
        raise HTTPException(409, "Only entries with a completed analysis can be approved")
    return session.to_dict()


@app.post("/batches/{batch_id}/entries/{entry_id}/reject")
async def reject_entry(batch_id: str, entry_id: str):
    session = _batch(batch_id)
    if not await session.reject(entry_id):
        raise HTTPException(404, "Entry not found")
    return session.to_dict()


@app.post("/batches/{batch_id}/approve-all")
async def approve_all(batch_id: str):
    session = _batch(batch_id)
    approved = await session.approve_all()
    return {"approved": approved, "batch": session.to_dict()}


class EditEntryRequest(BaseModel):
    medicine: dict


@app.put("/batches/{batch_id}/entries/{entry_id}")
async def edit_entry(batch_id: str, entry_id: str, req: EditEntryRequest):
    """Save the user's corrections to the extracted data and approve the entry."""
    session = _batch(batch_id)
    if not await session.edit(entry_id, req.medicine):
        raise HTTPException(409, "Only entries with a completed analysis can be edited")
    return session.to_dict()


@app.post("/batches/{batch_id}/clear-rejected")
async def clear_rejected(batch_id: str):
    session = _batch(batch_id)
    cleared = await session.clear_rejected()
    return {"cleared": cleared, "batch": session.to_dict()}


# --- Saving ---


@app.post("/batches/{batch_id}/save")
async def save_approved(batch_id: str):
    session = _batch(batch_id)
    report = await session.save_approved()
    return {**_report(report), "batch": session.to_dict()}


@app.post("/batches/{batch_id}/entries/{entry_id}/save")
async def save_single(batch_id: str, entry_id: str):
    session = _batch(batch_id)
    report = await session.save_single(entry_id)
    return {**_report(report), "batch": session.to_dict()}


# --- Medicines ---


@app.get("/medicines")
async def get_medicines(
    search: str | None = None,
    status: MedicineStatus | None = None,
    session: AsyncSession = Depends(get_session),
):
    medicines = await list_medicines(session, search=search, status=status)
    return [medicine_to_dict(m, storage) for m in medicines]


@app.get("/medicines/expiring")
async def get_expiring_medicines(days: int = 30, session: AsyncSession = Depends(get_session)):
    medicines = await list_expiring_medicines(session, within_days=days)
    return [medicine_to_dict(m, storage) for m in medicines]


@app.post("/medicines")
async def add_medicine(attrs: dict, session: AsyncSession = Depends(get_session)):
    try:
        medicine = await create_medicine(session, attrs)
    except MedicineValidationError as e:
        raise HTTPException(422, e.errors) from e
    return medicine_to_dict(medicine, storage)


@app.get("/medicines/{medicine_id}")
async def get_medicine_detail(medicine_id: int, session: AsyncSession = Depends(get_session)):
    medicine = await get_medicine(session, medicine_id)
    if not medicine:
        raise HTTPException(404, "Medicine not found")
    return medicine_to_dict(medicine, storage)


@app.patch("/medicines/{medicine_id}")
async def edit_medicine(medicine_id: int, attrs: dict, session: AsyncSession = Depends(get_session)):
    medicine = await get_medicine(session, medicine_id)
    if not medicine:
        raise HTTPException(404, "Medicine not found")
    try:
        medicine = await update_medicine(session, medicine, attrs)
    except MedicineValidationError as e:
        raise HTTPException(422, e.errors) from e
    return medicine_to_dict(medicine, storage)


@app.delete("/medicines/{medicine_id}")
async def remove_medicine(medicine_id: int, session: AsyncSession = Depends(get_session)):
    medicine = await get_medicine(session, medicine_id)
    if not medicine:
        raise HTTPException(404, "Medicine not found")
    await delete_medicine(session, storage, medicine)
    return {"deleted": medicine_id}
