"""Shared fixtures: in-memory database, temp photo storage, fake vision analyzer.

No external services; the vision model is always faked.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from services.database import Base
from services.storage.local import LocalStorage

JPEG = b"\xff\xd8\xff\xe0fake-jpeg-bytes"

IBUPROFEN = {
    "name": "Ibuprofen 400",
    "dosage_form": "tablet",
    "container_type": "blister_pack",
    "total_quantity": 20.0,
    "strength_value": 400.0,
    "strength_unit": "mg",
}


class FakeAnalyzer:
    """Stands in for MedicineImageAnalyzer; records one entry per vision request."""

    def __init__(self, result: dict | None = None, error: Exception | None = None):
        self.result = result if result is not None else dict(IBUPROFEN)
        self.error = error
        self.calls: list[list[str]] = []

    async def analyze_medicine_photos(self, photos):
        self.calls.append([name for name, _ in photos])
        if self.error:
            raise self.error
        return dict(self.result)

    async def analyze_medicine_photo(self, filename, data):
        return await self.analyze_medicine_photos([(filename, data)])


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(root=tmp_path / "uploads", url_prefix="/uploads")


@pytest.fixture
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def stored_photo(storage):
    """Factory that saves bytes into the temp storage and returns a PhotoRef."""
    from services.batch.models import PhotoRef

    async def make(name: str = "front.jpg", data: bytes = JPEG) -> PhotoRef:
        stored = await storage.save(data, name)
        return PhotoRef(key=stored.key, url=stored.url, filename=name, size=len(data))

    return make
