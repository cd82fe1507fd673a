from datetime import UTC, date, datetime
from enum import StrEnum
from pathlib import Path

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from config.settings import settings

engine = create_async_engine(settings.database_url, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


# --- Enums ---


class AnalysisStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MedicineStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    EMPTY = "empty"
    RECALLED = "recalled"


# --- Models ---


class Entry(Base):
    """Durable side of a batch entry; created when its first photo is stored."""

    __tablename__ = "batch_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    entry_number: Mapped[int] = mapped_column(Integer)
    ai_analysis_status: Mapped[AnalysisStatus] = mapped_column(
        SAEnum(AnalysisStatus), default=AnalysisStatus.PENDING
    )
    ai_results: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        SAEnum(ApprovalStatus), default=ApprovalStatus.PENDING
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))

    images: Mapped[list["EntryImage"]] = relationship(
        back_populates="entry",
        order_by="EntryImage.upload_order",
        cascade="all, delete-orphan",
    )


class EntryImage(Base):
    """A stored photo belonging to a batch entry."""

    __tablename__ = "batch_entry_images"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_entry_id: Mapped[int] = mapped_column(ForeignKey("batch_entries.id", ondelete="CASCADE"))
    s3_key: Mapped[str] = mapped_column(String(500))  # storage key, local or object store
    original_filename: Mapped[str] = mapped_column(String(255))
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_type: Mapped[str] = mapped_column(String(50), default="image/jpeg")
    upload_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))

    entry: Mapped[Entry] = relationship(back_populates="images")


class Medicine(Base):
    """A permanent inventory record."""

    __tablename__ = "medicines"

    id: Mapped[int] = mapped_column(primary_key=True)

    # Identification
    name: Mapped[str] = mapped_column(String(255))
    brand_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    generic_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lot_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # FHIR Medication.form / ingredient
    dosage_form: Mapped[str] = mapped_column(String(50))
    active_ingredient: Mapped[str | None] = mapped_column(String(255), nullable=True)
    strength_value: Mapped[float | None] = mapped_column(Numeric(12, 3), nullable=True)
    strength_unit: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Container
    container_type: Mapped[str] = mapped_column(String(50))
    total_quantity: Mapped[float] = mapped_column(Numeric(12, 3))
    remaining_quantity: Mapped[float | None] = mapped_column(Numeric(12, 3), nullable=True)
    quantity_unit: Mapped[str | None] = mapped_column(String(50), nullable=True)

    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    manufacturer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    photo_paths: Mapped[list] = mapped_column(JSON, default=list)
    default_photo_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[MedicineStatus] = mapped_column(
        SAEnum(MedicineStatus), default=MedicineStatus.ACTIVE
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )


async def init_db():
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:
    async with async_session() as session:
        yield session
