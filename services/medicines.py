import logging
import re
from datetime import UTC, date, datetime, timedelta

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.database import Medicine, MedicineStatus
from services.storage.base import PhotoStorage
from services.vision.analyzer import CONTAINER_TYPES, DOSAGE_FORMS

log = logging.getLogger(__name__)

SEARCH_FIELDS = ("name", "brand_name", "generic_name", "active_ingredient", "manufacturer")


class MedicineValidationError(ValueError):
    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__("; ".join(f"{field}: {msg}" for field, msg in errors.items()))


class MedicineAttrs(BaseModel):
    """Attributes accepted for a medicine record. Unknown keys are ignored."""

    model_config = {"extra": "ignore", "str_strip_whitespace": True}

    name: str = Field(min_length=1)
    brand_name: str | None = None
    generic_name: str | None = None
    lot_number: str | None = None
    dosage_form: str
    active_ingredient: str | None = None
    strength_value: float | None = Field(default=None, gt=0)
    strength_unit: str | None = None
    container_type: str
    total_quantity: float = Field(gt=0)
    remaining_quantity: float | None = Field(default=None, ge=0)
    quantity_unit: str | None = None
    expiration_date: date | None = None
    manufacturer: str | None = None
    photo_paths: list[str] = Field(default_factory=list)
    default_photo_path: str | None = None
    status: MedicineStatus = MedicineStatus.ACTIVE

    @field_validator("dosage_form")
    @classmethod
    def check_dosage_form(cls, v: str) -> str:
        if v not in DOSAGE_FORMS:
            raise ValueError(f"must be one of {', '.join(DOSAGE_FORMS)}")
        return v

    @field_validator("container_type")
    @classmethod
    def check_container_type(cls, v: str) -> str:
        if v not in CONTAINER_TYPES:
            raise ValueError(f"must be one of {', '.join(CONTAINER_TYPES)}")
        return v

    @field_validator("expiration_date", mode="before")
    @classmethod
    def month_to_first_day(cls, v):
        # Packaging usually only shows the month: "2026-03" means 2026-03-01
        if isinstance(v, str):
            v = v.strip()
            if re.fullmatch(r"\d{4}-\d{2}", v):
                return f"{v}-01"
            if not v:
                return None
        return v

    @model_validator(mode="after")
    def check_quantities(self):
        if self.remaining_quantity is None:
            self.remaining_quantity = self.total_quantity
        elif self.remaining_quantity > self.total_quantity:
            raise ValueError("remaining_quantity cannot be greater than total quantity")
        if self.default_photo_path is None and self.photo_paths:
            self.default_photo_path = self.photo_paths[0]
        return self


def validate_medicine_attrs(attrs: dict) -> dict:
    try:
        return MedicineAttrs.model_validate(attrs).model_dump()
    except ValidationError as e:
        errors = {}
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"]) or "medicine"
            errors[field] = err["msg"]
        raise MedicineValidationError(errors) from None


async def create_medicine(session: AsyncSession, attrs: dict) -> Medicine:
    """Validate and insert a medicine. Raises MedicineValidationError."""
    values = validate_medicine_attrs(attrs)
    medicine = Medicine(**values)
    session.add(medicine)
    await session.commit()
    log.info(f"Created medicine {medicine.id}: {medicine.name}")
    return medicine


async def get_medicine(session: AsyncSession, medicine_id: int) -> Medicine | None:
    return await session.get(Medicine, medicine_id)


async def list_medicines(
    session: AsyncSession, search: str | None = None, status: MedicineStatus | None = None
) -> list[Medicine]:
    query = select(Medicine).order_by(Medicine.created_at.desc(), Medicine.id.desc())
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.where(or_(*(getattr(Medicine, f).ilike(pattern) for f in SEARCH_FIELDS)))
    if status:
        query = query.where(Medicine.status == status)
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_expiring_medicines(session: AsyncSession, within_days: int = 30) -> list[Medicine]:
    today = datetime.now(UTC).date()
    result = await session.execute(
        select(Medicine)
        .where(Medicine.expiration_date.is_not(None))
        .where(Medicine.expiration_date >= today)
        .where(Medicine.expiration_date <= today + timedelta(days=within_days))
        .order_by(Medicine.expiration_date)
    )
    return list(result.scalars().all())


def _current_values(medicine: Medicine) -> dict:
    values = {f: getattr(medicine, f) for f in MedicineAttrs.model_fields}
    for key in ("strength_value", "total_quantity", "remaining_quantity"):
        if values[key] is not None:
            values[key] = float(values[key])
    return values


async def update_medicine(session: AsyncSession, medicine: Medicine, attrs: dict) -> Medicine:
    values = validate_medicine_attrs({**_current_values(medicine), **attrs})
    for key, value in values.items():
        setattr(medicine, key, value)
    await session.commit()
    log.info(f"Updated medicine {medicine.id}")
    return medicine


async def delete_medicine(session: AsyncSession, storage: PhotoStorage, medicine: Medicine):
    for key in medicine.photo_paths or []:
        error = await storage.delete(key)
        if error:
            log.warning(f"Could not delete photo {key} of medicine {medicine.id}: {error.message}")
    await session.delete(medicine)
    await session.commit()
    log.info(f"Deleted medicine {medicine.id}")


def medicine_to_dict(medicine: Medicine, storage: PhotoStorage | None = None) -> dict:
    data = _current_values(medicine)
    data["id"] = medicine.id
    data["status"] = medicine.status.value if medicine.status else None
    data["expiration_date"] = medicine.expiration_date.isoformat() if medicine.expiration_date else None
    if storage:
        data["photo_urls"] = [storage.url_for(key) for key in medicine.photo_paths or []]
    return data
