import json
import logging
import re

import anthropic
import httpx
import openai

from config.settings import settings
from services.llm.base import ImageInput
from services.llm.router import LLMRouter, ProviderNotAvailable
from services.storage.base import content_type_for

log = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

# Errors raised by the provider SDKs once their own retries are used up.
SDK_TIMEOUT_ERRORS = (openai.APITimeoutError, anthropic.APITimeoutError)
SDK_STATUS_ERRORS = (openai.APIStatusError, anthropic.APIStatusError)
SDK_CONNECTION_ERRORS = (openai.APIConnectionError, anthropic.APIConnectionError)

DOSAGE_FORMS = (
    "tablet", "capsule", "syrup", "suspension", "solution", "cream", "ointment", "gel",
    "lotion", "drops", "injection", "inhaler", "spray", "patch", "suppository",
)

CONTAINER_TYPES = ("bottle", "box", "tube", "vial", "inhaler", "blister_pack", "sachet", "ampoule")

MEDICINE_FIELDS = (
    "name",
    "brand_name",
    "generic_name",
    "dosage_form",
    "active_ingredient",
    "strength_value",
    "strength_unit",
    "container_type",
    "total_quantity",
    "remaining_quantity",
    "quantity_unit",
    "manufacturer",
    "lot_number",
    "expiration_date",
    "ndc_code",
)

NUMERIC_FIELDS = ("strength_value", "total_quantity", "remaining_quantity")

MEDICINE_PROMPT = f"""You are a pharmacist identifying a medicine product from photos of its packaging.
You are given one or more photos of the SAME product from different angles. Combine what is
visible across all photos into one answer.

Respond with a single JSON object using only these keys (omit any you cannot read):
{{
  "name": "full product name as printed",
  "brand_name": "brand, e.g. Tylenol",
  "generic_name": "generic name, e.g. Acetaminophen",
  "dosage_form": "one of: {", ".join(DOSAGE_FORMS)}",
  "active_ingredient": "primary active ingredient",
  "strength_value": 500.0,
  "strength_unit": "mg, ml, g, ...",
  "container_type": "one of: {", ".join(CONTAINER_TYPES)}",
  "total_quantity": 20,
  "remaining_quantity": 20,
  "quantity_unit": "tablets, ml, capsules, ...",
  "manufacturer": "manufacturer if visible",
  "lot_number": "lot number if visible",
  "expiration_date": "YYYY-MM-DD, only if clearly readable",
  "ndc_code": "NDC code if visible"
}}

Rules:
- Only include information visible in at least one photo.
- strength_value and quantities are plain numbers, no units.
- Translate foreign terms to English (e.g. "Tabletten" -> tablet, "Flasche" -> bottle).
- If no medicine can be identified at all, return {{"error": "Unable to identify medicine clearly"}}.
- Return the JSON object only, no other text."""


class VisionAnalysisError(Exception):
    """The vision model could not produce usable medicine data."""


class MedicineNotIdentified(VisionAnalysisError):
    pass


def extract_json(text: str) -> dict:
    """Parse the model reply, falling back to the first {...} block in it."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if not match:
            raise VisionAnalysisError("Invalid response format from vision model") from None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            raise VisionAnalysisError("Invalid response format from vision model") from None

    if not isinstance(data, dict):
        raise VisionAnalysisError("Invalid response format from vision model")
    return data


def _to_number(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = re.match(r"\s*(-?\d+(?:[.,]\d+)?)", value)
        if match:
            return float(match.group(1).replace(",", "."))
    return value


def sanitize_medicine_data(data: dict) -> dict:
    """Keep known keys with non-empty values; drop enum values outside the fixed sets."""
    result = {}
    for key in MEDICINE_FIELDS:
        value = data.get(key)
        if value is None or value == "":
            continue
        if key in NUMERIC_FIELDS:
            value = _to_number(value)
        result[key] = value

    for key, allowed in (("dosage_form", DOSAGE_FORMS), ("container_type", CONTAINER_TYPES)):
        if key not in result:
            continue
        normalized = str(result[key]).strip().lower().replace(" ", "_")
        if normalized in allowed:
            result[key] = normalized
        else:
            log.info(f"Dropping unrecognised {key}: {result[key]!r}")
            del result[key]

    return result


def parse_analysis(content: str) -> dict:
    data = extract_json(content)
    if "error" in data:
        raise MedicineNotIdentified(str(data["error"]))

    medicine_data = sanitize_medicine_data(data)
    if not medicine_data:
        raise VisionAnalysisError("No useful information could be extracted from the image")
    return medicine_data


class MedicineImageAnalyzer:
    """Vision analysis client for medicine packaging.

    All photos of one entry go into a single request so the model can
    cross-reference angles.
    """

    def __init__(self, router: LLMRouter | None = None, provider: str | None = None):
        if router is None:
            from services.llm import llm_router

            router = llm_router
        self.router = router
        self.provider = provider

    async def analyze_medicine_photos(self, photos: list[tuple[str, bytes]]) -> dict:
        """Analyze `(filename, bytes)` photos of one product.

        Returns the sanitized attribute map. Raises VisionAnalysisError
        (or MedicineNotIdentified) when nothing usable comes back.
        """
        if not photos:
            raise VisionAnalysisError("No photos to analyze")

        images = [ImageInput(data=data, media_type=content_type_for(name)) for name, data in photos]
        log.info(f"Analyzing {len(images)} photo(s) in one vision request")

        response = await self.router.complete(
            prompt=MEDICINE_PROMPT,
            provider=self.provider,
            temperature=settings.vision_temperature,
            max_tokens=settings.vision_max_tokens,
            images=images,
        )
        return parse_analysis(response.content)

    async def analyze_medicine_photo(self, filename: str, data: bytes) -> dict:
        return await self.analyze_medicine_photos([(filename, data)])


def _status_message(status: int) -> str:
    if status in RETRYABLE_STATUS:
        return "Vision API failed after multiple retries - please try again later"
    return f"Vision API call failed with status {status}"


def describe_analysis_error(error: Exception) -> str:
    """Short user-facing message for a failed analysis."""
    # SDK timeouts subclass their connection errors, so they are checked first.
    if isinstance(error, (httpx.TimeoutException, *SDK_TIMEOUT_ERRORS)):
        return "Vision API timeout - please try again"
    if isinstance(error, httpx.HTTPStatusError):
        return _status_message(error.response.status_code)
    if isinstance(error, SDK_STATUS_ERRORS):
        return _status_message(error.status_code)
    if isinstance(error, (httpx.TransportError, *SDK_CONNECTION_ERRORS)):
        return "Vision API call failed - please check your connection and try again"
    if isinstance(error, (VisionAnalysisError, ProviderNotAvailable)):
        return str(error)
    return f"Analysis failed: {error!r}"
