"""Tests for services/vision/analyzer.py: response parsing and the single-request contract."""

import json
from unittest.mock import AsyncMock

import anthropic
import httpx
import openai
import pytest

from services.llm.base import LLMResponse
from services.vision.analyzer import (
    MedicineImageAnalyzer,
    MedicineNotIdentified,
    VisionAnalysisError,
    describe_analysis_error,
    extract_json,
    parse_analysis,
    sanitize_medicine_data,
)


class TestParsing:
    def test_plain_json(self):
        assert extract_json('{"name": "Aspirin"}') == {"name": "Aspirin"}

    def test_json_wrapped_in_prose(self):
        text = 'Here is the data:\n```json\n{"name": "Aspirin", "dosage_form": "tablet"}\n```'
        assert extract_json(text) == {"name": "Aspirin", "dosage_form": "tablet"}

    def test_garbage_raises(self):
        with pytest.raises(VisionAnalysisError, match="Invalid response format"):
            extract_json("I cannot help with that")

    def test_error_key_means_not_identified(self):
        with pytest.raises(MedicineNotIdentified, match="Unable to identify medicine clearly"):
            parse_analysis('{"error": "Unable to identify medicine clearly"}')

    def test_empty_result_raises(self):
        with pytest.raises(VisionAnalysisError, match="No useful information"):
            parse_analysis('{"name": "", "unknown_field": "x"}')


class TestSanitize:
    def test_numbers_converted(self):
        data = sanitize_medicine_data(
            {"name": "Ibuprofen", "strength_value": "400", "total_quantity": "20 tablets", "remaining_quantity": 5}
        )
        assert data["strength_value"] == 400.0
        assert data["total_quantity"] == 20.0
        assert data["remaining_quantity"] == 5.0

    def test_unknown_and_empty_keys_dropped(self):
        data = sanitize_medicine_data({"name": "Ibuprofen", "color": "white", "brand_name": "", "lot_number": None})
        assert data == {"name": "Ibuprofen"}

    def test_enum_values_normalized(self):
        data = sanitize_medicine_data({"dosage_form": "Tablet", "container_type": "Blister Pack"})
        assert data == {"dosage_form": "tablet", "container_type": "blister_pack"}

    def test_enum_values_outside_sets_dropped(self):
        data = sanitize_medicine_data({"name": "X", "dosage_form": "lozenge", "container_type": "jar"})
        assert data == {"name": "X"}

    def test_ndc_code_kept(self):
        assert sanitize_medicine_data({"ndc_code": "0573-0164"}) == {"ndc_code": "0573-0164"}


class TestAnalyzer:
    @pytest.mark.asyncio
    async def test_all_photos_in_one_request(self):
        router = AsyncMock()
        router.complete.return_value = LLMResponse(
            content=json.dumps({"name": "Ibuprofen", "dosage_form": "tablet"}), model="m", provider="fake"
        )
        analyzer = MedicineImageAnalyzer(router=router, provider="fake")

        result = await analyzer.analyze_medicine_photos([("a.jpg", b"1"), ("b.png", b"2"), ("c.jpg", b"3")])

        assert result == {"name": "Ibuprofen", "dosage_form": "tablet"}
        router.complete.assert_awaited_once()
        images = router.complete.call_args.kwargs["images"]
        assert [i.media_type for i in images] == ["image/jpeg", "image/png", "image/jpeg"]
        assert router.complete.call_args.kwargs["provider"] == "fake"

    @pytest.mark.asyncio
    async def test_no_photos(self):
        analyzer = MedicineImageAnalyzer(router=AsyncMock())
        with pytest.raises(VisionAnalysisError):
            await analyzer.analyze_medicine_photos([])


class TestDescribeError:
    def test_timeout(self):
        assert "timeout" in describe_analysis_error(httpx.ReadTimeout("slow"))

    def test_retryable_status(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        error = httpx.HTTPStatusError("busy", request=request, response=httpx.Response(503, request=request))
        assert "after multiple retries" in describe_analysis_error(error)

    def test_analysis_error_passthrough(self):
        assert describe_analysis_error(MedicineNotIdentified("Unable to identify")) == "Unable to identify"

    def test_sdk_timeout_before_connection_error(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        assert describe_analysis_error(openai.APITimeoutError(request=request)) == "Vision API timeout - please try again"
        assert describe_analysis_error(openai.APIConnectionError(request=request)) == (
            "Vision API call failed - please check your connection and try again"
        )

    def test_sdk_status_errors(self):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        busy = anthropic.APIStatusError("overloaded", response=httpx.Response(529, request=request), body=None)
        limited = openai.APIStatusError("slow down", response=httpx.Response(429, request=request), body=None)
        assert describe_analysis_error(busy) == "Vision API call failed with status 529"
        assert describe_analysis_error(limited) == "Vision API failed after multiple retries - please try again later"
