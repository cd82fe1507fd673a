"""Tests for the vision providers and router: HTTP mocked with httpx.MockTransport."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from config.settings import settings
from services.llm.base import ImageInput, LLMResponse
from services.llm.providers.claude import ClaudeProvider
from services.llm.providers.ollama import OllamaProvider
from services.llm.providers.openai import OpenAIProvider
from services.llm.router import LLMRouter, ProviderNotAvailable
from services.vision.analyzer import describe_analysis_error


def _chat_reply(content: str) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o-2024-08-06",
        "choices": [
            {"index": 0, "finish_reason": "stop", "message": {"role": "assistant", "content": content}}
        ],
        "usage": {"prompt_tokens": 11, "completion_tokens": 7, "total_tokens": 18},
    }


def _openai_client(handler, max_retries: int = 0) -> openai.AsyncOpenAI:
    return openai.AsyncOpenAI(
        api_key="sk-test",
        base_url="https://api.test/v1",
        max_retries=max_retries,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _busy(status: int) -> httpx.Response:
    # retry-after-ms keeps the SDK's wait between attempts to a millisecond.
    return httpx.Response(status, headers={"retry-after-ms": "1"}, json={"error": {"message": "busy"}})


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_images_sent_as_data_urls(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json=_chat_reply('{"name": "Aspirin"}'))

        provider = OpenAIProvider(model="gpt-4o", client=_openai_client(handler))
        resp = await provider.complete("identify", images=[ImageInput(b"abc", "image/png")], max_tokens=1500)

        assert resp.content == '{"name": "Aspirin"}'
        assert resp.model == "gpt-4o-2024-08-06"
        assert resp.usage == {"prompt_tokens": 11, "completion_tokens": 7}
        assert seen["url"] == "https://api.test/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        content = seen["body"]["messages"][0]["content"]
        assert content[0] == {"type": "text", "text": "identify"}
        assert content[1]["image_url"]["url"] == "data:image/png;base64,YWJj"
        assert seen["body"]["max_tokens"] == 1500
        assert seen["body"]["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_system_prompt_first(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_chat_reply("{}"))

        await OpenAIProvider(client=_openai_client(handler)).complete("p", system="be precise")

        assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_sdk_retries_rate_limit(self):
        statuses = iter([429, 503, 200])
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            status = next(statuses)
            if status == 200:
                return httpx.Response(200, json=_chat_reply("{}"))
            return _busy(status)

        resp = await OpenAIProvider(client=_openai_client(handler, max_retries=3)).complete("p")

        assert resp.content == "{}"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return _busy(500)

        with pytest.raises(openai.InternalServerError) as exc_info:
            await OpenAIProvider(client=_openai_client(handler, max_retries=2)).complete("p")

        assert len(calls) == 3
        assert describe_analysis_error(exc_info.value) == (
            "Vision API failed after multiple retries - please try again later"
        )

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(401, json={"error": {"message": "bad key"}})

        with pytest.raises(openai.AuthenticationError) as exc_info:
            await OpenAIProvider(client=_openai_client(handler, max_retries=3)).complete("p")

        assert len(calls) == 1
        assert describe_analysis_error(exc_info.value) == "Vision API call failed with status 401"

    def test_default_client_uses_settings(self):
        provider = OpenAIProvider(api_key="k", base_url="https://compat.test/v1/")
        client = provider.client

        assert isinstance(client, openai.AsyncOpenAI)
        assert client is provider.client
        assert str(client.base_url).startswith("https://compat.test/v1")
        assert client.max_retries == settings.vision_max_retries
        assert client.timeout == settings.vision_timeout_seconds

    @pytest.mark.asyncio
    async def test_available_with_key(self):
        assert await OpenAIProvider(api_key="k").is_available()


class TestOllamaProvider:
    @pytest.mark.asyncio
    async def test_images_in_message(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"message": {"content": '{"name": "X"}'}})

        provider = OllamaProvider(base_url="http://ollama:11434", model="qwen", transport=httpx.MockTransport(handler))
        resp = await provider.complete("identify", images=[ImageInput(b"abc")])

        assert resp.content == '{"name": "X"}'
        assert seen["body"]["messages"][-1]["images"] == ["YWJj"]
        assert seen["body"]["format"] == "json"


class TestRouter:
    @pytest.mark.asyncio
    async def test_routes_to_named_provider(self):
        fake = AsyncMock()
        fake.provider_name = "fake"
        fake.complete.return_value = LLMResponse(content="{}", model="m", provider="fake")
        router = LLMRouter(providers={"fake": fake})

        resp = await router.complete("p", provider="fake", images=[ImageInput(b"1")])

        assert resp.provider == "fake"
        assert fake.complete.call_args.kwargs["images"] == [ImageInput(b"1")]

    def test_unknown_provider(self):
        router = LLMRouter(providers={})
        with pytest.raises(ProviderNotAvailable):
            router.get_provider("claude")

    @pytest.mark.asyncio
    async def test_health_fails_on_error(self):
        ok = AsyncMock()
        ok.is_available.return_value = True
        broken = AsyncMock()
        broken.is_available.side_effect = RuntimeError("down")
        router = LLMRouter(providers={"ok": ok, "broken": broken})

        assert await router.health() == {"ok": True, "broken": False}


class TestOllamaAvailability:
    @pytest.mark.asyncio
    async def test_model_must_be_pulled(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"models": [{"name": "llama3:8b"}]})

        provider = OllamaProvider(model="qwen2.5-vl:7b", transport=httpx.MockTransport(handler))
        assert await provider.is_available() is False

    @pytest.mark.asyncio
    async def test_pulled_model(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"models": [{"name": "qwen2.5-vl:latest"}]})

        provider = OllamaProvider(model="qwen2.5-vl:7b", transport=httpx.MockTransport(handler))
        assert await provider.is_available() is True

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = OllamaProvider(transport=httpx.MockTransport(handler))
        assert await provider.is_available() is False


class TestClaudeProvider:
    @pytest.mark.asyncio
    async def test_images_before_prompt(self):
        client = AsyncMock()
        client.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(type="text", text='{"name": "Aspirin"}')],
            model="claude-test",
            stop_reason="end_turn",
            usage=SimpleNamespace(input_tokens=100, output_tokens=20),
        )
        provider = ClaudeProvider(api_key="k", model="claude-test", client=client)

        resp = await provider.complete("identify", images=[ImageInput(b"abc", "image/png")])

        assert resp.content == '{"name": "Aspirin"}'
        assert resp.usage == {"prompt_tokens": 100, "completion_tokens": 20}
        content = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert content[0]["source"] == {"type": "base64", "media_type": "image/png", "data": "YWJj"}
        assert content[-1] == {"type": "text", "text": "identify"}
