import logging

from config.settings import settings
from services.llm.base import ImageInput, LLMProvider, LLMResponse

log = logging.getLogger(__name__)


def _image_part(image: ImageInput) -> dict:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{image.media_type};base64,{image.b64()}"},
    }


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions with images sent inline as base64 data URLs.

    Images are always inlined, never passed as URLs, so private buckets and
    local files work the same way. `base_url` also points this at any
    OpenAI-compatible endpoint.
    """

    provider_name = "openai"

    def __init__(self, api_key: str | None = None, model: str | None = None, base_url: str | None = None, client=None):
        self.api_key = api_key or settings.openai_api_key
        self.default_model = model or settings.openai_model
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import openai

            # Retries 429/5xx and connection errors with backoff.
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=settings.vision_timeout_seconds,
                max_retries=settings.vision_max_retries,
            )
        return self._client

    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        images: list[ImageInput] | None = None,
    ) -> LLMResponse:
        model = model or self.default_model

        content = [{"type": "text", "text": prompt}]
        content.extend(_image_part(image) for image in images or [])
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": content})

        resp = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        choice = resp.choices[0]
        if choice.finish_reason == "length":
            log.warning(f"OpenAI response truncated at {max_tokens} tokens")

        usage = resp.usage
        return LLMResponse(
            content=choice.message.content or "",
            model=resp.model or model,
            provider=self.provider_name,
            usage={
                "prompt_tokens": usage.prompt_tokens if usage else 0,
                "completion_tokens": usage.completion_tokens if usage else 0,
            },
        )

    async def is_available(self) -> bool:
        return bool(self.api_key)
