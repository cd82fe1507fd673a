import logging

from config.settings import settings
from services.llm.base import ImageInput, LLMProvider, LLMResponse

log = logging.getLogger(__name__)


def _image_block(image: ImageInput) -> dict:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": image.media_type, "data": image.b64()},
    }


class ClaudeProvider(LLMProvider):
    """Anthropic Claude; strong at reading small print on packaging.

    Photos go before the instructions in the user turn, which is the order
    Anthropic recommends for image prompts.
    """

    provider_name = "claude"

    def __init__(self, api_key: str | None = None, model: str | None = None, client=None):
        self.api_key = api_key or settings.claude_api_key
        self.default_model = model or settings.claude_model
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import anthropic

            # The SDK does its own retry with backoff on 429/5xx.
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
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
        content = [_image_block(image) for image in images or []]
        content.append({"type": "text", "text": prompt})

        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system:
            kwargs["system"] = system

        message = await self.client.messages.create(**kwargs)
        text = "".join(block.text for block in message.content if block.type == "text")
        if message.stop_reason == "max_tokens":
            log.warning(f"Claude response truncated at {max_tokens} tokens")

        return LLMResponse(
            content=text,
            model=message.model or model,
            provider=self.provider_name,
            usage={
                "prompt_tokens": message.usage.input_tokens,
                "completion_tokens": message.usage.output_tokens,
            },
        )

    async def is_available(self) -> bool:
        return bool(self.api_key)
