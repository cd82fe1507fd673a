import logging

from config.settings import settings
from services.llm.base import ImageInput, LLMProvider, LLMResponse

log = logging.getLogger(__name__)


class GeminiProvider(LLMProvider):
    """Google Gemini; cheap multimodal for large batches.

    Images are passed as inline blobs and the reply is forced to JSON.
    """

    provider_name = "gemini"

    def __init__(self, api_key: str | None = None, model: str | None = None):
        self.api_key = api_key or settings.gemini_api_key
        self.default_model = model or settings.gemini_model

    @staticmethod
    def _parts(prompt: str, images: list[ImageInput] | None) -> list:
        parts: list = [{"mime_type": image.media_type, "data": image.data} for image in images or []]
        parts.append(prompt)
        return parts

    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        images: list[ImageInput] | None = None,
    ) -> LLMResponse:
        import google.generativeai as genai

        model_name = model or self.default_model
        genai.configure(api_key=self.api_key)
        vision_model = genai.GenerativeModel(model_name=model_name, system_instruction=system or None)

        response = await vision_model.generate_content_async(
            self._parts(prompt, images),
            generation_config=genai.types.GenerationConfig(
                temperature=temperature,
                max_output_tokens=max_tokens,
                response_mime_type="application/json",
            ),
            request_options={"timeout": settings.vision_timeout_seconds},
        )

        meta = getattr(response, "usage_metadata", None)
        usage = {}
        if meta is not None:
            usage = {
                "prompt_tokens": meta.prompt_token_count,
                "completion_tokens": meta.candidates_token_count,
            }
        return LLMResponse(content=response.text, model=model_name, provider=self.provider_name, usage=usage)

    async def is_available(self) -> bool:
        return bool(self.api_key)
