import asyncio
import logging

from config.settings import VisionProvider, settings
from services.llm.base import ImageInput, LLMProvider, LLMResponse
from services.llm.providers.claude import ClaudeProvider
from services.llm.providers.gemini import GeminiProvider
from services.llm.providers.ollama import OllamaProvider
from services.llm.providers.openai import OpenAIProvider

log = logging.getLogger(__name__)

# provider -> (class, settings attribute holding its API key; None means no key needed)
PROVIDERS: dict[VisionProvider, tuple[type[LLMProvider], str | None]] = {
    VisionProvider.OLLAMA: (OllamaProvider, None),
    VisionProvider.OPENAI: (OpenAIProvider, "openai_api_key"),
    VisionProvider.CLAUDE: (ClaudeProvider, "claude_api_key"),
    VisionProvider.GEMINI: (GeminiProvider, "gemini_api_key"),
}


class ProviderNotAvailable(ValueError):
    pass


class LLMRouter:
    """Sends photo analysis requests to the configured vision provider.

    Ollama is always registered since it runs locally without a key. Cloud
    providers are registered only when their API key is set, so asking for
    one that is not configured fails fast instead of at request time.
    """

    def __init__(self, providers: dict[str, LLMProvider] | None = None):
        self._providers: dict[str, LLMProvider] = {}
        if providers is not None:
            self._providers.update(providers)
        else:
            self._register_configured()

    def _register_configured(self):
        for name, (cls, key_setting) in PROVIDERS.items():
            if key_setting is None or getattr(settings, key_setting):
                self._providers[name.value] = cls()
        log.info(f"Registered vision providers: {', '.join(self._providers)}")

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    def get_provider(self, name: str | None = None) -> LLMProvider:
        name = name or settings.vision_provider.value
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotAvailable(
                f"Vision provider '{name}' is not configured. Available: {self.names}"
            ) from None

    async def complete(
        self,
        prompt: str,
        system: str = "",
        provider: str | None = None,
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        images: list[ImageInput] | None = None,
    ) -> LLMResponse:
        p = self.get_provider(provider)
        size = sum(len(image.data) for image in images or [])
        log.info(f"Vision request to {p.provider_name}: {len(images or [])} image(s), {size} bytes")
        response = await p.complete(
            prompt=prompt,
            system=system,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            images=images,
        )
        log.debug(f"{p.provider_name} usage: {response.usage}")
        return response

    async def health(self) -> dict[str, bool]:
        names = self.names
        results = await asyncio.gather(
            *(self._providers[n].is_available() for n in names), return_exceptions=True
        )
        return {n: r is True for n, r in zip(names, results)}


# Singleton instance
llm_router = LLMRouter()
