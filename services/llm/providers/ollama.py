import logging

import httpx

from config.settings import settings
from services.llm.base import ImageInput, LLMProvider, LLMResponse

log = logging.getLogger(__name__)


class OllamaProvider(LLMProvider):
    """Local Ollama vision model; photos never leave the machine."""

    provider_name = "ollama"

    def __init__(self, base_url: str | None = None, model: str | None = None, transport=None):
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.default_model = model or settings.ollama_vision_model
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    def _chat_payload(self, prompt, system, model, temperature, max_tokens, images) -> dict:
        # Ollama takes images as bare base64 strings on the message, not data URLs.
        user = {"role": "user", "content": prompt}
        if images:
            user["images"] = [image.b64() for image in images]
        messages = [{"role": "system", "content": system}] if system else []
        messages.append(user)
        return {
            "model": model,
            "messages": messages,
            "stream": False,
            "format": "json",
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }

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
        payload = self._chat_payload(prompt, system, model, temperature, max_tokens, images)

        async with self._client(settings.vision_timeout_seconds) as client:
            resp = await client.post("/api/chat", json=payload)
            resp.raise_for_status()
            data = resp.json()

        return LLMResponse(
            content=data["message"]["content"],
            model=data.get("model", model),
            provider=self.provider_name,
            usage={
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": data.get("eval_count", 0),
            },
            raw=data,
        )

    async def is_available(self) -> bool:
        """True when the server answers and the vision model has been pulled."""
        try:
            async with self._client(5.0) as client:
                resp = await client.get("/api/tags")
        except httpx.HTTPError as e:
            log.debug(f"Ollama not reachable at {self.base_url}: {e}")
            return False
        if resp.status_code != 200:
            return False

        pulled = [m.get("name", "") for m in resp.json().get("models", [])]
        if not any(name.split(":")[0] == self.default_model.split(":")[0] for name in pulled):
            log.warning(f"Ollama is up but {self.default_model} has not been pulled")
            return False
        return True
