import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class LLMResponse:
    content: str
    model: str
    provider: str
    usage: dict = field(default_factory=dict)
    raw: dict | None = None


@dataclass
class ImageInput:
    data: bytes
    media_type: str = "image/jpeg"

    def b64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class LLMProvider(ABC):
    """Base class for all multimodal LLM providers."""

    provider_name: str = "base"

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        images: list[ImageInput] | None = None,
    ) -> LLMResponse: ...

    @abstractmethod
    async def is_available(self) -> bool: ...
