"""Offline provider that streams a canned answer word by word."""

import asyncio
from collections.abc import AsyncIterator, Sequence

import httpx

from config.config_loader import ModelConfig
from rally.models import ConversationTurn
from rally.providers.base import AIProvider, PreparedRequest
from rally.sse import StreamEvent


class SimulatedProvider(AIProvider):
    """Stands in for a real backend when exploring the tool without credentials."""

    def __init__(self, config: ModelConfig, delay_sec: float = 0.1) -> None:
        self._config = config
        self._delay_sec = delay_sec
        self.timeout_sec = config.timeout_sec

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def display_name(self) -> str:
        return self._config.display_name or self._config.name

    def build_request(self, prompt: str, context: Sequence[ConversationTurn]) -> PreparedRequest:
        return PreparedRequest(url=f"simulated://{self._config.name}", body={"prompt": prompt})

    def _words(self, prompt: str) -> list[str]:
        return [
            "This", "is", "a", "simulated", "response", "from", self.display_name(),
            "for", "the", "prompt:", f'"{prompt}".',
            "A", "configured", "provider", "would", "answer", "from", "its", "API.",
        ]

    async def events(
        self,
        client: httpx.AsyncClient,
        prompt: str,
        context: Sequence[ConversationTurn],
    ) -> AsyncIterator[StreamEvent]:
        for i, word in enumerate(self._words(prompt)):
            await asyncio.sleep(self._delay_sec)
            yield StreamEvent(content_delta=word if i == 0 else f" {word}")
        yield StreamEvent(finished=True)
