"""Data-driven provider for every HTTP backend, configured by a ModelConfig descriptor."""

import logging
import os
from collections.abc import AsyncIterator, Sequence

import httpx

from config.config_loader import ModelConfig
from rally.models import ConversationTurn
from rally.providers.base import (
    AIProvider,
    ConfigurationError,
    PreparedRequest,
    ProviderError,
    ProviderHTTPError,
)
from rally.providers.shapes import SHAPES
from rally.sse import SSEDecoder, StreamEvent, consume_stream

logger = logging.getLogger(__name__)


class HTTPProvider(AIProvider):
    """Chat-completions style backend reached over plain HTTP.

    Everything that differs between vendors (endpoint, credential, model,
    extra headers, streaming, response shape) comes from the descriptor.
    """

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        self._shape = SHAPES[config.response_shape]
        self.timeout_sec = config.timeout_sec

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def display_name(self) -> str:
        return self._config.display_name or self._config.name

    @property
    def config(self) -> ModelConfig:
        return self._config

    def _credential_headers(self) -> dict[str, str]:
        if self._config.auth == "none":
            return {}
        env_key = self._config.api_key_env or ""
        api_key = os.environ.get(env_key, "").strip() if env_key else ""
        if not api_key:
            raise ConfigurationError(self._config.name, env_key or f"an API key for {self._config.name}")
        if self._config.auth == "api-key":
            return {"api-key": api_key}
        return {"Authorization": f"Bearer {api_key}"}

    def build_request(self, prompt: str, context: Sequence[ConversationTurn]) -> PreparedRequest:
        headers = {"Content-Type": "application/json"}
        headers.update(self._config.headers)
        headers.update(self._credential_headers())
        return PreparedRequest(
            url=self._config.endpoint,
            headers=headers,
            body=self._shape.body(self._config, prompt, context),
        )

    def interpret_stream(self, chunks: AsyncIterator[str | bytes]) -> AsyncIterator[StreamEvent]:
        decoder = SSEDecoder(self._config.name, self._shape.extract_delta)
        return consume_stream(chunks, decoder)

    def interpret_response(self, payload: dict) -> list[StreamEvent]:
        """A single-shot body becomes one content event that also finishes the stream."""
        text = self._shape.extract_text(payload) if isinstance(payload, dict) else None
        if text is None:
            logger.error("Unexpected %s response format: %.200s", self._config.name, payload)
            raise ProviderError(self._config.name, f"Invalid response format from {self.display_name()} API")
        return [StreamEvent(content_delta=text or None, finished=True)]

    async def events(
        self,
        client: httpx.AsyncClient,
        prompt: str,
        context: Sequence[ConversationTurn],
    ) -> AsyncIterator[StreamEvent]:
        request = self.build_request(prompt, context)
        logger.debug(
            "%s: POST %s (model=%s, stream=%s, %d context turns)",
            self._config.name, request.url, self._config.model, self._config.stream, len(context),
        )

        if self._config.stream:
            async with client.stream(
                "POST",
                request.url,
                headers=request.headers,
                json=request.body,
                timeout=self._config.timeout_sec,
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise ProviderHTTPError(self._config.name, response.status_code, body)
                async for event in self.interpret_stream(response.aiter_text()):
                    yield event
            return

        response = await client.post(
            request.url,
            headers=request.headers,
            json=request.body,
            timeout=self._config.timeout_sec,
        )
        if not response.is_success:
            raise ProviderHTTPError(self._config.name, response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(self._config.name, f"Response is not JSON: {exc}") from exc
        for event in self.interpret_response(payload):
            yield event
