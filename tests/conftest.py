"""Shared pytest fixtures."""

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Sequence

import httpx
import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig
from rally.models import ConversationTurn, ProviderResponse
from rally.providers.base import AIProvider, PreparedRequest
from rally.sse import StreamEvent

OPENAI_URL = "https://api.openai.test/v1/chat/completions"
OLLAMA_URL = "http://localhost:11434/api/generate"


def sse_body(*payloads: dict | str, done: bool = True) -> str:
    """Render payloads as an SSE body, one ``data:`` line each."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
        lines.append(f"data: {data}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines)


def delta_chunk(content: str, finish_reason: str | None = None) -> dict:
    return {"choices": [{"delta": {"content": content}, "finish_reason": finish_reason}]}


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_model_config(name: str = "gpt", **overrides) -> ModelConfig:
    values = dict(
        name=name,
        display_name=name.upper(),
        endpoint=OPENAI_URL,
        model="gpt-4o-mini",
        api_key_env="TEST_OPENAI_KEY",
        timeout_sec=5.0,
        max_tokens=256,
    )
    values.update(overrides)
    return ModelConfig(**values)


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return make_model_config()


@pytest.fixture
def flat_model_config() -> ModelConfig:
    return make_model_config(
        "ollama",
        endpoint=OLLAMA_URL,
        model="llama2",
        api_key_env=None,
        auth="none",
        stream=False,
        response_shape="flat",
    )


@pytest.fixture
def sample_app_config(sample_model_config: ModelConfig, flat_model_config: ModelConfig) -> AppConfig:
    return AppConfig(
        defaults=DefaultsConfig(enabled_providers=["gpt", "ollama"], request_timeout_sec=5.0),
        models={"gpt": sample_model_config, "ollama": flat_model_config},
        available_providers={"ollama"},
    )


@pytest.fixture
def api_key(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setenv("TEST_OPENAI_KEY", "sk-test")
    return "sk-test"


class MockProvider(AIProvider):
    """Test double AIProvider that replays a scripted list of events.

    ``gate`` (optional) is awaited before the first event so tests can hold
    a provider mid-flight; ``delay_sec`` is slept between events.
    """

    def __init__(
        self,
        provider_name: str = "mock",
        chunks: Sequence[str] = ("Mock ", "response"),
        *,
        error: Exception | None = None,
        events: Sequence[StreamEvent] | None = None,
        delay_sec: float = 0.0,
        gate: asyncio.Event | None = None,
        timeout_sec: float = 5.0,
    ) -> None:
        self._name = provider_name
        self._chunks = list(chunks)
        self._error = error
        self._events = list(events) if events is not None else None
        self._delay_sec = delay_sec
        self.gate = gate
        self.timeout_sec = timeout_sec
        self.calls: list[tuple[str, list[ConversationTurn]]] = []

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    def build_request(self, prompt: str, context: Sequence[ConversationTurn]) -> PreparedRequest:
        return PreparedRequest(url=f"mock://{self._name}", body={"prompt": prompt})

    def _script(self) -> list[StreamEvent]:
        if self._events is not None:
            return self._events
        return [StreamEvent(content_delta=c) for c in self._chunks] + [StreamEvent(finished=True)]

    async def events(
        self,
        client: httpx.AsyncClient,
        prompt: str,
        context: Sequence[ConversationTurn],
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append((prompt, list(context)))
        if self.gate is not None:
            await self.gate.wait()
        if self._error is not None:
            raise self._error
        for event in self._script():
            if self._delay_sec:
                await asyncio.sleep(self._delay_sec)
            yield event


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def sample_response() -> ProviderResponse:
    return ProviderResponse(id="r-1", provider="gpt", prompt="Hello?", timestamp=1_000.0)


@pytest.fixture
async def client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as c:
        yield c
