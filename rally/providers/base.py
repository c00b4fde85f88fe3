"""Abstract base for all AI model providers."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from rally.models import ConversationTurn
from rally.sse import StreamEvent


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        self.message = message
        super().__init__(f"[{provider_name}] {message}")


class ConfigurationError(ProviderError):
    """The credential a provider needs is not set."""

    def __init__(self, provider_name: str, env_key: str) -> None:
        self.env_key = env_key
        super().__init__(provider_name, f"Missing API key: {env_key}")


class ProviderHTTPError(ProviderError):
    """The provider answered with a non-2xx status."""

    def __init__(self, provider_name: str, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(provider_name, f"HTTP {status_code}: {body[:200]}")


@dataclass
class PreparedRequest:
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] = field(default_factory=dict)


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    timeout_sec: float = 30.0

    @abstractmethod
    def name(self) -> str:
        """Return the short provider id (e.g. 'gpt', 'ollama')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    def display_name(self) -> str:
        return self.name()

    @abstractmethod
    def build_request(self, prompt: str, context: Sequence[ConversationTurn]) -> PreparedRequest:
        """Build the HTTP request for a prompt and the turns before it.

        Raises:
            ConfigurationError: If the provider's credential is not set.
        """
        ...

    @abstractmethod
    def events(
        self,
        client: httpx.AsyncClient,
        prompt: str,
        context: Sequence[ConversationTurn],
    ) -> AsyncIterator[StreamEvent]:
        """Send the prompt and yield normalized events until a terminal one.

        Raises:
            ConfigurationError: Before any network activity, on a missing credential.
            ProviderHTTPError: On a non-2xx answer.
            ProviderError: On a body that cannot be interpreted.
            httpx.HTTPError: On a failure to connect or send.
        """
        ...
