"""Per-provider response lifecycle: pending -> streaming -> terminal.

A ResponseMachine drives one provider call for one ProviderResponse and
publishes every transition as a field-level patch of that response. It is
the single authority for when a response is done.
"""

import asyncio
import contextlib
import copy
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from typing import Any

import httpx

from rally.errors import InvalidTransitionError
from rally.metrics import compute_metrics, now_ms
from rally.models import (
    ERROR,
    PENDING,
    RATE_LIMITED,
    STREAMING,
    SUCCESS,
    TIMEOUT,
    ConversationTurn,
    ProviderResponse,
    ResponseMetrics,
)
from rally.providers.base import AIProvider, ConfigurationError, ProviderError, ProviderHTTPError
from rally.providers.classify import (
    UNCONFIGURED,
    classify_failure,
    failure_message,
    fallback_text,
)
from rally.providers.classify import RATE_LIMITED as RATE_LIMITED_CLASS

logger = logging.getLogger(__name__)

# (response_id, changed fields) -> None
Publisher = Callable[[str, dict[str, Any]], Awaitable[None]]

_MAX_STREAMING_PROGRESS = 95


def new_response(provider: str, prompt: str, clock: Callable[[], float] = now_ms) -> ProviderResponse:
    return ProviderResponse(id=str(uuid.uuid4()), provider=provider, prompt=prompt, timestamp=clock())


def retry_response(response: ProviderResponse, clock: Callable[[], float] = now_ms) -> ProviderResponse:
    """Send a terminal response back to pending for a fresh attempt.

    The id is kept; text, metrics and progress restart from zero and
    retry_count goes up by one.
    """
    if not response.is_terminal:
        raise InvalidTransitionError(
            f"Cannot retry {response.provider} response {response.id} while it is {response.status}"
        )
    return replace(
        response,
        status=PENDING,
        response_text="",
        metrics=ResponseMetrics(),
        error_message=None,
        streaming_progress=0,
        is_streaming=False,
        retry_count=response.retry_count + 1,
        timestamp=clock(),
    )


class ResponseMachine:
    """Drives one provider call and publishes each state change."""

    def __init__(
        self,
        response: ProviderResponse,
        provider: AIProvider,
        publish: Publisher,
        *,
        fallback_to_success: bool = True,
        progress_chars: int = 2000,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        if response.status != PENDING:
            raise InvalidTransitionError(f"Machine must start from pending, got {response.status}")
        self.response = copy.deepcopy(response)
        self._provider = provider
        self._publish = publish
        self._fallback_to_success = fallback_to_success
        self._progress_chars = max(1, progress_chars)
        self._clock = clock
        self._first_token_ms: float | None = None

    async def run(self, client: httpx.AsyncClient, context: Sequence[ConversationTurn]) -> ProviderResponse:
        """Run the provider call to a terminal state and return the final response.

        Provider-side failures end in a terminal state here; only
        unexpected exceptions propagate.
        """
        timeout = self._provider.timeout_sec
        try:
            await asyncio.wait_for(self._drive(client, context), timeout=timeout)
        except TimeoutError:
            if self.response.is_terminal:
                # deadline hit while the terminal patch was being published
                await self._publish(self.response.id, self._terminal_fields())
            else:
                await self.fail(TIMEOUT, f"Request timed out after {timeout:g}s")
        return self.response

    async def _drive(self, client: httpx.AsyncClient, context: Sequence[ConversationTurn]) -> None:
        try:
            stream = self._provider.events(client, self.response.prompt, context)
            async with contextlib.aclosing(stream):
                async for event in stream:
                    if event.content_delta:
                        await self.apply_delta(event.content_delta)
                    if event.error_payload is not None:
                        if event.transport_error:
                            await self.fail(ERROR, event.error_payload)
                        else:
                            await self._classified(None, event.error_payload)
                        return
                    if event.finished:
                        await self.succeed()
                        return
            await self.succeed()
        except ConfigurationError as exc:
            display = self._provider.display_name()
            await self._fallback(UNCONFIGURED, failure_message(display, UNCONFIGURED, exc.env_key))
        except ProviderHTTPError as exc:
            await self._classified(exc.status_code, exc.body)
        except ProviderError as exc:
            await self._classified(None, exc.message)
        except httpx.TimeoutException as exc:
            await self.fail(TIMEOUT, str(exc) or f"Request timed out after {self._provider.timeout_sec:g}s")
        except httpx.HTTPError as exc:
            await self.fail(ERROR, str(exc) or type(exc).__name__)

    def _check_open(self, action: str) -> None:
        if self.response.is_terminal:
            raise InvalidTransitionError(
                f"Cannot {action} {self.response.provider} response {self.response.id}: already {self.response.status}"
            )

    async def apply_delta(self, text: str) -> None:
        self._check_open("append to")
        now = self._clock()
        changes: dict[str, Any] = {}
        if self.response.status == PENDING:
            self._first_token_ms = now
            changes["status"] = STREAMING
            changes["is_streaming"] = True

        response_text = self.response.response_text + text
        estimate = min(_MAX_STREAMING_PROGRESS, 5 + (100 * len(response_text)) // self._progress_chars)
        changes["response_text"] = response_text
        changes["metrics"] = compute_metrics(self.response.timestamp, now, response_text, self._first_token_ms)
        changes["streaming_progress"] = max(self.response.streaming_progress, estimate)
        await self._apply(changes)
        logger.debug(
            "%s: +%d chars (%d total, %d%%)",
            self.response.provider, len(text), len(response_text), self.response.streaming_progress,
        )

    async def succeed(self) -> None:
        self._check_open("complete")
        await self._apply({
            "status": SUCCESS,
            "response_text": self.response.response_text,
            "is_streaming": False,
            "streaming_progress": 100,
            "metrics": self._final_metrics(),
        })

    async def fail(self, status: str, message: str) -> None:
        self._check_open("fail")
        await self._apply({
            "status": status,
            "response_text": self.response.response_text,
            "error_message": message,
            "is_streaming": False,
            "streaming_progress": 0,
            "metrics": self._final_metrics(),
        })
        logger.warning("%s: %s (%s)", self.response.provider, status, message)

    async def _classified(self, status_code: int | None, detail: str) -> None:
        failure_class = classify_failure(status_code, detail)
        logger.warning(
            "%s: provider failure classified as %s (status=%s): %.200s",
            self.response.provider, failure_class, status_code, detail,
        )
        await self._fallback(failure_class, failure_message(self._provider.display_name(), failure_class))

    async def _fallback(self, failure_class: str, message: str) -> None:
        """Graceful-success policy: answer with an explanation and keep the error message.

        With the policy switched off the failure ends in a real error status.
        """
        if not self._fallback_to_success:
            await self.fail(RATE_LIMITED if failure_class == RATE_LIMITED_CLASS else ERROR, message)
            return

        self._check_open("complete")
        explanation = fallback_text(self._provider.display_name(), message)
        previous = self.response.response_text
        response_text = f"{previous}\n\n{explanation}" if previous else explanation
        await self._apply({
            "status": SUCCESS,
            "response_text": response_text,
            "error_message": message,
            "is_streaming": False,
            "streaming_progress": 100,
            "metrics": self._final_metrics(response_text),
        })

    def _final_metrics(self, text: str | None = None) -> ResponseMetrics:
        return compute_metrics(
            self.response.timestamp,
            self._clock(),
            self.response.response_text if text is None else text,
            self._first_token_ms,
            final=True,
        )

    def _terminal_fields(self) -> dict[str, Any]:
        keys = ("status", "response_text", "error_message", "is_streaming", "streaming_progress", "metrics")
        return {key: copy.deepcopy(getattr(self.response, key)) for key in keys}

    async def _apply(self, changes: dict[str, Any]) -> None:
        for key, value in changes.items():
            setattr(self.response, key, value)
        await self._publish(self.response.id, copy.deepcopy(changes))
