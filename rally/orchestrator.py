"""Fan-out orchestration: parallel provider calls folded into one session.

Every mutation persists through the store and returns a full session
snapshot; subscribers of the session receive the same snapshot as a
``response-update`` event.
"""

import asyncio
import copy
import functools
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from config.config_loader import AppConfig
from rally.errors import AggregationError, InvalidArgumentError, InvalidTransitionError, NotFoundError
from rally.events import RESPONSE_UPDATE, EventHub
from rally.metrics import now_ms
from rally.models import ConversationTurn, ProviderResponse, SessionState
from rally.providers.base import AIProvider
from rally.providers.registry import build_providers
from rally.snapshot import response_to_dict, session_to_dict
from rally.state_machine import ResponseMachine, new_response, retry_response
from rally.store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class _Fanout:
    """In-flight work for the current turn of one session."""

    generation: int
    context: list[ConversationTurn]
    tasks: dict[str, asyncio.Task] = field(default_factory=dict)  # response id -> machine task
    waiters: list[asyncio.Task] = field(default_factory=list)

    def cancel(self) -> None:
        for task in self.tasks.values():
            if not task.done():
                task.cancel()

    def prune(self) -> None:
        """Forget finished work; failed waiters stay so wait_for_idle can re-raise."""
        self.tasks = {rid: task for rid, task in self.tasks.items() if not task.done()}
        self.waiters = [w for w in self.waiters if not w.done() or (not w.cancelled() and w.exception() is not None)]


class Orchestrator:
    """Session operations over a provider table, a store and a push channel."""

    def __init__(
        self,
        providers: dict[str, AIProvider],
        store: SessionStore | None = None,
        events: EventHub | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        default_providers: Sequence[str] | None = None,
        fallback_to_success: bool = True,
        progress_chars: int = 2000,
    ) -> None:
        self._providers = providers
        self._store = store or SessionStore()
        self.events = events or EventHub()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        self._default_providers = list(default_providers if default_providers is not None else providers)
        self._fallback_to_success = fallback_to_success
        self._progress_chars = progress_chars
        self._fanouts: dict[str, _Fanout] = {}

    @classmethod
    def from_config(cls, config: AppConfig, **kwargs: Any) -> "Orchestrator":
        kwargs.setdefault("default_providers", config.defaults.enabled_providers)
        kwargs.setdefault("fallback_to_success", config.defaults.fallback_to_success)
        kwargs.setdefault("progress_chars", config.defaults.progress_chars)
        return cls(build_providers(config), **kwargs)

    @property
    def providers(self) -> dict[str, AIProvider]:
        return self._providers

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def __aenter__(self) -> "Orchestrator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel in-flight work and release the HTTP client if we created it."""
        pending: list[asyncio.Task] = []
        for fanout in self._fanouts.values():
            fanout.cancel()
            pending.extend(fanout.tasks.values())
            pending.extend(fanout.waiters)
        self._fanouts.clear()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    # -- sessions --------------------------------------------------------

    async def create_session(self, user_id: str | None = None) -> SessionState:
        session = SessionState(
            id=str(uuid.uuid4()),
            user_id=user_id,
            enabled_providers=list(self._default_providers),
        )
        session = await self._store.create_session(session)
        logger.info("Created session %s (providers: %s)", session.id, ", ".join(session.enabled_providers))
        return session

    async def get_session(self, session_id: str) -> SessionState:
        if not session_id:
            raise InvalidArgumentError("sessionId is required")
        session = await self._store.get_session(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    async def toggle_provider(self, session_id: str, provider_id: str) -> SessionState:
        if not provider_id:
            raise InvalidArgumentError("providerId is required")
        if provider_id not in self._providers:
            raise InvalidArgumentError(f"Unknown provider: {provider_id}")

        def toggle(session: SessionState) -> None:
            if provider_id in session.enabled_providers:
                session.enabled_providers.remove(provider_id)
            else:
                session.enabled_providers.append(provider_id)

        session = await self._mutate(session_id, toggle)
        logger.info(
            "Provider %s %s for session %s",
            provider_id,
            "enabled" if provider_id in session.enabled_providers else "disabled",
            session_id,
        )
        return session

    async def reset_session(self, session_id: str) -> SessionState:
        """Return the session to its initial shape, keeping only its id."""

        def wipe(session: SessionState) -> None:
            session.user_id = None
            session.conversation_history = []
            session.current_prompt = ""
            session.current_responses = []
            session.is_processing = False
            session.selected_response_id = None
            session.enabled_providers = list(self._default_providers)
            session.generation += 1

        session = await self._mutate(session_id, wipe)
        self._supersede(session_id)
        logger.info("Reset session %s", session_id)
        return session

    # -- fan-out ---------------------------------------------------------

    async def submit_prompt(
        self,
        session_id: str,
        prompt: str,
        providers: Sequence[str] | None = None,
        context: Sequence[ConversationTurn] | None = None,
        *,
        wait: bool = True,
    ) -> SessionState:
        """Send ``prompt`` to every target provider concurrently.

        Targets default to the session's enabled providers, context to its
        conversation history. With ``wait`` the call returns once every
        provider has reached a terminal state; without it the pending
        snapshot is returned and the fan-out continues in the background.

        Raises:
            InvalidArgumentError: Missing session id or prompt, unknown or no providers.
            NotFoundError: Unknown session.
            AggregationError: The fan-out itself failed.
        """
        if not session_id or not prompt or not prompt.strip():
            raise InvalidArgumentError("sessionId and prompt are required")
        session = await self.get_session(session_id)

        targets = list(dict.fromkeys(providers if providers is not None else session.enabled_providers))
        unknown = [p for p in targets if p not in self._providers]
        if unknown:
            raise InvalidArgumentError(f"Unknown providers: {', '.join(unknown)}")
        if not targets:
            raise InvalidArgumentError("No providers selected")

        turn_context = list(context if context is not None else session.conversation_history)
        responses = [new_response(p, prompt) for p in targets]

        def start(s: SessionState) -> None:
            s.generation += 1
            s.current_prompt = prompt
            s.current_responses = copy.deepcopy(responses)
            s.is_processing = True
            s.selected_response_id = None

        session = await self._mutate(session_id, start)
        logger.info(
            "Submitting prompt (%d chars) to %d providers for session %s: %s",
            len(prompt), len(targets), session_id, ", ".join(targets),
        )

        self._supersede(session_id)
        fanout = _Fanout(generation=session.generation, context=turn_context)
        self._fanouts[session_id] = fanout
        tasks = [self._launch(session_id, fanout, r) for r in responses]

        if wait:
            return await self._await_machines(session_id, fanout, tasks)
        self._background(fanout, self._await_machines(session_id, fanout, tasks))
        return session

    async def retry_provider(self, session_id: str, provider_id: str, *, wait: bool = True) -> SessionState:
        """Re-run one provider of the current turn; the other slots are untouched.

        Raises:
            NotFoundError: Unknown session, or no response from that provider this turn.
            InvalidTransitionError: The provider's response is not terminal yet.
        """
        if not provider_id:
            raise InvalidArgumentError("providerId is required")
        session = await self.get_session(session_id)

        fanout = self._fanouts.get(session_id)
        if fanout is None or fanout.generation != session.generation:
            fanout = _Fanout(generation=session.generation, context=list(session.conversation_history))
            self._fanouts[session_id] = fanout

        retried: ProviderResponse | None = None

        def reset_slot(s: SessionState) -> None:
            nonlocal retried
            if s.generation != fanout.generation:
                raise InvalidTransitionError(f"Session {session_id} moved to a new turn during retry")
            slot = s.find_provider_response(provider_id)
            if slot is None:
                raise NotFoundError("response for provider", provider_id)
            retried = retry_response(slot)
            s.current_responses = [retried if r.id == slot.id else r for r in s.current_responses]
            s.is_processing = True

        session = await self._mutate(session_id, reset_slot)
        if retried is None:
            raise NotFoundError("response for provider", provider_id)
        logger.info("Retrying %s for session %s (attempt %d)", provider_id, session_id, retried.retry_count + 1)

        task = self._launch(session_id, fanout, retried)
        if wait:
            return await self._await_machines(session_id, fanout, [task])
        self._background(fanout, self._await_machines(session_id, fanout, [task]))
        return session

    async def wait_for_idle(self, session_id: str) -> SessionState:
        """Wait for background fan-out work of the session's current turn."""
        fanout = self._fanouts.get(session_id)
        while fanout is not None:
            pending = [w for w in fanout.waiters if not w.done()]
            if not pending:
                # surface a background AggregationError, if any
                await asyncio.gather(*fanout.waiters)
                break
            await asyncio.gather(*pending)
        return await self.get_session(session_id)

    def _launch(self, session_id: str, fanout: _Fanout, response: ProviderResponse) -> asyncio.Task:
        previous = fanout.tasks.get(response.id)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.create_task(
            self._run_machine(session_id, fanout, response),
            name=f"rally:{session_id}:{response.provider}",
        )
        fanout.tasks[response.id] = task
        return task

    def _background(self, fanout: _Fanout, coro: Any) -> None:
        fanout.prune()
        waiter = asyncio.create_task(coro)
        waiter.add_done_callback(_log_background_failure)
        fanout.waiters.append(waiter)

    async def _run_machine(self, session_id: str, fanout: _Fanout, response: ProviderResponse) -> ProviderResponse:
        provider = self._providers[response.provider]
        machine = ResponseMachine(
            response,
            provider,
            functools.partial(self._publish, session_id, fanout.generation),
            fallback_to_success=self._fallback_to_success,
            progress_chars=self._progress_chars,
        )
        result = await machine.run(self._client, fanout.context)
        logger.info(
            "%s: %s in %s ms, %d chars%s",
            response.provider,
            result.status,
            result.metrics.latency_ms,
            result.metrics.response_length,
            f" ({result.error_message})" if result.error_message else "",
        )
        return result

    async def _await_machines(self, session_id: str, fanout: _Fanout, tasks: list[asyncio.Task]) -> SessionState:
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.info("Fan-out for session %s was superseded", session_id)
            return await self.get_session(session_id)
        except Exception as exc:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await self._settle(session_id, fanout.generation, abandoned=True)
            logger.error("Fan-out for session %s failed: %r", session_id, exc)
            raise AggregationError(session_id, exc) from exc
        return await self._settle(session_id, fanout.generation)

    async def _settle(self, session_id: str, generation: int, abandoned: bool = False) -> SessionState:
        def finish(session: SessionState) -> None:
            if session.generation != generation:
                return
            if abandoned:
                session.is_processing = False
            else:
                session.is_processing = any(not r.is_terminal for r in session.current_responses)

        session = await self._mutate(session_id, finish)
        fanout = self._fanouts.get(session_id)
        if fanout is not None and fanout.generation == generation:
            fanout.prune()
        if not session.is_processing:
            logger.info("All providers finished for session %s", session_id)
        return session

    async def _publish(self, session_id: str, generation: int, response_id: str, changes: dict[str, Any]) -> None:
        session = await self._store.patch_response(session_id, response_id, changes, generation)
        if session is None:
            logger.debug("Discarded stale update for response %s in session %s", response_id, session_id)
            return
        self._emit(session)

    def _supersede(self, session_id: str) -> None:
        fanout = self._fanouts.pop(session_id, None)
        if fanout is not None:
            fanout.cancel()

    # -- turns -----------------------------------------------------------

    async def select_best(self, session_id: str, response_id: str) -> SessionState:
        """Close the current turn with ``response_id`` as its answer.

        The only path that grows conversation history. In-flight work for
        the closed turn is cancelled.
        """
        if not session_id or not response_id:
            raise InvalidArgumentError("sessionId and responseId are required")

        closed: ConversationTurn | None = None

        def close_turn(session: SessionState) -> None:
            nonlocal closed
            selected = session.find_response(response_id)
            if selected is None:
                raise NotFoundError("response", response_id)
            closed = ConversationTurn(
                id=str(uuid.uuid4()),
                user_prompt=session.current_prompt,
                selected_response=copy.deepcopy(selected),
                all_responses=copy.deepcopy(session.current_responses),
                timestamp=now_ms(),
            )
            session.conversation_history.append(closed)
            session.current_prompt = ""
            session.current_responses = []
            session.is_processing = False
            session.selected_response_id = response_id
            session.generation += 1

        session = await self._mutate(session_id, close_turn)
        if closed is None:
            raise NotFoundError("response", response_id)
        self._supersede(session_id)
        await self._record_turn(session, closed)
        logger.info(
            "Session %s: turn %d closed with %s",
            session_id, len(session.conversation_history), closed.selected_response.provider,
        )
        return session

    async def _record_turn(self, session: SessionState, turn: ConversationTurn) -> None:
        await self._store.create_conversation({
            "id": turn.id,
            "sessionId": session.id,
            "userId": session.user_id,
            "userPrompt": turn.user_prompt,
            "selectedResponseId": turn.selected_response.id if turn.selected_response else None,
            "responseIds": [r.id for r in turn.all_responses],
            "timestamp": turn.timestamp,
        })
        for response in turn.all_responses:
            doc = response_to_dict(response)
            doc.update({
                "sessionId": session.id,
                "conversationId": turn.id,
                "selected": turn.selected_response is not None and response.id == turn.selected_response.id,
            })
            await self._store.create_response(doc)

    async def list_conversations(self, session_id: str) -> list[dict[str, Any]]:
        await self.get_session(session_id)
        conversations = await self._store.find_conversations(sessionId=session_id)
        return sorted(conversations, key=lambda c: c["timestamp"])

    async def list_responses(self, conversation_id: str) -> list[dict[str, Any]]:
        if await self._store.get_conversation(conversation_id) is None:
            raise NotFoundError("conversation", conversation_id)
        return await self._store.find_responses(conversationId=conversation_id)

    # -- persistence + push ----------------------------------------------

    async def _mutate(self, session_id: str, edit: Callable[[SessionState], None]) -> SessionState:
        if not session_id:
            raise InvalidArgumentError("sessionId is required")
        session = await self._store.mutate(session_id, edit)
        if session is None:
            raise NotFoundError("session", session_id)
        self._emit(session)
        return session

    def _emit(self, session: SessionState) -> None:
        if self.events.subscriber_count(session.id):
            self.events.emit(session.id, RESPONSE_UPDATE, session_to_dict(session))


def _log_background_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background fan-out failed: %s", exc)
