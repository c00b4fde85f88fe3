"""In-memory async document store for sessions, conversations and responses.

Sessions are read and written as copies. Every write goes through
``mutate``, which applies a synchronous edit under a per-session lock, so
concurrent provider patches never overwrite each other with stale reads.
"""

import asyncio
import copy
import logging
from collections.abc import Callable
from typing import Any

from rally.metrics import now_ms
from rally.models import ProviderResponse, SessionState

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, SessionState] = {}
        self._conversations: dict[str, dict[str, Any]] = {}
        self._responses: dict[str, dict[str, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def create_session(self, session: SessionState) -> SessionState:
        async with self._lock(session.id):
            if session.id in self._sessions:
                raise ValueError(f"Session already exists: {session.id}")
            stamp = now_ms()
            stored = copy.deepcopy(session)
            stored.created_at = stored.created_at or stamp
            stored.updated_at = stamp
            self._sessions[session.id] = stored
            return copy.deepcopy(stored)

    async def get_session(self, session_id: str) -> SessionState | None:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    async def mutate(self, session_id: str, edit: Callable[[SessionState], None]) -> SessionState | None:
        """Apply ``edit`` to a working copy and store it atomically.

        Returns the stored copy, or None when the session does not exist.
        An exception raised by ``edit`` leaves the stored session untouched.
        """
        async with self._lock(session_id):
            current = self._sessions.get(session_id)
            if current is None:
                return None
            working = copy.deepcopy(current)
            edit(working)
            working.updated_at = now_ms()
            self._sessions[session_id] = working
            return copy.deepcopy(working)

    async def update_session(self, session_id: str, changes: dict[str, Any]) -> SessionState | None:
        """Field-level update of top-level session fields."""

        def edit(session: SessionState) -> None:
            for key, value in changes.items():
                if not hasattr(session, key):
                    raise AttributeError(f"SessionState has no field {key!r}")
                setattr(session, key, copy.deepcopy(value))

        return await self.mutate(session_id, edit)

    async def patch_response(
        self,
        session_id: str,
        response_id: str,
        changes: dict[str, Any],
        generation: int | None = None,
    ) -> SessionState | None:
        """Update one slot of ``current_responses``, found by id.

        Returns None, without writing, when the session or slot is gone or
        when ``generation`` no longer matches the session's (a newer
        submission has superseded the caller).
        """
        applied = False

        def edit(session: SessionState) -> None:
            nonlocal applied
            if generation is not None and session.generation != generation:
                return
            slot: ProviderResponse | None = session.find_response(response_id)
            if slot is None:
                return
            for key, value in changes.items():
                setattr(slot, key, copy.deepcopy(value))
            applied = True

        session = await self.mutate(session_id, edit)
        return session if applied else None

    # Conversation and response documents: plain dicts, equality-filtered reads.

    async def create_conversation(self, doc: dict[str, Any]) -> dict[str, Any]:
        self._conversations[doc["id"]] = copy.deepcopy(doc)
        return copy.deepcopy(doc)

    async def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        doc = self._conversations.get(conversation_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find_conversations(self, **filters: Any) -> list[dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._conversations.values() if _matches(d, filters)]

    async def create_response(self, doc: dict[str, Any]) -> dict[str, Any]:
        self._responses[doc["id"]] = copy.deepcopy(doc)
        return copy.deepcopy(doc)

    async def find_responses(self, **filters: Any) -> list[dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._responses.values() if _matches(d, filters)]


def _matches(doc: dict[str, Any], filters: dict[str, Any]) -> bool:
    return all(doc.get(key) == value for key, value in filters.items())
