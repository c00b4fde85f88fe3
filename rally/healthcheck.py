"""Provider health checks: ping each backend before fanning out."""

import asyncio
import logging

import httpx

from rally.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


async def _ping(name: str, provider: AIProvider, client: httpx.AsyncClient) -> None:
    async for event in provider.events(client, _PING_PROMPT, []):
        if event.error_payload is not None:
            raise ProviderError(name, event.error_payload)
        if event.finished:
            return


async def _check_one(name: str, provider: AIProvider, client: httpx.AsyncClient) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(_ping(name, provider, client), timeout=_TIMEOUT_SEC)
        return name, True, ""
    except TimeoutError:
        return name, False, f"timed out after {_TIMEOUT_SEC:g}s"
    except Exception as exc:
        return name, False, str(exc) or type(exc).__name__


async def run_health_checks(
    providers: dict[str, AIProvider],
    client: httpx.AsyncClient,
) -> dict[str, tuple[bool, str]]:
    """Ping all providers in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p, client) for n, p in providers.items()))
    for name, ok, err in results:
        if not ok:
            logger.debug("Health check failed for %s: %s", name, err)
    return {name: (ok, err) for name, ok, err in results}
