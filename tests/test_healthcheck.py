"""Unit tests for rally/healthcheck.py, no real API calls."""

from rally.healthcheck import run_health_checks
from rally.providers.base import ProviderError
from rally.sse import StreamEvent
from tests.conftest import MockProvider


async def test_all_providers_pass(client):
    """All providers succeed -> all marked ok, no errors."""
    providers = {"gpt": MockProvider("gpt", ["OK"]), "mistral": MockProvider("mistral", ["OK"])}

    results = await run_health_checks(providers, client)

    assert results["gpt"] == (True, "")
    assert results["mistral"] == (True, "")


async def test_one_provider_fails(client):
    """A provider that raises returns ok=False with the error message."""
    providers = {
        "gpt": MockProvider("gpt", ["OK"]),
        "copilot": MockProvider("copilot", error=ProviderError("copilot", "403 Forbidden")),
    }

    results = await run_health_checks(providers, client)

    assert results["gpt"] == (True, "")
    ok, err = results["copilot"]
    assert ok is False
    assert "403" in err


async def test_error_payload_counts_as_failure(client):
    providers = {"llama": MockProvider("llama", events=[StreamEvent(error_payload="429 rate limit", finished=True)])}

    ok, err = (await run_health_checks(providers, client))["llama"]

    assert ok is False
    assert "429" in err


async def test_all_providers_fail(client):
    """All fail -> all marked False."""
    providers = {
        "gpt": MockProvider("gpt", error=Exception("gpt down")),
        "deepseek": MockProvider("deepseek", error=Exception("deepseek down")),
    }

    results = await run_health_checks(providers, client)

    for name in providers:
        ok, err = results[name]
        assert ok is False
        assert name in err


async def test_empty_providers(client):
    """Empty provider dict returns empty results."""
    results = await run_health_checks({}, client)
    assert results == {}
