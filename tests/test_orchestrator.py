"""Tests for rally/orchestrator.py: fan-out, retry, selection and supersession."""

import asyncio

import httpx
import pytest

from rally.errors import AggregationError, InvalidArgumentError, InvalidTransitionError, NotFoundError
from rally.events import RESPONSE_UPDATE
from rally.models import ERROR, PENDING, SUCCESS, TIMEOUT
from rally.orchestrator import Orchestrator
from rally.providers.base import ProviderHTTPError
from rally.providers.http_provider import HTTPProvider
from rally.sse import StreamEvent
from tests.conftest import OLLAMA_URL, MockProvider, delta_chunk, make_model_config, mock_client, sse_body


class ExplodingProvider(MockProvider):
    """Fails with an exception no provider layer is expected to raise."""

    async def events(self, client, prompt, context):
        raise RuntimeError("bug in provider")
        yield StreamEvent()  # pragma: no cover


def _orchestrator(*providers: MockProvider, **kwargs) -> Orchestrator:
    return Orchestrator({p.name(): p for p in providers}, **kwargs)


@pytest.fixture
async def rally():
    orchestrator = _orchestrator(
        MockProvider("gpt", ["Use ", "YAML."]),
        MockProvider("mistral", ["Use ", "JSON."]),
    )
    async with orchestrator:
        yield orchestrator


# -- sessions ------------------------------------------------------------


async def test_create_session_uses_default_providers(rally):
    session = await rally.create_session(user_id="u-1")
    assert session.user_id == "u-1"
    assert session.enabled_providers == ["gpt", "mistral"]
    assert session.conversation_history == []
    assert session.is_processing is False


async def test_get_session_errors(rally):
    with pytest.raises(InvalidArgumentError):
        await rally.get_session("")
    with pytest.raises(NotFoundError):
        await rally.get_session("no-such-session")


async def test_toggle_provider_twice_restores_set(rally):
    session = await rally.create_session()
    toggled = await rally.toggle_provider(session.id, "gpt")
    assert toggled.enabled_providers == ["mistral"]
    restored = await rally.toggle_provider(session.id, "gpt")
    assert sorted(restored.enabled_providers) == ["gpt", "mistral"]


async def test_toggle_unknown_provider_rejected(rally):
    session = await rally.create_session()
    with pytest.raises(InvalidArgumentError):
        await rally.toggle_provider(session.id, "nope")
    with pytest.raises(InvalidArgumentError):
        await rally.toggle_provider(session.id, "")


# -- fan-out -------------------------------------------------------------


async def test_prompt_select_and_follow_up(rally):
    session = await rally.create_session()

    session = await rally.submit_prompt(session.id, "YAML or JSON?")
    assert session.is_processing is False
    assert session.current_prompt == "YAML or JSON?"
    assert [r.provider for r in session.current_responses] == ["gpt", "mistral"]
    assert all(r.status == SUCCESS for r in session.current_responses)
    assert session.find_provider_response("gpt").response_text == "Use YAML."
    assert session.find_provider_response("mistral").response_text == "Use JSON."
    assert session.conversation_history == []

    chosen = session.find_provider_response("gpt")
    session = await rally.select_best(session.id, chosen.id)
    assert len(session.conversation_history) == 1
    turn = session.conversation_history[0]
    assert turn.user_prompt == "YAML or JSON?"
    assert turn.selected_response.id == chosen.id
    assert len(turn.all_responses) == 2
    assert session.current_responses == []
    assert session.current_prompt == ""
    assert session.selected_response_id == chosen.id

    await rally.submit_prompt(session.id, "Why?")
    gpt = rally.providers["gpt"]
    prompt, context = gpt.calls[-1]
    assert prompt == "Why?"
    assert [t.user_prompt for t in context] == ["YAML or JSON?"]


async def test_explicit_provider_list_overrides_enabled_set(rally):
    session = await rally.create_session()
    session = await rally.submit_prompt(session.id, "Hi", providers=["mistral", "mistral"])
    assert [r.provider for r in session.current_responses] == ["mistral"]


async def test_submit_argument_errors(rally):
    session = await rally.create_session()
    with pytest.raises(InvalidArgumentError):
        await rally.submit_prompt(session.id, "   ")
    with pytest.raises(InvalidArgumentError):
        await rally.submit_prompt(session.id, "Hi", providers=["gpt", "nope"])
    with pytest.raises(NotFoundError):
        await rally.submit_prompt("no-such-session", "Hi")

    await rally.toggle_provider(session.id, "gpt")
    await rally.toggle_provider(session.id, "mistral")
    with pytest.raises(InvalidArgumentError, match="No providers"):
        await rally.submit_prompt(session.id, "Hi")


async def test_one_failure_does_not_affect_the_others():
    orchestrator = _orchestrator(
        MockProvider("gpt", ["ok"]),
        MockProvider("mistral", error=ProviderHTTPError("mistral", 500, "upstream exploded")),
        MockProvider("slow", ["never"], delay_sec=5, timeout_sec=0.05),
        fallback_to_success=False,
    )
    async with orchestrator:
        session = await orchestrator.create_session()
        session = await orchestrator.submit_prompt(session.id, "Hi")

    statuses = {r.provider: r.status for r in session.current_responses}
    assert statuses == {"gpt": SUCCESS, "mistral": ERROR, "slow": TIMEOUT}
    assert session.find_provider_response("gpt").response_text == "ok"
    assert session.is_processing is False


async def test_unexpected_failure_raises_aggregation_error():
    orchestrator = _orchestrator(MockProvider("gpt", ["ok"], delay_sec=1), ExplodingProvider("broken"))
    async with orchestrator:
        session = await orchestrator.create_session()
        with pytest.raises(AggregationError):
            await orchestrator.submit_prompt(session.id, "Hi")
        session = await orchestrator.get_session(session.id)
    assert session.is_processing is False


async def test_background_submit_and_wait_for_idle(rally):
    session = await rally.create_session()
    pending = await rally.submit_prompt(session.id, "Hi", wait=False)
    assert pending.is_processing is True
    assert all(r.status == PENDING for r in pending.current_responses)

    done = await rally.wait_for_idle(session.id)
    assert done.is_processing is False
    assert all(r.status == SUCCESS for r in done.current_responses)


async def test_subscribers_receive_snapshots(rally):
    session = await rally.create_session()
    async with rally.events.subscription(session.id) as updates:
        await rally.submit_prompt(session.id, "Hi")
        events = [updates.get_nowait() for _ in range(updates.qsize())]

    assert events
    assert {e.name for e in events} == {RESPONSE_UPDATE}
    assert events[0].data["isProcessing"] is True
    assert events[-1].data["isProcessing"] is False
    statuses = {r["status"] for e in events for r in e.data["currentResponses"]}
    assert {"pending", "streaming", "success"} <= statuses


async def test_new_submission_supersedes_in_flight_work():
    gate = asyncio.Event()
    slow = MockProvider("slow", ["stale"], gate=gate)
    orchestrator = _orchestrator(slow, MockProvider("fast", ["fresh"]))
    async with orchestrator:
        session = await orchestrator.create_session()
        await orchestrator.submit_prompt(session.id, "first", providers=["slow"], wait=False)

        session = await orchestrator.submit_prompt(session.id, "second", providers=["fast"])
        gate.set()
        await asyncio.sleep(0.01)
        session = await orchestrator.get_session(session.id)

    assert session.current_prompt == "second"
    assert [(r.provider, r.response_text) for r in session.current_responses] == [("fast", "fresh")]
    assert session.is_processing is False


# -- retry ---------------------------------------------------------------


async def test_retry_replaces_only_that_provider():
    flaky = MockProvider("gpt", ["second try"], error=ProviderHTTPError("gpt", 503, "busy"))
    orchestrator = _orchestrator(flaky, MockProvider("mistral", ["steady"]), fallback_to_success=False)
    async with orchestrator:
        session = await orchestrator.create_session()
        session = await orchestrator.submit_prompt(session.id, "Hi")
        failed = session.find_provider_response("gpt")
        untouched = session.find_provider_response("mistral")
        assert failed.status == ERROR

        flaky._error = None
        session = await orchestrator.retry_provider(session.id, "gpt")

    retried = session.find_provider_response("gpt")
    assert retried.id == failed.id
    assert retried.status == SUCCESS
    assert retried.response_text == "second try"
    assert retried.retry_count == 1
    assert retried.error_message is None
    assert session.find_provider_response("mistral") == untouched
    assert session.is_processing is False


async def test_retry_errors():
    gate = asyncio.Event()
    orchestrator = _orchestrator(MockProvider("gpt", gate=gate), MockProvider("mistral"))
    async with orchestrator:
        session = await orchestrator.create_session()
        await orchestrator.submit_prompt(session.id, "Hi", providers=["gpt"], wait=False)
        with pytest.raises(InvalidTransitionError):
            await orchestrator.retry_provider(session.id, "gpt")
        with pytest.raises(NotFoundError):
            await orchestrator.retry_provider(session.id, "mistral")
        gate.set()
        session = await orchestrator.wait_for_idle(session.id)
    assert session.find_provider_response("gpt").status == SUCCESS


async def test_finished_work_is_not_retained_across_retries():
    flaky = MockProvider("gpt", error=ProviderHTTPError("gpt", 503, "busy"))
    orchestrator = _orchestrator(flaky, fallback_to_success=False)
    async with orchestrator:
        session = await orchestrator.create_session()
        await orchestrator.submit_prompt(session.id, "Hi")
        for _ in range(3):
            await orchestrator.retry_provider(session.id, "gpt", wait=False)
            session = await orchestrator.wait_for_idle(session.id)

        fanout = orchestrator._fanouts[session.id]
        assert fanout.tasks == {}
        assert len(fanout.waiters) <= 1
    assert session.find_provider_response("gpt").retry_count == 3


async def test_background_failure_surfaces_from_wait_for_idle():
    orchestrator = _orchestrator(MockProvider("gpt", ["ok"]), ExplodingProvider("broken"))
    async with orchestrator:
        session = await orchestrator.create_session()
        await orchestrator.submit_prompt(session.id, "Hi", wait=False)
        with pytest.raises(AggregationError):
            await orchestrator.wait_for_idle(session.id)
        session = await orchestrator.get_session(session.id)
    assert session.is_processing is False


# -- select / reset / documents ------------------------------------------


async def test_select_unknown_response_leaves_session_unchanged(rally):
    session = await rally.create_session()
    session = await rally.submit_prompt(session.id, "Hi")
    with pytest.raises(NotFoundError):
        await rally.select_best(session.id, "no-such-response")
    with pytest.raises(InvalidArgumentError):
        await rally.select_best(session.id, "")
    after = await rally.get_session(session.id)
    assert after.conversation_history == []
    assert after.current_responses == session.current_responses


async def test_select_best_records_documents(rally):
    session = await rally.create_session(user_id="u-1")
    session = await rally.submit_prompt(session.id, "Hi")
    chosen = session.find_provider_response("mistral")
    session = await rally.select_best(session.id, chosen.id)

    conversations = await rally.list_conversations(session.id)
    assert len(conversations) == 1
    conversation = conversations[0]
    assert conversation["userId"] == "u-1"
    assert conversation["userPrompt"] == "Hi"
    assert conversation["selectedResponseId"] == chosen.id

    responses = await rally.list_responses(conversation["id"])
    assert len(responses) == 2
    assert {r["provider"]: r["selected"] for r in responses} == {"gpt": False, "mistral": True}
    assert all(r["sessionId"] == session.id for r in responses)

    with pytest.raises(NotFoundError):
        await rally.list_responses("no-such-conversation")


async def test_reset_session(rally):
    session = await rally.create_session(user_id="u-1")
    session = await rally.submit_prompt(session.id, "Hi")
    await rally.select_best(session.id, session.current_responses[0].id)
    await rally.toggle_provider(session.id, "gpt")

    session = await rally.reset_session(session.id)
    assert session.conversation_history == []
    assert session.current_responses == []
    assert session.current_prompt == ""
    assert session.selected_response_id is None
    assert session.user_id is None
    assert session.enabled_providers == ["gpt", "mistral"]


# -- over HTTP -----------------------------------------------------------


async def test_http_providers_end_to_end(api_key, sample_model_config, flat_model_config):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == OLLAMA_URL:
            return httpx.Response(200, json={"response": "Local answer", "done": True})
        return httpx.Response(200, text=sse_body(delta_chunk("Streamed "), delta_chunk("answer")))

    providers = {"gpt": HTTPProvider(sample_model_config), "ollama": HTTPProvider(flat_model_config)}
    async with mock_client(handler) as client:
        orchestrator = Orchestrator(providers, client=client)
        session = await orchestrator.create_session()
        session = await orchestrator.submit_prompt(session.id, "Hi")
        await orchestrator.aclose()

    assert session.find_provider_response("gpt").response_text == "Streamed answer"
    assert session.find_provider_response("ollama").response_text == "Local answer"
    assert all(r.status == SUCCESS for r in session.current_responses)
    assert session.find_provider_response("gpt").metrics.first_token_latency_ms is not None


async def test_missing_credential_answers_without_network(monkeypatch):
    monkeypatch.delenv("TEST_OPENAI_KEY", raising=False)
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    async with mock_client(handler) as client:
        orchestrator = Orchestrator({"gpt": HTTPProvider(make_model_config())}, client=client)
        session = await orchestrator.create_session()
        session = await orchestrator.submit_prompt(session.id, "Hi")
        await orchestrator.aclose()

    response = session.current_responses[0]
    assert calls == []
    assert response.status == SUCCESS
    assert "TEST_OPENAI_KEY" in response.error_message
    assert response.response_text.startswith("GPT Response:")
    assert response.metrics.response_length == len(response.response_text)
