import json

import pytest

from app.core.llm import (
    Completion,
    LLMAuthError,
    LLMConnectionError,
    LLMRateLimitError,
    LLMServerError,
)
from app.core.prompts import get_error_response
from app.models.credential import CredentialStatus
from app.schemas.conversation import Product
from app.services.dispatcher import DispatchState, ProviderDispatcher, split_user_keys
from app.services.tool_loop import ToolCallLoop
from tests.fakes import make_settings, managed_page, own_key_page, pool_credentials

MESSAGES = [
    {"role": "system", "content": "You are Mina."},
    {"role": "user", "content": "Do you have mangoes?"},
]
REPLY = json.dumps({"reply": "Yes, we do!", "sentiment": "pos", "images": []})


@pytest.mark.asyncio
async def test_user_key_success_uses_only_that_key(dispatcher, inference, key_pool):
    key_pool.load(pool_credentials(3))
    inference.responses = [Completion(REPLY, 50, "x")]

    outcome = await dispatcher.dispatch(MESSAGES, own_key_page("sk-or-v1-user", chat_model="my-model"))

    assert outcome.state == DispatchState.DONE
    assert outcome.phase == DispatchState.PHASE1_USER_KEY
    assert outcome.response.reply == "Yes, we do!"
    assert outcome.response.token_usage == 50
    assert len(inference.calls) == 1
    assert inference.calls[0]["api_key"] == "sk-or-v1-user"
    assert inference.calls[0]["provider"] == "openrouter"
    assert inference.calls[0]["model"] == "my-model"
    assert key_pool.acquire_calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        LLMAuthError("invalid key", 401),
        LLMRateLimitError("slow down", 429),
        LLMServerError("boom", 503),
        LLMConnectionError("timeout"),
    ],
)
async def test_user_key_failure_never_reaches_pool(dispatcher, inference, key_pool, error):
    key_pool.load(pool_credentials(3))
    inference.responses = [error, REPLY, REPLY]

    outcome = await dispatcher.dispatch(MESSAGES, own_key_page("AIzaSyUSER,AIzaSyOTHER"))

    assert outcome.state == DispatchState.FAILED
    assert outcome.response.reply is None
    assert outcome.response.error == get_error_response("user_key_failed")
    assert len(inference.calls) == 1
    assert key_pool.acquire_calls == []


@pytest.mark.asyncio
async def test_own_key_mode_without_key_fails_before_network(dispatcher, inference, key_pool):
    key_pool.load(pool_credentials(1))

    outcome = await dispatcher.dispatch(MESSAGES, own_key_page(" , "))

    assert outcome.state == DispatchState.FAILED
    assert outcome.response.error == get_error_response("missing_user_key")
    assert inference.calls == []
    assert key_pool.acquire_calls == []


@pytest.mark.asyncio
async def test_managed_sentinel_goes_to_swarm(dispatcher, inference, key_pool):
    key_pool.load(pool_credentials(1))
    inference.responses = [REPLY]

    outcome = await dispatcher.dispatch(MESSAGES, own_key_page("MANAGED_SECRET_KEY"))

    assert outcome.phase == DispatchState.PHASE2_MANAGED_SWARM
    assert outcome.response.reply == "Yes, we do!"


@pytest.mark.asyncio
async def test_managed_mode_tries_three_pooled_keys_then_gives_up(dispatcher, inference, key_pool):
    creds = pool_credentials(5)
    key_pool.load(creds)
    inference.responses = [LLMServerError("boom", 500)] * 5

    outcome = await dispatcher.dispatch(MESSAGES, managed_page(api_key="AIzaSyIGNORED"))

    assert outcome.state == DispatchState.FAILED
    assert outcome.response is None
    assert outcome.attempts == 3
    assert len(inference.calls) == 3
    assert len(key_pool.acquire_calls) == 3
    assert len({c["api_key"] for c in inference.calls}) == 3
    assert all(c["model"] == "gemini-2.5-flash" for c in inference.calls)
    assert sum(c.last_reason == "server_error" for c in creds) == 3


@pytest.mark.asyncio
async def test_swarm_stops_when_pool_is_empty(dispatcher, inference, key_pool):
    key_pool.load(pool_credentials(1))
    inference.responses = [LLMAuthError("revoked", 403)]

    outcome = await dispatcher.dispatch(MESSAGES, managed_page())

    assert outcome.response is None
    assert len(inference.calls) == 1
    assert len(key_pool.acquire_calls) == 2


@pytest.mark.asyncio
async def test_swarm_recovers_after_rate_limit(dispatcher, inference, key_pool):
    creds = pool_credentials(2)
    key_pool.load(creds)
    inference.responses = [LLMRateLimitError("slow down", 429), Completion(REPLY, 40, "x")]

    outcome = await dispatcher.dispatch(MESSAGES, managed_page())

    assert outcome.state == DispatchState.DONE
    assert outcome.attempts == 2
    assert creds[0].last_reason == "rate_limit_gemini-2.5-flash"
    assert creds[0].status == CredentialStatus.DEAD
    assert creds[1].cumulative_tokens == 40


@pytest.mark.asyncio
async def test_missing_usage_is_estimated_from_characters(dispatcher, inference, key_pool):
    (credential,) = pool_credentials(1)
    key_pool.load([credential])
    inference.responses = [Completion("abcd" * 10, 0, "x")]

    outcome = await dispatcher.dispatch(MESSAGES, managed_page())

    chars = sum(len(m["content"]) for m in MESSAGES) + 40
    assert outcome.response.token_usage == -(-chars // 4)
    assert credential.cumulative_tokens == outcome.response.token_usage
    assert outcome.response.reply == "abcd" * 10


@pytest.mark.asyncio
async def test_user_key_tool_call_reinvokes_once(dispatcher, inference, catalog):
    catalog.products = [Product(name="Mango Red", price=450, image_url="https://cdn.test/m.jpg")]
    inference.responses = [
        Completion('{"tool": "search_products", "query": "mango"}', 20, "x"),
        Completion(REPLY, 30, "x"),
    ]

    outcome = await dispatcher.dispatch(MESSAGES, own_key_page("AIzaSyUSER"))

    assert outcome.tool_called is True
    assert outcome.response.reply == "Yes, we do!"
    assert outcome.response.token_usage == 50
    assert catalog.calls == [("owner-1", "mango", "page-1")]
    assert len(inference.calls) == 2
    assert inference.calls[1]["api_key"] == "AIzaSyUSER"
    assert inference.calls[1]["structured_output"] is True


@pytest.mark.asyncio
async def test_swarm_tool_call_synthesizes_reply_from_rows(dispatcher, inference, key_pool, catalog):
    key_pool.load(pool_credentials(1))
    catalog.products = [Product(name="Mango Red", price=450, description="Sweet", image_url="https://cdn.test/m.jpg")]
    inference.responses = [Completion('{"tool": "search_products", "query": "mango"}', 20, "x")]

    outcome = await dispatcher.dispatch(MESSAGES, managed_page())

    assert len(inference.calls) == 1
    assert outcome.response.reply == "Item 1: Mango Red. দাম: 450 BDT. বিবরণ: Sweet"
    assert outcome.response.images[0].url == "https://cdn.test/m.jpg"
    assert outcome.response.sentiment == "pos"
    assert outcome.response.token_usage == 20


@pytest.mark.asyncio
async def test_deprecated_chat_model_is_resolved(dispatcher, inference):
    inference.responses = [REPLY]

    await dispatcher.dispatch(MESSAGES, own_key_page("AIzaSyUSER", chat_model="gemini-2.0-flash"))

    assert inference.calls[0]["model"] == "gemini-2.5-flash"
    assert inference.calls[0]["provider"] == "google"


@pytest.mark.asyncio
async def test_plain_text_reply_is_wrapped(dispatcher, inference, key_pool):
    key_pool.load(pool_credentials(1))
    inference.responses = ["<think>hmm</think>Hello there"]

    outcome = await dispatcher.dispatch(MESSAGES, managed_page(), structured_output=False)

    assert outcome.response.reply == "Hello there"
    assert outcome.response.sentiment == "neutral"
    assert inference.calls[0]["structured_output"] is False


def test_split_user_keys():
    assert split_user_keys(" a, ,b ,") == ["a", "b"]
    assert split_user_keys(None) == []


def _dispatcher_with(inference, key_pool, resolver, catalog, **overrides) -> ProviderDispatcher:
    return ProviderDispatcher(
        inference, key_pool, resolver, ToolCallLoop(catalog), make_settings(**overrides), shuffle=lambda keys: None
    )


@pytest.mark.asyncio
async def test_user_key_timeout_fails_without_touching_pool(inference, key_pool, resolver, catalog):
    dispatcher = _dispatcher_with(inference, key_pool, resolver, catalog, user_key_timeout_seconds=0.05)
    key_pool.load(pool_credentials(2))
    inference.stalls = [1.0]
    inference.responses = [REPLY, REPLY]

    outcome = await dispatcher.dispatch(MESSAGES, own_key_page("AIzaSyUSER"))

    assert outcome.state == DispatchState.FAILED
    assert outcome.phase == DispatchState.PHASE1_USER_KEY
    assert outcome.response.error == get_error_response("user_key_failed")
    assert len(inference.calls) == 1
    assert key_pool.acquire_calls == []


@pytest.mark.asyncio
async def test_swarm_timeout_moves_on_without_quarantine(inference, key_pool, resolver, catalog):
    dispatcher = _dispatcher_with(inference, key_pool, resolver, catalog, swarm_timeout_seconds=0.05)
    creds = pool_credentials(2)
    key_pool.load(creds)
    inference.stalls = [1.0]
    inference.responses = [REPLY]

    outcome = await dispatcher.dispatch(MESSAGES, managed_page())

    assert outcome.state == DispatchState.DONE
    assert outcome.attempts == 2
    assert outcome.response.reply == "Yes, we do!"
    assert inference.calls[0]["api_key"] != inference.calls[1]["api_key"]
    assert all(c.status == CredentialStatus.ALIVE for c in creds)


@pytest.mark.asyncio
async def test_own_gateway_key_is_sent_to_gateway(dispatcher, inference, key_pool):
    key_pool.load(pool_credentials(1))
    inference.responses = [REPLY]

    outcome = await dispatcher.dispatch(MESSAGES, own_key_page("scb-live-123", provider="salesmanchatbot"))

    assert outcome.state == DispatchState.DONE
    assert inference.calls[0]["provider"] == "salesmanchatbot"
    assert inference.calls[0]["model"] == "salesmanchatbot-pro"
    assert inference.calls[0]["api_key"] == "scb-live-123"
    assert key_pool.acquire_calls == []


@pytest.mark.asyncio
async def test_system_provider_runs_on_managed_pool(dispatcher, inference, key_pool):
    key_pool.load(pool_credentials(1))
    inference.responses = [REPLY]

    outcome = await dispatcher.dispatch(MESSAGES, own_key_page("AIzaSyUSER", provider="system"))

    assert outcome.phase == DispatchState.PHASE2_MANAGED_SWARM
    assert inference.calls[0]["api_key"] != "AIzaSyUSER"


@pytest.mark.asyncio
async def test_unknown_provider_fails_before_network(dispatcher, inference, key_pool):
    key_pool.load(pool_credentials(1))

    outcome = await dispatcher.dispatch(MESSAGES, own_key_page("plain-key", provider="anthropic"))

    assert outcome.state == DispatchState.FAILED
    assert outcome.response.error == get_error_response("user_key_failed")
    assert inference.calls == []
    assert key_pool.acquire_calls == []


@pytest.mark.asyncio
async def test_gemini_provider_name_maps_to_google(dispatcher, inference):
    inference.responses = [REPLY]

    await dispatcher.dispatch(MESSAGES, own_key_page("plain-key", provider="gemini"))

    assert inference.calls[0]["provider"] == "google"
