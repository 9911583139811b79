import asyncio
import json

import pytest

from app.core.llm import LLMConnectionError
from app.services.model_resolver import (
    AUTO_MODEL,
    DEFAULT_FREE_MODELS,
    BestFreeModels,
    ModelResolver,
    filter_free_models,
    resolve_alias,
    select_by_rules,
)
from tests.fakes import FakeInference, FakeRedis, pool_credentials


def _model(model_id, prompt="0", completion="0", context=8192, modality="text->text"):
    return {
        "id": model_id,
        "name": model_id,
        "context_length": context,
        "pricing": {"prompt": prompt, "completion": completion},
        "architecture": {"modality": modality},
    }


CATALOG = [
    _model("openai/gpt-4o", prompt="0.000005", completion="0.000015", context=128000),
    _model("google/gemini-2.0-flash-exp:free", context=1000000, modality="text+image->text"),
    _model("mistralai/mistral-7b-instruct:free", context=32768),
    _model("meta-llama/llama-3.2-11b-vision-instruct:free", context=131072, modality="text+image->text"),
    _model("qwen/qwen-2.5-vl-72b-instruct:free", context=65536, modality="text+image->text"),
    _model("google/gemini-2.5-flash-lite:free", context=16384),
]


@pytest.mark.parametrize(
    "requested,canonical",
    [
        ("gemini-2.0-flash", "gemini-2.5-flash"),
        ("gemini-1.5-flash", "gemini-2.5-flash"),
        ("groq-speed", "llama-3.1-8b-instant"),
        ("salesmanchatbot-lite", "gemini-2.5-flash-lite"),
        ("my-custom-model", "my-custom-model"),
    ],
)
def test_alias_resolution(requested, canonical):
    assert resolve_alias(requested) == canonical


def test_auto_resolves_to_best_free_text_model(resolver):
    assert resolver.resolve(AUTO_MODEL) == DEFAULT_FREE_MODELS.text
    assert resolver.resolve(None) is None
    assert resolver.resolve(" gemini-pro ") == "gemini-2.5-flash"


def test_filter_free_models_drops_paid_and_denylisted():
    free = filter_free_models(CATALOG)
    ids = [m["id"] for m in free]

    assert "openai/gpt-4o" not in ids
    assert "google/gemini-2.0-flash-exp:free" not in ids
    # Largest context first
    assert ids[0] == "meta-llama/llama-3.2-11b-vision-instruct:free"


def test_rule_selection():
    best = select_by_rules(filter_free_models(CATALOG), DEFAULT_FREE_MODELS)

    assert best.text == "qwen/qwen-2.5-vl-72b-instruct:free"
    assert best.vision == "qwen/qwen-2.5-vl-72b-instruct:free"
    assert best.voice == "google/gemini-2.5-flash-lite:free"


@pytest.mark.asyncio
async def test_refresh_uses_ranking_model(key_pool, settings):
    picks = {
        "text": "mistralai/mistral-7b-instruct:free",
        "vision": "qwen/qwen-2.5-vl-72b-instruct:free",
        "voice": "google/gemini-2.5-flash-lite:free",
    }
    inference = FakeInference(models=CATALOG, responses=[json.dumps(picks)])
    key_pool.load(pool_credentials(1))
    redis = FakeRedis()
    resolver = ModelResolver(inference, key_pool, settings, redis_client=redis)

    assert await resolver.refresh() is True

    assert resolver.best_free_models == BestFreeModels(**picks)
    assert inference.calls[0]["structured_output"] is True
    assert json.loads(redis.store[settings.optimizer_redis_key]) == picks


@pytest.mark.asyncio
async def test_refresh_falls_back_to_rules_without_ranking_key(key_pool, settings):
    inference = FakeInference(models=CATALOG)
    resolver = ModelResolver(inference, key_pool, settings)

    assert await resolver.refresh() is True

    assert resolver.best_free_models.voice == "google/gemini-2.5-flash-lite:free"
    assert inference.calls == []


@pytest.mark.asyncio
async def test_ranking_outside_free_list_falls_back_to_rules(key_pool, settings):
    bogus = {"text": "openai/gpt-4o", "vision": "x", "voice": "y"}
    inference = FakeInference(models=CATALOG, responses=[json.dumps(bogus)])
    key_pool.load(pool_credentials(1))
    resolver = ModelResolver(inference, key_pool, settings)

    await resolver.refresh()

    assert resolver.best_free_models.text != "openai/gpt-4o"


@pytest.mark.asyncio
async def test_failed_refresh_keeps_stale_table(key_pool, settings):
    inference = FakeInference(models=LLMConnectionError("catalog unreachable"))
    resolver = ModelResolver(inference, key_pool, settings)

    assert await resolver.refresh() is False
    assert resolver.best_free_models == DEFAULT_FREE_MODELS


@pytest.mark.asyncio
async def test_overlapping_refreshes_coalesce(key_pool, settings):
    inference = FakeInference(models=CATALOG)
    inference.models_gate = asyncio.Event()
    resolver = ModelResolver(inference, key_pool, settings)

    first = asyncio.create_task(resolver.refresh())
    await asyncio.sleep(0)

    assert await resolver.refresh() is False

    inference.models_gate.set()
    assert await first is True
    assert inference.list_models_calls == 1


@pytest.mark.asyncio
async def test_snapshot_restore(key_pool, settings, inference):
    redis = FakeRedis()
    snapshot = BestFreeModels(text="a:free", vision="b:free", voice="c:free")
    redis.store[settings.optimizer_redis_key] = snapshot.model_dump_json()
    resolver = ModelResolver(inference, key_pool, settings, redis_client=redis)

    assert await resolver.restore_snapshot() is True
    assert resolver.resolve(AUTO_MODEL) == "a:free"


@pytest.mark.asyncio
async def test_malformed_snapshot_is_ignored(key_pool, settings, inference):
    redis = FakeRedis()
    redis.store[settings.optimizer_redis_key] = '{"text": 1}'
    resolver = ModelResolver(inference, key_pool, settings, redis_client=redis)

    assert await resolver.restore_snapshot() is False
    assert resolver.best_free_models == DEFAULT_FREE_MODELS
