"""Model identifier resolution and the free-model optimizer.

Provides:
1. An exact-match alias table rewriting legacy model ids to canonical ones
2. A "best free model" table (text, vision, voice) recomputed from the
   OpenRouter catalog every two hours and once at startup
3. A Redis snapshot of that table shared by workers and kept across restarts

The ranking itself is delegated to a cheap inference model with a strict JSON
contract; if that call fails a deterministic rule picks the models instead.
"""

import asyncio
import contextlib
import json
import logging
import re
from typing import Any

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError

from app.config import Settings, get_settings
from app.core.llm import InferenceClient, LLMError
from app.core.parser import ParseError, extract_json_object
from app.services.key_pool import KeyPoolManager

logger = logging.getLogger(__name__)

AUTO_MODEL = "openrouter/auto"

MODEL_ALIASES: dict[str, str] = {
    "gemini-2.0-flash": "gemini-2.5-flash",
    "gemini-1.5-flash": "gemini-2.5-flash",
    "gemini-pro": "gemini-2.5-flash",
    "gemini2.5-flash": "gemini-2.5-flash",  # Common typo
    "gemini-2.5-flash-lite": "gemini-2.5-flash-lite",
    "groq-fast": "llama-3.3-70b-versatile",
    "groq-speed": "llama-3.1-8b-instant",
    "grok-4.1-fast": "llama-3.3-70b-versatile",
    "salesmanchatbot-pro": "gemini-2.5-flash",
    "salesmanchatbot-flash": "gemini-2.5-flash",
    "salesmanchatbot-lite": "gemini-2.5-flash-lite",
}

# Free models never offered by the optimizer
FREE_MODEL_DENYLIST: tuple[str, ...] = ("gemini-2.0",)

_ESTABLISHED_FAMILIES = re.compile(r"gemini|llama-3|mistral|qwen", re.IGNORECASE)
_PREFERRED_VISION = ("gemini-2.5", "qwen-2.5")
_FAST_VARIANTS = ("flash", "instant", "lite")

RANKING_PROMPT = """You are an expert AI Engineer. Analyze this COMPLETE list of FREE OpenRouter models and pick the ABSOLUTE BEST ones for a production chatbot.

Candidates: {candidates}

Requirements:
1. TEXT: Select the BEST General Chat Model.
   - Look for high intelligence, reasoning, and instruction following.
   - Do NOT just pick 'Google' or 'Meta' brands. Look for 'Pro', 'Max', 'Ultra' or 'Reasoning' variants even from lesser known providers.
   - High context is good, but smartness is priority.
2. VISION: Best Multimodal Model. Must support images.
3. VOICE: Fastest model for text generation (Flash/Lite/Instant variants).

Return ONLY valid JSON:
{{
  "text": "model_id",
  "vision": "model_id",
  "voice": "model_id"
}}"""


class BestFreeModels(BaseModel):
    """Best zero-cost OpenRouter model per role."""
    text: str
    vision: str
    voice: str


DEFAULT_FREE_MODELS = BestFreeModels(
    text="meta-llama/llama-3.1-8b-instruct:free",
    vision="qwen/qwen-2.5-vl-7b-instruct:free",
    voice="meta-llama/llama-3.1-8b-instruct:free",
)


def resolve_alias(model: str) -> str:
    """Rewrite a deprecated or shorthand model id; unknown ids pass through."""
    return MODEL_ALIASES.get(model, model)


def _is_zero(value: Any) -> bool:
    try:
        return float(value) == 0
    except (TypeError, ValueError):
        return False


def filter_free_models(models: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep zero-cost, non-denylisted models, largest context first."""
    free = [
        m for m in models
        if isinstance(m.get("id"), str)
        and _is_zero((m.get("pricing") or {}).get("prompt"))
        and _is_zero((m.get("pricing") or {}).get("completion"))
        and not any(denied in m["id"] for denied in FREE_MODEL_DENYLIST)
    ]
    free.sort(key=lambda m: m.get("context_length") or 0, reverse=True)
    return free


def _modality(model: dict[str, Any]) -> str:
    return str((model.get("architecture") or {}).get("modality") or "text")


def select_by_rules(free_models: list[dict[str, Any]], current: BestFreeModels) -> BestFreeModels:
    """Deterministic fallback when the ranking model is unavailable.

    - text: first established family that is not a vision variant
    - vision: a model whose modality accepts images, preferring known VL families
    - voice: first flash/instant/lite variant, else the text pick
    """
    text = next(
        (m for m in free_models if _ESTABLISHED_FAMILIES.search(m["id"]) and "vision" not in m["id"]),
        free_models[0],
    )

    multimodal = [m for m in free_models if "image" in _modality(m).split("->")[0]]
    vision = next(
        (m for m in multimodal if any(p in m["id"] for p in _PREFERRED_VISION)),
        multimodal[0] if multimodal else None,
    )

    voice = next(
        (m for m in free_models if any(v in m["id"].lower() for v in _FAST_VARIANTS)),
        text,
    )

    return BestFreeModels(
        text=text["id"],
        vision=vision["id"] if vision else current.vision,
        voice=voice["id"],
    )


class ModelResolver:
    """Canonicalizes requested models and maintains the best-free-model table.

    Refresh triggers coalesce: while one refresh is in flight a second call
    returns immediately. A failed refresh keeps the previous table.
    """

    def __init__(
        self,
        inference: InferenceClient,
        key_pool: KeyPoolManager,
        settings: Settings | None = None,
        redis_client: redis.Redis | None = None,
    ) -> None:
        self._inference = inference
        self._key_pool = key_pool
        self._settings = settings or get_settings()
        self._redis = redis_client
        self._best = DEFAULT_FREE_MODELS.model_copy()
        self._refreshing = False
        self._task: asyncio.Task[None] | None = None

    @property
    def best_free_models(self) -> BestFreeModels:
        return self._best

    def resolve(self, model: str | None) -> str | None:
        """Canonical model id for a requested one (``None`` stays ``None``)."""
        if not model:
            return None
        model = model.strip()
        if model == AUTO_MODEL:
            return self._best.text
        return resolve_alias(model)

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self) -> bool:
        """Recompute the best-free-model table.

        Returns:
            True if the table was updated, False if skipped or failed.
        """
        if self._refreshing:
            logger.debug("Free model refresh already running, skipping")
            return False

        self._refreshing = True
        try:
            return await self._refresh()
        except Exception as e:
            logger.warning(f"Failed to update free models: {e}")
            return False
        finally:
            self._refreshing = False

    async def _refresh(self) -> bool:
        logger.info("Fetching latest free models from OpenRouter...")
        models = await self._inference.list_models()
        free_models = filter_free_models(models)

        if not free_models:
            logger.warning("No free models found. Keeping current selection.")
            return False

        try:
            best = await self._rank_with_model(free_models)
            logger.info(f"Ranking model selected free models: {best.model_dump()}")
        except (LLMError, ParseError, ValidationError, ValueError) as e:
            logger.warning(f"Free model ranking failed ({e}); falling back to rules")
            best = select_by_rules(free_models, self._best)
            logger.info(f"Rule-based free model selection: {best.model_dump()}")

        self._best = best
        await self._save_snapshot()
        return True

    async def _rank_with_model(self, free_models: list[dict[str, Any]]) -> BestFreeModels:
        provider = self._settings.optimizer_ranking_provider
        model = self._settings.optimizer_ranking_model

        credential = await self._key_pool.acquire(provider, model)
        if credential is None:
            raise ValueError(f"No {provider}/{model} credential available for ranking")

        candidates = [
            {
                "id": m["id"],
                "name": m.get("name"),
                "context": m.get("context_length"),
                "modality": _modality(m),
                "description": m.get("description"),
            }
            for m in free_models
        ]
        prompt = RANKING_PROMPT.format(candidates=json.dumps(candidates, ensure_ascii=False))

        try:
            completion = await self._inference.complete(
                [{"role": "user", "content": prompt}],
                model,
                provider=provider,
                api_key=credential.secret,
                structured_output=True,
                timeout=60.0,
            )
        except LLMError as e:
            await self._key_pool.report_failure(credential, e, model)
            raise

        await self._key_pool.record_usage(credential, completion.token_usage)

        best = BestFreeModels.model_validate(extract_json_object(completion.content))
        known = {m["id"] for m in free_models}
        unknown = [v for v in best.model_dump().values() if v not in known]
        if unknown:
            raise ValueError(f"Ranking picked models outside the free list: {unknown}")
        return best

    # =========================================================================
    # Redis snapshot
    # =========================================================================

    async def _save_snapshot(self) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(self._settings.optimizer_redis_key, self._best.model_dump_json())
        except redis.RedisError as e:
            logger.warning(f"Could not store free model snapshot: {e}")

    async def restore_snapshot(self) -> bool:
        """Load the last shared table from Redis, if any."""
        if self._redis is None:
            return False
        try:
            raw = await self._redis.get(self._settings.optimizer_redis_key)
        except redis.RedisError as e:
            logger.warning(f"Could not read free model snapshot: {e}")
            return False
        if not raw:
            return False
        try:
            self._best = BestFreeModels.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed free model snapshot: {e}")
            return False
        logger.info(f"Restored free model snapshot: {self._best.model_dump()}")
        return True

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Restore the snapshot and schedule the periodic refresh."""
        await self.restore_snapshot()
        if self._task is None and self._settings.optimizer_enabled:
            self._task = asyncio.create_task(self._run_periodic(), name="free-model-refresh")

    async def stop(self) -> None:
        """Cancel the periodic refresh."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run_periodic(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self._settings.optimizer_interval_seconds)
