"""Provider dispatch state machine.

    INIT -> PHASE1_USER_KEY -> DONE | FAILED
    INIT -> PHASE2_MANAGED_SWARM -> DONE | FAILED

Phase 1 runs only for pages in own-key mode. Any failure there is reported as
a configuration error and the managed pool is never touched for that request.
Phase 2 draws up to ``swarm_attempts`` fresh pooled credentials for the
canonical swarm model; running out yields ``None`` and the caller decides
what the user sees.
"""

import asyncio
import enum
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.config import Settings, get_settings
from app.core.llm import OWN_GATEWAY_PROVIDER, Completion, InferenceClient, LLMError, estimate_token_usage
from app.core.parser import APOLOGY_REPLY, ParsedOutput, PlainText, StructuredReply, ToolCall, parse_model_output
from app.core.prompts import get_error_response
from app.schemas.conversation import AIResponse, PageConfig
from app.services.key_pool import Credential, KeyPoolManager, infer_provider
from app.services.model_resolver import ModelResolver
from app.services.tool_loop import ToolCallLoop

logger = logging.getLogger(__name__)

DEFAULT_CHAT_MODEL = "gemini-2.5-flash"
OWN_GATEWAY_DEFAULT_MODEL = "salesmanchatbot-pro"

# Pages on the "system" provider always run on the managed pool
SYSTEM_PROVIDER = "system"

# Dashboard provider names that differ from endpoint ids
PROVIDER_ALIASES = {"gemini": "google"}


class ConfigurationError(Exception):
    """Raised when a page's provider settings cannot be used at all."""

    def __init__(self, message: str, error_type: str = "user_key_failed") -> None:
        super().__init__(message)
        self.error_type = error_type


class ExhaustionError(Exception):
    """Raised when every managed swarm attempt has failed."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class DispatchState(str, enum.Enum):
    INIT = "init"
    PHASE1_USER_KEY = "phase1_user_key"
    PHASE2_MANAGED_SWARM = "phase2_managed_swarm"
    DONE = "done"
    FAILED = "failed"


@dataclass
class DispatchOutcome:
    """Terminal state of one dispatch, for callers and logs."""
    state: DispatchState
    response: AIResponse | None
    phase: DispatchState | None = None
    attempts: int = 0
    tool_called: bool = False


def split_user_keys(api_key: str | None) -> list[str]:
    """Comma-separated key list with blanks removed."""
    return [k.strip() for k in (api_key or "").split(",") if k.strip()]


def to_response(output: ParsedOutput, token_usage: int, model: str) -> AIResponse:
    """Convert parsed model output into the public response shape."""
    if isinstance(output, StructuredReply):
        fields = {k: v for k, v in output.data.items() if k in AIResponse.model_fields and k != "error"}
        fields.update(token_usage=token_usage, model_used=model)
        return AIResponse.model_validate(fields)
    if isinstance(output, ToolCall):
        # Only reachable when a tool call escaped the loop
        output = PlainText(APOLOGY_REPLY)
    return AIResponse(reply=output.text, sentiment="neutral", token_usage=token_usage, model_used=model)


class ProviderDispatcher:
    """Runs a prepared conversation against the user's key or the managed swarm.

    Usage:
        dispatcher = ProviderDispatcher(inference, key_pool, resolver, tool_loop)
        outcome = await dispatcher.dispatch(messages, page_config, structured_output=True)
    """

    def __init__(
        self,
        inference: InferenceClient,
        key_pool: KeyPoolManager,
        resolver: ModelResolver,
        tool_loop: ToolCallLoop,
        settings: Settings | None = None,
        shuffle: Callable[[list[str]], None] = random.shuffle,
    ) -> None:
        self._inference = inference
        self._key_pool = key_pool
        self._resolver = resolver
        self._tool_loop = tool_loop
        self._settings = settings or get_settings()
        self._shuffle = shuffle

    def uses_user_key(self, config: PageConfig) -> bool:
        """Own-key mode with a real key (not the managed sentinel)."""
        if config.cheap_engine or config.provider == SYSTEM_PROVIDER:
            return False
        return (config.api_key or "").strip() != self._settings.managed_key_sentinel

    def user_route(self, secret: str, config: PageConfig) -> tuple[str, str]:
        """Provider and model for a Phase 1 call with ``secret``.

        Own-gateway keys keep the page's model id as typed; the gateway
        resolves its own aliases.
        """
        if config.provider == OWN_GATEWAY_PROVIDER:
            return OWN_GATEWAY_PROVIDER, config.chat_model or OWN_GATEWAY_DEFAULT_MODEL
        configured = PROVIDER_ALIASES.get(config.provider, config.provider)
        provider = infer_provider(secret, default=configured or "google")
        return provider, self._resolver.resolve(config.chat_model) or DEFAULT_CHAT_MODEL

    def validate(self, config: PageConfig) -> list[str]:
        """Check own-key settings before any network call.

        Returns:
            Shuffled user keys, or an empty list for managed mode.

        Raises:
            ConfigurationError: If own-key mode is on but no key is configured,
                or the key's provider has no known endpoint.
        """
        if not self.uses_user_key(config):
            return []
        keys = split_user_keys(config.api_key)
        if not keys:
            raise ConfigurationError(
                f"Page {config.page_id} is in own-key mode without a key",
                error_type="missing_user_key",
            )
        self._shuffle(keys)
        provider, _ = self.user_route(keys[0], config)
        if not self._inference.supports(provider):
            raise ConfigurationError(f"Page {config.page_id} uses unsupported provider {provider!r}")
        return keys

    async def dispatch(
        self,
        messages: list[dict[str, Any]],
        config: PageConfig,
        structured_output: bool = True,
    ) -> DispatchOutcome:
        """Drive the state machine to a terminal state.

        Returns:
            DispatchOutcome. ``DONE`` carries the reply; ``FAILED`` carries a
            configuration-error response after Phase 1, or ``None`` after an
            exhausted swarm.
        """
        try:
            user_keys = self.validate(config)
        except ConfigurationError as e:
            logger.warning(f"[Dispatch] {e}")
            return DispatchOutcome(
                DispatchState.FAILED,
                AIResponse.failure(get_error_response(e.error_type), config.chat_model),
                phase=DispatchState.INIT,
            )

        if user_keys:
            return await self._run_user_keys(user_keys, messages, config, structured_output)

        try:
            return await self._run_swarm(messages, config, structured_output)
        except ExhaustionError as e:
            logger.error(f"[Dispatch] {e}")
            return DispatchOutcome(
                DispatchState.FAILED,
                None,
                phase=DispatchState.PHASE2_MANAGED_SWARM,
                attempts=e.attempts,
            )

    # =========================================================================
    # Phase 1
    # =========================================================================

    async def _run_user_keys(
        self,
        user_keys: list[str],
        messages: list[dict[str, Any]],
        config: PageConfig,
        structured_output: bool,
    ) -> DispatchOutcome:
        timeout = self._settings.user_key_timeout_seconds

        # Keys are shuffled; the first one decides the outcome
        secret = user_keys[0]
        provider, model = self.user_route(secret, config)
        logger.info(f"[Dispatch] Phase 1: calling user key ({provider}/{model})")

        async def call(msgs: list[dict[str, Any]], structured: bool = structured_output) -> Completion:
            return await self._invoke(msgs, model, provider, secret, structured, timeout)

        try:
            completion = await call(messages)
            response, tool_called = await self._finish(completion, messages, config, model, call, synthesize=False)
        except (LLMError, asyncio.TimeoutError) as e:
            # No fallback to the managed pool once the user's key was tried
            logger.warning(
                f"[Dispatch] Phase 1 key {secret[:6]}... failed ({type(e).__name__}: {e}); "
                "blocking managed fallback"
            )
            return DispatchOutcome(
                DispatchState.FAILED,
                AIResponse.failure(get_error_response("user_key_failed"), model),
                phase=DispatchState.PHASE1_USER_KEY,
                attempts=1,
            )

        return DispatchOutcome(
            DispatchState.DONE,
            response,
            phase=DispatchState.PHASE1_USER_KEY,
            attempts=1,
            tool_called=tool_called,
        )

    # =========================================================================
    # Phase 2
    # =========================================================================

    async def _run_swarm(
        self,
        messages: list[dict[str, Any]],
        config: PageConfig,
        structured_output: bool,
    ) -> DispatchOutcome:
        provider = self._settings.swarm_provider
        model = self._settings.swarm_model
        timeout = self._settings.swarm_timeout_seconds
        attempts = 0

        for attempt in range(1, self._settings.swarm_attempts + 1):
            credential = await self._key_pool.acquire(provider, model)
            if credential is None:
                logger.warning(f"[Dispatch] No {provider}/{model} credential for swarm attempt {attempt}")
                break

            attempts += 1
            logger.info(f"[Dispatch] Phase 2 attempt {attempt}: key {credential.masked}")

            async def call(
                msgs: list[dict[str, Any]],
                structured: bool = structured_output,
                credential: Credential = credential,
            ) -> Completion:
                completion = await self._invoke(msgs, model, provider, credential.secret, structured, timeout)
                usage = estimate_token_usage(msgs, completion.content, completion.token_usage)
                await self._key_pool.record_usage(credential, usage)
                return completion

            try:
                completion = await call(messages)
                response, tool_called = await self._finish(completion, messages, config, model, call, synthesize=True)
            except LLMError as e:
                logger.warning(f"[Dispatch] Swarm attempt {attempt} failed: {e}")
                await self._key_pool.report_failure(credential, e, model)
                continue
            except asyncio.TimeoutError:
                logger.warning(f"[Dispatch] Swarm attempt {attempt} timed out after {timeout}s")
                continue

            return DispatchOutcome(
                DispatchState.DONE,
                response,
                phase=DispatchState.PHASE2_MANAGED_SWARM,
                attempts=attempts,
                tool_called=tool_called,
            )

        raise ExhaustionError(f"Managed swarm exhausted after {attempts} attempts", attempts)

    # =========================================================================
    # Shared
    # =========================================================================

    async def _invoke(
        self,
        messages: list[dict[str, Any]],
        model: str,
        provider: str,
        secret: str,
        structured: bool,
        timeout: float,
    ) -> Completion:
        return await asyncio.wait_for(
            self._inference.complete(
                messages,
                model,
                provider=provider,
                api_key=secret,
                structured_output=structured,
                timeout=timeout,
            ),
            timeout=timeout,
        )

    async def _finish(
        self,
        completion: Completion,
        messages: list[dict[str, Any]],
        config: PageConfig,
        model: str,
        call: Callable[..., Any],
        synthesize: bool,
    ) -> tuple[AIResponse, bool]:
        usage = estimate_token_usage(messages, completion.content, completion.token_usage)
        output = parse_model_output(completion.content)

        if not isinstance(output, ToolCall):
            return to_response(output, usage, model), False

        # Follow-up answers are always requested as JSON
        result = await self._tool_loop.run(
            output,
            messages,
            config,
            lambda msgs: call(msgs, structured=True),
            synthesize=synthesize,
        )
        return to_response(result.output, usage + result.token_usage, model), True
