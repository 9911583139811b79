"""AI engine facade.

Composes the request pipeline used by the HTTP layer:

1. Resolve the page configuration (request snapshot or store)
2. Replay a cached answer for repeated text-only questions
3. Inject matching catalog products and analyse attached media in parallel
4. Build the prompt for the request's mode and dispatch it
5. Cache successful answers and fold in upstream token usage
"""

import asyncio
import logging

from app.config import Settings, get_settings
from app.core.prompts import (
    build_conversation,
    build_media_context,
    extract_inline_images,
    format_product_context,
)
from app.schemas.conversation import (
    AIResponse,
    ConversationRequest,
    ExecutionMode,
    MediaResult,
    PageConfig,
)
from app.services.catalog import CatalogAPIError, ProductSearch
from app.services.dispatcher import DispatchState, ProviderDispatcher
from app.services.media import MediaPreprocessor, VisionOptions
from app.services.page_config import PageConfigStore
from app.services.response_cache import ResponseCache

logger = logging.getLogger(__name__)


class PageNotFoundError(Exception):
    """Raised when a request names a page with no stored configuration."""
    pass


class AIEngine:
    """Entry point for reply generation and standalone media analysis."""

    def __init__(
        self,
        dispatcher: ProviderDispatcher,
        media: MediaPreprocessor,
        catalog: ProductSearch,
        cache: ResponseCache,
        page_store: PageConfigStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._media = media
        self._catalog = catalog
        self._cache = cache
        self._page_store = page_store
        self._settings = settings or get_settings()

    async def page_config(self, page_id: str, snapshot: PageConfig | None = None) -> PageConfig:
        """Return the request's snapshot, else the stored config for the page.

        Raises:
            PageNotFoundError: If neither is available.
        """
        if snapshot is not None:
            return snapshot
        config = await self._page_store.get(page_id) if self._page_store else None
        if config is None:
            raise PageNotFoundError(f"Unknown page: {page_id}")
        return config

    # =========================================================================
    # Generation
    # =========================================================================

    async def generate(self, request: ConversationRequest) -> AIResponse | None:
        """Produce a reply for one incoming message.

        Args:
            request: Conversation request; ``page_config`` is loaded from the
                store when the caller did not send one.

        Returns:
            AIResponse on success or configuration failure (``error`` set), or
            None when the managed pool is exhausted.

        Raises:
            PageNotFoundError: If the page configuration cannot be resolved.
        """
        config = await self.page_config(request.page_id, request.page_config)
        request = request.model_copy(update={"page_config": config})
        mode = request.resolved_mode()

        user_message, inline_refs = extract_inline_images(request.user_message)
        image_refs = request.image_refs + inline_refs
        cacheable = mode == ExecutionMode.INTERNAL and not image_refs and not request.audio_refs

        if cacheable:
            cached = self._cache.get(request.page_id, request.sender_id, user_message)
            if cached is not None:
                return self._with_extra_usage(cached, request.extra_token_usage)

        product_context, (image_results, audio_results) = await asyncio.gather(
            self._product_context(config, user_message, mode),
            self._analyse_media(image_refs, request.audio_refs, config),
        )

        media_usage = sum(r.token_usage for r in image_results + audio_results)
        full_message = user_message + build_media_context(
            [r.text for r in image_results],
            [r.text for r in audio_results],
        )

        messages, structured = build_conversation(
            request,
            config,
            full_message,
            product_context=product_context,
            stability=config.cheap_engine or config.provider == "openrouter",
        )

        outcome = await self._dispatcher.dispatch(messages, config, structured_output=structured)
        logger.info(
            f"Dispatch finished: page={request.page_id}, state={outcome.state.value}, "
            f"attempts={outcome.attempts}",
            extra={"phase": outcome.phase.value if outcome.phase else None, "tool_called": outcome.tool_called},
        )

        if outcome.response is None:
            return None

        response = outcome.response
        if outcome.state == DispatchState.DONE and cacheable:
            self._cache.set(request.page_id, request.sender_id, user_message, response)

        return self._with_extra_usage(response, request.extra_token_usage + media_usage)

    @staticmethod
    def _with_extra_usage(response: AIResponse, extra: int) -> AIResponse:
        if not extra or response.error is not None:
            return response
        return response.model_copy(update={"token_usage": response.token_usage + extra})

    async def _product_context(self, config: PageConfig, message: str, mode: ExecutionMode) -> str:
        if mode != ExecutionMode.INTERNAL or not config.user_id or not message.strip():
            return ""
        try:
            products = await self._catalog.search(config.user_id, message, config.page_id)
        except CatalogAPIError as e:
            logger.warning(f"Product context unavailable for page={config.page_id}: {e}")
            return ""
        return format_product_context(products, self._settings.default_currency)

    async def _analyse_media(
        self,
        image_refs: list[str],
        audio_refs: list[str],
        config: PageConfig,
    ) -> tuple[list[MediaResult], list[MediaResult]]:
        images, audio = await asyncio.gather(
            self._media.describe_images(image_refs, config, prompt=config.image_prompt),
            self._media.transcribe_all(audio_refs, config),
        )
        return images, audio

    # =========================================================================
    # Standalone media
    # =========================================================================

    async def describe_image(
        self,
        ref: str,
        config: PageConfig | None = None,
        options: VisionOptions | None = None,
    ) -> MediaResult:
        """Describe one image; never raises."""
        if options is None:
            options = VisionOptions(prompt=config.image_prompt if config else None)
        return await self._media.describe_image(ref, config, options)

    async def transcribe_audio(self, ref: str, config: PageConfig | None = None) -> MediaResult:
        """Transcribe one voice message; never raises."""
        return await self._media.transcribe_audio(ref, config)
