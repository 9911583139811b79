"""Image and audio preprocessing into descriptive text.

Vision and audio each run an independent fallback chain. Every stage has its
own timeout and pooled credential; a failing stage adds to a diagnostic trail
and the chain moves on. Exhausting a chain yields a fixed sentinel text with
zero usage, so callers can always continue with the conversation.
"""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from app.config import Settings, get_settings
from app.core.llm import InferenceClient, LLMError
from app.core.prompts import DEFAULT_VISION_PROMPT
from app.schemas.conversation import MediaResult, PageConfig
from app.services.key_pool import KeyPoolManager
from app.services.model_resolver import ModelResolver

logger = logging.getLogger(__name__)

VISION_UNAVAILABLE = "Image found but analysis unavailable due to technical errors."
AUDIO_DOWNLOAD_FAILED = "[Audio Download Failed]"
AUDIO_UNAVAILABLE = "[Audio Message (Transcription Failed)]"

TRANSCRIBE_PROMPT = (
    "Transcribe this audio in standard Bengali. If the audio is in Bengali script, "
    "output Bengali. If it's Banglish, output standard Bengali text. Do not translate "
    "English words, keep them in English script if spoken clearly. Output ONLY the "
    "raw transcription."
)
WHISPER_PROMPT = "Transcribe exactly in standard Bengali."

DEFAULT_AUDIO_MIME = "audio/ogg"
DEFAULT_IMAGE_MIME = "image/jpeg"


class MediaLoadError(Exception):
    """Raised when a media reference cannot be downloaded or decoded."""
    pass


@dataclass
class VisionOptions:
    """Per-call vision overrides."""
    prompt: str | None = None
    provider: str | None = None  # Priority stage, tried before the defaults
    model: str | None = None


@dataclass
class MediaStage:
    """One provider/model attempt in a fallback chain."""
    name: str
    provider: str
    model: str


def normalize_audio_mime(content_type: str | None) -> str:
    """Map a download's content type onto one the transcription models accept."""
    content_type = (content_type or "").lower()
    if "opus" in content_type or "ogg" in content_type:
        return "audio/ogg"
    if "mp3" in content_type or "mpeg" in content_type:
        return "audio/mp3"
    if "wav" in content_type:
        return "audio/wav"
    if "aac" in content_type:
        return "audio/aac"
    return DEFAULT_AUDIO_MIME


def decode_data_uri(ref: str) -> tuple[bytes, str]:
    """Decode a ``data:<mime>;base64,<payload>`` reference."""
    header, sep, payload = ref.partition(",")
    if not sep:
        raise MediaLoadError("Invalid data URI format (missing comma)")
    mime_type = header[5:].split(";")[0] or DEFAULT_IMAGE_MIME
    try:
        return base64.b64decode("".join(payload.split()), validate=True), mime_type
    except binascii.Error as e:
        raise MediaLoadError(f"Invalid base64 payload: {e}") from e


class MediaPreprocessor:
    """Turns image and audio references into text the chat model can use."""

    def __init__(
        self,
        inference: InferenceClient,
        key_pool: KeyPoolManager,
        resolver: ModelResolver,
        settings: Settings | None = None,
    ) -> None:
        self._inference = inference
        self._key_pool = key_pool
        self._resolver = resolver
        self._settings = settings or get_settings()

    # =========================================================================
    # Download
    # =========================================================================

    def auth_headers(self, url: str, config: PageConfig | None) -> dict[str, str]:
        """Provider-specific auth for media hosted behind WAHA or the Graph API."""
        headers = {"User-Agent": "Mozilla/5.0"}
        waha = self._settings.waha_base_url
        if waha and url.startswith(waha):
            headers["X-Api-Key"] = self._settings.waha_api_key
        elif urlparse(url).netloc.endswith("graph.facebook.com") and config and config.page_access_token:
            headers["Authorization"] = f"Bearer {config.page_access_token}"
        return headers

    async def _download(self, url: str, config: PageConfig | None) -> tuple[bytes, str | None]:
        try:
            return await self._inference.download(
                url,
                headers=self.auth_headers(url, config),
                timeout=self._settings.media_download_timeout_seconds,
            )
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            # ValueError covers urlparse rejecting malformed refs
            raise MediaLoadError(f"Download failed: {e}") from e

    async def _load_image(self, ref: str, config: PageConfig | None) -> tuple[bytes, str]:
        if ref.startswith("data:"):
            return decode_data_uri(ref)
        data, content_type = await self._download(ref, config)
        return data, (content_type or DEFAULT_IMAGE_MIME).split(";")[0]

    # =========================================================================
    # Stage runner
    # =========================================================================

    async def _run_stage(
        self,
        stage: MediaStage,
        prompt: str,
        data: bytes,
        mime_type: str,
        timeout: float,
        trail: list[str],
    ) -> MediaResult | None:
        credential = await self._key_pool.acquire(stage.provider, stage.model)
        if credential is None:
            trail.append(f"{stage.name}: no key available")
            return None

        try:
            completion = await asyncio.wait_for(
                self._inference.complete_with_media(
                    prompt,
                    stage.model,
                    data,
                    mime_type,
                    provider=stage.provider,
                    api_key=credential.secret,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            trail.append(f"{stage.name}: timed out after {timeout}s")
            return None
        except LLMError as e:
            await self._key_pool.report_failure(credential, e, stage.model)
            trail.append(f"{stage.name}: {e}")
            return None
        except Exception as e:
            # Malformed provider payloads must not abort the chain
            logger.exception(f"[Media] Unexpected error in stage {stage.name}")
            trail.append(f"{stage.name}: {e}")
            return None

        await self._key_pool.record_usage(credential, completion.token_usage)
        logger.info(
            f"[Media] Success with {stage.name}: {completion.content[:30]}... "
            f"Usage: {completion.token_usage}"
        )
        return MediaResult(
            text=completion.content.strip(),
            token_usage=completion.token_usage,
            model_used=stage.model,
        )

    # =========================================================================
    # Vision
    # =========================================================================

    def vision_stages(self, options: VisionOptions | None) -> list[MediaStage]:
        stages = []
        if options and options.provider and options.model:
            stages.append(MediaStage(f"Priority {options.model}", options.provider, options.model))
        stages.extend([
            MediaStage(self._settings.vision_primary_model, "google", self._settings.vision_primary_model),
            MediaStage(self._settings.vision_lite_model, "google", self._settings.vision_lite_model),
            MediaStage(
                f"OpenRouter {self._resolver.best_free_models.vision}",
                "openrouter",
                self._resolver.best_free_models.vision,
            ),
        ])
        return stages

    async def describe_image(
        self,
        ref: str,
        config: PageConfig | None = None,
        options: VisionOptions | None = None,
    ) -> MediaResult:
        """Describe one image; never raises.

        Args:
            ref: ``data:`` URI or remote URL.
            config: Page config, used for Graph API auth.
            options: Prompt override and optional priority provider/model.

        Returns:
            MediaResult with the description, or the unavailable sentinel.
        """
        trail: list[str] = []
        try:
            data, mime_type = await self._load_image(ref, config)
        except MediaLoadError as e:
            trail.append(f"Pre-processing: {e}")
        else:
            prompt = (options.prompt if options else None) or DEFAULT_VISION_PROMPT
            for stage in self.vision_stages(options):
                result = await self._run_stage(
                    stage, prompt, data, mime_type, self._settings.vision_timeout_seconds, trail
                )
                if result is not None:
                    return result

        logger.error(f"[Vision] All attempts failed. Reasons: {' | '.join(trail)}")
        return MediaResult(text=VISION_UNAVAILABLE, token_usage=0)

    async def describe_images(
        self,
        refs: list[str],
        config: PageConfig | None,
        prompt: str | None = None,
    ) -> list[MediaResult]:
        """Describe several images concurrently, preserving order."""
        options = VisionOptions(prompt=prompt)
        return list(await asyncio.gather(*(self.describe_image(ref, config, options) for ref in refs)))

    # =========================================================================
    # Audio
    # =========================================================================

    def audio_stages(self) -> list[MediaStage]:
        stages = [
            MediaStage(self._settings.vision_primary_model, "google", self._settings.vision_primary_model),
            MediaStage(self._settings.vision_lite_model, "google", self._settings.vision_lite_model),
        ]
        voice = self._resolver.best_free_models.voice
        # Only Gemini-family free models accept audio input
        if "gemini" in voice:
            stages.append(MediaStage(f"OpenRouter {voice}", "openrouter", voice))
        return stages

    async def transcribe_audio(self, ref: str, config: PageConfig | None = None) -> MediaResult:
        """Transcribe one voice message; never raises."""
        try:
            data, content_type = await self._download(ref, config)
        except MediaLoadError as e:
            logger.error(f"[Audio] Download failed: {e}")
            return MediaResult(text=AUDIO_DOWNLOAD_FAILED, token_usage=0)

        mime_type = normalize_audio_mime(content_type)
        logger.debug(f"[Audio] Downloaded. Size: {len(data)}, Type: {mime_type}")

        trail: list[str] = []
        for stage in self.audio_stages():
            result = await self._run_stage(
                stage, TRANSCRIBE_PROMPT, data, mime_type, self._settings.audio_timeout_seconds, trail
            )
            if result is not None:
                return result

        text = await self._transcribe_with_whisper(data, mime_type, trail)
        if text:
            return MediaResult(text=text, token_usage=0, model_used=self._settings.whisper_model)

        logger.error(f"[Audio] All attempts failed. Reasons: {' | '.join(trail)}")
        return MediaResult(text=AUDIO_UNAVAILABLE, token_usage=0)

    async def _transcribe_with_whisper(self, data: bytes, mime_type: str, trail: list[str]) -> str | None:
        model = self._settings.whisper_model
        credential = await self._key_pool.acquire("groq", model)
        if credential is None:
            trail.append("Whisper: no key available")
            return None

        try:
            return await asyncio.wait_for(
                self._inference.transcribe(
                    data,
                    mime_type,
                    api_key=credential.secret,
                    model=model,
                    language=self._settings.whisper_language,
                    prompt=WHISPER_PROMPT,
                    timeout=self._settings.media_download_timeout_seconds,
                ),
                timeout=self._settings.audio_timeout_seconds,
            ) or None
        except asyncio.TimeoutError:
            trail.append("Whisper: timed out")
        except LLMError as e:
            await self._key_pool.report_failure(credential, e, model)
            trail.append(f"Whisper: {e}")
        return None

    async def transcribe_all(self, refs: list[str], config: PageConfig | None) -> list[MediaResult]:
        """Transcribe several voice messages concurrently, preserving order."""
        return list(await asyncio.gather(*(self.transcribe_audio(ref, config) for ref in refs)))
