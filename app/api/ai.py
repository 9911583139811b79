"""AI engine endpoints.

Called by the messaging backends (Messenger, WhatsApp, external API gateway):
1. Generate a reply for an incoming conversation turn
2. Describe an image
3. Transcribe a voice message
"""

import logging

from fastapi import APIRouter, HTTPException, Request

from app.api.deps import AdminAuth, Engine, limiter
from app.config import get_settings
from app.core.prompts import get_error_response
from app.schemas.conversation import (
    AIResponse,
    ConversationRequest,
    DescribeImageRequest,
    MediaResult,
    TranscribeAudioRequest,
)
from app.services.engine import PageNotFoundError
from app.services.media import VisionOptions

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/ai", tags=["AI"])


@router.post("/generate", response_model=AIResponse)
@limiter.limit(settings.generate_rate_limit)
async def generate(
    request: Request,
    body: ConversationRequest,
    engine: Engine,
    _auth: AdminAuth,
) -> AIResponse:
    """Generate a reply for one conversation turn.

    A response with ``error`` set means the page's provider settings are
    unusable; 503 means the managed pool is temporarily exhausted.
    """
    try:
        response = await engine.generate(body)
    except PageNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if response is None:
        logger.error(f"Managed pool exhausted for page={body.page_id}")
        raise HTTPException(status_code=503, detail=get_error_response("service_unavailable"))

    return response


@router.post("/vision", response_model=MediaResult)
async def describe_image(
    body: DescribeImageRequest,
    engine: Engine,
    _auth: AdminAuth,
) -> MediaResult:
    """Describe an image given as a URL or data URI."""
    try:
        config = await engine.page_config(body.page_id)
    except PageNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    options = VisionOptions(
        prompt=body.prompt or config.image_prompt,
        provider=body.priority_provider,
        model=body.priority_model,
    )
    return await engine.describe_image(body.ref, config, options)


@router.post("/transcribe", response_model=MediaResult)
async def transcribe_audio(
    body: TranscribeAudioRequest,
    engine: Engine,
    _auth: AdminAuth,
) -> MediaResult:
    """Transcribe a voice message URL."""
    try:
        config = await engine.page_config(body.page_id)
    except PageNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return await engine.transcribe_audio(body.ref, config)
