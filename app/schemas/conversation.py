"""Pydantic schemas for AI engine requests and responses.

This module defines the request-scoped data that flows through the engine:
the page configuration snapshot, the conversation request, product rows from
the catalog backend, and the structured AI response.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


# ============================================================================
# Page Configuration
# ============================================================================

class PageConfig(BaseModel):
    """Read-only snapshot of a page's bot configuration."""

    page_id: str
    user_id: str | None = None  # Owner of the product catalog
    bot_name: str | None = None
    text_prompt: str | None = None
    image_prompt: str | None = None
    chat_model: str | None = None
    provider: str | None = None
    api_key: str | None = None
    cheap_engine: bool = True  # Managed pool mode
    is_external_api: bool = False
    page_access_token: str | None = None

    @field_validator("cheap_engine", mode="before")
    @classmethod
    def _default_cheap_engine(cls, v: Any) -> Any:
        # Only an explicit False opts out of the managed pool
        return True if v is None else v


# ============================================================================
# Conversation Request
# ============================================================================

class ExecutionMode(str, Enum):
    """Prompt construction mode."""
    EXTERNAL = "external"
    INTERNAL = "internal"


class ChatTurn(BaseModel):
    """One prior turn of the conversation."""
    role: str
    content: str


class ConversationRequest(BaseModel):
    """Everything the engine needs to answer one incoming message."""

    page_id: str
    sender_id: str
    sender_name: str | None = None
    owner_name: str | None = None
    user_message: str = ""
    history: list[ChatTurn] = Field(default_factory=list)
    image_refs: list[str] = Field(default_factory=list)
    audio_refs: list[str] = Field(default_factory=list)
    page_config: PageConfig | None = None
    mode: ExecutionMode | None = None
    extra_token_usage: int = 0  # Usage already spent upstream (e.g. by a controller)

    def resolved_mode(self) -> ExecutionMode:
        """Explicit mode wins; otherwise derived from the page config."""
        if self.mode is not None:
            return self.mode
        if self.page_config and self.page_config.is_external_api:
            return ExecutionMode.EXTERNAL
        return ExecutionMode.INTERNAL


# ============================================================================
# Catalog
# ============================================================================

class ProductVariant(BaseModel):
    """A purchasable variant of a product."""
    name: str
    price: int | float | str | None = None
    currency: str | None = None


class Product(BaseModel):
    """Product row returned by the catalog search collaborator."""

    name: str = "Unnamed Product"
    price: int | float | str | None = None
    currency: str | None = None
    stock: int | str | None = None
    description: str | None = None
    image_url: str | None = None
    variants: list[ProductVariant] = Field(default_factory=list)

    model_config = {"extra": "ignore"}


# ============================================================================
# AI Response
# ============================================================================

class ImageAttachment(BaseModel):
    """Image the bot should send alongside its reply."""
    url: str
    title: str | None = None


class AIResponse(BaseModel):
    """Structured reply produced by the engine.

    ``error`` set means the request failed on configuration grounds; in that
    case ``reply`` is always ``None``.
    """

    reply: str | None = None
    images: list[ImageAttachment] = Field(default_factory=list)
    sentiment: str | None = None
    dm_message: str | None = None
    bad_words: str | None = None
    order_details: dict[str, Any] | None = None
    token_usage: int = 0
    model_used: str | None = None
    error: str | None = None

    @field_validator("images", mode="before")
    @classmethod
    def _coerce_images(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return []
        images = []
        for item in v:
            if isinstance(item, dict) and isinstance(item.get("url"), str):
                images.append({"url": item["url"], "title": item.get("title")})
            elif isinstance(item, str):
                images.append({"url": item})
        return images

    @field_validator("bad_words", "dm_message", "sentiment", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, list):
            return ", ".join(str(x) for x in v)
        return str(v)

    @field_validator("order_details", mode="before")
    @classmethod
    def _coerce_order(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else None

    @model_validator(mode="after")
    def _error_clears_reply(self) -> "AIResponse":
        if self.error is not None:
            self.reply = None
        return self

    @classmethod
    def failure(cls, error: str, model: str | None = None) -> "AIResponse":
        """Build a configuration-error response."""
        return cls(reply=None, error=error, token_usage=0, model_used=model)


class MediaResult(BaseModel):
    """Descriptive text produced from an image or audio reference."""
    text: str
    token_usage: int = 0
    model_used: str | None = None


# ============================================================================
# HTTP bodies
# ============================================================================

class DescribeImageRequest(BaseModel):
    """Body for the vision endpoint."""
    page_id: str
    ref: str
    prompt: str | None = None
    priority_provider: str | None = None
    priority_model: str | None = None


class TranscribeAudioRequest(BaseModel):
    """Body for the transcription endpoint."""
    page_id: str
    ref: str
