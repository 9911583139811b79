"""Page bot configuration model."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class PageSettings(Base):
    """Per-page bot settings written by the dashboard.

    The engine only reads this table; CRUD lives in the dashboard backend.
    """

    __tablename__ = "page_configs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    page_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bot_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    text_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    chat_model: Mapped[str | None] = mapped_column(String(150), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    cheap_engine: Mapped[bool] = mapped_column(Boolean, default=True)
    is_external_api: Mapped[bool] = mapped_column(Boolean, default=False)
    page_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
