"""Pooled provider credential model."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class CredentialStatus(str, enum.Enum):
    """Health of a pooled credential."""

    ALIVE = "alive"
    QUOTA_EXCEEDED = "quota_exceeded"
    DEAD = "dead"


class ApiCredential(Base):
    """Managed provider API keys shared across pages.

    Rows are created out-of-band. At runtime the key pool keeps health state
    in memory and writes it back on shutdown.
    """

    __tablename__ = "api_credentials"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    model: Mapped[str] = mapped_column(String(150), nullable=False, default="default")
    secret: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[CredentialStatus] = mapped_column(
        Enum(CredentialStatus, values_callable=lambda e: [m.value for m in e]),
        default=CredentialStatus.ALIVE,
    )
    cooldown_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    last_error: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
