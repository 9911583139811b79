"""Managed credential pool with health tracking.

Provides:
1. Least-recently-used selection of healthy credentials per (provider, model)
2. Time-boxed quarantine by failure class (quota, rate limit, auth, server)
3. Cumulative token accounting per credential
4. Loading from / persisting back to the ``api_credentials`` table

Credentials are created out-of-band (dashboard, migrations). This service is
the only place that mutates their health state at runtime.
"""

import asyncio
import enum
import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.core.llm import (
    LLMAuthError,
    LLMError,
    LLMQuotaError,
    LLMRateLimitError,
    LLMServerError,
)
from app.models.credential import ApiCredential, CredentialStatus

logger = logging.getLogger(__name__)

# Model name that matches any model of a provider
DEFAULT_MODEL = "default"

# Legacy prefixes used to guess the provider of a pasted user key
_KEY_PREFIXES: list[tuple[str, str]] = [
    ("sk-or-v1", "openrouter"),
    ("AIzaSy", "google"),
    ("gsk_", "groq"),
    ("xai-", "xai"),
    ("sk-", "openai"),
]


def infer_provider(secret: str, default: str = "google") -> str:
    """Guess a provider from a key's prefix.

    Only used when importing keys typed into the dashboard; pooled
    credentials always carry their provider explicitly.
    """
    for prefix, provider in _KEY_PREFIXES:
        if secret.startswith(prefix):
            return provider
    return default


@dataclass
class Credential:
    """A provider API key plus its health and usage state."""

    provider: str
    model: str
    secret: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: CredentialStatus = CredentialStatus.ALIVE
    cooldown_until: float = 0.0  # Epoch seconds
    cumulative_tokens: int = 0
    last_used_at: float = 0.0
    last_reason: str | None = None
    _use_seq: int = field(default=0, repr=False)

    @property
    def masked(self) -> str:
        """Key prefix safe for logs."""
        return f"{self.secret[:6]}..."

    def is_available(self, now: float) -> bool:
        if self.status == CredentialStatus.ALIVE:
            return True
        return self.cooldown_until <= now


@dataclass
class Quarantine:
    """How long and why a credential leaves the pool after a failure."""
    duration_seconds: float
    reason: str
    status: CredentialStatus


class KeyPoolManager:
    """Issues pooled credentials and tracks their health.

    ``acquire`` never hands the same credential to two concurrent callers
    when another healthy one exists, but returned credentials are not
    exclusively locked; concurrent use of one key is allowed.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._credentials: dict[str, Credential] = {}
        self._sequence = 0

    # =========================================================================
    # Loading
    # =========================================================================

    def load(self, credentials: Iterable[Credential]) -> None:
        """Register credentials, replacing any with the same id."""
        for credential in credentials:
            self._credentials[credential.id] = credential
        logger.info(f"Key pool loaded: {len(self._credentials)} credentials")

    async def load_from_db(self, db: AsyncSession) -> int:
        """Load active credentials from the ``api_credentials`` table."""
        result = await db.execute(select(ApiCredential).where(ApiCredential.is_active.is_(True)))
        rows = result.scalars().all()

        credentials = []
        for row in rows:
            cooldown = row.cooldown_until.timestamp() if row.cooldown_until else 0.0
            credentials.append(Credential(
                id=str(row.id),
                provider=row.provider,
                model=row.model,
                secret=row.secret,
                status=row.status,
                cooldown_until=cooldown,
                cumulative_tokens=row.total_tokens or 0,
            ))

        self.load(credentials)
        return len(credentials)

    async def persist(self, db: AsyncSession) -> int:
        """Write health state and token counters back to the database."""
        updated = 0
        for credential in list(self._credentials.values()):
            try:
                row = await db.get(ApiCredential, uuid.UUID(credential.id))
            except ValueError:
                continue  # Registered in memory only
            if row is None:
                continue
            row.status = credential.status
            row.cooldown_until = (
                datetime.fromtimestamp(credential.cooldown_until, tz=timezone.utc)
                if credential.cooldown_until
                else None
            )
            row.total_tokens = credential.cumulative_tokens
            row.last_error = credential.last_reason
            updated += 1

        await db.commit()
        logger.info(f"Key pool persisted: {updated} credentials")
        return updated

    # =========================================================================
    # Pool contract
    # =========================================================================

    async def acquire(self, provider: str, model: str) -> Credential | None:
        """Return the least-recently-used healthy credential for (provider, model).

        Falls back to credentials registered for the provider's ``default``
        model when no model-specific credential is healthy.
        """
        async with self._lock:
            now = self._clock()
            credential = self._pick(provider, model, now)
            if credential is None and model != DEFAULT_MODEL:
                credential = self._pick(provider, DEFAULT_MODEL, now)
            if credential is None:
                logger.warning(f"No healthy credential for {provider}/{model}")
                return None

            if credential.status != CredentialStatus.ALIVE:
                logger.info(f"Credential {credential.masked} cooldown elapsed, back in pool")
                credential.status = CredentialStatus.ALIVE
                credential.cooldown_until = 0.0

            self._sequence += 1
            credential._use_seq = self._sequence
            credential.last_used_at = now
            return credential

    def _pick(self, provider: str, model: str, now: float) -> Credential | None:
        candidates = [
            c for c in self._credentials.values()
            if c.provider == provider and c.model == model and c.is_available(now)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda c: c._use_seq)

    async def quarantine(
        self,
        credential: Credential,
        duration_seconds: float,
        reason: str,
        status: CredentialStatus = CredentialStatus.DEAD,
    ) -> None:
        """Remove a credential from the acquirable pool for a while."""
        async with self._lock:
            credential.status = status
            credential.cooldown_until = self._clock() + duration_seconds
            credential.last_reason = reason

        logger.warning(
            f"Credential {credential.masked} quarantined: reason={reason}, "
            f"duration={int(duration_seconds)}s",
            extra={"provider": credential.provider, "model": credential.model},
        )

    async def record_usage(self, credential: Credential, tokens: int) -> None:
        """Add tokens to a credential's running total."""
        if tokens <= 0:
            return
        async with self._lock:
            credential.cumulative_tokens += tokens

    # =========================================================================
    # Failure classification
    # =========================================================================

    def quarantine_for(self, error: LLMError, model: str) -> Quarantine | None:
        """Map a provider failure onto its quarantine policy.

        Connection errors and timeouts return ``None``: the key itself is not
        at fault.
        """
        s = self._settings
        if isinstance(error, LLMQuotaError):
            return Quarantine(s.key_quota_cooldown_seconds, "quota_exceeded", CredentialStatus.QUOTA_EXCEEDED)
        if isinstance(error, LLMRateLimitError):
            return Quarantine(s.key_rate_limit_cooldown_seconds, f"rate_limit_{model}", CredentialStatus.DEAD)
        if isinstance(error, LLMAuthError):
            return Quarantine(s.key_auth_cooldown_seconds, "auth_error", CredentialStatus.DEAD)
        if isinstance(error, LLMServerError):
            return Quarantine(s.key_server_error_cooldown_seconds, "server_error", CredentialStatus.DEAD)
        return None

    async def report_failure(self, credential: Credential, error: LLMError, model: str) -> None:
        """Quarantine a credential according to how its call failed."""
        policy = self.quarantine_for(error, model)
        if policy is not None:
            await self.quarantine(credential, policy.duration_seconds, policy.reason, policy.status)

    # =========================================================================
    # Introspection
    # =========================================================================

    def stats(self) -> dict[str, Any]:
        """Per-(provider, model) counts of healthy and quarantined credentials."""
        now = self._clock()
        groups: dict[str, dict[str, int]] = {}
        for c in self._credentials.values():
            group = groups.setdefault(f"{c.provider}/{c.model}", {"alive": 0, "quarantined": 0, "tokens": 0})
            group["alive" if c.is_available(now) else "quarantined"] += 1
            group["tokens"] += c.cumulative_tokens
        return {"total": len(self._credentials), "groups": groups}
