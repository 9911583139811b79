"""API dependencies for dependency injection."""

import logging
from typing import Annotated

import redis.asyncio as redis
from fastapi import Depends, Request, HTTPException, Header
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.db.session import get_db
from app.services.engine import AIEngine
from app.services.key_pool import KeyPoolManager
from app.services.model_resolver import ModelResolver

logger = logging.getLogger(__name__)
settings = get_settings()

# Rate limiter - uses client IP address
limiter = Limiter(key_func=get_remote_address)


async def get_redis(request: Request) -> redis.Redis:
    """Get Redis client from app state."""
    return request.app.state.redis


async def get_engine(request: Request) -> AIEngine:
    """Get the AI engine built during startup."""
    return request.app.state.engine


async def get_key_pool(request: Request) -> KeyPoolManager:
    """Get the managed credential pool from app state."""
    return request.app.state.key_pool


async def get_resolver(request: Request) -> ModelResolver:
    """Get the model resolver from app state."""
    return request.app.state.resolver


# =============================================================================
# Authentication Dependencies
# =============================================================================


async def verify_admin_api_key(
    x_api_key: str | None = Header(None, alias="X-API-Key"),
) -> bool:
    """Verify API requests using the API key header.

    Callers (dashboard backend, webhook workers) send X-API-Key with each request.
    In development mode, authentication is skipped if no key is configured.
    """
    # Skip auth in development if no key configured
    if settings.is_development and not settings.admin_api_key:
        logger.warning("API auth skipped - no key configured (dev mode)")
        return True

    if not settings.admin_api_key:
        logger.error("ADMIN_API_KEY not configured")
        raise HTTPException(status_code=500, detail="API authentication not configured")

    if not x_api_key:
        logger.warning("API request missing X-API-Key header")
        raise HTTPException(status_code=401, detail="Missing API key")

    if x_api_key != settings.admin_api_key:
        logger.warning("API request with invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")

    return True


# =============================================================================
# Type Aliases
# =============================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
RedisClient = Annotated[redis.Redis, Depends(get_redis)]
Engine = Annotated[AIEngine, Depends(get_engine)]
KeyPool = Annotated[KeyPoolManager, Depends(get_key_pool)]
Resolver = Annotated[ModelResolver, Depends(get_resolver)]
AdminAuth = Annotated[bool, Depends(verify_admin_api_key)]
