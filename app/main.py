"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

import redis.asyncio as redis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

import logging

from app.config import Settings, get_settings
from app.core.llm import InferenceClient
from app.db.session import async_session_maker, session_scope
from app.api import ai
from app.api.admin import health
from app.api.deps import limiter
from app.services.catalog import CatalogAPIClient
from app.services.dispatcher import ProviderDispatcher
from app.services.engine import AIEngine
from app.services.key_pool import KeyPoolManager
from app.services.media import MediaPreprocessor
from app.services.model_resolver import ModelResolver
from app.services.page_config import PageConfigStore
from app.services.response_cache import ResponseCache
from app.services.tool_loop import ToolCallLoop

logger = logging.getLogger(__name__)

settings = get_settings()


async def _load_key_pool(key_pool: KeyPoolManager) -> None:
    """Load managed credentials; the service still starts without a database."""
    try:
        async with session_scope() as db:
            count = await key_pool.load_from_db(db)
        if count == 0:
            logger.warning("⚠️  Key pool is empty. Managed (cheap engine) pages will get no replies.")
        else:
            logger.info(f"✓ Key pool ready: {count} credentials")
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Could not load credentials: {e}")


async def _persist_key_pool(key_pool: KeyPoolManager) -> None:
    try:
        async with session_scope() as db:
            await key_pool.persist(db)
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Could not persist credential health: {e}")


def build_engine(
    settings: Settings,
    inference: InferenceClient,
    key_pool: KeyPoolManager,
    resolver: ModelResolver,
    catalog: CatalogAPIClient,
) -> AIEngine:
    """Wire the request pipeline from its collaborators."""
    tool_loop = ToolCallLoop(catalog, default_currency=settings.default_currency)
    return AIEngine(
        dispatcher=ProviderDispatcher(inference, key_pool, resolver, tool_loop, settings),
        media=MediaPreprocessor(inference, key_pool, resolver, settings),
        catalog=catalog,
        cache=ResponseCache(
            ttl_seconds=settings.response_cache_ttl_seconds,
            max_entries=settings.response_cache_max_entries,
        ),
        page_store=PageConfigStore(async_session_maker),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager for startup/shutdown events."""
    # Startup: Initialize Redis connection pool
    app.state.redis = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )

    inference = InferenceClient(settings)
    key_pool = KeyPoolManager(settings)
    await _load_key_pool(key_pool)

    resolver = ModelResolver(inference, key_pool, settings, redis_client=app.state.redis)
    await resolver.start()

    catalog = CatalogAPIClient(settings)

    app.state.key_pool = key_pool
    app.state.resolver = resolver
    app.state.engine = build_engine(settings, inference, key_pool, resolver, catalog)

    yield
    # Shutdown: Stop background work, save credential health, close connections
    await resolver.stop()
    await _persist_key_pool(key_pool)
    await catalog.close()
    await inference.close()
    await app.state.redis.close()


app = FastAPI(
    title=f"{settings.app_name} AI Engine",
    description="Multi-provider reply generation with managed key rotation",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(ai.router, tags=["AI"])
