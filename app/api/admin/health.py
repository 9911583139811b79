"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api.deps import DbSession, KeyPool, RedisClient, Resolver

router = APIRouter()


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str
    timestamp: str


class ServiceHealth(BaseModel):
    """Individual service health status."""

    status: str
    latency_ms: float | None = None
    error: str | None = None


class DetailedHealthResponse(BaseModel):
    """Detailed health check response with service and pool status."""

    status: str
    timestamp: str
    services: dict[str, ServiceHealth]
    key_pool: dict[str, Any]
    best_free_models: dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Basic health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/health/detailed", response_model=DetailedHealthResponse)
async def detailed_health_check(
    db: DbSession,
    redis_client: RedisClient,
    key_pool: KeyPool,
    resolver: Resolver,
) -> DetailedHealthResponse:
    """Detailed health check with database, Redis and credential pool status."""
    services: dict[str, ServiceHealth] = {}

    # Check PostgreSQL
    try:
        start = datetime.now(timezone.utc)
        await db.execute(text("SELECT 1"))
        latency = (datetime.now(timezone.utc) - start).total_seconds() * 1000
        services["database"] = ServiceHealth(status="healthy", latency_ms=round(latency, 2))
    except (SQLAlchemyError, OSError) as e:
        services["database"] = ServiceHealth(status="unhealthy", error=str(e))

    # Check Redis
    try:
        start = datetime.now(timezone.utc)
        await redis_client.ping()
        latency = (datetime.now(timezone.utc) - start).total_seconds() * 1000
        services["redis"] = ServiceHealth(status="healthy", latency_ms=round(latency, 2))
    except (redis.RedisError, OSError) as e:
        services["redis"] = ServiceHealth(status="unhealthy", error=str(e))

    pool = key_pool.stats()
    alive = sum(g["alive"] for g in pool["groups"].values())
    services["key_pool"] = ServiceHealth(
        status="healthy" if alive else "unhealthy",
        error=None if alive else "No healthy credentials",
    )

    # Overall status
    all_healthy = all(s.status == "healthy" for s in services.values())
    overall_status = "healthy" if all_healthy else "degraded"

    return DetailedHealthResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        services=services,
        key_pool=pool,
        best_free_models=resolver.best_free_models.model_dump(),
    )
