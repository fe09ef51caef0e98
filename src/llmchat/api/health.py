import asyncio
from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from opentelemetry import trace
from redis.asyncio import Redis

from llmchat.config import settings
from llmchat.providers import GatewayClient

router = APIRouter(prefix="/health", tags=["health"])
log = structlog.get_logger()
tracer = trace.get_tracer(__name__)


@router.get("")
async def health() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "version": settings.app_version,
        }
    )


@router.get("/live")
async def liveness() -> JSONResponse:
    """Kubernetes liveness probe; always 200 while the process runs."""
    return JSONResponse(content={"status": "alive"})


@router.get("/ready")
async def readiness(request: Request) -> JSONResponse:
    """Kubernetes readiness probe; checks the gateway and the model-info cache.

    Checks for dependencies that are not configured are skipped.
    """
    checks: dict[str, str] = {}
    errors: dict[str, str] = {}

    with tracer.start_as_current_span("health.readiness"):
        # ------------------------------------------------------------------
        # Gateway
        # ------------------------------------------------------------------
        gateway: GatewayClient | None = getattr(request.app.state, "gateway", None)
        if gateway is not None and gateway.is_configured:
            with tracer.start_as_current_span("health.check.gateway"):
                try:
                    await asyncio.wait_for(gateway.fetch_model_entries(), timeout=5.0)
                    checks["gateway"] = "ok"
                    log.debug("gateway_check_succeeded")
                except Exception as exc:
                    errors["gateway"] = str(exc)
                    log.warning("gateway_check_failed", error=str(exc))

        # ------------------------------------------------------------------
        # Redis (model-info cache)
        # ------------------------------------------------------------------
        if settings.model_info_cache_url:
            with tracer.start_as_current_span("health.check.redis"):
                redis_client: Redis = Redis.from_url(
                    settings.model_info_cache_url, socket_timeout=5
                )
                try:
                    await asyncio.wait_for(redis_client.ping(), timeout=5.0)
                    checks["redis"] = "ok"
                    log.debug("redis_ping_succeeded")
                except Exception as exc:
                    errors["redis"] = str(exc)
                    log.warning("redis_ping_failed", error=str(exc))
                finally:
                    await redis_client.aclose()

    if errors:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "checks": checks, "errors": errors},
        )

    return JSONResponse(content={"status": "ready", "checks": checks})
