"""
BeanGate Backend: Health Check Route
======================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Runs SELECT 1 against the database and checks that the House Blend
       backend has a platform key configured. No provider call is made: a
       live call would spend the operator's quota on every probe.
Who:   Called by Docker health checks, load balancers, and monitoring systems.

Status levels:
    - healthy:   database reachable and House Blend configured (HTTP 200)
    - degraded:  House Blend unconfigured; keyed providers still work (HTTP 200)
    - unhealthy: database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy import text

from beangate import __version__
from beangate.dependencies import get_registry
from beangate.providers.registry import ProviderRegistry
from beangate.schemas.analysis import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description=(
        "Returns the health status of the gateway and its dependencies. Used by "
        "Docker health checks and load balancers to decide whether to route traffic."
    ),
)
async def health_check(
    request: Request,
    response: Response,
    registry: ProviderRegistry = Depends(get_registry),
) -> HealthResponse:
    db_status = "connected"
    overall = "healthy"

    # ── Check Database ────────────────────────────────────────────────────
    try:
        async with request.app.state.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", type(e).__name__)

    # ── Check House Blend configuration ───────────────────────────────────
    house_blend_status = "configured"
    if not registry.house_blend.is_configured():
        house_blend_status = "unconfigured"
        overall = "degraded" if overall != "unhealthy" else overall

    if overall == "unhealthy":
        response.status_code = 503

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        house_blend=house_blend_status,
        house_blend_backend=registry.settings.free_tier_provider,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
