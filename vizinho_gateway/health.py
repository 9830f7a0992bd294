"""
Vizinho Virtual Gateway - Health Endpoints

- GET /health           liveness for load balancers, no dependencies touched
- GET /health/ready     security store and critical services (503 if not ready)
- GET /health/live      process self-check with memory usage
- GET /health/services  status of every downstream service
- GET /health/detailed  everything above with an overall status
"""

import asyncio
import logging
import os
import resource
import sys
import time
from typing import Any, Dict, List

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from vizinho_gateway.auth.models import utcnow
from vizinho_gateway.store import StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

_started_at = time.monotonic()


def _timestamp() -> str:
    return utcnow().isoformat()


def peak_memory_mb() -> float:
    """Peak resident set size of this process."""
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    if sys.platform == "darwin":
        return usage / (1024 * 1024)
    return usage / 1024


def current_memory_mb() -> float:
    """
    Resident set size of this process right now.

    Read from /proc/self/statm where it exists; elsewhere falls back to
    the peak, which is the best the platform reports.
    """
    try:
        with open("/proc/self/statm") as f:
            resident_pages = int(f.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)
    except (OSError, ValueError, IndexError):
        return peak_memory_mb()


def uptime_seconds() -> float:
    return round(time.monotonic() - _started_at, 1)


def memory_report(limit_mb: int) -> Dict[str, Any]:
    """Current and peak RSS; logs a warning when current usage is over the limit."""
    current = current_memory_mb()
    if current > limit_mb:
        logger.warning("High memory usage: %.1fMB (limit %dMB)", current, limit_mb)
    return {
        "rss_mb": round(current, 1),
        "peak_rss_mb": round(peak_memory_mb(), 1),
        "warning_mb": limit_mb,
    }


async def check_store(request: Request) -> Dict[str, Any]:
    start = time.perf_counter()
    try:
        ok = await request.app.state.store.ping()
        error = None
    except StoreError as e:
        ok, error = False, str(e)
    result = {
        "status": HEALTHY if ok else UNHEALTHY,
        "latency_ms": round((time.perf_counter() - start) * 1000, 2),
        "last_check": _timestamp(),
    }
    if error:
        result["error"] = error
    return result


async def check_service(client: httpx.AsyncClient, name: str, base_url: str, timeout: float) -> Dict[str, Any]:
    """GET {base_url}/health on one service."""
    url = f"{base_url.rstrip('/')}/health"
    start = time.perf_counter()
    result: Dict[str, Any] = {"url": url, "last_check": _timestamp()}
    try:
        response = await client.get(url, timeout=timeout)
        result["status"] = HEALTHY if response.is_success else UNHEALTHY
        if not response.is_success:
            result["error"] = f"HTTP {response.status_code}"
    except httpx.HTTPError as e:
        logger.warning("Health check for %s failed: %s", name, e)
        result["status"] = UNHEALTHY
        result["error"] = str(e) or type(e).__name__
    result["latency_ms"] = round((time.perf_counter() - start) * 1000, 2)
    return result


async def check_services(request: Request, names: List[str]) -> Dict[str, Dict[str, Any]]:
    settings = request.app.state.settings
    client = request.app.state.http_client
    results = await asyncio.gather(*[
        check_service(client, name, settings.SERVICE_URLS[name], settings.HEALTH_CHECK_TIMEOUT_SECONDS)
        for name in names
    ])
    return dict(zip(names, results))


def overall_status(statuses: List[str]) -> str:
    """Healthy if nothing is down, degraded if less than half is."""
    unhealthy = sum(1 for s in statuses if s != HEALTHY)
    if unhealthy == 0:
        return HEALTHY
    if unhealthy < len(statuses) / 2:
        return DEGRADED
    return UNHEALTHY


# =============================================================================
# Routes
# =============================================================================

@router.get("")
async def health(request: Request):
    return {
        "status": HEALTHY,
        "service": "api-gateway",
        "version": request.app.state.settings.APP_VERSION,
        "timestamp": _timestamp(),
    }


@router.get("/ready")
async def readiness(request: Request):
    """Ready only when the store answers and every critical service is up."""
    store = await check_store(request)
    if store["status"] != HEALTHY:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "reason": "Security store not available", "timestamp": _timestamp()},
        )

    critical = [
        name for name in request.app.state.settings.CRITICAL_SERVICES
        if name in request.app.state.settings.SERVICE_URLS
    ]
    services = await check_services(request, critical)
    if any(s["status"] != HEALTHY for s in services.values()):
        return JSONResponse(
            status_code=503,
            content={
                "ready": False,
                "reason": "Critical services not available",
                "services": services,
                "timestamp": _timestamp(),
            },
        )

    return {"ready": True, "services": services, "timestamp": _timestamp()}


@router.get("/live")
async def liveness(request: Request):
    """Always 200 while the process can answer; high memory is only logged."""
    return {
        "alive": True,
        "uptime_seconds": uptime_seconds(),
        "memory": memory_report(request.app.state.settings.MEMORY_WARNING_MB),
        "timestamp": _timestamp(),
    }


@router.get("/services")
async def services_status(request: Request):
    services = await check_services(request, list(request.app.state.settings.SERVICE_URLS))
    return {"services": services, "timestamp": _timestamp()}


@router.get("/detailed")
async def detailed(request: Request):
    """Store, every service and process metrics; 503 only when unhealthy."""
    settings = request.app.state.settings
    services = {"store": await check_store(request)}
    services.update(await check_services(request, list(settings.SERVICE_URLS)))

    status = overall_status([s["status"] for s in services.values()])
    body = {
        "status": status,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "uptime_seconds": uptime_seconds(),
        "services": services,
        "system": {"memory": memory_report(settings.MEMORY_WARNING_MB)},
        "timestamp": _timestamp(),
    }
    logger.info("Detailed health check: %s", status)
    return JSONResponse(status_code=503 if status == UNHEALTHY else 200, content=body)
