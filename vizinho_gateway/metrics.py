"""
Vizinho Virtual Gateway - Operational Metrics

Admin-only dashboards data:
- GET /metrics              process, memory, CPU and store status
- GET /metrics/performance  request and error counts for a day
- GET /metrics/business     user and building figures from the database
- GET /metrics/security     authentication and threat counters for a day

Daily counters are written by the middleware and auth routes through
store.counters; a store outage reads as 503 STORE_UNAVAILABLE.
"""

import logging
import os
import platform
import resource
import sys
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import distinct, func
from sqlmodel import select

from vizinho_gateway.auth.dependencies import get_store, require_role
from vizinho_gateway.auth.models import Principal, Role, User, utcnow
from vizinho_gateway.gateway.detector import AttackCategory
from vizinho_gateway.health import check_store, current_memory_mb, peak_memory_mb, uptime_seconds
from vizinho_gateway.store import SecurityStore
from vizinho_gateway.store import counters

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/metrics", tags=["metrics"])

require_admin = require_role(Role.ADMIN)

THREAT_METRICS = (
    counters.BLOCKED_IPS,
    counters.BLACKLISTED_REQUESTS,
    counters.RATE_LIMIT_VIOLATIONS,
    counters.SUSPICIOUS_USER_AGENTS,
) + tuple(counters.attack_metric(category.value) for category in AttackCategory)


def _percent(part: int, whole: int) -> float:
    if whole == 0:
        return 0.0
    return round(part * 100 / whole, 2)


def _day(day: Optional[date]) -> date:
    return day or utcnow().date()


@router.get("", summary="Process and store metrics")
async def system_metrics(request: Request, admin: Principal = Depends(require_admin)) -> Dict[str, Any]:
    settings = request.app.state.settings
    usage = resource.getrusage(resource.RUSAGE_SELF)
    store = await check_store(request)
    store["backend"] = request.app.state.store.backend_name

    return {
        "timestamp": utcnow().isoformat(),
        "uptime_seconds": uptime_seconds(),
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "memory": {
            "rss_mb": round(current_memory_mb(), 1),
            "peak_rss_mb": round(peak_memory_mb(), 1),
            "warning_mb": settings.MEMORY_WARNING_MB,
        },
        "cpu": {
            "user_seconds": round(usage.ru_utime, 3),
            "system_seconds": round(usage.ru_stime, 3),
        },
        "store": store,
        "process": {
            "pid": os.getpid(),
            "platform": sys.platform,
            "machine": platform.machine(),
            "python_version": platform.python_version(),
        },
    }


@router.get("/performance", summary="Request volume and error rate")
async def performance_metrics(
    request: Request,
    day: Optional[date] = Query(None, description="UTC day, defaults to today"),
    store: SecurityStore = Depends(get_store),
    admin: Principal = Depends(require_admin),
) -> Dict[str, Any]:
    day = _day(day)
    traffic = await store.get_metrics(counters.TRAFFIC_METRICS, day)
    errors = traffic[counters.CLIENT_ERRORS] + traffic[counters.SERVER_ERRORS]

    return {
        "timestamp": utcnow().isoformat(),
        "day": day.isoformat(),
        "api": {
            "total_requests": traffic[counters.REQUESTS],
            "client_errors": traffic[counters.CLIENT_ERRORS],
            "server_errors": traffic[counters.SERVER_ERRORS],
            "error_rate_percent": _percent(errors, traffic[counters.REQUESTS]),
        },
        "store": await check_store(request),
    }


@router.get("/business", summary="User and building figures")
async def business_metrics(request: Request, admin: Principal = Depends(require_admin)) -> Dict[str, Any]:
    """Aggregates over the users table; nothing here is cached."""
    today_start = datetime.combine(utcnow().date(), time.min, tzinfo=timezone.utc)
    db = request.app.state.db_session_factory()

    try:
        total = db.exec(select(func.count()).select_from(User)).one()
        active = db.exec(select(func.count()).select_from(User).where(User.is_active == True)).one()  # noqa: E712
        new_today = db.exec(select(func.count()).select_from(User).where(User.created_at >= today_start)).one()
        with_two_factor = db.exec(
            select(func.count()).select_from(User).where(User.two_factor_enabled == True)  # noqa: E712
        ).one()
        by_role = {role.value: 0 for role in Role}
        for role, count in db.exec(select(User.role, func.count()).group_by(User.role)).all():
            by_role[Role(role).value] = count
        buildings = db.exec(
            select(func.count(distinct(User.building_id))).where(User.building_id.is_not(None))
        ).one()
    finally:
        db.close()

    return {
        "timestamp": utcnow().isoformat(),
        "users": {
            "total": total,
            "active": active,
            "new_today": new_today,
            "two_factor_enabled": with_two_factor,
            "by_role": by_role,
        },
        "buildings": {"total": buildings},
    }


@router.get("/security", summary="Authentication and threat counters")
async def security_metrics(
    day: Optional[date] = Query(None, description="UTC day, defaults to today"),
    store: SecurityStore = Depends(get_store),
    admin: Principal = Depends(require_admin),
) -> Dict[str, Any]:
    day = _day(day)
    auth = await store.get_metrics(counters.AUTH_METRICS, day)
    threats = await store.get_metrics(THREAT_METRICS, day)
    attempts = auth[counters.LOGINS] + auth[counters.FAILED_LOGINS]

    logger.info("Admin %s read security metrics for %s", admin.subject_id, day)
    return {
        "timestamp": utcnow().isoformat(),
        "day": day.isoformat(),
        "authentication": {
            "total_logins": auth[counters.LOGINS],
            "failed_logins": auth[counters.FAILED_LOGINS],
            "lockouts": auth[counters.LOGIN_LOCKOUTS],
            "invalid_2fa_codes": auth[counters.INVALID_TWO_FACTOR_CODES],
            "success_rate_percent": _percent(auth[counters.LOGINS], attempts),
        },
        "threats": threats,
        "blacklist": await store.blacklist_counts(),
        "suspicious_ips": await store.count_suspicious_ips(),
    }
