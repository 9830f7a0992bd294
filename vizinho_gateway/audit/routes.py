"""
Vizinho Virtual Gateway - Audit API Routes

Read-only access to the audit trail. Admin only.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from vizinho_gateway.audit.log import AuditLog
from vizinho_gateway.audit.models import AuditLogResponse
from vizinho_gateway.auth.dependencies import get_store, require_role
from vizinho_gateway.auth.models import Principal, Role, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["audit"])


def get_audit_log(request: Request) -> AuditLog:
    return AuditLog(get_store(request))


@router.get("/logs", response_model=AuditLogResponse, summary="Audit records for one day")
async def get_logs(
    day: Optional[date] = Query(None, description="UTC day, defaults to today"),
    bucket: str = Query("audit", pattern="^(audit|gdpr|financial|admin)$"),
    limit: int = Query(100, ge=1, le=1000),
    audit_log: AuditLog = Depends(get_audit_log),
    admin: Principal = Depends(require_role(Role.ADMIN)),
):
    """Newest records first."""
    day = day or utcnow().date()
    records = await audit_log.get_logs(day, limit=limit, bucket=bucket)
    logger.info("Admin %s read %d %s records for %s", admin.subject_id, len(records), bucket, day)
    return AuditLogResponse(records=records, total=len(records))


@router.get("/gdpr/{principal_id}", response_model=AuditLogResponse, summary="GDPR records for a user")
async def get_gdpr_logs(
    principal_id: str,
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(50, ge=1, le=500),
    audit_log: AuditLog = Depends(get_audit_log),
    admin: Principal = Depends(require_role(Role.ADMIN)),
):
    """
    Personal-data processing involving one user, for subject access
    requests.
    """
    records = await audit_log.get_gdpr_logs(principal_id, days=days, limit=limit)
    return AuditLogResponse(records=records, total=len(records))
