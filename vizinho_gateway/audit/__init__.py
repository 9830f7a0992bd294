"""
Vizinho Virtual Gateway - Audit Package

Append-only compliance trail (LGPD/GDPR) for every request that reaches
the application.
"""

from vizinho_gateway.audit.log import AuditLog
from vizinho_gateway.audit.models import AuditAction, AuditRecord, LegalBasis, Severity

__all__ = [
    "AuditAction",
    "AuditLog",
    "AuditRecord",
    "LegalBasis",
    "Severity",
]
