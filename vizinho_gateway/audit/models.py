"""
Vizinho Virtual Gateway - Audit Models

Pydantic models for audit records. Records are frozen: once built they
cannot be changed, and the audit log only ever appends them.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field


class AuditAction(str, Enum):
    """What the request did, as far as compliance is concerned."""
    LOGIN = "login"
    LOGOUT = "logout"
    REGISTER = "register"
    PAYMENT = "payment"
    VOTE = "vote"
    SEND_MESSAGE = "send_message"
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UNKNOWN = "unknown"


class LegalBasis(str, Enum):
    """GDPR Art. 6 lawful basis for the processing."""
    CONTRACT = "contract"
    LEGITIMATE_INTEREST = "legitimate_interest"
    LEGAL_OBLIGATION = "legal_obligation"
    CONSENT = "consent"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditRecord(BaseModel):
    """
    Represents a single audit log entry.

    All fields are immutable after creation.
    """
    id: str = Field(..., description="UUID for the record")
    timestamp: datetime
    request_id: Optional[str] = None
    principal_id: Optional[str] = Field(None, description="Authenticated user, if any")
    principal_role: Optional[str] = None
    ip: str
    user_agent: str = "unknown"
    action: AuditAction
    resource: str
    method: str
    endpoint: str
    status_code: int
    data_categories: Tuple[str, ...] = ()
    personal_data_accessed: bool = False
    financial_data_accessed: bool = False
    gdpr_relevant: bool = False
    admin_action: bool = False
    legal_basis: LegalBasis
    purpose: str
    retention_period: str
    severity: Severity
    duration_ms: float
    error_message: Optional[str] = None

    class Config:
        frozen = True


class AuditLogResponse(BaseModel):
    """Response body for audit queries."""
    records: List[AuditRecord]
    total: int
