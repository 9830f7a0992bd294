"""
Vizinho Virtual Gateway - Compliance Classification

Fixed rules that turn an endpoint (and the data that crossed it) into the
compliance attributes of an audit record: action, resource, legal basis,
purpose, retention and severity.
"""

from typing import Any, List, Optional

from vizinho_gateway.audit.models import AuditAction, LegalBasis, Severity

PERSONAL_DATA_FIELDS = (
    "email",
    "phone",
    "cpf",
    "nif",
    "address",
    "name",
    "birthdate",
    "document",
    "bankaccount",
    "creditcard",
)

FINANCIAL_DATA_ENDPOINTS = (
    "/api/payments",
    "/api/finances",
    "/api/invoices",
    "/api/transactions",
)

GDPR_RELEVANT_ENDPOINTS = (
    "/api/users",
    "/api/residents",
    "/api/professionals",
    "/api/payments",
    "/api/communications",
    "/api/assemblies/votes",
)

ADMIN_ENDPOINTS = (
    "/api/admin",
    "/api/users/admin",
    "/api/buildings/admin",
    "/api/system",
)

SPECIFIC_ACTIONS = {
    "/api/auth/login": AuditAction.LOGIN,
    "/api/auth/logout": AuditAction.LOGOUT,
    "/api/auth/register": AuditAction.REGISTER,
    "/api/payments": AuditAction.PAYMENT,
    "/api/assemblies/vote": AuditAction.VOTE,
    "/api/communications/send": AuditAction.SEND_MESSAGE,
}

METHOD_ACTIONS = {
    "GET": AuditAction.READ,
    "HEAD": AuditAction.READ,
    "POST": AuditAction.CREATE,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
}

RESOURCE_PREFIXES = (
    ("/api/auth", "session"),
    ("/api/admin", "admin"),
    ("/api/audit", "audit"),
    ("/api/users", "user"),
    ("/api/buildings", "building"),
    ("/api/apartments", "apartment"),
    ("/api/payments", "payment"),
    ("/api/finances", "finance"),
    ("/api/assemblies", "assembly"),
    ("/api/communications", "communication"),
    ("/api/marketplace", "marketplace"),
    ("/api/professionals", "professional"),
    ("/api/security", "security"),
)

PURPOSES = {
    AuditAction.LOGIN: "authentication",
    AuditAction.REGISTER: "account_creation",
    AuditAction.PAYMENT: "financial_transaction",
    AuditAction.VOTE: "democratic_participation",
    AuditAction.SEND_MESSAGE: "communication",
    AuditAction.READ: "service_provision",
    AuditAction.UPDATE: "data_maintenance",
    AuditAction.DELETE: "data_removal",
}

RETENTION_PERIODS = {
    "user": "7_years",
    "payment": "10_years",
    "finance": "10_years",
    "communication": "2_years",
    "assembly": "10_years",
    "security": "5_years",
}
DEFAULT_RETENTION = "7_years"

SEVERITIES = {
    AuditAction.READ: Severity.LOW,
    AuditAction.LOGIN: Severity.LOW,
    AuditAction.CREATE: Severity.MEDIUM,
    AuditAction.UPDATE: Severity.MEDIUM,
    AuditAction.REGISTER: Severity.MEDIUM,
    AuditAction.DELETE: Severity.HIGH,
    AuditAction.PAYMENT: Severity.HIGH,
}

# Storage buckets and their retention, in seconds
DAY = 24 * 60 * 60
YEAR = 365 * DAY
AUDIT_TTL = 30 * DAY
GDPR_TTL = 7 * YEAR
FINANCIAL_TTL = 10 * YEAR
ADMIN_TTL = 10 * YEAR


def is_gdpr_relevant(path: str) -> bool:
    return path.startswith(GDPR_RELEVANT_ENDPOINTS)


def is_financial_endpoint(path: str) -> bool:
    return path.startswith(FINANCIAL_DATA_ENDPOINTS)


def is_admin_action(method: str, path: str) -> bool:
    """Admin endpoints, plus any DELETE that is not a logout."""
    return path.startswith(ADMIN_ENDPOINTS) or (method == "DELETE" and "logout" not in path)


def _normalize_key(key: Any) -> str:
    return str(key).replace("_", "").replace("-", "").lower()


def contains_personal_data(data: Any) -> bool:
    """
    True if any key in a JSON-like structure names personal data.

    Keys are compared case-insensitively ignoring underscores, so
    ``birth_date``, ``birthDate`` and ``resident_email`` all count.
    """
    if isinstance(data, dict):
        for key, value in data.items():
            normalized = _normalize_key(key)
            if any(field in normalized for field in PERSONAL_DATA_FIELDS):
                return True
            if contains_personal_data(value):
                return True
        return False
    if isinstance(data, list):
        return any(contains_personal_data(item) for item in data)
    return False


def derive_action(method: str, path: str) -> AuditAction:
    if path in SPECIFIC_ACTIONS:
        return SPECIFIC_ACTIONS[path]
    return METHOD_ACTIONS.get(method.upper(), AuditAction.UNKNOWN)


def derive_resource(path: str) -> str:
    for prefix, resource in RESOURCE_PREFIXES:
        if path.startswith(prefix):
            return resource
    return "unknown"


def derive_data_categories(path: str) -> List[str]:
    categories = []
    if "users" in path or "residents" in path:
        categories.append("personal_data")
    if "payments" in path or "finances" in path:
        categories.append("financial_data")
    if "communications" in path or "messages" in path:
        categories.append("communication_data")
    if "assemblies" in path and "vote" in path:
        categories.append("voting_data")
    return categories


def derive_legal_basis(path: str, role: Optional[str] = None) -> LegalBasis:
    if path.startswith("/api/auth"):
        return LegalBasis.CONTRACT
    if path.startswith(("/api/payments", "/api/finances")):
        return LegalBasis.CONTRACT
    if path.startswith("/api/communications"):
        return LegalBasis.LEGITIMATE_INTEREST
    if path.startswith("/api/assemblies"):
        return LegalBasis.LEGAL_OBLIGATION
    if role == "admin":
        return LegalBasis.LEGITIMATE_INTEREST
    return LegalBasis.CONSENT


def purpose_for(action: AuditAction) -> str:
    return PURPOSES.get(action, "service_provision")


def retention_for(resource: str) -> str:
    return RETENTION_PERIODS.get(resource, DEFAULT_RETENTION)


def severity_for(action: AuditAction) -> Severity:
    return SEVERITIES.get(action, Severity.MEDIUM)
