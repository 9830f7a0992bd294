"""
Vizinho Virtual Gateway - Operational Counters

Named daily counters behind the admin metrics endpoints. Recording is
fire-and-forget: a store outage loses the count, never the request.
"""

import logging

from vizinho_gateway.store.base import SecurityStore, StoreError

logger = logging.getLogger(__name__)

# Traffic
REQUESTS = "requests"
CLIENT_ERRORS = "client_errors"
SERVER_ERRORS = "server_errors"

# Authentication
LOGINS = "logins"
FAILED_LOGINS = "failed_logins"
LOGIN_LOCKOUTS = "login_lockouts"
INVALID_TWO_FACTOR_CODES = "invalid_2fa_codes"

# Threats
BLOCKED_IPS = "blocked_ips"
BLACKLISTED_REQUESTS = "blacklisted_requests"
RATE_LIMIT_VIOLATIONS = "rate_limit_violations"
SUSPICIOUS_USER_AGENTS = "suspicious_user_agents"

TRAFFIC_METRICS = (REQUESTS, CLIENT_ERRORS, SERVER_ERRORS)
AUTH_METRICS = (LOGINS, FAILED_LOGINS, LOGIN_LOCKOUTS, INVALID_TWO_FACTOR_CODES)


def attack_metric(category: str) -> str:
    """Counter name for one attack category, e.g. "sql_injection_attempts"."""
    return f"{category}_attempts"


async def record_metric(store: SecurityStore, name: str) -> None:
    try:
        await store.increment_metric(name)
    except StoreError as e:
        logger.error("Metric %s not recorded: %s", name, e)
