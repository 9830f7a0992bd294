"""
Vizinho Virtual Gateway - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and connection strings are loaded from environment variables.

Security: No secrets are hardcoded. Use .env for local development.
"""

from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        SECRET_KEY: JWT signing key for access tokens
        REFRESH_SECRET_KEY: JWT signing key for refresh tokens
        REDIS_URL: Connection URL for the shared security store
        SERVICE_URLS: Base URL of every downstream microservice
        SENSITIVE_ENDPOINTS: Path prefixes that get stricter rate limiting
        SCAN_EXEMPT_FIELDS: Body/query keys never scanned or sanitized
    """

    # Application
    APP_NAME: str = "Vizinho Virtual Gateway"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    LOG_FILE: Optional[str] = None

    # Tokens
    SECRET_KEY: str = ""  # Must be set via environment
    REFRESH_SECRET_KEY: str = ""  # Falls back to SECRET_KEY
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_HOURS: int = 24
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    JWT_ISSUER: str = "vizinho-virtual"
    JWT_AUDIENCE: str = "vizinho-virtual-app"

    # Passwords
    BCRYPT_WORK_FACTOR: int = 12

    # Database (PostgreSQL for production, SQLite for development)
    DATABASE_URL: str = "sqlite:///./vizinho_gateway.db"

    # Security store
    STORE_BACKEND: str = "redis"  # "redis" or "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    STORE_TIMEOUT_SECONDS: float = 0.5

    # CORS / CSRF
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]
    CSRF_CHECK_ENABLED: bool = False

    # Security pipeline
    MAX_PAYLOAD_BYTES: int = 10 * 1024 * 1024
    SUSPICIOUS_THRESHOLD: int = 5
    SUSPICIOUS_WINDOW_SECONDS: int = 3600
    ATTACK_BLACKLIST_SECONDS: int = 86400
    SENSITIVE_ENDPOINTS: List[str] = [
        "/api/auth/login",
        "/api/auth/register",
        "/api/auth/forgot-password",
        "/api/payments",
        "/api/assemblies/vote",
    ]
    GENERAL_RATE_LIMIT: int = 1000
    GENERAL_RATE_WINDOW_SECONDS: int = 900
    SENSITIVE_RATE_LIMIT: int = 10
    SENSITIVE_RATE_WINDOW_SECONDS: int = 300
    SCAN_EXEMPT_FIELDS: List[str] = [
        "password",
        "current_password",
        "new_password",
        "refresh_token",
    ]
    TRUST_FORWARDED_HEADERS: bool = False

    # Login throttling (failed attempts only)
    LOGIN_MAX_FAILURES: int = 5
    LOGIN_FAILURE_WINDOW_SECONDS: int = 300

    # Two-factor authentication (TOTP)
    TWO_FACTOR_ISSUER: str = "Vizinho Virtual"
    TWO_FACTOR_VALID_WINDOW: int = 2  # accepted 30s steps either side of now
    TWO_FACTOR_SETUP_TTL_SECONDS: int = 600

    # Downstream services
    SERVICE_URLS: Dict[str, str] = {
        "user-management": "http://localhost:3001",
        "building-management": "http://localhost:3002",
        "financial": "http://localhost:3003",
        "communication": "http://localhost:3004",
        "assembly": "http://localhost:3005",
        "marketplace": "http://localhost:3006",
        "professional": "http://localhost:3007",
        "security": "http://localhost:3008",
    }
    CRITICAL_SERVICES: List[str] = [
        "user-management",
        "building-management",
        "financial",
    ]
    HEALTH_CHECK_TIMEOUT_SECONDS: float = 5.0
    PROXY_TIMEOUT_SECONDS: float = 30.0

    # Health
    MEMORY_WARNING_MB: int = 512

    # Alerting for non-operational errors
    ALERT_WEBHOOK_URL: str = ""

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def refresh_secret(self) -> str:
        return self.REFRESH_SECRET_KEY or self.SECRET_KEY

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


settings = Settings()
