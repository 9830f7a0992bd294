"""
Vizinho Virtual Gateway - FastAPI Application Entrypoint

This module builds the gateway application with:
- CORS, request logging, security and audit middleware
- Authentication, admin, audit, health and metrics routes
- Authenticated proxying to the condominium microservices
- Database, security store and HTTP client lifecycle management

Middleware order, outermost first:

    CORS -> RequestLogging -> Security -> Audit -> routes
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine

from vizinho_gateway.admin.routes import router as admin_router
from vizinho_gateway.audit.middleware import AuditMiddleware
from vizinho_gateway.audit.routes import router as audit_router
from vizinho_gateway.auth.database import dispose_engine, get_engine, get_session_factory, init_db
from vizinho_gateway.auth.routes import router as auth_router
from vizinho_gateway.auth.tokens import TokenIssuer
from vizinho_gateway.config import Settings, settings as default_settings
from vizinho_gateway.errors import install_loop_exception_handler, install_process_hooks, setup_exception_handlers
from vizinho_gateway.gateway.middleware import RequestLoggingMiddleware
from vizinho_gateway.gateway.proxy import router as proxy_router
from vizinho_gateway.gateway.security import SecurityMiddleware
from vizinho_gateway.health import router as health_router
from vizinho_gateway.logging_config import setup_logging
from vizinho_gateway.metrics import router as metrics_router
from vizinho_gateway.store import SecurityStore, build_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Refuse to start without a signing key
        - Initialize the users database
        - Connect the security store
        - Open the downstream HTTP client

    Shutdown:
        - Close everything opened at startup
    """
    settings: Settings = app.state.settings
    if not settings.SECRET_KEY:
        raise RuntimeError("SECRET_KEY is not set; refusing to start")

    install_loop_exception_handler(asyncio.get_running_loop(), settings)

    engine: Engine = app.state.db_engine
    init_db(engine)
    app.state.db_session_factory = get_session_factory(engine)

    await app.state.store.connect()

    owns_client = app.state.http_client is None
    if owns_client:
        app.state.http_client = httpx.AsyncClient(timeout=settings.PROXY_TIMEOUT_SECONDS)

    logger.info(
        "%s %s started (%s, store=%s)",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT, settings.STORE_BACKEND,
    )

    yield

    if owns_client:
        await app.state.http_client.aclose()
        app.state.http_client = None
    await app.state.store.close()
    if app.state.owns_engine:
        dispose_engine(engine)
    logger.info("%s stopped", settings.APP_NAME)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SecurityStore] = None,
    engine: Optional[Engine] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Anything not passed in is created from settings; tests inject an
    in-memory store, a SQLite engine and an httpx client with a mock
    transport.
    """
    settings = settings or default_settings

    app = FastAPI(
        title=settings.APP_NAME,
        description="API gateway for the Vizinho Virtual condominium platform",
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    store = store or build_store(settings)
    app.state.settings = settings
    app.state.store = store
    app.state.issuer = TokenIssuer(settings)
    app.state.owns_engine = engine is None
    app.state.db_engine = engine or get_engine(settings.DATABASE_URL)
    app.state.http_client = http_client

    setup_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(auth_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
    app.include_router(audit_router, prefix="/api")
    # Catch-all proxy routes go last
    app.include_router(proxy_router, prefix="/api")

    # Registered innermost first
    app.add_middleware(AuditMiddleware, store=store, settings=settings)
    app.add_middleware(SecurityMiddleware, store=store, settings=settings)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "PUT", "PATCH"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Response-Time", "Retry-After"],
    )

    return app


setup_logging(default_settings.LOG_LEVEL, default_settings.LOG_JSON, default_settings.LOG_FILE)
install_process_hooks(default_settings)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "vizinho_gateway.app:app",
        host="0.0.0.0",
        port=3000,
        server_header=False,
        reload=not default_settings.is_production,
    )
