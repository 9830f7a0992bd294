"""
Vizinho Virtual Gateway - Database Configuration

SQLModel engine setup for the user accounts table.
Supports PostgreSQL (production) and SQLite (development/tests).
"""

from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine


def get_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine.

    SQLite gets a StaticPool so an in-memory database survives across
    sessions and threads; other backends get a pre-pinged pool.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def init_db(engine: Engine) -> None:
    """Create tables (idempotent)."""
    # Register models with SQLModel metadata
    from vizinho_gateway.auth.models import User  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session_factory(engine: Engine) -> Callable[[], Session]:
    """Callable that opens a new session bound to engine."""
    def session_factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return session_factory


def dispose_engine(engine: Optional[Engine]) -> None:
    if engine is not None:
        engine.dispose()
