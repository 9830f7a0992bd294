"""
Vizinho Virtual Gateway - Test Configuration

Pytest fixtures for gateway testing.
Provides settings, an in-memory security store with a controllable clock,
an in-memory user database, a mocked downstream network, the test client
and user fixtures for every role.
"""

from typing import Callable, Generator, List, Optional

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel

from vizinho_gateway.app import create_app
from vizinho_gateway.auth.database import get_engine, init_db
from vizinho_gateway.auth.models import Role, User, utcnow
from vizinho_gateway.auth.password import hash_password
from vizinho_gateway.config import Settings
from vizinho_gateway.store import InMemorySecurityStore, StoreError


TEST_SECRET_KEY = "test-secret-key-for-the-gateway-suite"
TEST_DATABASE_URL = "sqlite:///:memory:"

# Low bcrypt cost keeps the suite fast
TEST_WORK_FACTOR = 4


class FakeClock:
    """Manually advanced clock for store expiry."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Downstream:
    """
    Stand-in for the microservices behind the gateway.

    Records every request; `responder` can be replaced to return custom
    responses or raise httpx errors.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responder: Optional[Callable[[httpx.Request], httpx.Response]] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responder is not None:
            return self.responder(request)
        return httpx.Response(
            200,
            json={"port": request.url.port, "path": request.url.path},
            headers={"Server": "express", "X-Powered-By": "Express"},
        )

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        SECRET_KEY=TEST_SECRET_KEY,
        REFRESH_SECRET_KEY=TEST_SECRET_KEY + "-refresh",
        BCRYPT_WORK_FACTOR=TEST_WORK_FACTOR,
        DATABASE_URL=TEST_DATABASE_URL,
        STORE_BACKEND="memory",
        ALERT_WEBHOOK_URL="",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemorySecurityStore:
    return InMemorySecurityStore(clock=clock)


@pytest.fixture
def test_engine() -> Generator[Engine, None, None]:
    """Fresh in-memory database for each test."""
    engine = get_engine(TEST_DATABASE_URL)
    init_db(engine)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    with Session(test_engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def downstream() -> Downstream:
    return Downstream()


class BrokenStore(InMemorySecurityStore):
    """Store whose every primitive fails."""

    async def ping(self) -> bool:
        return False

    async def get(self, key):
        raise StoreError("store down")

    async def set(self, key, value, ttl=None):
        raise StoreError("store down")

    async def delete(self, key):
        raise StoreError("store down")

    async def incr_window(self, key, window_seconds):
        raise StoreError("store down")

    async def peek_counter(self, key):
        raise StoreError("store down")

    async def append(self, key, value, ttl):
        raise StoreError("store down")

    async def count_keys(self, prefix):
        raise StoreError("store down")


def build_app(settings: Settings, store, engine: Engine, downstream: Downstream, **overrides) -> FastAPI:
    """App wired to the test store, database and mocked downstream network."""
    return create_app(
        settings=settings.model_copy(update=overrides) if overrides else settings,
        store=store,
        engine=engine,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(downstream)),
    )


@pytest.fixture
def app(test_settings, store, test_engine, downstream) -> FastAPI:
    return build_app(test_settings, store, test_engine, downstream)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


# =============================================================================
# Users
# =============================================================================

def create_user(
    db: Session,
    email: str,
    password: str,
    role: Role,
    name: str = "Test User",
    building_id: Optional[str] = None,
    unit_id: Optional[str] = None,
    is_active: bool = True,
) -> User:
    now = utcnow()
    user = User(
        email=email,
        password_hash=hash_password(password, TEST_WORK_FACTOR),
        name=name,
        role=role,
        building_id=building_id,
        unit_id=unit_id,
        is_active=is_active,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin_user(db_session) -> User:
    return create_user(db_session, "admin@vizinho.test", "AdminPass123", Role.ADMIN, name="Platform Admin")


@pytest.fixture
def manager_user(db_session) -> User:
    return create_user(
        db_session, "manager@vizinho.test", "ManagerPass123", Role.MANAGER,
        name="Building Manager", building_id="b1",
    )


@pytest.fixture
def resident_user(db_session) -> User:
    return create_user(
        db_session, "resident@vizinho.test", "ResidentPass123", Role.RESIDENT,
        name="Maria Silva", building_id="b1", unit_id="101",
    )


@pytest.fixture
def other_resident(db_session) -> User:
    return create_user(
        db_session, "neighbor@vizinho.test", "NeighborPass123", Role.RESIDENT,
        name="Joao Souza", building_id="b2", unit_id="202",
    )


@pytest.fixture
def inactive_user(db_session) -> User:
    return create_user(
        db_session, "inactive@vizinho.test", "InactivePass123", Role.RESIDENT,
        building_id="b1", is_active=False,
    )


# =============================================================================
# Helpers
# =============================================================================

def login_user(client: TestClient, email: str, password: str) -> Optional[dict]:
    """Login and return the token response, or None on failure."""
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    return response.json() if response.status_code == 200 else None


def auth_headers(access_token: str) -> dict:
    return {"Authorization": f"Bearer {access_token}"}


@pytest.fixture
def admin_headers(client, admin_user) -> dict:
    return auth_headers(login_user(client, "admin@vizinho.test", "AdminPass123")["access_token"])


@pytest.fixture
def resident_headers(client, resident_user) -> dict:
    return auth_headers(login_user(client, "resident@vizinho.test", "ResidentPass123")["access_token"])
