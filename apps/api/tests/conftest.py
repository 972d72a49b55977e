from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.context import RequestContext
from app.core.database import Base, get_db
from app.crm.api import get_performance_recorder
from app.crm.models import CRMTenant
from app.main import app
from app.performance import PerformanceRecorder


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_state() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def tenant_a(db_session: Session) -> uuid.UUID:
    tenant = CRMTenant(name="Acme", domain="acme.test", settings={})
    db_session.add(tenant)
    db_session.commit()
    return tenant.id


@pytest.fixture()
def tenant_b(db_session: Session) -> uuid.UUID:
    tenant = CRMTenant(name="Globex", domain="globex.test", settings={})
    db_session.add(tenant)
    db_session.commit()
    return tenant.id


@pytest.fixture()
def recorder() -> PerformanceRecorder:
    return PerformanceRecorder(max_samples=1000, window_seconds=300)


@pytest.fixture()
def make_ctx() -> Callable[..., RequestContext]:
    def _make(tenant_id: uuid.UUID | str | None, user_id: str = "user-1") -> RequestContext:
        return RequestContext(
            request_id=str(uuid.uuid4()),
            correlation_id="corr-test",
            tenant_id=str(tenant_id) if tenant_id is not None else None,
            user_id=user_id,
        )

    return _make


@pytest.fixture()
def auth_user() -> AuthUser:
    return AuthUser(sub="user-1", roles=["user", "system.metrics.read"])


@pytest.fixture()
def client(db_session: Session, recorder: PerformanceRecorder, auth_user: AuthUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: auth_user
    app.dependency_overrides[get_performance_recorder] = lambda: recorder

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def tenant_headers(tenant_a: uuid.UUID) -> dict[str, str]:
    return {"x-tenant-id": str(tenant_a)}
