from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import date
from typing import Any

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.analytics.warehouse import InMemoryWarehouse, set_warehouse_client
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.cache.gateway import set_cache_gateway
from app.platform.refresh.pipeline import StubRefreshPipeline
from app.platform.refresh.service import RefreshCoordinator, set_refresh_coordinator


CRON_SECRET = "cron-secret-for-tests"


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
def reset_shared_state(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    get_settings.cache_clear()
    reset_rate_limiter()
    set_cache_gateway(None)
    set_refresh_coordinator(None)
    set_warehouse_client(None)
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    set_cache_gateway(None)
    set_refresh_coordinator(None)
    set_warehouse_client(None)
    audit.audit_entries.clear()


@pytest.fixture()
def pipeline() -> StubRefreshPipeline:
    return StubRefreshPipeline()


@pytest.fixture()
def coordinator(pipeline: StubRefreshPipeline) -> RefreshCoordinator:
    instance = RefreshCoordinator(pipeline=pipeline)
    set_refresh_coordinator(instance)
    return instance


def funnel_row(record_id: str, sga: str = "Jane Doe", **values: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": record_id,
        "advisor_name": f"Lead {record_id}",
        "source": "LinkedIn",
        "channel": "Outbound",
        "stage_name": "Qualifying",
        "sga_owner": sga,
        "sgm_owner": "Morgan Lee",
    }
    row.update(values)
    return row


@pytest.fixture()
def warehouse() -> InMemoryWarehouse:
    rows = [
        funnel_row("r1", contacted_date=date(2025, 1, 10), is_mql=1, eligible_contacted=1, contacted_to_mql=1),
        funnel_row("r2", contacted_date=date(2025, 1, 20), eligible_contacted=1),
        funnel_row(
            "r3",
            sga="John Smith",
            contacted_date=date(2025, 2, 3),
            sql_date=date(2025, 2, 20),
            sqo_date=date(2025, 3, 5),
            is_mql=1,
            is_sql=1,
            is_sqo=1,
            eligible_contacted=1,
            eligible_mql=1,
            eligible_sql=1,
            contacted_to_mql=1,
            mql_to_sql=1,
            sql_to_sqo=1,
        ),
        funnel_row(
            "r4",
            sga="John Smith",
            sqo_date=date(2025, 3, 12),
            is_sqo=1,
        ),
        funnel_row(
            "r5",
            sqo_date=date(2025, 2, 14),
            is_sqo=1,
            channel="Marketing",
        ),
    ]
    instance = InMemoryWarehouse(
        rows=rows,
        active_sgas=["Jane Doe", "John Smith", "Pat Quinn"],
    )
    set_warehouse_client(instance)
    return instance


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_token(role: str, email: str | None = None, **claims: Any) -> str:
    settings = get_settings()
    payload: dict[str, Any] = {"email": email or f"{role}@example.com", "role": role, "sub": f"user-{role}"}
    payload.update(claims)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    def build(role: str, email: str | None = None, **claims: Any) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(role, email, **claims)}"}

    return build
