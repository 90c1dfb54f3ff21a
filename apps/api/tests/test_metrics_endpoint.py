from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.repository import active_automation_cache
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("AUTOMATION_WORKER_COUNT", "1")
    get_settings.cache_clear()
    active_automation_cache.invalidate()
    yield
    get_settings.cache_clear()
    active_automation_cache.invalidate()


@pytest.fixture()
def auth_roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, auth_roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            tenant_id="tenant-a",
            permissions={
                "crm.contacts.read",
                "crm.contacts.write",
                "crm.automations.manage",
                "crm.automations.execute",
            },
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=auth_roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_automation_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    automation = client.post(
        "/api/automations",
        json={
            "name": "Metrics",
            "trigger": {"type": "contact_created"},
            "actions": [{"type": "add_contact_tag", "tag": "measured"}],
            "is_active": True,
        },
    )
    assert automation.status_code == 201

    contact = client.post("/api/crm/contacts", json={"first_name": "Metric"})
    assert contact.status_code == 201
    assert client.get(f"/api/crm/contacts/{contact.json()['id']}").status_code == 200

    sweep = client.post("/api/automations/sweep")
    assert sweep.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "automation_ticks_total" in body
    assert "automation_tick_duration_seconds" in body
    assert "automation_sweep_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/contacts/{id}"' in body
    assert 'outcome="completed"' in body
    assert 'trigger_type="contact_created"' in body
    assert 'action_type="add_contact_tag"' in body


@pytest.mark.parametrize("auth_roles", [["crm.contacts.read"]])
def test_metrics_endpoint_requires_metrics_role(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403
