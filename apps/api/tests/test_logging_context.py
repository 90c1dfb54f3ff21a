from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.repository import active_automation_cache
from app.context import reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.logging import JsonLogFormatter
from app.main import app


ALL_PERMISSIONS = {
    "crm.contacts.read",
    "crm.contacts.write",
    "crm.automations.read",
    "crm.automations.manage",
    "crm.automations.execute",
}


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTOMATION_WORKER_COUNT", "1")
    get_settings.cache_clear()
    active_automation_cache.invalidate()
    yield
    get_settings.cache_clear()
    active_automation_cache.invalidate()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            tenant_id="tenant-a",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    contact_id = uuid.uuid4()
    path = f"/api/crm/contacts/{contact_id}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/contacts/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_enrollment_context_and_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    automation = client.post(
        "/api/automations",
        json={
            "name": "Logged",
            "trigger": {"type": "contact_created"},
            "actions": [{"type": "add_contact_tag", "tag": "logged"}],
            "is_active": True,
        },
    )
    assert automation.status_code == 201
    created = client.post("/api/crm/contacts", json={"first_name": "Log"}, headers={"X-Correlation-Id": "abc-123"})
    assert created.status_code == 201

    sweep = client.post("/api/automations/sweep", headers={"X-Correlation-Id": "sweep-1"})
    assert sweep.status_code == 200

    enrolled = [record for record in caplog.records if record.getMessage() == "automation_enrolled"]
    assert enrolled
    assert getattr(enrolled[-1], "trigger_type", None) == "contact_created"

    tick_records = [record for record in caplog.records if record.name == "app.automation.engine"]
    assert any(
        record.getMessage() == "automation_tick_finished"
        and getattr(record, "automation_id", None) == automation.json()["id"]
        and getattr(record, "outcome", None) == "completed"
        and getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "enrollment_id", None)
        for record in tick_records
    )


def test_json_formatter_emits_known_fields_only() -> None:
    token = set_correlation_id("fmt-1")
    try:
        record = logging.getLogger("app.automation.engine").makeRecord(
            "app.automation.engine",
            logging.INFO,
            __file__,
            1,
            "automation_tick_finished",
            (),
            None,
            extra={"outcome": "completed", "steps_run": 2, "password": "hunter2", "error": "x" * 900},
        )
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "automation_tick_finished"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["outcome"] == "completed"
    assert payload["fields"]["steps_run"] == 2
    assert "password" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500
