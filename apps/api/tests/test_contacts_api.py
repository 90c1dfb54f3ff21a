from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.automation.repository import active_automation_cache
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    active_automation_cache.invalidate()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    permissions = {"crm.contacts.read", "crm.contacts.write", "crm.deals.read", "crm.deals.write"}
    actors = {
        "user1": ActorUser(
            user_id="user-1",
            tenant_id="tenant-a",
            permissions=set(permissions),
            correlation_id="corr-contact",
        ),
        "user2": ActorUser(
            user_id="user-2",
            tenant_id="tenant-b",
            permissions=set(permissions),
            correlation_id="corr-contact",
        ),
        "reader": ActorUser(
            user_id="reader-1",
            tenant_id="tenant-a",
            permissions={"crm.contacts.read"},
            correlation_id="corr-contact",
        ),
        "no_tenant": ActorUser(
            user_id="user-9",
            tenant_id=None,
            permissions=set(permissions),
            correlation_id="corr-contact",
        ),
    }
    state = {"current": "user1"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_create_contact_success(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_actor = client

    response = test_client.post(
        "/api/crm/contacts",
        json={
            "first_name": " Jane ",
            "last_name": "Doe",
            "email": "jane@example.com",
            "tags": ["Lead", " lead ", "vip"],
            "custom_fields": {"tier": "gold"},
        },
    )

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["first_name"] == "Jane"
    assert body["tenant_id"] == "tenant-a"
    assert body["row_version"] == 1
    assert body["custom_fields"] == {"tier": "gold"}
    entry = next(entry for entry in audit.audit_entries if entry["action"] == "create")
    assert entry["entity_type"] == "crm.contact"
    assert entry["entity_id"] == body["id"]
    created = [event for event in events.published_events if event["event_type"] == "crm.contact.created"]
    assert len(created) == 1
    assert created[0]["tenant_id"] == "tenant-a"
    assert created[0]["payload"]["snapshot"]["first_name"] == "Jane"


def test_create_contact_requires_write_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("reader")

    response = test_client.post("/api/crm/contacts", json={"first_name": "Blocked"})

    assert response.status_code == 403
    assert response.json()["code"] == "crm_contact_create_failed"
    assert response.json()["message"] == "Missing permission: crm.contacts.write"
    assert events.published_events == []


def test_contacts_require_tenant_context(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("no_tenant")

    response = test_client.post("/api/crm/contacts", json={"first_name": "Nowhere"})

    assert response.status_code == 400
    assert response.json()["message"] == "tenant context required"


def test_contacts_are_scoped_to_tenant(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    created = test_client.post("/api/crm/contacts", json={"first_name": "Scoped"})
    assert created.status_code == 201
    contact = created.json()

    set_actor("user2")
    assert test_client.get(f"/api/crm/contacts/{contact['id']}").status_code == 404
    assert test_client.get("/api/crm/contacts").json() == []
    blocked = test_client.patch(
        f"/api/crm/contacts/{contact['id']}",
        json={"row_version": contact["row_version"], "lead_status": "Customer"},
    )
    assert blocked.status_code == 404


def test_update_contact_emits_changes(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_actor = client
    contact = test_client.post("/api/crm/contacts", json={"first_name": "Update", "lead_status": "New"}).json()
    events.published_events.clear()

    response = test_client.patch(
        f"/api/crm/contacts/{contact['id']}",
        json={"row_version": contact["row_version"], "lead_status": "Qualified", "lead_score": 40},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["lead_status"] == "Qualified"
    assert body["row_version"] == 2
    updated = [event for event in events.published_events if event["event_type"] == "crm.contact.updated"]
    assert len(updated) == 1
    assert updated[0]["payload"]["changes"]["lead_status"] == {"from": "New", "to": "Qualified"}
    entry = next(entry for entry in audit.audit_entries if entry["action"] == "update")
    assert entry["before"]["lead_status"] == "New"
    assert entry["after"]["lead_status"] == "Qualified"


def test_update_contact_row_version_conflict(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_actor = client
    contact = test_client.post("/api/crm/contacts", json={"first_name": "Update", "last_name": "Me"}).json()

    first_patch = test_client.patch(
        f"/api/crm/contacts/{contact['id']}",
        json={"row_version": contact["row_version"], "company": "Initech"},
    )
    assert first_patch.status_code == 200

    stale_patch = test_client.patch(
        f"/api/crm/contacts/{contact['id']}",
        json={"row_version": contact["row_version"], "company": "Globex"},
    )
    assert stale_patch.status_code == 409
    assert stale_patch.json()["code"] == "crm_contact_update_failed"
    assert test_client.get(f"/api/crm/contacts/{contact['id']}").json()["company"] == "Initech"


def test_delete_contact_soft(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_actor = client
    contact_id = test_client.post("/api/crm/contacts", json={"first_name": "Soft", "last_name": "Delete"}).json()["id"]

    deleted = test_client.delete(f"/api/crm/contacts/{contact_id}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}

    listed = test_client.get("/api/crm/contacts")
    assert contact_id not in [item["id"] for item in listed.json()]
    assert test_client.get(f"/api/crm/contacts/{contact_id}").status_code == 404
    assert test_client.delete(f"/api/crm/contacts/{contact_id}").status_code == 404
    assert any(event["event_type"] == "crm.contact.deleted" for event in events.published_events)
    entry = next(entry for entry in audit.audit_entries if entry["action"] == "soft_delete")
    assert entry["after"]["deleted_at"] is not None


def test_deal_stage_change_publishes_stage_event(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_actor = client
    first = test_client.post("/api/crm/stages", json={"name": "Discovery"}).json()
    second = test_client.post("/api/crm/stages", json={"name": "Proposal", "position": 1}).json()
    deal = test_client.post("/api/crm/deals", json={"name": "Pilot", "value": "1200.50", "stage_id": first["id"]}).json()
    events.published_events.clear()

    moved = test_client.patch(f"/api/crm/deals/{deal['id']}", json={"row_version": 1, "stage_id": second["id"]})

    assert moved.status_code == 200, moved.text
    assert [event["event_type"] for event in events.published_events] == ["crm.deal.updated", "crm.deal.stage_changed"]
    stage_event = events.published_events[1]
    assert stage_event["payload"]["previous_stage_id"] == first["id"]
    assert [stage["name"] for stage in test_client.get("/api/crm/stages").json()] == ["Discovery", "Proposal"]


def test_deal_requires_contact_in_same_tenant(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("user2")
    foreign = test_client.post("/api/crm/contacts", json={"first_name": "Foreign"}).json()

    set_actor("user1")
    response = test_client.post("/api/crm/deals", json={"name": "Cross", "contact_id": foreign["id"]})
    unknown = test_client.post("/api/crm/deals", json={"name": "Ghost", "contact_id": str(uuid.uuid4())})

    assert response.status_code == 422
    assert response.json()["message"] == "contact not found for deal"
    assert unknown.status_code == 422
