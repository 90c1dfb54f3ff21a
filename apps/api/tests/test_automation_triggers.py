from __future__ import annotations

import uuid
from collections.abc import Generator
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.automation.repository import EnrollmentStore, active_automation_cache
from app.automation.schemas import (
    AutomationCondition,
    AutomationCreate,
    AutomationDefinition,
    AutomationTrigger,
    TriggerConfig,
)
from app.automation.service import automation_service
from app.automation.triggers import AutomationEventHandler, TriggerEvent, TriggerMatcher
from app.core.config import get_settings
from app.core.database import Base
from app.crm.repositories import EntitySnapshot, EntityStore, build_event_envelope
from app.crm.service import ActorUser


ACTOR = ActorUser(user_id="user-1", tenant_id="tenant-a", permissions=set())


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
    monkeypatch.setenv("AUTOMATION_MAX_DEPTH", "3")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    active_automation_cache.invalidate()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    active_automation_cache.invalidate()


def _definition(trigger: dict[str, Any], **overrides: Any) -> AutomationDefinition:
    values: dict[str, Any] = {
        "id": uuid.uuid4(),
        "tenant_id": "tenant-a",
        "name": "Matcher",
        "trigger": AutomationTrigger.model_validate(trigger),
        "is_active": True,
        "is_multi_step": False,
    }
    values.update(overrides)
    return AutomationDefinition(**values)


def _snapshot(entity_type: str = "contact", **values: Any) -> EntitySnapshot:
    return EntitySnapshot(
        entity_type=entity_type,
        entity_id=uuid.uuid4(),
        tenant_id="tenant-a",
        row_version=2,
        values=values,
    )


def _event(event_type: str, snapshot: EntitySnapshot, **kwargs: Any) -> TriggerEvent:
    envelope = build_event_envelope(event_type, snapshot, actor_user_id="user-1", **kwargs)
    event = TriggerEvent.from_envelope(envelope)
    assert event is not None
    return event


def test_event_parsing_reads_depth_and_snapshot() -> None:
    snapshot = _snapshot(state="CA")
    envelope = build_event_envelope("crm.contact.created", snapshot, actor_user_id="user-1")
    envelope["meta"] = {"workflow_depth": 2}
    envelope["correlation_id"] = "corr-1"

    event = TriggerEvent.from_envelope(envelope)

    assert event is not None
    assert event.type == "contact_created"
    assert event.entity_id == snapshot.entity_id
    assert event.workflow_depth == 2
    assert event.correlation_id == "corr-1"
    assert event.snapshot is not None
    assert event.snapshot.values["state"] == "CA"


def test_event_parsing_ignores_unknown_or_unscoped_events() -> None:
    snapshot = _snapshot()
    unknown = build_event_envelope("crm.contact.merged", snapshot, actor_user_id="user-1")
    unscoped = build_event_envelope("crm.contact.created", snapshot, actor_user_id="user-1")
    unscoped["tenant_id"] = ""

    assert TriggerEvent.from_envelope(unknown) is None
    assert TriggerEvent.from_envelope(unscoped) is None


def test_matcher_filters_on_type_tenant_and_activity() -> None:
    matcher = TriggerMatcher()
    event = _event("crm.contact.created", _snapshot())
    matching = _definition({"type": "contact_created"})
    other_type = _definition({"type": "contact_updated"})
    other_tenant = _definition({"type": "contact_created"}, tenant_id="tenant-b")
    inactive = _definition({"type": "contact_created"}, is_active=False)

    assert matcher.match(event, [matching, other_type, other_tenant, inactive]) == [matching]


def test_matcher_requires_a_watched_field_to_change() -> None:
    matcher = TriggerMatcher()
    snapshot = _snapshot(lead_status="Qualified")
    event = _event(
        "crm.contact.updated",
        snapshot,
        changes={"lead_status": {"from": "New", "to": "Qualified"}, "custom_fields.tier": {"from": None, "to": "gold"}},
    )

    assert matcher.matches(event, _definition({"type": "contact_updated", "config": {"fields": ["leadStatus"]}}))
    assert matcher.matches(event, _definition({"type": "contact_updated", "config": {"fields": ["customFields.tier"]}}))
    assert not matcher.matches(event, _definition({"type": "contact_updated", "config": {"fields": ["email"]}}))
    assert matcher.matches(event, _definition({"type": "contact_updated"}))


def test_matcher_checks_stage_transition_bounds() -> None:
    matcher = TriggerMatcher()
    from_stage = uuid.uuid4()
    to_stage = uuid.uuid4()
    snapshot = _snapshot("deal", name="Pilot", stage_id=to_stage)
    event = _event(
        "crm.deal.stage_changed",
        snapshot,
        changes={"stage_id": {"from": str(from_stage), "to": str(to_stage)}},
        previous_stage_id=from_stage,
    )

    exact = _definition({"type": "deal_stage_changed", "config": {"from_stage_id": str(from_stage), "to_stage_id": str(to_stage)}})
    wrong_target = _definition({"type": "deal_stage_changed", "config": {"to_stage_id": str(uuid.uuid4())}})
    wrong_origin = _definition({"type": "deal_stage_changed", "config": {"from_stage_id": str(uuid.uuid4())}})

    assert matcher.matches(event, exact)
    assert not matcher.matches(event, wrong_target)
    assert not matcher.matches(event, wrong_origin)


def test_matcher_evaluates_automation_conditions_against_snapshot() -> None:
    matcher = TriggerMatcher()
    event = _event("crm.contact.created", _snapshot(state="CA"))
    californians = _definition(
        {"type": "contact_created"},
        conditions=(AutomationCondition(field="state", operator="equals", value="CA"),),
    )
    texans = _definition(
        {"type": "contact_created"},
        conditions=(AutomationCondition(field="state", operator="equals", value="TX"),),
    )

    assert matcher.match(event, [californians, texans]) == [californians]


def test_empty_field_list_matches_any_update() -> None:
    event = _event("crm.contact.updated", _snapshot(), changes={"email": {"from": None, "to": "a@b.example"}})
    automation = _definition({"type": "contact_updated"})

    assert TriggerMatcher().config_satisfied(TriggerConfig(fields=[]), event)
    assert TriggerMatcher().matches(event, automation)


def _store_contact(session: Session, **values: Any) -> tuple[EntitySnapshot, list[dict[str, Any]]]:
    store = EntityStore(session)
    snapshot = store.add_entity("contact", "tenant-a", {"first_name": "Ada", **values}, actor_user_id="user-1")
    session.commit()
    return snapshot, store.drain_events()


def _create_automation(session: Session, **payload: Any) -> uuid.UUID:
    body = {
        "name": "Welcome",
        "trigger": {"type": "contact_created"},
        "actions": [{"type": "add_contact_tag", "tag": "welcome"}],
        "is_active": True,
        **payload,
    }
    return automation_service.create_automation(session, ACTOR, AutomationCreate.model_validate(body)).id


def test_handler_enrolls_matching_entities_once(db_session: Session) -> None:
    automation_id = _create_automation(db_session)
    _, pending = _store_contact(db_session)
    envelope = pending[0]
    envelope["correlation_id"] = "corr-enroll-1"
    handler = AutomationEventHandler()

    first = handler.handle_event(db_session, envelope)
    second = handler.handle_event(db_session, envelope)

    assert [result.created for result in first] == [True]
    assert [(result.created, result.reason) for result in second] == [(False, "already_active")]
    enrollment = first[0].enrollment
    assert enrollment is not None
    assert enrollment.automation_id == automation_id
    assert enrollment.metadata_json["workflow_depth"] == 0
    assert enrollment.metadata_json["correlation_id"] == "corr-enroll-1"
    assert enrollment.metadata_json["trigger"]["type"] == "contact_created"


def test_handler_respects_reenrollment_policy(db_session: Session) -> None:
    automation_id = _create_automation(db_session, reenrollment_policy="after_exit")
    snapshot, pending = _store_contact(db_session)
    handler = AutomationEventHandler()

    created = handler.handle_event(db_session, pending[0])[0]
    assert created.enrollment is not None
    store = EnrollmentStore(db_session)
    store.unenroll(created.enrollment, now=created.enrollment.enrolled_at, exit_reason="manual")
    db_session.commit()

    again = handler.handle_event(db_session, pending[0])

    assert [(result.created, result.reason) for result in again] == [(True, "reenrolled")]
    enrollment = store.find(automation_id, "contact", snapshot.entity_id)
    assert enrollment is not None
    assert enrollment.status == "active"
    assert enrollment.exit_reason is None


def test_handler_blocks_events_past_max_depth(db_session: Session) -> None:
    _create_automation(db_session)
    _, pending = _store_contact(db_session)
    envelope = pending[0]
    envelope["meta"] = {"workflow_depth": 3}
    envelope["correlation_id"] = "corr-depth-1"

    results = AutomationEventHandler().handle_event(db_session, envelope)

    assert results == []
    blocked = [entry for entry in audit.audit_entries if entry.get("action") == "automation.blocked"]
    assert len(blocked) == 1
    assert blocked[0]["after"]["reason"] == "max_depth"
    assert blocked[0]["after"]["workflow_depth"] == 3
    assert blocked[0]["correlation_id"] == "corr-depth-1"


def test_handler_enrolls_nested_events_below_depth_limit(db_session: Session) -> None:
    _create_automation(db_session)
    _, pending = _store_contact(db_session)
    envelope = pending[0]
    envelope["meta"] = {"workflow_depth": 2}

    results = AutomationEventHandler().handle_event(db_session, envelope)

    assert [result.created for result in results] == [True]
    assert results[0].enrollment is not None
    assert results[0].enrollment.metadata_json["workflow_depth"] == 2


def test_handler_loads_missing_snapshot_from_store(db_session: Session) -> None:
    _create_automation(db_session, conditions=[{"field": "state", "operator": "equals", "value": "CA"}])
    _, pending = _store_contact(db_session, state="CA")
    envelope = pending[0]
    envelope["payload"].pop("snapshot")

    results = AutomationEventHandler().handle_event(db_session, envelope)

    assert [result.created for result in results] == [True]


def test_entity_deletion_unenrolls_with_safety_exit(db_session: Session) -> None:
    guarded = _create_automation(db_session, name="Guarded")
    unguarded = _create_automation(db_session, name="Unguarded", safety_exit_enabled=False)
    snapshot, pending = _store_contact(db_session)
    handler = AutomationEventHandler()
    handler.handle_event(db_session, pending[0])

    store = EntityStore(db_session)
    store.soft_delete_entity("contact", snapshot.entity_id, actor_user_id="user-1")
    db_session.commit()
    deleted = store.drain_events()

    assert handler.handle_event(db_session, deleted[0]) == []

    enrollments = EnrollmentStore(db_session)
    guarded_enrollment = enrollments.find(guarded, "contact", snapshot.entity_id)
    unguarded_enrollment = enrollments.find(unguarded, "contact", snapshot.entity_id)
    assert guarded_enrollment is not None and unguarded_enrollment is not None
    assert guarded_enrollment.status == "unenrolled"
    assert guarded_enrollment.exit_reason == "entity_deleted"
    assert unguarded_enrollment.status == "active"
