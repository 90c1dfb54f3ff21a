from __future__ import annotations

import uuid
from collections.abc import Generator, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker

from app import audit, events
from app.automation import tasks
from app.automation.models import AutomationEnrollment, AutomationLog
from app.automation.repository import ActiveAutomationCache, EnrollmentStore, active_automation_cache
from app.automation.scheduler import EnrollmentDispatcher
from app.automation.schemas import AutomationCreate, AutomationToggleRequest
from app.automation.service import automation_service
from app.core.config import get_settings
from app.core.database import Base
from app.core.events import InProcessEventBus
from app.crm.repositories import EntityStore
from app.crm.service import ActorUser


NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
ACTOR = ActorUser(user_id="user-1", tenant_id="tenant-a", permissions=set())


@pytest.fixture()
def session_factory(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'automation.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTOMATION_WORKER_COUNT", "2")
    monkeypatch.setenv("AUTOMATION_LOCK_LEASE_SECONDS", "300")
    monkeypatch.setattr(events, "event_bus", InProcessEventBus())
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    active_automation_cache.invalidate()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    active_automation_cache.invalidate()


@pytest.fixture()
def dispatcher(session_factory: sessionmaker[Session]) -> EnrollmentDispatcher:
    @contextmanager
    def scope() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    return EnrollmentDispatcher(session_factory=scope, cache=ActiveAutomationCache(), clock=lambda: NOW)


def _create_automation(session: Session, actions: list[dict[str, Any]], **payload: Any) -> uuid.UUID:
    body = {
        "name": payload.pop("name", "Dispatch"),
        "trigger": {"type": "contact_created"},
        "actions": actions,
        "is_active": True,
        **payload,
    }
    return automation_service.create_automation(session, ACTOR, AutomationCreate.model_validate(body)).id


def _enroll_contacts(
    session: Session,
    automation_id: uuid.UUID,
    count: int,
    *,
    now: datetime = NOW,
) -> list[AutomationEnrollment]:
    definition = ActiveAutomationCache().snapshot(session).get(automation_id)
    assert definition is not None
    entities = EntityStore(session)
    enrollments = EnrollmentStore(session)
    created: list[AutomationEnrollment] = []
    for index in range(count):
        contact = entities.add_entity("contact", "tenant-a", {"first_name": f"Contact {index}"}, actor_user_id="user-1")
        session.commit()
        result = enrollments.enroll(definition, "contact", contact.entity_id, now=now, metadata={"workflow_depth": 0})
        assert result.enrollment is not None
        created.append(result.enrollment)
    entities.discard_events()
    return created


def _statuses(session_factory: sessionmaker[Session], ids: list[uuid.UUID]) -> list[str]:
    with session_factory() as session:
        rows = session.scalars(select(AutomationEnrollment).where(AutomationEnrollment.id.in_(ids))).all()
        return sorted(row.status for row in rows)


def _log_count(session_factory: sessionmaker[Session], automation_id: uuid.UUID) -> int:
    with session_factory() as session:
        return session.scalar(
            select(func.count(AutomationLog.id)).where(AutomationLog.automation_id == automation_id)
        )


def test_sweep_runs_every_due_enrollment(
    db_session: Session,
    dispatcher: EnrollmentDispatcher,
    session_factory: sessionmaker[Session],
) -> None:
    automation_id = _create_automation(db_session, [{"type": "add_contact_tag", "tag": "welcome"}])
    enrollments = _enroll_contacts(db_session, automation_id, 5)

    result = dispatcher.sweep(NOW)

    assert result.due == 5
    assert result.processed == 5
    assert result.outcomes == {"completed": 5}
    assert _statuses(session_factory, [item.id for item in enrollments]) == ["completed"] * 5
    assert _log_count(session_factory, automation_id) == 5

    with session_factory() as session:
        tags = [snapshot.tags for snapshot in EntityStore(session).list_entities("contact", "tenant-a", limit=10)]
    assert tags == [("welcome",)] * 5


def test_sweep_isolates_failing_enrollments(
    db_session: Session,
    dispatcher: EnrollmentDispatcher,
    session_factory: sessionmaker[Session],
) -> None:
    healthy_id = _create_automation(db_session, [{"type": "add_contact_tag", "tag": "ok"}], name="Healthy")
    broken_id = _create_automation(
        db_session,
        [{"type": "update_contact_field", "field": "lead_score", "value": "plenty"}],
        name="Broken",
    )
    healthy = _enroll_contacts(db_session, healthy_id, 3)
    broken = _enroll_contacts(db_session, broken_id, 2)

    result = dispatcher.sweep(NOW)

    assert result.due == 5
    assert result.outcomes == {"completed": 3, "failed": 2}
    assert _statuses(session_factory, [item.id for item in healthy]) == ["completed"] * 3
    assert _statuses(session_factory, [item.id for item in broken]) == ["failed"] * 2


def test_sweep_only_picks_up_due_enrollments(
    db_session: Session,
    dispatcher: EnrollmentDispatcher,
) -> None:
    automation_id = _create_automation(db_session, [{"type": "add_contact_tag", "tag": "later"}])
    _enroll_contacts(db_session, automation_id, 2, now=NOW + timedelta(hours=1))

    early = dispatcher.sweep(NOW)
    on_time = dispatcher.sweep(NOW + timedelta(hours=1))

    assert early.due == 0
    assert early.processed == 0
    assert on_time.due == 2
    assert on_time.outcomes == {"completed": 2}


def test_locked_enrollment_is_skipped_until_lease_expires(
    db_session: Session,
    dispatcher: EnrollmentDispatcher,
    session_factory: sessionmaker[Session],
) -> None:
    automation_id = _create_automation(db_session, [{"type": "add_contact_tag", "tag": "welcome"}])
    enrollment = _enroll_contacts(db_session, automation_id, 1)[0]

    with session_factory() as session:
        token = EnrollmentStore(session).try_lock(enrollment.id, now=NOW, lease_seconds=300)
    assert token is not None

    assert dispatcher.sweep(NOW).due == 0
    assert dispatcher.process_enrollment(enrollment.id, NOW).outcome == "locked"

    after_lease = dispatcher.process_enrollment(enrollment.id, NOW + timedelta(seconds=301))
    assert after_lease.outcome == "completed"

    with session_factory() as session:
        refreshed = EnrollmentStore(session).get(enrollment.id)
        assert refreshed is not None
        assert refreshed.lock_token is None
        assert refreshed.locked_until is None


def test_processing_twice_runs_actions_once(
    db_session: Session,
    dispatcher: EnrollmentDispatcher,
    session_factory: sessionmaker[Session],
) -> None:
    automation_id = _create_automation(db_session, [{"type": "add_contact_tag", "tag": "welcome"}])
    enrollment = _enroll_contacts(db_session, automation_id, 1)[0]

    first = dispatcher.process_enrollment(enrollment.id)
    second = dispatcher.process_enrollment(enrollment.id)

    assert first.outcome == "completed"
    assert second.outcome == "not_active"
    assert _log_count(session_factory, automation_id) == 1
    assert dispatcher.process_enrollment(uuid.uuid4()).outcome == "not_found"


def test_concurrent_sweeps_never_double_process(
    db_session: Session,
    session_factory: sessionmaker[Session],
) -> None:
    @contextmanager
    def scope() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    automation_id = _create_automation(db_session, [{"type": "add_contact_tag", "tag": "welcome"}])
    enrollments = _enroll_contacts(db_session, automation_id, 6)
    first = EnrollmentDispatcher(session_factory=scope, cache=ActiveAutomationCache())
    second = EnrollmentDispatcher(session_factory=scope, cache=ActiveAutomationCache())

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = [future.result() for future in [pool.submit(first.sweep, NOW), pool.submit(second.sweep, NOW)]]

    completed = sum(result.outcomes.get("completed", 0) for result in results)
    assert completed == 6
    assert all("error" not in result.outcomes for result in results)
    assert _statuses(session_factory, [item.id for item in enrollments]) == ["completed"] * 6
    assert _log_count(session_factory, automation_id) == 6

    with session_factory() as session:
        snapshots = EntityStore(session).list_entities("contact", "tenant-a", limit=10)
    assert all(snapshot.tags == ("welcome",) and snapshot.row_version == 2 for snapshot in snapshots)


def test_paused_automation_enrollments_wait(
    db_session: Session,
    dispatcher: EnrollmentDispatcher,
) -> None:
    automation_id = _create_automation(db_session, [{"type": "add_contact_tag", "tag": "welcome"}])
    enrollment = _enroll_contacts(db_session, automation_id, 1)[0]
    automation_service.toggle_automation(db_session, ACTOR, automation_id, AutomationToggleRequest(is_active=False))

    assert dispatcher.sweep(NOW).due == 0
    assert dispatcher.process_enrollment(enrollment.id).outcome == "paused"


def test_celery_sweep_task_reports_outcomes(
    db_session: Session,
    dispatcher: EnrollmentDispatcher,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(tasks, "dispatcher", dispatcher)
    automation_id = _create_automation(db_session, [{"type": "add_contact_tag", "tag": "welcome"}])
    enrollment = _enroll_contacts(db_session, automation_id, 2)[0]

    summary = tasks.sweep_due_enrollments()
    processed = tasks.process_enrollment(str(enrollment.id))

    assert summary == {"due": 2, "processed": 2, "outcomes": {"completed": 2}}
    assert processed["outcome"] == "not_active"
