from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.automation.models import Automation, AutomationEnrollment, AutomationLog, AutomationStep
from app.automation.schemas import (
    ActionStep,
    AutomationDefinition,
    AutomationTrigger,
    BranchStep,
    ConditionStep,
    DelayStep,
    action_list_adapter,
    condition_list_adapter,
    step_adapter,
)
from app.crm.models import utcnow


logger = logging.getLogger("app.automation.repository")

ENROLLMENT_STATUSES = ("active", "completed", "failed", "unenrolled")


def step_to_columns(step: ActionStep | DelayStep | ConditionStep | BranchStep) -> dict[str, Any]:
    payload = step.model_dump(mode="json")
    return {
        "step_index": payload["step_index"],
        "name": payload.get("name"),
        "type": payload["type"],
        "conditions": payload.get("conditions", []),
        "actions": payload.get("actions", []),
        "delay_config": payload.get("delay_config"),
        "branch_config": payload.get("branch_config"),
        "config": payload.get("config", {}),
        "next_step_index": payload.get("next_step_index"),
        "branch_step_indices": payload.get("branch_step_indices", {}),
    }


def step_from_row(row: AutomationStep) -> ActionStep | DelayStep | ConditionStep | BranchStep:
    payload: dict[str, Any] = {
        "type": row.type,
        "step_index": row.step_index,
        "name": row.name,
        "next_step_index": row.next_step_index,
        "branch_step_indices": row.branch_step_indices or {},
    }
    if row.type == "action":
        payload["actions"] = row.actions or []
    elif row.type == "delay":
        payload["delay_config"] = row.delay_config
    elif row.type == "condition":
        payload["conditions"] = row.conditions or []
        payload["config"] = row.config or {}
    elif row.type == "branch":
        payload["branch_config"] = row.branch_config
    return step_adapter.validate_python(payload)


def definition_from_row(automation: Automation) -> AutomationDefinition:
    steps = {row.step_index: step_from_row(row) for row in automation.steps} if automation.is_multi_step else {}
    return AutomationDefinition(
        id=automation.id,
        tenant_id=automation.tenant_id,
        name=automation.name,
        trigger=AutomationTrigger.model_validate(automation.trigger),
        conditions=tuple(condition_list_adapter.validate_python(automation.conditions or [])),
        actions=tuple(action_list_adapter.validate_python(automation.actions or [])),
        steps=steps,
        is_active=automation.is_active,
        is_multi_step=automation.is_multi_step,
        reenrollment_policy=automation.reenrollment_policy,
        max_duration_days=automation.max_duration_days,
        exit_conditions=tuple(condition_list_adapter.validate_python(automation.exit_conditions or [])),
        safety_exit_enabled=automation.safety_exit_enabled,
        updated_at=automation.updated_at,
    )


class AutomationRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, automation_id: uuid.UUID, *, tenant_id: str | None = None) -> Automation | None:
        stmt = (
            select(Automation)
            .where(and_(Automation.id == automation_id, Automation.deleted_at.is_(None)))
            .options(selectinload(Automation.steps))
        )
        if tenant_id is not None:
            stmt = stmt.where(Automation.tenant_id == tenant_id)
        return self.session.scalar(stmt)

    def list_for_tenant(self, tenant_id: str, *, is_active: bool | None = None) -> list[Automation]:
        stmt = (
            select(Automation)
            .where(and_(Automation.tenant_id == tenant_id, Automation.deleted_at.is_(None)))
            .options(selectinload(Automation.steps))
            .order_by(Automation.created_at.desc())
        )
        if is_active is not None:
            stmt = stmt.where(Automation.is_active.is_(is_active))
        return list(self.session.scalars(stmt).all())

    def load_active_definitions(self) -> list[AutomationDefinition]:
        rows = self.session.scalars(
            select(Automation)
            .where(and_(Automation.is_active.is_(True), Automation.deleted_at.is_(None)))
            .options(selectinload(Automation.steps))
        ).all()
        definitions: list[AutomationDefinition] = []
        for row in rows:
            try:
                definitions.append(definition_from_row(row))
            except ValueError as exc:
                logger.error(
                    "automation_definition_invalid",
                    extra={"automation_id": str(row.id), "tenant_id": row.tenant_id, "error": str(exc)},
                )
        return definitions

    def replace_steps(
        self, automation: Automation, steps: list[ActionStep | DelayStep | ConditionStep | BranchStep]
    ) -> None:
        automation.steps.clear()
        self.session.flush()
        for step in steps:
            automation.steps.append(AutomationStep(**step_to_columns(step)))


@dataclass(frozen=True)
class ActiveAutomationSnapshot:
    generation: int
    by_id: Mapping[uuid.UUID, AutomationDefinition]

    @property
    def automation_ids(self) -> frozenset[uuid.UUID]:
        return frozenset(self.by_id)

    def get(self, automation_id: uuid.UUID) -> AutomationDefinition | None:
        return self.by_id.get(automation_id)

    def for_tenant(self, tenant_id: str) -> list[AutomationDefinition]:
        return [definition for definition in self.by_id.values() if definition.tenant_id == tenant_id]


class ActiveAutomationCache:
    """Process-wide set of active automations.

    Readers take an immutable snapshot; writers only ever invalidate, and the
    next reader rebuilds from the database.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot: ActiveAutomationSnapshot | None = None
        self._generation = 0

    def snapshot(self, session: Session) -> ActiveAutomationSnapshot:
        with self._lock:
            if self._snapshot is None:
                definitions = AutomationRepository(session).load_active_definitions()
                self._snapshot = ActiveAutomationSnapshot(
                    generation=self._generation,
                    by_id=MappingProxyType({definition.id: definition for definition in definitions}),
                )
            return self._snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
            self._generation += 1


active_automation_cache = ActiveAutomationCache()


@dataclass
class EnrollResult:
    enrollment: AutomationEnrollment | None
    created: bool
    reason: str | None = None


@dataclass
class EnrollmentCounts:
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class EnrollmentStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, enrollment_id: uuid.UUID) -> AutomationEnrollment | None:
        return self.session.scalar(
            select(AutomationEnrollment)
            .where(AutomationEnrollment.id == enrollment_id)
            .execution_options(populate_existing=True)
        )

    def find(self, automation_id: uuid.UUID, entity_type: str, entity_id: uuid.UUID) -> AutomationEnrollment | None:
        return self.session.scalar(
            select(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.automation_id == automation_id,
                    AutomationEnrollment.entity_type == entity_type,
                    AutomationEnrollment.entity_id == entity_id,
                )
            )
            .execution_options(populate_existing=True)
        )

    def load_due(
        self,
        now: datetime,
        *,
        limit: int,
        automation_ids: Collection[uuid.UUID] | None = None,
    ) -> list[uuid.UUID]:
        if automation_ids is not None and not automation_ids:
            return []
        stmt = select(AutomationEnrollment.id).where(
            and_(
                AutomationEnrollment.status == "active",
                or_(AutomationEnrollment.next_step_at.is_(None), AutomationEnrollment.next_step_at <= now),
                or_(AutomationEnrollment.locked_until.is_(None), AutomationEnrollment.locked_until < now),
            )
        )
        if automation_ids is not None:
            stmt = stmt.where(AutomationEnrollment.automation_id.in_(list(automation_ids)))
        stmt = stmt.order_by(AutomationEnrollment.next_step_at.asc(), AutomationEnrollment.enrolled_at.asc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def try_lock(self, enrollment_id: uuid.UUID, *, now: datetime, lease_seconds: int) -> uuid.UUID | None:
        """Take the enrollment's lease without blocking; returns the lock token or None."""
        token = uuid.uuid4()
        result = self.session.execute(
            update(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.id == enrollment_id,
                    or_(AutomationEnrollment.locked_until.is_(None), AutomationEnrollment.locked_until < now),
                )
            )
            .values(lock_token=token, locked_until=now + timedelta(seconds=lease_seconds))
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return token if result.rowcount == 1 else None

    def unlock(self, enrollment_id: uuid.UUID, token: uuid.UUID) -> None:
        self.session.execute(
            update(AutomationEnrollment)
            .where(and_(AutomationEnrollment.id == enrollment_id, AutomationEnrollment.lock_token == token))
            .values(lock_token=None, locked_until=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def write_state(self, enrollment: AutomationEnrollment, *, expected_revision: int, **values: Any) -> bool:
        """Write a tick's result only if nobody touched the row since the tick read it.

        Returns False when the enrollment left ``active`` or was re-armed in the
        meantime; the other writer's state is kept.
        """
        result = self.session.execute(
            update(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.id == enrollment.id,
                    AutomationEnrollment.status == "active",
                    AutomationEnrollment.revision == expected_revision,
                )
            )
            .values({getattr(AutomationEnrollment, key): value for key, value in values.items()})
            .values(revision=expected_revision + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.expire(enrollment)
        return result.rowcount == 1

    def enroll(
        self,
        definition: AutomationDefinition,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> EnrollResult:
        """Create or re-arm the single enrollment row for (automation, entity).

        Commits on success. Concurrent creation of the same row is resolved by
        the unique constraint; the loser reports the existing row.
        """

        existing = self.find(definition.id, entity_type, entity_id)
        if existing is None:
            enrollment = AutomationEnrollment(
                automation_id=definition.id,
                tenant_id=definition.tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                current_step_index=0,
                status="active",
                enrolled_at=now,
                next_step_at=now,
                metadata_json=dict(metadata or {}),
            )
            self.session.add(enrollment)
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                return EnrollResult(self.find(definition.id, entity_type, entity_id), False, "already_enrolled")
            return EnrollResult(enrollment, True)

        policy = definition.reenrollment_policy
        if existing.status == "active":
            if policy != "restart":
                return EnrollResult(existing, False, "already_active")
            if not self._reset(existing, now=now, metadata=metadata):
                self.session.rollback()
                return EnrollResult(self.find(definition.id, entity_type, entity_id), False, "already_enrolled")
            self.session.commit()
            return EnrollResult(existing, True, "restarted")

        if policy == "never":
            return EnrollResult(existing, False, "previously_enrolled")
        if not self._reset(existing, now=now, metadata=metadata):
            self.session.rollback()
            return EnrollResult(self.find(definition.id, entity_type, entity_id), False, "already_enrolled")
        self.session.commit()
        return EnrollResult(existing, True, "reenrolled")

    def unenroll(
        self,
        enrollment: AutomationEnrollment,
        *,
        now: datetime,
        exit_reason: str,
    ) -> bool:
        if enrollment.status != "active":
            return False
        result = self.session.execute(
            update(AutomationEnrollment)
            .where(and_(AutomationEnrollment.id == enrollment.id, AutomationEnrollment.status == "active"))
            .values(
                status="unenrolled",
                exit_reason=exit_reason,
                exited_at=now,
                next_step_at=None,
                revision=AutomationEnrollment.revision + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.session.expire(enrollment)
        return result.rowcount == 1

    def active_for_entity(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        tenant_id: str | None = None,
        automation_id: uuid.UUID | None = None,
    ) -> list[AutomationEnrollment]:
        stmt = select(AutomationEnrollment).where(
            and_(
                AutomationEnrollment.entity_type == entity_type,
                AutomationEnrollment.entity_id == entity_id,
                AutomationEnrollment.status == "active",
            )
        )
        if tenant_id is not None:
            stmt = stmt.where(AutomationEnrollment.tenant_id == tenant_id)
        if automation_id is not None:
            stmt = stmt.where(AutomationEnrollment.automation_id == automation_id)
        return list(self.session.scalars(stmt).all())

    def active_for_automation(self, automation_id: uuid.UUID) -> list[AutomationEnrollment]:
        return list(
            self.session.scalars(
                select(AutomationEnrollment).where(
                    and_(
                        AutomationEnrollment.automation_id == automation_id,
                        AutomationEnrollment.status == "active",
                    )
                )
            ).all()
        )

    def actively_enrolled_entity_ids(self, automation_id: uuid.UUID) -> set[uuid.UUID]:
        return set(
            self.session.scalars(
                select(AutomationEnrollment.entity_id).where(
                    and_(
                        AutomationEnrollment.automation_id == automation_id,
                        AutomationEnrollment.status == "active",
                    )
                )
            ).all()
        )

    def counts(self, automation_id: uuid.UUID) -> EnrollmentCounts:
        rows = self.session.execute(
            select(AutomationEnrollment.status, func.count(AutomationEnrollment.id))
            .where(AutomationEnrollment.automation_id == automation_id)
            .group_by(AutomationEnrollment.status)
        ).all()
        counts = {status: 0 for status in ENROLLMENT_STATUSES}
        for status, count in rows:
            counts[status] = int(count)
        return EnrollmentCounts(counts=counts)

    def recent(
        self, automation_id: uuid.UUID, *, limit: int, status: str | None = None
    ) -> list[AutomationEnrollment]:
        stmt = select(AutomationEnrollment).where(AutomationEnrollment.automation_id == automation_id)
        if status is not None:
            stmt = stmt.where(AutomationEnrollment.status == status)
        stmt = stmt.order_by(AutomationEnrollment.updated_at.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def add_log(self, **values: Any) -> AutomationLog:
        log = AutomationLog(**values)
        self.session.add(log)
        return log

    def logs(self, automation_id: uuid.UUID, *, limit: int, status: str | None = None) -> list[AutomationLog]:
        stmt = select(AutomationLog).where(AutomationLog.automation_id == automation_id)
        if status is not None:
            stmt = stmt.where(AutomationLog.status == status)
        stmt = stmt.order_by(AutomationLog.executed_at.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def _reset(self, enrollment: AutomationEnrollment, *, now: datetime, metadata: dict[str, Any] | None) -> bool:
        result = self.session.execute(
            update(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.id == enrollment.id,
                    AutomationEnrollment.revision == enrollment.revision,
                )
            )
            .values(
                current_step_index=0,
                status="active",
                enrolled_at=now,
                completed_at=None,
                next_step_at=now,
                error=None,
                exit_reason=None,
                exited_at=None,
                revision=AutomationEnrollment.revision + 1,
                updated_at=utcnow(),
            )
            .values({AutomationEnrollment.metadata_json: dict(metadata or {})})
            .execution_options(synchronize_session=False)
        )
        self.session.expire(enrollment)
        return result.rowcount == 1
