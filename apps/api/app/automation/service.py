from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app import audit
from app.automation.actions import ActionExecutor, action_executor
from app.automation.conditions import ConditionEvaluator, condition_evaluator
from app.automation.models import Automation, AutomationEnrollment
from app.automation.repository import (
    AutomationRepository,
    EnrollmentStore,
    active_automation_cache,
    definition_from_row,
    step_from_row,
)
from app.automation.scheduler import EnrollmentDispatcher, dispatcher
from app.automation.schemas import (
    ActionStep,
    AutomationCreate,
    AutomationDefinition,
    AutomationLogRead,
    AutomationRead,
    AutomationToggleRequest,
    AutomationUpdate,
    BranchStep,
    ConditionStep,
    DryRunResponse,
    EnrollResponse,
    EnrollmentRead,
    EnrollmentSummary,
    EntityRef,
    PreviewEnrollmentResponse,
    ProcessEnrollmentResponse,
    SweepResponse,
    UnenrollRequest,
    WorkflowValidationResult,
)
from app.automation.validation import validate_definition, validate_workflow
from app.core.config import get_settings
from app.crm.models import utcnow
from app.crm.repositories import EntityNotFoundError, EntitySnapshot, EntityStore
from app.crm.service import ActorUser, require_tenant
from app.metrics import observe_enrollment_created


logger = logging.getLogger("app.automation.service")

PREVIEW_SAMPLE_SIZE = 20


def _display_name(snapshot: EntitySnapshot) -> str:
    if snapshot.entity_type == "contact":
        first = snapshot.values.get("first_name") or ""
        last = snapshot.values.get("last_name") or ""
        return f"{first} {last}".strip()
    return str(snapshot.values.get("name") or "")


class AutomationService:
    def __init__(
        self,
        evaluator: ConditionEvaluator | None = None,
        executor: ActionExecutor | None = None,
        enrollment_dispatcher: EnrollmentDispatcher | None = None,
    ) -> None:
        self.evaluator = evaluator or condition_evaluator
        self.executor = executor or action_executor
        self.dispatcher = enrollment_dispatcher or dispatcher

    def list_automations(
        self, session: Session, actor_user: ActorUser, *, is_active: bool | None = None
    ) -> list[AutomationRead]:
        tenant_id = require_tenant(actor_user)
        rows = AutomationRepository(session).list_for_tenant(tenant_id, is_active=is_active)
        return [self._to_read(row) for row in rows]

    def get_automation(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> AutomationRead:
        return self._to_read(self._load(session, actor_user, automation_id))

    def create_automation(self, session: Session, actor_user: ActorUser, dto: AutomationCreate) -> AutomationRead:
        tenant_id = require_tenant(actor_user)
        automation = Automation(
            tenant_id=tenant_id,
            created_by_user_id=actor_user.user_id,
            name=dto.name.strip(),
            description=dto.description,
            trigger=dto.trigger.model_dump(mode="json"),
            conditions=[condition.model_dump(mode="json") for condition in dto.conditions],
            actions=[action.model_dump(mode="json") for action in dto.actions],
            is_active=dto.is_active,
            is_multi_step=bool(dto.is_multi_step),
            reenrollment_policy=dto.reenrollment_policy,
            max_duration_days=dto.max_duration_days,
            exit_conditions=[condition.model_dump(mode="json") for condition in dto.exit_conditions],
            safety_exit_enabled=dto.safety_exit_enabled,
        )
        session.add(automation)
        AutomationRepository(session).replace_steps(automation, list(dto.steps))
        session.flush()
        if automation.is_active:
            self._require_valid(session, automation)

        read_model = self._to_read(automation)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation",
            entity_id=str(automation.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            tenant_id=tenant_id,
        )
        session.commit()
        active_automation_cache.invalidate()
        logger.info(
            "automation_created",
            extra={"automation_id": str(automation.id), "tenant_id": tenant_id, "trigger_type": dto.trigger.type},
        )
        return read_model

    def update_automation(
        self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID, dto: AutomationUpdate
    ) -> AutomationRead:
        automation = self._load(session, actor_user, automation_id)
        before = self._to_read(automation).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)

        if "name" in changes and dto.name is not None:
            automation.name = dto.name.strip()
        if "description" in changes:
            automation.description = dto.description
        if dto.trigger is not None:
            automation.trigger = dto.trigger.model_dump(mode="json")
        if dto.conditions is not None:
            automation.conditions = [condition.model_dump(mode="json") for condition in dto.conditions]
        if dto.actions is not None:
            automation.actions = [action.model_dump(mode="json") for action in dto.actions]
        if dto.exit_conditions is not None:
            automation.exit_conditions = [condition.model_dump(mode="json") for condition in dto.exit_conditions]
        if dto.reenrollment_policy is not None:
            automation.reenrollment_policy = dto.reenrollment_policy
        if "max_duration_days" in changes:
            automation.max_duration_days = dto.max_duration_days
        if dto.safety_exit_enabled is not None:
            automation.safety_exit_enabled = dto.safety_exit_enabled
        if dto.steps is not None:
            AutomationRepository(session).replace_steps(automation, list(dto.steps))
            if dto.is_multi_step is None:
                automation.is_multi_step = bool(dto.steps)
        if dto.is_multi_step is not None:
            automation.is_multi_step = dto.is_multi_step
        if dto.is_active is not None:
            automation.is_active = dto.is_active

        if automation.is_multi_step and automation.actions:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="multi-step automations define actions inside steps",
            )
        session.flush()
        if automation.is_active:
            self._require_valid(session, automation)

        read_model = self._to_read(automation)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation",
            entity_id=str(automation.id),
            action="update",
            before=before,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            tenant_id=automation.tenant_id,
        )
        session.commit()
        active_automation_cache.invalidate()
        return read_model

    def toggle_automation(
        self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID, dto: AutomationToggleRequest
    ) -> AutomationRead:
        automation = self._load(session, actor_user, automation_id)
        target = (not automation.is_active) if dto.is_active is None else dto.is_active
        if target == automation.is_active:
            return self._to_read(automation)

        automation.is_active = target
        if target:
            self._require_valid(session, automation)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation",
            entity_id=str(automation.id),
            action="activate" if target else "deactivate",
            before={"is_active": not target},
            after={"is_active": target},
            correlation_id=actor_user.correlation_id,
            tenant_id=automation.tenant_id,
        )
        session.commit()
        active_automation_cache.invalidate()
        logger.info(
            "automation_toggled",
            extra={"automation_id": str(automation.id), "tenant_id": automation.tenant_id, "outcome": str(target).lower()},
        )
        return self._to_read(automation)

    def soft_delete_automation(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> None:
        automation = self._load(session, actor_user, automation_id)
        now = utcnow()
        automation.deleted_at = now
        automation.is_active = False

        store = EnrollmentStore(session)
        exited = 0
        for enrollment in store.active_for_automation(automation.id):
            if store.unenroll(enrollment, now=now, exit_reason="automation_deleted"):
                exited += 1

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation",
            entity_id=str(automation.id),
            action="soft_delete",
            before={"deleted_at": None},
            after={"deleted_at": now.isoformat(), "unenrolled": exited},
            correlation_id=actor_user.correlation_id,
            tenant_id=automation.tenant_id,
        )
        session.commit()
        active_automation_cache.invalidate()
        logger.info(
            "automation_deleted",
            extra={"automation_id": str(automation.id), "tenant_id": automation.tenant_id, "processed": exited},
        )

    def list_logs(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        *,
        limit: int,
        status_filter: str | None = None,
    ) -> list[AutomationLogRead]:
        automation = self._load(session, actor_user, automation_id)
        rows = EnrollmentStore(session).logs(automation.id, limit=limit, status=status_filter)
        return [AutomationLogRead.model_validate(row) for row in rows]

    def enrollment_summary(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        *,
        limit: int,
        status_filter: str | None = None,
    ) -> EnrollmentSummary:
        automation = self._load(session, actor_user, automation_id)
        store = EnrollmentStore(session)
        counts = store.counts(automation.id)
        recent = store.recent(automation.id, limit=limit, status=status_filter)
        return EnrollmentSummary(
            automation_id=automation.id,
            counts={**counts.counts, "total": counts.total},
            recent=[EnrollmentRead.model_validate(row) for row in recent],
        )

    def enroll_entity(
        self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID, dto: EntityRef
    ) -> EnrollResponse:
        automation = self._load(session, actor_user, automation_id)
        definition = self._definition(automation)
        if not definition.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="automation is not active")
        self._load_entity(session, definition, dto)

        result = EnrollmentStore(session).enroll(
            definition,
            dto.entity_type,
            dto.entity_id,
            now=utcnow(),
            metadata={
                "trigger": {"type": "manual", "actor_user_id": actor_user.user_id},
                "workflow_depth": 0,
                "correlation_id": actor_user.correlation_id,
            },
        )
        if result.created:
            observe_enrollment_created("manual")
        logger.info(
            "automation_enrolled" if result.created else "automation_enrollment_skipped",
            extra={
                "automation_id": str(definition.id),
                "tenant_id": definition.tenant_id,
                "trigger_type": "manual",
                "entity_type": dto.entity_type,
                "entity_id": str(dto.entity_id),
                "reason": result.reason,
            },
        )
        enrollment = EnrollmentRead.model_validate(result.enrollment) if result.enrollment is not None else None
        return EnrollResponse(created=result.created, reason=result.reason, enrollment=enrollment)

    def unenroll_entity(
        self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID, dto: UnenrollRequest
    ) -> EnrollmentRead:
        automation = self._load(session, actor_user, automation_id)
        store = EnrollmentStore(session)
        enrollment = store.find(automation.id, dto.entity_type, dto.entity_id)
        if enrollment is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="enrollment not found")
        if not store.unenroll(enrollment, now=utcnow(), exit_reason=dto.reason):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"enrollment is already {enrollment.status}")

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.enrollment",
            entity_id=str(enrollment.id),
            action="unenroll",
            before={"status": "active"},
            after={"status": enrollment.status, "exit_reason": enrollment.exit_reason},
            correlation_id=actor_user.correlation_id,
            tenant_id=automation.tenant_id,
        )
        session.commit()
        return EnrollmentRead.model_validate(enrollment)

    def preview_enrollment(
        self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID
    ) -> PreviewEnrollmentResponse:
        automation = self._load(session, actor_user, automation_id)
        definition = self._definition(automation)
        entity_type = definition.trigger.entity_type
        scan_limit = get_settings().automation_preview_scan_limit

        candidates = EntityStore(session).list_entities(entity_type, automation.tenant_id, limit=scan_limit)
        enrolled = EnrollmentStore(session).actively_enrolled_entity_ids(automation.id)
        matches: list[dict[str, Any]] = []
        for snapshot in candidates:
            if snapshot.entity_id in enrolled:
                continue
            if not self._preview_matches(definition, snapshot):
                continue
            matches.append(
                {
                    "entity_type": entity_type,
                    "entity_id": str(snapshot.entity_id),
                    "display_name": _display_name(snapshot),
                }
            )
        return PreviewEnrollmentResponse(
            potential_count=len(matches),
            scanned=len(candidates),
            entities=matches[:PREVIEW_SAMPLE_SIZE],
        )

    def test_automation(
        self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID, dto: EntityRef
    ) -> DryRunResponse:
        automation = self._load(session, actor_user, automation_id)
        definition = self._definition(automation)
        snapshot = self._load_entity(session, definition, dto)
        store = EntityStore(session)

        met, evaluated = self.evaluator.trace(definition.conditions, snapshot)
        response = DryRunResponse(conditions_met=met, conditions_evaluated=evaluated)
        if not definition.is_multi_step:
            response.planned_actions = [self.executor.plan(store, action, snapshot) for action in definition.actions]
            return response

        first = definition.step_at(0)
        if first is None:
            return response
        first_step: dict[str, Any] = first.model_dump(mode="json")
        if isinstance(first, ActionStep):
            response.planned_actions = [self.executor.plan(store, action, snapshot) for action in first.actions]
        elif isinstance(first, ConditionStep):
            step_met, step_evaluated = self.evaluator.trace(first.conditions, snapshot)
            first_step["evaluation"] = {"conditions_met": step_met, "conditions_evaluated": step_evaluated}
        elif isinstance(first, BranchStep):
            chosen = next(
                (
                    branch.name
                    for branch in first.branch_config.branches
                    if self.evaluator.evaluate(branch.conditions, snapshot)
                ),
                first.branch_config.default_branch,
            )
            first_step["evaluation"] = {"branch": chosen}
        response.first_step = first_step
        return response

    def validate_automation(
        self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID
    ) -> WorkflowValidationResult:
        automation = self._load(session, actor_user, automation_id)
        return validate_definition(self._definition(automation))

    def validate_payload(self, dto: AutomationCreate) -> WorkflowValidationResult:
        return validate_workflow(
            trigger=dto.trigger,
            actions=dto.actions,
            steps=dto.steps,
            is_multi_step=bool(dto.is_multi_step),
        )

    def process_enrollment(
        self, session: Session, actor_user: ActorUser, enrollment_id: uuid.UUID
    ) -> ProcessEnrollmentResponse:
        tenant_id = require_tenant(actor_user)
        store = EnrollmentStore(session)
        enrollment = store.get(enrollment_id)
        if enrollment is None or enrollment.tenant_id != tenant_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="enrollment not found")
        session.commit()

        result = self.dispatcher.process_enrollment(enrollment_id)
        refreshed: AutomationEnrollment | None = store.get(enrollment_id)
        return ProcessEnrollmentResponse(
            outcome=result.outcome,
            enrollment=EnrollmentRead.model_validate(refreshed) if refreshed is not None else None,
        )

    def sweep(self, actor_user: ActorUser) -> SweepResponse:
        tenant_id = require_tenant(actor_user)
        result = self.dispatcher.sweep(tenant_id=tenant_id)
        return SweepResponse(due=result.due, processed=result.processed, outcomes=result.outcomes)

    def _preview_matches(self, definition: AutomationDefinition, snapshot: EntitySnapshot) -> bool:
        config = definition.trigger.config
        if config.to_stage_id is not None and str(snapshot.values.get("stage_id") or "") != str(config.to_stage_id):
            return False
        return self.evaluator.evaluate(definition.conditions, snapshot)

    def _load(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> Automation:
        tenant_id = require_tenant(actor_user)
        automation = AutomationRepository(session).get(automation_id, tenant_id=tenant_id)
        if automation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="automation not found")
        return automation

    def _definition(self, automation: Automation) -> AutomationDefinition:
        try:
            return definition_from_row(automation)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    def _load_entity(self, session: Session, definition: AutomationDefinition, dto: EntityRef) -> EntitySnapshot:
        if dto.entity_type != definition.trigger.entity_type:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"automation runs on {definition.trigger.entity_type} records",
            )
        try:
            return EntityStore(session).get_entity(dto.entity_type, dto.entity_id, tenant_id=definition.tenant_id)
        except EntityNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{dto.entity_type} not found")

    def _require_valid(self, session: Session, automation: Automation) -> None:
        session.flush()
        session.refresh(automation, attribute_names=["steps"])
        result = validate_definition(self._definition(automation))
        if not result.valid:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"message": "automation cannot be activated", "errors": result.errors},
            )

    def _to_read(self, automation: Automation) -> AutomationRead:
        return AutomationRead(
            id=automation.id,
            tenant_id=automation.tenant_id,
            created_by_user_id=automation.created_by_user_id,
            name=automation.name,
            description=automation.description,
            trigger=dict(automation.trigger or {}),
            conditions=list(automation.conditions or []),
            actions=list(automation.actions or []),
            steps=[step_from_row(row).model_dump(mode="json") for row in automation.steps],
            is_active=automation.is_active,
            is_multi_step=automation.is_multi_step,
            reenrollment_policy=automation.reenrollment_policy,
            max_duration_days=automation.max_duration_days,
            exit_conditions=list(automation.exit_conditions or []),
            safety_exit_enabled=automation.safety_exit_enabled,
            created_at=automation.created_at,
            updated_at=automation.updated_at,
        )


automation_service = AutomationService()

__all__ = ["AutomationService", "automation_service"]
