from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit
from app.automation.conditions import ConditionEvaluator, condition_evaluator
from app.automation.fields import field_resolver
from app.automation.models import Automation
from app.automation.repository import (
    ActiveAutomationCache,
    EnrollResult,
    EnrollmentStore,
    active_automation_cache,
)
from app.automation.schemas import AutomationDefinition, TriggerConfig
from app.context import reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.crm.models import utcnow
from app.crm.repositories import EntityNotFoundError, EntitySnapshot, EntityStore
from app.metrics import observe_enrollment_created, observe_guardrail_block


logger = logging.getLogger("app.automation.triggers")

EVENT_TRIGGER_TYPES: dict[str, str] = {
    "crm.contact.created": "contact_created",
    "crm.contact.updated": "contact_updated",
    "crm.deal.created": "deal_created",
    "crm.deal.updated": "deal_updated",
    "crm.deal.stage_changed": "deal_stage_changed",
}

ENTITY_DELETED_EVENTS: dict[str, str] = {
    "crm.contact.deleted": "contact",
    "crm.deal.deleted": "deal",
}

SUBSCRIBED_EVENT_TYPES = [*EVENT_TRIGGER_TYPES, *ENTITY_DELETED_EVENTS]


def _optional_uuid(value: Any) -> uuid.UUID | None:
    if value in (None, ""):
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def snapshot_from_payload(
    entity_type: str, entity_id: uuid.UUID, tenant_id: str, data: dict[str, Any]
) -> EntitySnapshot:
    values = {key: value for key, value in data.items() if key not in {"custom_fields", "tags", "row_version"}}
    return EntitySnapshot(
        entity_type=entity_type,
        entity_id=entity_id,
        tenant_id=tenant_id,
        row_version=int(data.get("row_version") or 0),
        values=values,
        custom_fields=dict(data.get("custom_fields") or {}),
        tags=tuple(data.get("tags") or ()),
    )


@dataclass(frozen=True)
class TriggerEvent:
    event_id: str
    type: str
    tenant_id: str
    entity_type: str
    entity_id: uuid.UUID
    snapshot: EntitySnapshot | None = None
    changes: dict[str, Any] = field(default_factory=dict)
    previous_stage_id: str | None = None
    actor_user_id: str | None = None
    correlation_id: str | None = None
    workflow_depth: int = 0

    @classmethod
    def from_envelope(cls, envelope: dict[str, Any]) -> TriggerEvent | None:
        trigger_type = EVENT_TRIGGER_TYPES.get(str(envelope.get("event_type") or ""))
        tenant_id = str(envelope.get("tenant_id") or "").strip()
        if trigger_type is None or not tenant_id:
            return None

        payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
        entity_type = "contact" if trigger_type.startswith("contact") else "deal"
        entity_id = _optional_uuid(payload.get(f"{entity_type}_id"))
        if entity_id is None:
            return None

        meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
        try:
            workflow_depth = int(meta.get("workflow_depth", 0))
        except (TypeError, ValueError):
            workflow_depth = 0

        raw_snapshot = payload.get("snapshot")
        snapshot = (
            snapshot_from_payload(entity_type, entity_id, tenant_id, raw_snapshot)
            if isinstance(raw_snapshot, dict)
            else None
        )
        previous_stage = payload.get("previous_stage_id")
        return cls(
            event_id=str(envelope.get("event_id") or uuid.uuid4()),
            type=trigger_type,
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            snapshot=snapshot,
            changes=dict(payload.get("changes") or {}),
            previous_stage_id=str(previous_stage) if previous_stage else None,
            actor_user_id=str(envelope.get("actor_user_id") or "").strip() or None,
            correlation_id=str(envelope.get("correlation_id") or "").strip() or None,
            workflow_depth=workflow_depth,
        )


class TriggerMatcher:
    """Decides which automations an event starts.

    An automation matches when it is active, belongs to the event's tenant,
    listens for the event type, its trigger config accepts the event, and its
    automation-level conditions hold against the event snapshot.
    """

    def __init__(self, evaluator: ConditionEvaluator | None = None) -> None:
        self.evaluator = evaluator or condition_evaluator

    def match(self, event: TriggerEvent, automations: Iterable[AutomationDefinition]) -> list[AutomationDefinition]:
        return [automation for automation in automations if self.matches(event, automation)]

    def matches(self, event: TriggerEvent, automation: AutomationDefinition) -> bool:
        if not automation.is_active or automation.tenant_id != event.tenant_id:
            return False
        if automation.trigger.type != event.type:
            return False
        if not self.config_satisfied(automation.trigger.config, event):
            return False
        if not automation.conditions:
            return True
        if event.snapshot is None:
            return False
        return self.evaluator.evaluate(automation.conditions, event.snapshot)

    def config_satisfied(self, config: TriggerConfig, event: TriggerEvent) -> bool:
        if config.fields and event.type.endswith("_updated"):
            changed = {self._field_key(event.entity_type, name) for name in event.changes}
            wanted = {self._field_key(event.entity_type, name) for name in config.fields}
            if not changed & wanted:
                return False
        if event.type == "deal_stage_changed":
            if config.from_stage_id is not None and str(config.from_stage_id) != (event.previous_stage_id or ""):
                return False
            if config.to_stage_id is not None:
                current_stage = event.snapshot.values.get("stage_id") if event.snapshot is not None else None
                if str(config.to_stage_id) != str(current_stage or ""):
                    return False
        return True

    def _field_key(self, entity_type: str, name: str) -> str:
        custom_key = field_resolver.custom_field_key(name)
        if custom_key is not None:
            return f"custom_fields.{custom_key}"
        return field_resolver.column_name(entity_type, name) or name


trigger_matcher = TriggerMatcher()


class AutomationEventHandler:
    """Turns CRM domain events into enrollments and safety exits."""

    def __init__(
        self,
        cache: ActiveAutomationCache | None = None,
        matcher: TriggerMatcher | None = None,
    ) -> None:
        self.cache = cache or active_automation_cache
        self.matcher = matcher or trigger_matcher

    def handle_event(self, session: Session, envelope: dict[str, Any]) -> list[EnrollResult]:
        event_type = str(envelope.get("event_type") or "")
        if event_type in ENTITY_DELETED_EVENTS:
            self.handle_entity_deleted(session, envelope)
            return []

        event = TriggerEvent.from_envelope(envelope)
        if event is None:
            return []

        settings = get_settings()
        if event.workflow_depth >= settings.automation_max_depth:
            self._block_for_depth(event, settings.automation_max_depth)
            return []

        if event.snapshot is None:
            try:
                event = _with_snapshot(
                    event,
                    EntityStore(session).get_entity(event.entity_type, event.entity_id, tenant_id=event.tenant_id),
                )
            except EntityNotFoundError:
                return []

        candidates = self.cache.snapshot(session).for_tenant(event.tenant_id)
        matched = self.matcher.match(event, candidates)
        if not matched:
            return []

        store = EnrollmentStore(session)
        now = utcnow()
        results: list[EnrollResult] = []
        for definition in matched:
            result = store.enroll(
                definition,
                event.entity_type,
                event.entity_id,
                now=now,
                metadata={
                    "trigger": {"event_id": event.event_id, "type": event.type},
                    "workflow_depth": event.workflow_depth,
                    "correlation_id": event.correlation_id,
                },
            )
            log_extra = {
                "automation_id": str(definition.id),
                "tenant_id": event.tenant_id,
                "trigger_type": event.type,
                "event_id": event.event_id,
                "entity_type": event.entity_type,
                "entity_id": str(event.entity_id),
                "policy": definition.reenrollment_policy,
                "reason": result.reason,
            }
            if result.created:
                observe_enrollment_created(event.type)
                if result.enrollment is not None:
                    log_extra["enrollment_id"] = str(result.enrollment.id)
                logger.info("automation_enrolled", extra=log_extra)
            else:
                logger.info("automation_enrollment_skipped", extra=log_extra)
            results.append(result)
        return results

    def handle_entity_deleted(self, session: Session, envelope: dict[str, Any]) -> int:
        entity_type = ENTITY_DELETED_EVENTS.get(str(envelope.get("event_type") or ""))
        payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
        entity_id = _optional_uuid(payload.get(f"{entity_type}_id")) if entity_type else None
        if entity_type is None or entity_id is None:
            return 0

        store = EnrollmentStore(session)
        tenant_id = str(envelope.get("tenant_id") or "") or None
        enrollments = store.active_for_entity(entity_type, entity_id, tenant_id=tenant_id)
        if not enrollments:
            return 0

        automation_ids = {enrollment.automation_id for enrollment in enrollments}
        safety_exit = dict(
            session.execute(
                select(Automation.id, Automation.safety_exit_enabled).where(Automation.id.in_(automation_ids))
            ).all()
        )
        now = utcnow()
        exited = 0
        for enrollment in enrollments:
            if not safety_exit.get(enrollment.automation_id, True):
                continue
            if store.unenroll(enrollment, now=now, exit_reason="entity_deleted"):
                exited += 1
                logger.info(
                    "automation_enrollment_exited",
                    extra={
                        "automation_id": str(enrollment.automation_id),
                        "enrollment_id": str(enrollment.id),
                        "entity_type": entity_type,
                        "entity_id": str(entity_id),
                        "reason": "entity_deleted",
                    },
                )
        session.commit()
        return exited

    def _block_for_depth(self, event: TriggerEvent, max_depth: int) -> None:
        details = {
            "reason": "max_depth",
            "event_type": event.type,
            "event_id": event.event_id,
            "workflow_depth": event.workflow_depth,
            "max_depth": max_depth,
            "entity_type": event.entity_type,
            "entity_id": str(event.entity_id),
        }
        token = set_correlation_id(event.correlation_id)
        try:
            logger.warning("automation_guardrail_blocked", extra=details)
        finally:
            reset_correlation_id(token)
        observe_guardrail_block("max_depth")
        audit.record(
            actor_user_id=event.actor_user_id or "system",
            entity_type="automation.trigger",
            entity_id=event.event_id,
            action="automation.blocked",
            before=None,
            after=details,
            correlation_id=event.correlation_id,
            tenant_id=event.tenant_id,
        )


def _with_snapshot(event: TriggerEvent, snapshot: EntitySnapshot) -> TriggerEvent:
    return TriggerEvent(
        event_id=event.event_id,
        type=event.type,
        tenant_id=event.tenant_id,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        snapshot=snapshot,
        changes=event.changes,
        previous_stage_id=event.previous_stage_id,
        actor_user_id=event.actor_user_id,
        correlation_id=event.correlation_id,
        workflow_depth=event.workflow_depth,
    )


automation_event_handler = AutomationEventHandler()
