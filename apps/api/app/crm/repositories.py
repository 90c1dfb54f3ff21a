from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, inspect, select, update
from sqlalchemy.orm import Session

from app.crm.models import CRMContact, CRMDeal, CRMPipelineStage, utcnow


ENTITY_MODELS: dict[str, type[CRMContact] | type[CRMDeal]] = {
    "contact": CRMContact,
    "deal": CRMDeal,
}

WRITABLE_FIELDS: dict[str, set[str]] = {
    "contact": {
        "first_name",
        "last_name",
        "email",
        "phone",
        "company",
        "city",
        "state",
        "lead_status",
        "lead_score",
        "owner_user_id",
        "tags",
        "custom_fields",
    },
    "deal": {
        "name",
        "value",
        "stage_id",
        "status",
        "probability",
        "expected_close_date",
        "owner_user_id",
        "contact_id",
        "custom_fields",
    },
}

_SNAPSHOT_EXCLUDED = {"tags", "custom_fields", "deleted_at", "row_version"}


class EntityStoreError(Exception):
    pass


class EntityNotFoundError(EntityStoreError):
    def __init__(self, entity_type: str, entity_id: uuid.UUID) -> None:
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class EntityConflictError(EntityStoreError):
    def __init__(self, entity_type: str, entity_id: uuid.UUID, expected_row_version: int) -> None:
        super().__init__(f"{entity_type} {entity_id} was modified concurrently (expected row_version {expected_row_version})")
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_row_version = expected_row_version


class EntityValidationError(EntityStoreError):
    pass


def serialize_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


@dataclass(frozen=True)
class EntitySnapshot:
    """Point-in-time copy of a contact or deal.

    Snapshots are detached from the session, so a later write to the row never
    changes a snapshot that is already in hand.
    """

    entity_type: str
    entity_id: uuid.UUID
    tenant_id: str
    row_version: int
    values: dict[str, Any]
    custom_fields: dict[str, Any] = field(default_factory=dict)
    tags: tuple[str, ...] = ()
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def as_dict(self) -> dict[str, Any]:
        payload = {key: serialize_value(value) for key, value in self.values.items()}
        payload["custom_fields"] = serialize_value(self.custom_fields)
        if self.entity_type == "contact":
            payload["tags"] = list(self.tags)
        payload["row_version"] = self.row_version
        return payload


def model_for(entity_type: str) -> type[CRMContact] | type[CRMDeal]:
    model = ENTITY_MODELS.get(entity_type)
    if model is None:
        raise EntityValidationError(f"unsupported entity type: {entity_type}")
    return model


def column_python_type(entity_type: str, field_name: str) -> type | None:
    columns = inspect(model_for(entity_type)).columns
    if field_name not in columns:
        return None
    try:
        return columns[field_name].type.python_type
    except NotImplementedError:
        return None


def build_event_envelope(
    event_type: str,
    snapshot: EntitySnapshot,
    *,
    actor_user_id: str,
    changes: dict[str, Any] | None = None,
    previous_stage_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        f"{snapshot.entity_type}_id": str(snapshot.entity_id),
        "entity_type": snapshot.entity_type,
        "snapshot": snapshot.as_dict(),
        "changes": changes or {},
    }
    if previous_stage_id is not None:
        payload["previous_stage_id"] = str(previous_stage_id)
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": utcnow().isoformat(),
        "actor_user_id": actor_user_id,
        "tenant_id": snapshot.tenant_id,
        "version": 1,
        "payload": payload,
    }


class EntityStore:
    """Single write path for contacts and deals.

    Domain events are queued while the unit of work is open and handed out by
    ``drain_events`` so the caller can publish them once the transaction has
    committed.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self._pending_events: list[dict[str, Any]] = []

    def get_entity(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        tenant_id: str | None = None,
        include_deleted: bool = False,
    ) -> EntitySnapshot:
        row = self._load_row(entity_type, entity_id, tenant_id=tenant_id, include_deleted=include_deleted)
        return self._snapshot(entity_type, row)

    def list_entities(self, entity_type: str, tenant_id: str, *, limit: int) -> list[EntitySnapshot]:
        model = model_for(entity_type)
        rows = self.session.scalars(
            select(model)
            .where(and_(model.tenant_id == tenant_id, model.deleted_at.is_(None)))
            .order_by(model.created_at.desc())
            .limit(limit)
        ).all()
        return [self._snapshot(entity_type, row) for row in rows]

    def get_stage(self, stage_id: uuid.UUID, *, tenant_id: str | None = None) -> CRMPipelineStage | None:
        stage = self.session.get(CRMPipelineStage, stage_id)
        if stage is None or (tenant_id is not None and stage.tenant_id != tenant_id):
            return None
        return stage

    def add_entity(
        self,
        entity_type: str,
        tenant_id: str,
        values: dict[str, Any],
        *,
        actor_user_id: str,
    ) -> EntitySnapshot:
        model = model_for(entity_type)
        unknown = set(values) - WRITABLE_FIELDS[entity_type]
        if unknown:
            raise EntityValidationError(f"fields not writable: {', '.join(sorted(unknown))}")
        if entity_type == "deal" and values.get("stage_id") is not None:
            self._require_stage(values["stage_id"], tenant_id)
        row = model(tenant_id=tenant_id, **values)
        self.session.add(row)
        self.session.flush()
        self.session.refresh(row)
        snapshot = self._snapshot(entity_type, row)
        self._queue(build_event_envelope(f"crm.{entity_type}.created", snapshot, actor_user_id=actor_user_id))
        return snapshot

    def update_entity(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        patch: dict[str, Any],
        expected_row_version: int,
        *,
        actor_user_id: str,
        tenant_id: str | None = None,
    ) -> EntitySnapshot:
        model = model_for(entity_type)
        row = self._load_row(entity_type, entity_id, tenant_id=tenant_id)
        if row.row_version != expected_row_version:
            raise EntityConflictError(entity_type, entity_id, expected_row_version)

        before = self._snapshot(entity_type, row)
        allowed = WRITABLE_FIELDS[entity_type]
        values: dict[str, Any] = {}
        changes: dict[str, Any] = {}
        for field_name, value in patch.items():
            if field_name not in allowed:
                raise EntityValidationError(f"field not writable: {entity_type}.{field_name}")
            if field_name == "custom_fields":
                if not isinstance(value, dict):
                    raise EntityValidationError("custom_fields patch must be an object")
                merged = dict(before.custom_fields)
                merged.update(value)
                for key, item in value.items():
                    if before.custom_fields.get(key) != item:
                        changes[f"custom_fields.{key}"] = {
                            "from": serialize_value(before.custom_fields.get(key)),
                            "to": serialize_value(item),
                        }
                values[field_name] = merged
                continue
            if field_name == "stage_id" and value is not None:
                self._require_stage(value, row.tenant_id)
            current = list(before.tags) if field_name == "tags" else before.values.get(field_name)
            if current != value:
                changes[field_name] = {"from": serialize_value(current), "to": serialize_value(value)}
            values[field_name] = value

        if not changes:
            return before

        result = self.session.execute(
            update(model)
            .where(
                and_(
                    model.id == entity_id,
                    model.row_version == expected_row_version,
                    model.deleted_at.is_(None),
                )
            )
            .values(**values, updated_at=utcnow(), row_version=model.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise EntityConflictError(entity_type, entity_id, expected_row_version)

        self.session.refresh(row)
        after = self._snapshot(entity_type, row)
        self._queue(
            build_event_envelope(f"crm.{entity_type}.updated", after, actor_user_id=actor_user_id, changes=changes)
        )
        if entity_type == "deal" and "stage_id" in changes:
            self._queue(
                build_event_envelope(
                    "crm.deal.stage_changed",
                    after,
                    actor_user_id=actor_user_id,
                    changes={"stage_id": changes["stage_id"]},
                    previous_stage_id=before.values.get("stage_id"),
                )
            )
        return after

    def soft_delete_entity(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        actor_user_id: str,
        tenant_id: str | None = None,
    ) -> EntitySnapshot:
        row = self._load_row(entity_type, entity_id, tenant_id=tenant_id)
        row.deleted_at = utcnow()
        row.updated_at = utcnow()
        row.row_version = row.row_version + 1
        self.session.add(row)
        self.session.flush()
        snapshot = self._snapshot(entity_type, row)
        self._queue(build_event_envelope(f"crm.{entity_type}.deleted", snapshot, actor_user_id=actor_user_id))
        return snapshot

    def drain_events(self) -> list[dict[str, Any]]:
        drained = self._pending_events
        self._pending_events = []
        return drained

    def discard_events(self) -> None:
        self._pending_events = []

    def _queue(self, envelope: dict[str, Any]) -> None:
        self._pending_events.append(envelope)

    def _require_stage(self, stage_id: Any, tenant_id: str) -> CRMPipelineStage:
        try:
            resolved = stage_id if isinstance(stage_id, uuid.UUID) else uuid.UUID(str(stage_id))
        except ValueError as exc:
            raise EntityValidationError(f"invalid stage id: {stage_id}") from exc
        stage = self.get_stage(resolved, tenant_id=tenant_id)
        if stage is None:
            raise EntityValidationError(f"pipeline stage {resolved} not found")
        return stage

    def _load_row(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        tenant_id: str | None = None,
        include_deleted: bool = False,
    ) -> CRMContact | CRMDeal:
        model = model_for(entity_type)
        stmt = select(model).where(model.id == entity_id)
        if not include_deleted:
            stmt = stmt.where(model.deleted_at.is_(None))
        if tenant_id is not None:
            stmt = stmt.where(model.tenant_id == tenant_id)
        row = self.session.scalar(stmt.execution_options(populate_existing=True))
        if row is None:
            raise EntityNotFoundError(entity_type, entity_id)
        return row

    def _snapshot(self, entity_type: str, row: CRMContact | CRMDeal) -> EntitySnapshot:
        columns = inspect(row.__class__).columns
        values = {
            column.key: getattr(row, column.key)
            for column in columns
            if column.key not in _SNAPSHOT_EXCLUDED
        }
        tags = tuple(row.tags or ()) if isinstance(row, CRMContact) else ()
        return EntitySnapshot(
            entity_type=entity_type,
            entity_id=row.id,
            tenant_id=row.tenant_id,
            row_version=row.row_version,
            values=values,
            custom_fields=dict(row.custom_fields or {}),
            tags=tags,
            deleted_at=row.deleted_at,
        )
