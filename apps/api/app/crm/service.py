from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app import audit, events
from app.crm.models import CRMPipelineStage, utcnow
from app.crm.repositories import (
    EntityConflictError,
    EntityNotFoundError,
    EntitySnapshot,
    EntityStore,
    EntityValidationError,
)
from app.crm.schemas import (
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    PipelineStageCreate,
    PipelineStageRead,
)


__all__ = ["ActorUser", "ContactService", "DealService", "StageService", "utcnow"]


@dataclass
class ActorUser:
    user_id: str
    tenant_id: str | None
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def require_tenant(actor_user: ActorUser) -> str:
    if not actor_user.tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tenant context required")
    return actor_user.tenant_id


def commit_and_publish(session: Session, store: EntityStore) -> None:
    session.commit()
    events.publish_all(store.drain_events())


class _EntityService:
    entity_type: str
    read_model: type[ContactRead] | type[DealRead]

    def get(self, session: Session, actor_user: ActorUser, entity_id: uuid.UUID) -> ContactRead | DealRead:
        tenant_id = require_tenant(actor_user)
        try:
            snapshot = EntityStore(session).get_entity(self.entity_type, entity_id, tenant_id=tenant_id)
        except EntityNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{self.entity_type} not found")
        return self._to_read(snapshot)

    def list_entities(self, session: Session, actor_user: ActorUser, *, limit: int) -> list[ContactRead | DealRead]:
        tenant_id = require_tenant(actor_user)
        snapshots = EntityStore(session).list_entities(self.entity_type, tenant_id, limit=limit)
        return [self._to_read(snapshot) for snapshot in snapshots]

    def _create(self, session: Session, actor_user: ActorUser, values: dict[str, Any]) -> ContactRead | DealRead:
        tenant_id = require_tenant(actor_user)
        store = EntityStore(session)
        try:
            snapshot = store.add_entity(self.entity_type, tenant_id, values, actor_user_id=actor_user.user_id)
        except EntityValidationError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

        read_model = self._to_read(snapshot)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"crm.{self.entity_type}",
            entity_id=str(snapshot.entity_id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            tenant_id=tenant_id,
        )
        commit_and_publish(session, store)
        return read_model

    def _update(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_id: uuid.UUID,
        patch: dict[str, Any],
        row_version: int,
    ) -> ContactRead | DealRead:
        tenant_id = require_tenant(actor_user)
        store = EntityStore(session)
        try:
            before = store.get_entity(self.entity_type, entity_id, tenant_id=tenant_id)
            updated = store.update_entity(
                self.entity_type,
                entity_id,
                patch,
                row_version,
                actor_user_id=actor_user.user_id,
                tenant_id=tenant_id,
            )
        except EntityNotFoundError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{self.entity_type} not found")
        except EntityConflictError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
        except EntityValidationError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

        read_model = self._to_read(updated)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"crm.{self.entity_type}",
            entity_id=str(entity_id),
            action="update",
            before=self._to_read(before).model_dump(mode="json"),
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            tenant_id=tenant_id,
        )
        commit_and_publish(session, store)
        return read_model

    def soft_delete(self, session: Session, actor_user: ActorUser, entity_id: uuid.UUID) -> None:
        tenant_id = require_tenant(actor_user)
        store = EntityStore(session)
        try:
            snapshot = store.soft_delete_entity(
                self.entity_type,
                entity_id,
                actor_user_id=actor_user.user_id,
                tenant_id=tenant_id,
            )
        except EntityNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{self.entity_type} not found")

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"crm.{self.entity_type}",
            entity_id=str(entity_id),
            action="soft_delete",
            before={"deleted_at": None},
            after={"deleted_at": snapshot.deleted_at.isoformat() if snapshot.deleted_at else None},
            correlation_id=actor_user.correlation_id,
            tenant_id=tenant_id,
        )
        commit_and_publish(session, store)

    def _to_read(self, snapshot: EntitySnapshot) -> ContactRead | DealRead:
        payload = dict(snapshot.values)
        payload["custom_fields"] = dict(snapshot.custom_fields)
        payload["row_version"] = snapshot.row_version
        if snapshot.entity_type == "contact":
            payload["tags"] = list(snapshot.tags)
        return self.read_model.model_validate(payload)


class ContactService(_EntityService):
    entity_type = "contact"
    read_model = ContactRead

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        values = dto.model_dump()
        values["first_name"] = dto.first_name.strip()
        values["last_name"] = dto.last_name.strip()
        if dto.email is not None:
            values["email"] = str(dto.email)
        return self._create(session, actor_user, values)

    def update_contact(
        self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID, dto: ContactUpdate
    ) -> ContactRead:
        patch = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        if patch.get("email") is not None:
            patch["email"] = str(patch["email"])
        return self._update(session, actor_user, contact_id, patch, dto.row_version)


class DealService(_EntityService):
    entity_type = "deal"
    read_model = DealRead

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        values = dto.model_dump()
        values["name"] = dto.name.strip()
        if dto.contact_id is not None:
            self._require_contact(session, actor_user, dto.contact_id)
        return self._create(session, actor_user, values)

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        patch = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        if patch.get("contact_id") is not None:
            self._require_contact(session, actor_user, patch["contact_id"])
        return self._update(session, actor_user, deal_id, patch, dto.row_version)

    def _require_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> None:
        try:
            EntityStore(session).get_entity("contact", contact_id, tenant_id=actor_user.tenant_id)
        except EntityNotFoundError:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="contact not found for deal")


class StageService:
    entity_type = "crm.pipeline_stage"

    def create_stage(self, session: Session, actor_user: ActorUser, dto: PipelineStageCreate) -> PipelineStageRead:
        tenant_id = require_tenant(actor_user)
        stage = CRMPipelineStage(
            tenant_id=tenant_id,
            name=dto.name.strip(),
            position=dto.position,
            stage_type=dto.stage_type,
        )
        session.add(stage)
        session.flush()
        read_model = PipelineStageRead.model_validate(stage)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            tenant_id=tenant_id,
        )
        session.commit()
        return read_model

    def list_stages(self, session: Session, actor_user: ActorUser) -> list[PipelineStageRead]:
        tenant_id = require_tenant(actor_user)
        stages = session.scalars(
            select(CRMPipelineStage)
            .where(and_(CRMPipelineStage.tenant_id == tenant_id))
            .order_by(CRMPipelineStage.position.asc(), CRMPipelineStage.created_at.asc())
        ).all()
        return [PipelineStageRead.model_validate(stage) for stage in stages]
