from __future__ import annotations

from typing import Any

from app.automation.errors import ActionExecutionError
from app.automation.fields import FieldResolver, coerce_custom_value, coerce_for_column, field_resolver
from app.automation.schemas import (
    ACTION_ENTITY_TYPES,
    AddContactTagAction,
    MoveDealToStageAction,
    RemoveContactTagAction,
    UpdateContactFieldAction,
    UpdateCustomFieldAction,
    UpdateDealFieldAction,
)
from app.crm.repositories import (
    WRITABLE_FIELDS,
    EntitySnapshot,
    EntityStore,
    EntityStoreError,
    serialize_value,
)
from app.metrics import observe_action


AnyAction = (
    UpdateContactFieldAction
    | UpdateDealFieldAction
    | AddContactTagAction
    | RemoveContactTagAction
    | MoveDealToStageAction
    | UpdateCustomFieldAction
)


class ActionExecutor:
    """Applies one action to one entity through the entity store.

    Writes happen inside the caller's transaction and use the snapshot's
    ``row_version``, so a concurrent edit surfaces as a failed action instead
    of a lost update.
    """

    def __init__(self, resolver: FieldResolver | None = None) -> None:
        self.resolver = resolver or field_resolver

    def apply(
        self,
        store: EntityStore,
        action: AnyAction,
        entity: EntitySnapshot,
        *,
        actor_user_id: str,
    ) -> EntitySnapshot:
        try:
            patch = self.build_patch(store, action, entity)
            if not patch:
                observe_action(action.type, "noop")
                return entity
            updated = store.update_entity(
                entity.entity_type,
                entity.entity_id,
                patch,
                entity.row_version,
                actor_user_id=actor_user_id,
                tenant_id=entity.tenant_id,
            )
        except ActionExecutionError:
            observe_action(action.type, "failed")
            raise
        except (EntityStoreError, ValueError) as exc:
            observe_action(action.type, "failed")
            raise ActionExecutionError(action.type, str(exc)) from exc

        observe_action(action.type, "success")
        return updated

    def plan(self, store: EntityStore, action: AnyAction, entity: EntitySnapshot) -> dict[str, Any]:
        """Describe what ``apply`` would change without writing anything."""
        planned: dict[str, Any] = {"type": action.type, "action": action.model_dump(mode="json")}
        try:
            patch = self.build_patch(store, action, entity)
        except (ActionExecutionError, EntityStoreError, ValueError) as exc:
            planned["status"] = "would_fail"
            planned["error"] = str(exc)
            return planned

        changes: dict[str, Any] = {}
        for field_name, value in patch.items():
            if field_name == "custom_fields":
                for key, item in value.items():
                    changes[f"custom_fields.{key}"] = {
                        "before": serialize_value(entity.custom_fields.get(key)),
                        "after": serialize_value(item),
                    }
                continue
            before = list(entity.tags) if field_name == "tags" else entity.values.get(field_name)
            changes[field_name] = {"before": serialize_value(before), "after": serialize_value(value)}
        planned["status"] = "would_apply" if patch else "noop"
        planned["changes"] = changes
        return planned

    def build_patch(self, store: EntityStore, action: AnyAction, entity: EntitySnapshot) -> dict[str, Any]:
        expected_type = ACTION_ENTITY_TYPES[action.type]
        if expected_type is not None and expected_type != entity.entity_type:
            raise ActionExecutionError(action.type, f"cannot be applied to a {entity.entity_type}")
        if entity.is_deleted:
            raise ActionExecutionError(action.type, f"{entity.entity_type} {entity.entity_id} is deleted")

        if isinstance(action, (UpdateContactFieldAction, UpdateDealFieldAction)):
            return self._field_patch(action, entity)
        if isinstance(action, AddContactTagAction):
            tag = action.tag.strip()
            if tag in entity.tags:
                return {}
            return {"tags": [*entity.tags, tag]}
        if isinstance(action, RemoveContactTagAction):
            tag = action.tag.strip()
            if tag not in entity.tags:
                return {}
            return {"tags": [item for item in entity.tags if item != tag]}
        if isinstance(action, MoveDealToStageAction):
            stage = store.get_stage(action.stage_id, tenant_id=entity.tenant_id)
            if stage is None:
                raise ActionExecutionError(action.type, f"pipeline stage {action.stage_id} not found")
            if entity.values.get("stage_id") == stage.id:
                return {}
            return {"stage_id": stage.id}
        if isinstance(action, UpdateCustomFieldAction):
            value = coerce_custom_value(action.value)
            if entity.custom_fields.get(action.field_key) == value and action.field_key in entity.custom_fields:
                return {}
            return {"custom_fields": {action.field_key: value}}
        raise ActionExecutionError(getattr(action, "type", "unknown"), "unsupported action")

    def _field_patch(
        self, action: UpdateContactFieldAction | UpdateDealFieldAction, entity: EntitySnapshot
    ) -> dict[str, Any]:
        custom_key = self.resolver.custom_field_key(action.field.strip())
        if custom_key is not None:
            return {"custom_fields": {custom_key: coerce_custom_value(action.value)}}

        column = self.resolver.column_name(entity.entity_type, action.field)
        if column is None or column not in WRITABLE_FIELDS[entity.entity_type]:
            raise ActionExecutionError(action.type, f"field '{action.field}' is not writable on {entity.entity_type}")
        if column == "tags":
            return {"tags": _coerce_tags(action.value)}
        return {column: coerce_for_column(entity.entity_type, column, action.value)}


def _coerce_tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        raise ValueError(f"invalid tags value: {value!r}")
    tags: list[str] = []
    for item in items:
        cleaned = item.strip()
        if cleaned and cleaned not in tags:
            tags.append(cleaned)
    return tags


action_executor = ActionExecutor()
