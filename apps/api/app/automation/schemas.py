from __future__ import annotations

from datetime import datetime, timedelta
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


EntityType = Literal["contact", "deal"]
TriggerType = Literal["contact_created", "contact_updated", "deal_created", "deal_updated", "deal_stage_changed"]
ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "is_empty",
    "is_not_empty",
    "greater_than",
    "less_than",
    "has_tag",
    "not_has_tag",
]
EnrollmentStatus = Literal["active", "completed", "failed", "unenrolled"]
ReenrollmentPolicy = Literal["never", "after_exit", "restart"]

TRIGGER_ENTITY_TYPES: dict[str, str] = {
    "contact_created": "contact",
    "contact_updated": "contact",
    "deal_created": "deal",
    "deal_updated": "deal",
    "deal_stage_changed": "deal",
}


class AutomationCondition(BaseModel):
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None
    logic: Literal["AND", "OR"] = "AND"

    @field_validator("logic", mode="before")
    @classmethod
    def upper_logic(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class UpdateContactFieldAction(BaseModel):
    type: Literal["update_contact_field"]
    field: str = Field(min_length=1)
    value: Any = None


class UpdateDealFieldAction(BaseModel):
    type: Literal["update_deal_field"]
    field: str = Field(min_length=1)
    value: Any = None


class AddContactTagAction(BaseModel):
    type: Literal["add_contact_tag"]
    tag: str = Field(min_length=1)


class RemoveContactTagAction(BaseModel):
    type: Literal["remove_contact_tag"]
    tag: str = Field(min_length=1)


class MoveDealToStageAction(BaseModel):
    type: Literal["move_deal_to_stage"]
    stage_id: UUID


class UpdateCustomFieldAction(BaseModel):
    type: Literal["update_custom_field"]
    field_key: str = Field(min_length=1)
    value: Any = None


AutomationAction = Annotated[
    UpdateContactFieldAction
    | UpdateDealFieldAction
    | AddContactTagAction
    | RemoveContactTagAction
    | MoveDealToStageAction
    | UpdateCustomFieldAction,
    Field(discriminator="type"),
]

ACTION_ENTITY_TYPES: dict[str, str | None] = {
    "update_contact_field": "contact",
    "add_contact_tag": "contact",
    "remove_contact_tag": "contact",
    "update_deal_field": "deal",
    "move_deal_to_stage": "deal",
    "update_custom_field": None,
}


class DelayConfig(BaseModel):
    value: int = Field(ge=0)
    unit: Literal["minutes", "hours", "days"]

    def to_timedelta(self) -> timedelta:
        return timedelta(**{self.unit: self.value})


class ConditionStepConfig(BaseModel):
    on_false: Literal["unenroll", "fail", "complete", "wait"] = "unenroll"
    recheck_after: DelayConfig | None = None
    max_rechecks: int = Field(default=24, ge=1)
    on_timeout: Literal["unenroll", "fail"] = "unenroll"


class BranchDefinition(BaseModel):
    name: str = Field(min_length=1)
    conditions: list[AutomationCondition] = Field(default_factory=list)


class BranchConfig(BaseModel):
    branches: list[BranchDefinition] = Field(min_length=1)
    default_branch: str | None = None


class _StepBase(BaseModel):
    step_index: int | None = Field(default=None, ge=0)
    name: str | None = None
    next_step_index: int | None = None
    branch_step_indices: dict[str, int | None] = Field(default_factory=dict)


class ActionStep(_StepBase):
    type: Literal["action"]
    actions: list[AutomationAction] = Field(min_length=1)


class DelayStep(_StepBase):
    type: Literal["delay"]
    delay_config: DelayConfig


class ConditionStep(_StepBase):
    type: Literal["condition"]
    conditions: list[AutomationCondition] = Field(default_factory=list)
    config: ConditionStepConfig = Field(default_factory=ConditionStepConfig)


class BranchStep(_StepBase):
    type: Literal["branch"]
    branch_config: BranchConfig


AutomationStepDefinition = Annotated[
    ActionStep | DelayStep | ConditionStep | BranchStep,
    Field(discriminator="type"),
]

step_adapter: TypeAdapter[ActionStep | DelayStep | ConditionStep | BranchStep] = TypeAdapter(AutomationStepDefinition)
action_list_adapter = TypeAdapter(list[AutomationAction])
condition_list_adapter = TypeAdapter(list[AutomationCondition])


class TriggerConfig(BaseModel):
    fields: list[str] | None = None
    from_stage_id: UUID | None = None
    to_stage_id: UUID | None = None


class AutomationTrigger(BaseModel):
    type: TriggerType
    config: TriggerConfig = Field(default_factory=TriggerConfig)

    @property
    def entity_type(self) -> str:
        return TRIGGER_ENTITY_TYPES[self.type]


def _index_steps(steps: list[Any]) -> list[Any]:
    seen: set[int] = set()
    for position, step in enumerate(steps):
        if step.step_index is None:
            step.step_index = position
        if step.step_index in seen:
            raise ValueError(f"duplicate step_index {step.step_index}")
        seen.add(step.step_index)
    return steps


class AutomationCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    trigger: AutomationTrigger
    conditions: list[AutomationCondition] = Field(default_factory=list)
    actions: list[AutomationAction] = Field(default_factory=list)
    steps: list[AutomationStepDefinition] = Field(default_factory=list)
    is_active: bool = False
    is_multi_step: bool | None = None
    reenrollment_policy: ReenrollmentPolicy = "never"
    max_duration_days: int | None = Field(default=None, ge=1)
    exit_conditions: list[AutomationCondition] = Field(default_factory=list)
    safety_exit_enabled: bool = True

    @model_validator(mode="after")
    def validate_shape(self) -> "AutomationCreate":
        if self.is_multi_step is None:
            self.is_multi_step = bool(self.steps)
        if self.is_multi_step and self.actions:
            raise ValueError("multi-step automations define actions inside steps")
        if not self.is_multi_step and self.steps:
            raise ValueError("steps require is_multi_step")
        _index_steps(self.steps)
        return self


class AutomationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger: AutomationTrigger | None = None
    conditions: list[AutomationCondition] | None = None
    actions: list[AutomationAction] | None = None
    steps: list[AutomationStepDefinition] | None = None
    is_active: bool | None = None
    is_multi_step: bool | None = None
    reenrollment_policy: ReenrollmentPolicy | None = None
    max_duration_days: int | None = Field(default=None, ge=1)
    exit_conditions: list[AutomationCondition] | None = None
    safety_exit_enabled: bool | None = None

    @model_validator(mode="after")
    def validate_steps(self) -> "AutomationUpdate":
        if self.steps is not None:
            _index_steps(self.steps)
        return self


class AutomationToggleRequest(BaseModel):
    is_active: bool | None = None


class AutomationDefinition(BaseModel):
    """Validated, read-only view of an automation used by the engine."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    tenant_id: str
    name: str
    trigger: AutomationTrigger
    conditions: tuple[AutomationCondition, ...] = ()
    actions: tuple[AutomationAction, ...] = ()
    steps: dict[int, AutomationStepDefinition] = Field(default_factory=dict)
    is_active: bool
    is_multi_step: bool
    reenrollment_policy: ReenrollmentPolicy = "never"
    max_duration_days: int | None = None
    exit_conditions: tuple[AutomationCondition, ...] = ()
    safety_exit_enabled: bool = True
    updated_at: datetime | None = None

    def step_at(self, step_index: int) -> ActionStep | DelayStep | ConditionStep | BranchStep | None:
        return self.steps.get(step_index)


class AutomationRead(BaseModel):
    id: UUID
    tenant_id: str
    created_by_user_id: str
    name: str
    description: str | None
    trigger: dict[str, Any]
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    steps: list[dict[str, Any]]
    is_active: bool
    is_multi_step: bool
    reenrollment_policy: str
    max_duration_days: int | None
    exit_conditions: list[dict[str, Any]]
    safety_exit_enabled: bool
    created_at: datetime
    updated_at: datetime


class EntityRef(BaseModel):
    entity_type: EntityType
    entity_id: UUID


class UnenrollRequest(EntityRef):
    reason: str = Field(default="manual", min_length=1, max_length=32)


class EnrollmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    tenant_id: str
    entity_type: str
    entity_id: UUID
    current_step_index: int
    status: str
    enrolled_at: datetime
    completed_at: datetime | None
    next_step_at: datetime | None
    metadata: dict[str, Any] = Field(validation_alias="metadata_json")
    error: str | None
    exit_reason: str | None
    exited_at: datetime | None


class EnrollmentSummary(BaseModel):
    automation_id: UUID
    counts: dict[str, int]
    recent: list[EnrollmentRead]


class EnrollResponse(BaseModel):
    created: bool
    reason: str | None = None
    enrollment: EnrollmentRead | None = None


class AutomationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    enrollment_id: UUID | None
    entity_type: str | None
    entity_id: UUID | None
    step_index: int | None
    trigger_type: str
    trigger_data: dict[str, Any]
    conditions_met: bool
    conditions_evaluated: list[dict[str, Any]]
    actions_executed: list[dict[str, Any]]
    status: str
    error: str | None
    executed_at: datetime


class WorkflowValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class PreviewEnrollmentResponse(BaseModel):
    potential_count: int
    scanned: int
    entities: list[dict[str, Any]] = Field(default_factory=list)


class DryRunResponse(BaseModel):
    conditions_met: bool
    conditions_evaluated: list[dict[str, Any]] = Field(default_factory=list)
    planned_actions: list[dict[str, Any]] = Field(default_factory=list)
    first_step: dict[str, Any] | None = None


class ProcessEnrollmentResponse(BaseModel):
    outcome: str
    enrollment: EnrollmentRead | None = None


class SweepResponse(BaseModel):
    due: int
    processed: int
    outcomes: dict[str, int] = Field(default_factory=dict)
