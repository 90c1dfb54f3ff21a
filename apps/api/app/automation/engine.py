from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import events
from app.automation.actions import ActionExecutor, action_executor
from app.automation.conditions import ConditionEvaluator, condition_evaluator
from app.automation.errors import (
    ActionExecutionError,
    AutomationError,
    StepConfigurationError,
    TickTimeoutError,
)
from app.automation.models import AutomationEnrollment
from app.automation.repository import EnrollmentStore
from app.automation.schemas import (
    ActionStep,
    AutomationDefinition,
    BranchStep,
    ConditionStep,
    DelayStep,
)
from app.context import (
    reset_correlation_id,
    reset_enrollment_id,
    reset_workflow_depth,
    set_correlation_id,
    set_enrollment_id,
    set_workflow_depth,
)
from app.core.config import get_settings
from app.crm.models import as_utc
from app.crm.repositories import EntityNotFoundError, EntitySnapshot, EntityStore
from app.metrics import observe_tick


logger = logging.getLogger("app.automation.engine")
tracer = trace.get_tracer("app.automation.engine")

SYSTEM_ACTOR = "system:automation"


class TickDeadline:
    """Cooperative time budget for one tick, checked between steps and actions."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.budget_seconds = budget_seconds
        self._clock = clock
        self._started = clock()

    def remaining(self) -> float:
        return self.budget_seconds - (self._clock() - self._started)

    def check(self) -> None:
        if self.remaining() <= 0:
            raise TickTimeoutError(self.budget_seconds)


@dataclass
class TickResult:
    enrollment_id: uuid.UUID
    outcome: str
    steps_run: int = 0
    error: str | None = None


@dataclass
class StepOutcome:
    """What one step decided, plus the audit trail for its log row."""

    transition: str
    next_index: int | None = None
    resume_at: datetime | None = None
    exit_reason: str | None = None
    error: str | None = None
    log_status: str = "success"
    conditions_met: bool = True
    conditions_evaluated: list[dict[str, Any]] = field(default_factory=list)
    actions_executed: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class _Tick:
    session: Session
    enrollment: AutomationEnrollment
    definition: AutomationDefinition
    entities: EntityStore
    enrollments: EnrollmentStore
    entity: EntitySnapshot
    now: datetime
    deadline: TickDeadline
    revision: int
    step_index: int
    metadata: dict[str, Any]


class StepEngine:
    """Advances one enrollment through its automation.

    A tick runs inside a single transaction: every entity write, the
    enrollment's new position and the step logs commit together, and the
    domain events raised by actions are published only after that commit.
    Action, configuration and timeout failures roll the tick back and leave
    the enrollment ``failed``; database errors roll back and leave it due for
    the next sweep.

    The enrollment row itself is only written through a conditional update
    on its ``revision``. If another writer unenrolled or re-armed it while the
    tick ran, the tick's side effects still commit but its outcome is
    ``cancelled`` and the row keeps the other writer's state.
    """

    def __init__(
        self,
        evaluator: ConditionEvaluator | None = None,
        executor: ActionExecutor | None = None,
    ) -> None:
        self.evaluator = evaluator or condition_evaluator
        self.executor = executor or action_executor

    def run_tick(
        self,
        session: Session,
        enrollment: AutomationEnrollment,
        definition: AutomationDefinition,
        *,
        now: datetime,
        deadline: TickDeadline | None = None,
    ) -> TickResult:
        settings = get_settings()
        deadline = deadline or TickDeadline(settings.automation_tick_timeout_seconds)
        enrollment_id = enrollment.id
        revision = enrollment.revision
        metadata = dict(enrollment.metadata_json or {})
        correlation_id = str(metadata.get("correlation_id") or "").strip() or None

        correlation_token = set_correlation_id(correlation_id)
        enrollment_token = set_enrollment_id(str(enrollment_id))
        started = time.perf_counter()
        result = TickResult(enrollment_id=enrollment_id, outcome="retry")
        try:
            with tracer.start_as_current_span("automation.tick") as span:
                span.set_attribute("automation_id", str(definition.id))
                span.set_attribute("enrollment_id", str(enrollment_id))
                span.set_attribute("tenant_id", definition.tenant_id)
                if correlation_id:
                    span.set_attribute("correlation_id", correlation_id)
                try:
                    result = self._run(session, enrollment, definition, now=now, deadline=deadline, revision=revision)
                except (ActionExecutionError, StepConfigurationError, TickTimeoutError) as exc:
                    result = self._fail_after_rollback(
                        session, enrollment_id, definition, exc, now=now, revision=revision
                    )
                except SQLAlchemyError as exc:
                    session.rollback()
                    logger.warning(
                        "automation_tick_retry",
                        extra={"automation_id": str(definition.id), "error": str(exc)[:500]},
                    )
                    result = TickResult(enrollment_id=enrollment_id, outcome="retry", error=str(exc)[:2000])
                span.set_attribute("outcome", result.outcome)
                span.set_attribute("steps_run", result.steps_run)

            logger.info(
                "automation_tick_finished",
                extra={
                    "automation_id": str(definition.id),
                    "tenant_id": definition.tenant_id,
                    "outcome": result.outcome,
                    "steps_run": result.steps_run,
                    "error": result.error,
                },
            )
            return result
        finally:
            observe_tick(result.outcome, time.perf_counter() - started)
            reset_enrollment_id(enrollment_token)
            reset_correlation_id(correlation_token)

    def _run(
        self,
        session: Session,
        enrollment: AutomationEnrollment,
        definition: AutomationDefinition,
        *,
        now: datetime,
        deadline: TickDeadline,
        revision: int,
    ) -> TickResult:
        if enrollment.status != "active":
            return TickResult(enrollment_id=enrollment.id, outcome="not_active")

        entities = EntityStore(session)
        enrollments = EnrollmentStore(session)
        try:
            entity = entities.get_entity(enrollment.entity_type, enrollment.entity_id, tenant_id=enrollment.tenant_id)
        except EntityNotFoundError as exc:
            if definition.safety_exit_enabled:
                return self._exit_at_start(session, enrollments, enrollment, definition, now, "entity_deleted", revision)
            raise StepConfigurationError(str(exc)) from exc

        tick = _Tick(
            session=session,
            enrollment=enrollment,
            definition=definition,
            entities=entities,
            enrollments=enrollments,
            entity=entity,
            now=now,
            deadline=deadline,
            revision=revision,
            step_index=enrollment.current_step_index,
            metadata=dict(enrollment.metadata_json or {}),
        )

        exit_reason = self._exit_reason(tick)
        if exit_reason is not None:
            return self._exit_at_start(session, enrollments, enrollment, definition, now, exit_reason, revision)

        if definition.is_multi_step:
            result = self._run_steps(tick)
        else:
            result = self._run_legacy(tick)

        pending = entities.drain_events()
        session.commit()
        self._publish(tick.metadata, pending)
        return result

    def _exit_reason(self, tick: _Tick) -> str | None:
        definition = tick.definition
        if definition.max_duration_days is not None:
            enrolled_at = as_utc(tick.enrollment.enrolled_at)
            if enrolled_at is not None and enrolled_at + timedelta(days=definition.max_duration_days) <= tick.now:
                return "max_duration"
        if definition.exit_conditions and self.evaluator.evaluate(definition.exit_conditions, tick.entity):
            return "goal_met"
        return None

    def _exit_at_start(
        self,
        session: Session,
        enrollments: EnrollmentStore,
        enrollment: AutomationEnrollment,
        definition: AutomationDefinition,
        now: datetime,
        exit_reason: str,
        revision: int,
    ) -> TickResult:
        enrollment_id = enrollment.id
        step_index = enrollment.current_step_index
        exited = enrollments.write_state(
            enrollment,
            expected_revision=revision,
            status="unenrolled",
            exit_reason=exit_reason,
            exited_at=now,
            next_step_at=None,
        )
        if not exited:
            session.rollback()
            return self._cancelled(enrollment_id, definition, 0)
        self._write_log(
            enrollments,
            enrollment,
            definition,
            step_index,
            StepOutcome(transition="unenroll", exit_reason=exit_reason, log_status="unenrolled", conditions_met=False),
            now=now,
        )
        session.commit()
        logger.info(
            "automation_enrollment_exited",
            extra={"automation_id": str(definition.id), "reason": exit_reason, "step_index": step_index},
        )
        return TickResult(enrollment_id=enrollment_id, outcome="unenrolled")

    def _run_legacy(self, tick: _Tick) -> TickResult:
        met, evaluated = self.evaluator.trace(tick.definition.conditions, tick.entity)
        if not met:
            outcome = StepOutcome(
                transition="complete",
                log_status="skipped",
                conditions_met=False,
                conditions_evaluated=evaluated,
            )
        else:
            outcome = StepOutcome(transition="complete", conditions_evaluated=evaluated)
            outcome.actions_executed = self._apply_actions(tick, tick.definition.actions)
        self._write_log(tick.enrollments, tick.enrollment, tick.definition, None, outcome, now=tick.now)
        return self._finish(tick, "completed", steps_run=1)

    def _run_steps(self, tick: _Tick) -> TickResult:
        max_steps = get_settings().automation_max_steps_per_tick
        steps_run = 0
        while steps_run < max_steps:
            step_index = tick.step_index
            try:
                tick.deadline.check()
                step = tick.definition.step_at(step_index)
                if step is None:
                    raise StepConfigurationError(f"step {step_index} does not exist")
                outcome = self._run_step(tick, step)
            except AutomationError as exc:
                exc.step_index = step_index
                raise
            steps_run += 1
            self._write_log(tick.enrollments, tick.enrollment, tick.definition, step_index, outcome, now=tick.now)
            logger.info(
                "automation_step_executed",
                extra={
                    "automation_id": str(tick.definition.id),
                    "step_index": step_index,
                    "step_type": step.type,
                    "outcome": outcome.transition,
                    "reason": outcome.exit_reason,
                },
            )

            if outcome.transition == "goto":
                if outcome.next_index is None:
                    return self._finish(tick, "completed", steps_run=steps_run)
                tick.step_index = outcome.next_index
                continue
            if outcome.transition == "suspend":
                if outcome.next_index is not None:
                    tick.step_index = outcome.next_index
                return self._settle(tick, "waiting", steps_run, next_step_at=outcome.resume_at)
            if outcome.transition == "complete":
                return self._finish(tick, "completed", steps_run=steps_run)
            if outcome.transition == "unenroll":
                return self._settle(
                    tick,
                    "unenrolled",
                    steps_run,
                    status="unenrolled",
                    exit_reason=outcome.exit_reason or "condition_not_met",
                    exited_at=tick.now,
                    next_step_at=None,
                )
            if outcome.transition == "fail":
                return self._finish(tick, "failed", steps_run=steps_run, error=outcome.error)
            raise StepConfigurationError(f"unknown transition {outcome.transition!r}")

        return self._settle(tick, "advanced", steps_run, next_step_at=tick.now)

    def _run_step(self, tick: _Tick, step: ActionStep | DelayStep | ConditionStep | BranchStep) -> StepOutcome:
        if isinstance(step, ActionStep):
            return StepOutcome(
                transition="goto",
                next_index=step.next_step_index,
                actions_executed=self._apply_actions(tick, step.actions),
            )
        if isinstance(step, DelayStep):
            return self._run_delay_step(tick, step)
        if isinstance(step, ConditionStep):
            return self._run_condition_step(tick, step)
        if isinstance(step, BranchStep):
            return self._run_branch_step(tick, step)
        raise StepConfigurationError(f"unsupported step type {getattr(step, 'type', None)!r}")

    def _run_delay_step(self, tick: _Tick, step: DelayStep) -> StepOutcome:
        if step.next_step_index is None:
            # A trailing delay holds the enrollment open and completes it on the tick after it elapses.
            if tick.metadata.get("completes_after_delay") == step.step_index:
                tick.metadata.pop("completes_after_delay")
                return StepOutcome(transition="complete")
            tick.metadata["completes_after_delay"] = step.step_index
        return StepOutcome(
            transition="suspend",
            next_index=step.next_step_index,
            resume_at=tick.now + step.delay_config.to_timedelta(),
        )

    def _run_condition_step(self, tick: _Tick, step: ConditionStep) -> StepOutcome:
        met, evaluated = self.evaluator.trace(step.conditions, tick.entity)
        metadata = tick.metadata
        waits = dict(metadata.get("condition_waits") or {})
        wait_key = str(step.step_index)

        if met:
            if waits.pop(wait_key, None) is not None:
                metadata["condition_waits"] = waits
            return StepOutcome(transition="goto", next_index=step.next_step_index, conditions_evaluated=evaluated)

        if "false" in step.branch_step_indices:
            return StepOutcome(
                transition="goto",
                next_index=step.branch_step_indices["false"],
                conditions_met=False,
                conditions_evaluated=evaluated,
            )

        config = step.config
        outcome = StepOutcome(transition="unenroll", conditions_met=False, conditions_evaluated=evaluated)
        if config.on_false == "wait":
            attempts = int(waits.get(wait_key, 0))
            if attempts < config.max_rechecks:
                waits[wait_key] = attempts + 1
                metadata["condition_waits"] = waits
                recheck = (
                    config.recheck_after.to_timedelta()
                    if config.recheck_after is not None
                    else timedelta(minutes=get_settings().automation_default_recheck_minutes)
                )
                outcome.transition = "suspend"
                outcome.resume_at = tick.now + recheck
                outcome.log_status = "waiting"
                return outcome
            outcome.exit_reason = "condition_timeout"
            if config.on_timeout == "fail":
                outcome.transition = "fail"
                outcome.error = f"condition step {step.step_index} not met after {config.max_rechecks} rechecks"
                outcome.log_status = "failed"
            else:
                outcome.log_status = "unenrolled"
            return outcome

        if config.on_false == "complete":
            outcome.transition = "complete"
            outcome.log_status = "skipped"
        elif config.on_false == "fail":
            outcome.transition = "fail"
            outcome.error = f"condition step {step.step_index} not met"
            outcome.log_status = "failed"
        else:
            outcome.exit_reason = "condition_not_met"
            outcome.log_status = "unenrolled"
        return outcome

    def _run_branch_step(self, tick: _Tick, step: BranchStep) -> StepOutcome:
        config = step.branch_config
        evaluated: list[dict[str, Any]] = []
        chosen: str | None = None
        for branch in config.branches:
            met, trace_entries = self.evaluator.trace(branch.conditions, tick.entity)
            evaluated.append({"branch": branch.name, "result": met, "conditions": trace_entries})
            if met:
                chosen = branch.name
                break
        if chosen is None:
            chosen = config.default_branch

        history = list(tick.metadata.get("branches_taken") or [])
        history.append({"step_index": step.step_index, "branch": chosen})
        tick.metadata["branches_taken"] = history

        if chosen is None:
            return StepOutcome(transition="complete", conditions_met=False, conditions_evaluated=evaluated)
        if chosen not in step.branch_step_indices:
            raise StepConfigurationError(f"branch '{chosen}' of step {step.step_index} has no target step")
        return StepOutcome(
            transition="goto",
            next_index=step.branch_step_indices[chosen],
            conditions_evaluated=evaluated,
        )

    def _apply_actions(self, tick: _Tick, actions: Sequence[Any]) -> list[dict[str, Any]]:
        executed: list[dict[str, Any]] = []
        for action in actions:
            tick.deadline.check()
            before = tick.entity.row_version
            tick.entity = self.executor.apply(tick.entities, action, tick.entity, actor_user_id=SYSTEM_ACTOR)
            executed.append(
                {
                    "type": action.type,
                    "action": action.model_dump(mode="json"),
                    "status": "success" if tick.entity.row_version != before else "noop",
                }
            )
        return executed

    def _finish(self, tick: _Tick, status: str, *, steps_run: int, error: str | None = None) -> TickResult:
        values: dict[str, Any] = {"status": status, "next_step_at": None, "error": error}
        if status == "completed":
            values["completed_at"] = tick.now
        return self._settle(tick, status, steps_run, error=error, **values)

    def _settle(
        self,
        tick: _Tick,
        outcome: str,
        steps_run: int,
        *,
        error: str | None = None,
        **values: Any,
    ) -> TickResult:
        enrollment_id = tick.enrollment.id
        written = tick.enrollments.write_state(
            tick.enrollment,
            expected_revision=tick.revision,
            current_step_index=tick.step_index,
            metadata_json=tick.metadata,
            **values,
        )
        if not written:
            return self._cancelled(enrollment_id, tick.definition, steps_run)
        return TickResult(enrollment_id=enrollment_id, outcome=outcome, steps_run=steps_run, error=error)

    def _cancelled(self, enrollment_id: uuid.UUID, definition: AutomationDefinition, steps_run: int) -> TickResult:
        logger.info(
            "automation_tick_cancelled",
            extra={"automation_id": str(definition.id), "steps_run": steps_run},
        )
        return TickResult(enrollment_id=enrollment_id, outcome="cancelled", steps_run=steps_run)

    def _write_log(
        self,
        enrollments: EnrollmentStore,
        enrollment: AutomationEnrollment,
        definition: AutomationDefinition,
        step_index: int | None,
        outcome: StepOutcome,
        *,
        now: datetime,
    ) -> None:
        metadata = enrollment.metadata_json or {}
        trigger_data: dict[str, Any] = dict(metadata.get("trigger") or {})
        if outcome.exit_reason:
            trigger_data["exit_reason"] = outcome.exit_reason
        enrollments.add_log(
            automation_id=definition.id,
            tenant_id=definition.tenant_id,
            enrollment_id=enrollment.id,
            entity_type=enrollment.entity_type,
            entity_id=enrollment.entity_id,
            step_index=step_index,
            trigger_type=definition.trigger.type,
            trigger_data=trigger_data,
            conditions_met=outcome.conditions_met,
            conditions_evaluated=outcome.conditions_evaluated,
            actions_executed=outcome.actions_executed,
            status=outcome.log_status,
            error=outcome.error,
            executed_at=now,
        )

    def _publish(self, metadata: dict[str, Any], pending: list[dict[str, Any]]) -> None:
        if not pending:
            return
        try:
            depth = int(metadata.get("workflow_depth") or 0)
        except (TypeError, ValueError):
            depth = 0
        depth_token = set_workflow_depth(depth + 1)
        try:
            events.publish_all(pending)
        finally:
            reset_workflow_depth(depth_token)

    def _fail_after_rollback(
        self,
        session: Session,
        enrollment_id: uuid.UUID,
        definition: AutomationDefinition,
        exc: AutomationError,
        *,
        now: datetime,
        revision: int,
    ) -> TickResult:
        session.rollback()
        enrollments = EnrollmentStore(session)
        enrollment = enrollments.get(enrollment_id)
        if enrollment is None:
            raise exc
        error = str(exc)[:2000]
        step_index: int | None = None
        if definition.is_multi_step:
            step_index = exc.step_index if exc.step_index is not None else enrollment.current_step_index
        self._write_log(
            enrollments,
            enrollment,
            definition,
            step_index,
            StepOutcome(transition="fail", error=error, log_status="failed", conditions_met=False),
            now=now,
        )
        failed = enrollments.write_state(
            enrollment,
            expected_revision=revision,
            status="failed",
            error=error,
            next_step_at=None,
        )
        session.commit()
        logger.warning(
            "automation_enrollment_failed",
            extra={
                "automation_id": str(definition.id),
                "step_index": step_index,
                "error": error,
                "action_type": getattr(exc, "action_type", None),
            },
        )
        if not failed:
            return self._cancelled(enrollment_id, definition, 0)
        return TickResult(enrollment_id=enrollment_id, outcome="failed", error=error)


step_engine = StepEngine()
