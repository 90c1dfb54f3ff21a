from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from app.automation.schemas import (
    ACTION_ENTITY_TYPES,
    ActionStep,
    AutomationDefinition,
    AutomationTrigger,
    BranchStep,
    DelayStep,
    WorkflowValidationResult,
)


def _successors(step: Any) -> list[int | None]:
    targets: list[int | None] = [step.next_step_index]
    targets.extend(step.branch_step_indices.values())
    return targets


def _check_actions(trigger: AutomationTrigger, actions: Iterable[Any], where: str, errors: list[str]) -> None:
    for action in actions:
        expected = ACTION_ENTITY_TYPES.get(action.type)
        if expected is not None and expected != trigger.entity_type:
            errors.append(f"{where}: action '{action.type}' cannot run on a {trigger.entity_type} trigger")


def validate_workflow(
    *,
    trigger: AutomationTrigger,
    actions: Sequence[Any],
    steps: Sequence[Any],
    is_multi_step: bool,
) -> WorkflowValidationResult:
    """Check that a workflow graph can run before it is allowed to go live."""
    errors: list[str] = []
    warnings: list[str] = []

    if not is_multi_step:
        if not actions:
            errors.append("automation has no actions")
        _check_actions(trigger, actions, "actions", errors)
        return WorkflowValidationResult(valid=not errors, errors=errors, warnings=warnings)

    by_index = {step.step_index: step for step in steps}
    if not by_index:
        errors.append("multi-step automation has no steps")
        return WorkflowValidationResult(valid=False, errors=errors, warnings=warnings)
    if 0 not in by_index:
        errors.append("workflow must start at step 0")

    for index, step in sorted(by_index.items()):
        for target in _successors(step):
            if target is not None and target not in by_index:
                errors.append(f"step {index} points to missing step {target}")
        if isinstance(step, ActionStep):
            _check_actions(trigger, step.actions, f"step {index}", errors)
        if isinstance(step, BranchStep):
            config = step.branch_config
            names = {branch.name for branch in config.branches}
            for name in names:
                if name not in step.branch_step_indices:
                    errors.append(f"step {index}: branch '{name}' has no target step")
            if config.default_branch is not None and config.default_branch not in step.branch_step_indices:
                errors.append(f"step {index}: default branch '{config.default_branch}' has no target step")
        if isinstance(step, DelayStep) and step.next_step_index is None:
            warnings.append(f"step {index}: delay is the last step and only postpones completion")

    if 0 in by_index:
        reachable: set[int] = set()
        pending = [0]
        while pending:
            index = pending.pop()
            if index in reachable or index not in by_index:
                continue
            reachable.add(index)
            pending.extend(target for target in _successors(by_index[index]) if target is not None)
        for index in sorted(set(by_index) - reachable):
            errors.append(f"step {index} is unreachable from step 0")

    for cycle in _cycles_without_delay(by_index):
        warnings.append("steps " + " -> ".join(str(index) for index in cycle) + " loop without a delay")

    return WorkflowValidationResult(valid=not errors, errors=errors, warnings=warnings)


def validate_definition(definition: AutomationDefinition) -> WorkflowValidationResult:
    return validate_workflow(
        trigger=definition.trigger,
        actions=definition.actions,
        steps=list(definition.steps.values()),
        is_multi_step=definition.is_multi_step,
    )


def _cycles_without_delay(by_index: dict[int, Any]) -> list[list[int]]:
    cycles: list[list[int]] = []
    seen: set[frozenset[int]] = set()
    state: dict[int, int] = {}
    path: list[int] = []

    def visit(index: int) -> None:
        state[index] = 1
        path.append(index)
        for target in _successors(by_index[index]):
            if target is None or target not in by_index:
                continue
            if state.get(target) == 1:
                cycle = path[path.index(target):]
                key = frozenset(cycle)
                if key not in seen and not any(isinstance(by_index[item], DelayStep) for item in cycle):
                    seen.add(key)
                    cycles.append([*cycle, target])
            elif target not in state:
                visit(target)
        path.pop()
        state[index] = 2

    for index in sorted(by_index):
        if index not in state:
            visit(index)
    return cycles
