from __future__ import annotations

from typing import Any

import pytest
from pydantic import ValidationError

from app.automation.schemas import AutomationCreate
from app.automation.validation import validate_workflow


def _validate(payload: dict[str, Any]):
    dto = AutomationCreate.model_validate({"name": "Flow", "trigger": {"type": "contact_created"}, **payload})
    return validate_workflow(
        trigger=dto.trigger,
        actions=dto.actions,
        steps=dto.steps,
        is_multi_step=bool(dto.is_multi_step),
    )


def _tag(tag: str, next_step_index: int | None = None, **extra: Any) -> dict[str, Any]:
    return {
        "type": "action",
        "actions": [{"type": "add_contact_tag", "tag": tag}],
        "next_step_index": next_step_index,
        **extra,
    }


def test_linear_workflow_is_valid() -> None:
    result = _validate(
        {
            "steps": [
                _tag("a", 1),
                {"type": "delay", "delay_config": {"value": 1, "unit": "hours"}, "next_step_index": 2},
                _tag("b"),
            ]
        }
    )

    assert result.valid
    assert result.errors == []
    assert result.warnings == []


def test_legacy_automation_needs_actions() -> None:
    result = _validate({"actions": []})

    assert not result.valid
    assert result.errors == ["automation has no actions"]


def test_actions_must_fit_trigger_entity() -> None:
    result = _validate({"actions": [{"type": "update_deal_field", "field": "name", "value": "x"}]})

    assert not result.valid
    assert "cannot run on a contact trigger" in result.errors[0]


def test_missing_targets_and_unreachable_steps_are_errors() -> None:
    result = _validate({"steps": [_tag("a", 7), _tag("orphan")]})

    assert not result.valid
    assert "step 0 points to missing step 7" in result.errors
    assert "step 1 is unreachable from step 0" in result.errors


def test_workflow_must_start_at_step_zero() -> None:
    result = _validate({"steps": [_tag("a", step_index=3)]})

    assert "workflow must start at step 0" in result.errors


def test_branch_targets_and_default_are_checked() -> None:
    result = _validate(
        {
            "steps": [
                {
                    "type": "branch",
                    "branch_config": {
                        "branches": [
                            {"name": "ca", "conditions": [{"field": "state", "operator": "equals", "value": "CA"}]},
                            {"name": "tx", "conditions": [{"field": "state", "operator": "equals", "value": "TX"}]},
                        ],
                        "default_branch": "elsewhere",
                    },
                    "branch_step_indices": {"ca": 1},
                },
                _tag("west"),
            ]
        }
    )

    assert not result.valid
    assert "step 0: branch 'tx' has no target step" in result.errors
    assert "step 0: default branch 'elsewhere' has no target step" in result.errors


def test_default_branch_may_target_an_undeclared_key() -> None:
    result = _validate(
        {
            "steps": [
                {
                    "type": "branch",
                    "branch_config": {
                        "branches": [
                            {"name": "CA", "conditions": [{"field": "state", "operator": "equals", "value": "CA"}]},
                            {"name": "TX", "conditions": [{"field": "state", "operator": "equals", "value": "TX"}]},
                        ],
                        "default_branch": "default",
                    },
                    "branch_step_indices": {"CA": 1, "TX": 2, "default": 3},
                },
                _tag("west"),
                _tag("south"),
                _tag("elsewhere"),
            ]
        }
    )

    assert result.valid
    assert result.errors == []


def test_terminal_delay_and_delay_free_loops_are_warnings() -> None:
    result = _validate(
        {
            "steps": [
                {
                    "type": "condition",
                    "conditions": [{"field": "lead_status", "operator": "equals", "value": "Customer"}],
                    "next_step_index": 2,
                    "branch_step_indices": {"false": 1},
                },
                _tag("nurture", 0),
                {"type": "delay", "delay_config": {"value": 1, "unit": "days"}},
            ]
        }
    )

    assert result.valid
    assert "step 2: delay is the last step and only postpones completion" in result.warnings
    assert "steps 0 -> 1 -> 0 loop without a delay" in result.warnings


def test_loops_through_a_delay_are_allowed() -> None:
    result = _validate(
        {
            "steps": [
                _tag("ping", 1),
                {"type": "delay", "delay_config": {"value": 1, "unit": "days"}, "next_step_index": 0},
            ]
        }
    )

    assert result.valid
    assert result.warnings == []


def test_multi_step_payload_cannot_mix_in_top_level_actions() -> None:
    with pytest.raises(ValidationError, match="define actions inside steps"):
        AutomationCreate.model_validate(
            {
                "name": "Mixed",
                "trigger": {"type": "contact_created"},
                "actions": [{"type": "add_contact_tag", "tag": "x"}],
                "steps": [_tag("y")],
            }
        )


def test_duplicate_step_indices_are_rejected() -> None:
    with pytest.raises(ValidationError, match="duplicate step_index"):
        AutomationCreate.model_validate(
            {
                "name": "Dupes",
                "trigger": {"type": "contact_created"},
                "steps": [_tag("a", step_index=0), _tag("b", step_index=0)],
            }
        )
