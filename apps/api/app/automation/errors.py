from __future__ import annotations


class AutomationError(Exception):
    step_index: int | None = None


class ActionExecutionError(AutomationError):
    """An action could not be applied; the enrollment fails, the automation stays untouched."""

    def __init__(self, action_type: str, message: str) -> None:
        super().__init__(f"{action_type}: {message}")
        self.action_type = action_type
        self.message = message


class StepConfigurationError(AutomationError):
    pass


class TickTimeoutError(AutomationError):
    def __init__(self, budget_seconds: float) -> None:
        super().__init__(f"tick exceeded its {budget_seconds:g}s budget")
        self.budget_seconds = budget_seconds


class WorkflowValidationError(AutomationError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors
