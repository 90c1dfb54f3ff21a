from app.automation.api import router
from app.automation.engine import StepEngine, TickDeadline, TickResult, step_engine
from app.automation.models import Automation, AutomationEnrollment, AutomationLog, AutomationStep
from app.automation.scheduler import EnrollmentDispatcher, SweepResult, dispatcher
from app.automation.service import AutomationService, automation_service
from app.automation.triggers import (
    SUBSCRIBED_EVENT_TYPES,
    AutomationEventHandler,
    TriggerEvent,
    TriggerMatcher,
    automation_event_handler,
)

__all__ = [
    "router",
    "Automation",
    "AutomationEnrollment",
    "AutomationLog",
    "AutomationStep",
    "StepEngine",
    "TickDeadline",
    "TickResult",
    "step_engine",
    "EnrollmentDispatcher",
    "SweepResult",
    "dispatcher",
    "AutomationService",
    "automation_service",
    "SUBSCRIBED_EVENT_TYPES",
    "AutomationEventHandler",
    "TriggerEvent",
    "TriggerMatcher",
    "automation_event_handler",
]
