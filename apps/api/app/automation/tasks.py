from __future__ import annotations

import logging
import uuid
from typing import Any

from app.automation.scheduler import dispatcher
from app.core.celery_app import celery_app

logger = logging.getLogger("app.automation.tasks")


@celery_app.task(name="app.automation.tasks.sweep_due_enrollments")
def sweep_due_enrollments() -> dict[str, Any]:
    result = dispatcher.sweep()
    return {"due": result.due, "processed": result.processed, "outcomes": result.outcomes}


@celery_app.task(name="app.automation.tasks.process_enrollment")
def process_enrollment(enrollment_id: str) -> dict[str, Any]:
    result = dispatcher.process_enrollment(uuid.UUID(enrollment_id))
    logger.info(
        "automation_enrollment_processed",
        extra={"enrollment_id": enrollment_id, "outcome": result.outcome, "steps_run": result.steps_run},
    )
    return {"enrollment_id": enrollment_id, "outcome": result.outcome, "steps_run": result.steps_run, "error": result.error}
