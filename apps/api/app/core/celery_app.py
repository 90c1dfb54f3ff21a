from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "relay_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.automation.tasks"],
)
celery_app.conf.beat_schedule = {
    "automation-sweep-due-enrollments": {
        "task": "app.automation.tasks.sweep_due_enrollments",
        "schedule": float(settings.automation_sweep_interval_seconds),
    },
}
celery_app.conf.task_acks_late = True
