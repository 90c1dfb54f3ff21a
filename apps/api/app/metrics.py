from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

automation_ticks_total = Counter(
    "automation_ticks_total",
    "Total enrollment ticks by outcome",
    ["outcome"],
)

automation_tick_duration_seconds = Histogram(
    "automation_tick_duration_seconds",
    "Enrollment tick duration in seconds",
)

automation_enrollments_created_total = Counter(
    "automation_enrollments_created_total",
    "Total enrollments created by trigger type",
    ["trigger_type"],
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Total automation actions by type and status",
    ["action_type", "status"],
)

automation_guardrail_blocks_total = Counter(
    "automation_guardrail_blocks_total",
    "Total automation guardrail blocks by reason",
    ["reason"],
)

automation_sweep_due_enrollments = Gauge(
    "automation_sweep_due_enrollments",
    "Due enrollments picked up by the last sweep",
)

automation_sweep_duration_seconds = Histogram(
    "automation_sweep_duration_seconds",
    "Dispatcher sweep duration in seconds",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_tick(outcome: str, duration: float) -> None:
    automation_ticks_total.labels(outcome=outcome).inc()
    automation_tick_duration_seconds.observe(duration)


def observe_enrollment_created(trigger_type: str) -> None:
    automation_enrollments_created_total.labels(trigger_type=trigger_type).inc()


def observe_action(action_type: str, status: str) -> None:
    automation_actions_total.labels(action_type=action_type, status=status).inc()


def observe_guardrail_block(reason: str) -> None:
    automation_guardrail_blocks_total.labels(reason=reason).inc()


def observe_sweep(due_count: int, duration: float) -> None:
    automation_sweep_due_enrollments.set(due_count)
    automation_sweep_duration_seconds.observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
