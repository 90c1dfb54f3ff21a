from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.automation import SUBSCRIBED_EVENT_TYPES, automation_event_handler, dispatcher
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.core.database import SessionLocal, get_db
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


@contextmanager
def _workflow_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_crm_domain_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    settings = get_settings()
    try:
        with _workflow_session_scope() as session:
            results = automation_event_handler.handle_event(session, envelope)
        if settings.auto_process_enrollments:
            for result in results:
                if result.created and result.enrollment is not None:
                    dispatcher.process_enrollment(result.enrollment.id)
    except Exception as exc:
        logger.exception("automation_event_handling_failed", extra={"event_type": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in SUBSCRIBED_EVENT_TYPES:
            event_bus.subscribe(event_name, _on_crm_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Relay CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

dispatcher.session_factory = _workflow_session_scope

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
