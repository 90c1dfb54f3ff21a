from __future__ import annotations

import logging
import time
import uuid
from collections import Counter
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime

from opentelemetry import trace
from sqlalchemy.orm import Session

from app.automation.engine import StepEngine, TickResult, step_engine
from app.automation.repository import ActiveAutomationCache, EnrollmentStore, active_automation_cache
from app.core.config import get_settings
from app.core.database import session_scope
from app.crm.models import utcnow
from app.metrics import observe_sweep


logger = logging.getLogger("app.automation.scheduler")
tracer = trace.get_tracer("app.automation.scheduler")

SessionScope = Callable[[], AbstractContextManager[Session]]


@dataclass
class SweepResult:
    due: int = 0
    processed: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)


class EnrollmentDispatcher:
    """Runs due enrollments on a bounded worker pool.

    Every enrollment is processed in its own session under its lease lock, so
    two dispatchers sweeping at once never run the same enrollment twice and
    one failing enrollment never stops the others.
    """

    def __init__(
        self,
        session_factory: SessionScope | None = None,
        engine: StepEngine | None = None,
        cache: ActiveAutomationCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory or session_scope
        self.engine = engine or step_engine
        self.cache = cache or active_automation_cache
        self.clock = clock

    def sweep(self, now: datetime | None = None, *, tenant_id: str | None = None) -> SweepResult:
        """Run every due enrollment once; ``tenant_id`` limits the sweep to that tenant's automations."""
        settings = get_settings()
        now = now or self.clock()
        started = time.perf_counter()
        result = SweepResult()

        with tracer.start_as_current_span("automation.sweep") as span:
            with self.session_factory() as session:
                snapshot = self.cache.snapshot(session)
                automation_ids = snapshot.automation_ids
                if tenant_id is not None:
                    automation_ids = frozenset(definition.id for definition in snapshot.for_tenant(tenant_id))
                due_ids = EnrollmentStore(session).load_due(
                    now,
                    limit=settings.automation_sweep_batch_size,
                    automation_ids=automation_ids,
                )
                session.commit()
            result.due = len(due_ids)
            span.set_attribute("due_count", result.due)

            outcomes: Counter[str] = Counter()
            if due_ids:
                workers = max(1, min(settings.automation_worker_count, len(due_ids)))
                executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="automation-tick")
                try:
                    futures = {executor.submit(self._process_one, enrollment_id, now): enrollment_id for enrollment_id in due_ids}
                    done, not_done = wait(futures, timeout=settings.automation_sweep_timeout_seconds)
                    for future in done:
                        exc = future.exception()
                        if exc is not None:
                            outcomes["error"] += 1
                            logger.error(
                                "automation_tick_crashed",
                                extra={"enrollment_id": str(futures[future]), "error": str(exc)[:500]},
                            )
                            continue
                        outcomes[future.result().outcome] += 1
                    if not_done:
                        outcomes["timed_out"] += len(not_done)
                        logger.warning(
                            "automation_sweep_timed_out",
                            extra={"due_count": result.due, "processed": len(done)},
                        )
                finally:
                    executor.shutdown(wait=False, cancel_futures=True)

            result.outcomes = dict(outcomes)
            result.processed = sum(count for outcome, count in outcomes.items() if outcome not in {"timed_out", "locked"})
            span.set_attribute("processed", result.processed)

        observe_sweep(result.due, time.perf_counter() - started)
        logger.info(
            "automation_sweep_finished",
            extra={"due_count": result.due, "processed": result.processed, "outcome": result.outcomes},
        )
        return result

    def process_enrollment(self, enrollment_id: uuid.UUID, now: datetime | None = None) -> TickResult:
        """Force one tick for a single enrollment, due or not."""
        return self._process_one(enrollment_id, now or self.clock())

    def _process_one(self, enrollment_id: uuid.UUID, now: datetime) -> TickResult:
        settings = get_settings()
        with self.session_factory() as session:
            store = EnrollmentStore(session)
            token = store.try_lock(enrollment_id, now=now, lease_seconds=settings.automation_lock_lease_seconds)
            if token is None:
                if store.get(enrollment_id) is None:
                    return TickResult(enrollment_id=enrollment_id, outcome="not_found")
                return TickResult(enrollment_id=enrollment_id, outcome="locked")
            try:
                enrollment = store.get(enrollment_id)
                if enrollment is None:
                    return TickResult(enrollment_id=enrollment_id, outcome="not_found")
                definition = self.cache.snapshot(session).get(enrollment.automation_id)
                if definition is None:
                    return TickResult(enrollment_id=enrollment_id, outcome="paused")
                return self.engine.run_tick(session, enrollment, definition, now=now)
            finally:
                session.rollback()
                store.unlock(enrollment_id, token)


dispatcher = EnrollmentDispatcher()
