from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []
_lock = threading.Lock()


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    tenant_id: str | None = None,
) -> None:
    entry = {
        "id": str(uuid.uuid4()),
        "tenant_id": tenant_id,
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    with _lock:
        audit_entries.append(entry)
