from __future__ import annotations

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

logger = logging.getLogger("app.audit")

# Recent trail for operators; the durable record of refreshes is the refresh_run table.
audit_entries: deque[dict[str, Any]] = deque(maxlen=5000)


def record(
    actor: str,
    entity_type: str,
    entity_id: str,
    action: str,
    details: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> None:
    entry = {
        "id": str(uuid.uuid4()),
        "actor": actor,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "details": details,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    logger.info(action, extra={"principal": actor, "entity_type": entity_type, "entity_id": entity_id})
