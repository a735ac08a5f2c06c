from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from matchmaking.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []


def record(
    actor_subject_id: str | None,
    entity_type: str,
    entity_id: str,
    action: str,
    details: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> None:
    """Append a security audit entry; never raises."""

    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_subject_id": actor_subject_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "details": details or {},
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )


def entries_for(action: str) -> list[dict[str, Any]]:
    return [entry for entry in audit_entries if entry["action"] == action]
