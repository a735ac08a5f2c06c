from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from matchmaking.core.celery_app import celery_app
from matchmaking.matching.catalogue import get_default_crud_service
from matchmaking.matching.jobs import expire_matches, record_match
from matchmaking.platform.security.filters import parse_timestamp


@celery_app.task(name="matching.record_match")
def record_match_task(
    user1_id: str,
    user2_id: str,
    compatibility_score: float | None = None,
    compatibility_breakdown: dict[str, Any] | None = None,
    match_reason: str | None = None,
    expires_at: str | None = None,
) -> str:
    match = record_match(
        get_default_crud_service(),
        user1_id,
        user2_id,
        compatibility_score=compatibility_score,
        compatibility_breakdown=compatibility_breakdown,
        match_reason=match_reason,
        expires_at=parse_timestamp(expires_at),
    )
    return match["id"]


@celery_app.task(name="matching.expire_matches")
def expire_matches_task(now: str | None = None) -> int:
    moment = parse_timestamp(now) or datetime.now(timezone.utc)
    return expire_matches(get_default_crud_service(), now=moment)
