"""Trusted background work of the matching engine.

These run without an end user behind them, so every write goes through
``execute_as_system`` and is audited as an escalation.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from matchmaking.platform.security.context import AuthContext, normalize_id
from matchmaking.platform.security.filters import Compare, In, and_
from matchmaking.platform.security.resources import ResourceType
from matchmaking.platform.security.service import CrudService


logger = logging.getLogger("matchmaking.lifecycle")

_OPEN_STATUSES = ("pending", "user1_liked", "user2_liked")


def record_match(
    service: CrudService,
    user1_id: Any,
    user2_id: Any,
    *,
    compatibility_score: float | None = None,
    compatibility_breakdown: dict[str, Any] | None = None,
    match_reason: str | None = None,
    expires_at: datetime | None = None,
    invoked_by: AuthContext | None = None,
) -> dict[str, Any]:
    """Create a match pair and bump both profiles' match counters atomically."""

    first, second = normalize_id(user1_id), normalize_id(user2_id)

    def _run(ctx: AuthContext) -> dict[str, Any]:
        def create_pair() -> dict[str, Any]:
            payload: dict[str, Any] = {
                "user1_id": first,
                "user2_id": second,
                "compatibility_score": compatibility_score,
                "compatibility_breakdown": compatibility_breakdown,
                "match_reason": match_reason,
            }
            if expires_at is not None:
                payload["expires_at"] = expires_at
            return service.create(ctx, ResourceType.MATCH_PAIR, payload)

        def bump(profile_id: str | None):
            def _bump() -> dict[str, Any]:
                profile = service.get_by_id(ctx, ResourceType.PROFILE, profile_id)
                return service.update(
                    ctx,
                    ResourceType.PROFILE,
                    profile_id,
                    {"match_count": int(profile.get("match_count") or 0) + 1},
                )

            return _bump

        match, _, _ = service.execute_in_transaction([create_pair, bump(first), bump(second)])
        return match

    match = service.execute_as_system(_run, reason="matching.record_match", invoked_by=invoked_by)
    logger.info("matching.match_recorded", extra={"resource": ResourceType.MATCH_PAIR.value, "resource_id": match["id"]})
    return match


def expire_matches(service: CrudService, *, now: datetime, invoked_by: AuthContext | None = None) -> int:
    """Mark open match pairs whose ``expires_at`` has passed as expired."""

    def _run(ctx: AuthContext) -> int:
        stale = service.find(
            ctx,
            ResourceType.MATCH_PAIR,
            and_(In("status", _OPEN_STATUSES), Compare("expires_at", "$lt", now)),
        )
        service.execute_in_transaction(
            [
                (lambda match_id=match["id"]: service.update(ctx, ResourceType.MATCH_PAIR, match_id, {"status": "expired"}))
                for match in stale
            ]
        )
        return len(stale)

    expired = service.execute_as_system(_run, reason="matching.expire_matches", invoked_by=invoked_by)
    logger.info("matching.matches_expired", extra={"resource": ResourceType.MATCH_PAIR.value, "processed": expired})
    return expired
