from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from matchmaking.matching.lookups import MUTUAL_MATCH
from matchmaking.platform.security.context import AuthContext
from matchmaking.platform.security.fls import RedactionRule


DELETED_MESSAGE_PLACEHOLDER = "This message has been deleted"


def _is_mutual_match(ctx: AuthContext, document: Mapping[str, Any]) -> bool:
    return document.get("status") == MUTUAL_MATCH


def _mask_deleted_message(ctx: AuthContext, document: dict[str, Any]) -> list[str]:
    if not document.get("is_deleted"):
        return []
    touched: list[str] = []
    if document.get("content") != DELETED_MESSAGE_PLACEHOLDER:
        document["content"] = DELETED_MESSAGE_PLACEHOLDER
        touched.append("content")
    if document.get("attachments"):
        document["attachments"] = []
        touched.append("attachments")
    return touched


PROFILE_REDACTION = RedactionRule(
    owner_hidden_fields=frozenset(
        {"email", "phone", "location.coordinates", "occupation.income", "social_providers"}
    ),
)

MATCH_PAIR_REDACTION = RedactionRule(
    relationship_hidden_fields=frozenset({"compatibility_breakdown", "match_reason", "ai_analysis"}),
    relationship_visible=_is_mutual_match,
)

MESSAGE_REDACTION = RedactionRule(transform=_mask_deleted_message)
