"""Relationship queries shared by the matching policies and scope resolvers.

All of them read through :class:`DocumentLookup`, i.e. without row-level
filtering, and return identifiers or booleans only.
"""

from __future__ import annotations

from typing import Any

from matchmaking.platform.security.context import normalize_id
from matchmaking.platform.security.filters import Eq, Filter, and_, or_
from matchmaking.platform.security.repository import DocumentLookup
from matchmaking.platform.security.resources import ResourceType


MUTUAL_MATCH = "mutual_match"


def _involving(user_id: str) -> Filter:
    return or_(Eq("user1_id", user_id), Eq("user2_id", user_id))


def has_mutual_match(lookup: DocumentLookup, user_a: Any, user_b: Any) -> bool:
    first, second = normalize_id(user_a), normalize_id(user_b)
    if first is None or second is None or first == second:
        return False
    pair = or_(
        and_(Eq("user1_id", first), Eq("user2_id", second)),
        and_(Eq("user1_id", second), Eq("user2_id", first)),
    )
    return lookup.exists(ResourceType.MATCH_PAIR, and_(pair, Eq("status", MUTUAL_MATCH)))


def mutual_match_counterparts(lookup: DocumentLookup, user_id: Any) -> set[str]:
    subject = normalize_id(user_id)
    if subject is None:
        return set()

    counterparts: set[str] = set()
    for match in lookup.find(ResourceType.MATCH_PAIR, and_(_involving(subject), Eq("status", MUTUAL_MATCH))):
        for name in ("user1_id", "user2_id"):
            other = normalize_id(match.get(name))
            if other is not None and other != subject:
                counterparts.add(other)
    return counterparts


def conversation_participants(lookup: DocumentLookup, conversation_id: Any) -> frozenset[str]:
    conversation = lookup.get(ResourceType.CONVERSATION, conversation_id)
    if conversation is None:
        return frozenset()
    return lookup.describe(ResourceType.CONVERSATION).participants(conversation)


def is_conversation_participant(lookup: DocumentLookup, conversation_id: Any, user_id: Any) -> bool:
    subject = normalize_id(user_id)
    return subject is not None and subject in conversation_participants(lookup, conversation_id)
