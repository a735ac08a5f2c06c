from __future__ import annotations

from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from matchmaking.matching.lookups import has_mutual_match, is_conversation_participant
from matchmaking.platform.security.context import AuthContext, normalize_id
from matchmaking.platform.security.filters import parse_timestamp
from matchmaking.platform.security.policies import PolicyRegistry
from matchmaking.platform.security.repository import DocumentLookup
from matchmaking.platform.security.resources import Operation, ResourceType


DEFAULT_EDIT_WINDOW = timedelta(minutes=30)
DEFAULT_DELETE_WINDOW = timedelta(hours=24)


def admin_only(ctx: AuthContext, subject: Mapping[str, Any], lookup: DocumentLookup) -> bool:
    return ctx.is_system() or ctx.is_admin()


def _within(ctx: AuthContext, value: Any, window: timedelta) -> bool:
    started_at = parse_timestamp(value)
    if started_at is None:
        return False
    return ctx.created_at - started_at < window


def _is_own(ctx: AuthContext, subject: Mapping[str, Any], field: str) -> bool:
    return ctx.is_subject(subject.get(field))


def _owns_or_unset(ctx: AuthContext, subject: Mapping[str, Any], field: str) -> bool:
    return normalize_id(subject.get(field)) is None or _is_own(ctx, subject, field)


def register_policies(
    registry: PolicyRegistry,
    *,
    edit_window: timedelta = DEFAULT_EDIT_WINDOW,
    delete_window: timedelta = DEFAULT_DELETE_WINDOW,
) -> PolicyRegistry:
    """Register the access rules of every matching resource type.

    Several rules repeat ``ctx.is_system() or ctx.is_admin()``: these are
    the per-resource overrides and stay even though the registry lets
    admin and system contexts through first.
    """

    # Profile: visible to its owner and to mutual matches.

    @registry.policy(ResourceType.PROFILE, Operation.READ)
    def read_profile(ctx, subject, lookup):
        return _is_own(ctx, subject, "id") or has_mutual_match(lookup, ctx.subject_id, subject.get("id"))

    @registry.policy(ResourceType.PROFILE, Operation.CREATE)
    def create_profile(ctx, subject, lookup):
        return ctx.is_system() or ctx.is_admin() or _owns_or_unset(ctx, subject, "id")

    @registry.policy(ResourceType.PROFILE, Operation.UPDATE)
    def update_profile(ctx, subject, lookup):
        return _is_own(ctx, subject, "id")

    @registry.policy(ResourceType.PROFILE, Operation.DELETE)
    def delete_profile(ctx, subject, lookup):
        return _is_own(ctx, subject, "id")

    # MatchPair: only the matching job creates pairs.

    registry.register(ResourceType.MATCH_PAIR, Operation.CREATE, admin_only)

    @registry.policy(ResourceType.MATCH_PAIR, Operation.READ)
    def read_match(ctx, subject, lookup):
        return _is_own(ctx, subject, "user1_id") or _is_own(ctx, subject, "user2_id")

    @registry.policy(ResourceType.MATCH_PAIR, Operation.UPDATE)
    def update_match(ctx, subject, lookup):
        return _is_own(ctx, subject, "user1_id") or _is_own(ctx, subject, "user2_id")

    registry.register(ResourceType.MATCH_PAIR, Operation.DELETE, admin_only)

    # Conversation: participants only; opening one needs a mutual match.

    @registry.policy(ResourceType.CONVERSATION, Operation.READ)
    def read_conversation(ctx, subject, lookup):
        return ctx.subject_id in lookup.describe(ResourceType.CONVERSATION).participants(subject)

    @registry.policy(ResourceType.CONVERSATION, Operation.CREATE)
    def create_conversation(ctx, subject, lookup):
        if ctx.is_system() or ctx.is_admin():
            return True
        participants = lookup.describe(ResourceType.CONVERSATION).participants(subject)
        if ctx.subject_id not in participants:
            return False
        others = participants - {ctx.subject_id}
        return bool(others) and all(has_mutual_match(lookup, ctx.subject_id, other) for other in others)

    @registry.policy(ResourceType.CONVERSATION, Operation.UPDATE)
    def update_conversation(ctx, subject, lookup):
        return ctx.subject_id in lookup.describe(ResourceType.CONVERSATION).participants(subject)

    registry.register(ResourceType.CONVERSATION, Operation.DELETE, admin_only)

    # Message: inherits visibility from its conversation; edits are time-boxed.

    @registry.policy(ResourceType.MESSAGE, Operation.READ)
    def read_message(ctx, subject, lookup):
        return is_conversation_participant(lookup, subject.get("conversation_id"), ctx.subject_id)

    @registry.policy(ResourceType.MESSAGE, Operation.CREATE)
    def create_message(ctx, subject, lookup):
        if ctx.is_system() or ctx.is_admin():
            return True
        if not _owns_or_unset(ctx, subject, "sender_id"):
            return False
        return is_conversation_participant(lookup, subject.get("conversation_id"), ctx.subject_id)

    @registry.policy(ResourceType.MESSAGE, Operation.UPDATE)
    def update_message(ctx, subject, lookup):
        if subject.get("is_deleted"):
            return False
        return _is_own(ctx, subject, "sender_id") and _within(ctx, subject.get("sent_at"), edit_window)

    @registry.policy(ResourceType.MESSAGE, Operation.DELETE)
    def delete_message(ctx, subject, lookup):
        return _is_own(ctx, subject, "sender_id") and _within(ctx, subject.get("sent_at"), delete_window)

    # Assessment: private to its owner, frozen once completed.

    @registry.policy(ResourceType.ASSESSMENT, Operation.READ)
    def read_assessment(ctx, subject, lookup):
        return _is_own(ctx, subject, "user_id")

    @registry.policy(ResourceType.ASSESSMENT, Operation.CREATE)
    def create_assessment(ctx, subject, lookup):
        return _owns_or_unset(ctx, subject, "user_id")

    @registry.policy(ResourceType.ASSESSMENT, Operation.UPDATE)
    def update_assessment(ctx, subject, lookup):
        return _is_own(ctx, subject, "user_id") and not subject.get("is_completed", False)

    registry.register(ResourceType.ASSESSMENT, Operation.DELETE, admin_only)

    # Feedback

    @registry.policy(ResourceType.FEEDBACK, Operation.READ)
    def read_feedback(ctx, subject, lookup):
        return _is_own(ctx, subject, "user_id")

    @registry.policy(ResourceType.FEEDBACK, Operation.CREATE)
    def create_feedback(ctx, subject, lookup):
        return _owns_or_unset(ctx, subject, "user_id")

    @registry.policy(ResourceType.FEEDBACK, Operation.UPDATE)
    def update_feedback(ctx, subject, lookup):
        return _is_own(ctx, subject, "user_id")

    registry.register(ResourceType.FEEDBACK, Operation.DELETE, admin_only)

    return registry
