from __future__ import annotations

from typing import TYPE_CHECKING, Any

from matchmaking.matching.lookups import MUTUAL_MATCH
from matchmaking.platform.security.context import AuthContext, normalize_id
from matchmaking.platform.security.errors import ValidationFailedError
from matchmaking.platform.security.repository import DocumentLookup
from matchmaking.platform.security.resources import ResourceType
from matchmaking.platform.security.service import ResourceHooks

if TYPE_CHECKING:
    from matchmaking.platform.security.service import CrudService


_POSITIVE_RESPONSES = {"like", "super_like"}


def derive_match_status(user1_response: str | None, user2_response: str | None, current: str = "pending") -> str:
    if current == "expired":
        return current
    if user1_response == "pass":
        return "user1_passed"
    if user2_response == "pass":
        return "user2_passed"
    first_likes = user1_response in _POSITIVE_RESPONSES
    second_likes = user2_response in _POSITIVE_RESPONSES
    if first_likes and second_likes:
        return MUTUAL_MATCH
    if first_likes:
        return "user1_liked"
    if second_likes:
        return "user2_liked"
    return "pending"


class ProfileHooks(ResourceHooks):
    """Users deactivate their own profile; only admins remove it."""

    def pre_create(self, ctx: AuthContext, document: dict[str, Any]) -> dict[str, Any]:
        if not ctx.is_system():
            document["match_count"] = 0
        document.setdefault("is_active", True)
        return document

    def pre_update(self, ctx: AuthContext, current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
        if not ctx.is_system():
            changes.pop("match_count", None)
        return changes

    def should_soft_delete(self, ctx: AuthContext, document: dict[str, Any]) -> bool:
        return not ctx.is_admin()

    def soft_delete_patch(self, ctx: AuthContext, document: dict[str, Any]) -> dict[str, Any]:
        return {"is_active": False, "deactivated_at": ctx.created_at.isoformat()}


class MatchPairHooks(ResourceHooks):
    def validate_create(self, ctx: AuthContext, data: dict[str, Any], lookup: DocumentLookup) -> None:
        first, second = normalize_id(data.get("user1_id")), normalize_id(data.get("user2_id"))
        if first is None or second is None or first == second:
            raise ValidationFailedError("A match requires two distinct users")

    def pre_update(self, ctx: AuthContext, current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
        if not ctx.is_admin():
            own_field = "user1_response" if ctx.is_subject(current.get("user1_id")) else "user2_response"
            changes = {key: value for key, value in changes.items() if key == own_field}

        if "user1_response" in changes or "user2_response" in changes:
            status = derive_match_status(
                changes.get("user1_response", current.get("user1_response")),
                changes.get("user2_response", current.get("user2_response")),
                current.get("status", "pending"),
            )
            changes["status"] = status
            if status == MUTUAL_MATCH and current.get("status") != MUTUAL_MATCH:
                changes["matched_at"] = ctx.created_at.isoformat()
        return changes


class ConversationHooks(ResourceHooks):
    def pre_create(self, ctx: AuthContext, document: dict[str, Any]) -> dict[str, Any]:
        participants = [normalize_id(item) for item in document.get("participant_ids") or []]
        document["participant_ids"] = list(dict.fromkeys(item for item in participants if item is not None))
        document.setdefault("last_message_at", None)
        return document

    def pre_update(self, ctx: AuthContext, current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
        if not ctx.is_admin():
            changes.pop("last_message_at", None)
        return changes


class MessageHooks(ResourceHooks):
    """Messages are never removed, only tombstoned."""

    def pre_create(self, ctx: AuthContext, document: dict[str, Any]) -> dict[str, Any]:
        document["sent_at"] = ctx.created_at.isoformat()
        document["is_deleted"] = False
        document["is_edited"] = False
        return document

    def post_create(self, ctx: AuthContext, document: dict[str, Any], service: CrudService) -> None:
        conversation_id = document.get("conversation_id")
        service.execute_as_system(
            lambda system: service.update(
                system,
                ResourceType.CONVERSATION,
                conversation_id,
                {"last_message_at": document["sent_at"]},
            ),
            reason="message.touch_conversation",
            invoked_by=ctx,
        )

    def pre_update(self, ctx: AuthContext, current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
        if "content" in changes:
            changes["is_edited"] = True
            changes["edited_at"] = ctx.created_at.isoformat()
        return changes

    def should_soft_delete(self, ctx: AuthContext, document: dict[str, Any]) -> bool:
        return True


class AssessmentHooks(ResourceHooks):
    def pre_update(self, ctx: AuthContext, current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
        if changes.get("is_completed") and not current.get("is_completed"):
            changes["completed_at"] = ctx.created_at.isoformat()
        return changes


class FeedbackHooks(ResourceHooks):
    def pre_create(self, ctx: AuthContext, document: dict[str, Any]) -> dict[str, Any]:
        if not ctx.is_admin():
            document["status"] = "pending"
        return document

    def pre_update(self, ctx: AuthContext, current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
        if not ctx.is_admin():
            changes.pop("status", None)
        return changes


def build_hooks() -> dict[ResourceType, ResourceHooks]:
    return {
        ResourceType.PROFILE: ProfileHooks(),
        ResourceType.MATCH_PAIR: MatchPairHooks(),
        ResourceType.CONVERSATION: ConversationHooks(),
        ResourceType.MESSAGE: MessageHooks(),
        ResourceType.ASSESSMENT: AssessmentHooks(),
        ResourceType.FEEDBACK: FeedbackHooks(),
    }
