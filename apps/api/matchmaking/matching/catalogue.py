from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from matchmaking.core.config import Settings, get_settings
from matchmaking.core.database import SessionLocal
from matchmaking.matching import schemas
from matchmaking.matching.hooks import build_hooks
from matchmaking.matching.lookups import mutual_match_counterparts
from matchmaking.matching.policies import register_policies
from matchmaking.matching.redaction import MATCH_PAIR_REDACTION, MESSAGE_REDACTION, PROFILE_REDACTION
from matchmaking.platform.security.context import AuthContext
from matchmaking.platform.security.filters import Filter, in_
from matchmaking.platform.security.policies import PolicyRegistry, set_policy_registry
from matchmaking.platform.security.repository import DocumentLookup, DocumentStore, InMemoryDocumentStore, SqlDocumentStore
from matchmaking.platform.security.resources import (
    ResourceCatalogue,
    ResourceDescriptor,
    ResourceType,
    ScopeKind,
)
from matchmaking.platform.security.service import CrudService


# Scalar relationship fields that policy lookups filter on; mirrored by the
# expression indexes of the documents table.
INDEXED_FIELDS = ("user1_id", "user2_id", "status", "conversation_id", "sender_id", "user_id")


def visible_profiles(ctx: AuthContext, lookup: DocumentLookup) -> Filter:
    """A user sees their own profile and those of their mutual matches."""

    return in_("id", [ctx.subject_id, *sorted(mutual_match_counterparts(lookup, ctx.subject_id))])


def build_descriptors() -> list[ResourceDescriptor]:
    return [
        ResourceDescriptor(
            resource_type=ResourceType.PROFILE,
            collection="profiles",
            scope=ScopeKind.CUSTOM,
            owner_field="id",
            scope_resolver=visible_profiles,
            protected_fields=frozenset({"deactivated_at"}),
            unique_keys=(("email",),),
            searchable_fields=("name", "bio", "occupation.title", "location.city"),
            create_schema=schemas.ProfileCreate,
            update_schema=schemas.ProfileUpdate,
            redaction=PROFILE_REDACTION,
        ),
        ResourceDescriptor(
            resource_type=ResourceType.MATCH_PAIR,
            collection="match_pairs",
            scope=ScopeKind.PAIR,
            pair_fields=("user1_id", "user2_id"),
            protected_fields=frozenset({"matched_at"}),
            unique_keys=(("user1_id", "user2_id"),),
            default_sort=(("compatibility_score", -1), ("created_at", -1)),
            create_schema=schemas.MatchPairCreate,
            update_schema=schemas.MatchPairUpdate,
            redaction=MATCH_PAIR_REDACTION,
        ),
        ResourceDescriptor(
            resource_type=ResourceType.CONVERSATION,
            collection="conversations",
            scope=ScopeKind.PARTICIPANT_SET,
            participants_field="participant_ids",
            protected_fields=frozenset({"match_id"}),
            default_sort=(("last_message_at", -1), ("created_at", -1)),
            create_schema=schemas.ConversationCreate,
            update_schema=schemas.ConversationUpdate,
        ),
        ResourceDescriptor(
            resource_type=ResourceType.MESSAGE,
            collection="messages",
            scope=ScopeKind.PARENT,
            owner_field="sender_id",
            parent=(ResourceType.CONVERSATION, "conversation_id"),
            protected_fields=frozenset({"sent_at", "is_deleted", "deleted_at", "deleted_by", "message_type"}),
            searchable_fields=("content",),
            default_sort=(("sent_at", -1),),
            create_schema=schemas.MessageCreate,
            update_schema=schemas.MessageUpdate,
            redaction=MESSAGE_REDACTION,
        ),
        ResourceDescriptor(
            resource_type=ResourceType.ASSESSMENT,
            collection="assessments",
            scope=ScopeKind.OWNER,
            owner_field="user_id",
            protected_fields=frozenset({"completed_at"}),
            unique_keys=(("user_id",),),
            create_schema=schemas.AssessmentCreate,
            update_schema=schemas.AssessmentUpdate,
        ),
        ResourceDescriptor(
            resource_type=ResourceType.FEEDBACK,
            collection="feedback",
            scope=ScopeKind.OWNER,
            owner_field="user_id",
            searchable_fields=("title", "content"),
            create_schema=schemas.FeedbackCreate,
            update_schema=schemas.FeedbackUpdate,
        ),
    ]


def build_catalogue(settings: Settings | None = None) -> ResourceCatalogue:
    """Build, check and freeze the resource catalogue and its policy registry."""

    settings = settings or get_settings()
    registry = register_policies(
        PolicyRegistry(),
        edit_window=timedelta(minutes=settings.message_edit_window_minutes),
        delete_window=timedelta(hours=settings.message_delete_window_hours),
    )
    return ResourceCatalogue(build_descriptors(), registry=registry).freeze()


def build_store(settings: Settings | None = None) -> DocumentStore:
    settings = settings or get_settings()
    if settings.storage_backend == "sql":
        return SqlDocumentStore(SessionLocal, indexed_fields=INDEXED_FIELDS)
    if settings.storage_backend == "memory":
        return InMemoryDocumentStore()
    raise ValueError(f"unknown storage backend '{settings.storage_backend}'")


def build_crud_service(store: DocumentStore | None = None, settings: Settings | None = None) -> CrudService:
    settings = settings or get_settings()
    return CrudService(
        store if store is not None else build_store(settings),
        build_catalogue(settings),
        hooks=build_hooks(),
        settings=settings,
    )


@lru_cache
def get_default_crud_service() -> CrudService:
    """Process-wide service used by the HTTP routes and background tasks."""

    service = build_crud_service()
    set_policy_registry(service.registry)
    return service
