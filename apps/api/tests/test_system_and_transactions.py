from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest

from matchmaking import audit
from matchmaking.core.config import get_settings
from matchmaking.matching.catalogue import build_crud_service
from matchmaking.matching.jobs import expire_matches, record_match
from matchmaking.platform.security.context import AuthContext, Role, new_context, system_context
from matchmaking.platform.security.errors import AuthorizationError, ConflictError, TransactionAbortedError
from matchmaking.platform.security.repository import InMemoryDocumentStore
from matchmaking.platform.security.resources import ResourceType
from matchmaking.platform.security.service import CrudService


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()


@pytest.fixture()
def service() -> CrudService:
    crud = build_crud_service(InMemoryDocumentStore())
    for user_id in ("u1", "u2", "u3"):
        crud.create(system_context(), ResourceType.PROFILE, {"id": user_id, "email": f"{user_id}@example.com", "name": user_id})
    return crud


def _feedback(title: str) -> dict:
    return {"type": "service", "rating": 4, "title": title, "content": "text"}


def test_execute_as_system_uses_a_fresh_context(service: CrudService) -> None:
    caller = new_context("u1", correlation_id="corr-sys")
    seen: list[AuthContext] = []

    def _operation(ctx: AuthContext) -> dict:
        seen.append(ctx)
        with pytest.raises(AuthorizationError):
            service.create(caller, ResourceType.MATCH_PAIR, {"user1_id": "u1", "user2_id": "u2"})
        return service.create(ctx, ResourceType.MATCH_PAIR, {"user1_id": "u1", "user2_id": "u2"})

    attributes_before = dict(vars(service))
    created = service.execute_as_system(_operation, reason="test.escalation", invoked_by=caller)

    assert created["user1_id"] == "u1"
    assert seen[0].is_system()
    assert seen[0].correlation_id == "corr-sys"
    assert vars(service) == attributes_before
    assert caller.role == Role.USER

    entry = audit.entries_for("system.escalation")[-1]
    assert entry["entity_type"] == "security.system"
    assert entry["actor_subject_id"] == "u1"
    assert entry["details"] == {"reason": "test.escalation", "invoked_by": "u1"}
    assert entry["correlation_id"] == "corr-sys"


def test_execute_as_system_requires_a_reason(service: CrudService) -> None:
    with pytest.raises(ValueError):
        service.execute_as_system(lambda ctx: None, reason="")


def test_transaction_rolls_back_on_failure(service: CrudService) -> None:
    ctx = new_context("u1")

    def _boom() -> None:
        raise RuntimeError("disk full")

    with pytest.raises(TransactionAbortedError) as exc_info:
        service.execute_in_transaction(
            [lambda: service.create(ctx, ResourceType.FEEDBACK, _feedback("first")), _boom]
        )

    assert "disk full" not in exc_info.value.message
    assert service.count(ctx, ResourceType.FEEDBACK) == 0


def test_transaction_surfaces_security_errors_unchanged(service: CrudService) -> None:
    ctx = new_context("u1")

    with pytest.raises(AuthorizationError):
        service.execute_in_transaction(
            [
                lambda: service.create(ctx, ResourceType.FEEDBACK, _feedback("kept?")),
                lambda: service.create(ctx, ResourceType.MATCH_PAIR, {"user1_id": "u1", "user2_id": "u3"}),
            ]
        )

    assert service.count(ctx, ResourceType.FEEDBACK) == 0


def test_transaction_returns_every_result(service: CrudService) -> None:
    ctx = new_context("u2")

    results = service.execute_in_transaction(
        [lambda: service.create(ctx, ResourceType.FEEDBACK, _feedback(title)) for title in ("a", "b")]
    )

    assert sorted(item["title"] for item in results) == ["a", "b"]
    assert service.count(ctx, ResourceType.FEEDBACK) == 2


def test_record_match_creates_pair_and_bumps_counters(service: CrudService) -> None:
    match = record_match(
        service,
        "u1",
        "u2",
        compatibility_score=87.5,
        compatibility_breakdown={"values": 90},
        match_reason="Both enjoy gardening",
        expires_at=NOW + timedelta(days=7),
    )

    assert match["status"] == "pending"
    assert match["expires_at"].startswith("2024-06-08T12:00:00")
    admin = new_context("ops", Role.ADMIN)
    assert service.get_by_id(admin, ResourceType.PROFILE, "u1")["match_count"] == 1
    assert service.get_by_id(admin, ResourceType.PROFILE, "u2")["match_count"] == 1
    assert service.get_by_id(admin, ResourceType.PROFILE, "u3").get("match_count") is None
    assert audit.entries_for("system.escalation")[-1]["entity_id"] == "matching.record_match"


def test_record_match_is_atomic(service: CrudService) -> None:
    record_match(service, "u1", "u2")

    with pytest.raises(ConflictError):
        record_match(service, "u1", "u2")

    admin = new_context("ops", Role.ADMIN)
    assert service.get_by_id(admin, ResourceType.PROFILE, "u1")["match_count"] == 1
    assert service.count(admin, ResourceType.MATCH_PAIR) == 1


def test_users_cannot_raise_their_own_match_count(service: CrudService) -> None:
    updated = service.update(new_context("u1"), ResourceType.PROFILE, "u1", {"match_count": 99, "bio": "hi"})

    assert updated.get("match_count") is None
    assert updated["bio"] == "hi"


def test_expire_matches_only_touches_open_overdue_pairs(service: CrudService) -> None:
    system = system_context()
    service.create(system, ResourceType.MATCH_PAIR, {"id": "old", "user1_id": "u1", "user2_id": "u2", "expires_at": NOW - timedelta(days=1)})
    service.create(
        system,
        ResourceType.MATCH_PAIR,
        {"id": "done", "user1_id": "u1", "user2_id": "u3", "status": "mutual_match", "expires_at": NOW - timedelta(days=1)},
    )
    service.create(system, ResourceType.MATCH_PAIR, {"id": "fresh", "user1_id": "u2", "user2_id": "u3", "expires_at": NOW + timedelta(days=1)})

    assert expire_matches(service, now=NOW) == 1

    statuses = {match["id"]: match["status"] for match in service.find(system, ResourceType.MATCH_PAIR)}
    assert statuses == {"old": "expired", "done": "mutual_match", "fresh": "pending"}


def test_message_touches_conversation_through_audited_escalation(service: CrudService) -> None:
    system = system_context()
    service.create(system, ResourceType.MATCH_PAIR, {"user1_id": "u1", "user2_id": "u2", "status": "mutual_match"})
    sender = new_context("u1", created_at=NOW, correlation_id="corr-msg")
    conversation = service.create(sender, ResourceType.CONVERSATION, {"participant_ids": ["u1", "u2"]})
    assert conversation["last_message_at"] is None

    service.create(sender, ResourceType.MESSAGE, {"conversation_id": conversation["id"], "content": "Hello!"})

    refreshed = service.get_by_id(new_context("u2"), ResourceType.CONVERSATION, conversation["id"])
    assert refreshed["last_message_at"].startswith("2024-06-01T12:00:00")

    entry = audit.entries_for("system.escalation")[-1]
    assert entry["entity_id"] == "message.touch_conversation"
    assert entry["actor_subject_id"] == "u1"
    assert entry["correlation_id"] == "corr-msg"


def test_users_cannot_set_last_message_at(service: CrudService) -> None:
    service.create(system_context(), ResourceType.MATCH_PAIR, {"user1_id": "u1", "user2_id": "u2", "status": "mutual_match"})
    ctx = new_context("u1")
    conversation = service.create(ctx, ResourceType.CONVERSATION, {"participant_ids": ["u1", "u2"]})

    updated = service.update(ctx, ResourceType.CONVERSATION, conversation["id"], {"last_message_at": NOW.isoformat(), "status": "archived"})

    assert updated["last_message_at"] is None
    assert updated["status"] == "archived"
