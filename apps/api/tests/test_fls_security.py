from __future__ import annotations

from collections.abc import Generator

import pytest

from matchmaking import audit
from matchmaking.core.config import get_settings
from matchmaking.matching.catalogue import build_catalogue
from matchmaking.matching.redaction import DELETED_MESSAGE_PLACEHOLDER
from matchmaking.metrics import fls_redacted_fields_total
from matchmaking.platform.security.context import Role, new_context, system_context
from matchmaking.platform.security.fls import redact, redact_many
from matchmaking.platform.security.resources import ResourceCatalogue, ResourceType


PROFILE = {
    "id": "u1",
    "name": "Minsu",
    "email": "minsu@example.com",
    "phone": "010-1234-5678",
    "bio": "Loves hiking",
    "location": {"type": "Point", "coordinates": [126.978, 37.5665], "city": "Seoul"},
    "occupation": {"title": "architect", "income": 5000},
    "social_providers": ["kakao"],
}

MATCH = {
    "id": "m12",
    "user1_id": "u1",
    "user2_id": "u2",
    "status": "user1_liked",
    "compatibility_score": 82.5,
    "compatibility_breakdown": {"values": 90},
    "match_reason": "Shared love of hiking",
    "ai_analysis": {"summary": "good fit"},
}


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()


@pytest.fixture()
def catalogue() -> ResourceCatalogue:
    return build_catalogue()


def test_profile_of_someone_else_hides_contact_and_precise_location(catalogue: ResourceCatalogue) -> None:
    output = redact(new_context("u2"), ResourceType.PROFILE, PROFILE, catalogue=catalogue)

    assert output == {
        "id": "u1",
        "name": "Minsu",
        "bio": "Loves hiking",
        "location": {"type": "Point", "city": "Seoul"},
        "occupation": {"title": "architect"},
    }
    assert PROFILE["email"] == "minsu@example.com"
    assert PROFILE["location"]["coordinates"] == [126.978, 37.5665]


def test_own_profile_is_complete(catalogue: ResourceCatalogue) -> None:
    assert redact(new_context("u1"), ResourceType.PROFILE, PROFILE, catalogue=catalogue) == PROFILE
    assert audit.entries_for("fls.read") == []


def test_match_details_require_mutual_match(catalogue: ResourceCatalogue) -> None:
    pending = redact(new_context("u1"), ResourceType.MATCH_PAIR, MATCH, catalogue=catalogue)
    mutual = redact(new_context("u1"), ResourceType.MATCH_PAIR, {**MATCH, "status": "mutual_match"}, catalogue=catalogue)

    assert set(pending) == {"id", "user1_id", "user2_id", "status", "compatibility_score"}
    assert mutual["match_reason"] == "Shared love of hiking"
    assert mutual["compatibility_breakdown"] == {"values": 90}


def test_deleted_message_content_is_masked(catalogue: ResourceCatalogue) -> None:
    message = {
        "id": "msg1",
        "conversation_id": "c12",
        "sender_id": "u1",
        "content": "something regrettable",
        "attachments": [{"type": "image", "url": "https://cdn.example.com/a.png"}],
        "is_deleted": True,
    }
    live = {**message, "id": "msg2", "is_deleted": False}

    masked, untouched = redact_many(new_context("u2"), ResourceType.MESSAGE, [message, live], catalogue=catalogue)

    assert masked["content"] == DELETED_MESSAGE_PLACEHOLDER
    assert masked["attachments"] == []
    assert untouched == live


def test_redaction_is_idempotent(catalogue: ResourceCatalogue) -> None:
    ctx = new_context("u2")
    for resource_type, document in (
        (ResourceType.PROFILE, PROFILE),
        (ResourceType.MATCH_PAIR, MATCH),
        (ResourceType.MESSAGE, {"id": "msg1", "content": "gone", "is_deleted": True}),
    ):
        once = redact(ctx, resource_type, document, catalogue=catalogue)
        assert redact(ctx, resource_type, once, catalogue=catalogue) == once


def test_admin_and_system_see_everything(catalogue: ResourceCatalogue) -> None:
    for ctx in (new_context("ops", Role.ADMIN), system_context()):
        assert redact(ctx, ResourceType.PROFILE, PROFILE, catalogue=catalogue) == PROFILE
        assert redact(ctx, ResourceType.MATCH_PAIR, MATCH, catalogue=catalogue) == MATCH


def test_redaction_without_rule_returns_copy(catalogue: ResourceCatalogue) -> None:
    conversation = {"id": "c12", "participant_ids": ["u1", "u2"]}

    output = redact(new_context("u1"), ResourceType.CONVERSATION, conversation, catalogue=catalogue)
    output["participant_ids"].append("u3")

    assert conversation["participant_ids"] == ["u1", "u2"]


def test_redaction_is_audited_and_counted(catalogue: ResourceCatalogue) -> None:
    before = fls_redacted_fields_total.labels(resource="profile")._value.get()

    redact(new_context("u2", correlation_id="corr-fls"), ResourceType.PROFILE, PROFILE, catalogue=catalogue)

    after = fls_redacted_fields_total.labels(resource="profile")._value.get()
    assert after == before + 5

    entry = audit.entries_for("fls.read")[-1]
    assert entry["entity_type"] == "security.fls"
    assert entry["entity_id"] == "u1"
    assert entry["actor_subject_id"] == "u2"
    assert entry["correlation_id"] == "corr-fls"
    assert entry["details"]["removed_fields"] == [
        "email",
        "location.coordinates",
        "occupation.income",
        "phone",
        "social_providers",
    ]
