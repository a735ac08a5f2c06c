from __future__ import annotations

from collections.abc import Generator

import pytest

from matchmaking import audit
from matchmaking.core.celery_app import celery_app
from matchmaking.core.config import get_settings
from matchmaking.matching import tasks
from matchmaking.matching.catalogue import build_crud_service
from matchmaking.platform.security.context import Role, new_context, system_context
from matchmaking.platform.security.repository import InMemoryDocumentStore
from matchmaking.platform.security.resources import ResourceType
from matchmaking.platform.security.service import CrudService


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()


@pytest.fixture()
def service(monkeypatch: pytest.MonkeyPatch) -> CrudService:
    crud = build_crud_service(InMemoryDocumentStore())
    for user_id in ("u1", "u2", "u3"):
        crud.create(system_context(), ResourceType.PROFILE, {"id": user_id, "email": f"{user_id}@example.com", "name": user_id})
    monkeypatch.setattr(tasks, "get_default_crud_service", lambda: crud)
    return crud


def test_tasks_are_registered_by_name() -> None:
    assert "matching.record_match" in celery_app.tasks
    assert "matching.expire_matches" in celery_app.tasks


def test_record_match_task_returns_match_id(service: CrudService) -> None:
    match_id = tasks.record_match_task("u1", "u2", compatibility_score=88, expires_at="2024-06-08T12:00:00Z")

    admin = new_context("ops", Role.ADMIN)
    match = service.get_by_id(admin, ResourceType.MATCH_PAIR, match_id)
    assert (match["user1_id"], match["user2_id"]) == ("u1", "u2")
    assert match["expires_at"].startswith("2024-06-08T12:00:00")
    assert service.get_by_id(admin, ResourceType.PROFILE, "u2")["match_count"] == 1


def test_expire_matches_task_uses_given_moment(service: CrudService) -> None:
    tasks.record_match_task("u1", "u2", expires_at="2024-06-08T12:00:00Z")
    tasks.record_match_task("u1", "u3", expires_at="2024-07-08T12:00:00Z")

    assert tasks.expire_matches_task("2024-06-09T00:00:00Z") == 1
    assert tasks.expire_matches_task("2024-06-09T00:00:00Z") == 0

    admin = new_context("ops", Role.ADMIN)
    statuses = sorted(match["status"] for match in service.find(admin, ResourceType.MATCH_PAIR))
    assert statuses == ["expired", "pending"]
