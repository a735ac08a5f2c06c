from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from matchmaking.api.routes import get_crud_service
from matchmaking.core.config import get_settings
from matchmaking.logging import JsonLogFormatter
from matchmaking.main import app
from matchmaking.matching.catalogue import build_crud_service
from matchmaking.platform.security.context import system_context
from matchmaking.platform.security.repository import InMemoryDocumentStore
from matchmaking.platform.security.resources import ResourceType
from matchmaking.platform.security.service import CrudService


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def service() -> CrudService:
    crud = build_crud_service(InMemoryDocumentStore())
    for user_id in ("u1", "u2"):
        crud.create(system_context(), ResourceType.PROFILE, {"id": user_id, "email": f"{user_id}@example.com", "name": user_id})
    return crud


@pytest.fixture()
def client(service: CrudService) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_crud_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _headers(subject: str, correlation_id: str) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": subject, "role": "user", "type": "access"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}", "X-Correlation-Id": correlation_id}


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/profiles/u1", headers=_headers("u1", "abc-123"))
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "matchmaking.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/{resource}/{resource_id}"
        and getattr(record, "status_code", None) == 200
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_denials_are_logged_without_policy_details(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/profiles/u2", headers=_headers("u1", "deny-1"))
    assert response.status_code == 403

    denials = [record for record in caplog.records if record.name == "matchmaking.security" and record.getMessage() == "rls.denied"]
    assert denials
    record = denials[-1]
    assert record.levelno == logging.WARNING
    assert getattr(record, "resource", None) == "profile"
    assert getattr(record, "operation", None) == "read"
    assert getattr(record, "subject_id", None) == "u1"
    assert getattr(record, "correlation_id", None) == "deny-1"


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "matchmaking.crud",
            "levelname": "INFO",
            "msg": "crud.operation_failed",
            "resource": "message",
            "outcome": "forbidden",
            "password": "hunter2",
            "correlation_id": "fmt-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "crud.operation_failed"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"resource": "message", "outcome": "forbidden"}
