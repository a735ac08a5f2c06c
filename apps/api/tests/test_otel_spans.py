from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from matchmaking.api.routes import get_crud_service
from matchmaking.core.config import get_settings
from matchmaking.main import app
from matchmaking.matching.catalogue import build_crud_service
from matchmaking.otel import setup_inmemory_otel
from matchmaking.platform.security.context import new_context, system_context
from matchmaking.platform.security.errors import AuthorizationError
from matchmaking.platform.security.repository import InMemoryDocumentStore
from matchmaking.platform.security.resources import ResourceType
from matchmaking.platform.security.service import CrudService


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("matchmaking-api")
    exporter.clear()
    return exporter


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


def test_crud_operations_emit_spans_with_outcome(service: CrudService, span_exporter: InMemorySpanExporter) -> None:
    service.find(new_context("u1"), ResourceType.PROFILE)
    with pytest.raises(AuthorizationError):
        service.get_by_id(new_context("u1"), ResourceType.PROFILE, "u2")

    spans = {span.name: span for span in span_exporter.get_finished_spans()}

    assert spans["crud.find"].attributes["crud.resource"] == "profile"
    assert spans["crud.find"].attributes["crud.outcome"] == "success"
    assert spans["crud.find"].attributes["auth.role"] == "user"
    assert spans["crud.get"].attributes["crud.outcome"] == "forbidden"


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    settings = get_settings()
    token = jwt.encode({"sub": "u1", "role": "user", "type": "access"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    response = client.get(
        "/api/profiles/u1",
        headers={"Authorization": f"Bearer {token}", "X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.name == "crud.get" for span in spans)
