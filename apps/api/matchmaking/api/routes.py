from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import Response

from matchmaking.core.auth import get_auth_context
from matchmaking.core.config import get_settings
from matchmaking.matching.catalogue import get_default_crud_service
from matchmaking.metrics import generate_metrics_payload, metrics_content_type
from matchmaking.platform.security.context import AuthContext
from matchmaking.platform.security.errors import AuthorizationError, ResourceNotFoundError, ValidationFailedError
from matchmaking.platform.security.resources import ResourceType
from matchmaking.platform.security.service import CrudService


RESOURCE_PATHS = {
    "profiles": ResourceType.PROFILE,
    "matches": ResourceType.MATCH_PAIR,
    "conversations": ResourceType.CONVERSATION,
    "messages": ResourceType.MESSAGE,
    "assessments": ResourceType.ASSESSMENT,
    "feedback": ResourceType.FEEDBACK,
}

router = APIRouter()
resources_router = APIRouter(prefix="/api", tags=["resources"])


def get_crud_service() -> CrudService:
    return get_default_crud_service()


def _resource(resource: str) -> ResourceType:
    try:
        return RESOURCE_PATHS[resource]
    except KeyError:
        raise ResourceNotFoundError(resource) from None


def _parse_filter(raw: str | None) -> dict[str, Any] | None:
    if raw is None or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationFailedError("filter must be valid JSON") from exc
    if not isinstance(parsed, dict):
        raise ValidationFailedError("filter must be a JSON object")
    return parsed


def _parse_sort(raw: str | None) -> list[tuple[str, int]] | None:
    if not raw:
        return None
    sort: list[tuple[str, int]] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        sort.append((item[1:], -1) if item.startswith("-") else (item, 1))
    return sort or None


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(ctx: AuthContext = Depends(get_auth_context)) -> dict[str, Any]:
    return {
        "subject_id": ctx.subject_id,
        "role": ctx.role.value,
        "permissions": sorted(ctx.permissions),
        "permission_level": int(ctx.permission_level),
        "token_type": ctx.token_type.value,
    }


@router.get("/metrics", tags=["system"])
def metrics(ctx: AuthContext = Depends(get_auth_context)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise ResourceNotFoundError("metrics")
    if not (ctx.is_admin() or ctx.has_permission("system.metrics.read")):
        raise AuthorizationError("metrics", "read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())


@resources_router.get("/{resource}")
def list_resources(
    resource: str,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    filter_: str | None = Query(default=None, alias="filter"),
    sort: str | None = Query(default=None),
    ctx: AuthContext = Depends(get_auth_context),
    service: CrudService = Depends(get_crud_service),
) -> dict[str, Any]:
    result = service.paginate(
        ctx,
        _resource(resource),
        _parse_filter(filter_),
        page=page,
        limit=limit,
        sort=_parse_sort(sort),
    )
    return asdict(result)


@resources_router.get("/{resource}/count")
def count_resources(
    resource: str,
    filter_: str | None = Query(default=None, alias="filter"),
    ctx: AuthContext = Depends(get_auth_context),
    service: CrudService = Depends(get_crud_service),
) -> dict[str, int]:
    return {"count": service.count(ctx, _resource(resource), _parse_filter(filter_))}


@resources_router.get("/{resource}/search")
def search_resources(
    resource: str,
    q: str = Query(min_length=1),
    limit: int | None = Query(default=None, ge=1),
    ctx: AuthContext = Depends(get_auth_context),
    service: CrudService = Depends(get_crud_service),
) -> dict[str, Any]:
    limit = min(limit or get_settings().default_page_size, get_settings().max_page_size)
    return {"items": service.search(ctx, _resource(resource), q, limit=limit)}


@resources_router.get("/{resource}/aggregate")
def aggregate_resources(
    resource: str,
    group_by: str = Query(min_length=1),
    filter_: str | None = Query(default=None, alias="filter"),
    ctx: AuthContext = Depends(get_auth_context),
    service: CrudService = Depends(get_crud_service),
) -> dict[str, Any]:
    return {"groups": service.aggregate(ctx, _resource(resource), group_by, _parse_filter(filter_))}


@resources_router.get("/{resource}/{resource_id}")
def get_resource(
    resource: str,
    resource_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    service: CrudService = Depends(get_crud_service),
) -> dict[str, Any]:
    return service.get_by_id(ctx, _resource(resource), resource_id)


@resources_router.post("/{resource}", status_code=status.HTTP_201_CREATED)
def create_resource(
    resource: str,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(get_auth_context),
    service: CrudService = Depends(get_crud_service),
) -> dict[str, Any]:
    return service.create(ctx, _resource(resource), payload)


@resources_router.patch("/{resource}/{resource_id}")
def update_resource(
    resource: str,
    resource_id: str,
    payload: dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(get_auth_context),
    service: CrudService = Depends(get_crud_service),
) -> dict[str, Any]:
    return service.update(ctx, _resource(resource), resource_id, payload)


@resources_router.delete("/{resource}/{resource_id}")
def delete_resource(
    resource: str,
    resource_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    service: CrudService = Depends(get_crud_service),
) -> dict[str, Any]:
    return asdict(service.delete(ctx, _resource(resource), resource_id))


router.include_router(resources_router)
