from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from matchmaking import audit
from matchmaking.core.config import get_settings
from matchmaking.metrics import observe_policy_evaluation_error, observe_rls_denied
from matchmaking.platform.security.context import AuthContext
from matchmaking.platform.security.errors import PolicyEvaluationError, SecurityError
from matchmaking.platform.security.filters import (
    MATCH_ALL,
    MATCH_NONE,
    Contains,
    Eq,
    Filter,
    and_,
    coerce_filter,
    in_,
    or_,
)
from matchmaking.platform.security.resources import ResourceCatalogue, ResourceType, ScopeKind

if TYPE_CHECKING:
    from matchmaking.platform.security.repository import DocumentLookup


logger = logging.getLogger("matchmaking.security")


def is_admin_bypass(ctx: AuthContext) -> bool:
    return ctx.is_admin()


def build_filter(
    ctx: AuthContext,
    resource_type: ResourceType,
    caller_filter: Filter | Mapping[str, Any] | None = None,
    *,
    catalogue: ResourceCatalogue,
    lookup: DocumentLookup,
) -> Filter:
    """Merge the caller's conditions with the row-level scope of ``ctx``.

    The result is only ever narrower than the caller filter. Admin and system
    contexts get the caller filter back unchanged.
    """

    requested = coerce_filter(caller_filter)
    if is_admin_bypass(ctx):
        return requested
    return and_(requested, scope_filter(ctx, resource_type, catalogue=catalogue, lookup=lookup))


def scope_filter(
    ctx: AuthContext,
    resource_type: ResourceType,
    *,
    catalogue: ResourceCatalogue,
    lookup: DocumentLookup,
) -> Filter:
    """Row-level condition describing every document ``ctx`` may see."""

    if is_admin_bypass(ctx):
        return MATCH_ALL
    if ctx.subject_id is None:
        return MATCH_NONE

    descriptor = catalogue.describe(resource_type)
    subject_id = ctx.subject_id

    if descriptor.scope == ScopeKind.OWNER:
        return Eq(descriptor.owner_field, subject_id)
    if descriptor.scope == ScopeKind.PAIR:
        first, second = descriptor.pair_fields
        return or_(Eq(first, subject_id), Eq(second, subject_id))
    if descriptor.scope == ScopeKind.PARTICIPANT_SET:
        return Contains(descriptor.participants_field, subject_id)

    try:
        if descriptor.scope == ScopeKind.PARENT:
            parent_type, parent_field = descriptor.parent
            parent_scope = scope_filter(ctx, parent_type, catalogue=catalogue, lookup=lookup)
            return in_(parent_field, lookup.ids(parent_type, parent_scope))
        return descriptor.scope_resolver(ctx, lookup)
    except SecurityError:
        raise
    except Exception as exc:
        observe_policy_evaluation_error(resource=resource_type.value, operation="scope")
        logger.error(
            "rls.scope_resolution_failed",
            exc_info=True,
            extra={"resource": resource_type.value, "subject_id": subject_id, "error": str(exc)},
        )
        raise PolicyEvaluationError() from exc


def emit_access_denied(
    *,
    resource: str,
    operation: str,
    ctx: AuthContext,
    resource_id: str | None = None,
) -> None:
    observe_rls_denied(resource=resource, operation=operation)
    logger.warning(
        "rls.denied",
        extra={
            "resource": resource,
            "operation": operation,
            "resource_id": resource_id,
            "subject_id": ctx.subject_id,
            "role": ctx.role.value,
        },
    )
    if not get_settings().rls_audit_enabled:
        return

    audit.record(
        actor_subject_id=ctx.subject_id,
        entity_type="security.rls",
        entity_id=resource_id or resource,
        action="rls.denied",
        details={
            "resource": resource,
            "operation": operation,
            "role": ctx.role.value,
        },
        correlation_id=ctx.correlation_id,
    )
