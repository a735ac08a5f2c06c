from __future__ import annotations

import copy
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from matchmaking import audit
from matchmaking.core.config import get_settings
from matchmaking.metrics import observe_fls_redacted_fields
from matchmaking.platform.security.context import AuthContext
from matchmaking.platform.security.resources import ResourceCatalogue, ResourceDescriptor, ResourceType


RelationshipPredicate = Callable[[AuthContext, Mapping[str, Any]], bool]
RedactionTransform = Callable[[AuthContext, dict[str, Any]], Iterable[str]]


@dataclass(frozen=True, slots=True)
class RedactionRule:
    """Which fields a non-privileged viewer loses for one resource type.

    ``owner_hidden_fields`` are dropped unless the viewer is the document's
    subject. ``relationship_hidden_fields`` are dropped while
    ``relationship_visible`` returns False. ``transform`` masks values in
    place and returns the names of the fields it touched; it must leave an
    already masked document unchanged.
    """

    owner_hidden_fields: frozenset[str] = frozenset()
    relationship_hidden_fields: frozenset[str] = frozenset()
    relationship_visible: RelationshipPredicate | None = None
    transform: RedactionTransform | None = None

    def redactable_fields(self) -> frozenset[str]:
        return self.owner_hidden_fields | self.relationship_hidden_fields


def hidden_fields_for(ctx: AuthContext, descriptor: ResourceDescriptor, document: Mapping[str, Any]) -> frozenset[str]:
    rule = descriptor.redaction
    if rule is None or ctx.is_admin():
        return frozenset()

    hidden: set[str] = set()
    if rule.owner_hidden_fields and not ctx.is_subject(descriptor.owner(document)):
        hidden.update(rule.owner_hidden_fields)
    if rule.relationship_hidden_fields and rule.relationship_visible is not None:
        if not rule.relationship_visible(ctx, document):
            hidden.update(rule.relationship_hidden_fields)
    return frozenset(hidden)


def redact(
    ctx: AuthContext,
    resource_type: ResourceType,
    document: Mapping[str, Any],
    *,
    catalogue: ResourceCatalogue,
) -> dict[str, Any]:
    """Return a copy of ``document`` with the fields ``ctx`` may not see removed."""

    output = copy.deepcopy(dict(document))
    descriptor = catalogue.describe(resource_type)
    rule = descriptor.redaction
    if rule is None or ctx.is_admin():
        return output

    removed = sorted(path for path in hidden_fields_for(ctx, descriptor, output) if _drop_path(output, path))
    masked: list[str] = []
    if rule.transform is not None:
        masked = sorted(set(rule.transform(ctx, output)))

    _emit_fls_observability(
        resource=resource_type.value,
        ctx=ctx,
        document=output,
        removed_fields=removed,
        masked_fields=masked,
    )
    return output


def redact_many(
    ctx: AuthContext,
    resource_type: ResourceType,
    documents: Iterable[Mapping[str, Any]],
    *,
    catalogue: ResourceCatalogue,
) -> list[dict[str, Any]]:
    return [redact(ctx, resource_type, document, catalogue=catalogue) for document in documents]


def _drop_path(document: dict[str, Any], path: str) -> bool:
    *parents, leaf = path.split(".")
    current: Any = document
    for part in parents:
        if not isinstance(current, dict) or part not in current:
            return False
        current = current[part]
    if not isinstance(current, dict) or leaf not in current:
        return False
    del current[leaf]
    return True


def _emit_fls_observability(
    *,
    resource: str,
    ctx: AuthContext,
    document: Mapping[str, Any],
    removed_fields: list[str],
    masked_fields: list[str],
) -> None:
    if not removed_fields and not masked_fields:
        return

    observe_fls_redacted_fields(resource=resource, count=len(removed_fields) + len(masked_fields))
    if not get_settings().rls_audit_enabled:
        return

    audit.record(
        actor_subject_id=ctx.subject_id,
        entity_type="security.fls",
        entity_id=str(document.get("id") or resource),
        action="fls.read",
        details={
            "resource": resource,
            "removed_fields": removed_fields,
            "masked_fields": masked_fields,
        },
        correlation_id=ctx.correlation_id,
    )
