from __future__ import annotations

from collections.abc import Generator

import pytest

from matchmaking.metrics import policy_evaluation_errors_total
from matchmaking.platform.security.context import Role, new_context, system_context
from matchmaking.platform.security.errors import PolicyEvaluationError, UnauthenticatedError
from matchmaking.platform.security.policies import PolicyRegistry, get_policy_registry, set_policy_registry
from matchmaking.platform.security.repository import DocumentLookup, InMemoryDocumentStore
from matchmaking.platform.security.resources import (
    Operation,
    ResourceCatalogue,
    ResourceDescriptor,
    ResourceType,
    ScopeKind,
)


@pytest.fixture()
def registry() -> PolicyRegistry:
    return PolicyRegistry()


@pytest.fixture()
def lookup(registry: PolicyRegistry) -> DocumentLookup:
    catalogue = ResourceCatalogue(
        [ResourceDescriptor(ResourceType.FEEDBACK, "feedback", ScopeKind.OWNER, owner_field="user_id")],
        registry=registry,
    )
    return DocumentLookup(InMemoryDocumentStore(), catalogue)


@pytest.fixture(autouse=True)
def restore_global_registry() -> Generator[None, None, None]:
    previous = get_policy_registry()
    yield
    set_policy_registry(previous)


def _owner_only(ctx, subject, lookup) -> bool:
    return ctx.is_subject(subject.get("user_id"))


def test_registered_policy_decides_for_users(registry: PolicyRegistry, lookup: DocumentLookup) -> None:
    registry.register(ResourceType.FEEDBACK, Operation.READ, _owner_only)

    owner = new_context("u1")
    stranger = new_context("u2")
    document = {"id": "f1", "user_id": "u1"}

    assert registry.evaluate(ResourceType.FEEDBACK, Operation.READ, owner, document, lookup=lookup)
    assert not registry.evaluate(ResourceType.FEEDBACK, Operation.READ, stranger, document, lookup=lookup)


def test_missing_policy_denies_users_but_not_admins(registry: PolicyRegistry, lookup: DocumentLookup) -> None:
    document = {"id": "f1", "user_id": "u1"}

    assert not registry.evaluate(ResourceType.FEEDBACK, Operation.DELETE, new_context("u1"), document, lookup=lookup)
    assert registry.evaluate(
        ResourceType.FEEDBACK, Operation.DELETE, new_context("a1", Role.ADMIN), document, lookup=lookup
    )
    assert registry.evaluate(ResourceType.FEEDBACK, Operation.DELETE, system_context(), document, lookup=lookup)


def test_admin_bypass_skips_policy_function(registry: PolicyRegistry, lookup: DocumentLookup) -> None:
    calls: list[str] = []

    def _record(ctx, subject, lookup) -> bool:
        calls.append(ctx.role.value)
        return False

    registry.register(ResourceType.FEEDBACK, Operation.UPDATE, _record)

    assert registry.evaluate(ResourceType.FEEDBACK, Operation.UPDATE, system_context(), {}, lookup=lookup)
    assert not registry.evaluate(ResourceType.FEEDBACK, Operation.UPDATE, new_context("u1"), {}, lookup=lookup)
    assert calls == ["user"]


def test_policy_can_opt_out_of_admin_bypass(registry: PolicyRegistry, lookup: DocumentLookup) -> None:
    @registry.policy(ResourceType.FEEDBACK, Operation.CREATE, admin_bypass=False)
    def system_only(ctx, subject, lookup) -> bool:
        return ctx.is_system()

    assert not registry.evaluate(ResourceType.FEEDBACK, Operation.CREATE, new_context("a1", Role.ADMIN), {}, lookup=lookup)
    assert registry.evaluate(ResourceType.FEEDBACK, Operation.CREATE, system_context(), {}, lookup=lookup)


def test_failed_lookup_inside_policy_is_internal_error(registry: PolicyRegistry, lookup: DocumentLookup) -> None:
    def _broken(ctx, subject, lookup) -> bool:
        raise ConnectionError("store unreachable")

    registry.register(ResourceType.FEEDBACK, Operation.READ, _broken)
    before = policy_evaluation_errors_total.labels(resource="feedback", operation="read")._value.get()

    with pytest.raises(PolicyEvaluationError) as exc_info:
        registry.evaluate(ResourceType.FEEDBACK, Operation.READ, new_context("u1"), {"user_id": "u1"}, lookup=lookup)

    assert "store unreachable" not in str(exc_info.value)
    assert exc_info.value.status_code == 500
    after = policy_evaluation_errors_total.labels(resource="feedback", operation="read")._value.get()
    assert after == before + 1


def test_security_errors_from_policies_propagate_unchanged(registry: PolicyRegistry, lookup: DocumentLookup) -> None:
    def _needs_login(ctx, subject, lookup) -> bool:
        raise UnauthenticatedError()

    registry.register(ResourceType.FEEDBACK, Operation.READ, _needs_login)

    with pytest.raises(UnauthenticatedError):
        registry.evaluate(ResourceType.FEEDBACK, Operation.READ, new_context("u1"), {}, lookup=lookup)


def test_registration_is_typed_unique_and_freezable(registry: PolicyRegistry) -> None:
    with pytest.raises(TypeError):
        registry.register("feedback", Operation.READ, _owner_only)  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        registry.register(ResourceType.FEEDBACK, "read", _owner_only)  # type: ignore[arg-type]

    registry.register(ResourceType.FEEDBACK, Operation.READ, _owner_only)
    with pytest.raises(ValueError):
        registry.register(ResourceType.FEEDBACK, Operation.READ, _owner_only)

    registry.freeze()
    assert registry.frozen
    with pytest.raises(RuntimeError):
        registry.register(ResourceType.FEEDBACK, Operation.UPDATE, _owner_only)


def test_catalogue_freeze_requires_every_supported_operation(registry: PolicyRegistry) -> None:
    catalogue = ResourceCatalogue(
        [ResourceDescriptor(ResourceType.FEEDBACK, "feedback", ScopeKind.OWNER, owner_field="user_id")],
        registry=registry,
    )
    registry.register(ResourceType.FEEDBACK, Operation.READ, _owner_only)

    assert registry.missing(catalogue.expected_policies()) == [
        (ResourceType.FEEDBACK, Operation.CREATE),
        (ResourceType.FEEDBACK, Operation.UPDATE),
        (ResourceType.FEEDBACK, Operation.DELETE),
    ]
    with pytest.raises(ValueError, match="feedback.create"):
        catalogue.freeze()
    assert not registry.frozen


def test_descriptor_requires_relationship_field_for_scope() -> None:
    with pytest.raises(ValueError):
        ResourceDescriptor(ResourceType.MESSAGE, "messages", ScopeKind.PARENT)
    with pytest.raises(ValueError):
        ResourceDescriptor(ResourceType.MATCH_PAIR, "match_pairs", ScopeKind.PAIR)


def test_global_registry_accessors(registry: PolicyRegistry) -> None:
    set_policy_registry(registry)

    assert get_policy_registry() is registry
