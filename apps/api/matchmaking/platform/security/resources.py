from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from matchmaking.platform.security.context import AuthContext, normalize_id
from matchmaking.platform.security.filters import Filter, get_path

if TYPE_CHECKING:
    from matchmaking.platform.security.fls import RedactionRule
    from matchmaking.platform.security.policies import PolicyRegistry
    from matchmaking.platform.security.repository import DocumentLookup


class ResourceType(StrEnum):
    PROFILE = "profile"
    MATCH_PAIR = "match_pair"
    CONVERSATION = "conversation"
    MESSAGE = "message"
    ASSESSMENT = "assessment"
    FEEDBACK = "feedback"


class Operation(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ScopeKind(StrEnum):
    OWNER = "owner"
    PAIR = "pair"
    PARTICIPANT_SET = "participant_set"
    PARENT = "parent"
    CUSTOM = "custom"


ScopeResolver = Callable[[AuthContext, "DocumentLookup"], Filter]

ALL_OPERATIONS = frozenset(Operation)
BASE_PROTECTED_FIELDS = frozenset({"id", "created_at"})


@dataclass(frozen=True, slots=True)
class ResourceDescriptor:
    """Static description of one protected resource type.

    The engine never needs the business schema: only the relationship fields
    named here and whatever the registered policies inspect.
    """

    resource_type: ResourceType
    collection: str
    scope: ScopeKind
    owner_field: str | None = None
    pair_fields: tuple[str, str] | None = None
    participants_field: str | None = None
    parent: tuple[ResourceType, str] | None = None
    scope_resolver: ScopeResolver | None = None
    operations: frozenset[Operation] = ALL_OPERATIONS
    protected_fields: frozenset[str] = frozenset()
    unique_keys: tuple[tuple[str, ...], ...] = ()
    searchable_fields: tuple[str, ...] = ()
    default_sort: tuple[tuple[str, int], ...] = (("created_at", -1),)
    create_schema: type[BaseModel] | None = None
    update_schema: type[BaseModel] | None = None
    redaction: RedactionRule | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        required = {
            ScopeKind.OWNER: self.owner_field,
            ScopeKind.PAIR: self.pair_fields,
            ScopeKind.PARTICIPANT_SET: self.participants_field,
            ScopeKind.PARENT: self.parent,
            ScopeKind.CUSTOM: self.scope_resolver,
        }
        if required[self.scope] is None:
            raise ValueError(f"{self.resource_type}: scope '{self.scope}' is missing its relationship field")

    def owner(self, document: Mapping[str, Any]) -> str | None:
        if self.owner_field is None:
            return None
        return normalize_id(get_path(document, self.owner_field, None))

    def participants(self, document: Mapping[str, Any]) -> frozenset[str]:
        ids: set[str | None] = {self.owner(document)}
        if self.pair_fields is not None:
            ids.update(normalize_id(get_path(document, name, None)) for name in self.pair_fields)
        if self.participants_field is not None:
            members = get_path(document, self.participants_field, None) or []
            if isinstance(members, (list, tuple, set, frozenset)):
                ids.update(normalize_id(member) for member in members)
        ids.discard(None)
        return frozenset(item for item in ids if item is not None)

    def parent_id(self, document: Mapping[str, Any]) -> str | None:
        if self.parent is None:
            return None
        return normalize_id(get_path(document, self.parent[1], None))

    def relationship_fields(self) -> frozenset[str]:
        names: set[str] = set()
        if self.owner_field:
            names.add(self.owner_field)
        if self.pair_fields:
            names.update(self.pair_fields)
        if self.participants_field:
            names.add(self.participants_field)
        if self.parent:
            names.add(self.parent[1])
        return frozenset(names)

    def immutable_fields(self) -> frozenset[str]:
        """Fields an update payload may never change (ownership included)."""

        return BASE_PROTECTED_FIELDS | self.relationship_fields() | self.protected_fields


class ResourceCatalogue:
    """Process-wide table of resource descriptors and their policy registry."""

    def __init__(self, descriptors: Iterable[ResourceDescriptor], *, registry: PolicyRegistry) -> None:
        self._descriptors: dict[ResourceType, ResourceDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.resource_type in self._descriptors:
                raise ValueError(f"duplicate descriptor for {descriptor.resource_type}")
            self._descriptors[descriptor.resource_type] = descriptor
        self.registry = registry

        for descriptor in self._descriptors.values():
            if descriptor.parent is not None and descriptor.parent[0] not in self._descriptors:
                raise ValueError(f"{descriptor.resource_type}: unknown parent {descriptor.parent[0]}")

    def describe(self, resource_type: ResourceType) -> ResourceDescriptor:
        try:
            return self._descriptors[resource_type]
        except KeyError:
            raise ValueError(f"resource type '{resource_type}' is not catalogued") from None

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._descriptors

    def __iter__(self) -> Iterator[ResourceDescriptor]:
        return iter(self._descriptors.values())

    @property
    def resource_types(self) -> tuple[ResourceType, ...]:
        return tuple(self._descriptors)

    def expected_policies(self) -> list[tuple[ResourceType, Operation]]:
        return [
            (descriptor.resource_type, operation)
            for descriptor in self._descriptors.values()
            for operation in Operation
            if operation in descriptor.operations
        ]

    def freeze(self) -> ResourceCatalogue:
        """Check every supported operation has a policy and lock the registry."""

        self.registry.ensure_complete(self.expected_policies())
        self.registry.freeze()
        return self
