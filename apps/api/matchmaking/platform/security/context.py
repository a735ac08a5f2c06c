from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum, StrEnum
from typing import Any

from matchmaking.platform.security.errors import UnauthenticatedError


ALL_PERMISSIONS = "all"
SYSTEM_SUBJECT_ID = "system"


class Role(StrEnum):
    ANONYMOUS = "anonymous"
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SYSTEM = "system"


class TokenType(StrEnum):
    ACCESS = "access"
    REFRESH = "refresh"
    SYSTEM = "system"
    ADMIN = "admin"
    INTERNAL = "internal"


class PermissionLevel(IntEnum):
    ANONYMOUS = 0
    USER = 1
    VERIFIED_USER = 2
    PREMIUM_USER = 3
    MODERATOR = 4
    ADMIN = 5
    SYSTEM = 10


_ROLE_LEVELS = {
    Role.ANONYMOUS: PermissionLevel.ANONYMOUS,
    Role.USER: PermissionLevel.USER,
    Role.MODERATOR: PermissionLevel.MODERATOR,
    Role.ADMIN: PermissionLevel.ADMIN,
    Role.SYSTEM: PermissionLevel.SYSTEM,
}

_TOKEN_TYPE_PERMISSIONS = {
    TokenType.SYSTEM: ("system_access", "bypass_rls", "matching_algorithm"),
    TokenType.ADMIN: ("admin_access", "user_management", "content_moderation"),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_id(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return str(value)
    normalized = str(value).strip()
    return normalized or None


def same_id(left: Any, right: Any) -> bool:
    left_id = normalize_id(left)
    return left_id is not None and left_id == normalize_id(right)


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Per-request principal used by policy evaluation, RLS filters and redaction.

    Instances are immutable and never shared across requests. An anonymous
    context never carries a subject id and a system context always carries
    the ``all`` permission.
    """

    subject_id: str | None
    role: Role = Role.USER
    permissions: frozenset[str] = frozenset()
    permission_level: PermissionLevel = PermissionLevel.USER
    token_type: TokenType = TokenType.ACCESS
    created_at: datetime = field(default_factory=utcnow)
    correlation_id: str | None = None

    def __post_init__(self) -> None:
        role = Role(self.role)
        permissions = frozenset(str(item) for item in self.permissions)
        subject_id = normalize_id(self.subject_id)

        if role == Role.ANONYMOUS:
            subject_id = None
        elif subject_id is None:
            raise ValueError(f"role '{role}' requires a subject id")
        if role == Role.SYSTEM:
            permissions = permissions | {ALL_PERMISSIONS}

        created_at = self.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        object.__setattr__(self, "role", role)
        object.__setattr__(self, "permissions", permissions)
        object.__setattr__(self, "subject_id", subject_id)
        object.__setattr__(self, "created_at", created_at)

    def is_admin(self) -> bool:
        return self.role in {Role.ADMIN, Role.SYSTEM}

    def is_system(self) -> bool:
        return self.role == Role.SYSTEM

    def is_anonymous(self) -> bool:
        return self.role == Role.ANONYMOUS

    def has_permission(self, permission: str) -> bool:
        return ALL_PERMISSIONS in self.permissions or permission in self.permissions

    def is_subject(self, value: Any) -> bool:
        return self.subject_id is not None and same_id(self.subject_id, value)


def new_context(
    subject_id: str | None,
    role: Role | str = Role.USER,
    permissions: Iterable[str] = (),
    *,
    token_type: TokenType | str = TokenType.ACCESS,
    permission_level: PermissionLevel | None = None,
    correlation_id: str | None = None,
    created_at: datetime | None = None,
) -> AuthContext:
    resolved_role = Role(role)
    return AuthContext(
        subject_id=None if resolved_role == Role.ANONYMOUS else subject_id,
        role=resolved_role,
        permissions=frozenset(permissions),
        permission_level=permission_level if permission_level is not None else _ROLE_LEVELS[resolved_role],
        token_type=TokenType(token_type),
        created_at=created_at or utcnow(),
        correlation_id=correlation_id,
    )


def anonymous_context(*, correlation_id: str | None = None) -> AuthContext:
    return new_context(None, Role.ANONYMOUS, correlation_id=correlation_id)


def system_context(*, correlation_id: str | None = None, created_at: datetime | None = None) -> AuthContext:
    """Fixed identity for trusted internal work such as automated matching."""

    return new_context(
        SYSTEM_SUBJECT_ID,
        Role.SYSTEM,
        (ALL_PERMISSIONS,),
        token_type=TokenType.INTERNAL,
        correlation_id=correlation_id,
        created_at=created_at,
    )


def context_from_identity(identity: Mapping[str, Any], *, correlation_id: str | None = None) -> AuthContext:
    """Build a context from the identity resolved by the authentication adapter.

    Expected keys: ``subject_id``, ``role``, ``permissions`` and optionally
    ``token_type``, ``is_verified`` and ``is_premium``.
    """

    try:
        token_type = TokenType(identity.get("token_type") or TokenType.ACCESS)
        role = Role(identity.get("role") or Role.USER)
    except ValueError as exc:
        raise UnauthenticatedError("Invalid identity") from exc

    if token_type == TokenType.SYSTEM:
        role = Role.SYSTEM
    elif token_type == TokenType.ADMIN:
        role = Role.ADMIN

    raw_permissions = identity.get("permissions") or []
    if isinstance(raw_permissions, str) or not isinstance(raw_permissions, Iterable):
        raise UnauthenticatedError("Invalid identity")
    permissions = [str(item) for item in raw_permissions]
    permissions.extend(_TOKEN_TYPE_PERMISSIONS.get(token_type, ()))

    level = _ROLE_LEVELS[role]
    if role == Role.USER:
        if identity.get("is_premium"):
            level = PermissionLevel.PREMIUM_USER
        elif identity.get("is_verified"):
            level = PermissionLevel.VERIFIED_USER

    try:
        return new_context(
            identity.get("subject_id"),
            role,
            permissions,
            token_type=token_type,
            permission_level=level,
            correlation_id=correlation_id,
        )
    except ValueError as exc:
        raise UnauthenticatedError("Invalid identity") from exc
