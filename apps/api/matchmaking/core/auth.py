from __future__ import annotations

from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from matchmaking.core.config import get_settings
from matchmaking.platform.security.context import (
    AuthContext,
    TokenType,
    anonymous_context,
    context_from_identity,
)
from matchmaking.platform.security.errors import UnauthenticatedError


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return ""
    return auth_header[len("Bearer ") :].strip()


def identity_from_claims(claims: dict[str, Any]) -> dict[str, Any]:
    """Map verified JWT claims onto the identity shape the engine understands."""

    return {
        "subject_id": claims.get("sub"),
        "role": claims.get("role"),
        "permissions": claims.get("permissions") or [],
        "token_type": claims.get("type") or TokenType.ACCESS.value,
        "is_verified": bool(claims.get("is_verified", False)),
        "is_premium": bool(claims.get("is_premium", False)),
    }


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise UnauthenticatedError("Invalid or expired token") from exc


async def get_auth_context(request: Request) -> AuthContext:
    correlation_id = getattr(request.state, "correlation_id", None)
    token = _bearer_token(request)
    if not token:
        return anonymous_context(correlation_id=correlation_id)

    claims = decode_token(token)
    if claims.get("type") == TokenType.REFRESH.value:
        raise UnauthenticatedError("Refresh tokens cannot be used for API access")
    return context_from_identity(identity_from_claims(claims), correlation_id=correlation_id)
