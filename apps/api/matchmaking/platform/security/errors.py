from __future__ import annotations

from typing import Any


class SecurityError(Exception):
    """Base error for every failure the CRUD engine reports to callers.

    Messages are safe to show to clients: they never name the policy or the
    relationship that caused a denial.
    """

    code = "internal_error"
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class UnauthenticatedError(SecurityError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Authentication required"


class AuthorizationError(SecurityError):
    """Raised when the policy registry denies an operation (Forbidden)."""

    code = "forbidden"
    status_code = 403
    default_message = "Access denied"

    def __init__(self, resource: str | None = None, operation: str | None = None, message: str | None = None) -> None:
        self.resource = resource
        self.operation = operation
        super().__init__(message)


class ResourceNotFoundError(SecurityError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found"

    def __init__(self, resource: str | None = None, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found" if resource else None)


class ValidationFailedError(SecurityError):
    code = "validation_failed"
    status_code = 422
    default_message = "Validation failed"

    def __init__(self, message: str | None = None, errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class ConflictError(SecurityError):
    code = "conflict"
    status_code = 409
    default_message = "Resource already exists"


class InternalError(SecurityError):
    code = "internal_error"
    status_code = 500
    default_message = "Internal error"


class PolicyEvaluationError(InternalError):
    """A policy predicate or scope lookup failed; the operation is denied."""

    code = "policy_evaluation_failed"
    default_message = "Authorization could not be evaluated"


class TransactionAbortedError(InternalError):
    code = "transaction_aborted"
    default_message = "Transaction aborted"


class StoreError(Exception):
    """Failure reported by a document store backend."""


class DuplicateKeyError(StoreError):
    pass


class DocumentMissingError(StoreError):
    pass
