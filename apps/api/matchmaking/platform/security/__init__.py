from matchmaking.platform.security.context import (
    AuthContext,
    PermissionLevel,
    Role,
    TokenType,
    anonymous_context,
    context_from_identity,
    new_context,
    system_context,
)
from matchmaking.platform.security.errors import (
    AuthorizationError,
    ConflictError,
    InternalError,
    PolicyEvaluationError,
    ResourceNotFoundError,
    SecurityError,
    TransactionAbortedError,
    UnauthenticatedError,
    ValidationFailedError,
)
from matchmaking.platform.security.filters import MATCH_ALL, MATCH_NONE, Filter, and_, from_mongo, or_
from matchmaking.platform.security.fls import RedactionRule, redact, redact_many
from matchmaking.platform.security.policies import PolicyRegistry, get_policy_registry, set_policy_registry
from matchmaking.platform.security.repository import (
    DocumentLookup,
    DocumentStore,
    InMemoryDocumentStore,
    SqlDocumentStore,
)
from matchmaking.platform.security.resources import (
    Operation,
    ResourceCatalogue,
    ResourceDescriptor,
    ResourceType,
    ScopeKind,
)
from matchmaking.platform.security.rls import build_filter, is_admin_bypass
from matchmaking.platform.security.service import CrudService, DeleteResult, Page, ResourceHooks

__all__ = [
    "AuthContext",
    "PermissionLevel",
    "Role",
    "TokenType",
    "anonymous_context",
    "context_from_identity",
    "new_context",
    "system_context",
    "AuthorizationError",
    "ConflictError",
    "InternalError",
    "PolicyEvaluationError",
    "ResourceNotFoundError",
    "SecurityError",
    "TransactionAbortedError",
    "UnauthenticatedError",
    "ValidationFailedError",
    "MATCH_ALL",
    "MATCH_NONE",
    "Filter",
    "and_",
    "or_",
    "from_mongo",
    "RedactionRule",
    "redact",
    "redact_many",
    "PolicyRegistry",
    "get_policy_registry",
    "set_policy_registry",
    "DocumentLookup",
    "DocumentStore",
    "InMemoryDocumentStore",
    "SqlDocumentStore",
    "Operation",
    "ResourceCatalogue",
    "ResourceDescriptor",
    "ResourceType",
    "ScopeKind",
    "build_filter",
    "is_admin_bypass",
    "CrudService",
    "DeleteResult",
    "Page",
    "ResourceHooks",
]
