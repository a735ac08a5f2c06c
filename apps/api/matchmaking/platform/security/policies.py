from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from threading import Lock
from typing import TYPE_CHECKING, Any

from matchmaking.metrics import observe_policy_evaluation_error
from matchmaking.platform.security.context import AuthContext
from matchmaking.platform.security.errors import PolicyEvaluationError, SecurityError
from matchmaking.platform.security.resources import Operation, ResourceType

if TYPE_CHECKING:
    from matchmaking.platform.security.repository import DocumentLookup


logger = logging.getLogger("matchmaking.security")

PolicyFn = Callable[[AuthContext, Mapping[str, Any], "DocumentLookup"], bool]


@dataclass(frozen=True, slots=True)
class RegisteredPolicy:
    fn: PolicyFn
    admin_bypass: bool = True


class PolicyRegistry:
    """Typed dispatch table from (resource type, operation) to a decision function.

    Evaluation order:

    1. admin and system contexts pass immediately (coarse, resource-agnostic
       default) unless the policy was registered with ``admin_bypass=False``;
    2. a missing policy is an implicit deny;
    3. the policy is invoked with ``(ctx, subject, lookup)``.

    Policies may repeat ``ctx.is_system() or ctx.is_admin()`` checks of their
    own. Those are the fine-grained override layer and stay in place even
    where the default bypass already covers them.
    """

    def __init__(self) -> None:
        self._policies: dict[tuple[ResourceType, Operation], RegisteredPolicy] = {}
        self._frozen = False
        self._lock = Lock()

    def register(
        self,
        resource_type: ResourceType,
        operation: Operation,
        fn: PolicyFn,
        *,
        admin_bypass: bool = True,
    ) -> PolicyFn:
        if not isinstance(resource_type, ResourceType):
            raise TypeError(f"resource_type must be a ResourceType, got {resource_type!r}")
        if not isinstance(operation, Operation):
            raise TypeError(f"operation must be an Operation, got {operation!r}")

        key = (resource_type, operation)
        with self._lock:
            if self._frozen:
                raise RuntimeError("policy registry is frozen")
            if key in self._policies:
                raise ValueError(f"policy already registered for {resource_type}.{operation}")
            self._policies[key] = RegisteredPolicy(fn=fn, admin_bypass=admin_bypass)
        return fn

    def policy(
        self,
        resource_type: ResourceType,
        operation: Operation,
        *,
        admin_bypass: bool = True,
    ) -> Callable[[PolicyFn], PolicyFn]:
        def decorator(fn: PolicyFn) -> PolicyFn:
            return self.register(resource_type, operation, fn, admin_bypass=admin_bypass)

        return decorator

    def is_registered(self, resource_type: ResourceType, operation: Operation) -> bool:
        return (resource_type, operation) in self._policies

    def missing(self, expected: Iterable[tuple[ResourceType, Operation]]) -> list[tuple[ResourceType, Operation]]:
        return [key for key in expected if key not in self._policies]

    def ensure_complete(self, expected: Iterable[tuple[ResourceType, Operation]]) -> None:
        missing = self.missing(expected)
        if missing:
            names = ", ".join(f"{resource}.{operation}" for resource, operation in missing)
            raise ValueError(f"missing policies: {names}")

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def evaluate(
        self,
        resource_type: ResourceType,
        operation: Operation,
        ctx: AuthContext,
        subject: Mapping[str, Any],
        *,
        lookup: DocumentLookup,
    ) -> bool:
        registered = self._policies.get((resource_type, operation))
        if ctx.is_admin() and (registered is None or registered.admin_bypass):
            return True
        if registered is None:
            return False

        try:
            return bool(registered.fn(ctx, subject, lookup))
        except SecurityError:
            observe_policy_evaluation_error(resource=resource_type.value, operation=operation.value)
            raise
        except Exception as exc:
            observe_policy_evaluation_error(resource=resource_type.value, operation=operation.value)
            logger.error(
                "policy.evaluation_failed",
                exc_info=True,
                extra={
                    "resource": resource_type.value,
                    "operation": operation.value,
                    "subject_id": ctx.subject_id,
                    "role": ctx.role.value,
                    "error": str(exc),
                },
            )
            raise PolicyEvaluationError() from exc


_POLICY_REGISTRY: PolicyRegistry | None = None
_POLICY_LOCK = Lock()


def get_policy_registry() -> PolicyRegistry | None:
    """Get the process-wide policy registry, if one was installed."""

    return _POLICY_REGISTRY


def set_policy_registry(registry: PolicyRegistry | None) -> None:
    """Install the process-wide policy registry (done once at start-up)."""

    global _POLICY_REGISTRY
    with _POLICY_LOCK:
        _POLICY_REGISTRY = registry
