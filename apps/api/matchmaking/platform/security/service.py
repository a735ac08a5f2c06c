"""Generic CRUD service enforcing row-level and field-level security.

Every operation takes the caller's :class:`AuthContext` explicitly. The
order inside each operation is fixed: validate, evaluate policy, mutate,
redact. Reads are narrowed by the row-level builder before reaching the
store and redacted on the way out.
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from collections import Counter
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from matchmaking import audit
from matchmaking.core.config import Settings, get_settings
from matchmaking.metrics import observe_crud_operation, observe_system_escalation
from matchmaking.otel import get_tracer
from matchmaking.platform.security.context import AuthContext, normalize_id, system_context
from matchmaking.platform.security.errors import (
    AuthorizationError,
    ConflictError,
    DocumentMissingError,
    DuplicateKeyError,
    InternalError,
    PolicyEvaluationError,
    ResourceNotFoundError,
    SecurityError,
    StoreError,
    TransactionAbortedError,
    UnauthenticatedError,
    ValidationFailedError,
)
from matchmaking.platform.security.filters import Eq, Filter, Regex, and_, coerce_filter, get_path, or_
from matchmaking.platform.security.fls import redact, redact_many
from matchmaking.platform.security.repository import DocumentLookup, DocumentStore, SortSpec
from matchmaking.platform.security.resources import Operation, ResourceCatalogue, ResourceDescriptor, ResourceType
from matchmaking.platform.security.rls import build_filter, emit_access_denied


logger = logging.getLogger("matchmaking.crud")
security_logger = logging.getLogger("matchmaking.security")

T = TypeVar("T")


class ResourceHooks:
    """Per-resource extension points; the defaults do nothing special.

    Hooks run inside the service's operation, after the policy decision and
    with the same context. ``post_*`` hooks are best-effort: a failure is
    logged and never undoes the primary write.
    """

    def validate_create(self, ctx: AuthContext, data: dict[str, Any], lookup: DocumentLookup) -> None:
        return None

    def pre_create(self, ctx: AuthContext, document: dict[str, Any]) -> dict[str, Any]:
        return document

    def post_create(self, ctx: AuthContext, document: dict[str, Any], service: CrudService) -> None:
        return None

    def pre_update(self, ctx: AuthContext, current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
        return changes

    def post_update(self, ctx: AuthContext, document: dict[str, Any], service: CrudService) -> None:
        return None

    def should_soft_delete(self, ctx: AuthContext, document: dict[str, Any]) -> bool:
        return False

    def soft_delete_patch(self, ctx: AuthContext, document: dict[str, Any]) -> dict[str, Any]:
        return {
            "is_deleted": True,
            "deleted_at": ctx.created_at.isoformat(),
            "deleted_by": ctx.subject_id,
        }

    def post_delete(self, ctx: AuthContext, document: dict[str, Any], service: CrudService) -> None:
        return None


DEFAULT_HOOKS = ResourceHooks()


@dataclass(slots=True)
class Page:
    items: list[dict[str, Any]]
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool


@dataclass(slots=True)
class DeleteResult:
    id: str
    soft: bool
    document: dict[str, Any] = field(default_factory=dict)


def _conflicts(field_name: str, restricted: Iterable[str]) -> bool:
    for item in restricted:
        if field_name == item or field_name.startswith(f"{item}.") or item.startswith(f"{field_name}."):
            return True
    return False


class CrudService:
    def __init__(
        self,
        store: DocumentStore,
        catalogue: ResourceCatalogue,
        *,
        hooks: Mapping[ResourceType, ResourceHooks] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.catalogue = catalogue
        self.registry = catalogue.registry
        self.lookup = DocumentLookup(store, catalogue)
        self.settings = settings or get_settings()
        self._hooks = dict(hooks or {})

    def hooks_for(self, resource_type: ResourceType) -> ResourceHooks:
        return self._hooks.get(resource_type, DEFAULT_HOOKS)

    # -- reads -------------------------------------------------------------

    def find(
        self,
        ctx: AuthContext,
        resource_type: ResourceType,
        caller_filter: Filter | Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._operation(ctx, resource_type, "find"):
            descriptor = self.catalogue.describe(resource_type)
            self._check_restricted_fields(ctx, descriptor, [name for name, _ in sort or ()])
            query = self._scoped_filter(ctx, resource_type, caller_filter)
            documents = self._store_call(
                self.store.find,
                descriptor.collection,
                query,
                sort=sort or descriptor.default_sort,
                skip=skip,
                limit=limit,
            )
            return redact_many(ctx, resource_type, documents, catalogue=self.catalogue)

    def find_one(
        self,
        ctx: AuthContext,
        resource_type: ResourceType,
        caller_filter: Filter | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        with self._operation(ctx, resource_type, "find_one"):
            descriptor = self.catalogue.describe(resource_type)
            query = self._scoped_filter(ctx, resource_type, caller_filter)
            document = self._store_call(self.store.find_one, descriptor.collection, query)
            if document is None:
                # Only a lookup by id distinguishes Forbidden from NotFound.
                requested = coerce_filter(caller_filter)
                if not (isinstance(requested, Eq) and requested.field == "id"):
                    raise ResourceNotFoundError(resource_type.value)
                document = self._fetch(descriptor, requested.value)
            self._authorize(ctx, resource_type, Operation.READ, document)
            return redact(ctx, resource_type, document, catalogue=self.catalogue)

    def get_by_id(self, ctx: AuthContext, resource_type: ResourceType, resource_id: Any) -> dict[str, Any]:
        with self._operation(ctx, resource_type, "get"):
            descriptor = self.catalogue.describe(resource_type)
            document = self._fetch(descriptor, resource_id)
            self._authorize(ctx, resource_type, Operation.READ, document)
            return redact(ctx, resource_type, document, catalogue=self.catalogue)

    def count(
        self,
        ctx: AuthContext,
        resource_type: ResourceType,
        caller_filter: Filter | Mapping[str, Any] | None = None,
    ) -> int:
        with self._operation(ctx, resource_type, "count"):
            descriptor = self.catalogue.describe(resource_type)
            query = self._scoped_filter(ctx, resource_type, caller_filter)
            return self._store_call(self.store.count, descriptor.collection, query)

    def aggregate(
        self,
        ctx: AuthContext,
        resource_type: ResourceType,
        group_by: str,
        caller_filter: Filter | Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Grouped counts over the documents visible to ``ctx``."""

        with self._operation(ctx, resource_type, "aggregate"):
            descriptor = self.catalogue.describe(resource_type)
            self._check_restricted_fields(ctx, descriptor, [group_by])
            query = self._scoped_filter(ctx, resource_type, caller_filter)
            documents = self._store_call(self.store.find, descriptor.collection, query)
            counts = Counter(_group_key(get_path(document, group_by, None)) for document in documents)
            return [
                {"key": key, "count": total}
                for key, total in sorted(counts.items(), key=lambda item: (-item[1], str(item[0])))
            ]

    def paginate(
        self,
        ctx: AuthContext,
        resource_type: ResourceType,
        caller_filter: Filter | Mapping[str, Any] | None = None,
        *,
        page: int = 1,
        limit: int | None = None,
        sort: SortSpec | None = None,
    ) -> Page:
        page = max(int(page), 1)
        limit = limit or self.settings.default_page_size
        limit = min(max(int(limit), 1), self.settings.max_page_size)

        with self._operation(ctx, resource_type, "paginate"):
            descriptor = self.catalogue.describe(resource_type)
            self._check_restricted_fields(ctx, descriptor, [name for name, _ in sort or ()])
            query = self._scoped_filter(ctx, resource_type, caller_filter)
            total = self._store_call(self.store.count, descriptor.collection, query)
            documents = self._store_call(
                self.store.find,
                descriptor.collection,
                query,
                sort=sort or descriptor.default_sort,
                skip=(page - 1) * limit,
                limit=limit,
            )
            pages = math.ceil(total / limit) if total else 0
            return Page(
                items=redact_many(ctx, resource_type, documents, catalogue=self.catalogue),
                page=page,
                limit=limit,
                total=total,
                pages=pages,
                has_next=page < pages,
                has_prev=page > 1,
            )

    def search(
        self,
        ctx: AuthContext,
        resource_type: ResourceType,
        term: str,
        *,
        fields: Sequence[str] | None = None,
        caller_filter: Filter | Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self._require_context(ctx, mutating=False)
        descriptor = self.catalogue.describe(resource_type)
        term = (term or "").strip()
        if not term:
            raise ValidationFailedError("Search term is required")
        search_fields = tuple(fields or descriptor.searchable_fields)
        unknown = [name for name in search_fields if name not in descriptor.searchable_fields]
        if not search_fields or unknown:
            raise ValidationFailedError("Search is not supported on the requested fields")

        pattern = re.escape(term)
        text_filter = or_(*(Regex(name, pattern, ignore_case=True) for name in search_fields))
        return self.find(ctx, resource_type, and_(coerce_filter(caller_filter), text_filter), limit=limit)

    def batch_process(
        self,
        ctx: AuthContext,
        resource_type: ResourceType,
        processor: Callable[[list[dict[str, Any]]], Any],
        caller_filter: Filter | Mapping[str, Any] | None = None,
        *,
        batch_size: int = 100,
    ) -> int:
        """Feed the visible documents to ``processor`` in batches; returns how many were processed."""

        with self._operation(ctx, resource_type, "batch_process"):
            if batch_size < 1:
                raise ValidationFailedError("batch_size must be positive")
            descriptor = self.catalogue.describe(resource_type)
            query = self._scoped_filter(ctx, resource_type, caller_filter)
            processed = 0
            while True:
                documents = self._store_call(
                    self.store.find,
                    descriptor.collection,
                    query,
                    sort=(("created_at", 1), ("id", 1)),
                    skip=processed,
                    limit=batch_size,
                )
                if not documents:
                    break
                processor(redact_many(ctx, resource_type, documents, catalogue=self.catalogue))
                processed += len(documents)
                if len(documents) < batch_size:
                    break

            logger.info(
                "crud.batch_processed",
                extra={"resource": resource_type.value, "subject_id": ctx.subject_id, "processed": processed},
            )
            return processed

    # -- writes ------------------------------------------------------------

    def create(self, ctx: AuthContext, resource_type: ResourceType, data: Mapping[str, Any]) -> dict[str, Any]:
        with self._operation(ctx, resource_type, "create", mutating=True):
            descriptor = self.catalogue.describe(resource_type)
            hooks = self.hooks_for(resource_type)

            proposed = self._validate(descriptor.create_schema, data, partial=False)
            hooks.validate_create(ctx, proposed, self.lookup)
            self._authorize(ctx, resource_type, Operation.CREATE, proposed)

            document = hooks.pre_create(ctx, self._prepare_create(ctx, descriptor, proposed))
            self._check_unique(descriptor, document)
            try:
                stored = self.store.insert(descriptor.collection, document)
            except DuplicateKeyError as exc:
                raise ConflictError() from exc
            except StoreError as exc:
                raise InternalError() from exc

            self._run_post_hook(hooks.post_create, ctx, resource_type, stored)
            return redact(ctx, resource_type, stored, catalogue=self.catalogue)

    def update(
        self,
        ctx: AuthContext,
        resource_type: ResourceType,
        resource_id: Any,
        patch: Mapping[str, Any],
    ) -> dict[str, Any]:
        with self._operation(ctx, resource_type, "update", mutating=True):
            descriptor = self.catalogue.describe(resource_type)
            hooks = self.hooks_for(resource_type)

            changes = self._validate(descriptor.update_schema, patch, partial=True)
            current = self._fetch(descriptor, resource_id)
            self._authorize(ctx, resource_type, Operation.UPDATE, current)

            changes = hooks.pre_update(ctx, current, self._strip_protected(descriptor, changes))
            changes["updated_at"] = ctx.created_at.isoformat()
            try:
                stored = self.store.update(descriptor.collection, current["id"], changes)
            except DocumentMissingError as exc:
                raise ResourceNotFoundError(resource_type.value, current["id"]) from exc
            except StoreError as exc:
                raise InternalError() from exc

            self._run_post_hook(hooks.post_update, ctx, resource_type, stored)
            return redact(ctx, resource_type, stored, catalogue=self.catalogue)

    def delete(self, ctx: AuthContext, resource_type: ResourceType, resource_id: Any) -> DeleteResult:
        with self._operation(ctx, resource_type, "delete", mutating=True):
            descriptor = self.catalogue.describe(resource_type)
            hooks = self.hooks_for(resource_type)

            current = self._fetch(descriptor, resource_id)
            self._authorize(ctx, resource_type, Operation.DELETE, current)

            soft = hooks.should_soft_delete(ctx, current)
            try:
                if soft:
                    result = self.store.update(descriptor.collection, current["id"], hooks.soft_delete_patch(ctx, current))
                else:
                    result = self.store.delete(descriptor.collection, current["id"])
            except DocumentMissingError as exc:
                raise ResourceNotFoundError(resource_type.value, current["id"]) from exc
            except StoreError as exc:
                raise InternalError() from exc

            self._run_post_hook(hooks.post_delete, ctx, resource_type, result)
            return DeleteResult(
                id=current["id"],
                soft=soft,
                document=redact(ctx, resource_type, result, catalogue=self.catalogue),
            )

    # -- escalation and transactions ---------------------------------------

    def execute_as_system(
        self,
        operation: Callable[[AuthContext], T],
        *,
        reason: str,
        invoked_by: AuthContext | None = None,
    ) -> T:
        """Run ``operation`` with a freshly built system context.

        Nothing on the service changes: concurrent callers keep their own
        contexts, and the system context only exists for this call.
        """

        if not reason:
            raise ValueError("a reason is required for system escalation")

        correlation_id = invoked_by.correlation_id if invoked_by is not None else None
        ctx = system_context(correlation_id=correlation_id)
        invoker = invoked_by.subject_id if invoked_by is not None else None

        observe_system_escalation(reason=reason)
        security_logger.info(
            "system.escalation",
            extra={"reason": reason, "subject_id": invoker, "role": ctx.role.value},
        )
        audit.record(
            actor_subject_id=invoker,
            entity_type="security.system",
            entity_id=reason,
            action="system.escalation",
            details={"reason": reason, "invoked_by": invoker},
            correlation_id=correlation_id,
        )
        return operation(ctx)

    def execute_in_transaction(self, operations: Iterable[Callable[[], T]]) -> list[T]:
        """Run ``operations`` atomically; any failure leaves the store unchanged.

        Security errors surface unchanged, anything else as a single
        :class:`TransactionAbortedError`.
        """

        results: list[T] = []
        try:
            with self.store.transaction():
                for operation in operations:
                    results.append(operation())
        except SecurityError:
            raise
        except Exception as exc:
            logger.error("crud.transaction_aborted", exc_info=True, extra={"error": str(exc)})
            raise TransactionAbortedError() from exc
        return results

    # -- internals ---------------------------------------------------------

    @contextmanager
    def _operation(
        self,
        ctx: AuthContext | None,
        resource_type: ResourceType,
        operation: str,
        *,
        mutating: bool = False,
    ) -> Iterator[None]:
        tracer = get_tracer("matchmaking.crud")
        with tracer.start_as_current_span(f"crud.{operation}") as span:
            span.set_attribute("crud.resource", str(resource_type))
            span.set_attribute("crud.operation", operation)
            try:
                self._require_context(ctx, mutating=mutating)
                span.set_attribute("auth.role", ctx.role.value)
                if resource_type not in self.catalogue:
                    raise ValidationFailedError(f"Unknown resource type '{resource_type}'")
                yield
            except SecurityError as exc:
                span.set_attribute("crud.outcome", exc.code)
                observe_crud_operation(resource=str(resource_type), operation=operation, outcome=exc.code)
                logger.info(
                    "crud.operation_failed",
                    extra={
                        "resource": str(resource_type),
                        "operation": operation,
                        "outcome": exc.code,
                        "subject_id": ctx.subject_id if isinstance(ctx, AuthContext) else None,
                    },
                )
                raise
            except Exception:
                span.set_attribute("crud.outcome", "error")
                observe_crud_operation(resource=str(resource_type), operation=operation, outcome="error")
                raise
            else:
                span.set_attribute("crud.outcome", "success")
                observe_crud_operation(resource=str(resource_type), operation=operation, outcome="success")

    @staticmethod
    def _require_context(ctx: AuthContext | None, *, mutating: bool) -> None:
        if not isinstance(ctx, AuthContext):
            raise UnauthenticatedError()
        if mutating and ctx.is_anonymous():
            raise UnauthenticatedError()

    def _scoped_filter(
        self,
        ctx: AuthContext,
        resource_type: ResourceType,
        caller_filter: Filter | Mapping[str, Any] | None,
    ) -> Filter:
        descriptor = self.catalogue.describe(resource_type)
        requested = coerce_filter(caller_filter)
        self._check_restricted_fields(ctx, descriptor, requested.fields())
        return build_filter(ctx, resource_type, requested, catalogue=self.catalogue, lookup=self.lookup)

    @staticmethod
    def _check_restricted_fields(ctx: AuthContext, descriptor: ResourceDescriptor, names: Iterable[str]) -> None:
        # Filtering or grouping on a redactable field would leak its value.
        if ctx.is_admin() or descriptor.redaction is None:
            return
        restricted = descriptor.redaction.redactable_fields()
        if any(_conflicts(name, restricted) for name in names):
            raise ValidationFailedError("Query references restricted fields")

    def _authorize(
        self,
        ctx: AuthContext,
        resource_type: ResourceType,
        operation: Operation,
        subject: Mapping[str, Any],
    ) -> None:
        descriptor = self.catalogue.describe(resource_type)
        resource_id = normalize_id(subject.get("id"))
        if operation not in descriptor.operations:
            emit_access_denied(resource=resource_type.value, operation=operation.value, ctx=ctx, resource_id=resource_id)
            raise AuthorizationError(resource_type.value, operation.value)

        try:
            allowed = self.registry.evaluate(resource_type, operation, ctx, subject, lookup=self.lookup)
        except PolicyEvaluationError:
            emit_access_denied(resource=resource_type.value, operation=operation.value, ctx=ctx, resource_id=resource_id)
            raise
        if not allowed:
            emit_access_denied(resource=resource_type.value, operation=operation.value, ctx=ctx, resource_id=resource_id)
            raise AuthorizationError(resource_type.value, operation.value)

    def _fetch(self, descriptor: ResourceDescriptor, resource_id: Any) -> dict[str, Any]:
        normalized = normalize_id(resource_id)
        if normalized is None:
            raise ResourceNotFoundError(descriptor.resource_type.value)
        document = self._store_call(self.store.find_one, descriptor.collection, Eq("id", normalized))
        if document is None:
            raise ResourceNotFoundError(descriptor.resource_type.value, normalized)
        return document

    @staticmethod
    def _store_call(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return fn(*args, **kwargs)
        except StoreError as exc:
            logger.error("crud.store_failed", exc_info=True, extra={"error": str(exc)})
            raise InternalError() from exc

    @staticmethod
    def _validate(schema: type[BaseModel] | None, data: Mapping[str, Any], *, partial: bool) -> dict[str, Any]:
        if not isinstance(data, Mapping):
            raise ValidationFailedError("Payload must be an object")
        if schema is None:
            return dict(data)
        try:
            model = schema.model_validate(dict(data))
        except ValidationError as exc:
            raise ValidationFailedError(errors=exc.errors(include_url=False, include_context=False)) from exc
        return model.model_dump(mode="json", exclude_unset=partial)

    @staticmethod
    def _prepare_create(ctx: AuthContext, descriptor: ResourceDescriptor, data: dict[str, Any]) -> dict[str, Any]:
        document = dict(data)
        if descriptor.owner_field and descriptor.owner(document) is None and not ctx.is_admin():
            document[descriptor.owner_field] = ctx.subject_id
        document["id"] = normalize_id(document.get("id")) or str(uuid.uuid4())
        now = ctx.created_at.isoformat()
        document["created_at"] = now
        document["updated_at"] = now
        return document

    @staticmethod
    def _strip_protected(descriptor: ResourceDescriptor, changes: dict[str, Any]) -> dict[str, Any]:
        protected = descriptor.immutable_fields()
        return {key: value for key, value in changes.items() if not _conflicts(key, protected)}

    def _check_unique(self, descriptor: ResourceDescriptor, document: Mapping[str, Any]) -> None:
        for key in descriptor.unique_keys:
            values = [get_path(document, name, None) for name in key]
            if any(value is None for value in values):
                continue
            query = and_(*(Eq(name, value) for name, value in zip(key, values)))
            if self._store_call(self.store.find_one, descriptor.collection, query) is not None:
                raise ConflictError()

    def _run_post_hook(
        self,
        hook: Callable[[AuthContext, dict[str, Any], CrudService], None],
        ctx: AuthContext,
        resource_type: ResourceType,
        document: dict[str, Any],
    ) -> None:
        try:
            hook(ctx, document, self)
        except Exception as exc:
            logger.warning(
                "crud.post_hook_failed",
                exc_info=True,
                extra={
                    "resource": resource_type.value,
                    "resource_id": document.get("id"),
                    "subject_id": ctx.subject_id,
                    "error": str(exc),
                },
            )


def _group_key(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return str(value)
    return value
