"""Document store adapters used by the CRUD service.

Stores are keyed by collection name and speak :class:`Filter` trees. They do
no authorization of their own: every filter they receive has already been
narrowed by the row-level builder.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Collection, Iterator, Mapping, Sequence
from contextlib import AbstractContextManager, contextmanager
from contextvars import ContextVar
from datetime import datetime
from threading import RLock
from typing import Any, Protocol

from pydantic_core import to_jsonable_python
from sqlalchemy import and_ as sql_and, or_ as sql_or, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql.expression import ColumnElement

from matchmaking.models.document import DocumentRecord, utcnow
from matchmaking.platform.security.context import normalize_id
from matchmaking.platform.security.errors import DocumentMissingError, DuplicateKeyError, StoreError
from matchmaking.platform.security.filters import MATCH_ALL, And, Eq, Filter, In, Or, get_path, parse_timestamp
from matchmaking.platform.security.resources import ResourceCatalogue, ResourceDescriptor, ResourceType


logger = logging.getLogger("matchmaking.crud")

SortSpec = Sequence[tuple[str, int]]


class DocumentStore(Protocol):
    def find(
        self,
        collection: str,
        query: Filter = MATCH_ALL,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    def find_one(self, collection: str, query: Filter = MATCH_ALL) -> dict[str, Any] | None: ...

    def insert(self, collection: str, document: Mapping[str, Any]) -> dict[str, Any]: ...

    def update(self, collection: str, document_id: str, patch: Mapping[str, Any]) -> dict[str, Any]: ...

    def delete(self, collection: str, document_id: str) -> dict[str, Any]: ...

    def count(self, collection: str, query: Filter = MATCH_ALL) -> int: ...

    def transaction(self) -> AbstractContextManager[None]: ...


def normalize_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """JSON-compatible deep copy (UUIDs and datetimes become strings)."""

    return to_jsonable_python(dict(document))


def apply_patch(document: dict[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in patch.items():
        *parents, leaf = key.split(".")
        current = document
        for part in parents:
            child = current.get(part)
            if not isinstance(child, dict):
                child = {}
                current[part] = child
            current = child
        current[leaf] = value
    return document


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        timestamp = parse_timestamp(value) if "T" in value else None
        if timestamp is not None:
            return (2, timestamp.timestamp())
        return (3, value)
    if isinstance(value, datetime):
        return (2, value.timestamp())
    return (4, str(value))


def sort_documents(documents: list[dict[str, Any]], sort: SortSpec | None) -> list[dict[str, Any]]:
    ordered = list(documents)
    for field, direction in reversed(list(sort or ())):
        ordered.sort(key=lambda document: _sort_key(get_path(document, field, None)), reverse=direction < 0)
    return ordered


def _window(documents: list[dict[str, Any]], skip: int, limit: int | None) -> list[dict[str, Any]]:
    start = max(skip, 0)
    if limit is None:
        return documents[start:]
    return documents[start : start + max(limit, 0)]


class InMemoryDocumentStore:
    """Process-local store; transactions snapshot and restore every collection."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = RLock()

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def find(
        self,
        collection: str,
        query: Filter = MATCH_ALL,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            matched = [copy.deepcopy(doc) for doc in self._collection(collection).values() if query.matches(doc)]
        return _window(sort_documents(matched, sort), skip, limit)

    def find_one(self, collection: str, query: Filter = MATCH_ALL) -> dict[str, Any] | None:
        with self._lock:
            for document in self._collection(collection).values():
                if query.matches(document):
                    return copy.deepcopy(document)
        return None

    def insert(self, collection: str, document: Mapping[str, Any]) -> dict[str, Any]:
        stored = normalize_document(document)
        document_id = normalize_id(stored.get("id"))
        if document_id is None:
            raise DuplicateKeyError("document id is required")
        stored["id"] = document_id
        with self._lock:
            documents = self._collection(collection)
            if document_id in documents:
                raise DuplicateKeyError(f"{collection}/{document_id} already exists")
            documents[document_id] = stored
            return copy.deepcopy(stored)

    def update(self, collection: str, document_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        changes = normalize_document(patch)
        with self._lock:
            documents = self._collection(collection)
            current = documents.get(str(document_id))
            if current is None:
                raise DocumentMissingError(f"{collection}/{document_id} does not exist")
            updated = apply_patch(copy.deepcopy(current), changes)
            documents[str(document_id)] = updated
            return copy.deepcopy(updated)

    def delete(self, collection: str, document_id: str) -> dict[str, Any]:
        with self._lock:
            removed = self._collection(collection).pop(str(document_id), None)
        if removed is None:
            raise DocumentMissingError(f"{collection}/{document_id} does not exist")
        return removed

    def count(self, collection: str, query: Filter = MATCH_ALL) -> int:
        with self._lock:
            return sum(1 for document in self._collection(collection).values() if query.matches(document))

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = copy.deepcopy(self._collections)
            try:
                yield
            except BaseException:
                self._collections = snapshot
                raise


def sql_condition(query: Filter, indexed_fields: Collection[str] = ()) -> ColumnElement[bool] | None:
    """SQL prefilter for ``query``, or ``None`` when nothing can be pushed down.

    The condition may select more rows than ``query`` does but never fewer;
    bodies are still matched in process afterwards. Only ``id`` and the
    top-level string fields named in ``indexed_fields`` are translated.
    """

    if isinstance(query, Eq):
        if query.field == "id" and query.value is not None:
            return DocumentRecord.id == str(query.value)
        if query.field in indexed_fields and isinstance(query.value, str):
            return DocumentRecord.body[query.field].as_string() == query.value
        return None
    if isinstance(query, In):
        if query.field == "id" and None not in query.values:
            return DocumentRecord.id.in_([str(value) for value in query.values])
        if query.field in indexed_fields and all(isinstance(value, str) for value in query.values):
            return DocumentRecord.body[query.field].as_string().in_(list(query.values))
        return None
    if isinstance(query, And):
        conditions = [condition for clause in query.clauses if (condition := sql_condition(clause, indexed_fields)) is not None]
        return sql_and(*conditions) if conditions else None
    if isinstance(query, Or):
        conditions = [sql_condition(clause, indexed_fields) for clause in query.clauses]
        if not conditions or any(condition is None for condition in conditions):
            return None
        return sql_or(*conditions)
    return None


class SqlDocumentStore:
    """Documents stored as JSON rows through SQLAlchemy.

    Equality and membership conditions on ``id`` and on ``indexed_fields``
    reach SQL through :func:`sql_condition`; everything else is evaluated in
    process against the decoded bodies. Inside
    ``transaction()`` every primitive joins the same session, tracked per
    execution context.
    """

    def __init__(self, session_factory: Callable[[], Session], *, indexed_fields: Collection[str] = ()) -> None:
        self._session_factory = session_factory
        self.indexed_fields = frozenset(indexed_fields)
        self._active_session: ContextVar[Session | None] = ContextVar(
            f"sql_document_store_session_{id(self)}", default=None
        )

    @contextmanager
    def _session(self) -> Iterator[Session]:
        active = self._active_session.get()
        if active is not None:
            try:
                yield active
                active.flush()
            except IntegrityError as exc:
                raise DuplicateKeyError(str(exc.orig)) from exc
            except SQLAlchemyError as exc:
                raise StoreError(str(exc)) from exc
            return

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise DuplicateKeyError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(str(exc)) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def _load(self, session: Session, collection: str, query: Filter) -> list[dict[str, Any]]:
        statement = select(DocumentRecord).where(DocumentRecord.collection == collection)
        condition = sql_condition(query, self.indexed_fields)
        if condition is not None:
            statement = statement.where(condition)
        statement = statement.order_by(DocumentRecord.created_at, DocumentRecord.id)
        bodies = [copy.deepcopy(record.body) for record in session.scalars(statement)]
        return [body for body in bodies if query.matches(body)]

    def find(
        self,
        collection: str,
        query: Filter = MATCH_ALL,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._session() as session:
            documents = self._load(session, collection, query)
        return _window(sort_documents(documents, sort), skip, limit)

    def find_one(self, collection: str, query: Filter = MATCH_ALL) -> dict[str, Any] | None:
        documents = self.find(collection, query, limit=1)
        return documents[0] if documents else None

    def insert(self, collection: str, document: Mapping[str, Any]) -> dict[str, Any]:
        body = normalize_document(document)
        document_id = normalize_id(body.get("id"))
        if document_id is None:
            raise DuplicateKeyError("document id is required")
        body["id"] = document_id
        created_at = parse_timestamp(body.get("created_at")) or utcnow()

        with self._session() as session:
            if session.get(DocumentRecord, (collection, document_id)) is not None:
                raise DuplicateKeyError(f"{collection}/{document_id} already exists")
            session.add(
                DocumentRecord(
                    collection=collection,
                    id=document_id,
                    body=body,
                    created_at=created_at,
                    updated_at=created_at,
                )
            )
            session.flush()
        return copy.deepcopy(body)

    def update(self, collection: str, document_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        changes = normalize_document(patch)
        with self._session() as session:
            record = session.get(DocumentRecord, (collection, str(document_id)))
            if record is None:
                raise DocumentMissingError(f"{collection}/{document_id} does not exist")
            body = apply_patch(copy.deepcopy(record.body), changes)
            record.body = body
            record.updated_at = utcnow()
            session.flush()
        return copy.deepcopy(body)

    def delete(self, collection: str, document_id: str) -> dict[str, Any]:
        with self._session() as session:
            record = session.get(DocumentRecord, (collection, str(document_id)))
            if record is None:
                raise DocumentMissingError(f"{collection}/{document_id} does not exist")
            body = copy.deepcopy(record.body)
            session.delete(record)
            session.flush()
        return body

    def count(self, collection: str, query: Filter = MATCH_ALL) -> int:
        with self._session() as session:
            return len(self._load(session, collection, query))

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._active_session.get() is not None:
            yield
            return

        session = self._session_factory()
        token = self._active_session.set(session)
        try:
            yield
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("store.transaction_failed", exc_info=True, extra={"error": str(exc)})
            raise StoreError(str(exc)) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            self._active_session.reset(token)
            session.close()


class DocumentLookup:
    """Read-only, unfiltered access to related documents for policy predicates.

    Policies use it to resolve relationships (mutual matches, conversation
    membership). It is never handed to callers and never returns anything to
    them directly.
    """

    def __init__(self, store: DocumentStore, catalogue: ResourceCatalogue) -> None:
        self._store = store
        self._catalogue = catalogue

    def _collection(self, resource_type: ResourceType) -> str:
        return self._catalogue.describe(resource_type).collection

    def get(self, resource_type: ResourceType, document_id: Any) -> dict[str, Any] | None:
        normalized = normalize_id(document_id)
        if normalized is None:
            return None
        return self._store.find_one(self._collection(resource_type), Eq("id", normalized))

    def find(
        self,
        resource_type: ResourceType,
        query: Filter = MATCH_ALL,
        *,
        sort: SortSpec | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return self._store.find(self._collection(resource_type), query, sort=sort, limit=limit)

    def exists(self, resource_type: ResourceType, query: Filter) -> bool:
        return self._store.find_one(self._collection(resource_type), query) is not None

    def ids(self, resource_type: ResourceType, query: Filter = MATCH_ALL) -> list[str]:
        return [str(document["id"]) for document in self.find(resource_type, query) if document.get("id") is not None]

    def describe(self, resource_type: ResourceType) -> ResourceDescriptor:
        return self._catalogue.describe(resource_type)
