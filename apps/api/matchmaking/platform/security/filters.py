"""Composable filter expressions over schemaless documents.

Filters are immutable trees. They can be evaluated in-process against a
document (``matches``), rendered to the Mongo-style query language the
document stores speak (``to_mongo``) and parsed back from caller supplied
Mongo-style dicts (``from_mongo``). ``and_`` is the only way RLS conditions
are merged into caller conditions, so neither side can be dropped.
"""

from __future__ import annotations

import math
import re
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from matchmaking.platform.security.errors import ValidationFailedError


EARTH_RADIUS_METERS = 6_371_000.0

_MISSING = object()
_COMPARISON_OPERATORS = {"$gt", "$gte", "$lt", "$lte"}


def get_path(document: Mapping[str, Any], path: str, default: Any = _MISSING) -> Any:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def has_path(document: Mapping[str, Any], path: str) -> bool:
    return get_path(document, path) is not _MISSING


def _coerce(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _values_equal(left: Any, right: Any) -> bool:
    left, right = _coerce(left), _coerce(right)
    if isinstance(left, datetime) or isinstance(right, datetime):
        return parse_timestamp(left) == parse_timestamp(right)
    return left == right


def _candidates(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


class Filter:
    """Base class for filter nodes."""

    __slots__ = ()

    def matches(self, document: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def to_mongo(self) -> dict[str, Any]:
        raise NotImplementedError

    def fields(self) -> frozenset[str]:
        return frozenset()

    def __and__(self, other: Filter) -> Filter:
        return and_(self, other)

    def __or__(self, other: Filter) -> Filter:
        return or_(self, other)

    def __invert__(self) -> Filter:
        return Not(self)


@dataclass(frozen=True, slots=True)
class _MatchAll(Filter):
    def matches(self, document: Mapping[str, Any]) -> bool:
        return True

    def to_mongo(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, slots=True)
class _MatchNone(Filter):
    def matches(self, document: Mapping[str, Any]) -> bool:
        return False

    def to_mongo(self) -> dict[str, Any]:
        return {"id": {"$in": []}}


MATCH_ALL: Filter = _MatchAll()
MATCH_NONE: Filter = _MatchNone()


@dataclass(frozen=True, slots=True)
class Eq(Filter):
    field: str
    value: Any

    def matches(self, document: Mapping[str, Any]) -> bool:
        current = get_path(document, self.field)
        if current is _MISSING:
            return self.value is None
        return any(_values_equal(item, self.value) for item in _candidates(current)) or _values_equal(current, self.value)

    def to_mongo(self) -> dict[str, Any]:
        return {self.field: _coerce(self.value)}

    def fields(self) -> frozenset[str]:
        return frozenset({self.field})


@dataclass(frozen=True, slots=True)
class Ne(Filter):
    field: str
    value: Any

    def matches(self, document: Mapping[str, Any]) -> bool:
        return not Eq(self.field, self.value).matches(document)

    def to_mongo(self) -> dict[str, Any]:
        return {self.field: {"$ne": _coerce(self.value)}}

    def fields(self) -> frozenset[str]:
        return frozenset({self.field})


@dataclass(frozen=True, slots=True)
class In(Filter):
    field: str
    values: tuple[Any, ...]

    def matches(self, document: Mapping[str, Any]) -> bool:
        current = get_path(document, self.field)
        if current is _MISSING:
            return None in self.values
        return any(_values_equal(item, value) for item in _candidates(current) for value in self.values)

    def to_mongo(self) -> dict[str, Any]:
        return {self.field: {"$in": [_coerce(value) for value in self.values]}}

    def fields(self) -> frozenset[str]:
        return frozenset({self.field})


@dataclass(frozen=True, slots=True)
class Contains(Filter):
    """Array membership: the field holds a list containing ``value``."""

    field: str
    value: Any

    def matches(self, document: Mapping[str, Any]) -> bool:
        current = get_path(document, self.field)
        if not isinstance(current, (list, tuple, set, frozenset)):
            return False
        return any(_values_equal(item, self.value) for item in current)

    def to_mongo(self) -> dict[str, Any]:
        return {self.field: _coerce(self.value)}

    def fields(self) -> frozenset[str]:
        return frozenset({self.field})


@dataclass(frozen=True, slots=True)
class Exists(Filter):
    field: str
    present: bool = True

    def matches(self, document: Mapping[str, Any]) -> bool:
        return has_path(document, self.field) == self.present

    def to_mongo(self) -> dict[str, Any]:
        return {self.field: {"$exists": self.present}}

    def fields(self) -> frozenset[str]:
        return frozenset({self.field})


@dataclass(frozen=True, slots=True)
class Compare(Filter):
    field: str
    operator: str
    value: Any

    def __post_init__(self) -> None:
        if self.operator not in _COMPARISON_OPERATORS:
            raise ValidationFailedError(f"Unsupported comparison operator '{self.operator}'")

    def matches(self, document: Mapping[str, Any]) -> bool:
        current = get_path(document, self.field)
        if current is _MISSING or current is None:
            return False
        return any(self._compare(item) for item in _candidates(current))

    def _compare(self, item: Any) -> bool:
        left, right = _coerce(item), _coerce(self.value)
        if isinstance(left, datetime) or isinstance(right, datetime):
            left, right = parse_timestamp(left), parse_timestamp(right)
            if left is None or right is None:
                return False
        try:
            if self.operator == "$gt":
                return left > right
            if self.operator == "$gte":
                return left >= right
            if self.operator == "$lt":
                return left < right
            return left <= right
        except TypeError:
            return False

    def to_mongo(self) -> dict[str, Any]:
        return {self.field: {self.operator: _coerce(self.value)}}

    def fields(self) -> frozenset[str]:
        return frozenset({self.field})


@dataclass(frozen=True, slots=True)
class Regex(Filter):
    field: str
    pattern: str
    ignore_case: bool = False

    def matches(self, document: Mapping[str, Any]) -> bool:
        current = get_path(document, self.field)
        flags = re.IGNORECASE if self.ignore_case else 0
        return any(isinstance(item, str) and re.search(self.pattern, item, flags) for item in _candidates(current))

    def to_mongo(self) -> dict[str, Any]:
        condition: dict[str, Any] = {"$regex": self.pattern}
        if self.ignore_case:
            condition["$options"] = "i"
        return {self.field: condition}

    def fields(self) -> frozenset[str]:
        return frozenset({self.field})


@dataclass(frozen=True, slots=True)
class Near(Filter):
    """Documents whose GeoJSON point lies within ``max_distance`` metres."""

    field: str
    longitude: float
    latitude: float
    max_distance: float

    def matches(self, document: Mapping[str, Any]) -> bool:
        point = _point_coordinates(get_path(document, self.field, None))
        if point is None:
            return False
        return haversine_distance(self.longitude, self.latitude, point[0], point[1]) <= self.max_distance

    def to_mongo(self) -> dict[str, Any]:
        return {
            self.field: {
                "$near": {
                    "$geometry": {"type": "Point", "coordinates": [self.longitude, self.latitude]},
                    "$maxDistance": self.max_distance,
                }
            }
        }

    def fields(self) -> frozenset[str]:
        return frozenset({self.field})


@dataclass(frozen=True, slots=True)
class And(Filter):
    clauses: tuple[Filter, ...]

    def matches(self, document: Mapping[str, Any]) -> bool:
        return all(clause.matches(document) for clause in self.clauses)

    def to_mongo(self) -> dict[str, Any]:
        return {"$and": [clause.to_mongo() for clause in self.clauses]}

    def fields(self) -> frozenset[str]:
        return frozenset().union(*(clause.fields() for clause in self.clauses))


@dataclass(frozen=True, slots=True)
class Or(Filter):
    clauses: tuple[Filter, ...]

    def matches(self, document: Mapping[str, Any]) -> bool:
        return any(clause.matches(document) for clause in self.clauses)

    def to_mongo(self) -> dict[str, Any]:
        return {"$or": [clause.to_mongo() for clause in self.clauses]}

    def fields(self) -> frozenset[str]:
        return frozenset().union(*(clause.fields() for clause in self.clauses))


@dataclass(frozen=True, slots=True)
class Not(Filter):
    clause: Filter

    def matches(self, document: Mapping[str, Any]) -> bool:
        return not self.clause.matches(document)

    def to_mongo(self) -> dict[str, Any]:
        return {"$nor": [self.clause.to_mongo()]}

    def fields(self) -> frozenset[str]:
        return self.clause.fields()


def and_(*filters: Filter | None) -> Filter:
    clauses: list[Filter] = []
    for item in filters:
        if item is None or item == MATCH_ALL:
            continue
        if item == MATCH_NONE:
            return MATCH_NONE
        if isinstance(item, And):
            clauses.extend(item.clauses)
        else:
            clauses.append(item)
    if not clauses:
        return MATCH_ALL
    if len(clauses) == 1:
        return clauses[0]
    return And(tuple(clauses))


def or_(*filters: Filter | None) -> Filter:
    clauses: list[Filter] = []
    for item in filters:
        if item is None or item == MATCH_NONE:
            continue
        if item == MATCH_ALL:
            return MATCH_ALL
        if isinstance(item, Or):
            clauses.extend(item.clauses)
        else:
            clauses.append(item)
    if not clauses:
        return MATCH_NONE
    if len(clauses) == 1:
        return clauses[0]
    return Or(tuple(clauses))


def in_(field: str, values: Iterable[Any]) -> Filter:
    resolved = tuple(dict.fromkeys(_coerce(value) for value in values))
    if not resolved:
        return MATCH_NONE
    return In(field, resolved)


def haversine_distance(lng1: float, lat1: float, lng2: float, lat2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


def _point_coordinates(value: Any) -> tuple[float, float] | None:
    if isinstance(value, Mapping):
        value = value.get("coordinates")
    if isinstance(value, Sequence) and not isinstance(value, str) and len(value) == 2:
        try:
            return float(value[0]), float(value[1])
        except (TypeError, ValueError):
            return None
    return None


def coerce_filter(value: Filter | Mapping[str, Any] | None) -> Filter:
    if value is None:
        return MATCH_ALL
    if isinstance(value, Filter):
        return value
    if isinstance(value, Mapping):
        return from_mongo(value)
    raise ValidationFailedError("Filter must be an object")


def from_mongo(spec: Mapping[str, Any]) -> Filter:
    """Parse a Mongo-style query document into a filter tree.

    Only the operators the document stores understand are accepted; anything
    else (``$where``, ``$expr``...) is rejected as a validation failure.
    """

    clauses: list[Filter] = []
    for key, value in spec.items():
        if key == "$and":
            clauses.append(and_(*(from_mongo(item) for item in _clause_list(key, value))))
        elif key == "$or":
            clauses.append(or_(*(from_mongo(item) for item in _clause_list(key, value))))
        elif key == "$nor":
            clauses.append(Not(or_(*(from_mongo(item) for item in _clause_list(key, value)))))
        elif key.startswith("$"):
            raise ValidationFailedError(f"Unsupported filter operator '{key}'")
        elif isinstance(value, Mapping) and value and all(str(op).startswith("$") for op in value):
            clauses.append(_field_operators(key, value))
        else:
            clauses.append(Eq(key, value))
    return and_(*clauses)


def _clause_list(key: str, value: Any) -> list[Mapping[str, Any]]:
    if not isinstance(value, list) or not all(isinstance(item, Mapping) for item in value):
        raise ValidationFailedError(f"'{key}' expects a list of objects")
    return value


def _field_operators(field: str, operators: Mapping[str, Any]) -> Filter:
    clauses: list[Filter] = []
    for operator, operand in operators.items():
        if operator == "$eq":
            clauses.append(Eq(field, operand))
        elif operator == "$ne":
            clauses.append(Ne(field, operand))
        elif operator in {"$in", "$nin"}:
            if not isinstance(operand, (list, tuple)):
                raise ValidationFailedError(f"'{operator}' expects a list")
            membership = in_(field, operand)
            clauses.append(membership if operator == "$in" else Not(membership))
        elif operator == "$exists":
            clauses.append(Exists(field, bool(operand)))
        elif operator in _COMPARISON_OPERATORS:
            clauses.append(Compare(field, operator, operand))
        elif operator == "$regex":
            options = str(operators.get("$options", ""))
            try:
                re.compile(str(operand))
            except re.error as exc:
                raise ValidationFailedError("Invalid regular expression") from exc
            clauses.append(Regex(field, str(operand), ignore_case="i" in options))
        elif operator == "$options":
            continue
        elif operator in {"$near", "$nearSphere"}:
            clauses.append(_near(field, operand))
        else:
            raise ValidationFailedError(f"Unsupported filter operator '{operator}'")
    return and_(*clauses)


def _near(field: str, operand: Any) -> Near:
    if not isinstance(operand, Mapping):
        raise ValidationFailedError("'$near' expects an object")
    geometry = operand.get("$geometry", operand)
    point = _point_coordinates(geometry)
    max_distance = operand.get("$maxDistance")
    if point is None or not isinstance(max_distance, (int, float)) or max_distance < 0:
        raise ValidationFailedError("'$near' expects a point and a non-negative $maxDistance")
    return Near(field, point[0], point[1], float(max_distance))
