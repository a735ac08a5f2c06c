from __future__ import annotations

from datetime import datetime, timezone

import pytest

from matchmaking.platform.security.errors import ValidationFailedError
from matchmaking.platform.security.filters import (
    MATCH_ALL,
    MATCH_NONE,
    And,
    Compare,
    Contains,
    Eq,
    In,
    Near,
    Or,
    and_,
    from_mongo,
    haversine_distance,
    in_,
    or_,
)


SEOUL = [126.9780, 37.5665]
BUSAN = [129.0756, 35.1796]


def test_eq_matches_scalars_and_array_members() -> None:
    assert Eq("status", "mutual_match").matches({"status": "mutual_match"})
    assert Eq("participant_ids", "u1").matches({"participant_ids": ["u1", "u2"]})
    assert not Eq("status", "pending").matches({"status": "mutual_match"})
    assert Eq("deleted_at", None).matches({})


def test_nested_paths_and_membership() -> None:
    document = {"occupation": {"title": "architect", "income": 100}}

    assert Eq("occupation.title", "architect").matches(document)
    assert In("occupation.title", ("nurse", "architect")).matches(document)
    assert not Contains("occupation.title", "architect").matches(document)


def test_and_never_drops_either_side() -> None:
    merged = and_(Eq("a", 1), Eq("b", 2))

    assert isinstance(merged, And)
    assert merged.matches({"a": 1, "b": 2})
    assert not merged.matches({"a": 1})
    assert and_(MATCH_ALL, Eq("a", 1)) == Eq("a", 1)
    assert and_(Eq("a", 1), MATCH_NONE) == MATCH_NONE
    assert and_() == MATCH_ALL


def test_or_and_empty_membership() -> None:
    assert or_() == MATCH_NONE
    assert or_(Eq("a", 1), MATCH_ALL) == MATCH_ALL
    assert isinstance(or_(Eq("a", 1), Eq("b", 1)), Or)
    assert in_("id", []) == MATCH_NONE
    assert in_("id", ["x", "x", "y"]) == In("id", ("x", "y"))


def test_compare_handles_iso_timestamps() -> None:
    cutoff = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert Compare("expires_at", "$lt", cutoff).matches({"expires_at": "2023-12-31T23:00:00+00:00"})
    assert not Compare("expires_at", "$lt", cutoff).matches({"expires_at": "2024-01-02T00:00:00Z"})
    assert not Compare("expires_at", "$lt", cutoff).matches({"expires_at": None})


def test_near_uses_haversine_distance() -> None:
    distance = haversine_distance(*SEOUL, *BUSAN)
    assert 320_000 < distance < 330_000

    near_seoul = Near("location", SEOUL[0], SEOUL[1], 10_000)
    assert near_seoul.matches({"location": {"type": "Point", "coordinates": [126.98, 37.57]}})
    assert not near_seoul.matches({"location": {"type": "Point", "coordinates": BUSAN}})
    assert not near_seoul.matches({})


def test_from_mongo_round_trips_supported_operators() -> None:
    spec = {
        "$or": [{"user1_id": "u1"}, {"user2_id": "u1"}],
        "status": {"$in": ["pending", "mutual_match"]},
        "compatibility_score": {"$gte": 70},
        "match_reason": {"$exists": True},
    }
    parsed = from_mongo(spec)

    assert parsed.matches(
        {"user1_id": "u2", "user2_id": "u1", "status": "pending", "compatibility_score": 80, "match_reason": "x"}
    )
    assert not parsed.matches(
        {"user1_id": "u2", "user2_id": "u3", "status": "pending", "compatibility_score": 80, "match_reason": "x"}
    )
    assert parsed.fields() == {"user1_id", "user2_id", "status", "compatibility_score", "match_reason"}
    assert from_mongo(parsed.to_mongo()).matches({"user1_id": "u1", "status": "mutual_match", "compatibility_score": 70, "match_reason": ""})


def test_from_mongo_regex_nor_and_near() -> None:
    parsed = from_mongo(
        {
            "name": {"$regex": "^kim", "$options": "i"},
            "$nor": [{"is_active": False}],
            "location": {"$near": {"$geometry": {"type": "Point", "coordinates": SEOUL}, "$maxDistance": 5000}},
        }
    )

    assert parsed.matches({"name": "Kim Minsu", "is_active": True, "location": {"coordinates": SEOUL}})
    assert not parsed.matches({"name": "Kim Minsu", "is_active": False, "location": {"coordinates": SEOUL}})


@pytest.mark.parametrize(
    "spec",
    [
        {"$where": "this.a == 1"},
        {"a": {"$elemMatch": {"b": 1}}},
        {"$or": {"a": 1}},
        {"a": {"$in": "x"}},
        {"name": {"$regex": "("}},
        {"location": {"$near": {"$maxDistance": 10}}},
    ],
)
def test_from_mongo_rejects_unsupported_input(spec: dict) -> None:
    with pytest.raises(ValidationFailedError):
        from_mongo(spec)
