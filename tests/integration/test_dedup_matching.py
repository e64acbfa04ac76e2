"""Tests for tolerant duplicate detection."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from dedup.matching import (
    ByDateBucketOnly,
    ByTitleAndDateBucket,
    ByUid,
    ComparableRecord,
    DuplicateConfig,
    are_duplicates,
    bucket_key,
    deduplicate,
    find_duplicates_against_existing,
    get_duplicate_ids,
    normalize_text,
)
from core.models import ParsedRecord, RecordKind


T0 = datetime(2024, 1, 10, 10, 0, 0, tzinfo=UTC)


def _event(record_id: str, title: str, start: datetime | None, end: datetime | None = None, **extra) -> ComparableRecord:
    return ComparableRecord(id=record_id, title=title, start_date=start, end_date=end, **extra)


@pytest.mark.integration
def test_normalize_text_collapses_case_and_whitespace():
    assert normalize_text("  Team   STANDUP \t") == "team standup"
    assert normalize_text(None) == ""


@pytest.mark.integration
def test_matching_uids_are_duplicates_regardless_of_other_fields():
    left = _event("a", "Standup", T0, uid="abc")
    right = _event("b", "Something else", T0 + timedelta(days=3), uid="abc")
    assert are_duplicates(left, right) is True


@pytest.mark.integration
def test_differing_uids_are_never_duplicates():
    left = _event("a", "Standup", T0, uid="abc")
    right = _event("b", "Standup", T0, uid="xyz")
    assert are_duplicates(left, right) is False


@pytest.mark.integration
def test_same_title_within_tolerance_is_duplicate():
    left = _event("a", "Standup", T0)
    right = _event("b", "  standup ", T0 + timedelta(seconds=30))
    assert are_duplicates(left, right) is True


@pytest.mark.integration
def test_same_title_outside_tolerance_is_not_duplicate():
    left = _event("a", "Standup", T0)
    right = _event("b", "Standup", T0 + timedelta(seconds=61))
    assert are_duplicates(left, right) is False


@pytest.mark.integration
def test_different_titles_are_not_duplicates():
    assert are_duplicates(_event("a", "Standup", T0), _event("b", "Retro", T0)) is False


@pytest.mark.integration
def test_one_dated_one_undated_is_not_duplicate():
    assert are_duplicates(_event("a", "Standup", T0), _event("b", "Standup", None)) is False


@pytest.mark.integration
def test_two_undated_same_title_are_duplicates():
    assert are_duplicates(_event("a", "Standup", None), _event("b", "standup", None)) is True


@pytest.mark.integration
def test_equal_ends_with_shifted_starts_are_distinct():
    end = T0 + timedelta(hours=2)
    left = _event("a", "Workshop", T0, end)
    right = _event("b", "Workshop", T0 + timedelta(hours=1), end)
    assert are_duplicates(left, right) is False


@pytest.mark.integration
def test_tasks_match_on_due_date():
    due = T0 + timedelta(days=1)
    left = ComparableRecord(id="a", title="File taxes", due_date=due)
    right = ComparableRecord(id="b", title="file taxes", due_date=due + timedelta(seconds=10))
    assert are_duplicates(left, right) is True


@pytest.mark.integration
def test_location_only_checked_when_enabled():
    left = _event("a", "Standup", T0, location="Room 1")
    right = _event("b", "Standup", T0, location="Room 2")
    assert are_duplicates(left, right) is True
    assert are_duplicates(left, right, DuplicateConfig(use_location=True)) is False


@pytest.mark.integration
def test_bucket_keys_are_tagged():
    with_uid = _event("a", "Standup", T0, uid="abc")
    assert bucket_key(with_uid) == ByUid("abc")

    plain = _event("b", "Standup", T0)
    key = bucket_key(plain)
    assert isinstance(key, ByTitleAndDateBucket)
    assert key.title == "standup"
    assert key.bucket == int(T0.timestamp() * 1000) // 60000

    assert bucket_key(_event("c", "Standup", None)).bucket is None
    assert isinstance(bucket_key(plain, DuplicateConfig(use_title=False)), ByDateBucketOnly)
    assert bucket_key(with_uid, DuplicateConfig(use_uid=False)) == key


@pytest.mark.integration
def test_naive_datetimes_are_read_as_utc():
    naive = _event("a", "Standup", T0.replace(tzinfo=None))
    aware = _event("b", "Standup", T0)
    assert bucket_key(naive) == bucket_key(aware)
    assert are_duplicates(naive, aware) is True


@pytest.mark.integration
def test_deduplicate_keeps_first_occurrence_in_order():
    records = [
        _event("1", "Standup", T0),
        _event("2", "Retro", T0),
        _event("3", "STANDUP", T0 + timedelta(seconds=20)),
        _event("4", "Planning", None, uid="p"),
        _event("5", "Planning v2", None, uid="p"),
    ]

    result = deduplicate(records)

    assert [item.id for item in result.unique] == ["1", "2", "4"]
    assert [item.id for item in result.duplicates] == ["3", "5"]
    assert get_duplicate_ids(records) == ["3", "5"]


@pytest.mark.integration
def test_deduplicate_is_a_partition():
    records = [_event(str(index), "Daily", T0 + timedelta(days=index % 3)) for index in range(9)]
    result = deduplicate(records)
    assert len(result.unique) + len(result.duplicates) == len(records)
    assert {item.id for item in result.unique}.isdisjoint({item.id for item in result.duplicates})
    assert len(result.unique) == 3


@pytest.mark.integration
def test_against_existing_checks_every_candidate_in_bucket():
    existing = [
        _event("e1", "Standup", T0, T0 + timedelta(hours=1)),
        _event("e2", "Standup", T0, T0 + timedelta(minutes=15)),
    ]
    new = [
        _event("n1", "Standup", T0 + timedelta(seconds=5), T0 + timedelta(minutes=15, seconds=5)),
        _event("n2", "Retro", T0),
    ]

    result = find_duplicates_against_existing(new, existing)

    assert [item.id for item in result.duplicates] == ["n1"]
    assert [item.id for item in result.unique] == ["n2"]


@pytest.mark.integration
def test_against_existing_does_not_dedup_new_records_among_themselves():
    new = [_event("n1", "Standup", T0), _event("n2", "Standup", T0)]
    result = find_duplicates_against_existing(new, [])
    assert [item.id for item in result.unique] == ["n1", "n2"]
    assert result.duplicates == []


@pytest.mark.integration
def test_against_existing_matches_uid_first():
    existing = [ComparableRecord(id="e1", uid="abc", title="Old title", start_date=T0)]
    new = [ComparableRecord(id="n1", uid="abc", title="Renamed", start_date=T0 + timedelta(days=1))]
    assert [item.id for item in find_duplicates_against_existing(new, existing).duplicates] == ["n1"]


@pytest.mark.integration
def test_from_object_projects_parsed_records():
    parsed = ParsedRecord(kind=RecordKind.TASK, uid="", title="Ship", due_date=T0)
    record = ComparableRecord.from_object("new-0", parsed)
    assert record.uid is None
    assert record.match_date == T0


@pytest.mark.integration
def test_tolerance_must_be_positive():
    with pytest.raises(ValueError):
        DuplicateConfig(date_tolerance_ms=0)


@pytest.mark.integration
@pytest.mark.parametrize(("seconds", "expected"), [(59, True), (60, True), (61, False)])
def test_tolerance_boundary(seconds, expected):
    left = _event("a", "Team Meeting", T0)
    right = _event("b", "Team Meeting", T0 + timedelta(seconds=seconds))
    assert are_duplicates(left, right) is expected


@pytest.mark.integration
def test_whitespace_and_case_variants_deduplicate():
    records = [_event("a", "Team   Meeting", T0), _event("b", "team meeting", T0)]
    assert [item.id for item in deduplicate(records).duplicates] == ["b"]


@pytest.mark.integration
def test_three_records_sharing_uid_keep_first():
    records = [
        _event("1", "A", T0, uid="same"),
        _event("2", "B", T0 + timedelta(days=1), uid="same"),
        _event("3", "C", None, uid="same"),
    ]
    result = deduplicate(records)
    assert [item.id for item in result.unique] == ["1"]
    assert [item.id for item in result.duplicates] == ["2", "3"]
