"""
Attendee match records: union merges, the profile sentinel and selfie fan-out.
"""
from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, strategies as st

from snapmatch.exceptions import ValidationError
from snapmatch.models import DEFAULT_EVENT_ID
from snapmatch.services import matches
from snapmatch.services.matches import MatchEntry, union_images

refs = st.lists(st.sampled_from([f"https://cdn/img{i}.jpg" for i in range(12)]), max_size=10)


@given(a=refs, b=refs)
def test_union_contains_both_without_duplicates(a, b):
    merged = union_images(a, b)
    assert set(merged) == set(a) | set(b)
    assert len(merged) == len(set(merged))


@given(a=refs, b=refs)
def test_union_is_idempotent(a, b):
    once = union_images(a, b)
    assert union_images(once, b) == once


@given(a=refs, b=refs)
def test_union_order_independent_as_a_set(a, b):
    assert set(union_images(a, b)) == set(union_images(b, a))


def test_union_keeps_stored_order_then_appends():
    assert union_images(["a", "b"], ["c", "a", "d"]) == ["a", "b", "c", "d"]


def entry(images, selfie="https://cdn/selfie1.jpg", event_id="100001", when=None, **kwargs):
    return MatchEntry(
        user_id="alice",
        event_id=event_id,
        selfie_url=selfie,
        matched_images=images,
        timestamp=when or datetime(2025, 5, 1, tzinfo=timezone.utc),
        **kwargs,
    )


def test_first_merge_creates_record(session_factory):
    assert matches.merge_match(session_factory, entry(["x", "y"], event_name="Gala"))
    record = matches.get_match(session_factory, "alice", "100001")
    assert record.matched_images == ["x", "y"]
    assert record.event_name == "Gala"
    assert record.uploaded_at == record.last_updated


def test_second_merge_unions_and_keeps_uploaded_at(session_factory):
    first = datetime(2025, 5, 1, tzinfo=timezone.utc)
    later = first + timedelta(days=2)
    matches.merge_match(session_factory, entry(["x", "y"], when=first, event_name="Gala"))
    matches.merge_match(session_factory, entry(["y", "z"], selfie="https://cdn/selfie2.jpg", when=later))

    record = matches.get_match(session_factory, "alice", "100001")
    assert record.matched_images == ["x", "y", "z"]
    assert record.selfie_url == "https://cdn/selfie2.jpg"
    assert record.event_name == "Gala"
    assert record.uploaded_at == first
    assert record.last_updated == later


def test_merge_requires_keys(session_factory):
    with pytest.raises(ValidationError):
        matches.merge_match(session_factory, MatchEntry(user_id="", event_id="1", selfie_url="s"))
    with pytest.raises(ValidationError):
        matches.merge_match(session_factory, MatchEntry(user_id="u", event_id="1", selfie_url=""))


def test_statistics_exclude_profile_sentinel(session_factory):
    matches.merge_match(session_factory, entry(["a", "b"], event_id="100001"))
    matches.merge_match(
        session_factory, entry(["c"], event_id="100002", when=datetime(2025, 6, 1, tzinfo=timezone.utc))
    )
    matches.store_default_selfie(session_factory, "alice", "https://cdn/profile.jpg")

    stats = matches.statistics_for_user(session_factory, "alice")
    assert stats.total_events == 2
    assert stats.total_images == 3
    assert stats.first_event_date == datetime(2025, 5, 1, tzinfo=timezone.utc)
    assert stats.latest_event_date == datetime(2025, 6, 1, tzinfo=timezone.utc)
    assert matches.distinct_attended_events(session_factory, "alice") == ["100001", "100002"]


def test_statistics_for_unknown_user_are_zero(session_factory):
    stats = matches.statistics_for_user(session_factory, "nobody")
    assert stats.total_events == 0 and stats.total_images == 0


def test_default_selfie_replaced_in_place(session_factory):
    matches.store_default_selfie(session_factory, "bob", "https://cdn/one.jpg")
    matches.store_default_selfie(session_factory, "bob", "https://cdn/two.jpg")
    assert matches.get_default_selfie(session_factory, "bob") == "https://cdn/two.jpg"
    assert [r.event_id for r in matches.list_for_user(session_factory, "bob")] == [DEFAULT_EVENT_ID]


def test_fan_out_updates_every_record(session_factory):
    for event_id in ("100001", "100002", "100003"):
        matches.merge_match(session_factory, entry(["img"], event_id=event_id))

    report = matches.fan_out_selfie_update(session_factory, "alice", "https://cdn/new.jpg", max_workers=3)

    assert report.ok
    assert report.succeeded == ["100001", "100002", "100003"]
    assert {r.selfie_url for r in matches.list_for_user(session_factory, "alice")} == {"https://cdn/new.jpg"}
    assert matches.latest_selfie_url(session_factory, "alice") == "https://cdn/new.jpg"


def test_fan_out_reports_failures_without_undoing(session_factory, monkeypatch):
    for event_id in ("100001", "100002"):
        matches.merge_match(session_factory, entry(["img"], event_id=event_id))
    real_update = matches._update_selfie

    def flaky(factory, user_id, event_id, url, timestamp):
        if event_id == "100002":
            raise LookupError("record gone")
        real_update(factory, user_id, event_id, url, timestamp)

    monkeypatch.setattr(matches, "_update_selfie", flaky)
    report = matches.fan_out_selfie_update(session_factory, "alice", "https://cdn/new.jpg")

    assert report.succeeded == ["100001"]
    assert list(report.failed) == ["100002"]
    assert matches.get_match(session_factory, "alice", "100001").selfie_url == "https://cdn/new.jpg"
    assert matches.get_match(session_factory, "alice", "100002").selfie_url == "https://cdn/selfie1.jpg"


def test_fan_out_with_no_records_is_empty(session_factory):
    report = matches.fan_out_selfie_update(session_factory, "ghost", "https://cdn/new.jpg")
    assert report.succeeded == [] and report.ok


def interleave(monkeypatch, session_factory, concurrent):
    """Commits ``concurrent`` between the next merge's read and its write."""
    real_union = matches.union_images
    pending = [concurrent]

    def union_with_interleaved_write(existing, incoming):
        if pending:
            matches.merge_match(session_factory, pending.pop())
        return real_union(existing, incoming)

    monkeypatch.setattr(matches, "union_images", union_with_interleaved_write)


def test_overlapping_merges_keep_both_writes(session_factory, monkeypatch):
    matches.merge_match(session_factory, entry(["a"]))
    interleave(monkeypatch, session_factory, entry(["b"]))

    assert matches.merge_match(session_factory, entry(["c"]))

    record = matches.get_match(session_factory, "alice", "100001")
    assert set(record.matched_images) == {"a", "b", "c"}
    assert record.matched_images[0] == "a"


def test_concurrent_first_merges_both_land(session_factory, monkeypatch):
    interleave(monkeypatch, session_factory, entry(["b"]))

    assert matches.merge_match(session_factory, entry(["c"]))

    record = matches.get_match(session_factory, "alice", "100001")
    assert record.matched_images == ["b", "c"]


def test_list_for_event(session_factory):
    matches.merge_match(session_factory, entry(["x"], event_id="100001"))
    matches.merge_match(session_factory, MatchEntry(user_id="bob", event_id="100001", selfie_url="s", matched_images=["y"]))
    matches.merge_match(session_factory, entry(["z"], event_id="100002"))
    assert sorted(r.user_id for r in matches.list_for_event(session_factory, "100001")) == ["alice", "bob"]
