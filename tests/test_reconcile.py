from ingest.models import EventRecord, Spot
from ingest.reconcile import reconcile_events, reconcile_spots


def _event(url: str, **kwargs) -> EventRecord:
    return EventRecord(id=url, name=url, event_url=url, **kwargs)


def test_soft_delete_after_two_consecutive_absences() -> None:
    first = reconcile_events([], [_event("https://x.com/a")], synced_at="t1")
    assert first[0].missed_sync_count == 0
    assert first[0].last_seen_at == "t1"

    second = reconcile_events(first, [], synced_at="t2")
    assert second[0].missed_sync_count == 1
    assert second[0].is_deleted is False
    assert second[0].updated_at == "t2"
    assert second[0].last_seen_at == "t1"

    third = reconcile_events(second, [], synced_at="t3")
    assert third[0].missed_sync_count == 2
    assert third[0].is_deleted is True


def test_reappearing_record_resets_counters() -> None:
    deleted = [_event("https://x.com/a", missed_sync_count=3, is_deleted=True)]
    result = reconcile_events(deleted, [_event("https://x.com/a")], synced_at="t9")
    assert len(result) == 1
    assert result[0].missed_sync_count == 0
    assert result[0].is_deleted is False
    assert result[0].last_seen_at == "t9"


def test_threshold_is_configurable() -> None:
    result = reconcile_events([_event("https://x.com/a")], [], synced_at="t", threshold=1)
    assert result[0].is_deleted is True


def test_survivors_and_missing_are_both_kept() -> None:
    previous = [_event("https://x.com/a"), _event("https://x.com/b")]
    result = reconcile_events(previous, [_event("https://x.com/b"), _event("https://x.com/c")], synced_at="t")
    by_url = {e.event_url: e for e in result}
    assert set(by_url) == {"https://x.com/a", "https://x.com/b", "https://x.com/c"}
    assert by_url["https://x.com/a"].missed_sync_count == 1
    assert by_url["https://x.com/c"].missed_sync_count == 0


def test_events_without_url_are_keyed_by_id() -> None:
    previous = [EventRecord(id="ical-1", name="One", event_url="")]
    result = reconcile_events(previous, [EventRecord(id="ical-1", name="One", event_url="")], synced_at="t")
    assert len(result) == 1
    assert result[0].missed_sync_count == 0


def test_spots_use_the_same_rule() -> None:
    spot = Spot(id="spot-a", name="A", tag="eat")
    once = reconcile_spots([spot], [], synced_at="t1")
    twice = reconcile_spots(once, [], synced_at="t2")
    assert (once[0].is_deleted, twice[0].is_deleted) == (False, True)
