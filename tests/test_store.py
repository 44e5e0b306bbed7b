import errno
import json
import os

import pytest

from ingest.models import EventRecord, Spot
from ingest.sources import SourceError, SourceRegistry
from store.db import open_store
from store.local import LocalStorage


async def _public(hostname: str) -> list[str]:
    return ["93.184.216.34"]


def test_migrations_are_idempotent(tmp_path) -> None:
    path = tmp_path / "trip.db"
    open_store(path).close()
    store = open_store(path)
    versions = [r[0] for r in store.conn.execute("SELECT version FROM schema_migrations ORDER BY version;")]
    assert versions == [1, 2]


def test_create_source_reactivates_existing_url(tmp_path) -> None:
    store = open_store(tmp_path / "trip.db")
    first = store.create_source(source_type="event", url="https://cal.example.com/a.ics", label="A")
    store.update_source(first.id, status="paused")
    again = store.create_source(source_type="event", url="https://cal.example.com/a.ics", label="A2")
    assert again.id == first.id
    assert again.status == "active"
    assert again.label == "A2"
    assert len(store.list_sources()) == 1


def test_replace_event_set_hides_deleted_records(tmp_path) -> None:
    store = open_store(tmp_path / "trip.db")
    records = [
        EventRecord(id="1", name="Live", event_url="https://x.com/1", start_date_iso="2025-02-01"),
        EventRecord(id="2", name="Gone", event_url="https://x.com/2", is_deleted=True, missed_sync_count=2),
        EventRecord(id="3", name="Undated", event_url="https://x.com/3"),
    ]
    store.replace_event_set(records, {"syncedAt": "t", "eventCount": 2})
    assert [e.id for e in store.list_events()] == ["1", "3"]
    assert len(store.list_events(include_deleted=True)) == 3
    assert store.get_sync_meta("events") == {"syncedAt": "t", "eventCount": 2}

    store.replace_event_set(records[:1], {"syncedAt": "t2"})
    assert [e.id for e in store.list_events(include_deleted=True)] == ["1"]


def test_spot_round_trip_keeps_overlay_fields(tmp_path) -> None:
    store = open_store(tmp_path / "trip.db")
    spot = Spot(
        id="region-1",
        name="Zone",
        tag="avoid",
        risk="high",
        boundary=[[1.0, 1.0], [1.0, 2.0], [2.0, 2.0]],
        extra={"notes": "kept"},
    )
    store.replace_spot_set([spot], {"syncedAt": "t"})
    loaded = store.list_spots()[0]
    assert loaded.boundary == spot.boundary
    assert loaded.risk == "high"
    assert loaded.extra == {"notes": "kept"}


def test_unreadable_rows_are_skipped(tmp_path) -> None:
    store = open_store(tmp_path / "trip.db")
    store.replace_event_set(
        [EventRecord(id="1", name="Live", event_url="https://x.com/1")], {"syncedAt": "t"}
    )
    store.replace_spot_set([Spot(id="cafe", name="Cafe", tag="cafes")], {"syncedAt": "t"})
    store.conn.execute(
        "INSERT INTO events(event_key, start_date_iso, is_deleted, record_json) "
        "VALUES ('bad', '', 0, '{not json');"
    )
    store.conn.execute(
        "INSERT INTO spots(spot_id, sort_key, is_deleted, record_json) "
        "VALUES ('bad', '', 0, '{not json');"
    )
    store.conn.commit()

    assert [e.id for e in store.list_events()] == ["1"]
    assert [s.id for s in store.list_spots()] == ["cafe"]


def test_registry_falls_back_to_builtins_without_store() -> None:
    registry = SourceRegistry(None, event_urls=["https://cal.example.com/a.ics"], spot_urls=[])
    sources, origin = registry.list_sources()
    assert origin == "fallback"
    assert [s.readonly for s in sources] == [True]
    snapshot = registry.snapshot_for_sync()
    assert [s.url for s in snapshot.event_sources] == ["https://cal.example.com/a.ics"]
    assert snapshot.spot_sources == []


def test_registry_snapshot_uses_active_stored_sources(tmp_path) -> None:
    store = open_store(tmp_path / "trip.db")
    registry = SourceRegistry(
        store,
        event_urls=["https://builtin.example.com/a.ics"],
        spot_urls=["https://builtin.example.com/list"],
        resolve_host=_public,
    )
    import asyncio

    active = asyncio.run(registry.create_source("event", "https://cal.example.com/mine.ics"))
    paused = asyncio.run(registry.create_source("event", "https://cal.example.com/old.ics", "Old"))
    registry.update_source(paused.id, status="paused")

    snapshot = registry.snapshot_for_sync()
    assert [s.id for s in snapshot.event_sources] == [active.id]
    assert snapshot.event_sources[0].label == "https://cal.example.com/mine.ics"
    assert [s.url for s in snapshot.spot_sources] == ["https://builtin.example.com/list"]

    sources, origin = registry.list_sources()
    assert origin == "store"
    assert {s.url for s in sources} == {
        "https://cal.example.com/mine.ics",
        "https://cal.example.com/old.ics",
        "https://builtin.example.com/list",
    }


def test_registry_rejects_bad_input(tmp_path) -> None:
    import asyncio

    store = open_store(tmp_path / "trip.db")
    registry = SourceRegistry(store, event_urls=[], spot_urls=[], resolve_host=_public)
    with pytest.raises(SourceError, match='sourceType must be "event" or "spot".'):
        asyncio.run(registry.create_source("podcast", "https://example.com/feed"))
    with pytest.raises(SourceError, match="public internet"):
        asyncio.run(registry.create_source("event", "https://10.0.0.1/feed.ics"))
    source = asyncio.run(registry.create_source("spot", "https://example.com/list"))
    with pytest.raises(SourceError, match="Nothing to update"):
        registry.update_source(source.id)
    with pytest.raises(SourceError, match='status must be "active" or "paused".'):
        registry.update_source(source.id, status="archived")
    with pytest.raises(SourceError) as missing:
        registry.delete_source("nope")
    assert missing.value.not_found is True


def test_save_sync_status_records_first_error_and_cursor(tmp_path) -> None:
    import asyncio

    from ingest.models import ingestion_error

    store = open_store(tmp_path / "trip.db")
    registry = SourceRegistry(store, event_urls=[], spot_urls=[], resolve_host=_public)
    source = asyncio.run(registry.create_source("event", "https://news.example.com/feed.xml"))
    errors = [
        ingestion_error(source=source, source_type="event", stage="firecrawl", message="first"),
        ingestion_error(source=source, source_type="event", stage="firecrawl", message="second"),
    ]
    registry.save_sync_status(
        [source],
        errors,
        "2025-01-01T00:00:00Z",
        {"https://news.example.com/feed.xml": {"item": "2025-01-01T00:00:00Z"}},
    )
    saved = store.get_source(source.id)
    assert saved is not None
    assert saved.last_synced_at == "2025-01-01T00:00:00Z"
    assert saved.last_error == "first"
    assert json.loads(saved.rss_state_json) == {"item": "2025-01-01T00:00:00Z"}


def test_local_storage_round_trip(tmp_path) -> None:
    storage = LocalStorage(tmp_path / "data")
    assert storage.read_json("missing.json") is None
    assert storage.write_json("doc.json", {"a": 1}) is True
    assert storage.read_json("doc.json") == {"a": 1}
    (tmp_path / "data" / "bad.json").write_text("{not json")
    assert storage.read_json("bad.json") is None


def test_local_storage_read_only_write_is_not_fatal(tmp_path, monkeypatch) -> None:
    storage = LocalStorage(tmp_path)

    def deny(src, dst):
        raise OSError(errno.EROFS, "Read-only file system")

    monkeypatch.setattr(os, "replace", deny)
    assert storage.write_json("doc.json", {"a": 1}) is False
    assert storage.is_writable() is False
    assert storage.write_json("doc.json", {"a": 2}) is False
