import asyncio
import json

import httpx
import pytest

from geo.geocode import CoordinateResolver, GeocodeCache
from geo.routes import RouteCache
from ingest.sources import SourceError, SourceRegistry
from ingest.sync import SyncError, SyncOrchestrator, SyncState
from store.db import open_store
from store.local import EVENTS_CACHE_FILE, SAMPLE_EVENTS_FILE, STATIC_PLACES_FILE, LocalStorage


GOOD_ICS = "https://good.example.com/cal.ics"
SLOW_ICS = "https://slow.example.com/cal.ics"

E1_CALENDAR = (
    "BEGIN:VCALENDAR\r\n"
    "VERSION:2.0\r\n"
    "PRODID:-//test//EN\r\n"
    "BEGIN:VEVENT\r\n"
    "UID:e1\r\n"
    "DTSTAMP:20250101T000000Z\r\n"
    "DTSTART:20250115T030000Z\r\n"
    "SUMMARY:Founders Dinner\r\n"
    "LOCATION:https://luma.com/e1?utm_source=x\r\n"
    "END:VEVENT\r\n"
    "END:VCALENDAR\r\n"
)

EMPTY_CALENDAR = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\nEND:VCALENDAR\r\n"


async def _public(hostname: str) -> list[str]:
    return ["93.184.216.34"]


def _orchestrator(tmp_path, handler, *, store=None, event_urls=None, resolve=_public):
    storage = LocalStorage(tmp_path / "data")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    registry = SourceRegistry(
        store,
        event_urls=event_urls if event_urls is not None else [GOOD_ICS, SLOW_ICS],
        spot_urls=[],
        resolve_host=resolve,
    )
    orchestrator = SyncOrchestrator(
        store=store,
        storage=storage,
        client=client,
        registry=registry,
        resolver=CoordinateResolver(GeocodeCache(store, storage), None),
        routes=RouteCache(store, storage),
        resolve_host=resolve,
    )
    return orchestrator, client


def _two_calendars(request: httpx.Request) -> httpx.Response:
    if request.url.host == "slow.example.com":
        raise httpx.ConnectTimeout("timed out", request=request)
    return httpx.Response(200, text=E1_CALENDAR)


def test_sync_keeps_good_source_when_another_times_out(tmp_path) -> None:
    orchestrator, client = _orchestrator(tmp_path, _two_calendars)

    async def run():
        async with client:
            return await orchestrator.run_sync()

    result = asyncio.run(run())
    assert result.event_count == 1
    assert [e.event_url for e in result.events] == ["https://luma.com/e1"]
    assert len(result.errors) == 1
    assert result.errors[0].stage == "ical"
    assert result.errors[0].source_url == SLOW_ICS
    assert orchestrator.state is SyncState.PARTIALLY_FAILED

    summary = result.summary()
    assert summary["eventCount"] == 1
    assert summary["ingestionErrors"][0]["stage"] == "ical"

    cached = json.loads((tmp_path / "data" / EVENTS_CACHE_FILE).read_text())
    assert cached["meta"]["calendars"] == [GOOD_ICS, SLOW_ICS]
    assert cached["events"][0]["eventUrl"] == "https://luma.com/e1"


def test_events_are_soft_deleted_across_runs(tmp_path) -> None:
    store = open_store(tmp_path / "trip.db")
    bodies = iter([E1_CALENDAR, EMPTY_CALENDAR, EMPTY_CALENDAR, E1_CALENDAR])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=next(bodies))

    orchestrator, client = _orchestrator(tmp_path, handler, store=store, event_urls=[GOOD_ICS])

    async def run():
        async with client:
            return [await orchestrator.run_sync() for _ in range(4)]

    first, second, third, fourth = asyncio.run(run())
    assert first.events[0].missed_sync_count == 0
    assert second.event_count == 0
    assert second.events[0].missed_sync_count == 1
    assert second.events[0].is_deleted is False
    assert third.events[0].is_deleted is True
    assert fourth.events[0].is_deleted is False
    assert fourth.events[0].missed_sync_count == 0
    assert orchestrator.state is SyncState.COMPLETED
    assert [e.event_url for e in store.list_events()] == ["https://luma.com/e1"]


def test_deleted_events_are_hidden_from_payload(tmp_path) -> None:
    store = open_store(tmp_path / "trip.db")
    bodies = iter([E1_CALENDAR, EMPTY_CALENDAR, EMPTY_CALENDAR])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=next(bodies))

    orchestrator, client = _orchestrator(tmp_path, handler, store=store, event_urls=[GOOD_ICS])

    async def run():
        async with client:
            for _ in range(3):
                await orchestrator.run_sync()

    asyncio.run(run())
    payload = orchestrator.load_events_payload()
    assert payload["meta"]["source"] == "store"
    assert payload["events"] == []
    assert len(store.list_events(include_deleted=True)) == 1


def test_concurrent_requests_share_one_run(tmp_path) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, text=E1_CALENDAR)

    orchestrator, client = _orchestrator(tmp_path, handler, event_urls=[GOOD_ICS])

    async def run():
        async with client:
            return await asyncio.gather(orchestrator.run_sync(), orchestrator.run_sync())

    first, second = asyncio.run(run())
    assert first is second
    assert calls == [GOOD_ICS]


def test_sync_without_sources_fails(tmp_path) -> None:
    orchestrator, client = _orchestrator(tmp_path, _two_calendars, event_urls=[])

    async def run():
        async with client:
            await orchestrator.run_sync()

    with pytest.raises(SyncError, match="No ingestion sources"):
        asyncio.run(run())
    assert orchestrator.state is SyncState.IDLE


def test_private_source_is_reported_not_fetched(tmp_path) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, text=E1_CALENDAR)

    orchestrator, client = _orchestrator(
        tmp_path, handler, event_urls=["http://127.0.0.1/cal.ics", GOOD_ICS]
    )

    async def run():
        async with client:
            return await orchestrator.run_sync()

    result = asyncio.run(run())
    assert calls == [GOOD_ICS]
    assert [e.stage for e in result.errors] == ["source_validation"]


def test_calendar_source_is_resolved_once_per_sync(tmp_path) -> None:
    lookups: list[str] = []

    async def counting(hostname: str) -> list[str]:
        lookups.append(hostname)
        return ["93.184.216.34"]

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old.ics":
            return httpx.Response(302, headers={"location": "https://cdn.example.com/cal.ics"})
        return httpx.Response(200, text=E1_CALENDAR)

    orchestrator, client = _orchestrator(
        tmp_path, handler, event_urls=["https://good.example.com/old.ics"], resolve=counting
    )

    async def run():
        async with client:
            return await orchestrator.run_sync()

    result = asyncio.run(run())
    assert result.event_count == 1
    assert lookups == ["good.example.com", "cdn.example.com"]


def test_payload_fallback_tiers(tmp_path) -> None:
    orchestrator, _ = _orchestrator(tmp_path, _two_calendars, event_urls=[GOOD_ICS])
    data_dir = tmp_path / "data"
    data_dir.mkdir()

    empty = orchestrator.load_events_payload()
    assert empty["events"] == []
    assert empty["meta"]["calendars"] == [GOOD_ICS]

    (data_dir / SAMPLE_EVENTS_FILE).write_text(json.dumps([{"id": "s1", "name": "Sample"}]))
    sample = orchestrator.load_events_payload()
    assert sample["meta"]["sampleData"] is True
    assert sample["events"] == [{"id": "s1", "name": "Sample"}]

    (data_dir / EVENTS_CACHE_FILE).write_text(
        json.dumps(
            {
                "meta": {"syncedAt": "t"},
                "events": [
                    {"id": "a", "name": "Kept", "eventUrl": "https://x.com/a"},
                    {"id": "b", "name": "Gone", "eventUrl": "https://x.com/b", "isDeleted": True},
                ],
                "places": [],
            }
        )
    )
    cached = orchestrator.load_events_payload()
    assert cached["meta"] == {"syncedAt": "t"}
    assert [e["id"] for e in cached["events"]] == ["a"]


def test_static_overlays_are_merged_into_places(tmp_path) -> None:
    orchestrator, client = _orchestrator(tmp_path, _two_calendars, event_urls=[GOOD_ICS])
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / STATIC_PLACES_FILE).write_text(
        json.dumps(
            [
                {"id": "cafe", "name": "Cafe", "tag": "cafes", "lat": 1.0, "lng": 2.0},
                {
                    "id": "region-x",
                    "name": "Zone",
                    "tag": "avoid",
                    "lat": 1.0,
                    "lng": 2.0,
                    "boundary": [{"lat": 1, "lng": 2}, {"lat": 1, "lng": 3}, {"lat": 2, "lng": 3}],
                },
            ]
        )
    )

    async def run():
        async with client:
            return await orchestrator.run_sync()

    result = asyncio.run(run())
    assert {p.id for p in result.places} == {"cafe", "region-x"}


def test_single_source_sync(tmp_path) -> None:
    store = open_store(tmp_path / "trip.db")
    orchestrator, client = _orchestrator(tmp_path, _two_calendars, store=store, event_urls=[])

    async def run():
        async with client:
            source = await orchestrator.registry.create_source("event", SLOW_ICS)
            result = await orchestrator.sync_single_source(source.id)
            return source, result

    source, result = asyncio.run(run())
    assert result["events"] == 0
    assert result["errors"][0]["stage"] == "ical"
    saved = store.get_source(source.id)
    assert saved is not None
    assert saved.last_error == "timed out"
    assert saved.last_synced_at == result["syncedAt"]


def test_single_source_sync_unknown_id(tmp_path) -> None:
    orchestrator, client = _orchestrator(tmp_path, _two_calendars)

    async def run():
        async with client:
            await orchestrator.sync_single_source("missing")

    with pytest.raises(SourceError) as missing:
        asyncio.run(run())
    assert missing.value.not_found is True
