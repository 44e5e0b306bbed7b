from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx

from app.settings import Settings
from cluster.dedupe import (
    dedupe_events,
    dedupe_spots,
    merge_region_overlays,
    sort_events,
    sort_spots,
)
from geo.geocode import CoordinateResolver, GeocodeCache, GoogleGeocoder
from geo.routes import RouteCache
from ingest.calendar import fetch_calendar_events
from ingest.cursor import RssCursorCache, RssState, looks_like_rss_url, state_key
from ingest.extract import ExtractError, FirecrawlClient
from ingest.feed_packs import DEFAULT_FEEDS_DIR, builtin_urls, load_feed_pack_entries
from ingest.fetch import FetchError
from ingest.models import EventRecord, IngestionError, Source, Spot, ingestion_error
from ingest.newsletter import sync_newsletter_source
from ingest.reconcile import reconcile_events, reconcile_spots
from ingest.safety import ResolveHost, validate_source_url_for_fetch
from ingest.sources import SourceError, SourceRegistry
from normalize.normalize import normalize_extracted_spot
from store.db import Store, StoreError
from store.local import (
    EVENTS_CACHE_FILE,
    SAMPLE_EVENTS_FILE,
    STATIC_PLACES_FILE,
    LocalStorage,
)


logger = logging.getLogger(__name__)

SPOT_MISSING_KEY_MESSAGE = "Missing FIRECRAWL_API_KEY for spot extraction."


class SyncError(Exception):
    pass


class SyncState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


@dataclass
class EventRun:
    events: list[EventRecord] = field(default_factory=list)
    errors: list[IngestionError] = field(default_factory=list)
    source_urls: list[str] = field(default_factory=list)
    rss_states: dict[str, RssState] = field(default_factory=dict)


@dataclass
class SpotRun:
    spots: list[Spot] = field(default_factory=list)
    errors: list[IngestionError] = field(default_factory=list)
    source_urls: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    synced_at: str
    events: list[EventRecord]
    places: list[Spot]
    errors: list[IngestionError]
    calendars: list[str]
    event_count: int
    rss_states: dict[str, RssState]

    def summary(self) -> dict:
        return {
            "syncedAt": self.synced_at,
            "eventCount": self.event_count,
            "spotCount": len(self.places),
            "ingestionErrors": [e.to_dict() for e in self.errors],
        }

    def meta(self) -> dict:
        return {
            "syncedAt": self.synced_at,
            "calendars": self.calendars,
            "eventCount": self.event_count,
            "spotCount": len(self.places),
            "ingestionErrors": [e.to_dict() for e in self.errors],
            "rssSeenBySourceUrl": self.rss_states,
        }

    def payload(self) -> dict:
        return {
            "meta": self.meta(),
            "events": [e.to_dict() for e in self.events],
            "places": [p.to_dict() for p in self.places],
        }


def load_static_places(storage: LocalStorage) -> list[Spot]:
    raw = storage.read_json(STATIC_PLACES_FILE)
    if not isinstance(raw, list):
        return []
    places: list[Spot] = []
    for doc in raw:
        spot = Spot.from_dict(doc)
        if spot is not None:
            places.append(spot)
    return places


def _live(records: list) -> list:
    return [r for r in records if not r.is_deleted]


class SyncOrchestrator:
    def __init__(
        self,
        *,
        store: Store | None,
        storage: LocalStorage,
        client: httpx.AsyncClient,
        registry: SourceRegistry,
        resolver: CoordinateResolver,
        routes: RouteCache,
        firecrawl: FirecrawlClient | None = None,
        user_agent: str = "trip-sync/0.1",
        tz_name: str = "America/Los_Angeles",
        missed_sync_threshold: int = 2,
        rss_initial_items: int = 1,
        rss_max_items_per_sync: int = 3,
        rss_state_max_items: int = 500,
        resolve_host: ResolveHost | None = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.client = client
        self.registry = registry
        self.resolver = resolver
        self.routes = routes
        self.firecrawl = firecrawl
        self.user_agent = user_agent
        self.tz_name = tz_name
        self.missed_sync_threshold = missed_sync_threshold
        self.rss_initial_items = rss_initial_items
        self.rss_max_items_per_sync = rss_max_items_per_sync
        self.rss_state_max_items = rss_state_max_items
        self.resolve_host = resolve_host
        self.cursors = RssCursorCache(storage, rss_state_max_items)
        self.state = SyncState.IDLE
        self._lock = asyncio.Lock()
        self._inflight: asyncio.Task[SyncResult] | None = None

    async def run_sync(self) -> SyncResult:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._run_locked())
        else:
            logger.info("sync already running; joining in-flight run")
        return await asyncio.shield(self._inflight)

    async def _run_locked(self) -> SyncResult:
        async with self._lock:
            self.state = SyncState.RUNNING
            result: SyncResult | None = None
            try:
                result = await self._run()
                return result
            finally:
                if result is None:
                    self.state = SyncState.IDLE
                elif result.errors:
                    self.state = SyncState.PARTIALLY_FAILED
                else:
                    self.state = SyncState.COMPLETED

    def _previous_events(self) -> list[EventRecord]:
        if self.store is not None:
            try:
                return self.store.list_events(include_deleted=True)
            except StoreError as e:
                logger.warning("previous events read failed, using local cache: %s", e)
        cached = self.storage.read_json(EVENTS_CACHE_FILE)
        docs = cached.get("events") if isinstance(cached, dict) else None
        if not isinstance(docs, list):
            return []
        return [e for e in (EventRecord.from_dict(d) for d in docs) if e is not None]

    def _previous_spots(self) -> list[Spot]:
        if self.store is None:
            return []
        try:
            return self.store.list_spots(include_deleted=True)
        except StoreError as e:
            logger.warning("previous spots read failed: %s", e)
            return []

    async def _run(self) -> SyncResult:
        synced_at = _utc_now_iso()
        snapshot = self.registry.snapshot_for_sync()
        if not snapshot.all():
            raise SyncError("No ingestion sources are configured.")
        logger.info(
            "sync started: %d event sources, %d spot sources",
            len(snapshot.event_sources),
            len(snapshot.spot_sources),
        )

        # Read before any write from this run so missed counters are not double counted.
        previous_events = self._previous_events()
        previous_spots = self._previous_spots()

        event_run = await self.sync_event_sources(snapshot.event_sources)
        spot_run = await self.sync_spot_sources(snapshot.spot_sources)
        static_places = await self._static_places_with_coordinates()

        events = sort_events(
            reconcile_events(
                previous_events,
                event_run.events,
                synced_at=synced_at,
                threshold=self.missed_sync_threshold,
            )
        )
        spots = sort_spots(
            reconcile_spots(
                previous_spots,
                spot_run.spots,
                synced_at=synced_at,
                threshold=self.missed_sync_threshold,
            )
        )
        live_spots = _live(spots)
        places = merge_region_overlays(live_spots or static_places, static_places)

        errors = [*event_run.errors, *spot_run.errors]
        self.cursors.update(event_run.rss_states)
        result = SyncResult(
            synced_at=synced_at,
            events=events,
            places=places,
            errors=errors,
            calendars=event_run.source_urls,
            event_count=len(event_run.events),
            rss_states=self.cursors.snapshot(),
        )

        self.storage.write_json(EVENTS_CACHE_FILE, result.payload())

        if self.store is not None:
            try:
                self.store.replace_event_set(events, result.meta())
            except StoreError:
                logger.error("durable event write failed", exc_info=True)
            try:
                self.store.replace_spot_set(
                    spots,
                    {
                        "syncedAt": synced_at,
                        "calendars": spot_run.source_urls,
                        "eventCount": len(live_spots),
                    },
                )
            except StoreError:
                logger.error("durable spot write failed", exc_info=True)

        self.registry.save_sync_status(
            snapshot.event_sources, event_run.errors, synced_at, event_run.rss_states
        )
        self.registry.save_sync_status(snapshot.spot_sources, spot_run.errors, synced_at)

        for error in errors:
            logger.warning(
                "ingestion error [%s] %s: %s", error.stage, error.source_url, error.message
            )
        logger.info(
            "sync finished: %d events, %d places, %d errors",
            result.event_count,
            len(places),
            len(errors),
        )
        return result

    async def sync_event_sources(self, sources: list[Source]) -> EventRun:
        run = EventRun(source_urls=[s.url for s in sources])
        candidates: list[EventRecord] = []

        for source in sources:
            check = await validate_source_url_for_fetch(source.url, self.resolve_host)
            if not check.ok:
                run.errors.append(
                    ingestion_error(
                        source=source,
                        source_type="event",
                        stage="source_validation",
                        message=check.error,
                    )
                )
                continue

            is_rss = looks_like_rss_url(source.url)
            try:
                if is_rss:
                    key = state_key(source.url)
                    state = self.cursors.state_for(source.url, source.rss_state_json)
                    run.rss_states[key] = state
                    newsletter = await sync_newsletter_source(
                        source,
                        state,
                        client=self.client,
                        firecrawl=self.firecrawl,
                        user_agent=self.user_agent,
                        initial_items=self.rss_initial_items,
                        max_items=self.rss_max_items_per_sync,
                        state_max_items=self.rss_state_max_items,
                        resolve_host=self.resolve_host,
                        checked_url=check.url,
                    )
                    candidates.extend(newsletter.events)
                    run.errors.extend(newsletter.errors)
                    run.rss_states[key] = newsletter.state
                else:
                    candidates.extend(
                        await fetch_calendar_events(
                            source,
                            client=self.client,
                            user_agent=self.user_agent,
                            tz_name=self.tz_name,
                            resolve_host=self.resolve_host,
                            checked_url=check.url,
                        )
                    )
            except (FetchError, httpx.HTTPError, ValueError) as e:
                default = "RSS fetch failed." if is_rss else "iCal fetch failed."
                run.errors.append(
                    ingestion_error(
                        source=source,
                        source_type="event",
                        stage="rss" if is_rss else "ical",
                        message=str(e) or default,
                    )
                )

        run.events = await self.resolver.enrich_events(dedupe_events(candidates))
        return run

    async def sync_spot_sources(self, sources: list[Source]) -> SpotRun:
        run = SpotRun(source_urls=[s.url for s in sources])
        candidates: list[Spot] = []

        for source in sources:
            check = await validate_source_url_for_fetch(source.url, self.resolve_host)
            if not check.ok:
                run.errors.append(
                    ingestion_error(
                        source=source,
                        source_type="spot",
                        stage="source_validation",
                        message=check.error,
                    )
                )
                continue
            if self.firecrawl is None:
                run.errors.append(
                    ingestion_error(
                        source=source,
                        source_type="spot",
                        stage="firecrawl",
                        message=SPOT_MISSING_KEY_MESSAGE,
                    )
                )
                continue
            try:
                raw_spots = await self.firecrawl.extract_spots(check.url)
            except (ExtractError, httpx.HTTPError) as e:
                run.errors.append(
                    ingestion_error(
                        source=source,
                        source_type="spot",
                        stage="firecrawl",
                        message=str(e) or "Firecrawl spot extraction failed.",
                    )
                )
                continue
            for raw in raw_spots:
                spot = normalize_extracted_spot(source=source, record=raw)
                if spot is not None:
                    candidates.append(spot)

        spots, _ = await self.resolver.enrich_spots(sort_spots(dedupe_spots(candidates)))
        run.spots = spots
        return run

    async def _static_places_with_coordinates(self) -> list[Spot]:
        places, changed = await self.resolver.enrich_spots(load_static_places(self.storage))
        if changed:
            self.storage.write_json(STATIC_PLACES_FILE, [p.to_dict() for p in places])
        return places

    async def sync_single_source(self, source_id: str) -> dict:
        source = self.registry.get_source(source_id)
        if source is None:
            raise SourceError("Source not found.", not_found=True)

        async with self._lock:
            synced_at = _utc_now_iso()
            if source.source_type == "event":
                run = await self.sync_event_sources([source])
                self.registry.save_sync_status([source], run.errors, synced_at, run.rss_states)
                self.cursors.persist_to_events_cache(run.rss_states)
                return {
                    "syncedAt": synced_at,
                    "events": len(run.events),
                    "errors": [e.to_dict() for e in run.errors],
                }

            spot_run = await self.sync_spot_sources([source])
            self.registry.save_sync_status([source], spot_run.errors, synced_at)
            return {
                "syncedAt": synced_at,
                "spots": len(spot_run.spots),
                "errors": [e.to_dict() for e in spot_run.errors],
            }

    def load_events_payload(self) -> dict:
        static_places = load_static_places(self.storage)
        calendars = [s.url for s in self.registry.snapshot_for_sync().event_sources]

        if self.store is not None:
            try:
                meta = self.store.get_sync_meta("events")
                events = self.store.list_events()
                spots = self.store.list_spots()
            except StoreError as e:
                logger.warning("durable events read failed, using local cache: %s", e)
            else:
                if meta is not None or events:
                    places = merge_region_overlays(spots or static_places, static_places)
                    return {
                        "meta": {
                            "syncedAt": (meta or {}).get("syncedAt"),
                            "calendars": (meta or {}).get("calendars") or calendars,
                            "eventCount": len(events),
                            "ingestionErrors": (meta or {}).get("ingestionErrors") or [],
                            "spotCount": len(places),
                            "source": "store",
                        },
                        "events": [e.to_dict() for e in events],
                        "places": [p.to_dict() for p in places],
                    }

        cached = self.storage.read_json(EVENTS_CACHE_FILE)
        if isinstance(cached, dict) and isinstance(cached.get("events"), list):
            events = _live(
                [e for e in (EventRecord.from_dict(d) for d in cached["events"]) if e is not None]
            )
            cached_places = [
                p
                for p in (Spot.from_dict(d) for d in cached.get("places") or [])
                if p is not None
            ]
            places = merge_region_overlays(cached_places or static_places, static_places)
            return {
                **cached,
                "events": [e.to_dict() for e in events],
                "places": [p.to_dict() for p in places],
            }

        places = merge_region_overlays(static_places, static_places)
        sample = self.storage.read_json(SAMPLE_EVENTS_FILE)
        if isinstance(sample, list):
            return {
                "meta": {
                    "syncedAt": None,
                    "calendars": calendars,
                    "eventCount": len(sample),
                    "spotCount": len(places),
                    "sampleData": True,
                },
                "events": sample,
                "places": [p.to_dict() for p in places],
            }

        return {
            "meta": {
                "syncedAt": None,
                "calendars": calendars,
                "eventCount": 0,
                "spotCount": len(places),
            },
            "events": [],
            "places": [p.to_dict() for p in places],
        }


def build_orchestrator(
    settings: Settings,
    *,
    store: Store | None,
    storage: LocalStorage,
    client: httpx.AsyncClient,
    resolve_host: ResolveHost | None = None,
) -> SyncOrchestrator:
    packs = load_feed_pack_entries(DEFAULT_FEEDS_DIR)
    spot_urls = settings.spot_source_url_list() or builtin_urls(packs, "spot")
    registry = SourceRegistry(
        store,
        event_urls=builtin_urls(packs, "event"),
        spot_urls=spot_urls,
        resolve_host=resolve_host,
    )
    geocoder = (
        GoogleGeocoder(client, settings.geocoding_api_key)
        if settings.geocoding_api_key
        else None
    )
    firecrawl = (
        FirecrawlClient(
            client,
            api_key=settings.firecrawl_api_key,
            base_url=settings.firecrawl_base_url,
            poll_interval=settings.extract_poll_interval_seconds,
            max_attempts=settings.extract_max_poll_attempts,
        )
        if settings.firecrawl_api_key
        else None
    )
    return SyncOrchestrator(
        store=store,
        storage=storage,
        client=client,
        registry=registry,
        resolver=CoordinateResolver(GeocodeCache(store, storage), geocoder),
        routes=RouteCache(store, storage, settings.route_cache_max_entries),
        firecrawl=firecrawl,
        user_agent=settings.user_agent,
        tz_name=settings.display_timezone,
        missed_sync_threshold=settings.missed_sync_threshold,
        rss_initial_items=settings.rss_initial_items,
        rss_max_items_per_sync=settings.rss_max_items_per_sync,
        rss_state_max_items=settings.rss_state_max_items,
        resolve_host=resolve_host,
    )
