from __future__ import annotations

import logging
from dataclasses import replace

import httpx

from geo.coords_extract import normalize_address_key, parse_lat_lng_from_map_url
from ingest.models import EventRecord, Spot, clean_text, to_coordinate
from store.db import Store, StoreError
from store.local import GEOCODE_CACHE_FILE, LocalStorage


logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

Coords = tuple[float, float]


class GeocodeCache:
    """In-process address map, hydrated once from the local file, backed by the store."""

    def __init__(self, store: Store | None, storage: LocalStorage) -> None:
        self.store = store
        self.storage = storage
        self._entries: dict[str, Coords] | None = None

    def _load(self) -> dict[str, Coords]:
        if self._entries is None:
            self._entries = {}
            raw = self.storage.read_json(GEOCODE_CACHE_FILE)
            if isinstance(raw, dict):
                for key, value in raw.items():
                    if not isinstance(value, dict):
                        continue
                    lat = to_coordinate(value.get("lat"))
                    lng = to_coordinate(value.get("lng"))
                    if lat is not None and lng is not None:
                        self._entries[str(key)] = (lat, lng)
        return self._entries

    def __len__(self) -> int:
        return len(self._load())

    def get_local(self, address_key: str) -> Coords | None:
        return self._load().get(address_key)

    def get_durable(self, address_key: str) -> Coords | None:
        if self.store is None:
            return None
        try:
            return self.store.get_geocode(address_key)
        except StoreError as e:
            logger.warning("geocode cache read failed: %s", e)
            return None

    def remember(self, address_key: str, coords: Coords) -> None:
        self._load()[address_key] = coords
        self.persist()

    def save_durable(self, address_key: str, coords: Coords, address_text: str) -> None:
        if self.store is None:
            return
        try:
            self.store.upsert_geocode(address_key, coords[0], coords[1], address_text)
        except StoreError as e:
            logger.warning("geocode cache write failed: %s", e)

    def persist(self) -> bool:
        payload = {
            key: {"lat": lat, "lng": lng} for key, (lat, lng) in self._load().items()
        }
        return self.storage.write_json(GEOCODE_CACHE_FILE, payload)


class GoogleGeocoder:
    def __init__(self, client: httpx.AsyncClient, api_key: str) -> None:
        self.client = client
        self.api_key = api_key

    async def geocode(self, address_text: str) -> Coords | None:
        try:
            response = await self.client.get(
                GEOCODE_URL,
                params={"address": clean_text(address_text), "key": self.api_key},
                timeout=httpx.Timeout(connect=5.0, read=15.0, write=5.0, pool=5.0),
            )
        except httpx.HTTPError as e:
            logger.warning("geocoding request failed: %s", e)
            return None
        if not response.is_success:
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        if not isinstance(payload, dict) or payload.get("status") != "OK":
            return None
        results = payload.get("results") or []
        if not results or not isinstance(results[0], dict):
            return None
        location = (results[0].get("geometry") or {}).get("location") or {}
        lat = to_coordinate(location.get("lat"))
        lng = to_coordinate(location.get("lng"))
        if lat is None or lng is None:
            return None
        return (lat, lng)


class CoordinateResolver:
    def __init__(self, cache: GeocodeCache, geocoder: GoogleGeocoder | None) -> None:
        self.cache = cache
        self.geocoder = geocoder

    async def resolve(self, address_text: str) -> Coords | None:
        address_key = normalize_address_key(address_text)
        if not address_key:
            return None

        cached = self.cache.get_local(address_key)
        if cached is not None:
            return cached

        durable = self.cache.get_durable(address_key)
        if durable is not None:
            self.cache.remember(address_key, durable)
            return durable

        if self.geocoder is None:
            return None
        coords = await self.geocoder.geocode(address_text)
        if coords is None:
            return None
        self.cache.remember(address_key, coords)
        self.cache.save_durable(address_key, coords, address_text)
        return coords

    async def resolve_candidate(
        self,
        *,
        lat: float | None,
        lng: float | None,
        map_url: str,
        address_text: str,
    ) -> Coords | None:
        if lat is not None and lng is not None:
            return (lat, lng)
        from_map = parse_lat_lng_from_map_url(map_url)
        if from_map is not None:
            return from_map
        return await self.resolve(address_text)

    async def enrich_events(self, events: list[EventRecord]) -> list[EventRecord]:
        enriched: list[EventRecord] = []
        for event in events:
            if event.lat is not None and event.lng is not None:
                enriched.append(event)
                continue
            coords = await self.resolve_candidate(
                lat=None,
                lng=None,
                map_url=event.map_url,
                address_text=event.address or event.location_text,
            )
            if coords is None:
                enriched.append(event)
            else:
                enriched.append(replace(event, lat=coords[0], lng=coords[1]))
        return enriched

    async def enrich_spots(self, spots: list[Spot]) -> tuple[list[Spot], bool]:
        enriched: list[Spot] = []
        changed = False
        for spot in spots:
            if spot.lat is not None and spot.lng is not None:
                enriched.append(spot)
                continue
            coords = await self.resolve_candidate(
                lat=None,
                lng=None,
                map_url=spot.map_link,
                address_text=spot.location or spot.name,
            )
            if coords is None:
                enriched.append(spot)
            else:
                enriched.append(replace(spot, lat=coords[0], lng=coords[1]))
                changed = True
        return enriched, changed
