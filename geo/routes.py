from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from ingest.models import clean_text, to_coordinate
from store.db import Store, StoreError
from store.local import ROUTE_CACHE_FILE, LocalStorage


logger = logging.getLogger(__name__)

ROUTES_API_URL = "https://routes.googleapis.com/directions/v2:computeRoutes"
ROUTES_FIELD_MASK = ",".join(
    [
        "routes.polyline.encodedPolyline",
        "routes.legs.distanceMeters",
        "routes.legs.duration",
    ]
)
MAX_WAYPOINTS = 20
DEFAULT_MAX_ENTRIES = 4000

_DURATION_RE = re.compile(r"^([\d.]+)s$")


class RouteError(Exception):
    def __init__(self, message: str, *, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class LatLng:
    lat: float
    lng: float


def parse_lat_lng(value: object) -> LatLng | None:
    if not isinstance(value, dict):
        return None
    lat = to_coordinate(value.get("lat"))
    lng = to_coordinate(value.get("lng"))
    if lat is None or lng is None:
        return None
    return LatLng(lat=lat, lng=lng)


def to_travel_mode(mode: object) -> str:
    value = str(mode or "").upper()
    if value == "DRIVING":
        return "DRIVE"
    if value == "TRANSIT":
        return "TRANSIT"
    return "WALK"


def _fixed(point: LatLng) -> dict[str, str]:
    return {"lat": f"{point.lat:.5f}", "lng": f"{point.lng:.5f}"}


def route_cache_key(
    origin: LatLng,
    destination: LatLng,
    waypoints: list[LatLng],
    travel_mode: str,
) -> str:
    doc = {
        "travelMode": travel_mode,
        "origin": _fixed(origin),
        "destination": _fixed(destination),
        "waypoints": [_fixed(p) for p in waypoints],
    }
    return hashlib.sha256(
        json.dumps(doc, separators=(",", ":")).encode("utf-8")
    ).hexdigest()


def sanitize_route_payload(value: object) -> dict:
    doc = value if isinstance(value, dict) else {}
    distance = to_coordinate(doc.get("totalDistanceMeters")) or 0
    duration = to_coordinate(doc.get("totalDurationSeconds")) or 0
    return {
        "encodedPolyline": clean_text(doc.get("encodedPolyline")),
        "totalDistanceMeters": max(0, distance),
        "totalDurationSeconds": max(0, duration),
    }


def parse_duration_seconds(value: object) -> int:
    match = _DURATION_RE.match(str(value or ""))
    if match is None:
        return 0
    try:
        return round(float(match.group(1)))
    except ValueError:
        return 0


class RouteCache:
    def __init__(
        self,
        store: Store | None,
        storage: LocalStorage,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        self.store = store
        self.storage = storage
        self.max_entries = max(1, max_entries)
        self._entries: dict[str, dict] | None = None

    def _load(self) -> dict[str, dict]:
        if self._entries is None:
            self._entries = {}
            raw = self.storage.read_json(ROUTE_CACHE_FILE)
            if isinstance(raw, dict):
                for key, payload in raw.items():
                    sanitized = sanitize_route_payload(payload)
                    if key and sanitized["encodedPolyline"]:
                        self._entries[str(key)] = sanitized
        return self._entries

    def __len__(self) -> int:
        return len(self._load())

    def _set(self, cache_key: str, payload: dict) -> None:
        entries = self._load()
        if cache_key not in entries and len(entries) >= self.max_entries:
            logger.info("route cache reached %d entries; clearing", len(entries))
            entries.clear()
        entries[cache_key] = payload
        self.storage.write_json(ROUTE_CACHE_FILE, entries)

    def get(self, cache_key: str) -> dict | None:
        if not cache_key:
            return None
        local = self._load().get(cache_key)
        if local is not None:
            return local
        if self.store is None:
            return None
        try:
            durable = self.store.get_route(cache_key)
        except StoreError as e:
            logger.warning("route cache read failed: %s", e)
            return None
        sanitized = sanitize_route_payload(durable)
        if not sanitized["encodedPolyline"]:
            return None
        self._set(cache_key, sanitized)
        return sanitized

    def put(self, cache_key: str, payload: dict) -> bool:
        sanitized = sanitize_route_payload(payload)
        if not cache_key or not sanitized["encodedPolyline"]:
            return False
        self._set(cache_key, sanitized)
        if self.store is not None:
            try:
                self.store.upsert_route(cache_key, sanitized)
            except StoreError as e:
                logger.warning("route cache write failed: %s", e)
        return True


async def compute_route(
    client: httpx.AsyncClient,
    *,
    api_key: str,
    origin: LatLng,
    destination: LatLng,
    waypoints: list[LatLng],
    travel_mode: str,
) -> dict:
    def location(point: LatLng) -> dict:
        return {"location": {"latLng": {"latitude": point.lat, "longitude": point.lng}}}

    body: dict = {
        "origin": location(origin),
        "destination": location(destination),
        "intermediates": [location(p) for p in waypoints[:MAX_WAYPOINTS]],
        "travelMode": travel_mode,
        "computeAlternativeRoutes": False,
        "optimizeWaypointOrder": False,
    }
    if travel_mode == "TRANSIT":
        body["departureTime"] = datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")

    try:
        response = await client.post(
            ROUTES_API_URL,
            headers={"X-Goog-Api-Key": api_key, "X-Goog-FieldMask": ROUTES_FIELD_MASK},
            json=body,
            timeout=httpx.Timeout(connect=5.0, read=15.0, write=5.0, pool=5.0),
        )
    except httpx.HTTPError as e:
        raise RouteError(f"Routes API request failed: {e}") from e

    try:
        payload = response.json()
    except ValueError:
        payload = None

    if not response.is_success:
        message = ""
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            message = str(payload["error"].get("message") or "")
        raise RouteError(
            message
            or f"Routes API request failed ({response.status_code}). Ensure Routes API is enabled for this key."
        )

    routes = payload.get("routes") if isinstance(payload, dict) else None
    route = routes[0] if isinstance(routes, list) and routes else {}
    encoded = clean_text((route.get("polyline") or {}).get("encodedPolyline"))
    if not encoded:
        raise RouteError(
            "No route was returned for the selected travel mode and stops.",
            status_code=422,
        )

    legs = route.get("legs") if isinstance(route.get("legs"), list) else []
    return {
        "encodedPolyline": encoded,
        "totalDistanceMeters": sum(to_coordinate(leg.get("distanceMeters")) or 0 for leg in legs),
        "totalDurationSeconds": sum(parse_duration_seconds(leg.get("duration")) for leg in legs),
    }
