import asyncio
import json

import httpx
import pytest

from geo.routes import (
    LatLng,
    RouteCache,
    RouteError,
    compute_route,
    parse_duration_seconds,
    route_cache_key,
    sanitize_route_payload,
    to_travel_mode,
)
from store.db import open_store
from store.local import ROUTE_CACHE_FILE, LocalStorage


ORIGIN = LatLng(37.7955, -122.3937)
DEST = LatLng(37.7596, -122.4269)


def test_cache_key_rounds_to_five_decimals() -> None:
    a = route_cache_key(LatLng(37.795501, -122.393701), DEST, [], "WALK")
    b = route_cache_key(LatLng(37.795499, -122.393699), DEST, [], "WALK")
    assert a == b
    assert a != route_cache_key(ORIGIN, DEST, [], "DRIVE")
    assert len(a) == 64


def test_travel_mode_and_duration() -> None:
    assert to_travel_mode("driving") == "DRIVE"
    assert to_travel_mode("TRANSIT") == "TRANSIT"
    assert to_travel_mode("bicycling") == "WALK"
    assert to_travel_mode(None) == "WALK"
    assert parse_duration_seconds("754.6s") == 755
    assert parse_duration_seconds("12 minutes") == 0


def test_sanitize_route_payload() -> None:
    assert sanitize_route_payload({"encodedPolyline": " abc ", "totalDistanceMeters": -5}) == {
        "encodedPolyline": "abc",
        "totalDistanceMeters": 0,
        "totalDurationSeconds": 0,
    }


def test_compute_route_sums_legs() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["mask"] = request.headers["x-goog-fieldmask"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "routes": [
                    {
                        "polyline": {"encodedPolyline": "poly"},
                        "legs": [
                            {"distanceMeters": 1200, "duration": "900s"},
                            {"distanceMeters": 800, "duration": "600.4s"},
                        ],
                    }
                ]
            },
        )

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await compute_route(
                client,
                api_key="k",
                origin=ORIGIN,
                destination=DEST,
                waypoints=[LatLng(37.78, -122.41)],
                travel_mode="WALK",
            )

    route = asyncio.run(run())
    assert route == {
        "encodedPolyline": "poly",
        "totalDistanceMeters": 2000,
        "totalDurationSeconds": 1500,
    }
    assert "routes.legs.duration" in seen["mask"]
    assert seen["body"]["intermediates"][0]["location"]["latLng"]["latitude"] == 37.78
    assert "departureTime" not in seen["body"]


def test_compute_route_errors() -> None:
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": {"message": "API not enabled"}})

    def empty(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"routes": []})

    async def run(handler):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await compute_route(
                client, api_key="k", origin=ORIGIN, destination=DEST, waypoints=[], travel_mode="TRANSIT"
            )

    with pytest.raises(RouteError, match="API not enabled") as failed:
        asyncio.run(run(failing))
    assert failed.value.status_code == 502
    with pytest.raises(RouteError) as missing:
        asyncio.run(run(empty))
    assert missing.value.status_code == 422


def test_route_cache_tiers(tmp_path) -> None:
    store = open_store(tmp_path / "trip.db")
    payload = {"encodedPolyline": "poly", "totalDistanceMeters": 10, "totalDurationSeconds": 20}
    cache = RouteCache(store, LocalStorage(tmp_path))
    assert cache.put("k1", payload) is True
    assert cache.put("k2", {"encodedPolyline": ""}) is False
    assert store.get_route("k1") == payload
    assert json.loads((tmp_path / ROUTE_CACHE_FILE).read_text()) == {"k1": payload}

    (tmp_path / ROUTE_CACHE_FILE).unlink()
    fresh = RouteCache(store, LocalStorage(tmp_path))
    assert fresh.get("k1") == payload
    assert (tmp_path / ROUTE_CACHE_FILE).exists()
    assert fresh.get("missing") is None


def test_route_cache_clears_past_max_entries(tmp_path) -> None:
    cache = RouteCache(None, LocalStorage(tmp_path), max_entries=2)
    for key in ("a", "b", "c"):
        cache.put(key, {"encodedPolyline": key})
    assert len(cache) == 1
    assert cache.get("c") is not None
    assert cache.get("a") is None
