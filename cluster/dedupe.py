from __future__ import annotations

import re
from dataclasses import replace
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from ingest.models import EventRecord, Spot, clean_text


SPOT_TAGS = ("eat", "bar", "cafes", "go out", "shops", "avoid", "safe")
REGION_TAGS = ("avoid", "safe")

_TRACKING_PARAM_NAMES = {
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "fbclid",
    "gclid",
}

_MISSING_DATE = "9999-99-99"

_OVERLAY_FIELDS = (
    "name",
    "tag",
    "location",
    "map_link",
    "corner_link",
    "curator_comment",
    "description",
    "details",
    "risk",
    "safety_level",
)

_SCHEME_RE = re.compile(r"^https?://")
_NON_WORD_RE = re.compile(r"[^\w]+")

_TAG_KEYWORDS: list[tuple[str, re.Pattern[str]]] = [
    ("cafes", re.compile(r"coffee|cafe|espresso|matcha|tea|bakery")),
    ("bar", re.compile(r"bar|cocktail|wine|pub|brewery")),
    ("shops", re.compile(r"shop|store|boutique|retail|market")),
    ("go out", re.compile(r"club|night|party|dance|music venue|late night")),
]


def is_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme.lower() in ("http", "https") and bool(parts.netloc)


def canonicalize_event_url(url: object) -> str:
    value = clean_text(url)
    if not is_http_url(value):
        return value

    parts = urlsplit(value)
    kept_params = [
        (key, val)
        for key, val in parse_qsl(parts.query, keep_blank_values=True)
        if key not in _TRACKING_PARAM_NAMES
    ]
    canonical = urlunsplit(
        (
            parts.scheme.lower(),
            parts.netloc.casefold(),
            parts.path,
            urlencode(kept_params, doseq=True),
            "",
        )
    )
    return canonical.rstrip("/")


def slugify(value: str, max_length: int) -> str:
    slug = _SCHEME_RE.sub("", clean_text(value).lower())
    slug = _NON_WORD_RE.sub("-", slug).strip("-")
    return slug[:max_length]


def event_id_from_url(event_url: str) -> str:
    return f"evt-{slugify(event_url, 96)}"


def score_event(event: EventRecord) -> int:
    fields = (
        event.name,
        event.description,
        event.start_date_time_text,
        event.start_date_iso,
        event.location_text,
        event.address,
        event.map_url,
    )
    score = sum(1 for value in fields if value)
    score += int(event.lat is not None) + int(event.lng is not None)
    return score


def dedupe_events(events: list[EventRecord]) -> list[EventRecord]:
    best: dict[str, EventRecord] = {}
    for event in events:
        existing = best.get(event.identity)
        if existing is None or score_event(event) > score_event(existing):
            best[event.identity] = event
    return sort_events(list(best.values()))


def sort_events(events: list[EventRecord]) -> list[EventRecord]:
    return sorted(events, key=lambda e: e.start_date_iso or _MISSING_DATE)


def spot_dedupe_key(*, corner_link: str, name: str, location: str) -> str:
    link = clean_text(corner_link)
    if link:
        return link.lower()
    return f"{clean_text(name).lower()}|{clean_text(location).lower()}"


def spot_id_from_key(key: str) -> str:
    return f"spot-{slugify(key, 80) or 'unknown'}"


def infer_spot_tag(tag: object, fallback_text: str) -> str:
    value = clean_text(tag).lower()
    if value in SPOT_TAGS:
        return value
    haystack = f"{value} {clean_text(fallback_text).lower()}"
    for name, pattern in _TAG_KEYWORDS:
        if pattern.search(haystack):
            return name
    return "eat"


def default_map_link(raw_link: object, location: str) -> str:
    link = clean_text(raw_link)
    if link.startswith(("https://", "http://")):
        return link
    return f"https://www.google.com/maps/search/?api=1&query={quote(location, safe='')}"


def score_spot(spot: Spot) -> int:
    fields = (
        spot.name,
        spot.location,
        spot.map_link,
        spot.corner_link,
        spot.description,
        spot.details,
    )
    score = sum(1 for value in fields if value)
    score += int(spot.lat is not None) + int(spot.lng is not None)
    return score


def dedupe_spots(spots: list[Spot]) -> list[Spot]:
    best: dict[str, Spot] = {}
    for spot in spots:
        key = spot_dedupe_key(
            corner_link=spot.corner_link, name=spot.name, location=spot.location
        )
        existing = best.get(key)
        if existing is None or score_spot(spot) > score_spot(existing):
            best[key] = spot
    return sort_spots(list(best.values()))


def sort_spots(spots: list[Spot]) -> list[Spot]:
    return sorted(spots, key=lambda s: f"{s.tag}|{s.name}")


def is_region_overlay(spot: Spot) -> bool:
    return spot.tag in REGION_TAGS and spot.boundary is not None and len(spot.boundary) >= 3


def place_merge_key(spot: Spot) -> str:
    if spot.id:
        return f"id:{spot.id.lower()}"
    return f"{spot.name.lower()}|{spot.location.lower()}|{spot.tag}"


def merge_region_overlays(base: list[Spot], static_places: list[Spot]) -> list[Spot]:
    merged: dict[str, Spot] = {place_merge_key(spot): spot for spot in base}
    for overlay in static_places:
        if not is_region_overlay(overlay):
            continue
        key = place_merge_key(overlay)
        existing = merged.get(key)
        if existing is None:
            merged[key] = overlay
            continue
        updates = {
            name: getattr(overlay, name)
            for name in _OVERLAY_FIELDS
            if getattr(overlay, name)
        }
        if overlay.lat is not None and overlay.lng is not None:
            updates["lat"] = overlay.lat
            updates["lng"] = overlay.lng
        merged[key] = replace(
            existing,
            **updates,
            boundary=overlay.boundary,
            extra={**existing.extra, **overlay.extra},
        )
    return list(merged.values())
