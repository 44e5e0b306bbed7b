from __future__ import annotations

import re
from datetime import date, datetime

from cluster.dedupe import (
    canonicalize_event_url,
    default_map_link,
    event_id_from_url,
    infer_spot_tag,
    is_http_url,
    score_spot,
    spot_dedupe_key,
    spot_id_from_key,
)
from geo.coords_extract import parse_lat_lng_from_map_url
from ingest.models import EventRecord, Source, Spot, clean_text, to_coordinate
from ingest.parsers.ical import format_display_datetime


DESCRIPTION_MAX_CHARS = 500

_ISO_PREFIX_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_EMBEDDED_ISO_RE = re.compile(r"\b(20\d{2}-\d{2}-\d{2})\b")
_MONTH_DAY_YEAR_RE = re.compile(
    r"\b([A-Za-z]{3,9})\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})\b"
)
_NUMERIC_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")


def normalize_start_date_iso(value: object) -> str:
    match = _ISO_PREFIX_RE.match(clean_text(value))
    if match is None:
        return ""
    return f"{match.group(1)}-{match.group(2)}-{match.group(3)}"


def infer_date_iso(start_date_time_text: str) -> str:
    if not start_date_time_text:
        return ""
    match = _EMBEDDED_ISO_RE.search(start_date_time_text)
    if match is not None:
        return match.group(1)

    for match in _MONTH_DAY_YEAR_RE.finditer(start_date_time_text):
        month, day, year = match.groups()
        for fmt in ("%B %d %Y", "%b %d %Y"):
            try:
                return datetime.strptime(f"{month} {day} {year}", fmt).date().isoformat()
            except ValueError:
                continue

    match = _NUMERIC_DATE_RE.search(start_date_time_text)
    if match is not None:
        month, day, year = (int(part) for part in match.groups())
        try:
            return date(year, month, day).isoformat()
        except ValueError:
            return ""
    return ""


def normalize_ical_event(
    *, source: Source, record: dict, tz_name: str
) -> EventRecord | None:
    name = clean_text(record.get("summary"))
    if not name:
        return None

    start = record.get("start")
    start_date_iso = ""
    start_text = ""
    if isinstance(start, (date, datetime)):
        start_date_iso = start.date().isoformat() if isinstance(start, datetime) else start.isoformat()
        start_text = format_display_datetime(start, tz_name)

    uid = clean_text(record.get("uid"))
    raw_location = clean_text(record.get("location"))
    location_is_url = raw_location.startswith(("https://", "http://"))
    event_url = canonicalize_event_url(
        clean_text(record.get("url")) or (raw_location if location_is_url else "")
    )

    lat = to_coordinate(record.get("lat"))
    lng = to_coordinate(record.get("lng"))
    if lat is None or lng is None:
        lat = lng = None

    return EventRecord(
        id=uid or event_url or f"ical-{name}",
        name=name,
        event_url=event_url,
        description=clean_text(record.get("description"))[:DESCRIPTION_MAX_CHARS],
        start_date_time_text=start_text,
        start_date_iso=start_date_iso,
        location_text="" if location_is_url else raw_location,
        address="",
        lat=lat,
        lng=lng,
        source_id=source.id,
        source_url=source.url,
        confidence=1.0,
    )


def normalize_extracted_event(
    *, source: Source, record: object, item_title: str = ""
) -> EventRecord | None:
    if not isinstance(record, dict):
        return None
    event_url = canonicalize_event_url(
        clean_text(record.get("eventUrl")) or clean_text(record.get("url"))
    )
    name = clean_text(record.get("name"))
    if not name or not is_http_url(event_url):
        return None

    start_text = clean_text(record.get("startDateTimeText"))
    start_date_iso = normalize_start_date_iso(record.get("startDateISO")) or infer_date_iso(
        start_text
    )
    map_url = clean_text(record.get("googleMapsUrl") or record.get("mapUrl"))
    coords = parse_lat_lng_from_map_url(map_url)

    return EventRecord(
        id=event_id_from_url(event_url),
        name=name,
        event_url=event_url,
        description=clean_text(record.get("description")) or clean_text(item_title),
        start_date_time_text=start_text,
        start_date_iso=start_date_iso,
        location_text=clean_text(record.get("locationText")),
        address=clean_text(record.get("address")),
        map_url=map_url,
        lat=coords[0] if coords else None,
        lng=coords[1] if coords else None,
        source_id=source.id,
        source_url=source.url,
        confidence=1.0,
    )


def normalize_extracted_spot(*, source: Source, record: object) -> Spot | None:
    if not isinstance(record, dict):
        return None
    name = clean_text(record.get("name"))
    location = clean_text(record.get("location"))
    if not name or not location:
        return None

    corner_link = clean_text(record.get("cornerLink"))
    description = clean_text(record.get("shortDescription") or record.get("description"))
    details = clean_text(record.get("details"))
    key = spot_dedupe_key(corner_link=corner_link, name=name, location=location)
    spot = Spot(
        id=spot_id_from_key(key),
        name=name,
        tag=infer_spot_tag(record.get("tag"), f"{name} {description} {details}"),
        location=location,
        map_link=default_map_link(record.get("mapLink"), location),
        corner_link=corner_link,
        curator_comment=clean_text(record.get("curatorComment")),
        description=description,
        details=details,
        source_id=source.id,
        source_url=source.url,
    )
    # details does not count towards confidence
    spot.confidence = 1.0 if score_spot(spot) - int(bool(details)) >= 4 else 0.7
    return spot
