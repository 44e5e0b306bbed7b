from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import icalendar


logger = logging.getLogger(__name__)


def _as_utc(value: date | datetime) -> datetime | date:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return value


def format_display_datetime(value: date | datetime, tz_name: str) -> str:
    if not isinstance(value, datetime):
        return f"{value:%A, %B} {value.day}, {value.year}"
    local = value.astimezone(ZoneInfo(tz_name))
    hour = local.strftime("%I").lstrip("0") or "12"
    return (
        f"{local:%A, %B} {local.day}, {local.year} at "
        f"{hour}:{local:%M} {local:%p}"
    )


def _text(component: icalendar.cal.Component, key: str) -> str:
    value = component.get(key)
    if value is None:
        return ""
    return str(value)


def parse_ical(data: bytes) -> list[dict]:
    calendar = icalendar.Calendar.from_ical(data)
    records: list[dict] = []
    for component in calendar.walk("VEVENT"):
        if component.errors:
            logger.debug("skipping malformed VEVENT: %s", component.errors)
            continue
        try:
            records.append(_event_record(component))
        except ValueError as e:
            logger.debug("skipping malformed VEVENT: %s", e)
    return records


def _event_record(component: icalendar.cal.Component) -> dict:
    start = None
    dtstart = component.get("dtstart")
    if dtstart is not None:
        value = getattr(dtstart, "dt", None)
        if not isinstance(value, date):
            raise ValueError(f"unreadable DTSTART {dtstart!r}")
        start = _as_utc(value)

    lat = lng = None
    geo = component.get("geo")
    if geo is not None:
        lat = getattr(geo, "latitude", None)
        lng = getattr(geo, "longitude", None)
        if lat is None or lng is None:
            raise ValueError(f"unreadable GEO {geo!r}")

    return {
        "uid": _text(component, "uid"),
        "summary": _text(component, "summary"),
        "url": _text(component, "url"),
        "location": _text(component, "location"),
        "description": _text(component, "description"),
        "start": start,
        "lat": lat,
        "lng": lng,
    }
