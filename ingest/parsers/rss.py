from __future__ import annotations

import calendar
import time
from datetime import UTC, datetime

import feedparser


def _struct_to_iso(value: time.struct_time | None) -> str | None:
    if value is None:
        return None
    try:
        dt = datetime.fromtimestamp(calendar.timegm(value), tz=UTC)
    except (OverflowError, ValueError):
        return None
    return dt.isoformat().replace("+00:00", "Z")


def parse_rss(data: bytes) -> list[dict]:
    parsed = feedparser.parse(data)
    if parsed.bozo and not parsed.entries:
        raise ValueError(f"Unreadable feed: {parsed.get('bozo_exception')}")

    records: list[dict] = []
    for entry in parsed.entries:
        link = (entry.get("link") or "").strip()
        published = _struct_to_iso(entry.get("published_parsed"))
        updated = _struct_to_iso(entry.get("updated_parsed")) or published
        records.append(
            {
                "id": (entry.get("id") or link).strip(),
                "link": link,
                "title": (entry.get("title") or "").strip(),
                "published": published,
                "updated": updated,
            }
        )
    return records
