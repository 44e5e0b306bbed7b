from __future__ import annotations

import re
from urllib.parse import parse_qs, urlsplit

from ingest.models import clean_text, to_coordinate


_ADDRESS_STRIP_RE = re.compile(r"[^\w\s,.-]", flags=re.ASCII)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_address_key(value: object) -> str:
    cleaned = clean_text(value).lower()
    cleaned = _ADDRESS_STRIP_RE.sub("", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def parse_lat_lng_from_map_url(url: object) -> tuple[float, float] | None:
    if not isinstance(url, str) or not url:
        return None
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None

    query_values = parse_qs(parts.query).get("query")
    if not query_values:
        return None
    pieces = query_values[0].split(",")
    if len(pieces) != 2:
        return None
    lat = to_coordinate(pieces[0].strip())
    lng = to_coordinate(pieces[1].strip())
    if lat is None or lng is None:
        return None
    return (lat, lng)
