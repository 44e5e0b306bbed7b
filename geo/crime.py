from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import httpx

from ingest.models import clean_text, to_coordinate


logger = logging.getLogger(__name__)

DATASET_ID = "wg3w-h783"
DATASET_URL = f"https://data.sfgov.org/resource/{DATASET_ID}.json"
DATASET_PAGE_URL = f"https://data.sfgov.org/d/{DATASET_ID}"
PROVIDER = "SF Open Data"

DEFAULT_HOURS = 24
MAX_HOURS = 7 * 24
DEFAULT_LIMIT = 4000
MIN_LIMIT = 200
MAX_LIMIT = 10_000

EXCLUDED_CATEGORIES = (
    "Non-Criminal",
    "Case Closure",
    "Lost Property",
    "Courtesy Report",
    "Recovered Vehicle",
)
SELECT_FIELDS = ",".join(
    [
        "incident_datetime",
        "incident_category",
        "incident_subcategory",
        "analysis_neighborhood",
        "latitude",
        "longitude",
    ]
)
CACHE_CONTROL = "public, s-maxage=60, stale-while-revalidate=120"

_INT_PREFIX_RE = re.compile(r"^\s*[+-]?\d+")
_FLOAT_PREFIX_RE = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


class CrimeError(Exception):
    def __init__(self, message: str, *, details: str = "") -> None:
        super().__init__(message)
        self.details = details


@dataclass(frozen=True)
class CrimeBounds:
    south: float
    west: float
    north: float
    east: float

    def to_dict(self) -> dict[str, float]:
        return {"south": self.south, "west": self.west, "north": self.north, "east": self.east}


def clamp_integer(value: str | None, fallback: int, low: int, high: int) -> int:
    """Leading-integer parse of a query value, clamped to [low, high]."""
    match = _INT_PREFIX_RE.match(value or "")
    if match is None:
        return fallback
    return max(low, min(high, int(match.group(0))))


def clamp_float(value: str | None, low: float, high: float) -> float | None:
    match = _FLOAT_PREFIX_RE.match(value or "")
    if match is None:
        return None
    parsed = float(match.group(0))
    if not math.isfinite(parsed):
        return None
    return max(low, min(high, parsed))


def parse_bounds(params: Mapping[str, str]) -> CrimeBounds | None:
    south = clamp_float(params.get("south"), -90, 90)
    west = clamp_float(params.get("west"), -180, 180)
    north = clamp_float(params.get("north"), -90, 90)
    east = clamp_float(params.get("east"), -180, 180)
    if south is None or west is None or north is None or east is None:
        return None
    if south >= north or west >= east:
        return None
    return CrimeBounds(south=south, west=west, north=north, east=east)


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_where_clause(since_date_iso: str, bounds: CrimeBounds | None) -> str:
    excluded = ", ".join(_sql_literal(c) for c in EXCLUDED_CATEGORIES)
    clauses = [
        f"incident_date >= {_sql_literal(since_date_iso)}",
        "latitude IS NOT NULL",
        "longitude IS NOT NULL",
        f"incident_category NOT IN ({excluded})",
    ]
    if bounds is not None:
        clauses.append(f"latitude >= {bounds.south} AND latitude <= {bounds.north}")
        clauses.append(f"longitude >= {bounds.west} AND longitude <= {bounds.east}")
    return " AND ".join(clauses)


def iso_millis(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_incident(row: object, since_comparable_iso: str) -> dict | None:
    if not isinstance(row, dict):
        return None
    lat = to_coordinate(row.get("latitude"))
    lng = to_coordinate(row.get("longitude"))
    if lat is None or lng is None:
        return None
    incident_datetime = clean_text(row.get("incident_datetime"))
    # Socrata floating timestamps compare lexically against the window start.
    if incident_datetime and incident_datetime < since_comparable_iso:
        return None
    return {
        "lat": lat,
        "lng": lng,
        "incidentDatetime": incident_datetime,
        "incidentCategory": clean_text(row.get("incident_category")),
        "incidentSubcategory": clean_text(row.get("incident_subcategory")),
        "neighborhood": clean_text(row.get("analysis_neighborhood")),
    }


async def fetch_incidents(
    client: httpx.AsyncClient,
    *,
    hours: int,
    limit: int,
    bounds: CrimeBounds | None,
    app_token: str | None = None,
    now: datetime | None = None,
) -> list[dict]:
    since = (now or datetime.now(tz=UTC)) - timedelta(hours=hours)
    since_iso = iso_millis(since)
    since_comparable = since_iso.removesuffix("Z")
    since_date = f"{since_iso[:10]}T00:00:00.000"

    params = {
        "$select": SELECT_FIELDS,
        "$where": build_where_clause(since_date, bounds),
        "$order": "incident_datetime DESC",
        "$limit": str(limit),
    }
    headers = {"X-App-Token": app_token} if app_token else {}

    try:
        response = await client.get(
            DATASET_URL,
            params=params,
            headers=headers,
            timeout=httpx.Timeout(connect=5.0, read=20.0, write=5.0, pool=5.0),
        )
    except httpx.HTTPError as e:
        raise CrimeError(f"Upstream SF Open Data request failed: {e}") from e

    if not response.is_success:
        raise CrimeError(
            f"Upstream SF Open Data request failed ({response.status_code}).",
            details=response.text[:300],
        )

    try:
        rows = response.json()
    except ValueError:
        logger.warning("crime dataset returned a non-JSON body")
        rows = []
    if not isinstance(rows, list):
        return []
    incidents = [normalize_incident(row, since_comparable) for row in rows]
    return [i for i in incidents if i is not None]
