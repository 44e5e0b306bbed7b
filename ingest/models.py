from __future__ import annotations

import math
import re
from dataclasses import dataclass, field


SOURCE_TYPES = ("event", "spot")
SOURCE_STATUSES = ("active", "paused")
INGESTION_STAGES = ("source_validation", "ical", "rss", "firecrawl")

_WS_RE = re.compile(r"\s+")


def clean_text(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return _WS_RE.sub(" ", value).strip()


def to_coordinate(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _to_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default


def _to_confidence(value: object) -> float:
    number = to_coordinate(value)
    if number is None:
        return 1.0
    return min(1.0, max(0.0, number))


@dataclass
class Source:
    id: str
    source_type: str
    url: str
    label: str
    status: str = "active"
    created_at: str = ""
    updated_at: str = ""
    last_synced_at: str = ""
    last_error: str = ""
    rss_state_json: str = ""
    readonly: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sourceType": self.source_type,
            "url": self.url,
            "label": self.label,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastSyncedAt": self.last_synced_at,
            "lastError": self.last_error,
            "rssStateJson": self.rss_state_json,
            "readonly": self.readonly,
        }


@dataclass(frozen=True)
class IngestionError:
    source_type: str
    source_id: str
    source_url: str
    stage: str
    message: str
    event_url: str = ""

    def to_dict(self) -> dict:
        return {
            "sourceType": self.source_type,
            "sourceId": self.source_id,
            "sourceUrl": self.source_url,
            "eventUrl": self.event_url,
            "stage": self.stage,
            "message": self.message,
        }


def ingestion_error(
    *,
    source: Source | None,
    source_type: str,
    stage: str,
    message: str,
    event_url: str = "",
) -> IngestionError:
    return IngestionError(
        source_type=source_type,
        source_id=clean_text(source.id) if source is not None else "",
        source_url=clean_text(source.url) if source is not None else "",
        stage=stage,
        message=clean_text(message),
        event_url=clean_text(event_url),
    )


@dataclass
class EventRecord:
    """One event candidate, or a persisted event once lifecycle fields are set."""

    id: str
    name: str
    event_url: str
    description: str = ""
    start_date_time_text: str = ""
    start_date_iso: str = ""
    location_text: str = ""
    address: str = ""
    map_url: str = ""
    lat: float | None = None
    lng: float | None = None
    source_id: str = ""
    source_url: str = ""
    confidence: float = 1.0
    missed_sync_count: int = 0
    is_deleted: bool = False
    last_seen_at: str = ""
    updated_at: str = ""

    @property
    def identity(self) -> str:
        return self.event_url or f"id:{self.id}"

    def to_dict(self) -> dict:
        doc = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "eventUrl": self.event_url,
            "startDateTimeText": self.start_date_time_text,
            "startDateISO": self.start_date_iso,
            "locationText": self.location_text,
            "address": self.address,
            "mapUrl": self.map_url,
            "sourceId": self.source_id,
            "sourceUrl": self.source_url,
            "confidence": self.confidence,
            "missedSyncCount": self.missed_sync_count,
            "isDeleted": self.is_deleted,
            "lastSeenAt": self.last_seen_at,
            "updatedAt": self.updated_at,
        }
        if self.lat is not None and self.lng is not None:
            doc["lat"] = self.lat
            doc["lng"] = self.lng
        return doc

    @classmethod
    def from_dict(cls, doc: object) -> EventRecord | None:
        if not isinstance(doc, dict):
            return None
        name = clean_text(doc.get("name"))
        event_url = clean_text(doc.get("eventUrl"))
        record_id = clean_text(doc.get("id")) or event_url
        if not name or not record_id:
            return None
        lat = to_coordinate(doc.get("lat"))
        lng = to_coordinate(doc.get("lng"))
        if lat is None or lng is None:
            lat = lng = None
        return cls(
            id=record_id,
            name=name,
            event_url=event_url,
            description=clean_text(doc.get("description")),
            start_date_time_text=clean_text(doc.get("startDateTimeText")),
            start_date_iso=clean_text(doc.get("startDateISO")),
            location_text=clean_text(doc.get("locationText")),
            address=clean_text(doc.get("address")),
            map_url=clean_text(doc.get("mapUrl") or doc.get("googleMapsUrl")),
            lat=lat,
            lng=lng,
            source_id=clean_text(doc.get("sourceId")),
            source_url=clean_text(doc.get("sourceUrl")),
            confidence=_to_confidence(doc.get("confidence")),
            missed_sync_count=_to_int(doc.get("missedSyncCount")),
            is_deleted=doc.get("isDeleted") is True,
            last_seen_at=clean_text(doc.get("lastSeenAt")),
            updated_at=clean_text(doc.get("updatedAt")),
        )


@dataclass
class Spot:
    id: str
    name: str
    tag: str
    location: str = ""
    map_link: str = ""
    corner_link: str = ""
    curator_comment: str = ""
    description: str = ""
    details: str = ""
    lat: float | None = None
    lng: float | None = None
    source_id: str = ""
    source_url: str = ""
    confidence: float = 1.0
    boundary: list[list[float]] | None = None
    risk: str = ""
    safety_level: str = ""
    missed_sync_count: int = 0
    is_deleted: bool = False
    last_seen_at: str = ""
    updated_at: str = ""
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        doc = {
            **self.extra,
            "id": self.id,
            "name": self.name,
            "tag": self.tag,
            "location": self.location,
            "mapLink": self.map_link,
            "cornerLink": self.corner_link,
            "curatorComment": self.curator_comment,
            "description": self.description,
            "details": self.details,
            "sourceId": self.source_id,
            "sourceUrl": self.source_url,
            "confidence": self.confidence,
            "missedSyncCount": self.missed_sync_count,
            "isDeleted": self.is_deleted,
            "lastSeenAt": self.last_seen_at,
            "updatedAt": self.updated_at,
        }
        if self.lat is not None and self.lng is not None:
            doc["lat"] = self.lat
            doc["lng"] = self.lng
        if self.boundary is not None:
            doc["boundary"] = self.boundary
        if self.risk:
            doc["risk"] = self.risk
        if self.safety_level:
            doc["safetyLevel"] = self.safety_level
        return doc

    @classmethod
    def from_dict(cls, doc: object) -> Spot | None:
        if not isinstance(doc, dict):
            return None
        name = clean_text(doc.get("name"))
        if not name:
            return None
        lat = to_coordinate(doc.get("lat"))
        lng = to_coordinate(doc.get("lng"))
        if lat is None or lng is None:
            lat = lng = None
        known = {
            "id", "name", "tag", "location", "mapLink", "cornerLink",
            "curatorComment", "description", "details", "lat", "lng",
            "sourceId", "sourceUrl", "confidence", "boundary", "risk",
            "safetyLevel", "missedSyncCount", "isDeleted", "lastSeenAt",
            "updatedAt",
        }
        return cls(
            id=clean_text(doc.get("id")),
            name=name,
            tag=clean_text(doc.get("tag")).lower(),
            location=clean_text(doc.get("location")),
            map_link=clean_text(doc.get("mapLink")),
            corner_link=clean_text(doc.get("cornerLink")),
            curator_comment=clean_text(doc.get("curatorComment")),
            description=clean_text(doc.get("description")),
            details=clean_text(doc.get("details")),
            lat=lat,
            lng=lng,
            source_id=clean_text(doc.get("sourceId")),
            source_url=clean_text(doc.get("sourceUrl")),
            confidence=_to_confidence(doc.get("confidence")),
            boundary=_parse_boundary(doc.get("boundary")),
            risk=clean_text(doc.get("risk")),
            safety_level=clean_text(doc.get("safetyLevel")),
            missed_sync_count=_to_int(doc.get("missedSyncCount")),
            is_deleted=doc.get("isDeleted") is True,
            last_seen_at=clean_text(doc.get("lastSeenAt")),
            updated_at=clean_text(doc.get("updatedAt")),
            extra={k: v for k, v in doc.items() if k not in known},
        )


def _parse_boundary(value: object) -> list[list[float]] | None:
    if not isinstance(value, list):
        return None
    points: list[list[float]] = []
    for point in value:
        if isinstance(point, dict):
            lat = to_coordinate(point.get("lat"))
            lng = to_coordinate(point.get("lng"))
        elif isinstance(point, (list, tuple)) and len(point) == 2:
            lat = to_coordinate(point[0])
            lng = to_coordinate(point[1])
        else:
            continue
        if lat is not None and lng is not None:
            points.append([lat, lng])
    return points
