from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ingest.cursor import RssState, serialize_state, state_key
from ingest.models import (
    SOURCE_STATUSES,
    SOURCE_TYPES,
    IngestionError,
    Source,
    clean_text,
)
from ingest.safety import ResolveHost, validate_source_url_for_fetch
from store.db import Store, StoreError


logger = logging.getLogger(__name__)


class SourceError(Exception):
    def __init__(self, message: str, *, not_found: bool = False) -> None:
        super().__init__(message)
        self.not_found = not_found


@dataclass
class SourceSnapshot:
    event_sources: list[Source] = field(default_factory=list)
    spot_sources: list[Source] = field(default_factory=list)

    def all(self) -> list[Source]:
        return [*self.event_sources, *self.spot_sources]


def make_fallback_source(source_type: str, url: str) -> Source:
    next_url = clean_text(url)
    return Source(
        id=f"fallback-{source_type}-{next_url}",
        source_type=source_type,
        url=next_url,
        label=next_url,
        status="active",
        readonly=True,
    )


def _active(sources: list[Source], source_type: str) -> list[Source]:
    active: list[Source] = []
    for source in sources:
        if source.source_type != source_type or source.status != "active":
            continue
        url = clean_text(source.url)
        if not url:
            continue
        source.url = url
        source.label = clean_text(source.label) or url
        active.append(source)
    return active


class SourceRegistry:
    def __init__(
        self,
        store: Store | None,
        *,
        event_urls: list[str],
        spot_urls: list[str],
        resolve_host: ResolveHost | None = None,
    ) -> None:
        self.store = store
        self.event_urls = event_urls
        self.spot_urls = spot_urls
        self.resolve_host = resolve_host

    def fallback_sources(self, source_type: str) -> list[Source]:
        urls = self.event_urls if source_type == "event" else self.spot_urls
        return [make_fallback_source(source_type, url) for url in urls]

    def _stored(self) -> list[Source] | None:
        if self.store is None:
            return None
        try:
            return self.store.list_sources()
        except StoreError as e:
            logger.warning("source read failed, using built-in sources: %s", e)
            return None

    def list_sources(self) -> tuple[list[Source], str]:
        stored = self._stored()
        if not stored:
            return (
                [*self.fallback_sources("event"), *self.fallback_sources("spot")],
                "fallback",
            )
        sources = list(stored)
        for source_type in SOURCE_TYPES:
            if not any(s.source_type == source_type for s in stored):
                sources.extend(self.fallback_sources(source_type))
        return (sources, "store")

    def get_source(self, source_id: str) -> Source | None:
        sources, _ = self.list_sources()
        for source in sources:
            if source.id == source_id:
                return source
        return None

    def snapshot_for_sync(self) -> SourceSnapshot:
        stored = self._stored() or []
        event_sources = _active(stored, "event") or self.fallback_sources("event")
        spot_sources = _active(stored, "spot") or self.fallback_sources("spot")
        return SourceSnapshot(event_sources=event_sources, spot_sources=spot_sources)

    def _require_store(self) -> Store:
        if self.store is None:
            raise SourceError("Durable store is not configured; sources cannot be changed.")
        return self.store

    async def create_source(self, source_type: object, url: object, label: object = "") -> Source:
        store = self._require_store()
        next_type = clean_text(source_type).lower()
        next_url = clean_text(url)
        next_label = clean_text(label) or next_url
        if next_type not in SOURCE_TYPES:
            raise SourceError('sourceType must be "event" or "spot".')
        check = await validate_source_url_for_fetch(next_url, self.resolve_host)
        if not check.ok:
            raise SourceError(check.error)
        return store.create_source(source_type=next_type, url=next_url, label=next_label)

    def update_source(
        self, source_id: str, *, label: object = None, status: object = None
    ) -> Source:
        store = self._require_store()
        patch: dict[str, str] = {}
        if isinstance(label, str):
            patch["label"] = clean_text(label)
        if isinstance(status, str):
            next_status = clean_text(status).lower()
            if next_status not in SOURCE_STATUSES:
                raise SourceError('status must be "active" or "paused".')
            patch["status"] = next_status
        if not patch:
            raise SourceError('Nothing to update. Provide "label" and/or "status".')
        updated = store.update_source(source_id, **patch)
        if updated is None:
            raise SourceError("Source not found.", not_found=True)
        return updated

    def delete_source(self, source_id: str) -> None:
        store = self._require_store()
        if not store.delete_source(source_id):
            raise SourceError("Source not found.", not_found=True)

    def save_sync_status(
        self,
        sources: list[Source],
        errors: list[IngestionError],
        synced_at: str,
        rss_states: dict[str, RssState] | None = None,
    ) -> None:
        if self.store is None or not sources:
            return
        first_error: dict[str, str] = {}
        for error in errors:
            if error.source_id and error.source_id not in first_error:
                first_error[error.source_id] = error.message

        for source in sources:
            if source.readonly or not source.id:
                continue
            patch = {
                "last_synced_at": synced_at,
                "last_error": first_error.get(source.id, ""),
            }
            state_json = serialize_state((rss_states or {}).get(state_key(source.url), {}))
            if state_json:
                patch["rss_state_json"] = state_json
            try:
                self.store.update_source(source.id, **patch)
            except StoreError as e:
                logger.warning("telemetry write failed for source %s: %s", source.id, e)
