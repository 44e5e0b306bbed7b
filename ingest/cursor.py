from __future__ import annotations

import json
from datetime import UTC, datetime

from ingest.models import clean_text
from store.local import EVENTS_CACHE_FILE, LocalStorage


DEFAULT_STATE_MAX_ITEMS = 500

RssState = dict[str, str]


def state_key(source_url: str) -> str:
    text = clean_text(source_url).lower()
    return text[:-1] if text.endswith("/") else text


def looks_like_rss_url(url: str) -> bool:
    value = clean_text(url).lower()
    if not value:
        return False
    return value.endswith(".xml") or "/rss" in value or "/feeds/" in value


def parse_version(value: str) -> datetime | None:
    text = clean_text(value)
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _rank(version: str) -> float:
    parsed = parse_version(version)
    if parsed is None:
        return 0.0
    return parsed.timestamp()


def trim_state(state: RssState, max_items: int = DEFAULT_STATE_MAX_ITEMS) -> RssState:
    ranked = sorted(state.items(), key=lambda kv: _rank(kv[1]), reverse=True)
    return dict(ranked[: max(1, max_items)])


def coerce_state(value: object, max_items: int = DEFAULT_STATE_MAX_ITEMS) -> RssState:
    if not isinstance(value, dict):
        return {}
    state: RssState = {}
    for item_id, version in value.items():
        key = clean_text(item_id)
        seen = clean_text(version)
        if key and seen:
            state[key] = seen
    return trim_state(state, max_items)


def parse_state_json(value: str, max_items: int = DEFAULT_STATE_MAX_ITEMS) -> RssState:
    text = clean_text(value)
    if not text:
        return {}
    try:
        return coerce_state(json.loads(text), max_items)
    except json.JSONDecodeError:
        return {}


def serialize_state(state: RssState, max_items: int = DEFAULT_STATE_MAX_ITEMS) -> str:
    normalized = coerce_state(state, max_items)
    if not normalized:
        return ""
    return json.dumps(normalized)


class RssCursorCache:
    """Fallback cursor state keyed by source URL, mirrored in the events cache meta."""

    def __init__(
        self, storage: LocalStorage, max_items: int = DEFAULT_STATE_MAX_ITEMS
    ) -> None:
        self.storage = storage
        self.max_items = max_items
        self._states: dict[str, RssState] | None = None

    def _load(self) -> dict[str, RssState]:
        if self._states is None:
            self._states = {}
            payload = self.storage.read_json(EVENTS_CACHE_FILE)
            meta = payload.get("meta") if isinstance(payload, dict) else None
            raw = meta.get("rssSeenBySourceUrl") if isinstance(meta, dict) else None
            if isinstance(raw, dict):
                for source_url, state in raw.items():
                    key = state_key(str(source_url))
                    normalized = coerce_state(state, self.max_items)
                    if key and normalized:
                        self._states[key] = normalized
        return self._states

    def state_for(self, source_url: str, primary_json: str = "") -> RssState:
        primary = parse_state_json(primary_json, self.max_items)
        if primary:
            return primary
        return dict(self._load().get(state_key(source_url), {}))

    def update(self, states: dict[str, RssState]) -> None:
        cache = self._load()
        for source_url, state in states.items():
            key = state_key(source_url)
            normalized = coerce_state(state, self.max_items)
            if key and normalized:
                cache[key] = normalized

    def snapshot(self) -> dict[str, RssState]:
        return {key: dict(state) for key, state in self._load().items()}

    def persist_to_events_cache(self, states: dict[str, RssState]) -> bool:
        self.update(states)
        if not states:
            return False
        payload = self.storage.read_json(EVENTS_CACHE_FILE)
        if not isinstance(payload, dict):
            payload = {"meta": {}, "events": [], "places": []}
        meta = payload.get("meta")
        if not isinstance(meta, dict):
            meta = {}
        existing = meta.get("rssSeenBySourceUrl")
        merged = dict(existing) if isinstance(existing, dict) else {}
        merged.update(self.snapshot())
        payload["meta"] = {**meta, "rssSeenBySourceUrl": merged}
        return self.storage.write_json(EVENTS_CACHE_FILE, payload)
