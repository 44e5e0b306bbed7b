from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from ingest.models import SOURCE_TYPES


DEFAULT_FEEDS_DIR = Path(__file__).resolve().parents[1] / "feeds"


@dataclass(frozen=True)
class FeedPackEntry:
    pack_id: str
    name: str
    source_type: str
    url: str
    enabled: bool


def load_feed_pack_entries(feeds_dir: Path) -> dict[str, list[FeedPackEntry]]:
    packs: dict[str, list[FeedPackEntry]] = {}
    if not feeds_dir.exists():
        return packs

    for path in sorted(feeds_dir.glob("*.yaml")):
        pack_id = path.stem
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        if raw is None:
            packs[pack_id] = []
            continue
        if not isinstance(raw, list):
            raise ValueError(f"invalid feed pack: {path}")

        entries: list[FeedPackEntry] = []
        for entry in raw:
            if not isinstance(entry, dict) or "url" not in entry:
                raise ValueError(f"invalid feed entry in: {path}")
            source_type = str(entry.get("type") or "event")
            if source_type not in SOURCE_TYPES:
                raise ValueError(f"unknown source type {source_type!r} in: {path}")
            url = str(entry["url"]).strip()
            entries.append(
                FeedPackEntry(
                    pack_id=pack_id,
                    name=str(entry.get("name") or url),
                    source_type=source_type,
                    url=url,
                    enabled=bool(entry.get("enabled", True)),
                )
            )

        packs[pack_id] = entries

    return packs


def builtin_urls(packs: dict[str, list[FeedPackEntry]], source_type: str) -> list[str]:
    urls: list[str] = []
    for entries in packs.values():
        for entry in entries:
            if entry.enabled and entry.source_type == source_type and entry.url not in urls:
                urls.append(entry.url)
    return urls
