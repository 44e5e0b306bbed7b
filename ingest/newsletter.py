from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx

from cluster.dedupe import dedupe_events, is_http_url
from ingest.cursor import RssState, parse_version, trim_state
from ingest.extract import ExtractError, FirecrawlClient
from ingest.fetch import fetch_validated
from ingest.models import EventRecord, IngestionError, Source, clean_text, ingestion_error
from ingest.parsers.rss import parse_rss
from ingest.safety import ResolveHost, validate_source_url_for_fetch
from normalize.normalize import normalize_extracted_event


logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = "Missing FIRECRAWL_API_KEY for RSS event extraction."

_EPOCH = datetime.fromtimestamp(0, tz=UTC)


@dataclass(frozen=True)
class FeedItem:
    item_id: str
    link: str
    title: str
    published_at: datetime | None
    updated_at: datetime | None

    @property
    def sort_at(self) -> datetime:
        return self.updated_at or self.published_at or _EPOCH

    @property
    def version_iso(self) -> str:
        return self.sort_at.isoformat().replace("+00:00", "Z")


@dataclass
class NewsletterResult:
    events: list[EventRecord] = field(default_factory=list)
    errors: list[IngestionError] = field(default_factory=list)
    state: RssState = field(default_factory=dict)


def feed_items_from_records(records: list[dict]) -> list[FeedItem]:
    items: list[FeedItem] = []
    for record in records:
        link = clean_text(record.get("link"))
        item_id = clean_text(record.get("id")) or link
        if not is_http_url(link) or not item_id:
            continue
        published = parse_version(record.get("published") or "")
        updated = parse_version(record.get("updated") or "") or published
        items.append(
            FeedItem(
                item_id=item_id,
                link=link,
                title=clean_text(record.get("title")),
                published_at=published,
                updated_at=updated,
            )
        )
    return items


def should_sync_item(item: FeedItem, state: RssState) -> bool:
    seen_version = clean_text(state.get(item.item_id, ""))
    if not seen_version:
        return True
    seen_at = parse_version(seen_version)
    item_version_at = item.updated_at or item.published_at
    if seen_at is None or item_version_at is None:
        return False
    return item_version_at > seen_at


def select_items(
    items: list[FeedItem],
    state: RssState,
    *,
    initial_items: int,
    max_items: int,
) -> list[FeedItem]:
    if not items:
        return []
    ordered = sorted(items, key=lambda item: item.sort_at)
    if state:
        candidates = [item for item in ordered if should_sync_item(item, state)]
    else:
        candidates = ordered[-max(1, initial_items) :]
    return candidates[-max(1, max_items) :]


async def sync_newsletter_source(
    source: Source,
    state: RssState,
    *,
    client: httpx.AsyncClient,
    firecrawl: FirecrawlClient | None,
    user_agent: str,
    initial_items: int,
    max_items: int,
    state_max_items: int,
    resolve_host: ResolveHost | None = None,
    checked_url: str | None = None,
) -> NewsletterResult:
    result = NewsletterResult(state=dict(state))

    if checked_url is None:
        check = await validate_source_url_for_fetch(source.url, resolve_host)
        if not check.ok:
            result.errors.append(
                ingestion_error(
                    source=source,
                    source_type="event",
                    stage="source_validation",
                    message=check.error,
                )
            )
            result.state = trim_state(result.state, state_max_items)
            return result
        checked_url = check.url

    if firecrawl is None:
        result.errors.append(
            ingestion_error(
                source=source,
                source_type="event",
                stage="firecrawl",
                message=MISSING_KEY_MESSAGE,
            )
        )
        return result

    # Feed fetch and parse failures propagate; the caller records them as "rss".
    data = await fetch_validated(
        client,
        url=checked_url,
        user_agent=user_agent,
        accept="application/rss+xml, application/atom+xml, application/xml, text/xml, */*",
        resolve_host=resolve_host,
        prevalidated=True,
    )
    items = feed_items_from_records(parse_rss(data))
    selected = select_items(
        items, result.state, initial_items=initial_items, max_items=max_items
    )
    logger.info("newsletter %s: %d of %d items selected", source.url, len(selected), len(items))

    extracted: list[EventRecord] = []
    for item in selected:
        post_check = await validate_source_url_for_fetch(item.link, resolve_host)
        if not post_check.ok:
            result.errors.append(
                ingestion_error(
                    source=source,
                    source_type="event",
                    stage="source_validation",
                    message=post_check.error,
                    event_url=item.link,
                )
            )
            continue
        try:
            raw_events = await firecrawl.extract_events(post_check.url)
        except (ExtractError, httpx.HTTPError) as e:
            logger.warning("extraction failed for %s: %s", item.link, e)
            result.errors.append(
                ingestion_error(
                    source=source,
                    source_type="event",
                    stage="firecrawl",
                    message=str(e) or "Firecrawl RSS extraction failed.",
                    event_url=item.link,
                )
            )
            continue
        for raw in raw_events:
            event = normalize_extracted_event(source=source, record=raw, item_title=item.title)
            if event is not None:
                extracted.append(event)
        result.state[item.item_id] = item.version_iso

    result.events = dedupe_events(extracted)
    result.state = trim_state(result.state, state_max_items)
    return result
