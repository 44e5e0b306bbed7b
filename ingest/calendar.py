from __future__ import annotations

import httpx

from ingest.fetch import fetch_validated
from ingest.models import EventRecord, Source
from ingest.parsers.ical import parse_ical
from ingest.safety import ResolveHost
from normalize.normalize import normalize_ical_event


async def fetch_calendar_events(
    source: Source,
    *,
    client: httpx.AsyncClient,
    user_agent: str,
    tz_name: str,
    resolve_host: ResolveHost | None = None,
    checked_url: str | None = None,
) -> list[EventRecord]:
    data = await fetch_validated(
        client,
        url=checked_url or source.url,
        user_agent=user_agent,
        accept="text/calendar, */*",
        resolve_host=resolve_host,
        prevalidated=checked_url is not None,
    )
    events: list[EventRecord] = []
    for record in parse_ical(data):
        event = normalize_ical_event(source=source, record=record, tz_name=tz_name)
        if event is not None:
            events.append(event)
    return events
