from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from typing import TypeVar

from ingest.models import EventRecord, Spot


DEFAULT_MISSED_SYNC_THRESHOLD = 2

Record = TypeVar("Record", EventRecord, Spot)


def reconcile_records(
    previous: list[Record],
    survivors: list[Record],
    *,
    synced_at: str,
    threshold: int = DEFAULT_MISSED_SYNC_THRESHOLD,
    key: Callable[[Record], str],
) -> list[Record]:
    threshold = max(1, threshold)
    present = {key(record) for record in survivors}

    reconciled: dict[str, Record] = {}
    for record in previous:
        record_key = key(record)
        if record_key in present or record_key in reconciled:
            continue
        missed = record.missed_sync_count + 1
        reconciled[record_key] = replace(
            record,
            missed_sync_count=missed,
            is_deleted=missed >= threshold,
            updated_at=synced_at,
        )

    for record in survivors:
        reconciled[key(record)] = replace(
            record,
            missed_sync_count=0,
            is_deleted=False,
            last_seen_at=synced_at,
            updated_at=synced_at,
        )
    return list(reconciled.values())


def reconcile_events(
    previous: list[EventRecord],
    survivors: list[EventRecord],
    *,
    synced_at: str,
    threshold: int = DEFAULT_MISSED_SYNC_THRESHOLD,
) -> list[EventRecord]:
    return reconcile_records(
        previous,
        survivors,
        synced_at=synced_at,
        threshold=threshold,
        key=lambda record: record.identity,
    )


def reconcile_spots(
    previous: list[Spot],
    survivors: list[Spot],
    *,
    synced_at: str,
    threshold: int = DEFAULT_MISSED_SYNC_THRESHOLD,
) -> list[Spot]:
    return reconcile_records(
        previous,
        survivors,
        synced_at=synced_at,
        threshold=threshold,
        key=lambda spot: spot.id,
    )
