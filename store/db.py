from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from ingest.models import EventRecord, Source, Spot, clean_text


logger = logging.getLogger(__name__)


class StoreError(Exception):
    pass


_MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version INTEGER NOT NULL PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS sources (
          source_id TEXT NOT NULL PRIMARY KEY,
          source_type TEXT NOT NULL,
          url TEXT NOT NULL,
          label TEXT NOT NULL,
          status TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          last_synced_at TEXT NULL,
          last_error TEXT NULL,
          rss_state_json TEXT NULL
        );

        CREATE INDEX IF NOT EXISTS sources_url_idx ON sources(url);
        CREATE INDEX IF NOT EXISTS sources_type_status_idx ON sources(source_type, status);

        CREATE TABLE IF NOT EXISTS events (
          event_key TEXT NOT NULL PRIMARY KEY,
          start_date_iso TEXT NOT NULL DEFAULT '',
          is_deleted INTEGER NOT NULL DEFAULT 0,
          record_json TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS events_start_date_idx ON events(start_date_iso);

        CREATE TABLE IF NOT EXISTS spots (
          spot_id TEXT NOT NULL PRIMARY KEY,
          sort_key TEXT NOT NULL DEFAULT '',
          is_deleted INTEGER NOT NULL DEFAULT 0,
          record_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_meta (
          key TEXT NOT NULL PRIMARY KEY,
          value_json TEXT NOT NULL
        );
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS geocode_cache (
          address_key TEXT NOT NULL PRIMARY KEY,
          address_text TEXT NOT NULL DEFAULT '',
          lat REAL NOT NULL,
          lng REAL NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS route_cache (
          cache_key TEXT NOT NULL PRIMARY KEY,
          payload_json TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        """,
    ),
]


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL PRIMARY KEY);"
    )
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM schema_migrations;"
    ).fetchone()
    current_version = int(row["v"])

    for version, sql in _MIGRATIONS:
        if version <= current_version:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_migrations(version) VALUES (?);", (version,))
        conn.commit()


def _source_from_row(row: sqlite3.Row) -> Source:
    return Source(
        id=str(row["source_id"]),
        source_type=str(row["source_type"]),
        url=str(row["url"]),
        label=str(row["label"]),
        status=str(row["status"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        last_synced_at=str(row["last_synced_at"] or ""),
        last_error=str(row["last_error"] or ""),
        rss_state_json=str(row["rss_state_json"] or ""),
    )


def _load_json(raw: str) -> object:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("skipping unreadable stored row: %s", e)
        return None


class Store:
    def __init__(self, conn: sqlite3.Connection, lock: threading.Lock) -> None:
        self.conn = conn
        self.lock = lock

    @contextmanager
    def _locked(self) -> Iterator[sqlite3.Connection]:
        with self.lock:
            try:
                yield self.conn
            except sqlite3.Error as e:
                self.conn.rollback()
                raise StoreError(str(e)) from e

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    # sources

    def list_sources(self, source_type: str | None = None) -> list[Source]:
        with self._locked() as conn:
            if source_type is None:
                rows = conn.execute(
                    "SELECT * FROM sources ORDER BY updated_at DESC;"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sources WHERE source_type = ? ORDER BY updated_at DESC;",
                    (source_type,),
                ).fetchall()
        return [_source_from_row(r) for r in rows]

    def get_source(self, source_id: str) -> Source | None:
        with self._locked() as conn:
            row = conn.execute(
                "SELECT * FROM sources WHERE source_id = ?;", (source_id,)
            ).fetchone()
        return _source_from_row(row) if row is not None else None

    def create_source(self, *, source_type: str, url: str, label: str) -> Source:
        now_iso = _utc_now_iso()
        with self._locked() as conn:
            row = conn.execute(
                "SELECT * FROM sources WHERE url = ? AND source_type = ? LIMIT 1;",
                (url, source_type),
            ).fetchone()
            if row is not None:
                existing = _source_from_row(row)
                if existing.label != label or existing.status != "active":
                    conn.execute(
                        """
                        UPDATE sources
                        SET label = ?, status = 'active', updated_at = ?
                        WHERE source_id = ?;
                        """,
                        (label, now_iso, existing.id),
                    )
                    conn.commit()
                    existing.label = label
                    existing.status = "active"
                    existing.updated_at = now_iso
                return existing

            source = Source(
                id=uuid.uuid4().hex,
                source_type=source_type,
                url=url,
                label=label,
                status="active",
                created_at=now_iso,
                updated_at=now_iso,
            )
            conn.execute(
                """
                INSERT INTO sources(source_id, source_type, url, label, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    source.id,
                    source.source_type,
                    source.url,
                    source.label,
                    source.status,
                    source.created_at,
                    source.updated_at,
                ),
            )
            conn.commit()
        return source

    def update_source(self, source_id: str, **patch: str) -> Source | None:
        allowed = ("label", "status", "last_synced_at", "last_error", "rss_state_json")
        with self._locked() as conn:
            row = conn.execute(
                "SELECT * FROM sources WHERE source_id = ?;", (source_id,)
            ).fetchone()
            if row is None:
                return None
            current = _source_from_row(row)
            changes = {
                key: value
                for key, value in patch.items()
                if key in allowed and value is not None and getattr(current, key) != value
            }
            if not changes:
                return current
            changes["updated_at"] = _utc_now_iso()
            assignments = ", ".join(f"{key} = ?" for key in changes)
            conn.execute(
                f"UPDATE sources SET {assignments} WHERE source_id = ?;",
                [*changes.values(), source_id],
            )
            conn.commit()
        for key, value in changes.items():
            setattr(current, key, value)
        return current

    def delete_source(self, source_id: str) -> bool:
        with self._locked() as conn:
            cursor = conn.execute("DELETE FROM sources WHERE source_id = ?;", (source_id,))
            conn.commit()
        return cursor.rowcount > 0

    # events and spots

    def list_events(self, *, include_deleted: bool = False) -> list[EventRecord]:
        sql = "SELECT record_json FROM events"
        if not include_deleted:
            sql += " WHERE is_deleted = 0"
        sql += " ORDER BY CASE WHEN start_date_iso = '' THEN '9999-99-99' ELSE start_date_iso END;"
        with self._locked() as conn:
            rows = conn.execute(sql).fetchall()
        records = (EventRecord.from_dict(_load_json(r["record_json"])) for r in rows)
        return [r for r in records if r is not None]

    def replace_event_set(self, records: list[EventRecord], meta: dict) -> None:
        with self._locked() as conn:
            with conn:
                conn.execute("DELETE FROM events;")
                conn.executemany(
                    """
                    INSERT INTO events(event_key, start_date_iso, is_deleted, record_json)
                    VALUES (?, ?, ?, ?);
                    """,
                    [
                        (
                            r.identity,
                            r.start_date_iso,
                            1 if r.is_deleted else 0,
                            json.dumps(r.to_dict()),
                        )
                        for r in records
                    ],
                )
                conn.execute(
                    """
                    INSERT INTO sync_meta(key, value_json) VALUES ('events', ?)
                    ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json;
                    """,
                    (json.dumps(meta),),
                )

    def list_spots(self, *, include_deleted: bool = False) -> list[Spot]:
        sql = "SELECT record_json FROM spots"
        if not include_deleted:
            sql += " WHERE is_deleted = 0"
        sql += " ORDER BY sort_key;"
        with self._locked() as conn:
            rows = conn.execute(sql).fetchall()
        spots = (Spot.from_dict(_load_json(r["record_json"])) for r in rows)
        return [s for s in spots if s is not None]

    def replace_spot_set(self, spots: list[Spot], meta: dict) -> None:
        with self._locked() as conn:
            with conn:
                conn.execute("DELETE FROM spots;")
                conn.executemany(
                    """
                    INSERT INTO spots(spot_id, sort_key, is_deleted, record_json)
                    VALUES (?, ?, ?, ?);
                    """,
                    [
                        (
                            s.id,
                            f"{s.tag}|{s.name}",
                            1 if s.is_deleted else 0,
                            json.dumps(s.to_dict()),
                        )
                        for s in spots
                    ],
                )
                conn.execute(
                    """
                    INSERT INTO sync_meta(key, value_json) VALUES ('spots', ?)
                    ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json;
                    """,
                    (json.dumps(meta),),
                )

    def get_sync_meta(self, key: str = "events") -> dict | None:
        with self._locked() as conn:
            row = conn.execute(
                "SELECT value_json FROM sync_meta WHERE key = ?;", (key,)
            ).fetchone()
        if row is None:
            return None
        value = _load_json(row["value_json"])
        return value if isinstance(value, dict) else None

    # caches

    def get_geocode(self, address_key: str) -> tuple[float, float] | None:
        with self._locked() as conn:
            row = conn.execute(
                "SELECT lat, lng FROM geocode_cache WHERE address_key = ?;",
                (address_key,),
            ).fetchone()
        if row is None:
            return None
        return (float(row["lat"]), float(row["lng"]))

    def upsert_geocode(
        self, address_key: str, lat: float, lng: float, address_text: str = ""
    ) -> None:
        with self._locked() as conn:
            conn.execute(
                """
                INSERT INTO geocode_cache(address_key, address_text, lat, lng, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(address_key) DO UPDATE SET
                  address_text = excluded.address_text,
                  lat = excluded.lat,
                  lng = excluded.lng,
                  updated_at = excluded.updated_at;
                """,
                (address_key, clean_text(address_text), lat, lng, _utc_now_iso()),
            )
            conn.commit()

    def get_route(self, cache_key: str) -> dict | None:
        with self._locked() as conn:
            row = conn.execute(
                "SELECT payload_json FROM route_cache WHERE cache_key = ?;",
                (cache_key,),
            ).fetchone()
        if row is None:
            return None
        payload = _load_json(row["payload_json"])
        return payload if isinstance(payload, dict) else None

    def upsert_route(self, cache_key: str, payload: dict) -> None:
        with self._locked() as conn:
            conn.execute(
                """
                INSERT INTO route_cache(cache_key, payload_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                  payload_json = excluded.payload_json,
                  updated_at = excluded.updated_at;
                """,
                (cache_key, json.dumps(payload), _utc_now_iso()),
            )
            conn.commit()


def open_store(path: Path) -> Store:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA busy_timeout=5000;")
        _apply_migrations(conn)
    except (OSError, sqlite3.Error) as e:
        raise StoreError(f"cannot open store at {path}: {e}") from e
    return Store(conn=conn, lock=threading.Lock())
