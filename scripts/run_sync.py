from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

import httpx

from app.settings import Settings
from ingest.sync import build_orchestrator
from store.db import StoreError, open_store
from store.local import LocalStorage


logger = logging.getLogger("run_sync")


async def _run(settings: Settings, source_id: str | None) -> dict:
    try:
        store = open_store(settings.db_path)
    except StoreError as e:
        logger.warning("durable store unavailable: %s", e)
        store = None
    storage = LocalStorage(settings.data_dir)
    async with httpx.AsyncClient() as client:
        orchestrator = build_orchestrator(
            settings, store=store, storage=storage, client=client
        )
        try:
            if source_id:
                return await orchestrator.sync_single_source(source_id)
            result = await orchestrator.run_sync()
            return result.summary()
        finally:
            if store is not None:
                store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one ingestion sync and print the summary.")
    parser.add_argument("--db", type=Path, default=None)
    parser.add_argument("--data-dir", type=Path, default=None)
    parser.add_argument("--source", default=None, help="sync a single source id")
    args = parser.parse_args()

    settings = Settings()
    if args.db is not None:
        settings.db_path = args.db
    if args.data_dir is not None:
        settings.data_dir = args.data_dir
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    summary = asyncio.run(_run(settings, args.source))
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
