from __future__ import annotations

import errno
import json
import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path


logger = logging.getLogger(__name__)

EVENTS_CACHE_FILE = "events-cache.json"
GEOCODE_CACHE_FILE = "geocode-cache.json"
ROUTE_CACHE_FILE = "route-cache.json"
SAMPLE_EVENTS_FILE = "sample-events.json"
STATIC_PLACES_FILE = "static-places.json"

_READ_ONLY_ERRNOS = {errno.EROFS, errno.EACCES, errno.EPERM}


class LocalStorage:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self._writable: bool | None = None

    def path(self, name: str) -> Path:
        return self.data_dir / name

    def is_writable(self) -> bool:
        if self._writable is None:
            try:
                self.data_dir.mkdir(parents=True, exist_ok=True)
                self._writable = os.access(self.data_dir, os.W_OK)
            except OSError as e:
                if e.errno not in _READ_ONLY_ERRNOS:
                    raise
                self._writable = False
            if not self._writable:
                logger.warning(
                    "data directory %s is read-only; local cache writes disabled",
                    self.data_dir,
                )
        return self._writable

    def read_json(self, name: str) -> object | None:
        path = self.path(name)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("ignoring unreadable local file %s: %s", path, e)
            return None

    def write_json(self, name: str, payload: object) -> bool:
        if not self.is_writable():
            return False

        path = self.path(name)
        text = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
        tmp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.data_dir,
                prefix=f".{name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                tmp_name = handle.name
                handle.write(text)
            os.replace(tmp_name, path)
            return True
        except OSError as e:
            if tmp_name is not None:
                with suppress(OSError):
                    Path(tmp_name).unlink(missing_ok=True)
            if e.errno in _READ_ONLY_ERRNOS:
                self._writable = False
                logger.warning("skipping %s write on read-only filesystem", path)
            else:
                logger.error("local write to %s failed", path, exc_info=True)
            return False
