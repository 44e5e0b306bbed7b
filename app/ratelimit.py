from __future__ import annotations

import ipaddress
import math
import re
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass


DEFAULT_MAX_KEYS = 10_000

TRUSTED_CLIENT_IP_HEADERS = (
    "x-vercel-ip",
    "cf-connecting-ip",
    "fly-client-ip",
    "fastly-client-ip",
    "true-client-ip",
)

_BRACKETED_RE = re.compile(r"^\[([^\]]+)\](?::\d+)?$")
_IPV4_WITH_PORT_RE = re.compile(r"^(\d{1,3}(?:\.\d{1,3}){3}):\d+$")


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    retry_after_seconds: int = 0


@dataclass
class _Window:
    count: int
    reset_at_ms: int


class RateLimiter:
    """Fixed-window counter per key with a bounded key table."""

    def __init__(self, max_keys: int = DEFAULT_MAX_KEYS) -> None:
        self.max_keys = max(1, max_keys)
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def _evict_expired(self, now_ms: int) -> None:
        for key in list(self._windows):
            if self._windows[key].reset_at_ms <= now_ms:
                del self._windows[key]
            if len(self._windows) <= self.max_keys:
                break

    def consume(
        self,
        key: str,
        limit: int,
        window_ms: int,
        now_ms: int | None = None,
    ) -> RateLimitResult:
        safe_limit = max(1, int(limit))
        safe_window = max(1, int(window_ms))
        if not key:
            return RateLimitResult(ok=False, retry_after_seconds=math.ceil(safe_window / 1000))
        now = int(time.time() * 1000) if now_ms is None else now_ms

        with self._lock:
            if len(self._windows) > self.max_keys:
                self._evict_expired(now)

            window = self._windows.get(key)
            if window is None or window.reset_at_ms <= now:
                self._windows[key] = _Window(count=1, reset_at_ms=now + safe_window)
                return RateLimitResult(ok=True)

            if window.count >= safe_limit:
                retry = math.ceil((window.reset_at_ms - now) / 1000)
                return RateLimitResult(ok=False, retry_after_seconds=max(1, retry))

            window.count += 1
            return RateLimitResult(ok=True)


def normalize_ip_candidate(value: str) -> str:
    token = (value or "").strip()
    if not token:
        return ""
    if token.startswith("for="):
        token = token[4:]
    token = token.strip('"')

    bracketed = _BRACKETED_RE.match(token)
    if bracketed:
        token = bracketed.group(1)
    else:
        with_port = _IPV4_WITH_PORT_RE.match(token)
        if with_port:
            token = with_port.group(1)

    token = token.split("%", 1)[0]
    try:
        ipaddress.ip_address(token)
    except ValueError:
        return ""
    return token


def client_ip(headers: Mapping[str, str], trust_proxy: bool) -> str:
    for name in TRUSTED_CLIENT_IP_HEADERS:
        candidate = normalize_ip_candidate(headers.get(name) or "")
        if candidate:
            return candidate

    if not trust_proxy:
        return "unknown"

    forwarded_for = headers.get("x-forwarded-for") or ""
    candidate = normalize_ip_candidate(forwarded_for.split(",")[0])
    if candidate:
        return candidate
    return normalize_ip_candidate(headers.get("x-real-ip") or "") or "unknown"
