from __future__ import annotations

from urllib.parse import urljoin

import httpx

from ingest.safety import ResolveHost, validate_source_url_for_fetch


MAX_REDIRECTS = 5
DEFAULT_TIMEOUT = httpx.Timeout(connect=5.0, read=15.0, write=5.0, pool=5.0)


class FetchError(Exception):
    pass


async def fetch_validated(
    client: httpx.AsyncClient,
    *,
    url: str,
    user_agent: str,
    accept: str = "text/calendar, application/rss+xml, application/xml, text/xml, */*",
    resolve_host: ResolveHost | None = None,
    prevalidated: bool = False,
) -> bytes:
    """GET ``url`` re-validating every redirect hop.

    ``prevalidated`` means the caller already validated ``url`` itself, so only
    redirect targets are checked.
    """
    headers = {"User-Agent": user_agent, "Accept": accept}
    current = url
    check_hop = not prevalidated
    for _ in range(MAX_REDIRECTS + 1):
        if check_hop:
            check = await validate_source_url_for_fetch(current, resolve_host)
            if not check.ok:
                raise FetchError(check.error)
            current = check.url
        check_hop = True

        response = await client.get(
            current,
            headers=headers,
            timeout=DEFAULT_TIMEOUT,
            follow_redirects=False,
        )
        if response.is_redirect:
            location = response.headers.get("location")
            if not location:
                raise FetchError(f"Redirect without location ({response.status_code}).")
            current = urljoin(current, location)
            continue
        if response.status_code != 200:
            raise FetchError(f"Fetch failed ({response.status_code}).")
        return response.content

    raise FetchError("Too many redirects.")
