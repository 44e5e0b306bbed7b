from __future__ import annotations

import asyncio
import ipaddress
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import re
from urllib.parse import urlsplit, urlunsplit


ResolveHost = Callable[[str], Awaitable[list[str]]]

_BLOCKED_V4 = [
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "224.0.0.0/3",
    )
]

_BLOCKED_V6 = [
    ipaddress.ip_network(cidr)
    for cidr in ("::/128", "::1/128", "fc00::/7", "fe80::/10")
]

_LOCAL_SUFFIXES = (".localhost", ".local", ".internal")

_NUMERIC_HOST_RE = re.compile(
    r"^(0x[0-9a-f]*|\d+)(\.(0x[0-9a-f]*|\d+)){0,3}$", re.IGNORECASE
)

_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class UrlValidation:
    ok: bool
    url: str = ""
    error: str = ""


def parse_ip_literal(value: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Parse a host as an IP address, including the numeric IPv4 forms browsers accept.

    Decimal, hex, octal and shortened forms (``2130706433``, ``0x7f000001``,
    ``0177.0.0.1``, ``127.1``) all resolve to the address they denote.
    """
    host = value.strip().strip("[]").split("%", 1)[0].rstrip(".")
    if not host:
        return None
    if _NUMERIC_HOST_RE.match(host):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def is_private_address(value: str) -> bool:
    addr = parse_ip_literal(value)
    if addr is None:
        return False
    if isinstance(addr, ipaddress.IPv6Address):
        if addr.ipv4_mapped is not None:
            addr = addr.ipv4_mapped
        elif addr.packed[:12] == bytes(12):
            # IPv4-compatible (::a.b.c.d)
            addr = ipaddress.IPv4Address(addr.packed[12:])
        else:
            return any(addr in net for net in _BLOCKED_V6)
    return any(addr in net for net in _BLOCKED_V4)


def is_private_hostname(hostname: str) -> bool:
    host = hostname.strip().lower().rstrip(".")
    if not host:
        return True
    if host == "localhost" or host.endswith(_LOCAL_SUFFIXES):
        return True
    return is_private_address(host)


def _is_ip_literal(host: str) -> bool:
    return parse_ip_literal(host) is not None


def canonical_url(raw: str) -> str:
    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    hostname = parts.hostname or ""
    addr = parse_ip_literal(hostname)
    if isinstance(addr, ipaddress.IPv6Address):
        host = f"[{addr.compressed}]"
    elif addr is not None:
        host = str(addr)
    else:
        host = hostname
    port = parts.port
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        host = f"{host}:{port}"
    userinfo, sep, _ = parts.netloc.rpartition("@")
    netloc = f"{userinfo}{sep}{host}"
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, parts.fragment))


def validate_source_url(url: object) -> UrlValidation:
    raw = url.strip() if isinstance(url, str) else ""
    if not raw:
        return UrlValidation(ok=False, error="Source URL is required.")
    try:
        parts = urlsplit(raw)
        hostname = parts.hostname or ""
        # Touch the port so malformed authorities fail here.
        _ = parts.port
    except ValueError:
        return UrlValidation(ok=False, error="Invalid source URL.")
    if parts.scheme.lower() not in ("http", "https"):
        return UrlValidation(ok=False, error="Source URL must use http(s).")
    if not hostname:
        return UrlValidation(ok=False, error="Invalid source URL.")
    if is_private_hostname(hostname):
        return UrlValidation(
            ok=False, error="Source URL must target the public internet."
        )
    return UrlValidation(ok=True, url=canonical_url(raw))


async def default_resolve_host(hostname: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return [str(info[4][0]) for info in infos]


async def validate_source_url_for_fetch(
    url: object, resolve_host: ResolveHost | None = None
) -> UrlValidation:
    result = validate_source_url(url)
    if not result.ok:
        return result

    hostname = urlsplit(result.url).hostname or ""
    if _is_ip_literal(hostname):
        return result

    resolver = resolve_host or default_resolve_host
    try:
        addresses = await resolver(hostname)
    except (OSError, UnicodeError):
        return UrlValidation(
            ok=False, error="Source URL hostname could not be resolved."
        )
    if not addresses:
        return UrlValidation(
            ok=False, error="Source URL hostname could not be resolved."
        )
    if any(is_private_address(address) for address in addresses):
        return UrlValidation(
            ok=False, error="Source URL must target the public internet."
        )
    return result
