from app.ratelimit import RateLimiter, client_ip, normalize_ip_candidate


def test_fixed_window_rejects_third_call() -> None:
    limiter = RateLimiter()
    first = limiter.consume("api:geocode:1.2.3.4", 2, 1000, now_ms=100)
    second = limiter.consume("api:geocode:1.2.3.4", 2, 1000, now_ms=200)
    third = limiter.consume("api:geocode:1.2.3.4", 2, 1000, now_ms=300)
    assert (first.ok, second.ok, third.ok) == (True, True, False)
    assert third.retry_after_seconds > 0
    assert third.retry_after_seconds == 1


def test_window_resets_after_expiry() -> None:
    limiter = RateLimiter()
    limiter.consume("k", 1, 1000, now_ms=0)
    assert limiter.consume("k", 1, 1000, now_ms=500).ok is False
    assert limiter.consume("k", 1, 1000, now_ms=1000).ok is True


def test_keys_are_independent() -> None:
    limiter = RateLimiter()
    assert limiter.consume("a", 1, 1000, now_ms=0).ok is True
    assert limiter.consume("b", 1, 1000, now_ms=0).ok is True
    assert limiter.consume("a", 1, 1000, now_ms=1).ok is False


def test_empty_key_is_rejected() -> None:
    result = RateLimiter().consume("", 5, 60_000, now_ms=0)
    assert result.ok is False
    assert result.retry_after_seconds == 60


def test_expired_keys_are_evicted_when_table_is_full() -> None:
    limiter = RateLimiter(max_keys=1)
    limiter.consume("a", 5, 10, now_ms=0)
    limiter.consume("b", 5, 10, now_ms=0)
    assert len(limiter) == 2
    limiter.consume("c", 5, 10, now_ms=100)
    assert len(limiter) == 2


def test_trusted_edge_header_wins() -> None:
    headers = {"cf-connecting-ip": "203.0.113.7", "x-forwarded-for": "198.51.100.1"}
    assert client_ip(headers, trust_proxy=False) == "203.0.113.7"


def test_forwarded_headers_need_trust() -> None:
    headers = {"x-forwarded-for": "198.51.100.1:8080, 10.0.0.1", "x-real-ip": "198.51.100.9"}
    assert client_ip(headers, trust_proxy=False) == "unknown"
    assert client_ip(headers, trust_proxy=True) == "198.51.100.1"
    assert client_ip({"x-real-ip": "198.51.100.9"}, trust_proxy=True) == "198.51.100.9"


def test_normalize_ip_candidate_forms() -> None:
    assert normalize_ip_candidate('for="[2001:db8::1]:443"') == "2001:db8::1"
    assert normalize_ip_candidate("fe80::1%eth0") == "fe80::1"
    assert normalize_ip_candidate("not-an-ip") == ""
    assert client_ip({"true-client-ip": "garbage"}, trust_proxy=False) == "unknown"
