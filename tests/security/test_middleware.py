"""End-to-end tests for the security middleware over a small echo app."""

from collections.abc import Callable
from unittest.mock import AsyncMock

from fastapi import status
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from folio_shield.security.pipeline import SecurityState
from folio_shield.security.store import FallbackRateLimitStore, RedisRateLimitStore
from folio_shield.security.suspicion import SuspiciousActivityDetector

ClientFactory = Callable[..., TestClient]


def test_security_headers_are_set(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.get("/api/items")
    assert r.status_code == status.HTTP_200_OK
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"
    assert r.headers["X-XSS-Protection"] == "1; mode=block"
    assert r.headers["Permissions-Policy"] == "geolocation=(), microphone=(), camera=()"
    assert r.headers["Strict-Transport-Security"] == "max-age=31536000; includeSubDomains; preload"
    assert "frame-ancestors 'none'" in r.headers["Content-Security-Policy"]
    assert "x-powered-by" not in r.headers


def test_long_url_is_rejected(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.get("/api/items?q=" + "a" * 2100)
    assert r.status_code == status.HTTP_414_REQUEST_URI_TOO_LONG
    assert r.json() == {"error": "URI too long"}


def test_attack_pattern_is_rejected(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.get("/api/items?q=%3Cscript%3Ealert(1)%3C/script%3E")
    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json() == {"error": "Malicious request pattern detected"}
    # Rejected responses still carry hardening headers.
    assert r.headers["X-Frame-Options"] == "DENY"


def test_oversized_json_is_rejected(make_security_client: ClientFactory) -> None:
    client = make_security_client(max_json_body_bytes=64)
    r = client.post("/api/echo", json={"blob": "x" * 200})
    assert r.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    assert r.json() == {"error": "Payload too large"}


def test_body_without_content_type_is_rejected(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.post("/api/echo", content=b'{"a": 1}')
    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json() == {"error": "Content-Type header is required"}


def test_delete_without_body_needs_no_content_type(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.delete("/api/items/7")
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"deleted": "7"}


def test_operator_keys_never_reach_the_handler(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.post("/api/echo", json={"email": {"$ne": None}, "profile.name": "<script>x</script>Ada"})
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"body": {"email": {"_ne": None}, "profile_name": "Ada"}}


def test_form_body_is_sanitized(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.post("/api/form", data={"$where": "1", "name": "javascript:void(0)"})
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"form": [["_where", "1"], ["name", "void(0)"]]}


def test_repeated_query_parameters_collapse(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.get("/api/items?id=1&id=2&sort=a&sort=b")
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"query": [["id", "2"], ["sort", "a"], ["sort", "b"]]}


def test_invalid_json_passes_through_unchanged(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.post(
        "/api/echo",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    # The handler sees the original bytes and fails on its own terms.
    assert r.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert r.json() == {"error": "Internal server error"}


def test_burst_limit(make_security_client: ClientFactory) -> None:
    client = make_security_client(suspicious_threshold=10_000, rate_limit_api_max=10_000)

    statuses = [client.get("/api/items").status_code for _ in range(151)]

    assert statuses[:150] == [status.HTTP_200_OK] * 150
    assert statuses[150] == status.HTTP_429_TOO_MANY_REQUESTS


def test_rate_limited_response_shape(make_security_client: ClientFactory) -> None:
    client = make_security_client(rate_limit_api_max=2, rate_limit_api_window_seconds=900)
    ok = client.get("/api/items")
    assert ok.headers["X-RateLimit-Limit"] == "2"
    assert ok.headers["X-RateLimit-Remaining"] == "1"
    client.get("/api/items")

    r = client.get("/api/items")

    assert r.status_code == status.HTTP_429_TOO_MANY_REQUESTS
    body = r.json()
    assert body["error"] == "Too many requests from this IP, please try again later."
    assert 0 < body["retryAfter"] <= 900
    assert r.headers["Retry-After"] == str(body["retryAfter"])


def test_suspicious_activity_trips_independently(make_security_client: ClientFactory) -> None:
    client = make_security_client(suspicious_threshold=3, rate_limit_api_max=10_000)
    statuses = [client.get("/api/items").status_code for _ in range(4)]
    assert statuses[:3] == [status.HTTP_200_OK] * 3
    assert statuses[3] == status.HTTP_429_TOO_MANY_REQUESTS

    r = client.get("/api/items")
    assert r.json() == {"error": "Suspicious activity detected. Please slow down.", "retryAfter": 60}


def test_whitelisted_paths_skip_rate_limits(make_security_client: ClientFactory) -> None:
    client = make_security_client(rate_limit_burst_max=1, rate_limit_general_max=1, suspicious_threshold=1)
    statuses = [client.get("/health").status_code for _ in range(5)]
    statuses += [client.get("/ping").status_code for _ in range(5)]
    assert statuses == [status.HTTP_200_OK] * 10


def test_whitelisted_paths_are_still_validated(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.get("/health?next=javascript:alert(1)")
    assert r.status_code == status.HTTP_400_BAD_REQUEST


def test_blocklisted_ip_is_denied(make_security_client: ClientFactory) -> None:
    client = make_security_client(ip_blocklist="203.0.113.66")
    r = client.get("/api/items", headers={"X-Forwarded-For": "203.0.113.66"})
    assert r.status_code == status.HTTP_403_FORBIDDEN
    assert r.json() == {"error": "Access denied"}

    other = client.get("/api/items", headers={"X-Forwarded-For": "203.0.113.67"})
    assert other.status_code == status.HTTP_200_OK


def test_repeat_offenders_are_temporarily_banned(make_security_client: ClientFactory) -> None:
    client = make_security_client(
        suspicious_threshold=1,
        rate_limit_api_max=10_000,
        ip_ban_strikes=2,
        ip_ban_duration_seconds=3600,
    )
    offender = {"X-Forwarded-For": "203.0.113.80"}
    statuses = [client.get("/api/items", headers=offender).status_code for _ in range(3)]
    assert statuses == [200, 429, 429]

    r = client.get("/api/items", headers=offender)
    assert r.status_code == status.HTTP_403_FORBIDDEN
    body = r.json()
    assert body["error"] == "Access denied"
    assert 3590 < body["retryAfter"] <= 3600
    assert r.headers["Retry-After"] == str(body["retryAfter"])

    assert client.get("/api/items", headers={"X-Forwarded-For": "203.0.113.81"}).status_code == 200
    assert client.get("/health", headers=offender).status_code == 200


def test_allowlisted_ip_skips_limits(make_security_client: ClientFactory) -> None:
    client = make_security_client(
        ip_allowlist="198.51.100.10",
        rate_limit_burst_max=1,
        suspicious_threshold=1,
    )
    headers = {"X-Forwarded-For": "198.51.100.10"}
    assert [client.get("/api/items", headers=headers).status_code for _ in range(3)] == [200, 200, 200]


def test_limits_are_keyed_per_client_ip(make_security_client: ClientFactory) -> None:
    client = make_security_client(rate_limit_burst_max=1)
    assert client.get("/api/items", headers={"X-Forwarded-For": "192.0.2.1"}).status_code == 200
    assert client.get("/api/items", headers={"X-Forwarded-For": "192.0.2.2"}).status_code == 200
    assert client.get("/api/items", headers={"X-Forwarded-For": "192.0.2.1"}).status_code == 429


def test_successful_logins_do_not_count(make_security_client: ClientFactory) -> None:
    client = make_security_client(rate_limit_auth_max=2)

    for _ in range(5):
        r = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "correct-horse"})
        assert r.status_code == status.HTTP_200_OK

    failures = [
        client.post("/api/auth/login", json={"email": "ada@example.com", "password": "nope"}).status_code
        for _ in range(3)
    ]
    assert failures == [401, 401, 429]

    # A different account from the same address has its own budget.
    r = client.post("/api/auth/login", json={"email": "grace@example.com", "password": "nope"})
    assert r.status_code == status.HTTP_401_UNAUTHORIZED


def test_handler_errors_use_error_envelope(make_security_client: ClientFactory) -> None:
    client = make_security_client()
    r = client.get("/boom")
    assert r.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert r.json() == {"error": "Internal server error"}
    assert "kaboom" not in r.text


def test_shared_store_outage_falls_back_without_errors(make_security_client: ClientFactory) -> None:
    redis_client = AsyncMock()
    redis_client.eval.side_effect = RedisConnectionError("connection dropped")
    redis_client.ping.side_effect = RedisConnectionError("still down")
    store = FallbackRateLimitStore(RedisRateLimitStore(redis_client), sleep=AsyncMock())
    state = SecurityState(store, SuspiciousActivityDetector(threshold=10_000))

    client = make_security_client(state=state, rate_limit_burst_max=3)
    statuses = [client.get("/api/items").status_code for _ in range(5)]

    assert statuses == [200, 200, 200, 429, 429]
    assert store.using_shared is False


def test_rejections_are_logged_once(make_security_client: ClientFactory, caplog) -> None:
    client = make_security_client()
    with caplog.at_level("WARNING", logger="folio_shield.security"):
        client.get("/api/items?q=%3Cscript%3E")

    events = [record for record in caplog.records if record.name == "folio_shield.security"]
    assert len(events) == 1
    assert events[0].reason == "attack_signature:script_tag"
    assert events[0].path == "/api/items"
    assert events[0].ip == "testclient"
