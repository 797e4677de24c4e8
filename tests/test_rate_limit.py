"""Per-client rate limits on saves and the unauthenticated pairing endpoints."""

import pytest
from fastapi.testclient import TestClient

from server.main import create_app
from server.utils.rate_limit import RateLimiter
from tests.conftest import API, bearer, fingerprint_for, signup, timetable
from tests.fakes import FakeClock

DECK = "https://docs.example.com/presentation/d/limited"


def _limited_client(settings, **limits):
    return TestClient(create_app(settings.model_copy(update=limits)))


def _save(client, token, title="Deck"):
    return client.post(
        f"{API}/resources/save",
        json={"canonicalKey": DECK, "title": title, "payload": timetable(5)},
        headers=bearer(token),
    )


def test_limiter_counts_per_bucket_and_client():
    clock = FakeClock()
    limiter = RateLimiter(60, clock=clock)

    assert limiter.hit("save", "1.1.1.1", 2) is None
    assert limiter.hit("save", "1.1.1.1", 2) is None
    assert limiter.hit("save", "1.1.1.1", 2) == 60
    assert limiter.hit("save", "2.2.2.2", 2) is None
    assert limiter.hit("register", "1.1.1.1", 2) is None

    clock.now = 45.5
    assert limiter.hit("save", "1.1.1.1", 2) == 15

    # New window
    clock.now = 60
    assert limiter.hit("save", "1.1.1.1", 2) is None


def test_zero_limit_disables():
    limiter = RateLimiter(60)
    assert all(limiter.hit("save", "1.1.1.1", 0) is None for _ in range(100))


def test_save_over_limit_is_429_with_retry_after(settings):
    with _limited_client(settings, save_rate_limit=2) as client:
        token = signup(client)
        assert _save(client, token, "one").status_code == 200
        assert _save(client, token, "two").status_code == 200

        r = _save(client, token, "three")
        assert r.status_code == 429
        assert r.json()["detail"]["error"] == "rate_limited"
        retry_after = int(r.headers["Retry-After"])
        assert 1 <= retry_after <= settings.rate_limit_window_seconds
        assert r.json()["detail"]["retryAfter"] == retry_after

        # The rejected save changed nothing; reads are not limited
        assert client.get(f"{API}/resources/get", params={"key": DECK}, headers=bearer(token)).json()["title"] == "two"


@pytest.mark.parametrize(
    "limit_setting,path,body",
    [
        ("register_rate_limit", "/devices/register", {"fingerprint": fingerprint_for("install-1")}),
        ("exchange_rate_limit", "/devices/exchange", {"deviceId": "dev_nope", "pairingCode": "ABCD2345"}),
    ],
)
def test_pairing_endpoints_are_limited(settings, limit_setting, path, body):
    with _limited_client(settings, **{limit_setting: 1}) as client:
        assert client.post(f"{API}{path}", json=body).status_code != 429
        r = client.post(f"{API}{path}", json=body)
        assert r.status_code == 429
        assert "Retry-After" in r.headers


def test_forwarded_for_only_when_trusted(settings):
    def register(client, ip):
        return client.post(
            f"{API}/devices/register",
            json={"fingerprint": fingerprint_for(ip)},
            headers={"X-Forwarded-For": f"{ip}, 10.0.0.1"},
        )

    with _limited_client(settings, register_rate_limit=1) as client:
        assert register(client, "203.0.113.1").status_code == 200
        assert register(client, "203.0.113.2").status_code == 429

    with _limited_client(settings, register_rate_limit=1, trust_forwarded_for=True) as client:
        assert register(client, "203.0.113.1").status_code == 200
        assert register(client, "203.0.113.2").status_code == 200
        assert register(client, "203.0.113.1").status_code == 429
