"""Shared fixtures: a fresh server per test, plus helpers for the pairing dance."""

import hashlib

import pytest
from fastapi.testclient import TestClient

from client.config import ClientConfig
from server.config import Settings
from server.main import create_app

API = "/api/v1"


def fingerprint_for(install_id: str) -> str:
    return hashlib.sha256(install_id.encode()).hexdigest()


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path,
        db_path=tmp_path / "test.db",
        jwt_secret="test-secret",
        # Rate limits get their own tests
        save_rate_limit=0,
        register_rate_limit=0,
        link_rate_limit=0,
        exchange_rate_limit=0,
    )


@pytest.fixture()
def app(settings):
    return create_app(settings)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def client_config():
    return ClientConfig(
        api_base_url="http://test/api/v1",
        web_base_url="http://web.test",
        poll_interval=0.01,
        poll_timeout=2.0,
        sync_debounce=0.01,
        max_retries=3,
        retry_base_delay=0.0,
        retry_max_jitter=0.0,
    )


def signup(client: TestClient, email: str = "owner@example.com", password: str = "correct-horse") -> str:
    r = client.post(f"{API}/auth/signup", json={"email": email, "password": password})
    assert r.status_code == 201, r.text
    return r.json()["sessionToken"]


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def pair_device(client: TestClient, session_token: str, install_id: str = "install-1") -> tuple[str, str]:
    """Register, link and exchange over HTTP. Returns (device_id, raw token)."""
    r = client.post(f"{API}/devices/register", json={"fingerprint": fingerprint_for(install_id)})
    assert r.status_code == 200, r.text
    reg = r.json()

    r = client.post(
        f"{API}/devices/link",
        json={"pairingCode": reg["pairingCode"], "deviceName": "Test Browser"},
        headers=bearer(session_token),
    )
    assert r.status_code == 200, r.text

    r = client.post(f"{API}/devices/exchange", json={"deviceId": reg["deviceId"], "pairingCode": reg["pairingCode"]})
    assert r.status_code == 200, r.text
    return reg["deviceId"], r.json()["token"]


def timetable(*durations: int) -> dict:
    return {
        "title": "Deck",
        "items": [{"id": f"s{i}", "title": f"Slide {i}", "duration": d} for i, d in enumerate(durations, 1)],
    }
