"""Gateway tests: accounts, the pairing exchange and device token lifecycle."""

from datetime import datetime, timedelta, timezone

from sqlmodel import Session, select

from server.models.device import DeviceRegistration, DeviceToken
from server.utils.security import hash_token
from tests.conftest import API, bearer, fingerprint_for, pair_device, signup


def _register(client, install_id="install-1"):
    r = client.post(f"{API}/devices/register", json={"fingerprint": fingerprint_for(install_id)})
    assert r.status_code == 200, r.text
    return r.json()


def _link(client, session_token, pairing_code, name="Laptop"):
    return client.post(
        f"{API}/devices/link",
        json={"pairingCode": pairing_code, "deviceName": name},
        headers=bearer(session_token),
    )


def _exchange(client, device_id, pairing_code):
    return client.post(f"{API}/devices/exchange", json={"deviceId": device_id, "pairingCode": pairing_code})


def _expire_registration(app, device_id):
    with Session(app.state.engine) as s:
        reg = s.exec(select(DeviceRegistration).where(DeviceRegistration.device_id == device_id)).one()
        reg.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        s.add(reg)
        s.commit()


def _expire_token(app, raw_token):
    with Session(app.state.engine) as s:
        rec = s.exec(select(DeviceToken).where(DeviceToken.token_hash == hash_token(raw_token))).one()
        rec.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        s.add(rec)
        s.commit()


# --- Accounts ---

def test_health_and_root(client):
    assert client.get(f"{API}/health").json() == {"status": "ok"}
    assert client.get("/").json()["status"] == "running"


def test_signup_login_and_profile(client):
    r = client.post(f"{API}/auth/signup", json={"email": "Ada@Example.com", "password": "analytical", "name": "Ada"})
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["role"] == "admin"
    assert body["userId"].startswith("usr_")

    r = client.post(f"{API}/auth/login", json={"email": "ada@example.com", "password": "analytical"})
    assert r.status_code == 200, r.text
    session_token = r.json()["sessionToken"]

    me = client.get(f"{API}/users/me", headers=bearer(session_token)).json()
    assert me["email"] == "ada@example.com"
    assert me["name"] == "Ada"


def test_second_account_is_member(client):
    signup(client, "first@example.com")
    r = client.post(f"{API}/auth/signup", json={"email": "second@example.com", "password": "password2"})
    assert r.json()["role"] == "member"


def test_duplicate_signup_conflicts(client):
    signup(client)
    r = client.post(f"{API}/auth/signup", json={"email": "OWNER@example.com", "password": "whatever1"})
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "email_taken"


def test_bad_login(client):
    signup(client)
    r = client.post(f"{API}/auth/login", json={"email": "owner@example.com", "password": "nope-nope"})
    assert r.status_code == 401
    assert r.json()["detail"]["error"] == "invalid_credentials"


def test_malformed_body_is_400(client):
    r = client.post(f"{API}/auth/signup", json={"email": "x@example.com"})
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"


# --- Pairing ---

def test_register_returns_code(client):
    reg = _register(client)
    assert reg["deviceId"].startswith("dev_")
    assert len(reg["pairingCode"]) == 8
    assert "expiresAt" in reg


def test_register_rejects_bad_fingerprint(client):
    r = client.post(f"{API}/devices/register", json={"fingerprint": "not-a-hash"})
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_fingerprint"


def test_exchange_before_link_is_404(client):
    reg = _register(client)
    r = _exchange(client, reg["deviceId"], reg["pairingCode"])
    assert r.status_code == 404
    assert r.json()["detail"]["error"] == "not_linked"


def test_full_pairing_flow(client):
    session_token = signup(client)
    reg = _register(client)

    r = _link(client, session_token, reg["pairingCode"].lower())
    assert r.status_code == 200, r.text
    assert r.json() == {"deviceId": reg["deviceId"], "linked": True}

    r = _exchange(client, reg["deviceId"], reg["pairingCode"])
    assert r.status_code == 200, r.text
    token = r.json()["token"]
    assert "." not in token

    # Second exchange of the same code is refused
    r = _exchange(client, reg["deviceId"], reg["pairingCode"])
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "already_exchanged"


def test_token_hash_only_is_stored(client, app):
    session_token = signup(client)
    _, token = pair_device(client, session_token)
    with Session(app.state.engine) as s:
        rows = s.exec(select(DeviceToken)).all()
    assert len(rows) == 1
    assert rows[0].token_hash == hash_token(token)
    assert token not in {rows[0].token_hash, rows[0].fingerprint}


def test_link_requires_session(client):
    reg = _register(client)
    r = client.post(f"{API}/devices/link", json={"pairingCode": reg["pairingCode"]})
    assert r.status_code == 401


def test_device_token_cannot_link(client):
    session_token = signup(client)
    _, device_token = pair_device(client, session_token)
    reg = _register(client, "install-2")
    r = _link(client, device_token, reg["pairingCode"])
    assert r.status_code == 401


def test_link_unknown_code(client):
    session_token = signup(client)
    r = _link(client, session_token, "ZZZZZZZZ")
    assert r.status_code == 404
    assert r.json()["detail"]["error"] == "unknown_code"


def test_link_is_idempotent_for_same_user_and_exclusive(client):
    owner = signup(client, "owner@example.com")
    other = signup(client, "other@example.com")
    reg = _register(client)

    assert _link(client, owner, reg["pairingCode"]).status_code == 200
    assert _link(client, owner, reg["pairingCode"]).status_code == 200

    r = _link(client, other, reg["pairingCode"])
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "already_linked"


def test_exchange_device_mismatch(client):
    session_token = signup(client)
    reg = _register(client)
    _link(client, session_token, reg["pairingCode"])
    r = _exchange(client, "dev_0000000000000000", reg["pairingCode"])
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "device_mismatch"


def test_exchange_unknown_code_is_gone(client):
    r = _exchange(client, "dev_0000000000000000", "ABCDEFGH")
    assert r.status_code == 410


def test_expired_registration(client, app):
    session_token = signup(client)
    reg = _register(client)
    _expire_registration(app, reg["deviceId"])

    r = _link(client, session_token, reg["pairingCode"])
    assert r.status_code == 410
    r = _exchange(client, reg["deviceId"], reg["pairingCode"])
    assert r.status_code == 410
    assert r.json()["detail"]["error"] == "expired"


def test_linked_then_expired_registration_is_gone(client, app):
    session_token = signup(client)
    reg = _register(client)
    _link(client, session_token, reg["pairingCode"])
    _expire_registration(app, reg["deviceId"])

    r = _exchange(client, reg["deviceId"], reg["pairingCode"])
    assert r.status_code == 410


def test_repairing_same_install_revokes_old_token(client):
    session_token = signup(client)
    _, first = pair_device(client, session_token, "install-1")
    _, second = pair_device(client, session_token, "install-1")

    assert client.get(f"{API}/resources/list", headers=bearer(first)).status_code == 401
    assert client.get(f"{API}/resources/list", headers=bearer(second)).status_code == 200


def test_different_installs_keep_their_tokens(client):
    session_token = signup(client)
    _, first = pair_device(client, session_token, "install-1")
    _, second = pair_device(client, session_token, "install-2")

    for token in (first, second):
        assert client.get(f"{API}/resources/list", headers=bearer(token)).status_code == 200


# --- Token refresh ---

def test_refresh_rotates_token(client):
    session_token = signup(client)
    _, token = pair_device(client, session_token)

    r = client.post(f"{API}/devices/refresh", headers=bearer(token))
    assert r.status_code == 200, r.text
    rotated = r.json()["token"]
    assert rotated != token

    assert client.get(f"{API}/resources/list", headers=bearer(token)).status_code == 401
    assert client.get(f"{API}/resources/list", headers=bearer(rotated)).status_code == 200

    # The old token cannot be rotated a second time
    assert client.post(f"{API}/devices/refresh", headers=bearer(token)).status_code == 401


def test_repeated_refresh_replaces_unused_successor(client):
    session_token = signup(client)
    _, token = pair_device(client, session_token)

    # First reply never reached the device; it asks again with the same token
    first = client.post(f"{API}/devices/refresh", headers=bearer(token))
    second = client.post(f"{API}/devices/refresh", headers=bearer(token))
    assert first.status_code == 200, first.text
    assert second.status_code == 200, second.text
    lost, delivered = first.json()["token"], second.json()["token"]
    assert lost != delivered

    assert client.get(f"{API}/resources/list", headers=bearer(lost)).status_code == 401
    assert client.get(f"{API}/resources/list", headers=bearer(delivered)).status_code == 200

    # Successor has been used: the old token is finished
    assert client.post(f"{API}/devices/refresh", headers=bearer(token)).status_code == 401
    assert client.get(f"{API}/resources/list", headers=bearer(delivered)).status_code == 200


def test_repeated_refresh_after_grace_window_is_rejected(client, app, settings):
    session_token = signup(client)
    _, token = pair_device(client, session_token)
    assert client.post(f"{API}/devices/refresh", headers=bearer(token)).status_code == 200

    with Session(app.state.engine) as s:
        rec = s.exec(select(DeviceToken).where(DeviceToken.token_hash == hash_token(token))).one()
        rec.rotated_at = datetime.now(timezone.utc) - timedelta(seconds=settings.token_rotation_grace_seconds + 1)
        s.add(rec)
        s.commit()

    r = client.post(f"{API}/devices/refresh", headers=bearer(token))
    assert r.status_code == 401
    assert r.json()["detail"]["error"] == "token_invalid"


def test_refresh_requires_bearer(client):
    assert client.post(f"{API}/devices/refresh").status_code == 401
    r = client.post(f"{API}/devices/refresh", headers=bearer("garbage"))
    assert r.status_code == 401
    assert r.json()["detail"]["error"] == "token_invalid"


def test_expired_token_cannot_refresh_or_read(client, app):
    session_token = signup(client)
    _, token = pair_device(client, session_token)
    _expire_token(app, token)

    assert client.post(f"{API}/devices/refresh", headers=bearer(token)).status_code == 401
    assert client.get(f"{API}/resources/list", headers=bearer(token)).status_code == 401


# --- Device management ---

def test_list_rename_and_revoke_devices(client):
    session_token = signup(client)
    device_id, token = pair_device(client, session_token)

    devices = client.get(f"{API}/devices", headers=bearer(session_token)).json()
    assert [d["deviceId"] for d in devices] == [device_id]
    assert devices[0]["deviceName"] == "Test Browser"
    assert len(devices[0]["fingerprint"]) == 12

    r = client.patch(f"{API}/devices/{device_id}", json={"deviceName": "Work laptop"}, headers=bearer(session_token))
    assert r.status_code == 200, r.text
    assert r.json()["deviceName"] == "Work laptop"

    r = client.delete(f"{API}/devices/{device_id}", headers=bearer(session_token))
    assert r.status_code == 204
    assert client.get(f"{API}/devices", headers=bearer(session_token)).json() == []
    assert client.get(f"{API}/resources/list", headers=bearer(token)).status_code == 401


def test_cannot_manage_someone_elses_device(client):
    owner = signup(client, "owner@example.com")
    other = signup(client, "other@example.com")
    device_id, _ = pair_device(client, owner)

    r = client.patch(f"{API}/devices/{device_id}", json={"deviceName": "Mine now"}, headers=bearer(other))
    assert r.status_code == 404
    assert client.delete(f"{API}/devices/{device_id}", headers=bearer(other)).status_code == 404


def test_admin_cleanup(client, app):
    admin = signup(client, "admin@example.com")
    member = signup(client, "member@example.com")
    _, token = pair_device(client, admin)
    client.post(f"{API}/devices/refresh", headers=bearer(token))

    reg = _register(client, "install-9")
    _expire_registration(app, reg["deviceId"])

    assert client.post(f"{API}/admin/tokens/cleanup", headers=bearer(member)).status_code == 403

    r = client.post(f"{API}/admin/tokens/cleanup", headers=bearer(admin))
    assert r.status_code == 200, r.text
    assert r.json() == {"tokensDeleted": 1, "registrationsDeleted": 1}
