from sqlalchemy.exc import OperationalError

import config
from rate_limiter import FixedWindowRateLimiter
from store import CredentialStore
from helpers import MsClock, count_logs, login_device, make_device, make_ticket, ticket_status


def scan(client, headers, ticket_code="T-1", event_id="E1", **extra):
    body = {"event_id": event_id, "ticket_code": ticket_code, **extra}
    return client.post("/tickets/scan", json=body, headers=headers)


def test_root(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "running"


def test_device_login_returns_bearer_token(client, store):
    device = make_device(store, event_id="E1")
    resp = client.post("/devices/authorize", json={
        "device_public_id": "ANDROID-XYZ-123",
        "device_secret": "s3cr3t-issued-by-admin",
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["token_type"] == "Bearer"
    assert data["expires_in_seconds"] == 8 * 3600
    assert data["device"]["id"] == device.id
    assert data["device"]["staff_user_id"] == "org-1"
    assert data["staff_user"] is None


def test_device_login_errors(client, store):
    make_device(store)
    missing = client.post("/devices/authorize", json={"device_public_id": "ANDROID-XYZ-123"})
    assert missing.status_code == 400

    half_staff = client.post("/devices/authorize", json={
        "device_public_id": "ANDROID-XYZ-123",
        "device_secret": "s3cr3t-issued-by-admin",
        "staff_user_email": "usher1@venue.com",
    })
    assert half_staff.status_code == 400

    wrong = client.post("/devices/authorize", json={
        "device_public_id": "ANDROID-XYZ-123",
        "device_secret": "nope",
    })
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "Invalid device credentials"


def test_scan_then_retry_then_rescan(client, store, clock):
    make_ticket(store, ticket_id="T-1", event_id="E1")
    make_device(store)
    headers = login_device(client)

    first = scan(client, headers, lat=59.91, lon=10.75)
    assert first.status_code == 200
    body = first.json()
    assert body["result"] == "VALID"
    assert body["message"] == "Ticket accepted for entry"
    assert body["ticket"] == {"id": "T-1", "code": "T-1", "status": "used", "holder_name": "Jane Doe"}
    assert body["scanned_by"]["device_public_id"] == "ANDROID-XYZ-123"
    assert body["audit"]["lat"] == 59.91

    clock.advance(5)
    retry = scan(client, headers, lat=59.91, lon=10.75)
    assert retry.status_code == 200
    assert retry.json() == body
    assert count_logs(ticket_id="T-1") == 1

    clock.advance(70)
    later = scan(client, headers)
    assert later.json()["result"] == "ALREADY_USED"
    assert later.json()["message"] == "Ticket has already been used"
    assert count_logs(ticket_id="T-1") == 2


def test_other_device_inside_window_sees_already_used(client, store):
    make_ticket(store)
    make_device(store, public_id="GATE-A")
    make_device(store, public_id="GATE-B")

    assert scan(client, login_device(client, "GATE-A")).json()["result"] == "VALID"
    second = scan(client, login_device(client, "GATE-B"))
    assert second.json()["result"] == "ALREADY_USED"
    assert count_logs(ticket_id="T-1") == 2


def test_unknown_code_is_not_found(client, store):
    make_device(store)
    headers = login_device(client)

    resp = scan(client, headers, ticket_code="ZZZ-000")
    assert resp.status_code == 200
    body = resp.json()
    assert body["result"] == "NOT_FOUND"
    assert body["message"] == "Ticket not found"
    assert "ticket" not in body
    assert count_logs(ticket_code="ZZZ-000", ticket_id=None) == 1


def test_ticket_code_is_trimmed(client, store):
    make_ticket(store, code="QR-001")
    make_device(store)

    resp = scan(client, login_device(client), ticket_code="  QR-001 ")
    assert resp.json()["result"] == "VALID"


def test_wrong_event_does_not_redeem(client, store):
    make_ticket(store, event_id="E2")
    make_device(store)

    resp = scan(client, login_device(client), event_id="E1")
    assert resp.json()["result"] == "WRONG_EVENT"
    assert resp.json()["message"] == "Ticket does not belong to this event"
    assert ticket_status("T-1") == "valid"


def test_blocked_and_expired(client, store, clock):
    make_ticket(store, ticket_id="T-1", status="blocked")
    make_ticket(store, ticket_id="T-2", status="expired")
    make_device(store)
    headers = login_device(client)

    for _ in range(3):
        assert scan(client, headers, ticket_code="T-1").json()["result"] == "BLOCKED"
        clock.advance(61)
    expired = scan(client, headers, ticket_code="T-2").json()
    assert expired["result"] == "EXPIRED"
    assert expired["message"] == "Ticket is expired or invalid"
    assert ticket_status("T-1") == "blocked"
    assert ticket_status("T-2") == "expired"


def test_missing_fields(client, store):
    make_device(store)
    headers = login_device(client)

    resp = client.post("/tickets/scan", json={"event_id": "E1"}, headers=headers)
    assert resp.status_code == 400
    blank = scan(client, headers, ticket_code="   ")
    assert blank.status_code == 400
    malformed = client.post("/tickets/scan", json={"event_id": "E1", "ticket_code": "T-1", "lat": "north"},
                            headers=headers)
    assert malformed.status_code == 400
    assert count_logs() == 0


def test_missing_fields_checked_before_token(client):
    resp = client.post("/tickets/scan", json={"ticket_code": "T-1"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Missing required fields"


def test_scan_requires_device_token(client, store):
    make_ticket(store)

    missing = scan(client, {})
    assert missing.status_code == 401
    assert missing.json()["detail"] == "Missing or invalid authorization header"

    garbage = scan(client, {"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == 401
    assert garbage.json()["detail"] == "Invalid or expired device token"
    assert ticket_status("T-1") == "valid"


def test_logout_revokes_token(client, store):
    make_ticket(store)
    make_device(store)
    headers = login_device(client)

    assert client.post("/devices/logout", headers=headers).status_code == 200
    resp = scan(client, headers)
    assert resp.status_code == 401
    assert ticket_status("T-1") == "valid"


def test_deactivated_device_is_locked_out(client, store, admin_headers):
    make_ticket(store)
    device = make_device(store)
    headers = login_device(client)

    resp = client.patch(f"/devices/{device.id}", json={"is_active": False}, headers=admin_headers)
    assert resp.status_code == 200
    assert scan(client, headers).status_code == 401


def test_token_expires_with_clock(client, store, clock):
    make_ticket(store)
    make_device(store)
    headers = login_device(client)

    clock.advance(8 * 3600)
    assert scan(client, headers).status_code == 401


def test_scan_rate_limit_per_device(client, store, monkeypatch):
    monkeypatch.setitem(config.RATE_LIMITS["ticket_scan"], "max", 3)
    make_device(store, public_id="GATE-A")
    make_device(store, public_id="GATE-B")
    gate_a = login_device(client, "GATE-A")

    for _ in range(3):
        assert scan(client, gate_a, ticket_code="ZZZ-000").status_code == 200
    limited = scan(client, gate_a, ticket_code="ZZZ-000")
    assert limited.status_code == 429
    assert 1 <= int(limited.headers["Retry-After"]) <= 60
    assert limited.json()["detail"]["retry_after_seconds"] == int(limited.headers["Retry-After"])
    assert count_logs() == 3

    assert scan(client, login_device(client, "GATE-B"), ticket_code="ZZZ-000").status_code == 200


def test_device_login_rate_limit(client, store):
    make_device(store)
    for _ in range(5):
        resp = client.post("/devices/authorize", json={
            "device_public_id": "ANDROID-XYZ-123",
            "device_secret": "guess",
        })
        assert resp.status_code == 401
    blocked = client.post("/devices/authorize", json={
        "device_public_id": "ANDROID-XYZ-123",
        "device_secret": "s3cr3t-issued-by-admin",
    })
    assert blocked.status_code == 429
    assert "Retry-After" in blocked.headers


def test_login_flood_windows_are_reclaimed(client):
    ms_clock = MsClock()
    limiter = FixedWindowRateLimiter(ms_clock)
    client.app.state.rate_limiter = limiter

    for n in range(300):
        resp = client.post("/devices/authorize", json={"device_public_id": f"junk-{n}", "device_secret": "x"})
        assert resp.status_code == 401
    assert len(limiter) == 300

    ms_clock.now += 60_000
    client.post("/devices/authorize", json={"device_public_id": "junk-final", "device_secret": "x"})
    assert len(limiter) == 1


def test_store_failure_is_500_and_leaves_ticket(client, store, monkeypatch):
    make_ticket(store)
    make_device(store)
    headers = login_device(client)

    def broken(self, **fields):
        raise OperationalError("INSERT", {}, Exception("disk full"))

    monkeypatch.setattr(CredentialStore, "append_scan_log", broken)
    resp = scan(client, headers)
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Internal server error"
    assert ticket_status("T-1") == "valid"


def test_duplicate_check_failure_policies(client, store, monkeypatch):
    make_ticket(store, ticket_id="T-1")
    make_ticket(store, ticket_id="T-2")
    make_device(store)
    headers = login_device(client)

    def broken(self, ticket_id, device_id, since):
        raise OperationalError("SELECT", {}, Exception("database is down"))

    monkeypatch.setattr(CredentialStore, "latest_scan_since", broken)

    monkeypatch.setattr(config, "IDEMPOTENCY_FAIL_MODE", "closed")
    refused = scan(client, headers, ticket_code="T-1")
    assert refused.status_code == 500
    assert ticket_status("T-1") == "valid"

    monkeypatch.setattr(config, "IDEMPOTENCY_FAIL_MODE", "open")
    admitted = scan(client, headers, ticket_code="T-2")
    assert admitted.status_code == 200
    assert admitted.json()["result"] == "VALID"
