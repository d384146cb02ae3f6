from sqlmodel import select

from conftest import auth, make_client
from hotelpro import access_code_routes, models, security
from hotelpro.access_code_routes import ACCESS_CODE_ALPHABET, GENERATED_CODE_LENGTH
from hotelpro.settings import settings


# ============ CUSTOMER ENTRY ============

def test_valid_code_sets_tenant_cookie(client, session, tenant):
    response = client.post("/auth/access-code", json={"code": " taj123 "})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["restaurant"]["id"] == tenant.id
    assert body["restaurant"]["slug"] == "taj-palace"

    cookie = response.cookies.get(security.TENANT_COOKIE)
    assert security.verify_tenant_token(cookie) == tenant.id

    audit = session.exec(
        select(models.AuditLog).where(models.AuditLog.action == models.AuditAction.login_success)
    ).first()
    assert audit.client_id == tenant.id


def test_unknown_code_is_unauthorized(client, tenant):
    response = client.post("/auth/access-code", json={"code": "NOPE99"})
    assert response.status_code == 401
    assert security.TENANT_COOKIE not in response.cookies


def test_too_short_code_is_bad_request(client, tenant):
    response = client.post("/auth/access-code", json={"code": "T"})
    assert response.status_code == 400


def test_suspended_restaurant_is_forbidden(client, session):
    make_client(session, slug="closed-kitchen", status=models.ClientStatus.suspended, access_code="SHUT01")
    response = client.post("/auth/access-code", json={"code": "SHUT01"})
    assert response.status_code == 403


def test_archived_restaurant_looks_unknown(client, session):
    make_client(session, slug="old-diner", status=models.ClientStatus.archived, access_code="GONE01")
    response = client.post("/auth/access-code", json={"code": "GONE01"})
    assert response.status_code == 401


def test_tampered_tenant_cookie_is_ignored(client, tenant):
    client.cookies.set(security.TENANT_COOKIE, "not-a-token")
    response = client.get("/menu")
    assert response.status_code == 401


def test_rate_limit_after_too_many_attempts(client, tenant, fake_redis):
    for _ in range(settings.access_code_rate_limit):
        assert client.post("/auth/access-code", json={"code": "WRONG1"}).status_code == 401

    response = client.post("/auth/access-code", json={"code": "TAJ123"})
    assert response.status_code == 429
    assert response.headers["Retry-After"] == str(settings.access_code_rate_window_seconds)


def test_forwarded_header_does_not_reset_rate_limit(client, tenant, fake_redis):
    for i in range(settings.access_code_rate_limit):
        response = client.post(
            "/auth/access-code", json={"code": "WRONG1"}, headers={"X-Forwarded-For": f"10.0.0.{i}"}
        )
        assert response.status_code == 401

    response = client.post(
        "/auth/access-code", json={"code": "TAJ123"}, headers={"X-Forwarded-For": "10.0.0.200"}
    )
    assert response.status_code == 429


def test_trusted_proxy_hop_keys_the_limit(client, tenant, fake_redis, monkeypatch):
    monkeypatch.setattr(settings, "trusted_proxy_hops", 1)
    for i in range(settings.access_code_rate_limit):
        client.post(
            "/auth/access-code",
            json={"code": "WRONG1"},
            headers={"X-Forwarded-For": f"1.2.3.{i}, 203.0.113.7"},
        )

    response = client.post(
        "/auth/access-code", json={"code": "TAJ123"}, headers={"X-Forwarded-For": "9.9.9.9, 203.0.113.7"}
    )
    assert response.status_code == 429

    response = client.post(
        "/auth/access-code", json={"code": "TAJ123"}, headers={"X-Forwarded-For": "203.0.113.8"}
    )
    assert response.status_code == 200
    assert "ratelimit:access-code:203.0.113.7" in fake_redis.counters


def test_blocked_user_agent(client, tenant, monkeypatch):
    monkeypatch.setattr(settings, "blocked_user_agents", "badbot,scraper")
    response = client.post(
        "/auth/access-code", json={"code": "TAJ123"}, headers={"User-Agent": "BadBot/2.0"}
    )
    assert response.status_code == 403


def test_code_lookup_runs_off_the_event_loop(client, tenant, monkeypatch):
    offloaded = []
    original = access_code_routes.run_in_threadpool

    async def tracking(func, *args):
        offloaded.append(func.__name__)
        return await original(func, *args)

    monkeypatch.setattr(access_code_routes, "run_in_threadpool", tracking)
    assert client.post("/auth/access-code", json={"code": "TAJ123"}).status_code == 200
    assert offloaded == ["_find_client_by_code", "_record_customer_entry"]


# ============ ADMIN MANAGEMENT ============

def test_admin_reads_current_code(client, admin):
    response = client.get("/admin/access-code", headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["access_code"] == "TAJ123"


def test_waiter_cannot_manage_code(client, waiter):
    assert client.get("/admin/access-code", headers=auth(waiter)).status_code == 403


def test_admin_sets_custom_code(client, admin):
    response = client.post("/admin/access-code", json={"code": "royal7"}, headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["access_code"] == "ROYAL7"

    assert client.post("/auth/access-code", json={"code": "TAJ123"}).status_code == 401
    assert client.post("/auth/access-code", json={"code": "ROYAL7"}).status_code == 200


def test_custom_code_validation(client, admin):
    assert client.post("/admin/access-code", json={"code": "AB1"}, headers=auth(admin)).status_code == 400
    assert client.post("/admin/access-code", json={"code": "AB-123"}, headers=auth(admin)).status_code == 400


def test_code_owned_by_other_tenant_conflicts(client, session, admin):
    make_client(session, slug="spice-route", access_code="SPICE1")
    response = client.post("/admin/access-code", json={"code": "spice1"}, headers=auth(admin))
    assert response.status_code == 409


def test_generated_code(client, admin):
    response = client.post("/admin/access-code", json={}, headers=auth(admin))
    assert response.status_code == 200
    code = response.json()["access_code"]
    assert len(code) == GENERATED_CODE_LENGTH
    assert all(c in ACCESS_CODE_ALPHABET for c in code)


def test_revoked_code_stops_entry(client, session, admin):
    response = client.delete("/admin/access-code", headers=auth(admin))
    assert response.status_code == 200

    assert client.post("/auth/access-code", json={"code": "TAJ123"}).status_code == 401
    actions = session.exec(select(models.AuditLog.action)).all()
    assert models.AuditAction.access_code_changed in actions
