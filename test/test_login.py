"""
Staff login, session cookie and health checks.
"""

from sqlalchemy.exc import OperationalError
from sqlmodel import select

from conftest import PASSWORD, auth
from hotelpro import main, models, security


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
    response = client.get("/health/db")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_health_db_reports_outage(client, monkeypatch):
    def broken():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(main, "check_db_connection", broken)
    assert client.get("/health/db").status_code == 503


def test_login_sets_cookie_and_returns_token(client, session, admin):
    response = client.post("/token", data={"username": "Admin", "password": PASSWORD})

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["access_token"]
    assert response.cookies.get(security.STAFF_COOKIE) == body["access_token"]

    session.refresh(admin)
    assert admin.last_login is not None
    audit = session.exec(
        select(models.AuditLog).where(models.AuditLog.action == models.AuditAction.login_success)
    ).first()
    assert audit.actor_id == admin.id


def test_cookie_session_reaches_users_me(client, admin):
    client.post("/token", data={"username": "admin", "password": PASSWORD})

    response = client.get("/users/me")
    assert response.status_code == 200
    me = response.json()
    assert me["username"] == "admin"
    assert me["role"] == "admin"
    assert "billing:manage" in me["permissions"]
    assert "password_hash" not in me


def test_waiter_permissions(client, waiter):
    me = client.get("/users/me", headers=auth(waiter)).json()
    assert "orders:create" in me["permissions"]
    assert "orders:pay" not in me["permissions"]
    assert "settings:manage" not in me["permissions"]


def test_wrong_password(client, admin):
    response = client.post("/token", data={"username": "admin", "password": "nope"})
    assert response.status_code == 401


def test_disabled_user_cannot_login(client, session, admin):
    admin.is_active = False
    session.add(admin)
    session.commit()

    assert client.post("/token", data={"username": "admin", "password": PASSWORD}).status_code == 401
    assert client.get("/users/me", headers=auth(admin)).status_code == 401


def test_suspended_tenant_cannot_login(client, session, tenant, admin):
    tenant.status = models.ClientStatus.suspended
    session.add(tenant)
    session.commit()

    response = client.post("/token", data={"username": "admin", "password": PASSWORD})
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "TENANT_INACTIVE"


def test_logout_clears_session(client, admin):
    client.post("/token", data={"username": "admin", "password": PASSWORD})
    assert client.get("/users/me").status_code == 200

    client.post("/logout")
    assert client.get("/users/me").status_code == 401


def test_missing_token(client):
    assert client.get("/users/me").status_code == 401
