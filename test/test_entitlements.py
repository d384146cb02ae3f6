from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from conftest import auth, make_client
from hotelpro import entitlements, models
from hotelpro.billing_models import EntitlementSnapshot, Plan, Subscription, SubscriptionStatus
from hotelpro.entitlements import (
    ActionCategory,
    AuthorityUnavailableError,
    EntitlementData,
    EntitlementError,
)
from hotelpro.models import utc_now


def _subscribe(session, tenant, code=models.ClientPlan.basic, status=SubscriptionStatus.active, **kwargs):
    plan = session.exec(select(Plan).where(Plan.code == code)).first()
    subscription = Subscription(client_id=tenant.id, plan_id=plan.id, status=status, **kwargs)
    session.add(subscription)
    session.commit()
    return plan


def _authority_down(monkeypatch):
    def unavailable(session, client_id):
        raise AuthorityUnavailableError("subscription store offline")

    monkeypatch.setattr(entitlements, "fetch_from_authority", unavailable)


def test_defaults_from_client_plan_without_subscription(session, tenant):
    result = entitlements.get_entitlements(session, tenant.id)

    assert result.source == "authority"
    assert result.data.plan_name == "Basic"
    assert result.data.subscription_status == SubscriptionStatus.active
    assert result.data.features["qr_menu"] is True
    assert result.data.features["custom_branding"] is False
    assert result.data.limits == {"tables": 30, "menu_items": 300}

    snapshot = session.exec(
        select(EntitlementSnapshot).where(EntitlementSnapshot.client_id == tenant.id)
    ).first()
    assert snapshot.plan_name == "Basic"


def test_trial_client_is_trialing(session):
    tenant = make_client(session, slug="new-cafe", status=models.ClientStatus.trial, access_code=None)
    data = entitlements.fetch_from_authority(session, tenant.id)
    assert data.subscription_status == SubscriptionStatus.trialing
    assert entitlements.is_subscription_active(data)


def test_subscription_plan_is_authoritative(session, tenant):
    _subscribe(session, tenant, code=models.ClientPlan.premium)

    assert entitlements.has_feature(session, tenant.id, "custom_branding")
    assert entitlements.get_limit(session, tenant.id, "menu_items") == 0


def test_past_due_is_active_only_within_grace():
    data = EntitlementData(plan_name="Basic", subscription_status=SubscriptionStatus.past_due)
    assert not entitlements.is_subscription_active(data)

    data.grace_until = utc_now() + timedelta(days=2)
    assert entitlements.is_subscription_active(data)

    data.grace_until = utc_now() - timedelta(minutes=1)
    assert not entitlements.is_subscription_active(data)


def test_freshness_thresholds():
    now = utc_now()
    synced = now - timedelta(hours=30)
    assert not entitlements.is_action_allowed_by_freshness(ActionCategory.admin, synced, now)
    assert entitlements.is_action_allowed_by_freshness(ActionCategory.operational, synced, now)

    synced = now - timedelta(hours=80)
    assert not entitlements.is_action_allowed_by_freshness(ActionCategory.operational, synced, now)


def test_snapshot_served_when_authority_unavailable(session, tenant, monkeypatch):
    entitlements.get_entitlements(session, tenant.id)
    _authority_down(monkeypatch)

    result = entitlements.get_entitlements(session, tenant.id)
    assert result.source == "snapshot"
    assert result.data.plan_name == "Basic"
    assert entitlements.require_entitlement(session, tenant.id, ActionCategory.admin, "qr_menu")


def test_no_snapshot_and_no_authority_is_unavailable(session, tenant, monkeypatch):
    _authority_down(monkeypatch)

    with pytest.raises(EntitlementError) as exc:
        entitlements.get_entitlements(session, tenant.id)
    assert exc.value.code == "ENTITLEMENTS_UNAVAILABLE"
    assert exc.value.status_code == 503


def _subscription_store_down(session, monkeypatch):
    original_exec = session.exec

    def exec_(statement, *args, **kwargs):
        descriptions = getattr(statement, "column_descriptions", [])
        if descriptions and descriptions[0].get("entity") is Subscription:
            raise OperationalError("SELECT subscription", {}, Exception("server closed the connection unexpectedly"))
        return original_exec(statement, *args, **kwargs)

    monkeypatch.setattr(session, "exec", exec_)


def test_database_error_on_subscription_read_falls_back_to_snapshot(session, tenant, monkeypatch):
    entitlements.get_entitlements(session, tenant.id)
    _subscription_store_down(session, monkeypatch)

    with pytest.raises(AuthorityUnavailableError):
        entitlements.fetch_from_authority(session, tenant.id)

    result = entitlements.get_entitlements(session, tenant.id)
    assert result.source == "snapshot"
    assert result.data.plan_name == "Basic"


def test_database_error_without_snapshot_is_unavailable(session, tenant, monkeypatch):
    _subscription_store_down(session, monkeypatch)

    with pytest.raises(EntitlementError) as exc:
        entitlements.get_entitlements(session, tenant.id)
    assert exc.value.code == "ENTITLEMENTS_UNAVAILABLE"


def test_stale_snapshot_blocks_admin_but_not_operational(session, tenant, monkeypatch):
    entitlements.get_entitlements(session, tenant.id)
    snapshot = session.exec(
        select(EntitlementSnapshot).where(EntitlementSnapshot.client_id == tenant.id)
    ).first()
    snapshot.synced_at = utc_now() - timedelta(hours=30)
    session.add(snapshot)
    session.commit()
    _authority_down(monkeypatch)

    with pytest.raises(EntitlementError) as exc:
        entitlements.require_entitlement(session, tenant.id, ActionCategory.admin)
    assert exc.value.code == "ENTITLEMENTS_STALE"

    result = entitlements.require_entitlement(session, tenant.id, ActionCategory.operational, "qr_menu")
    assert result.source == "snapshot"


def test_inactive_subscription_is_rejected(session, tenant):
    _subscribe(session, tenant, status=SubscriptionStatus.canceled)

    with pytest.raises(EntitlementError) as exc:
        entitlements.require_entitlement(session, tenant.id, ActionCategory.operational)
    assert exc.value.code == "SUBSCRIPTION_INACTIVE"


def test_missing_feature_is_gated(session, tenant):
    with pytest.raises(EntitlementError) as exc:
        entitlements.require_entitlement(session, tenant.id, ActionCategory.admin, "custom_branding")
    assert exc.value.code == "FEATURE_GATED"
    assert exc.value.extra["feature"] == "custom_branding"


def test_limit_reached_when_creating_tables(client, session, tenant, admin, table):
    plan = _subscribe(session, tenant)
    plan.limits = {"tables": 1, "menu_items": 300}
    session.add(plan)
    session.commit()

    response = client.post("/tables", json={"table_code": "T6"}, headers=auth(admin))
    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["code"] == "LIMIT_REACHED"
    assert detail["current"] == 1
    assert detail["max"] == 1


def test_deleted_tables_do_not_count(client, session, tenant, admin, table):
    check = entitlements.check_resource_limit(session, tenant.id, "tables")
    assert check.current == 1

    assert client.delete(f"/tables/{table.id}", headers=auth(admin)).status_code == 200
    check = entitlements.check_resource_limit(session, tenant.id, "tables")
    assert check.current == 0
    assert check.allowed


def test_logo_upload_is_gated_on_basic(client, admin):
    response = client.post(
        "/settings/logo",
        files={"file": ("logo.png", b"not-an-image", "image/png")},
        headers=auth(admin),
    )
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "FEATURE_GATED"


def test_entitlements_endpoint(client, admin, table):
    response = client.get("/entitlements", headers=auth(admin))
    assert response.status_code == 200
    body = response.json()
    assert body["plan_name"] == "Basic"
    assert body["is_active"] is True
    assert body["usage"] == {"tables": 1, "menu_items": 0}
    assert body["source"] == "authority"


def test_public_plans_lists_catalogue(client):
    response = client.get("/plans")
    assert response.status_code == 200
    assert [p["code"] for p in response.json()] == ["basic", "advance", "premium", "business"]
