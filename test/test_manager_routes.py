from io import BytesIO

from PIL import Image
from sqlmodel import select

from conftest import auth, make_client, make_user
from hotelpro import models, order_service
from hotelpro.models import OrderItemCreate
from hotelpro.settings import settings


# ============ TABLES ============

def test_create_and_list_tables(client, admin, waiter):
    response = client.post("/tables", json={"table_code": " T1 ", "capacity": 6}, headers=auth(admin))
    assert response.status_code == 201
    assert response.json()["table_code"] == "T1"
    assert response.json()["status"] == "vacant"

    assert client.post("/tables", json={"table_code": "T1"}, headers=auth(admin)).status_code == 409

    tables = client.get("/tables", headers=auth(waiter)).json()
    assert [t["table_code"] for t in tables] == ["T1"]


def test_waiter_cannot_create_tables(client, waiter):
    assert client.post("/tables", json={"table_code": "T9"}, headers=auth(waiter)).status_code == 403


def test_assign_waiter_to_table(client, session, admin, waiter, table):
    response = client.patch(f"/tables/{table.id}", json={"assigned_waiter_id": waiter.id}, headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["assigned_waiter_id"] == waiter.id

    other = make_client(session, slug="spice-route", access_code="SPICE1")
    stranger = make_user(session, other, "stranger", models.UserRole.waiter)
    response = client.patch(f"/tables/{table.id}", json={"assigned_waiter_id": stranger.id}, headers=auth(admin))
    assert response.status_code == 400


def test_table_with_open_order_cannot_be_deleted(client, session, tenant, admin, table, menu):
    order_service.create_order(
        session,
        client_id=tenant.id,
        table_id=table.id,
        items=[OrderItemCreate(menu_item_id=menu["lassi"].id, quantity=1)],
    )
    assert client.delete(f"/tables/{table.id}", headers=auth(admin)).status_code == 409


def test_deleted_table_is_hidden(client, admin, table):
    assert client.delete(f"/tables/{table.id}", headers=auth(admin)).status_code == 200
    assert client.get("/tables", headers=auth(admin)).json() == []
    assert client.delete(f"/tables/{table.id}", headers=auth(admin)).status_code == 404


def test_table_update_rejects_null_required_fields(client, admin, waiter, table):
    response = client.patch(f"/tables/{table.id}", json={"table_code": None, "capacity": None}, headers=auth(admin))
    assert response.status_code == 400
    assert "capacity" in response.json()["detail"]

    client.patch(f"/tables/{table.id}", json={"assigned_waiter_id": waiter.id}, headers=auth(admin))
    response = client.patch(f"/tables/{table.id}", json={"assigned_waiter_id": None}, headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["assigned_waiter_id"] is None
    assert response.json()["table_code"] == "T5"


def test_guest_claims_vacant_table(client, session, table):
    client.post("/auth/access-code", json={"code": "TAJ123"})
    response = client.post("/tables/claim", json={"table_code": "t-05", "party_size": 3})
    assert response.status_code == 200
    assert response.json()["action"] == "claimed"
    assert response.json()["table"]["table_code"] == "T5"

    session.refresh(table)
    assert table.status == models.TableStatus.active
    audit = session.exec(
        select(models.AuditLog).where(models.AuditLog.action == models.AuditAction.table_claimed)
    ).one()
    assert audit.details["party_size"] == 3

    assert client.post("/tables/claim", json={"table_code": "5"}).status_code == 409


def test_claim_joins_running_order(client, session, tenant, table, menu):
    order = order_service.create_order(
        session,
        client_id=tenant.id,
        table_id=table.id,
        items=[OrderItemCreate(menu_item_id=menu["lassi"].id, quantity=2)],
        customer_name="Asha",
    )
    client.post("/auth/access-code", json={"code": "TAJ123"})
    response = client.post("/tables/claim", json={"table_code": "T5"})
    assert response.status_code == 200
    assert response.json()["action"] == "join"
    assert response.json()["active_order"]["id"] == order.id
    assert response.json()["active_order"]["customer_name"] == "Asha"


def test_claim_rejects_dirty_and_unknown_tables(client, session, table):
    client.post("/auth/access-code", json={"code": "TAJ123"})
    assert client.post("/tables/claim", json={"table_code": "T99"}).status_code == 404

    table.status = models.TableStatus.dirty
    session.add(table)
    session.commit()
    assert client.post("/tables/claim", json={"table_code": "T5"}).status_code == 409


def test_claim_requires_tenant(client, table):
    assert client.post("/tables/claim", json={"table_code": "T5"}).status_code == 401


# ============ MENU ============

def test_menu_item_crud(client, admin, waiter):
    response = client.post(
        "/menu/items",
        json={
            "name": "Paneer Tikka",
            "price_cents": 28000,
            "category": "Starters",
            "variants": [{"name": "Half", "price_cents": 16000}],
        },
        headers=auth(admin),
    )
    assert response.status_code == 201
    item_id = response.json()["id"]

    response = client.put(f"/menu/items/{item_id}", json={"is_available": False}, headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["is_available"] is False
    assert response.json()["price_cents"] == 28000

    items = client.get("/menu/items", params={"category": "Starters"}, headers=auth(waiter)).json()
    assert [i["name"] for i in items] == ["Paneer Tikka"]

    assert client.delete(f"/menu/items/{item_id}", headers=auth(admin)).status_code == 200
    assert client.get("/menu/items", headers=auth(waiter)).json() == []


def test_menu_item_validation(client, admin):
    response = client.post("/menu/items", json={"name": "Free", "price_cents": -1}, headers=auth(admin))
    assert response.status_code == 400

    response = client.post(
        "/menu/items",
        json={"name": "Dosa", "price_cents": 9000, "modifiers": [{"price_cents": 1000}]},
        headers=auth(admin),
    )
    assert response.status_code == 400


def test_customer_menu_hides_unavailable_items(client, session, menu):
    menu["lassi"].is_available = False
    session.add(menu["lassi"])
    session.commit()

    client.post("/auth/access-code", json={"code": "TAJ123"})
    body = client.get("/menu").json()
    assert body["restaurant"]["name"] == "Taj Palace"
    assert body["restaurant"]["currency"] == "INR"
    assert [c["name"] for c in body["categories"]] == ["Mains"]
    curry = body["categories"][0]["items"][0]
    assert curry["variants"] == [{"name": "Large", "price_cents": 32000}]


def test_menu_item_update_rejects_null_required_fields(client, admin, menu):
    item_id = menu["curry"].id
    for field in ("name", "price_cents", "is_available", "variants"):
        response = client.put(f"/menu/items/{item_id}", json={field: None}, headers=auth(admin))
        assert response.status_code == 400

    response = client.put(f"/menu/items/{item_id}", json={"description": None, "category": None}, headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["name"] == "Butter Chicken"
    assert response.json()["category"] is None


# ============ SETTINGS ============

def test_read_and_update_settings(client, admin, cashier):
    assert client.get("/settings", headers=auth(cashier)).json()["gst_rate"] == 5.0

    response = client.put("/settings", json={"gst_rate": 12.0, "currency": "INR"}, headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["gst_rate"] == 12.0

    assert client.put("/settings", json={"service_charge_rate": 120}, headers=auth(admin)).status_code == 400
    assert client.put("/settings", json={"gst_rate": 1}, headers=auth(cashier)).status_code == 403


def test_settings_update_rejects_null_rates(client, admin):
    response = client.put("/settings", json={"gst_rate": None}, headers=auth(admin))
    assert response.status_code == 400
    assert client.get("/settings", headers=auth(admin)).json()["gst_rate"] == 5.0


def test_new_rates_apply_to_new_orders(client, session, tenant, admin, table, menu):
    client.put("/settings", json={"gst_rate": 18.0, "service_charge_rate": 0}, headers=auth(admin))
    order = order_service.create_order(
        session,
        client_id=tenant.id,
        table_id=table.id,
        items=[OrderItemCreate(menu_item_id=menu["lassi"].id, quantity=1)],
    )
    assert order.applied_gst_rate == 18.0
    assert order.gst_cents == 2700
    assert order.grand_total_cents == 17700


def test_logo_upload_on_premium(client, session, tenant, admin, tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "uploads_dir", str(tmp_path))
    tenant.plan = models.ClientPlan.premium
    session.add(tenant)
    session.commit()

    buffer = BytesIO()
    Image.new("RGB", (2048, 1024), (200, 30, 30)).save(buffer, format="PNG")
    response = client.post(
        "/settings/logo",
        files={"file": ("logo.png", buffer.getvalue(), "image/png")},
        headers=auth(admin),
    )
    assert response.status_code == 200
    filename = response.json()["filename"]
    saved = tmp_path / str(tenant.id) / "logo" / filename
    with Image.open(saved) as logo:
        assert logo.size == (1024, 512)

    response = client.post(
        "/settings/logo",
        files={"file": ("logo.png", b"not-an-image", "image/png")},
        headers=auth(admin),
    )
    assert response.status_code == 400
