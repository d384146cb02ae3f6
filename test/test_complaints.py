import json

import pytest
from sqlmodel import select

from conftest import auth, make_client
from hotelpro import models, order_service
from hotelpro.models import OrderItemCreate


@pytest.fixture
def order(session, tenant, table, menu):
    return order_service.create_order(
        session,
        client_id=tenant.id,
        table_id=table.id,
        items=[OrderItemCreate(menu_item_id=menu["curry"].id, quantity=1)],
        customer_name="Asha",
    )


def enter_restaurant(client):
    assert client.post("/auth/access-code", json={"code": "TAJ123"}).status_code == 200


def test_guest_raises_complaint(client, session, order, fake_redis):
    enter_restaurant(client)
    response = client.post(
        "/customer/complaints",
        json={"order_id": order.id, "type": "Wrong_Item", "description": "Got paneer", "guest_name": "Asha"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["type"] == "wrong_item"
    assert body["status"] == "submitted"
    assert body["table_code"] == "T5"

    audit = session.exec(
        select(models.AuditLog).where(models.AuditLog.action == models.AuditAction.complaint_raised)
    ).one()
    assert audit.order_id == order.id

    events = [json.loads(message) for _, message in fake_redis.published]
    raised = [e for e in events if e["type"] == "complaint_raised"]
    assert raised[0]["urgent"] is True
    assert raised[0]["complaint_type"] == "wrong_item"


def test_complaint_validation(client, session, order):
    enter_restaurant(client)
    response = client.post("/customer/complaints", json={"order_id": order.id, "type": "too_spicy"})
    assert response.status_code == 400

    response = client.post("/customer/complaints", json={"order_id": 99999, "type": "delay"})
    assert response.status_code == 404


def test_complaint_on_other_tenant_order_is_not_found(client, session, order):
    make_client(session, slug="spice-route", access_code="SPICE1")
    assert client.post("/auth/access-code", json={"code": "SPICE1"}).status_code == 200
    response = client.post("/customer/complaints", json={"order_id": order.id, "type": "delay"})
    assert response.status_code == 404


def test_complaint_requires_tenant(client, order):
    response = client.post("/customer/complaints", json={"order_id": order.id, "type": "delay"})
    assert response.status_code == 401


def test_guest_sees_only_their_order_complaints(client, order):
    enter_restaurant(client)
    client.post("/customer/complaints", json={"order_id": order.id, "type": "delay"})

    response = client.get("/customer/complaints", params={"order_id": order.id})
    assert response.status_code == 200
    assert [c["type"] for c in response.json()] == ["delay"]

    assert client.get("/customer/complaints").status_code == 401


def test_staff_list_and_filter(client, session, tenant, order, waiter, kitchen):
    for kind in ("delay", "quality_issue"):
        session.add(models.CustomerComplaint(client_id=tenant.id, order_id=order.id, type=models.ComplaintType(kind)))
    session.add(models.CustomerComplaint(
        client_id=tenant.id, order_id=order.id, type=models.ComplaintType.other, status=models.ComplaintStatus.resolved
    ))
    session.commit()

    response = client.get("/customer/complaints", headers=auth(waiter))
    assert response.status_code == 200
    assert len(response.json()) == 3

    response = client.get("/customer/complaints", params={"status": "submitted"}, headers=auth(waiter))
    assert {c["type"] for c in response.json()} == {"delay", "quality_issue"}

    assert client.get("/customer/complaints", params={"status": "lost"}, headers=auth(waiter)).status_code == 400
    assert client.get("/customer/complaints", headers=auth(kitchen)).status_code == 403


def test_manager_resolves_complaint(client, session, tenant, order, admin, fake_redis):
    complaint = models.CustomerComplaint(client_id=tenant.id, order_id=order.id, type=models.ComplaintType.delay)
    session.add(complaint)
    session.commit()
    session.refresh(complaint)

    response = client.patch(
        "/customer/complaints",
        json={"complaint_id": complaint.id, "status": "acknowledged"},
        headers=auth(admin),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "acknowledged"
    assert response.json()["resolved_at"] is None

    response = client.patch(
        "/customer/complaints",
        json={"complaint_id": complaint.id, "status": "resolved", "resolved_note": "Comped dessert"},
        headers=auth(admin),
    )
    assert response.status_code == 200
    assert response.json()["resolved_note"] == "Comped dessert"
    assert response.json()["resolved_at"] is not None

    session.refresh(complaint)
    assert complaint.resolved_by_id == admin.id
    actions = session.exec(select(models.AuditLog.action)).all()
    assert models.AuditAction.complaint_acknowledged in actions
    assert models.AuditAction.complaint_resolved in actions

    response = client.patch(
        "/customer/complaints",
        json={"complaint_id": complaint.id, "status": "in_progress"},
        headers=auth(admin),
    )
    assert response.status_code == 409


def test_complaint_update_validation(client, session, tenant, order, admin, waiter):
    complaint = models.CustomerComplaint(client_id=tenant.id, order_id=order.id, type=models.ComplaintType.delay)
    session.add(complaint)
    session.commit()
    session.refresh(complaint)

    body = {"complaint_id": complaint.id, "status": "submitted"}
    assert client.patch("/customer/complaints", json=body, headers=auth(admin)).status_code == 400

    body = {"complaint_id": complaint.id, "status": "resolved"}
    assert client.patch("/customer/complaints", json=body, headers=auth(waiter)).status_code == 403

    body = {"complaint_id": 99999, "status": "resolved"}
    assert client.patch("/customer/complaints", json=body, headers=auth(admin)).status_code == 404
