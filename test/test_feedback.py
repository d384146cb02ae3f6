import json

import pytest

from conftest import auth
from hotelpro import order_service
from hotelpro.models import OrderItemCreate


@pytest.fixture
def order(session, tenant, table, menu):
    return order_service.create_order(
        session,
        client_id=tenant.id,
        table_id=table.id,
        items=[OrderItemCreate(menu_item_id=menu["lassi"].id, quantity=1)],
    )


@pytest.fixture
def guest(client, tenant):
    assert client.post("/auth/access-code", json={"code": "TAJ123"}).status_code == 200
    return client


def test_guest_submits_feedback(guest, order):
    response = guest.post(
        "/customer/feedback",
        json={"order_id": order.id, "rating": 5, "comment": "Lovely lassi", "guest_name": "Asha"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["rating"] == 5
    assert body["table_code"] == "T5"
    assert body["staff_reply"] is None


def test_rating_out_of_range(guest, order):
    response = guest.post("/customer/feedback", json={"order_id": order.id, "rating": 6})
    assert response.status_code == 400


def test_unknown_order(guest, order):
    response = guest.post("/customer/feedback", json={"order_id": 9999, "rating": 4})
    assert response.status_code == 404


def test_one_feedback_per_order(guest, order):
    assert guest.post("/customer/feedback", json={"order_id": order.id, "rating": 4}).status_code == 201
    response = guest.post("/customer/feedback", json={"order_id": order.id, "rating": 2})
    assert response.status_code == 409


def test_low_rating_is_flagged_urgent(guest, order, tenant, fake_redis):
    guest.post("/customer/feedback", json={"order_id": order.id, "rating": 1})
    channel, message = fake_redis.published[-1]
    assert channel == f"orders:client:{tenant.id}"
    event = json.loads(message)
    assert event["type"] == "feedback_submitted"
    assert event["urgent"] is True
    assert event["guest_name"] == "Guest"


def test_feedback_requires_tenant(client, order):
    response = client.post("/customer/feedback", json={"order_id": order.id, "rating": 5})
    assert response.status_code == 401


def test_manager_lists_feedback_with_stats(guest, session, tenant, table, menu, order, admin):
    second = order_service.create_order(
        session,
        client_id=tenant.id,
        table_id=table.id,
        items=[OrderItemCreate(menu_item_id=menu["curry"].id, quantity=1)],
    )
    guest.post("/customer/feedback", json={"order_id": order.id, "rating": 5})
    guest.post("/customer/feedback", json={"order_id": second.id, "rating": 2})

    response = guest.get("/customer/feedback", headers=auth(admin))
    assert response.status_code == 200
    body = response.json()
    assert body["stats"] == {"average_rating": 3.5, "total_feedbacks": 2}
    assert [f["order_id"] for f in body["feedbacks"]] == [second.id, order.id]


def test_waiter_cannot_read_feedback(client, waiter):
    assert client.get("/customer/feedback", headers=auth(waiter)).status_code == 403


def test_staff_reply(guest, order, admin):
    feedback = guest.post("/customer/feedback", json={"order_id": order.id, "rating": 3}).json()

    response = guest.patch(
        "/customer/feedback",
        json={"feedback_id": feedback["id"], "reply": "  Thanks, we'll do better!  "},
        headers=auth(admin),
    )
    assert response.status_code == 200
    assert response.json()["staff_reply"] == "Thanks, we'll do better!"
    assert response.json()["replied_at"] is not None

    response = guest.patch(
        "/customer/feedback", json={"feedback_id": feedback["id"], "reply": "   "}, headers=auth(admin)
    )
    assert response.status_code == 400

    response = guest.patch("/customer/feedback", json={"feedback_id": 9999, "reply": "Hi"}, headers=auth(admin))
    assert response.status_code == 404
