from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel import Session, select

from . import models, order_service
from .db import get_session
from .entitlements import ActionCategory, FeatureGate
from .order_service import OrderError
from .permissions import Permissions, PermissionService
from .security import PermissionChecker, TenantContext

router = APIRouter()

ORDER_ERROR_STATUS = {
    "INVALID_INPUT": 400,
    "TABLE_NOT_FOUND": 404,
    "TABLE_DELETED": 400,
    "MENU_ITEM_NOT_FOUND": 404,
    "MENU_ITEM_UNAVAILABLE": 400,
    "ORDER_NOT_FOUND": 404,
    "ORDER_ITEM_NOT_FOUND": 404,
    "ORDER_CLOSED": 409,
    "VERSION_CONFLICT": 409,
    "INVALID_TRANSITION": 400,
    "ALREADY_PAID": 409,
    "INSUFFICIENT_AMOUNT": 400,
}

ordering_gate = FeatureGate("qr_menu", ActionCategory.operational)
operational_gate = FeatureGate(None, ActionCategory.operational)


def order_http_error(e: OrderError) -> HTTPException:
    return HTTPException(
        status_code=ORDER_ERROR_STATUS.get(e.code, 400),
        detail={"error": e.message, "code": e.code},
    )


def order_to_dict(session: Session, order: models.Order) -> dict:
    table = session.get(models.Table, order.table_id)
    items = session.exec(
        select(models.OrderItem).where(models.OrderItem.order_id == order.id).order_by(models.OrderItem.id)
    ).all()
    return {
        "id": order.id,
        "table_id": order.table_id,
        "table_code": table.table_code if table else None,
        "status": order.status.value,
        "version": order.version,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "session_id": order.session_id,
        "subtotal_cents": order.subtotal_cents,
        "discount_cents": order.discount_cents,
        "gst_cents": order.gst_cents,
        "service_charge_cents": order.service_charge_cents,
        "grand_total_cents": order.grand_total_cents,
        "applied_gst_rate": order.applied_gst_rate,
        "applied_service_rate": order.applied_service_rate,
        "created_at": order.created_at.isoformat(),
        "closed_at": order.closed_at.isoformat() if order.closed_at else None,
        "items": [
            {
                "id": item.id,
                "menu_item_id": item.menu_item_id,
                "item_name": item.item_name,
                "price_cents": item.price_cents,
                "quantity": item.quantity,
                "status": item.status.value,
                "notes": item.notes,
                "selected_variant": item.selected_variant,
                "selected_modifiers": item.selected_modifiers,
            }
            for item in items
        ],
    }


def _parse_statuses(raw: str | None) -> list[models.OrderStatus] | None:
    if not raw:
        return None
    try:
        return [models.OrderStatus(s.strip().lower()) for s in raw.split(",") if s.strip()]
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"error": f"Invalid status filter: {raw}", "code": "INVALID_INPUT"},
        )


def _require_staff_permission(tenant: TenantContext, permission: Permissions) -> None:
    if tenant.user is not None and not PermissionService.has_permission(tenant.user, permission):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions")


@router.post("/orders", status_code=status.HTTP_201_CREATED)
def create_order(
    order_data: models.OrderCreate,
    tenant: Annotated[TenantContext, Depends(ordering_gate)],
    session: Session = Depends(get_session),
) -> dict:
    """Place an order for a table (customer via access code cookie, or staff)."""
    _require_staff_permission(tenant, Permissions.ORDERS_CREATE)
    try:
        order = order_service.create_order(
            session,
            client_id=tenant.client_id,
            table_id=order_data.table_id,
            items=order_data.items,
            customer_name=order_data.customer_name,
            session_id=order_data.session_id,
            actor_id=tenant.user.id if tenant.user else None,
        )
    except OrderError as e:
        raise order_http_error(e)
    return order_to_dict(session, order)


@router.get("/orders")
def list_orders(
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.ORDERS_READ))],
    status_filter: str | None = Query(None, alias="status", description="Comma-separated statuses"),
    limit: int = Query(50, ge=1, le=500),
    newest_first: bool = False,
    session: Session = Depends(get_session),
) -> list[dict]:
    orders = order_service.list_orders(
        session,
        current_user.client_id,
        statuses=_parse_statuses(status_filter),
        limit=limit,
        newest_first=newest_first,
    )
    return [order_to_dict(session, order) for order in orders]


@router.get("/orders/{order_id}")
def get_order(
    order_id: int,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.ORDERS_READ))],
    session: Session = Depends(get_session),
) -> dict:
    try:
        order = order_service.get_order(session, order_id, current_user.client_id)
    except OrderError as e:
        raise order_http_error(e)
    return order_to_dict(session, order)


@router.patch("/orders/{order_id}")
def update_order_status(
    order_id: int,
    status_update: models.OrderStatusUpdate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.ORDERS_UPDATE))],
    _: Annotated[TenantContext, Depends(operational_gate)],
    session: Session = Depends(get_session),
) -> dict:
    """Move an order along its lifecycle. The caller must send the version it last saw."""
    if status_update.status == models.OrderStatus.closed and not PermissionService.has_permission(
        current_user, Permissions.ORDERS_PAY
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions")
    if status_update.status == models.OrderStatus.cancelled and not PermissionService.has_permission(
        current_user, Permissions.ORDERS_CANCEL
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions")

    try:
        order = order_service.update_order_status(
            session,
            order_id=order_id,
            new_status=status_update.status,
            expected_version=status_update.version,
            client_id=current_user.client_id,
            actor_id=current_user.id,
            customer_name=status_update.customer_name,
            customer_phone=status_update.customer_phone,
            overrides=status_update.overrides,
        )
    except OrderError as e:
        raise order_http_error(e)
    return order_to_dict(session, order)


@router.delete("/orders/{order_id}")
def cancel_order(
    order_id: int,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.ORDERS_CANCEL))],
    _: Annotated[TenantContext, Depends(operational_gate)],
    session: Session = Depends(get_session),
) -> dict:
    try:
        order = order_service.cancel_order(session, order_id, current_user.client_id, actor_id=current_user.id)
    except OrderError as e:
        raise order_http_error(e)
    return order_to_dict(session, order)


@router.post("/orders/{order_id}/items")
def add_order_items(
    order_id: int,
    items_data: models.OrderItemsAdd,
    tenant: Annotated[TenantContext, Depends(ordering_gate)],
    session: Session = Depends(get_session),
) -> dict:
    _require_staff_permission(tenant, Permissions.ORDERS_CREATE)
    try:
        order = order_service.add_items_to_order(
            session,
            order_id,
            items_data.items,
            tenant.client_id,
            actor_id=tenant.user.id if tenant.user else None,
        )
    except OrderError as e:
        raise order_http_error(e)
    return order_to_dict(session, order)


@router.delete("/orders/{order_id}/items/{item_id}")
def cancel_order_item(
    order_id: int,
    item_id: int,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.ORDERS_CANCEL))],
    _: Annotated[TenantContext, Depends(operational_gate)],
    session: Session = Depends(get_session),
) -> dict:
    try:
        order = order_service.cancel_order_item(
            session, order_id, item_id, current_user.client_id, actor_id=current_user.id
        )
    except OrderError as e:
        raise order_http_error(e)
    return order_to_dict(session, order)


@router.put("/orders/{order_id}/items/{item_id}/status")
def update_order_item_status(
    order_id: int,
    item_id: int,
    status_update: models.OrderItemStatusUpdate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.ORDERS_UPDATE))],
    _: Annotated[TenantContext, Depends(operational_gate)],
    session: Session = Depends(get_session),
) -> dict:
    """Kitchen/waiter progress on a single dish."""
    try:
        order = order_service.update_item_status(
            session, order_id, item_id, status_update.status, current_user.client_id, actor_id=current_user.id
        )
    except OrderError as e:
        raise order_http_error(e)
    return order_to_dict(session, order)


@router.post("/orders/{order_id}/payment", status_code=status.HTTP_201_CREATED)
def record_payment(
    order_id: int,
    payment_data: models.PaymentCreate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.ORDERS_PAY))],
    _: Annotated[TenantContext, Depends(operational_gate)],
    session: Session = Depends(get_session),
) -> dict:
    try:
        order, payment = order_service.record_payment(
            session,
            order_id,
            current_user.client_id,
            payment_data.method,
            payment_data.amount_cents,
            actor_id=current_user.id,
        )
    except OrderError as e:
        raise order_http_error(e)
    return {
        "payment": {
            "id": payment.id,
            "method": payment.method.value,
            "amount_cents": payment.amount_cents,
            "change_cents": payment.amount_cents - order.grand_total_cents,
        },
        "order": order_to_dict(session, order),
    }
