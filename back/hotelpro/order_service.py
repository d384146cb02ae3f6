"""
Order Service

Business logic for the order lifecycle:
- Order creation with price snapshots and tax totals
- Status transitions with optimistic version checks
- Item-level kitchen progress that rolls the order forward
- Cancellation and payment settlement
- Table status sync, waiter performance and audit trail
"""

import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlmodel import Session, select

from . import events
from .audit import log_audit
from .models import (
    AuditAction,
    MenuItem,
    Order,
    OrderItem,
    OrderItemCreate,
    OrderItemStatus,
    OrderStatus,
    OrderTotalsOverride,
    Payment,
    PaymentMethod,
    RestaurantSettings,
    Table,
    TableStatus,
    User,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_GST_RATE = 5.0
DEFAULT_SERVICE_RATE = 5.0
DEFAULT_ACTIVE_STATUSES = (
    OrderStatus.pending,
    OrderStatus.preparing,
    OrderStatus.ready,
    OrderStatus.served,
)

ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.pending: {OrderStatus.preparing, OrderStatus.cancelled},
    OrderStatus.preparing: {OrderStatus.ready},
    OrderStatus.ready: {OrderStatus.served},
    OrderStatus.served: {OrderStatus.bill_requested, OrderStatus.closed},
    OrderStatus.bill_requested: {OrderStatus.closed},
    OrderStatus.closed: set(),
    OrderStatus.cancelled: set(),
}

ITEM_TRANSITIONS: dict[OrderItemStatus, set[OrderItemStatus]] = {
    OrderItemStatus.pending: {OrderItemStatus.preparing, OrderItemStatus.cancelled},
    OrderItemStatus.preparing: {OrderItemStatus.ready},
    OrderItemStatus.ready: {OrderItemStatus.served},
    OrderItemStatus.served: set(),
    OrderItemStatus.cancelled: set(),
}

_ITEM_RANK = {
    OrderItemStatus.pending: 0,
    OrderItemStatus.preparing: 1,
    OrderItemStatus.ready: 2,
    OrderItemStatus.served: 3,
}

_ORDER_RANK = {
    OrderStatus.pending: 0,
    OrderStatus.preparing: 1,
    OrderStatus.ready: 2,
    OrderStatus.served: 3,
}

# Item status every active item reaches when the order moves to the key status
_ORDER_TO_ITEM_STATUS = {
    OrderStatus.preparing: OrderItemStatus.preparing,
    OrderStatus.ready: OrderItemStatus.ready,
    OrderStatus.served: OrderItemStatus.served,
    OrderStatus.bill_requested: OrderItemStatus.served,
    OrderStatus.closed: OrderItemStatus.served,
}

_TABLE_STATUS_FOR_ORDER = {
    OrderStatus.preparing: TableStatus.active,
    OrderStatus.served: TableStatus.active,
    OrderStatus.ready: TableStatus.ready,
    OrderStatus.bill_requested: TableStatus.waiting_for_payment,
    OrderStatus.closed: TableStatus.dirty,
    OrderStatus.cancelled: TableStatus.vacant,
}

SETTLED_STATUSES = (OrderStatus.closed, OrderStatus.cancelled)


class OrderError(Exception):
    def __init__(self, message: str, code: str):
        self.message = message
        self.code = code
        super().__init__(message)


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ORDER_TRANSITIONS.get(current, set())


def can_transition_item(current: OrderItemStatus, new: OrderItemStatus) -> bool:
    return new in ITEM_TRANSITIONS.get(current, set())


# ============ PRICING ============

def _percent_of(amount_cents: int, rate: float) -> int:
    value = Decimal(amount_cents) * Decimal(str(rate)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_totals(
    subtotal_cents: int,
    gst_rate: float,
    service_rate: float,
    discount_cents: int = 0,
) -> dict[str, int]:
    """Taxes and service charge apply to the discounted subtotal."""
    taxable = max(subtotal_cents - discount_cents, 0)
    gst_cents = _percent_of(taxable, gst_rate)
    service_cents = _percent_of(taxable, service_rate)
    return {
        "subtotal_cents": subtotal_cents,
        "discount_cents": discount_cents,
        "gst_cents": gst_cents,
        "service_charge_cents": service_cents,
        "grand_total_cents": taxable + gst_cents + service_cents,
    }


def _get_rates(session: Session, client_id: int) -> tuple[float, float]:
    restaurant = session.exec(
        select(RestaurantSettings).where(RestaurantSettings.client_id == client_id)
    ).first()
    if restaurant is None:
        return DEFAULT_GST_RATE, DEFAULT_SERVICE_RATE
    return restaurant.gst_rate, restaurant.service_charge_rate


def _apply_totals(order: Order, totals: dict[str, int]) -> None:
    order.subtotal_cents = totals["subtotal_cents"]
    order.discount_cents = totals["discount_cents"]
    order.gst_cents = totals["gst_cents"]
    order.service_charge_cents = totals["service_charge_cents"]
    order.grand_total_cents = totals["grand_total_cents"]


def _recalculate_order(session: Session, order: Order) -> None:
    items = _order_items(session, order.id)
    subtotal = sum(i.price_cents * i.quantity for i in items if i.status != OrderItemStatus.cancelled)
    gst_rate, service_rate = _get_rates(session, order.client_id)
    order.applied_gst_rate = gst_rate
    order.applied_service_rate = service_rate
    _apply_totals(order, calculate_totals(subtotal, gst_rate, service_rate, order.discount_cents))


def _validate_overrides(overrides: OrderTotalsOverride) -> None:
    for key in ("discount_cents", "gst_cents", "service_charge_cents"):
        value = getattr(overrides, key)
        if value is not None and value < 0:
            raise OrderError(f"{key} must not be negative", "INVALID_INPUT")
    for key in ("applied_gst_rate", "applied_service_rate"):
        value = getattr(overrides, key)
        if value is not None and not 0 <= value <= 100:
            raise OrderError(f"{key} must be between 0 and 100", "INVALID_INPUT")


def _resolve_unit_price(menu_item: MenuItem, item: OrderItemCreate) -> tuple[int, dict | None, list[dict] | None]:
    """Variant price replaces the base price; modifier prices are added on top."""
    price = menu_item.price_cents
    variant = None
    if item.selected_variant:
        variant = next((v for v in menu_item.variants or [] if v.get("name") == item.selected_variant), None)
        if variant is None:
            raise OrderError(f"Unknown variant '{item.selected_variant}' for {menu_item.name}", "INVALID_INPUT")
        price = int(variant.get("price_cents", price))

    modifiers = None
    if item.selected_modifiers:
        modifiers = []
        available = {m.get("name"): m for m in menu_item.modifiers or []}
        for name in item.selected_modifiers:
            modifier = available.get(name)
            if modifier is None:
                raise OrderError(f"Unknown modifier '{name}' for {menu_item.name}", "INVALID_INPUT")
            price += int(modifier.get("price_cents", 0))
            modifiers.append(modifier)

    return price, variant, modifiers


def _build_items(
    session: Session, client_id: int, order_id: int | None, items: list[OrderItemCreate]
) -> list[OrderItem]:
    for item in items:
        if item.quantity < 1:
            raise OrderError("Quantity must be at least 1", "INVALID_INPUT")

    menu_ids = list({i.menu_item_id for i in items})
    menu_items = session.exec(
        select(MenuItem).where(
            MenuItem.id.in_(menu_ids),
            MenuItem.client_id == client_id,
            MenuItem.deleted_at == None,  # noqa: E711
        )
    ).all()
    by_id = {m.id: m for m in menu_items}

    built = []
    for item in items:
        menu_item = by_id.get(item.menu_item_id)
        if menu_item is None:
            raise OrderError(f"Item not found: {item.menu_item_id}", "MENU_ITEM_NOT_FOUND")
        if not menu_item.is_available:
            raise OrderError(f"Item not available: {menu_item.name}", "MENU_ITEM_UNAVAILABLE")

        price, variant, modifiers = _resolve_unit_price(menu_item, item)
        built.append(
            OrderItem(
                client_id=client_id,
                order_id=order_id,
                menu_item_id=menu_item.id,
                item_name=menu_item.name,
                price_cents=price,
                quantity=item.quantity,
                notes=item.notes,
                selected_variant=variant,
                selected_modifiers=modifiers,
                status=OrderItemStatus.pending,
            )
        )
    return built


# ============ LOOKUPS ============

def _order_items(session: Session, order_id: int) -> list[OrderItem]:
    return list(
        session.exec(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        ).all()
    )


def _load_order(session: Session, order_id: int, client_id: int, for_update: bool = False) -> Order:
    statement = select(Order).where(Order.id == order_id, Order.client_id == client_id)
    if for_update:
        statement = statement.with_for_update()
    order = session.exec(statement).first()
    if order is None:
        raise OrderError("Order not found", "ORDER_NOT_FOUND")
    return order


def get_order(session: Session, order_id: int, client_id: int) -> Order:
    return _load_order(session, order_id, client_id)


def list_orders(
    session: Session,
    client_id: int,
    statuses: list[OrderStatus] | None = None,
    limit: int = 50,
    newest_first: bool = False,
) -> list[Order]:
    """Tenant orders filtered by status; oldest first so kitchens work in arrival order."""
    statuses = statuses or list(DEFAULT_ACTIVE_STATUSES)
    order_by = Order.created_at.desc() if newest_first else Order.created_at.asc()
    statement = (
        select(Order)
        .where(Order.client_id == client_id, Order.status.in_(statuses))
        .order_by(order_by, Order.id)
        .limit(limit)
    )
    return list(session.exec(statement).all())


# ============ SIDE EFFECTS ============

def _sync_table(session: Session, order: Order, new_status: OrderStatus) -> int | None:
    """Move the table with the order. Returns the waiter assigned before the change."""
    table = session.get(Table, order.table_id)
    if table is None:
        return None
    waiter_id = table.assigned_waiter_id
    table_status = _TABLE_STATUS_FOR_ORDER.get(new_status)
    if table_status is not None:
        table.status = table_status
    if new_status == OrderStatus.closed:
        table.assigned_waiter_id = None
    session.add(table)
    return waiter_id


def _credit_waiter(session: Session, order: Order, waiter_id: int | None) -> None:
    if waiter_id is None:
        return
    waiter = session.get(User, waiter_id)
    if waiter is None or waiter.client_id != order.client_id:
        return
    waiter.total_orders += 1
    waiter.total_sales_cents += order.grand_total_cents
    session.add(waiter)


def _advance_items(session: Session, order: Order, new_status: OrderStatus) -> None:
    now = utc_now()
    if new_status == OrderStatus.cancelled:
        for item in _order_items(session, order.id):
            if item.status != OrderItemStatus.cancelled:
                item.status = OrderItemStatus.cancelled
                item.status_updated_at = now
                session.add(item)
        return

    target = _ORDER_TO_ITEM_STATUS.get(new_status)
    if target is None:
        return
    for item in _order_items(session, order.id):
        if item.status == OrderItemStatus.cancelled:
            continue
        if _ITEM_RANK[item.status] < _ITEM_RANK[target]:
            item.status = target
            item.status_updated_at = now
            session.add(item)


def _status_from_items(items: list[OrderItem]) -> OrderStatus | None:
    active = [i for i in items if i.status != OrderItemStatus.cancelled]
    if not active:
        return None
    if all(i.status == OrderItemStatus.served for i in active):
        return OrderStatus.served
    if all(_ITEM_RANK[i.status] >= _ITEM_RANK[OrderItemStatus.ready] for i in active):
        return OrderStatus.ready
    if any(i.status != OrderItemStatus.pending for i in active):
        return OrderStatus.preparing
    return OrderStatus.pending


def _publish(order: Order, event_type: str, table: Table | None = None) -> None:
    events.publish_event(
        order.client_id,
        {
            "type": event_type,
            "order_id": order.id,
            "table_code": table.table_code if table else None,
            "status": order.status.value,
            "version": order.version,
        },
        table_id=order.table_id,
    )


def _touch(order: Order) -> None:
    order.version += 1
    order.updated_at = utc_now()


# ============ OPERATIONS ============

def create_order(
    session: Session,
    client_id: int,
    table_id: int,
    items: list[OrderItemCreate],
    customer_name: str | None = None,
    session_id: str | None = None,
    actor_id: int | None = None,
) -> Order:
    if not table_id:
        raise OrderError("Table ID is required", "INVALID_INPUT")
    if not client_id:
        raise OrderError("Client ID is required", "INVALID_INPUT")
    if not items:
        raise OrderError("At least one item is required", "INVALID_INPUT")

    table = session.get(Table, table_id)
    if table is None or table.client_id != client_id:
        raise OrderError("Table not found or invalid", "TABLE_NOT_FOUND")
    if table.deleted_at is not None:
        raise OrderError("Table is no longer available", "TABLE_DELETED")

    order_items = _build_items(session, client_id, None, items)
    gst_rate, service_rate = _get_rates(session, client_id)
    subtotal = sum(i.price_cents * i.quantity for i in order_items)

    order = Order(
        client_id=client_id,
        table_id=table_id,
        status=OrderStatus.pending,
        version=1,
        customer_name=customer_name,
        session_id=session_id,
        applied_gst_rate=gst_rate,
        applied_service_rate=service_rate,
    )
    _apply_totals(order, calculate_totals(subtotal, gst_rate, service_rate))
    session.add(order)
    session.flush()

    for item in order_items:
        item.order_id = order.id
        session.add(item)

    table.status = TableStatus.active
    session.add(table)

    log_audit(
        session,
        client_id,
        AuditAction.order_created,
        actor_id=actor_id,
        order_id=order.id,
        details={"table_id": table_id, "item_count": len(order_items), "grand_total_cents": order.grand_total_cents},
    )
    session.commit()
    session.refresh(order)
    logger.info(f"Order {order.id} created for client {client_id} table {table.table_code}")

    _publish(order, "order_created", table)
    return order


def update_order_status(
    session: Session,
    order_id: int,
    new_status: OrderStatus,
    expected_version: int,
    client_id: int,
    actor_id: int | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    overrides: OrderTotalsOverride | None = None,
) -> Order:
    order = _load_order(session, order_id, client_id, for_update=True)
    if order.version != expected_version:
        raise OrderError("Order modified by another user", "VERSION_CONFLICT")
    if not can_transition(order.status, new_status):
        raise OrderError(
            f"Cannot move order from {order.status.value} to {new_status.value}",
            "INVALID_TRANSITION",
        )
    if overrides is not None:
        _validate_overrides(overrides)

    old_status = order.status
    order.status = new_status
    _touch(order)
    if new_status == OrderStatus.closed:
        order.closed_at = utc_now()
    if customer_name:
        order.customer_name = customer_name
    if customer_phone:
        order.customer_phone = customer_phone

    if overrides is not None:
        logger.info(f"Order {order_id} totals override: {overrides.model_dump(exclude_none=True)}")
        if overrides.discount_cents is not None:
            order.discount_cents = min(overrides.discount_cents, order.subtotal_cents)
        if overrides.applied_gst_rate is not None:
            order.applied_gst_rate = overrides.applied_gst_rate
        if overrides.applied_service_rate is not None:
            order.applied_service_rate = overrides.applied_service_rate
        totals = calculate_totals(
            order.subtotal_cents, order.applied_gst_rate, order.applied_service_rate, order.discount_cents
        )
        if overrides.gst_cents is not None:
            totals["gst_cents"] = overrides.gst_cents
        if overrides.service_charge_cents is not None:
            totals["service_charge_cents"] = overrides.service_charge_cents
        totals["grand_total_cents"] = (
            max(order.subtotal_cents - order.discount_cents, 0)
            + totals["gst_cents"]
            + totals["service_charge_cents"]
        )
        _apply_totals(order, totals)

    _advance_items(session, order, new_status)
    waiter_id = _sync_table(session, order, new_status)
    if new_status == OrderStatus.closed:
        _credit_waiter(session, order, waiter_id or actor_id)

    log_audit(
        session,
        client_id,
        AuditAction.status_changed,
        actor_id=actor_id,
        order_id=order.id,
        details={"old_status": old_status.value, "new_status": new_status.value},
    )
    session.add(order)
    session.commit()
    session.refresh(order)
    logger.info(f"Order {order_id} {old_status.value} -> {new_status.value} (v{order.version})")

    _publish(order, "status_update", session.get(Table, order.table_id))
    return order


def add_items_to_order(
    session: Session,
    order_id: int,
    items: list[OrderItemCreate],
    client_id: int,
    actor_id: int | None = None,
) -> Order:
    if not items:
        raise OrderError("No items", "INVALID_INPUT")

    order = _load_order(session, order_id, client_id, for_update=True)
    if order.status in SETTLED_STATUSES:
        raise OrderError("Order closed", "ORDER_CLOSED")

    for item in _build_items(session, client_id, order.id, items):
        session.add(item)
    session.flush()

    _recalculate_order(session, order)
    _touch(order)
    session.add(order)

    log_audit(
        session,
        client_id,
        AuditAction.items_added,
        actor_id=actor_id,
        order_id=order.id,
        details={"count": len(items)},
    )
    session.commit()
    session.refresh(order)

    _publish(order, "items_added", session.get(Table, order.table_id))
    return order


def cancel_order(
    session: Session,
    order_id: int,
    client_id: int,
    actor_id: int | None = None,
    reason: str | None = None,
) -> Order:
    order = _load_order(session, order_id, client_id, for_update=True)
    if order.status != OrderStatus.pending:
        raise OrderError("Order is already being prepared or served", "INVALID_TRANSITION")

    old_status = order.status
    order.status = OrderStatus.cancelled
    _touch(order)
    _advance_items(session, order, OrderStatus.cancelled)
    _sync_table(session, order, OrderStatus.cancelled)

    log_audit(
        session,
        client_id,
        AuditAction.order_cancelled,
        actor_id=actor_id,
        order_id=order.id,
        details={"old_status": old_status.value, "reason": reason or "Cancellation requested"},
    )
    session.add(order)
    session.commit()
    session.refresh(order)

    _publish(order, "order_cancelled")
    return order


def cancel_order_item(
    session: Session,
    order_id: int,
    item_id: int,
    client_id: int,
    actor_id: int | None = None,
) -> Order:
    order = _load_order(session, order_id, client_id, for_update=True)
    if order.status in SETTLED_STATUSES:
        raise OrderError("Order already settled", "ORDER_CLOSED")

    item = session.exec(
        select(OrderItem).where(OrderItem.id == item_id, OrderItem.order_id == order.id)
    ).first()
    if item is None:
        raise OrderError("Item not found", "ORDER_ITEM_NOT_FOUND")
    if item.status != OrderItemStatus.pending:
        raise OrderError("Kitchen has already started preparing this dish", "INVALID_TRANSITION")

    item.status = OrderItemStatus.cancelled
    item.status_updated_at = utc_now()
    session.add(item)
    session.flush()

    remaining = [i for i in _order_items(session, order.id) if i.status != OrderItemStatus.cancelled]
    if not remaining:
        order.status = OrderStatus.cancelled
        _sync_table(session, order, OrderStatus.cancelled)
    _recalculate_order(session, order)
    _touch(order)

    log_audit(
        session,
        client_id,
        AuditAction.item_cancelled,
        actor_id=actor_id,
        order_id=order.id,
        details={"item_id": item.id, "item_name": item.item_name, "order_cancelled": not remaining},
    )
    session.add(order)
    session.commit()
    session.refresh(order)

    _publish(order, "item_cancelled")
    return order


def update_item_status(
    session: Session,
    order_id: int,
    item_id: int,
    new_status: OrderItemStatus,
    client_id: int,
    actor_id: int | None = None,
) -> Order:
    if new_status == OrderItemStatus.cancelled:
        return cancel_order_item(session, order_id, item_id, client_id, actor_id)

    order = _load_order(session, order_id, client_id, for_update=True)
    if order.status in SETTLED_STATUSES:
        raise OrderError("Order already settled", "ORDER_CLOSED")

    item = session.exec(
        select(OrderItem).where(OrderItem.id == item_id, OrderItem.order_id == order.id)
    ).first()
    if item is None:
        raise OrderError("Item not found", "ORDER_ITEM_NOT_FOUND")
    if not can_transition_item(item.status, new_status):
        raise OrderError(
            f"Cannot move item from {item.status.value} to {new_status.value}",
            "INVALID_TRANSITION",
        )

    old_item_status = item.status
    item.status = new_status
    item.status_updated_at = utc_now()
    session.add(item)
    session.flush()

    # Kitchen progress only moves the order forward, never past served
    derived = _status_from_items(_order_items(session, order.id))
    if (
        derived is not None
        and order.status in _ORDER_RANK
        and _ORDER_RANK[derived] > _ORDER_RANK[order.status]
    ):
        order.status = derived
        _sync_table(session, order, derived)
    _touch(order)

    log_audit(
        session,
        client_id,
        AuditAction.item_status_changed,
        actor_id=actor_id,
        order_id=order.id,
        details={
            "item_id": item.id,
            "old_status": old_item_status.value,
            "new_status": new_status.value,
            "order_status": order.status.value,
        },
    )
    session.add(order)
    session.commit()
    session.refresh(order)

    _publish(order, "item_status_update", session.get(Table, order.table_id))
    return order


def record_payment(
    session: Session,
    order_id: int,
    client_id: int,
    method: PaymentMethod,
    amount_cents: int,
    actor_id: int | None = None,
) -> tuple[Order, Payment]:
    order = _load_order(session, order_id, client_id, for_update=True)

    existing = session.exec(select(Payment).where(Payment.order_id == order.id)).first()
    if existing is not None:
        raise OrderError("Order already paid", "ALREADY_PAID")
    if order.status not in (OrderStatus.served, OrderStatus.bill_requested):
        raise OrderError(
            f"Order must be served before payment. Current status: {order.status.value}",
            "INVALID_TRANSITION",
        )
    if amount_cents < order.grand_total_cents:
        raise OrderError(
            f"Amount {amount_cents} is less than order total {order.grand_total_cents}",
            "INSUFFICIENT_AMOUNT",
        )

    payment = Payment(
        client_id=client_id,
        order_id=order.id,
        method=method,
        amount_cents=amount_cents,
        actor_id=actor_id,
    )
    session.add(payment)

    old_status = order.status
    order.status = OrderStatus.closed
    order.closed_at = utc_now()
    _touch(order)
    _advance_items(session, order, OrderStatus.closed)
    waiter_id = _sync_table(session, order, OrderStatus.closed)
    _credit_waiter(session, order, waiter_id or actor_id)

    log_audit(
        session,
        client_id,
        AuditAction.payment_authorized,
        actor_id=actor_id,
        order_id=order.id,
        details={"method": method.value, "amount_cents": amount_cents},
    )
    log_audit(
        session,
        client_id,
        AuditAction.order_closed,
        actor_id=actor_id,
        order_id=order.id,
        details={"old_status": old_status.value, "grand_total_cents": order.grand_total_cents},
    )
    session.add(order)
    session.commit()
    session.refresh(order)
    session.refresh(payment)
    logger.info(f"Order {order_id} paid by {method.value}: {amount_cents} cents")

    _publish(order, "order_paid", session.get(Table, order.table_id))
    return order, payment
