from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ClientPlan(str, Enum):
    basic = "basic"
    advance = "advance"
    premium = "premium"
    business = "business"


class ClientStatus(str, Enum):
    trial = "trial"
    active = "active"
    suspended = "suspended"
    archived = "archived"


class UserRole(str, Enum):
    admin = "admin"
    manager = "manager"
    cashier = "cashier"
    waiter = "waiter"
    kitchen = "kitchen"


class TableStatus(str, Enum):
    vacant = "vacant"
    active = "active"
    ready = "ready"
    waiting_for_payment = "waiting_for_payment"
    dirty = "dirty"


class OrderStatus(str, Enum):
    pending = "pending"
    preparing = "preparing"
    ready = "ready"
    served = "served"
    bill_requested = "bill_requested"
    closed = "closed"
    cancelled = "cancelled"


class OrderItemStatus(str, Enum):
    pending = "pending"
    preparing = "preparing"
    ready = "ready"
    served = "served"
    cancelled = "cancelled"


class PaymentMethod(str, Enum):
    cash = "cash"
    card = "card"
    upi = "upi"


class ComplaintType(str, Enum):
    not_received = "not_received"
    wrong_item = "wrong_item"
    quality_issue = "quality_issue"
    delay = "delay"
    missing_item = "missing_item"
    rude_service = "rude_service"
    other = "other"


class ComplaintStatus(str, Enum):
    submitted = "submitted"
    acknowledged = "acknowledged"
    in_progress = "in_progress"
    resolved = "resolved"
    dismissed = "dismissed"


class AuditAction(str, Enum):
    order_created = "order_created"
    status_changed = "status_changed"
    items_added = "items_added"
    item_status_changed = "item_status_changed"
    item_cancelled = "item_cancelled"
    order_cancelled = "order_cancelled"
    payment_authorized = "payment_authorized"
    order_closed = "order_closed"
    client_created = "client_created"
    plan_changed = "plan_changed"
    setting_changed = "setting_changed"
    access_code_changed = "access_code_changed"
    login_success = "login_success"
    feedback_submitted = "feedback_submitted"
    feedback_replied = "feedback_replied"
    complaint_raised = "complaint_raised"
    complaint_acknowledged = "complaint_acknowledged"
    complaint_resolved = "complaint_resolved"
    table_claimed = "table_claimed"
    staff_created = "staff_created"
    staff_updated = "staff_updated"
    staff_deactivated = "staff_deactivated"


# ============ TENANTS & STAFF ============

class Client(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    domain: str | None = Field(default=None, index=True)
    plan: ClientPlan = Field(default=ClientPlan.basic)
    status: ClientStatus = Field(default=ClientStatus.trial, index=True)
    access_code: str | None = Field(default=None, unique=True, index=True)
    access_code_updated_at: datetime | None = None
    owner_email: str | None = None
    stripe_customer_id: str | None = None
    logo_filename: str | None = None  # Stored in uploads/{client_id}/logo/
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = None

    users: list["User"] = Relationship(back_populates="client")


class ClientMixin(SQLModel):
    client_id: int = Field(foreign_key="client.id", index=True)


class User(ClientMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True)
    name: str
    password_hash: str
    role: UserRole = Field(default=UserRole.waiter)
    is_active: bool = Field(default=True)
    # Waiter performance
    total_orders: int = Field(default=0)
    total_sales_cents: int = Field(default=0)
    last_login: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    client: Client | None = Relationship(back_populates="users")


class SuperAdmin(SQLModel, table=True):
    """Platform operator for the HQ console (not a tenant user)."""
    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    name: str | None = None
    password_hash: str
    is_active: bool = Field(default=True)
    last_login: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


class RestaurantSettings(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", unique=True, index=True)
    business_name: str | None = None
    gst_rate: float = Field(default=5.0)  # percent
    service_charge_rate: float = Field(default=5.0)  # percent
    currency: str = Field(default="INR")
    updated_at: datetime = Field(default_factory=utc_now)


# ============ FLOOR & MENU ============

class Table(ClientMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    table_code: str = Field(index=True)  # e.g. "T5"
    token: str = Field(default_factory=lambda: str(uuid4()), unique=True, index=True)
    capacity: int = Field(default=4)
    status: TableStatus = Field(default=TableStatus.vacant)
    assigned_waiter_id: int | None = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = None


class MenuItem(ClientMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str
    description: str | None = None
    price_cents: int
    category: str | None = Field(default=None, index=True)
    is_available: bool = Field(default=True)
    # [{"name": "Large", "price_cents": 45000}, ...]
    variants: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    modifiers: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = None


# ============ ORDERS ============

class Order(ClientMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    table_id: int = Field(foreign_key="table.id", index=True)
    status: OrderStatus = Field(default=OrderStatus.pending, index=True)
    version: int = Field(default=1)
    customer_name: str | None = None
    customer_phone: str | None = None
    session_id: str | None = Field(default=None, index=True)

    subtotal_cents: int = Field(default=0)
    discount_cents: int = Field(default=0)
    gst_cents: int = Field(default=0)
    service_charge_cents: int = Field(default=0)
    grand_total_cents: int = Field(default=0)
    applied_gst_rate: float = Field(default=5.0)
    applied_service_rate: float = Field(default=5.0)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    closed_at: datetime | None = None

    items: list["OrderItem"] = Relationship(back_populates="order")


class OrderItem(ClientMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    menu_item_id: int = Field(foreign_key="menuitem.id")
    item_name: str  # Snapshot of menu item name at order time
    price_cents: int  # Snapshot of unit price incl. variant and modifiers
    quantity: int
    status: OrderItemStatus = Field(default=OrderItemStatus.pending, index=True)
    notes: str | None = None
    selected_variant: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    selected_modifiers: list[dict[str, Any]] | None = Field(default=None, sa_column=Column(JSON))
    status_updated_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    order: Order = Relationship(back_populates="items")


class Payment(ClientMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", unique=True)
    method: PaymentMethod
    amount_cents: int
    status: str = Field(default="completed")
    actor_id: int | None = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=utc_now)


class AuditLog(ClientMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    action: AuditAction = Field(index=True)
    actor_id: int | None = None
    order_id: int | None = Field(default=None, index=True)
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)


class CustomerFeedback(ClientMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", unique=True)
    rating: int
    comment: str | None = None
    guest_name: str | None = None
    table_code: str | None = None
    staff_reply: str | None = None
    replied_at: datetime | None = None
    replied_by_id: int | None = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=utc_now)


class CustomerComplaint(ClientMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    type: ComplaintType
    status: ComplaintStatus = Field(default=ComplaintStatus.submitted, index=True)
    description: str | None = None
    guest_name: str | None = None
    table_code: str | None = None
    resolved_note: str | None = None
    resolved_by_id: int | None = Field(default=None, foreign_key="user.id")
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


# Request/Response Models
class OrderItemCreate(SQLModel):
    menu_item_id: int
    quantity: int
    selected_variant: str | None = None  # Variant name from MenuItem.variants
    selected_modifiers: list[str] = []  # Modifier names from MenuItem.modifiers
    notes: str | None = None


class OrderCreate(SQLModel):
    table_id: int
    items: list[OrderItemCreate]
    customer_name: str | None = None
    session_id: str | None = None


class OrderItemsAdd(SQLModel):
    items: list[OrderItemCreate]


class OrderTotalsOverride(SQLModel):
    discount_cents: int | None = None
    gst_cents: int | None = None
    service_charge_cents: int | None = None
    applied_gst_rate: float | None = None
    applied_service_rate: float | None = None


class OrderStatusUpdate(SQLModel):
    status: OrderStatus
    version: int
    customer_name: str | None = None
    customer_phone: str | None = None
    overrides: OrderTotalsOverride | None = None


class OrderItemStatusUpdate(SQLModel):
    status: OrderItemStatus


class PaymentCreate(SQLModel):
    method: PaymentMethod
    amount_cents: int


class TableCreate(SQLModel):
    table_code: str
    capacity: int = 4


class TableUpdate(SQLModel):
    table_code: str | None = None
    capacity: int | None = None
    status: TableStatus | None = None
    assigned_waiter_id: int | None = None


class MenuItemCreate(SQLModel):
    name: str
    price_cents: int
    description: str | None = None
    category: str | None = None
    is_available: bool = True
    variants: list[dict[str, Any]] = []
    modifiers: list[dict[str, Any]] = []


class MenuItemUpdate(SQLModel):
    name: str | None = None
    price_cents: int | None = None
    description: str | None = None
    category: str | None = None
    is_available: bool | None = None
    variants: list[dict[str, Any]] | None = None
    modifiers: list[dict[str, Any]] | None = None


class SettingsUpdate(SQLModel):
    business_name: str | None = None
    gst_rate: float | None = None
    service_charge_rate: float | None = None
    currency: str | None = None


class AccessCodeLogin(SQLModel):
    code: str


class AccessCodeUpdate(SQLModel):
    code: str | None = None  # Omit to auto-generate


class FeedbackCreate(SQLModel):
    order_id: int
    rating: int
    comment: str | None = None
    guest_name: str | None = None
    table_code: str | None = None


class FeedbackReply(SQLModel):
    feedback_id: int
    reply: str


class ComplaintCreate(SQLModel):
    order_id: int
    type: str
    description: str | None = None
    guest_name: str | None = None
    table_code: str | None = None


class ComplaintUpdate(SQLModel):
    complaint_id: int
    status: str
    resolved_note: str | None = None


class TableClaim(SQLModel):
    table_code: str
    session_id: str | None = None
    customer_name: str | None = None
    party_size: int | None = None


class StaffCreate(SQLModel):
    name: str
    username: str
    password: str
    role: UserRole


class StaffUpdate(SQLModel):
    name: str | None = None
    role: UserRole | None = None
    password: str | None = None
    is_active: bool | None = None
