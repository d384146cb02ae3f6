"""
Control plane models

Plans, subscriptions and the per-tenant entitlement snapshot used by the
HQ console, the billing webhook and the entitlement service.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from .models import ClientPlan, ClientStatus, utc_now


class SubscriptionStatus(str, Enum):
    active = "active"
    trialing = "trialing"
    past_due = "past_due"
    canceled = "canceled"
    inactive = "inactive"


class BillingCycle(str, Enum):
    monthly = "monthly"
    yearly = "yearly"


class Plan(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    code: ClientPlan = Field(unique=True, index=True)
    description: str | None = None
    price_cents: int = Field(default=0)  # Monthly price
    features: dict[str, bool] = Field(default_factory=dict, sa_column=Column(JSON))
    limits: dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))  # 0 = unlimited
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Subscription(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", unique=True, index=True)
    plan_id: int = Field(foreign_key="plan.id")
    status: SubscriptionStatus = Field(default=SubscriptionStatus.trialing)
    billing_cycle: BillingCycle = Field(default=BillingCycle.monthly)
    version: int = Field(default=1)
    start_date: datetime = Field(default_factory=utc_now)
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    grace_until: datetime | None = None
    stripe_subscription_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SubscriptionAudit(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    subscription_id: int = Field(foreign_key="subscription.id", index=True)
    previous_plan_id: int | None = None
    new_plan_id: int | None = None
    previous_status: SubscriptionStatus | None = None
    new_status: SubscriptionStatus | None = None
    reason: str  # subscription_created, plan_change, status_update, stripe_checkout
    changed_by: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)


class SaaSPayment(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    stripe_session_id: str = Field(unique=True, index=True)
    stripe_payment_intent_id: str | None = None
    amount_cents: int = Field(default=0)
    currency: str = Field(default="inr")
    status: str = Field(default="succeeded")
    plan_code: ClientPlan
    billing_cycle: BillingCycle = Field(default=BillingCycle.monthly)
    paid_at: datetime = Field(default_factory=utc_now)


class EntitlementSnapshot(SQLModel, table=True):
    """Last known entitlements of a tenant, served when the authority is unreachable."""
    id: int | None = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", unique=True, index=True)
    plan_name: str
    subscription_status: SubscriptionStatus
    features: dict[str, bool] = Field(default_factory=dict, sa_column=Column(JSON))
    limits: dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    version: int = Field(default=1)
    grace_until: datetime | None = None
    synced_at: datetime = Field(default_factory=utc_now)


# Request Models
class HQLogin(SQLModel):
    email: str
    password: str


class ClientCreate(SQLModel):
    name: str
    slug: str
    plan: ClientPlan
    admin_username: str
    admin_name: str
    admin_password: str
    domain: str | None = None
    owner_email: str | None = None


class ClientUpdate(SQLModel):
    name: str | None = None
    plan: ClientPlan | None = None
    status: ClientStatus | None = None
    domain: str | None = None
    action: str | None = None  # suspend | activate | archive | restore
    reason: str | None = None


class ClientDelete(SQLModel):
    confirm_delete: bool = Field(default=False, alias="confirmDelete")


class SubscriptionAssign(SQLModel):
    client_id: int
    plan_id: int
    status: SubscriptionStatus | None = None
    billing_cycle: BillingCycle | None = None


class PlanCreate(SQLModel):
    name: str
    code: ClientPlan
    description: str | None = None
    price_cents: int = 0
    features: dict[str, bool] = {}
    limits: dict[str, int] = {}


class PlanUpdate(SQLModel):
    name: str | None = None
    description: str | None = None
    price_cents: int | None = None
    features: dict[str, bool] | None = None
    limits: dict[str, int] | None = None
    is_active: bool | None = None


class CheckoutRequest(SQLModel):
    plan_code: ClientPlan
    billing_cycle: BillingCycle = BillingCycle.monthly
