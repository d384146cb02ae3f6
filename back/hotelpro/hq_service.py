"""
HQ Service

Super-admin operations on tenants:
- Client onboarding (client, admin user, settings, subscription)
- Plan/status updates and lifecycle actions (suspend, activate, archive, restore)
- Subscription assignment with audit trail and entitlement sync
- Plan catalogue and platform statistics
"""

import logging
import re
from datetime import timedelta

from sqlmodel import Session, func, select

from . import models
from .audit import log_audit
from .billing_models import (
    BillingCycle,
    ClientCreate,
    ClientUpdate,
    Plan,
    PlanCreate,
    PlanUpdate,
    Subscription,
    SubscriptionAudit,
    SubscriptionStatus,
)
from .entitlements import DEFAULT_PLANS, FEATURE_KEYS, LIMIT_KEYS, sync_entitlements_to_tenant
from .models import Client, ClientStatus, User, UserRole, as_utc, utc_now
from .security import get_password_hash

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
MIN_SLUG_LENGTH = 3
MAX_SLUG_LENGTH = 30
MIN_PASSWORD_LENGTH = 8
TRIAL_DAYS = 14
BILLING_PERIOD_DAYS = 30


class ClientActionError(Exception):
    def __init__(self, message: str, code: str, status_code: int = 400):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)


# ============ HELPERS ============

def is_valid_slug(slug: str) -> bool:
    return bool(SLUG_PATTERN.match(slug)) and MIN_SLUG_LENGTH <= len(slug) <= MAX_SLUG_LENGTH


def generate_slug_from_name(name: str) -> str:
    slug = name.lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug[:MAX_SLUG_LENGTH].strip("-")


def _get_client(session: Session, client_id: int) -> Client:
    client = session.get(Client, client_id)
    if client is None:
        raise ClientActionError("Client not found", "CLIENT_NOT_FOUND", status_code=404)
    return client


def _count(session: Session, model, client_id: int) -> int:
    return session.exec(
        select(func.count()).select_from(model).where(model.client_id == client_id)
    ).one()


def _subscription_summary(session: Session, client: Client) -> dict:
    subscription = session.exec(
        select(Subscription).where(Subscription.client_id == client.id)
    ).first()
    now = utc_now()
    if subscription is None:
        # Clients onboarded before subscriptions existed
        return {
            "plan_start_date": as_utc(client.created_at).isoformat(),
            "plan_end_date": (now + timedelta(days=BILLING_PERIOD_DAYS)).isoformat(),
            "trial_ends_at": (now + timedelta(days=TRIAL_DAYS)).isoformat(),
            "is_trial_active": False,
            "status": None,
            "billing_cycle": BillingCycle.monthly.value,
            "monthly_price_cents": DEFAULT_PLANS[client.plan]["price_cents"],
        }

    plan = session.get(Plan, subscription.plan_id)
    trial_ends_at = as_utc(subscription.trial_ends_at) or (
        as_utc(subscription.created_at) + timedelta(days=TRIAL_DAYS)
    )
    period_end = as_utc(subscription.current_period_end)
    return {
        "plan_start_date": as_utc(subscription.start_date).isoformat(),
        "plan_end_date": period_end.isoformat() if period_end else None,
        "trial_ends_at": trial_ends_at.isoformat(),
        "is_trial_active": subscription.status == SubscriptionStatus.trialing and trial_ends_at > now,
        "status": subscription.status.value,
        "billing_cycle": subscription.billing_cycle.value,
        "monthly_price_cents": plan.price_cents if plan else DEFAULT_PLANS[client.plan]["price_cents"],
    }


def client_to_dict(session: Session, client: Client) -> dict:
    return {
        "id": client.id,
        "name": client.name,
        "slug": client.slug,
        "domain": client.domain,
        "plan": client.plan.value,
        "status": client.status.value,
        "owner_email": client.owner_email,
        "has_access_code": client.access_code is not None,
        "created_at": as_utc(client.created_at).isoformat(),
        "deleted_at": as_utc(client.deleted_at).isoformat() if client.deleted_at else None,
        "counts": {
            "users": _count(session, models.User, client.id),
            "orders": _count(session, models.Order, client.id),
            "tables": _count(session, models.Table, client.id),
            "menu_items": _count(session, models.MenuItem, client.id),
        },
        "subscription": _subscription_summary(session, client),
    }


# ============ CLIENTS ============

def get_clients_with_stats(session: Session, include_archived: bool = True) -> list[dict]:
    statement = select(Client).order_by(Client.created_at.desc(), Client.id.desc())
    if not include_archived:
        statement = statement.where(Client.status != ClientStatus.archived)
    return [client_to_dict(session, client) for client in session.exec(statement).all()]


def get_client_by_id(session: Session, client_id: int) -> dict:
    return client_to_dict(session, _get_client(session, client_id))


def create_new_client(session: Session, data: ClientCreate) -> Client:
    slug = data.slug.lower().strip()
    username = data.admin_username.lower().strip()

    if not data.name.strip():
        raise ClientActionError("Name is required", "INVALID_INPUT")
    if not is_valid_slug(slug):
        raise ClientActionError(
            "Slug must be 3-30 lowercase letters, numbers or hyphens", "INVALID_INPUT"
        )
    if not username or not data.admin_name.strip():
        raise ClientActionError("Admin username and name are required", "INVALID_INPUT")
    if len(data.admin_password) < MIN_PASSWORD_LENGTH:
        raise ClientActionError("Admin password must be at least 8 characters", "INVALID_INPUT")

    if session.exec(select(Client).where(Client.slug == slug)).first():
        raise ClientActionError(
            "This slug is already taken. Choose a different one.", "SLUG_TAKEN", status_code=409
        )
    if session.exec(select(User).where(User.username == username)).first():
        raise ClientActionError(
            "This admin username is already taken.", "USERNAME_TAKEN", status_code=409
        )

    client = Client(
        name=data.name.strip(),
        slug=slug,
        domain=data.domain.strip() if data.domain else None,
        plan=data.plan,
        status=ClientStatus.trial,
        owner_email=data.owner_email,
    )
    session.add(client)
    session.flush()

    session.add(
        User(
            client_id=client.id,
            username=username,
            name=data.admin_name.strip(),
            password_hash=get_password_hash(data.admin_password),
            role=UserRole.admin,
        )
    )
    session.add(models.RestaurantSettings(client_id=client.id, business_name=client.name))

    plan = session.exec(select(Plan).where(Plan.code == data.plan)).first()
    if plan is not None:
        now = utc_now()
        subscription = Subscription(
            client_id=client.id,
            plan_id=plan.id,
            status=SubscriptionStatus.trialing,
            trial_ends_at=now + timedelta(days=TRIAL_DAYS),
            current_period_end=now + timedelta(days=BILLING_PERIOD_DAYS),
        )
        session.add(subscription)
        session.flush()
        session.add(
            SubscriptionAudit(
                subscription_id=subscription.id,
                new_plan_id=plan.id,
                new_status=subscription.status,
                reason="subscription_created",
                changed_by="onboarding",
            )
        )
    else:
        logger.warning(f"No plan row for {data.plan.value}; client {slug} runs on default entitlements")

    log_audit(
        session,
        client.id,
        models.AuditAction.client_created,
        details={"name": client.name, "slug": slug, "plan": data.plan.value, "admin_username": username},
    )
    session.commit()
    session.refresh(client)
    sync_entitlements_to_tenant(session, client.id)
    logger.info(f"Client {client.slug} ({client.id}) onboarded on {data.plan.value}")
    return client


def _status_action(current: ClientStatus, new: ClientStatus) -> str | None:
    """Lifecycle action a status edit maps to; None for a plain field change."""
    if new == ClientStatus.archived:
        return "archive"
    if current == ClientStatus.archived:
        if new != ClientStatus.active:
            raise ClientActionError("Archived clients must be restored first", "INVALID_STATE")
        return "restore"
    if new == ClientStatus.suspended:
        return "suspend"
    if new == ClientStatus.active:
        return "activate"
    return None


def update_client(session: Session, client_id: int, data: ClientUpdate) -> Client:
    client = _get_client(session, client_id)
    changes: dict[str, dict] = {}

    status_action = None
    if data.plan is not None and data.plan != client.plan:
        changes["plan"] = {"from": client.plan.value, "to": data.plan.value}
    if data.status is not None and data.status != client.status:
        changes["status"] = {"from": client.status.value, "to": data.status.value}
        status_action = _status_action(client.status, data.status)

    if data.name is not None:
        if not data.name.strip():
            raise ClientActionError("Name is required", "INVALID_INPUT")
        client.name = data.name.strip()
    if data.domain is not None:
        client.domain = data.domain.strip() or None
    if "status" in changes and status_action is None:
        client.status = data.status

    if "plan" in changes:
        client.plan = data.plan
        plan = session.exec(select(Plan).where(Plan.code == data.plan)).first()
        subscription = session.exec(
            select(Subscription).where(Subscription.client_id == client_id)
        ).first()
        if plan is not None and subscription is not None and subscription.plan_id != plan.id:
            session.add(
                SubscriptionAudit(
                    subscription_id=subscription.id,
                    previous_plan_id=subscription.plan_id,
                    new_plan_id=plan.id,
                    previous_status=subscription.status,
                    new_status=subscription.status,
                    reason="plan_change",
                    changed_by="hq",
                )
            )
            subscription.plan_id = plan.id
            subscription.version += 1
            subscription.updated_at = utc_now()
            session.add(subscription)
        log_audit(session, client_id, models.AuditAction.plan_changed, details=changes["plan"])

    if "status" in changes and status_action is None:
        log_audit(
            session,
            client_id,
            models.AuditAction.setting_changed,
            details={"type": "status_change", **changes["status"]},
        )

    client.updated_at = utc_now()
    session.add(client)
    session.commit()
    session.refresh(client)
    if status_action is not None:
        return CLIENT_ACTIONS[status_action](session, client_id)
    if changes:
        sync_entitlements_to_tenant(session, client_id)
    return client


def _set_status(
    session: Session,
    client_id: int,
    new_status: ClientStatus,
    event: str,
    reason: str | None = None,
) -> Client:
    client = _get_client(session, client_id)
    client.status = new_status
    client.updated_at = utc_now()
    if new_status == ClientStatus.archived:
        client.deleted_at = utc_now()
    elif event == "client_restored":
        client.deleted_at = None

    if event in ("client_archived", "client_restored"):
        for user in session.exec(select(User).where(User.client_id == client_id)).all():
            user.is_active = new_status != ClientStatus.archived
            session.add(user)

    session.add(client)
    details = {"type": event}
    if reason:
        details["reason"] = reason
    log_audit(session, client_id, models.AuditAction.setting_changed, details=details)
    session.commit()
    session.refresh(client)
    sync_entitlements_to_tenant(session, client_id)
    logger.info(f"Client {client_id} -> {new_status.value} ({event})")
    return client


def suspend_client(session: Session, client_id: int, reason: str | None = None) -> Client:
    return _set_status(session, client_id, ClientStatus.suspended, "client_suspended", reason)


def activate_client(session: Session, client_id: int) -> Client:
    if _get_client(session, client_id).status == ClientStatus.archived:
        raise ClientActionError("Archived clients must be restored first", "INVALID_STATE")
    return _set_status(session, client_id, ClientStatus.active, "client_activated")


def archive_client(session: Session, client_id: int) -> Client:
    """Soft delete: the tenant stops resolving and its staff are deactivated."""
    return _set_status(session, client_id, ClientStatus.archived, "client_archived")


def restore_client(session: Session, client_id: int) -> Client:
    client = _get_client(session, client_id)
    if client.status != ClientStatus.archived:
        raise ClientActionError("Only archived clients can be restored", "INVALID_STATE")
    return _set_status(session, client_id, ClientStatus.active, "client_restored")


CLIENT_ACTIONS = {
    "suspend": suspend_client,
    "activate": activate_client,
    "archive": archive_client,
    "restore": restore_client,
}


# ============ SUBSCRIPTIONS ============

def assign_subscription(
    session: Session,
    client_id: int,
    plan_id: int,
    status: SubscriptionStatus | None = None,
    billing_cycle: BillingCycle | None = None,
    actor_email: str | None = None,
) -> tuple[Subscription, bool]:
    """Create or update a client's subscription. Returns (subscription, created)."""
    client = _get_client(session, client_id)
    plan = session.get(Plan, plan_id)
    if plan is None:
        raise ClientActionError("Plan not found", "PLAN_NOT_FOUND", status_code=404)

    subscription = session.exec(
        select(Subscription).where(Subscription.client_id == client_id)
    ).first()
    created = subscription is None

    if created:
        now = utc_now()
        subscription = Subscription(
            client_id=client_id,
            plan_id=plan.id,
            status=status or SubscriptionStatus.trialing,
            billing_cycle=billing_cycle or BillingCycle.monthly,
            version=1,
            trial_ends_at=now + timedelta(days=TRIAL_DAYS),
            current_period_end=now + timedelta(days=BILLING_PERIOD_DAYS),
        )
        session.add(subscription)
        session.flush()
        audit = SubscriptionAudit(
            subscription_id=subscription.id,
            new_plan_id=plan.id,
            new_status=subscription.status,
            reason="subscription_created",
            changed_by=actor_email,
        )
    else:
        previous_plan_id = subscription.plan_id
        previous_status = subscription.status
        subscription.plan_id = plan.id
        if status is not None:
            subscription.status = status
        if billing_cycle is not None:
            subscription.billing_cycle = billing_cycle
        subscription.version += 1
        subscription.updated_at = utc_now()
        session.add(subscription)
        audit = SubscriptionAudit(
            subscription_id=subscription.id,
            previous_plan_id=previous_plan_id,
            new_plan_id=plan.id,
            previous_status=previous_status,
            new_status=subscription.status,
            reason="plan_change" if previous_plan_id != plan.id else "status_update",
            changed_by=actor_email,
        )
    session.add(audit)

    # Legacy plan field on the client follows the subscription
    client.plan = plan.code
    client.updated_at = utc_now()
    session.add(client)
    session.commit()
    session.refresh(subscription)

    sync_entitlements_to_tenant(session, client_id)
    logger.info(
        f"{'Created' if created else 'Updated'} subscription for {client.name} -> {plan.name} by {actor_email}"
    )
    return subscription, created


def list_subscriptions(session: Session) -> list[dict]:
    rows = session.exec(
        select(Subscription, Client, Plan)
        .where(Subscription.client_id == Client.id, Subscription.plan_id == Plan.id)
        .order_by(Subscription.updated_at.desc())
    ).all()
    return [
        {
            "id": sub.id,
            "status": sub.status.value,
            "billing_cycle": sub.billing_cycle.value,
            "version": sub.version,
            "current_period_end": as_utc(sub.current_period_end).isoformat() if sub.current_period_end else None,
            "grace_until": as_utc(sub.grace_until).isoformat() if sub.grace_until else None,
            "client": {"id": client.id, "name": client.name, "slug": client.slug, "status": client.status.value},
            "plan": {"id": plan.id, "name": plan.name, "code": plan.code.value, "price_cents": plan.price_cents},
        }
        for sub, client, plan in rows
    ]


# ============ PLANS ============

def _validate_plan_maps(features: dict | None, limits: dict | None) -> None:
    if features:
        unknown = set(features) - set(FEATURE_KEYS)
        if unknown:
            raise ClientActionError(f"Unknown features: {sorted(unknown)}", "INVALID_INPUT")
    if limits:
        unknown = set(limits) - set(LIMIT_KEYS)
        if unknown:
            raise ClientActionError(f"Unknown limits: {sorted(unknown)}", "INVALID_INPUT")
        if any(value < 0 for value in limits.values()):
            raise ClientActionError("Limits must be 0 (unlimited) or positive", "INVALID_INPUT")


def plan_to_dict(plan: Plan, subscriptions: int = 0) -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "code": plan.code.value,
        "description": plan.description,
        "price_cents": plan.price_cents,
        "features": plan.features,
        "limits": plan.limits,
        "is_active": plan.is_active,
        "active_subscriptions": subscriptions,
    }


def list_plans(session: Session) -> list[dict]:
    plans = session.exec(select(Plan).order_by(Plan.price_cents, Plan.id)).all()
    counts = dict(
        session.exec(
            select(Subscription.plan_id, func.count(Subscription.id)).group_by(Subscription.plan_id)
        ).all()
    )
    return [plan_to_dict(plan, counts.get(plan.id, 0)) for plan in plans]


def create_plan(session: Session, data: PlanCreate) -> Plan:
    if not data.name.strip():
        raise ClientActionError("Plan name is required", "INVALID_INPUT")
    if data.price_cents < 0:
        raise ClientActionError("Price must not be negative", "INVALID_INPUT")
    _validate_plan_maps(data.features, data.limits)

    duplicate = session.exec(
        select(Plan).where((Plan.code == data.code) | (Plan.name == data.name.strip()))
    ).first()
    if duplicate:
        raise ClientActionError("A plan with this name or code already exists", "PLAN_EXISTS", status_code=409)

    plan = Plan(
        name=data.name.strip(),
        code=data.code,
        description=data.description,
        price_cents=data.price_cents,
        features={key: bool(data.features.get(key, False)) for key in FEATURE_KEYS},
        limits={key: int(data.limits.get(key, 0)) for key in LIMIT_KEYS},
    )
    session.add(plan)
    session.commit()
    session.refresh(plan)
    logger.info(f"Plan {plan.name} ({plan.code.value}) created")
    return plan


def update_plan(session: Session, plan_id: int, data: PlanUpdate) -> Plan:
    plan = session.get(Plan, plan_id)
    if plan is None:
        raise ClientActionError("Plan not found", "PLAN_NOT_FOUND", status_code=404)
    _validate_plan_maps(data.features, data.limits)

    if data.name is not None:
        plan.name = data.name.strip()
    if data.description is not None:
        plan.description = data.description
    if data.price_cents is not None:
        if data.price_cents < 0:
            raise ClientActionError("Price must not be negative", "INVALID_INPUT")
        plan.price_cents = data.price_cents
    if data.features is not None:
        plan.features = {**plan.features, **{k: bool(v) for k, v in data.features.items()}}
    if data.limits is not None:
        plan.limits = {**plan.limits, **{k: int(v) for k, v in data.limits.items()}}
    if data.is_active is not None:
        plan.is_active = data.is_active
    plan.updated_at = utc_now()
    session.add(plan)
    session.commit()
    session.refresh(plan)

    # Every subscriber's snapshot carries the plan's features
    client_ids = session.exec(select(Subscription.client_id).where(Subscription.plan_id == plan.id)).all()
    for client_id in client_ids:
        sync_entitlements_to_tenant(session, client_id)
    return plan


# ============ STATS ============

def get_platform_stats(session: Session) -> dict:
    by_status = dict(
        session.exec(select(Client.status, func.count(Client.id)).group_by(Client.status)).all()
    )

    mrr_cents = 0
    rows = session.exec(
        select(Subscription, Plan).where(
            Subscription.plan_id == Plan.id,
            Subscription.status == SubscriptionStatus.active,
        )
    ).all()
    for subscription, plan in rows:
        mrr_cents += plan.price_cents

    revenue_cents = session.exec(
        select(func.coalesce(func.sum(models.Order.grand_total_cents), 0)).where(
            models.Order.status == models.OrderStatus.closed
        )
    ).one()

    return {
        "total_clients": sum(by_status.values()),
        "clients_by_status": {status.value: by_status.get(status, 0) for status in ClientStatus},
        "active_subscriptions": len(rows),
        "mrr_cents": mrr_cents,
        "total_orders": session.exec(select(func.count(models.Order.id))).one(),
        "gross_order_volume_cents": revenue_cents,
        "generated_at": utc_now().isoformat(),
    }
