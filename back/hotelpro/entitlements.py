"""
Entitlement Service

Resolves a tenant's plan features and limits:
- Reads Subscription + Plan (the authority), falling back to the client's plan defaults
- Refreshes the per-tenant EntitlementSnapshot after every successful read
- Serves the snapshot when the authority is unreachable, subject to freshness rules
- Gate dependencies for features and resource limits
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated

from fastapi import Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, select

from .billing_models import EntitlementSnapshot, Plan, Subscription, SubscriptionStatus
from .db import get_session
from .models import Client, ClientPlan, ClientStatus, MenuItem, Table, as_utc, utc_now
from .security import TenantContext, get_current_tenant
from .settings import settings

logger = logging.getLogger(__name__)


FEATURE_KEYS = (
    "qr_menu",
    "basic_analytics",
    "ai_assistant",
    "inventory",
    "ai_analysis",
    "custom_branding",
    "isolated_database",
    "multi_property",
    "ai_automation",
    "dedicated_support",
)

LIMIT_KEYS = ("tables", "menu_items")


def _features(*enabled: str) -> dict[str, bool]:
    return {key: key in enabled for key in FEATURE_KEYS}


_BASIC = ("qr_menu", "basic_analytics")
_ADVANCE = _BASIC + ("ai_assistant", "inventory")
_PREMIUM = _ADVANCE + ("ai_analysis", "custom_branding", "isolated_database")

# Used when a client has no subscription row. A limit of 0 means unlimited.
DEFAULT_PLANS: dict[ClientPlan, dict] = {
    ClientPlan.basic: {
        "name": "Basic",
        "price_cents": 99900,
        "features": _features(*_BASIC),
        "limits": {"tables": 30, "menu_items": 300},
    },
    ClientPlan.advance: {
        "name": "Advance",
        "price_cents": 249900,
        "features": _features(*_ADVANCE),
        "limits": {"tables": 100, "menu_items": 5000},
    },
    ClientPlan.premium: {
        "name": "Premium",
        "price_cents": 499900,
        "features": _features(*_PREMIUM),
        "limits": {"tables": 1000, "menu_items": 0},
    },
    ClientPlan.business: {
        "name": "Business",
        "price_cents": 999900,
        "features": _features(*FEATURE_KEYS),
        "limits": {"tables": 0, "menu_items": 0},
    },
}


class ActionCategory(str, Enum):
    admin = "admin"  # configuration, limits, branding, analytics
    operational = "operational"  # ordering, kitchen, waiter, checkout


class EntitlementError(Exception):
    def __init__(self, message: str, code: str, status_code: int = 403, **extra):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.extra = extra
        super().__init__(message)


class AuthorityUnavailableError(Exception):
    """Raised when the subscription authority cannot be read."""


@dataclass
class EntitlementData:
    plan_name: str
    subscription_status: SubscriptionStatus
    features: dict[str, bool] = field(default_factory=dict)
    limits: dict[str, int] = field(default_factory=dict)
    version: int = 1
    grace_until: datetime | None = None


@dataclass
class EntitlementResult:
    data: EntitlementData
    source: str  # "authority" or "snapshot"
    synced_at: datetime


@dataclass
class LimitCheck:
    allowed: bool
    current: int
    limit: int  # 0 = unlimited


def _read_subscription(session: Session, client_id: int) -> tuple[Client | None, Subscription | None, Plan | None]:
    try:
        client = session.get(Client, client_id)
        subscription = session.exec(
            select(Subscription).where(Subscription.client_id == client_id)
        ).first()
        plan = session.get(Plan, subscription.plan_id) if subscription is not None else None
    except SQLAlchemyError as e:
        raise AuthorityUnavailableError(f"Subscription store unreachable: {e}") from e
    return client, subscription, plan


def fetch_from_authority(session: Session, client_id: int) -> EntitlementData:
    client, subscription, plan = _read_subscription(session, client_id)
    if client is None:
        raise EntitlementError("Client not found", "CLIENT_NOT_FOUND", status_code=404)

    if subscription is not None and plan is not None:
        return EntitlementData(
            plan_name=plan.name,
            subscription_status=subscription.status,
            features={key: bool(plan.features.get(key, False)) for key in FEATURE_KEYS},
            limits={key: int(plan.limits.get(key, 0)) for key in LIMIT_KEYS},
            version=subscription.version,
            grace_until=as_utc(subscription.grace_until),
        )

    defaults = DEFAULT_PLANS[client.plan]
    if client.status == ClientStatus.active:
        sub_status = SubscriptionStatus.active
    elif client.status == ClientStatus.trial:
        sub_status = SubscriptionStatus.trialing
    else:
        sub_status = SubscriptionStatus.inactive
    return EntitlementData(
        plan_name=defaults["name"],
        subscription_status=sub_status,
        features=dict(defaults["features"]),
        limits=dict(defaults["limits"]),
    )


def _store_snapshot(session: Session, client_id: int, data: EntitlementData) -> datetime:
    now = utc_now()
    try:
        snapshot = session.exec(
            select(EntitlementSnapshot).where(EntitlementSnapshot.client_id == client_id)
        ).first()
        if snapshot is None:
            snapshot = EntitlementSnapshot(client_id=client_id, plan_name=data.plan_name,
                                           subscription_status=data.subscription_status)
        snapshot.plan_name = data.plan_name
        snapshot.subscription_status = data.subscription_status
        snapshot.features = dict(data.features)
        snapshot.limits = dict(data.limits)
        snapshot.version = data.version
        snapshot.grace_until = data.grace_until
        snapshot.synced_at = now
        session.add(snapshot)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.warning(f"Could not refresh entitlement snapshot for client {client_id}: {e}")
    return now


def _load_snapshot(session: Session, client_id: int) -> EntitlementSnapshot | None:
    try:
        return session.exec(
            select(EntitlementSnapshot).where(EntitlementSnapshot.client_id == client_id)
        ).first()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Entitlement snapshot unreadable for client {client_id}: {e}")
        return None


def get_entitlements(session: Session, client_id: int) -> EntitlementResult:
    try:
        data = fetch_from_authority(session, client_id)
    except AuthorityUnavailableError as e:
        session.rollback()
        logger.warning(f"Entitlement authority unavailable for client {client_id}, using snapshot: {e}")
        snapshot = _load_snapshot(session, client_id)
        if snapshot is None:
            raise EntitlementError(
                "Entitlements are temporarily unavailable",
                "ENTITLEMENTS_UNAVAILABLE",
                status_code=503,
            )
        return EntitlementResult(
            data=EntitlementData(
                plan_name=snapshot.plan_name,
                subscription_status=snapshot.subscription_status,
                features=dict(snapshot.features or {}),
                limits=dict(snapshot.limits or {}),
                version=snapshot.version,
                grace_until=as_utc(snapshot.grace_until),
            ),
            source="snapshot",
            synced_at=as_utc(snapshot.synced_at),
        )

    synced_at = _store_snapshot(session, client_id, data)
    return EntitlementResult(data=data, source="authority", synced_at=synced_at)


def is_subscription_active(data: EntitlementData, now: datetime | None = None) -> bool:
    now = now or utc_now()
    if data.subscription_status in (SubscriptionStatus.active, SubscriptionStatus.trialing):
        return True
    if data.subscription_status == SubscriptionStatus.past_due:
        grace_until = as_utc(data.grace_until)
        return grace_until is not None and grace_until > now
    return False


def is_action_allowed_by_freshness(
    action: ActionCategory, synced_at: datetime, now: datetime | None = None
) -> bool:
    now = now or utc_now()
    if action == ActionCategory.admin:
        max_age = timedelta(hours=settings.entitlement_admin_stale_hours)
    else:
        max_age = timedelta(hours=settings.entitlement_operational_stale_hours)
    return now - as_utc(synced_at) < max_age


def has_feature(session: Session, client_id: int, feature: str) -> bool:
    result = get_entitlements(session, client_id)
    return is_subscription_active(result.data) and result.data.features.get(feature, False)


def get_limit(session: Session, client_id: int, limit_key: str) -> int:
    result = get_entitlements(session, client_id)
    return result.data.limits.get(limit_key, 0)


def count_resources(session: Session, client_id: int, limit_key: str) -> int:
    if limit_key == "tables":
        model = Table
    elif limit_key == "menu_items":
        model = MenuItem
    else:
        raise ValueError(f"Unknown limit: {limit_key}")
    statement = (
        select(func.count())
        .select_from(model)
        .where(model.client_id == client_id)
        .where(model.deleted_at == None)  # noqa: E711
    )
    return session.exec(statement).one()


def check_resource_limit(session: Session, client_id: int, limit_key: str) -> LimitCheck:
    limit = get_limit(session, client_id, limit_key)
    current = count_resources(session, client_id, limit_key)
    return LimitCheck(allowed=limit == 0 or current < limit, current=current, limit=limit)


def require_entitlement(
    session: Session,
    client_id: int,
    action: ActionCategory,
    feature: str | None = None,
) -> EntitlementResult:
    """Check freshness, then subscription status, then the feature flag."""
    result = get_entitlements(session, client_id)

    if result.source == "snapshot" and not is_action_allowed_by_freshness(action, result.synced_at):
        logger.warning(f"Stale entitlements block {action.value} action for client {client_id}")
        raise EntitlementError(
            "Subscription status could not be verified. Please try again shortly.",
            "ENTITLEMENTS_STALE",
            status_code=503,
        )

    if not is_subscription_active(result.data):
        raise EntitlementError(
            "Subscription is not active",
            "SUBSCRIPTION_INACTIVE",
            status=result.data.subscription_status.value,
        )

    if feature is not None and not result.data.features.get(feature, False):
        raise EntitlementError(
            f"Your plan does not include {feature}",
            "FEATURE_GATED",
            feature=feature,
            plan=result.data.plan_name,
        )

    return result


def require_limit(
    session: Session,
    client_id: int,
    limit_key: str,
    action: ActionCategory = ActionCategory.admin,
) -> LimitCheck:
    result = require_entitlement(session, client_id, action)
    limit = result.data.limits.get(limit_key, 0)
    current = count_resources(session, client_id, limit_key)
    if limit != 0 and current >= limit:
        raise EntitlementError(
            f"Plan limit reached for {limit_key}",
            "LIMIT_REACHED",
            limit_key=limit_key,
            current=current,
            max=limit,
        )
    return LimitCheck(allowed=True, current=current, limit=limit)


def sync_entitlements_to_tenant(session: Session, client_id: int) -> EntitlementData:
    """Refresh the snapshot after a plan or subscription change."""
    data = fetch_from_authority(session, client_id)
    _store_snapshot(session, client_id, data)
    logger.info(f"Entitlements synced for client {client_id}: {data.plan_name} ({data.subscription_status.value})")
    return data


def entitlement_http_error(e: EntitlementError) -> HTTPException:
    return HTTPException(
        status_code=e.status_code,
        detail={"error": e.message, "code": e.code, **e.extra},
    )


class FeatureGate:
    """Route dependency: the resolved tenant must be entitled to act (and hold the feature)."""

    def __init__(self, feature: str | None, action: ActionCategory):
        self.feature = feature
        self.action = action

    def __call__(
        self,
        tenant: Annotated[TenantContext, Depends(get_current_tenant)],
        session: Annotated[Session, Depends(get_session)],
    ) -> TenantContext:
        try:
            require_entitlement(session, tenant.client_id, self.action, self.feature)
        except EntitlementError as e:
            raise entitlement_http_error(e)
        return tenant


class LimitGate:
    """Route dependency: creating one more resource must stay within the plan limit."""

    def __init__(self, limit_key: str):
        self.limit_key = limit_key

    def __call__(
        self,
        tenant: Annotated[TenantContext, Depends(get_current_tenant)],
        session: Annotated[Session, Depends(get_session)],
    ) -> TenantContext:
        try:
            require_limit(session, tenant.client_id, self.limit_key)
        except EntitlementError as e:
            raise entitlement_http_error(e)
        return tenant
