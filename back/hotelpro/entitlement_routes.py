import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from .billing_models import Plan
from .db import get_session
from .entitlements import (
    DEFAULT_PLANS,
    LIMIT_KEYS,
    EntitlementError,
    count_resources,
    entitlement_http_error,
    get_entitlements,
    is_subscription_active,
)
from .security import TenantContext, get_current_tenant

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/entitlements")
def read_entitlements(
    tenant: Annotated[TenantContext, Depends(get_current_tenant)],
    session: Session = Depends(get_session),
) -> dict:
    """Current plan, features, limits and usage of the resolved tenant."""
    try:
        result = get_entitlements(session, tenant.client_id)
    except EntitlementError as e:
        raise entitlement_http_error(e)

    data = result.data
    return {
        "plan_name": data.plan_name,
        "subscription_status": data.subscription_status.value,
        "is_active": is_subscription_active(data),
        "features": data.features,
        "limits": data.limits,
        "usage": {key: count_resources(session, tenant.client_id, key) for key in LIMIT_KEYS},
        "version": data.version,
        "grace_until": data.grace_until.isoformat() if data.grace_until else None,
        "source": result.source,
        "synced_at": result.synced_at.isoformat(),
    }


@router.get("/plans")
def public_plans(session: Session = Depends(get_session)) -> list[dict]:
    """Public plan catalogue for the pricing page."""
    plans = session.exec(
        select(Plan).where(Plan.is_active == True).order_by(Plan.price_cents, Plan.id)  # noqa: E712
    ).all()
    if plans:
        return [
            {
                "code": plan.code.value,
                "name": plan.name,
                "description": plan.description,
                "price_cents": plan.price_cents,
                "features": plan.features,
                "limits": plan.limits,
            }
            for plan in plans
        ]
    return [
        {
            "code": code.value,
            "name": defaults["name"],
            "description": None,
            "price_cents": defaults["price_cents"],
            "features": defaults["features"],
            "limits": defaults["limits"],
        }
        for code, defaults in DEFAULT_PLANS.items()
    ]
