"""
Access Code API

Customer entry: maps a restaurant access code to its tenant and sets the
signed tenant cookie. Admin endpoints let managers set, rotate or revoke
the code.
"""

import asyncio
import logging
import random
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from . import models, security
from .audit import log_audit
from .db import get_session
from .entitlements import ActionCategory, FeatureGate
from .models import utc_now
from .permissions import Permissions
from .rate_limit import RateLimiter
from .security import PermissionChecker, TenantContext
from .settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()

# No I, O, 0, 1 to avoid confusion when read aloud
ACCESS_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
GENERATED_CODE_LENGTH = 6
MIN_CUSTOM_CODE_LENGTH = 4
MAX_CUSTOM_CODE_LENGTH = 12

access_code_limiter = RateLimiter(
    "access-code",
    limit=settings.access_code_rate_limit,
    window_seconds=settings.access_code_rate_window_seconds,
)


def normalize_code(code: str) -> str:
    return code.strip().upper()


def generate_access_code() -> str:
    return "".join(secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(GENERATED_CODE_LENGTH))


async def synthetic_delay() -> None:
    """Uniform 500-1000ms pause so lookups cannot be timed."""
    low = settings.access_code_min_delay_ms
    high = max(settings.access_code_max_delay_ms, low)
    if high <= 0:
        return
    await asyncio.sleep(random.uniform(low, high) / 1000)


def _find_client_by_code(session: Session, code: str) -> models.Client | None:
    return session.exec(
        select(models.Client).where(models.Client.access_code == code)
    ).first()


def _record_customer_entry(session: Session, client: models.Client, code: str) -> None:
    log_audit(
        session,
        client.id,
        models.AuditAction.login_success,
        details={"type": "customer_access_code", "code_prefix": code[:2]},
    )
    session.commit()


# ============ CUSTOMER ENTRY ============

@router.post("/auth/access-code", dependencies=[Depends(access_code_limiter)])
async def enter_with_access_code(
    body: models.AccessCodeLogin,
    session: Session = Depends(get_session),
):
    code = body.code or ""
    if len(code.strip()) < 2:
        await synthetic_delay()
        raise HTTPException(status_code=400, detail="Please enter a valid access code.")

    normalized = normalize_code(code)
    client = await run_in_threadpool(_find_client_by_code, session, normalized)

    await synthetic_delay()

    if client is None or client.deleted_at is not None or client.status == models.ClientStatus.archived:
        logger.info(f"Failed access code lookup: {normalized[:2]}***")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid access code. Please check with your restaurant.",
        )

    if client.status == models.ClientStatus.suspended:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This restaurant is currently unavailable. Please contact management.",
        )

    restaurant = {"id": client.id, "name": client.name, "slug": client.slug, "plan": client.plan.value}
    await run_in_threadpool(_record_customer_entry, session, client, normalized)
    logger.info(f"Customer entered restaurant {restaurant['name']} ({restaurant['id']})")

    response = JSONResponse(content={"success": True, "restaurant": restaurant})
    response.set_cookie(
        key=security.TENANT_COOKIE,
        value=security.create_tenant_token(restaurant["id"]),
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
        max_age=settings.tenant_cookie_max_age_seconds,
    )
    return response


# ============ ADMIN MANAGEMENT ============

@router.get("/admin/access-code")
def get_access_code(
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.ACCESS_CODE_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    client = session.get(models.Client, current_user.client_id)
    return {
        "access_code": client.access_code,
        "updated_at": client.access_code_updated_at.isoformat() if client.access_code_updated_at else None,
        "restaurant_name": client.name,
    }


@router.post("/admin/access-code")
def set_access_code(
    body: models.AccessCodeUpdate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.ACCESS_CODE_MANAGE))],
    _: Annotated[TenantContext, Depends(FeatureGate("qr_menu", ActionCategory.admin))],
    session: Session = Depends(get_session),
) -> dict:
    """Set a custom code, or rotate to a generated one when no code is given."""
    if body.code:
        code = normalize_code(body.code)
        if not MIN_CUSTOM_CODE_LENGTH <= len(code) <= MAX_CUSTOM_CODE_LENGTH:
            raise HTTPException(status_code=400, detail="Access code must be 4-12 characters")
        if not code.isalnum():
            raise HTTPException(status_code=400, detail="Access code must be letters and digits only")
        candidates = [code]
    else:
        candidates = [generate_access_code() for _ in range(5)]

    chosen = None
    for candidate in candidates:
        owner = session.exec(
            select(models.Client).where(models.Client.access_code == candidate)
        ).first()
        if owner is None or owner.id == current_user.client_id:
            chosen = candidate
            break
    if chosen is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This code is already in use. Please try a different one.",
        )

    client = session.get(models.Client, current_user.client_id)
    client.access_code = chosen
    client.access_code_updated_at = utc_now()
    session.add(client)
    log_audit(
        session,
        client.id,
        models.AuditAction.access_code_changed,
        actor_id=current_user.id,
        details={"type": "access_code_set", "code_prefix": chosen[:2] + "****"},
    )
    session.commit()
    session.refresh(client)
    logger.info(f"Access code set for client {client.id} by {current_user.username}")

    return {"access_code": client.access_code, "updated_at": client.access_code_updated_at.isoformat()}


@router.delete("/admin/access-code")
def revoke_access_code(
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.ACCESS_CODE_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    client = session.get(models.Client, current_user.client_id)
    client.access_code = None
    client.access_code_updated_at = utc_now()
    session.add(client)
    log_audit(
        session,
        client.id,
        models.AuditAction.access_code_changed,
        actor_id=current_user.id,
        details={"type": "access_code_revoked"},
    )
    session.commit()
    logger.info(f"Access code revoked for client {client.id} by {current_user.username}")

    return {"message": "Access code revoked. New customers cannot enter until a new code is set."}
