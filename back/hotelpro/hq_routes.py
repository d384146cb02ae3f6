import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from . import hq_service, security
from .billing_models import (
    ClientCreate,
    ClientDelete,
    ClientUpdate,
    HQLogin,
    PlanCreate,
    PlanUpdate,
    SaaSPayment,
    SubscriptionAssign,
)
from .db import get_session
from .hq_service import CLIENT_ACTIONS, ClientActionError
from .models import SuperAdmin, as_utc, utc_now
from .rate_limit import RateLimiter
from .settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()

SuperAdminDep = Annotated[SuperAdmin, Depends(security.require_super_admin)]


def hq_http_error(e: ClientActionError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"error": e.message, "code": e.code})


# ============ AUTH ============

@router.post("/login", dependencies=[Depends(RateLimiter("hq-login", limit=10, window_seconds=60))])
def hq_login(
    credentials: HQLogin,
    session: Session = Depends(get_session),
):
    admin = session.exec(
        select(SuperAdmin).where(SuperAdmin.email == credentials.email.lower().strip())
    ).first()
    if not admin or not admin.is_active or not security.verify_password(credentials.password, admin.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    admin.last_login = utc_now()
    session.add(admin)
    session.commit()
    logger.info(f"HQ login: {admin.email}")

    response = JSONResponse(content={"status": "success", "email": admin.email, "name": admin.name})
    response.set_cookie(
        key=security.HQ_COOKIE,
        value=security.create_hq_token(admin),
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        path="/",
        max_age=settings.hq_token_expire_minutes * 60,
    )
    return response


@router.post("/logout")
def hq_logout():
    response = JSONResponse(content={"status": "success", "message": "Logged out"})
    response.delete_cookie(key=security.HQ_COOKIE, path="/")
    return response


# ============ CLIENTS ============

@router.get("/clients")
def list_clients(
    admin: SuperAdminDep,
    include_archived: bool = True,
    session: Session = Depends(get_session),
) -> list[dict]:
    return hq_service.get_clients_with_stats(session, include_archived=include_archived)


@router.post("/clients", status_code=status.HTTP_201_CREATED)
def create_client(
    client_data: ClientCreate,
    admin: SuperAdminDep,
    session: Session = Depends(get_session),
) -> dict:
    try:
        client = hq_service.create_new_client(session, client_data)
    except ClientActionError as e:
        raise hq_http_error(e)
    logger.info(f"Client {client.slug} created by {admin.email}")
    return hq_service.client_to_dict(session, client)


@router.get("/clients/{client_id}")
def get_client(
    client_id: int,
    admin: SuperAdminDep,
    session: Session = Depends(get_session),
) -> dict:
    try:
        return hq_service.get_client_by_id(session, client_id)
    except ClientActionError as e:
        raise hq_http_error(e)


@router.patch("/clients/{client_id}")
def update_client(
    client_id: int,
    client_update: ClientUpdate,
    admin: SuperAdminDep,
    session: Session = Depends(get_session),
) -> dict:
    """Update fields, or run a lifecycle action (suspend, activate, archive, restore)."""
    try:
        if client_update.action:
            handler = CLIENT_ACTIONS.get(client_update.action)
            if handler is None:
                raise ClientActionError(f"Unknown action: {client_update.action}", "INVALID_INPUT")
            if client_update.action == "suspend":
                client = handler(session, client_id, client_update.reason)
            else:
                client = handler(session, client_id)
        else:
            client = hq_service.update_client(session, client_id, client_update)
    except ClientActionError as e:
        raise hq_http_error(e)
    logger.info(f"Client {client_id} updated by {admin.email}")
    return hq_service.client_to_dict(session, client)


@router.delete("/clients/{client_id}")
def delete_client(
    client_id: int,
    body: ClientDelete,
    admin: SuperAdminDep,
    session: Session = Depends(get_session),
) -> dict:
    """Hard deletion is disabled; archive instead."""
    if not body.confirm_delete:
        raise HTTPException(
            status_code=400,
            detail={"error": "Deletion must be confirmed with confirmDelete", "code": "CONFIRMATION_REQUIRED"},
        )
    try:
        hq_service.get_client_by_id(session, client_id)
    except ClientActionError as e:
        raise hq_http_error(e)
    logger.warning(f"Refused hard delete of client {client_id} requested by {admin.email}")
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": "Permanent deletion is disabled. Suspend or archive the client instead.",
            "code": "DELETE_DISABLED",
        },
    )


# ============ SUBSCRIPTIONS ============

@router.get("/subscriptions")
def list_subscriptions(
    admin: SuperAdminDep,
    session: Session = Depends(get_session),
) -> dict:
    payments = session.exec(
        select(SaaSPayment).order_by(SaaSPayment.paid_at.desc()).limit(50)
    ).all()
    return {
        "subscriptions": hq_service.list_subscriptions(session),
        "payments": [
            {
                "id": p.id,
                "client_id": p.client_id,
                "amount_cents": p.amount_cents,
                "currency": p.currency,
                "status": p.status,
                "plan_code": p.plan_code.value,
                "billing_cycle": p.billing_cycle.value,
                "paid_at": as_utc(p.paid_at).isoformat(),
            }
            for p in payments
        ],
    }


@router.post("/subscriptions")
def assign_subscription(
    body: SubscriptionAssign,
    admin: SuperAdminDep,
    response: Response,
    session: Session = Depends(get_session),
) -> dict:
    try:
        subscription, created = hq_service.assign_subscription(
            session,
            client_id=body.client_id,
            plan_id=body.plan_id,
            status=body.status,
            billing_cycle=body.billing_cycle,
            actor_email=admin.email,
        )
    except ClientActionError as e:
        raise hq_http_error(e)

    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return {
        "subscription": {
            "id": subscription.id,
            "client_id": subscription.client_id,
            "plan_id": subscription.plan_id,
            "status": subscription.status.value,
            "billing_cycle": subscription.billing_cycle.value,
            "version": subscription.version,
        },
        "created": created,
    }


# ============ PLANS ============

@router.get("/plans")
def list_plans(
    admin: SuperAdminDep,
    session: Session = Depends(get_session),
) -> dict:
    return {"plans": hq_service.list_plans(session)}


@router.post("/plans", status_code=status.HTTP_201_CREATED)
def create_plan(
    body: PlanCreate,
    admin: SuperAdminDep,
    session: Session = Depends(get_session),
) -> dict:
    try:
        plan = hq_service.create_plan(session, body)
    except ClientActionError as e:
        raise hq_http_error(e)
    return {"plan": hq_service.plan_to_dict(plan)}


@router.patch("/plans/{plan_id}")
def update_plan(
    plan_id: int,
    body: PlanUpdate,
    admin: SuperAdminDep,
    session: Session = Depends(get_session),
) -> dict:
    try:
        plan = hq_service.update_plan(session, plan_id, body)
    except ClientActionError as e:
        raise hq_http_error(e)
    return {"plan": hq_service.plan_to_dict(plan)}


# ============ STATS ============

@router.get("/stats")
def platform_stats(
    admin: SuperAdminDep,
    session: Session = Depends(get_session),
) -> dict:
    return {"stats": hq_service.get_platform_stats(session)}
