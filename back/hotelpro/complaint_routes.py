import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel import Session, select

from . import events, models
from .audit import log_audit
from .db import get_session
from .models import ComplaintStatus, ComplaintType, utc_now
from .permissions import Permissions, PermissionService
from .security import PermissionChecker, TenantContext, get_current_tenant

logger = logging.getLogger(__name__)

router = APIRouter()

# Statuses staff may move a complaint to
STAFF_STATUSES = {
    ComplaintStatus.acknowledged,
    ComplaintStatus.in_progress,
    ComplaintStatus.resolved,
    ComplaintStatus.dismissed,
}
CLOSED_STATUSES = {ComplaintStatus.resolved, ComplaintStatus.dismissed}


def _complaint_dict(complaint: models.CustomerComplaint) -> dict:
    return {
        "id": complaint.id,
        "order_id": complaint.order_id,
        "type": complaint.type.value,
        "status": complaint.status.value,
        "description": complaint.description,
        "guest_name": complaint.guest_name,
        "table_code": complaint.table_code,
        "resolved_note": complaint.resolved_note,
        "resolved_at": complaint.resolved_at.isoformat() if complaint.resolved_at else None,
        "created_at": complaint.created_at.isoformat(),
    }


def _parse_complaint_statuses(raw: str) -> list[ComplaintStatus]:
    try:
        return [ComplaintStatus(s.strip().lower()) for s in raw.split(",") if s.strip()]
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid status filter: {raw}")


@router.post("/customer/complaints", status_code=status.HTTP_201_CREATED)
def raise_complaint(
    body: models.ComplaintCreate,
    tenant: Annotated[TenantContext, Depends(get_current_tenant)],
    session: Session = Depends(get_session),
) -> dict:
    """A guest reports a problem with their order; staff dashboards get an urgent event."""
    try:
        complaint_type = ComplaintType(body.type.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid complaint type: {body.type}")

    order = session.exec(
        select(models.Order).where(
            models.Order.id == body.order_id,
            models.Order.client_id == tenant.client_id,
        )
    ).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    table_code = body.table_code
    if table_code is None:
        table = session.get(models.Table, order.table_id)
        table_code = table.table_code if table else None

    complaint = models.CustomerComplaint(
        client_id=tenant.client_id,
        order_id=order.id,
        type=complaint_type,
        description=body.description or None,
        guest_name=body.guest_name or None,
        table_code=table_code,
    )
    session.add(complaint)
    session.flush()
    log_audit(
        session,
        tenant.client_id,
        models.AuditAction.complaint_raised,
        order_id=order.id,
        details={"complaint_id": complaint.id, "type": complaint_type.value},
    )
    session.commit()
    session.refresh(complaint)
    logger.warning(f"Complaint {complaint.id} ({complaint_type.value}) on order {order.id} for client {tenant.client_id}")

    events.publish_event(tenant.client_id, {
        "type": "complaint_raised",
        "complaint_id": complaint.id,
        "order_id": order.id,
        "complaint_type": complaint_type.value,
        "guest_name": complaint.guest_name or "Guest",
        "table_code": complaint.table_code,
        "urgent": True,
    })
    return _complaint_dict(complaint)


@router.get("/customer/complaints")
def list_complaints(
    tenant: Annotated[TenantContext, Depends(get_current_tenant)],
    order_id: int | None = None,
    status_filter: str | None = Query(None, alias="status", description="Comma-separated statuses"),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(get_session),
) -> list[dict]:
    """Guests see the complaints on one order; staff with complaint access see the whole restaurant."""
    statement = select(models.CustomerComplaint).where(models.CustomerComplaint.client_id == tenant.client_id)
    if order_id is not None:
        statement = statement.where(models.CustomerComplaint.order_id == order_id)
    else:
        if tenant.user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Staff login required")
        if not PermissionService.has_permission(tenant.user, Permissions.COMPLAINTS_READ):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions")
    if status_filter:
        statement = statement.where(models.CustomerComplaint.status.in_(_parse_complaint_statuses(status_filter)))

    complaints = session.exec(
        statement.order_by(models.CustomerComplaint.created_at.desc(), models.CustomerComplaint.id.desc()).limit(limit)
    ).all()
    return [_complaint_dict(c) for c in complaints]


@router.patch("/customer/complaints")
def update_complaint(
    body: models.ComplaintUpdate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.COMPLAINTS_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    try:
        new_status = ComplaintStatus(body.status.strip().lower())
    except ValueError:
        new_status = None
    if new_status not in STAFF_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid complaint status: {body.status}")

    complaint = session.exec(
        select(models.CustomerComplaint).where(
            models.CustomerComplaint.id == body.complaint_id,
            models.CustomerComplaint.client_id == current_user.client_id,
        )
    ).first()
    if not complaint:
        raise HTTPException(status_code=404, detail="Complaint not found")
    if complaint.status in CLOSED_STATUSES:
        raise HTTPException(status_code=409, detail=f"Complaint is already {complaint.status.value}")

    complaint.status = new_status
    if body.resolved_note is not None:
        complaint.resolved_note = body.resolved_note.strip() or None
    if new_status in CLOSED_STATUSES:
        complaint.resolved_by_id = current_user.id
        complaint.resolved_at = utc_now()
    session.add(complaint)
    log_audit(
        session,
        current_user.client_id,
        models.AuditAction.complaint_resolved if new_status in CLOSED_STATUSES else models.AuditAction.complaint_acknowledged,
        actor_id=current_user.id,
        order_id=complaint.order_id,
        details={"complaint_id": complaint.id, "status": new_status.value},
    )
    session.commit()
    session.refresh(complaint)

    events.publish_event(current_user.client_id, {
        "type": "complaint_updated",
        "complaint_id": complaint.id,
        "order_id": complaint.order_id,
        "status": complaint.status.value,
    })
    return _complaint_dict(complaint)
