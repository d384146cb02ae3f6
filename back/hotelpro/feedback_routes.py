import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel import Session, func, select

from . import events, models
from .audit import log_audit
from .db import get_session
from .entitlements import ActionCategory, FeatureGate
from .models import utc_now
from .permissions import Permissions
from .security import PermissionChecker, TenantContext, get_current_tenant

logger = logging.getLogger(__name__)

router = APIRouter()


def _feedback_dict(feedback: models.CustomerFeedback) -> dict:
    return {
        "id": feedback.id,
        "order_id": feedback.order_id,
        "rating": feedback.rating,
        "comment": feedback.comment,
        "guest_name": feedback.guest_name,
        "table_code": feedback.table_code,
        "staff_reply": feedback.staff_reply,
        "replied_at": feedback.replied_at.isoformat() if feedback.replied_at else None,
        "created_at": feedback.created_at.isoformat(),
    }


@router.post("/customer/feedback", status_code=status.HTTP_201_CREATED)
def submit_feedback(
    body: models.FeedbackCreate,
    tenant: Annotated[TenantContext, Depends(get_current_tenant)],
    session: Session = Depends(get_session),
) -> dict:
    if body.rating < 1 or body.rating > 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")

    order = session.exec(
        select(models.Order).where(
            models.Order.id == body.order_id,
            models.Order.client_id == tenant.client_id,
        )
    ).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    existing = session.exec(
        select(models.CustomerFeedback).where(
            models.CustomerFeedback.order_id == order.id,
            models.CustomerFeedback.client_id == tenant.client_id,
        )
    ).first()
    if existing:
        raise HTTPException(status_code=409, detail="Feedback already submitted for this order")

    table_code = body.table_code
    if table_code is None:
        table = session.get(models.Table, order.table_id)
        table_code = table.table_code if table else None

    feedback = models.CustomerFeedback(
        client_id=tenant.client_id,
        order_id=order.id,
        rating=body.rating,
        comment=body.comment or None,
        guest_name=body.guest_name or None,
        table_code=table_code,
    )
    session.add(feedback)
    session.flush()
    log_audit(
        session,
        tenant.client_id,
        models.AuditAction.feedback_submitted,
        order_id=order.id,
        details={"feedback_id": feedback.id, "rating": body.rating, "comment": body.comment},
    )
    session.commit()
    session.refresh(feedback)

    events.publish_event(tenant.client_id, {
        "type": "feedback_submitted",
        "feedback_id": feedback.id,
        "order_id": order.id,
        "rating": feedback.rating,
        "guest_name": feedback.guest_name or "Guest",
        "table_code": feedback.table_code,
        "urgent": feedback.rating <= 2,
    })
    return _feedback_dict(feedback)


@router.get("/customer/feedback")
def list_feedback(
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.FEEDBACK_READ))],
    _: Annotated[TenantContext, Depends(FeatureGate("basic_analytics", ActionCategory.admin))],
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(get_session),
) -> dict:
    feedbacks = session.exec(
        select(models.CustomerFeedback)
        .where(models.CustomerFeedback.client_id == current_user.client_id)
        .order_by(models.CustomerFeedback.created_at.desc(), models.CustomerFeedback.id.desc())
        .limit(limit)
    ).all()

    average, total = session.exec(
        select(func.avg(models.CustomerFeedback.rating), func.count(models.CustomerFeedback.id))
        .where(models.CustomerFeedback.client_id == current_user.client_id)
    ).one()

    return {
        "feedbacks": [_feedback_dict(f) for f in feedbacks],
        "stats": {
            "average_rating": round(float(average), 1) if average is not None else 0,
            "total_feedbacks": total,
        },
    }


@router.patch("/customer/feedback")
def reply_to_feedback(
    body: models.FeedbackReply,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.FEEDBACK_REPLY))],
    session: Session = Depends(get_session),
) -> dict:
    if not body.reply.strip():
        raise HTTPException(status_code=400, detail="Reply is required")

    feedback = session.exec(
        select(models.CustomerFeedback).where(
            models.CustomerFeedback.id == body.feedback_id,
            models.CustomerFeedback.client_id == current_user.client_id,
        )
    ).first()
    if not feedback:
        raise HTTPException(status_code=404, detail="Feedback not found")

    feedback.staff_reply = body.reply.strip()
    feedback.replied_at = utc_now()
    feedback.replied_by_id = current_user.id
    session.add(feedback)
    log_audit(
        session,
        current_user.client_id,
        models.AuditAction.feedback_replied,
        actor_id=current_user.id,
        order_id=feedback.order_id,
        details={"feedback_id": feedback.id},
    )
    session.commit()
    session.refresh(feedback)

    events.publish_event(current_user.client_id, {
        "type": "feedback_replied",
        "feedback_id": feedback.id,
        "order_id": feedback.order_id,
    })
    return _feedback_dict(feedback)
