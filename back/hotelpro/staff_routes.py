import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select

from . import models, security
from .audit import log_audit
from .db import get_session
from .entitlements import ActionCategory, FeatureGate
from .hq_service import MIN_PASSWORD_LENGTH
from .permissions import Permissions
from .security import PermissionChecker, TenantContext

logger = logging.getLogger(__name__)

router = APIRouter()

staff_admin_gate = FeatureGate(None, ActionCategory.admin)


def _staff_dict(user: models.User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "name": user.name,
        "role": user.role.value,
        "is_active": user.is_active,
        "total_orders": user.total_orders,
        "total_sales_cents": user.total_sales_cents,
        "last_login": user.last_login.isoformat() if user.last_login else None,
        "created_at": user.created_at.isoformat(),
    }


def _get_staff(session: Session, user_id: int, client_id: int) -> models.User:
    user = session.exec(
        select(models.User).where(models.User.id == user_id, models.User.client_id == client_id)
    ).first()
    if not user:
        raise HTTPException(status_code=404, detail="Staff member not found")
    return user


def _check_can_manage(current_user: models.User, target_role: models.UserRole) -> None:
    """Only admins may create or change admin accounts."""
    if target_role == models.UserRole.admin and current_user.role != models.UserRole.admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins can manage admin accounts")


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


@router.get("/staff")
def list_staff(
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.STAFF_READ))],
    session: Session = Depends(get_session),
) -> list[dict]:
    """List all staff accounts of the restaurant, newest first."""
    users = session.exec(
        select(models.User)
        .where(models.User.client_id == current_user.client_id)
        .order_by(models.User.created_at.desc(), models.User.id.desc())
    ).all()
    return [_staff_dict(user) for user in users]


@router.post("/staff", status_code=status.HTTP_201_CREATED)
def create_staff(
    staff_data: models.StaffCreate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.STAFF_MANAGE))],
    _: Annotated[TenantContext, Depends(staff_admin_gate)],
    session: Session = Depends(get_session),
) -> dict:
    username = staff_data.username.lower().strip()
    name = staff_data.name.strip()
    if not username or not name:
        raise HTTPException(status_code=400, detail="Name and username are required")
    _check_password(staff_data.password)
    _check_can_manage(current_user, staff_data.role)

    if session.exec(select(models.User).where(models.User.username == username)).first():
        raise HTTPException(status_code=409, detail="Username taken")

    user = models.User(
        client_id=current_user.client_id,
        username=username,
        name=name,
        password_hash=security.get_password_hash(staff_data.password),
        role=staff_data.role,
    )
    session.add(user)
    session.flush()
    log_audit(
        session,
        current_user.client_id,
        models.AuditAction.staff_created,
        actor_id=current_user.id,
        details={"user_id": user.id, "username": username, "role": staff_data.role.value},
    )
    session.commit()
    session.refresh(user)
    logger.info(f"Staff {username} ({staff_data.role.value}) created for client {current_user.client_id}")
    return _staff_dict(user)


@router.patch("/staff/{user_id}")
def update_staff(
    user_id: int,
    staff_update: models.StaffUpdate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.STAFF_MANAGE))],
    _: Annotated[TenantContext, Depends(staff_admin_gate)],
    session: Session = Depends(get_session),
) -> dict:
    """Rename, change role, reset password or (re)activate a staff member."""
    user = _get_staff(session, user_id, current_user.client_id)
    _check_can_manage(current_user, user.role)

    changed = []
    if staff_update.name is not None:
        if not staff_update.name.strip():
            raise HTTPException(status_code=400, detail="Name is required")
        user.name = staff_update.name.strip()
        changed.append("name")
    if staff_update.role is not None and staff_update.role != user.role:
        _check_can_manage(current_user, staff_update.role)
        if user.id == current_user.id:
            raise HTTPException(status_code=400, detail="You cannot change your own role")
        user.role = staff_update.role
        changed.append("role")
    if staff_update.password is not None:
        _check_password(staff_update.password)
        user.password_hash = security.get_password_hash(staff_update.password)
        changed.append("password")
    if staff_update.is_active is not None and staff_update.is_active != user.is_active:
        if user.id == current_user.id:
            raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
        user.is_active = staff_update.is_active
        changed.append("is_active")

    session.add(user)
    log_audit(
        session,
        current_user.client_id,
        models.AuditAction.staff_updated,
        actor_id=current_user.id,
        details={"user_id": user.id, "fields": changed},
    )
    session.commit()
    session.refresh(user)
    return _staff_dict(user)


@router.delete("/staff/{user_id}")
def deactivate_staff(
    user_id: int,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.STAFF_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    """Staff accounts are deactivated, never deleted, so orders and audits keep their actor."""
    user = _get_staff(session, user_id, current_user.client_id)
    if user.id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    _check_can_manage(current_user, user.role)

    user.is_active = False
    session.add(user)
    log_audit(
        session,
        current_user.client_id,
        models.AuditAction.staff_deactivated,
        actor_id=current_user.id,
        details={"user_id": user.id, "username": user.username},
    )
    session.commit()
    logger.info(f"Staff {user.username} deactivated by {current_user.username}")
    return {"status": "deactivated", "id": user_id}
