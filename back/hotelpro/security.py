from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated

import bcrypt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlmodel import Session, select

from .db import get_session
from .models import Client, ClientStatus, SuperAdmin, User
from .permissions import Permissions, PermissionService
from .settings import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

STAFF_COOKIE = "access_token"
TENANT_COOKIE = "hp-tenant-id"
TENANT_TOKEN_ISSUER = "hotelpro-tenant"
HQ_COOKIE = "hq-token"
HQ_TOKEN_SCOPE = "hq"

INACTIVE_TENANT_STATUSES = (ClientStatus.suspended, ClientStatus.archived)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"), hashed_password.encode("utf-8")
        )
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


# ============ STAFF ============

def _staff_token(request: Request, bearer: str | None) -> str | None:
    return request.cookies.get(STAFF_COOKIE) or bearer


async def get_token_from_cookie(
    request: Request,
    token: Annotated[str | None, Depends(oauth2_scheme)]
) -> str:
    """
    Get token from cookie (primary) or Authorization header (fallback).
    """
    found = _staff_token(request, token)
    if found:
        return found

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
    )


def _user_from_token(token: str, session: Session) -> User | None:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    username = payload.get("sub")
    client_id = payload.get("client_id")
    if username is None or client_id is None:
        return None

    statement = select(User).where(User.username == username).where(User.client_id == client_id)
    return session.exec(statement).first()


def ensure_tenant_active(session: Session, client_id: int) -> Client:
    client = session.get(Client, client_id)
    if client is None or client.deleted_at is not None or client.status in INACTIVE_TENANT_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "Restaurant account is not active", "code": "TENANT_INACTIVE"},
        )
    return client


async def get_current_user(
    token: Annotated[str, Depends(get_token_from_cookie)],
    session: Annotated[Session, Depends(get_session)],
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
    )
    user = _user_from_token(token, session)
    if user is None or not user.is_active:
        raise credentials_exception

    ensure_tenant_active(session, user.client_id)
    return user


class PermissionChecker:
    """Route dependency that requires the current staff user to hold a permission."""

    def __init__(self, required_permission: Permissions):
        self.required_permission = required_permission

    def __call__(
        self, user: Annotated[User, Depends(get_current_user)]
    ) -> User:
        if not PermissionService.has_permission(user, self.required_permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return user


# ============ CUSTOMER TENANT COOKIE ============

def create_tenant_token(client_id: int) -> str:
    expire = datetime.now(timezone.utc) + timedelta(seconds=settings.tenant_cookie_max_age_seconds)
    return jwt.encode(
        {"client_id": client_id, "iss": TENANT_TOKEN_ISSUER, "exp": expire},
        settings.secret_key,
        algorithm=settings.algorithm,
    )


def verify_tenant_token(token: str) -> int | None:
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            issuer=TENANT_TOKEN_ISSUER,
        )
    except JWTError:
        return None
    client_id = payload.get("client_id")
    return client_id if isinstance(client_id, int) else None


@dataclass
class TenantContext:
    client_id: int
    source: str  # "staff" or "customer"
    user: User | None = None


async def get_current_tenant(
    request: Request,
    token: Annotated[str | None, Depends(oauth2_scheme)],
    session: Annotated[Session, Depends(get_session)],
) -> TenantContext:
    """Resolve the tenant: staff session first, then the signed customer cookie."""
    staff_token = _staff_token(request, token)
    if staff_token:
        user = _user_from_token(staff_token, session)
        if user is not None and user.is_active:
            ensure_tenant_active(session, user.client_id)
            return TenantContext(client_id=user.client_id, source="staff", user=user)

    cookie = request.cookies.get(TENANT_COOKIE)
    client_id = verify_tenant_token(cookie) if cookie else None
    if client_id is not None:
        client = session.get(Client, client_id)
        if client is not None and client.deleted_at is None and client.status != ClientStatus.archived:
            if client.status == ClientStatus.suspended:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail={"error": "Restaurant account is not active", "code": "TENANT_INACTIVE"},
                )
            return TenantContext(client_id=client.id, source="customer")

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "Authentication required", "code": "AUTH_REQUIRED"},
    )


# ============ HQ ============

def create_hq_token(admin: SuperAdmin) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.hq_token_expire_minutes)
    return jwt.encode(
        {"sub": admin.email, "admin_id": admin.id, "scope": HQ_TOKEN_SCOPE, "exp": expire},
        settings.hq_secret_key,
        algorithm=settings.algorithm,
    )


async def require_super_admin(
    request: Request,
    session: Annotated[Session, Depends(get_session)],
) -> SuperAdmin:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="HQ authentication required",
    )
    token = request.cookies.get(HQ_COOKIE)
    if not token:
        raise credentials_exception
    try:
        payload = jwt.decode(token, settings.hq_secret_key, algorithms=[settings.algorithm])
    except JWTError:
        raise credentials_exception
    if payload.get("scope") != HQ_TOKEN_SCOPE:
        raise credentials_exception

    admin = session.exec(select(SuperAdmin).where(SuperAdmin.email == payload.get("sub"))).first()
    if admin is None or not admin.is_active:
        raise credentials_exception
    return admin
