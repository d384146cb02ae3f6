import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated

import stripe
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from . import models, security
from .access_code_routes import router as access_code_router
from .audit import log_audit
from .billing_routes import router as billing_router
from .complaint_routes import router as complaint_router
from .db import check_db_connection, create_db_and_tables, engine, get_session
from .entitlement_routes import router as entitlement_router
from .feedback_routes import router as feedback_router
from .hq_routes import router as hq_router
from .manager_routes import router as manager_router
from .order_routes import router as order_router
from .permissions import PermissionService
from .seeds.plans import seed_plans, seed_super_admin
from .settings import settings
from .settings_routes import router as settings_router
from .staff_routes import router as staff_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

stripe.api_key = settings.stripe_secret_key or ""


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting HotelPro API ({settings.environment})")
    create_db_and_tables()
    with Session(engine) as session:
        seed_plans(session)
        seed_super_admin(session)
    yield
    logger.info("Shutting down HotelPro API")


app = FastAPI(
    title="HotelPro API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Parse CORS origins from environment (comma-separated)
cors_origins_list = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Logos and other tenant uploads
UPLOADS_DIR = Path(settings.uploads_dir)
UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=str(UPLOADS_DIR)), name="uploads")

app.include_router(access_code_router, tags=["Access Code"])
app.include_router(order_router, tags=["Orders"])
app.include_router(manager_router, tags=["Tables & Menu"])
app.include_router(settings_router, tags=["Settings"])
app.include_router(feedback_router, tags=["Feedback"])
app.include_router(complaint_router, tags=["Complaints"])
app.include_router(staff_router, tags=["Staff"])
app.include_router(entitlement_router, tags=["Entitlements"])
app.include_router(billing_router, tags=["Billing"])
app.include_router(hq_router, prefix="/hq", tags=["HQ"])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/db")
def health_db() -> dict:
    """Check database connection."""
    try:
        check_db_connection()
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        raise HTTPException(status_code=503, detail=f"Database error: {e}")
    return {"status": "ok", "database": "connected"}


# ============ AUTH ============

@app.post("/token")
def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Session = Depends(get_session)
):
    username = form_data.username.lower().strip()
    user = session.exec(select(models.User).where(models.User.username == username)).first()

    if not user or not security.verify_password(form_data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account is disabled",
        )
    security.ensure_tenant_active(session, user.client_id)

    access_token = security.create_access_token(
        data={"sub": user.username, "client_id": user.client_id},
        expires_delta=security.timedelta(minutes=settings.access_token_expire_minutes)
    )

    user.last_login = models.utc_now()
    session.add(user)
    log_audit(
        session,
        user.client_id,
        models.AuditAction.login_success,
        actor_id=user.id,
        details={"type": "staff", "username": user.username},
    )
    session.commit()

    response = JSONResponse(content={
        "status": "success",
        "message": "Logged in",
        "access_token": access_token,
        "token_type": "bearer",
    })
    response.set_cookie(
        key=security.STAFF_COOKIE,
        value=access_token,
        httponly=True,
        secure=settings.is_production,  # Only enforce HTTPS in production
        samesite="lax",
        path="/",
        max_age=settings.access_token_expire_minutes * 60
    )
    return response


@app.post("/logout")
def logout():
    response = JSONResponse(content={"status": "success", "message": "Logged out"})
    response.delete_cookie(key=security.STAFF_COOKIE, path="/")  # Must match path used in set_cookie
    return response


@app.get("/users/me")
def read_users_me(
    current_user: Annotated[models.User, Depends(security.get_current_user)]
) -> dict:
    return {
        "id": current_user.id,
        "username": current_user.username,
        "name": current_user.name,
        "role": current_user.role.value,
        "client_id": current_user.client_id,
        "permissions": sorted(PermissionService.get_user_permissions(current_user)),
        "total_orders": current_user.total_orders,
        "total_sales_cents": current_user.total_sales_cents,
    }
