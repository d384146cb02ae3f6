import logging

from sqlmodel import Session, select

from ..billing_models import Plan
from ..entitlements import DEFAULT_PLANS
from ..models import SuperAdmin
from ..security import get_password_hash
from ..settings import settings

logger = logging.getLogger(__name__)


def seed_plans(session: Session) -> dict[str, Plan]:
    """Create the default plan catalogue if it doesn't exist."""
    created_plans = {}

    for code, plan_data in DEFAULT_PLANS.items():
        plan = session.exec(select(Plan).where(Plan.code == code)).first()

        if not plan:
            plan = Plan(
                name=plan_data["name"],
                code=code,
                price_cents=plan_data["price_cents"],
                features=dict(plan_data["features"]),
                limits=dict(plan_data["limits"]),
            )
            session.add(plan)
            session.commit()
            session.refresh(plan)
            logger.info(f"Seeded plan {plan.name}")

        created_plans[code.value] = plan

    return created_plans


def seed_super_admin(session: Session) -> SuperAdmin | None:
    """Create the HQ bootstrap account from HQ_ADMIN_EMAIL / HQ_ADMIN_PASSWORD."""
    if not settings.hq_admin_email or not settings.hq_admin_password:
        return None

    email = settings.hq_admin_email.lower().strip()
    admin = session.exec(select(SuperAdmin).where(SuperAdmin.email == email)).first()
    if admin:
        return admin

    admin = SuperAdmin(
        email=email,
        name="HQ Admin",
        password_hash=get_password_hash(settings.hq_admin_password),
    )
    session.add(admin)
    session.commit()
    session.refresh(admin)
    logger.info(f"Seeded HQ admin {email}")
    return admin
