import json
import logging
from datetime import timedelta
from typing import Annotated

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlmodel import Session, select

from . import models
from .audit import log_audit
from .billing_models import (
    BillingCycle,
    CheckoutRequest,
    Plan,
    SaaSPayment,
    Subscription,
    SubscriptionAudit,
    SubscriptionStatus,
)
from .db import get_session
from .entitlements import sync_entitlements_to_tenant
from .models import ClientStatus, utc_now
from .permissions import Permissions
from .security import PermissionChecker
from .settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()

PERIOD_DAYS = {BillingCycle.monthly: 30, BillingCycle.yearly: 365}
# Delayed methods (bank debits) complete first and pay later
CHECKOUT_PAID_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")


def _cycle_amount(plan: Plan, cycle: BillingCycle) -> int:
    if cycle == BillingCycle.yearly:
        return plan.price_cents * 12
    return plan.price_cents


@router.post("/billing/checkout-session")
def create_checkout_session(
    body: CheckoutRequest,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.BILLING_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    """Start a Stripe Checkout for a plan; the webhook completes the upgrade."""
    if not settings.stripe_secret_key:
        raise HTTPException(status_code=400, detail="Stripe is not configured")

    plan = session.exec(
        select(Plan).where(Plan.code == body.plan_code, Plan.is_active == True)  # noqa: E712
    ).first()
    if not plan:
        raise HTTPException(status_code=404, detail="Plan not found")

    client = session.get(models.Client, current_user.client_id)
    amount = _cycle_amount(plan, body.billing_cycle)

    try:
        checkout = stripe.checkout.Session.create(
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": settings.stripe_currency,
                    "unit_amount": amount,
                    "product_data": {"name": f"{plan.name} ({body.billing_cycle.value})"},
                },
                "quantity": 1,
            }],
            customer_email=client.owner_email if client else None,
            success_url=f"{settings.base_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.base_url}/billing/cancelled",
            metadata={
                "client_id": str(current_user.client_id),
                "plan_code": plan.code.value,
                "billing_cycle": body.billing_cycle.value,
            },
            api_key=settings.stripe_secret_key,
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout failed for client {current_user.client_id}: {e}")
        raise HTTPException(status_code=502, detail="Payment provider error")

    logger.info(f"Checkout {checkout.id} started for client {current_user.client_id} ({plan.code.value})")
    return {"checkout_url": checkout.url, "session_id": checkout.id, "amount_cents": amount}


def _complete_checkout(session: Session, checkout: dict) -> None:
    session_id = checkout.get("id")
    if checkout.get("payment_status") != "paid":
        logger.info(f"Checkout {session_id} not paid yet ({checkout.get('payment_status')}), waiting")
        return

    metadata = checkout.get("metadata") or {}
    try:
        client_id = int(metadata["client_id"])
        plan_code = models.ClientPlan(metadata["plan_code"])
        cycle = BillingCycle(metadata.get("billing_cycle") or BillingCycle.monthly.value)
    except (KeyError, TypeError, ValueError) as e:
        logger.error(f"Checkout {session_id} has unusable metadata {metadata}: {e}")
        return

    existing = session.exec(
        select(SaaSPayment).where(SaaSPayment.stripe_session_id == checkout["id"])
    ).first()
    if existing:
        logger.info(f"Checkout {checkout['id']} already processed")
        return

    client = session.get(models.Client, client_id)
    plan = session.exec(select(Plan).where(Plan.code == plan_code)).first()
    if client is None or plan is None:
        logger.error(f"Checkout {checkout['id']} references unknown client {client_id} or plan {plan_code.value}")
        return

    now = utc_now()
    subscription = session.exec(
        select(Subscription).where(Subscription.client_id == client_id)
    ).first()
    if subscription is None:
        subscription = Subscription(client_id=client_id, plan_id=plan.id, version=0)
        session.add(subscription)
        session.flush()
        previous_plan_id, previous_status = None, None
    else:
        previous_plan_id, previous_status = subscription.plan_id, subscription.status

    subscription.plan_id = plan.id
    subscription.status = SubscriptionStatus.active
    subscription.billing_cycle = cycle
    subscription.current_period_end = now + timedelta(days=PERIOD_DAYS[cycle])
    subscription.grace_until = None
    subscription.version += 1
    subscription.updated_at = now
    session.add(subscription)
    session.add(
        SubscriptionAudit(
            subscription_id=subscription.id,
            previous_plan_id=previous_plan_id,
            new_plan_id=plan.id,
            previous_status=previous_status,
            new_status=SubscriptionStatus.active,
            reason="stripe_checkout",
            changed_by="stripe",
            details={"session_id": checkout["id"]},
        )
    )
    session.add(
        SaaSPayment(
            client_id=client_id,
            stripe_session_id=checkout["id"],
            stripe_payment_intent_id=checkout.get("payment_intent"),
            amount_cents=checkout.get("amount_total") or 0,
            currency=checkout.get("currency") or settings.stripe_currency,
            plan_code=plan_code,
            billing_cycle=cycle,
        )
    )

    if client.plan != plan_code:
        log_audit(
            session,
            client_id,
            models.AuditAction.plan_changed,
            details={"from": client.plan.value, "to": plan_code.value, "source": "stripe"},
        )
    client.plan = plan_code
    if client.status in (ClientStatus.trial, ClientStatus.suspended):
        client.status = ClientStatus.active
    client.updated_at = now
    session.add(client)
    session.commit()

    sync_entitlements_to_tenant(session, client_id)
    logger.info(f"Client {client_id} upgraded to {plan_code.value} via checkout {checkout['id']}")


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    session: Session = Depends(get_session),
) -> dict:
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=400, detail="Webhook secret not configured")

    payload = await request.body()
    try:
        stripe.Webhook.construct_event(payload, stripe_signature, settings.stripe_webhook_secret)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        raise HTTPException(status_code=400, detail="Invalid signature")

    # Signature checked; read the event as plain JSON
    event = json.loads(payload)
    event_type = event["type"]
    if event_type in CHECKOUT_PAID_EVENTS:
        _complete_checkout(session, event["data"]["object"])
    else:
        logger.info(f"Ignoring Stripe event {event_type}")
    return {"received": True}
