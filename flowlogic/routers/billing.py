from __future__ import annotations

import stripe
from fastapi import APIRouter, Depends, Request
from loguru import logger
from sqlalchemy.orm import Session

from flowlogic.auth import Principal, Role, get_company_id, require_role
from flowlogic.config import Settings
from flowlogic.db import get_db
from flowlogic.dependencies import get_settings
from flowlogic.errors import UpstreamError
from flowlogic.schemas import BillingSessionOut, CheckoutIn, PlanOut, PlansOut, SubscriptionOut, UsageOut, WebhookAck
from flowlogic.services.billing_service import PLANS, BillingService

router = APIRouter(prefix='/api/billing', tags=['billing'])
billing_admin = require_role(Role.ADMIN, Role.MANAGER)


def get_billing_service(db: Session = Depends(get_db), config: Settings = Depends(get_settings)) -> BillingService:
    return BillingService(db, config)


@router.get('/plans', response_model=PlansOut)
def plans():
    return PlansOut(plans=[PlanOut.model_validate(plan) for plan in PLANS.values()])


@router.get('/subscription', response_model=SubscriptionOut)
def subscription(company_id: int = Depends(get_company_id), billing: BillingService = Depends(get_billing_service)):
    return billing.get_subscription_status(company_id)


@router.post('/checkout', response_model=BillingSessionOut)
def checkout(
    payload: CheckoutIn,
    _: Principal = Depends(billing_admin),
    company_id: int = Depends(get_company_id),
    billing: BillingService = Depends(get_billing_service),
    config: Settings = Depends(get_settings),
):
    base_url = config.app_url.rstrip('/')
    try:
        session = billing.create_checkout_session(
            company_id,
            payload.plan_id,
            success_url=f'{base_url}/dashboard?checkout=success',
            cancel_url=f'{base_url}/dashboard?checkout=canceled',
        )
    except stripe.StripeError as exc:
        logger.error('Checkout session failed for company {}: {}', company_id, exc)
        raise UpstreamError('Failed to create checkout session') from exc
    billing.db.commit()
    return BillingSessionOut(session_id=session.id, url=session.url)


@router.post('/portal', response_model=BillingSessionOut)
def portal(
    _: Principal = Depends(billing_admin),
    company_id: int = Depends(get_company_id),
    billing: BillingService = Depends(get_billing_service),
    config: Settings = Depends(get_settings),
):
    try:
        session = billing.create_portal_session(company_id, return_url=f"{config.app_url.rstrip('/')}/dashboard")
    except stripe.StripeError as exc:
        logger.error('Portal session failed for company {}: {}', company_id, exc)
        raise UpstreamError('Failed to create portal session') from exc
    billing.db.commit()
    return BillingSessionOut(url=session.url)


@router.post('/webhook', response_model=WebhookAck)
async def webhook(request: Request, billing: BillingService = Depends(get_billing_service)):
    payload = await request.body()
    event = billing.construct_event(payload, request.headers.get('stripe-signature'))
    billing.handle_webhook(event)
    billing.db.commit()
    return WebhookAck()


@router.get('/usage', response_model=UsageOut)
def usage(company_id: int = Depends(get_company_id), billing: BillingService = Depends(get_billing_service)):
    return billing.get_usage(company_id)
