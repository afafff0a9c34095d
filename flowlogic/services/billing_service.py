from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

import stripe
from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from flowlogic.config import Settings
from flowlogic.errors import BadRequestError, NotFoundError, UpstreamError
from flowlogic.models import Company, InventorySnapshot, Principal, PrincipalRole, Warehouse
from flowlogic.security.trial import TRIAL_PLAN
from flowlogic.services.audit_service import log_audit
from flowlogic.services.ingestion_service import current_snapshot_filter
from flowlogic.services.settings_store import (
    PLAN_SETTING,
    TRIAL_ENDS_SETTING,
    read_company_settings,
    write_company_setting,
)

TRIAL_PERIOD_DAYS = 14


@dataclass(frozen=True)
class PlanFeatures:
    max_skus: int
    max_warehouses: int
    max_users: int
    ai_analysis: str
    support: str


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price: int | None
    interval: str
    features: PlanFeatures
    price_setting: str


UNLIMITED = -1

PLANS: dict[str, Plan] = {
    'starter': Plan(
        id='starter',
        name='Starter',
        price=499,
        interval='month',
        features=PlanFeatures(max_skus=10_000, max_warehouses=1, max_users=5, ai_analysis='basic', support='email'),
        price_setting='stripe_starter_price_id',
    ),
    'professional': Plan(
        id='professional',
        name='Professional',
        price=1499,
        interval='month',
        features=PlanFeatures(max_skus=100_000, max_warehouses=5, max_users=25, ai_analysis='advanced', support='priority'),
        price_setting='stripe_professional_price_id',
    ),
    'enterprise': Plan(
        id='enterprise',
        name='Enterprise',
        price=None,
        interval='month',
        features=PlanFeatures(
            max_skus=UNLIMITED,
            max_warehouses=UNLIMITED,
            max_users=UNLIMITED,
            ai_analysis='custom',
            support='24/7',
        ),
        price_setting='stripe_enterprise_price_id',
    ),
}
DEFAULT_PLAN = PLANS['starter']


def get_plan(plan_id: str | None) -> Plan | None:
    if not plan_id:
        return None
    return PLANS.get(plan_id.strip().lower())


def features_dict(plan: Plan | None) -> dict | None:
    return asdict(plan.features) if plan else None


def _from_epoch(value) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class BillingService:
    """Subscription management on top of Stripe.

    Subscription state lives in Stripe; the company row only caches the
    customer id and the last status reported by webhooks.
    """

    def __init__(self, db: Session, config: Settings) -> None:
        self.db = db
        self.config = config

    def _api_key(self) -> str:
        if not self.config.stripe_secret_key:
            raise UpstreamError('Billing is not configured', message='STRIPE_SECRET_KEY is not set')
        return self.config.stripe_secret_key

    def _company(self, company_id: int) -> Company:
        company = self.db.get(Company, company_id)
        if company is None:
            raise NotFoundError('Company')
        return company

    def _update_settings(self, company: Company, **values) -> None:
        # Reassign so the JSON column registers the change.
        company.settings = {**(company.settings or {}), **values}

    def _admin_contact(self, company: Company) -> Principal | None:
        return self.db.execute(
            select(Principal)
            .where(Principal.company_id == company.id, Principal.role == PrincipalRole.ADMIN)
            .order_by(Principal.id.asc())
            .limit(1)
        ).scalar_one_or_none()

    def create_customer(self, company: Company):
        admin = self._admin_contact(company)
        customer = stripe.Customer.create(
            api_key=self._api_key(),
            email=admin.email if admin else None,
            name=company.name,
            metadata={'companyId': str(company.id), 'userId': str(admin.id) if admin else ''},
        )
        self._update_settings(company, stripeCustomerId=customer.id)
        self.db.flush()
        return customer

    def get_or_create_customer(self, company_id: int):
        company = self._company(company_id)
        customer_id = (company.settings or {}).get('stripeCustomerId')
        if customer_id:
            try:
                customer = stripe.Customer.retrieve(customer_id, api_key=self._api_key())
            except stripe.InvalidRequestError:
                logger.warning('Stripe customer {} for company {} is gone; recreating', customer_id, company_id)
            else:
                if not customer.get('deleted'):
                    return customer
        return self.create_customer(company)

    def create_checkout_session(self, company_id: int, plan_id: str, success_url: str, cancel_url: str):
        plan = get_plan(plan_id)
        if plan is None:
            raise BadRequestError('Invalid plan')
        price_id = getattr(self.config, plan.price_setting)
        if not price_id:
            raise BadRequestError('Invalid plan')

        customer = self.get_or_create_customer(company_id)
        metadata = {'companyId': str(company_id), 'planId': plan.id}
        return stripe.checkout.Session.create(
            api_key=self._api_key(),
            customer=customer.id,
            mode='subscription',
            payment_method_types=['card'],
            line_items=[{'price': price_id, 'quantity': 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            subscription_data={'trial_period_days': TRIAL_PERIOD_DAYS, 'metadata': metadata},
            metadata=metadata,
        )

    def create_portal_session(self, company_id: int, return_url: str):
        customer = self.get_or_create_customer(company_id)
        return stripe.billing_portal.Session.create(api_key=self._api_key(), customer=customer.id, return_url=return_url)

    def get_subscription_status(self, company_id: int) -> dict:
        company = self._company(company_id)
        customer_id = (company.settings or {}).get('stripeCustomerId')
        if not customer_id:
            trial_ends_at = None
            if company.created_at is not None:
                created_at = company.created_at if company.created_at.tzinfo else company.created_at.replace(tzinfo=timezone.utc)
                trial_ends_at = created_at + timedelta(days=TRIAL_PERIOD_DAYS)
            return {
                'status': 'trial',
                'plan': DEFAULT_PLAN.id,
                'trial_ends_at': trial_ends_at,
                'features': features_dict(DEFAULT_PLAN),
            }

        try:
            subscriptions = stripe.Subscription.list(api_key=self._api_key(), customer=customer_id, status='all', limit=1)
        except stripe.StripeError as exc:
            logger.error('Stripe subscription lookup failed for company {}: {}', company_id, exc)
            return {'status': 'error', 'plan': None, 'features': features_dict(DEFAULT_PLAN)}

        if not subscriptions.data:
            return {'status': 'expired', 'plan': None, 'features': None}

        subscription = subscriptions.data[0]
        plan = get_plan((subscription.get('metadata') or {}).get('planId')) or DEFAULT_PLAN
        return {
            'status': subscription.get('status'),
            'plan': plan.id,
            'current_period_end': _from_epoch(subscription.get('current_period_end')),
            'cancel_at_period_end': bool(subscription.get('cancel_at_period_end')),
            'features': features_dict(plan),
        }

    def get_usage(self, company_id: int) -> dict:
        sku_count = self.db.execute(
            select(func.count(func.distinct(InventorySnapshot.sku))).where(
                InventorySnapshot.ingestion_id.in_(current_snapshot_filter(company_id))
            )
        ).scalar_one()
        warehouse_count = self.db.execute(
            select(func.count()).select_from(Warehouse).where(Warehouse.company_id == company_id)
        ).scalar_one()
        user_count = self.db.execute(
            select(func.count()).select_from(Principal).where(Principal.company_id == company_id)
        ).scalar_one()
        subscription = self.get_subscription_status(company_id)
        return {
            'usage': {'skus': sku_count, 'warehouses': warehouse_count, 'users': user_count},
            'limits': subscription.get('features') or features_dict(DEFAULT_PLAN),
            'plan': subscription.get('plan'),
        }

    def construct_event(self, payload: bytes, signature: str | None):
        secret = self.config.stripe_webhook_secret
        if not secret:
            raise UpstreamError('Webhook signing secret is not configured')
        if not signature:
            raise BadRequestError('Webhook Error: missing Stripe-Signature header')
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning('Webhook signature verification failed: {}', exc)
            raise BadRequestError(f'Webhook Error: {exc}') from exc

    def _webhook_company(self, obj: Mapping) -> Company | None:
        raw_id = (obj.get('metadata') or {}).get('companyId')
        if not raw_id:
            return None
        try:
            company_id = int(raw_id)
        except (TypeError, ValueError):
            logger.warning('Webhook carried a non-numeric companyId {!r}', raw_id)
            return None
        company = self.db.get(Company, company_id)
        if company is None:
            logger.warning('Webhook referenced unknown company {}', company_id)
        return company

    def handle_webhook(self, event: Mapping) -> None:
        event_type = event.get('type')
        obj = (event.get('data') or {}).get('object') or {}

        if event_type == 'checkout.session.completed':
            company = self._webhook_company(obj)
            plan = get_plan((obj.get('metadata') or {}).get('planId'))
            if company is None or plan is None:
                return
            self._update_settings(
                company,
                plan=plan.id,
                subscriptionStatus='active',
                stripeSubscriptionId=obj.get('subscription'),
            )
            write_company_setting(self.db, company.id, PLAN_SETTING, plan.id)
            log_audit(
                self.db,
                company_id=company.id,
                actor_principal_id=None,
                action='SUBSCRIPTION_CREATED',
                entity_type='COMPANY',
                entity_id=str(company.id),
                metadata={'planId': plan.id, 'sessionId': obj.get('id')},
            )
        elif event_type == 'customer.subscription.updated':
            company = self._webhook_company(obj)
            if company is None:
                return
            period_end = _from_epoch(obj.get('current_period_end'))
            self._update_settings(
                company,
                subscriptionStatus=obj.get('status'),
                currentPeriodEnd=period_end.isoformat() if period_end else None,
            )
        elif event_type == 'customer.subscription.deleted':
            company = self._webhook_company(obj)
            if company is None:
                return
            self._update_settings(company, subscriptionStatus='canceled', plan=None)
            # Back under the trial gate; a company that never had a trial end is expired now.
            write_company_setting(self.db, company.id, PLAN_SETTING, TRIAL_PLAN)
            if TRIAL_ENDS_SETTING not in read_company_settings(self.db, company.id, (TRIAL_ENDS_SETTING,)):
                ended_at = datetime.now(tz=timezone.utc).isoformat().replace('+00:00', 'Z')
                write_company_setting(self.db, company.id, TRIAL_ENDS_SETTING, ended_at)
            log_audit(
                self.db,
                company_id=company.id,
                actor_principal_id=None,
                action='SUBSCRIPTION_CANCELED',
                entity_type='COMPANY',
                entity_id=str(company.id),
                metadata={'subscriptionId': obj.get('id')},
            )
        elif event_type == 'invoice.payment_failed':
            logger.warning('Payment failed for invoice {}', obj.get('id'))
        else:
            logger.debug('Ignoring Stripe event {}', event_type)
