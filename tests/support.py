from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.orm import Session, sessionmaker

from flowlogic.config import Settings
from flowlogic.db import build_engine, build_session_factory
from flowlogic.models import Base, Company, Principal, PrincipalRole, Warehouse
from flowlogic.security.passwords import hash_password
from flowlogic.services.alert_rules import SnapshotView
from flowlogic.services.settings_store import PLAN_SETTING, TRIAL_ENDS_SETTING, write_company_setting

TEST_PASSWORD = 'correct-horse'


def make_settings(**overrides) -> Settings:
    values = {
        'database_url': 'sqlite://',
        'log_level': 'WARNING',
        'stripe_secret_key': 'sk_test_123',
        'stripe_webhook_secret': 'whsec_test',
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def memory_database():
    engine = build_engine('sqlite://')
    Base.metadata.create_all(engine)
    return engine, build_session_factory(engine)


def snap(sku: str, qty, *, atp=None, location: str = 'L1', location_type: str = 'PICK', cost=None, plate=None, name=None):
    qty = Decimal(str(qty))
    return SnapshotView(
        sku=sku,
        location_code=location,
        location_type=location_type,
        quantity_on_hand=qty,
        quantity_available=qty if atp is None else Decimal(str(atp)),
        unit_cost=None if cost is None else Decimal(str(cost)),
        license_plate=plate,
        product_name=name,
    )


def create_company(
    db: Session,
    *,
    code: str = 'ACME',
    plan: str | None = 'trial',
    trial_ends_at: datetime | None = None,
) -> Company:
    company = Company(code=code, name=f'{code} Inc', settings={})
    db.add(company)
    db.flush()
    if plan is not None:
        write_company_setting(db, company.id, PLAN_SETTING, plan)
        ends_at = trial_ends_at or datetime.now(tz=timezone.utc) + timedelta(days=7)
        write_company_setting(db, company.id, TRIAL_ENDS_SETTING, ends_at.isoformat())
    db.add(Warehouse(company_id=company.id, code='WH01', name='Main Warehouse', active=True))
    db.flush()
    return company


def create_principal(
    db: Session,
    company: Company,
    *,
    username: str = 'admin',
    role: PrincipalRole = PrincipalRole.ADMIN,
    active: bool = True,
) -> Principal:
    principal = Principal(
        company_id=company.id,
        username=username,
        email=f'{username}@{company.code.lower()}.example',
        password_hash=hash_password(TEST_PASSWORD),
        first_name=username.title(),
        last_name='Tester',
        role=role,
        active=active,
    )
    db.add(principal)
    db.flush()
    return principal


def seed_company(session_factory: sessionmaker, **company_kwargs) -> tuple[int, int]:
    """Create a company with one admin and commit; returns (company_id, principal_id)."""
    with session_factory() as db:
        company = create_company(db, **company_kwargs)
        principal = create_principal(db, company)
        db.commit()
        return company.id, principal.id
