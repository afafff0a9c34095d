from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from flowlogic.errors import ConflictError, NotFoundError, UnauthorizedError
from flowlogic.models import Company, Principal, PrincipalRole, Warehouse
from flowlogic.security.passwords import check_password_policy, hash_password, verify_password
from flowlogic.services.audit_service import log_audit
from flowlogic.services.settings_store import (
    COMPANY_SIZE_SETTING,
    PLAN_SETTING,
    TRIAL_ENDS_SETTING,
    TRIAL_STARTED_SETTING,
    write_company_setting,
)

DEFAULT_WAREHOUSE_CODE = 'WH01'
DEFAULT_WAREHOUSE_NAME = 'Main Warehouse'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _iso(value: datetime) -> str:
    return value.isoformat().replace('+00:00', 'Z')


def company_code_for(name: str) -> str:
    prefix = re.sub(r'[^A-Z0-9]', '', name.upper())[:10] or 'COMPANY'
    return f'{prefix}{secrets.token_hex(2).upper()}'


def _unused_username(db: Session, email: str) -> str:
    base = re.sub(r'[^a-z0-9]', '', email.split('@')[0].lower()) or 'user'
    candidate = base
    suffix = 1
    while db.execute(select(Principal.id).where(Principal.username == candidate)).first() is not None:
        suffix += 1
        candidate = f'{base}{suffix}'
    return candidate


def find_active_principal(db: Session, login: str) -> Principal | None:
    login = login.strip()
    return db.execute(
        select(Principal).where(
            or_(func.lower(Principal.username) == login.lower(), func.lower(Principal.email) == login.lower()),
            Principal.active.is_(True),
        )
    ).scalar_one_or_none()


def authenticate(db: Session, login: str, password: str) -> Principal:
    principal = find_active_principal(db, login)
    if principal is None or not verify_password(password, principal.password_hash):
        raise UnauthorizedError('Authentication failed', message='Invalid username or password')
    principal.last_login_at = _now()
    return principal


def signup_company(
    db: Session,
    *,
    first_name: str,
    last_name: str,
    email: str,
    password: str,
    company_name: str,
    company_size: str | None = None,
    trial_days: int = 14,
    ip: str | None = None,
) -> Principal:
    """Create a company on a trial plan with its default warehouse and admin user."""
    check_password_policy(password)
    email = email.strip().lower()
    existing = db.execute(select(Principal.id).where(func.lower(Principal.email) == email)).first()
    if existing is not None:
        raise ConflictError(
            'Email already registered',
            message='An account with this email already exists. Please sign in or use a different email.',
        )

    company = Company(code=company_code_for(company_name), name=company_name.strip(), settings={})
    db.add(company)
    db.flush()

    started_at = _now()
    write_company_setting(db, company.id, PLAN_SETTING, 'trial')
    write_company_setting(db, company.id, COMPANY_SIZE_SETTING, company_size or 'unknown')
    write_company_setting(db, company.id, TRIAL_STARTED_SETTING, _iso(started_at))
    write_company_setting(db, company.id, TRIAL_ENDS_SETTING, _iso(started_at + timedelta(days=trial_days)))

    db.add(Warehouse(company_id=company.id, code=DEFAULT_WAREHOUSE_CODE, name=DEFAULT_WAREHOUSE_NAME, active=True))

    principal = Principal(
        company_id=company.id,
        username=_unused_username(db, email),
        email=email,
        password_hash=hash_password(password),
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        role=PrincipalRole.ADMIN,
        active=True,
    )
    db.add(principal)
    db.flush()
    log_audit(
        db,
        company_id=company.id,
        actor_principal_id=principal.id,
        action='COMPANY_SIGNUP',
        entity_type='COMPANY',
        entity_id=str(company.id),
        ip=ip,
        metadata={'companySize': company_size or 'unknown'},
    )
    return principal


def change_password(db: Session, *, principal_id: int, current_password: str, new_password: str) -> None:
    principal = db.get(Principal, principal_id)
    if principal is None:
        raise NotFoundError('User')
    if not verify_password(current_password, principal.password_hash):
        raise UnauthorizedError('Invalid password', message='Current password is incorrect')
    check_password_policy(new_password)
    principal.password_hash = hash_password(new_password)
    principal.updated_at = _now()
