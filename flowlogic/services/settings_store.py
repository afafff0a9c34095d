from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from flowlogic.models import SystemSetting

PLAN_SETTING = 'plan'
TRIAL_ENDS_SETTING = 'trialEndsAt'
TRIAL_STARTED_SETTING = 'trialStartedAt'
COMPANY_SIZE_SETTING = 'companySize'


def company_key(company_id: int, name: str) -> str:
    return f'company.{company_id}.{name}'


def read_settings(db: Session, keys: Iterable[str]) -> dict[str, str]:
    keys = list(keys)
    if not keys:
        return {}
    rows = db.execute(select(SystemSetting.key, SystemSetting.value).where(SystemSetting.key.in_(keys))).all()
    return {key: value for key, value in rows}


def read_company_settings(db: Session, company_id: int, names: Iterable[str]) -> dict[str, str]:
    """Fetch several per-company settings in a single query, keyed by short name."""
    by_key = {company_key(company_id, name): name for name in names}
    found = read_settings(db, by_key.keys())
    return {by_key[key]: value for key, value in found.items()}


def write_setting(db: Session, key: str, value: str, *, category: str | None = None) -> SystemSetting:
    setting = db.execute(select(SystemSetting).where(SystemSetting.key == key)).scalar_one_or_none()
    if setting is None:
        setting = SystemSetting(key=key, value=value, category=category)
        db.add(setting)
    else:
        setting.value = value
        setting.updated_at = func.now()
        if category is not None:
            setting.category = category
    return setting


def write_company_setting(db: Session, company_id: int, name: str, value: str, *, category: str = 'billing') -> SystemSetting:
    return write_setting(db, company_key(company_id, name), value, category=category)
