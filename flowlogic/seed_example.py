from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from flowlogic.config import settings
from flowlogic.db import build_session_factory, engine_from_settings
from flowlogic.models import Base, Company, Principal, PrincipalRole, Warehouse
from flowlogic.security.passwords import hash_password
from flowlogic.services.settings_store import (
    COMPANY_SIZE_SETTING,
    PLAN_SETTING,
    TRIAL_ENDS_SETTING,
    TRIAL_STARTED_SETTING,
    write_company_setting,
)

DEMO_COMPANY_CODE = 'DEMO'


def seed() -> None:
    engine = engine_from_settings(settings)
    Base.metadata.create_all(engine)
    try:
        with build_session_factory(engine)() as db:
            company = db.execute(select(Company).where(Company.code == DEMO_COMPANY_CODE)).scalar_one_or_none()
            if not company:
                company = Company(code=DEMO_COMPANY_CODE, name='Demo Distribution Co', settings={})
                db.add(company)
                db.flush()

                started_at = datetime.now(tz=timezone.utc)
                ends_at = started_at + timedelta(days=settings.trial_days)
                write_company_setting(db, company.id, PLAN_SETTING, 'trial')
                write_company_setting(db, company.id, COMPANY_SIZE_SETTING, '11-50')
                write_company_setting(db, company.id, TRIAL_STARTED_SETTING, started_at.isoformat())
                write_company_setting(db, company.id, TRIAL_ENDS_SETTING, ends_at.isoformat())

            warehouse = db.execute(
                select(Warehouse).where(Warehouse.company_id == company.id, Warehouse.code == 'WH01')
            ).scalar_one_or_none()
            if not warehouse:
                db.add(Warehouse(company_id=company.id, code='WH01', name='Main Warehouse', active=True))

            admin = db.execute(select(Principal).where(Principal.username == 'admin')).scalar_one_or_none()
            if not admin:
                db.add(
                    Principal(
                        company_id=company.id,
                        username='admin',
                        email='admin@flowlogic.local',
                        password_hash=hash_password('adminpass'),
                        first_name='Demo',
                        last_name='Admin',
                        role=PrincipalRole.ADMIN,
                        active=True,
                    )
                )

            operator = db.execute(select(Principal).where(Principal.username == 'operator')).scalar_one_or_none()
            if not operator:
                db.add(
                    Principal(
                        company_id=company.id,
                        username='operator',
                        email='operator@flowlogic.local',
                        password_hash=hash_password('operatorpass'),
                        first_name='Demo',
                        last_name='Operator',
                        role=PrincipalRole.OPERATOR,
                        active=True,
                    )
                )

            db.commit()
    finally:
        engine.dispose()


def main() -> None:
    seed()
    print('Seed data inserted/verified.')


if __name__ == '__main__':
    main()
