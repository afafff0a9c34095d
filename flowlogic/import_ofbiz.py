from __future__ import annotations

import argparse
from pathlib import Path

from sqlalchemy import Engine, select

from flowlogic.config import settings
from flowlogic.db import build_session_factory, engine_from_settings
from flowlogic.logging import configure_logging
from flowlogic.models import Company, Warehouse
from flowlogic.services.alert_rules import AlertRuleConfig
from flowlogic.services.ingestion_service import IngestionResult, run_ingestion
from flowlogic.services.ofbiz_source import SOURCE_NAME, ExportFileSource, InventorySource, OFBizClient


def import_inventory(
    source: InventorySource,
    *,
    company_code: str,
    ingestion_key: str,
    warehouse_code: str | None = None,
    filename: str | None = None,
    engine: Engine | None = None,
) -> IngestionResult:
    """Fetch one export and ingest it. An engine passed in is left open."""
    export = source.fetch()
    owns_engine = engine is None
    if engine is None:
        engine = engine_from_settings(settings)
    try:
        with build_session_factory(engine)() as db:
            company = db.execute(select(Company).where(Company.code == company_code)).scalar_one_or_none()
            if company is None:
                raise RuntimeError(f'Unknown company code: {company_code}')

            warehouse_id = None
            if warehouse_code:
                warehouse = db.execute(
                    select(Warehouse).where(Warehouse.company_id == company.id, Warehouse.code == warehouse_code)
                ).scalar_one_or_none()
                if warehouse is None:
                    raise RuntimeError(f'Unknown warehouse {warehouse_code} for company {company_code}')
                warehouse_id = warehouse.id

            return run_ingestion(
                db,
                company_id=company.id,
                ingestion_key=ingestion_key,
                source=SOURCE_NAME,
                records=export.records,
                products=export.products,
                variances=export.variances,
                rule_config=AlertRuleConfig.from_settings(settings),
                warehouse_id=warehouse_id,
                filename=filename,
                error_sample_limit=settings.ingestion_error_sample_limit,
            )
    finally:
        if owns_engine:
            engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description='Import an OFBiz inventory snapshot and derive alerts.')
    parser.add_argument('--company', required=True, help='Company code the snapshot belongs to.')
    parser.add_argument('--warehouse', help='Warehouse code to attach the batch and its alerts to.')
    parser.add_argument('--key', help='Ingestion key of the feed (default: ofbiz:<facility id>).')
    parser.add_argument('--inventory', type=Path, help='Path to the exported inventory items JSON.')
    parser.add_argument('--products', type=Path, help='Path to the exported products JSON.')
    parser.add_argument('--variances', type=Path, help='Path to the exported inventory item variances JSON.')
    parser.add_argument(
        '--from-api',
        action='store_true',
        help='Pull inventory from the OFBiz REST API instead of export files.',
    )
    args = parser.parse_args()

    configure_logging()
    if args.from_api:
        source: InventorySource = OFBizClient(settings)
        filename = f'{settings.ofbiz_base_url} ({settings.ofbiz_facility_id})'
    elif args.inventory:
        source = ExportFileSource(args.inventory, args.products, args.variances)
        filename = args.inventory.name
    else:
        parser.error('either --inventory or --from-api is required')

    result = import_inventory(
        source,
        company_code=args.company,
        ingestion_key=args.key or f'ofbiz:{settings.ofbiz_facility_id}',
        warehouse_code=args.warehouse,
        filename=filename,
    )
    failed_rules = [outcome.rule for outcome in result.rule_outcomes if not outcome.ok]
    print(
        f'OFBiz import complete: ingestion={result.ingestion_id}, snapshots={result.snapshot_count}, '
        f'record_errors={result.error_count}, variances={result.variance_count}, '
        f'alerts_created={result.alerts_created}, alerts_skipped={result.alerts_skipped}, '
        f'failed_rules={failed_rules or "none"}'
    )


if __name__ == '__main__':
    main()
