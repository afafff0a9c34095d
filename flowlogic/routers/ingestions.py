from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from flowlogic.auth import Principal, Role, get_company_id, require_role
from flowlogic.config import Settings
from flowlogic.db import get_db
from flowlogic.dependencies import get_rule_config, get_settings
from flowlogic.errors import BadRequestError, NotFoundError
from flowlogic.models import Ingestion, Warehouse
from flowlogic.schemas import IngestionOut, IngestionRunOut, OFBizImportIn, RuleOutcomeOut
from flowlogic.services.alert_rules import AlertRuleConfig
from flowlogic.services.ingestion_service import current_ingestion_ids, list_ingestions, run_ingestion
from flowlogic.services.ofbiz_source import SOURCE_NAME

router = APIRouter(prefix='/api/ingestions', tags=['ingestions'])
import_access = require_role(Role.ADMIN, Role.MANAGER)


def _ingestion_out(ingestion: Ingestion, current_ids: set[int]) -> IngestionOut:
    out = IngestionOut.model_validate(ingestion)
    out.is_current = ingestion.id in current_ids
    return out


@router.get('', response_model=list[IngestionOut])
def list_batches(
    limit: int = Query(20, ge=1, le=100),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    current_ids = current_ingestion_ids(db, company_id=company_id)
    return [_ingestion_out(row, current_ids) for row in list_ingestions(db, company_id=company_id, limit=limit)]


@router.get('/{ingestion_id}', response_model=IngestionOut)
def get_batch(ingestion_id: int, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    ingestion = db.execute(
        select(Ingestion).where(Ingestion.id == ingestion_id, Ingestion.company_id == company_id)
    ).scalar_one_or_none()
    if ingestion is None:
        raise NotFoundError('Ingestion')
    return _ingestion_out(ingestion, current_ingestion_ids(db, company_id=company_id))


@router.post('/ofbiz', response_model=IngestionRunOut, status_code=201)
def import_ofbiz(
    payload: OFBizImportIn,
    _: Principal = Depends(import_access),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
    rule_config: AlertRuleConfig = Depends(get_rule_config),
):
    if payload.warehouse_id is not None:
        warehouse = db.get(Warehouse, payload.warehouse_id)
        if warehouse is None or warehouse.company_id != company_id:
            raise BadRequestError('Warehouse not found')

    result = run_ingestion(
        db,
        company_id=company_id,
        ingestion_key=payload.ingestion_key or f'ofbiz:{config.ofbiz_facility_id}',
        source=SOURCE_NAME,
        records=payload.records,
        products=payload.products,
        variances=payload.variances,
        rule_config=rule_config,
        warehouse_id=payload.warehouse_id,
        filename=payload.filename,
        error_sample_limit=config.ingestion_error_sample_limit,
    )
    return IngestionRunOut(
        ingestion_id=result.ingestion_id,
        status=result.status,
        record_count=result.record_count,
        snapshot_count=result.snapshot_count,
        error_count=result.error_count,
        alerts_created=result.alerts_created,
        alerts_skipped=result.alerts_skipped,
        variance_count=result.variance_count,
        rule_outcomes=[RuleOutcomeOut.model_validate(outcome) for outcome in result.rule_outcomes],
        errors=result.errors,
    )
