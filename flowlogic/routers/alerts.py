from __future__ import annotations

import math

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session

from flowlogic.auth import Principal, Role, get_company_id, require_role
from flowlogic.db import get_db
from flowlogic.dependencies import get_client_ip, get_rule_config
from flowlogic.errors import BadRequestError
from flowlogic.models import AlertSeverity, AlertType, Warehouse
from flowlogic.schemas import (
    AlertCreateIn,
    AlertListOut,
    AlertOut,
    AlertSummaryOut,
    BulkReadIn,
    CleanupOut,
    CountOut,
    GenerateAlertsIn,
    GeneratedAlertsOut,
    MarkAllReadIn,
    Pagination,
    ResolveIn,
    RuleOutcomeOut,
)
from flowlogic.services import alert_service
from flowlogic.services.alert_rules import AlertDraft, AlertRuleConfig
from flowlogic.services.alert_service import AlertFilters
from flowlogic.services.ingestion_service import regenerate_alerts

router = APIRouter(prefix='/api/alerts', tags=['alerts'])
admin_access = require_role(Role.ADMIN, Role.MANAGER)
write_access = require_role(Role.ADMIN, Role.MANAGER, Role.OPERATOR)


@router.get('', response_model=AlertListOut)
def list_alerts(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    warehouse_id: int | None = Query(None, alias='warehouseId'),
    alert_type: AlertType | None = Query(None, alias='type'),
    severity: AlertSeverity | None = None,
    is_read: bool | None = Query(None, alias='isRead'),
    is_resolved: bool | None = Query(None, alias='isResolved'),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    filters = AlertFilters(
        warehouse_id=warehouse_id,
        type=alert_type,
        severity=severity,
        is_read=is_read,
        is_resolved=is_resolved,
    )
    rows, total = alert_service.list_alerts(db, company_id=company_id, filters=filters, page=page, limit=limit)
    return AlertListOut(
        data=[AlertOut.model_validate(row) for row in rows],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


@router.get('/summary', response_model=AlertSummaryOut)
def summary(
    warehouse_id: int | None = Query(None, alias='warehouseId'),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    return alert_service.alert_summary(db, company_id=company_id, warehouse_id=warehouse_id)


@router.get('/unread', response_model=list[AlertOut])
def unread(
    warehouse_id: int | None = Query(None, alias='warehouseId'),
    limit: int = Query(20, ge=1, le=100),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    return alert_service.list_unread(db, company_id=company_id, warehouse_id=warehouse_id, limit=limit)


@router.get('/critical', response_model=list[AlertOut])
def critical(
    warehouse_id: int | None = Query(None, alias='warehouseId'),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    return alert_service.list_critical(db, company_id=company_id, warehouse_id=warehouse_id)


@router.patch('/bulk-read', response_model=CountOut)
def bulk_read(payload: BulkReadIn, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    count = alert_service.mark_many_read(db, company_id=company_id, alert_ids=payload.alert_ids)
    db.commit()
    return CountOut(count=count)


@router.patch('/mark-all-read', response_model=CountOut)
def mark_all_read(
    payload: MarkAllReadIn | None = Body(None),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    warehouse_id = payload.warehouse_id if payload else None
    count = alert_service.mark_all_read(db, company_id=company_id, warehouse_id=warehouse_id)
    db.commit()
    return CountOut(count=count)


@router.delete('/cleanup', response_model=CleanupOut)
def cleanup(
    days_old: int = Query(30, alias='daysOld', ge=1),
    _: Principal = Depends(admin_access),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    deleted = alert_service.cleanup_resolved(db, company_id=company_id, days_old=days_old)
    db.commit()
    return CleanupOut(deleted=deleted)


@router.post('', response_model=AlertOut, status_code=201)
def create_alert(
    payload: AlertCreateIn,
    request: Request,
    principal: Principal = Depends(write_access),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    draft = AlertDraft(
        type=payload.type,
        severity=payload.severity,
        title=payload.title,
        message=payload.message,
        sku=payload.sku,
        location_code=payload.location_code,
    )
    alert = alert_service.create_alert(
        db,
        company_id=company_id,
        principal_id=principal.id,
        draft=draft,
        warehouse_id=payload.warehouse_id,
        ip=get_client_ip(request),
    )
    db.commit()
    return alert


@router.post('/generate', response_model=GeneratedAlertsOut)
def generate(
    payload: GenerateAlertsIn | None = Body(None),
    _: Principal = Depends(write_access),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
    rule_config: AlertRuleConfig = Depends(get_rule_config),
):
    warehouse_id = payload.warehouse_id if payload else None
    if warehouse_id is not None:
        warehouse = db.get(Warehouse, warehouse_id)
        if warehouse is None or warehouse.company_id != company_id:
            raise BadRequestError('Warehouse not found')

    result = regenerate_alerts(db, company_id=company_id, rule_config=rule_config, warehouse_id=warehouse_id)
    db.commit()
    return GeneratedAlertsOut(
        snapshot_count=result.snapshot_count,
        generated=len(result.created),
        skipped=result.skipped,
        alerts=[AlertOut.model_validate(alert) for alert in result.created],
        rule_outcomes=[RuleOutcomeOut.model_validate(outcome) for outcome in result.rule_outcomes],
    )


@router.get('/{alert_id}', response_model=AlertOut)
def get_alert(alert_id: int, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    return alert_service.get_alert(db, company_id=company_id, alert_id=alert_id)


@router.patch('/{alert_id}/read', response_model=AlertOut)
def mark_read(
    alert_id: int,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    alert = alert_service.mark_read(db, company_id=company_id, alert_id=alert_id)
    db.commit()
    return alert


@router.patch('/{alert_id}/resolve', response_model=AlertOut)
def resolve(
    alert_id: int,
    request: Request,
    payload: ResolveIn | None = Body(None),
    principal: Principal = Depends(write_access),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    alert = alert_service.resolve_alert(
        db,
        company_id=company_id,
        alert_id=alert_id,
        principal_id=principal.id,
        notes=payload.notes if payload else None,
        ip=get_client_ip(request),
    )
    db.commit()
    return alert
