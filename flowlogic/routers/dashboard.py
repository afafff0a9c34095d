from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flowlogic.auth import get_company_id
from flowlogic.db import get_db
from flowlogic.schemas import DashboardOut
from flowlogic.services.dashboard_service import dashboard_summary
from flowlogic.services.ingestion_service import current_ingestion_ids

router = APIRouter(prefix='/api', tags=['dashboard'])


@router.get('/health')
def health(request: Request):
    database = 'connected'
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text('SELECT 1'))
    except SQLAlchemyError as exc:
        logger.warning('Health check could not reach the database: {}', exc)
        database = 'error'
    return {'status': 'healthy', 'database': database}


@router.get('/dashboard', response_model=DashboardOut)
def dashboard(company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    summary = dashboard_summary(db, company_id=company_id)
    out = DashboardOut.model_validate(summary)
    current_ids = current_ingestion_ids(db, company_id=company_id)
    for ingestion in out.ingestions:
        ingestion.is_current = ingestion.id in current_ids
    return out
