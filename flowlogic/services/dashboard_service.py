from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from flowlogic.models import Alert, InventorySnapshot
from flowlogic.services.alert_service import alert_summary
from flowlogic.services.ingestion_service import current_snapshot_filter, list_ingestions


def inventory_totals(db: Session, *, company_id: int) -> dict:
    """Totals over the snapshots the company's feed heads currently point to."""
    current = InventorySnapshot.ingestion_id.in_(current_snapshot_filter(company_id))
    row = db.execute(
        select(
            func.count(InventorySnapshot.id),
            func.count(func.distinct(InventorySnapshot.sku)),
            func.count(func.distinct(InventorySnapshot.location_code)),
            func.coalesce(func.sum(InventorySnapshot.quantity_on_hand), 0),
            func.coalesce(func.sum(InventorySnapshot.quantity_allocated), 0),
            func.coalesce(func.sum(InventorySnapshot.quantity_available), 0),
            func.coalesce(func.sum(InventorySnapshot.quantity_on_hand * InventorySnapshot.unit_cost), 0),
        ).where(current)
    ).one()
    records, skus, locations, on_hand, allocated, available, value = row
    return {
        'total_records': records,
        'distinct_skus': skus,
        'distinct_locations': locations,
        'total_on_hand': Decimal(str(on_hand)),
        'total_allocated': Decimal(str(allocated)),
        'total_available': Decimal(str(available)),
        'total_value': Decimal(str(value)).quantize(Decimal('0.01')),
    }


def dashboard_summary(db: Session, *, company_id: int, recent_limit: int = 5) -> dict:
    alerts = alert_summary(db, company_id=company_id)
    recent_alerts = db.execute(
        select(Alert)
        .where(Alert.company_id == company_id, Alert.is_resolved.is_(False))
        .order_by(Alert.created_at.desc(), Alert.id.desc())
        .limit(recent_limit)
    ).scalars().all()
    return {
        'inventory': inventory_totals(db, company_id=company_id),
        'alerts': {
            'unresolved': alerts['unresolved_count'],
            'unread': alerts['unread_count'],
            'by_severity': alerts['severity_counts'],
            'recent': list(recent_alerts),
        },
        'ingestions': list_ingestions(db, company_id=company_id, limit=recent_limit),
    }
