from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.orm import Session

from flowlogic.errors import BadRequestError, NotFoundError
from flowlogic.models import SEVERITY_RANK, Alert, AlertSeverity, AlertType, Warehouse
from flowlogic.services.alert_rules import AlertDraft
from flowlogic.services.audit_service import log_audit


@dataclass(frozen=True)
class StoredAlerts:
    created: list[Alert]
    skipped: int


@dataclass(frozen=True)
class AlertFilters:
    warehouse_id: int | None = None
    type: AlertType | None = None
    severity: AlertSeverity | None = None
    is_read: bool | None = None
    is_resolved: bool | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _ordered(stmt: Select) -> Select:
    return stmt.order_by(Alert.severity_rank.desc(), Alert.created_at.desc(), Alert.id.desc())


def store_drafts(
    db: Session,
    *,
    company_id: int,
    drafts: Sequence[AlertDraft],
    ingestion_id: int | None = None,
    warehouse_id: int | None = None,
) -> StoredAlerts:
    """Insert drafts, skipping any already open under the same dedupe key."""
    keys = {draft.dedupe_key for draft in drafts if draft.dedupe_key}
    open_keys: set[str] = set()
    if keys:
        open_keys = set(
            db.execute(
                select(Alert.dedupe_key).where(
                    Alert.company_id == company_id,
                    Alert.is_resolved.is_(False),
                    Alert.dedupe_key.in_(keys),
                )
            ).scalars()
        )

    created: list[Alert] = []
    skipped = 0
    for draft in drafts:
        key = draft.dedupe_key
        if key is not None and key in open_keys:
            skipped += 1
            continue
        alert = Alert(
            company_id=company_id,
            warehouse_id=warehouse_id,
            ingestion_id=ingestion_id,
            type=draft.type,
            severity=draft.severity,
            severity_rank=SEVERITY_RANK[draft.severity],
            title=draft.title,
            message=draft.message,
            sku=draft.sku,
            location_code=draft.location_code,
            dedupe_key=key,
            is_read=False,
            is_resolved=draft.resolved,
            resolved_at=_now() if draft.resolved else None,
        )
        db.add(alert)
        created.append(alert)
        if key is not None:
            open_keys.add(key)
    db.flush()
    return StoredAlerts(created=created, skipped=skipped)


def _filtered(company_id: int, filters: AlertFilters) -> list:
    clauses = [Alert.company_id == company_id]
    if filters.warehouse_id is not None:
        clauses.append(Alert.warehouse_id == filters.warehouse_id)
    if filters.type is not None:
        clauses.append(Alert.type == filters.type)
    if filters.severity is not None:
        clauses.append(Alert.severity == filters.severity)
    if filters.is_read is not None:
        clauses.append(Alert.is_read.is_(filters.is_read))
    if filters.is_resolved is not None:
        clauses.append(Alert.is_resolved.is_(filters.is_resolved))
    return clauses


def list_alerts(db: Session, *, company_id: int, filters: AlertFilters, page: int, limit: int) -> tuple[list[Alert], int]:
    clauses = _filtered(company_id, filters)
    total = db.execute(select(func.count()).select_from(Alert).where(*clauses)).scalar_one()
    rows = db.execute(_ordered(select(Alert).where(*clauses)).offset((page - 1) * limit).limit(limit)).scalars().all()
    return list(rows), total


def alert_summary(db: Session, *, company_id: int, warehouse_id: int | None = None) -> dict:
    clauses = _filtered(company_id, AlertFilters(warehouse_id=warehouse_id))
    open_clauses = [*clauses, Alert.is_resolved.is_(False)]

    total = db.execute(select(func.count()).select_from(Alert).where(*clauses)).scalar_one()
    unread = db.execute(select(func.count()).select_from(Alert).where(*clauses, Alert.is_read.is_(False))).scalar_one()
    unresolved = db.execute(select(func.count()).select_from(Alert).where(*open_clauses)).scalar_one()
    by_severity = db.execute(select(Alert.severity, func.count()).where(*open_clauses).group_by(Alert.severity)).all()
    by_type = db.execute(select(Alert.type, func.count()).where(*open_clauses).group_by(Alert.type)).all()
    return {
        'total_alerts': total,
        'unread_count': unread,
        'unresolved_count': unresolved,
        'severity_counts': {severity.value: count for severity, count in by_severity},
        'type_counts': {alert_type.value: count for alert_type, count in by_type},
    }


def list_unread(db: Session, *, company_id: int, warehouse_id: int | None, limit: int) -> list[Alert]:
    clauses = _filtered(company_id, AlertFilters(warehouse_id=warehouse_id, is_read=False))
    return list(db.execute(_ordered(select(Alert).where(*clauses)).limit(limit)).scalars().all())


def list_critical(db: Session, *, company_id: int, warehouse_id: int | None, limit: int = 20) -> list[Alert]:
    clauses = _filtered(
        company_id,
        AlertFilters(warehouse_id=warehouse_id, severity=AlertSeverity.CRITICAL, is_resolved=False),
    )
    stmt = select(Alert).where(*clauses).order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def get_alert(db: Session, *, company_id: int, alert_id: int) -> Alert:
    alert = db.execute(
        select(Alert).where(Alert.id == alert_id, Alert.company_id == company_id)
    ).scalar_one_or_none()
    if alert is None:
        raise NotFoundError('Alert')
    return alert


def mark_read(db: Session, *, company_id: int, alert_id: int) -> Alert:
    alert = get_alert(db, company_id=company_id, alert_id=alert_id)
    alert.is_read = True
    return alert


def mark_many_read(db: Session, *, company_id: int, alert_ids: Sequence[int]) -> int:
    result = db.execute(
        update(Alert)
        .where(Alert.company_id == company_id, Alert.id.in_(list(alert_ids)))
        .values(is_read=True)
    )
    return result.rowcount


def mark_all_read(db: Session, *, company_id: int, warehouse_id: int | None = None) -> int:
    clauses = _filtered(company_id, AlertFilters(warehouse_id=warehouse_id, is_read=False))
    result = db.execute(update(Alert).where(*clauses).values(is_read=True))
    return result.rowcount


def resolve_alert(
    db: Session,
    *,
    company_id: int,
    alert_id: int,
    principal_id: int,
    notes: str | None = None,
    ip: str | None = None,
) -> Alert:
    alert = get_alert(db, company_id=company_id, alert_id=alert_id)
    if alert.is_resolved:
        return alert
    alert.is_resolved = True
    alert.is_read = True
    alert.resolved_at = _now()
    alert.resolved_by_principal_id = principal_id
    log_audit(
        db,
        company_id=company_id,
        actor_principal_id=principal_id,
        action='ALERT_RESOLVED',
        entity_type='ALERT',
        entity_id=str(alert.id),
        ip=ip,
        metadata={'type': alert.type.value, 'notes': notes} if notes else {'type': alert.type.value},
    )
    return alert


def cleanup_resolved(db: Session, *, company_id: int, days_old: int, now: datetime | None = None) -> int:
    cutoff = (now or _now()) - timedelta(days=days_old)
    result = db.execute(
        delete(Alert).where(
            Alert.company_id == company_id,
            Alert.is_resolved.is_(True),
            Alert.resolved_at < cutoff,
        )
    )
    return result.rowcount


def create_alert(
    db: Session,
    *,
    company_id: int,
    principal_id: int,
    draft: AlertDraft,
    warehouse_id: int | None = None,
    ip: str | None = None,
) -> Alert:
    """Record a manually raised alert. Manual alerts are never deduplicated."""
    if warehouse_id is not None:
        warehouse = db.get(Warehouse, warehouse_id)
        if warehouse is None or warehouse.company_id != company_id:
            raise BadRequestError('Warehouse not found')

    alert = Alert(
        company_id=company_id,
        warehouse_id=warehouse_id,
        type=draft.type,
        severity=draft.severity,
        severity_rank=SEVERITY_RANK[draft.severity],
        title=draft.title,
        message=draft.message,
        sku=draft.sku,
        location_code=draft.location_code,
        is_read=False,
        is_resolved=False,
    )
    db.add(alert)
    db.flush()
    log_audit(
        db,
        company_id=company_id,
        actor_principal_id=principal_id,
        action='ALERT_CREATED',
        entity_type='ALERT',
        entity_id=str(alert.id),
        ip=ip,
        metadata={'type': draft.type.value, 'severity': draft.severity.value},
    )
    return alert
