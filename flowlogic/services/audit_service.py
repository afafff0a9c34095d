from __future__ import annotations

from sqlalchemy.orm import Session

from flowlogic.models import AuditLog


def log_audit(
    db: Session,
    *,
    company_id: int | None,
    actor_principal_id: int | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            company_id=company_id,
            actor_principal_id=actor_principal_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            ip=ip,
            meta=metadata or {},
        )
    )
