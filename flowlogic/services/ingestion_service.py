"""Snapshot ingestion.

One run creates an ``Ingestion`` batch, writes one immutable snapshot per
valid record, evaluates the alert rules over that batch and, once everything
is written, moves the feed's ``IngestionHead`` to the new batch. Older
batches are never deleted or rewritten; readers follow the head.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from loguru import logger
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from flowlogic.models import Alert, Ingestion, IngestionHead, IngestionStatus, InventorySnapshot
from flowlogic.services.alert_rules import (
    AlertRuleConfig,
    RuleOutcome,
    SnapshotView,
    VarianceView,
    build_rules,
    evaluate_rules,
)
from flowlogic.services.alert_service import store_drafts

DEFAULT_LOCATION = 'DEFAULT'
DEFAULT_LOCATION_TYPE = 'WAREHOUSE'
UNKNOWN_SKU = 'UNKNOWN'

# Column bounds: quantities are Numeric(14, 3), costs Numeric(14, 4).
MAX_QUANTITY = Decimal('1e11')
MAX_UNIT_COST = Decimal('1e10')
MAX_CODE_LENGTH = 128
MAX_LOCATION_TYPE_LENGTH = 64


class RecordError(ValueError):
    pass


@dataclass(frozen=True)
class RecordOutcome:
    index: int
    snapshot: SnapshotView | None = None
    variance: VarianceView | None = None
    raw: Mapping | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class IngestionResult:
    ingestion_id: int
    status: IngestionStatus
    record_count: int
    snapshot_count: int
    error_count: int
    variance_count: int = 0
    alerts_created: int = 0
    alerts_skipped: int = 0
    rule_outcomes: list[RuleOutcome] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


@dataclass
class GeneratedAlerts:
    snapshot_count: int
    created: list[Alert]
    skipped: int
    rule_outcomes: list[RuleOutcome]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _text(value) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _code(record: Mapping, key: str, *, max_length: int = MAX_CODE_LENGTH) -> str | None:
    value = _text(record.get(key))
    if value is not None and len(value) > max_length:
        raise RecordError(f'{key} is longer than {max_length} characters')
    return value


def _decimal(record: Mapping, key: str, *, default: Decimal | None, limit: Decimal = MAX_QUANTITY) -> Decimal | None:
    value = record.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise RecordError(f'{key} must be numeric')
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise RecordError(f'{key} must be numeric, got {value!r}') from exc
    if not parsed.is_finite():
        raise RecordError(f'{key} must be finite')
    if abs(parsed) >= limit:
        raise RecordError(f'{key} is out of range')
    return parsed


def normalize_record(record: Mapping, products: Mapping[str, Mapping]) -> SnapshotView:
    if not isinstance(record, Mapping):
        raise RecordError('record must be an object')
    sku = _code(record, 'productId')
    if sku is None:
        raise RecordError('productId is required')

    on_hand = _decimal(record, 'quantityOnHand', default=Decimal('0'))
    available = _decimal(record, 'availableToPromise', default=Decimal('0'))
    if abs(on_hand - available) >= MAX_QUANTITY:
        raise RecordError('reserved quantity is out of range')
    unit_cost = _decimal(record, 'unitCost', default=None, limit=MAX_UNIT_COST)
    if unit_cost is not None and unit_cost < 0:
        raise RecordError('unitCost cannot be negative')

    location_type = None
    for key in ('locationTypeEnumId', 'locationType', 'facilityId'):
        location_type = _code(record, key, max_length=MAX_LOCATION_TYPE_LENGTH)
        if location_type:
            break

    product = products.get(sku) or {}
    return SnapshotView(
        sku=sku,
        location_code=_code(record, 'locationSeqId') or DEFAULT_LOCATION,
        location_type=location_type or DEFAULT_LOCATION_TYPE,
        quantity_on_hand=on_hand,
        quantity_available=available,
        unit_cost=unit_cost,
        license_plate=_code(record, 'inventoryItemId') or _code(record, 'lotId'),
        product_name=_text(product.get('name')) or _text(product.get('internalName')),
    )


def normalize_records(records: Sequence, products: Mapping[str, Mapping]) -> list[RecordOutcome]:
    outcomes: list[RecordOutcome] = []
    for index, record in enumerate(records):
        try:
            snapshot = normalize_record(record, products)
        except RecordError as exc:
            outcomes.append(RecordOutcome(index=index, raw=record if isinstance(record, Mapping) else None, error=str(exc)))
            continue
        outcomes.append(RecordOutcome(index=index, snapshot=snapshot, raw=record))
    return outcomes


def normalize_variance(record: Mapping) -> VarianceView:
    if not isinstance(record, Mapping):
        raise RecordError('variance must be an object')
    return VarianceView(
        sku=_code(record, 'productId') or UNKNOWN_SKU,
        location_code=_code(record, 'locationSeqId') or DEFAULT_LOCATION,
        reason_id=_code(record, 'varianceReasonId'),
        quantity_variance=_decimal(record, 'quantityVariance', default=None),
        inventory_item_id=_code(record, 'inventoryItemId'),
        reason_description=_text(record.get('reasonDescription')),
        comments=_text(record.get('comments')),
    )


def normalize_variances(variances: Sequence) -> list[RecordOutcome]:
    outcomes: list[RecordOutcome] = []
    for index, record in enumerate(variances):
        try:
            outcomes.append(RecordOutcome(index=index, variance=normalize_variance(record), raw=record))
        except RecordError as exc:
            outcomes.append(RecordOutcome(index=index, error=str(exc)))
    return outcomes


def index_products(products: Sequence) -> dict[str, Mapping]:
    indexed: dict[str, Mapping] = {}
    for product in products:
        if isinstance(product, Mapping) and _text(product.get('productId')):
            indexed[_text(product['productId'])] = product
    return indexed


def feed_lock_id(company_id: int, ingestion_key: str) -> int:
    digest = hashlib.blake2b(f'{company_id}:{ingestion_key}'.encode('utf-8'), digest_size=8).digest()
    return int.from_bytes(digest, 'big', signed=True)


def acquire_feed_lock(db: Session, company_id: int, ingestion_key: str) -> None:
    """Serialize concurrent runs of one feed for the rest of the transaction."""
    if db.get_bind().dialect.name != 'postgresql':
        return
    db.execute(text('SELECT pg_advisory_xact_lock(:lock_id)'), {'lock_id': feed_lock_id(company_id, ingestion_key)})


def _json_safe(raw: Mapping | None) -> dict:
    if raw is None:
        return {}
    return json.loads(json.dumps(dict(raw), default=str))


def _advance_head(db: Session, *, company_id: int, ingestion_key: str, ingestion_id: int) -> None:
    head = db.get(IngestionHead, (company_id, ingestion_key))
    if head is None:
        db.add(IngestionHead(company_id=company_id, ingestion_key=ingestion_key, ingestion_id=ingestion_id, updated_at=_now()))
        return
    head.ingestion_id = ingestion_id
    head.updated_at = _now()


def run_ingestion(
    db: Session,
    *,
    company_id: int,
    ingestion_key: str,
    source: str,
    records: Sequence,
    products: Sequence = (),
    variances: Sequence = (),
    rule_config: AlertRuleConfig | None = None,
    warehouse_id: int | None = None,
    filename: str | None = None,
    error_sample_limit: int = 20,
) -> IngestionResult:
    """Import one batch and derive its alerts. Commits the session.

    ``variances`` are OFBiz variance rows; they are not stored as snapshots
    but become discrepancy alerts of the same batch.
    """
    ingestion = Ingestion(
        company_id=company_id,
        warehouse_id=warehouse_id,
        ingestion_key=ingestion_key,
        source=source,
        data_type='inventory_snapshot',
        filename=filename,
        status=IngestionStatus.PENDING,
        record_count=len(records),
        started_at=_now(),
    )
    db.add(ingestion)
    db.commit()
    ingestion_id = ingestion.id
    logger.info(
        'Ingestion {} started for {} ({} records, {} variances)', ingestion_id, ingestion_key, len(records), len(variances)
    )

    try:
        acquire_feed_lock(db, company_id, ingestion_key)

        outcomes = normalize_records(records, index_products(products))
        failed = [outcome for outcome in outcomes if not outcome.ok]
        snapshots = [outcome.snapshot for outcome in outcomes if outcome.ok]
        for outcome in failed:
            logger.warning('Ingestion {} skipped record {}: {}', ingestion_id, outcome.index, outcome.error)
        variance_outcomes = normalize_variances(variances)
        failed_variances = [outcome for outcome in variance_outcomes if not outcome.ok]
        variance_views = [outcome.variance for outcome in variance_outcomes if outcome.ok]
        for outcome in failed_variances:
            logger.warning('Ingestion {} skipped variance {}: {}', ingestion_id, outcome.index, outcome.error)

        snapshot_at = _now()
        for outcome in outcomes:
            if not outcome.ok:
                continue
            snap = outcome.snapshot
            db.add(
                InventorySnapshot(
                    ingestion_id=ingestion_id,
                    snapshot_at=snapshot_at,
                    sku=snap.sku,
                    product_name=snap.product_name,
                    location_code=snap.location_code,
                    location_type=snap.location_type,
                    quantity_on_hand=snap.quantity_on_hand,
                    quantity_available=snap.quantity_available,
                    quantity_allocated=snap.reserved,
                    unit_cost=snap.unit_cost,
                    license_plate=snap.license_plate,
                    raw=_json_safe(outcome.raw),
                )
            )

        rules = build_rules(
            rule_config or AlertRuleConfig(),
            source_label=source,
            product_count=len(products),
            variances=variance_views,
        )
        evaluation = evaluate_rules(snapshots, rules)
        stored = store_drafts(
            db,
            company_id=company_id,
            drafts=evaluation.drafts,
            ingestion_id=ingestion_id,
            warehouse_id=warehouse_id,
        )

        errors = [{'index': outcome.index, 'error': outcome.error} for outcome in failed[:error_sample_limit]]
        errors.extend(
            {'variance': outcome.index, 'error': outcome.error} for outcome in failed_variances[:error_sample_limit]
        )
        errors.extend(
            {'rule': outcome.rule, 'error': outcome.error} for outcome in evaluation.outcomes if not outcome.ok
        )
        error_count = len(failed) + len(failed_variances)
        ingestion.status = IngestionStatus.COMPLETED
        ingestion.error_count = error_count
        ingestion.errors = errors
        ingestion.completed_at = _now()
        _advance_head(db, company_id=company_id, ingestion_key=ingestion_key, ingestion_id=ingestion_id)
        db.commit()
    except Exception as exc:
        db.rollback()
        batch = db.get(Ingestion, ingestion_id)
        batch.status = IngestionStatus.FAILED
        batch.completed_at = _now()
        batch.errors = [{'error': f'{type(exc).__name__}: {exc}'}]
        db.commit()
        logger.exception('Ingestion {} failed', ingestion_id)
        raise

    logger.info(
        'Ingestion {} completed: {} snapshots, {} variances, {} errors, {} alerts ({} duplicates skipped)',
        ingestion_id,
        len(snapshots),
        len(variance_views),
        error_count,
        len(stored.created),
        stored.skipped,
    )
    return IngestionResult(
        ingestion_id=ingestion_id,
        status=IngestionStatus.COMPLETED,
        record_count=len(records),
        snapshot_count=len(snapshots),
        error_count=error_count,
        variance_count=len(variance_views),
        alerts_created=len(stored.created),
        alerts_skipped=stored.skipped,
        rule_outcomes=evaluation.outcomes,
        errors=errors,
    )


def current_snapshot_filter(company_id: int):
    """Ingestion ids currently pointed to by this company's feed heads."""
    return select(IngestionHead.ingestion_id).where(IngestionHead.company_id == company_id)


def current_snapshots(db: Session, *, company_id: int, warehouse_id: int | None = None) -> list[SnapshotView]:
    stmt = select(InventorySnapshot).where(InventorySnapshot.ingestion_id.in_(current_snapshot_filter(company_id)))
    if warehouse_id is not None:
        stmt = stmt.join(Ingestion, Ingestion.id == InventorySnapshot.ingestion_id).where(
            Ingestion.warehouse_id == warehouse_id
        )
    rows = db.execute(stmt.order_by(InventorySnapshot.id)).scalars().all()
    return [
        SnapshotView(
            sku=row.sku,
            location_code=row.location_code,
            location_type=row.location_type,
            quantity_on_hand=row.quantity_on_hand,
            quantity_available=row.quantity_available,
            unit_cost=row.unit_cost,
            license_plate=row.license_plate,
            product_name=row.product_name,
        )
        for row in rows
    ]


def regenerate_alerts(
    db: Session,
    *,
    company_id: int,
    rule_config: AlertRuleConfig | None = None,
    warehouse_id: int | None = None,
) -> GeneratedAlerts:
    """Re-run the rules over the current snapshots; open duplicates are skipped.

    Flushes but does not commit.
    """
    snapshots = current_snapshots(db, company_id=company_id, warehouse_id=warehouse_id)
    rules = build_rules(rule_config or AlertRuleConfig(), source_label='', product_count=0, sync_notice=False)
    evaluation = evaluate_rules(snapshots, rules)
    stored = store_drafts(db, company_id=company_id, drafts=evaluation.drafts, warehouse_id=warehouse_id)
    logger.info(
        'Regenerated alerts for company {} over {} snapshots: {} created, {} skipped',
        company_id,
        len(snapshots),
        len(stored.created),
        stored.skipped,
    )
    return GeneratedAlerts(
        snapshot_count=len(snapshots),
        created=stored.created,
        skipped=stored.skipped,
        rule_outcomes=evaluation.outcomes,
    )


def list_ingestions(db: Session, *, company_id: int, limit: int = 20) -> list[Ingestion]:
    stmt = (
        select(Ingestion)
        .where(Ingestion.company_id == company_id)
        .order_by(Ingestion.started_at.desc(), Ingestion.id.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def current_ingestion_ids(db: Session, *, company_id: int) -> set[int]:
    return set(db.execute(current_snapshot_filter(company_id)).scalars())
