"""Alert rules evaluated over one ingestion batch of inventory snapshots.

Every rule is a plain function of the snapshot sequence returning alert
drafts. Rules never see each other's output; ``evaluate_rules`` runs them in
a fixed order and keeps going when one of them raises.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from functools import partial

from loguru import logger

from flowlogic.config import Settings
from flowlogic.models import AlertSeverity, AlertType

FWRD = 'FWRD'


@dataclass(frozen=True)
class SnapshotView:
    sku: str
    location_code: str
    location_type: str
    quantity_on_hand: Decimal
    quantity_available: Decimal
    unit_cost: Decimal | None = None
    license_plate: str | None = None
    product_name: str | None = None

    @property
    def label(self) -> str:
        return self.product_name or self.sku

    @property
    def reserved(self) -> Decimal:
        return self.quantity_on_hand - self.quantity_available

    @property
    def is_forward_pick(self) -> bool:
        return self.location_type.upper() == FWRD or self.location_code.upper().startswith(FWRD)


@dataclass(frozen=True)
class AlertDraft:
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    sku: str | None = None
    location_code: str | None = None
    resolved: bool = False
    reference: str | None = None

    @property
    def dedupe_key(self) -> str | None:
        # Summary notices are informational and always recorded.
        if self.sku is None:
            return None
        key = f'{self.type.value}|{self.sku}|{self.location_code or ""}'
        return f'{key}|{self.reference}' if self.reference else key


@dataclass(frozen=True)
class VarianceView:
    """One OFBiz INVENTORY_ITEM_VARIANCE row: a recorded count adjustment and its reason."""

    sku: str
    location_code: str
    reason_id: str | None
    quantity_variance: Decimal | None = None
    inventory_item_id: str | None = None
    reason_description: str | None = None
    comments: str | None = None


@dataclass(frozen=True)
class AlertRuleConfig:
    low_stock_threshold: Decimal = Decimal('10')
    critical_stock_threshold: Decimal = Decimal('5')
    low_stock_limit: int = 5
    reserved_limit: int = 3
    high_value_floor: Decimal = Decimal('100')
    fragmentation_limit: int = 2

    @classmethod
    def from_settings(cls, config: Settings) -> AlertRuleConfig:
        return cls(
            low_stock_threshold=Decimal(config.low_stock_threshold),
            critical_stock_threshold=Decimal(config.critical_stock_threshold),
            low_stock_limit=config.low_stock_alert_limit,
            reserved_limit=config.reserved_alert_limit,
            high_value_floor=Decimal(config.high_value_floor),
            fragmentation_limit=config.fragmentation_alert_limit,
        )


Rule = Callable[[Sequence[SnapshotView]], list[AlertDraft]]


@dataclass(frozen=True)
class RuleOutcome:
    rule: str
    ok: bool
    alert_count: int = 0
    error: str | None = None


@dataclass
class RuleEvaluation:
    drafts: list[AlertDraft] = field(default_factory=list)
    outcomes: list[RuleOutcome] = field(default_factory=list)

    @property
    def failed_rules(self) -> list[str]:
        return [outcome.rule for outcome in self.outcomes if not outcome.ok]


def format_qty(value: Decimal) -> str:
    text = f'{value.normalize():f}'
    return text if text != '-0' else '0'


def format_money(value: Decimal) -> str:
    return f'{value:,.2f}'


def low_stock_rule(snapshots: Sequence[SnapshotView], *, config: AlertRuleConfig) -> list[AlertDraft]:
    drafts: list[AlertDraft] = []
    for snap in snapshots:
        qty = snap.quantity_on_hand
        if not (Decimal('0') < qty < config.low_stock_threshold):
            continue
        severity = AlertSeverity.CRITICAL if qty < config.critical_stock_threshold else AlertSeverity.WARNING
        drafts.append(
            AlertDraft(
                type=AlertType.LOW_STOCK,
                severity=severity,
                title=f'Low Stock: {snap.sku}',
                message=(
                    f'{snap.label} at {snap.location_code} has only {format_qty(qty)} units. '
                    f'ATP: {format_qty(snap.quantity_available)}'
                ),
                sku=snap.sku,
                location_code=snap.location_code,
            )
        )
        if len(drafts) >= config.low_stock_limit:
            break
    return drafts


def reserved_inventory_rule(snapshots: Sequence[SnapshotView], *, config: AlertRuleConfig) -> list[AlertDraft]:
    drafts: list[AlertDraft] = []
    for snap in snapshots:
        if snap.quantity_on_hand <= 0 or snap.quantity_available >= snap.quantity_on_hand:
            continue
        drafts.append(
            AlertDraft(
                type=AlertType.INVENTORY_DISCREPANCY,
                severity=AlertSeverity.INFO,
                title=f'Reserved Inventory: {snap.sku}',
                message=(
                    f'{snap.label} has {format_qty(snap.reserved)} units reserved. '
                    f'On-hand: {format_qty(snap.quantity_on_hand)}, ATP: {format_qty(snap.quantity_available)}'
                ),
                sku=snap.sku,
                location_code=snap.location_code,
            )
        )
        if len(drafts) >= config.reserved_limit:
            break
    return drafts


def high_value_rule(snapshots: Sequence[SnapshotView], *, config: AlertRuleConfig) -> list[AlertDraft]:
    valued = [
        (snap.quantity_on_hand * snap.unit_cost, snap)
        for snap in snapshots
        if snap.unit_cost is not None
    ]
    valued = [(value, snap) for value, snap in valued if value > config.high_value_floor]
    if not valued:
        return []
    # Stable sort keeps input order among equal values.
    valued.sort(key=lambda pair: pair[0], reverse=True)
    value, top = valued[0]
    return [
        AlertDraft(
            type=AlertType.CAPACITY_WARNING,
            severity=AlertSeverity.INFO,
            title=f'High Value Inventory: {top.sku}',
            message=(
                f'{top.label} has ${format_money(value)} worth of inventory '
                f'({format_qty(top.quantity_on_hand)} units @ ${format_money(top.unit_cost)}/ea)'
            ),
            sku=top.sku,
            location_code=top.location_code,
        )
    ]


def _group_by_sku(snapshots: Sequence[SnapshotView]) -> dict[str, list[SnapshotView]]:
    groups: dict[str, list[SnapshotView]] = {}
    for snap in snapshots:
        groups.setdefault(snap.sku, []).append(snap)
    return groups


def split_location_rule(snapshots: Sequence[SnapshotView], *, config: AlertRuleConfig) -> list[AlertDraft]:
    drafts: list[AlertDraft] = []
    for sku, items in _group_by_sku(snapshots).items():
        locations = list(dict.fromkeys(item.location_code for item in items))
        if len(locations) < 2:
            continue
        total = sum((item.quantity_on_hand for item in items), Decimal('0'))
        forward = any(item.is_forward_pick for item in items)
        drafts.append(
            AlertDraft(
                type=AlertType.FWRD_FRAGMENTATION if forward else AlertType.INVENTORY_DISCREPANCY,
                severity=AlertSeverity.WARNING,
                title=f'Split Inventory: {sku}',
                message=(
                    f'{items[0].label} is split across {len(locations)} locations ({", ".join(locations)}). '
                    f'Total: {format_qty(total)} units. Consider consolidation.'
                ),
                sku=sku,
            )
        )
        if len(drafts) >= config.fragmentation_limit:
            break
    return drafts


def forward_plate_rule(snapshots: Sequence[SnapshotView], *, config: AlertRuleConfig) -> list[AlertDraft]:
    """Flag forward-pick locations holding one SKU on several license plates.

    Multiple plates for the same SKU in a FWRD slot block automated
    balance-on-hand reduction until they are merged.
    """
    groups: dict[tuple[str, str], list[SnapshotView]] = {}
    for snap in snapshots:
        if snap.is_forward_pick and snap.license_plate:
            groups.setdefault((snap.location_code, snap.sku), []).append(snap)

    drafts: list[AlertDraft] = []
    for (location, sku), items in groups.items():
        plates = list(dict.fromkeys(item.license_plate for item in items))
        if len(plates) < 2:
            continue
        total = sum((item.quantity_on_hand for item in items), Decimal('0'))
        drafts.append(
            AlertDraft(
                type=AlertType.FWRD_FRAGMENTATION,
                severity=AlertSeverity.WARNING,
                title=f'FWRD Fragmentation: {sku} @ {location}',
                message=(
                    f'{items[0].label} occupies {len(plates)} license plates in {location} '
                    f'({", ".join(plates)}). Total: {format_qty(total)} units. '
                    'Consolidate plates to unblock BOH reduction.'
                ),
                sku=sku,
                location_code=location,
            )
        )
        if len(drafts) >= config.fragmentation_limit:
            break
    return drafts


# variance reason -> (issue, severity)
VARIANCE_REASONS: dict[str, tuple[str, AlertSeverity]] = {
    'VAR_STOLEN': ('THEFT', AlertSeverity.CRITICAL),
    'VAR_LOST': ('LOST', AlertSeverity.CRITICAL),
    'VAR_MISSHIP_ORDERED': ('MIS_SHIPPED', AlertSeverity.CRITICAL),
    'VAR_MISSHIP_SHIPPED': ('MIS_SHIPPED', AlertSeverity.CRITICAL),
    'VAR_DAMAGED': ('DAMAGED', AlertSeverity.WARNING),
    'VAR_REJECTED': ('REJECTED', AlertSeverity.WARNING),
    'VAR_FOUND': ('FOUND', AlertSeverity.INFO),
    'VAR_INTEGR': ('INTEGRATION_ERROR', AlertSeverity.INFO),
    'VAR_SAMPLE': ('SAMPLE', AlertSeverity.INFO),
    'VAR_TRANSIT': ('IN_TRANSIT', AlertSeverity.INFO),
}
OTHER_VARIANCE = ('OTHER', AlertSeverity.INFO)


def variance_rule(snapshots: Sequence[SnapshotView], *, variances: Sequence[VarianceView]) -> list[AlertDraft]:
    """Turn recorded inventory variances into discrepancy alerts.

    One alert per (sku, location, issue, inventory item); the batch's
    snapshots only supply product names.
    """
    labels = {snap.sku: snap.label for snap in snapshots}
    drafts: list[AlertDraft] = []
    for variance in variances:
        issue, severity = VARIANCE_REASONS.get(variance.reason_id or '', OTHER_VARIANCE)
        label = labels.get(variance.sku, variance.sku)
        reason = variance.reason_description or variance.reason_id or 'unspecified reason'
        message = f'{label} at {variance.location_code}: {reason}.'
        if variance.quantity_variance is not None:
            message += f' Quantity variance: {format_qty(variance.quantity_variance)}.'
        if variance.comments:
            message += f' {variance.comments}'
        drafts.append(
            AlertDraft(
                type=AlertType.INVENTORY_DISCREPANCY,
                severity=severity,
                title=f'Inventory Variance ({issue}): {variance.sku}',
                message=message,
                sku=variance.sku,
                location_code=variance.location_code,
                reference=f'{issue}:{variance.inventory_item_id or ""}',
            )
        )
    return drafts


def sync_notice_rule(snapshots: Sequence[SnapshotView], *, source_label: str, product_count: int) -> list[AlertDraft]:
    return [
        AlertDraft(
            type=AlertType.CUSTOM,
            severity=AlertSeverity.INFO,
            title=f'{source_label} Sync Complete',
            message=(
                f'Successfully imported {len(snapshots)} inventory items and '
                f'{product_count} products from {source_label}.'
            ),
            resolved=True,
        )
    ]


def build_rules(
    config: AlertRuleConfig,
    *,
    source_label: str,
    product_count: int,
    variances: Sequence[VarianceView] = (),
    sync_notice: bool = True,
) -> list[tuple[str, Rule]]:
    rules: list[tuple[str, Rule]] = [
        ('low_stock', partial(low_stock_rule, config=config)),
        ('reserved_inventory', partial(reserved_inventory_rule, config=config)),
        ('high_value', partial(high_value_rule, config=config)),
        ('split_location', partial(split_location_rule, config=config)),
        ('forward_plate', partial(forward_plate_rule, config=config)),
        ('variance', partial(variance_rule, variances=variances)),
    ]
    if sync_notice:
        rules.append(('sync_notice', partial(sync_notice_rule, source_label=source_label, product_count=product_count)))
    return rules


def evaluate_rules(snapshots: Sequence[SnapshotView], rules: Sequence[tuple[str, Rule]]) -> RuleEvaluation:
    evaluation = RuleEvaluation()
    for name, rule in rules:
        try:
            drafts = rule(snapshots)
        except Exception as exc:  # isolate rule failures
            logger.exception('Alert rule {} failed', name)
            evaluation.outcomes.append(RuleOutcome(rule=name, ok=False, error=f'{type(exc).__name__}: {exc}'))
            continue
        evaluation.drafts.extend(drafts)
        evaluation.outcomes.append(RuleOutcome(rule=name, ok=True, alert_count=len(drafts)))
    return evaluation
