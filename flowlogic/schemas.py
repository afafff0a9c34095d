from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from flowlogic.models import AlertSeverity, AlertType, IngestionStatus, PrincipalRole
from flowlogic.security.passwords import MIN_PASSWORD_LENGTH

MAX_BULK_ALERTS = 100


# JSON bodies use camelCase; Python attributes stay snake_case.
class _Base(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        extra='ignore',
        populate_by_name=True,
        alias_generator=to_camel,
    )


class LoginIn(_Base):
    """``username`` accepts either the username or the email address."""

    username: Annotated[str, Field(min_length=1)]
    password: Annotated[str, Field(min_length=1)]

    @field_validator('username', mode='before')
    @classmethod
    def _trim_username(cls, v):
        return v.strip() if isinstance(v, str) else v


class SignupIn(_Base):
    first_name: Annotated[str, Field(min_length=1, max_length=100)]
    last_name: Annotated[str, Field(min_length=1, max_length=100)]
    email: EmailStr
    password: Annotated[str, Field(min_length=MIN_PASSWORD_LENGTH, max_length=128)]
    company_name: Annotated[str, Field(min_length=1, max_length=200)]
    company_size: str | None = None


class ChangePasswordIn(_Base):
    current_password: Annotated[str, Field(min_length=1)]
    new_password: Annotated[str, Field(min_length=1, max_length=128)]


class CompanyOut(_Base):
    id: int
    code: str
    name: str


class UserOut(_Base):
    id: int
    username: str
    email: str
    first_name: str
    last_name: str
    full_name: str
    role: PrincipalRole
    company: CompanyOut | None = None
    last_login_at: datetime | None = None


class TokenOut(_Base):
    success: bool = True
    token: str
    user: UserOut
    expires_in: int


class MessageOut(_Base):
    success: bool = True
    message: str


class AlertOut(_Base):
    id: int
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    sku: str | None = None
    location_code: str | None = None
    warehouse_id: int | None = None
    ingestion_id: int | None = None
    is_read: bool
    is_resolved: bool
    created_at: datetime
    resolved_at: datetime | None = None
    resolved_by_principal_id: int | None = None


class Pagination(_Base):
    page: int
    limit: int
    total: int
    pages: int


class AlertListOut(_Base):
    data: list[AlertOut]
    pagination: Pagination


class AlertSummaryOut(_Base):
    total_alerts: int
    unread_count: int
    unresolved_count: int
    severity_counts: dict[str, int]
    type_counts: dict[str, int]


class BulkReadIn(_Base):
    alert_ids: Annotated[list[int], Field(min_length=1, max_length=MAX_BULK_ALERTS)]


class ResolveIn(_Base):
    notes: Annotated[str | None, Field(max_length=1000)] = None


class AlertCreateIn(_Base):
    type: AlertType
    severity: AlertSeverity
    title: Annotated[str, Field(min_length=1, max_length=200)]
    message: Annotated[str, Field(min_length=1, max_length=2000)]
    sku: Annotated[str | None, Field(max_length=128)] = None
    location_code: Annotated[str | None, Field(max_length=128)] = None
    warehouse_id: int | None = None


class GenerateAlertsIn(_Base):
    warehouse_id: int | None = None


class CountOut(_Base):
    success: bool = True
    count: int
    message: str | None = None


class IngestionOut(_Base):
    id: int
    ingestion_key: str
    source: str
    data_type: str
    filename: str | None = None
    warehouse_id: int | None = None
    status: IngestionStatus
    record_count: int
    error_count: int
    errors: list[dict[str, Any]] = []
    started_at: datetime
    completed_at: datetime | None = None
    is_current: bool = False


class RuleOutcomeOut(_Base):
    rule: str
    ok: bool
    alert_count: int
    error: str | None = None


class IngestionRunOut(_Base):
    ingestion_id: int
    status: IngestionStatus
    record_count: int
    snapshot_count: int
    error_count: int
    alerts_created: int
    alerts_skipped: int
    variance_count: int = 0
    rule_outcomes: list[RuleOutcomeOut]
    errors: list[dict[str, Any]]


class GeneratedAlertsOut(_Base):
    success: bool = True
    snapshot_count: int
    generated: int
    skipped: int
    alerts: list[AlertOut]
    rule_outcomes: list[RuleOutcomeOut]


class OFBizImportIn(_Base):
    """Body of an uploaded OFBiz export: inventory items plus optional product and variance rows."""

    records: list[dict[str, Any]]
    products: list[dict[str, Any]] = []
    variances: list[dict[str, Any]] = []
    ingestion_key: Annotated[str | None, Field(max_length=255)] = None
    warehouse_id: int | None = None
    filename: str | None = None


class InventoryTotalsOut(_Base):
    total_records: int
    distinct_skus: int
    distinct_locations: int
    total_on_hand: float
    total_allocated: float
    total_available: float
    total_value: float


class DashboardAlertsOut(_Base):
    unresolved: int
    unread: int
    by_severity: dict[str, int]
    recent: list[AlertOut]


class DashboardOut(_Base):
    inventory: InventoryTotalsOut
    alerts: DashboardAlertsOut
    ingestions: list[IngestionOut]


class PlanFeaturesOut(_Base):
    max_skus: int
    max_warehouses: int
    max_users: int
    ai_analysis: str
    support: str


class PlanOut(_Base):
    id: str
    name: str
    price: int | None
    interval: str
    features: PlanFeaturesOut


class CheckoutIn(_Base):
    plan_id: Annotated[str, Field(min_length=1)]


class BillingSessionOut(_Base):
    session_id: str | None = None
    url: str


class SubscriptionOut(_Base):
    status: str | None
    plan: str | None = None
    trial_ends_at: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    features: PlanFeaturesOut | None = None


class UsageCountsOut(_Base):
    skus: int
    warehouses: int
    users: int


class UsageOut(_Base):
    usage: UsageCountsOut
    limits: PlanFeaturesOut | None
    plan: str | None = None


class WebhookAck(_Base):
    received: bool = True


class MarkAllReadIn(_Base):
    warehouse_id: int | None = None


class CleanupOut(_Base):
    success: bool = True
    deleted: int


class PlansOut(_Base):
    plans: list[PlanOut]
