from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import CITEXT, INET, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Postgres types with portable fallbacks so the schema also builds on SQLite.
Id = BigInteger().with_variant(Integer, 'sqlite')
CaseInsensitiveText = Text().with_variant(CITEXT(), 'postgresql')
IpAddress = String(64).with_variant(INET(), 'postgresql')
JsonDoc = JSON().with_variant(JSONB(), 'postgresql')
Quantity = Numeric(14, 3)
Money = Numeric(14, 4)


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    ADMIN = 'ADMIN'
    MANAGER = 'MANAGER'
    OPERATOR = 'OPERATOR'
    VIEWER = 'VIEWER'


class IngestionStatus(str, Enum):
    PENDING = 'PENDING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'


class AlertType(str, Enum):
    LOW_STOCK = 'LOW_STOCK'
    INVENTORY_DISCREPANCY = 'INVENTORY_DISCREPANCY'
    FWRD_FRAGMENTATION = 'FWRD_FRAGMENTATION'
    CAPACITY_WARNING = 'CAPACITY_WARNING'
    ORDER_LATE = 'ORDER_LATE'
    CUSTOM = 'CUSTOM'


class AlertSeverity(str, Enum):
    INFO = 'INFO'
    WARNING = 'WARNING'
    CRITICAL = 'CRITICAL'


# Highest first; used for severity ordering without relying on enum collation.
SEVERITY_RANK = {
    AlertSeverity.CRITICAL: 3,
    AlertSeverity.WARNING: 2,
    AlertSeverity.INFO: 1,
}


class Company(Base):
    __tablename__ = 'companies'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    settings: Mapped[dict] = mapped_column(JsonDoc, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Principal(Base):
    __tablename__ = 'principals'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    company_id: Mapped[int | None] = mapped_column(Id, ForeignKey('companies.id'))
    username: Mapped[str] = mapped_column(CaseInsensitiveText, nullable=False, unique=True)
    email: Mapped[str] = mapped_column(CaseInsensitiveText, nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[PrincipalRole] = mapped_column(SQLEnum(PrincipalRole, name='principal_role'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def full_name(self) -> str:
        return f'{self.first_name} {self.last_name}'.strip()


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    principal_id: Mapped[int] = mapped_column(Id, ForeignKey('principals.id'), nullable=False)
    ip: Mapped[str | None] = mapped_column(IpAddress)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Warehouse(Base):
    __tablename__ = 'warehouses'
    __table_args__ = (
        UniqueConstraint('company_id', 'code', name='warehouses_company_code_key'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    company_id: Mapped[int] = mapped_column(Id, ForeignKey('companies.id'), nullable=False)
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SystemSetting(Base):
    __tablename__ = 'system_settings'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(64))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Ingestion(Base):
    __tablename__ = 'ingestions'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    company_id: Mapped[int] = mapped_column(Id, ForeignKey('companies.id'), nullable=False)
    warehouse_id: Mapped[int | None] = mapped_column(Id, ForeignKey('warehouses.id'))
    ingestion_key: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    data_type: Mapped[str] = mapped_column(String(64), nullable=False, default='inventory_snapshot')
    filename: Mapped[str | None] = mapped_column(Text)
    status: Mapped[IngestionStatus] = mapped_column(
        SQLEnum(IngestionStatus, name='ingestion_status'),
        nullable=False,
        default=IngestionStatus.PENDING,
        server_default='PENDING',
    )
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    errors: Mapped[list] = mapped_column(JsonDoc, nullable=False, default=list, server_default='[]')
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class IngestionHead(Base):
    __tablename__ = 'ingestion_heads'

    company_id: Mapped[int] = mapped_column(Id, ForeignKey('companies.id', ondelete='CASCADE'), primary_key=True)
    ingestion_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    ingestion_id: Mapped[int] = mapped_column(Id, ForeignKey('ingestions.id'), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InventorySnapshot(Base):
    __tablename__ = 'inventory_snapshots'
    __table_args__ = (
        Index('ix_inventory_snapshots_ingestion_sku', 'ingestion_id', 'sku'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    ingestion_id: Mapped[int] = mapped_column(Id, ForeignKey('ingestions.id', ondelete='CASCADE'), nullable=False)
    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    product_name: Mapped[str | None] = mapped_column(Text)
    location_code: Mapped[str] = mapped_column(Text, nullable=False)
    location_type: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity_on_hand: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    quantity_available: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    quantity_allocated: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    unit_cost: Mapped[Decimal | None] = mapped_column(Money)
    license_plate: Mapped[str | None] = mapped_column(Text)
    raw: Mapped[dict] = mapped_column(JsonDoc, nullable=False, default=dict, server_default='{}')


class Alert(Base):
    __tablename__ = 'alerts'
    __table_args__ = (
        Index('ix_alerts_company_dedupe', 'company_id', 'dedupe_key'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    company_id: Mapped[int] = mapped_column(Id, ForeignKey('companies.id'), nullable=False)
    warehouse_id: Mapped[int | None] = mapped_column(Id, ForeignKey('warehouses.id'))
    ingestion_id: Mapped[int | None] = mapped_column(Id, ForeignKey('ingestions.id'))
    type: Mapped[AlertType] = mapped_column(SQLEnum(AlertType, name='alert_type'), nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(SQLEnum(AlertSeverity, name='alert_severity'), nullable=False)
    severity_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text)
    location_code: Mapped[str | None] = mapped_column(Text)
    dedupe_key: Mapped[str | None] = mapped_column(String(512))
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by_principal_id: Mapped[int | None] = mapped_column(Id, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    company_id: Mapped[int | None] = mapped_column(Id, ForeignKey('companies.id'))
    actor_principal_id: Mapped[int | None] = mapped_column(Id, ForeignKey('principals.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(64))
    entity_id: Mapped[str | None] = mapped_column(String(64))
    ip: Mapped[str | None] = mapped_column(IpAddress)
    meta: Mapped[dict] = mapped_column('metadata', JsonDoc, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
