from __future__ import annotations
import uuid
from datetime import datetime, timezone
from sqlalchemy import String, Integer, DateTime, JSON, ForeignKey, Float, Index, Boolean, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from erp_sync.infrastructure.db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


class SyncJob(Base):
    __tablename__ = "sync_jobs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    vendor_id: Mapped[str] = mapped_column(String(64), index=True)
    operation: Mapped[str] = mapped_column(String(64), index=True)
    source_id: Mapped[str | None] = mapped_column(String(64), index=True, default=None)  # e.g. order id
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), index=True, default="pending")  # pending|processing|completed|failed
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=5)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    erp_reference: Mapped[str | None] = mapped_column(String(128), default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    error_stack: Mapped[str | None] = mapped_column(Text, default=None)
    correlation_id: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, index=True, default=None)

    __table_args__ = (
        Index("ix_sync_job_source_status", "operation", "source_id", "status"),
        Index("ix_sync_job_vendor_created", "vendor_id", "created_at"),
    )


class AgentRegistration(Base):
    __tablename__ = "agent_registrations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    agent_url: Mapped[str] = mapped_column(String(512))
    erp_type: Mapped[str] = mapped_column(String(32))  # ebp|sage|odoo|custom
    status: Mapped[str] = mapped_column(String(16), index=True, default="online")  # denormalized, see registry
    last_heartbeat: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)
    version: Mapped[str | None] = mapped_column(String(32), default=None)
    auth_token_hash: Mapped[str] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class ErpCodeMapping(Base):
    __tablename__ = "erp_code_mappings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_id: Mapped[str] = mapped_column(String(64), index=True)
    mapping_type: Mapped[str] = mapped_column(String(16))  # unit|vat|family|subfamily
    erp_code: Mapped[str] = mapped_column(String(64))
    resto_code: Mapped[str] = mapped_column(String(64))
    resto_label: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_by: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("vendor_id", "mapping_type", "erp_code", name="uq_erp_mapping_vendor_type_code"),
    )


class Item(Base):
    __tablename__ = "items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_id: Mapped[str] = mapped_column(String(64), index=True)
    sku: Mapped[str] = mapped_column(String(128))
    erp_id: Mapped[str | None] = mapped_column(String(128), default=None)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, default=None)
    slug: Mapped[str] = mapped_column(String(300), index=True)
    barcode: Mapped[str | None] = mapped_column(String(64), default=None)
    erp_unit_code: Mapped[str] = mapped_column(String(64))
    erp_vat_code: Mapped[str] = mapped_column(String(64))
    erp_family_code: Mapped[str | None] = mapped_column(String(64), default=None)
    erp_subfamily_code: Mapped[str | None] = mapped_column(String(64), default=None)
    unit_code: Mapped[str] = mapped_column(String(64))
    unit_label: Mapped[str] = mapped_column(String(255))
    vat_code: Mapped[str] = mapped_column(String(64))
    vat_rate: Mapped[str] = mapped_column(String(255))
    family_code: Mapped[str | None] = mapped_column(String(64), default=None)
    family_label: Mapped[str | None] = mapped_column(String(255), default=None)
    subfamily_code: Mapped[str | None] = mapped_column(String(64), default=None)
    subfamily_label: Mapped[str | None] = mapped_column(String(255), default=None)
    unit_price: Mapped[float | None] = mapped_column(Float, default=None)
    price_excl_vat: Mapped[float | None] = mapped_column(Float, default=None)
    price_incl_vat: Mapped[float | None] = mapped_column(Float, default=None)
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    total_stock: Mapped[float] = mapped_column(Float, default=0.0)
    reserved_stock: Mapped[float] = mapped_column(Float, default=0.0)
    content_hash: Mapped[str] = mapped_column(String(64))
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("vendor_id", "sku", name="uq_item_vendor_sku"),
    )


class Warehouse(Base):
    __tablename__ = "warehouses"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_id: Mapped[str] = mapped_column(String(64), index=True)
    erp_warehouse_id: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(255))
    code: Mapped[str | None] = mapped_column(String(64), default=None)
    address: Mapped[str | None] = mapped_column(String(255), default=None)
    city: Mapped[str | None] = mapped_column(String(128), default=None)
    postal_code: Mapped[str | None] = mapped_column(String(16), default=None)
    country: Mapped[str] = mapped_column(String(2), default="FR")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_main: Mapped[bool] = mapped_column(Boolean, default=False)
    content_hash: Mapped[str] = mapped_column(String(64))
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("vendor_id", "erp_warehouse_id", name="uq_warehouse_vendor_erp_id"),
    )


class Stock(Base):
    __tablename__ = "stocks"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_id: Mapped[str] = mapped_column(String(64), index=True)
    item_id: Mapped[int] = mapped_column(Integer, ForeignKey("items.id"), index=True)
    warehouse_id: Mapped[int] = mapped_column(Integer, ForeignKey("warehouses.id"), index=True)
    item_sku: Mapped[str] = mapped_column(String(128))
    erp_warehouse_id: Mapped[str] = mapped_column(String(64))
    quantity: Mapped[float] = mapped_column(Float, default=0.0)
    reserved_quantity: Mapped[float] = mapped_column(Float, default=0.0)
    available_quantity: Mapped[float] = mapped_column(Float, default=0.0)
    content_hash: Mapped[str] = mapped_column(String(64))
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("vendor_id", "warehouse_id", "item_id", name="uq_stock_vendor_warehouse_item"),
        Index("ix_stock_vendor_sku", "vendor_id", "item_sku"),
    )


class Order(Base):
    """Minimal order projection: the record an ERP reference is written back to."""
    __tablename__ = "orders"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    vendor_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    erp_reference: Mapped[str | None] = mapped_column(String(128), default=None)
    erp_document_id: Mapped[str | None] = mapped_column(String(128), default=None)
    erp_synced_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class DeadLetterEntry(Base):
    __tablename__ = "dead_letter_entries"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_job_id: Mapped[str] = mapped_column(String(36), index=True)
    vendor_id: Mapped[str] = mapped_column(String(64), index=True)
    operation: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    failure_reason: Mapped[str] = mapped_column(Text)
    failure_stack: Mapped[str | None] = mapped_column(Text, default=None)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), default=None)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_retried_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    last_retry_job_id: Mapped[str | None] = mapped_column(String(36), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_dlq_vendor_resolved", "vendor_id", "resolved", "created_at"),
    )


class ReconciliationEvent(Base):
    __tablename__ = "reconciliation_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_id: Mapped[str] = mapped_column(String(64), index=True)
    event_type: Mapped[str] = mapped_column(String(32), index=True)  # full_checksum|incremental_sync|drift_detected|drift_resolved
    summary: Mapped[dict] = mapped_column(JSON, default=dict)
    duration_ms: Mapped[int | None] = mapped_column(Integer, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
