"""Agent → store ingest: validate, dedup, map and upsert entity batches.

Each record gets its own outcome (processed / skipped / failed). A bad record
never aborts its siblings; only an oversized request is rejected wholesale.
"""
from __future__ import annotations
import logging
import re
import time
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence
from prometheus_client import Counter
from sqlalchemy import select, func, update
from sqlalchemy.exc import SQLAlchemyError
from erp_sync.infrastructure.structured_logging import log_event
from erp_sync.infrastructure.upsert import upsert_rows
from erp_sync.models.tables import Item, Stock, Warehouse, utcnow
from erp_sync.sync.content_hash import (
    DedupDecision, compute_content_hash, decide,
    ITEM_HASH_FIELDS, STOCK_HASH_FIELDS, WAREHOUSE_HASH_FIELDS,
)
from erp_sync.sync.events import record_event
from erp_sync.sync.mapping import ErpMappingService
from erp_sync.validation.payloads import ItemPayload, StockPayload, WarehousePayload, validate_record

logger = logging.getLogger(__name__)

INGEST_RECORDS = Counter('erp_sync_ingest_records_total', 'Ingested records by outcome', ['entity', 'status'])

PROCESSED = "processed"
SKIPPED = "skipped"
FAILED = "failed"


class BatchTooLargeError(ValueError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"batch of {size} records exceeds limit of {limit}")
        self.size = size
        self.limit = limit


@dataclass
class RecordResult:
    identifier: str
    status: str
    reason: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"identifier": self.identifier, "status": self.status}
        if self.reason:
            out["reason"] = self.reason
        if self.detail:
            out["detail"] = self.detail
        return out


@dataclass
class IngestSummary:
    results: list[RecordResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    def to_dict(self) -> dict:
        return {
            "processed": self.count(PROCESSED),
            "skipped": self.count(SKIPPED),
            "failed": self.count(FAILED),
            "results": [r.to_dict() for r in self.results],
        }


def make_slug(name: str, sku: str) -> str:
    base = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode()
    base = re.sub(r"[^a-z0-9]+", "-", base.lower()).strip("-")
    suffix = re.sub(r"[^a-z0-9]+", "-", sku.lower()).strip("-")
    slug = f"{base}-{suffix}" if base else suffix
    return slug[:300]


def _identifier_of(raw: Any, *keys: str) -> str:
    if isinstance(raw, dict):
        parts = [str(raw.get(k)) for k in keys if raw.get(k) is not None]
        if parts:
            return "@".join(parts)
    return "unknown"


class SyncIngestService:
    def __init__(
        self,
        session_factory,
        mappings: ErpMappingService,
        max_incremental: int = 500,
        max_batch: int = 5000,
        chunk_size: int = 50,
        now: Callable = utcnow,
    ):
        self._session_factory = session_factory
        self._mappings = mappings
        self.max_incremental = max_incremental
        self.max_batch = max_batch
        self.chunk_size = chunk_size
        self._now = now

    # public entry points -------------------------------------------------
    def ingest_items(self, vendor_id: str, records: Sequence[Any], is_batch: bool = False,
                     authoritative: bool = False) -> IngestSummary:
        return self._run("items", vendor_id, records, is_batch, authoritative, self._items_chunk)

    def ingest_stock(self, vendor_id: str, records: Sequence[Any], is_batch: bool = False,
                     authoritative: bool = False) -> IngestSummary:
        return self._run("stock", vendor_id, records, is_batch, authoritative, self._stock_chunk)

    def ingest_warehouses(self, vendor_id: str, records: Sequence[Any], is_batch: bool = False,
                          authoritative: bool = False) -> IngestSummary:
        return self._run("warehouses", vendor_id, records, is_batch, authoritative, self._warehouses_chunk)

    # shared driver ---------------------------------------------------------
    def _run(self, entity, vendor_id, records, is_batch, authoritative, handler) -> IngestSummary:
        limit = self.max_batch if is_batch else self.max_incremental
        if len(records) > limit:
            raise BatchTooLargeError(len(records), limit)
        start = time.time()
        summary = IngestSummary()
        step = self.chunk_size if is_batch else max(len(records), 1)
        for offset in range(0, len(records), step):
            chunk = list(records[offset:offset + step])
            results: list[RecordResult | None] = [None] * len(chunk)
            with self._session_factory() as s:
                try:
                    handler(s, vendor_id, chunk, results, authoritative)
                    s.commit()
                except SQLAlchemyError as e:
                    s.rollback()
                    logger.error(f"Ingest chunk failed for vendor {vendor_id} ({entity}): {e}")
                    for i, r in enumerate(results):
                        if r is None or r.status == PROCESSED:
                            ident = r.identifier if r else "unknown"
                            results[i] = RecordResult(ident, FAILED, "persistence_error")
            summary.results.extend(r for r in results if r is not None)
        for r in summary.results:
            INGEST_RECORDS.labels(entity=entity, status=r.status).inc()
        duration_ms = int((time.time() - start) * 1000)
        counts = {k: v for k, v in summary.to_dict().items() if k != "results"}
        log_event(logging.INFO, "ingest_batch", vendor_id=vendor_id, entity=entity,
                  batch=is_batch, authoritative=authoritative, duration_ms=duration_ms, **counts)
        if not authoritative:
            with self._session_factory() as s:
                record_event(s, vendor_id, "incremental_sync",
                             {"entity": entity, "batch": is_batch, **counts}, duration_ms)
                s.commit()
        return summary

    def _gate(self, results, idx, identifier, incoming_hash, incoming_synced_at, stored, authoritative) -> bool:
        """Record skip/stale outcomes; True when the record should be written.

        Authoritative writes (reconciliation repairs) always apply: an unchanged
        hash there can still mean the local row was deactivated.
        """
        if authoritative:
            return True
        stored_hash, stored_synced_at = stored if stored else (None, None)
        decision = decide(incoming_hash, incoming_synced_at, stored_hash, stored_synced_at)
        if decision is DedupDecision.SKIP:
            results[idx] = RecordResult(identifier, SKIPPED, "no_changes")
            return False
        if decision is DedupDecision.STALE:
            results[idx] = RecordResult(
                identifier, FAILED, "stale_data",
                f"existing={stored_synced_at.isoformat()}, incoming={incoming_synced_at.isoformat()}",
            )
            return False
        return True

    @staticmethod
    def _validate_all(model, chunk, results, *id_keys):
        valid = []
        for idx, raw in enumerate(chunk):
            payload, error = validate_record(model, raw)
            if payload is None:
                results[idx] = RecordResult(_identifier_of(raw, *id_keys), FAILED, "validation", error)
            else:
                valid.append((idx, payload))
        return valid

    # items -------------------------------------------------------------------
    def _items_chunk(self, s, vendor_id, chunk, results, authoritative):
        valid = self._validate_all(ItemPayload, chunk, results, "sku")
        if not valid:
            return
        skus = {p.sku for _, p in valid}
        stored = {
            row.sku: (row.content_hash, row.last_synced_at)
            for row in s.execute(
                select(Item.sku, Item.content_hash, Item.last_synced_at)
                .where(Item.vendor_id == vendor_id, Item.sku.in_(skus))
            )
        }
        now = self._now()
        pending: dict[str, dict] = {}
        for idx, p in valid:
            raw = p.model_dump()
            content_hash = p.contentHash or compute_content_hash(raw, ITEM_HASH_FIELDS)
            if not self._gate(results, idx, p.sku, content_hash, p.lastSyncedAt, stored.get(p.sku), authoritative):
                continue
            unit = self._mappings.resolve(vendor_id, "unit", p.erpUnitCode)
            if unit is None:
                results[idx] = RecordResult(p.sku, FAILED, "unmapped_code", f"unit={p.erpUnitCode}")
                continue
            vat = self._mappings.resolve(vendor_id, "vat", p.erpVatCode)
            if vat is None:
                results[idx] = RecordResult(p.sku, FAILED, "unmapped_code", f"vat={p.erpVatCode}")
                continue
            family = self._mappings.resolve(vendor_id, "family", p.erpFamilyCode)
            subfamily = self._mappings.resolve(vendor_id, "subfamily", p.erpSubfamilyCode)
            name = p.name or p.sku
            pending[p.sku] = {
                "vendor_id": vendor_id,
                "sku": p.sku,
                "erp_id": p.erpId,
                "name": name,
                "description": p.description,
                "slug": p.slug or make_slug(name, p.sku),
                "barcode": p.barcode,
                "erp_unit_code": p.erpUnitCode,
                "erp_vat_code": p.erpVatCode,
                "erp_family_code": p.erpFamilyCode,
                "erp_subfamily_code": p.erpSubfamilyCode,
                "unit_code": unit.resto_code,
                "unit_label": unit.resto_label,
                "vat_code": vat.resto_code,
                "vat_rate": vat.resto_label,
                "family_code": family.resto_code if family else None,
                "family_label": family.resto_label if family else None,
                "subfamily_code": subfamily.resto_code if subfamily else None,
                "subfamily_label": subfamily.resto_label if subfamily else None,
                "unit_price": p.unitPrice,
                "price_excl_vat": p.priceExclVat,
                "price_incl_vat": p.priceInclVat,
                "currency": p.currency.upper(),
                "is_active": p.isActive,
                "total_stock": 0.0,
                "reserved_stock": 0.0,
                "content_hash": content_hash,
                "last_synced_at": p.lastSyncedAt,
                "created_at": now,
                "updated_at": now,
            }
            results[idx] = RecordResult(p.sku, PROCESSED)
        if pending:
            rows = list(pending.values())
            update_cols = [k for k in rows[0] if k not in ("vendor_id", "sku", "created_at", "total_stock", "reserved_stock")]
            upsert_rows(s, Item, rows, ("vendor_id", "sku"), update_cols)

    # stock -------------------------------------------------------------------
    def _stock_chunk(self, s, vendor_id, chunk, results, authoritative):
        valid = self._validate_all(StockPayload, chunk, results, "itemSku", "erpWarehouseId")
        if not valid:
            return
        skus = {p.itemSku for _, p in valid}
        wh_ids = {p.erpWarehouseId for _, p in valid}
        items = dict(s.execute(select(Item.sku, Item.id).where(Item.vendor_id == vendor_id, Item.sku.in_(skus))).all())
        warehouses = dict(s.execute(
            select(Warehouse.erp_warehouse_id, Warehouse.id)
            .where(Warehouse.vendor_id == vendor_id, Warehouse.erp_warehouse_id.in_(wh_ids))
        ).all())
        stored = {
            (row.item_id, row.warehouse_id): (row.content_hash, row.last_synced_at)
            for row in s.execute(
                select(Stock.item_id, Stock.warehouse_id, Stock.content_hash, Stock.last_synced_at)
                .where(Stock.vendor_id == vendor_id, Stock.item_sku.in_(skus))
            )
        }
        now = self._now()
        pending: dict[tuple[int, int], dict] = {}
        for idx, p in valid:
            identifier = f"{p.itemSku}@{p.erpWarehouseId}"
            item_id = items.get(p.itemSku)
            if item_id is None:
                results[idx] = RecordResult(identifier, FAILED, "item_not_found", p.itemSku)
                continue
            warehouse_id = warehouses.get(p.erpWarehouseId)
            if warehouse_id is None:
                results[idx] = RecordResult(identifier, FAILED, "warehouse_not_found", p.erpWarehouseId)
                continue
            available = p.available
            raw = {**p.model_dump(), "availableQuantity": available}
            content_hash = p.contentHash or compute_content_hash(raw, STOCK_HASH_FIELDS)
            key = (item_id, warehouse_id)
            if not self._gate(results, idx, identifier, content_hash, p.lastSyncedAt, stored.get(key), authoritative):
                continue
            pending[key] = {
                "vendor_id": vendor_id,
                "item_id": item_id,
                "warehouse_id": warehouse_id,
                "item_sku": p.itemSku,
                "erp_warehouse_id": p.erpWarehouseId,
                "quantity": p.quantity,
                "reserved_quantity": p.reservedQuantity,
                "available_quantity": available,
                "content_hash": content_hash,
                "last_synced_at": p.lastSyncedAt,
                "created_at": now,
                "updated_at": now,
            }
            results[idx] = RecordResult(identifier, PROCESSED)
        if not pending:
            return
        upsert_rows(s, Stock, list(pending.values()), ("vendor_id", "warehouse_id", "item_id"))
        self._aggregate_item_stock(s, {item_id for item_id, _ in pending})

    @staticmethod
    def _aggregate_item_stock(s, item_ids: set[int]) -> None:
        totals = s.execute(
            select(Stock.item_id, func.sum(Stock.quantity), func.sum(Stock.reserved_quantity))
            .where(Stock.item_id.in_(item_ids))
            .group_by(Stock.item_id)
        ).all()
        for item_id, total, reserved in totals:
            s.execute(
                update(Item)
                .where(Item.id == item_id)
                .values(total_stock=float(total or 0), reserved_stock=float(reserved or 0))
            )

    # warehouses ----------------------------------------------------------------
    def _warehouses_chunk(self, s, vendor_id, chunk, results, authoritative):
        valid = self._validate_all(WarehousePayload, chunk, results, "erpWarehouseId")
        if not valid:
            return
        ids = {p.erpWarehouseId for _, p in valid}
        stored = {
            row.erp_warehouse_id: (row.content_hash, row.last_synced_at)
            for row in s.execute(
                select(Warehouse.erp_warehouse_id, Warehouse.content_hash, Warehouse.last_synced_at)
                .where(Warehouse.vendor_id == vendor_id, Warehouse.erp_warehouse_id.in_(ids))
            )
        }
        now = self._now()
        pending: dict[str, dict] = {}
        for idx, p in valid:
            raw = p.model_dump()
            content_hash = p.contentHash or compute_content_hash(raw, WAREHOUSE_HASH_FIELDS)
            if not self._gate(results, idx, p.erpWarehouseId, content_hash, p.lastSyncedAt,
                              stored.get(p.erpWarehouseId), authoritative):
                continue
            pending[p.erpWarehouseId] = {
                "vendor_id": vendor_id,
                "erp_warehouse_id": p.erpWarehouseId,
                "name": p.name,
                "code": p.code,
                "address": p.address,
                "city": p.city,
                "postal_code": p.postalCode,
                "country": p.country.upper(),
                "is_active": p.isActive,
                "is_main": p.isMain,
                "content_hash": content_hash,
                "last_synced_at": p.lastSyncedAt,
                "created_at": now,
                "updated_at": now,
            }
            results[idx] = RecordResult(p.erpWarehouseId, PROCESSED)
        if pending:
            upsert_rows(s, Warehouse, list(pending.values()), ("vendor_id", "erp_warehouse_id"))
