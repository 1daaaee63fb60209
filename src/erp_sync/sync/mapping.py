"""ERP code mapping resolver with a process-local TTL/LRU cache."""
from __future__ import annotations
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable
from prometheus_client import Counter
from sqlalchemy import select, func
from erp_sync.infrastructure.upsert import upsert_rows
from erp_sync.models.tables import ErpCodeMapping, utcnow

logger = logging.getLogger(__name__)

MAPPING_TYPES = ("unit", "vat", "family", "subfamily")

MAPPING_CACHE_LOOKUPS = Counter('erp_mapping_cache_lookups_total', 'Mapping cache lookups', ['result'])


@dataclass(frozen=True)
class ResolvedCode:
    resto_code: str
    resto_label: str


class MappingCache:
    """Bounded LRU with per-entry TTL. Negative results are cached as None."""

    _MISSING = object()

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 10000, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, ResolvedCode | None]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(vendor_id: str, mapping_type: str, erp_code: str) -> str:
        return f"{vendor_id}:{mapping_type}:{erp_code}"

    def get(self, key: str):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return self._MISSING
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return self._MISSING
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def put(self, key: str, value: ResolvedCode | None) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
        }


class ErpMappingService:
    def __init__(self, session_factory, cache: MappingCache):
        self._session_factory = session_factory
        self.cache = cache

    def resolve(self, vendor_id: str, mapping_type: str, erp_code: str | None) -> ResolvedCode | None:
        if not erp_code:
            return None
        key = MappingCache.key(vendor_id, mapping_type, erp_code)
        cached = self.cache.get(key)
        if cached is not MappingCache._MISSING:
            MAPPING_CACHE_LOOKUPS.labels(result="hit").inc()
            return cached
        MAPPING_CACHE_LOOKUPS.labels(result="miss").inc()
        with self._session_factory() as s:
            row = s.execute(
                select(ErpCodeMapping).where(
                    ErpCodeMapping.vendor_id == vendor_id,
                    ErpCodeMapping.mapping_type == mapping_type,
                    ErpCodeMapping.erp_code == erp_code,
                    ErpCodeMapping.is_active.is_(True),
                )
            ).scalar_one_or_none()
        value = ResolvedCode(row.resto_code, row.resto_label) if row else None
        self.cache.put(key, value)
        return value

    def create_mapping(self, vendor_id: str, mapping_type: str, erp_code: str, resto_code: str,
                       resto_label: str, created_by: str | None = None) -> ErpCodeMapping:
        """Create or reactivate the mapping for (vendor, type, code)."""
        _check_type(mapping_type)
        now = utcnow()
        with self._session_factory() as s:
            upsert_rows(
                s,
                ErpCodeMapping,
                [{
                    "vendor_id": vendor_id,
                    "mapping_type": mapping_type,
                    "erp_code": erp_code,
                    "resto_code": resto_code,
                    "resto_label": resto_label,
                    "is_active": True,
                    "created_by": created_by,
                    "created_at": now,
                    "updated_at": now,
                }],
                conflict_columns=("vendor_id", "mapping_type", "erp_code"),
                update_columns=("resto_code", "resto_label", "is_active", "updated_at"),
            )
            s.commit()
            row = s.execute(
                select(ErpCodeMapping).where(
                    ErpCodeMapping.vendor_id == vendor_id,
                    ErpCodeMapping.mapping_type == mapping_type,
                    ErpCodeMapping.erp_code == erp_code,
                )
            ).scalar_one()
        self.cache.invalidate(MappingCache.key(vendor_id, mapping_type, erp_code))
        logger.info(f"Mapping upserted {vendor_id}:{mapping_type}:{erp_code} -> {resto_code}")
        return row

    def update_mapping(self, mapping_id: int, resto_code: str | None = None, resto_label: str | None = None,
                       is_active: bool | None = None) -> ErpCodeMapping | None:
        with self._session_factory() as s:
            row = s.get(ErpCodeMapping, mapping_id)
            if row is None:
                return None
            if resto_code is not None:
                row.resto_code = resto_code
            if resto_label is not None:
                row.resto_label = resto_label
            if is_active is not None:
                row.is_active = is_active
            row.updated_at = utcnow()
            s.commit()
        self.cache.invalidate(MappingCache.key(row.vendor_id, row.mapping_type, row.erp_code))
        return row

    def deactivate_mapping(self, mapping_id: int) -> ErpCodeMapping | None:
        return self.update_mapping(mapping_id, is_active=False)

    def list_mappings(self, vendor_id: str, mapping_type: str | None = None, include_inactive: bool = False,
                      page: int = 1, limit: int = 50) -> tuple[list[ErpCodeMapping], int]:
        filters = [ErpCodeMapping.vendor_id == vendor_id]
        if mapping_type:
            filters.append(ErpCodeMapping.mapping_type == mapping_type)
        if not include_inactive:
            filters.append(ErpCodeMapping.is_active.is_(True))
        with self._session_factory() as s:
            total = s.execute(select(func.count(ErpCodeMapping.id)).where(*filters)).scalar() or 0
            rows = s.execute(
                select(ErpCodeMapping)
                .where(*filters)
                .order_by(ErpCodeMapping.mapping_type, ErpCodeMapping.erp_code)
                .offset((max(page, 1) - 1) * limit)
                .limit(limit)
            ).scalars().all()
        return list(rows), int(total)

    def seed_mappings(self, vendor_id: str, mappings: Iterable[dict], created_by: str | None = None) -> int:
        """Bulk upsert; entries need mapping_type, erp_code, resto_code, resto_label."""
        now = utcnow()
        rows = []
        for m in mappings:
            _check_type(m["mapping_type"])
            rows.append({
                "vendor_id": vendor_id,
                "mapping_type": m["mapping_type"],
                "erp_code": m["erp_code"],
                "resto_code": m["resto_code"],
                "resto_label": m["resto_label"],
                "is_active": True,
                "created_by": created_by,
                "created_at": now,
                "updated_at": now,
            })
        # last occurrence wins inside a single statement
        unique = {(r["mapping_type"], r["erp_code"]): r for r in rows}
        with self._session_factory() as s:
            count = upsert_rows(
                s,
                ErpCodeMapping,
                list(unique.values()),
                conflict_columns=("vendor_id", "mapping_type", "erp_code"),
                update_columns=("resto_code", "resto_label", "is_active", "updated_at"),
            )
            s.commit()
        self.cache.clear()
        logger.info(f"Seeded {count} mappings for vendor {vendor_id}")
        return count

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict:
        return self.cache.stats()


def _check_type(mapping_type: str) -> None:
    if mapping_type not in MAPPING_TYPES:
        raise ValueError(f"unknown mapping type: {mapping_type}")
