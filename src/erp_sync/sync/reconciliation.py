"""Drift detection between a vendor's ERP and the local item store.

The ERP side (via the agent) and the local side each checksum a sku range as
sha256 over ``sku:contentHash`` joined by ``|`` in sku order, covering active
items with ``rangeStart <= sku < rangeEnd`` (either bound may be open). A
mismatching range is split at its local median sku and both halves pushed on a
work stack until a range holds at most ``leaf_size`` records, at which point
both sides are compared item by item. The ERP copy always wins.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from typing import Any
from sqlalchemy import select, update
from erp_sync.infrastructure.structured_logging import log_event
from erp_sync.models.tables import Item, utcnow
from erp_sync.sync.agent_client import AgentCommunicationService, AgentUnavailableError
from erp_sync.sync.agent_registry import AgentRegistryService
from erp_sync.sync.content_hash import checksum_of
from erp_sync.sync.events import record_event
from erp_sync.sync.ingest import SyncIngestService

logger = logging.getLogger(__name__)

CHECKSUM_ENDPOINT = "/sync/checksum"
ITEMS_ENDPOINT = "/sync/items"


@dataclass
class KeyRange:
    start: str | None = None  # inclusive
    end: str | None = None    # exclusive
    depth: int = 0

    def payload(self) -> dict:
        return {"rangeStart": self.start, "rangeEnd": self.end}

    def label(self) -> str:
        return f"[{self.start or '*'}, {self.end or '*'})"


@dataclass
class ReconciliationResult:
    vendor_id: str
    has_drift: bool = False
    ranges_checked: int = 0
    failed_ranges: int = 0
    drifted_skus: list[str] = field(default_factory=list)
    resolved: int = 0
    deactivated: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "vendorId": self.vendor_id,
            "hasDrift": self.has_drift,
            "rangesChecked": self.ranges_checked,
            "failedRanges": self.failed_ranges,
            "conflictsFound": len(self.drifted_skus),
            "conflictsResolved": self.resolved,
            "deactivated": self.deactivated,
            "skus": self.drifted_skus[:100],
            "errors": self.errors[:20],
            "durationMs": self.duration_ms,
        }


class ReconciliationService:
    def __init__(self, session_factory, agents: AgentCommunicationService, ingest: SyncIngestService,
                 registry: AgentRegistryService, leaf_size: int = 10, max_depth: int = 32):
        self._session_factory = session_factory
        self._agents = agents
        self._ingest = ingest
        self._registry = registry
        self.leaf_size = leaf_size
        self.max_depth = max_depth

    # local side -----------------------------------------------------------------
    def local_range(self, vendor_id: str, rng: KeyRange) -> list[tuple[str, str]]:
        stmt = select(Item.sku, Item.content_hash).where(Item.vendor_id == vendor_id, Item.is_active.is_(True))
        if rng.start is not None:
            stmt = stmt.where(Item.sku >= rng.start)
        if rng.end is not None:
            stmt = stmt.where(Item.sku < rng.end)
        with self._session_factory() as s:
            return [(sku, h) for sku, h in s.execute(stmt.order_by(Item.sku)).all()]

    # ERP side -------------------------------------------------------------------
    def _erp_checksum(self, vendor_id: str, rng: KeyRange, correlation_id: str | None) -> dict:
        resp = self._agents.call_agent(vendor_id, "items", CHECKSUM_ENDPOINT, rng.payload(), correlation_id)
        if not isinstance(resp, dict) or not resp.get("checksum"):
            raise AgentUnavailableError(f"malformed checksum response for range {rng.label()}")
        return {"checksum": resp["checksum"], "itemCount": int(resp.get("itemCount") or 0)}

    def _erp_items(self, vendor_id: str, rng: KeyRange, correlation_id: str | None) -> list[dict]:
        resp = self._agents.call_agent(vendor_id, "items", ITEMS_ENDPOINT, rng.payload(), correlation_id)
        if isinstance(resp, dict):
            resp = resp.get("items")
        if not isinstance(resp, list):
            raise AgentUnavailableError(f"malformed items response for range {rng.label()}")
        return [i for i in resp if isinstance(i, dict) and i.get("sku")]

    # driver -----------------------------------------------------------------------
    def run_for_vendor(self, vendor_id: str, correlation_id: str | None = None) -> ReconciliationResult:
        start = time.time()
        result = ReconciliationResult(vendor_id=vendor_id)
        root = KeyRange()
        try:
            erp_root = self._erp_checksum(vendor_id, root, correlation_id)
        except Exception as e:
            result.failed_ranges += 1
            result.errors.append(f"{root.label()}: {e}")
            logger.error(f"Reconciliation aborted for {vendor_id}: {e}")
            return self._finish(result, start, "drift_detected", {"partial": True})

        local_root = self.local_range(vendor_id, root)
        local_checksum = checksum_of(local_root)
        if local_checksum == erp_root["checksum"]:
            result.ranges_checked = 1
            return self._finish(result, start, "full_checksum", {"itemCount": len(local_root)})

        result.has_drift = True
        with self._session_factory() as s:
            record_event(s, vendor_id, "drift_detected", {
                "localChecksum": local_checksum,
                "erpChecksum": erp_root["checksum"],
                "localCount": len(local_root),
                "erpCount": erp_root["itemCount"],
            })
            s.commit()

        stack: list[tuple[KeyRange, dict | None]] = [(root, erp_root)]
        while stack:
            rng, erp = stack.pop()
            result.ranges_checked += 1
            local = local_root if rng is root else self.local_range(vendor_id, rng)
            try:
                if erp is None:
                    erp = self._erp_checksum(vendor_id, rng, correlation_id)
                if erp["checksum"] == checksum_of(local):
                    continue
                if len(local) < 2 or max(len(local), erp["itemCount"]) <= self.leaf_size or rng.depth >= self.max_depth:
                    self._resolve_leaf(vendor_id, rng, local, result, correlation_id)
                    continue
            except Exception as e:
                result.failed_ranges += 1
                result.errors.append(f"{rng.label()}: {e}")
                logger.warning(f"Reconciliation range {rng.label()} failed for {vendor_id}: {e}")
                continue
            mid = local[len(local) // 2][0]
            stack.append((KeyRange(mid, rng.end, rng.depth + 1), None))
            stack.append((KeyRange(rng.start, mid, rng.depth + 1), None))

        return self._finish(result, start, "drift_resolved", {})

    def _resolve_leaf(self, vendor_id: str, rng: KeyRange, local: list[tuple[str, str]],
                      result: ReconciliationResult, correlation_id: str | None) -> None:
        erp_items = {i["sku"]: i for i in self._erp_items(vendor_id, rng, correlation_id)}
        local_hashes = dict(local)
        drifted = [item for sku, item in erp_items.items() if local_hashes.get(sku) != item.get("contentHash")]
        local_only = [sku for sku in local_hashes if sku not in erp_items]
        if drifted:
            result.drifted_skus.extend(i["sku"] for i in drifted)
            for offset in range(0, len(drifted), self._ingest.max_batch):
                summary = self._ingest.ingest_items(
                    vendor_id, drifted[offset:offset + self._ingest.max_batch], is_batch=True, authoritative=True,
                )
                result.resolved += summary.count("processed")
                for r in summary.results:
                    if r.status == "failed":
                        result.errors.append(f"{r.identifier}: {r.reason}")
        if local_only:
            result.drifted_skus.extend(local_only)
            with self._session_factory() as s:
                s.execute(
                    update(Item)
                    .where(Item.vendor_id == vendor_id, Item.sku.in_(local_only))
                    .values(is_active=False, updated_at=utcnow())
                )
                s.commit()
            result.deactivated += len(local_only)

    def _finish(self, result: ReconciliationResult, start: float, event_type: str, extra: dict[str, Any]):
        result.duration_ms = int((time.time() - start) * 1000)
        summary = {**result.to_dict(), **extra}
        with self._session_factory() as s:
            record_event(s, result.vendor_id, event_type, summary, result.duration_ms)
            s.commit()
        log_event(logging.INFO, "reconciliation_finished", event_type=event_type, **summary)
        return result

    def run_for_all(self, correlation_id: str | None = None) -> list[ReconciliationResult]:
        results = []
        for vendor_id in self._registry.active_vendor_ids():
            try:
                results.append(self.run_for_vendor(vendor_id, correlation_id))
            except Exception as e:
                logger.error(f"Reconciliation failed for vendor {vendor_id}: {e}")
        return results
