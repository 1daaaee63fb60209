"""Content hashing and the apply/skip/stale decision for incoming records."""
from __future__ import annotations
import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping

ITEM_HASH_FIELDS = (
    "sku", "name", "description", "erpId", "barcode",
    "erpUnitCode", "erpVatCode", "erpFamilyCode", "erpSubfamilyCode",
    "unitPrice", "priceExclVat", "priceInclVat", "currency", "isActive",
)
STOCK_HASH_FIELDS = ("itemSku", "erpWarehouseId", "quantity", "reservedQuantity", "availableQuantity")
WAREHOUSE_HASH_FIELDS = (
    "erpWarehouseId", "name", "code", "address", "city", "postalCode", "country", "isActive", "isMain",
)


class DedupDecision(str, Enum):
    APPLY = "apply"
    SKIP = "skip"
    STALE = "stale"


def compute_content_hash(record: Mapping[str, Any], fields: Iterable[str]) -> str:
    """SHA-256 over the named fields in a fixed order.

    Missing fields hash as null so adding an optional field with no value does
    not change the digest.
    """
    canonical = [[f, record.get(f)] for f in fields]
    blob = json.dumps(canonical, separators=(",", ":"), sort_keys=True, default=str)
    return hashlib.sha256(blob.encode()).hexdigest()


def decide(
    incoming_hash: str,
    incoming_synced_at: datetime | None,
    stored_hash: str | None,
    stored_synced_at: datetime | None,
    enforce_staleness: bool = True,
) -> DedupDecision:
    if stored_hash is None:
        return DedupDecision.APPLY
    if incoming_hash == stored_hash:
        return DedupDecision.SKIP
    if (
        enforce_staleness
        and incoming_synced_at is not None
        and stored_synced_at is not None
        and incoming_synced_at < stored_synced_at
    ):
        return DedupDecision.STALE
    return DedupDecision.APPLY


def checksum_of(pairs: Iterable[tuple[str, str]]) -> str:
    """Range checksum: sha256 of ``key:hash`` joined by ``|`` in key order."""
    ordered = sorted(pairs, key=lambda p: p[0])
    blob = "|".join(f"{k}:{h}" for k, h in ordered)
    return hashlib.sha256(blob.encode()).hexdigest()
