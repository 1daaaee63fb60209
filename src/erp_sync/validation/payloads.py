from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class _SyncRecord(BaseModel):
    contentHash: Optional[str] = Field(None, max_length=64)
    lastSyncedAt: Optional[datetime] = None

    @field_validator("lastSyncedAt")
    @classmethod
    def _to_utc(cls, v):
        return _naive_utc(v)


class ItemPayload(_SyncRecord):
    sku: str = Field(min_length=1, max_length=128)
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    erpId: Optional[str] = Field(None, max_length=128)
    slug: Optional[str] = Field(None, max_length=300)
    barcode: Optional[str] = Field(None, max_length=64)
    erpUnitCode: str = Field(min_length=1, max_length=64)
    erpVatCode: str = Field(min_length=1, max_length=64)
    erpFamilyCode: Optional[str] = Field(None, max_length=64)
    erpSubfamilyCode: Optional[str] = Field(None, max_length=64)
    unitPrice: Optional[float] = Field(None, ge=0)
    priceExclVat: Optional[float] = Field(None, ge=0)
    priceInclVat: Optional[float] = Field(None, ge=0)
    currency: str = Field("EUR", min_length=3, max_length=3)
    isActive: bool = True


class StockPayload(_SyncRecord):
    itemSku: str = Field(min_length=1, max_length=128)
    erpWarehouseId: str = Field(min_length=1, max_length=64)
    quantity: float = Field(ge=0)
    reservedQuantity: float = Field(0.0, ge=0)
    availableQuantity: Optional[float] = Field(None, ge=0)

    @model_validator(mode="after")
    def _reserved_within_quantity(self):
        if self.availableQuantity is None and self.reservedQuantity > self.quantity:
            raise ValueError("reservedQuantity exceeds quantity")
        return self

    @property
    def available(self) -> float:
        if self.availableQuantity is not None:
            return self.availableQuantity
        return self.quantity - self.reservedQuantity


class WarehousePayload(_SyncRecord):
    erpWarehouseId: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    code: Optional[str] = Field(None, max_length=64)
    address: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, max_length=128)
    postalCode: Optional[str] = Field(None, max_length=16)
    country: str = Field("FR", min_length=2, max_length=2)
    isActive: bool = True
    isMain: bool = False


# Request envelopes. Records stay raw dicts so one bad record cannot fail the request.
class ItemSyncRequest(BaseModel):
    vendorId: str = Field(min_length=1, max_length=64)
    items: List[Dict[str, Any]]


class StockSyncRequest(BaseModel):
    vendorId: str = Field(min_length=1, max_length=64)
    stock: List[Dict[str, Any]]


class WarehouseSyncRequest(BaseModel):
    vendorId: str = Field(min_length=1, max_length=64)
    warehouses: List[Dict[str, Any]]


class AgentRegisterRequest(BaseModel):
    vendorId: str = Field(min_length=1, max_length=64)
    agentUrl: str = Field(min_length=1, max_length=512)
    erpType: Literal["ebp", "sage", "odoo", "custom"]
    authToken: str = Field(min_length=16, max_length=72)  # bcrypt input limit
    version: Optional[str] = Field(None, max_length=32)


class AgentHeartbeatRequest(BaseModel):
    vendorId: str = Field(min_length=1, max_length=64)
    version: Optional[str] = Field(None, max_length=32)


class AgentCallbackRequest(BaseModel):
    jobId: str = Field(min_length=1, max_length=64)
    status: Literal["completed", "failed"]
    erpReference: Optional[str] = Field(None, max_length=128)
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata")
    @classmethod
    def _bounded_document_id(cls, v):
        doc_id = v.get("erpDocumentId")
        if doc_id is not None and len(str(doc_id)) > 128:
            raise ValueError("erpDocumentId must be at most 128 characters")
        return v


M = TypeVar("M", bound=BaseModel)


def validate_record(model: Type[M], raw: Any) -> tuple[M | None, str | None]:
    if not isinstance(raw, dict):
        return None, "record must be an object"
    try:
        return model(**raw), None
    except ValidationError as ve:
        err = ve.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        return None, f"{loc}: {err.get('msg', 'invalid')}"
