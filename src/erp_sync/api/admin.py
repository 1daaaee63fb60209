from __future__ import annotations
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from erp_sync.api.deps import get_services, correlation_id
from erp_sync.container import SyncServices
from erp_sync.models.tables import ErpCodeMapping
from erp_sync.security.auth import require_admin
from erp_sync.sync.dead_letter import DeadLetterStateError, entry_to_dict
from erp_sync.sync.jobs import JobEnqueueError, job_to_dict
from erp_sync.sync.mapping import MAPPING_TYPES

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class MappingIn(BaseModel):
    vendorId: str = Field(min_length=1, max_length=64)
    mappingType: str
    erpCode: str = Field(min_length=1, max_length=64)
    restoCode: str = Field(min_length=1, max_length=64)
    restoLabel: str = Field(min_length=1, max_length=255)
    createdBy: Optional[str] = None


class MappingPatch(BaseModel):
    restoCode: Optional[str] = Field(None, min_length=1, max_length=64)
    restoLabel: Optional[str] = Field(None, min_length=1, max_length=255)
    isActive: Optional[bool] = None


class SeedEntry(BaseModel):
    mappingType: str
    erpCode: str = Field(min_length=1, max_length=64)
    restoCode: str = Field(min_length=1, max_length=64)
    restoLabel: str = Field(min_length=1, max_length=255)


class SeedIn(BaseModel):
    vendorId: str = Field(min_length=1, max_length=64)
    mappings: List[SeedEntry]
    createdBy: Optional[str] = None


class ResolveIn(BaseModel):
    resolvedBy: str = Field(min_length=1, max_length=64)


class OrderSyncIn(BaseModel):
    vendorId: str = Field(min_length=1, max_length=64)
    orderData: Dict[str, Any]


class BreakerResetIn(BaseModel):
    vendorId: Optional[str] = None
    apiType: Optional[str] = None


def _mapping_dict(m: ErpCodeMapping) -> dict:
    return {
        "id": m.id,
        "vendorId": m.vendor_id,
        "mappingType": m.mapping_type,
        "erpCode": m.erp_code,
        "restoCode": m.resto_code,
        "restoLabel": m.resto_label,
        "isActive": m.is_active,
        "createdBy": m.created_by,
        "updatedAt": m.updated_at.isoformat() if m.updated_at else None,
    }


def _check_mapping_type(mapping_type: str):
    if mapping_type not in MAPPING_TYPES:
        raise HTTPException(status_code=422, detail=f"mappingType must be one of {', '.join(MAPPING_TYPES)}")


# mappings ---------------------------------------------------------------------

@router.get("/mappings")
def list_mappings(vendorId: str, type: Optional[str] = None, includeInactive: bool = False,
                  page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=500),
                  services: SyncServices = Depends(get_services)):
    rows, total = services.mappings.list_mappings(vendorId, type, includeInactive, page, limit)
    return {"mappings": [_mapping_dict(r) for r in rows], "total": total, "page": page, "limit": limit}


@router.post("/mappings", status_code=201)
def create_mapping(body: MappingIn, services: SyncServices = Depends(get_services)):
    _check_mapping_type(body.mappingType)
    row = services.mappings.create_mapping(body.vendorId, body.mappingType, body.erpCode,
                                           body.restoCode, body.restoLabel, body.createdBy)
    return _mapping_dict(row)


@router.post("/mappings/seed")
def seed_mappings(body: SeedIn, services: SyncServices = Depends(get_services)):
    for m in body.mappings:
        _check_mapping_type(m.mappingType)
    count = services.mappings.seed_mappings(
        body.vendorId,
        [{"mapping_type": m.mappingType, "erp_code": m.erpCode, "resto_code": m.restoCode,
          "resto_label": m.restoLabel} for m in body.mappings],
        created_by=body.createdBy,
    )
    return {"success": True, "count": count}


@router.get("/mappings/cache/stats")
def mapping_cache_stats(services: SyncServices = Depends(get_services)):
    return services.mappings.cache_stats()


@router.post("/mappings/cache/clear")
def clear_mapping_cache(services: SyncServices = Depends(get_services)):
    services.mappings.clear_cache()
    return {"success": True}


@router.patch("/mappings/{mapping_id}")
def update_mapping(mapping_id: int, body: MappingPatch, services: SyncServices = Depends(get_services)):
    row = services.mappings.update_mapping(mapping_id, body.restoCode, body.restoLabel, body.isActive)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Mapping {mapping_id} not found")
    return _mapping_dict(row)


@router.delete("/mappings/{mapping_id}")
def deactivate_mapping(mapping_id: int, services: SyncServices = Depends(get_services)):
    row = services.mappings.deactivate_mapping(mapping_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Mapping {mapping_id} not found")
    return _mapping_dict(row)


# dead letter queue -----------------------------------------------------------------

@router.get("/dlq")
def list_dead_letters(vendorId: Optional[str] = None, resolved: Optional[bool] = False,
                      page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=500),
                      services: SyncServices = Depends(get_services)):
    rows, total = services.dlq.list_entries(vendorId, resolved, page, limit)
    return {"entries": [entry_to_dict(r) for r in rows], "total": total, "page": page, "limit": limit}


@router.get("/dlq/{entry_id}")
def get_dead_letter(entry_id: int, services: SyncServices = Depends(get_services)):
    entry = services.dlq.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"DLQ entry {entry_id} not found")
    return entry_to_dict(entry, with_payload=True)


@router.post("/dlq/{entry_id}/retry")
def retry_dead_letter(entry_id: int, request: Request, services: SyncServices = Depends(get_services)):
    try:
        job = services.dlq.retry(entry_id, correlation_id(request))
    except DeadLetterStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except JobEnqueueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if job is None:
        raise HTTPException(status_code=404, detail=f"DLQ entry {entry_id} not found")
    return {"success": True, "jobId": job.id}


@router.post("/dlq/{entry_id}/resolve")
def resolve_dead_letter(entry_id: int, body: ResolveIn, services: SyncServices = Depends(get_services)):
    try:
        entry = services.dlq.resolve(entry_id, body.resolvedBy)
    except DeadLetterStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if entry is None:
        raise HTTPException(status_code=404, detail=f"DLQ entry {entry_id} not found")
    return entry_to_dict(entry)


# jobs / orders -----------------------------------------------------------------------

@router.get("/jobs")
def list_jobs(vendorId: str, page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=500),
              services: SyncServices = Depends(get_services)):
    rows, total = services.jobs.list_recent(vendorId, page, limit)
    return {"jobs": [job_to_dict(j) for j in rows], "total": total, "page": page, "limit": limit}


@router.get("/jobs/{job_id}")
def get_job(job_id: str, services: SyncServices = Depends(get_services)):
    job = services.jobs.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Sync job {job_id} not found")
    return job_to_dict(job)


@router.post("/orders/{order_id}/sync", status_code=202)
def sync_order(order_id: str, body: OrderSyncIn, request: Request, services: SyncServices = Depends(get_services)):
    try:
        job = services.jobs.create_order_job(body.vendorId, order_id, body.orderData, correlation_id(request))
    except JobEnqueueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"jobId": job.id, "status": job.status}


# circuit breakers ------------------------------------------------------------------------

@router.get("/circuit-breakers")
def circuit_breaker_status(services: SyncServices = Depends(get_services)):
    return {"breakers": services.breakers.statuses()}


@router.post("/circuit-breakers/reset")
def reset_circuit_breaker(body: BreakerResetIn, services: SyncServices = Depends(get_services)):
    if body.vendorId and body.apiType:
        if not services.breakers.reset(body.vendorId, body.apiType):
            raise HTTPException(status_code=404, detail=f"No circuit breaker for {body.vendorId}:{body.apiType}")
        return {"success": True, "reset": 1}
    return {"success": True, "reset": services.breakers.reset_all()}


# reconciliation / metrics ----------------------------------------------------------------------

@router.post("/reconciliation")
def reconcile_all(request: Request, services: SyncServices = Depends(get_services)):
    results = services.reconciliation.run_for_all(correlation_id(request))
    return {"results": [r.to_dict() for r in results]}


@router.post("/reconciliation/{vendor_id}")
def reconcile_vendor(vendor_id: str, request: Request, services: SyncServices = Depends(get_services)):
    if services.registry.get_agent(vendor_id) is None:
        raise HTTPException(status_code=404, detail=f"Agent with vendorId {vendor_id} not found")
    return services.reconciliation.run_for_vendor(vendor_id, correlation_id(request)).to_dict()


@router.get("/metrics/sync")
def sync_metrics(vendorId: Optional[str] = None, sinceHours: int = Query(24, ge=1, le=24 * 90),
                 services: SyncServices = Depends(get_services)):
    return services.metrics.sync_metrics(vendorId, sinceHours)


@router.get("/metrics/reconciliation/{vendor_id}")
def reconciliation_metrics(vendor_id: str, sinceDays: int = Query(7, ge=1, le=365),
                           services: SyncServices = Depends(get_services)):
    return services.metrics.reconciliation_metrics(vendor_id, sinceDays)


@router.get("/metrics/agents")
def agent_metrics(services: SyncServices = Depends(get_services)):
    return services.registry.agent_stats()
