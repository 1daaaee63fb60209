from __future__ import annotations
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException
from erp_sync.api.deps import get_services
from erp_sync.container import SyncServices
from erp_sync.security.auth import authenticate_agent
from erp_sync.sync.ingest import BatchTooLargeError
from erp_sync.validation.payloads import ItemSyncRequest, StockSyncRequest, WarehouseSyncRequest

router = APIRouter(prefix="/sync", tags=["sync"])


def _ingest(services: SyncServices, authorization, vendor_id, handler, records, is_batch):
    authenticate_agent(services.registry, vendor_id, authorization)
    try:
        summary = handler(vendor_id, records, is_batch=is_batch)
    except BatchTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))
    return summary.to_dict()


@router.post("/items")
def sync_items(body: ItemSyncRequest, authorization: Optional[str] = Header(None),
               services: SyncServices = Depends(get_services)):
    return _ingest(services, authorization, body.vendorId, services.ingest.ingest_items, body.items, False)


@router.post("/items/batch")
def sync_items_batch(body: ItemSyncRequest, authorization: Optional[str] = Header(None),
                     services: SyncServices = Depends(get_services)):
    return _ingest(services, authorization, body.vendorId, services.ingest.ingest_items, body.items, True)


@router.post("/stock")
def sync_stock(body: StockSyncRequest, authorization: Optional[str] = Header(None),
               services: SyncServices = Depends(get_services)):
    return _ingest(services, authorization, body.vendorId, services.ingest.ingest_stock, body.stock, False)


@router.post("/stock/batch")
def sync_stock_batch(body: StockSyncRequest, authorization: Optional[str] = Header(None),
                     services: SyncServices = Depends(get_services)):
    return _ingest(services, authorization, body.vendorId, services.ingest.ingest_stock, body.stock, True)


@router.post("/warehouses")
def sync_warehouses(body: WarehouseSyncRequest, authorization: Optional[str] = Header(None),
                    services: SyncServices = Depends(get_services)):
    return _ingest(services, authorization, body.vendorId, services.ingest.ingest_warehouses, body.warehouses, False)


@router.post("/warehouses/batch")
def sync_warehouses_batch(body: WarehouseSyncRequest, authorization: Optional[str] = Header(None),
                          services: SyncServices = Depends(get_services)):
    return _ingest(services, authorization, body.vendorId, services.ingest.ingest_warehouses, body.warehouses, True)
