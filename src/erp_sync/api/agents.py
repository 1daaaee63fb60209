from __future__ import annotations
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException
from erp_sync.api.deps import get_services
from erp_sync.container import SyncServices
from erp_sync.security.auth import authenticate_agent, require_admin
from erp_sync.validation.payloads import AgentRegisterRequest, AgentHeartbeatRequest, AgentCallbackRequest

router = APIRouter(prefix="/agents", tags=["agents"])


@router.post("/register", status_code=201)
def register_agent(body: AgentRegisterRequest, services: SyncServices = Depends(get_services)):
    agent = services.registry.register(body.vendorId, body.agentUrl, body.erpType, body.authToken, body.version)
    return {"success": True, "agent": agent.to_dict()}


@router.post("/heartbeat")
def heartbeat(body: AgentHeartbeatRequest, authorization: Optional[str] = Header(None),
              services: SyncServices = Depends(get_services)):
    authenticate_agent(services.registry, body.vendorId, authorization)
    agent = services.registry.heartbeat(body.vendorId, body.version)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"Agent with vendorId {body.vendorId} not found")
    return {"success": True, "vendorId": agent.vendor_id, "status": agent.status,
            "lastHeartbeat": agent.last_heartbeat.isoformat() if agent.last_heartbeat else None}


@router.post("/callback")
def agent_callback(
    body: AgentCallbackRequest,
    authorization: Optional[str] = Header(None),
    x_vendor_id: Optional[str] = Header(None, alias="X-Vendor-ID"),
    services: SyncServices = Depends(get_services),
):
    vendor_id = authenticate_agent(services.registry, x_vendor_id, authorization)
    success, message = services.jobs.apply_callback(
        vendor_id, body.jobId, body.status, erp_reference=body.erpReference,
        error=body.error, metadata=body.metadata,
    )
    return {"success": success, "message": message}


@router.get("", dependencies=[Depends(require_admin)])
def list_agents(status: Optional[str] = None, services: SyncServices = Depends(get_services)):
    agents = services.registry.list_agents(status)
    return {"agents": [a.to_dict() for a in agents], "total": len(agents)}


@router.get("/{vendor_id}", dependencies=[Depends(require_admin)])
def get_agent(vendor_id: str, services: SyncServices = Depends(get_services)):
    agent = services.registry.get_agent(vendor_id)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"Agent with vendorId {vendor_id} not found")
    return agent.to_dict()


@router.delete("/{vendor_id}", dependencies=[Depends(require_admin)])
def deregister_agent(vendor_id: str, services: SyncServices = Depends(get_services)):
    if not services.registry.deregister(vendor_id):
        raise HTTPException(status_code=404, detail=f"Agent with vendorId {vendor_id} not found")
    return {"success": True, "message": f"Agent {vendor_id} deregistered"}
