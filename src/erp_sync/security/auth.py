from __future__ import annotations
import hmac
from fastapi import Header, HTTPException, Request
from erp_sync.config import get_settings
from erp_sync.sync.agent_registry import AgentRegistryService, verify_token


def require_admin(request: Request, x_api_key: str | None = Header(None, alias="X-API-Key")):
    """Admin guard: X-API-Key must equal API_SECRET (constant-time)."""
    services = getattr(request.app.state, "services", None)
    secret = services.settings.api_secret if services is not None else get_settings().api_secret
    if not secret:
        raise HTTPException(status_code=401, detail="API_SECRET not configured on server")
    if not x_api_key:
        raise HTTPException(status_code=401, detail="X-API-Key header is required")
    if not hmac.compare_digest(x_api_key.encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Invalid API key")


def bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header is required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Bearer token is required")
    return token.strip()


def authenticate_agent(registry: AgentRegistryService, vendor_id: str | None, authorization: str | None) -> str:
    """Verify an agent's bearer token against its stored bcrypt hash; returns the vendor id."""
    token = bearer_token(authorization)
    if not vendor_id:
        raise HTTPException(status_code=401, detail="vendorId is required")
    token_hash = registry.get_token_hash(vendor_id)
    # unknown vendors and bad tokens are indistinguishable to the caller
    if token_hash is None or not verify_token(token, token_hash):
        raise HTTPException(status_code=401, detail="Invalid agent credentials")
    return vendor_id
