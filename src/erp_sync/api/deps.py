from __future__ import annotations
from fastapi import Request
from erp_sync.container import SyncServices, build_services


def get_services(request: Request) -> SyncServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services


def correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None)
