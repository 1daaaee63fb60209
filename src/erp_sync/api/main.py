from __future__ import annotations
import json
import logging
import time
import uuid
import redis
from fastapi import FastAPI, Request, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from erp_sync.api.admin import router as admin_router
from erp_sync.api.agents import router as agents_router
from erp_sync.api.deps import get_services
from erp_sync.api.sync_ingest import router as sync_router
from erp_sync.config import get_settings
from erp_sync.container import SyncServices, build_services
from erp_sync.infrastructure.db import healthcheck
from erp_sync.infrastructure.structured_logging import configure_logging

REQUESTS = Counter('api_requests_total', 'API Requests', ['endpoint', 'status'])
LATENCY = Histogram('api_request_latency_seconds', 'API request latency', ['endpoint'], buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 30))


def create_app(services: SyncServices | None = None) -> FastAPI:
    app = FastAPI(title="ERP Sync API", version="0.1.0")
    app.state.services = services
    app.include_router(sync_router, prefix="/api")
    app.include_router(agents_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")

    @app.on_event("startup")
    def startup():
        configure_logging(get_settings().log_level)
        if app.state.services is None:
            app.state.services = build_services()

    @app.middleware("http")
    async def correlation_and_metrics(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        start = time.time()
        response = await call_next(request)
        duration = time.time() - start
        route = request.scope.get("route")
        ep = getattr(route, "path", request.url.path)
        REQUESTS.labels(endpoint=ep, status=str(response.status_code)).inc()
        LATENCY.labels(endpoint=ep).observe(duration)
        response.headers['X-Correlation-ID'] = correlation_id
        logging.getLogger("app").info(json.dumps({
            "event": "request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": int(duration * 1000),
            "correlation_id": correlation_id,
        }))
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        cid = getattr(request.state, "correlation_id", "n/a")
        logging.getLogger("app").error(json.dumps({
            "event": "error",
            "path": request.url.path,
            "detail": str(exc),
            "correlation_id": cid,
            "type": exc.__class__.__name__,
        }))
        return Response(content=json.dumps({"error": "internal_error", "correlation_id": cid}),
                        media_type="application/json", status_code=500)

    @app.get("/health")
    def health(request: Request):
        try:
            db_ok = healthcheck(get_services(request).session_factory)
        except Exception:
            db_ok = False
        return {"status": "ok" if db_ok else "degraded", "database": db_ok}

    @app.get("/ready")
    def readiness(request: Request):
        """Readiness check: database, Celery broker (Redis) and agent fleet."""
        services = get_services(request)
        try:
            db_ok = healthcheck(services.session_factory)
        except Exception:
            db_ok = False
        redis_ok = True
        try:
            r = redis.Redis.from_url(services.settings.redis_url)
            r.ping()
        except Exception:
            redis_ok = False
        agents = services.registry.agent_stats()
        status = db_ok and redis_ok
        return {"status": "ok" if status else "degraded", "database": db_ok, "redis": redis_ok, "agents": agents}

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
