"""Explicit wiring of the sync services.

Each process entry point (API app, Celery worker) builds one ``SyncServices``
and owns its lifetime; components only see the handles passed to them.
"""
from __future__ import annotations
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
import requests
from erp_sync.config import Settings, get_settings
from erp_sync.infrastructure.circuit_breaker import CircuitBreakerRegistry, CircuitConfig, CircuitState
from erp_sync.infrastructure.db import SessionLocal
from erp_sync.models.tables import utcnow
from erp_sync.sync.agent_client import AgentCommunicationService, AgentRequestError
from erp_sync.sync.agent_registry import AgentRegistryService
from erp_sync.sync.alerts import AlertService
from erp_sync.sync.cleanup import SyncCleanupService
from erp_sync.sync.dead_letter import DeadLetterQueueService
from erp_sync.sync.ingest import SyncIngestService
from erp_sync.sync.jobs import SyncJobService, Enqueue
from erp_sync.sync.mapping import ErpMappingService, MappingCache
from erp_sync.sync.metrics import SyncMetricsService
from erp_sync.sync.processor import OrderSyncProcessor
from erp_sync.sync.reconciliation import ReconciliationService


@dataclass
class SyncServices:
    settings: Settings
    session_factory: Any
    alerts: AlertService
    mappings: ErpMappingService
    ingest: SyncIngestService
    registry: AgentRegistryService
    breakers: CircuitBreakerRegistry
    agents: AgentCommunicationService
    jobs: SyncJobService
    dlq: DeadLetterQueueService
    processor: OrderSyncProcessor
    reconciliation: ReconciliationService
    cleanup: SyncCleanupService
    metrics: SyncMetricsService


def _default_enqueue(message: dict) -> str | None:
    from erp_sync.tasks.order_sync import enqueue_order_sync
    return enqueue_order_sync(message)


def build_services(
    session_factory=None,
    settings: Settings | None = None,
    http: Any = None,
    enqueue: Enqueue | None = None,
    alerts: AlertService | None = None,
    clock: Callable[[], float] = time.monotonic,
    now: Callable[[], datetime] = utcnow,
) -> SyncServices:
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    http = http or requests.Session()
    alerts = alerts or AlertService(settings.slack_webhook_url, settings.alert_timeout_seconds)

    def _alert_on_open(breaker, old: CircuitState, new: CircuitState):
        if new == CircuitState.OPEN:
            alerts.send(
                "circuit_breaker_open",
                f"Circuit breaker {breaker.name} opened",
                {"breaker": breaker.name, "previousState": old.value},
            )

    breakers = CircuitBreakerRegistry(
        CircuitConfig(
            error_threshold=settings.breaker_error_threshold,
            volume_threshold=settings.breaker_volume_threshold,
            reset_timeout=settings.breaker_reset_timeout_seconds,
            timeout=settings.agent_timeout_seconds,
            rolling_window=settings.breaker_rolling_window_seconds,
            ignored_exceptions=(AgentRequestError,),
        ),
        clock=clock,
        on_transition=_alert_on_open,
    )
    mappings = ErpMappingService(
        session_factory,
        MappingCache(settings.mapping_cache_ttl_seconds, settings.mapping_cache_max_entries, clock=clock),
    )
    ingest = SyncIngestService(
        session_factory,
        mappings,
        max_incremental=settings.ingest_max_incremental,
        max_batch=settings.ingest_max_batch,
        chunk_size=settings.ingest_chunk_size,
        now=now,
    )
    registry = AgentRegistryService(
        session_factory,
        alerts,
        degraded_after=settings.agent_degraded_after_seconds,
        offline_after=settings.agent_offline_after_seconds,
        token_rounds=settings.agent_token_rounds,
        now=now,
    )
    agents = AgentCommunicationService(registry, breakers, settings.agent_secret, http, settings.agent_timeout_seconds)
    jobs = SyncJobService(
        session_factory,
        enqueue or _default_enqueue,
        max_attempts=settings.job_max_attempts,
        ttl_hours=settings.job_ttl_hours,
        now=now,
    )
    dlq = DeadLetterQueueService(session_factory, jobs, now=now)
    processor = OrderSyncProcessor(
        jobs, agents, dlq,
        max_attempts=settings.job_max_attempts,
        backoff_base=settings.job_backoff_base_seconds,
        now=now,
    )
    reconciliation = ReconciliationService(
        session_factory, agents, ingest, registry,
        leaf_size=settings.reconciliation_leaf_size,
        max_depth=settings.reconciliation_max_depth,
    )
    cleanup = SyncCleanupService(
        session_factory, jobs, dlq,
        event_retention_days=settings.reconciliation_retention_days,
        dlq_retention_days=settings.dlq_retention_days,
    )
    return SyncServices(
        settings=settings,
        session_factory=session_factory,
        alerts=alerts,
        mappings=mappings,
        ingest=ingest,
        registry=registry,
        breakers=breakers,
        agents=agents,
        jobs=jobs,
        dlq=dlq,
        processor=processor,
        reconciliation=reconciliation,
        cleanup=cleanup,
        metrics=SyncMetricsService(session_factory, now=now),
    )
