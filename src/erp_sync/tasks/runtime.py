"""Worker-process ownership of the service container."""
from __future__ import annotations
from celery import signals
from erp_sync.config import get_settings
from erp_sync.container import SyncServices, build_services
from erp_sync.infrastructure.structured_logging import configure_logging

_services: SyncServices | None = None


def worker_services() -> SyncServices:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def configure_worker_services(services: SyncServices | None):  # test helper
    global _services
    _services = services


@signals.worker_process_init.connect
def _init_worker(**kwargs):  # noqa
    configure_logging(get_settings().log_level)
    configure_worker_services(build_services())
