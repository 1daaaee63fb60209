"""ERP synchronization pipeline: agent ingest, order sync jobs, reconciliation."""

__version__ = "0.1.0"
