"""
Order sync pipeline components.

This package contains the components that keep the order store consistent
with the remote order API:

Modules:
    error_categorizer: Failure classification, retry policies and circuit breaker
    retry: Retry loop shared by page fetches and batch writes
    runner: Sync orchestrator (run state machine, statistics, cleanup)
    scheduler: APScheduler integration for recurring syncs
    service: Facade wiring everything from settings

Subpackages:
    extractors: Remote order API fetcher
    transformers: Order sanitization
    loaders: Order store and chunked upsert writer

Architecture:
    A run walks pages in order:

    1. Fetch - one page at a time, retried in place per the error categorizer
    2. Transform - sanitize each record; bad records are rejected individually
    3. Write - chunked idempotent upserts, retried per chunk

    Permanent errors and error storms abort the run; exhausted transient
    failures mark only the affected page or chunk as failed.

Usage:
    from core.config import settings
    from order_sync.service import create_sync_service

    service = create_sync_service(settings)
    run = await service.trigger_sync(full_sync=True)
    print(f"Wrote {run.records_written} records")
"""

__all__ = [
    "ErrorCategorizer",
    "RemoteRecordFetcher",
    "OrderTransformer",
    "SQLAlchemyOrderStore",
    "BatchUpsertWriter",
    "SyncOrchestrator",
    "SyncScheduler",
    "SyncService",
]
