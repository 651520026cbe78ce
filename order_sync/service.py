"""
Sync service facade: wires fetcher, store, orchestrator and scheduler from settings
"""

from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional
import logging

from core.config import Settings
from core.database import get_engine, get_session_factory
from order_sync.error_categorizer import ErrorCategorizer, RetryContext
from order_sync.extractors.api_fetcher import RemoteRecordFetcher
from order_sync.transformers.order_transformer import OrderTransformer
from order_sync.loaders.order_store import OrderStore, SQLAlchemyOrderStore
from order_sync.loaders.batch_writer import BatchUpsertWriter
from order_sync.retry import RetryExecutor
from order_sync.runner import SyncOrchestrator
from order_sync.scheduler import SyncScheduler
from schemas.sync import SortSpec, SyncFilters, SyncRun

logger = logging.getLogger(__name__)

SHUTDOWN_WAIT_SECONDS = 30


class SyncService:
    """Operations exposed to the HTTP layer and the CLI script."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        scheduler: SyncScheduler,
        enable_scheduled_sync: bool = False
    ):
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.enable_scheduled_sync = enable_scheduled_sync

    async def initialize(self) -> Dict[str, Any]:
        """Test connections (never fatal) and start the scheduler when enabled"""
        result = await self.orchestrator.test_connections()
        if result["success"]:
            logger.info("Connection tests passed")
        else:
            logger.warning(
                f"Connection tests failed: source={result['source'].get('status')}, "
                f"store={result['store'].get('status')}"
            )

        if self.enable_scheduled_sync:
            self.scheduler.start()
        return result

    async def shutdown(self):
        self.scheduler.stop()
        self.scheduler.shutdown()

        if self.orchestrator.is_running:
            logger.info(f"Waiting up to {SHUTDOWN_WAIT_SECONDS}s for the running sync")
            if not await self.orchestrator.wait_until_idle(SHUTDOWN_WAIT_SECONDS):
                logger.warning("Sync still running at shutdown")

        await self.orchestrator.fetcher.aclose()
        logger.info("Sync service shut down")

    async def trigger_sync(self, full_sync: bool = False, filters: Optional[SyncFilters] = None) -> SyncRun:
        return await self.orchestrator.trigger_sync(full_sync=full_sync, filters=filters)

    def get_sync_status(self) -> Dict[str, Any]:
        status = self.orchestrator.get_sync_status()
        status["scheduler"] = self.scheduler.get_status()
        return status

    async def get_detailed_stats(self) -> Dict[str, Any]:
        stats = await self.orchestrator.get_detailed_stats()
        stats["scheduler"] = self.scheduler.get_status()
        return stats

    def start_scheduled_sync(self, interval_minutes: Optional[int] = None):
        self.scheduler.start(interval_minutes)
        return self.scheduler.get_status()

    def stop_scheduled_sync(self):
        self.scheduler.stop()
        return self.scheduler.get_status()

    async def cleanup_old_records(self, days_to_keep: Optional[int] = None) -> Dict[str, Any]:
        return await self.orchestrator.cleanup_old_records(days_to_keep)

    async def test_connections(self) -> Dict[str, Any]:
        return await self.orchestrator.test_connections()


def create_sync_service(
    settings: Settings,
    store: Optional[OrderStore] = None,
    fetcher: Optional[RemoteRecordFetcher] = None
) -> SyncService:
    """Build a SyncService from configuration"""
    if fetcher is not None:
        categorizer = fetcher.categorizer
    else:
        categorizer = ErrorCategorizer(
            history_size=settings.ERROR_HISTORY_SIZE,
            storm_threshold=settings.ERROR_STORM_THRESHOLD,
            storm_window=timedelta(seconds=settings.ERROR_STORM_WINDOW_SECONDS),
            unknown_base_delay_ms=settings.SYNC_RETRY_DELAY_MS,
        )

    if fetcher is None:
        fetcher = RemoteRecordFetcher(
            base_url=settings.SOURCE_API_BASE_URL,
            api_path=settings.SOURCE_API_PATH,
            endpoint=settings.SOURCE_API_ENDPOINT,
            api_token=settings.SOURCE_API_TOKEN,
            categorizer=categorizer,
            page_size=settings.SOURCE_PAGE_SIZE,
            max_pages=settings.SOURCE_MAX_PAGES,
            sort=SortSpec(field=settings.SOURCE_SORT_BY, order=settings.SOURCE_SORT_ORDER),
            timeout=settings.SOURCE_TIMEOUT_SECONDS,
            page_delay=settings.SOURCE_PAGE_DELAY_SECONDS,
            max_attempts=settings.SYNC_MAX_RETRIES,
        )

    if store is None:
        store = SQLAlchemyOrderStore(
            get_session_factory(get_engine()),
            timeout=settings.DB_TIMEOUT_SECONDS
        )

    writer = BatchUpsertWriter(
        store,
        RetryExecutor(
            categorizer,
            max_attempts=settings.SYNC_MAX_RETRIES,
            context=RetryContext(scratch_dir=Path(settings.SCRATCH_DIR))
        ),
        batch_size=settings.SYNC_BATCH_SIZE
    )

    orchestrator = SyncOrchestrator(
        fetcher=fetcher,
        transformer=OrderTransformer(),
        writer=writer,
        store=store,
        categorizer=categorizer,
        cleanup_days_to_keep=settings.CLEANUP_DAYS_TO_KEEP,
        reset_storm_per_run=settings.ERROR_STORM_RESET_PER_RUN,
        config={
            "page_size": settings.SOURCE_PAGE_SIZE,
            "batch_size": settings.SYNC_BATCH_SIZE,
            "max_retries": settings.SYNC_MAX_RETRIES,
            "retry_delay_ms": settings.SYNC_RETRY_DELAY_MS,
            "enable_scheduled_sync": settings.ENABLE_SCHEDULED_SYNC,
            "sync_interval_minutes": settings.SYNC_INTERVAL_MINUTES,
            "sync_cron": settings.SYNC_CRON,
            "full_sync_interval_hours": settings.FULL_SYNC_INTERVAL_HOURS,
            "max_concurrent_syncs": settings.MAX_CONCURRENT_SYNCS,
            "cleanup_days_to_keep": settings.CLEANUP_DAYS_TO_KEEP,
        }
    )

    scheduler = SyncScheduler(
        orchestrator,
        interval_minutes=settings.SYNC_INTERVAL_MINUTES,
        cron=settings.SYNC_CRON,
        full_sync_interval_hours=settings.FULL_SYNC_INTERVAL_HOURS
    )

    return SyncService(orchestrator, scheduler, enable_scheduled_sync=settings.ENABLE_SCHEDULED_SYNC)
