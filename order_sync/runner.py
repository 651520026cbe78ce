"""
Sync Orchestrator - drives one sync run from remote pages to the order store.

This module provides the run state machine (idle -> running -> succeeded/failed) with:
- Single-flight runs (a trigger while running is rejected, never queued)
- Sequential page fetch -> sanitize -> batched upsert
- Per-page and per-batch retries through the error categorizer
- Fail-fast on permanent errors and error storms, partial-failure tolerance otherwise
- Process-lifetime statistics and best-effort run persistence
"""

from typing import Dict, Any, Optional, Callable, Awaitable
from datetime import datetime, timedelta, timezone
import asyncio
import logging

from order_sync.error_categorizer import ErrorCategorizer, ErrorCategory
from order_sync.extractors.api_fetcher import RemoteRecordFetcher
from order_sync.transformers.order_transformer import OrderTransformer
from order_sync.loaders.batch_writer import BatchUpsertWriter
from order_sync.loaders.order_store import OrderStore
from models.base import SyncMode, SyncStatus
from schemas.sync import SyncFilters, SyncRun, SyncStats, utcnow
from core.exceptions import (
    CleanupInProgressError,
    RetryExhaustedError,
    RunAbortedError,
    SyncAlreadyRunningError,
)

logger = logging.getLogger(__name__)

MAX_RUN_ERRORS = 50


class SyncOrchestrator:
    """
    Owns the run-state flag, the current SyncRun and the aggregate SyncStats.

    Responsibilities:
    - Enforce the no-overlap invariant at the idle -> running transition
    - Walk pages in order, never skipping a page that is being retried
    - Record unit failures against the run and abort on fatal ones
    - Update SyncStats exactly once per finished run
    """

    def __init__(
        self,
        fetcher: RemoteRecordFetcher,
        transformer: OrderTransformer,
        writer: BatchUpsertWriter,
        store: OrderStore,
        categorizer: ErrorCategorizer,
        max_records: Optional[int] = None,
        cleanup_days_to_keep: int = 90,
        reset_storm_per_run: bool = False,
        config: Optional[Dict[str, Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.fetcher = fetcher
        self.transformer = transformer
        self.writer = writer
        self.store = store
        self.categorizer = categorizer
        self.max_records = max_records
        self.cleanup_days_to_keep = cleanup_days_to_keep
        self.reset_storm_per_run = reset_storm_per_run
        self.config = dict(config or {})
        self._sleep = sleep

        self.stats = SyncStats()
        self._total_duration_ms = 0.0
        self._is_running = False
        self._current_run: Optional[SyncRun] = None
        self._last_run: Optional[SyncRun] = None
        self.last_full_sync_at: Optional[datetime] = None

        self._idle = asyncio.Event()
        self._idle.set()
        self._cleanup_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._is_running

    # ------------------------------------------------------------------
    # Run state machine
    # ------------------------------------------------------------------

    async def trigger_sync(
        self,
        full_sync: bool = False,
        filters: Optional[SyncFilters] = None,
        mode: Optional[SyncMode] = None
    ) -> SyncRun:
        """
        Run one sync to completion and return a copy of the finished run.

        A run that fails (permanent error, error storm, unhandled exception)
        is returned with status ``failed``; it is not raised.

        Raises:
            SyncAlreadyRunningError: another run is in progress
        """
        # Check-and-set happens before the first await
        if self._is_running:
            running_id = self._current_run.id if self._current_run else None
            logger.warning(f"Sync trigger rejected, {running_id} is already running")
            raise SyncAlreadyRunningError(running_id)
        self._is_running = True
        self._idle.clear()

        filters = filters or SyncFilters()
        if mode is None:
            mode = SyncMode.FULL if full_sync else SyncMode.MANUAL
        run = SyncRun(mode=mode, filters=filters.to_query_params())
        self._current_run = run

        logger.info(f"Starting sync {run.id} (mode={mode.value}, full_sync={full_sync})")

        try:
            await self._execute(run, full_sync, filters)
            run.status = SyncStatus.SUCCEEDED

        except RunAbortedError as e:
            run.status = SyncStatus.FAILED
            run.last_error = e.message
            logger.error(
                f"Sync {run.id} aborted: {e.message}",
                extra={"error_context": e.to_dict()}
            )

        except Exception as e:
            run.status = SyncStatus.FAILED
            run.last_error = f"{type(e).__name__}: {e}"
            self.categorizer.classify(e, {"operation": "sync_run", "sync_id": run.id})
            logger.error(
                f"Sync {run.id} failed with unexpected error: {e}",
                exc_info=True,
                extra={"error_context": {"sync_id": run.id}}
            )

        finally:
            if run.status == SyncStatus.RUNNING:
                # Cancelled mid-run
                run.status = SyncStatus.FAILED
                run.last_error = run.last_error or "Sync cancelled"
            run.finished_at = utcnow()
            self._record_stats(run, full_sync)
            await self._persist_run(run)

            self._last_run = run
            self._current_run = None
            self._is_running = False
            self._idle.set()

        logger.info(
            f"Sync {run.id} {run.status.value} in {run.duration_ms:.0f}ms: "
            f"fetched={run.records_fetched}, written={run.records_written}, "
            f"failed={run.records_failed}, pages_failed={run.pages_failed}"
        )
        return run.model_copy(deep=True)

    async def _execute(self, run: SyncRun, full_sync: bool, filters: SyncFilters):
        if self.reset_storm_per_run:
            self.categorizer.reset_storm_window()

        # --------------------------------------------------
        # INCREMENTAL WATERMARK
        # --------------------------------------------------
        if not full_sync and filters.updated_after is None:
            try:
                last_sync = await self.store.get_last_sync_timestamp()
                if last_sync is not None:
                    filters = filters.model_copy(update={"updated_after": last_sync})
                    run.filters = filters.to_query_params()
                    logger.info(f"Incremental sync: records updated after {last_sync.isoformat()}")
                else:
                    logger.info("No previous successful sync, fetching all records")
            except Exception as e:
                logger.warning(f"Could not read last sync timestamp, falling back to full pass: {e}")

        page = 1
        while page <= self.fetcher.max_pages:
            # --------------------------------------------------
            # FETCH
            # --------------------------------------------------
            try:
                records = await self.fetcher.fetch_page_with_retry(page, filters)
            except RetryExhaustedError as e:
                self._record_unit_failure(run, e, {"page": page})
                if e.fatal:
                    raise RunAbortedError(
                        f"Page {page} failed with {e.classification.kind} error ({e.reason}): "
                        f"{e.classification.message}",
                        context={"sync_id": run.id, "page": page}
                    )
                run.pages_failed += 1
                logger.warning(f"Page {page} failed after retries, moving to next page")
                page += 1
                continue

            if self.max_records is not None:
                records = records[:max(self.max_records - run.records_fetched, 0)]

            run.pages_fetched += 1
            run.records_fetched += len(records)

            # --------------------------------------------------
            # TRANSFORM
            # --------------------------------------------------
            transformed = self.transformer.transform_batch(records)
            run.records_failed += len(transformed.rejected)
            for rejection in transformed.rejected:
                self._append_error(run, {"page": page, "stage": "sanitize", **rejection})

            # --------------------------------------------------
            # WRITE
            # --------------------------------------------------
            if transformed.orders:
                result = await self.writer.upsert_batch(transformed.orders)
                run.records_written += result.written
                run.records_failed += result.failed
                run.batches_failed += result.batches_failed
                for error in result.errors:
                    self._append_error(run, {"page": page, "stage": "upsert", **error})

                if result.abort_error is not None:
                    self._record_unit_failure(run, result.abort_error, {"page": page}, append=False)
                    raise RunAbortedError(
                        f"Writing page {page} failed with {result.abort_error.classification.kind} "
                        f"error ({result.abort_error.reason}): "
                        f"{result.abort_error.classification.message}",
                        context={"sync_id": run.id, "page": page}
                    )
                if result.batches_failed:
                    run.last_error = result.errors[-1]["error"]

            logger.info(
                f"Page {page}: {len(records)} fetched, {len(transformed.orders)} valid, "
                f"{run.records_written} written so far"
            )

            if len(records) < self.fetcher.page_size:
                break
            if self.max_records is not None and run.records_fetched >= self.max_records:
                logger.info(f"Reached max_records={self.max_records}")
                break

            page += 1
            if self.fetcher.page_delay:
                await self._sleep(self.fetcher.page_delay)

    def _record_unit_failure(
        self,
        run: SyncRun,
        error: RetryExhaustedError,
        context: Dict[str, Any],
        append: bool = True
    ):
        if error.classification.category == ErrorCategory.PERMANENT:
            run.permanent_failures += 1
        run.last_error = error.classification.message
        if append:
            self._append_error(run, {
                **context,
                "kind": error.classification.kind,
                "category": error.classification.category.value,
                "reason": error.reason,
                "error": error.classification.message,
            })

    @staticmethod
    def _append_error(run: SyncRun, error: Dict[str, Any]):
        if len(run.errors) < MAX_RUN_ERRORS:
            run.errors.append(error)

    def _record_stats(self, run: SyncRun, full_sync: bool):
        duration = run.duration_ms or 0.0

        self.stats.total_syncs += 1
        if run.status == SyncStatus.SUCCEEDED:
            self.stats.successful_syncs += 1
            self.stats.total_records_processed += run.records_written
            if full_sync:
                self.last_full_sync_at = run.finished_at
        else:
            self.stats.failed_syncs += 1

        self._total_duration_ms += duration
        self.stats.last_sync_duration_ms = duration
        self.stats.average_sync_duration_ms = self._total_duration_ms / self.stats.total_syncs

    async def _persist_run(self, run: SyncRun):
        try:
            await self.store.save_sync_run(run)
        except Exception as e:
            logger.error(f"Failed to persist sync run {run.id}: {e}")

    async def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for an in-flight run to finish; False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # ------------------------------------------------------------------
    # Status and statistics
    # ------------------------------------------------------------------

    def get_sync_status(self) -> Dict[str, Any]:
        """Snapshot of run state; never waits on the active run."""
        current = self._current_run
        last = self._last_run
        return {
            "is_running": self._is_running,
            "current_sync_id": current.id if current else None,
            "last_sync_time": last.finished_at.isoformat() if last and last.finished_at else None,
            "last_sync": last.model_dump(mode="json") if last else None,
            "config": dict(self.config),
            "sync_stats": self.stats.model_dump(),
        }

    async def get_detailed_stats(self) -> Dict[str, Any]:
        stats = self.get_sync_status()
        stats["error_statistics"] = self.categorizer.get_error_statistics()
        stats["recommendations"] = self.categorizer.get_recommendations()

        try:
            stats["store"] = await self.store.get_stats()
        except Exception as e:
            logger.warning(f"Could not read store statistics: {e}")
            stats["store"] = {"error": str(e)}

        try:
            last_sync = await self.store.get_last_sync_timestamp()
            stats["last_successful_sync"] = last_sync.isoformat() if last_sync else None
        except Exception as e:
            logger.warning(f"Could not read last sync timestamp: {e}")
            stats["last_successful_sync"] = None

        return stats

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_old_records(self, days_to_keep: Optional[int] = None) -> Dict[str, Any]:
        """
        Delete orders created more than ``days_to_keep`` days ago.

        Raises:
            CleanupInProgressError: another cleanup is running
        """
        days_to_keep = self.cleanup_days_to_keep if days_to_keep is None else days_to_keep
        if days_to_keep < 1:
            raise ValueError("days_to_keep must be >= 1")

        if self._cleanup_lock.locked():
            raise CleanupInProgressError()

        async with self._cleanup_lock:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days_to_keep)
            logger.info(f"Cleaning up orders created before {cutoff.isoformat()}")
            deleted = await self.store.delete_older_than(cutoff)

        return {"deleted_count": deleted, "cutoff_date": cutoff.isoformat()}

    async def test_connections(self) -> Dict[str, Any]:
        """Probe the remote API and the store without syncing."""
        source = await self._probe("source", self.fetcher.health_check)
        store = await self._probe("store", self.store.health_check)
        return {
            "success": source["status"] == "healthy" and store["status"] == "healthy",
            "source": source,
            "store": store,
        }

    async def _probe(self, name: str, probe: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        try:
            return await probe()
        except Exception as e:
            classification = self.categorizer.classify(e, {"operation": f"test_{name}"})
            logger.warning(f"Connection test for {name} failed ({classification.kind}): {e}")
            return {
                "status": "unhealthy",
                "error": classification.message,
                "kind": classification.kind,
                "category": classification.category.value,
            }
