"""
Chunked upserts with per-chunk retry
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from schemas.customer_order import CustomerOrderCreate
from core.exceptions import RetryExhaustedError
from order_sync.loaders.order_store import OrderStore
from order_sync.retry import RetryExecutor
import logging

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    written: int = 0
    failed: int = 0
    batches_failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    abort_error: Optional[RetryExhaustedError] = None


class BatchUpsertWriter:
    """
    Write orders to the store in chunks of ``batch_size``.

    A chunk that exhausts its retries is counted as failed and the next chunk
    is attempted. A permanent failure or an error storm stops the remaining
    chunks and is reported through ``UpsertResult.abort_error``.
    """

    def __init__(self, store: OrderStore, retry: RetryExecutor, batch_size: int = 100):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.retry = retry
        self.batch_size = batch_size

    async def upsert_batch(self, orders: List[CustomerOrderCreate]) -> UpsertResult:
        result = UpsertResult()

        for start in range(0, len(orders), self.batch_size):
            chunk = orders[start:start + self.batch_size]
            batch_number = start // self.batch_size + 1

            try:
                outcome = await self.retry.run(
                    lambda chunk=chunk: self.store.upsert_many(chunk),
                    description=f"Upsert batch {batch_number}",
                    error_context={"operation": "upsert", "batch": batch_number}
                )
            except RetryExhaustedError as e:
                result.batches_failed += 1
                result.errors.append({
                    "batch": batch_number,
                    "size": len(chunk),
                    "kind": e.classification.kind,
                    "error": e.classification.message,
                })

                if e.fatal:
                    remaining = len(orders) - start
                    result.failed += remaining
                    result.abort_error = e
                    logger.error(
                        f"Batch {batch_number} failed permanently, "
                        f"skipping remaining {remaining} records"
                    )
                    break

                result.failed += len(chunk)
                logger.warning(f"Batch {batch_number} failed after retries, continuing")
                continue

            result.written += outcome.get("written", 0)
            result.failed += outcome.get("failed", 0)
            logger.debug(f"Batch {batch_number}: wrote {outcome.get('written', 0)} records")

        return result
