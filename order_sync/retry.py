"""
Retry loop shared by page fetches and batch writes
"""

from typing import Awaitable, Callable, Optional, TypeVar
from core.exceptions import RetryExhaustedError
from order_sync.error_categorizer import ErrorCategorizer, ErrorCategory, RetryContext
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExecutor:
    """
    Run one unit of work until it succeeds or the categorizer gives up.

    Attempts are numbered from 0 (the initial try). After a failure the
    classification's budget is consulted with the number of retries already
    made; ``max_attempts`` is an additional global ceiling on retries.
    """

    def __init__(
        self,
        categorizer: ErrorCategorizer,
        max_attempts: int = 8,
        context: Optional[RetryContext] = None
    ):
        self.categorizer = categorizer
        self.max_attempts = max_attempts
        self.context = context or RetryContext()

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        error_context: Optional[dict] = None
    ) -> T:
        attempt = 0

        while True:
            try:
                return await operation()
            except Exception as e:
                classification = self.categorizer.classify(e, error_context)

                if classification.category == ErrorCategory.PERMANENT:
                    logger.error(
                        f"{description} failed with permanent {classification.kind} error: "
                        f"{classification.message}",
                        extra={"error_context": classification.to_dict()}
                    )
                    raise RetryExhaustedError(
                        description, classification, attempt + 1,
                        fatal=True, reason="permanent"
                    )

                if self.categorizer.is_error_storm(classification.kind):
                    logger.error(
                        f"{description}: error storm of {classification.kind} errors, giving up"
                    )
                    raise RetryExhaustedError(
                        description, classification, attempt + 1,
                        fatal=True, reason="error_storm"
                    )

                if attempt >= self.max_attempts or not self.categorizer.should_retry(
                    classification, attempt
                ):
                    logger.error(
                        f"{description} failed after {attempt + 1} attempt(s): "
                        f"{classification.kind}: {classification.message}",
                        extra={"error_context": classification.to_dict()}
                    )
                    raise RetryExhaustedError(description, classification, attempt + 1)

                attempt += 1
                logger.warning(
                    f"{description} failed ({classification.kind}), "
                    f"retry {attempt}/{classification.max_retries}: {classification.message[:200]}"
                )
                await self.categorizer.execute_retry_strategy(classification, attempt, self.context)
