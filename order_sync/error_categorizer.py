"""
Error categorization and retry strategy selection.

Every failure raised while fetching pages or writing batches is classified
into a *kind* (network, authentication, rateLimit, ...) with an attached
retry policy. The orchestrator asks ``should_retry`` whether to try the same
unit of work again and ``execute_retry_strategy`` to wait (and possibly
repair credentials or clients) before doing so.

Classification is an ordered rule table; the first matching rule wins. The
two permanent kinds are evaluated first so that a permanent signal is never
shadowed by a generic transient pattern (an "HTTP 403 ... 5003" message must
classify as permission, not server).

Circuit breaker: when more than ``storm_threshold`` errors of the same kind
were classified inside the trailing ``storm_window``, ``should_retry``
answers False regardless of the per-kind budget.
"""

import asyncio
import enum
import gc
import logging
import random
import re
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, Type

import httpx
import pydantic

from core.exceptions import (
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
    SanitizationError,
    ServerError,
    StoreTimeoutError,
    SyncException,
)

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 30000
MAX_JITTER_MS = 1000
DEFAULT_HISTORY_SIZE = 100


class ErrorCategory(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    MIXED = "mixed"


class Severity(str, enum.Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RetryStrategy(str, enum.Enum):
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    TOKEN_REFRESH = "token_refresh"
    MEMORY_CLEANUP = "memory_cleanup"
    FILESYSTEM_CHECK = "filesystem_check"
    API_REFRESH = "api_refresh"
    NONE = "none"


@dataclass(frozen=True)
class ErrorClassification:
    """Immutable result of classifying one failure."""
    kind: str
    category: ErrorCategory
    severity: Severity
    retry_strategy: str
    max_retries: int
    base_delay_ms: int
    original_error: Optional[BaseException]
    timestamp: datetime
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.category == ErrorCategory.PERMANENT and self.max_retries != 0:
            raise ValueError("permanent classifications cannot be retried")

    @property
    def message(self) -> str:
        return self.context.get("message", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "category": self.category.value,
            "severity": self.severity.value,
            "retry_strategy": str(getattr(self.retry_strategy, "value", self.retry_strategy)),
            "max_retries": self.max_retries,
            "base_delay_ms": self.base_delay_ms,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message[:200],
        }


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the classification table: a predicate plus the policy it selects."""
    kind: str
    category: ErrorCategory
    severity: Severity
    retry_strategy: RetryStrategy
    max_retries: int
    base_delay_ms: int
    patterns: Tuple[re.Pattern, ...] = ()
    exception_types: Tuple[Type[BaseException], ...] = ()

    def matches(self, chain: List[BaseException], texts: List[str]) -> bool:
        if self.exception_types and any(isinstance(e, self.exception_types) for e in chain):
            return True
        return any(pattern.search(text) for pattern in self.patterns for text in texts)


def _patterns(*expressions: str) -> Tuple[re.Pattern, ...]:
    return tuple(re.compile(expression, re.IGNORECASE) for expression in expressions)


DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        kind="permission",
        category=ErrorCategory.PERMANENT,
        severity=Severity.ERROR,
        retry_strategy=RetryStrategy.NONE,
        max_retries=0,
        base_delay_ms=0,
        patterns=_patterns(
            r"permission.*denied", r"access.*denied", r"forbidden", r"\b403\b",
            r"insufficient.*privileges", r"not.*authorized",
        ),
        exception_types=(PermissionDeniedError,),
    ),
    ClassificationRule(
        kind="validation",
        category=ErrorCategory.PERMANENT,
        severity=Severity.ERROR,
        retry_strategy=RetryStrategy.NONE,
        max_retries=0,
        base_delay_ms=0,
        patterns=_patterns(
            r"validation.*(failed|error)", r"invalid.*data", r"schema.*error",
            r"required.*field", r"invalid.*format", r"constraint.*violation",
            r"violates.*constraint",
        ),
        exception_types=(pydantic.ValidationError, SanitizationError),
    ),
    ClassificationRule(
        kind="network",
        category=ErrorCategory.TRANSIENT,
        severity=Severity.WARNING,
        retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
        max_retries=5,
        base_delay_ms=2000,
        patterns=_patterns(
            r"fetch failed", r"network error", r"connection refused", r"connection reset",
            r"timeout", r"timed out", r"socket hang up", r"\beconnreset\b", r"\benotfound\b",
            r"\betimedout\b", r"name or service not known",
        ),
        exception_types=(
            TimeoutError, asyncio.TimeoutError, ConnectionError,
            httpx.TimeoutException, httpx.TransportError, StoreTimeoutError,
        ),
    ),
    ClassificationRule(
        kind="authentication",
        category=ErrorCategory.TRANSIENT,
        severity=Severity.ERROR,
        retry_strategy=RetryStrategy.TOKEN_REFRESH,
        max_retries=3,
        base_delay_ms=1000,
        patterns=_patterns(
            r"invalidauthenticationtoken", r"unauthorized", r"\b401\b",
            r"token.*expired", r"authentication.*failed", r"invalid.*credentials",
        ),
        exception_types=(AuthenticationError,),
    ),
    ClassificationRule(
        kind="rateLimit",
        category=ErrorCategory.TRANSIENT,
        severity=Severity.WARNING,
        retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
        max_retries=8,
        base_delay_ms=5000,
        patterns=_patterns(
            r"rate limit", r"too many requests", r"\b429\b", r"throttled", r"quota.*exceeded",
        ),
        exception_types=(RateLimitError,),
    ),
    ClassificationRule(
        kind="server",
        category=ErrorCategory.TRANSIENT,
        severity=Severity.ERROR,
        retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
        max_retries=4,
        base_delay_ms=3000,
        patterns=_patterns(
            r"internal server error", r"\b500\b", r"\b502\b", r"\b503\b", r"\b504\b",
            r"bad gateway", r"service unavailable", r"gateway timeout",
        ),
        exception_types=(ServerError,),
    ),
    ClassificationRule(
        kind="resource",
        category=ErrorCategory.TRANSIENT,
        severity=Severity.CRITICAL,
        retry_strategy=RetryStrategy.MEMORY_CLEANUP,
        max_retries=2,
        base_delay_ms=10000,
        patterns=_patterns(
            r"out of memory", r"maximum recursion depth", r"maximum call stack",
            r"allocation failed", r"resource temporarily unavailable",
        ),
        exception_types=(MemoryError, RecursionError),
    ),
    ClassificationRule(
        kind="filesystem",
        category=ErrorCategory.MIXED,
        severity=Severity.ERROR,
        retry_strategy=RetryStrategy.FILESYSTEM_CHECK,
        max_retries=2,
        base_delay_ms=1000,
        patterns=_patterns(
            r"no such file", r"file not found", r"enoent", r"disk.*full", r"no space left",
        ),
        exception_types=(FileNotFoundError, IsADirectoryError),
    ),
)

TYPE_SUGGESTIONS = {
    "network": "Check network connectivity and consider increasing timeout values",
    "authentication": "Verify credentials and token refresh mechanisms",
    "rateLimit": "Implement more aggressive rate limiting and increase delays",
    "server": "Check server status and consider contacting API provider",
    "resource": "Monitor memory usage and consider reducing batch sizes",
    "validation": "Review data validation and fix data quality issues",
    "permission": "Check access permissions and credentials",
    "filesystem": "Check disk space and file permissions",
}


@dataclass
class RetryContext:
    """Capabilities a retry strategy may use to repair state before the next attempt."""
    refresh_token: Optional[Callable[[], Awaitable[Any]]] = None
    cleanup: Optional[Callable[[], Awaitable[Any]]] = None
    refresh_api: Optional[Callable[[], Awaitable[Any]]] = None
    scratch_dir: Path = field(default_factory=lambda: Path("."))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorCategorizer:
    """
    Classifies failures, decides whether to retry, and executes retry strategies.

    The history is a bounded ring (oldest evicted first) used by the circuit
    breaker and by the diagnostics in ``get_error_statistics`` /
    ``get_recommendations``. Diagnostics never influence retry decisions.
    """

    def __init__(
        self,
        rules: Tuple[ClassificationRule, ...] = DEFAULT_RULES,
        history_size: int = DEFAULT_HISTORY_SIZE,
        storm_threshold: int = 10,
        storm_window: timedelta = timedelta(minutes=5),
        unknown_max_retries: int = 2,
        unknown_base_delay_ms: int = 5000,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.rules = rules
        self.storm_threshold = storm_threshold
        self.storm_window = storm_window
        self.unknown_max_retries = unknown_max_retries
        self.unknown_base_delay_ms = unknown_base_delay_ms
        self._clock = clock
        self._sleep = sleep
        self._history: Deque[ErrorClassification] = deque(maxlen=history_size)
        self._storm_floor: Optional[datetime] = None
        self._strategies = {
            RetryStrategy.EXPONENTIAL_BACKOFF: self._exponential_backoff,
            RetryStrategy.TOKEN_REFRESH: self._token_refresh,
            RetryStrategy.MEMORY_CLEANUP: self._memory_cleanup,
            RetryStrategy.FILESYSTEM_CHECK: self._filesystem_check,
            RetryStrategy.API_REFRESH: self._api_refresh,
            RetryStrategy.NONE: self._no_retry,
        }

    @property
    def history(self) -> List[ErrorClassification]:
        return list(self._history)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(
        self,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorClassification:
        """Classify ``error`` with the first matching rule and record it in history."""
        message = str(error) or type(error).__name__
        code = getattr(error, "status_code", None) or getattr(error, "code", None)
        chain = self._error_chain(error)
        # SyncException.__str__ repeats its cause, which is already a link of the chain
        texts = [e.message if isinstance(e, SyncException) else str(e) for e in chain]
        if code is not None:
            texts.append(str(code))

        details = {"message": message, "error_type": type(error).__name__, "code": code}
        if context:
            details.update(context)
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            details["retry_after"] = retry_after

        for rule in self.rules:
            if rule.matches(chain, texts):
                classification = ErrorClassification(
                    kind=rule.kind,
                    category=rule.category,
                    severity=rule.severity,
                    retry_strategy=rule.retry_strategy,
                    max_retries=rule.max_retries,
                    base_delay_ms=rule.base_delay_ms,
                    original_error=error,
                    timestamp=self._clock(),
                    context=details,
                )
                self._record(classification)
                logger.debug(
                    f"Error categorized as {rule.kind} ({rule.category.value}, "
                    f"{rule.severity.value}): {message[:100]}"
                )
                return classification

        classification = ErrorClassification(
            kind="unknown",
            category=ErrorCategory.MIXED,
            severity=Severity.ERROR,
            retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
            max_retries=self.unknown_max_retries,
            base_delay_ms=self.unknown_base_delay_ms,
            original_error=error,
            timestamp=self._clock(),
            context=details,
        )
        self._record(classification)
        logger.warning(f"Unknown error pattern ({type(error).__name__}): {message[:100]}")
        return classification

    @staticmethod
    def _error_chain(error: BaseException) -> List[BaseException]:
        """The error followed by its cause/context chain.

        Rules match exception types against every link and patterns against
        messages only; type names are never pattern-matched.
        """
        chain = []
        seen = set()
        current: Optional[BaseException] = error
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            chain.append(current)
            current = current.__cause__ or current.__context__
        return chain

    def _record(self, classification: ErrorClassification):
        self._history.append(classification)

    # ------------------------------------------------------------------
    # Retry decision
    # ------------------------------------------------------------------

    def should_retry(self, classification: ErrorClassification, attempt_number: int) -> bool:
        """Whether the unit of work that produced ``classification`` may be attempted again."""
        if classification.category == ErrorCategory.PERMANENT:
            return False

        if attempt_number >= classification.max_retries:
            return False

        if self.is_error_storm(classification.kind):
            logger.warning(
                f"Too many {classification.kind} errors recently "
                f"(> {self.storm_threshold} in {self.storm_window}), treating as persistent"
            )
            return False

        return True

    def recent_similar_errors(self, kind: str, window: Optional[timedelta] = None) -> List[ErrorClassification]:
        cutoff = self._clock() - (window or self.storm_window)
        if self._storm_floor is not None and window is None:
            cutoff = max(cutoff, self._storm_floor)
        return [c for c in self._history if c.kind == kind and c.timestamp > cutoff]

    def is_error_storm(self, kind: str) -> bool:
        return len(self.recent_similar_errors(kind)) > self.storm_threshold

    def reset_storm_window(self):
        """Ignore errors classified before now when evaluating the circuit breaker."""
        self._storm_floor = self._clock()

    # ------------------------------------------------------------------
    # Retry strategies
    # ------------------------------------------------------------------

    async def execute_retry_strategy(
        self,
        classification: ErrorClassification,
        attempt_number: int,
        context: Optional[RetryContext] = None
    ):
        """Wait (and repair what can be repaired) before attempt ``attempt_number``."""
        context = context or RetryContext()
        strategy = self._strategies.get(classification.retry_strategy)
        if strategy is None:
            logger.warning(f"Unknown retry strategy {classification.retry_strategy!r}, using backoff")
            strategy = self._exponential_backoff

        logger.info(
            f"Executing retry strategy {classification.retry_strategy} "
            f"(attempt {attempt_number}/{classification.max_retries}, kind={classification.kind})"
        )
        await strategy(classification, attempt_number, context)

    def backoff_delay_ms(self, classification: ErrorClassification, attempt_number: int) -> float:
        delay = classification.base_delay_ms * (2 ** max(attempt_number - 1, 0))
        jitter = random.uniform(0, MAX_JITTER_MS)
        total = delay + jitter
        retry_after = classification.context.get("retry_after")
        if retry_after is not None:
            total = max(total, float(retry_after) * 1000)
        return min(total, MAX_BACKOFF_MS)

    async def _exponential_backoff(self, classification, attempt_number, context):
        delay_ms = self.backoff_delay_ms(classification, attempt_number)
        logger.info(
            f"Backing off {round(delay_ms)}ms before attempt {attempt_number} "
            f"(base {classification.base_delay_ms}ms)"
        )
        await self._sleep(delay_ms / 1000)

    async def _token_refresh(self, classification, attempt_number, context):
        logger.info("Attempting token refresh")
        await self._sleep(classification.base_delay_ms / 1000)

        if context.refresh_token is None:
            logger.warning("No token refresh function provided, using exponential backoff")
            await self._exponential_backoff(classification, attempt_number, context)
            return

        try:
            await context.refresh_token()
            logger.info("Token refresh completed")
        except Exception as e:
            logger.error(f"Token refresh failed: {e}")
            await self._exponential_backoff(classification, attempt_number, context)

    async def _memory_cleanup(self, classification, attempt_number, context):
        collected = gc.collect()
        logger.info(f"Forced garbage collection, {collected} unreachable objects collected")

        if context.cleanup is not None:
            try:
                await context.cleanup()
                logger.info("Custom cleanup completed")
            except Exception as e:
                logger.error(f"Custom cleanup failed: {e}")

        await self._sleep(classification.base_delay_ms * (attempt_number + 1) / 1000)

    async def _filesystem_check(self, classification, attempt_number, context):
        probe = Path(context.scratch_dir) / ".sync-write-probe"
        try:
            probe.write_text("probe")
            probe.unlink()
            logger.info(f"Filesystem at {context.scratch_dir} appears writable")
        except OSError as e:
            logger.error(f"Filesystem check failed at {context.scratch_dir}: {e}")

        await self._exponential_backoff(classification, attempt_number, context)

    async def _api_refresh(self, classification, attempt_number, context):
        if context.refresh_api is not None:
            try:
                await context.refresh_api()
                logger.info("API client refresh completed")
            except Exception as e:
                logger.error(f"API client refresh failed: {e}")

        await self._exponential_backoff(classification, attempt_number, context)

    async def _no_retry(self, classification, attempt_number, context):
        logger.info(f"No retry for {classification.kind} error: considered permanent")

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_error_statistics(self) -> Dict[str, Any]:
        now = self._clock()
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(hours=24)

        last_hour = [c for c in self._history if c.timestamp > hour_ago]
        last_day = [c for c in self._history if c.timestamp > day_ago]

        return {
            "total": len(self._history),
            "last_hour": len(last_hour),
            "last_24_hours": len(last_day),
            "by_type": dict(Counter(c.kind for c in last_day)),
            "by_category": dict(Counter(c.category.value for c in last_day)),
            "by_severity": dict(Counter(c.severity.value for c in last_day)),
            "patterns": [rule.kind for rule in self.rules],
        }

    def get_recommendations(self) -> List[Dict[str, str]]:
        stats = self.get_error_statistics()
        recommendations = []

        if stats["last_hour"] > 10:
            recommendations.append({
                "type": "high_error_rate",
                "message": "High error rate detected in the last hour",
                "suggestion": "Consider pausing operations and investigating system health",
                "severity": Severity.CRITICAL.value,
            })

        if stats["by_type"]:
            kind, count = max(stats["by_type"].items(), key=lambda item: item[1])
            if count > stats["last_24_hours"] * 0.5:
                recommendations.append({
                    "type": "dominant_error_type",
                    "message": f"{kind} errors are dominant ({count} occurrences)",
                    "suggestion": TYPE_SUGGESTIONS.get(
                        kind, "Review error patterns and adjust retry strategies"
                    ),
                    "severity": Severity.WARNING.value,
                })

        permanent = stats["by_category"].get(ErrorCategory.PERMANENT.value, 0)
        if permanent > 0:
            recommendations.append({
                "type": "permanent_errors",
                "message": f"{permanent} permanent errors detected",
                "suggestion": "Review and fix permanent issues before continuing",
                "severity": Severity.ERROR.value,
            })

        return recommendations
