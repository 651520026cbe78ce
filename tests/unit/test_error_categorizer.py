import asyncio
import httpx
import pytest
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, patch
from core.exceptions import (
    AuthenticationError,
    NetworkError,
    PermissionDeniedError,
    RateLimitError,
    ResourceNotFoundError,
    SanitizationError,
    ServerError,
)
from order_sync.error_categorizer import (
    ErrorCategorizer,
    ErrorCategory,
    ErrorClassification,
    RetryContext,
    RetryStrategy,
    Severity,
)


@pytest.mark.parametrize("message", [
    "Permission denied for relation customer_orders",
    "Access denied",
    "HTTP 403 Forbidden",
    "insufficient privileges to read orders",
    "User is not authorized",
])
def test_permission_errors_are_permanent(categorizer, message):
    classification = categorizer.classify(Exception(message))

    assert classification.kind == "permission"
    assert classification.category == ErrorCategory.PERMANENT
    assert classification.max_retries == 0
    assert categorizer.should_retry(classification, 0) is False


@pytest.mark.parametrize("error,kind", [
    (Exception("fetch failed: connection refused"), "network"),
    (asyncio.TimeoutError(), "network"),
    (httpx.ConnectError("boom"), "network"),
    (Exception("Token expired for user"), "authentication"),
    (AuthenticationError("HTTP 401 Unauthorized"), "authentication"),
    (Exception("Too many requests"), "rateLimit"),
    (RateLimitError("HTTP 429 Too Many Requests", retry_after=3), "rateLimit"),
    (ServerError("HTTP 502 Bad Gateway", status_code=502), "server"),
    (MemoryError(), "resource"),
    (SanitizationError("Invalid date format for date_ordered"), "validation"),
    (Exception("new row violates check constraint"), "validation"),
    (FileNotFoundError("No such file or directory: '/tmp/x'"), "filesystem"),
    (OSError("getaddrinfo ENOTFOUND orders.example.com"), "network"),
    (Exception("something odd happened"), "unknown"),
])
def test_classify_kinds(categorizer, error, kind):
    assert categorizer.classify(error).kind == kind


def test_permission_checked_before_server_patterns(categorizer):
    # Status text contains 503 but the failure is a permission problem
    error = PermissionDeniedError("HTTP 403 Forbidden (request 5031)", status_code=403)
    assert categorizer.classify(error).kind == "permission"


def test_type_names_are_not_pattern_matched(categorizer):
    # "FileNotFoundError" and "ResourceNotFoundError" both contain "enotfound"
    missing_file = categorizer.classify(FileNotFoundError("No such file or directory: '/tmp/x'"))
    missing_page = categorizer.classify(ResourceNotFoundError(
        "HTTP 404 Not Found: https://orders.example.com/api/public/customer-orders/v1",
        status_code=404
    ))

    assert missing_file.kind == "filesystem"
    assert missing_page.kind == "unknown"
    assert missing_page.max_retries == 2


def test_wrapped_cause_type_is_matched(categorizer):
    error = RuntimeError("batch failed")
    error.__cause__ = httpx.ReadTimeout("read")

    assert categorizer.classify(error).kind == "network"


def test_status_code_attribute_is_matched(categorizer):
    class UpstreamError(Exception):
        status_code = 503

    assert categorizer.classify(UpstreamError("upstream")).kind == "server"


def test_cause_chain_is_matched(categorizer):
    try:
        try:
            raise ConnectionResetError("socket hang up")
        except ConnectionResetError as inner:
            raise RuntimeError("batch failed") from inner
    except RuntimeError as e:
        error = e

    assert categorizer.classify(error).kind == "network"


def test_unknown_policy(categorizer):
    classification = categorizer.classify(Exception("weird"))

    assert classification.category == ErrorCategory.MIXED
    assert classification.retry_strategy == RetryStrategy.EXPONENTIAL_BACKOFF
    assert classification.max_retries == 2
    assert classification.base_delay_ms == 5000


def test_permanent_classification_cannot_have_retries(clock):
    with pytest.raises(ValueError):
        ErrorClassification(
            kind="validation",
            category=ErrorCategory.PERMANENT,
            severity=Severity.ERROR,
            retry_strategy=RetryStrategy.NONE,
            max_retries=1,
            base_delay_ms=0,
            original_error=None,
            timestamp=clock(),
        )


def test_classification_is_immutable(categorizer):
    classification = categorizer.classify(Exception("network error"))
    with pytest.raises(Exception):
        classification.max_retries = 10


def test_transient_should_retry_until_max(categorizer):
    classification = categorizer.classify(ServerError("HTTP 500 Internal Server Error"))

    assert classification.max_retries == 4
    for attempt in range(classification.max_retries):
        assert categorizer.should_retry(classification, attempt) is True
    assert categorizer.should_retry(classification, classification.max_retries) is False
    assert categorizer.should_retry(classification, classification.max_retries + 1) is False


def test_error_storm_trips_on_eleventh_error(categorizer, clock):
    for _ in range(9):
        categorizer.classify(NetworkError("network error"))
        clock.advance(seconds=10)

    tenth = categorizer.classify(NetworkError("network error"))
    assert categorizer.should_retry(tenth, 0) is True

    clock.advance(seconds=10)
    eleventh = categorizer.classify(NetworkError("network error"))
    assert categorizer.should_retry(eleventh, 0) is False
    assert categorizer.is_error_storm("network") is True


def test_error_storm_ignores_errors_outside_window(categorizer, clock):
    for _ in range(11):
        categorizer.classify(NetworkError("network error"))
    clock.advance(minutes=6)

    classification = categorizer.classify(NetworkError("network error"))
    assert categorizer.should_retry(classification, 0) is True


def test_error_storm_counts_per_kind(categorizer):
    for _ in range(11):
        categorizer.classify(NetworkError("network error"))

    classification = categorizer.classify(ServerError("HTTP 500"))
    assert categorizer.should_retry(classification, 0) is True


def test_reset_storm_window(categorizer, clock):
    for _ in range(11):
        categorizer.classify(NetworkError("network error"))
    clock.advance(seconds=1)
    categorizer.reset_storm_window()
    clock.advance(seconds=1)

    classification = categorizer.classify(NetworkError("network error"))
    assert categorizer.should_retry(classification, 0) is True
    # Diagnostics still see the full history
    assert categorizer.get_error_statistics()["total"] == 12


def test_history_is_bounded(clock, no_sleep):
    categorizer = ErrorCategorizer(history_size=100, clock=clock, sleep=no_sleep)
    for i in range(150):
        categorizer.classify(Exception(f"odd {i}"))

    history = categorizer.history
    assert len(history) == 100
    assert history[0].message == "odd 50"


@pytest.mark.asyncio
async def test_exponential_backoff_delay(categorizer, no_sleep):
    classification = categorizer.classify(NetworkError("network error"))

    with patch("order_sync.error_categorizer.random.uniform", return_value=0):
        await categorizer.execute_retry_strategy(classification, 1)
        await categorizer.execute_retry_strategy(classification, 3)

    assert no_sleep.delays == [2.0, 8.0]


@pytest.mark.asyncio
async def test_backoff_is_capped(categorizer, no_sleep):
    classification = categorizer.classify(Exception("too many requests"))

    await categorizer.execute_retry_strategy(classification, 8)

    assert no_sleep.delays == [30.0]


@pytest.mark.asyncio
async def test_backoff_honors_retry_after(categorizer, no_sleep):
    classification = categorizer.classify(RateLimitError("HTTP 429", retry_after=20))

    with patch("order_sync.error_categorizer.random.uniform", return_value=0):
        await categorizer.execute_retry_strategy(classification, 1)

    assert no_sleep.delays == [20.0]


@pytest.mark.asyncio
async def test_token_refresh_strategy_calls_refresh(categorizer, no_sleep):
    classification = categorizer.classify(AuthenticationError("HTTP 401 Unauthorized"))
    refresh = AsyncMock()

    await categorizer.execute_retry_strategy(
        classification, 1, RetryContext(refresh_token=refresh)
    )

    refresh.assert_awaited_once()
    assert no_sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_token_refresh_falls_back_to_backoff(categorizer, no_sleep):
    classification = categorizer.classify(AuthenticationError("HTTP 401 Unauthorized"))
    refresh = AsyncMock(side_effect=RuntimeError("refresh endpoint down"))

    await categorizer.execute_retry_strategy(
        classification, 1, RetryContext(refresh_token=refresh)
    )

    # base delay, then one backoff sleep
    assert len(no_sleep.delays) == 2


@pytest.mark.asyncio
async def test_api_refresh_strategy_refreshes_then_backs_off(categorizer, no_sleep):
    classification = replace(
        categorizer.classify(ServerError("HTTP 503 Service Unavailable")),
        retry_strategy=RetryStrategy.API_REFRESH,
    )
    refresh = AsyncMock()

    with patch("order_sync.error_categorizer.random.uniform", return_value=0):
        await categorizer.execute_retry_strategy(
            classification, 2, RetryContext(refresh_api=refresh)
        )

    refresh.assert_awaited_once()
    assert no_sleep.delays == [6.0]


@pytest.mark.asyncio
async def test_api_refresh_failure_still_backs_off(categorizer, no_sleep):
    classification = replace(
        categorizer.classify(ServerError("HTTP 503 Service Unavailable")),
        retry_strategy=RetryStrategy.API_REFRESH,
    )
    refresh = AsyncMock(side_effect=RuntimeError("client close failed"))

    await categorizer.execute_retry_strategy(classification, 1, RetryContext(refresh_api=refresh))

    refresh.assert_awaited_once()
    assert len(no_sleep.delays) == 1


@pytest.mark.asyncio
async def test_unrecognized_strategy_falls_back_to_backoff(categorizer, no_sleep):
    classification = replace(
        categorizer.classify(NetworkError("network error")),
        retry_strategy="reconnect_vpn",
    )

    with patch("order_sync.error_categorizer.random.uniform", return_value=0):
        await categorizer.execute_retry_strategy(classification, 1)

    assert no_sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_memory_cleanup_strategy(categorizer, no_sleep):
    classification = categorizer.classify(MemoryError())
    cleanup = AsyncMock()

    with patch("order_sync.error_categorizer.gc.collect", return_value=0) as collect:
        await categorizer.execute_retry_strategy(classification, 1, RetryContext(cleanup=cleanup))

    collect.assert_called_once()
    cleanup.assert_awaited_once()
    assert no_sleep.delays == [20.0]


@pytest.mark.asyncio
async def test_filesystem_check_probes_scratch_dir(categorizer, no_sleep, tmp_path):
    classification = categorizer.classify(FileNotFoundError("No such file"))

    await categorizer.execute_retry_strategy(classification, 1, RetryContext(scratch_dir=tmp_path))

    assert list(tmp_path.iterdir()) == []
    assert len(no_sleep.delays) == 1


@pytest.mark.asyncio
async def test_permanent_strategy_does_not_sleep(categorizer, no_sleep):
    classification = categorizer.classify(PermissionDeniedError("HTTP 403 Forbidden"))

    await categorizer.execute_retry_strategy(classification, 1)

    assert no_sleep.delays == []


def test_statistics_by_type_sums_to_last_24_hours(categorizer, clock):
    for error in [
        NetworkError("network error"),
        ServerError("HTTP 500"),
        Exception("odd"),
        PermissionDeniedError("HTTP 403 Forbidden"),
        NetworkError("timeout"),
    ]:
        categorizer.classify(error)
        clock.advance(hours=2)

    stats = categorizer.get_error_statistics()

    assert sum(stats["by_type"].values()) == stats["last_24_hours"] == 5
    assert stats["by_type"]["network"] == 2
    assert stats["last_hour"] == 0


def test_recommendations(categorizer):
    for _ in range(11):
        categorizer.classify(NetworkError("network error"))
    categorizer.classify(PermissionDeniedError("HTTP 403 Forbidden"))

    recommendations = {r["type"]: r for r in categorizer.get_recommendations()}

    assert recommendations["high_error_rate"]["severity"] == "critical"
    assert "network" in recommendations["dominant_error_type"]["message"]
    assert recommendations["dominant_error_type"]["suggestion"].startswith("Check network")
    assert "1 permanent" in recommendations["permanent_errors"]["message"]


def test_no_recommendations_without_errors(categorizer):
    assert categorizer.get_recommendations() == []


def test_storm_window_is_configurable(clock, no_sleep):
    categorizer = ErrorCategorizer(
        storm_threshold=2, storm_window=timedelta(seconds=30), clock=clock, sleep=no_sleep
    )
    for _ in range(3):
        classification = categorizer.classify(NetworkError("network error"))

    assert categorizer.should_retry(classification, 0) is False
