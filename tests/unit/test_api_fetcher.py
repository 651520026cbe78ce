import httpx
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch
from core.exceptions import (
    AuthenticationError,
    NetworkError,
    PermissionDeniedError,
    RateLimitError,
    RemoteAPIError,
    ResourceNotFoundError,
    RetryExhaustedError,
    ServerError,
)
from order_sync.extractors.api_fetcher import RemoteRecordFetcher
from schemas.sync import SortSpec, SyncFilters
from conftest import FakeOrderAPI, make_raw_order


def make_fetcher(categorizer, no_sleep, api=None, transport=None, **kwargs):
    return RemoteRecordFetcher(
        base_url="https://orders.example.com/",
        api_path="/api/public/",
        endpoint="customer-orders/v1",
        api_token="secret-token",
        categorizer=categorizer,
        page_size=kwargs.pop("page_size", 2),
        page_delay=0,
        transport=transport or api.transport,
        sleep=no_sleep,
        **kwargs
    )


def status_transport(status_code, headers=None, json=None):
    return httpx.MockTransport(
        lambda request: httpx.Response(status_code, headers=headers, json=json or {"error": "x"})
    )


@pytest.mark.asyncio
async def test_fetch_page_sends_pagination_sort_and_filters(categorizer, no_sleep):
    api = FakeOrderAPI([make_raw_order(i) for i in range(1, 4)])
    fetcher = make_fetcher(categorizer, no_sleep, api, sort=SortSpec(field="id", order="asc"))
    filters = SyncFilters(
        updated_after=datetime(2024, 5, 1, tzinfo=timezone.utc),
        status="processed"
    )

    records = await fetcher.fetch_page(2, filters)

    assert [r["id"] for r in records] == ["3"]
    request = api.requests[0]
    assert request["page"] == "2"
    assert request["per_page"] == "2"
    assert request["sort_by"] == "id"
    assert request["sort_order"] == "asc"
    assert request["updated_after"] == "2024-05-01T00:00:00+00:00"
    assert request["status"] == "processed"
    assert "date_from" not in request
    assert request["authorization"] == "Bearer secret-token"


def test_url_is_joined_without_duplicate_slashes(categorizer, no_sleep):
    fetcher = make_fetcher(categorizer, no_sleep, FakeOrderAPI([]))
    assert fetcher.url == "https://orders.example.com/api/public/customer-orders/v1"


@pytest.mark.parametrize("status_code,error_cls", [
    (401, AuthenticationError),
    (403, PermissionDeniedError),
    (404, ResourceNotFoundError),
    (429, RateLimitError),
    (500, ServerError),
    (503, ServerError),
    (418, RemoteAPIError),
])
@pytest.mark.asyncio
async def test_status_code_mapping(categorizer, no_sleep, status_code, error_cls):
    fetcher = make_fetcher(categorizer, no_sleep, transport=status_transport(status_code))

    with pytest.raises(error_cls) as exc_info:
        await fetcher.fetch_page(1)

    assert exc_info.value.status_code == status_code
    assert "secret-token" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after(categorizer, no_sleep):
    fetcher = make_fetcher(
        categorizer, no_sleep, transport=status_transport(429, headers={"Retry-After": "12"})
    )

    with pytest.raises(RateLimitError) as exc_info:
        await fetcher.fetch_page(1)

    assert exc_info.value.retry_after == 12.0


@pytest.mark.asyncio
async def test_timeout_becomes_network_error(categorizer, no_sleep):
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    fetcher = make_fetcher(categorizer, no_sleep, transport=httpx.MockTransport(handler))

    with pytest.raises(NetworkError) as exc_info:
        await fetcher.fetch_page(1)

    assert "timeout" in exc_info.value.message.lower()
    assert categorizer.classify(exc_info.value).kind == "network"


@pytest.mark.parametrize("payload", [
    [{"id": "1"}, {"id": "2"}],
    {"data": [{"id": "1"}, {"id": "2"}]},
    {"records": [{"id": "1"}, {"id": "2"}]},
    {"items": [{"id": "1"}, {"id": "2"}]},
    {"1": {"id": "1"}, "0": {"id": "2"}, "meta": "x"},
])
def test_extract_records_shapes(payload):
    records = RemoteRecordFetcher.extract_records(payload)
    assert len(records) == 2


def test_extract_records_unknown_shape():
    assert RemoteRecordFetcher.extract_records({"total": 3}) == []
    assert RemoteRecordFetcher.extract_records("nope") == []


@pytest.mark.asyncio
async def test_fetch_page_with_retry_rerequests_same_page(categorizer, no_sleep):
    api = FakeOrderAPI(
        [make_raw_order(i) for i in range(1, 3)],
        failures={1: [httpx.ReadTimeout("timed out"), httpx.Response(502)]}
    )
    fetcher = make_fetcher(categorizer, no_sleep, api)

    records = await fetcher.fetch_page_with_retry(1)

    assert len(records) == 2
    assert api.pages_requested() == [1, 1, 1]
    assert len(no_sleep.delays) == 2


@pytest.mark.asyncio
async def test_fetch_page_with_retry_fails_fast_on_forbidden(categorizer, no_sleep):
    api = FakeOrderAPI([], failures={1: [httpx.Response(403)]})
    fetcher = make_fetcher(categorizer, no_sleep, api)

    with pytest.raises(RetryExhaustedError) as exc_info:
        await fetcher.fetch_page_with_retry(1)

    assert exc_info.value.fatal is True
    assert api.pages_requested() == [1]


@pytest.mark.asyncio
async def test_unauthorized_triggers_token_refresh(categorizer, no_sleep):
    api = FakeOrderAPI([make_raw_order(1)], failures={1: [httpx.Response(401)]})
    provider = AsyncMock(return_value="fresh-token")
    fetcher = make_fetcher(categorizer, no_sleep, api, token_provider=provider)

    records = await fetcher.fetch_page_with_retry(1)

    assert len(records) == 1
    provider.assert_awaited_once()
    assert api.requests[-1]["authorization"] == "Bearer fresh-token"


@pytest.mark.asyncio
async def test_unauthorized_without_token_provider_backs_off(categorizer, no_sleep):
    api = FakeOrderAPI([make_raw_order(1)])
    fetcher = make_fetcher(categorizer, no_sleep, api)
    classification = categorizer.classify(AuthenticationError("HTTP 401 Unauthorized"))

    assert fetcher.retry.context.refresh_token is None
    with patch("order_sync.error_categorizer.random.uniform", return_value=0):
        await categorizer.execute_retry_strategy(classification, 2, fetcher.retry.context)

    # base delay, then backoff for the second retry
    assert no_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_refresh_token_requires_provider(categorizer, no_sleep):
    fetcher = make_fetcher(categorizer, no_sleep, FakeOrderAPI([]))

    with pytest.raises(AuthenticationError):
        await fetcher.refresh_token()

    assert fetcher.api_token == "secret-token"


@pytest.mark.asyncio
async def test_fetch_all_stops_on_short_page(categorizer, no_sleep):
    api = FakeOrderAPI([make_raw_order(i) for i in range(1, 6)])
    fetcher = make_fetcher(categorizer, no_sleep, api)

    pages = [page async for page in fetcher.fetch_all()]

    assert [len(p) for p in pages] == [2, 2, 1]
    assert api.pages_requested() == [1, 2, 3]


@pytest.mark.asyncio
async def test_fetch_all_respects_max_records(categorizer, no_sleep):
    api = FakeOrderAPI([make_raw_order(i) for i in range(1, 11)])
    fetcher = make_fetcher(categorizer, no_sleep, api)

    pages = [page async for page in fetcher.fetch_all(max_records=3)]

    assert sum(len(p) for p in pages) == 3
    assert api.pages_requested() == [1, 2]


@pytest.mark.asyncio
async def test_health_check_probes_one_record(categorizer, no_sleep):
    api = FakeOrderAPI([make_raw_order(1), make_raw_order(2)])
    fetcher = make_fetcher(categorizer, no_sleep, api)

    result = await fetcher.health_check()

    assert result["status"] == "healthy"
    assert api.requests[0]["per_page"] == "1"
    await fetcher.aclose()
