"""
Remote order API fetcher with authentication, pagination and retry.

This module provides page retrieval from the remote order API with:
- Bearer token authentication (the token never appears in logs)
- Page/per_page pagination with a stable sort
- Status code mapping to the sync exception hierarchy
- Retries driven by the error categorizer (same page re-requested)
- Token refresh and client reset hooks for retry strategies
"""

import httpx
import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
from schemas.sync import SortSpec, SyncFilters
from core.exceptions import (
    AuthenticationError,
    NetworkError,
    PermissionDeniedError,
    RateLimitError,
    RemoteAPIError,
    ResourceNotFoundError,
    ServerError,
)
from order_sync.error_categorizer import ErrorCategorizer, RetryContext
from order_sync.retry import RetryExecutor
import logging

logger = logging.getLogger(__name__)


class RemoteRecordFetcher:
    """
    Fetch pages of customer orders from the remote order API.

    Attributes:
        page_size: Records requested per page
        max_pages: Upper bound on pages walked by ``fetch_all``
        page_delay: Seconds to pause between pages
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        base_url: str,
        api_path: str,
        endpoint: str,
        api_token: Optional[str],
        categorizer: ErrorCategorizer,
        page_size: int = 100,
        max_pages: int = 1000,
        sort: Optional[SortSpec] = None,
        timeout: float = 60.0,
        page_delay: float = 0.1,
        max_attempts: int = 8,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[Callable[[], Awaitable[Optional[str]]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.url = "/".join(part.strip("/") for part in (base_url, api_path, endpoint) if part)
        self.api_token = api_token
        self.page_size = page_size
        self.max_pages = max_pages
        self.sort = sort or SortSpec()
        self.timeout = timeout
        self.page_delay = page_delay
        self.categorizer = categorizer
        self._transport = transport
        self._token_provider = token_provider
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

        self.retry = RetryExecutor(
            categorizer,
            max_attempts=max_attempts,
            context=RetryContext(
                # Without a provider there is nothing to refresh; the strategy backs off instead
                refresh_token=self.refresh_token if token_provider is not None else None,
                refresh_api=self.reset_client,
            )
        )

    # ------------------------------------------------------------------
    # HTTP client lifecycle
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def refresh_token(self):
        """Re-read the API token (from the provider when one is configured)."""
        if self._token_provider is None:
            raise AuthenticationError("No token provider configured")
        token = await self._token_provider()
        if not token:
            raise AuthenticationError("Token refresh returned no token")
        self.api_token = token
        logger.info("API token refreshed")

    async def reset_client(self):
        """Close and drop the HTTP client; the next request creates a fresh one."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("HTTP client reset")

    async def aclose(self):
        await self.reset_client()

    # ------------------------------------------------------------------
    # Page retrieval
    # ------------------------------------------------------------------

    def build_params(
        self,
        page: int,
        filters: Optional[SyncFilters] = None,
        per_page: Optional[int] = None
    ) -> Dict[str, Any]:
        params = {
            "page": page,
            "per_page": per_page or self.page_size,
            "sort_by": self.sort.field,
            "sort_order": self.sort.order,
        }
        if filters is not None:
            params.update(filters.to_query_params())
        return params

    async def fetch_page(
        self,
        page: int,
        filters: Optional[SyncFilters] = None,
        per_page: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Fetch a single page (no retries).

        Raises:
            AuthenticationError, PermissionDeniedError, ResourceNotFoundError,
            RateLimitError, ServerError, RemoteAPIError: mapped HTTP failures
            NetworkError: timeouts and transport failures
        """
        params = self.build_params(page, filters, per_page)
        context = {"api_url": self.url, "page": page}

        logger.debug(f"Fetching page {page} from {self.url}")

        try:
            response = await self._get_client().get(
                self.url, headers=self._headers(), params=params
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Request timeout after {self.timeout}s fetching page {page}",
                context={**context, "timeout": self.timeout},
                original_exception=e
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"Network error fetching page {page}: {type(e).__name__}",
                context=context,
                original_exception=e
            )

        self._raise_for_status(response, context)

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteAPIError(
                "Invalid data: failed to parse JSON response",
                context={**context, "response_body": response.text[:500]},
                original_exception=e,
                status_code=response.status_code
            )

        records = self.extract_records(data)
        logger.debug(f"Fetched {len(records)} records from page {page}")
        return records

    def _raise_for_status(self, response: httpx.Response, context: Dict[str, Any]):
        status = response.status_code
        if 200 <= status < 300:
            return

        context = {**context, "status_code": status, "response_body": response.text[:500]}

        if status == 401:
            raise AuthenticationError(
                "HTTP 401 Unauthorized: token missing or expired",
                context=context, status_code=status
            )
        if status == 403:
            raise PermissionDeniedError(
                "HTTP 403 Forbidden", context=context, status_code=status
            )
        if status == 404:
            raise ResourceNotFoundError(
                f"HTTP 404 Not Found: {self.url}", context=context, status_code=status
            )
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after = float(retry_after) if retry_after is not None else None
            except ValueError:
                retry_after = None
            raise RateLimitError(
                "HTTP 429 Too Many Requests", context=context, retry_after=retry_after
            )
        if status >= 500:
            raise ServerError(
                f"HTTP {status} {response.reason_phrase}", context=context, status_code=status
            )
        raise RemoteAPIError(
            f"HTTP {status} {response.reason_phrase}", context=context, status_code=status
        )

    @staticmethod
    def extract_records(data: Any) -> List[Dict[str, Any]]:
        """Records from any of the response shapes the API has been seen to return."""
        if isinstance(data, list):
            return data

        if isinstance(data, dict):
            for key in ("data", "records", "items"):
                if isinstance(data.get(key), list):
                    return data[key]

            numeric_keys = [key for key in data if str(key).isdigit()]
            if numeric_keys:
                return [data[key] for key in sorted(numeric_keys, key=int)]

        logger.warning(f"Unrecognized response shape: {type(data).__name__}")
        return []

    async def fetch_page_with_retry(
        self,
        page: int,
        filters: Optional[SyncFilters] = None
    ) -> List[Dict[str, Any]]:
        """
        Fetch a page, retrying the same page per the categorizer's policy.

        Raises:
            RetryExhaustedError: when the page cannot be fetched
        """
        return await self.retry.run(
            lambda: self.fetch_page(page, filters),
            description=f"Fetch page {page}",
            error_context={"operation": "fetch_page", "page": page}
        )

    async def fetch_all(
        self,
        filters: Optional[SyncFilters] = None,
        max_records: Optional[int] = None
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield pages until a short page, ``max_records`` or ``max_pages``."""
        fetched = 0
        for page in range(1, self.max_pages + 1):
            records = await self.fetch_page_with_retry(page, filters)
            if max_records is not None:
                records = records[:max_records - fetched]
            fetched += len(records)
            if records:
                yield records

            if len(records) < self.page_size:
                break
            if max_records is not None and fetched >= max_records:
                break
            if self.page_delay:
                await self._sleep(self.page_delay)

        logger.info(f"Fetched {fetched} records from {self.url}")

    async def health_check(self) -> Dict[str, Any]:
        """Probe page 1 with one record per page."""
        records = await self.fetch_page(1, per_page=1)
        return {
            "status": "healthy",
            "api_url": self.url,
            "sample_records": len(records),
            "page_size": self.page_size,
        }
