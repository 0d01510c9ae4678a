"""
Paged reader for the legacy store's extraction endpoint.

The endpoint exposes ``GET <url>?table=<t>&limit=<n>&offset=<k>`` and
answers with a JSON array of rows; an empty array means the table is
exhausted. Requests are bounded by a timeout and retried with exponential
backoff on transient failures (timeouts, connection errors, 5xx, 429).
"""

import asyncio
import httpx
from typing import Any, Dict, List, Optional
from core.config import settings
from core.exceptions import (
    SourceFetchError,
    SourceNetworkError,
    SourceRateLimitError,
    SourceAuthenticationError,
    SourceNotFoundError,
)
import logging

logger = logging.getLogger(__name__)


class SourceReader:
    """
    Fetch pages of rows from the legacy source.

    Attributes:
        api_url: Extraction endpoint
        timeout: Request timeout in seconds
        max_retries: Attempts per page before giving up
        retry_delay: Initial retry delay in seconds (doubles per attempt)

    Usage:
        async with SourceReader() as reader:
            rows = await reader.fetch("user_register", limit=10000, offset=0)
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url or settings.SOURCE_API_URL
        self.api_key = api_key if api_key is not None else settings.SOURCE_API_KEY
        self.timeout = timeout if timeout is not None else settings.SOURCE_REQUEST_TIMEOUT
        self.max_retries = max(1, max_retries if max_retries is not None else settings.SOURCE_MAX_RETRIES)
        self.retry_delay = retry_delay if retry_delay is not None else settings.SOURCE_RETRY_DELAY

        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "SourceReader":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_with_retry(self, params: Dict[str, Any]) -> httpx.Response:
        """
        Make HTTP request with retry logic and exponential backoff.

        Raises:
            SourceAuthenticationError: On 401/403 (not retried)
            SourceNotFoundError: On 404 (not retried)
            SourceRateLimitError: On 429 after all retries
            SourceNetworkError: On timeouts, connection errors and 5xx after all retries
        """
        if self._client is None:
            await self.connect()

        context = {"api_url": self.api_url, **params}

        for attempt in range(self.max_retries):
            is_last = attempt == self.max_retries - 1
            delay = self.retry_delay * (2 ** attempt)

            try:
                response = await self._client.get(
                    self.api_url,
                    params=params,
                    headers=self._headers(),
                    timeout=self.timeout,
                )
            except httpx.TimeoutException as e:
                if is_last:
                    raise SourceNetworkError(
                        f"Request timeout after {self.max_retries} attempts",
                        context={**context, "timeout": self.timeout, "retry_count": attempt + 1},
                        original_exception=e
                    )
                logger.warning(f"Source request timeout. Retrying in {delay} seconds")
                await asyncio.sleep(delay)
                continue
            except httpx.TransportError as e:
                if is_last:
                    raise SourceNetworkError(
                        f"Network error after {self.max_retries} attempts",
                        context={**context, "retry_count": attempt + 1},
                        original_exception=e
                    )
                logger.warning(f"Source network error ({type(e).__name__}). Retrying in {delay} seconds")
                await asyncio.sleep(delay)
                continue

            if response.status_code in (401, 403):
                raise SourceAuthenticationError(
                    f"Authentication failed for {self.api_url}",
                    context={**context, "status_code": response.status_code}
                )

            if response.status_code == 404:
                raise SourceNotFoundError(
                    f"Resource not found: {self.api_url}",
                    context={**context, "status_code": 404}
                )

            if response.status_code == 429:
                retry_after = _parse_retry_after(response.headers.get("Retry-After"), delay)
                if is_last:
                    raise SourceRateLimitError(
                        f"Rate limit exceeded for {self.api_url}",
                        context={**context, "status_code": 429, "retry_count": attempt + 1},
                        retry_after=retry_after
                    )
                logger.warning(f"Rate limited by source. Retrying after {retry_after} seconds")
                await asyncio.sleep(retry_after)
                continue

            if response.status_code >= 500:
                if is_last:
                    raise SourceNetworkError(
                        f"Server error after {self.max_retries} attempts",
                        context={
                            **context,
                            "status_code": response.status_code,
                            "retry_count": attempt + 1,
                            "response_body": response.text[:500]
                        }
                    )
                logger.warning(
                    f"Source server error {response.status_code}. "
                    f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                raise SourceFetchError(
                    f"Unexpected status {response.status_code} from source",
                    context={**context, "status_code": response.status_code}
                )

            return response

        # Only reachable with max_retries < 1, which __init__ prevents
        raise SourceFetchError("Max retries exceeded", context=context)

    async def fetch(self, table: str, limit: int, offset: int) -> List[Dict[str, Any]]:
        """
        Fetch one page of rows.

        Args:
            table: Source table identifier
            limit: Page size
            offset: Row offset of the page

        Returns:
            List of rows; empty when the table is exhausted. Null entries are
            kept so the caller can account for them.
        """
        params = {"table": table, "limit": limit, "offset": offset}
        logger.debug(f"Fetching {table} limit={limit} offset={offset}")

        response = await self._get_with_retry(params)

        try:
            data = response.json()
        except ValueError as e:
            raise SourceFetchError(
                "Failed to parse JSON response",
                context={
                    "api_url": self.api_url,
                    **params,
                    "response_body": response.text[:500]
                },
                original_exception=e
            )

        if isinstance(data, list):
            return data

        if isinstance(data, dict):
            rows = data.get("data", data.get("results"))
            if isinstance(rows, list):
                return rows

        # Anything else is how the endpoint says "nothing more"
        logger.warning(f"Unexpected payload shape from source for {table} at offset {offset}; treating as empty")
        return []


def _parse_retry_after(value: Optional[str], fallback: float) -> float:
    if value is None:
        return fallback
    try:
        return max(float(value), 0.0)
    except ValueError:
        return fallback
