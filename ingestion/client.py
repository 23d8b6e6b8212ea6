"""
Upstream catalog client (RESO/OData web API) with rate limiting and retry logic.

This module provides:
- Bearer token authentication
- OData query building ($filter, $top, $orderby, $expand, $select)
- @odata.nextLink pagination
- Exponential backoff for timeouts, network errors and 5xx responses
- Mapping of HTTP failures onto the engine exception hierarchy

Every HTTP attempt, retries included, acquires the shared rate limiter first.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    RateLimited,
    ResourceNotFoundError,
    TransientUpstreamError,
    UpstreamError,
)
from ingestion.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class CatalogClient:
    """
    Rate-limited client for the upstream listing catalog.

    Attributes:
        base_url: API root, e.g. https://api.mlsgrid.com/v2
        limiter: Shared RateLimiter; the only serialization point for API traffic
        max_retries: Attempts per request for transient failures (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 30.0)
    """

    def __init__(
        self,
        limiter: RateLimiter,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.limiter = limiter
        self.base_url = (base_url or settings.UPSTREAM_BASE_URL).rstrip("/")
        self.access_token = access_token or settings.UPSTREAM_ACCESS_TOKEN
        self.max_retries = max_retries or settings.UPSTREAM_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.UPSTREAM_RETRY_DELAY_SECONDS
        self.timeout = timeout or settings.UPSTREAM_TIMEOUT_SECONDS
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "CatalogClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @staticmethod
    def build_query(
        filters: List[str],
        top: int,
        orderby: Optional[str] = "ModificationTimestamp asc",
        expand: Optional[str] = None,
        select: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build OData query parameters for a resource listing"""
        params: Dict[str, Any] = {"$filter": " and ".join(filters), "$top": top}
        if orderby:
            params["$orderby"] = orderby
        if expand:
            params["$expand"] = expand
        if select:
            params["$select"] = select
        return params

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        entity_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Make a rate-limited GET with retry logic and exponential backoff.

        Raises:
            RateLimited: Upstream answered 429 (never retried here)
            AuthenticationError: 401/403
            ResourceNotFoundError: 404
            TransientUpstreamError: 5xx, timeout or network error after max retries
            UpstreamError: Any other non-success status or an unparseable body
        """
        client = self._get_client()

        for attempt in range(self.max_retries):
            await self.limiter.acquire()
            try:
                logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} to {url}")
                response = await client.get(url, headers=self.headers, params=params, timeout=self.timeout)
            except httpx.TimeoutException as e:
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(f"Request timeout. Retrying in {delay} seconds")
                    await self._sleep(delay)
                    continue
                raise TransientUpstreamError(
                    f"Request timeout after {self.max_retries} retries",
                    context={"url": url, "timeout": self.timeout, "retry_count": attempt + 1},
                    original_exception=e,
                )
            except httpx.TransportError as e:
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(f"Network error. Retrying in {delay} seconds")
                    await self._sleep(delay)
                    continue
                raise TransientUpstreamError(
                    f"Network error after {self.max_retries} retries",
                    context={"url": url, "retry_count": attempt + 1},
                    original_exception=e,
                )

            status = response.status_code

            if status == 429:
                retry_after = response.headers.get("Retry-After")
                raise RateLimited(
                    f"Upstream rate limit hit for {url}",
                    source="api",
                    context={"status_code": 429, "url": url},
                    endpoint=url,
                    entity_key=entity_key,
                    retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                    response_body=response.text[:1000],
                )

            if status in (401, 403):
                raise AuthenticationError(
                    f"Authentication failed for {url}",
                    context={"status_code": status, "url": url},
                )

            if status == 404:
                raise ResourceNotFoundError(
                    f"Resource not found: {url}",
                    context={"status_code": 404, "url": url},
                )

            if status >= 500:
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Server error {status}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await self._sleep(delay)
                    continue
                raise TransientUpstreamError(
                    f"Server error after {self.max_retries} retries",
                    context={
                        "status_code": status,
                        "url": url,
                        "retry_count": attempt + 1,
                        "response_body": response.text[:500],
                    },
                )

            if status != 200:
                raise UpstreamError(
                    f"Unexpected status {status} from {url}",
                    context={"status_code": status, "url": url, "response_body": response.text[:500]},
                )

            try:
                return response.json()
            except ValueError as e:
                raise UpstreamError(
                    "Failed to parse JSON response",
                    context={"url": url, "response_body": response.text[:500]},
                    original_exception=e,
                )

        raise TransientUpstreamError("Max retries exceeded", context={"url": url})

    async def iter_pages(
        self,
        resource: str,
        params: Dict[str, Any],
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Yield one page of records at a time, following @odata.nextLink.

        The caller persists each page before asking for the next one.
        """
        url: Optional[str] = f"{self.base_url}/{resource}"
        page_params: Optional[Dict[str, Any]] = params
        page = 1

        while url:
            logger.info(f"Fetching {resource} page {page}")
            data = await self.get_json(url, params=page_params)
            records = data.get("value") or []
            logger.debug(f"Fetched {len(records)} {resource} records from page {page}")
            yield records

            # nextLink carries the complete query string
            url = data.get("@odata.nextLink")
            page_params = None
            page += 1

    async def fetch_listing_media(self, listing_key: str) -> List[Dict[str, Any]]:
        """Re-fetch a listing's media to obtain fresh (unexpired) source URLs"""
        safe_key = listing_key.replace("'", "''")
        url = f"{self.base_url}/Property('{safe_key}')"
        data = await self.get_json(
            url,
            params={"$expand": "Media", "$select": "ListingKey"},
            entity_key=listing_key,
        )
        return data.get("Media") or []
