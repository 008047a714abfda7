"""
Cursor-based reader over the source record API.

This module provides:
- Bearer token authentication
- Cursor pagination until the source reports nothing remaining
- A shared minimum interval between requests (rate limiting)
- Retries for HTTP 429/500 and transport failures under one RetryPolicy
- FetchExhausted once the retry budget for a page is spent
"""

import json
import httpx
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional
from migration.rate_limiter import RateLimiter
from migration.retry import RetryPolicy
from core.exceptions import (
    SourceAPIError,
    AuthenticationError,
    ResourceNotFoundError,
    NetworkError,
    RateLimitError,
    SourceServerError,
    FetchExhausted,
    RetryableError
)
import logging

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500)


@dataclass
class Page:
    """One page of raw records"""
    items: List[Dict[str, Any]]
    remaining: int
    cursor: int


class SourcePaginator:
    """
    Read entity endpoints page by page.

    Attributes:
        base_url: Root of the record API; the entity type is appended
        page_size: Records requested per page (the source caps it at 100)
        rate_limiter: Limiter shared by every request of the run
        retry_policy: Attempts and backoff for retryable failures
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str],
        rate_limiter: RateLimiter,
        retry_policy: RetryPolicy,
        page_size: int = 100,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy
        self.page_size = page_size
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self.requests_made = 0

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False

    async def _request_page(self, url: str, params: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        """
        Make one rate-limited request and classify the outcome.

        Raises:
            NetworkError / RateLimitError / SourceServerError: retryable
            AuthenticationError / ResourceNotFoundError / SourceAPIError: fatal
        """
        await self.rate_limiter.acquire()
        self.requests_made += 1

        try:
            response = await self._get_client().get(url, headers=self.headers, params=params)
        except httpx.TimeoutException as e:
            raise NetworkError("Request timeout", context=dict(context), original_exception=e)
        except httpx.TransportError as e:
            raise NetworkError("Network error", context=dict(context), original_exception=e)

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed for {url}",
                context={**context, "status_code": status}
            )

        if status == 404:
            raise ResourceNotFoundError(
                f"Entity endpoint not found: {url}",
                context={**context, "status_code": status}
            )

        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"Rate limited by {url}",
                context={**context, "status_code": status},
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )

        if status in RETRYABLE_STATUS_CODES:
            raise SourceServerError(
                f"Server error {status} from {url}",
                context={**context, "status_code": status, "response_body": response.text[:500]}
            )

        if not response.is_success:
            raise SourceAPIError(
                f"Unexpected status {status} from {url}",
                context={**context, "status_code": status, "response_body": response.text[:500]}
            )

        try:
            return response.json()
        except ValueError as e:
            raise SourceAPIError(
                "Failed to parse JSON response",
                context={**context, "response_body": response.text[:500]},
                original_exception=e
            )

    async def fetch_page(
        self,
        entity_type: str,
        cursor: int = 0,
        constraints: Optional[List[Dict[str, Any]]] = None,
        limit: Optional[int] = None
    ) -> Page:
        """
        Fetch one page of an entity endpoint.

        Args:
            entity_type: Source entity name (appended to the base URL)
            cursor: Offset of the first record
            constraints: Optional source-side filters, sent JSON-encoded
            limit: Page size override (defaults to page_size)

        Returns:
            Page with the raw items and the count the source reports as remaining

        Raises:
            FetchExhausted: When retryable failures outlast the retry policy
            SourceAPIError: For non-retryable responses
        """
        url = f"{self.base_url}/{entity_type}"
        params: Dict[str, Any] = {"cursor": cursor, "limit": limit or self.page_size}
        if constraints:
            params["constraints"] = json.dumps(constraints)

        context = {"entity_type": entity_type, "cursor": cursor}

        try:
            data = await self.retry_policy.call(
                lambda: self._request_page(url, params, context),
                retry_on=(RetryableError,),
                description=f"Fetch {entity_type} cursor={cursor}"
            )
        except RetryableError as e:
            raise FetchExhausted(
                f"Retries exhausted fetching {entity_type}",
                context={**context, "attempts": self.retry_policy.max_attempts},
                original_exception=e
            )

        body = data.get("response") if isinstance(data, dict) else None
        if not isinstance(body, dict):
            raise SourceAPIError(
                "Response has no 'response' object",
                context=context
            )

        items = body.get("results") or []
        try:
            remaining = int(body.get("remaining") or 0)
        except (TypeError, ValueError):
            remaining = 0

        logger.debug(f"Fetched {len(items)} {entity_type} records at cursor {cursor} ({remaining} remaining)")
        return Page(items=items, remaining=remaining, cursor=cursor)

    async def iterate_pages(
        self,
        entity_type: str,
        constraints: Optional[List[Dict[str, Any]]] = None,
        max_records: Optional[int] = None
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Yield pages from cursor 0 until the source reports nothing remaining.

        A new call always starts over from cursor 0.
        """
        cursor = 0
        yielded = 0
        while True:
            limit = self.page_size
            if max_records is not None:
                limit = min(limit, max_records - yielded)
                if limit <= 0:
                    return

            page = await self.fetch_page(entity_type, cursor, constraints, limit=limit)
            if not page.items:
                return

            yielded += len(page.items)
            yield page.items

            if page.remaining <= 0:
                return
            cursor += len(page.items)

    async def iterate_all(
        self,
        entity_type: str,
        constraints: Optional[List[Dict[str, Any]]] = None,
        max_records: Optional[int] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield records one at a time; see iterate_pages"""
        async for items in self.iterate_pages(entity_type, constraints, max_records):
            for item in items:
                yield item

    async def count(self, entity_type: str, constraints: Optional[List[Dict[str, Any]]] = None) -> int:
        """Total records for an endpoint, from a one-record page"""
        page = await self.fetch_page(entity_type, 0, constraints, limit=1)
        return len(page.items) + page.remaining
