"""
Async client for the LMS REST API.

List endpoints are JSON:API pages of the form

    {"data": [...], "links": {"next": "https://.../v2/people?page=2"}}

iter_pages() follows links.next until it is absent, sleeping a fixed delay
between requests to stay under the API's rate limit (~10 req/s). A 429 or a
request timeout is retried once after a back-off; anything else non-2xx
raises LmsApiError. fetch_all() wraps iter_pages() and, instead of raising,
returns what it gathered with the error attached so the caller can decide
whether partial data is acceptable.

A fetch is never resumable: each call starts again at page 1.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from lmssync.errors import ConfigurationError, LmsApiError
from lmssync.timeutil import utcnow

logger = logging.getLogger(__name__)

# Consecutive failed requests before the API is reported unhealthy.
UNHEALTHY_AFTER = 5


@dataclass
class Page:
    items: List[Dict[str, Any]]
    number: int
    next: Optional[str] = None


@dataclass
class FetchResult:
    """Records gathered by fetch_all().

    error is set when the page sequence stopped on an API error; truncated is
    set when the page ceiling was hit. Either way the records gathered up to
    that point are kept.
    """

    records: List[Dict[str, Any]] = field(default_factory=list)
    pages: int = 0
    error: Optional[LmsApiError] = None
    truncated: bool = False

    @property
    def partial(self) -> bool:
        return self.error is not None

    @property
    def complete(self) -> bool:
        return self.error is None and not self.truncated


class LmsClient:
    """Thin async wrapper over httpx.AsyncClient for the LMS API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.northpass.com",
        page_size: int = 100,
        page_delay: float = 0.125,
        rate_limit_backoff: float = 10.0,
        timeout: float = 30.0,
        max_pages: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            api_key: Static key sent as X-Api-Key. Required.
            transport: httpx transport override (httpx.MockTransport in tests).
            sleep: Coroutine used for inter-page delays and back-off, so
                tests can record delays instead of waiting.

        Raises:
            ConfigurationError: if api_key is empty.
        """
        if not api_key:
            raise ConfigurationError("LMS API key is not configured (LMS_API_KEY)")
        self.page_size = page_size
        self.page_delay = page_delay
        self.rate_limit_backoff = rate_limit_backoff
        self.max_pages = max_pages
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={"X-Api-Key": api_key, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self.consecutive_errors = 0
        self.last_success_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "LmsClient":
        return cls(
            api_key=settings.lms_api_key,
            base_url=settings.lms_base_url,
            page_size=settings.lms_page_size,
            page_delay=settings.lms_page_delay_seconds,
            rate_limit_backoff=settings.lms_rate_limit_backoff_seconds,
            timeout=settings.lms_request_timeout_seconds,
            max_pages=settings.lms_max_pages,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        """Report API health from the run of consecutive failed requests."""
        if self.consecutive_errors == 0:
            status = "healthy"
        elif self.consecutive_errors < UNHEALTHY_AFTER:
            status = "degraded"
        else:
            status = "unhealthy"
        return {
            "status": status,
            "consecutiveErrors": self.consecutive_errors,
            "lastSuccessAt": self.last_success_at.isoformat() if self.last_success_at else None,
            "lastError": self.last_error,
        }

    @property
    def is_healthy(self) -> bool:
        return self.consecutive_errors < UNHEALTHY_AFTER

    def _record_success(self) -> None:
        self.consecutive_errors = 0
        self.last_success_at = utcnow()
        self.last_error = None

    def _record_failure(self, error: LmsApiError) -> None:
        self.consecutive_errors += 1
        self.last_error = str(error)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _send(self, url: str, params: Optional[Dict[str, Any]]) -> httpx.Response:
        try:
            return await self._http.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise LmsApiError(
                f"LMS API request timed out: {url}", 0, url, detail=str(exc), retryable=True
            ) from exc
        except httpx.TransportError as exc:
            raise LmsApiError(
                f"LMS API request failed: {exc}", 0, url, detail=str(exc), retryable=True
            ) from exc

    async def _request_once(self, url: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        response = await self._send(url, params)
        if response.status_code >= 400:
            raise LmsApiError.from_status(response.status_code, url, response.text[:500])
        try:
            return response.json()
        except ValueError as exc:
            raise LmsApiError(
                f"LMS API returned invalid JSON: {url}", response.status_code, url
            ) from exc

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET url and return the decoded JSON body.

        Retryable failures (429, timeouts, transport errors) are retried once
        after rate_limit_backoff seconds.

        Raises:
            LmsApiError: on any non-2xx response or transport failure that
                survives the single retry.
        """
        try:
            body = await self._request_once(url, params)
        except LmsApiError as exc:
            if not exc.retryable:
                self._record_failure(exc)
                raise
            logger.warning(
                "LMS API %s on %s, retrying in %.1fs", exc.status_code or "timeout",
                url, self.rate_limit_backoff,
            )
            await self._sleep(self.rate_limit_backoff)
            try:
                body = await self._request_once(url, params)
            except LmsApiError as retry_exc:
                self._record_failure(retry_exc)
                raise
        self._record_success()
        return body

    async def throttle(self) -> None:
        """Sleep the inter-request delay. For callers looping over many endpoints."""
        await self._sleep(self.page_delay)

    async def iter_pages(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[Page]:
        """Yield every page of a list endpoint, in source order.

        The first request carries limit=page_size plus params; later requests
        follow links.next exactly as the server sent it. Stops when links.next
        is absent or after max_pages pages.

        Raises:
            LmsApiError: on the first request that fails for good. Pages
                already yielded stay with the caller.
        """
        url: Optional[str] = path
        query: Optional[Dict[str, Any]] = {"limit": self.page_size, **(params or {})}
        number = 0
        while url:
            if number >= self.max_pages:
                logger.warning(
                    "Stopping %s after %d pages (page ceiling); next link was %s",
                    path, number, url,
                )
                return
            if number > 0:
                await self._sleep(self.page_delay)
            number += 1
            body = await self.get(url, params=query)
            items = body.get("data") or []
            next_url = (body.get("links") or {}).get("next")
            logger.debug("Fetched %s page %d (%d records)", path, number, len(items))
            yield Page(items=items, number=number, next=next_url)
            url, query = next_url, None

    async def fetch_all(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> FetchResult:
        """Collect every record of a list endpoint.

        Never raises LmsApiError: a failure ends the sequence and is returned
        on the result together with the records gathered before it.
        """
        result = FetchResult()
        pages = self.iter_pages(path, params)
        try:
            async for page in pages:
                result.records.extend(page.items)
                result.pages = page.number
                if page.next and page.number >= self.max_pages:
                    result.truncated = True
        except LmsApiError as exc:
            logger.error(
                "Fetch of %s stopped on page %d: %s (%d records so far)",
                path, result.pages + 1, exc, len(result.records),
            )
            result.error = exc
        finally:
            await pages.aclose()
        return result
