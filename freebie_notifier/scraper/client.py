"""Freebie Notifier — Async HTTP Client.

Fetches kleinanzeigen.de search result pages. Built on
httpx.AsyncClient with:
  - User-agent rotation from config
  - Exponential backoff retry (429, 5xx, timeout, connection errors)
  - Immediate failure on other 4xx (bad URL or blocked request)
  - Rate limiting via AsyncRateLimiter (politeness delay between pages)

The retries only absorb short blips; the next scheduled run retries
the whole pipeline anyway.
"""

from __future__ import annotations

import asyncio
import random
from typing import Optional

import httpx

from freebie_notifier.config import SearchConfig
from freebie_notifier.utils.logger import get_logger
from freebie_notifier.utils.rate_limiter import AsyncRateLimiter

logger = get_logger(__name__)

# ── Browser-like headers common to all requests ──────────
_COMMON_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "de-DE,de;q=0.9,en;q=0.8",
    "Connection": "keep-alive",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
}

_MAX_RETRY_AFTER = 60


class FetchError(Exception):
    """Raised when a search page cannot be retrieved.

    Attributes:
        url: The requested URL.
        status_code: HTTP status, if a response was received.
        retryable: False for client errors that a retry cannot fix.
    """

    def __init__(
        self,
        message: str,
        url: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ) -> None:
        self.url = url
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class KleinanzeigenClient:
    """Async HTTP client for kleinanzeigen.de search pages.

    Attributes:
        config: Search configuration (URL parts, retries, timeouts).
        total_requests: Count of successful requests this run.
    """

    def __init__(
        self,
        config: SearchConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: SearchConfig from the app configuration.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self.config = config
        self.total_requests: int = 0
        self._transport = transport
        self._rate_limiter = AsyncRateLimiter(
            max_calls=1,
            period_seconds=float(config.page_delay_seconds),
        )
        self._client: Optional[httpx.AsyncClient] = None

    def build_page_url(self, page: int = 1) -> str:
        """Build the search URL for a result page.

        Page 1 has no page segment, later pages insert "seite:N":
          /s-zu-verschenken-tauschen/04105/c272l4257r10
          /s-zu-verschenken-tauschen/seite:2/04105/c272l4257r10

        Args:
            page: 1-indexed result page.

        Returns:
            Absolute URL.
        """
        cfg = self.config
        base = cfg.base_url.rstrip("/")
        page_part = f"/seite:{page}" if page > 1 else ""
        suffix = f"/{cfg.postal_code}/c{cfg.category_id}l{cfg.location_id}r{cfg.radius_km}"
        return f"{base}/{cfg.category_slug}{page_part}{suffix}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={
                    **_COMMON_HEADERS,
                    "User-Agent": random.choice(self.config.user_agents),
                },
                follow_redirects=True,
                timeout=httpx.Timeout(self.config.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    def _rotate_ua(self) -> None:
        if self._client is not None:
            self._client.headers["User-Agent"] = random.choice(self.config.user_agents)

    def _backoff(self, attempt: int) -> float:
        return self.config.backoff_base_seconds * (2 ** (attempt - 1))

    async def fetch_page(self, page: int = 1) -> str:
        """Fetch one search result page.

        Args:
            page: 1-indexed result page.

        Returns:
            The response body as text.

        Raises:
            FetchError: On a non-retryable HTTP status, or when all
                attempts failed.
        """
        url = self.build_page_url(page)
        logger.info("Fetching search page %d (%s)", page, url)
        response = await self._request(url)
        return response.text

    async def _request(self, url: str) -> httpx.Response:
        """GET with rate limiting and retry.

        Retry strategy (attempt n, base b):
          - 429 Too Many Requests: Retry-After if given, else b × 2^(n-1)
          - 5xx Server Error: b × 2^(n-1)
          - Timeout / connection error: b × 2^(n-1)
          - Other 4xx, malformed URL: no retry

        Args:
            url: Request URL.

        Returns:
            The successful httpx Response.

        Raises:
            FetchError: See fetch_page().
        """
        client = self._get_client()
        max_retries = max(1, self.config.max_retries)
        last_error: Optional[FetchError] = None

        for attempt in range(1, max_retries + 1):
            await self._rate_limiter.acquire()
            self._rotate_ua()

            try:
                resp = await client.get(url)
            except httpx.InvalidURL as e:
                raise FetchError(f"Invalid search URL {url}: {e}", url, retryable=False) from e
            except httpx.TimeoutException as e:
                last_error = FetchError(f"Timeout fetching {url}: {e}", url)
                logger.warning("Timeout on attempt %d/%d", attempt, max_retries)
            except httpx.TransportError as e:
                last_error = FetchError(f"Connection error fetching {url}: {e}", url)
                logger.warning(
                    "Connection error on attempt %d/%d: %s", attempt, max_retries, e,
                )
            else:
                if resp.status_code < 400:
                    self.total_requests += 1
                    return resp

                status = resp.status_code
                if status == 429 or status >= 500:
                    last_error = FetchError(
                        f"HTTP {status} for {url}", url, status_code=status,
                    )
                    wait = self._backoff(attempt)
                    if status == 429:
                        wait = self._retry_after(resp, default=wait)
                    logger.warning(
                        "HTTP %d on attempt %d/%d",
                        status, attempt, max_retries,
                    )
                    if attempt < max_retries:
                        await asyncio.sleep(wait)
                    continue

                logger.error("HTTP %d for %s, not retrying", status, url)
                raise FetchError(
                    f"HTTP {status} for {url}", url,
                    status_code=status, retryable=False,
                )

            if attempt < max_retries:
                await asyncio.sleep(self._backoff(attempt))

        logger.error("All %d attempts failed for %s", max_retries, url)
        assert last_error is not None
        raise last_error

    @staticmethod
    def _retry_after(resp: httpx.Response, default: float) -> float:
        try:
            wait = float(resp.headers.get("Retry-After", default))
        except ValueError:
            return default
        return min(max(wait, 0.0), _MAX_RETRY_AFTER)

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("HTTP client closed (total requests: %d)", self.total_requests)

    async def __aenter__(self) -> "KleinanzeigenClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
