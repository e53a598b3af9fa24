"""
Post page fetcher using multiple strategies with automatic fallback.

Strategy order (tried sequentially until one returns HTML):
  1. provider          — paid scraping API (scraperapi / scrapingbee / zenrows);
                         only when PROXY_PROVIDER and PROXY_PROVIDER_KEY are set.
                         One attempt, 20s timeout.
  2. direct            — plain GET with browser headers. 5xx / timeouts / network
                         errors retried up to 3 times with linear backoff.
                         4xx ends this strategy (never retried); 403/429 are
                         remembered as "likely blocked".
  3. relay (<host>)    — each FALLBACK_PROXIES relay in selector order,
                         2 attempts each with short backoff.

The first response with status < 400 and a non-empty body wins; nothing after
it runs. When every strategy fails a FetchFailure is returned, never raised.

Environment variables: see config.py (PROXY_PROVIDER, PROXY_PROVIDER_KEY,
FALLBACK_PROXIES, FALLBACK_PROXY_SELECTION, *_TIMEOUT_SECONDS,
*_MAX_ATTEMPTS, *_BACKOFF_*).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from . import config
from .models import (
    ErrorCode,
    FetchFailure,
    FetchOptions,
    FetchResult,
    FetchStrategyKind,
    PageHtml,
)
from .proxy_manager import ProviderEndpoint, ProxyEndpoint, ProxySelector, build_provider_endpoint

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/119.0.0.0 Safari/537.36"
)

BLOCKED_STATUSES = (403, 429)

# (html, status_code, error_message) — exactly one of html / error_message is set
AttemptOutcome = Tuple[Optional[str], Optional[int], Optional[str]]


def browser_headers(target_url: str) -> Dict[str, str]:
    """Headers that make the request look like a desktop browser visiting the post."""
    parsed = urlparse(target_url)
    return {
        "User-Agent": USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Referer": f"{parsed.scheme}://{parsed.netloc}/",
    }


class PageFetcher:
    """Multi-strategy page fetcher with automatic fallback."""

    def __init__(
        self,
        selector: Optional[ProxySelector] = None,
        provider: Optional[ProviderEndpoint] = None,
        provider_options: Optional[FetchOptions] = None,
        direct_options: Optional[FetchOptions] = None,
        relay_options: Optional[FetchOptions] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.selector = selector if selector is not None else ProxySelector.from_templates(
            config.FALLBACK_PROXIES, mode=config.FALLBACK_PROXY_SELECTION,
        )
        self.provider = provider
        self.provider_options = provider_options or FetchOptions(
            timeout_seconds=config.PROVIDER_TIMEOUT_SECONDS,
            max_attempts=1,
        )
        self.direct_options = direct_options or FetchOptions(
            timeout_seconds=config.DIRECT_TIMEOUT_SECONDS,
            max_attempts=config.DIRECT_MAX_ATTEMPTS,
            backoff_base_seconds=config.DIRECT_BACKOFF_BASE_SECONDS,
            backoff_increment_seconds=config.DIRECT_BACKOFF_INCREMENT_SECONDS,
        )
        self.relay_options = relay_options or FetchOptions(
            timeout_seconds=config.RELAY_TIMEOUT_SECONDS,
            max_attempts=config.RELAY_MAX_ATTEMPTS,
            backoff_base_seconds=config.RELAY_BACKOFF_BASE_SECONDS,
            backoff_increment_seconds=config.RELAY_BACKOFF_INCREMENT_SECONDS,
        )
        self._sleep = sleep
        if self.provider:
            logger.info(f"✅ Proxy provider configured: {self.provider.name}")

    @classmethod
    def from_env(cls) -> "PageFetcher":
        return cls(provider=build_provider_endpoint(config.PROXY_PROVIDER, config.PROXY_PROVIDER_KEY))

    # =========================================================================
    # SINGLE ATTEMPT + RETRY LOOP
    # =========================================================================

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
        timeout: float,
    ) -> AttemptOutcome:
        """One GET. Transport errors and timeouts come back as error strings."""
        try:
            resp = await client.get(url, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            return None, None, f"timed out after {timeout:.0f}s ({type(e).__name__})"
        except httpx.HTTPError as e:
            return None, None, f"request failed: {type(e).__name__}: {e}"

        if resp.status_code >= 400:
            return None, resp.status_code, f"HTTP {resp.status_code}"
        if not resp.text.strip():
            return None, resp.status_code, f"HTTP {resp.status_code} with empty body"
        return resp.text, resp.status_code, None

    async def _fetch_with_retries(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
        options: FetchOptions,
        label: str,
    ) -> AttemptOutcome:
        """
        Retry 5xx and network failures up to options.max_attempts.
        4xx and empty 2xx/3xx bodies are terminal for this strategy.
        """
        outcome: AttemptOutcome = (None, None, "not attempted")
        for attempt in range(options.max_attempts):
            outcome = await self._attempt(client, url, headers, options.timeout_seconds)
            html, status, error = outcome
            if html is not None:
                return outcome

            retryable = status is None or status >= 500
            if not retryable:
                return outcome

            if attempt + 1 < options.max_attempts:
                delay = options.backoff(attempt)
                logger.info(
                    f"🔁 {label}: attempt {attempt + 1}/{options.max_attempts} failed ({error}) — "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
        return outcome

    # =========================================================================
    # INDIVIDUAL STRATEGY IMPLEMENTATIONS
    # =========================================================================

    async def _run_provider_strategy(
        self,
        client: httpx.AsyncClient,
        target_url: str,
        endpoint: ProviderEndpoint,
    ) -> AttemptOutcome:
        """Route the fetch through the paid provider (it sets its own browser headers)."""
        return await self._fetch_with_retries(
            client,
            endpoint.build(target_url),
            headers={"Accept-Language": "en-US,en;q=0.9"},
            options=self.provider_options,
            label=f"provider ({endpoint.name})",
        )

    async def _run_direct_strategy(
        self,
        client: httpx.AsyncClient,
        target_url: str,
    ) -> AttemptOutcome:
        """Fetch the post page straight from its origin."""
        return await self._fetch_with_retries(
            client,
            target_url,
            headers=browser_headers(target_url),
            options=self.direct_options,
            label="direct",
        )

    async def _run_relay_strategy(
        self,
        client: httpx.AsyncClient,
        target_url: str,
        endpoint: ProxyEndpoint,
    ) -> AttemptOutcome:
        """Fetch through a free public relay that forwards the target page."""
        return await self._fetch_with_retries(
            client,
            endpoint.build(target_url),
            headers=browser_headers(target_url),
            options=self.relay_options,
            label=f"relay ({endpoint.name})",
        )

    # =========================================================================
    # PUBLIC INTERFACE
    # =========================================================================

    def _build_strategy_list(self) -> List[Tuple[str, FetchStrategyKind, Dict[str, Any]]]:
        """
        Ordered strategy list for one request.
        Each entry: (display_name, kind, kwargs_dict)
        """
        strategies: List[Tuple[str, FetchStrategyKind, Dict[str, Any]]] = []

        if self.provider:
            strategies.append((f"provider ({self.provider.name})", FetchStrategyKind.PROVIDER, {
                "endpoint": self.provider,
            }))

        strategies.append(("direct", FetchStrategyKind.DIRECT, {}))

        for endpoint in self.selector.ordered_endpoints():
            strategies.append((f"relay ({endpoint.name})", FetchStrategyKind.FALLBACK_PROXY, {
                "endpoint": endpoint,
            }))

        return strategies

    def list_strategies(self) -> List[Tuple[str, FetchStrategyKind]]:
        """Configured chain in its default order (relays in configured order)."""
        strategies = []
        if self.provider:
            strategies.append((f"provider ({self.provider.name})", FetchStrategyKind.PROVIDER))
        strategies.append(("direct", FetchStrategyKind.DIRECT))
        for endpoint in self.selector.endpoints:
            strategies.append((f"relay ({endpoint.name})", FetchStrategyKind.FALLBACK_PROXY))
        return strategies

    async def fetch_page(self, target_url: str) -> FetchResult:
        """
        Fetch the HTML of `target_url`, trying each strategy in order.

        Returns PageHtml from the first strategy that gets a < 400 response with
        a body, or FetchFailure once every strategy is exhausted.
        """
        strategies = self._build_strategy_list()
        total = len(strategies)
        logger.info(f"🚀 Fetching page with {total} strategies: {target_url}")

        all_errors: List[str] = []
        last_error: Optional[str] = None
        last_status: Optional[int] = None
        blocked = False
        not_found = False

        async with httpx.AsyncClient(follow_redirects=True) as client:
            for idx, (name, kind, kwargs) in enumerate(strategies, 1):
                logger.info(f"🎯 Strategy {idx}/{total}: {name}")

                try:
                    if kind == FetchStrategyKind.PROVIDER:
                        html, status, error_msg = await self._run_provider_strategy(
                            client, target_url, kwargs["endpoint"],
                        )
                    elif kind == FetchStrategyKind.DIRECT:
                        html, status, error_msg = await self._run_direct_strategy(client, target_url)
                    else:
                        html, status, error_msg = await self._run_relay_strategy(
                            client, target_url, kwargs["endpoint"],
                        )
                except Exception as e:
                    html, status, error_msg = None, None, f"Unexpected exception in strategy: {e}"

                if html is not None:
                    logger.info(f"✅ Strategy {idx}/{total} ({name}) succeeded ({len(html)} chars)")
                    return PageHtml(
                        content=html,
                        source_strategy=kind,
                        source_name=name,
                        status_code=status,
                    )

                error_summary = error_msg or "unknown error"
                logger.warning(f"⚠️ Strategy {idx}/{total} ({name}) failed: {error_summary[:120]}")
                all_errors.append(f"[{name}]: {error_summary[:200]}")
                last_error = error_summary
                last_status = status

                if kind == FetchStrategyKind.DIRECT:
                    blocked = status in BLOCKED_STATUSES
                    not_found = status == 404

        logger.error(f"❌ All {total} fetch strategies failed for {target_url}")
        return FetchFailure(
            kind=ErrorCode.ALL_STRATEGIES_EXHAUSTED,
            last_error=last_error,
            last_status=last_status,
            blocked=blocked,
            not_found=not_found,
            errors=all_errors,
        )


# Global singleton
page_fetcher = PageFetcher.from_env()
