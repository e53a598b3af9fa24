"""
Fetch-URL rewriting for the provider and public relay strategies.

Two kinds of endpoints:
  1. Provider endpoint — a paid scraping API keyed by PROXY_PROVIDER_KEY
     (query-parameter passthrough: ?api_key=...&url=<target>)
  2. Fallback relays — free public relays listed in FALLBACK_PROXIES

Relay template format (one per entry):
  https://api.allorigins.win/raw?url=          -> encoded target appended
  https://relay.example/get?u={url}&raw=1      -> encoded target substituted

Usage:
    selector = ProxySelector.from_templates(FALLBACK_PROXIES, mode="round_robin")
    for endpoint in selector.ordered_endpoints():
        fetch_url = endpoint.build(target_url)
"""

import logging
import random
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote, urlparse

import httpx

logger = logging.getLogger(__name__)

SELECTION_MODES = ("ordered", "round_robin", "random")

# provider name -> (base URL, api key param, target url param)
PROVIDERS: Dict[str, tuple] = {
    "scraperapi": ("https://api.scraperapi.com/", "api_key", "url"),
    "scrapingbee": ("https://app.scrapingbee.com/api/v1/", "api_key", "url"),
    "zenrows": ("https://api.zenrows.com/v1/", "apikey", "url"),
}


class ProxyEndpoint:
    """A named template mapping a target URL to the URL actually fetched."""

    def __init__(self, name: str, template: str) -> None:
        self.name = name
        self.template = template

    @classmethod
    def from_template(cls, template: str) -> "ProxyEndpoint":
        host = urlparse(template.replace("{url}", "")).netloc or template
        return cls(name=host, template=template)

    def build(self, target_url: str) -> str:
        encoded = quote(target_url, safe="")
        if "{url}" in self.template:
            return self.template.replace("{url}", encoded)
        return self.template + encoded

    def __repr__(self) -> str:
        return f"ProxyEndpoint({self.name!r})"


class ProviderEndpoint(ProxyEndpoint):
    """
    Authenticated provider endpoint. The key travels as a query parameter and
    is kept out of `name`/`repr` so it never reaches the logs.
    """

    def __init__(self, provider: str, api_key: str) -> None:
        if provider not in PROVIDERS:
            raise ValueError(
                f"Unknown proxy provider '{provider}' (supported: {', '.join(sorted(PROVIDERS))})"
            )
        if not api_key:
            raise ValueError(f"Proxy provider '{provider}' requires an API key")
        base_url, key_param, url_param = PROVIDERS[provider]
        super().__init__(name=provider, template=base_url)
        self._api_key = api_key
        self._key_param = key_param
        self._url_param = url_param

    def build(self, target_url: str) -> str:
        url = httpx.URL(self.template, params={
            self._key_param: self._api_key,
            self._url_param: target_url,
        })
        return str(url)


def build_provider_endpoint(provider: Optional[str], api_key: Optional[str]) -> Optional[ProviderEndpoint]:
    """
    Return the provider endpoint when both settings are present, else None.
    A misconfigured provider is logged and disabled rather than crashing startup.
    """
    if not provider or not api_key:
        if provider and not api_key:
            logger.warning(f"⚠️ PROXY_PROVIDER={provider} set without PROXY_PROVIDER_KEY — provider strategy disabled")
        return None
    try:
        return ProviderEndpoint(provider, api_key)
    except ValueError as e:
        logger.warning(f"⚠️ {e} — provider strategy disabled")
        return None


class ProxySelector:
    """
    Decides the order in which fallback relays are tried for one request.

    - ordered:     configured order every time
    - round_robin: start one position later on each call (best-effort under
                   concurrency; exact fairness is not required)
    - random:      shuffled with the injected RNG
    """

    def __init__(
        self,
        endpoints: Iterable[ProxyEndpoint],
        mode: str = "round_robin",
        rng: Optional[random.Random] = None,
    ) -> None:
        if mode not in SELECTION_MODES:
            raise ValueError(f"Unknown selection mode '{mode}' (expected one of {SELECTION_MODES})")
        self._endpoints = tuple(endpoints)
        self.mode = mode
        self._rng = rng or random.Random()
        self._index: int = 0

    @classmethod
    def from_templates(
        cls,
        templates: Sequence[str],
        mode: str = "round_robin",
        rng: Optional[random.Random] = None,
    ) -> "ProxySelector":
        if mode not in SELECTION_MODES:
            logger.warning(f"⚠️ Unknown FALLBACK_PROXY_SELECTION '{mode}' — using round_robin")
            mode = "round_robin"
        return cls([ProxyEndpoint.from_template(t) for t in templates], mode=mode, rng=rng)

    @property
    def endpoints(self) -> tuple:
        return self._endpoints

    def __len__(self) -> int:
        return len(self._endpoints)

    def ordered_endpoints(self) -> List[ProxyEndpoint]:
        """Return every endpoint once, in the order this request should try them."""
        if not self._endpoints:
            return []
        if self.mode == "random":
            shuffled = list(self._endpoints)
            self._rng.shuffle(shuffled)
            return shuffled
        if self.mode == "round_robin":
            start = self._index % len(self._endpoints)
            self._index = (start + 1) % len(self._endpoints)
            return list(self._endpoints[start:] + self._endpoints[:start])
        return list(self._endpoints)
