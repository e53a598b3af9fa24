"""
Runtime configuration read from environment variables.

Every value has a working default so the service starts with no environment
at all; the provider strategy is only enabled when both PROXY_PROVIDER and
PROXY_PROVIDER_KEY are set.
"""

import os
from typing import List


def _env_list(name: str, default: str) -> List[str]:
    """Comma-separated env var -> list of non-empty, stripped items."""
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Paid provider (optional, highest priority fetch strategy)
PROXY_PROVIDER = os.getenv("PROXY_PROVIDER", "").strip().lower() or None
PROXY_PROVIDER_KEY = os.getenv("PROXY_PROVIDER_KEY", "").strip() or None
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "20"))

# Direct fetch
DIRECT_TIMEOUT_SECONDS = float(os.getenv("DIRECT_TIMEOUT_SECONDS", "15"))
DIRECT_MAX_ATTEMPTS = int(os.getenv("DIRECT_MAX_ATTEMPTS", "3"))
DIRECT_BACKOFF_BASE_SECONDS = float(os.getenv("DIRECT_BACKOFF_BASE_SECONDS", "1.0"))
DIRECT_BACKOFF_INCREMENT_SECONDS = float(os.getenv("DIRECT_BACKOFF_INCREMENT_SECONDS", "1.0"))

# Free public relays, tried after the direct strategy
FALLBACK_PROXIES = _env_list(
    "FALLBACK_PROXIES",
    "https://api.allorigins.win/raw?url=,https://thingproxy.freeboard.io/fetch/",
)
FALLBACK_PROXY_SELECTION = os.getenv("FALLBACK_PROXY_SELECTION", "round_robin").strip().lower()
RELAY_TIMEOUT_SECONDS = float(os.getenv("RELAY_TIMEOUT_SECONDS", "15"))
RELAY_MAX_ATTEMPTS = int(os.getenv("RELAY_MAX_ATTEMPTS", "2"))
RELAY_BACKOFF_BASE_SECONDS = float(os.getenv("RELAY_BACKOFF_BASE_SECONDS", "0.5"))
RELAY_BACKOFF_INCREMENT_SECONDS = float(os.getenv("RELAY_BACKOFF_INCREMENT_SECONDS", "0.5"))

# Hosts accepted by /api/getVideo (suffix match)
ALLOWED_POST_HOSTS = _env_list("ALLOWED_POST_HOSTS", "instagram.com")

# Stream relay
MEDIA_HOST_ALLOWLIST = _env_list("MEDIA_HOST_ALLOWLIST", "cdninstagram.com,fbcdn.net")
ENFORCE_MEDIA_ALLOWLIST = _env_bool("ENFORCE_MEDIA_ALLOWLIST", True)
DOWNLOAD_TIMEOUT_SECONDS = float(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "30"))

# HTTP server
ALLOWED_ORIGINS = _env_list("ALLOWED_ORIGINS", "*")
PORT = int(os.getenv("PORT", "3000"))
