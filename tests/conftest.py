"""
Shared fixtures and helpers for the InstaSave proxy tests.

No test touches the network: page fetches and relay upstreams are mocked with
respx, and the API tests swap fakes in for the fetcher and relay singletons.
"""

import os
import pathlib
import sys

import pytest
import respx

# ─── Path + .env loading (must happen before any app import) ─────────────────

_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(_ROOT))

_env_file = _ROOT / ".env"
if _env_file.exists():
    for _line in _env_file.read_text().splitlines():
        _line = _line.strip()
        if _line and not _line.startswith("#") and "=" in _line:
            _k, _v = _line.split("=", 1)
            os.environ.setdefault(_k.strip(), _v.strip())

# ─── Constants ───────────────────────────────────────────────────────────────

POST_URL = "https://www.instagram.com/p/Cx1AbCdEfGh/"
VIDEO_URL = "https://scontent.cdninstagram.com/v/t50.2886-16/clip.mp4?efg=abc&oh=00_xyz"
THUMB_URL = "https://scontent.cdninstagram.com/v/t51.2885-15/thumb.jpg"

ALLORIGINS = "https://api.allorigins.win/raw?url="
THINGPROXY = "https://thingproxy.freeboard.io/fetch/"

PAGE_HTML = "<html><head><title>post</title></head><body>ok</body></html>"


# ─── Per-test fixtures ────────────────────────────────────────────────────────

class SleepRecorder:
    """Stands in for asyncio.sleep so backoff delays are recorded, not waited."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def make_fetcher(sleeps):
    """
    Factory for a PageFetcher with pinned (ordered) relay selection and
    1s/+1s direct backoff, 0.5s/+0.5s relay backoff.
    """
    from instasave.fetcher import PageFetcher
    from instasave.models import FetchOptions
    from instasave.proxy_manager import ProviderEndpoint, ProxySelector

    def _make(relays=(), provider=None, direct_attempts=3, relay_attempts=2):
        return PageFetcher(
            selector=ProxySelector.from_templates(list(relays), mode="ordered"),
            provider=ProviderEndpoint(*provider) if provider else None,
            provider_options=FetchOptions(timeout_seconds=20, max_attempts=1),
            direct_options=FetchOptions(
                timeout_seconds=15,
                max_attempts=direct_attempts,
                backoff_base_seconds=1.0,
                backoff_increment_seconds=1.0,
            ),
            relay_options=FetchOptions(
                timeout_seconds=15,
                max_attempts=relay_attempts,
                backoff_base_seconds=0.5,
                backoff_increment_seconds=0.5,
            ),
            sleep=sleeps,
        )

    return _make


@pytest.fixture
def router():
    """respx router for one test; unused routes are allowed (we assert on .called)."""
    with respx.mock(assert_all_called=False) as mock:
        yield mock
