"""
Video / thumbnail extraction from a post page's HTML.

Strategies (first one that yields a video URL wins):
  1. open_graph   — <meta property="og:video" ...> and its :url / :secure_url variants
  2. linked_data  — <script type="application/ld+json"> → contentUrl
  3. page_state   — inline window._sharedData / window.__additionalDataLoaded
                    state blob → shortcode_media.video_url
  4. raw_pattern  — any quoted "video_url":"..." in the raw HTML

If none match, the page may still be an image post: og:image, the page-state
thumbnail or a quoted "display_url" is returned as a thumbnail-only result.

Pure and deterministic: no network, no randomness. A strategy that trips over
unexpected markup simply reports no match.
"""

import json
import logging
import re
from typing import Any, Callable, List, Optional, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from .models import ExtractionResult, ExtractionStrategy, MediaCandidate

logger = logging.getLogger(__name__)

OG_VIDEO_PROPERTIES = ("og:video", "og:video:url", "og:video:secure_url")
OG_IMAGE_PROPERTIES = ("og:image", "og:image:url", "og:image:secure_url")

PAGE_STATE_MARKERS = ("window._sharedData", "window.__additionalDataLoaded")

VIDEO_URL_PATTERN = re.compile(r'"video_url"\s*:\s*"((?:[^"\\]|\\.)*)"')
DISPLAY_URL_PATTERN = re.compile(r'"display_url"\s*:\s*"((?:[^"\\]|\\.)*)"')


# ─────────────────────────────────────────────────────────────────────────────
# String helpers
# ─────────────────────────────────────────────────────────────────────────────

def normalize_url(value: Any) -> Optional[str]:
    """
    Undo JSON-in-HTML escaping on an extracted value.

    "https:\\/\\/host\\/a.mp4?x=1\\u0026y=2" -> "https://host/a.mp4?x=1&y=2"
    """
    if not isinstance(value, str):
        return None
    cleaned = value.replace("\\u0026", "&").replace("\\/", "/").replace("\\", "").strip()
    return cleaned or None


def is_absolute_url(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _absolute(value: Any) -> Optional[str]:
    url = normalize_url(value)
    return url if is_absolute_url(url) else None


class _Document:
    """HTML text plus its parsed tree, built once per extract() call."""

    def __init__(self, html: str):
        self.html = html
        self.soup = BeautifulSoup(html, "html.parser")

    def meta_content(self, properties: Tuple[str, ...]) -> List[str]:
        """Values of <meta property|name=...> tags, in the order of `properties`."""
        found = []
        metas = self.soup.find_all("meta")
        for prop in properties:
            for meta in metas:
                key = meta.get("property") or meta.get("name")
                content = meta.get("content")
                if key and key.strip().lower() == prop and content:
                    found.append(content)
        return found

    def scripts(self, script_type: Optional[str] = None) -> List[str]:
        """Inline script bodies, optionally filtered by type attribute."""
        bodies = []
        for script in self.soup.find_all("script"):
            if script.get("src"):
                continue
            if script_type and (script.get("type") or "").strip().lower() != script_type:
                continue
            text = script.string if script.string is not None else script.get_text()
            if text and text.strip():
                bodies.append(text)
        return bodies


# ─────────────────────────────────────────────────────────────────────────────
# Strategies — each returns a MediaCandidate with a video, or None
# ─────────────────────────────────────────────────────────────────────────────

def from_open_graph(doc: _Document) -> Optional[MediaCandidate]:
    for value in doc.meta_content(OG_VIDEO_PROPERTIES):
        video = _absolute(value)
        if video:
            return MediaCandidate(video=video)
    return None


def _linked_data_objects(data: Any) -> List[dict]:
    """Flatten a JSON-LD payload into candidate objects (top level, lists, @graph, nested video)."""
    objects: List[dict] = []
    if isinstance(data, list):
        for item in data:
            objects.extend(_linked_data_objects(item))
    elif isinstance(data, dict):
        objects.append(data)
        for key in ("@graph", "video"):
            if key in data:
                objects.extend(_linked_data_objects(data[key]))
    return objects


def _first_thumbnail(value: Any) -> Optional[str]:
    if isinstance(value, list):
        for item in value:
            url = _first_thumbnail(item)
            if url:
                return url
        return None
    if isinstance(value, dict):
        return _absolute(value.get("url") or value.get("contentUrl"))
    return _absolute(value)


def from_linked_data(doc: _Document) -> Optional[MediaCandidate]:
    for body in doc.scripts("application/ld+json"):
        try:
            data = json.loads(body)
        except ValueError:
            continue
        for obj in _linked_data_objects(data):
            video = _absolute(obj.get("contentUrl"))
            if video:
                return MediaCandidate(video=video, thumbnail=_first_thumbnail(obj.get("thumbnailUrl")))
    return None


def _decode_state_blob(script: str, marker: str) -> Any:
    """JSON object literal following `marker`, or None."""
    start = script.find(marker)
    if start == -1:
        return None
    brace = script.find("{", start + len(marker))
    if brace == -1:
        return None
    try:
        obj, _ = json.JSONDecoder().raw_decode(script, brace)
    except ValueError:
        return None
    return obj


def _shortcode_media(state: Any) -> Optional[dict]:
    """
    Adapter for the page-state shape. Known layouts:
      _sharedData:            entry_data.PostPage[0].graphql.shortcode_media
      __additionalDataLoaded: graphql.shortcode_media
    Anything else is treated as no match.
    """
    if not isinstance(state, dict):
        return None
    graphql = None
    entry_data = state.get("entry_data")
    if isinstance(entry_data, dict):
        pages = entry_data.get("PostPage")
        if isinstance(pages, list) and pages and isinstance(pages[0], dict):
            graphql = pages[0].get("graphql")
    if graphql is None:
        graphql = state.get("graphql")
    if not isinstance(graphql, dict):
        return None
    media = graphql.get("shortcode_media")
    return media if isinstance(media, dict) else None


def _media_thumbnail(media: dict) -> Optional[str]:
    thumbnail = _absolute(media.get("display_url"))
    if thumbnail:
        return thumbnail
    resources = media.get("display_resources")
    if isinstance(resources, list) and resources and isinstance(resources[-1], dict):
        return _absolute(resources[-1].get("src"))
    return None


def page_state_media(doc: _Document) -> Optional[MediaCandidate]:
    """First shortcode_media found in any inline state script, video or not."""
    for script in doc.scripts():
        for marker in PAGE_STATE_MARKERS:
            if marker not in script:
                continue
            media = _shortcode_media(_decode_state_blob(script, marker))
            if media is None:
                continue
            return MediaCandidate(video=_absolute(media.get("video_url")), thumbnail=_media_thumbnail(media))
    return None


def from_page_state(doc: _Document) -> Optional[MediaCandidate]:
    candidate = page_state_media(doc)
    if candidate and candidate.video:
        return candidate
    return None


def from_raw_pattern(doc: _Document) -> Optional[MediaCandidate]:
    for match in VIDEO_URL_PATTERN.finditer(doc.html):
        video = _absolute(match.group(1))
        if video:
            return MediaCandidate(video=video)
    return None


def _display_url(doc: _Document) -> Optional[str]:
    for match in DISPLAY_URL_PATTERN.finditer(doc.html):
        url = _absolute(match.group(1))
        if url:
            return url
    return None


def _og_image(doc: _Document) -> Optional[str]:
    for value in doc.meta_content(OG_IMAGE_PROPERTIES):
        url = _absolute(value)
        if url:
            return url
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline
# ─────────────────────────────────────────────────────────────────────────────

Strategy = Callable[[_Document], Optional[MediaCandidate]]

DEFAULT_STRATEGIES: List[Tuple[ExtractionStrategy, Strategy]] = [
    (ExtractionStrategy.OPEN_GRAPH, from_open_graph),
    (ExtractionStrategy.LINKED_DATA, from_linked_data),
    (ExtractionStrategy.PAGE_STATE, from_page_state),
    (ExtractionStrategy.RAW_PATTERN, from_raw_pattern),
]


class VideoExtractor:
    """Runs the extraction strategies in precedence order."""

    def __init__(self, strategies: Optional[List[Tuple[ExtractionStrategy, Strategy]]] = None):
        self.strategies = list(strategies) if strategies is not None else list(DEFAULT_STRATEGIES)

    def extract(self, html: str) -> ExtractionResult:
        doc = _Document(html or "")

        for kind, strategy in self.strategies:
            try:
                candidate = strategy(doc)
            except Exception as e:
                logger.warning(f"⚠️ Extraction strategy {kind.value} raised {type(e).__name__}: {e}")
                candidate = None
            if candidate and candidate.video:
                thumbnail = candidate.thumbnail or _og_image(doc) or _display_url(doc)
                logger.info(f"✅ Video found via {kind.value}")
                return ExtractionResult(video=candidate.video, thumbnail=thumbnail, strategy_used=kind)

        thumbnail = self._recover_thumbnail(doc)
        if thumbnail:
            logger.info("ℹ️ No video found — returning thumbnail only")
        else:
            logger.info("ℹ️ No video or thumbnail found")
        return ExtractionResult(video=None, thumbnail=thumbnail, strategy_used=None)

    def _recover_thumbnail(self, doc: _Document) -> Optional[str]:
        thumbnail = _og_image(doc)
        if thumbnail:
            return thumbnail
        state = page_state_media(doc)
        if state and state.thumbnail:
            return state.thumbnail
        return _display_url(doc)


# Global singleton
extractor = VideoExtractor()


def extract(html: str) -> ExtractionResult:
    return extractor.extract(html)
