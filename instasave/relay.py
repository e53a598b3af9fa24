"""
Stream relay: re-fetch a resolved video URL and forward its bytes to the caller.

The upstream body is piped chunk by chunk (never held in memory). Only hosts on
MEDIA_HOST_ALLOWLIST are relayed, including every redirect hop, so the endpoint
cannot be used as an open proxy. Setting ENFORCE_MEDIA_ALLOWLIST=false turns
that check off; this is a deliberate trust decision and is logged at startup.
"""

import asyncio
import logging
import time
from pathlib import PurePosixPath
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional
from urllib.parse import urlparse

import httpx

from . import config
from .fetcher import USER_AGENT
from .models import ErrorCode, ErrorDetail

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_EXTENSION = "mp4"
FILENAME_PREFIX = "instasave"
CHUNK_SIZE = 64 * 1024


class RelayError(Exception):
    """Relay failure carrying the structured error and the HTTP status to answer with."""

    def __init__(self, detail: ErrorDetail, status_code: int):
        super().__init__(detail.message)
        self.detail = detail
        self.status_code = status_code


def _invalid_input(message: str, video_url: str) -> RelayError:
    return RelayError(
        ErrorDetail(
            code=ErrorCode.INVALID_INPUT,
            message=message,
            is_transient=False,
            details={"video": video_url},
        ),
        status_code=400,
    )


def _stream_failure(message: str, **details: Any) -> RelayError:
    return RelayError(
        ErrorDetail(
            code=ErrorCode.STREAM_FAILURE,
            message=message,
            is_transient=True,
            retry_after_seconds=30,
            details=details or None,
        ),
        status_code=502,
    )


def download_filename(video_url: str) -> str:
    """instasave_<epoch ms>.<ext>, with the extension taken from the remote path when sane."""
    suffix = PurePosixPath(urlparse(video_url).path).suffix.lstrip(".").lower()
    ext = suffix if suffix.isalnum() and 0 < len(suffix) <= 5 else DEFAULT_EXTENSION
    return f"{FILENAME_PREFIX}_{int(time.time() * 1000)}.{ext}"


def host_matches(host: str, allowed_hosts: Iterable[str]) -> bool:
    """True if `host` equals an allowed host or is a subdomain of one."""
    host = (host or "").lower().rstrip(".")
    for allowed in allowed_hosts:
        allowed = allowed.lower().lstrip(".")
        if host == allowed or host.endswith("." + allowed):
            return True
    return False


class RelayStream:
    """An opened upstream response, ready to be piped to the caller."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
        filename: str,
        chunk_size: int = CHUNK_SIZE,
    ):
        self._client = client
        self._response = response
        self._chunk_size = chunk_size
        self._closed = False
        self.filename = filename
        self.status_code = response.status_code

    @property
    def media_type(self) -> str:
        return self._response.headers.get("content-type") or DEFAULT_CONTENT_TYPE

    @property
    def content_length(self) -> Optional[int]:
        value = self._response.headers.get("content-length")
        return int(value) if value and value.isdigit() else None

    @property
    def headers(self) -> Dict[str, str]:
        """Response headers for the caller. Fixed once the first byte is sent."""
        headers = {
            "Content-Type": self.media_type,
            "Content-Disposition": f'attachment; filename="{self.filename}"',
            "Cache-Control": "no-cache, no-store, must-revalidate",
        }
        if self.content_length is not None:
            headers["Content-Length"] = str(self.content_length)
        encoding = self._response.headers.get("content-encoding")
        if encoding:
            headers["Content-Encoding"] = encoding
        return headers

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """
        Upstream bytes exactly as received. A transport error mid-stream is
        raised as RelayError so the server drops the connection instead of
        ending a truncated body cleanly.
        """
        sent = 0
        try:
            async for chunk in self._response.aiter_raw(self._chunk_size):
                sent += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            logger.error(f"❌ Relay interrupted after {sent} bytes: {type(e).__name__}: {e}")
            raise _stream_failure("Upstream stream interrupted", bytes_sent=sent) from e
        finally:
            await self.aclose()
        logger.info(f"📤 Relay complete: {self.filename} ({sent / 1024 / 1024:.2f} MB)")

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()
        await self._client.aclose()


class StreamRelay:
    """Validates relay targets and opens streaming upstream requests."""

    def __init__(
        self,
        allowed_hosts: Optional[Iterable[str]] = None,
        enforce_allowlist: Optional[bool] = None,
        timeout_seconds: Optional[float] = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.allowed_hosts = tuple(allowed_hosts if allowed_hosts is not None else config.MEDIA_HOST_ALLOWLIST)
        self.enforce_allowlist = (
            config.ENFORCE_MEDIA_ALLOWLIST if enforce_allowlist is None else enforce_allowlist
        )
        self.timeout_seconds = timeout_seconds or config.DOWNLOAD_TIMEOUT_SECONDS
        self.chunk_size = chunk_size
        if not self.enforce_allowlist:
            logger.warning(
                "⚠️ Media host allow-list NOT enforced — /api/download will relay any http(s) URL"
            )

    def validate(self, video_url: Optional[str]) -> str:
        """Return the URL if it may be relayed, else raise RelayError(INVALID_INPUT)."""
        if not video_url or not video_url.strip():
            raise _invalid_input("Video URL missing", video_url or "")
        video_url = video_url.strip()
        try:
            parsed = urlparse(video_url)
            hostname = parsed.hostname
        except ValueError:
            raise _invalid_input("Video URL is malformed", video_url)
        if parsed.scheme not in ("http", "https") or not hostname:
            raise _invalid_input("Video URL must be an absolute http(s) URL", video_url)
        if self.enforce_allowlist and not host_matches(hostname, self.allowed_hosts):
            raise _invalid_input(f"Host '{hostname}' is not an allowed media host", video_url)
        return video_url

    async def _guard_request(self, request: httpx.Request) -> None:
        # Runs for the first request and every redirect hop.
        if self.enforce_allowlist and not host_matches(request.url.host, self.allowed_hosts):
            raise _invalid_input(f"Redirect to disallowed host '{request.url.host}'", str(request.url))

    async def open(self, video_url: str) -> RelayStream:
        """
        Validate, then start a streaming GET. Non-2xx upstream responses are
        reported before anything is sent to the caller.
        """
        url = self.validate(video_url)
        client = httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=True,
            event_hooks={"request": [self._guard_request]},
        )
        try:
            request = client.build_request("GET", url, headers={"User-Agent": USER_AGENT})
            response = await client.send(request, stream=True)
        except httpx.InvalidURL as e:
            await client.aclose()
            raise _invalid_input(f"Video URL is malformed: {e}", url) from e
        except httpx.HTTPError as e:
            await client.aclose()
            logger.error(f"❌ Relay upstream unreachable: {type(e).__name__}: {e}")
            raise _stream_failure(f"Upstream request failed: {type(e).__name__}") from e
        except (RelayError, asyncio.CancelledError):
            await client.aclose()
            raise

        if not 200 <= response.status_code < 300:
            await response.aclose()
            await client.aclose()
            logger.warning(f"⚠️ Relay upstream returned HTTP {response.status_code}")
            raise _stream_failure(
                f"Upstream returned HTTP {response.status_code}",
                upstream_status=response.status_code,
            )

        stream = RelayStream(client, response, download_filename(url), self.chunk_size)
        logger.info(
            f"⬇️ Relaying {stream.media_type} "
            f"({stream.content_length if stream.content_length is not None else 'unknown'} bytes) "
            f"as {stream.filename}"
        )
        return stream

    async def relay(self, video_url: str, sink: Callable[[bytes], Awaitable[Any]]) -> int:
        """Pipe the video at `video_url` into `sink`; returns the number of bytes written."""
        stream = await self.open(video_url)
        written = 0
        try:
            async for chunk in stream.iter_bytes():
                await sink(chunk)
                written += len(chunk)
        finally:
            await stream.aclose()
        return written


# Global singleton
stream_relay = StreamRelay()
