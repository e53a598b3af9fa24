"""
FastAPI InstaSave Proxy Service
Resolves a post URL to its direct video URL and relays video downloads
"""

import time
import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlparse

from fastapi import FastAPI, Query, Response
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.background import BackgroundTask

from . import __version__, config
from .extractor import extractor
from .fetcher import page_fetcher
from .models import (
    ErrorCode,
    ErrorDetail,
    ErrorResponse,
    FetchFailure,
    HealthResponse,
    HealthStats,
    StrategyInfo,
    VideoInfoResponse,
)
from .relay import RelayError, host_matches, stream_relay

# Logging configuration
logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

start_time = time.time()

# Statistics tracking
stats = {
    "total_lookups": 0,
    "failed_lookups": 0,
    "active_relays": 0,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for startup/shutdown logging"""
    logger.info("🚀 Starting InstaSave proxy service...")
    logger.info(f"Version: {__version__}")
    logger.info(f"🔑 Proxy provider: {page_fetcher.provider.name if page_fetcher.provider else 'not configured'}")
    logger.info(
        f"🌐 Fallback relays: {len(page_fetcher.selector)} ({page_fetcher.selector.mode})"
    )
    logger.info(
        f"🛡️ Media allow-list: "
        f"{', '.join(stream_relay.allowed_hosts) if stream_relay.enforce_allowlist else 'DISABLED'}"
    )

    yield

    logger.info("Shutting down InstaSave proxy service...")


# Create FastAPI app
app = FastAPI(
    title="InstaSave Proxy API",
    description="Extracts direct video URLs from post pages and relays video downloads",
    version=__version__,
    lifespan=lifespan,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(
    status_code: int,
    code: ErrorCode,
    message: str,
    is_transient: bool = False,
    retry_after_seconds: Optional[int] = None,
    details: Optional[dict] = None,
    thumbnail: Optional[str] = None,
) -> JSONResponse:
    error = ErrorDetail(
        code=code,
        message=message,
        is_transient=is_transient,
        retry_after_seconds=retry_after_seconds,
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, thumbnail=thumbnail).model_dump(mode="json", exclude_none=True),
    )


def _fetch_failure_response(failure: FetchFailure) -> JSONResponse:
    """Map an exhausted fetch chain to the client-facing error."""
    details = {"last_status": failure.last_status, "all_strategy_errors": failure.errors}
    if failure.blocked:
        return _error(
            502, ErrorCode.UPSTREAM_BLOCKED,
            "The site is blocking requests right now (rate limited or IP blocked) — try again later",
            is_transient=True, retry_after_seconds=300, details=details,
        )
    if failure.not_found:
        return _error(404, ErrorCode.NOT_FOUND, "Post not found", details=details)
    return _error(
        502, ErrorCode.ALL_STRATEGIES_EXHAUSTED,
        "Unable to fetch the post page through any strategy",
        is_transient=True, retry_after_seconds=120, details=details,
    )


def validate_post_url(url: Optional[str]) -> Optional[str]:
    """Return an error message for a bad post URL, or None if it is acceptable."""
    if not url or not url.strip():
        return "URL missing"
    try:
        parsed = urlparse(url.strip())
        hostname = parsed.hostname
    except ValueError:
        return "URL is malformed"
    if parsed.scheme not in ("http", "https") or not hostname:
        return "URL must be an absolute http(s) URL"
    if not host_matches(hostname, config.ALLOWED_POST_HOSTS):
        return f"Unsupported domain '{hostname}'"
    return None


# ============================================================================
# API ENDPOINTS
# ============================================================================


@app.get("/api/getVideo", response_model=VideoInfoResponse)
async def get_video(url: Optional[str] = Query(None, description="Post URL")) -> Response:
    """
    Resolve a post URL to its direct video URL and thumbnail

    **Flow:**
    1. Fetch the post page (provider → direct → fallback relays)
    2. Run the extraction strategies over the HTML
    3. 404 with the thumbnail (when found) if the page has no video
    """
    problem = validate_post_url(url)
    if problem:
        logger.info(f"🚫 Rejected lookup: {problem}")
        return _error(400, ErrorCode.INVALID_INPUT, problem, details={"url": url})

    target_url = url.strip()
    logger.info(f"📥 Video lookup: {target_url}")
    stats["total_lookups"] += 1

    try:
        page = await page_fetcher.fetch_page(target_url)
        if isinstance(page, FetchFailure):
            stats["failed_lookups"] += 1
            logger.error(f"❌ Page fetch failed: {page.last_error}")
            return _fetch_failure_response(page)

        result = extractor.extract(page.content)
        if not result.found:
            stats["failed_lookups"] += 1
            logger.warning(f"⚠️ No video extracted from {target_url} (fetched via {page.source_name})")
            return _error(
                404, ErrorCode.EXTRACTION_MISS,
                "Unable to extract video — the post may be an image or private",
                thumbnail=result.thumbnail,
            )

        logger.info(f"✅ Video resolved via {result.strategy_used.value} (fetched via {page.source_name})")
        return JSONResponse(
            content=VideoInfoResponse(
                video=result.video,
                thumbnail=result.thumbnail,
                source=result.strategy_used,
                fetched_via=page.source_name,
            ).model_dump(mode="json")
        )

    except Exception as e:
        stats["failed_lookups"] += 1
        logger.exception(f"💥 Unexpected error during lookup: {e}")
        return _error(500, ErrorCode.SERVER_ERROR, "Internal server error", is_transient=True)


@app.get("/api/download")
async def download_video(video: Optional[str] = Query(None, description="Direct video URL")) -> Response:
    """
    Relay a video file to the caller as an attachment

    Bytes are streamed as they arrive; upstream errors before the first byte
    become JSON errors, errors after it drop the connection.
    """
    try:
        stream = await stream_relay.open(video)
    except RelayError as e:
        logger.warning(f"⚠️ Download rejected: {e.detail.message}")
        return JSONResponse(
            status_code=e.status_code,
            content=ErrorResponse(error=e.detail).model_dump(mode="json", exclude_none=True),
        )
    except Exception as e:
        logger.exception(f"💥 Unexpected error opening download: {e}")
        return _error(500, ErrorCode.SERVER_ERROR, "Download failed", is_transient=True)

    async def _body():
        stats["active_relays"] += 1
        try:
            async for chunk in stream.iter_bytes():
                yield chunk
        finally:
            stats["active_relays"] -= 1

    return StreamingResponse(
        _body(),
        headers=stream.headers,
        media_type=stream.media_type,
        background=BackgroundTask(stream.aclose),
    )


@app.get("/api/strategies")
async def list_strategies():
    """List the configured fetch strategies with their 1-based index numbers."""
    strategies = page_fetcher.list_strategies()
    return {
        "total": len(strategies),
        "strategies": [
            StrategyInfo(num=i + 1, name=name, kind=kind).model_dump(mode="json")
            for i, (name, kind) in enumerate(strategies)
        ]
    }


@app.get("/api/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint for monitoring"""
    return HealthResponse(
        status="healthy",
        version=__version__,
        uptime_seconds=time.time() - start_time,
        stats=HealthStats(
            total_lookups=stats["total_lookups"],
            failed_lookups=stats["failed_lookups"],
            active_relays=stats["active_relays"],
        ),
    )


@app.get("/", response_class=PlainTextResponse)
async def root():
    """Root endpoint"""
    return "InstaSave Proxy API is running ✔"


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
