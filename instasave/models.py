"""
Pydantic models for fetch/extraction results and request/response schemas
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Union
from enum import Enum


class ErrorCode(str, Enum):
    """Error code classifications"""
    INVALID_INPUT = "INVALID_INPUT"
    UPSTREAM_BLOCKED = "UPSTREAM_BLOCKED"
    NOT_FOUND = "NOT_FOUND"
    ALL_STRATEGIES_EXHAUSTED = "ALL_STRATEGIES_EXHAUSTED"
    EXTRACTION_MISS = "EXTRACTION_MISS"
    STREAM_FAILURE = "STREAM_FAILURE"
    SERVER_ERROR = "SERVER_ERROR"


class FetchStrategyKind(str, Enum):
    """Where a page fetch was routed through"""
    PROVIDER = "provider"
    DIRECT = "direct"
    FALLBACK_PROXY = "fallback_proxy"


class ExtractionStrategy(str, Enum):
    """Extraction strategies, highest confidence first"""
    OPEN_GRAPH = "open_graph"
    LINKED_DATA = "linked_data"
    PAGE_STATE = "page_state"
    RAW_PATTERN = "raw_pattern"


# ============================================================================
# FETCHER
# ============================================================================


class FetchOptions(BaseModel):
    """Per-strategy network budget"""
    timeout_seconds: float = Field(15.0, gt=0)
    max_attempts: int = Field(3, ge=1)
    backoff_base_seconds: float = Field(1.0, ge=0)
    backoff_increment_seconds: float = Field(1.0, ge=0)

    def backoff(self, attempt_index: int) -> float:
        """Delay before retrying after attempt number `attempt_index` (0-based)."""
        return self.backoff_base_seconds + attempt_index * self.backoff_increment_seconds


class PageHtml(BaseModel):
    """Successful fetch: raw HTML and the strategy that produced it"""
    content: str
    source_strategy: FetchStrategyKind
    source_name: str
    status_code: int


class FetchFailure(BaseModel):
    """Every fetch strategy failed"""
    kind: ErrorCode = ErrorCode.ALL_STRATEGIES_EXHAUSTED
    last_error: Optional[str] = None
    last_status: Optional[int] = None
    blocked: bool = Field(False, description="Direct fetch saw 403/429 (likely IP block or rate limit)")
    not_found: bool = Field(False, description="Direct fetch saw 404")
    errors: List[str] = Field(default_factory=list)


FetchResult = Union[PageHtml, FetchFailure]


# ============================================================================
# EXTRACTOR
# ============================================================================


class MediaCandidate(BaseModel):
    """A single strategy's match"""
    video: Optional[str] = None
    thumbnail: Optional[str] = None


class ExtractionResult(BaseModel):
    """Outcome of the extraction chain. Neither field set means nothing was found."""
    video: Optional[str] = None
    thumbnail: Optional[str] = None
    strategy_used: Optional[ExtractionStrategy] = None

    @property
    def found(self) -> bool:
        return self.video is not None


# ============================================================================
# API SCHEMAS
# ============================================================================


class ErrorDetail(BaseModel):
    """Error details"""
    code: ErrorCode
    message: str
    is_transient: bool = Field(..., description="True if retry might succeed, False if permanent")
    retry_after_seconds: Optional[int] = None
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Error response for failed lookups and downloads"""
    success: bool = False
    error: ErrorDetail
    thumbnail: Optional[str] = Field(None, description="Preview image salvaged from a page with no video")


class VideoInfoResponse(BaseModel):
    """Success response for /api/getVideo"""
    success: bool = True
    video: str
    thumbnail: Optional[str] = None
    source: ExtractionStrategy = Field(..., description="Extraction strategy that found the video")
    fetched_via: str = Field(..., description="Fetch strategy that produced the page HTML")

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "video": "https://scontent.cdninstagram.com/v/t50/abc.mp4?efg=1&oh=2",
                "thumbnail": "https://scontent.cdninstagram.com/v/t51/abc.jpg",
                "source": "open_graph",
                "fetched_via": "direct",
            }
        }


class StrategyInfo(BaseModel):
    num: int
    name: str
    kind: FetchStrategyKind


class HealthStats(BaseModel):
    """Statistics for health check"""
    total_lookups: int
    failed_lookups: int
    active_relays: int


class HealthResponse(BaseModel):
    """Response schema for /api/health"""
    status: str
    version: str
    uptime_seconds: float
    stats: HealthStats
