"""
Tests for the stream relay: allow-list, header shaping, byte-exact piping and
upstream failure handling.

Run:
    pytest tests/test_relay.py -v
"""

import re

import httpx
import pytest

from .conftest import VIDEO_URL
from instasave.models import ErrorCode
from instasave.relay import RelayError, RelayStream, StreamRelay, download_filename, host_matches


# ─── Helpers ─────────────────────────────────────────────────────────────────

PAYLOAD = bytes(range(256)) * 1024  # 256 KiB


class Sink:
    """Async sink collecting chunks the way a response writer would receive them."""

    def __init__(self):
        self.chunks = []

    async def __call__(self, chunk: bytes):
        self.chunks.append(chunk)

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)


class TrackedStream(httpx.AsyncByteStream):
    """Yields fixed chunks and records whether the upstream was closed."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self):
        self.closed = True


class BrokenStream(httpx.AsyncByteStream):
    """Yields one chunk, then fails like a dropped connection."""

    async def __aiter__(self):
        yield b"first-bytes"
        raise httpx.ReadError("connection reset by peer")

    async def aclose(self):
        pass


@pytest.fixture
def relay():
    return StreamRelay(
        allowed_hosts=["cdninstagram.com", "fbcdn.net"],
        enforce_allowlist=True,
        timeout_seconds=5,
        chunk_size=16 * 1024,
    )


# ─── Validation ──────────────────────────────────────────────────────────────

def test_host_matches_suffix_only_on_label_boundary():
    allowed = ["cdninstagram.com"]
    assert host_matches("cdninstagram.com", allowed)
    assert host_matches("scontent-lhr8-1.cdninstagram.com", allowed)
    assert host_matches("SCONTENT.CDNINSTAGRAM.COM", allowed)
    assert not host_matches("evilcdninstagram.com", allowed)
    assert not host_matches("cdninstagram.com.evil.net", allowed)


@pytest.mark.parametrize("bad", [None, "", "   ", "/v/clip.mp4", "ftp://cdninstagram.com/a.mp4", "https://",
                                 "https://[scontent.cdninstagram.com/v.mp4"])
def test_invalid_urls_rejected(relay, bad):
    with pytest.raises(RelayError) as exc:
        relay.validate(bad)
    assert exc.value.detail.code == ErrorCode.INVALID_INPUT
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_disallowed_host_rejected_before_any_request(router, relay):
    evil = router.get(url__startswith="http://169.254.169.254/").mock(return_value=httpx.Response(200))

    with pytest.raises(RelayError) as exc:
        await relay.relay("http://169.254.169.254/latest/meta-data/", Sink())

    assert exc.value.detail.code == ErrorCode.INVALID_INPUT
    assert not evil.called


@pytest.mark.asyncio
async def test_redirect_to_disallowed_host_is_blocked(router, relay):
    router.get(VIDEO_URL).mock(
        return_value=httpx.Response(302, headers={"Location": "http://internal.local/secret"})
    )
    internal = router.get(url__startswith="http://internal.local/").mock(
        return_value=httpx.Response(200, content=b"secret")
    )

    with pytest.raises(RelayError) as exc:
        await relay.open(VIDEO_URL)

    assert exc.value.detail.code == ErrorCode.INVALID_INPUT
    assert not internal.called


@pytest.mark.asyncio
async def test_allowlist_can_be_disabled(router):
    relay = StreamRelay(allowed_hosts=["cdninstagram.com"], enforce_allowlist=False)
    router.get("https://media.example.org/clip.webm").mock(
        return_value=httpx.Response(200, content=b"webm-bytes", headers={"Content-Type": "video/webm"})
    )

    sink = Sink()
    written = await relay.relay("https://media.example.org/clip.webm", sink)

    assert written == len(b"webm-bytes")
    assert sink.data == b"webm-bytes"


# ─── Streaming ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_bytes_are_identical_and_match_content_length(router, relay):
    router.get(VIDEO_URL).mock(
        return_value=httpx.Response(200, content=PAYLOAD, headers={"Content-Type": "video/mp4"})
    )

    stream = await relay.open(VIDEO_URL)
    assert stream.content_length == len(PAYLOAD)

    sink = Sink()
    async for chunk in stream.iter_bytes():
        await sink(chunk)

    assert sink.data == PAYLOAD
    assert len(sink.data) == stream.content_length
    assert len(sink.chunks) > 1


@pytest.mark.asyncio
async def test_headers_mirror_upstream(router, relay):
    router.get(VIDEO_URL).mock(
        return_value=httpx.Response(200, content=b"abc", headers={"Content-Type": "video/mp4"})
    )

    stream = await relay.open(VIDEO_URL)
    headers = stream.headers
    await stream.aclose()

    assert headers["Content-Type"] == "video/mp4"
    assert headers["Content-Length"] == "3"
    assert re.fullmatch(r'attachment; filename="instasave_\d+\.mp4"', headers["Content-Disposition"])


@pytest.mark.asyncio
async def test_missing_content_type_defaults_to_octet_stream(router, relay):
    url = "https://video.fbcdn.net/v/clip"
    router.get(url).mock(return_value=httpx.Response(200, content=b"xyz"))

    stream = await relay.open(url)
    await stream.aclose()

    assert stream.headers["Content-Type"] == "application/octet-stream"
    assert stream.filename.endswith(".mp4")


@pytest.mark.asyncio
async def test_upstream_error_status_fails_before_streaming(router, relay):
    router.get(VIDEO_URL).mock(return_value=httpx.Response(403, text="URL signature expired"))
    sink = Sink()

    with pytest.raises(RelayError) as exc:
        await relay.relay(VIDEO_URL, sink)

    assert exc.value.detail.code == ErrorCode.STREAM_FAILURE
    assert exc.value.status_code == 502
    assert exc.value.detail.details == {"upstream_status": 403}
    assert sink.chunks == []


@pytest.mark.asyncio
async def test_upstream_unreachable(router, relay):
    router.get(VIDEO_URL).mock(side_effect=httpx.ConnectError("dns failure"))

    with pytest.raises(RelayError) as exc:
        await relay.open(VIDEO_URL)

    assert exc.value.detail.code == ErrorCode.STREAM_FAILURE


@pytest.mark.asyncio
async def test_mid_stream_error_keeps_flushed_bytes():
    response = httpx.Response(200, headers={"Content-Type": "video/mp4"}, stream=BrokenStream())
    stream = RelayStream(httpx.AsyncClient(), response, "instasave_1.mp4", chunk_size=len(b"first-bytes"))
    received = []

    with pytest.raises(RelayError) as exc:
        async for chunk in stream.iter_bytes():
            received.append(chunk)

    assert received == [b"first-bytes"]
    assert exc.value.detail.code == ErrorCode.STREAM_FAILURE
    assert exc.value.detail.details == {"bytes_sent": len(b"first-bytes")}
    assert stream.headers["Content-Type"] == "video/mp4"



@pytest.mark.asyncio
async def test_abandoned_stream_closes_upstream():
    upstream = TrackedStream([b"aaaa", b"bbbb", b"cccc"])
    response = httpx.Response(200, headers={"Content-Type": "video/mp4"}, stream=upstream)
    stream = RelayStream(httpx.AsyncClient(), response, "instasave_1.mp4", chunk_size=4)

    body = stream.iter_bytes()
    assert await body.__anext__() == b"aaaa"
    await body.aclose()

    assert upstream.closed
    assert response.is_closed

# ─── Filenames ───────────────────────────────────────────────────────────────

@pytest.mark.parametrize("url, ext", [
    ("https://scontent.cdninstagram.com/v/clip.mp4?efg=1", "mp4"),
    ("https://scontent.cdninstagram.com/v/clip.WEBM", "webm"),
    ("https://scontent.cdninstagram.com/v/clip", "mp4"),
    ("https://scontent.cdninstagram.com/v/clip.not-an-ext", "mp4"),
])
def test_download_filename_extension(url, ext):
    assert re.fullmatch(rf"instasave_\d+\.{ext}", download_filename(url))
