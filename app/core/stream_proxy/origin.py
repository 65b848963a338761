from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import AsyncIterator, Literal, Mapping, Optional
from urllib.parse import urlsplit

import httpx
from loguru import logger

from app.config import ORIGIN_USER_AGENT
from app.utils.logger import redact_url
from .errors import OriginFetchError
from .guard import ensure_public_target

ResourceKind = Literal["manifest", "segment"]

RETRY_STATUSES = frozenset({401, 403, 405})
MAX_REDIRECTS = 5
STREAM_CHUNK_SIZE = 64 * 1024

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"
TS_CONTENT_TYPE = "video/mp2t"
_HLS_CONTENT_TYPES = {
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
    "audio/x-mpegurl",
}

_MANIFEST_ACCEPT = "application/vnd.apple.mpegurl,application/x-mpegurl;q=0.9,*/*;q=0.8"
_SEGMENT_ACCEPT = "video/*;q=0.9,*/*;q=0.8"

# segments served under unrelated extensions to slip past hotlink filters
_DISGUISED_SEGMENT_RE = re.compile(
    r"/seg-\d+-[^/]+\.(?:js|css|txt|png|jpg|jpeg|webp|ico|woff|woff2|svg|json|html|xml|ts|m4s|mp4)(?:\?|$)",
    re.IGNORECASE,
)
_HLS_SEGMENT_PATH_RE = re.compile(r"/hls/.*/seg-\d+", re.IGNORECASE)
_DISGUISED_PLAYLIST_RE = re.compile(r"/(?:master|index|playlist)[.-][^/]*\.woff2$", re.IGNORECASE)

_EXTENSION_TYPES = {
    ".ts": TS_CONTENT_TYPE,
    ".woff2": TS_CONTENT_TYPE,
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".aac": "audio/aac",
    ".vtt": "text/vtt",
    ".srt": "application/x-subrip",
    ".key": "application/octet-stream",
}


def _path(url: str) -> str:
    return urlsplit(url).path.lower()


def _bare_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def is_disguised_segment(url: str) -> bool:
    target = url.split("#", 1)[0]
    return bool(_DISGUISED_SEGMENT_RE.search(target) or _HLS_SEGMENT_PATH_RE.search(target))


def is_playlist_url(url: str) -> bool:
    if is_disguised_segment(url):
        return False
    path = _path(url)
    if path.endswith((".m3u8", ".m3u", ".txt")):
        return True
    return bool(_DISGUISED_PLAYLIST_RE.search(path))


def infer_content_type(url: str, upstream_type: Optional[str] = None) -> str:
    """
    Canonical content type for a proxied resource.

    The URL shape wins over the upstream header: segment-like paths are
    always transport-stream segments whatever they are labelled as.
    """
    if is_disguised_segment(url):
        return TS_CONTENT_TYPE
    if is_playlist_url(url) or _bare_type(upstream_type) in _HLS_CONTENT_TYPES:
        return HLS_CONTENT_TYPE
    path = _path(url)
    for ext, content_type in _EXTENSION_TYPES.items():
        if path.endswith(ext):
            return content_type
    return (upstream_type or "").strip() or "application/octet-stream"


def is_playlist_response(url: str, headers: Mapping[str, str]) -> bool:
    return infer_content_type(url, headers.get("content-type")) == HLS_CONTENT_TYPE


def build_async_client() -> httpx.AsyncClient:
    """
    Build an AsyncClient for upstream fetches without env proxies.
    """
    timeout = httpx.Timeout(30.0, connect=10.0, read=60.0, write=30.0, pool=30.0)
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=False,
        trust_env=False,
    )


def _origin_of(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


@dataclass(frozen=True)
class _Strategy:
    name: str
    headers: dict[str, str]
    drop_encoding: bool = False

    def signature(self) -> tuple:
        return (tuple(sorted(self.headers.items())), self.drop_encoding)


def _strategies(
    url: str,
    *,
    kind: ResourceKind,
    range_header: Optional[str],
    referer_hint: Optional[str],
    force_referer: bool,
) -> list[_Strategy]:
    """
    Header strategies in the order they are tried. Strategies identical to
    an earlier one (e.g. no hint at all) are dropped.
    """
    base = {
        "User-Agent": ORIGIN_USER_AGENT,
        "Accept": _MANIFEST_ACCEPT if kind == "manifest" else _SEGMENT_ACCEPT,
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Fetch-Dest": "empty",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Site": "cross-site",
    }
    if range_header:
        base["Range"] = range_header

    hint_origin = _origin_of(referer_hint)
    with_referer = dict(base)
    if hint_origin:
        with_referer["Referer"] = hint_origin + "/"
        with_referer["Origin"] = hint_origin

    same_host = bool(hint_origin) and urlsplit(referer_hint or "").hostname == urlsplit(url).hostname
    baseline = with_referer if (same_host or force_referer) else dict(base)
    permissive = dict(base)
    permissive["Accept"] = "*/*"

    ordered = [
        _Strategy("baseline", baseline),
        _Strategy("no-referer", dict(base)),
        _Strategy("permissive", permissive, drop_encoding=True),
        _Strategy("forced-referer", with_referer),
    ]
    seen: set[tuple] = set()
    out: list[_Strategy] = []
    for strategy in ordered:
        sig = strategy.signature()
        if sig in seen:
            continue
        seen.add(sig)
        out.append(strategy)
    return out


@dataclass
class OriginResponse:
    """An open upstream response; the caller owns closing it."""

    url: str
    response: httpx.Response
    client: httpx.AsyncClient
    strategy: str
    tried: list[tuple[str, int]] = field(default_factory=list)

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self.response.headers

    async def aread(self) -> bytes:
        try:
            return await self.response.aread()
        finally:
            await self.aclose()

    async def iter_bytes(self, chunk_size: int = STREAM_CHUNK_SIZE) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes(chunk_size=chunk_size):
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        await self.response.aclose()
        await self.client.aclose()


async def _send(
    client: httpx.AsyncClient, method: str, url: str, strategy: _Strategy
) -> httpx.Response:
    """
    Send one request, following redirects by hand so every hop passes
    the proxy target guard before it is requested.
    """
    request = client.build_request(method, url, headers=strategy.headers)
    if strategy.drop_encoding and "accept-encoding" in request.headers:
        del request.headers["accept-encoding"]
    response = await client.send(request, stream=True)
    hops = 0
    while response.next_request is not None:
        next_request = response.next_request
        await response.aclose()
        hops += 1
        if hops > MAX_REDIRECTS:
            raise OriginFetchError(
                f"{method} {redact_url(url)} exceeded {MAX_REDIRECTS} redirects"
            )
        await ensure_public_target(str(next_request.url))
        logger.debug(
            "Origin {} redirected to {}", redact_url(url), redact_url(str(next_request.url))
        )
        response = await client.send(next_request, stream=True)
    return response



async def _cascade(
    url: str,
    *,
    method: str,
    kind: ResourceKind,
    range_header: Optional[str],
    referer_hint: Optional[str],
    force_referer: bool,
) -> OriginResponse:
    client = build_async_client()
    strategies = _strategies(
        url,
        kind=kind,
        range_header=range_header,
        referer_hint=referer_hint,
        force_referer=force_referer,
    )
    current: Optional[OriginResponse] = None
    tried: list[tuple[str, int]] = []
    try:
        for strategy in strategies:
            try:
                response = await _send(client, method, url, strategy)
            except httpx.HTTPError as exc:
                if current is None:
                    logger.warning(
                        "Origin {} {} failed ({}): {}", method, redact_url(url), strategy.name, exc
                    )
                    raise OriginFetchError(f"{method} {redact_url(url)} failed: {exc}") from exc
                logger.debug("Retry {} hit transport error: {}", strategy.name, exc)
                break
            tried.append((strategy.name, response.status_code))
            if current is not None:
                await current.response.aclose()
            current = OriginResponse(url, response, client, strategy.name, tried)
            if response.status_code not in RETRY_STATUSES:
                break
            logger.debug(
                "Origin {} returned {} with {} headers; trying next strategy",
                redact_url(url),
                response.status_code,
                strategy.name,
            )
    except BaseException:
        if current is not None:
            await current.response.aclose()
        await client.aclose()
        raise

    if current is None:
        await client.aclose()
        raise OriginFetchError(f"no response for {method} {redact_url(url)}")
    if len(tried) > 1:
        logger.info(
            "Origin {} settled on '{}' after {}", redact_url(url), current.strategy, tried
        )
    return current


async def fetch(
    url: str,
    *,
    method: str = "GET",
    range_header: Optional[str] = None,
    referer_hint: Optional[str] = None,
    force_referer: bool = False,
    kind: Optional[ResourceKind] = None,
) -> OriginResponse:
    """
    Open ``url`` upstream, walking the header cascade on 401/403/405.

    The body is not read. A HEAD rejected with 403/405 is replayed as a GET
    so callers still get the upstream metadata.

    Raises:
        OriginFetchError: when the first attempt fails at transport level or
            a redirect chain exceeds ``MAX_REDIRECTS``.
        BlockedTargetError: when a redirect points at a non-public host.
    """
    method = method.upper()
    if kind is None:
        kind = "manifest" if is_playlist_url(url) else "segment"
    logger.trace("Origin fetch {} {} kind={}", method, redact_url(url), kind)
    result = await _cascade(
        url,
        method=method,
        kind=kind,
        range_header=range_header,
        referer_hint=referer_hint,
        force_referer=force_referer,
    )
    if method == "HEAD" and result.status_code in (403, 405):
        logger.debug("HEAD refused ({}) for {}; falling back to GET", result.status_code, redact_url(url))
        await result.aclose()
        result = await _cascade(
            url,
            method="GET",
            kind=kind,
            range_header=range_header,
            referer_hint=referer_hint,
            force_referer=force_referer,
        )
    return result
