from __future__ import annotations

from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlsplit

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from loguru import logger

from app.core.stream_proxy import origin
from app.core.stream_proxy.errors import (
    BlockedTargetError,
    OriginFetchError,
    ResolveInputError,
)
from app.core.stream_proxy.guard import ensure_public_target
from app.core.stream_proxy.hls import rewrite_playlist_bytes, rewrite_playlist_stream
from app.core.stream_proxy.auth import require_auth
from app.core.stream_proxy.resolver import StreamResolver
from app.core.stream_proxy.types import ResolveOptions
from app.core.stream_proxy.urls import build_segment_url
from app.utils.logger import redact_url


router = APIRouter()

# upstream statuses on a manifest that mean the cached URL went bad
_INVALIDATING_STATUSES = {403, 404, 410, 500, 502, 503}
_PASSTHROUGH_HEADERS = {
    "content-length",
    "content-range",
    "accept-ranges",
    "etag",
    "last-modified",
}
_SEGMENT_CACHE_CONTROL = "public, max-age=31536000, immutable"


def get_resolver(request: Request) -> StreamResolver:
    resolver = getattr(request.app.state, "resolver", None)
    if resolver is None:
        raise HTTPException(status_code=503, detail="resolver not ready")
    return resolver


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _param(params: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = params.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def _filter_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """
    Filter upstream headers to a safe pass-through allowlist. Content-Length
    is dropped for encoded bodies since they are decoded on the way through.
    """
    encoded = bool(headers.get("content-encoding"))
    out: dict[str, str] = {}
    for k, v in headers.items():
        key = k.lower()
        if key not in _PASSTHROUGH_HEADERS:
            continue
        if encoded and key == "content-length":
            continue
        out[k] = v
    return out


def _origin_root(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}/"


# ---- resolution


@router.get("/resolve")
async def resolve(request: Request):
    """
    Resolve a movie or episode to a proxied manifest URL.

    Query: ``type``, ``id``, ``season``, ``episode``, ``quick``,
    ``skipCache``, ``secondary`` (also resolve dubbed variants).
    """
    require_auth(dict(request.query_params))
    resolver = get_resolver(request)
    params = request.query_params
    options = ResolveOptions(
        skip_cache=_flag(_param(params, "skipCache", "skip_cache")),
        quick_mode=_flag(_param(params, "quick", "quickMode")),
        include_secondary_languages=_flag(
            _param(params, "secondary", "includeSecondaryLanguages")
        ),
    )
    try:
        result = await resolver.resolve(
            _param(params, "type"),
            _param(params, "id"),
            _param(params, "season"),
            _param(params, "episode"),
            options=options,
        )
    except ResolveInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    payload = result.to_dict()
    if not result.found:
        payload["error"] = "unavailable"
        payload["message"] = "no provider has this title right now"
        return JSONResponse(status_code=404, content=payload)
    return payload


@router.delete("/resolve")
async def invalidate(request: Request):
    """Forget cached manifests for a media key, optionally for one provider."""
    require_auth(dict(request.query_params))
    resolver = get_resolver(request)
    params = request.query_params
    provider = _param(params, "provider")
    try:
        removed = await resolver.invalidate(
            _param(params, "type"),
            _param(params, "id"),
            _param(params, "season"),
            _param(params, "episode"),
            provider=provider,
        )
    except ResolveInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"removed": removed, "provider": provider}


# ---- playlists


async def _buffered_playlist(
    url: str,
    *,
    referer_hint: Optional[str],
    force_referer: bool,
    rewrite_url: Callable[[str], str],
) -> Response:
    try:
        upstream = await origin.fetch(
            url, kind="manifest", referer_hint=referer_hint, force_referer=force_referer
        )
        base_url = str(upstream.response.url)
        status = upstream.status_code
        body = await upstream.aread()
        if status >= 400:
            raise OriginFetchError(f"upstream returned {status}")
        out = rewrite_playlist_bytes(body, base_url=base_url, rewrite_url=rewrite_url)
    except BlockedTargetError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc
    except Exception as exc:
        logger.error("Buffered playlist rewrite failed for {}: {}", redact_url(url), exc)
        raise HTTPException(status_code=502, detail="playlist rewrite failed") from exc
    logger.debug("Served buffered playlist ({} bytes)", len(out))
    return Response(
        content=out,
        media_type=origin.HLS_CONTENT_TYPE,
        headers={"Cache-Control": "no-cache", "Content-Length": str(len(out))},
    )


async def _serve_playlist(
    upstream: origin.OriginResponse,
    *,
    referer_hint: Optional[str],
    force_referer: bool,
    rewrite_url: Callable[[str], str],
) -> Response:
    """
    Stream the rewritten playlist; the first rewritten chunk is produced
    before responding so setup failures can fall back to a buffered rewrite.
    """
    url = upstream.url
    stream = rewrite_playlist_stream(
        upstream.iter_bytes(), base_url=str(upstream.response.url), rewrite_url=rewrite_url
    )
    first: Optional[bytes]
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = None
    except Exception as exc:
        logger.warning(
            "Streaming rewrite failed for {}; retrying buffered: {}", redact_url(url), exc
        )
        await stream.aclose()
        await upstream.aclose()
        return await _buffered_playlist(
            url,
            referer_hint=referer_hint,
            force_referer=force_referer,
            rewrite_url=rewrite_url,
        )

    async def _body():
        try:
            if first is not None:
                yield first
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    return StreamingResponse(
        _body(),
        media_type=origin.HLS_CONTENT_TYPE,
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/manifest")
async def manifest(request: Request, sid: str = ""):
    """Serve the rewritten manifest of a session."""
    require_auth(dict(request.query_params))
    resolver = get_resolver(request)
    sess = resolver.sessions.get(sid) if sid else None
    if sess is None:
        raise HTTPException(status_code=404, detail="unknown or expired session")

    url = sess.manifest_url
    ref = sess.source_page_url or _origin_root(url)
    try:
        await ensure_public_target(url)
    except BlockedTargetError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc

    logger.info("Manifest for session {} upstream={}", sid[:6], redact_url(url))
    try:
        upstream = await origin.fetch(url, kind="manifest", referer_hint=ref)
    except BlockedTargetError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc
    except OriginFetchError as exc:
        raise HTTPException(status_code=502, detail="upstream request failed") from exc

    if upstream.status_code >= 400:
        status = upstream.status_code
        await upstream.aclose()
        if status in _INVALIDATING_STATUSES:
            logger.warning(
                "Manifest upstream returned {} for session {}; invalidating cache entry",
                status,
                sid[:6],
            )
            await resolver.invalidate_session(sid)
        raise HTTPException(status_code=502, detail=f"upstream returned {status}")

    def _rewrite(target: str) -> str:
        return build_segment_url(target, ref)

    return await _serve_playlist(
        upstream, referer_hint=ref, force_referer=False, rewrite_url=_rewrite
    )


# ---- segments and everything else a playlist references


@router.api_route("/segment", methods=["GET", "HEAD"])
async def segment(request: Request):
    """
    Proxy one upstream resource. Nested playlists are rewritten; anything
    else streams back with range support and immutable caching.
    """
    params = dict(request.query_params)
    require_auth(params)
    target = (params.get("url") or "").strip()
    if not target:
        raise HTTPException(status_code=400, detail="missing url")
    ref = (params.get("ref") or "").strip() or None
    force = _flag(params.get("force"))

    try:
        await ensure_public_target(target)
    except BlockedTargetError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc

    range_header = request.headers.get("range")
    logger.debug(
        "Segment {} {} range={} ref={}",
        request.method,
        redact_url(target),
        range_header or "-",
        bool(ref),
    )
    try:
        upstream = await origin.fetch(
            target,
            method=request.method,
            range_header=range_header,
            referer_hint=ref,
            force_referer=force,
        )
    except BlockedTargetError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc
    except OriginFetchError as exc:
        raise HTTPException(status_code=502, detail="upstream request failed") from exc

    status = upstream.status_code
    content_type = origin.infer_content_type(target, upstream.headers.get("content-type"))
    headers = _filter_headers(upstream.headers)
    headers.setdefault("Accept-Ranges", "bytes")
    headers["Cache-Control"] = _SEGMENT_CACHE_CONTROL if status < 400 else "no-store"

    if request.method == "HEAD":
        await upstream.aclose()
        return Response(
            content=b"", status_code=status, media_type=content_type, headers=headers
        )

    if status < 400 and content_type == origin.HLS_CONTENT_TYPE:

        def _rewrite(url: str) -> str:
            return build_segment_url(url, ref, force=force)

        return await _serve_playlist(
            upstream, referer_hint=ref, force_referer=force, rewrite_url=_rewrite
        )

    if status >= 400:
        logger.warning("Segment upstream returned {} for {}", status, redact_url(target))
    return StreamingResponse(
        upstream.iter_bytes(),
        status_code=status,
        media_type=content_type,
        headers=headers,
    )


# ---- cache administration


@router.get("/cache")
async def cache_admin(request: Request, action: str = "stats") -> Any:
    require_auth(dict(request.query_params))
    resolver = get_resolver(request)
    action = action.strip().lower()
    if action == "stats":
        stats = await resolver.cache.stats()
        out = stats.to_dict()
        out["sessions"] = len(resolver.sessions)
        return out
    if action == "clean":
        removed = await resolver.cache.sweep_expired()
        evicted = resolver.sessions.evict_idle()
        logger.info("Cache clean removed {} entries, {} idle sessions", removed, evicted)
        return {"removed": removed, "sessionsEvicted": evicted}
    if action == "clear":
        removed = await resolver.cache.clear()
        logger.warning("Cache cleared ({} entries)", removed)
        return {"removed": removed}
    raise HTTPException(status_code=400, detail=f"unknown action: {action}")
