from urllib.parse import parse_qs, urlsplit

import httpx
from fastapi import FastAPI, Request, Response


SEGMENT_BYTES = b"\x47\x40\x00\x10"


def _build_upstream_app(calls):
    """
    In-memory origin used by the endpoint tests.

    - GET /master.m3u8: media playlist with a key, a map and two segments.
    - GET /variant.m3u8: media playlist reached through /segment.
    - GET /segment-001.ts: four bytes of MPEG-TS.
    - GET /range: 10-byte payload honouring ``Range: bytes=0-4``.
    - GET /gone.m3u8: always 403.
    - GET /bounce.ts, /bounce.m3u8: 302 to a loopback admin URL.
    """
    app = FastAPI()

    @app.middleware("http")
    async def _count(request: Request, call_next):
        calls.append((request.method, request.url.hostname, request.url.path))
        return await call_next(request)

    @app.get("/master.m3u8")
    async def master():
        playlist = (
            "#EXTM3U\n"
            '#EXT-X-KEY:METHOD=AES-128,URI="keys/k1.bin"\n'
            '#EXT-X-MAP:URI="init.mp4"\n'
            "#EXTINF:6.0,\n"
            "segment-001.ts\n"
            "#EXTINF:6.0,\n"
            "https://cdn.example/abs/segment-002.ts\n"
            "#EXT-X-ENDLIST\n"
        )
        return Response(content=playlist.encode("utf-8"), media_type="application/vnd.apple.mpegurl")

    @app.get("/variant.m3u8")
    async def variant():
        playlist = "#EXTM3U\n#EXTINF:6.0,\nsegment-001.ts\n#EXT-X-ENDLIST"
        return Response(content=playlist.encode("utf-8"), media_type="application/x-mpegURL")

    @app.get("/segment-001.ts")
    async def segment():
        return Response(content=SEGMENT_BYTES, media_type="video/mp2t")

    @app.get("/range")
    async def ranged(request: Request):
        payload = b"0123456789"
        if request.headers.get("range") == "bytes=0-4":
            return Response(
                content=payload[:5],
                status_code=206,
                headers={"Content-Range": "bytes 0-4/10", "Accept-Ranges": "bytes"},
                media_type="video/mp4",
            )
        return Response(content=payload, media_type="video/mp4")

    @app.get("/gone.m3u8")
    async def gone():
        return Response(content=b"expired", status_code=403)

    @app.get("/bounce.ts")
    @app.get("/bounce.m3u8")
    async def bounce():
        return Response(
            status_code=302, headers={"Location": "http://127.0.0.1:8080/admin/secret"}
        )

    @app.get("/admin/secret")
    async def secret():
        return Response(content=b"internal", media_type="text/plain")

    return app


def _patch_async_client(monkeypatch, upstream_app):
    def _factory():
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=upstream_app),
            base_url="http://upstream",
            follow_redirects=False,
            trust_env=False,
        )

    monkeypatch.setattr("app.core.stream_proxy.origin.build_async_client", _factory)


class _Extractor:
    def __init__(self, manifests):
        self.manifests = manifests
        self.calls = []

    async def extract(self, target):
        # imported lazily: the client fixture reloads the app package
        from app.core.stream_proxy.errors import ExtractionError
        from app.core.stream_proxy.types import ExtractionResult

        self.calls.append(target.provider)
        url = self.manifests.get(target.provider)
        if url is None:
            raise ExtractionError(target.provider, "no manifest captured")
        return ExtractionResult(manifest_url=url)


class _Metadata:
    async def translate_identifier(self, *_args):
        return None

    async def get_title(self, *_args):
        return None


def _install_resolver(client, manifests):
    from app.core.stream_proxy.resolver import StreamResolver

    current = client.app.state.resolver
    extractor = _Extractor(manifests)
    client.app.state.resolver = StreamResolver(
        current.providers,
        cache=current.cache,
        sessions=current.sessions,
        extractor=extractor,
        metadata=_Metadata(),
    )
    return extractor


def _setup(client, monkeypatch, manifests=None):
    calls = []
    _patch_async_client(monkeypatch, _build_upstream_app(calls))
    extractor = _install_resolver(
        client, manifests if manifests is not None else {"vidlink": "http://upstream/master.m3u8"}
    )
    return calls, extractor


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


# ---- /resolve


def test_resolve_returns_session_and_proxy_url(client, monkeypatch):
    _calls, extractor = _setup(client, monkeypatch)

    resp = client.get("/resolve", params={"type": "movie", "id": "42"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["found"] is True
    assert body["source"] == "vidlink"
    assert body["cached"] is False
    assert body["manifestProxyUrl"] == f"/manifest?sid={body['sessionId']}"
    assert extractor.calls == ["vidlink"]

    again = client.get("/resolve", params={"type": "movie", "id": "42"}).json()
    assert again["cached"] is True
    assert extractor.calls == ["vidlink"]


def test_resolve_not_found_is_404(client, monkeypatch):
    _setup(client, monkeypatch, manifests={})

    resp = client.get("/resolve", params={"type": "tv", "id": "7", "season": "1", "episode": "1"})

    assert resp.status_code == 404
    body = resp.json()
    assert body["error"] == "unavailable"
    assert body["found"] is False
    assert [a["provider"] for a in body["attempts"] if a["phase"] == "extract"] == [
        "vidlink",
        "videasy",
        "vidking",
        "111movies",
    ]


def test_resolve_rejects_bad_input(client, monkeypatch):
    _setup(client, monkeypatch)

    assert client.get("/resolve", params={"type": "tv", "id": "7"}).status_code == 400
    assert client.get("/resolve", params={"type": "movie"}).status_code == 400
    assert client.get("/resolve", params={"type": "podcast", "id": "1"}).status_code == 400


def test_delete_resolve_invalidates_provider_entry(client, monkeypatch):
    _calls, extractor = _setup(client, monkeypatch)
    first = client.get("/resolve", params={"type": "movie", "id": "42"}).json()

    resp = client.delete("/resolve", params={"type": "movie", "id": "42", "provider": "vidlink"})

    assert resp.status_code == 200
    assert resp.json() == {"removed": 1, "provider": "vidlink"}
    assert client.get(first["manifestProxyUrl"]).status_code == 404
    again = client.get("/resolve", params={"type": "movie", "id": "42"}).json()
    assert again["cached"] is False
    assert extractor.calls == ["vidlink", "vidlink"]


def test_delete_resolve_unknown_provider_is_400(client, monkeypatch):
    _setup(client, monkeypatch)
    resp = client.delete("/resolve", params={"type": "movie", "id": "42", "provider": "nope"})
    assert resp.status_code == 400


# ---- /manifest


def test_manifest_is_rewritten_through_segment_proxy(client, monkeypatch):
    _setup(client, monkeypatch)
    body = client.get("/resolve", params={"type": "movie", "id": "42"}).json()

    resp = client.get(body["manifestProxyUrl"])

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")
    assert resp.headers["cache-control"] == "no-cache"
    lines = resp.text.split("\n")
    assert lines[0] == "#EXTM3U"
    assert lines[1].startswith('#EXT-X-KEY:METHOD=AES-128,URI="/segment?')
    seg = _query(lines[4])
    assert seg["url"] == "http://upstream/segment-001.ts"
    assert seg["ref"] == "https://vidlink.pro/movie/42"
    assert _query(lines[6])["url"] == "https://cdn.example/abs/segment-002.ts"
    assert "upstream" not in lines[4].split("?")[0]


def test_manifest_unknown_session_is_404(client, monkeypatch):
    _setup(client, monkeypatch)
    assert client.get("/manifest", params={"sid": "nope"}).status_code == 404
    assert client.get("/manifest").status_code == 404


def test_manifest_upstream_failure_invalidates_cache(client, monkeypatch):
    _calls, extractor = _setup(client, monkeypatch, manifests={"vidlink": "http://upstream/gone.m3u8"})
    body = client.get("/resolve", params={"type": "movie", "id": "42"}).json()

    resp = client.get(body["manifestProxyUrl"])

    assert resp.status_code == 502
    stats = client.get("/cache", params={"action": "stats"}).json()
    assert stats["total"] == 0
    again = client.get("/resolve", params={"type": "movie", "id": "42"}).json()
    assert again["cached"] is False
    assert extractor.calls == ["vidlink", "vidlink"]


def test_manifest_redirect_to_internal_target_is_refused(client, monkeypatch):
    calls, _ = _setup(client, monkeypatch, manifests={"vidlink": "http://upstream/bounce.m3u8"})
    body = client.get("/resolve", params={"type": "movie", "id": "42"}).json()

    resp = client.get(body["manifestProxyUrl"])

    assert resp.status_code == 403
    assert "127.0.0.1" not in [host for _method, host, _path in calls]
    assert "/admin/secret" not in [path for _method, _host, path in calls]


def test_manifest_falls_back_to_buffered_rewrite(client, monkeypatch):
    _setup(client, monkeypatch)
    body = client.get("/resolve", params={"type": "movie", "id": "42"}).json()
    streamed = client.get(body["manifestProxyUrl"])
    assert "content-length" not in streamed.headers

    async def _broken_rewrite(*_args, **_kwargs):
        raise RuntimeError("decoder setup failed")
        yield b""  # pragma: no cover

    monkeypatch.setattr("app.api.streams.rewrite_playlist_stream", _broken_rewrite)
    resp = client.get(body["manifestProxyUrl"])

    assert resp.status_code == 200
    assert resp.content == streamed.content
    assert resp.headers["content-length"] == str(len(resp.content))
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")


# ---- /segment


def test_segment_streams_bytes_with_immutable_caching(client, monkeypatch):
    _setup(client, monkeypatch)
    body = client.get("/resolve", params={"type": "movie", "id": "42"}).json()
    playlist = client.get(body["manifestProxyUrl"]).text
    segment_url = playlist.split("\n")[4]

    resp = client.get(segment_url)

    assert resp.status_code == 200
    assert resp.content == SEGMENT_BYTES
    assert resp.headers["content-type"].startswith("video/mp2t")
    assert resp.headers["cache-control"] == "public, max-age=31536000, immutable"


def test_segment_forwards_range(client, monkeypatch):
    _setup(client, monkeypatch)

    resp = client.get(
        "/segment", params={"url": "http://upstream/range"}, headers={"Range": "bytes=0-4"}
    )

    assert resp.status_code == 206
    assert resp.content == b"01234"
    assert resp.headers["content-range"] == "bytes 0-4/10"
    assert resp.headers["accept-ranges"] == "bytes"
    assert "immutable" in resp.headers["cache-control"]


def test_segment_head_has_no_body(client, monkeypatch):
    _setup(client, monkeypatch)

    resp = client.head("/segment", params={"url": "http://upstream/segment-001.ts"})

    assert resp.status_code == 200
    assert resp.content == b""
    assert resp.headers["content-type"].startswith("video/mp2t")


def test_nested_playlist_keeps_ref_and_force(client, monkeypatch):
    _setup(client, monkeypatch)

    resp = client.get(
        "/segment",
        params={"url": "http://upstream/variant.m3u8", "ref": "https://player.example/", "force": "1"},
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")
    lines = resp.text.split("\n")
    assert lines[-1] == "#EXT-X-ENDLIST"
    assert _query(lines[2]) == {
        "url": "http://upstream/segment-001.ts",
        "ref": "https://player.example/",
        "force": "1",
    }


def test_segment_upstream_error_is_not_cached(client, monkeypatch):
    _setup(client, monkeypatch)

    resp = client.get("/segment", params={"url": "http://upstream/gone.m3u8"})

    assert resp.status_code == 403
    assert resp.headers["cache-control"] == "no-store"


def test_segment_rejects_internal_targets_without_fetching(client, monkeypatch):
    calls, _ = _setup(client, monkeypatch)

    for url in ("http://127.0.0.1:8000/health", "http://10.0.0.8/seg.ts", "http://[::1]/x", "http://localhost/x"):
        resp = client.get("/segment", params={"url": url})
        assert resp.status_code == 403, url
    assert client.get("/segment", params={"url": "file:///etc/passwd"}).status_code == 400
    assert client.get("/segment", params={"url": ""}).status_code == 400
    assert client.get("/segment").status_code == 400
    assert calls == []


def test_segment_redirect_to_internal_target_is_refused(client, monkeypatch):
    calls, _ = _setup(client, monkeypatch)

    resp = client.get("/segment", params={"url": "http://upstream/bounce.ts"})

    assert resp.status_code == 403
    assert calls == [("GET", "upstream", "/bounce.ts")]


# ---- /cache


def test_cache_admin_actions(client, monkeypatch):
    _setup(client, monkeypatch)
    client.get("/resolve", params={"type": "movie", "id": "42"})

    stats = client.get("/cache", params={"action": "stats"}).json()
    assert stats["total"] == 1
    assert stats["valid"] == 1
    assert stats["sessions"] == 1
    assert "sizeMB" in stats

    cleaned = client.get("/cache", params={"action": "clean"}).json()
    assert cleaned == {"removed": 0, "sessionsEvicted": 0}

    cleared = client.get("/cache", params={"action": "clear"}).json()
    assert cleared == {"removed": 1}
    assert client.get("/cache").json()["total"] == 0

    assert client.get("/cache", params={"action": "explode"}).status_code == 400


# ---- auth


def test_resolve_and_cache_endpoints_require_credentials(apikey_client, monkeypatch):
    _setup(apikey_client, monkeypatch)
    movie = {"type": "movie", "id": "42"}

    assert apikey_client.get("/resolve", params=movie).status_code == 401
    assert apikey_client.get("/resolve", params={**movie, "apikey": "wrong"}).status_code == 401
    assert apikey_client.delete("/resolve", params=movie).status_code == 401
    assert apikey_client.get("/cache", params={"action": "clear"}).status_code == 401
    assert apikey_client.get("/health").status_code == 200

    resolved = apikey_client.get("/resolve", params={**movie, "apikey": "s3cret"})
    assert resolved.status_code == 200
    assert _query(resolved.json()["manifestProxyUrl"])["apikey"] == "s3cret"
    stats = apikey_client.get("/cache", params={"apikey": "s3cret"})
    assert stats.json()["total"] == 1
    removed = apikey_client.delete("/resolve", params={**movie, "apikey": "s3cret"})
    assert removed.json()["removed"] == 1
