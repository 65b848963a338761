import time

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import create_engine

from app.core.stream_proxy.cache import ManifestCacheStore, make_cache_key
from app.core.stream_proxy.types import CacheEntry, MediaKey, Subtitle
from app.db.base import ModelBase
from app.db import models  # noqa: F401


pytestmark = pytest.mark.anyio


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{(tmp_path / 'cache.db').as_posix()}",
        connect_args={"check_same_thread": False},
    )
    ModelBase.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def store(engine, clock):
    return ManifestCacheStore(engine, validate_on_read=False, clock=clock)


def _entry(clock, *, provider="vidlink", key=None, ttl=3600.0, url=None):
    key = key or MediaKey.parse("movie", "42")
    return CacheEntry(
        provider=provider,
        media_key=key,
        manifest_url=url or f"https://cdn.example/{provider}/master.m3u8",
        source_page_url=f"https://{provider}.example/movie/42",
        captured_at=clock.now,
        expires_at=clock.now + ttl,
        subtitles=(Subtitle(url="https://subs.example/en.vtt", language="en", label="English"),),
    )


def test_cache_key_shape():
    assert make_cache_key("vidlink", MediaKey.parse("movie", "42")) == "vidlink:movie:42"
    assert (
        make_cache_key("111movies", MediaKey.parse("tv", "7", 1, 1)) == "111movies:tv:7:s1e1"
    )


async def test_put_then_get_round_trip(store, clock):
    entry = _entry(clock, key=MediaKey.parse("tv", "tt0903747", 2, 5))
    assert await store.put(entry)

    got = await store.get("vidlink", entry.media_key)

    assert got is not None
    assert got.manifest_url == entry.manifest_url
    assert got.media_key == entry.media_key
    assert got.source_page_url == entry.source_page_url
    assert got.subtitles[0].language == "en"


async def test_put_overwrites_same_key(store, clock):
    await store.put(_entry(clock, url="https://cdn.example/old.m3u8"))
    await store.put(_entry(clock, url="https://cdn.example/new.m3u8"))

    got = await store.get("vidlink", MediaKey.parse("movie", "42"))
    stats = await store.stats()

    assert got.manifest_url == "https://cdn.example/new.m3u8"
    assert stats.total == 1


async def test_expired_entry_is_never_returned_and_purged(store, clock):
    await store.put(_entry(clock, ttl=10))
    clock.now += 11

    before = await store.stats()
    assert (before.total, before.valid, before.expired) == (1, 0, 1)

    assert await store.get("vidlink", MediaKey.parse("movie", "42")) is None

    after = await store.stats()
    assert (after.total, after.valid, after.expired) == (0, 0, 0)


async def test_entry_expires_exactly_at_its_deadline(store, clock):
    entry = _entry(clock, ttl=10)
    await store.put(entry)
    clock.now = entry.expires_at - 0.5

    assert not entry.is_expired(clock.now)
    assert await store.get("vidlink", MediaKey.parse("movie", "42")) is not None

    clock.now = entry.expires_at
    assert entry.is_expired(clock.now)
    assert await store.get("vidlink", MediaKey.parse("movie", "42")) is None


async def test_sweep_expired_counts_removed(store, clock):
    await store.put(_entry(clock, provider="vidlink", ttl=10))
    await store.put(_entry(clock, provider="videasy", ttl=10_000))
    clock.now += 60

    assert await store.sweep_expired() == 1
    stats = await store.stats()
    assert stats.total == 1
    assert stats.size_bytes > 0
    assert stats.to_dict()["sizeMB"] >= 0


async def test_invalidate_one_provider_or_all(store, clock):
    key = MediaKey.parse("movie", "42")
    for provider in ("vidlink", "videasy", "vidking"):
        await store.put(_entry(clock, provider=provider, key=key))
    await store.put(_entry(clock, provider="vidlink", key=MediaKey.parse("movie", "43")))

    assert await store.invalidate("videasy", key) == 1
    assert await store.get("videasy", key) is None
    assert await store.get("vidlink", key) is not None

    assert await store.invalidate(None, key) == 2
    assert await store.get("vidking", key) is None
    assert await store.get("vidlink", MediaKey.parse("movie", "43")) is not None


async def test_clear_removes_everything(store, clock):
    await store.put(_entry(clock, provider="vidlink"))
    await store.put(_entry(clock, provider="videasy"))

    assert await store.clear() == 2
    assert (await store.stats()).total == 0


async def test_validation_probe_failure_drops_entry(engine, clock):
    probed = []

    async def _probe(url):
        probed.append(url)
        return False

    store = ManifestCacheStore(engine, validate_on_read=True, probe=_probe, clock=clock)
    await store.put(_entry(clock))

    assert await store.get("vidlink", MediaKey.parse("movie", "42")) is None
    assert probed == ["https://cdn.example/vidlink/master.m3u8"]
    assert (await store.stats()).total == 0


async def test_validation_probe_success_keeps_entry(engine, clock):
    async def _probe(url):
        return True

    store = ManifestCacheStore(engine, validate_on_read=True, probe=_probe, clock=clock)
    await store.put(_entry(clock))

    assert await store.get("vidlink", MediaKey.parse("movie", "42")) is not None


async def test_storage_errors_degrade_to_miss(store, clock, monkeypatch):
    def _boom(*_args, **_kwargs):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(store, "_lookup", _boom)
    monkeypatch.setattr(store, "_write", _boom)

    assert await store.put(_entry(clock)) is False
    assert await store.get("vidlink", MediaKey.parse("movie", "42")) is None


async def test_negative_marker_expires(store, clock):
    key = MediaKey.parse("movie", "42")
    await store.mark_unavailable("cuevana", key, reason="no manifest", retry_after_seconds=100)

    assert await store.unavailable_until("cuevana", key) == clock.now + 100
    clock.now += 101
    assert await store.unavailable_until("cuevana", key) is None


async def test_invalidate_clears_negative_marker(store, clock):
    key = MediaKey.parse("movie", "42")
    await store.mark_unavailable("cuevana", key, reason="no manifest", retry_after_seconds=100)

    await store.invalidate("cuevana", key)

    assert await store.unavailable_until("cuevana", key) is None


def test_entry_requires_positive_lifetime():
    now = time.time()
    with pytest.raises(ValueError):
        CacheEntry(
            provider="vidlink",
            media_key=MediaKey.parse("movie", "42"),
            manifest_url="https://cdn.example/a.m3u8",
            source_page_url=None,
            captured_at=now,
            expires_at=now,
        )
