from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import anyio
from loguru import logger
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from app.config import (
    CACHE_PROBE_TIMEOUT_SECONDS,
    CACHE_VALIDATE_ON_READ,
)
from app.db import models as db
from app.utils.logger import redact_url
from . import origin
from .errors import BlockedTargetError, OriginFetchError
from .guard import ensure_public_target
from .types import CacheEntry, MediaKey, Subtitle

Probe = Callable[[str], Awaitable[bool]]

_STORAGE_ERRORS = (SQLAlchemyError, OSError)


@dataclass(frozen=True)
class CacheStats:
    total: int
    valid: int
    expired: int
    size_bytes: int

    def to_dict(self) -> dict[str, float | int]:
        return {
            "total": self.total,
            "valid": self.valid,
            "expired": self.expired,
            "sizeBytes": self.size_bytes,
            "sizeMB": round(self.size_bytes / (1024 * 1024), 3),
        }


def make_cache_key(provider: str, media_key: MediaKey) -> str:
    return f"{provider}:{media_key.cache_key()}"


async def head_probe(url: str, *, timeout: float = CACHE_PROBE_TIMEOUT_SECONDS) -> bool:
    """
    Lightweight existence check for a cached manifest URL.

    Returns True for any non-error status. An origin that cannot be
    reached safely within ``timeout`` counts as failure.
    """
    logger.trace("Probing cached manifest {}", redact_url(url))
    try:
        with anyio.fail_after(timeout):
            await ensure_public_target(url)
            response = await origin.fetch(url, method="HEAD", kind="manifest")
            await response.aclose()
    except (OriginFetchError, BlockedTargetError, TimeoutError) as exc:
        logger.debug("Manifest probe failed for {}: {}", redact_url(url), exc)
        return False
    return response.status_code < 400


def _record_to_entry(rec: db.ManifestCacheRecord) -> CacheEntry:
    subtitles = tuple(
        s for s in (Subtitle.from_dict(raw) for raw in (rec.subtitles or [])) if s
    )
    key = MediaKey(
        media_type="tv" if rec.media_type == "tv" else "movie",
        catalog_id=rec.catalog_id,
        season=rec.season,
        episode=rec.episode,
    )
    return CacheEntry(
        provider=rec.provider,
        media_key=key,
        manifest_url=rec.manifest_url,
        source_page_url=rec.source_page_url,
        captured_at=rec.captured_at,
        expires_at=rec.expires_at,
        subtitles=subtitles,
    )


def _record_size(rec: db.ManifestCacheRecord) -> int:
    payload = {
        "cache_key": rec.cache_key,
        "manifest_url": rec.manifest_url,
        "source_page_url": rec.source_page_url,
        "subtitles": rec.subtitles,
        "captured_at": rec.captured_at,
        "expires_at": rec.expires_at,
    }
    return len(json.dumps(payload).encode("utf-8"))


class ManifestCacheStore:
    """
    Durable store of resolved manifest URLs keyed by (provider, media key).

    Every public method is a coroutine; the SQLite work runs in a worker
    thread. Storage errors are logged and surface as a miss (reads) or a
    no-op (writes), never as an exception.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        *,
        validate_on_read: bool = CACHE_VALIDATE_ON_READ,
        probe: Optional[Probe] = None,
        clock: Callable[[], float] = time.time,
    ):
        if engine is None:
            from app.db.session import engine as default_engine

            engine = default_engine
        self._engine = engine
        self._validate_on_read = validate_on_read
        self._probe = probe or head_probe
        self._clock = clock

    # -- sync helpers (worker thread)

    def _lookup(self, cache_key: str) -> tuple[Optional[CacheEntry], bool]:
        now = self._clock()
        with Session(self._engine) as session:
            rec = db.get_manifest(session, cache_key)
            if rec is None:
                return None, False
            entry = _record_to_entry(rec)
            if entry.is_expired(now):
                db.delete_manifest(session, cache_key)
                return None, True
            return entry, False

    def _write(self, cache_key: str, entry: CacheEntry) -> None:
        with Session(self._engine) as session:
            db.upsert_manifest(
                session,
                cache_key=cache_key,
                provider=entry.provider,
                media_key=entry.media_key.cache_key(),
                media_type=entry.media_key.media_type,
                catalog_id=entry.media_key.catalog_id,
                season=entry.media_key.season,
                episode=entry.media_key.episode,
                manifest_url=entry.manifest_url,
                source_page_url=entry.source_page_url,
                subtitles=[s.to_dict() for s in entry.subtitles] or None,
                captured_at=entry.captured_at,
                expires_at=entry.expires_at,
            )

    def _delete(self, cache_key: str) -> int:
        with Session(self._engine) as session:
            removed = 1 if db.delete_manifest(session, cache_key) else 0
            db.delete_provider_miss(session, cache_key)
            return removed

    def _delete_media(self, media_key: MediaKey) -> int:
        with Session(self._engine) as session:
            removed = db.delete_manifests_for_media(session, media_key.cache_key())
            db.delete_provider_misses_for_media(session, media_key.cache_key())
            return removed

    def _sweep(self) -> int:
        with Session(self._engine) as session:
            return db.delete_expired_manifests(session, now=self._clock())

    def _stats(self) -> CacheStats:
        now = self._clock()
        with Session(self._engine) as session:
            rows = db.list_manifests(session)
        expired = sum(1 for r in rows if r.expires_at <= now)
        return CacheStats(
            total=len(rows),
            valid=len(rows) - expired,
            expired=expired,
            size_bytes=sum(_record_size(r) for r in rows),
        )

    def _clear(self) -> int:
        with Session(self._engine) as session:
            return db.delete_all_manifests(session)

    def _miss_until(self, cache_key: str) -> Optional[float]:
        now = self._clock()
        with Session(self._engine) as session:
            rec = db.get_provider_miss(session, cache_key)
            if rec is None:
                return None
            if rec.retry_after <= now:
                db.delete_provider_miss(session, cache_key)
                return None
            return rec.retry_after

    def _write_miss(
        self, cache_key: str, provider: str, media_key: MediaKey, reason: str, retry_after: float
    ) -> None:
        with Session(self._engine) as session:
            db.upsert_provider_miss(
                session,
                cache_key=cache_key,
                provider=provider,
                media_key=media_key.cache_key(),
                reason=reason[:500],
                attempted_at=self._clock(),
                retry_after=retry_after,
            )

    # -- public API

    async def get(
        self, provider: str, media_key: MediaKey, *, validate: Optional[bool] = None
    ) -> Optional[CacheEntry]:
        """
        Return the live entry for ``provider``/``media_key`` or None.

        Expired entries are deleted and reported as absent. With validation
        on, a failed existence probe also deletes the entry.
        """
        cache_key = make_cache_key(provider, media_key)
        try:
            entry, was_expired = await anyio.to_thread.run_sync(self._lookup, cache_key)
        except _STORAGE_ERRORS as exc:
            logger.error("Cache read failed for {}: {}", cache_key, exc)
            return None
        if was_expired:
            logger.debug("Cache entry expired and purged: {}", cache_key)
        if entry is None:
            logger.trace("Cache miss for {}", cache_key)
            return None

        should_validate = self._validate_on_read if validate is None else validate
        if should_validate and not await self._probe(entry.manifest_url):
            logger.warning("Cached manifest failed validation, dropping {}", cache_key)
            await self.invalidate(provider, media_key)
            return None
        logger.debug("Cache hit for {}", cache_key)
        return entry

    async def put(self, entry: CacheEntry, *, key_prefix: Optional[str] = None) -> bool:
        """Store ``entry``, replacing any entry under the same key."""
        cache_key = make_cache_key(key_prefix or entry.provider, entry.media_key)
        try:
            await anyio.to_thread.run_sync(self._write, cache_key, entry)
        except _STORAGE_ERRORS as exc:
            logger.error("Cache write failed for {}: {}", cache_key, exc)
            return False
        logger.debug("Cached manifest for {} (expires {:.0f})", cache_key, entry.expires_at)
        return True

    async def invalidate(self, provider: Optional[str], media_key: MediaKey) -> int:
        """
        Remove the entry of one provider, or of every provider when
        ``provider`` is None. Returns the number of entries removed.
        """
        try:
            if provider is None:
                removed = await anyio.to_thread.run_sync(self._delete_media, media_key)
            else:
                removed = await anyio.to_thread.run_sync(
                    self._delete, make_cache_key(provider, media_key)
                )
        except _STORAGE_ERRORS as exc:
            logger.error("Cache invalidation failed for {}: {}", media_key.cache_key(), exc)
            return 0
        logger.info(
            "Invalidated {} cache entr{} for {} (provider={})",
            removed,
            "y" if removed == 1 else "ies",
            media_key.cache_key(),
            provider or "*",
        )
        return removed

    async def sweep_expired(self) -> int:
        try:
            return await anyio.to_thread.run_sync(self._sweep)
        except _STORAGE_ERRORS as exc:
            logger.error("Cache sweep failed: {}", exc)
            return 0

    async def stats(self) -> CacheStats:
        try:
            return await anyio.to_thread.run_sync(self._stats)
        except _STORAGE_ERRORS as exc:
            logger.error("Cache stats failed: {}", exc)
            return CacheStats(total=0, valid=0, expired=0, size_bytes=0)

    async def clear(self) -> int:
        try:
            return await anyio.to_thread.run_sync(self._clear)
        except _STORAGE_ERRORS as exc:
            logger.error("Cache clear failed: {}", exc)
            return 0

    async def unavailable_until(self, provider: str, media_key: MediaKey) -> Optional[float]:
        """Return when ``provider`` may be retried for ``media_key``, if it is marked."""
        try:
            return await anyio.to_thread.run_sync(
                self._miss_until, make_cache_key(provider, media_key)
            )
        except _STORAGE_ERRORS as exc:
            logger.error("Negative cache read failed: {}", exc)
            return None

    async def mark_unavailable(
        self, provider: str, media_key: MediaKey, *, reason: str, retry_after_seconds: float
    ) -> None:
        if retry_after_seconds <= 0:
            return
        retry_after = self._clock() + retry_after_seconds
        try:
            await anyio.to_thread.run_sync(
                self._write_miss,
                make_cache_key(provider, media_key),
                provider,
                media_key,
                reason,
                retry_after,
            )
        except _STORAGE_ERRORS as exc:
            logger.error("Negative cache write failed: {}", exc)
