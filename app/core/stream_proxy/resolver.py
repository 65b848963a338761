from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Set

import anyio
from loguru import logger

from app.config import EXTRACTOR_TIMEOUT_SECONDS
from app.providers.base import StreamProvider
from .cache import ManifestCacheStore
from .errors import ResolveInputError
from .sessions import SessionRegistry
from .types import (
    ORIGINAL_LANGUAGE,
    CacheEntry,
    MediaKey,
    ProviderAttempt,
    ResolveOptions,
    ResolveResult,
    Subtitle,
)
from .urls import build_manifest_url, build_segment_url


@dataclass(frozen=True)
class _Hit:
    provider: StreamProvider
    manifest_url: str
    source_page_url: Optional[str]
    subtitles: tuple[Subtitle, ...]
    cached: bool


class StreamResolver:
    """
    Turns a media key into a playable session.

    Providers are tried strictly in priority order: first the cache of
    every provider, then extraction one provider at a time. Independent
    language variants resolve concurrently.
    """

    def __init__(
        self,
        providers: Iterable[StreamProvider],
        *,
        cache: ManifestCacheStore,
        sessions: SessionRegistry,
        extractor: Any,
        metadata: Any,
        extractor_timeout: float = EXTRACTOR_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._providers = sorted(providers, key=lambda p: p.priority)
        self.cache = cache
        self.sessions = sessions
        self._extractor = extractor
        self._metadata = metadata
        self._extractor_timeout = extractor_timeout
        self._clock = clock
        self._inflight: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def providers(self) -> list[StreamProvider]:
        return list(self._providers)

    def provider(self, name: str) -> Optional[StreamProvider]:
        wanted = name.strip().lower()
        for p in self._providers:
            if p.name == wanted:
                return p
        return None

    def _by_language(self) -> dict[str, list[StreamProvider]]:
        groups: dict[str, list[StreamProvider]] = {}
        for p in self._providers:
            groups.setdefault(p.language, []).append(p)
        return groups

    # ---- identifier translation

    async def _catalog_ids(
        self, media_key: MediaKey, providers: list[StreamProvider]
    ) -> dict[str, Optional[str]]:
        """Identifier per space needed by ``providers``; None where translation failed."""
        source_space = media_key.identifier_space
        ids: dict[str, Optional[str]] = {source_space: media_key.catalog_id}
        for p in providers:
            if p.accepts(source_space) or p.identifier_space in ids:
                continue
            try:
                ids[p.identifier_space] = await self._metadata.translate_identifier(
                    source_space, p.identifier_space, media_key.catalog_id, media_key.media_type
                )
            except Exception as exc:
                logger.warning(
                    "Identifier translation {} -> {} failed for {}: {}",
                    source_space,
                    p.identifier_space,
                    media_key.catalog_id,
                    exc,
                )
                ids[p.identifier_space] = None
        return ids

    @staticmethod
    def _id_for(p: StreamProvider, media_key: MediaKey, ids: dict[str, Optional[str]]) -> Optional[str]:
        if p.accepts(media_key.identifier_space):
            return media_key.catalog_id
        return ids.get(p.identifier_space)

    # ---- cascade phases

    async def _cache_pass(
        self, media_key: MediaKey, providers: list[StreamProvider], attempts: list[ProviderAttempt]
    ) -> Optional[_Hit]:
        for p in providers:
            started = time.perf_counter()
            entry: Optional[CacheEntry] = await self.cache.get(p.cache_key_prefix, media_key)
            latency = (time.perf_counter() - started) * 1000
            if entry is None:
                attempts.append(ProviderAttempt(p.name, "cache", "miss", latency))
                continue
            attempts.append(ProviderAttempt(p.name, "cache", "hit", latency))
            return _Hit(p, entry.manifest_url, entry.source_page_url, entry.subtitles, True)
        return None

    async def _extract_pass(
        self,
        media_key: MediaKey,
        providers: list[StreamProvider],
        ids: dict[str, Optional[str]],
        attempts: list[ProviderAttempt],
        *,
        skip_cache: bool,
    ) -> Optional[_Hit]:
        for p in providers:
            catalog_id = self._id_for(p, media_key, ids)
            if catalog_id is None:
                attempts.append(
                    ProviderAttempt(p.name, "extract", "skipped", 0.0, f"no {p.identifier_space} id")
                )
                continue
            if not skip_cache and p.retry_after_seconds > 0:
                until = await self.cache.unavailable_until(p.cache_key_prefix, media_key)
                if until is not None:
                    attempts.append(
                        ProviderAttempt(p.name, "extract", "skipped", 0.0, "recently unavailable")
                    )
                    continue

            started = time.perf_counter()
            try:
                title = None
                if p.needs_title:
                    title = await self._metadata.get_title(
                        media_key.with_catalog_id(catalog_id), p.language
                    )
                target = p.build_target(media_key, catalog_id=catalog_id, title=title)
                logger.info("Extracting {} from {}", media_key.cache_key(), p.name)
                with anyio.fail_after(self._extractor_timeout):
                    result = await self._extractor.extract(target)
            except Exception as exc:
                latency = (time.perf_counter() - started) * 1000
                reason = "timed out" if isinstance(exc, TimeoutError) else str(exc) or type(exc).__name__
                logger.warning("Provider {} failed for {}: {}", p.name, media_key.cache_key(), reason)
                attempts.append(ProviderAttempt(p.name, "extract", "error", latency, reason))
                await self.cache.mark_unavailable(
                    p.cache_key_prefix,
                    media_key,
                    reason=reason,
                    retry_after_seconds=p.retry_after_seconds,
                )
                continue

            latency = (time.perf_counter() - started) * 1000
            attempts.append(ProviderAttempt(p.name, "extract", "hit", latency))
            now = self._clock()
            entry = CacheEntry(
                provider=p.name,
                media_key=media_key,
                manifest_url=result.manifest_url,
                source_page_url=result.source_page_url or target.page_url,
                captured_at=now,
                expires_at=now + p.ttl_seconds,
                subtitles=tuple(result.subtitles),
            )
            await self.cache.put(entry, key_prefix=p.cache_key_prefix)
            logger.success("Resolved {} via {} in {:.0f}ms", media_key.cache_key(), p.name, latency)
            return _Hit(p, entry.manifest_url, entry.source_page_url, entry.subtitles, False)
        return None

    def _to_result(
        self,
        media_key: MediaKey,
        language: str,
        hit: Optional[_Hit],
        attempts: list[ProviderAttempt],
        *,
        create_session: bool,
    ) -> ResolveResult:
        if hit is None:
            return ResolveResult(media_key=media_key, language=language, attempts=attempts)
        result = ResolveResult(
            media_key=media_key,
            language=language,
            found=True,
            source=hit.provider.name,
            cached=hit.cached,
            attempts=attempts,
            subtitles=[
                Subtitle(
                    url=build_segment_url(s.url, hit.source_page_url),
                    language=s.language,
                    label=s.label,
                )
                for s in hit.subtitles
            ],
        )
        if create_session:
            sess = self.sessions.create(
                manifest_url=hit.manifest_url,
                source_page_url=hit.source_page_url,
                media_key=media_key,
                provider=hit.provider.name,
            )
            result.session_id = sess.session_id
            result.manifest_proxy_url = build_manifest_url(sess.session_id)
        return result

    async def _resolve_variant(
        self,
        media_key: MediaKey,
        providers: list[StreamProvider],
        language: str,
        *,
        skip_cache: bool,
        create_session: bool = True,
    ) -> ResolveResult:
        attempts: list[ProviderAttempt] = []
        hit = None
        if not skip_cache:
            hit = await self._cache_pass(media_key, providers, attempts)
        if hit is None:
            ids = await self._catalog_ids(media_key, providers)
            hit = await self._extract_pass(
                media_key, providers, ids, attempts, skip_cache=skip_cache
            )
        if hit is None:
            logger.warning(
                "No provider could resolve {} ({})", media_key.cache_key(), language
            )
        return self._to_result(media_key, language, hit, attempts, create_session=create_session)

    # ---- background work (quick mode)

    def _spawn_background(
        self,
        media_key: MediaKey,
        providers: list[StreamProvider],
        language: str,
        *,
        skip_cache: bool,
    ) -> None:
        key = f"{language}|{media_key.cache_key()}"
        if key in self._inflight:
            logger.debug("Background resolution already running for {}", key)
            return

        async def _run() -> None:
            try:
                result = await self._resolve_variant(
                    media_key, providers, language, skip_cache=skip_cache, create_session=False
                )
                if result.found:
                    logger.info("Background resolution of {} finished via {}", key, result.source)
            except Exception as exc:
                logger.error("Background resolution of {} failed: {}", key, exc)
            finally:
                self._inflight.pop(key, None)

        task = asyncio.create_task(_run(), name=f"resolve:{key}")
        self._inflight[key] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _pending(self, media_key: MediaKey, language: str) -> ResolveResult:
        return ResolveResult(media_key=media_key, language=language, pending=True)

    async def _resolve_quick(
        self,
        media_key: MediaKey,
        primary: list[StreamProvider],
        secondary: dict[str, list[StreamProvider]],
        options: ResolveOptions,
    ) -> tuple[ResolveResult, dict[str, ResolveResult]]:
        variants: dict[str, ResolveResult] = {}
        # cache-only look at every variant first
        cached: dict[str, ResolveResult] = {}
        if not options.skip_cache:
            for language, providers in [(ORIGINAL_LANGUAGE, primary), *secondary.items()]:
                attempts: list[ProviderAttempt] = []
                hit = await self._cache_pass(media_key, providers, attempts)
                if hit is not None:
                    cached[language] = self._to_result(
                        media_key, language, hit, attempts, create_session=True
                    )

        if ORIGINAL_LANGUAGE in cached or not cached:
            top = cached.get(ORIGINAL_LANGUAGE)
            if top is None:
                top = await self._resolve_variant(
                    media_key, primary, ORIGINAL_LANGUAGE, skip_cache=options.skip_cache
                )
        else:
            # a dubbed variant is ready now; the original keeps extracting
            top = next(iter(cached.values()))
            self._spawn_background(
                media_key, primary, ORIGINAL_LANGUAGE, skip_cache=options.skip_cache
            )
            variants[ORIGINAL_LANGUAGE] = self._pending(media_key, ORIGINAL_LANGUAGE)
        variants.setdefault(top.language, top)

        for language, providers in secondary.items():
            if language in variants:
                continue
            if language in cached:
                variants[language] = cached[language]
                continue
            self._spawn_background(media_key, providers, language, skip_cache=options.skip_cache)
            variants[language] = self._pending(media_key, language)
        return top, variants

    # ---- public API

    async def resolve(
        self,
        media_type: Any,
        catalog_id: Any,
        season: Any = None,
        episode: Any = None,
        *,
        options: Optional[ResolveOptions] = None,
    ) -> ResolveResult:
        """
        Resolve a movie or episode to a session.

        Returns a result with ``found=False`` when no provider has the media.

        Raises:
            ResolveInputError: for a missing or malformed identifier, or a
                series without season/episode.
        """
        options = options or ResolveOptions()
        media_key = MediaKey.parse(media_type, catalog_id, season, episode)
        groups = self._by_language()
        primary = groups.pop(ORIGINAL_LANGUAGE, [])
        secondary = groups if options.include_secondary_languages else {}
        logger.info(
            "Resolving {} (skip_cache={}, quick={}, languages={})",
            media_key.cache_key(),
            options.skip_cache,
            options.quick_mode,
            [ORIGINAL_LANGUAGE, *secondary.keys()],
        )

        if options.quick_mode:
            top, variants = await self._resolve_quick(media_key, primary, secondary, options)
        else:
            languages = [ORIGINAL_LANGUAGE, *secondary.keys()]
            provider_lists = [primary, *secondary.values()]
            results = await asyncio.gather(
                *(
                    self._resolve_variant(media_key, providers, language, skip_cache=options.skip_cache)
                    for language, providers in zip(languages, provider_lists)
                )
            )
            variants = dict(zip(languages, results))
            top = variants[ORIGINAL_LANGUAGE]
            if not top.found:
                top = next((r for r in results if r.found), top)

        if secondary:
            top.variants = {k: v for k, v in variants.items() if k != top.language}
        return top

    async def invalidate(
        self,
        media_type: Any,
        catalog_id: Any,
        season: Any = None,
        episode: Any = None,
        *,
        provider: Optional[str] = None,
    ) -> int:
        """
        Drop cached manifests (and negative markers) for a media key: those
        of one provider, or all of them. Live sessions for the key are
        removed too so a poisoned manifest is not served again.

        Raises:
            ResolveInputError: for invalid identifiers or an unknown provider.
        """
        media_key = MediaKey.parse(media_type, catalog_id, season, episode)
        prefix: Optional[str] = None
        name: Optional[str] = None
        if provider:
            p = self.provider(provider)
            if p is None:
                raise ResolveInputError(f"unknown provider: {provider!r}")
            prefix, name = p.cache_key_prefix, p.name
        removed = await self.cache.invalidate(prefix, media_key)
        dropped = self.sessions.remove_for_media(media_key, name)
        logger.info(
            "Invalidated {} (provider={}): {} entries, {} sessions",
            media_key.cache_key(),
            provider or "*",
            removed,
            dropped,
        )
        return removed

    async def invalidate_session(self, session_id: str) -> int:
        """Invalidate the cache entry behind a session whose manifest failed upstream."""
        sess = self.sessions.get(session_id)
        if sess is None:
            return 0
        p = self.provider(sess.provider)
        prefix = p.cache_key_prefix if p else sess.provider
        removed = await self.cache.invalidate(prefix, sess.media_key)
        self.sessions.remove(session_id)
        return removed

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
