from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from loguru import logger
from fastapi import FastAPI

from app.config import CACHE_SWEEP_INTERVAL_MIN, DB_MIGRATE_ON_STARTUP
from app.core.stream_proxy.cache import ManifestCacheStore
from app.core.stream_proxy.resolver import StreamResolver
from app.core.stream_proxy.sessions import SessionRegistry
from app.db import create_db_and_tables, dispose_engine, engine, run_migrations
from app.infrastructure.extractor import HttpExtractionClient
from app.infrastructure.metadata import TmdbMetadataClient
from app.providers import register_default_providers
from app.utils.http_client import close_session


def build_resolver() -> StreamResolver:
    """Wire the default resolver: configured providers, SQLite cache, HTTP collaborators."""
    providers = register_default_providers()
    return StreamResolver(
        providers,
        cache=ManifestCacheStore(engine),
        sessions=SessionRegistry(),
        extractor=HttpExtractionClient(),
        metadata=TmdbMetadataClient(),
    )


async def _maintenance_loop(resolver: StreamResolver, interval_min: int) -> None:
    """Periodically purge expired cache entries and idle sessions."""
    logger.info(f"Starting cache maintenance task: interval={interval_min}min")
    while True:
        await asyncio.sleep(interval_min * 60)
        removed = await resolver.cache.sweep_expired()
        evicted = resolver.sessions.evict_idle()
        if removed or evicted:
            logger.info(
                f"Maintenance: removed {removed} expired cache entries, evicted {evicted} sessions"
            )


def _init_database() -> None:
    if DB_MIGRATE_ON_STARTUP:
        try:
            run_migrations()
            return
        except Exception as e:
            logger.warning(f"Alembic migration failed ({e}); falling back to create_all.")
    create_db_and_tables()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup: preparing database and resolver.")
    _init_database()
    resolver = build_resolver()
    app.state.resolver = resolver

    sweeper: Optional[asyncio.Task] = None
    if CACHE_SWEEP_INTERVAL_MIN > 0:
        sweeper = asyncio.create_task(
            _maintenance_loop(resolver, CACHE_SWEEP_INTERVAL_MIN), name="cache-maintenance"
        )
    else:
        logger.info("Cache maintenance task disabled (CACHE_SWEEP_INTERVAL_MIN<=0)")

    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        # the app may have swapped in another resolver (tests)
        await app.state.resolver.aclose()
        close_session()
        dispose_engine()
        logger.info("Application shutdown complete.")
