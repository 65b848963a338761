"""Database models for the manifest cache.

All models inherit from ModelBase (defined in app.db.base) so Alembic sees a
single metadata object.

Models:
    - ManifestCacheRecord: one resolved manifest per provider/media key
    - ProviderMiss: negative marker for a provider that recently failed a key

To add a new model:
    1. Define your model class inheriting from ModelBase with table=True
    2. Generate a new migration: alembic revision --autogenerate -m "Add MyModel"
    3. Review and apply: alembic upgrade head
"""

from __future__ import annotations

from typing import Any, List, Optional

from loguru import logger
from sqlmodel import Column, Field, JSON, Session, select

from app.db.base import ModelBase
from app.db.session import engine


# ---------------- Table Models


class ManifestCacheRecord(ModelBase, table=True):
    """A captured manifest URL, addressed by a deterministic cache key.

    ``cache_key`` is ``<provider prefix>:<media key>``; ``media_key`` alone
    groups the records of every provider for the same title/episode.
    Timestamps are Unix seconds and ``expires_at`` is after ``captured_at``.
    """

    __tablename__ = "manifestcache"

    cache_key: str = Field(primary_key=True)
    provider: str = Field(index=True)
    media_key: str = Field(index=True)
    media_type: str
    catalog_id: str
    season: Optional[int] = None
    episode: Optional[int] = None
    manifest_url: str
    source_page_url: Optional[str] = None
    subtitles: Optional[list] = Field(sa_column=Column(JSON), default=None)
    captured_at: float
    expires_at: float = Field(index=True)


class ProviderMiss(ModelBase, table=True):
    """
    Negative cache: a provider failed to extract this key and should not be
    asked again before ``retry_after``.
    """

    __tablename__ = "providermiss"

    cache_key: str = Field(primary_key=True)
    provider: str = Field(index=True)
    media_key: str = Field(index=True)
    reason: Optional[str] = None
    attempted_at: float
    retry_after: float = Field(index=True)


def create_db_and_tables() -> None:
    """Create all tables from metadata (used when migrations are disabled)."""
    logger.debug("Creating tables from ModelBase metadata.")
    ModelBase.metadata.create_all(engine)


# ---------------- Manifest CRUD
def upsert_manifest(
    session: Session,
    *,
    cache_key: str,
    provider: str,
    media_key: str,
    media_type: str,
    catalog_id: str,
    season: Optional[int],
    episode: Optional[int],
    manifest_url: str,
    source_page_url: Optional[str],
    subtitles: Optional[List[dict[str, Any]]],
    captured_at: float,
    expires_at: float,
) -> ManifestCacheRecord:
    """
    Create or overwrite the cache record stored under ``cache_key``.

    Last write wins; every field of an existing record is replaced.
    """
    logger.debug(f"Upserting manifest cache record {cache_key}")
    rec = session.get(ManifestCacheRecord, cache_key)
    if rec is None:
        rec = ManifestCacheRecord(
            cache_key=cache_key,
            provider=provider,
            media_key=media_key,
            media_type=media_type,
            catalog_id=catalog_id,
            season=season,
            episode=episode,
            manifest_url=manifest_url,
            source_page_url=source_page_url,
            subtitles=subtitles,
            captured_at=captured_at,
            expires_at=expires_at,
        )
    else:
        rec.provider = provider
        rec.media_key = media_key
        rec.media_type = media_type
        rec.catalog_id = catalog_id
        rec.season = season
        rec.episode = episode
        rec.manifest_url = manifest_url
        rec.source_page_url = source_page_url
        rec.subtitles = subtitles
        rec.captured_at = captured_at
        rec.expires_at = expires_at
    session.add(rec)
    try:
        session.commit()
        session.refresh(rec)
    except Exception as e:
        logger.error(f"Failed to upsert manifest cache record {cache_key}: {e}")
        session.rollback()
        raise
    return rec


def get_manifest(session: Session, cache_key: str) -> Optional[ManifestCacheRecord]:
    logger.trace(f"Fetching manifest cache record {cache_key}")
    return session.get(ManifestCacheRecord, cache_key)


def delete_manifest(session: Session, cache_key: str) -> bool:
    rec = session.get(ManifestCacheRecord, cache_key)
    if rec is None:
        return False
    session.delete(rec)
    session.commit()
    logger.debug(f"Deleted manifest cache record {cache_key}")
    return True


def delete_manifests_for_media(session: Session, media_key: str) -> int:
    """Delete the records of every provider for one media key."""
    rows = session.exec(
        select(ManifestCacheRecord).where(ManifestCacheRecord.media_key == media_key)
    ).all()
    for rec in rows:
        session.delete(rec)
    session.commit()
    return len(rows)


def list_manifests(session: Session) -> List[ManifestCacheRecord]:
    return list(session.exec(select(ManifestCacheRecord)).all())


def delete_expired_manifests(session: Session, *, now: float) -> int:
    rows = session.exec(
        select(ManifestCacheRecord).where(ManifestCacheRecord.expires_at <= now)
    ).all()
    for rec in rows:
        session.delete(rec)
    session.commit()
    if rows:
        logger.info(f"Deleted {len(rows)} expired manifest cache records")
    return len(rows)


def delete_all_manifests(session: Session) -> int:
    rows = session.exec(select(ManifestCacheRecord)).all()
    for rec in rows:
        session.delete(rec)
    for miss in session.exec(select(ProviderMiss)).all():
        session.delete(miss)
    session.commit()
    logger.warning(f"Cleared manifest cache ({len(rows)} records)")
    return len(rows)


# ---------------- ProviderMiss CRUD
def upsert_provider_miss(
    session: Session,
    *,
    cache_key: str,
    provider: str,
    media_key: str,
    reason: Optional[str],
    attempted_at: float,
    retry_after: float,
) -> ProviderMiss:
    logger.debug(f"Recording provider miss {cache_key} until {retry_after}")
    rec = session.get(ProviderMiss, cache_key)
    if rec is None:
        rec = ProviderMiss(
            cache_key=cache_key,
            provider=provider,
            media_key=media_key,
            reason=reason,
            attempted_at=attempted_at,
            retry_after=retry_after,
        )
    else:
        rec.reason = reason
        rec.attempted_at = attempted_at
        rec.retry_after = retry_after
    session.add(rec)
    try:
        session.commit()
        session.refresh(rec)
    except Exception as e:
        logger.error(f"Failed to record provider miss {cache_key}: {e}")
        session.rollback()
        raise
    return rec


def get_provider_miss(session: Session, cache_key: str) -> Optional[ProviderMiss]:
    return session.get(ProviderMiss, cache_key)


def delete_provider_miss(session: Session, cache_key: str) -> bool:
    rec = session.get(ProviderMiss, cache_key)
    if rec is None:
        return False
    session.delete(rec)
    session.commit()
    return True


def delete_provider_misses_for_media(session: Session, media_key: str) -> int:
    rows = session.exec(
        select(ProviderMiss).where(ProviderMiss.media_key == media_key)
    ).all()
    for rec in rows:
        session.delete(rec)
    session.commit()
    return len(rows)


__all__ = [
    "ManifestCacheRecord",
    "ProviderMiss",
    "create_db_and_tables",
    "upsert_manifest",
    "get_manifest",
    "delete_manifest",
    "delete_manifests_for_media",
    "list_manifests",
    "delete_expired_manifests",
    "delete_all_manifests",
    "upsert_provider_miss",
    "get_provider_miss",
    "delete_provider_miss",
    "delete_provider_misses_for_media",
]
