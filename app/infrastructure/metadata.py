"""Catalog metadata lookups against the TMDB v3 API.

Only two things are needed by resolution: translating identifiers between
the IMDB and TMDB catalogs, and the localized title for providers whose
URLs are built from it. Results are memoized for the process lifetime.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Protocol, Tuple

import anyio
import requests
from loguru import logger

from app.config import METADATA_TIMEOUT_SECONDS, TMDB_API_KEY, TMDB_BASE_URL
from app.core.stream_proxy.types import MediaKey
from app.utils import http_client


class MetadataCollaborator(Protocol):
    async def translate_identifier(
        self, from_space: str, to_space: str, catalog_id: str, media_type: str
    ) -> Optional[str]: ...

    async def get_title(self, media_key: MediaKey, language: str) -> Optional[str]: ...


class TmdbMetadataClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: str = TMDB_BASE_URL,
        timeout: float = METADATA_TIMEOUT_SECONDS,
    ):
        self.api_key = TMDB_API_KEY if api_key is None else api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._ids: Dict[Tuple[str, str, str, str], Optional[str]] = {}
        self._titles: Dict[Tuple[str, str, str], Optional[str]] = {}
        self._lock = threading.Lock()

    def _get_json(self, path: str, **params: str) -> Optional[dict[str, Any]]:
        params["api_key"] = self.api_key
        try:
            resp = http_client.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("TMDB request {} failed: {}", path, exc)
            return None
        if resp.status_code != 200:
            logger.warning("TMDB request {} returned {}", path, resp.status_code)
            return None
        try:
            data = resp.json()
        except ValueError:
            logger.warning("TMDB request {} returned invalid JSON", path)
            return None
        return data if isinstance(data, dict) else None

    def _translate_sync(
        self, from_space: str, to_space: str, catalog_id: str, media_type: str
    ) -> Optional[str]:
        kind = "tv" if media_type == "tv" else "movie"
        if from_space == "imdb" and to_space == "tmdb":
            data = self._get_json(f"/find/{catalog_id}", external_source="imdb_id")
            if not data:
                return None
            results = data.get(f"{kind}_results") or []
            if results and results[0].get("id") is not None:
                return str(results[0]["id"])
            return None
        if from_space == "tmdb" and to_space == "imdb":
            data = self._get_json(f"/{kind}/{catalog_id}/external_ids")
            imdb_id = (data or {}).get("imdb_id")
            return str(imdb_id) if imdb_id else None
        logger.warning("Unsupported identifier translation {} -> {}", from_space, to_space)
        return None

    def _title_sync(self, media_key: MediaKey, language: str) -> Optional[str]:
        data = self._get_json(f"/{media_key.media_type}/{media_key.catalog_id}", language=language)
        if not data:
            return None
        title = data.get("title") or data.get("name")
        return str(title) if title else None

    async def translate_identifier(
        self, from_space: str, to_space: str, catalog_id: str, media_type: str
    ) -> Optional[str]:
        """
        Map ``catalog_id`` from one catalog to another, or None when unknown
        or when no API key is configured.
        """
        if from_space == to_space:
            return catalog_id
        if not self.api_key:
            logger.debug("No TMDB_API_KEY; cannot translate {} id {}", from_space, catalog_id)
            return None
        key = (from_space, to_space, catalog_id, media_type)
        with self._lock:
            if key in self._ids:
                return self._ids[key]
        result = await anyio.to_thread.run_sync(
            self._translate_sync, from_space, to_space, catalog_id, media_type
        )
        # failures are not memoized so a transient outage is retried
        if result is not None:
            with self._lock:
                self._ids[key] = result
        logger.debug("Translated {}:{} -> {}:{}", from_space, catalog_id, to_space, result)
        return result

    async def get_title(self, media_key: MediaKey, language: str) -> Optional[str]:
        if not self.api_key:
            return None
        key = (media_key.media_type, media_key.catalog_id, language)
        with self._lock:
            if key in self._titles:
                return self._titles[key]
        title = await anyio.to_thread.run_sync(self._title_sync, media_key, language)
        if title is not None:
            with self._lock:
                self._titles[key] = title
        return title
