from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from app.core.stream_proxy.types import ExtractionTarget, MediaKey, ORIGINAL_LANGUAGE


@dataclass(frozen=True)
class StreamProvider:
    """Uniform description of one upstream source in the resolution cascade.

    Providers are plain data: the cascade loop iterates them in ``priority``
    order and never branches on a provider's name.

    Attributes:
        name: Unique provider name (also reported as ``source``).
        priority: Lower runs first.
        identifier_space: Catalog the provider's URLs expect: ``tmdb``,
            ``imdb`` or ``any`` (accepts whatever the client sent).
        url_builder: Pure function building the playback page URL.
        cache_key_prefix: Prefix of the provider's cache keys; defaults to ``name``.
        language: ``original`` or the dubbed language the provider serves.
        ttl_seconds: Lifetime of cached manifests from this provider.
        retry_after_seconds: After a failed extraction, skip this provider for
            the same key this long. 0 disables negative caching.
        needs_title: The URL is built from the localized title, so the
            metadata collaborator is asked for it first.
    """

    name: str
    priority: int
    identifier_space: str
    url_builder: Callable[..., str] = field(repr=False)
    ttl_seconds: int
    cache_key_prefix: str = ""
    language: str = ORIGINAL_LANGUAGE
    retry_after_seconds: int = 0
    needs_title: bool = False

    def __post_init__(self) -> None:
        if not self.cache_key_prefix:
            object.__setattr__(self, "cache_key_prefix", self.name)

    def accepts(self, identifier_space: str) -> bool:
        return self.identifier_space in ("any", identifier_space)

    def build_target(
        self, media_key: MediaKey, *, catalog_id: str, title: Optional[str] = None
    ) -> ExtractionTarget:
        """Build the extraction target for ``media_key`` using ``catalog_id``
        (already translated into this provider's identifier space).

        Raises:
            ValueError: when the builder cannot produce a URL (e.g. a
                title-based provider without a usable title).
        """
        if self.needs_title:
            if not title:
                raise ValueError("no localized title available")
            page_url = self.url_builder(
                media_key.media_type,
                catalog_id,
                media_key.season,
                media_key.episode,
                title=title,
            )
        else:
            page_url = self.url_builder(
                media_key.media_type, catalog_id, media_key.season, media_key.episode
            )
        return ExtractionTarget(
            provider=self.name,
            page_url=page_url,
            media_type=media_key.media_type,
            catalog_id=catalog_id,
            season=media_key.season,
            episode=media_key.episode,
        )
