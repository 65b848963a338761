"""Pure playback-page URL builders, one per provider.

Each builder takes the media type, the identifier in the provider's own
catalog and, for series, season/episode. None of them do any I/O.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional


def _episode_path(season: Optional[int], episode: Optional[int]) -> str:
    if season is None or episode is None:
        raise ValueError("series URLs need season and episode")
    return f"{season}/{episode}"


def vidlink_url(
    media_type: str, catalog_id: str, season: Optional[int] = None, episode: Optional[int] = None
) -> str:
    if media_type == "tv":
        return f"https://vidlink.pro/tv/{catalog_id}/{_episode_path(season, episode)}"
    return f"https://vidlink.pro/movie/{catalog_id}"


def videasy_url(
    media_type: str, catalog_id: str, season: Optional[int] = None, episode: Optional[int] = None
) -> str:
    if media_type == "tv":
        return f"https://player.videasy.net/tv/{catalog_id}/{_episode_path(season, episode)}"
    return f"https://player.videasy.net/movie/{catalog_id}"


def vidking_url(
    media_type: str, catalog_id: str, season: Optional[int] = None, episode: Optional[int] = None
) -> str:
    if media_type == "tv":
        return f"https://www.vidking.net/embed/tv/{catalog_id}/{_episode_path(season, episode)}"
    return f"https://www.vidking.net/embed/movie/{catalog_id}"


def movies111_url(
    media_type: str, catalog_id: str, season: Optional[int] = None, episode: Optional[int] = None
) -> str:
    if media_type == "tv":
        return f"https://111movies.com/tv/{catalog_id}/{_episode_path(season, episode)}"
    return f"https://111movies.com/movie/{catalog_id}"


def title_to_slug(title: str) -> str:
    """
    Lowercase ASCII slug: accents stripped, punctuation dropped, spaces to dashes.

    ``"Dragon Ball Z: La batalla de Freezer"`` -> ``"dragon-ball-z-la-batalla-de-freezer"``
    """
    decomposed = unicodedata.normalize("NFD", title.lower())
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = re.sub(r"[^a-z0-9\s-]", "", ascii_only).strip()
    cleaned = re.sub(r"\s+", "-", cleaned)
    return re.sub(r"-+", "-", cleaned)


def cuevana_url(
    media_type: str,
    catalog_id: str,
    season: Optional[int] = None,
    episode: Optional[int] = None,
    *,
    title: str,
) -> str:
    """
    Title-based URL: movies use the full slug, series only its first word.
    """
    slug = title_to_slug(title)
    if not slug:
        raise ValueError(f"title {title!r} yields an empty slug")
    if media_type == "tv":
        if season is None or episode is None:
            raise ValueError("series URLs need season and episode")
        series_slug = slug.split("-")[0]
        return (
            f"https://cuevana.biz/ver-serie/{catalog_id}/{series_slug}"
            f"/temporada/{season}/episodio/{episode}"
        )
    return f"https://cuevana.biz/ver-pelicula/{catalog_id}/{slug}"


__all__ = [
    "vidlink_url",
    "videasy_url",
    "vidking_url",
    "movies111_url",
    "cuevana_url",
    "title_to_slug",
]
