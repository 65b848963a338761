from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from .errors import ResolveInputError

MediaType = Literal["movie", "tv"]
AttemptOutcome = Literal["hit", "miss", "error", "skipped"]

ORIGINAL_LANGUAGE = "original"

_MEDIA_TYPE_ALIASES = {
    "movie": "movie",
    "film": "movie",
    "tv": "tv",
    "series": "tv",
    "show": "tv",
}
_CATALOG_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
_IMDB_ID_RE = re.compile(r"^tt\d+$")


def _parse_index(value: Any, name: str) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        number = int(str(value).strip())
    except ValueError as exc:
        raise ResolveInputError(f"invalid {name}: {value!r}") from exc
    if number < 0:
        raise ResolveInputError(f"invalid {name}: {value!r}")
    return number


@dataclass(frozen=True)
class MediaKey:
    """
    Identifies one movie or one series episode in a catalog.
    """

    media_type: MediaType
    catalog_id: str
    season: Optional[int] = None
    episode: Optional[int] = None

    @classmethod
    def parse(
        cls,
        media_type: Any,
        catalog_id: Any,
        season: Any = None,
        episode: Any = None,
    ) -> "MediaKey":
        """
        Build a MediaKey from loosely typed request values.

        Raises:
            ResolveInputError: when the identifier is missing or malformed, the
                media type is unknown, or a series lacks season/episode.
        """
        kind = _MEDIA_TYPE_ALIASES.get(str(media_type or "movie").strip().lower())
        if kind is None:
            raise ResolveInputError(f"unknown media type: {media_type!r}")
        cid = str(catalog_id or "").strip()
        if not cid:
            raise ResolveInputError("missing catalog identifier")
        if not _CATALOG_ID_RE.match(cid):
            raise ResolveInputError(f"invalid catalog identifier: {cid!r}")
        if kind == "movie":
            return cls(media_type="movie", catalog_id=cid)
        s = _parse_index(season, "season")
        e = _parse_index(episode, "episode")
        if s is None or e is None:
            raise ResolveInputError("series requires season and episode")
        return cls(media_type="tv", catalog_id=cid, season=s, episode=e)

    @property
    def is_series(self) -> bool:
        return self.media_type == "tv"

    @property
    def identifier_space(self) -> str:
        """Catalog the identifier belongs to: ``imdb`` for ``tt…`` ids, else ``tmdb``."""
        return "imdb" if _IMDB_ID_RE.match(self.catalog_id) else "tmdb"

    def with_catalog_id(self, catalog_id: str) -> "MediaKey":
        return MediaKey(self.media_type, catalog_id, self.season, self.episode)

    def cache_key(self) -> str:
        """
        Deterministic key string, e.g. ``movie:42`` or ``tv:7:s1e1``.
        """
        if self.is_series:
            return f"tv:{self.catalog_id}:s{self.season}e{self.episode}"
        return f"movie:{self.catalog_id}"


@dataclass(frozen=True)
class Subtitle:
    url: str
    language: str = ""
    label: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "language": self.language, "label": self.label}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Optional["Subtitle"]:
        url = str(raw.get("url") or "").strip()
        if not url:
            return None
        return cls(
            url=url,
            language=str(raw.get("language") or raw.get("lang") or ""),
            label=str(raw.get("label") or ""),
        )


@dataclass(frozen=True)
class CacheEntry:
    """A resolved manifest URL captured from one provider."""

    provider: str
    media_key: MediaKey
    manifest_url: str
    source_page_url: Optional[str]
    captured_at: float
    expires_at: float
    subtitles: tuple[Subtitle, ...] = ()

    def __post_init__(self) -> None:
        if self.expires_at <= self.captured_at:
            raise ValueError("expires_at must be later than captured_at")

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ProviderAttempt:
    """One step of a resolution, kept for logs, responses and tests."""

    provider: str
    phase: Literal["cache", "extract"]
    outcome: AttemptOutcome
    latency_ms: float
    detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "provider": self.provider,
            "phase": self.phase,
            "outcome": self.outcome,
            "latencyMs": round(self.latency_ms, 1),
        }
        if self.detail:
            out["detail"] = self.detail
        return out


@dataclass(frozen=True)
class ExtractionTarget:
    """What the extraction collaborator is asked to open."""

    provider: str
    page_url: str
    media_type: MediaType
    catalog_id: str
    season: Optional[int] = None
    episode: Optional[int] = None


@dataclass(frozen=True)
class ExtractionResult:
    manifest_url: str
    source_page_url: Optional[str] = None
    subtitles: tuple[Subtitle, ...] = ()


@dataclass(frozen=True)
class ResolveOptions:
    skip_cache: bool = False
    quick_mode: bool = False
    include_secondary_languages: bool = False


@dataclass
class ResolveResult:
    """
    Outcome of resolving one language variant.

    ``found`` is False for a legitimate absence (every provider failed);
    ``pending`` marks a variant still being extracted in the background.
    """

    media_key: MediaKey
    language: str = ORIGINAL_LANGUAGE
    found: bool = False
    pending: bool = False
    session_id: Optional[str] = None
    manifest_proxy_url: Optional[str] = None
    source: Optional[str] = None
    cached: bool = False
    subtitles: list[Subtitle] = field(default_factory=list)
    attempts: list[ProviderAttempt] = field(default_factory=list)
    variants: dict[str, "ResolveResult"] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        if self.pending:
            return {"language": self.language, "pending": True}
        out: dict[str, Any] = {
            "found": self.found,
            "language": self.language,
            "sessionId": self.session_id,
            "manifestProxyUrl": self.manifest_proxy_url,
            "cached": self.cached,
            "source": self.source,
            "subtitles": [s.to_dict() for s in self.subtitles],
            "attempts": [a.to_dict() for a in self.attempts],
        }
        if self.variants:
            out["variants"] = {k: v.to_dict() for k, v in self.variants.items()}
        return out
