from .errors import BlockedTargetError, ExtractionError, OriginFetchError, ResolveInputError
from .types import (
    CacheEntry,
    ExtractionResult,
    ExtractionTarget,
    MediaKey,
    ProviderAttempt,
    ResolveOptions,
    ResolveResult,
    Subtitle,
)
from .urls import build_manifest_url, build_segment_url, is_already_proxied
from .hls import rewrite_playlist, rewrite_playlist_stream, rewrite_line
from .auth import build_auth_params, require_auth


__all__ = [
    "BlockedTargetError",
    "ExtractionError",
    "OriginFetchError",
    "ResolveInputError",
    "CacheEntry",
    "ExtractionResult",
    "ExtractionTarget",
    "MediaKey",
    "ProviderAttempt",
    "ResolveOptions",
    "ResolveResult",
    "Subtitle",
    "build_manifest_url",
    "build_segment_url",
    "is_already_proxied",
    "rewrite_playlist",
    "rewrite_playlist_stream",
    "rewrite_line",
    "build_auth_params",
    "require_auth",
]
