"""Built-in stream providers and the configured cascade."""

from typing import Optional

from loguru import logger

from app.config import (
    CACHE_TTL_SECONDS,
    PROVIDER_ORDER,
    PROVIDER_TTL_SECONDS,
    SECONDARY_PROVIDERS,
    UNAVAILABLE_RETRY_SECONDS,
)

from .base import StreamProvider
from .builders import cuevana_url, movies111_url, videasy_url, vidking_url, vidlink_url
from .registry import clear_providers, ensure_providers, list_providers, register_provider

# name -> (identifier space, builder, language, needs title)
_BUILTINS = {
    "vidlink": ("tmdb", vidlink_url, "original", False),
    "videasy": ("tmdb", videasy_url, "original", False),
    "vidking": ("tmdb", vidking_url, "original", False),
    # last resort: takes IMDB or TMDB ids as given
    "111movies": ("any", movies111_url, "original", False),
    "cuevana": ("tmdb", cuevana_url, "es-MX", True),
}


def _make_provider(name: str, priority: int, *, secondary: bool) -> Optional[StreamProvider]:
    entry = _BUILTINS.get(name)
    if entry is None:
        logger.warning(f"Unknown provider '{name}' in configuration; skipping.")
        return None
    space, builder, language, needs_title = entry
    return StreamProvider(
        name=name,
        priority=priority,
        identifier_space=space,
        url_builder=builder,
        ttl_seconds=PROVIDER_TTL_SECONDS.get(name, CACHE_TTL_SECONDS),
        language=language,
        retry_after_seconds=UNAVAILABLE_RETRY_SECONDS if secondary else 0,
        needs_title=needs_title,
    )


def build_default_providers() -> list[StreamProvider]:
    """Instantiate the providers named in PROVIDER_ORDER and SECONDARY_PROVIDERS.

    Returns:
        list[StreamProvider]: Providers sorted by priority; configuration
            order is the priority.
    """
    providers: list[StreamProvider] = []
    for idx, name in enumerate(PROVIDER_ORDER):
        p = _make_provider(name, idx, secondary=False)
        if p:
            providers.append(p)
    offset = len(PROVIDER_ORDER)
    for idx, name in enumerate(SECONDARY_PROVIDERS):
        if name in PROVIDER_ORDER:
            logger.warning(f"Provider '{name}' is both primary and secondary; keeping primary.")
            continue
        p = _make_provider(name, offset + idx, secondary=True)
        if p:
            providers.append(p)
    logger.debug(f"Configured providers: {[p.name for p in providers]}")
    return providers


def register_default_providers() -> list[StreamProvider]:
    providers = build_default_providers()
    clear_providers()
    ensure_providers([p.name for p in providers], providers)
    return list_providers()


__all__ = [
    "StreamProvider",
    "build_default_providers",
    "register_default_providers",
    "register_provider",
    "list_providers",
]
