"""Thread-safe registry for stream providers."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List

from .base import StreamProvider


_PROVIDER_REGISTRY: Dict[str, StreamProvider] = {}
_PROVIDER_REGISTRY_LOCK = threading.Lock()


def register_provider(provider: StreamProvider) -> None:
    """Register a StreamProvider in the global registry.

    Parameters:
        provider (StreamProvider): Provider instance to register; replaces any
            provider with the same name.
    """
    with _PROVIDER_REGISTRY_LOCK:
        _PROVIDER_REGISTRY[provider.name] = provider


def get_provider(name: str) -> StreamProvider | None:
    """Return the provider registered under ``name`` (case-insensitive), if any."""
    with _PROVIDER_REGISTRY_LOCK:
        return _PROVIDER_REGISTRY.get(name.strip().lower())


def list_providers() -> List[StreamProvider]:
    """Return all registered providers sorted by priority."""
    with _PROVIDER_REGISTRY_LOCK:
        return sorted(_PROVIDER_REGISTRY.values(), key=lambda p: p.priority)


def ensure_providers(names: Iterable[str], providers: Iterable[StreamProvider]) -> None:
    """Register providers whose names appear in ``names``.

    Parameters:
        names (Iterable[str]): Provider names to include.
        providers (Iterable[StreamProvider]): Providers to consider for registration.
    """
    wanted = {n.strip().lower() for n in names}
    for provider in providers:
        if provider.name in wanted:
            register_provider(provider)


def clear_providers() -> None:
    with _PROVIDER_REGISTRY_LOCK:
        _PROVIDER_REGISTRY.clear()
