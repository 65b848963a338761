"""Builders for the client-facing proxy URLs.

When ``PUBLIC_BASE_URL`` is unset the URLs are root-relative, which players
resolve against the manifest they were served in.
"""

from __future__ import annotations

from typing import Mapping, Optional
from urllib.parse import urlencode

from loguru import logger

from app.config import PUBLIC_BASE_URL
from .auth import build_auth_params

SEGMENT_PATH = "/segment"
MANIFEST_PATH = "/manifest"


def _base() -> str:
    return (PUBLIC_BASE_URL or "").strip().rstrip("/")


def _encode_params(params: Mapping[str, str]) -> str:
    return urlencode(sorted(params.items()))


def _build_url(path: str, params: Mapping[str, str]) -> str:
    full = f"{_base()}{path}"
    if params:
        return f"{full}?{_encode_params(params)}"
    return full


def is_already_proxied(url: str) -> bool:
    """
    True when ``url`` already points at this service's segment or manifest
    endpoint, so rewriting it again would nest proxies.
    """
    for path in (SEGMENT_PATH, MANIFEST_PATH):
        prefix = f"{_base()}{path}?"
        if url.startswith(prefix):
            return True
        if not _base() and url.startswith(path + "?"):
            return True
    return False


def build_segment_url(target: str, ref: Optional[str] = None, *, force: bool = False) -> str:
    """
    Proxy URL for an absolute upstream resource.

    Parameters:
        target (str): Absolute upstream URL of a segment, key, map or sub-playlist.
        ref (Optional[str]): Page or origin hint used for Referer/Origin headers.
        force (bool): Send the hint's Referer/Origin even on a host mismatch.
    """
    if is_already_proxied(target):
        return target
    params: dict[str, str] = {"url": target}
    if ref:
        params["ref"] = ref
    if force:
        params["force"] = "1"
    params.update(build_auth_params(params))
    return _build_url(SEGMENT_PATH, params)


def build_manifest_url(session_id: str) -> str:
    logger.trace("Building manifest URL for session {}", session_id[:6])
    params = {"sid": session_id}
    params.update(build_auth_params(params))
    return _build_url(MANIFEST_PATH, params)
