from __future__ import annotations

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

# browser players read these on proxied segments
_EXPOSED_HEADERS = ["Content-Length", "Content-Range", "Accept-Ranges"]


def apply_cors_middleware(
    app: FastAPI,
    *,
    origins: list[str],
    allow_credentials: bool,
) -> None:
    """Let browser-based players call the resolve/manifest/segment routes.

    - No middleware if origins is empty.
    - Wildcard origins ("*") always disable credentials.
    - Only GET, HEAD, DELETE and OPTIONS are allowed.
    """

    if not origins:
        return

    is_wildcard = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if is_wildcard else origins,
        allow_credentials=False if is_wildcard else allow_credentials,
        allow_methods=["GET", "HEAD", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=_EXPOSED_HEADERS,
    )
