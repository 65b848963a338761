"""Client for the out-of-process extraction service.

The service drives a headless browser: given a playback page it returns the
manifest URL it captured, or an error. This module only speaks its small
JSON contract.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import anyio
import requests
from loguru import logger

from app.config import EXTRACTOR_TIMEOUT_SECONDS, EXTRACTOR_URL
from app.core.stream_proxy.errors import ExtractionError
from app.core.stream_proxy.types import ExtractionResult, ExtractionTarget, Subtitle
from app.utils import http_client


class ExtractionCollaborator(Protocol):
    async def extract(self, target: ExtractionTarget) -> ExtractionResult:
        """Return the captured manifest or raise ExtractionError."""
        ...


def _parse_result(target: ExtractionTarget, payload: Any) -> ExtractionResult:
    if not isinstance(payload, dict):
        raise ExtractionError(target.provider, "malformed extractor response")
    error = payload.get("error")
    manifest = payload.get("manifestUrl") or payload.get("manifest_url")
    if error or not manifest:
        raise ExtractionError(target.provider, str(error or "no manifest captured"))
    subtitles = tuple(
        s
        for s in (
            Subtitle.from_dict(raw)
            for raw in payload.get("subtitles") or []
            if isinstance(raw, dict)
        )
        if s
    )
    source = payload.get("sourcePageUrl") or payload.get("source_page_url") or target.page_url
    return ExtractionResult(
        manifest_url=str(manifest),
        source_page_url=str(source),
        subtitles=subtitles,
    )


class HttpExtractionClient:
    """
    Calls ``POST {base_url}/extract`` with the provider target.

    The blocking request runs in a worker thread; the caller applies its own
    deadline on top of the HTTP timeout.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: float = EXTRACTOR_TIMEOUT_SECONDS,
    ):
        self.base_url = (EXTRACTOR_URL if base_url is None else base_url).rstrip("/")
        self.timeout = timeout

    def _extract_sync(self, target: ExtractionTarget) -> ExtractionResult:
        body = {
            "provider": target.provider,
            "url": target.page_url,
            "type": target.media_type,
            "id": target.catalog_id,
            "season": target.season,
            "episode": target.episode,
        }
        try:
            resp = http_client.post(
                f"{self.base_url}/extract", json=body, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise ExtractionError(target.provider, f"extractor unreachable: {exc}") from exc
        if resp.status_code >= 400:
            try:
                data = resp.json()
            except ValueError:
                data = None
            if isinstance(data, dict):
                detail = str(data.get("error") or "")
            else:
                detail = resp.text[:200]
            raise ExtractionError(
                target.provider, f"extractor returned {resp.status_code} {detail}".strip()
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ExtractionError(target.provider, "extractor returned non-JSON body") from exc
        return _parse_result(target, payload)

    async def extract(self, target: ExtractionTarget) -> ExtractionResult:
        if not self.base_url:
            raise ExtractionError(target.provider, "no extractor configured")
        logger.debug("Extracting {} via {}", target.page_url, target.provider)
        return await anyio.to_thread.run_sync(self._extract_sync, target)
