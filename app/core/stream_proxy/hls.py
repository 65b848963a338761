from __future__ import annotations

import codecs
import re
from typing import AsyncIterable, AsyncIterator, Callable
from urllib.parse import urljoin, urlsplit

from loguru import logger

from .urls import is_already_proxied

RewriteUrl = Callable[[str], str]

_URI_ATTR_RE = re.compile(
    r'(?<![A-Z0-9-])URI=(?:"(?P<uri_quoted>[^"]*)"|(?P<uri_unquoted>[^,"\s]*))'
)
_PROXYABLE_SCHEMES = ("http", "https")


def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line


def _resolve(base_url: str, raw_uri: str, rewrite_url: RewriteUrl) -> str | None:
    """
    Absolute, proxied form of ``raw_uri``; None when it must stay as is
    (already proxied, or a scheme the proxy cannot fetch such as ``data:``
    or ``skd:``).
    """
    if is_already_proxied(raw_uri):
        return None
    abs_uri = urljoin(base_url, raw_uri)
    if urlsplit(abs_uri).scheme.lower() not in _PROXYABLE_SCHEMES:
        return None
    return rewrite_url(abs_uri)


def _rewrite_uri_attr(line: str, base_url: str, rewrite_url: RewriteUrl) -> str:
    """
    Rewrite every URI attribute of one tag line, preserving the original
    quoting and every other attribute verbatim.
    """

    def _replace(match: re.Match[str]) -> str:
        quoted = match.group("uri_quoted")
        raw_uri = quoted if quoted is not None else match.group("uri_unquoted") or ""
        if not raw_uri:
            return match.group(0)
        proxied = _resolve(base_url, raw_uri, rewrite_url)
        if proxied is None:
            return match.group(0)
        if quoted is not None:
            return f'URI="{proxied}"'
        return f"URI={proxied}"

    return _URI_ATTR_RE.sub(_replace, line)


def rewrite_line(line: str, *, base_url: str, rewrite_url: RewriteUrl) -> str:
    """
    Rewrite a single playlist line (without its line terminator).

    Blank lines and tags without a URI attribute pass through unchanged.
    Tags carrying ``URI=`` get that attribute proxied. Any other line is a
    segment or sub-playlist reference and is replaced by its proxied URL.
    """
    stripped = line.strip().lstrip("\ufeff")
    if not stripped:
        return line
    if stripped.startswith("#"):
        if "URI=" in stripped:
            return _rewrite_uri_attr(line, base_url, rewrite_url)
        return line
    proxied = _resolve(base_url, stripped, rewrite_url)
    if proxied is None:
        return line
    return proxied


def rewrite_playlist(playlist_text: str, *, base_url: str, rewrite_url: RewriteUrl) -> str:
    """
    Buffered rewrite of a complete playlist.

    Splits on ``\\n`` only and drops a trailing ``\\r`` from each line, exactly
    as the streaming rewriter does, so both produce identical output. A final
    line without a newline is kept and stays unterminated.
    """
    if not playlist_text:
        return playlist_text
    out_lines = [
        rewrite_line(_strip_cr(line), base_url=base_url, rewrite_url=rewrite_url)
        for line in playlist_text.split("\n")
    ]
    logger.debug("Rewrote playlist from {} ({} lines)", base_url, len(out_lines))
    return "\n".join(out_lines)


def rewrite_playlist_bytes(body: bytes, *, base_url: str, rewrite_url: RewriteUrl) -> bytes:
    text = body.decode("utf-8", errors="replace")
    return rewrite_playlist(text, base_url=base_url, rewrite_url=rewrite_url).encode("utf-8")


class PlaylistStreamRewriter:
    """
    Incremental rewriter fed with raw byte chunks.

    Text is decoded incrementally so multi-byte characters split across
    chunks survive; complete lines are rewritten and emitted as soon as they
    end, the trailing partial line is carried to the next chunk.
    """

    def __init__(self, *, base_url: str, rewrite_url: RewriteUrl):
        self.base_url = base_url
        self.rewrite_url = rewrite_url
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._lines = 0

    def _rewrite(self, line: str) -> str:
        self._lines += 1
        return rewrite_line(_strip_cr(line), base_url=self.base_url, rewrite_url=self.rewrite_url)

    def feed(self, chunk: bytes) -> str:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return ""
        *complete, self._buffer = self._buffer.split("\n")
        return "".join(self._rewrite(line) + "\n" for line in complete)

    def finish(self) -> str:
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        out = self._rewrite(tail) if tail else ""
        logger.debug("Stream-rewrote playlist from {} ({} lines)", self.base_url, self._lines)
        return out


async def rewrite_playlist_stream(
    chunks: AsyncIterable[bytes], *, base_url: str, rewrite_url: RewriteUrl
) -> AsyncIterator[bytes]:
    """Streaming rewrite: yield UTF-8 encoded rewritten text as lines complete."""
    rewriter = PlaylistStreamRewriter(base_url=base_url, rewrite_url=rewrite_url)
    async for chunk in chunks:
        out = rewriter.feed(chunk)
        if out:
            yield out.encode("utf-8")
    tail = rewriter.finish()
    if tail:
        yield tail.encode("utf-8")


def looks_like_playlist(head: bytes) -> bool:
    """True when a body starts with the HLS signature (BOM and whitespace tolerated)."""
    return head.lstrip().lstrip(b"\xef\xbb\xbf").lstrip().startswith(b"#EXTM3U")
