from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from loguru import logger

from app.config import SESSION_IDLE_TIMEOUT_MIN
from .types import MediaKey


@dataclass
class StreamSession:
    """Binds an opaque id to one resolved manifest URL."""

    session_id: str
    manifest_url: str
    source_page_url: Optional[str]
    media_key: MediaKey
    provider: str
    created_at: float
    last_access: float = field(default=0.0)


class SessionRegistry:
    """
    In-memory session table. Lost on restart.

    Sessions idle for longer than ``idle_timeout`` seconds are evicted lazily
    on lookup and in bulk by :meth:`evict_idle`. A timeout of 0 keeps
    sessions for the process lifetime.
    """

    def __init__(
        self,
        *,
        idle_timeout: float = SESSION_IDLE_TIMEOUT_MIN * 60,
        clock: Callable[[], float] = time.time,
    ):
        self._sessions: Dict[str, StreamSession] = {}
        self._lock = threading.Lock()
        self._idle_timeout = idle_timeout
        self._clock = clock

    def _is_idle(self, sess: StreamSession, now: float) -> bool:
        return self._idle_timeout > 0 and now - sess.last_access > self._idle_timeout

    def create(
        self,
        *,
        manifest_url: str,
        source_page_url: Optional[str],
        media_key: MediaKey,
        provider: str,
    ) -> StreamSession:
        now = self._clock()
        sess = StreamSession(
            session_id=secrets.token_urlsafe(16),
            manifest_url=manifest_url,
            source_page_url=source_page_url,
            media_key=media_key,
            provider=provider,
            created_at=now,
            last_access=now,
        )
        with self._lock:
            self._sessions[sess.session_id] = sess
        logger.debug("Created session {} for {} via {}", sess.session_id[:6], media_key.cache_key(), provider)
        return sess

    def get(self, session_id: str) -> Optional[StreamSession]:
        now = self._clock()
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None:
                return None
            if self._is_idle(sess, now):
                del self._sessions[session_id]
                logger.debug("Session {} expired after idling", session_id[:6])
                return None
            sess.last_access = now
            return sess

    def remove(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def remove_for_media(self, media_key: MediaKey, provider: Optional[str] = None) -> int:
        """Drop sessions serving ``media_key`` (optionally only from ``provider``)."""
        with self._lock:
            doomed = [
                sid
                for sid, sess in self._sessions.items()
                if sess.media_key == media_key and (provider is None or sess.provider == provider)
            ]
            for sid in doomed:
                del self._sessions[sid]
        return len(doomed)

    def evict_idle(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if self._is_idle(s, now)]
            for sid in doomed:
                del self._sessions[sid]
        if doomed:
            logger.debug("Evicted {} idle sessions", len(doomed))
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
