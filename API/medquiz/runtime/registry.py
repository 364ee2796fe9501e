from __future__ import annotations

import json
import time
from collections.abc import Callable

from medquiz.core.logging import DOMAIN_SESSION, get_domain_logger
from medquiz.core.settings import settings

logger = get_domain_logger(__name__, DOMAIN_SESSION)

KEY_PREFIX = "medquiz:session:"


class SessionRegistry:
    """Session id -> who/what/how metadata, so another process can rebuild the session.

    Redis is the shared backend; an in-process dict mirrors every write and
    serves reads when Redis is unavailable or disabled. Both expire entries
    ``ttl_seconds`` after the last write or touch.
    """

    def __init__(
        self,
        client=None,
        *,
        backend: str | None = None,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend or settings.session_registry_backend
        self.ttl_seconds = ttl_seconds or settings.session_ttl_seconds
        self._client = client
        if self._client is None and self.backend == "redis":
            from medquiz.memory.cache import redis_client

            self._client = redis_client
        self._clock = clock
        self._degraded: dict[str, dict[str, str]] = {}
        self._expires_at: dict[str, float] = {}

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{KEY_PREFIX}{session_id}"

    async def put(self, session_id: str, meta: dict) -> None:
        mapping = {k: json.dumps(v) for k, v in meta.items()}
        key = self._key(session_id)
        cached = dict(self._degraded_entry(key))
        cached.update(mapping)
        self._degraded[key] = cached
        self._expires_at[key] = self._clock() + self.ttl_seconds
        if self._client is None:
            return
        try:
            await self._client.hset(key, mapping=mapping)
            await self._client.expire(key, self.ttl_seconds)
        except Exception as exc:
            logger.warning("Redis unavailable for session registry write. Using degraded cache: %s", exc)

    async def get(self, session_id: str) -> dict | None:
        key = self._key(session_id)
        raw: dict[str, str] = {}
        if self._client is not None:
            try:
                raw = await self._client.hgetall(key)
            except Exception as exc:
                logger.warning("Redis unavailable for session registry read. Falling back to degraded cache: %s", exc)
        if not raw:
            raw = dict(self._degraded_entry(key))
        if not raw:
            return None
        return {k: json.loads(v) for k, v in raw.items()}

    async def touch(self, session_id: str) -> None:
        """Push the expiry of a live session back by another ``ttl_seconds``."""
        key = self._key(session_id)
        if key in self._degraded:
            self._expires_at[key] = self._clock() + self.ttl_seconds
        if self._client is None:
            return
        try:
            await self._client.expire(key, self.ttl_seconds)
        except Exception as exc:
            logger.warning("Redis unavailable for session registry touch: %s", exc)

    async def forget(self, session_id: str) -> None:
        key = self._key(session_id)
        self._drop_degraded(key)
        if self._client is None:
            return
        try:
            await self._client.delete(key)
        except Exception as exc:
            logger.warning("Redis unavailable for session registry delete: %s", exc)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, deadline in self._expires_at.items() if deadline <= now]
        for key in expired:
            self._drop_degraded(key)
        return len(expired)

    def _degraded_entry(self, key: str) -> dict[str, str]:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self._clock():
            self._drop_degraded(key)
        return self._degraded.get(key, {})

    def _drop_degraded(self, key: str) -> None:
        self._degraded.pop(key, None)
        self._expires_at.pop(key, None)
