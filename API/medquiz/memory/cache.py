from __future__ import annotations

import redis.asyncio as redis

from medquiz.core.settings import settings

redis_client = redis.from_url(settings.redis_url, decode_responses=True)
