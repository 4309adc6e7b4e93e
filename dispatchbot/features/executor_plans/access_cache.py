"""
Executor access cache.

The order-visibility gate reads a short-lived per-chat record telling it which
phone the executor verified and whether that phone is blocked. Plan status
changes overwrite the record so the gate never serves a stale verdict.
"""

import json
import logging
from typing import Optional, Protocol

from redis import Redis

from dispatchbot.core.config import Settings, settings

logger = logging.getLogger("dispatchbot")

ACCESS_CACHE_KEY = "executor-access"


class AccessCacheRefresher(Protocol):
    """Sink notified after every status change of a plan."""

    def refresh(self, chat_id: int, *, phone: str, is_blocked: bool) -> None:
        """
        Replace the cached access record for ``chat_id``.

        Raises:
            Any backend error; callers log and continue.
        """
        ...


class RedisAccessCache:
    def __init__(self, redis_conn: Redis, settings_obj: Optional[Settings] = None):
        cfg = settings_obj or settings
        self.redis = redis_conn
        self.prefix = cfg.REDIS_KEY_PREFIX
        self.ttl_seconds = cfg.ACCESS_CACHE_TTL_SECONDS

    def key_for(self, chat_id: int) -> str:
        return f"{self.prefix}{ACCESS_CACHE_KEY}:{chat_id}"

    def refresh(self, chat_id: int, *, phone: str, is_blocked: bool) -> None:
        key = self.key_for(chat_id)
        record = json.dumps({"phone": phone, "isBlocked": is_blocked})
        self.redis.set(key, record, ex=self.ttl_seconds)
        logger.debug(f"[access_cache] refreshed chat={chat_id} blocked={is_blocked}")

    def read(self, chat_id: int) -> Optional[dict]:
        raw = self.redis.get(self.key_for(chat_id))
        if raw is None:
            return None
        return json.loads(raw)
