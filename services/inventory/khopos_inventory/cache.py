"""
Redis caching for inventory reports.

Valuation and low stock reports are cheap to serve from cache and expensive
to aggregate; the ledger invalidates them after every committed stock write.
"""
import json
import logging
from functools import lru_cache
from typing import Any, Callable, Optional

import redis

from .config import REDIS_URL, REPORT_CACHE_TTL

logger = logging.getLogger(__name__)

KEY_PREFIX = "inventory"


def _json_default(value: Any) -> str:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


class ReportCache:
    """
    Thin JSON cache over a redis client.

    Every operation is best-effort: a cache failure is logged and the caller
    falls back to the database. A cache built without a client is disabled.
    """

    def __init__(self, client: Optional[Any] = None, ttl: int = REPORT_CACHE_TTL):
        self.client = client
        self.ttl = ttl

    @property
    def enabled(self) -> bool:
        return self.client is not None

    @staticmethod
    def key(*parts: Any) -> str:
        return ":".join([KEY_PREFIX, *(str(p) for p in parts)])

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            value = self.client.get(key)
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Cache get error: {e}")
            return None

    def set(self, key: str, value: Any) -> bool:
        if not self.enabled:
            return False
        try:
            self.client.setex(key, self.ttl, json.dumps(value, default=_json_default))
            return True
        except Exception as e:
            logger.warning(f"Cache set error: {e}")
            return False

    def get_or_compute(self, key: str, compute: Callable[[], Any]) -> Any:
        """Return the cached value for key, computing and storing it on a miss."""
        cached = self.get(key)
        if cached is not None:
            return cached
        result = compute()
        if result is not None:
            self.set(key, result)
        return result

    def invalidate(self, pattern: str = f"{KEY_PREFIX}:*") -> bool:
        """Delete all report keys matching pattern."""
        if not self.enabled:
            return False
        try:
            keys = list(self.client.scan_iter(match=pattern))
            if keys:
                self.client.delete(*keys)
            return True
        except Exception as e:
            logger.warning(f"Cache invalidate error: {e}")
            return False


@lru_cache()
def get_report_cache() -> ReportCache:
    """Dependency returning the process-wide report cache."""
    if not REDIS_URL:
        return ReportCache(None)
    return ReportCache(redis.from_url(REDIS_URL, decode_responses=True))
