"""Redis caching utilities.

Every helper swallows Redis failures and reports them as a cache miss, so a
Redis outage degrades tenant lookups to a database read instead of failing
the call.
"""

import json
import logging
from typing import Any

from receptionist.db.redis import get_redis

logger = logging.getLogger(__name__)


async def cache_get(key: str) -> Any | None:
    """Get value from cache.

    Args:
        key: Cache key

    Returns:
        Cached value or None if not found or error occurred
    """
    try:
        redis = await get_redis()
        value = await redis.get(key)

        if value is not None:
            logger.debug("Cache hit: %s", key)
            return json.loads(value)

        logger.debug("Cache miss: %s", key)
        return None

    except Exception:
        logger.exception("Error getting from cache key '%s'", key)
        return None


async def cache_set(key: str, value: Any, ttl: int = 300) -> bool:
    """Set value in cache with TTL.

    Args:
        key: Cache key
        value: Value to cache (must be JSON serializable)
        ttl: Time to live in seconds (default: 300)

    Returns:
        True if successful, False otherwise
    """
    try:
        redis = await get_redis()
        serialized = json.dumps(value, default=str)
        await redis.setex(key, ttl, serialized)
        logger.debug("Cache set: %s (TTL: %ss)", key, ttl)
        return True

    except Exception:
        logger.exception("Error setting cache key '%s'", key)
        return False


async def cache_delete(key: str) -> bool:
    """Delete value from cache.

    Returns:
        True if successful, False otherwise
    """
    try:
        redis = await get_redis()
        await redis.delete(key)
        logger.debug("Cache deleted: %s", key)
        return True

    except Exception:
        logger.exception("Error deleting cache key '%s'", key)
        return False
