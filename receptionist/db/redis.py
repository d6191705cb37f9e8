"""Redis client used for the tenant configuration cache."""

import asyncio
import logging
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from redis.asyncio import ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from receptionist.core.config import settings

if TYPE_CHECKING:
    from redis.asyncio import Redis
else:
    Redis = object  # type: ignore[misc,assignment]

logger = logging.getLogger(__name__)

_client: "Redis | None" = None
_pool: ConnectionPool | None = None
_init_lock = asyncio.Lock()


def _build_client() -> "Redis":
    global _pool

    _pool = ConnectionPool.from_url(
        str(settings.REDIS_URL),
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
        # Tenant lookups sit on the call-start path; fail fast and fall back
        # to the database instead of stalling the caller.
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        socket_keepalive=True,
        health_check_interval=30,
    )
    return aioredis.Redis(
        connection_pool=_pool,
        retry=Retry(ExponentialBackoff(cap=0.5), retries=2),
        retry_on_error=[aioredis.ConnectionError, aioredis.TimeoutError],
    )


async def get_redis() -> "Redis":
    """Return the shared Redis client, connecting on first use."""
    global _client

    async with _init_lock:
        if _client is None:
            client = _build_client()
            try:
                await client.ping()
            except Exception:
                logger.exception("Failed to initialize Redis connection")
                await client.aclose()
                raise
            _client = client
            logger.info("Redis connection pool initialized")

    return _client


async def close_redis() -> None:
    """Close the Redis client and its connection pool."""
    global _client, _pool

    if _client is not None:
        try:
            await _client.aclose()
        except Exception:
            logger.exception("Error closing Redis client")
        finally:
            _client = None

    if _pool is not None:
        try:
            await _pool.disconnect()
        except Exception:
            logger.exception("Error closing Redis pool")
        finally:
            _pool = None
