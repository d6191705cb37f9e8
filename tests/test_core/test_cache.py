"""Tests for Redis caching utilities."""

from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from receptionist.core.cache import cache_delete, cache_get, cache_set


class TestCacheGetSet:
    """Test basic cache get and set operations."""

    @pytest.mark.asyncio
    async def test_cache_set_and_get_success(self, test_redis: Any) -> None:
        """Test setting and getting a cache value."""
        value = {"tenant_id": "abc", "slot_duration_minutes": 30}

        assert await cache_set("tenant:config:abc", value, ttl=60) is True
        assert await cache_get("tenant:config:abc") == value

    @pytest.mark.asyncio
    async def test_cache_get_nonexistent_key(self, test_redis: Any) -> None:
        """Test getting a non-existent cache key returns None."""
        assert await cache_get("nonexistent:key") is None

    @pytest.mark.asyncio
    async def test_cache_set_with_ttl(self, test_redis: Any) -> None:
        """Test that cache entries carry the requested TTL."""
        await cache_set("test:ttl", "temporary", ttl=30)

        ttl = await test_redis.ttl("test:ttl")
        assert 0 < ttl <= 30

    @pytest.mark.asyncio
    async def test_cache_set_serializes_non_json_values(self, test_redis: Any) -> None:
        """Values json cannot encode natively are stored as strings."""
        from datetime import time

        await cache_set("test:time", {"start": time(9, 0)})

        assert await cache_get("test:time") == {"start": "09:00:00"}

    @pytest.mark.asyncio
    async def test_cache_get_error_handling(self) -> None:
        """Test cache_get reports Redis errors as a miss."""
        with patch("receptionist.core.cache.get_redis") as mock_get_redis:
            mock_redis = AsyncMock()
            mock_redis.get = AsyncMock(side_effect=Exception("Redis error"))
            mock_get_redis.return_value = mock_redis

            assert await cache_get("test:key") is None

    @pytest.mark.asyncio
    async def test_cache_set_error_handling(self) -> None:
        """Test cache_set handles Redis errors gracefully."""
        with patch("receptionist.core.cache.get_redis") as mock_get_redis:
            mock_redis = AsyncMock()
            mock_redis.setex = AsyncMock(side_effect=Exception("Redis error"))
            mock_get_redis.return_value = mock_redis

            assert await cache_set("test:key", "value") is False

    @pytest.mark.asyncio
    async def test_unreachable_redis(self) -> None:
        """A failed connection is treated like any other Redis error."""
        with patch(
            "receptionist.core.cache.get_redis",
            AsyncMock(side_effect=ConnectionError("refused")),
        ):
            assert await cache_get("test:key") is None
            assert await cache_set("test:key", 1) is False
            assert await cache_delete("test:key") is False


class TestCacheDelete:
    """Test cache deletion."""

    @pytest.mark.asyncio
    async def test_cache_delete_existing_key(self, test_redis: Any) -> None:
        await cache_set("test:delete", "value")

        assert await cache_delete("test:delete") is True
        assert await cache_get("test:delete") is None

    @pytest.mark.asyncio
    async def test_cache_delete_nonexistent_key(self, test_redis: Any) -> None:
        assert await cache_delete("nonexistent:key") is True
