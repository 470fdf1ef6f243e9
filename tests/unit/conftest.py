"""
Shared fixtures: a fakeredis-backed store and a controllable clock.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import fakeredis
import pytest

from relaykit.services.store import RedisStore


class FakeClock:
    """Clock returning a fixed time until advanced."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, milliseconds: int = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(milliseconds=milliseconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
async def store() -> AsyncGenerator[RedisStore, None]:
    """Create store with fakeredis for testing."""
    redis_store = RedisStore(redis_url="redis://localhost:6379/0")

    # Replace the real Redis client with fakeredis
    fake_redis = fakeredis.FakeAsyncRedis(decode_responses=True)
    redis_store._client = fake_redis

    yield redis_store

    # Cleanup
    await fake_redis.flushdb()
    await fake_redis.aclose()
