"""Redis connection configuration."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import Request


def create_redis(redis_url: str) -> redis.Redis:
    """Create a Redis client for the given URL."""
    return redis.from_url(redis_url, decode_responses=True)


@asynccontextmanager
async def redis_connection(redis_url: str) -> AsyncIterator[redis.Redis]:
    """Open a Redis client for the duration of the block."""
    client = create_redis(redis_url)
    try:
        yield client
    finally:
        await client.aclose()


async def get_redis(request: Request) -> redis.Redis:
    """Get the application's Redis client instance."""
    return request.app.state.redis
