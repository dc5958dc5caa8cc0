import logging

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from taskflow_api.config import Settings
from taskflow_api.errors import DependencyUnavailableError

logger = logging.getLogger(__name__)


def create_redis(settings: Settings) -> aioredis.Redis:
    return aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )


async def check_redis(client: aioredis.Redis) -> None:
    """Fail fast when the queue backend is not reachable."""
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        raise DependencyUnavailableError("redis", str(e)) from e
    logger.info("Redis reachable")
