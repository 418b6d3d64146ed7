from collections.abc import AsyncIterator

from redis.asyncio import Redis

from payment_providers.core.config import get_settings
from payment_providers.core.logging import get_logger

logger = get_logger(__name__)


async def get_redis_client() -> AsyncIterator[Redis | None]:
    """Yield a client for the callback idempotency guard, None when no redis_url is configured."""
    settings = get_settings()
    if not settings.redis_url:
        yield None
        return

    try:
        client = Redis.from_url(settings.redis_url)
    except ValueError as exc:
        logger.warning("redis.unavailable", error=str(exc))
        yield None
        return

    try:
        yield client
    finally:
        await client.aclose()
