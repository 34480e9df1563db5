"""Redis client factory with connection retry logic."""

import time
import random

import redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from .errors import RedisStartupError
from .security import get_logger, mask_url

logger = get_logger(__name__)


def create_redis_client(
    redis_url: str,
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0
) -> redis.Redis:
    """Create Redis client with exponential backoff retry.

    Args:
        redis_url: Redis connection URL
        max_retries: Maximum connection attempts (default 5)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay cap in seconds

    Returns:
        Connected Redis client (decode_responses=True)

    Raises:
        RedisStartupError: If connection fails after all retries
    """
    last_error = None

    for attempt in range(max_retries):
        try:
            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
            if attempt:
                logger.info("Connected to Redis at %s after %d attempts", mask_url(redis_url), attempt + 1)
            return client
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            last_error = e
            delay = min(base_delay * (2 ** attempt), max_delay)
            jitter = delay * 0.25 * (2 * random.random() - 1)
            actual_delay = delay + jitter

            logger.warning(
                "Redis connection failed (attempt %d/%d): %s", attempt + 1, max_retries, str(e)
            )

            if attempt < max_retries - 1:
                logger.info("Retrying in %.1fs...", actual_delay)
                time.sleep(actual_delay)

    raise RedisStartupError(
        f"Failed to connect to Redis at {mask_url(redis_url)} after {max_retries} attempts: {last_error}"
    )
