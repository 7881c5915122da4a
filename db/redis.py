"""Redis connection for the shared deployment history backend.

Only initialized when DEPLOYMENT_HISTORY_BACKEND=redis. The connection test
at startup is retried with exponential backoff; history reads and writes are
not retried here and surface their errors to the caller.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, TypeVar

import redis.asyncio as redis
from redis.exceptions import BusyLoadingError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from config import get_settings
from utils.logging import get_logger

logger = get_logger(__name__)

redis_client: redis.Redis | None = None

T = TypeVar("T")

# Transient failures worth another connection attempt
REDIS_RETRYABLE_EXCEPTIONS = (
    RedisConnectionError,
    RedisTimeoutError,
    BusyLoadingError,  # Redis is loading its dataset
    ConnectionError,
    TimeoutError,
    OSError,
)


def calculate_backoff(attempt: int, base_delay: float = 0.5, max_delay: float = 4.0) -> float:
    """Exponential backoff with jitter, capped at max_delay plus jitter."""
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + random.uniform(0, 0.5)


async def with_retry(
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 0.5,
    operation_name: str = "Redis operation",
    **kwargs: Any,
) -> T:
    """Await operation, retrying transient Redis errors.

    Raises:
        The last exception once retries are exhausted, or immediately for a
        non-retryable error.
    """
    for attempt in range(max_retries + 1):
        try:
            return await operation(*args, **kwargs)
        except REDIS_RETRYABLE_EXCEPTIONS as e:
            if attempt >= max_retries:
                logger.error(
                    f"{operation_name} failed after {max_retries + 1} attempts. "
                    f"Last error: {type(e).__name__}: {e}"
                )
                raise

            delay = calculate_backoff(attempt, base_delay)
            logger.warning(
                f"{operation_name} attempt {attempt + 1}/{max_retries + 1} failed: "
                f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise RuntimeError(f"Unexpected state in retry for {operation_name}")


async def init_redis() -> redis.Redis:
    """Create the client from REDIS_URL and verify the connection."""
    global redis_client
    settings = get_settings()
    if not settings.redis_url:
        raise ValueError("REDIS_URL must be set for the redis history backend")

    logger.info("Initializing Redis connection")
    redis_client = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await with_retry(redis_client.ping, operation_name="Redis connection test")
    logger.info("Redis connection initialized")
    return redis_client


async def close_redis() -> None:
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
        logger.info("Redis connection closed")


def get_redis() -> redis.Redis | None:
    return redis_client
