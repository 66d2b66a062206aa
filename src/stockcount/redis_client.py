"""Redis connection for the caller accuracy store.

``get_redis_client`` returns ``None`` whenever Redis is disabled or cannot be
reached, and callers switch to in-memory storage.

Environment:
    REDIS_ENABLED: "false" disables Redis entirely
    REDIS_URL: full connection URL; takes precedence over the fields below
    REDIS_HOST, REDIS_PORT, REDIS_DB, REDIS_PASSWORD: individual settings
"""

import logging
import os
from typing import Any

import redis

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 2


def redis_enabled() -> bool:
    return os.environ.get("REDIS_ENABLED", "true").lower() != "false"


def _connection_settings(host: str | None, port: int | None, db: int | None) -> dict[str, Any]:
    return {
        "host": host or os.environ.get("REDIS_HOST", "localhost"),
        "port": port or int(os.environ.get("REDIS_PORT", "6379")),
        "db": db if db is not None else int(os.environ.get("REDIS_DB", "0")),
        "password": os.environ.get("REDIS_PASSWORD") or None,
    }


def get_redis_client(
    host: str | None = None,
    port: int | None = None,
    db: int | None = None,
    decode_responses: bool = True,
) -> redis.Redis | None:
    """Connect to Redis and verify the connection with a ping.

    Explicit arguments override the environment. ``REDIS_URL`` is used only
    when no host is passed.

    Args:
        host: Redis host
        port: Redis port
        db: Redis database number
        decode_responses: Whether to decode responses to strings

    Returns:
        A connected client, or None if Redis is disabled or unreachable
    """
    if not redis_enabled():
        logger.info("Redis is disabled via REDIS_ENABLED environment variable")
        return None

    url = os.environ.get("REDIS_URL")
    options = {
        "decode_responses": decode_responses,
        "socket_connect_timeout": CONNECT_TIMEOUT_SECONDS,
        "socket_timeout": CONNECT_TIMEOUT_SECONDS,
    }
    if url and host is None:
        target = url.rsplit("@", 1)[-1]
        client = redis.Redis.from_url(url, **options)
    else:
        settings = _connection_settings(host, port, db)
        target = f"{settings['host']}:{settings['port']}/{settings['db']}"
        client = redis.Redis(**settings, **options)

    try:
        client.ping()
    except redis.ConnectionError as e:
        logger.warning("Could not connect to Redis at %s: %s", target, e)
        return None
    except redis.RedisError as e:
        logger.error("Unexpected Redis error connecting to %s: %s", target, e)
        return None

    logger.info("Connected to Redis at %s", target)
    return client
