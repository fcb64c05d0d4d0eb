"""
Redis client factory and key helpers.

Redis is optional: with REDIS_URL unset, or the server unreachable,
callers get None and keep generated sessions in process memory.
"""
import logging
from typing import Optional
from urllib.parse import urlsplit

import redis
from redis.exceptions import RedisError

from core.config import settings

logger = logging.getLogger(__name__)

KEY_SEPARATOR = ":"


def _redacted(url: str) -> str:
    parts = urlsplit(url)
    host = parts.hostname or ""
    port = f":{parts.port}" if parts.port else ""
    return f"{parts.scheme}://{host}{port}{parts.path}"


def get_redis_client(url: Optional[str] = None) -> Optional[redis.Redis]:
    """Return a connected client, or None when Redis is unset or down."""
    url = url or settings.REDIS_URL
    if not url:
        logger.info("REDIS_URL not set, using local session cache")
        return None

    client = redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
        retry_on_timeout=True,
    )
    try:
        client.ping()
    except RedisError as e:
        logger.warning(f"Redis at {_redacted(url)} unavailable, using local session cache: {e}")
        return None
    logger.info(f"Connected to Redis at {_redacted(url)}")
    return client


def cache_key(*parts) -> str:
    """Join non-empty key parts, e.g. ``session:generated:gen_1``."""
    return KEY_SEPARATOR.join(str(p) for p in parts if p not in (None, ""))
