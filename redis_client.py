"""
redis_client.py — Optional Redis connection shared by the job store, the
bingo state cache and the batch-job rate limiter.

get_redis() connects on first use and returns None when REDIS_URL is unset
or the server does not answer a PING; callers then keep their data in
per-process dicts.  The outcome is remembered until reset_redis(), so a
missing server costs one connection attempt per process, not one per call.
"""

import logging
import os
from urllib.parse import urlparse, urlunparse

import redis

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 3

_client: redis.Redis | None = None
_resolved = False


def get_redis() -> redis.Redis | None:
    global _client, _resolved
    if _resolved:
        return _client
    _resolved = True
    _client = _connect(os.getenv('REDIS_URL', '').strip())
    return _client


def reset_redis() -> None:
    """Drop the remembered outcome; the next get_redis() reads REDIS_URL again."""
    global _client, _resolved
    if _client is not None:
        _client.close()
    _client = None
    _resolved = False


def _connect(url: str) -> redis.Redis | None:
    if not url:
        logger.info('REDIS_URL not set; job state, state cache and rate limits are per-process')
        return None
    client = redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=CONNECT_TIMEOUT_SECONDS,
        socket_timeout=CONNECT_TIMEOUT_SECONDS,
    )
    try:
        client.ping()
    except redis.RedisError as exc:
        logger.warning('Redis at %s unavailable (%s); using in-memory stores', _redact_url(url), exc)
        return None
    logger.info('Redis connected: %s', _redact_url(url))
    return client


def _redact_url(url: str) -> str:
    p = urlparse(url)
    if not p.password:
        return url
    netloc = f'{p.username or ""}:***@{p.hostname}' + (f':{p.port}' if p.port else '')
    return urlunparse(p._replace(netloc=netloc))
