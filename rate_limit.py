"""
rate_limit.py — Per-client limits on batch job creation.

Every batch job fans out to the generation backend, which in turn calls a paid
image/text service.  Limits are keyed by (client_id, endpoint) so each flow
has an independent budget.

Redis path:  sorted set  ratelimit:client:{client_id}:{endpoint}
             members are timestamps; ZREMRANGEBYSCORE prunes the window.
Fallback:    in-memory dict per-worker (resets on restart).
"""

import logging
import threading
import time
from collections import defaultdict

from redis import RedisError

from redis_client import get_redis

logger = logging.getLogger(__name__)

RATE_LIMIT_RULES: dict[str, tuple[int, int]] = {
    # endpoint_key -> (max_requests, window_seconds)
    'fix-missing-images':    (10, 600),
    'generate-all-images':   (5,  600),
    'generate-descriptions': (10, 600),
}

_client_requests: dict = defaultdict(list)  # (client_id, endpoint) -> [timestamp, ...] (fallback)
_client_rate_lock = threading.Lock()


def check_client_rate_limit(client_id: str, endpoint: str) -> tuple[bool, int]:
    """
    Check whether client_id is within its limit for the given endpoint key.

    Returns (allowed, retry_after_seconds).  If allowed, the request is also
    recorded.  If not, retry_after_seconds is the time until the oldest
    request in the window expires.
    """
    rule = RATE_LIMIT_RULES.get(endpoint)
    if rule is None:
        return True, 0   # unknown endpoint

    max_requests, window = rule
    now = time.time()
    r = get_redis()

    if r is not None:
        try:
            rkey = f'ratelimit:client:{client_id}:{endpoint}'
            pipe = r.pipeline()
            pipe.zremrangebyscore(rkey, '-inf', now - window)
            pipe.zrange(rkey, 0, -1, withscores=True)
            pipe.expire(rkey, window)
            _, entries, _ = pipe.execute()

            if len(entries) >= max_requests:
                oldest_score = min(score for _, score in entries)
                return False, int(window - (now - oldest_score)) + 1

            r.zadd(rkey, {str(now): now})
            r.expire(rkey, window)
            return True, 0
        except RedisError as exc:
            logger.warning('Redis client rate-limit error: %s, falling back', exc)

    mem_key = (client_id, endpoint)
    with _client_rate_lock:
        _client_requests[mem_key] = [t for t in _client_requests[mem_key] if now - t < window]

        if len(_client_requests[mem_key]) >= max_requests:
            oldest = min(_client_requests[mem_key])
            return False, int(window - (now - oldest)) + 1

        _client_requests[mem_key].append(now)
        return True, 0


def reset_rate_limits() -> None:
    """Clear the in-memory fallback counters."""
    with _client_rate_lock:
        _client_requests.clear()
