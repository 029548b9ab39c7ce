"""
city_state.py — Cached bingo state for Travel Bingo.

The backend owns cities and items; this module keeps the most recent copy of
GET /api/bingo-state so routes and flows can look cities up without a round
trip each time.  CityStateCache.refresh is the "state refresh" collaborator
passed to batch_runner: once a batch finishes, the next read sees the newly
generated images and descriptions.

Cached in Redis under cache:bingo_state when available, otherwise in memory.
"""

import logging
import time

from pydantic import ValidationError
from redis import RedisError

from generation_client import GenerationClient
from redis_client import get_redis
from schemas import BingoState, City

logger = logging.getLogger(__name__)

STATE_CACHE_KEY   = 'cache:bingo_state'
STATE_TTL_SECONDS = 300


class CityStateCache:

    def __init__(self, client: GenerationClient, ttl: int = STATE_TTL_SECONDS):
        self._client = client
        self._ttl = ttl
        self._local: tuple[float, BingoState] | None = None   # fallback when Redis is unavailable

    def _read(self) -> BingoState | None:
        r = get_redis()
        if r is not None:
            try:
                raw = r.get(STATE_CACHE_KEY)
                if raw is not None:
                    return BingoState.model_validate_json(raw)
            except RedisError as exc:
                logger.warning('Redis state cache GET error: %s', exc)
            except ValidationError as exc:
                logger.warning('Cached bingo state is unreadable, refetching: %d error(s)', exc.error_count())
            return None
        if self._local and (time.time() - self._local[0]) < self._ttl:
            return self._local[1]
        return None

    def _write(self, state: BingoState) -> None:
        r = get_redis()
        if r is not None:
            try:
                r.setex(STATE_CACHE_KEY, self._ttl, state.model_dump_json(by_alias=True))
            except RedisError as exc:
                logger.warning('Redis state cache SET error: %s', exc)
            return
        self._local = (time.time(), state)

    async def refresh(self) -> BingoState:
        """Refetch the state from the backend and replace the cached copy."""
        state = await self._client.fetch_bingo_state()
        self._write(state)
        logger.info('Bingo state refreshed: %d cities', len(state.cities))
        return state

    async def get_state(self) -> BingoState:
        return self._read() or await self.refresh()

    async def get_city(self, city_id: str) -> City | None:
        state = await self.get_state()
        return state.cities.get(city_id)
