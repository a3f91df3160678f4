import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, RedisError

from config import Settings

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class LocalCache:
    """
    Cache mémoire propre à l'instance, expiration par TTL uniquement.

    Pas de limite de taille: l'espace de clés attendu est minuscule
    (un agrégat scalaire par instance).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Tuple[Any, bool]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None, False
            return entry.value, True

    def set(self, key: str, value: Any, ttl: float):
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def clear(self):
        with self._lock:
            self._entries.clear()


def create_redis_client(settings: Settings) -> redis.Redis:
    # Configuration avec résilience; valeurs brutes (bytes)
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        decode_responses=False,
        socket_connect_timeout=settings.redis_timeout,
        socket_timeout=settings.redis_timeout,
        retry_on_timeout=True,
        health_check_interval=30
    )


class SharedCache:
    """Cache Redis partagé entre instances; une panne Redis = cache miss"""

    def __init__(self, client: redis.Redis):
        self.client = client

    async def get_serialized(self, key: str) -> Tuple[Optional[bytes], bool]:
        try:
            cached = await self.client.get(key)
        except RedisConnectionError as e:
            logger.error(f"[REDIS DOWN] {e} - Fallback to DB")
            return None, False
        except RedisError as e:
            logger.error(f"[REDIS ERROR] {e}")
            return None, False
        if cached is None:
            logger.info(f"[CACHE MISS] {key}")
            return None, False
        logger.info(f"[CACHE HIT] {key}")
        return cached, True

    async def set_serialized(self, key: str, payload: bytes, ttl: int) -> bool:
        try:
            await self.client.setex(key, ttl, payload)
        except RedisConnectionError as e:
            logger.error(f"[REDIS DOWN] Cannot cache: {e}")
            return False
        except RedisError as e:
            logger.error(f"[CACHE SET FAILED] {e}")
            return False
        logger.info(f"[CACHE SET] {key} with TTL {ttl}s")
        return True

    async def ping(self) -> bool:
        try:
            await self.client.ping()
            return True
        except RedisError:
            return False

    async def close(self):
        await self.client.aclose()
