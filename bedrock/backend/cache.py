"""Bedrock — Cache-aside store backed by Redis with an in-memory fallback."""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from backend.exceptions import CacheFailure

logger = logging.getLogger("bedrock.cache")


@dataclass
class CacheEntry:
    key: str
    value: str
    expires_at: float


class InMemoryCache:
    """Fallback key/value store when Redis is unavailable.

    Expiration is passive: an entry is dropped when a read finds it past
    `expires_at`.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._entries.pop(key, None)
            return None
        return entry.value

    def set(self, key: str, value: str, ttl: float):
        self._entries[key] = CacheEntry(key, value, self._clock() + ttl)

    def delete(self, key: str):
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class CacheStore:
    """JSON cache with per-key TTL.

    Every failure of the underlying store is logged and reported as a miss
    (or a falsy result for writes); callers always fall back to the upstream.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        use_redis: bool = False,
        key_prefix: str = "bedrock:",
        client=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._redis_url = redis_url
        self._use_redis = use_redis
        self._prefix = key_prefix
        self._redis = client
        self._memory = InMemoryCache(clock=clock)

    async def connect(self):
        if self._redis is not None:
            return
        if self._use_redis:
            try:
                import redis.asyncio as aioredis
                self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
                await self._redis.ping()
                logger.info("Connected to Redis at %s", self._redis_url)
            except Exception as e:
                logger.warning("Redis unavailable (%s), falling back to in-memory cache", e)
                self._redis = None
                self._use_redis = False
        else:
            logger.info("Using in-memory cache (Redis disabled)")

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    async def ping(self) -> bool:
        if self._redis is None:
            return True
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    # ── Store access ───────────────────────────────────────────────
    # Backend and decode errors surface as CacheFailure; the public
    # methods below turn that into a miss or a falsy result.

    async def _store(self, op: str, call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await call()
        except Exception as e:
            raise CacheFailure(f"Cache {op} failed: {e}", details={"backend": self.backend}) from e

    async def _read(self, key: str) -> Optional[str]:
        if self._redis is not None:
            return await self._store("get", lambda: self._redis.get(self._k(key)))
        return self._memory.get(self._k(key))

    async def _write(self, key: str, payload: str, ttl: int):
        if self._redis is not None:
            await self._store("set", lambda: self._redis.set(self._k(key), payload, ex=ttl))
        else:
            self._memory.set(self._k(key), payload, ttl)

    @staticmethod
    def _decode(raw: str) -> Any:
        try:
            return json.loads(raw)
        except ValueError as e:
            raise CacheFailure(f"Corrupt cache entry: {e}") from e

    @staticmethod
    def _encode(value: Any) -> str:
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            raise CacheFailure(f"Value is not serialisable: {e}") from e

    # ── Public API ─────────────────────────────────────────────────

    async def get(self, key: str) -> Any:
        """Return the cached value, or None on a miss, expiry or store failure."""
        try:
            raw = await self._read(key)
            if raw is None:
                logger.debug("Cache miss: %s", key)
                return None
            value = self._decode(raw)
        except CacheFailure as e:
            logger.error("Cache get error for %s: %s", key, e.message)
            return None
        logger.debug("Cache hit: %s", key)
        return value

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        try:
            await self._write(key, self._encode(value), ttl)
        except CacheFailure as e:
            logger.error("Cache set error for %s: %s", key, e.message)
            return False
        logger.debug("Cached: %s (TTL: %ss)", key, ttl)
        return True

    async def delete(self, key: str) -> bool:
        try:
            if self._redis is not None:
                await self._store("delete", lambda: self._redis.delete(self._k(key)))
            else:
                self._memory.delete(self._k(key))
        except CacheFailure as e:
            logger.error("Cache delete error for %s: %s", key, e.message)
            return False
        return True

    async def exists(self, key: str) -> bool:
        try:
            if self._redis is not None:
                return bool(await self._store("exists", lambda: self._redis.exists(self._k(key))))
            return self._memory.get(self._k(key)) is not None
        except CacheFailure as e:
            logger.error("Cache exists error for %s: %s", key, e.message)
            return False

    async def mset(self, mapping: dict[str, Any], ttl: int = 3600) -> bool:
        try:
            payloads = {key: self._encode(value) for key, value in mapping.items()}
            if self._redis is not None:
                async def pipeline():
                    async with self._redis.pipeline(transaction=True) as pipe:
                        for key, payload in payloads.items():
                            pipe.set(self._k(key), payload, ex=ttl)
                        await pipe.execute()

                await self._store("mset", pipeline)
            else:
                for key, payload in payloads.items():
                    self._memory.set(self._k(key), payload, ttl)
        except CacheFailure as e:
            logger.error("Cache mset error: %s", e.message)
            return False
        logger.debug("Cached multiple keys: %s", ", ".join(mapping))
        return True

    async def mget(self, keys: list[str]) -> dict[str, Any]:
        """Return only the keys that hit."""
        if not keys:
            return {}
        try:
            if self._redis is not None:
                values = await self._store("mget", lambda: self._redis.mget([self._k(k) for k in keys]))
            else:
                values = [self._memory.get(self._k(k)) for k in keys]
            return {k: self._decode(v) for k, v in zip(keys, values) if v is not None}
        except CacheFailure as e:
            logger.error("Cache mget error: %s", e.message)
            return {}

    async def get_or_fetch(self, key: str, ttl: int, fetch: Callable[[], Awaitable[Any]]) -> Any:
        """Cache-aside read: return the cached value or fetch, store and return it.

        Fetch errors propagate; nothing is cached for a failed fetch.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await fetch()
        await self.set(key, value, ttl)
        return value

    async def close(self):
        if self._redis is not None:
            await self._redis.close()
