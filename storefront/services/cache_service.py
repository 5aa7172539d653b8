"""
Shared Redis store for string maps (runtime settings snapshots).

Every process keeps its own short-lived snapshot; Redis is the layer they
share so a settings change made by one worker is seen by the others after
one invalidation. When Redis is disabled or unreachable every read is a miss
and callers fall through to the database.
"""

import logging
from typing import Dict, Optional

import redis
from redis.exceptions import RedisError, ConnectionError, TimeoutError
from flask import Flask

logger = logging.getLogger(__name__)


class CacheService:
    """
    Redis hashes keyed `{prefix}:{module}:{key}`, one field per entry.

    Values are flat `str -> str` maps; an empty map is never stored.
    """

    def __init__(self, app: Optional[Flask] = None, client: Optional[redis.Redis] = None,
                 prefix: str = 'storefront', default_ttl: int = 60):
        self.client = client
        self._enabled = client is not None
        self._prefix = prefix
        self._default_ttl = default_ttl

        if app:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        self._enabled = app.config.get('CACHE_ENABLED', True)
        self._prefix = app.config.get('CACHE_KEY_PREFIX', self._prefix)
        self._default_ttl = int(app.config.get('CACHE_DEFAULT_TTL', self._default_ttl))

        if not self._enabled:
            logger.info("[CACHE] Shared cache disabled via config")
            return

        redis_url = app.config.get('REDIS_URL', 'redis://localhost:6379/0')
        try:
            self.client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
                retry_on_timeout=True,
                health_check_interval=30,
            )
            self.client.ping()
            logger.info(f"[CACHE] Redis connected: {redis_url}")
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"[CACHE] Redis unavailable ({e}); settings will be read from the database")
            self._enabled = False
            self.client = None

    @property
    def enabled(self) -> bool:
        return self._enabled and self.client is not None

    def _key(self, module: str, key: str) -> str:
        return f"{self._prefix}:{module}:{key}"

    def get(self, module: str, key: str) -> Optional[Dict[str, str]]:
        """Stored map, or None on a miss or a Redis error."""
        if not self.enabled:
            return None
        try:
            values = self.client.hgetall(self._key(module, key))
        except RedisError as e:
            logger.warning(f"[CACHE] Read of {module}:{key} failed: {e}")
            return None
        return dict(values) if values else None

    def set(self, module: str, key: str, value: Dict[str, str], ttl: Optional[int] = None) -> bool:
        """Replace the stored map atomically. Returns True when stored."""
        if not self.enabled or not value:
            return False
        full_key = self._key(module, key)
        try:
            pipe = self.client.pipeline()
            pipe.delete(full_key)
            pipe.hset(full_key, mapping={str(k): str(v) for k, v in value.items()})
            pipe.expire(full_key, int(ttl or self._default_ttl))
            pipe.execute()
            return True
        except RedisError as e:
            logger.warning(f"[CACHE] Write of {module}:{key} failed: {e}")
            return False

    def delete(self, module: str, key: str) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(self.client.delete(self._key(module, key)))
        except RedisError as e:
            logger.warning(f"[CACHE] Delete of {module}:{key} failed: {e}")
            return False


_cache_service: Optional[CacheService] = None


def init_cache(app: Flask) -> CacheService:
    global _cache_service
    _cache_service = CacheService(app)
    app.extensions['cache'] = _cache_service
    return _cache_service


def get_cache() -> CacheService:
    if _cache_service is None:
        raise RuntimeError("Cache not initialized.")
    return _cache_service
