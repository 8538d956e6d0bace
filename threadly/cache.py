from __future__ import annotations

import json
import logging
from typing import Callable, Optional

import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class ProfileCache:
    """Cache-aside store for public user profiles.

    Constructed once at startup and handed to request handlers through a
    dependency. Redis failures degrade to a cache miss.
    """

    PREFIX = "threadly:user"

    def __init__(self, client: redis.Redis, ttl_seconds: int = 300):
        self._client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 300) -> "ProfileCache":
        return cls(redis.Redis.from_url(url, decode_responses=True), ttl_seconds=ttl_seconds)

    def _key(self, user_id: int) -> str:
        return f"{self.PREFIX}:{int(user_id)}:profile"

    def get_or_load(self, user_id: int, loader: Callable[[], Optional[dict]]) -> Optional[dict]:
        key = self._key(user_id)
        try:
            cached = self._client.get(key)
        except RedisError as e:
            logger.warning("Profile cache read failed for user %s: %s", user_id, e)
            cached = None
        if cached:
            return json.loads(cached)

        value = loader()
        if value is None:
            return None
        try:
            self._client.setex(key, self.ttl_seconds, json.dumps(value, default=str))
        except RedisError as e:
            logger.warning("Profile cache write failed for user %s: %s", user_id, e)
        return value

    def invalidate_user(self, *user_ids: int) -> None:
        keys = [self._key(uid) for uid in user_ids]
        if not keys:
            return
        try:
            self._client.delete(*keys)
        except RedisError as e:
            logger.warning("Profile cache invalidation failed for users %s: %s", user_ids, e)

    def close(self) -> None:
        self._client.close()
