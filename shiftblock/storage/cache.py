import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import redis

from shiftblock.config.settings import get_settings
from shiftblock.models.entities import BlockChange, FailureKind, MoveResult

settings = get_settings()
logger = logging.getLogger(__name__)

MOVE_PREFIX = "move:"


class MemoryCacheBackend:
    def __init__(self):
        self._lock = threading.Lock()
        self._store: Dict[str, Tuple[datetime, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            expires_at, value = item
            if datetime.utcnow() >= expires_at:
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        expires_at = datetime.utcnow() + timedelta(seconds=max(1, int(ttl)))
        with self._lock:
            self._store[key] = (expires_at, value)

    def delete_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [k for k in self._store if k.startswith(prefix)]:
                self._store.pop(key, None)

    def ping(self) -> bool:
        return True


class RedisCacheBackend:
    def __init__(self, redis_url: str):
        self._client = redis.from_url(redis_url, decode_responses=True)

    def get(self, key: str) -> Optional[Any]:
        raw = self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int) -> None:
        self._client.setex(key, max(1, int(ttl)), json.dumps(value, default=str))

    def delete_prefix(self, prefix: str) -> None:
        cursor = 0
        while True:
            cursor, keys = self._client.scan(cursor=cursor, match=f"{prefix}*", count=200)
            if keys:
                self._client.delete(*keys)
            if cursor == 0:
                break

    def ping(self) -> bool:
        return bool(self._client.ping())


class MoveCache:
    """
    Cache of planned moves, keyed by snapshot fingerprint and request.

    A committed change bumps the revision and so changes the fingerprint;
    `invalidate_all` additionally drops every stored plan after an apply.
    Redis errors are logged and treated as misses.
    """

    def __init__(self, backend=None, ttl_seconds: Optional[int] = None):
        self.backend = backend or self._build_backend()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.cache_ttl_seconds

    @staticmethod
    def _build_backend():
        if settings.cache_backend == "redis":
            return RedisCacheBackend(settings.redis_url)
        return MemoryCacheBackend()

    @staticmethod
    def move_key(fingerprint: str, block_id: int, day: int, hour: int, engine: str) -> str:
        return f"{MOVE_PREFIX}{fingerprint}:{block_id}:{day}:{hour}:{engine}"

    def get(self, key: str) -> Optional[Dict]:
        """Retrieve a cached plan, or None on miss or backend failure."""
        try:
            return self.backend.get(key)
        except redis.RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    def set(self, key: str, payload: Dict) -> None:
        try:
            self.backend.set(key, payload, self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    def invalidate_all(self) -> None:
        try:
            self.backend.delete_prefix(MOVE_PREFIX)
        except redis.RedisError as e:
            logger.warning(f"Cache invalidation failed: {e}")

    def health_check(self) -> bool:
        try:
            return self.backend.ping()
        except redis.RedisError:
            return False


def encode_result(result: MoveResult, engine_used: str) -> Dict:
    return {
        "success": result.success,
        "message": result.message,
        "failure": result.failure.value if result.failure else None,
        "engine_used": engine_used,
        "changes": [
            {
                "block_id": c.block_id,
                "old_day": c.old_day,
                "old_hour": c.old_hour,
                "new_day": c.new_day,
                "new_hour": c.new_hour,
                "description": c.description,
            }
            for c in result.changes
        ],
    }


def decode_result(payload: Dict) -> Tuple[MoveResult, str]:
    result = MoveResult(
        success=payload["success"],
        message=payload["message"],
        changes=tuple(BlockChange(**c) for c in payload["changes"]),
        failure=FailureKind(payload["failure"]) if payload.get("failure") else None,
    )
    return result, payload["engine_used"]
