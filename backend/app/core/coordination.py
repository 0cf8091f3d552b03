"""Coordination store: TTL key-value, counters, sorted sets, hashes and pub/sub.

Used for durability of queue items, client states and pending conflicts. The
authoritative source for messages is the SQL message log, never this store.
"""
import fnmatch
import json
import logging
import threading
from abc import ABC, abstractmethod
from functools import lru_cache, wraps
from typing import Callable, Dict, List, Optional, Tuple

import redis

from app.core.clock import Clock, system_clock
from app.core.config import get_settings
from app.core.exceptions import CoordinationStoreError

logger = logging.getLogger(__name__)

# Walks the priority index in score order, prunes ids whose detail record
# expired, and removes the first due id. KEYS[1] = index key,
# ARGV = item key prefix, now in ms, scan limit.
CLAIM_SCRIPT = """
local ids = redis.call('ZRANGE', KEYS[1], 0, tonumber(ARGV[3]) - 1)
for _, id in ipairs(ids) do
  local raw = redis.call('GET', ARGV[1] .. id)
  if not raw then
    redis.call('ZREM', KEYS[1], id)
  else
    local item = cjson.decode(raw)
    if tonumber(item['scheduled_at_ms']) <= tonumber(ARGV[2]) then
      redis.call('ZREM', KEYS[1], id)
      return {id, raw}
    end
  end
end
return false
"""


class CoordinationStore(ABC):
    """Primitives the sync core needs. Every call is atomic on its own."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None, nx: bool = False) -> bool:
        """Set a value with an optional TTL in seconds. With ``nx`` only if absent."""

    @abstractmethod
    def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    def expire(self, key: str, ttl: int) -> bool:
        ...

    @abstractmethod
    def incr(self, key: str) -> int:
        ...

    @abstractmethod
    def zadd(self, key: str, member: str, score: float) -> None:
        ...

    @abstractmethod
    def zrem(self, key: str, *members: str) -> int:
        ...

    @abstractmethod
    def zscore(self, key: str, member: str) -> Optional[float]:
        ...

    @abstractmethod
    def zcard(self, key: str) -> int:
        ...

    @abstractmethod
    def hset(self, key: str, field: str, value: str) -> None:
        ...

    @abstractmethod
    def hget(self, key: str, field: str) -> Optional[str]:
        ...

    @abstractmethod
    def hgetall(self, key: str) -> Dict[str, str]:
        ...

    @abstractmethod
    def hdel(self, key: str, *fields: str) -> int:
        ...

    @abstractmethod
    def scan_keys(self, pattern: str) -> List[str]:
        ...

    @abstractmethod
    def publish(self, channel: str, message: str) -> int:
        ...

    @abstractmethod
    def subscribe(self, channel: str, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register a callback for a channel. Returns a function that unsubscribes."""

    @abstractmethod
    def claim_due(
        self,
        index_key: str,
        item_key_prefix: str,
        now_ms: int,
        scan_limit: int,
    ) -> Optional[Tuple[str, str]]:
        """Atomically remove the lowest-score due id from a priority index.

        An id is due when its detail record's ``scheduled_at_ms`` is not
        after ``now_ms``. Ids without a detail record are pruned. Returns
        ``(item_id, raw_detail)`` or None.
        """


def _wrap_redis_errors(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except redis.RedisError as e:
            logger.error(f"Coordination store command {func.__name__} failed: {e}")
            raise CoordinationStoreError(str(e)) from e
    return wrapper


class RedisCoordinationStore(CoordinationStore):
    """Redis-backed store shared by every worker process."""

    def __init__(self, client: redis.Redis):
        self.client = client
        self._claim = client.register_script(CLAIM_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisCoordinationStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    @_wrap_redis_errors
    def get(self, key):
        return self.client.get(key)

    @_wrap_redis_errors
    def set(self, key, value, ttl=None, nx=False):
        return bool(self.client.set(key, value, ex=ttl, nx=nx))

    @_wrap_redis_errors
    def delete(self, *keys):
        if not keys:
            return 0
        return self.client.delete(*keys)

    @_wrap_redis_errors
    def expire(self, key, ttl):
        return bool(self.client.expire(key, ttl))

    @_wrap_redis_errors
    def incr(self, key):
        return self.client.incr(key)

    @_wrap_redis_errors
    def zadd(self, key, member, score):
        self.client.zadd(key, {member: score})

    @_wrap_redis_errors
    def zrem(self, key, *members):
        if not members:
            return 0
        return self.client.zrem(key, *members)

    @_wrap_redis_errors
    def zscore(self, key, member):
        return self.client.zscore(key, member)

    @_wrap_redis_errors
    def zcard(self, key):
        return self.client.zcard(key)

    @_wrap_redis_errors
    def hset(self, key, field, value):
        self.client.hset(key, field, value)

    @_wrap_redis_errors
    def hget(self, key, field):
        return self.client.hget(key, field)

    @_wrap_redis_errors
    def hgetall(self, key):
        return self.client.hgetall(key)

    @_wrap_redis_errors
    def hdel(self, key, *fields):
        if not fields:
            return 0
        return self.client.hdel(key, *fields)

    @_wrap_redis_errors
    def scan_keys(self, pattern):
        return list(self.client.scan_iter(match=pattern, count=500))

    @_wrap_redis_errors
    def publish(self, channel, message):
        return self.client.publish(channel, message)

    @_wrap_redis_errors
    def subscribe(self, channel, callback):
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(**{channel: lambda message: callback(message["data"])})
        thread = pubsub.run_in_thread(sleep_time=0.05, daemon=True)

        def unsubscribe():
            thread.stop()
            pubsub.close()

        return unsubscribe

    @_wrap_redis_errors
    def claim_due(self, index_key, item_key_prefix, now_ms, scan_limit):
        result = self._claim(keys=[index_key], args=[item_key_prefix, now_ms, scan_limit])
        if not result:
            return None
        return result[0], result[1]


class MemoryCoordinationStore(CoordinationStore):
    """In-process store for tests and single-process development.

    TTLs are evaluated lazily against the injected clock. A single lock
    makes every primitive, including ``claim_due``, atomic across threads.
    """

    def __init__(self, clock: Clock = system_clock):
        self.clock = clock
        self._data: Dict[str, object] = {}
        self._expires_at: Dict[str, int] = {}
        self._subscribers: Dict[str, List[Callable[[str], None]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> bool:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self.clock.now_ms():
            self._data.pop(key, None)
            self._expires_at.pop(key, None)
        return key in self._data

    def _value(self, key: str, default_factory=None):
        if self._live(key):
            return self._data[key]
        if default_factory is None:
            return None
        value = default_factory()
        self._data[key] = value
        return value

    def get(self, key):
        with self._lock:
            value = self._value(key)
            return value if isinstance(value, str) else None

    def set(self, key, value, ttl=None, nx=False):
        with self._lock:
            if nx and self._live(key):
                return False
            self._data[key] = value
            if ttl is not None:
                self._expires_at[key] = self.clock.now_ms() + ttl * 1000
            else:
                self._expires_at.pop(key, None)
            return True

    def delete(self, *keys):
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(key):
                    removed += 1
                self._data.pop(key, None)
                self._expires_at.pop(key, None)
            return removed

    def expire(self, key, ttl):
        with self._lock:
            if not self._live(key):
                return False
            self._expires_at[key] = self.clock.now_ms() + ttl * 1000
            return True

    def incr(self, key):
        with self._lock:
            value = int(self._value(key) or 0) + 1
            self._data[key] = str(value)
            return value

    def zadd(self, key, member, score):
        with self._lock:
            self._value(key, dict)[member] = float(score)

    def zrem(self, key, *members):
        with self._lock:
            zset = self._value(key)
            if not zset:
                return 0
            removed = sum(1 for member in members if zset.pop(member, None) is not None)
            if not zset:
                self.delete(key)
            return removed

    def zscore(self, key, member):
        with self._lock:
            zset = self._value(key) or {}
            return zset.get(member)

    def zcard(self, key):
        with self._lock:
            return len(self._value(key) or {})

    def hset(self, key, field, value):
        with self._lock:
            self._value(key, dict)[field] = value

    def hget(self, key, field):
        with self._lock:
            return (self._value(key) or {}).get(field)

    def hgetall(self, key):
        with self._lock:
            return dict(self._value(key) or {})

    def hdel(self, key, *fields):
        with self._lock:
            hash_ = self._value(key)
            if not hash_:
                return 0
            removed = sum(1 for field in fields if hash_.pop(field, None) is not None)
            if not hash_:
                self.delete(key)
            return removed

    def scan_keys(self, pattern):
        with self._lock:
            return [key for key in list(self._data) if self._live(key) and fnmatch.fnmatchcase(key, pattern)]

    def publish(self, channel, message):
        with self._lock:
            callbacks = list(self._subscribers.get(channel, []))
        for callback in callbacks:
            callback(message)
        return len(callbacks)

    def subscribe(self, channel, callback):
        with self._lock:
            self._subscribers.setdefault(channel, []).append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(channel, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def claim_due(self, index_key, item_key_prefix, now_ms, scan_limit):
        with self._lock:
            zset = self._value(index_key) or {}
            candidates = sorted(zset.items(), key=lambda entry: (entry[1], entry[0]))[:scan_limit]
            for item_id, _score in candidates:
                raw = self.get(item_key_prefix + item_id)
                if raw is None:
                    self.zrem(index_key, item_id)
                    continue
                if json.loads(raw)["scheduled_at_ms"] <= now_ms:
                    self.zrem(index_key, item_id)
                    return item_id, raw
            return None


@lru_cache()
def get_coordination_store() -> CoordinationStore:
    """Process-wide store selected by ``COORDINATION_BACKEND``."""
    settings = get_settings()
    if settings.COORDINATION_BACKEND == "memory":
        logger.info("Coordination store running in memory mode")
        return MemoryCoordinationStore()
    logger.info("Coordination store connected to Redis")
    return RedisCoordinationStore.from_url(settings.REDIS_URL)
