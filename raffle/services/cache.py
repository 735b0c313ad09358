"""Cache layer: key/value, hashes, atomic counters, TTLs and FIFO queues.

Two stores share the ``CacheStore`` protocol:

- ``RedisCacheStore`` for shared deployments (redis-py, Lua for the
  check-then-decrement so it stays a single atomic server-side step);
- ``MemoryCacheStore`` for a single process (dev, tests, CLI demos), which
  serialises every operation on one lock.
"""

import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from functools import wraps
from typing import ParamSpec, Protocol, TypeVar

import redis
import structlog

from raffle.services.errors import CacheUnavailableError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# decrement_if_positive sentinels
COUNTER_EXHAUSTED: int = -1
COUNTER_MISSING: int = -2

P = ParamSpec("P")
R = TypeVar("R")


class CacheStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    def set_if_absent(self, key: str, value: str, ttl: int | None = None) -> bool: ...

    def exists(self, key: str) -> bool: ...

    def delete(self, *keys: str) -> int: ...

    def replace_hash(self, key: str, mapping: Mapping[str, str], ttl: int | None = None) -> None: ...

    def hget(self, key: str, field: str) -> str | None: ...

    def decrement_if_positive(self, key: str) -> int: ...

    def push(self, key: str, value: str) -> None: ...

    def pop(self, key: str) -> str | None: ...

    def queue_length(self, key: str) -> int: ...


class CacheKeys:
    """Key layout. Every key lives under the configured prefix."""

    def __init__(self, prefix: str = "raffle") -> None:
        self.prefix: str = prefix

    def rate_range(self, table_key: str) -> str:
        return f"{self.prefix}:strategy_rate_range:{table_key}"

    def rate_table(self, table_key: str) -> str:
        return f"{self.prefix}:strategy_rate_table:{table_key}"

    def strategy(self, strategy_id: int) -> str:
        return f"{self.prefix}:strategy:{strategy_id}"

    def award_list(self, strategy_id: int) -> str:
        return f"{self.prefix}:strategy_award_list:{strategy_id}"

    def rule_value(self, strategy_id: int, award_id: int | None, rule_model: str) -> str:
        scope: str = str(award_id) if award_id is not None else "*"
        return f"{self.prefix}:strategy_rule:{strategy_id}:{scope}:{rule_model}"

    def rule_graph(self, graph_id: str) -> str:
        return f"{self.prefix}:rule_graph:{graph_id}"

    def award_count(self, strategy_id: int, award_id: int) -> str:
        return f"{self.prefix}:strategy_award_count:{strategy_id}_{award_id}"

    def award_exhausted(self, strategy_id: int, award_id: int) -> str:
        return f"{self.award_count(strategy_id, award_id)}:exhausted"

    def pending_sync_queue(self) -> str:
        return f"{self.prefix}:strategy_award_count_queue"


# ── Redis ─────────────────────────────────────────────────────────────────────

_DECREMENT_IF_POSITIVE_LUA: str = """
local current = redis.call('GET', KEYS[1])
if not current then
    return -2
end
if tonumber(current) <= 0 then
    return -1
end
return redis.call('DECR', KEYS[1])
"""


def _translate_errors(fn: Callable[P, R]) -> Callable[P, R]:
    @wraps(fn)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return fn(*args, **kwargs)
        except redis.RedisError as exc:
            logger.error("cache_operation_failed", operation=fn.__name__, error=str(exc))
            raise CacheUnavailableError(f"cache {fn.__name__} failed: {exc}") from exc

    return wrapper


class RedisCacheStore:
    """CacheStore on a Redis server. Values are decoded to ``str``."""

    def __init__(self, client: redis.Redis) -> None:
        self.client: redis.Redis = client
        self._decrement = client.register_script(_DECREMENT_IF_POSITIVE_LUA)

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 2.0) -> "RedisCacheStore":
        client: redis.Redis = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
        )
        return cls(client)

    @_translate_errors
    def get(self, key: str) -> str | None:
        return self.client.get(key)

    @_translate_errors
    def set(self, key: str, value: str, ttl: int | None = None) -> None:
        self.client.set(key, value, ex=ttl)

    @_translate_errors
    def set_if_absent(self, key: str, value: str, ttl: int | None = None) -> bool:
        return bool(self.client.set(key, value, ex=ttl, nx=True))

    @_translate_errors
    def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    @_translate_errors
    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*keys))

    @_translate_errors
    def replace_hash(self, key: str, mapping: Mapping[str, str], ttl: int | None = None) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(key)
        if mapping:
            pipe.hset(key, mapping=dict(mapping))
            if ttl is not None:
                pipe.expire(key, ttl)
        pipe.execute()

    @_translate_errors
    def hget(self, key: str, field: str) -> str | None:
        return self.client.hget(key, field)

    @_translate_errors
    def decrement_if_positive(self, key: str) -> int:
        return int(self._decrement(keys=[key]))

    @_translate_errors
    def push(self, key: str, value: str) -> None:
        self.client.rpush(key, value)

    @_translate_errors
    def pop(self, key: str) -> str | None:
        return self.client.lpop(key)

    @_translate_errors
    def queue_length(self, key: str) -> int:
        return int(self.client.llen(key))


# ── In-process ────────────────────────────────────────────────────────────────


class MemoryCacheStore:
    """CacheStore held in process memory. Thread-safe, not shared across processes."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock: Callable[[], float] = clock
        self._lock: threading.Lock = threading.Lock()
        self._values: dict[str, object] = {}
        self._expiry: dict[str, float] = {}

    def _live(self, key: str) -> object | None:
        deadline: float | None = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return None
        return self._values.get(key)

    def _store(self, key: str, value: object, ttl: int | None) -> None:
        self._values[key] = value
        if ttl is None:
            self._expiry.pop(key, None)
        else:
            self._expiry[key] = self._clock() + ttl

    def get(self, key: str) -> str | None:
        with self._lock:
            value: object | None = self._live(key)
            return value if isinstance(value, str) else None

    def set(self, key: str, value: str, ttl: int | None = None) -> None:
        with self._lock:
            self._store(key, value, ttl)

    def set_if_absent(self, key: str, value: str, ttl: int | None = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._store(key, value, ttl)
            return True

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    def delete(self, *keys: str) -> int:
        with self._lock:
            removed: int = 0
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._values.pop(key, None)
                self._expiry.pop(key, None)
            return removed

    def replace_hash(self, key: str, mapping: Mapping[str, str], ttl: int | None = None) -> None:
        with self._lock:
            if mapping:
                self._store(key, dict(mapping), ttl)
            else:
                self._values.pop(key, None)
                self._expiry.pop(key, None)

    def hget(self, key: str, field: str) -> str | None:
        with self._lock:
            value: object | None = self._live(key)
            return value.get(field) if isinstance(value, dict) else None

    def decrement_if_positive(self, key: str) -> int:
        with self._lock:
            value: object | None = self._live(key)
            if not isinstance(value, str):
                return COUNTER_MISSING
            current: int = int(value)
            if current <= 0:
                return COUNTER_EXHAUSTED
            # keep the remaining TTL
            self._values[key] = str(current - 1)
            return current - 1

    def push(self, key: str, value: str) -> None:
        with self._lock:
            queue: object | None = self._live(key)
            if not isinstance(queue, deque):
                queue = deque()
                self._store(key, queue, None)
            queue.append(value)

    def pop(self, key: str) -> str | None:
        with self._lock:
            queue: object | None = self._live(key)
            if not isinstance(queue, deque) or not queue:
                return None
            return queue.popleft()

    def queue_length(self, key: str) -> int:
        with self._lock:
            queue: object | None = self._live(key)
            return len(queue) if isinstance(queue, deque) else 0
