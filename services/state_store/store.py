"""
State store client used by the loyalty aggregators.

Two capability groups are needed:

- counters: atomic ``increment`` plus a TTL set with ``set_expiry``
  (or ``expire_if_unset``, which never replaces an existing TTL);
- ordered sets: ``add_scored``, ``purge_below`` and ``range_all``.

``RedisStateStore`` maps them one-to-one onto INCR/EXPIRE and the sorted-set
commands, so every call is a single round-trip and atomicity per key comes
from Redis itself. ``InMemoryStateStore`` offers the same contract inside one
process, guarded by a per-key mutex; it is only correct for single-instance
deployments and is what the test-suite runs against.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple

import redis
from redis.exceptions import RedisError

from common.config import RedisConfig
from common.errors import StateStoreUnavailableError

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    def increment(self, key: str) -> int: ...

    def set_expiry(self, key: str, ttl_seconds: int) -> None: ...

    def expire_if_unset(self, key: str, ttl_seconds: int) -> bool: ...

    def get(self, key: str) -> Optional[int]: ...

    def delete(self, key: str) -> bool: ...

    def add_scored(self, key: str, member: str, score: float) -> None: ...

    def purge_below(self, key: str, score_ceiling: float) -> int: ...

    def range_all(self, key: str) -> List[str]: ...


@contextmanager
def _translate_errors(operation: str, key: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        raise StateStoreUnavailableError(f"Redis {operation} failed for key {key!r}: {e}") from e


class RedisStateStore:
    """``StateStore`` backed by a Redis server (responses decoded to ``str``)."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    def increment(self, key: str) -> int:
        with _translate_errors("INCR", key):
            return int(self._client.incr(key))

    def set_expiry(self, key: str, ttl_seconds: int) -> None:
        with _translate_errors("EXPIRE", key):
            self._client.expire(key, int(ttl_seconds))

    def expire_if_unset(self, key: str, ttl_seconds: int) -> bool:
        # TTL is -1 for a key without expiry and -2 for a missing key. Only one
        # worker owns a card at a time, so TTL followed by EXPIRE cannot race.
        with _translate_errors("TTL", key):
            if self._client.ttl(key) != -1:
                return False
        with _translate_errors("EXPIRE", key):
            return bool(self._client.expire(key, int(ttl_seconds)))

    def get(self, key: str) -> Optional[int]:
        with _translate_errors("GET", key):
            value = self._client.get(key)
        if value is None:
            return None
        return int(value)

    def delete(self, key: str) -> bool:
        with _translate_errors("DEL", key):
            return bool(self._client.delete(key))

    def add_scored(self, key: str, member: str, score: float) -> None:
        with _translate_errors("ZADD", key):
            self._client.zadd(key, {member: score})

    def purge_below(self, key: str, score_ceiling: float) -> int:
        # "(" makes the upper bound exclusive: entries scored exactly at the
        # ceiling are still inside the window.
        with _translate_errors("ZREMRANGEBYSCORE", key):
            return int(self._client.zremrangebyscore(key, "-inf", f"({score_ceiling}"))

    def range_all(self, key: str) -> List[str]:
        with _translate_errors("ZRANGE", key):
            return list(self._client.zrange(key, 0, -1))

    def close(self) -> None:
        self._client.close()


def build_redis_store(cfg: RedisConfig) -> RedisStateStore:
    logger.info("Connecting to Redis (host=%s, port=%s, db=%s)", cfg.host, cfg.port, cfg.db)
    client = redis.Redis(
        host=cfg.host,
        port=cfg.port,
        db=cfg.db,
        password=cfg.password,
        socket_timeout=cfg.socket_timeout_seconds,
        socket_connect_timeout=cfg.socket_timeout_seconds,
        decode_responses=True,
    )
    return RedisStateStore(client)


class InMemoryStateStore:
    """
    Process-local ``StateStore`` with the same semantics as Redis.

    Expiry is evaluated lazily against ``clock`` on every access, so tests can
    move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._counters: Dict[str, int] = {}
        self._sets: Dict[str, Dict[str, float]] = {}
        self._expiry: Dict[str, float] = {}
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks[key]
        with lock:
            self._expire_if_due(key)
            yield

    def _expire_if_due(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._drop(key)

    def _drop(self, key: str) -> bool:
        existed = key in self._counters or key in self._sets
        self._counters.pop(key, None)
        self._sets.pop(key, None)
        self._expiry.pop(key, None)
        return existed

    def increment(self, key: str) -> int:
        with self._locked(key):
            self._counters[key] = self._counters.get(key, 0) + 1
            return self._counters[key]

    def set_expiry(self, key: str, ttl_seconds: int) -> None:
        with self._locked(key):
            if key in self._counters or key in self._sets:
                self._expiry[key] = self._clock() + ttl_seconds

    def expire_if_unset(self, key: str, ttl_seconds: int) -> bool:
        with self._locked(key):
            if key in self._expiry or not (key in self._counters or key in self._sets):
                return False
            self._expiry[key] = self._clock() + ttl_seconds
            return True

    def get(self, key: str) -> Optional[int]:
        with self._locked(key):
            return self._counters.get(key)

    def delete(self, key: str) -> bool:
        with self._locked(key):
            return self._drop(key)

    def add_scored(self, key: str, member: str, score: float) -> None:
        with self._locked(key):
            self._sets.setdefault(key, {})[member] = score

    def purge_below(self, key: str, score_ceiling: float) -> int:
        with self._locked(key):
            members = self._sets.get(key)
            if not members:
                return 0
            expired = [m for m, s in members.items() if s < score_ceiling]
            for m in expired:
                del members[m]
            if not members:
                self._drop(key)
            return len(expired)

    def range_all(self, key: str) -> List[str]:
        with self._locked(key):
            members = self._sets.get(key, {})
            ordered: List[Tuple[float, str]] = sorted((s, m) for m, s in members.items())
            return [m for _, m in ordered]

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, or None when it has no expiry."""
        with self._locked(key):
            deadline = self._expiry.get(key)
            return None if deadline is None else deadline - self._clock()


__all__ = ["InMemoryStateStore", "RedisStateStore", "StateStore", "build_redis_store"]
