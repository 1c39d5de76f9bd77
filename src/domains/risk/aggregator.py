"""Rolling aggregator: per-entity expiring count/sum windows.

Each (entity, field) pair owns one fixed window per tracked window size. A
window starts at its first observation and is reset lazily, on the next
read or write, once it is older than its size. There is no background
sweep; the aggregator is the only component allowed to expire state.

Two backends share the same contract:
- InMemoryRollingAggregator: striped locks, values replaced atomically.
- RedisRollingAggregator: one Lua script per observation so that the
  reset check and both increments happen as a single Redis operation.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import NamedTuple

import structlog
from redis.exceptions import RedisError

from .config import AggregatorConfig
from .errors import AggregatorUnavailableError, ConfigurationError, UnknownWindowError
from .models import Aggregation

logger = structlog.get_logger()


class AggregateKey(NamedTuple):
    entity_id: str
    field: str
    window_seconds: int


@dataclass(frozen=True)
class AggregateValue:
    count: int
    sum: float
    window_start: float  # epoch seconds

    def expired(self, now_ts: float, window_seconds: int) -> bool:
        return now_ts - self.window_start > window_seconds


def aggregate(count: int, total: float, aggregation: Aggregation) -> float:
    """Reduce a window to the requested aggregation; avg is 0 when empty."""
    if aggregation == Aggregation.COUNT:
        return float(count)
    if aggregation == Aggregation.SUM:
        return float(total)
    if aggregation == Aggregation.AVG:
        return total / count if count > 0 else 0.0
    raise ValueError(f"Unsupported aggregation: {aggregation}")


class RollingAggregator(ABC):
    """Contract shared by all aggregator backends."""

    def __init__(self, config: AggregatorConfig | None = None) -> None:
        self._config = config or AggregatorConfig()
        self._windows: frozenset[int] = frozenset(self._config.windows_seconds)

    @property
    def windows(self) -> frozenset[int]:
        return self._windows

    @property
    def fields(self) -> tuple[str, ...]:
        return self._config.fields

    @property
    def max_window_seconds(self) -> int:
        return self._config.max_window_seconds

    def track_window(self, window_seconds: int) -> None:
        """Start maintaining a window size. New windows begin empty."""
        if not 0 < window_seconds <= self._config.max_window_seconds:
            raise ConfigurationError(
                f"Window {window_seconds}s outside (0, {self._config.max_window_seconds}]"
            )
        if window_seconds not in self._windows:
            self._windows = self._windows | {window_seconds}
            logger.info("aggregation_window_tracked", window_seconds=window_seconds)

    def _require_window(self, window_seconds: int) -> None:
        if window_seconds not in self._windows:
            raise UnknownWindowError(f"Window {window_seconds}s is not tracked")

    @abstractmethod
    async def observe(self, entity_id: str, field: str, amount: float, now: datetime) -> None:
        """Add one observation to every tracked window of (entity_id, field)."""
        ...

    @abstractmethod
    async def query(
        self,
        entity_id: str,
        field: str,
        aggregation: Aggregation,
        window_seconds: int,
        now: datetime,
    ) -> float:
        """Return the aggregation over the current window, 0 when expired or absent."""
        ...

    async def close(self) -> None:
        return None


class InMemoryRollingAggregator(RollingAggregator):
    """Process-local backend for single-instance deployments and tests."""

    def __init__(self, config: AggregatorConfig | None = None, purge_every: int = 1000) -> None:
        super().__init__(config)
        self._values: dict[AggregateKey, AggregateValue] = {}
        self._locks = [threading.Lock() for _ in range(self._config.shard_count)]
        self._purge_every = purge_every
        self._observations = 0

    def _lock_for(self, entity_id: str, field: str) -> threading.Lock:
        return self._locks[hash((entity_id, field)) % len(self._locks)]

    async def observe(self, entity_id: str, field: str, amount: float, now: datetime) -> None:
        now_ts = now.timestamp()
        with self._lock_for(entity_id, field):
            for window in self._windows:
                key = AggregateKey(entity_id, field, window)
                current = self._values.get(key)
                if current is None or current.expired(now_ts, window):
                    current = AggregateValue(count=0, sum=0.0, window_start=now_ts)
                # Replace rather than mutate so readers never see a half-applied value
                self._values[key] = AggregateValue(
                    count=current.count + 1,
                    sum=current.sum + amount,
                    window_start=current.window_start,
                )
            self._observations += 1
            purge = self._observations % self._purge_every == 0
        if purge:
            self.purge_expired(now)

    async def query(
        self,
        entity_id: str,
        field: str,
        aggregation: Aggregation,
        window_seconds: int,
        now: datetime,
    ) -> float:
        self._require_window(window_seconds)
        key = AggregateKey(entity_id, field, window_seconds)
        current = self._values.get(key)
        if current is None:
            return aggregate(0, 0.0, aggregation)
        if current.expired(now.timestamp(), window_seconds):
            with self._lock_for(entity_id, field):
                if self._values.get(key) is current:
                    del self._values[key]
            return aggregate(0, 0.0, aggregation)
        return aggregate(current.count, current.sum, aggregation)

    def purge_expired(self, now: datetime) -> int:
        """Drop every expired window. Runs inline, never on a timer."""
        now_ts = now.timestamp()
        expired = [
            key for key, value in list(self._values.items())
            if value.expired(now_ts, key.window_seconds)
        ]
        for key in expired:
            with self._lock_for(key.entity_id, key.field):
                value = self._values.get(key)
                if value is not None and value.expired(now_ts, key.window_seconds):
                    del self._values[key]
        if expired:
            logger.debug("aggregation_windows_purged", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._values)


# KEYS: one hash per window. ARGV[1]=amount, ARGV[2]=now, ARGV[3..]=window sizes.
_OBSERVE_LUA = """
local amount = tonumber(ARGV[1])
local now = tonumber(ARGV[2])
for i, key in ipairs(KEYS) do
  local window = tonumber(ARGV[i + 2])
  local start = tonumber(redis.call('HGET', key, 'start'))
  if (not start) or (now - start > window) then
    redis.call('DEL', key)
    redis.call('HSET', key, 'start', now)
    start = now
  end
  redis.call('HINCRBY', key, 'count', 1)
  redis.call('HINCRBYFLOAT', key, 'sum', amount)
  redis.call('EXPIRE', key, math.ceil(start + window - now) + 1)
end
return #KEYS
"""


class RedisRollingAggregator(RollingAggregator):
    """Shared backend so every engine replica sees the same counters."""

    def __init__(self, client, config: AggregatorConfig | None = None) -> None:
        super().__init__(config)
        self._client = client
        self._observe_script = client.register_script(_OBSERVE_LUA)

    def _key(self, entity_id: str, field: str, window_seconds: int) -> str:
        return f"{self._config.key_prefix}:{entity_id}:{field}:{window_seconds}"

    async def observe(self, entity_id: str, field: str, amount: float, now: datetime) -> None:
        windows = sorted(self._windows)
        keys = [self._key(entity_id, field, w) for w in windows]
        try:
            await self._observe_script(keys=keys, args=[amount, now.timestamp(), *windows])
        except RedisError as exc:
            logger.warning("aggregator_observe_failed", entity_id=entity_id, error=str(exc))
            raise AggregatorUnavailableError(str(exc)) from exc

    async def query(
        self,
        entity_id: str,
        field: str,
        aggregation: Aggregation,
        window_seconds: int,
        now: datetime,
    ) -> float:
        self._require_window(window_seconds)
        try:
            start, count, total = await self._client.hmget(
                self._key(entity_id, field, window_seconds), ["start", "count", "sum"]
            )
        except RedisError as exc:
            logger.warning("aggregator_query_failed", entity_id=entity_id, error=str(exc))
            raise AggregatorUnavailableError(str(exc)) from exc

        if start is None:
            return aggregate(0, 0.0, aggregation)
        if now.timestamp() - float(start) > window_seconds:
            return aggregate(0, 0.0, aggregation)
        return aggregate(int(count or 0), float(total or 0.0), aggregation)

    async def close(self) -> None:
        await self._client.aclose()
