from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from threading import Lock
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

from limit_counters.core.errors import InvalidArgumentError
from limit_counters.infrastructure.observability import MetricsCollector
from limit_counters.store.base import CounterStore
from limit_counters.store.counter import Counter, CounterRetiredError
from limit_counters.store.keys import (
    AddAndGetRequest,
    BucketKey,
    CounterFilter,
    OverrideKeyRequest,
    as_utc,
)

logger = logging.getLogger(__name__)


def carried_over(previous_count: int, weight: float) -> int:
    # Rounded before ceil so that 10 * 0.3 carries 3, not 4.
    return int(math.ceil(round(previous_count * weight, 9)))


class LocalCounterStore(CounterStore):
    """Counters kept in process memory.

    Not shareable between processes; use the Redis store for that.
    """

    backend_name = "local"

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.lock = Lock()
        self._counters: dict[BucketKey, Counter] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._metrics = metrics

    def add_and_get(self, requests: Iterable[AddAndGetRequest]) -> dict[BucketKey, int]:
        updated: dict[BucketKey, int] = {}
        for request in requests:
            key = BucketKey.from_request(request)
            cost = request.cost
            updated[key] = self._apply(key, lambda counter: counter.add_and_get(cost))
            self._record_increment()
        self._remove_expired_entries(self._clock())
        return updated

    def add_and_get_with_limit(self, requests: Iterable[AddAndGetRequest]) -> dict[BucketKey, int]:
        updated: dict[BucketKey, int] = {}
        latest: datetime | None = None
        for request in requests:
            key = BucketKey.from_request(request)
            carried = carried_over(self._peek(key.previous()), request.previous_bucket_weight)
            cost, ceiling = request.cost, request.limit
            if ceiling is None:
                current = self._apply(key, lambda counter: counter.add_and_get(cost))
            else:
                current = self._apply(
                    key,
                    lambda counter: counter.add_and_get_with_ceiling(cost, ceiling, carried),
                )
            updated[key] = current + carried
            self._record_increment()

            timestamp = as_utc(request.event_timestamp)
            if latest is None or timestamp > latest:
                latest = timestamp
        if latest is not None:
            self._remove_expired_entries(latest, multiplier=2)
        return updated

    def get_current_counters(
        self,
        resource: str | None = None,
        limit_name: str | None = None,
        property: str | None = None,
    ) -> Mapping[BucketKey, int]:
        self._remove_expired_entries(self._clock())
        criteria = CounterFilter(resource=resource, limit_name=limit_name, property=property)
        with self.lock:
            snapshot = {
                key: counter.get() for key, counter in self._counters.items() if criteria.matches(key)
            }
        return MappingProxyType(snapshot)

    def override_key(self, key: BucketKey, new_value: int) -> None:
        self.override_keys([OverrideKeyRequest(key=key, new_value=new_value)])

    def override_keys(self, overrides: Iterable[OverrideKeyRequest]) -> None:
        with self.lock:
            for override in overrides:
                counter = self._counters.get(override.key)
                if counter is None:
                    self._counters[override.key] = Counter(override.new_value)
                else:
                    counter.set(override.new_value)
        self._remove_expired_entries(self._clock())

    def apply_on_each(self, action: Callable[[BucketKey, Counter], None]) -> None:
        with self.lock:
            entries = list(self._counters.items())
        for key, counter in entries:
            action(key, counter)

    def close(self) -> None:
        with self.lock:
            for counter in self._counters.values():
                counter.retire()
            self._counters.clear()

    def _apply(self, key: BucketKey, operation: Callable[[Counter], int]) -> int:
        while True:
            counter = self._counter_for(key)
            try:
                return operation(counter)
            except CounterRetiredError:
                # Evicted between lookup and increment; start over on a fresh counter.
                continue

    def _counter_for(self, key: BucketKey) -> Counter:
        with self.lock:
            counter = self._counters.get(key)
            if counter is None:
                counter = Counter()
                self._counters[key] = counter
            return counter

    def _peek(self, key: BucketKey) -> int:
        with self.lock:
            counter = self._counters.get(key)
        return counter.get() if counter is not None else 0

    def _remove_expired_entries(self, now: datetime, multiplier: int = 1) -> int:
        if multiplier < 1:
            raise InvalidArgumentError(f"expiry multiplier must be at least 1, got {multiplier}")
        with self.lock:
            expired = [key for key in self._counters if key.is_expired(now, multiplier)]
            for key in expired:
                self._counters.pop(key).retire()
        if expired:
            logger.debug("Evicted %d expired counter buckets", len(expired))
            if self._metrics is not None:
                self._metrics.record_evictions(backend=self.backend_name, count=len(expired))
        return len(expired)

    def _record_increment(self) -> None:
        if self._metrics is not None:
            self._metrics.record_increment(backend=self.backend_name, success=True)
