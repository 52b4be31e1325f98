from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from redis.exceptions import RedisError

from limit_counters.core.errors import (
    BackendUnavailableError,
    CloseError,
    InvalidArgumentError,
    ResourceLoadError,
)
from limit_counters.infrastructure.observability import MetricsCollector, RequestTimer
from limit_counters.infrastructure.script_loader import COUNTER_SCRIPT_PATH, load_counter_script
from limit_counters.store.base import CounterStore, FailurePolicy
from limit_counters.store.in_memory import carried_over
from limit_counters.store.keys import EPOCH, AddAndGetRequest, BucketKey, CounterFilter

logger = logging.getLogger(__name__)

KEY_DELIMITER = "|"
NO_CEILING = -1
_MICROSECOND = timedelta(microseconds=1)
_GLOB_SPECIAL = set("*?[]\\")


def _escape_glob(value: str) -> str:
    return "".join(f"\\{char}" if char in _GLOB_SPECIAL else char for char in value)


def _ensure_encodable(field: str, value: str) -> None:
    if KEY_DELIMITER in value:
        raise InvalidArgumentError(f"{field} must not contain '{KEY_DELIMITER}': {value!r}")


def encode_key(prefix: str, key: BucketKey) -> str:
    _ensure_encodable("key prefix", prefix)
    _ensure_encodable("resource", key.resource)
    _ensure_encodable("limit name", key.limit_name)
    _ensure_encodable("property", key.property)
    bucket_us = (key.bucket - EPOCH) // _MICROSECOND
    expiration_us = key.expiration // _MICROSECOND
    return KEY_DELIMITER.join(
        [prefix, key.resource, key.limit_name, key.property, str(bucket_us), str(expiration_us)]
    )


def decode_key(prefix: str, name: str | bytes) -> BucketKey | None:
    if isinstance(name, bytes):
        name = name.decode("utf-8")
    parts = name.split(KEY_DELIMITER)
    if len(parts) != 6 or parts[0] != prefix:
        return None
    try:
        bucket_us = int(parts[4])
        expiration_us = int(parts[5])
    except ValueError:
        return None
    if expiration_us <= 0:
        return None
    return BucketKey(
        resource=parts[1],
        limit_name=parts[2],
        property=parts[3],
        bucket=EPOCH + timedelta(microseconds=bucket_us),
        expiration=timedelta(microseconds=expiration_us),
    )


def _parse_count(value: str | bytes) -> int | None:
    try:
        return int(value)
    except ValueError:
        return None


def ttl_seconds(expiration: timedelta, multiplier: int = 1) -> int:
    return max(1, int(math.ceil(expiration.total_seconds() * multiplier)))


class DistributedCounterStore(CounterStore):
    """Counters shared between processes through Redis.

    Each increment is a single server-side script call that reads the bucket,
    adds the cost (capped when a ceiling is given), writes it back and refreshes
    the bucket's TTL. Redis expires buckets on its own, so there is no client
    side sweep. No local lock is held while talking to Redis.
    """

    backend_name = "redis"

    def __init__(
        self,
        client: Any,
        *,
        key_prefix: str = "limit-counters",
        failure_policy: FailurePolicy = FailurePolicy.OMIT,
        on_failure: Callable[[AddAndGetRequest, BackendUnavailableError], None] | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] | None = None,
        scan_batch_size: int = 500,
        script_source: str | None = None,
    ) -> None:
        _ensure_encodable("key prefix", key_prefix)
        self._client = client
        self.key_prefix = key_prefix
        self.failure_policy = FailurePolicy(failure_policy)
        self._on_failure = on_failure
        self._metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._scan_batch_size = max(1, scan_batch_size)

        source = script_source if script_source is not None else load_counter_script()
        try:
            client.script_load(source)
            self._script = client.register_script(source)
        except RedisError as exc:
            logger.error("Unable to load counter script into Redis", exc_info=exc)
            raise ResourceLoadError(str(COUNTER_SCRIPT_PATH), exc) from exc

    def key_name(self, key: BucketKey) -> str:
        return encode_key(self.key_prefix, key)

    def add_and_get(self, requests: Iterable[AddAndGetRequest]) -> dict[BucketKey, int]:
        updated: dict[BucketKey, int] = {}
        for request, key, name in self._prepare(requests):
            try:
                updated[key] = self._run_script(
                    name,
                    cost=request.cost,
                    ceiling=NO_CEILING,
                    already_counted=0,
                    ttl=ttl_seconds(key.expiration),
                )
            except BackendUnavailableError as exc:
                self._handle_failure(request, key, exc, updated)
            else:
                self._record_increment(success=True)
        return updated

    def add_and_get_with_limit(self, requests: Iterable[AddAndGetRequest]) -> dict[BucketKey, int]:
        updated: dict[BucketKey, int] = {}
        for request, key, name in self._prepare(requests):
            try:
                previous = self._read_count(self.key_name(key.previous()))
                carried = carried_over(previous, request.previous_bucket_weight)
                current = self._run_script(
                    name,
                    cost=request.cost,
                    ceiling=NO_CEILING if request.limit is None else request.limit,
                    already_counted=carried,
                    ttl=ttl_seconds(key.expiration, multiplier=2),
                )
            except BackendUnavailableError as exc:
                self._handle_failure(request, key, exc, updated)
            else:
                updated[key] = current + carried
                self._record_increment(success=True)
        return updated

    def get_current_counters(
        self,
        resource: str | None = None,
        limit_name: str | None = None,
        property: str | None = None,
    ) -> Mapping[BucketKey, int]:
        criteria = CounterFilter(resource=resource, limit_name=limit_name, property=property)
        snapshot: dict[BucketKey, int] = {}
        # No stored key can hold the delimiter, so such a filter matches nothing.
        if any(KEY_DELIMITER in value for value in (resource, limit_name, property) if value is not None):
            return MappingProxyType(snapshot)
        now = self._clock()
        try:
            names = list(
                self._client.scan_iter(match=self._match_pattern(criteria), count=self._scan_batch_size)
            )
            for start in range(0, len(names), self._scan_batch_size):
                chunk = names[start : start + self._scan_batch_size]
                for name, value in zip(chunk, self._client.mget(chunk)):
                    # The key may have expired between SCAN and MGET.
                    if value is None:
                        continue
                    key = decode_key(self.key_prefix, name)
                    count = _parse_count(value)
                    if key is None or count is None or not criteria.matches(key) or key.is_expired(now):
                        continue
                    snapshot[key] = count
        except RedisError as exc:
            raise BackendUnavailableError(f"Unable to list counters: {exc}") from exc
        return MappingProxyType(snapshot)

    def override_key(self, key: BucketKey, new_value: int) -> None:
        if new_value < 0:
            raise InvalidArgumentError(f"counter value must not be negative, got {new_value}")
        name = self.key_name(key)
        try:
            self._client.set(name, int(new_value), ex=ttl_seconds(key.expiration))
        except RedisError as exc:
            raise BackendUnavailableError(f"Unable to override {name}: {exc}", key_name=name) from exc

    def close(self) -> None:
        try:
            self._client.close()
        except (RedisError, OSError) as exc:
            logger.error("Failed to close Redis counter backend", exc_info=exc)
            raise CloseError(f"Unable to close Redis counter backend: {exc}") from exc

    def _prepare(
        self, requests: Iterable[AddAndGetRequest]
    ) -> list[tuple[AddAndGetRequest, BucketKey, str]]:
        # Encode every key first so a malformed entry fails before Redis is touched.
        prepared = []
        for request in requests:
            key = BucketKey.from_request(request)
            prepared.append((request, key, self.key_name(key)))
        return prepared

    def _run_script(self, name: str, *, cost: int, ceiling: int, already_counted: int, ttl: int) -> int:
        timer = RequestTimer.start()
        try:
            result = self._script(keys=[name], args=[cost, ceiling, already_counted, ttl])
        except RedisError as exc:
            raise BackendUnavailableError(f"Counter script failed for {name}: {exc}", key_name=name) from exc
        finally:
            if self._metrics is not None:
                self._metrics.record_backend_call(operation="counter_script", duration_ms=timer.elapsed_ms())
        return int(result)

    def _read_count(self, name: str) -> int:
        timer = RequestTimer.start()
        try:
            value = self._client.get(name)
        except RedisError as exc:
            raise BackendUnavailableError(f"Unable to read {name}: {exc}", key_name=name) from exc
        finally:
            if self._metrics is not None:
                self._metrics.record_backend_call(operation="get", duration_ms=timer.elapsed_ms())
        return int(value) if value is not None else 0

    def _handle_failure(
        self,
        request: AddAndGetRequest,
        key: BucketKey,
        exc: BackendUnavailableError,
        updated: dict[BucketKey, int],
    ) -> None:
        logger.warning(
            "Counter backend unavailable for %s/%s, applying %s",
            key.resource,
            key.limit_name,
            self.failure_policy.value,
            exc_info=exc,
        )
        self._record_increment(success=False)
        placeholder = self.failure_policy.placeholder()
        if placeholder is not None:
            updated[key] = placeholder
        if self._on_failure is not None:
            self._on_failure(request, exc)

    def _match_pattern(self, criteria: CounterFilter) -> str:
        parts = [_escape_glob(self.key_prefix)]
        for value in (criteria.resource, criteria.limit_name, criteria.property):
            if value is None:
                break
            parts.append(_escape_glob(value))
        return KEY_DELIMITER.join(parts) + KEY_DELIMITER + "*"

    def _record_increment(self, *, success: bool) -> None:
        if self._metrics is not None:
            self._metrics.record_increment(backend=self.backend_name, success=success)
