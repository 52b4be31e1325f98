from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Mapping

from limit_counters.store.keys import AddAndGetRequest, BucketKey

# Reported for a failed entry under FailurePolicy.FAIL_CLOSED; exceeds any sane limit.
FAIL_CLOSED_COUNT = 2**31 - 1


class FailurePolicy(str, Enum):
    OMIT = "omit"
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"

    def placeholder(self) -> int | None:
        if self is FailurePolicy.FAIL_OPEN:
            return 0
        if self is FailurePolicy.FAIL_CLOSED:
            return FAIL_CLOSED_COUNT
        return None


class CounterStore(ABC):
    """Time-bucketed rate-limit counters.

    Every operation is safe for concurrent callers. Results map each request's
    bucket key to the bucket's total after the increment.
    """

    backend_name = "abstract"

    @abstractmethod
    def add_and_get(self, requests: Iterable[AddAndGetRequest]) -> dict[BucketKey, int]:
        raise NotImplementedError

    @abstractmethod
    def add_and_get_with_limit(self, requests: Iterable[AddAndGetRequest]) -> dict[BucketKey, int]:
        """Increment buckets without going past each request's limit.

        The previous bucket's count, weighted by ``previous_bucket_weight`` and
        rounded up, is carried into both the ceiling check and the reported total.
        """
        raise NotImplementedError

    @abstractmethod
    def get_current_counters(
        self,
        resource: str | None = None,
        limit_name: str | None = None,
        property: str | None = None,
    ) -> Mapping[BucketKey, int]:
        """Snapshot of live buckets; may be costly on remote backends."""
        raise NotImplementedError

    @abstractmethod
    def override_key(self, key: BucketKey, new_value: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        """Release backend resources. Not idempotent."""
        raise NotImplementedError

    def add_and_get_one(self, request: AddAndGetRequest) -> tuple[BucketKey, int | None]:
        key = BucketKey.from_request(request)
        return key, self.add_and_get([request]).get(key)

    def increment_and_get(
        self,
        resource: str,
        limit_name: str,
        property: str,
        distributed: bool,
        expiration: timedelta,
        event_timestamp: datetime,
        cost: int = 1,
    ) -> tuple[BucketKey, int | None]:
        return self.add_and_get_one(
            AddAndGetRequest(
                resource=resource,
                limit_name=limit_name,
                property=property,
                distributed=distributed,
                expiration=expiration,
                event_timestamp=event_timestamp,
                cost=cost,
            )
        )
