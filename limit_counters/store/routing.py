from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Mapping

from limit_counters.store.base import CounterStore
from limit_counters.store.keys import AddAndGetRequest, BucketKey


class RoutingCounterStore(CounterStore):
    """Sends requests flagged ``distributed`` to the shared store, the rest to the local one.

    Snapshots merge both stores; a bucket present in both reports the sum.
    """

    backend_name = "routing"

    def __init__(self, *, local: CounterStore, distributed: CounterStore) -> None:
        self.local = local
        self.distributed = distributed

    def add_and_get(self, requests: Iterable[AddAndGetRequest]) -> dict[BucketKey, int]:
        local_requests, distributed_requests = self._partition(requests)
        updated: dict[BucketKey, int] = {}
        if local_requests:
            updated.update(self.local.add_and_get(local_requests))
        if distributed_requests:
            updated.update(self.distributed.add_and_get(distributed_requests))
        return updated

    def add_and_get_with_limit(self, requests: Iterable[AddAndGetRequest]) -> dict[BucketKey, int]:
        local_requests, distributed_requests = self._partition(requests)
        updated: dict[BucketKey, int] = {}
        if local_requests:
            updated.update(self.local.add_and_get_with_limit(local_requests))
        if distributed_requests:
            updated.update(self.distributed.add_and_get_with_limit(distributed_requests))
        return updated

    def get_current_counters(
        self,
        resource: str | None = None,
        limit_name: str | None = None,
        property: str | None = None,
    ) -> Mapping[BucketKey, int]:
        merged = dict(self.local.get_current_counters(resource, limit_name, property))
        for key, value in self.distributed.get_current_counters(resource, limit_name, property).items():
            merged[key] = merged.get(key, 0) + value
        return MappingProxyType(merged)

    def override_key(self, key: BucketKey, new_value: int, *, distributed: bool = True) -> None:
        target = self.distributed if distributed else self.local
        target.override_key(key, new_value)

    def close(self) -> None:
        self.local.close()
        self.distributed.close()

    @staticmethod
    def _partition(
        requests: Iterable[AddAndGetRequest],
    ) -> tuple[list[AddAndGetRequest], list[AddAndGetRequest]]:
        local_requests: list[AddAndGetRequest] = []
        distributed_requests: list[AddAndGetRequest] = []
        for request in requests:
            (distributed_requests if request.distributed else local_requests).append(request)
        return local_requests, distributed_requests
