from __future__ import annotations

from datetime import datetime
from typing import Callable

from limit_counters.core.config import Settings
from limit_counters.infrastructure.observability import MetricsCollector
from limit_counters.infrastructure.persistence_clients import RedisClientManager
from limit_counters.store.base import CounterStore, FailurePolicy
from limit_counters.store.in_memory import LocalCounterStore
from limit_counters.store.redis_store import DistributedCounterStore
from limit_counters.store.routing import RoutingCounterStore


def build_counter_store(
    settings: Settings | None = None,
    *,
    metrics: MetricsCollector | None = None,
    clock: Callable[[], datetime] | None = None,
    redis_manager: RedisClientManager | None = None,
) -> CounterStore:
    """Build a new store for the given settings; each call returns an independent instance."""
    settings = settings or Settings.from_env()
    local = LocalCounterStore(clock=clock, metrics=metrics)
    if not settings.distributed_enabled:
        return local

    manager = redis_manager or RedisClientManager.from_settings(settings)
    if manager.client is None:
        manager.connect()
    distributed = DistributedCounterStore(
        manager.require_client(),
        key_prefix=settings.key_prefix,
        failure_policy=FailurePolicy(settings.backend_failure_policy),
        metrics=metrics,
        clock=clock,
        scan_batch_size=settings.scan_batch_size,
    )
    return RoutingCounterStore(local=local, distributed=distributed)
