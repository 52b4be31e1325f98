from __future__ import annotations

import types
from datetime import datetime, timedelta, timezone

import pytest

from limit_counters.container import build_counter_store
from limit_counters.core.config import Settings
from limit_counters.core.errors import BackendUnavailableError
from limit_counters.infrastructure.persistence_clients import RedisClientManager
from limit_counters.store.base import FailurePolicy
from limit_counters.store.in_memory import LocalCounterStore
from limit_counters.store.keys import AddAndGetRequest, BucketKey
from limit_counters.store.routing import RoutingCounterStore

MINUTE = timedelta(seconds=60)
BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


class _FakeRedisClient:
    def __init__(self, should_fail_ping: bool = False) -> None:
        self.should_fail_ping = should_fail_ping
        self.closed = False

    def ping(self) -> bool:
        if self.should_fail_ping:
            raise RuntimeError("redis ping failed")
        return True

    def script_load(self, source: str) -> str:
        return "sha"

    def register_script(self, source: str):
        return lambda keys, args: 1

    def close(self) -> None:
        self.closed = True


def _request(**overrides) -> AddAndGetRequest:
    data = {
        "resource": "api",
        "limit_name": "rps",
        "event_timestamp": BASE + timedelta(seconds=1),
        "expiration": MINUTE,
    }
    data.update(overrides)
    return AddAndGetRequest(**data)


def test_routing_store_honours_distributed_flag() -> None:
    local = LocalCounterStore(clock=lambda: BASE)
    shared = LocalCounterStore(clock=lambda: BASE)
    store = RoutingCounterStore(local=local, distributed=shared)

    store.add_and_get([_request(property="here"), _request(property="everywhere", distributed=True)])
    store.add_and_get_with_limit([_request(property="everywhere", distributed=True, limit=5)])

    assert [key.property for key in local.get_current_counters()] == ["here"]
    assert list(shared.get_current_counters().values()) == [2]
    assert len(store.get_current_counters("api")) == 2


def test_routing_snapshot_sums_buckets_present_in_both() -> None:
    local = LocalCounterStore(clock=lambda: BASE)
    shared = LocalCounterStore(clock=lambda: BASE)
    store = RoutingCounterStore(local=local, distributed=shared)
    key = BucketKey.derive("api", "rps", "", BASE, MINUTE)

    store.override_key(key, 3, distributed=False)
    store.override_key(key, 4)

    assert store.get_current_counters()[key] == 7


def test_build_counter_store_defaults_to_local() -> None:
    store = build_counter_store(Settings())
    assert isinstance(store, LocalCounterStore)


def test_build_counter_store_routes_when_distributed_enabled() -> None:
    settings = Settings(distributed_enabled=True, backend_failure_policy="fail_closed")
    manager = RedisClientManager.from_settings(settings)
    manager._client = _FakeRedisClient()

    store = build_counter_store(settings, redis_manager=manager)

    assert isinstance(store, RoutingCounterStore)
    assert store.distributed.failure_policy is FailurePolicy.FAIL_CLOSED
    store.close()
    assert manager.client.closed is True


def test_build_counter_store_fails_when_redis_is_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    fake_module = types.SimpleNamespace(
        from_url=lambda *_a, **_k: _FakeRedisClient(should_fail_ping=True)
    )
    monkeypatch.setitem(__import__("sys").modules, "redis", fake_module)

    with pytest.raises(BackendUnavailableError):
        build_counter_store(Settings(distributed_enabled=True))


def test_redis_client_manager_connect_success_and_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    fake_module = types.SimpleNamespace(from_url=lambda *_a, **_k: _FakeRedisClient())
    monkeypatch.setitem(__import__("sys").modules, "redis", fake_module)

    manager = RedisClientManager(url="redis://localhost:6379/0", enabled=True)
    manager.connect()
    assert manager.status == "connected"
    assert manager.error is None
    assert manager.require_client() is manager.client

    fake_fail_module = types.SimpleNamespace(
        from_url=lambda *_a, **_k: _FakeRedisClient(should_fail_ping=True)
    )
    monkeypatch.setitem(__import__("sys").modules, "redis", fake_fail_module)
    failing = RedisClientManager(url="redis://localhost:6379/0", enabled=True)
    failing.connect()
    assert failing.status == "unavailable"
    assert failing.error == "redis ping failed"

    disabled = RedisClientManager(url="redis://localhost:6379/0", enabled=False)
    disabled.connect()
    assert disabled.status == "disabled"
    with pytest.raises(BackendUnavailableError):
        disabled.require_client()


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COUNTER_REDIS_URL", "redis://cache:6379/2")
    monkeypatch.setenv("COUNTER_DISTRIBUTED_ENABLED", "yes")
    monkeypatch.setenv("COUNTER_KEY_PREFIX", "rl")
    monkeypatch.setenv("COUNTER_BACKEND_FAILURE_POLICY", "FAIL_OPEN")
    monkeypatch.setenv("COUNTER_SCAN_BATCH_SIZE", "0")

    settings = Settings.from_env()

    assert settings.redis_url == "redis://cache:6379/2"
    assert settings.distributed_enabled is True
    assert settings.key_prefix == "rl"
    assert settings.backend_failure_policy == "fail_open"
    assert settings.scan_batch_size == 1


def test_settings_ignore_unknown_failure_policy(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COUNTER_BACKEND_FAILURE_POLICY", "retry")
    assert Settings.from_env().backend_failure_policy == "omit"
