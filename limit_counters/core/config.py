from __future__ import annotations

import os
from dataclasses import dataclass

_FAILURE_POLICIES = {"omit", "fail_open", "fail_closed"}


@dataclass(frozen=True)
class Settings:
    redis_url: str = "redis://localhost:6379/0"
    distributed_enabled: bool = False
    key_prefix: str = "limit-counters"
    redis_socket_timeout_seconds: float = 2.0
    backend_failure_policy: str = "omit"
    scan_batch_size: int = 500

    @classmethod
    def from_env(cls) -> "Settings":
        policy = (
            str(os.getenv("COUNTER_BACKEND_FAILURE_POLICY", cls.backend_failure_policy))
            .strip()
            .lower()
        )
        return cls(
            redis_url=os.getenv("COUNTER_REDIS_URL", cls.redis_url),
            distributed_enabled=os.getenv("COUNTER_DISTRIBUTED_ENABLED", "false").lower()
            in {"1", "true", "yes"},
            key_prefix=os.getenv("COUNTER_KEY_PREFIX", cls.key_prefix).strip() or cls.key_prefix,
            redis_socket_timeout_seconds=float(
                os.getenv(
                    "COUNTER_REDIS_SOCKET_TIMEOUT_SECONDS",
                    str(cls.redis_socket_timeout_seconds),
                )
            ),
            backend_failure_policy=policy if policy in _FAILURE_POLICIES else cls.backend_failure_policy,
            scan_batch_size=max(
                1,
                int(os.getenv("COUNTER_SCAN_BATCH_SIZE", str(cls.scan_batch_size))),
            ),
        )
