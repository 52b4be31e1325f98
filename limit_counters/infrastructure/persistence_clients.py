from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from limit_counters.core.config import Settings
from limit_counters.core.errors import BackendUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class RedisClientManager:
    url: str
    enabled: bool
    socket_timeout: float = 2.0
    _client: Any = None
    _last_error: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisClientManager":
        return cls(
            url=settings.redis_url,
            enabled=settings.distributed_enabled,
            socket_timeout=settings.redis_socket_timeout_seconds,
        )

    def connect(self) -> None:
        if not self.enabled:
            return
        try:
            import redis

            self._client = redis.from_url(self.url, socket_timeout=self.socket_timeout)
            self._client.ping()
            self._last_error = None
        except Exception as exc:
            logger.warning("Redis connection to counter backend failed", exc_info=exc)
            self._client = None
            self._last_error = str(exc)

    def require_client(self) -> Any:
        if self._client is None:
            detail = self._last_error or self.status
            raise BackendUnavailableError(f"Redis counter backend is {self.status}: {detail}")
        return self._client

    def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()

    @property
    def status(self) -> str:
        if not self.enabled:
            return "disabled"
        if self._client is None:
            return "unavailable"
        return "connected"

    @property
    def error(self) -> str | None:
        return self._last_error

    @property
    def client(self) -> Any:
        return self._client
